"""Tests for the Order aggregate: placement, state machine and payment sub-state."""

import re
from decimal import Decimal
from uuid import uuid4

import pytest
from ordering.errors import (
    BackwardTransitionError,
    InvalidItemsError,
    InvalidStateError,
    InvariantViolation,
    OrderingValidationError,
)
from ordering.order.order import (
    ItemFulfillmentStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    TimelineKind,
    generate_order_number,
)
from ordering.pricing.coupons import Coupon, InMemoryCouponBook
from ordering.pricing.engine import PricedLine, PricingEngine
from ordering.pricing.shipping import FlatRateShipping
from protean import atomic_change
from protean.exceptions import ValidationError

ADDRESS = {
    "street": "123 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


def _totals(mugs=3, lamps=1, coupon_code=None):
    lines = []
    if mugs:
        lines.append(
            PricedLine(
                product_id="prod-mug",
                quantity=mugs,
                unit_price=Decimal("10.00"),
                vendor_id="vendor-kitchen",
                name="Mug",
            )
        )
    if lamps:
        lines.append(
            PricedLine(
                product_id="prod-lamp",
                quantity=lamps,
                unit_price=Decimal("25.00"),
                vendor_id="vendor-home",
                name="Lamp",
            )
        )
    engine = PricingEngine(
        tax_rate=Decimal("0"),
        shipping_policy=FlatRateShipping(Decimal("8.00")),
        coupon_book=InMemoryCouponBook([Coupon(code="SAVE10", discount_type="percentage", value=Decimal("10"))]),
    )
    return engine.compute_totals(lines, coupon_code=coupon_code)


def _make_order(**kwargs):
    return Order.place(
        order_id=str(uuid4()),
        order_number=generate_order_number(),
        buyer_id="buyer-001",
        totals=_totals(**kwargs),
        shipping_address=ADDRESS,
    )


def _make_paid_order():
    order = _make_order()
    order.record_authorization("credit_card", "pi_123", "pi_123_secret")
    order.complete_payment("pi_123")
    return order


def _make_delivered_order():
    order = _make_paid_order()
    order.mark_processing()
    order.ship(carrier="UPS")
    order.deliver()
    return order


class TestOrderPlacement:
    def test_order_starts_pending(self):
        order = _make_order()

        assert order.status == OrderStatus.PENDING.value
        assert order.payment.status == PaymentStatus.PENDING.value
        assert len(order.items) == 2
        assert all(item.fulfillment_status == ItemFulfillmentStatus.PENDING.value for item in order.items)

    def test_amounts_are_copied_from_totals(self):
        order = _make_order(coupon_code="SAVE10")

        assert order.subtotal == 55.0
        assert order.discount == 5.5
        assert order.shipping_cost == 8.0
        assert order.total_amount == 57.5
        assert order.payment.amount == 57.5
        assert order.coupon_code == "SAVE10"

    def test_placement_is_recorded_in_history_and_timeline(self):
        order = _make_order()

        assert len(order.status_history) == 1
        assert order.status_history[0].status == OrderStatus.PENDING.value
        assert order.timeline[0].kind == TimelineKind.STATUS_CHANGED.value

    def test_order_number_format(self):
        assert re.match(r"^ORD-\d+-[0-9A-Z]{6}$", generate_order_number())

    def test_vendor_breakdown_is_stored(self):
        document = _make_order().to_document()
        assert {share["vendor_id"] for share in document["vendor_breakdown"]} == {"vendor-kitchen", "vendor-home"}


class TestOrderStateMachine:
    def test_full_fulfillment_path(self):
        order = _make_delivered_order()

        assert order.status == OrderStatus.DELIVERED.value
        assert order.tracking_number.startswith("TRK")
        assert order.carrier == "UPS"
        assert all(item.fulfillment_status == ItemFulfillmentStatus.DELIVERED.value for item in order.items)

    def test_history_sequence_is_strictly_increasing(self):
        order = _make_delivered_order()
        history = order.history_document()

        assert [change["status"] for change in history] == [
            "Pending",
            "Confirmed",
            "Processing",
            "Shipped",
            "Delivered",
        ]
        assert [change["sequence"] for change in history] == [1, 2, 3, 4, 5]

    def test_every_status_change_appears_in_timeline(self):
        order = _make_delivered_order()
        status_entries = [entry for entry in order.timeline if entry.kind == TimelineKind.STATUS_CHANGED.value]
        assert len(status_entries) == len(order.status_history)

    def test_cannot_ship_a_pending_order(self):
        with pytest.raises(InvalidStateError):
            _make_order().ship()

    def test_cannot_deliver_a_confirmed_order(self):
        order = _make_paid_order()
        with pytest.raises(InvalidStateError):
            order.deliver()

    def test_cannot_move_backwards(self):
        order = _make_delivered_order()
        with pytest.raises(InvalidStateError):
            order.confirm()


class TestOrderCancellation:
    def test_cancel_pending_order(self):
        order = _make_order()
        refund_required = order.cancel("Changed my mind")

        assert refund_required is False
        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancellation_reason == "Changed my mind"
        assert order.cancelled_by == "Customer"
        assert all(item.fulfillment_status == ItemFulfillmentStatus.CANCELLED.value for item in order.items)

    def test_cancel_marks_unfinished_payment_failed(self):
        order = _make_order()
        order.record_authorization("credit_card", "pi_123")
        order.cancel("Too slow")

        assert order.payment.status == PaymentStatus.FAILED.value

    def test_cancel_paid_order_requires_refund(self):
        order = _make_paid_order()
        assert order.cancel("Found it cheaper") is True
        assert order.payment.status == PaymentStatus.COMPLETED.value

    def test_cannot_cancel_shipped_order(self):
        order = _make_paid_order()
        order.mark_processing()
        order.ship()
        with pytest.raises(InvalidStateError):
            order.cancel("Too late")

    def test_cancelled_is_terminal(self):
        order = _make_order()
        order.cancel("First")
        with pytest.raises(InvalidStateError):
            order.cancel("Second")
        with pytest.raises(InvalidStateError):
            order.confirm()


class TestPaymentSubState:
    def test_authorization_mirrors_transaction_id(self):
        order = _make_order()
        order.record_authorization("credit_card", "pi_123", "pi_123_secret")

        assert order.payment.status == PaymentStatus.PROCESSING.value
        assert order.payment.gateway_transaction_id == "pi_123"
        assert order.gateway_transaction_id == "pi_123"
        assert order.status == OrderStatus.PENDING.value

    def test_unknown_payment_method(self):
        with pytest.raises(OrderingValidationError):
            _make_order().record_authorization("seashells", "pi_123")

    def test_transaction_id_cannot_change(self):
        order = _make_order()
        order.record_authorization("credit_card", "pi_123")
        with pytest.raises(InvariantViolation):
            order.record_authorization("credit_card", "pi_456")

    def test_completion_confirms_pending_order(self):
        order = _make_order()
        order.record_authorization("credit_card", "pi_123")

        assert order.complete_payment("pi_123") is True
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment.status == PaymentStatus.COMPLETED.value
        assert order.payment.paid_at is not None

    def test_completion_cannot_repeat(self):
        order = _make_paid_order()
        with pytest.raises(BackwardTransitionError):
            order.complete_payment("pi_123")

    def test_completed_payment_cannot_fail(self):
        order = _make_paid_order()
        with pytest.raises(BackwardTransitionError):
            order.fail_payment("Card declined")

    def test_failure_cancels_pending_order(self):
        order = _make_order()
        order.record_authorization("credit_card", "pi_123")
        order.fail_payment("Card declined")

        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancellation_reason == "payment_failed"
        assert order.payment.failure_reason == "Card declined"

    def test_cash_on_delivery_is_collected_at_delivery(self):
        order = _make_order()
        order.record_authorization("cash_on_delivery")
        order.confirm()
        order.mark_processing()
        order.ship()

        assert order.payment.status == PaymentStatus.PENDING.value
        order.deliver()
        assert order.payment.status == PaymentStatus.COMPLETED.value

    def test_dispute_is_recorded_once(self):
        order = _make_paid_order()

        assert order.record_dispute("dp_1", reason="fraudulent", amount=Decimal("63.00"), currency="USD") is True
        assert order.record_dispute("dp_1", reason="fraudulent") is False
        assert order.payment.dispute_id == "dp_1"
        assert order.payment.dispute_amount == 63.0


class TestItemFulfillment:
    def test_vendor_marks_item_preparing(self):
        order = _make_paid_order()
        order.update_item_fulfillment("prod-mug", "Preparing", vendor_id="vendor-kitchen")

        assert order.item_for("prod-mug").fulfillment_status == ItemFulfillmentStatus.PREPARING.value
        assert order.item_for("prod-lamp").fulfillment_status == ItemFulfillmentStatus.CONFIRMED.value

    def test_lifecycle_states_are_not_set_by_vendors(self):
        with pytest.raises(InvalidStateError):
            _make_paid_order().update_item_fulfillment("prod-mug", "Shipped")

    def test_pending_orders_are_not_prepared(self):
        with pytest.raises(InvalidStateError):
            _make_order().update_item_fulfillment("prod-mug", "Preparing")

    def test_vendor_cannot_touch_other_vendors_items(self):
        with pytest.raises(InvalidItemsError):
            _make_paid_order().update_item_fulfillment("prod-mug", "Ready", vendor_id="vendor-home")

    def test_unknown_item_status(self):
        with pytest.raises(OrderingValidationError):
            _make_paid_order().update_item_fulfillment("prod-mug", "Teleported")


class TestRepricing:
    def test_reprice_replaces_quantities_and_amounts(self):
        order = _make_order()
        order.reprice(_totals(mugs=1))

        assert order.item_for("prod-mug").quantity == 1
        assert order.subtotal == 35.0
        assert order.total_amount == 43.0
        assert order.payment.amount == 43.0

    def test_reprice_drops_removed_lines(self):
        order = _make_order()
        order.reprice(_totals(lamps=0))

        assert [item.product_id for item in order.items] == ["prod-mug"]
        with pytest.raises(InvalidItemsError):
            order.item_for("prod-lamp")

    def test_reprice_after_authorization_is_refused(self):
        order = _make_order()
        order.record_authorization("credit_card", "pi_123")
        with pytest.raises(InvalidStateError):
            order.reprice(_totals(mugs=1))


class TestOrderInvariants:
    def test_total_must_equal_components(self):
        order = _make_order()
        with pytest.raises(ValidationError) as exc:
            with atomic_change(order):
                order.total_amount = 1.0
        assert "total_amount" in exc.value.messages

    def test_subtotal_must_equal_line_totals(self):
        order = _make_order()
        with pytest.raises(ValidationError) as exc:
            with atomic_change(order):
                order.subtotal = 10.0
                order.total_amount = 18.0
        assert "subtotal" in exc.value.messages

    def test_refund_cannot_exceed_total(self):
        order = _make_paid_order()
        with pytest.raises(ValidationError) as exc:
            with atomic_change(order):
                order._replace_payment(refund_amount=1000.0)
        assert "payment" in exc.value.messages
