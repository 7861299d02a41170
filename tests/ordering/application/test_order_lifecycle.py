"""Tests for cancellation and item changes across the order and the inventory ledger."""

from decimal import Decimal

import pytest
from ordering.errors import InsufficientStockError, InvalidItemsError, InvalidStateError, OrderingValidationError
from ordering.order.fulfillment import MarkProcessing, ShipOrder
from ordering.order.order import OrderStatus, PaymentStatus
from ordering.order.updates import load_order
from ordering.payment.coordinator import CallbackOutcome
from ordering.pricing.coupons import Coupon
from protean import current_domain


def _levels(ledger, product_id):
    levels = ledger.stock_levels(product_id)
    return levels["available"], levels["reserved"], levels["committed"]


class TestCancel:
    def test_cancel_pending_order_releases_stock(self, place_order, lifecycle, ledger, notifier):
        order = place_order()

        cancelled = lifecycle.cancel(order.order_number, reason="changed_mind")

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.cancellation_reason == "changed_mind"
        assert cancelled.cancelled_by == "Customer"
        assert _levels(ledger, "prod-mug") == (10, 0, 0)
        assert _levels(ledger, "prod-lamp") == (5, 0, 0)
        assert notifier.of_type("order_cancelled")[0]["payload"]["refunded"] is False

    def test_cash_on_delivery_round_trip_restores_stock_exactly(self, place_order, coordinator, lifecycle, ledger):
        order = place_order()
        coordinator.authorize(order.order_number, "cash_on_delivery")
        assert _levels(ledger, "prod-mug") == (7, 0, 3)

        lifecycle.cancel(order.order_number, reason="changed_mind")

        assert _levels(ledger, "prod-mug") == (10, 0, 0)
        assert _levels(ledger, "prod-lamp") == (5, 0, 0)

    def test_cancel_paid_order_refunds_in_full(self, paid_order, lifecycle, gateway, ledger):
        cancelled = lifecycle.cancel(paid_order.order_number, reason="changed_mind", actor="Admin")

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.payment.status == PaymentStatus.REFUNDED.value
        assert cancelled.payment.refund_amount == 63.0
        assert gateway.calls_to("refund")[0]["amount"] == Decimal("63.00")
        assert _levels(ledger, "prod-mug") == (10, 0, 0)

    def test_refused_refund_stays_pending_on_the_cancelled_order(self, paid_order, lifecycle, gateway, notifier):
        gateway.configure(refunds_succeed=False)

        cancelled = lifecycle.cancel(paid_order.order_number, reason="changed_mind")

        assert cancelled.status == OrderStatus.CANCELLED.value
        stored = load_order(paid_order.order_number)
        assert stored.pending_refund == 63.0
        assert stored.payment.status == PaymentStatus.COMPLETED.value
        assert stored.payment.refund_amount == 0.0
        assert notifier.of_type("order_cancelled")[0]["payload"]["refunded"] is False

    def test_pending_refund_is_completed_by_retry(self, paid_order, lifecycle, coordinator, gateway):
        gateway.configure(refunds_succeed=False)
        lifecycle.cancel(paid_order.order_number, reason="changed_mind")
        assert coordinator.retry_pending_refunds() == 0

        gateway.configure(refunds_succeed=True)
        assert coordinator.retry_pending_refunds() == 1

        stored = load_order(paid_order.order_number)
        assert stored.status == OrderStatus.CANCELLED.value
        assert stored.pending_refund == 0.0
        assert stored.payment.status == PaymentStatus.REFUNDED.value
        assert stored.payment.refund_amount == 63.0
        assert gateway.calls_to("refund")[-1]["amount"] == Decimal("63.00")
        assert coordinator.retry_pending_refunds() == 0

    def test_unavailable_gateway_leaves_refund_pending(self, paid_order, lifecycle, gateway):
        gateway.configure(timeouts=3)

        lifecycle.cancel(paid_order.order_number, reason="changed_mind")

        stored = load_order(paid_order.order_number)
        assert stored.status == OrderStatus.CANCELLED.value
        assert stored.pending_refund == 63.0

    def test_cancel_during_authorization_blocks_late_capture(
        self, place_order, coordinator, lifecycle, confirm_payment, ledger
    ):
        order = place_order()
        coordinator.authorize(order.order_number, "credit_card")
        lifecycle.cancel(order.order_number, reason="changed_mind")

        assert confirm_payment(order.order_number) == CallbackOutcome.IGNORED

        stored = load_order(order.order_number)
        assert stored.status == OrderStatus.CANCELLED.value
        assert stored.payment.status == PaymentStatus.FAILED.value
        assert _levels(ledger, "prod-mug") == (10, 0, 0)

    def test_shipped_order_cannot_be_cancelled(self, paid_order, lifecycle):
        current_domain.process(MarkProcessing(order_number=paid_order.order_number), asynchronous=False)
        current_domain.process(ShipOrder(order_number=paid_order.order_number, carrier="UPS"), asynchronous=False)

        with pytest.raises(InvalidStateError):
            lifecycle.cancel(paid_order.order_number, reason="too_late")
        assert load_order(paid_order.order_number).status == OrderStatus.SHIPPED.value

    def test_invalid_actor(self, place_order, lifecycle):
        order = place_order()
        with pytest.raises(OrderingValidationError):
            lifecycle.cancel(order.order_number, reason="changed_mind", actor="Robot")
        assert load_order(order.order_number).status == OrderStatus.PENDING.value


class TestChangeItemQuantity:
    def test_increase_reprices_and_reserves(self, place_order, lifecycle, ledger):
        order = place_order()

        changed = lifecycle.change_item_quantity(order.order_number, "prod-mug", 5)

        assert changed.item_for("prod-mug").quantity == 5
        assert changed.subtotal == 75.0
        assert changed.total_amount == 83.0
        assert _levels(ledger, "prod-mug") == (5, 5, 0)

    def test_decrease_frees_stock(self, place_order, lifecycle, ledger):
        order = place_order()

        changed = lifecycle.change_item_quantity(order.order_number, "prod-mug", 1)

        assert changed.total_amount == 43.0
        assert _levels(ledger, "prod-mug") == (9, 1, 0)

    def test_shortage_leaves_order_and_reservation_unchanged(self, place_order, lifecycle, ledger):
        order = place_order()

        with pytest.raises(InsufficientStockError):
            lifecycle.change_item_quantity(order.order_number, "prod-mug", 11)

        stored = load_order(order.order_number)
        assert stored.item_for("prod-mug").quantity == 3
        assert stored.total_amount == 63.0
        assert _levels(ledger, "prod-mug") == (7, 3, 0)

    def test_quantity_below_one(self, place_order, lifecycle):
        order = place_order()
        with pytest.raises(InvalidItemsError):
            lifecycle.change_item_quantity(order.order_number, "prod-mug", 0)

    def test_paid_order_cannot_change(self, paid_order, lifecycle):
        with pytest.raises(InvalidStateError):
            lifecycle.change_item_quantity(paid_order.order_number, "prod-mug", 4)

    def test_single_use_coupon_survives_repricing(self, place_order, lifecycle, coupons):
        coupons.register(Coupon(code="ONCE", discount_type="percentage", value=Decimal("10"), usage_limit=1))
        order = place_order(coupon_code="ONCE")
        assert order.total_amount == 57.5

        changed = lifecycle.change_item_quantity(order.order_number, "prod-mug", 5)

        assert changed.coupon_code == "ONCE"
        assert changed.discount == 7.5
        assert changed.total_amount == 75.5
        assert coupons.find("ONCE").used_by == [order.order_number]


class TestRemoveItem:
    def test_remove_reprices_and_releases(self, place_order, lifecycle, ledger):
        order = place_order()

        changed = lifecycle.remove_item(order.order_number, "prod-lamp")

        assert [item.product_id for item in changed.items] == ["prod-mug"]
        assert changed.total_amount == 38.0
        assert _levels(ledger, "prod-lamp") == (5, 0, 0)
        assert _levels(ledger, "prod-mug") == (7, 3, 0)

    def test_last_item_cannot_be_removed(self, place_order, lifecycle, ledger):
        order = place_order(lines=[("prod-mug", 2)])

        with pytest.raises(InvalidItemsError):
            lifecycle.remove_item(order.order_number, "prod-mug")
        assert _levels(ledger, "prod-mug") == (8, 2, 0)
