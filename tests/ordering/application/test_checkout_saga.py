"""Tests for the checkout saga: pricing, reservation and compensation."""

from decimal import Decimal

import pytest
from ordering.checkout.saga import CheckoutSaga
from ordering.errors import EmptyCartError, InsufficientStockError, InvalidCouponError, UnknownProductError
from ordering.inventory.reservation import ReservationStatus
from ordering.order.order import Order, OrderStatus, PaymentStatus
from ordering.order.updates import load_order
from ordering.pricing.coupons import Coupon, InMemoryCouponBook
from protean import current_domain


def _orders_of(buyer_id="buyer-001"):
    return current_domain.repository_for(Order).find_by_buyer(buyer_id)


class TestPlaceOrder:
    def test_order_is_pending_and_stock_reserved(self, place_order, ledger):
        order = place_order()

        stored = load_order(order.order_number)
        assert stored.status == OrderStatus.PENDING.value
        assert stored.payment.status == PaymentStatus.PENDING.value
        assert stored.total_amount == 63.0

        reservations = ledger.reservations_for_order(order.id)
        assert len(reservations) == 2
        assert all(r.status == ReservationStatus.ACTIVE.value for r in reservations)
        assert ledger.stock_levels("prod-mug")["reserved"] == 3
        assert ledger.stock_levels("prod-lamp")["available"] == 4

    def test_coupon_and_flat_shipping(self, place_order, coupons):
        order = place_order(coupon_code="SAVE10")

        assert order.subtotal == 55.0
        assert order.discount == 5.5
        assert order.total_amount == 57.5
        assert coupons.find("SAVE10").used_by == [order.order_number]

    def test_snapshot_comes_from_catalog(self, place_order):
        order = place_order()
        mug = order.item_for("prod-mug")

        assert (mug.name, mug.sku, mug.vendor_id, mug.unit_price) == ("Mug", "MUG-01", "vendor-kitchen", 10.0)

    def test_cart_is_cleared_and_buyer_notified(self, place_order, cart, notifier):
        order = place_order()

        assert cart.get_validated_cart("buyer-001") == []
        placed = notifier.of_type("order_placed")
        assert len(placed) == 1
        assert placed[0]["payload"]["order_number"] == order.order_number

    def test_notification_failure_does_not_fail_checkout(self, place_order, notifier):
        notifier.configure(should_succeed=False)
        order = place_order()
        assert load_order(order.order_number).status == OrderStatus.PENDING.value


class TestCheckoutValidation:
    def test_empty_cart(self, saga, stocked, shipping_address):
        with pytest.raises(EmptyCartError):
            saga.place_order("buyer-001", shipping_address)
        assert _orders_of() == []

    def test_unknown_product(self, place_order, ledger):
        with pytest.raises(UnknownProductError):
            place_order(lines=[("prod-mug", 1), ("prod-ghost", 1)])
        assert ledger.stock_levels("prod-mug")["reserved"] == 0

    def test_invalid_coupon_reserves_nothing(self, place_order, ledger):
        with pytest.raises(InvalidCouponError):
            place_order(coupon_code="BOGUS")
        assert ledger.available("prod-mug") == 10
        assert _orders_of() == []

    def test_cart_is_kept_when_checkout_fails(self, place_order, cart):
        with pytest.raises(InvalidCouponError):
            place_order(coupon_code="BOGUS")
        assert len(cart.get_validated_cart("buyer-001")) == 2


class TestCompensation:
    def test_shortage_on_a_later_line_releases_earlier_lines(self, place_order, ledger):
        with pytest.raises(InsufficientStockError):
            place_order(lines=[("prod-mug", 3), ("prod-lamp", 6)])

        mug = ledger.stock_levels("prod-mug")
        assert (mug["available"], mug["reserved"]) == (10, 0)
        assert ledger.available("prod-lamp") == 5
        assert _orders_of() == []

    def test_failure_after_reservation_releases_everything(self, place_order, ledger, monkeypatch):
        def broken_estimate(method, placed_at):
            raise RuntimeError("calendar service down")

        monkeypatch.setattr("ordering.checkout.saga.estimate_delivery", broken_estimate)

        with pytest.raises(RuntimeError):
            place_order()

        assert ledger.stock_levels("prod-mug") == {
            "product_id": "prod-mug",
            "available": 10,
            "reserved": 0,
            "committed": 0,
        }
        assert ledger.available("prod-lamp") == 5
        assert _orders_of() == []

    def test_coupon_is_not_consumed_by_failed_checkout(self, place_order, coupons):
        with pytest.raises(InsufficientStockError):
            place_order(lines=[("prod-lamp", 6)], coupon_code="SAVE10")
        assert coupons.find("SAVE10").used_by == []

    def test_single_use_coupon_taken_by_concurrent_checkout(
        self, settings, catalog, cart, stocked, notifier, shipping_address
    ):
        class ConcurrentCouponBook(InMemoryCouponBook):
            """Another checkout uses the coupon between pricing and consumption."""

            def consume(self, code, order_number):
                super().consume(code, "ORD-OTHER")
                super().consume(code, order_number)

        book = ConcurrentCouponBook(
            [Coupon(code="ONCE", discount_type="percentage", value=Decimal("10"), usage_limit=1)]
        )
        saga = CheckoutSaga(
            cart_service=cart,
            catalog=catalog,
            ledger=stocked,
            coupon_book=book,
            notifier=notifier,
            settings=settings,
        )
        cart.add("buyer-001", "prod-mug", 3)

        with pytest.raises(InvalidCouponError):
            saga.place_order("buyer-001", shipping_address, coupon_code="ONCE")

        assert book.find("ONCE").used_by == ["ORD-OTHER"]
        assert stocked.stock_levels("prod-mug")["available"] == 10
        assert stocked.stock_levels("prod-mug")["reserved"] == 0
        assert _orders_of() == []
