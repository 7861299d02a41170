"""Tests for the pricing engine: totals, coupons and vendor shares."""

from datetime import timedelta
from decimal import Decimal

import pytest
from ordering.errors import EmptyCartError, InvalidCouponError, InvalidItemsError, OrderingValidationError
from ordering.pricing.coupons import Coupon, InMemoryCouponBook
from ordering.pricing.engine import PricedLine, PricingEngine
from ordering.pricing.shipping import FlatRateShipping
from ordering.timeutils import utcnow


def _lines():
    return [
        PricedLine(product_id="prod-mug", quantity=3, unit_price=Decimal("10.00"), vendor_id="vendor-kitchen"),
        PricedLine(product_id="prod-lamp", quantity=1, unit_price=Decimal("25.00"), vendor_id="vendor-home"),
    ]


def _engine(tax_rate="0", coupons=None, commission_rate="0"):
    book = InMemoryCouponBook(
        coupons if coupons is not None else [Coupon(code="SAVE10", discount_type="percentage", value=Decimal("10"))]
    )
    return PricingEngine(
        tax_rate=Decimal(tax_rate),
        shipping_policy=FlatRateShipping(Decimal("8.00")),
        coupon_book=book,
        commission_rate=Decimal(commission_rate),
    )


def _assert_balanced(totals):
    assert totals.total == totals.subtotal + totals.tax + totals.shipping_cost - totals.discount


class TestComputeTotals:
    def test_percentage_coupon_with_flat_shipping(self):
        totals = _engine().compute_totals(_lines(), coupon_code="SAVE10")

        assert totals.subtotal == Decimal("55.00")
        assert totals.discount == Decimal("5.50")
        assert totals.shipping_cost == Decimal("8.00")
        assert totals.tax == Decimal("0.00")
        assert totals.total == Decimal("57.50")
        assert totals.coupon_code == "SAVE10"

    def test_no_coupon(self):
        totals = _engine().compute_totals(_lines())
        assert totals.discount == Decimal("0.00")
        assert totals.total == Decimal("63.00")
        assert totals.coupon is None

    def test_tax_applies_to_discounted_amount_plus_shipping(self):
        totals = _engine(tax_rate="0.08").compute_totals(_lines(), coupon_code="SAVE10")

        assert totals.tax == Decimal("4.60")
        assert totals.total == Decimal("62.10")
        _assert_balanced(totals)

    def test_rounding_keeps_total_equal_to_components(self):
        lines = [PricedLine(product_id="prod-odd", quantity=3, unit_price=Decimal("19.99"), vendor_id="vendor-1")]
        totals = _engine(tax_rate="0.0725").compute_totals(lines)

        assert totals.subtotal == Decimal("59.97")
        assert totals.tax == Decimal("4.93")
        assert totals.total == Decimal("72.90")
        _assert_balanced(totals)

    def test_same_input_gives_same_totals(self):
        engine = _engine(tax_rate="0.08")
        assert engine.compute_totals(_lines(), coupon_code="SAVE10") == engine.compute_totals(
            _lines(), coupon_code="SAVE10"
        )

    def test_line_discount_reduces_line_total(self):
        lines = [
            PricedLine(
                product_id="prod-mug",
                quantity=2,
                unit_price=Decimal("10.00"),
                vendor_id="vendor-kitchen",
                discount=Decimal("3.00"),
            )
        ]
        totals = _engine().compute_totals(lines)
        assert totals.subtotal == Decimal("17.00")
        assert totals.total == Decimal("25.00")

    def test_coupon_codes_are_case_insensitive(self):
        totals = _engine().compute_totals(_lines(), coupon_code="save10")
        assert totals.discount == Decimal("5.50")

    def test_pickup_has_no_shipping(self):
        totals = _engine().compute_totals(_lines(), shipping_method="pickup")
        assert totals.shipping_cost == Decimal("0.00")
        assert totals.total == Decimal("55.00")


class TestPricingValidation:
    def test_empty_cart_is_rejected(self):
        with pytest.raises(EmptyCartError):
            _engine().compute_totals([])

    def test_zero_quantity_is_rejected(self):
        lines = [PricedLine(product_id="prod-mug", quantity=0, unit_price=Decimal("10.00"), vendor_id="v")]
        with pytest.raises(InvalidItemsError):
            _engine().compute_totals(lines)

    def test_line_discount_above_line_amount_is_rejected(self):
        lines = [
            PricedLine(
                product_id="prod-mug",
                quantity=1,
                unit_price=Decimal("10.00"),
                vendor_id="v",
                discount=Decimal("12.00"),
            )
        ]
        with pytest.raises(InvalidItemsError):
            _engine().compute_totals(lines)

    def test_unknown_shipping_method_is_rejected(self):
        with pytest.raises(OrderingValidationError) as exc:
            _engine().compute_totals(_lines(), shipping_method="teleport")
        assert exc.value.details["shipping_method"] == "teleport"

    def test_coupon_without_directory_is_rejected(self):
        engine = PricingEngine(tax_rate=Decimal("0"), shipping_policy=FlatRateShipping(Decimal("8.00")))
        with pytest.raises(OrderingValidationError):
            engine.compute_totals(_lines(), coupon_code="SAVE10")


class TestCoupons:
    def test_unknown_code(self):
        with pytest.raises(InvalidCouponError):
            _engine().compute_totals(_lines(), coupon_code="NOPE")

    def test_inactive_coupon(self):
        coupon = Coupon(code="OFF", discount_type="percentage", value=Decimal("10"), is_active=False)
        with pytest.raises(InvalidCouponError):
            _engine(coupons=[coupon]).compute_totals(_lines(), coupon_code="OFF")

    def test_expired_coupon(self):
        coupon = Coupon(
            code="OLD",
            discount_type="percentage",
            value=Decimal("10"),
            ends_at=utcnow() - timedelta(days=1),
        )
        with pytest.raises(InvalidCouponError):
            _engine(coupons=[coupon]).compute_totals(_lines(), coupon_code="OLD")

    def test_coupon_not_started_yet(self):
        coupon = Coupon(
            code="SOON",
            discount_type="percentage",
            value=Decimal("10"),
            starts_at=utcnow() + timedelta(days=1),
        )
        with pytest.raises(InvalidCouponError):
            _engine(coupons=[coupon]).compute_totals(_lines(), coupon_code="SOON")

    def test_minimum_amount_not_reached(self):
        coupon = Coupon(code="BIG", discount_type="fixed_amount", value=Decimal("20"), minimum_amount=Decimal("100"))
        with pytest.raises(InvalidCouponError) as exc:
            _engine(coupons=[coupon]).compute_totals(_lines(), coupon_code="BIG")
        assert exc.value.details["minimum_amount"] == "100"

    def test_consumed_coupon_is_rejected_for_other_orders(self):
        coupon = Coupon(code="ONCE", discount_type="percentage", value=Decimal("10"), usage_limit=1)
        book = InMemoryCouponBook([coupon])
        book.consume("ONCE", "ORD-1")

        with pytest.raises(InvalidCouponError):
            book.validate("ONCE", Decimal("55"), order_number="ORD-2")

    def test_consumed_coupon_still_applies_to_its_own_order(self):
        coupon = Coupon(code="ONCE", discount_type="percentage", value=Decimal("10"), usage_limit=1)
        book = InMemoryCouponBook([coupon])
        book.consume("ONCE", "ORD-1")

        assert book.validate("ONCE", Decimal("55"), order_number="ORD-1").code == "ONCE"

    def test_consume_is_idempotent_per_order(self):
        coupon = Coupon(code="TWICE", discount_type="percentage", value=Decimal("10"), usage_limit=2)
        book = InMemoryCouponBook([coupon])
        book.consume("TWICE", "ORD-1")
        book.consume("TWICE", "ORD-1")
        assert coupon.used_by == ["ORD-1"]

    def test_single_use_coupon_cannot_be_consumed_twice(self):
        coupon = Coupon(code="ONCE", discount_type="percentage", value=Decimal("10"), usage_limit=1)
        book = InMemoryCouponBook([coupon])
        book.consume("ONCE", "ORD-1")

        with pytest.raises(InvalidCouponError):
            book.consume("ONCE", "ORD-2")
        assert coupon.used_by == ["ORD-1"]

    def test_release_frees_the_use(self):
        coupon = Coupon(code="ONCE", discount_type="percentage", value=Decimal("10"), usage_limit=1)
        book = InMemoryCouponBook([coupon])
        book.consume("ONCE", "ORD-1")

        book.release("ONCE", "ORD-1")
        book.consume("ONCE", "ORD-2")

        assert coupon.used_by == ["ORD-2"]

    def test_fixed_discount_is_capped_at_subtotal(self):
        coupon = Coupon(code="HUGE", discount_type="fixed_amount", value=Decimal("100"))
        totals = _engine(coupons=[coupon]).compute_totals(_lines(), coupon_code="HUGE")

        assert totals.discount == Decimal("55.00")
        assert totals.total == Decimal("8.00")

    def test_percentage_discount_respects_maximum(self):
        coupon = Coupon(
            code="HALF",
            discount_type="percentage",
            value=Decimal("50"),
            maximum_discount=Decimal("10"),
        )
        totals = _engine(coupons=[coupon]).compute_totals(_lines(), coupon_code="HALF")
        assert totals.discount == Decimal("10.00")


class TestVendorBreakdown:
    def test_shares_per_vendor(self):
        totals = _engine(commission_rate="0.10").compute_totals(_lines())
        shares = {share.vendor_id: share for share in totals.vendor_breakdown}

        assert [share.vendor_id for share in totals.vendor_breakdown] == ["vendor-home", "vendor-kitchen"]
        assert shares["vendor-kitchen"].subtotal == Decimal("30.00")
        assert shares["vendor-kitchen"].commission == Decimal("3.00")
        assert shares["vendor-kitchen"].payout == Decimal("27.00")
        assert shares["vendor-home"].payout == Decimal("22.50")

    def test_serialized_totals(self):
        document = _engine(commission_rate="0.10").compute_totals(_lines(), coupon_code="SAVE10").to_dict()

        assert document["total"] == "57.50"
        assert document["coupon_code"] == "SAVE10"
        assert len(document["vendor_breakdown"]) == 2
