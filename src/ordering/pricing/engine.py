"""Pricing & discount engine.

``compute_totals`` is deterministic: the same line items, coupon and shipping
method always produce the same ``Totals``. The only lookups are the coupon
directory and the configured rates, both handed to the engine when it is
built.

Arithmetic is done in ``Decimal``. Unit prices and line discounts are catalog
inputs already expressed in cents; computed figures (discount, shipping, tax)
are rounded once, when the ``Totals`` are produced, and the grand total is
derived from the rounded components so that

    total == subtotal + tax + shipping_cost - discount

holds exactly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from ordering.errors import EmptyCartError, InvalidItemsError, OrderingValidationError
from ordering.money import ZERO, quantize, to_decimal
from ordering.pricing.coupons import Coupon, CouponBook
from ordering.pricing.shipping import ShippingMethod, ShippingPolicy, build_shipping_policy


@dataclass(frozen=True)
class PricedLine:
    """A line item as priced at checkout: cart quantity plus catalog snapshot."""

    product_id: str
    quantity: int
    unit_price: Decimal
    vendor_id: str
    name: str = ""
    sku: str = ""
    weight: Decimal | None = None
    requires_shipping: bool = True
    discount: Decimal = ZERO

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price) * self.quantity - quantize(self.discount)


@dataclass(frozen=True)
class VendorShare:
    vendor_id: str
    subtotal: Decimal
    commission: Decimal
    payout: Decimal

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "subtotal": str(self.subtotal),
            "commission": str(self.commission),
            "payout": str(self.payout),
        }


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    currency: str
    shipping_method: str
    coupon: Coupon | None = None
    lines: tuple[PricedLine, ...] = ()
    vendor_breakdown: tuple[VendorShare, ...] = field(default_factory=tuple)

    @property
    def coupon_code(self) -> str | None:
        return self.coupon.code if self.coupon else None

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "tax": str(self.tax),
            "shipping_cost": str(self.shipping_cost),
            "total": str(self.total),
            "currency": self.currency,
            "shipping_method": self.shipping_method,
            "coupon_code": self.coupon_code,
            "vendor_breakdown": [share.to_dict() for share in self.vendor_breakdown],
        }


class PricingEngine:
    def __init__(
        self,
        tax_rate,
        shipping_policy: ShippingPolicy,
        coupon_book: CouponBook | None = None,
        commission_rate=ZERO,
        currency: str = "USD",
    ) -> None:
        self.tax_rate = to_decimal(tax_rate)
        self.shipping_policy = shipping_policy
        self.coupon_book = coupon_book
        self.commission_rate = to_decimal(commission_rate)
        self.currency = currency

    def compute_totals(
        self,
        line_items: list[PricedLine],
        coupon_code: str | None = None,
        shipping_method: str = ShippingMethod.STANDARD.value,
        as_of: datetime | None = None,
        order_number: str | None = None,
    ) -> Totals:
        if not line_items:
            raise EmptyCartError("Cannot price an empty cart")

        for line in line_items:
            if line.quantity < 1:
                raise InvalidItemsError(
                    "Quantity must be at least 1",
                    {"product_id": line.product_id, "quantity": line.quantity},
                )
            if line.line_total < ZERO:
                raise InvalidItemsError(
                    "Line discount exceeds line amount",
                    {"product_id": line.product_id},
                )

        try:
            method = ShippingMethod(shipping_method).value
        except ValueError as exc:
            raise OrderingValidationError(
                f"Unknown shipping method: {shipping_method}",
                {"shipping_method": shipping_method},
            ) from exc

        subtotal = sum((line.line_total for line in line_items), ZERO)

        coupon = None
        raw_discount = ZERO
        if coupon_code:
            if self.coupon_book is None:
                raise OrderingValidationError("Coupons are not available", {"coupon_code": coupon_code})
            coupon = self.coupon_book.validate(coupon_code, subtotal, as_of=as_of, order_number=order_number)
            raw_discount = coupon.discount_for(subtotal)

        raw_shipping = self.shipping_policy.quote(line_items, method)
        raw_tax = (subtotal - raw_discount + raw_shipping) * self.tax_rate

        discount = quantize(raw_discount)
        shipping_cost = quantize(raw_shipping)
        tax = quantize(raw_tax)
        subtotal = quantize(subtotal)
        total = subtotal + tax + shipping_cost - discount

        return Totals(
            subtotal=subtotal,
            discount=discount,
            tax=tax,
            shipping_cost=shipping_cost,
            total=total,
            currency=self.currency,
            shipping_method=method,
            coupon=coupon,
            lines=tuple(line_items),
            vendor_breakdown=self._vendor_breakdown(line_items),
        )

    def _vendor_breakdown(self, line_items) -> tuple[VendorShare, ...]:
        per_vendor: dict[str, Decimal] = {}
        for line in line_items:
            per_vendor[line.vendor_id] = per_vendor.get(line.vendor_id, ZERO) + line.line_total

        shares = []
        for vendor_id in sorted(per_vendor):
            vendor_subtotal = quantize(per_vendor[vendor_id])
            commission = quantize(vendor_subtotal * self.commission_rate)
            shares.append(
                VendorShare(
                    vendor_id=vendor_id,
                    subtotal=vendor_subtotal,
                    commission=commission,
                    payout=vendor_subtotal - commission,
                )
            )
        return tuple(shares)


def build_pricing_engine(settings=None, coupon_book: CouponBook | None = None) -> PricingEngine:
    """Build an engine from the active settings and coupon directory."""
    from ordering.collaborators import get_coupon_book
    from ordering.settings import get_settings

    settings = settings or get_settings()
    return PricingEngine(
        tax_rate=settings.tax_rate,
        shipping_policy=build_shipping_policy(settings.shipping_policy, settings.flat_shipping_rate),
        coupon_book=coupon_book or get_coupon_book(),
        commission_rate=settings.commission_rate,
        currency=settings.currency,
    )
