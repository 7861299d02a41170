"""Coupon directory port and an in-memory adapter.

Coupons are owned by an external marketing service. The pricing engine only
asks whether a code is usable for a given subtotal, and checkout reports a
successful use so single-use codes are consumed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

import structlog

from ordering.errors import InvalidCouponError
from ordering.money import ZERO, to_decimal
from ordering.timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)


class DiscountType(Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


@dataclass
class Coupon:
    code: str
    discount_type: DiscountType
    value: Decimal
    minimum_amount: Decimal = ZERO
    maximum_discount: Decimal | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool = True
    usage_limit: int | None = None
    used_by: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.code = self.code.upper()
        self.discount_type = DiscountType(self.discount_type)
        self.value = to_decimal(self.value)
        self.minimum_amount = to_decimal(self.minimum_amount)
        if self.maximum_discount is not None:
            self.maximum_discount = to_decimal(self.maximum_discount)

    @property
    def is_consumed(self) -> bool:
        return self.usage_limit is not None and len(self.used_by) >= self.usage_limit

    def discount_for(self, subtotal: Decimal) -> Decimal:
        """Unrounded discount for the given subtotal, never more than the subtotal."""
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = subtotal * self.value / Decimal("100")
            if self.maximum_discount is not None:
                discount = min(discount, self.maximum_discount)
        else:
            discount = self.value
        return min(discount, subtotal)


class CouponBook(ABC):
    """Abstract coupon directory."""

    @abstractmethod
    def find(self, code: str) -> Coupon | None:
        """Return the coupon registered under ``code`` or None."""
        ...

    @abstractmethod
    def consume(self, code: str, order_number: str) -> None:
        """Record one use of the coupon by an order.

        Raises InvalidCouponError when the usage limit was already reached by
        other orders.
        """
        ...

    @abstractmethod
    def release(self, code: str, order_number: str) -> None:
        """Forget the use recorded by ``order_number``."""
        ...

    def validate(
        self, code: str, subtotal: Decimal, as_of: datetime | None = None, order_number: str | None = None
    ) -> Coupon:
        """Return the coupon if it can be applied to ``subtotal``.

        Raises InvalidCouponError when the code is unknown, inactive, outside
        its validity period, below its minimum spend or already consumed.
        A use recorded by ``order_number`` itself does not count, so an order
        can be repriced with the coupon it was placed with.
        """
        as_of = as_of or utcnow()
        coupon = self.find(code)
        if coupon is None or not coupon.is_active:
            raise InvalidCouponError("Invalid or expired coupon", {"coupon_code": code})
        if coupon.starts_at and as_utc(coupon.starts_at) > as_of:
            raise InvalidCouponError("Coupon is not active yet", {"coupon_code": code})
        if coupon.ends_at and as_utc(coupon.ends_at) < as_of:
            raise InvalidCouponError("Invalid or expired coupon", {"coupon_code": code})
        if coupon.minimum_amount and subtotal < coupon.minimum_amount:
            raise InvalidCouponError(
                f"Minimum order amount of {coupon.minimum_amount} required for this coupon",
                {"coupon_code": code, "minimum_amount": str(coupon.minimum_amount)},
            )
        if coupon.is_consumed and order_number not in coupon.used_by:
            raise InvalidCouponError("Coupon has already been used", {"coupon_code": code})
        return coupon


class InMemoryCouponBook(CouponBook):
    def __init__(self, coupons: list[Coupon] | None = None) -> None:
        self._coupons: dict[str, Coupon] = {}
        for coupon in coupons or []:
            self.register(coupon)

    def register(self, coupon: Coupon) -> None:
        self._coupons[coupon.code] = coupon

    def find(self, code: str) -> Coupon | None:
        return self._coupons.get(code.upper())

    def consume(self, code: str, order_number: str) -> None:
        coupon = self.find(code)
        if coupon is None:
            raise InvalidCouponError("Invalid or expired coupon", {"coupon_code": code})
        if order_number in coupon.used_by:
            return
        if coupon.is_consumed:
            logger.warning(
                "Coupon usage limit already reached",
                anomaly="coupon_exhausted",
                coupon_code=coupon.code,
                order_number=order_number,
            )
            raise InvalidCouponError("Coupon has already been used", {"coupon_code": code})
        coupon.used_by.append(order_number)
        logger.info("Coupon consumed", coupon_code=coupon.code, order_number=order_number)

    def release(self, code: str, order_number: str) -> None:
        coupon = self.find(code)
        if coupon is not None and order_number in coupon.used_by:
            coupon.used_by.remove(order_number)
            logger.info("Coupon use released", coupon_code=coupon.code, order_number=order_number)
