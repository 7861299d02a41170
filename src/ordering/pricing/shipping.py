"""Shipping cost strategies.

Three policies are available, selected by ``ORDERING_SHIPPING_POLICY``:

- ``flat``: one configured rate for every shipment.
- ``tiered``: a base rate per method, a surcharge for each additional vendor
  and a weight surcharge above 10 units.
- ``weight_threshold``: standard rate, switching to the express rate when the
  total weight exceeds 10 units.

Weight defaults to 1 per unit when the catalog does not provide one.
"""

import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from ordering.money import ZERO, to_decimal


class ShippingMethod(Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"


# (base rate, surcharge per additional vendor)
_METHOD_RATES = {
    ShippingMethod.STANDARD: (Decimal("5.99"), Decimal("2.99")),
    ShippingMethod.EXPRESS: (Decimal("12.99"), Decimal("5.99")),
    ShippingMethod.OVERNIGHT: (Decimal("24.99"), Decimal("10.99")),
    ShippingMethod.PICKUP: (ZERO, ZERO),
}

_TRANSIT_DAYS = {
    ShippingMethod.STANDARD: 5,
    ShippingMethod.EXPRESS: 2,
    ShippingMethod.OVERNIGHT: 1,
    ShippingMethod.PICKUP: 0,
}

WEIGHT_THRESHOLD = Decimal("10")
_WEIGHT_STEP = Decimal("5")
_WEIGHT_STEP_RATE = Decimal("2.99")
_PROCESSING_DAYS = 1


def total_weight(lines) -> Decimal:
    return sum(
        (to_decimal(line.weight if line.weight is not None else 1) * line.quantity for line in lines if line.requires_shipping),
        ZERO,
    )


def vendor_count(lines) -> int:
    return len({line.vendor_id for line in lines if line.requires_shipping})


def estimate_delivery(method: str, placed_at: datetime) -> datetime:
    """Estimated delivery date: one processing day plus transit time."""
    days = _TRANSIT_DAYS[ShippingMethod(method)]
    return placed_at + timedelta(days=_PROCESSING_DAYS + days)


class ShippingPolicy(ABC):
    @abstractmethod
    def quote(self, lines, method: str) -> Decimal:
        """Unrounded shipping cost for the given priced lines."""
        ...


class FlatRateShipping(ShippingPolicy):
    def __init__(self, rate) -> None:
        self.rate = to_decimal(rate)

    def quote(self, lines, method: str) -> Decimal:
        if ShippingMethod(method) == ShippingMethod.PICKUP or vendor_count(lines) == 0:
            return ZERO
        return self.rate


class TieredShipping(ShippingPolicy):
    def quote(self, lines, method: str) -> Decimal:
        method = ShippingMethod(method)
        vendors = vendor_count(lines)
        if method == ShippingMethod.PICKUP or vendors == 0:
            return ZERO

        base, per_vendor = _METHOD_RATES[method]
        cost = base + per_vendor * (vendors - 1)

        weight = total_weight(lines)
        if weight > WEIGHT_THRESHOLD:
            steps = math.ceil((weight - WEIGHT_THRESHOLD) / _WEIGHT_STEP)
            cost += _WEIGHT_STEP_RATE * steps
        return cost


class WeightThresholdShipping(ShippingPolicy):
    def quote(self, lines, method: str) -> Decimal:
        method = ShippingMethod(method)
        if method == ShippingMethod.PICKUP or vendor_count(lines) == 0:
            return ZERO
        if total_weight(lines) > WEIGHT_THRESHOLD:
            return _METHOD_RATES[ShippingMethod.EXPRESS][0]
        return _METHOD_RATES[method][0]


def build_shipping_policy(name: str, flat_rate=None) -> ShippingPolicy:
    if name == "flat":
        return FlatRateShipping(flat_rate if flat_rate is not None else Decimal("8.00"))
    if name == "tiered":
        return TieredShipping()
    if name == "weight_threshold":
        return WeightThresholdShipping()
    raise ValueError(f"Unknown shipping policy: {name}")
