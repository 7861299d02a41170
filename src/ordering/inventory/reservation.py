"""Reservation aggregate: a temporary, expiring claim on stock.

    ACTIVE → COMMITTED  (payment succeeded)
    ACTIVE → RELEASED   (payment failed, order cancelled)
    ACTIVE → EXPIRED    (swept after its expiry time)
    COMMITTED → RELEASED (cancellation after commit returns the sold units)

Repeating a transition the reservation already went through is a no-op, so
retries never move stock twice. The transition methods return whether the
reservation actually changed; the ledger only adjusts stock when it did.
"""

from datetime import timedelta
from enum import Enum

from protean.fields import DateTime, Identifier, Integer, String

from ordering.domain import ordering
from ordering.errors import ReservationReleasedError
from ordering.inventory.events import (
    ReservationCommitted,
    ReservationExpired,
    ReservationReleased,
    StockReserved,
)
from ordering.timeutils import as_utc, utcnow


class ReservationStatus(Enum):
    ACTIVE = "Active"
    COMMITTED = "Committed"
    RELEASED = "Released"
    EXPIRED = "Expired"


@ordering.aggregate
class Reservation:
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    status = String(choices=ReservationStatus, default=ReservationStatus.ACTIVE.value)
    expires_at = DateTime(required=True)
    created_at = DateTime()
    resolved_at = DateTime()
    release_reason = String(max_length=100)

    @classmethod
    def place(cls, product_id, order_id, quantity, ttl_minutes):
        now = utcnow()
        reservation = cls(
            product_id=str(product_id),
            order_id=str(order_id),
            quantity=quantity,
            status=ReservationStatus.ACTIVE.value,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )
        reservation.raise_(
            StockReserved(
                reservation_id=str(reservation.id),
                product_id=str(product_id),
                order_id=str(order_id),
                quantity=quantity,
                expires_at=reservation.expires_at,
            )
        )
        return reservation

    def is_expired(self, as_of) -> bool:
        return self.status == ReservationStatus.ACTIVE.value and as_utc(self.expires_at) <= as_utc(as_of)

    def commit(self) -> bool:
        status = ReservationStatus(self.status)
        if status == ReservationStatus.COMMITTED:
            return False
        if status != ReservationStatus.ACTIVE:
            raise ReservationReleasedError(
                f"Reservation is {status.value} and cannot be committed",
                {"reservation_id": str(self.id), "status": status.value},
            )

        now = utcnow()
        self.status = ReservationStatus.COMMITTED.value
        self.resolved_at = now
        self.raise_(
            ReservationCommitted(
                reservation_id=str(self.id),
                product_id=str(self.product_id),
                order_id=str(self.order_id),
                quantity=self.quantity,
                committed_at=now,
            )
        )
        return True

    def release(self, reason) -> ReservationStatus | None:
        """Release the reservation and return the status it was released from.

        Returns None when the reservation was already released or expired.
        """
        previous = ReservationStatus(self.status)
        if previous in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED):
            return None

        now = utcnow()
        self.status = ReservationStatus.RELEASED.value
        self.release_reason = reason
        self.resolved_at = now
        self.raise_(
            ReservationReleased(
                reservation_id=str(self.id),
                product_id=str(self.product_id),
                order_id=str(self.order_id),
                quantity=self.quantity,
                previous_status=previous.value,
                reason=reason,
                released_at=now,
            )
        )
        return previous

    def expire(self, as_of) -> bool:
        if not self.is_expired(as_of):
            return False

        self.status = ReservationStatus.EXPIRED.value
        self.release_reason = "timeout"
        self.resolved_at = as_of
        self.raise_(
            ReservationExpired(
                reservation_id=str(self.id),
                product_id=str(self.product_id),
                order_id=str(self.order_id),
                quantity=self.quantity,
                expired_at=as_of,
            )
        )
        return True

    def extend(self, until) -> bool:
        if self.status != ReservationStatus.ACTIVE.value:
            return False
        if as_utc(until) <= as_utc(self.expires_at):
            return False
        self.expires_at = until
        return True
