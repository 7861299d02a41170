"""Repository for the Reservation aggregate."""

from ordering.domain import ordering
from ordering.inventory.reservation import Reservation, ReservationStatus


@ordering.repository(part_of=Reservation)
class ReservationRepository:
    def for_order(self, order_id) -> list[Reservation]:
        return self._dao.query.filter(order_id=str(order_id)).all().items

    def active(self) -> list[Reservation]:
        return self._dao.query.filter(status=ReservationStatus.ACTIVE.value).all().items
