"""Domain events raised by the inventory ledger aggregates."""

from protean.fields import DateTime, Identifier, Integer, String

from ordering.domain import ordering


@ordering.event(part_of="StockItem")
class StockInitialized:
    __version__ = 1

    product_id = Identifier(required=True)
    available = Integer(required=True)
    initialized_at = DateTime(required=True)


@ordering.event(part_of="StockItem")
class StockReceived:
    __version__ = 1

    product_id = Identifier(required=True)
    quantity = Integer(required=True)
    new_available = Integer(required=True)


@ordering.event(part_of="StockItem")
class StockReturned:
    """Returned goods were received back into the sellable pool."""

    __version__ = 1

    product_id = Identifier(required=True)
    quantity = Integer(required=True)
    order_id = Identifier()
    new_available = Integer(required=True)


@ordering.event(part_of="Reservation")
class StockReserved:
    __version__ = 1

    reservation_id = Identifier(required=True)
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    expires_at = DateTime(required=True)


@ordering.event(part_of="Reservation")
class ReservationCommitted:
    __version__ = 1

    reservation_id = Identifier(required=True)
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    committed_at = DateTime(required=True)


@ordering.event(part_of="Reservation")
class ReservationReleased:
    __version__ = 1

    reservation_id = Identifier(required=True)
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    previous_status = String(required=True)
    reason = String(max_length=100)
    released_at = DateTime(required=True)


@ordering.event(part_of="Reservation")
class ReservationExpired:
    __version__ = 1

    reservation_id = Identifier(required=True)
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    expired_at = DateTime(required=True)
