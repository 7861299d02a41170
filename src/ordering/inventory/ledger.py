"""Inventory ledger: atomic reserve, commit and release of stock.

Reservation is a conditional decrement: the stock row is read, the decrement
is refused when ``available < quantity``, and the write only succeeds if the
row's version is unchanged since the read. A lost race re-reads and
re-checks, so two checkouts can never both take the last unit.

Commit and release first flip the reservation's status (itself a versioned
write) and only then move stock. A reservation can therefore move stock at
most once per transition, however often the call is retried.
"""

import structlog
from protean.exceptions import ExpectedVersionError, ObjectNotFoundError
from protean.utils.globals import current_domain

from ordering.errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    ReservationNotFoundError,
)
from ordering.inventory.reservation import Reservation, ReservationStatus
from ordering.inventory.stock import StockItem
from ordering.settings import get_settings
from ordering.timeutils import utcnow

logger = structlog.get_logger(__name__)


class InventoryLedger:
    def __init__(self, settings=None) -> None:
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def available(self, product_id) -> int:
        stock = self._load_stock(product_id)
        return stock.available if stock else 0

    def stock_levels(self, product_id) -> dict:
        stock = self._load_stock(product_id)
        if stock is None:
            return {"product_id": str(product_id), "available": 0, "reserved": 0, "committed": 0}
        return {
            "product_id": str(stock.product_id),
            "available": stock.available,
            "reserved": stock.reserved,
            "committed": stock.committed,
        }

    def get_reservation(self, reservation_id) -> Reservation:
        try:
            return current_domain.repository_for(Reservation).get(str(reservation_id))
        except ObjectNotFoundError as exc:
            raise ReservationNotFoundError(
                "Reservation not found", {"reservation_id": str(reservation_id)}
            ) from exc

    def reservations_for_order(self, order_id) -> list[Reservation]:
        return current_domain.repository_for(Reservation).for_order(order_id)

    # -------------------------------------------------------------------
    # Stock administration
    # -------------------------------------------------------------------
    def initialize(self, product_id, quantity) -> StockItem:
        """Create the stock row, or receive ``quantity`` more units if it exists."""
        existing = self._load_stock(product_id)
        if existing is None:
            stock = StockItem.initialize(product_id, quantity)
            current_domain.repository_for(StockItem).add(stock)
            logger.info("Stock initialized", product_id=str(product_id), available=quantity)
            return stock
        if quantity == 0:
            return existing
        return self._update_stock(product_id, lambda stock: stock.receive(quantity))

    def restock(self, product_id, quantity, order_id=None) -> StockItem:
        """Put returned units back into the sellable pool."""
        if self._load_stock(product_id) is None:
            stock = StockItem.initialize(product_id, 0)
            current_domain.repository_for(StockItem).add(stock)
        stock = self._update_stock(product_id, lambda stock: stock.receive_return(quantity, order_id))
        logger.info(
            "Returned stock restored",
            product_id=str(product_id),
            quantity=quantity,
            order_id=str(order_id) if order_id else None,
            available=stock.available,
        )
        return stock

    # -------------------------------------------------------------------
    # Reservations
    # -------------------------------------------------------------------
    def reserve(self, product_id, quantity, order_id) -> str:
        """Reserve stock for an order and return the reservation id.

        Raises InsufficientStockError when fewer than ``quantity`` units are
        available at the moment of the write.
        """
        self._update_stock(product_id, lambda stock: stock.hold(quantity))

        reservation = Reservation.place(
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            ttl_minutes=self.settings.reservation_ttl_minutes,
        )
        try:
            current_domain.repository_for(Reservation).add(reservation)
        except Exception:
            logger.error(
                "Reservation could not be recorded, returning held stock",
                product_id=str(product_id),
                order_id=str(order_id),
                quantity=quantity,
            )
            self._update_stock(product_id, lambda stock: stock.unhold(quantity))
            raise

        logger.info(
            "Stock reserved",
            reservation_id=str(reservation.id),
            product_id=str(product_id),
            order_id=str(order_id),
            quantity=quantity,
        )
        return str(reservation.id)

    def commit(self, reservation_id) -> bool:
        """Convert a reservation into a permanent decrement. Repeats are no-ops."""
        reservation, changed = self._transition(reservation_id, lambda r: r.commit())
        if not changed:
            logger.info("Reservation already committed", reservation_id=str(reservation_id))
            return False

        self._update_stock(reservation.product_id, lambda stock: stock.sell(reservation.quantity))
        logger.info(
            "Reservation committed",
            reservation_id=str(reservation_id),
            product_id=str(reservation.product_id),
            quantity=reservation.quantity,
        )
        return True

    def release(self, reservation_id, reason="released") -> bool:
        """Return reserved (or committed) units to the pool. Repeats are no-ops."""
        reservation, previous = self._transition(reservation_id, lambda r: r.release(reason))
        if previous is None:
            logger.info("Reservation already released", reservation_id=str(reservation_id))
            return False

        if previous == ReservationStatus.ACTIVE:
            self._update_stock(reservation.product_id, lambda stock: stock.unhold(reservation.quantity))
        else:
            self._update_stock(reservation.product_id, lambda stock: stock.unsell(reservation.quantity))

        logger.info(
            "Reservation released",
            reservation_id=str(reservation_id),
            product_id=str(reservation.product_id),
            quantity=reservation.quantity,
            previous_status=previous.value,
            reason=reason,
        )
        return True

    def extend(self, reservation_id, until) -> bool:
        _, changed = self._transition(reservation_id, lambda r: r.extend(until))
        return changed

    def commit_for_order(self, order_id) -> int:
        committed = 0
        for reservation in self.reservations_for_order(order_id):
            if reservation.status == ReservationStatus.ACTIVE.value and self.commit(reservation.id):
                committed += 1
        return committed

    def release_for_order(self, order_id, reason) -> int:
        released = 0
        for reservation in self.reservations_for_order(order_id):
            if reservation.status in (ReservationStatus.ACTIVE.value, ReservationStatus.COMMITTED.value):
                if self.release(reservation.id, reason=reason):
                    released += 1
        return released

    def extend_for_order(self, order_id, until) -> int:
        return sum(1 for reservation in self.reservations_for_order(order_id) if self.extend(reservation.id, until))

    def sweep_expired(self, as_of=None) -> int:
        """Expire active reservations past their expiry time and free their stock."""
        as_of = as_of or utcnow()
        candidates = [
            reservation
            for reservation in current_domain.repository_for(Reservation).active()
            if reservation.is_expired(as_of)
        ]
        if not candidates:
            logger.info("No stale reservations found", as_of=as_of.isoformat())
            return 0

        expired_count = 0
        for candidate in candidates:
            reservation, changed = self._transition(candidate.id, lambda r: r.expire(as_of))
            if not changed:
                continue
            self._update_stock(reservation.product_id, lambda stock: stock.unhold(reservation.quantity))
            expired_count += 1
            logger.info(
                "Released stale reservation",
                reservation_id=str(reservation.id),
                order_id=str(reservation.order_id),
                expired_at=str(reservation.expires_at),
            )

        logger.info("Stale reservation cleanup complete", expired_count=expired_count)
        return expired_count

    # -------------------------------------------------------------------
    # Versioned writes
    # -------------------------------------------------------------------
    def _load_stock(self, product_id) -> StockItem | None:
        try:
            return current_domain.repository_for(StockItem).get(str(product_id))
        except ObjectNotFoundError:
            return None

    def _update_stock(self, product_id, mutate) -> StockItem:
        repo = current_domain.repository_for(StockItem)
        for attempt in range(1, self.settings.conflict_retries + 1):
            stock = self._load_stock(product_id)
            if stock is None:
                raise InsufficientStockError(
                    "Product is not stocked",
                    {"product_id": str(product_id), "available": 0},
                )
            mutate(stock)
            try:
                repo.add(stock)
                return stock
            except ExpectedVersionError:
                logger.info("Stock version conflict, retrying", product_id=str(product_id), attempt=attempt)

        raise ConcurrencyConflictError(
            "Stock kept changing concurrently",
            {"product_id": str(product_id), "attempts": self.settings.conflict_retries},
        )

    def _transition(self, reservation_id, step):
        repo = current_domain.repository_for(Reservation)
        for attempt in range(1, self.settings.conflict_retries + 1):
            reservation = self.get_reservation(reservation_id)
            result = step(reservation)
            if not result:
                return reservation, result
            try:
                repo.add(reservation)
                return reservation, result
            except ExpectedVersionError:
                logger.info(
                    "Reservation version conflict, retrying",
                    reservation_id=str(reservation_id),
                    attempt=attempt,
                )

        raise ConcurrencyConflictError(
            "Reservation kept changing concurrently",
            {"reservation_id": str(reservation_id), "attempts": self.settings.conflict_retries},
        )
