"""StockItem aggregate: per-product stock counters.

    available:  units that can still be reserved
    reserved:   units held by active reservations
    committed:  units sold (reservation committed on payment)

Every movement keeps the three counters non-negative. Concurrent writers are
detected through the aggregate version: a stale copy fails to save and the
ledger retries on a fresh read.
"""

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, Identifier, Integer

from ordering.domain import ordering
from ordering.errors import InsufficientStockError
from ordering.inventory.events import StockInitialized, StockReceived, StockReturned
from ordering.timeutils import utcnow


@ordering.aggregate
class StockItem:
    product_id = Identifier(identifier=True)
    available = Integer(default=0)
    reserved = Integer(default=0)
    committed = Integer(default=0)
    updated_at = DateTime()

    @invariant.post
    def counters_are_never_negative(self):
        for name in ("available", "reserved", "committed"):
            if (getattr(self, name) or 0) < 0:
                raise ValidationError({name: [f"{name} stock cannot be negative"]})

    @classmethod
    def initialize(cls, product_id, quantity):
        if quantity < 0:
            raise ValidationError({"quantity": ["Initial stock cannot be negative"]})
        now = utcnow()
        stock = cls(
            product_id=product_id,
            available=quantity,
            reserved=0,
            committed=0,
            updated_at=now,
        )
        stock.raise_(
            StockInitialized(
                product_id=str(product_id),
                available=quantity,
                initialized_at=now,
            )
        )
        return stock

    def hold(self, quantity):
        """Move ``quantity`` units from available to reserved, or refuse."""
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})
        if self.available < quantity:
            raise InsufficientStockError(
                "Insufficient stock",
                {
                    "product_id": str(self.product_id),
                    "requested": quantity,
                    "available": self.available,
                },
            )
        with atomic_change(self):
            self.available -= quantity
            self.reserved += quantity
            self.updated_at = utcnow()

    def unhold(self, quantity):
        with atomic_change(self):
            self.reserved -= quantity
            self.available += quantity
            self.updated_at = utcnow()

    def sell(self, quantity):
        with atomic_change(self):
            self.reserved -= quantity
            self.committed += quantity
            self.updated_at = utcnow()

    def unsell(self, quantity):
        """Return committed units to the pool (cancellation after commit)."""
        with atomic_change(self):
            self.committed -= quantity
            self.available += quantity
            self.updated_at = utcnow()

    def receive(self, quantity):
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})
        with atomic_change(self):
            self.available += quantity
            self.updated_at = utcnow()
        self.raise_(
            StockReceived(
                product_id=str(self.product_id),
                quantity=quantity,
                new_available=self.available,
            )
        )

    def receive_return(self, quantity, order_id=None):
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})
        with atomic_change(self):
            self.committed -= min(quantity, self.committed)
            self.available += quantity
            self.updated_at = utcnow()
        self.raise_(
            StockReturned(
                product_id=str(self.product_id),
                quantity=quantity,
                order_id=str(order_id) if order_id else None,
                new_available=self.available,
            )
        )
