"""Repository for the Order aggregate."""

from ordering.domain import ordering
from ordering.errors import OrderNotFoundError
from ordering.order.order import Order


@ordering.repository(part_of=Order)
class OrderRepository:
    def find_by_order_number(self, order_number: str) -> Order:
        """Return the order with this number or raise OrderNotFoundError."""
        results = self._dao.query.filter(order_number=order_number).all().items
        if not results:
            raise OrderNotFoundError("Order not found", {"order_number": order_number})
        return results[0]

    def find_by_gateway_transaction_id(self, gateway_transaction_id: str) -> Order | None:
        results = self._dao.query.filter(gateway_transaction_id=gateway_transaction_id).all().items
        return results[0] if results else None

    def find_by_buyer(self, buyer_id) -> list[Order]:
        return self._dao.query.filter(buyer_id=str(buyer_id)).all().items

    def find_by_status(self, status: str) -> list[Order]:
        return self._dao.query.filter(status=status).all().items

    def find_awaiting_refund(self) -> list[Order]:
        return self._dao.query.filter(pending_refund__gt=0.0).all().items

    def lookup(self, order_number: str) -> Order | None:
        results = self._dao.query.filter(order_number=order_number).all().items
        return results[0] if results else None
