"""Order operations that span the order and the inventory ledger.

Cancellation releases every reservation of the order (committed ones too, so
cancelling a confirmed order puts its stock back) and refunds a completed
payment. Item changes on a pending, unpaid order reprice the order and move
the matching reservation to the new quantity.
"""

import structlog

from ordering.collaborators import get_notifier
from ordering.collaborators.notifications import notify_quietly
from ordering.errors import (
    ExternalServiceError,
    InsufficientStockError,
    InvalidItemsError,
    InvalidStateError,
    OrderingValidationError,
)
from ordering.inventory.ledger import InventoryLedger
from ordering.inventory.reservation import ReservationStatus
from ordering.money import to_decimal
from ordering.order.order import Actor
from ordering.order.updates import load_order, update_order
from ordering.payment.coordinator import PaymentCoordinator
from ordering.pricing.engine import PricedLine, build_pricing_engine
from ordering.settings import get_settings

logger = structlog.get_logger(__name__)


class OrderLifecycle:
    def __init__(self, ledger=None, coordinator=None, pricing=None, notifier=None, settings=None) -> None:
        self.settings = settings or get_settings()
        self.ledger = ledger or InventoryLedger(self.settings)
        self.coordinator = coordinator or PaymentCoordinator(ledger=self.ledger, settings=self.settings)
        self.pricing = pricing or build_pricing_engine(self.settings)
        self.notifier = notifier or get_notifier()

    # -------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------
    def cancel(self, order_number: str, reason: str, actor=Actor.CUSTOMER):
        """Cancel a pending or confirmed order.

        Returns the cancelled order. A completed payment is refunded in full;
        when the gateway does not accept the refund, the amount stays on
        ``pending_refund`` for ``PaymentCoordinator.retry_pending_refunds``.
        """
        try:
            actor = Actor(actor)
        except ValueError as exc:
            raise OrderingValidationError(f"Invalid actor: {actor}", {"actor": actor}) from exc

        order, refund_required = update_order(order_number, lambda o: o.cancel(reason, actor))

        released = self.ledger.release_for_order(order.id, reason="order_cancelled")
        logger.info(
            "Order cancelled",
            order_number=order_number,
            reason=reason,
            actor=actor.value,
            reservations_released=released,
            refund_required=refund_required,
        )

        if refund_required:
            try:
                order = self.coordinator.refund(
                    order_number,
                    amount=to_decimal(order.pending_refund),
                    reason=f"Order cancelled: {reason}",
                    actor=actor,
                )
            except ExternalServiceError as exc:
                logger.error(
                    "Refund for cancelled order left pending",
                    anomaly="refund_pending",
                    order_number=order_number,
                    amount=order.pending_refund,
                    error=str(exc),
                )

        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            "order_cancelled",
            {
                "order_number": order_number,
                "reason": reason,
                "refunded": refund_required and not order.pending_refund,
            },
        )
        return order

    # -------------------------------------------------------------------
    # Item changes
    # -------------------------------------------------------------------
    def change_item_quantity(self, order_number: str, product_id: str, quantity: int):
        """Set the quantity of one line and reprice the order.

        Raises InsufficientStockError, leaving the order and its reservations
        as they were, when the new quantity cannot be reserved.
        """
        if quantity < 1:
            raise InvalidItemsError("Quantity must be at least 1", {"product_id": str(product_id)})

        order = load_order(order_number)
        self._assert_modifiable(order)
        item = order.item_for(product_id)
        if item.quantity == quantity:
            return order

        totals = self._reprice(order, {str(product_id): quantity})
        previous_quantity = item.quantity

        self._release_product(order, product_id)
        try:
            self.ledger.reserve(product_id, quantity, order.id)
        except InsufficientStockError:
            self._restore_reservation(order, product_id, previous_quantity)
            logger.info(
                "Item change rejected, not enough stock",
                order_number=order_number,
                product_id=str(product_id),
                requested=quantity,
            )
            raise

        try:
            order, _ = update_order(order_number, lambda o: o.reprice(totals))
        except Exception:
            self._release_product(order, product_id)
            self._restore_reservation(order, product_id, previous_quantity)
            raise

        logger.info(
            "Item quantity changed",
            order_number=order_number,
            product_id=str(product_id),
            previous_quantity=previous_quantity,
            quantity=quantity,
            total_amount=order.total_amount,
        )
        return order

    def remove_item(self, order_number: str, product_id: str):
        """Remove a line from a pending, unpaid order. The last line cannot be removed."""
        order = load_order(order_number)
        self._assert_modifiable(order)
        order.item_for(product_id)
        if len(order.items) == 1:
            raise InvalidItemsError(
                "An order must keep at least one item; cancel the order instead",
                {"order_number": order_number, "product_id": str(product_id)},
            )

        totals = self._reprice(order, {str(product_id): 0})
        order, _ = update_order(order_number, lambda o: o.reprice(totals))
        self._release_product(order, product_id)

        logger.info(
            "Item removed",
            order_number=order_number,
            product_id=str(product_id),
            total_amount=order.total_amount,
        )
        return order

    def _assert_modifiable(self, order) -> None:
        if not order.can_modify_items():
            raise InvalidStateError(
                "Items can only change while the order is pending and unpaid",
                {"order_number": order.order_number, "status": order.status, "payment_status": order.payment.status},
            )

    def _reprice(self, order, quantities: dict[str, int]):
        lines = []
        for item in order.items:
            quantity = quantities.get(str(item.product_id), item.quantity)
            if quantity == 0:
                continue
            discount = to_decimal(item.discount) * quantity / item.quantity
            lines.append(
                PricedLine(
                    product_id=str(item.product_id),
                    quantity=quantity,
                    unit_price=to_decimal(item.unit_price),
                    vendor_id=str(item.vendor_id),
                    name=item.name or "",
                    sku=item.sku or "",
                    weight=to_decimal(item.weight) if item.weight is not None else None,
                    requires_shipping=item.requires_shipping,
                    discount=discount,
                )
            )
        return self.pricing.compute_totals(
            lines,
            coupon_code=order.coupon_code,
            shipping_method=order.shipping_method,
            order_number=order.order_number,
        )

    def _release_product(self, order, product_id) -> None:
        for reservation in self.ledger.reservations_for_order(order.id):
            if str(reservation.product_id) == str(product_id) and reservation.status == ReservationStatus.ACTIVE.value:
                self.ledger.release(reservation.id, reason="item_changed")

    def _restore_reservation(self, order, product_id, quantity) -> None:
        try:
            self.ledger.reserve(product_id, quantity, order.id)
        except InsufficientStockError:
            logger.error(
                "Could not restore reservation after a failed item change",
                anomaly="reservation_lost",
                order_number=order.order_number,
                product_id=str(product_id),
                quantity=quantity,
            )
