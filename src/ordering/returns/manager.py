"""Return/refund manager.

Returns move through ``requested → approved | rejected → received → refunded``.
Stock goes back to the sellable pool only when ``receive_return`` confirms the
goods physically arrived; requesting or approving a return never touches
inventory. Refunds are delegated to the payment coordinator, which is the only
writer of the payment record.
"""

import structlog

from ordering.collaborators import get_notifier
from ordering.collaborators.notifications import notify_quietly
from ordering.inventory.ledger import InventoryLedger
from ordering.order.order import Actor
from ordering.order.updates import load_order, update_order
from ordering.payment.coordinator import PaymentCoordinator
from ordering.settings import get_settings

logger = structlog.get_logger(__name__)


class ReturnManager:
    def __init__(self, ledger=None, coordinator=None, notifier=None, settings=None) -> None:
        self.settings = settings or get_settings()
        self.ledger = ledger or InventoryLedger(self.settings)
        self.coordinator = coordinator or PaymentCoordinator(ledger=self.ledger, settings=self.settings)
        self.notifier = notifier or get_notifier()

    def request_return(self, order_number: str, items: list[dict], reason: str, description: str = "", now=None):
        """Open a return for delivered units and return the new return record.

        Raises:
            ReturnWindowExpired: The order was delivered too long ago.
            InvalidItemsError: An item is not on the order, or more units are
                requested than are still returnable.
        """
        order, record = update_order(
            order_number,
            lambda o: o.request_return(
                items,
                reason,
                description=description or None,
                window_days=self.settings.return_window_days,
                now=now,
            ),
        )
        logger.info(
            "Return requested",
            order_number=order_number,
            return_id=str(record.id),
            reason=record.reason,
            items=record.requested_items,
        )
        self._notify(order, "return_requested", return_id=str(record.id))
        return record

    def approve_return(self, order_number: str, return_id: str):
        order, _ = update_order(order_number, lambda o: o.approve_return(return_id))
        logger.info("Return approved", order_number=order_number, return_id=str(return_id))
        self._notify(order, "return_approved", return_id=str(return_id))
        return order.return_for(return_id)

    def reject_return(self, order_number: str, return_id: str, note: str | None = None):
        order, _ = update_order(order_number, lambda o: o.reject_return(return_id, note=note))
        logger.info("Return rejected", order_number=order_number, return_id=str(return_id), note=note)
        self._notify(order, "return_rejected", return_id=str(return_id), note=note)
        return order.return_for(return_id)

    def receive_return(self, order_number: str, return_id: str):
        """Confirm the goods are back, restock them and compute the refund owed."""
        order, record = update_order(order_number, lambda o: o.receive_return(return_id))

        for entry in record.requested_items:
            self.ledger.restock(entry["product_id"], int(entry["quantity"]), order_id=order.id)

        logger.info(
            "Return received",
            order_number=order_number,
            return_id=str(return_id),
            refund_amount=record.refund_amount,
        )
        self._notify(order, "return_received", return_id=str(return_id), refund_amount=record.refund_amount)
        return record

    def issue_refund(self, order_number: str, amount=None, return_id: str | None = None, reason: str = ""):
        """Refund money to the buyer.

        With a ``return_id`` and no ``amount``, the amount computed when the
        return was received is refunded. Without either, everything still
        refundable is refunded.

        Raises:
            RefundExceedsTotalError: The cumulative refund would exceed the
                order total.
        """
        if return_id is not None:
            record = load_order(order_number).refundable_return(return_id)
            if amount is None:
                amount = record.refund_amount
            reason = reason or f"Return {return_id}"

        return self.coordinator.refund(
            order_number,
            amount=amount,
            reason=reason,
            return_id=return_id,
            actor=Actor.ADMIN,
        )

    def _notify(self, order, event_type, **payload) -> None:
        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            event_type,
            {"order_number": order.order_number, **payload},
        )
