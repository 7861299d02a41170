"""Payment coordinator: the only writer of ``Order.payment``.

Drives authorization against the gateway, correlates gateway webhook events
back to orders, issues refunds and fails authorizations that were never
confirmed.

Webhook handling is the idempotency boundary of the checkout saga. Every event
is applied through ``update_order``, which re-reads the order on each attempt,
so the decision to apply, skip or ignore is always taken against the state
that was actually persisted:

    payment already in the event's state        → DUPLICATE (acknowledged)
    event would move the payment backwards      → IGNORED   (logged anomaly)
    no order for the transaction id             → UNKNOWN_ORDER
    otherwise                                   → APPLIED

Inventory commit and release run only for APPLIED outcomes, except that a
duplicate success re-runs the (idempotent) commit so that a crash between
saving the order and committing stock heals on redelivery.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

import structlog
from protean.utils.globals import current_domain

from ordering.collaborators import get_notifier
from ordering.collaborators.notifications import notify_quietly
from ordering.errors import (
    ExternalServiceError,
    GatewayUnavailableError,
    InvalidRefundAmountError,
    InvalidStateError,
    OrderingValidationError,
    PaymentFailedError,
    RefundExceedsTotalError,
)
from ordering.gateway import get_gateway
from ordering.inventory.ledger import InventoryLedger
from ordering.inventory.reservation import ReservationStatus
from ordering.money import ZERO, quantize
from ordering.order.order import (
    PAID_STATES,
    Actor,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from ordering.order.updates import Unchanged, load_order, update_order
from ordering.payment.retry import call_with_backoff
from ordering.payment.webhook import GatewayEvent, GatewayEventType
from ordering.settings import get_settings
from ordering.timeutils import as_utc, utcnow
from ordering.utils.logging import add_context

logger = structlog.get_logger(__name__)


class CallbackOutcome(Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_ORDER = "unknown_order"


@dataclass(frozen=True)
class Authorization:
    order_number: str
    payment_method: str
    payment_status: str
    order_status: str
    transaction_id: str | None = None
    client_secret: str | None = None
    requires_action: bool = False

    @classmethod
    def of(cls, order: Order, requires_action: bool = False) -> "Authorization":
        return cls(
            order_number=order.order_number,
            payment_method=order.payment.method,
            payment_status=order.payment.status,
            order_status=order.status,
            transaction_id=order.payment.gateway_transaction_id,
            client_secret=order.payment.client_secret,
            requires_action=requires_action,
        )

    def to_dict(self) -> dict:
        return {
            "order_number": self.order_number,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "order_status": self.order_status,
            "transaction_id": self.transaction_id,
            "client_secret": self.client_secret,
            "requires_action": self.requires_action,
        }


class PaymentCoordinator:
    def __init__(self, gateway=None, ledger=None, notifier=None, settings=None, sleep=time.sleep) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway or get_gateway()
        self.ledger = ledger or InventoryLedger(self.settings)
        self.notifier = notifier or get_notifier()
        self.sleep = sleep

    # -------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------
    def authorize(self, order_number: str, payment_method: str) -> Authorization:
        """Start payment for a pending order.

        Cash on delivery confirms the order immediately. Every other method
        creates a gateway intent; a synchronous success confirms the order
        here, otherwise confirmation arrives through a webhook.

        Raises:
            PaymentFailedError: The gateway declined the payment.
            GatewayUnavailableError: The gateway kept timing out.
        """
        try:
            method = PaymentMethod(payment_method)
        except ValueError as exc:
            raise OrderingValidationError(
                f"Unknown payment method: {payment_method}",
                {"payment_method": payment_method},
            ) from exc

        add_context(order_number=order_number)
        order = load_order(order_number)

        if order.payment_status == PaymentStatus.PROCESSING and order.payment.gateway_transaction_id:
            logger.info("Authorization already in flight", order_number=order_number)
            return Authorization.of(order, requires_action=True)
        if order.order_status != OrderStatus.PENDING or order.payment_status != PaymentStatus.PENDING:
            raise InvalidStateError(
                "Order is not awaiting payment",
                {"order_number": order_number, "status": order.status, "payment_status": order.payment.status},
            )

        if method == PaymentMethod.CASH_ON_DELIVERY:
            return self._authorize_offline(order_number, method)

        try:
            intent = call_with_backoff(
                lambda: self.gateway.create_payment_intent(
                    amount=quantize(order.total_amount),
                    currency=order.currency,
                    method_token=method.value,
                    idempotency_key=f"{order_number}:authorize",
                    metadata={"order_number": order_number, "order_id": str(order.id)},
                ),
                max_attempts=self.settings.gateway_max_attempts,
                base_delay=self.settings.gateway_backoff_seconds,
                sleep=self.sleep,
                description="create_payment_intent",
            )
        except GatewayUnavailableError:
            self._fail(order_number, "gateway_unavailable")
            raise

        if intent.status == "failed":
            reason = intent.failure_reason or "Payment declined"
            self._fail(order_number, reason, intent.id)
            raise PaymentFailedError(reason, {"order_number": order_number, "transaction_id": intent.id})

        def mutation(o):
            # The gateway's webhook may already have settled this intent
            if o.payment.gateway_transaction_id == intent.id and o.payment_status != PaymentStatus.PENDING:
                return Unchanged(o.payment_status)
            o.record_authorization(method.value, intent.id, intent.client_secret)
            return None

        order, result = update_order(order_number, mutation)
        if isinstance(result, Unchanged):
            logger.info(
                "Payment settled by webhook before authorization returned",
                order_number=order_number,
                transaction_id=intent.id,
                payment_status=result.reason.value,
            )
            if result.reason == PaymentStatus.FAILED:
                raise PaymentFailedError(
                    order.payment.failure_reason or "Payment declined",
                    {"order_number": order_number, "transaction_id": intent.id},
                )
            return Authorization.of(order)

        until = utcnow() + timedelta(minutes=self.settings.payment_auth_window_minutes)
        self.ledger.extend_for_order(order.id, until)
        logger.info(
            "Payment authorization requested",
            order_number=order_number,
            transaction_id=intent.id,
            payment_method=method.value,
            requires_action=intent.requires_action,
        )

        if intent.status == "succeeded":
            self.handle_gateway_event(
                GatewayEvent(
                    event_id=f"sync:{intent.id}",
                    event_type=GatewayEventType.PAYMENT_SUCCEEDED.value,
                    gateway_transaction_id=intent.id,
                    order_number=order_number,
                )
            )
            order = load_order(order_number)

        return Authorization.of(order, requires_action=intent.requires_action)

    def _authorize_offline(self, order_number, method) -> Authorization:
        def mutation(order):
            order.record_authorization(method.value)
            order.confirm(actor=Actor.SYSTEM, note="Confirmed for cash on delivery")

        order, _ = update_order(order_number, mutation)
        self._commit_stock(order)
        logger.info("Order confirmed for offline payment", order_number=order_number, payment_method=method.value)
        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            "order_confirmed",
            {"order_number": order_number, "payment_method": method.value},
        )
        return Authorization.of(order)

    # -------------------------------------------------------------------
    # Gateway callbacks
    # -------------------------------------------------------------------
    def handle_gateway_event(self, event: GatewayEvent) -> CallbackOutcome:
        """Apply a gateway event to its order at most once."""
        add_context(gateway_transaction_id=event.gateway_transaction_id, gateway_event_id=event.event_id)
        kind = event.kind
        if kind is None:
            logger.info("Gateway event type not handled", event_type=event.event_type)
            return CallbackOutcome.IGNORED

        order = self._find_order(event)
        if order is None:
            logger.warning(
                "Gateway event for unknown transaction",
                anomaly="unknown_transaction",
                event_type=event.event_type,
                transaction_id=event.gateway_transaction_id,
            )
            return CallbackOutcome.UNKNOWN_ORDER

        add_context(order_number=order.order_number)
        if kind == GatewayEventType.PAYMENT_SUCCEEDED:
            return self._apply_success(order.order_number, event)
        if kind == GatewayEventType.PAYMENT_FAILED:
            return self._apply_failure(order.order_number, event)
        return self._apply_dispute(order.order_number, event)

    def _find_order(self, event: GatewayEvent) -> Order | None:
        repo = current_domain.repository_for(Order)
        if event.gateway_transaction_id:
            order = repo.find_by_gateway_transaction_id(event.gateway_transaction_id)
            if order is not None:
                return order
        if event.order_number:
            return repo.lookup(event.order_number)
        return None

    def _apply_success(self, order_number, event) -> CallbackOutcome:
        def mutation(order):
            if order.payment_status in PAID_STATES:
                return Unchanged(CallbackOutcome.DUPLICATE)
            if order.payment_status == PaymentStatus.FAILED or order.order_status != OrderStatus.PENDING:
                return Unchanged(CallbackOutcome.IGNORED)
            known = order.payment.gateway_transaction_id
            if known and known != event.gateway_transaction_id:
                return Unchanged(CallbackOutcome.IGNORED)
            order.complete_payment(event.gateway_transaction_id)
            return CallbackOutcome.APPLIED

        order, result = update_order(order_number, mutation)
        outcome = result.reason if isinstance(result, Unchanged) else result

        if outcome == CallbackOutcome.DUPLICATE:
            logger.info(
                "Duplicate payment confirmation acknowledged",
                anomaly="duplicate_event",
                order_number=order_number,
                transaction_id=event.gateway_transaction_id,
            )
            self._commit_stock(order)
            return outcome
        if outcome == CallbackOutcome.IGNORED:
            logger.warning(
                "Payment confirmation ignored",
                anomaly="backward_transition",
                order_number=order_number,
                order_status=order.status,
                payment_status=order.payment.status,
                transaction_id=event.gateway_transaction_id,
            )
            if order.order_status == OrderStatus.CANCELLED:
                logger.error(
                    "Payment captured for a cancelled order, manual refund required",
                    anomaly="late_capture",
                    order_number=order_number,
                    transaction_id=event.gateway_transaction_id,
                )
            return outcome

        committed = self._commit_stock(order)
        logger.info(
            "Payment confirmed",
            order_number=order_number,
            transaction_id=event.gateway_transaction_id,
            reservations_committed=committed,
        )
        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            "order_confirmed",
            {"order_number": order_number, "total_amount": order.total_amount},
        )
        return outcome

    def _apply_failure(self, order_number, event) -> CallbackOutcome:
        def mutation(order):
            if order.payment_status == PaymentStatus.FAILED:
                return Unchanged(CallbackOutcome.DUPLICATE)
            if order.payment_status in PAID_STATES:
                return Unchanged(CallbackOutcome.IGNORED)
            order.fail_payment(event.failure_reason or "Payment failed", event.gateway_transaction_id)
            return CallbackOutcome.APPLIED

        order, result = update_order(order_number, mutation)
        outcome = result.reason if isinstance(result, Unchanged) else result

        if outcome == CallbackOutcome.DUPLICATE:
            logger.info(
                "Duplicate payment failure acknowledged",
                anomaly="duplicate_event",
                order_number=order_number,
                transaction_id=event.gateway_transaction_id,
            )
            return outcome
        if outcome == CallbackOutcome.IGNORED:
            logger.warning(
                "Payment failure after completion ignored",
                anomaly="backward_transition",
                order_number=order_number,
                payment_status=order.payment.status,
                transaction_id=event.gateway_transaction_id,
            )
            return outcome

        self._after_failure(order, event.failure_reason)
        return outcome

    def _apply_dispute(self, order_number, event) -> CallbackOutcome:
        def mutation(order):
            recorded = order.record_dispute(
                event.dispute_id,
                reason=event.dispute_reason,
                amount=event.dispute_amount,
                currency=event.currency,
            )
            return CallbackOutcome.APPLIED if recorded else Unchanged(CallbackOutcome.DUPLICATE)

        order, result = update_order(order_number, mutation)
        if isinstance(result, Unchanged):
            logger.info("Duplicate dispute acknowledged", anomaly="duplicate_event", dispute_id=event.dispute_id)
            return result.reason

        logger.warning(
            "Payment disputed",
            order_number=order_number,
            dispute_id=event.dispute_id,
            reason=event.dispute_reason,
            amount=str(event.dispute_amount) if event.dispute_amount is not None else None,
        )
        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            "payment_disputed",
            {"order_number": order_number, "dispute_id": event.dispute_id},
        )
        return result

    def _commit_stock(self, order) -> int:
        committed = self.ledger.commit_for_order(order.id)
        lapsed = [
            r for r in self.ledger.reservations_for_order(order.id) if r.status == ReservationStatus.EXPIRED.value
        ]
        if lapsed:
            logger.error(
                "Order confirmed after its reservations expired",
                anomaly="reservation_lapsed",
                order_number=order.order_number,
                products=[str(r.product_id) for r in lapsed],
            )
        return committed

    # -------------------------------------------------------------------
    # Compensation
    # -------------------------------------------------------------------
    def _fail(self, order_number, reason, transaction_id=None) -> bool:
        """Mark the payment failed, cancel the order and release its stock."""

        def mutation(order):
            if order.payment_status in PAID_STATES or order.payment_status == PaymentStatus.FAILED:
                return Unchanged()
            order.fail_payment(reason, transaction_id)
            return True

        order, result = update_order(order_number, mutation)
        if isinstance(result, Unchanged):
            return False
        self._after_failure(order, reason)
        return True

    def _after_failure(self, order, reason) -> None:
        released = self.ledger.release_for_order(order.id, reason="payment_failed")
        logger.warning(
            "Payment failed, order cancelled",
            order_number=order.order_number,
            reason=reason,
            reservations_released=released,
        )
        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            "payment_failed",
            {"order_number": order.order_number, "reason": reason},
        )

    def expire_stale_authorizations(self, as_of=None) -> int:
        """Fail pending orders whose payment was not confirmed within the window."""
        as_of = as_of or utcnow()
        cutoff = as_utc(as_of) - timedelta(minutes=self.settings.payment_auth_window_minutes)
        pending = current_domain.repository_for(Order).find_by_status(OrderStatus.PENDING.value)

        expired = 0
        for order in pending:
            if order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                continue
            started = as_utc(order.payment.authorized_at or order.placed_at)
            if started is None or started > cutoff:
                continue
            try:
                if self._fail(order.order_number, "authorization_expired"):
                    expired += 1
            except Exception as exc:
                logger.error(
                    "Could not expire stale authorization",
                    order_number=order.order_number,
                    error=str(exc),
                )

        logger.info("Stale authorization sweep complete", expired_count=expired)
        return expired

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def refund(self, order_number: str, amount=None, reason: str = "", return_id=None, actor=Actor.ADMIN):
        """Refund ``amount`` (default: everything still refundable) of a paid order.

        The amount is checked against the order before the gateway is called,
        and again by the aggregate when the refund is recorded.
        """
        order = load_order(order_number)
        if return_id is not None:
            order.refundable_return(return_id)
        amount = order.refundable_amount if amount is None else quantize(amount)
        if amount <= ZERO:
            raise InvalidRefundAmountError("Refund amount must be positive", {"amount": str(amount)})
        if not order.is_paid:
            raise InvalidStateError(
                "Only completed payments can be refunded",
                {"order_number": order_number, "payment_status": order.payment.status},
            )
        if quantize(order.payment.refund_amount) + amount > quantize(order.total_amount):
            logger.error(
                "Refund would exceed order total",
                anomaly="refund_exceeds_total",
                order_number=order_number,
                requested=str(amount),
                already_refunded=order.payment.refund_amount,
                total_amount=order.total_amount,
            )
            raise RefundExceedsTotalError(
                "Refund would exceed the order total",
                {
                    "order_number": order_number,
                    "requested": str(amount),
                    "already_refunded": str(quantize(order.payment.refund_amount)),
                    "total_amount": str(quantize(order.total_amount)),
                },
            )

        gateway_refund_id = None
        transaction_id = order.payment.gateway_transaction_id
        if transaction_id and order.payment.method != PaymentMethod.CASH_ON_DELIVERY.value:
            result = call_with_backoff(
                lambda: self.gateway.refund(transaction_id, amount),
                max_attempts=self.settings.gateway_max_attempts,
                base_delay=self.settings.gateway_backoff_seconds,
                sleep=self.sleep,
                description="refund",
            )
            if not result.success:
                raise ExternalServiceError(
                    result.failure_reason or "Gateway rejected the refund",
                    {"order_number": order_number, "amount": str(amount)},
                )
            gateway_refund_id = result.refund_id

        order, payment_status = update_order(
            order_number,
            lambda o: o.record_refund(
                amount,
                return_id=return_id,
                gateway_refund_id=gateway_refund_id,
                reason=reason,
                actor=actor,
            ),
        )
        logger.info(
            "Refund issued",
            order_number=order_number,
            amount=str(amount),
            cumulative_refund=order.payment.refund_amount,
            payment_status=payment_status.value,
            gateway_refund_id=gateway_refund_id,
        )
        notify_quietly(
            self.notifier,
            str(order.buyer_id),
            "refund_issued",
            {"order_number": order_number, "amount": str(amount), "payment_status": payment_status.value},
        )
        return order

    def retry_pending_refunds(self) -> int:
        """Refund cancelled orders whose refund the gateway did not accept yet."""
        awaiting = current_domain.repository_for(Order).find_awaiting_refund()

        refunded = 0
        for order in awaiting:
            try:
                self.refund(
                    order.order_number,
                    amount=quantize(order.pending_refund),
                    reason="Order cancelled: refund retried",
                    actor=Actor.SYSTEM,
                )
                refunded += 1
            except ExternalServiceError as exc:
                logger.warning(
                    "Pending refund still not accepted",
                    anomaly="refund_pending",
                    order_number=order.order_number,
                    amount=order.pending_refund,
                    error=str(exc),
                )

        logger.info("Pending refund sweep complete", refunded_count=refunded, awaiting_count=len(awaiting))
        return refunded
