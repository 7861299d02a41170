"""Order aggregate: the durable record of a purchase.

The Order owns its line items, the embedded payment record and its return
records. Nothing outside the aggregate mutates them; every change goes through
a transition method below, and every status change appends to both
``status_history`` and ``timeline`` inside the same atomic change.

State Machine:
    PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED
    PENDING / CONFIRMED → CANCELLED
    DELIVERED → RETURN_REQUESTED → RETURN_APPROVED → RETURNED → REFUNDED
    RETURN_REQUESTED → DELIVERED / RETURNED   (return rejected)
    RETURNED → RETURN_REQUESTED               (another return)
    DELIVERED → REFUNDED                      (full refund without return)

Payment sub-state (forward only):
    PENDING → PROCESSING → COMPLETED → PARTIALLY_REFUNDED → REFUNDED
    PENDING / PROCESSING → FAILED
"""

import json
import secrets
import string
from datetime import timedelta
from decimal import Decimal
from enum import Enum

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import (
    Boolean,
    DateTime,
    Float,
    HasMany,
    Identifier,
    Integer,
    String,
    Text,
    ValueObject,
)

from ordering.domain import ordering
from ordering.errors import (
    BackwardTransitionError,
    InvalidItemsError,
    InvalidRefundAmountError,
    InvalidStateError,
    InvariantViolation,
    OrderingValidationError,
    RefundExceedsTotalError,
    ReturnNotFoundError,
    ReturnWindowExpired,
)
from ordering.money import ZERO, quantize, same_amount, to_decimal, to_float
from ordering.order.events import (
    LineItemFulfillmentUpdated,
    OrderCancelled,
    OrderConfirmed,
    OrderDelivered,
    OrderPlaced,
    OrderProcessing,
    OrderRepriced,
    OrderShipped,
    PaymentAuthorizationRequested,
    PaymentCompleted,
    PaymentDisputed,
    PaymentFailed,
    RefundRecorded,
    ReturnApproved,
    ReturnReceived,
    ReturnRejected,
    ReturnRequested,
)
from ordering.timeutils import as_utc, utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    RETURN_REQUESTED = "Return_Requested"
    RETURN_APPROVED = "Return_Approved"
    RETURNED = "Returned"
    REFUNDED = "Refunded"
    CANCELLED = "Cancelled"


class PaymentStatus(Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    PARTIALLY_REFUNDED = "Partially_Refunded"
    REFUNDED = "Refunded"


class PaymentMethod(Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"
    WALLET = "wallet"


class ItemFulfillmentStatus(Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PREPARING = "Preparing"
    READY = "Ready"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class ReturnStatus(Enum):
    REQUESTED = "Requested"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    RECEIVED = "Received"
    REFUNDED = "Refunded"


class ReturnReason(Enum):
    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    CHANGED_MIND = "changed_mind"
    DUPLICATE = "duplicate"
    OTHER = "other"


class ItemCondition(Enum):
    NEW = "new"
    USED = "used"
    DAMAGED = "damaged"


class Actor(Enum):
    CUSTOMER = "Customer"
    VENDOR = "Vendor"
    ADMIN = "Admin"
    SYSTEM = "System"
    GATEWAY = "Gateway"


class TimelineKind(Enum):
    STATUS_CHANGED = "status_changed"
    ITEMS_CHANGED = "items_changed"
    ITEM_FULFILLMENT = "item_fulfillment"
    PAYMENT = "payment"
    DISPUTE = "dispute"
    REFUND = "refund"
    RETURN = "return"


_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURN_REQUESTED, OrderStatus.REFUNDED},
    OrderStatus.RETURN_REQUESTED: {
        OrderStatus.RETURN_APPROVED,
        OrderStatus.DELIVERED,  # Rejected, nothing returned yet
        OrderStatus.RETURNED,  # Rejected after an earlier return
    },
    OrderStatus.RETURN_APPROVED: {OrderStatus.RETURNED},
    OrderStatus.RETURNED: {OrderStatus.RETURN_REQUESTED, OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.REFUNDED: set(),  # Terminal
}

_CANCELLABLE_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}

_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

PAID_STATES = {
    PaymentStatus.COMPLETED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
}

_ITEM_TRANSITIONS = {
    ItemFulfillmentStatus.PENDING: {ItemFulfillmentStatus.CONFIRMED, ItemFulfillmentStatus.CANCELLED},
    ItemFulfillmentStatus.CONFIRMED: {
        ItemFulfillmentStatus.PREPARING,
        ItemFulfillmentStatus.READY,
        ItemFulfillmentStatus.SHIPPED,
        ItemFulfillmentStatus.CANCELLED,
    },
    ItemFulfillmentStatus.PREPARING: {ItemFulfillmentStatus.READY, ItemFulfillmentStatus.SHIPPED},
    ItemFulfillmentStatus.READY: {ItemFulfillmentStatus.SHIPPED},
    ItemFulfillmentStatus.SHIPPED: {ItemFulfillmentStatus.DELIVERED},
    ItemFulfillmentStatus.DELIVERED: {ItemFulfillmentStatus.RETURNED},
    ItemFulfillmentStatus.CANCELLED: set(),
    ItemFulfillmentStatus.RETURNED: set(),
}

# Item states a vendor may move its own items into
VENDOR_ITEM_STATES = {ItemFulfillmentStatus.PREPARING, ItemFulfillmentStatus.READY}

_OPEN_RETURN_STATES = {ReturnStatus.REQUESTED, ReturnStatus.APPROVED}

_BASE36 = string.digits + string.ascii_uppercase


def _parse(enum_cls, value, field):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise OrderingValidationError(f"Invalid {field}: {value}", {field: value}) from exc


def generate_order_number(now=None) -> str:
    """Human-readable order number: ORD-<epoch millis>-<6 base36 chars>."""
    now = now or utcnow()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ORD-{int(now.timestamp() * 1000)}-{suffix}"


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@ordering.value_object(part_of="Order")
class ShippingAddress:
    """Where the order ships to, captured at checkout and never updated."""

    recipient_name = String(max_length=255)
    street = String(required=True, max_length=255)
    city = String(required=True, max_length=100)
    state = String(max_length=100)
    postal_code = String(required=True, max_length=20)
    country = String(required=True, max_length=100)


_PAYMENT_FIELDS = (
    "method",
    "status",
    "gateway_transaction_id",
    "client_secret",
    "amount",
    "authorized_at",
    "paid_at",
    "refund_amount",
    "failure_reason",
    "dispute_id",
    "dispute_reason",
    "dispute_amount",
    "dispute_currency",
    "disputed_at",
)


@ordering.value_object(part_of="Order")
class PaymentRecord:
    """Payment state embedded in the order.

    The payment coordinator is the only writer. ``gateway_transaction_id`` is
    set once and then used to recognise repeated webhook deliveries.
    """

    method = String(max_length=50)
    status = String(max_length=50, default=PaymentStatus.PENDING.value)
    gateway_transaction_id = String(max_length=255)
    client_secret = String(max_length=255)
    amount = Float(default=0.0)
    authorized_at = DateTime()
    paid_at = DateTime()
    refund_amount = Float(default=0.0)
    failure_reason = String(max_length=500)
    dispute_id = String(max_length=255)
    dispute_reason = String(max_length=255)
    dispute_amount = Float()
    dispute_currency = String(max_length=3)
    disputed_at = DateTime()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@ordering.entity(part_of="Order")
class OrderLineItem:
    """A purchased product, with name, sku and price copied from the catalog at checkout."""

    product_id = Identifier(required=True)
    name = String(max_length=255)
    sku = String(max_length=50)
    variant = String(max_length=100)
    vendor_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    unit_price = Float(required=True, min_value=0.0)
    discount = Float(default=0.0)
    line_total = Float(required=True)
    weight = Float()
    requires_shipping = Boolean(default=True)
    fulfillment_status = String(
        choices=ItemFulfillmentStatus,
        default=ItemFulfillmentStatus.PENDING.value,
    )


@ordering.entity(part_of="Order")
class StatusChange:
    sequence = Integer(required=True)
    status = String(required=True, max_length=50)
    previous_status = String(max_length=50)
    actor = String(required=True, max_length=50)
    note = String(max_length=500)
    occurred_at = DateTime(required=True)


@ordering.entity(part_of="Order")
class TimelineEntry:
    sequence = Integer(required=True)
    kind = String(required=True, max_length=50)
    status = String(max_length=50)
    actor = String(max_length=50)
    description = String(max_length=500)
    data = Text()  # JSON
    occurred_at = DateTime(required=True)


@ordering.entity(part_of="Order")
class ReturnRecord:
    reason = String(choices=ReturnReason, required=True)
    description = String(max_length=1000)
    items = Text(required=True)  # JSON list of {product_id, quantity, reason, condition}
    status = String(choices=ReturnStatus, default=ReturnStatus.REQUESTED.value)
    refund_amount = Float(default=0.0)
    note = String(max_length=500)
    requested_at = DateTime()
    approved_at = DateTime()
    rejected_at = DateTime()
    received_at = DateTime()
    refunded_at = DateTime()

    @property
    def requested_items(self) -> list[dict]:
        return json.loads(self.items) if self.items else []


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@ordering.aggregate
class Order:
    order_number = String(required=True, max_length=50, unique=True)
    buyer_id = Identifier(required=True)
    items = HasMany(OrderLineItem)
    subtotal = Float(default=0.0)
    discount = Float(default=0.0)
    tax = Float(default=0.0)
    shipping_cost = Float(default=0.0)
    total_amount = Float(default=0.0)
    currency = String(max_length=3, default="USD")
    coupon_code = String(max_length=100)
    vendor_breakdown = Text()  # JSON list of per-vendor shares
    shipping_address = ValueObject(ShippingAddress)
    shipping_method = String(max_length=20, default="standard")
    status = String(choices=OrderStatus, default=OrderStatus.PENDING.value)
    status_history = HasMany(StatusChange)
    timeline = HasMany(TimelineEntry)
    payment = ValueObject(PaymentRecord)
    gateway_transaction_id = String(max_length=255)
    returns = HasMany(ReturnRecord)
    carrier = String(max_length=100)
    tracking_number = String(max_length=255)
    estimated_delivery = DateTime()
    cancellation_reason = String(max_length=500)
    cancelled_by = String(max_length=50)
    pending_refund = Float(default=0.0)
    placed_at = DateTime()
    confirmed_at = DateTime()
    shipped_at = DateTime()
    delivered_at = DateTime()
    cancelled_at = DateTime()
    updated_at = DateTime()

    # -------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------
    @invariant.post
    def total_equals_components(self):
        expected = (
            to_decimal(self.subtotal)
            + to_decimal(self.tax)
            + to_decimal(self.shipping_cost)
            - to_decimal(self.discount)
        )
        if not same_amount(self.total_amount, expected):
            raise ValidationError({"total_amount": ["Total must equal subtotal + tax + shipping - discount"]})

    @invariant.post
    def line_totals_add_up_to_subtotal(self):
        if not self.items:
            return
        line_sum = ZERO
        for item in self.items:
            line_total = to_decimal(item.line_total)
            if line_total < ZERO:
                raise ValidationError({"items": ["Line total cannot be negative"]})
            line_sum += line_total
        if not same_amount(line_sum, self.subtotal):
            raise ValidationError({"subtotal": ["Subtotal must equal the sum of line totals"]})

    @invariant.post
    def refund_never_exceeds_total(self):
        if self.payment is None:
            return
        if quantize(self.payment.refund_amount) > quantize(self.total_amount):
            raise ValidationError({"payment": ["Refunded amount cannot exceed the order total"]})
        if quantize(self.payment.refund_amount) + quantize(self.pending_refund or 0) > quantize(self.total_amount):
            raise ValidationError({"pending_refund": ["Pending refund cannot exceed the refundable amount"]})

    @invariant.post
    def status_history_matches_timeline(self):
        if not self.status_history:
            return
        status_entries = [e for e in self.timeline if e.kind == TimelineKind.STATUS_CHANGED.value]
        if len(status_entries) != len(self.status_history):
            raise ValidationError({"timeline": ["Every status change must appear in the timeline"]})
        latest = max(self.status_history, key=lambda change: change.sequence)
        if latest.status != self.status:
            raise ValidationError({"status_history": ["Latest status change must match the order status"]})

    @invariant.post
    def transaction_id_matches_payment(self):
        if self.payment is None:
            return
        if (self.payment.gateway_transaction_id or None) != (self.gateway_transaction_id or None):
            raise ValidationError({"gateway_transaction_id": ["Must match the payment record"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def place(cls, order_id, order_number, buyer_id, totals, shipping_address, estimated_delivery=None):
        """Create a pending order from priced checkout data.

        Args:
            order_id: Pre-generated identity (reservations already reference it).
            order_number: Human-readable number, see ``generate_order_number``.
            buyer_id: The buyer placing the order.
            totals: ``Totals`` from the pricing engine; its lines become the items.
            shipping_address: Dict with street, city, state, postal_code, country.
            estimated_delivery: Optional estimated delivery datetime.
        """
        now = utcnow()
        order = cls(
            id=str(order_id),
            order_number=order_number,
            buyer_id=str(buyer_id),
            currency=totals.currency,
            coupon_code=totals.coupon_code,
            shipping_address=ShippingAddress(**shipping_address),
            shipping_method=totals.shipping_method,
            status=OrderStatus.PENDING.value,
            payment=PaymentRecord(
                status=PaymentStatus.PENDING.value,
                amount=to_float(totals.total),
                refund_amount=0.0,
            ),
            estimated_delivery=estimated_delivery,
            placed_at=now,
            updated_at=now,
        )

        with atomic_change(order):
            for line in totals.lines:
                order.add_items(_line_item_from(line))
            order._set_amounts(totals)
            order._append_status(OrderStatus.PENDING, None, Actor.CUSTOMER, "Order placed", now)

        order.raise_(
            OrderPlaced(
                order_id=str(order.id),
                order_number=order_number,
                buyer_id=str(buyer_id),
                items=json.dumps([_line_snapshot(item) for item in order.items]),
                subtotal=order.subtotal,
                discount=order.discount,
                tax=order.tax,
                shipping_cost=order.shipping_cost,
                total_amount=order.total_amount,
                currency=order.currency,
                coupon_code=order.coupon_code,
                placed_at=now,
            )
        )
        return order

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.payment.status)

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_STATES

    @property
    def refundable_amount(self) -> Decimal:
        return quantize(self.total_amount) - quantize(self.payment.refund_amount)

    def item_for(self, product_id):
        item = next((i for i in self.items if str(i.product_id) == str(product_id)), None)
        if item is None:
            raise InvalidItemsError("Item is not part of this order", {"product_id": str(product_id)})
        return item

    def return_for(self, return_id):
        record = next((r for r in self.returns if str(r.id) == str(return_id)), None)
        if record is None:
            raise ReturnNotFoundError("Return not found", {"return_id": str(return_id)})
        return record

    def refundable_return(self, return_id):
        """Return the record if it is received and not refunded yet."""
        record = self.return_for(return_id)
        if record.status != ReturnStatus.RECEIVED.value:
            raise InvalidStateError(
                f"Return is {record.status}; only received returns are refunded",
                {"order_number": self.order_number, "return_id": str(return_id), "status": record.status},
            )
        return record

    def _assert_can_transition(self, target_status):
        current = self.order_status
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidStateError(
                f"Cannot transition from {current.value} to {target_status.value}",
                {"order_number": self.order_number, "status": current.value, "target": target_status.value},
            )

    def _assert_payment_can_move(self, target_status):
        current = self.payment_status
        if target_status not in _PAYMENT_TRANSITIONS.get(current, set()):
            raise BackwardTransitionError(
                f"Payment cannot move from {current.value} to {target_status.value}",
                {"order_number": self.order_number, "payment_status": current.value, "target": target_status.value},
            )

    def _append_status(self, target, previous, actor, note, now):
        sequence = len(self.status_history) + 1
        self.add_status_history(
            StatusChange(
                sequence=sequence,
                status=target.value,
                previous_status=previous.value if previous else None,
                actor=actor.value,
                note=note,
                occurred_at=now,
            )
        )
        self._record(TimelineKind.STATUS_CHANGED, note or target.value, actor, now, status=target.value)
        self.status = target.value

    def _change_status(self, target, actor, note=None, now=None):
        """Move to ``target`` and append to both logs. Call inside ``atomic_change``."""
        now = now or utcnow()
        self._append_status(target, self.order_status, actor, note, now)
        self.updated_at = now

    def _record(self, kind, description, actor, now, status=None, data=None):
        self.add_timeline(
            TimelineEntry(
                sequence=len(self.timeline) + 1,
                kind=kind.value,
                status=status,
                actor=actor.value if actor else None,
                description=description,
                data=json.dumps(data) if data is not None else None,
                occurred_at=now,
            )
        )

    def _set_amounts(self, totals):
        self.subtotal = to_float(totals.subtotal)
        self.discount = to_float(totals.discount)
        self.tax = to_float(totals.tax)
        self.shipping_cost = to_float(totals.shipping_cost)
        self.total_amount = to_float(totals.total)
        self.vendor_breakdown = json.dumps([share.to_dict() for share in totals.vendor_breakdown])

    def _replace_payment(self, **changes):
        values = {name: getattr(self.payment, name) for name in _PAYMENT_FIELDS}
        values.update(changes)
        self.payment = PaymentRecord(**values)
        self.gateway_transaction_id = values["gateway_transaction_id"]

    def _cascade_items(self, target, from_states=None):
        for item in self.items:
            current = ItemFulfillmentStatus(item.fulfillment_status)
            if from_states is not None and current not in from_states:
                continue
            if target in _ITEM_TRANSITIONS[current]:
                item.fulfillment_status = target.value

    # -------------------------------------------------------------------
    # Item changes (pending, unpaid orders only)
    # -------------------------------------------------------------------
    def can_modify_items(self) -> bool:
        return self.order_status == OrderStatus.PENDING and self.payment_status == PaymentStatus.PENDING

    def reprice(self, totals, actor=Actor.CUSTOMER):
        """Replace line quantities and amounts with freshly computed totals."""
        if not self.can_modify_items():
            raise InvalidStateError(
                "Items can only change while the order is pending and unpaid",
                {"order_number": self.order_number, "status": self.status, "payment_status": self.payment.status},
            )

        lines = {str(line.product_id): line for line in totals.lines}
        now = utcnow()
        with atomic_change(self):
            for item in list(self.items):
                line = lines.get(str(item.product_id))
                if line is None:
                    self.remove_items(item)
                elif line.quantity != item.quantity:
                    self.remove_items(item)
                    self.add_items(_line_item_from(line, variant=item.variant))
            self._set_amounts(totals)
            self._replace_payment(amount=self.total_amount)
            self.updated_at = now
            self._record(
                TimelineKind.ITEMS_CHANGED,
                "Order items updated",
                actor,
                now,
                data={"items": {pid: line.quantity for pid, line in lines.items()}, "total": self.total_amount},
            )

        self.raise_(
            OrderRepriced(
                order_id=str(self.id),
                order_number=self.order_number,
                items=json.dumps([_line_snapshot(item) for item in self.items]),
                subtotal=self.subtotal,
                discount=self.discount,
                tax=self.tax,
                shipping_cost=self.shipping_cost,
                total_amount=self.total_amount,
            )
        )

    # -------------------------------------------------------------------
    # Lifecycle transitions
    # -------------------------------------------------------------------
    def confirm(self, actor=Actor.SYSTEM, note="Order confirmed"):
        self._assert_can_transition(OrderStatus.CONFIRMED)
        now = utcnow()
        with atomic_change(self):
            self._change_status(OrderStatus.CONFIRMED, actor, note, now)
            self.confirmed_at = now
            self._cascade_items(ItemFulfillmentStatus.CONFIRMED)

        self.raise_(
            OrderConfirmed(
                order_id=str(self.id),
                order_number=self.order_number,
                confirmed_at=now,
            )
        )

    def mark_processing(self, actor=Actor.VENDOR):
        self._assert_can_transition(OrderStatus.PROCESSING)
        now = utcnow()
        with atomic_change(self):
            self._change_status(OrderStatus.PROCESSING, actor, "Order is being prepared", now)

        self.raise_(
            OrderProcessing(
                order_id=str(self.id),
                order_number=self.order_number,
                started_at=now,
            )
        )

    def ship(self, tracking_number=None, carrier=None, actor=Actor.VENDOR):
        self._assert_can_transition(OrderStatus.SHIPPED)
        now = utcnow()
        tracking_number = tracking_number or _generate_tracking_number(now)
        with atomic_change(self):
            self._change_status(OrderStatus.SHIPPED, actor, f"Shipped with tracking {tracking_number}", now)
            self.tracking_number = tracking_number
            self.carrier = carrier
            self.shipped_at = now
            self._cascade_items(ItemFulfillmentStatus.SHIPPED)

        self.raise_(
            OrderShipped(
                order_id=str(self.id),
                order_number=self.order_number,
                carrier=carrier,
                tracking_number=tracking_number,
                shipped_at=now,
            )
        )

    def deliver(self, actor=Actor.SYSTEM, delivered_at=None):
        """Record delivery. Cash-on-delivery payments complete here."""
        self._assert_can_transition(OrderStatus.DELIVERED)
        now = delivered_at or utcnow()
        collect_cash = (
            self.payment.method == PaymentMethod.CASH_ON_DELIVERY.value
            and self.payment_status == PaymentStatus.PENDING
        )
        with atomic_change(self):
            self._change_status(OrderStatus.DELIVERED, actor, "Order delivered", now)
            self.delivered_at = now
            self._cascade_items(ItemFulfillmentStatus.DELIVERED)
            if collect_cash:
                self._replace_payment(status=PaymentStatus.COMPLETED.value, paid_at=now)
                self._record(TimelineKind.PAYMENT, "Cash collected on delivery", actor, now)

        self.raise_(
            OrderDelivered(
                order_id=str(self.id),
                order_number=self.order_number,
                delivered_at=now,
            )
        )
        if collect_cash:
            self.raise_(
                PaymentCompleted(
                    order_id=str(self.id),
                    order_number=self.order_number,
                    amount=self.total_amount,
                    paid_at=now,
                )
            )

    def cancel(self, reason, actor=Actor.CUSTOMER) -> bool:
        """Cancel the order and return whether a refund must follow.

        Allowed from PENDING and CONFIRMED. A completed payment does not block
        cancellation: the refundable amount is recorded as ``pending_refund``
        in the same change, and stays there until a refund is recorded. An
        authorization still in flight is marked failed so a late gateway
        confirmation is not applied.
        """
        if self.order_status not in _CANCELLABLE_STATES:
            raise InvalidStateError(
                f"Order cannot be cancelled in {self.status} state",
                {"order_number": self.order_number, "status": self.status},
            )

        refund_required = self.is_paid and self.refundable_amount > ZERO
        now = utcnow()
        with atomic_change(self):
            self._change_status(OrderStatus.CANCELLED, actor, f"Cancelled: {reason}", now)
            self.cancellation_reason = reason
            self.cancelled_by = actor.value
            self.cancelled_at = now
            self._cascade_items(ItemFulfillmentStatus.CANCELLED)
            if self.payment_status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                self._replace_payment(status=PaymentStatus.FAILED.value, failure_reason=f"Order cancelled: {reason}")
            if refund_required:
                self.pending_refund = float(self.refundable_amount)
                self._record(
                    TimelineKind.REFUND,
                    f"Refund of {self.refundable_amount} pending",
                    actor,
                    now,
                    data={"amount": str(self.refundable_amount)},
                )

        self.raise_(
            OrderCancelled(
                order_id=str(self.id),
                order_number=self.order_number,
                reason=reason,
                cancelled_by=actor.value,
                refund_required="true" if refund_required else "false",
                cancelled_at=now,
            )
        )
        return refund_required

    def update_item_fulfillment(self, product_id, new_status, vendor_id=None):
        """Let a vendor move its own item to preparing or ready."""
        target = _parse(ItemFulfillmentStatus, new_status, "status")
        if target not in VENDOR_ITEM_STATES:
            raise InvalidStateError(
                f"Item status {target.value} is set by the order lifecycle",
                {"product_id": str(product_id)},
            )
        if self.order_status not in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
            raise InvalidStateError(
                "Items can only be prepared on confirmed orders",
                {"order_number": self.order_number, "status": self.status},
            )

        item = self.item_for(product_id)
        if vendor_id is not None and str(item.vendor_id) != str(vendor_id):
            raise InvalidItemsError("Item belongs to another vendor", {"product_id": str(product_id)})

        current = ItemFulfillmentStatus(item.fulfillment_status)
        if target not in _ITEM_TRANSITIONS[current]:
            raise InvalidStateError(
                f"Item cannot move from {current.value} to {target.value}",
                {"product_id": str(product_id)},
            )

        now = utcnow()
        with atomic_change(self):
            item.fulfillment_status = target.value
            self.updated_at = now
            self._record(
                TimelineKind.ITEM_FULFILLMENT,
                f"Item {item.name or item.product_id} is {target.value}",
                Actor.VENDOR,
                now,
                data={"product_id": str(product_id), "status": target.value},
            )

        self.raise_(
            LineItemFulfillmentUpdated(
                order_id=str(self.id),
                order_number=self.order_number,
                product_id=str(product_id),
                previous_status=current.value,
                new_status=target.value,
            )
        )

    # -------------------------------------------------------------------
    # Payment (written by the payment coordinator only)
    # -------------------------------------------------------------------
    def record_authorization(self, method, gateway_transaction_id=None, client_secret=None):
        method = _parse(PaymentMethod, method, "payment_method").value
        if self.order_status != OrderStatus.PENDING:
            raise InvalidStateError(
                "Payment can only be authorized for pending orders",
                {"order_number": self.order_number, "status": self.status},
            )
        existing = self.payment.gateway_transaction_id
        if existing and gateway_transaction_id and existing != gateway_transaction_id:
            raise InvariantViolation(
                "Gateway transaction id is already set",
                {"order_number": self.order_number, "gateway_transaction_id": existing},
            )

        now = utcnow()
        changes = {"method": method, "authorized_at": now}
        if gateway_transaction_id:
            self._assert_payment_can_move(PaymentStatus.PROCESSING)
            changes.update(
                status=PaymentStatus.PROCESSING.value,
                gateway_transaction_id=gateway_transaction_id,
                client_secret=client_secret,
            )

        with atomic_change(self):
            self._replace_payment(**changes)
            self.updated_at = now
            self._record(
                TimelineKind.PAYMENT,
                f"Payment authorization requested ({method})",
                Actor.CUSTOMER,
                now,
                data={"gateway_transaction_id": gateway_transaction_id},
            )

        self.raise_(
            PaymentAuthorizationRequested(
                order_id=str(self.id),
                order_number=self.order_number,
                payment_method=method,
                gateway_transaction_id=gateway_transaction_id,
                amount=self.total_amount,
                requested_at=now,
            )
        )

    def complete_payment(self, gateway_transaction_id=None, paid_at=None) -> bool:
        """Mark the payment completed and confirm a pending order.

        Returns True when the order moved to CONFIRMED.
        """
        self._assert_payment_can_move(PaymentStatus.COMPLETED)
        confirm = self.order_status == OrderStatus.PENDING
        if not confirm and self.order_status != OrderStatus.CONFIRMED:
            raise InvalidStateError(
                f"Payment cannot complete for an order in {self.status} state",
                {"order_number": self.order_number, "status": self.status},
            )

        now = paid_at or utcnow()
        transaction_id = self.payment.gateway_transaction_id or gateway_transaction_id
        with atomic_change(self):
            self._replace_payment(
                status=PaymentStatus.COMPLETED.value,
                gateway_transaction_id=transaction_id,
                paid_at=now,
            )
            self._record(TimelineKind.PAYMENT, "Payment completed", Actor.GATEWAY, now)
            if confirm:
                self._change_status(OrderStatus.CONFIRMED, Actor.GATEWAY, "Payment confirmed", now)
                self.confirmed_at = now
                self._cascade_items(ItemFulfillmentStatus.CONFIRMED)

        self.raise_(
            PaymentCompleted(
                order_id=str(self.id),
                order_number=self.order_number,
                gateway_transaction_id=transaction_id,
                amount=self.total_amount,
                paid_at=now,
            )
        )
        if confirm:
            self.raise_(
                OrderConfirmed(
                    order_id=str(self.id),
                    order_number=self.order_number,
                    confirmed_at=now,
                )
            )
        return confirm

    def fail_payment(self, reason, gateway_transaction_id=None):
        """Mark the payment failed and cancel the order."""
        self._assert_payment_can_move(PaymentStatus.FAILED)
        now = utcnow()
        transaction_id = self.payment.gateway_transaction_id or gateway_transaction_id
        cancel = self.order_status in _CANCELLABLE_STATES
        with atomic_change(self):
            self._replace_payment(
                status=PaymentStatus.FAILED.value,
                gateway_transaction_id=transaction_id,
                failure_reason=reason,
            )
            self._record(TimelineKind.PAYMENT, f"Payment failed: {reason}", Actor.GATEWAY, now)
            if cancel:
                self._change_status(OrderStatus.CANCELLED, Actor.SYSTEM, "Cancelled: payment_failed", now)
                self.cancellation_reason = "payment_failed"
                self.cancelled_by = Actor.SYSTEM.value
                self.cancelled_at = now
                self._cascade_items(ItemFulfillmentStatus.CANCELLED)

        self.raise_(
            PaymentFailed(
                order_id=str(self.id),
                order_number=self.order_number,
                gateway_transaction_id=transaction_id,
                reason=reason,
                failed_at=now,
            )
        )
        if cancel:
            self.raise_(
                OrderCancelled(
                    order_id=str(self.id),
                    order_number=self.order_number,
                    reason="payment_failed",
                    cancelled_by=Actor.SYSTEM.value,
                    refund_required="false",
                    cancelled_at=now,
                )
            )

    def record_dispute(self, dispute_id, reason=None, amount=None, currency=None) -> bool:
        """Store dispute details. Returns False when this dispute is already recorded."""
        if self.payment.dispute_id == dispute_id:
            return False

        now = utcnow()
        with atomic_change(self):
            self._replace_payment(
                dispute_id=dispute_id,
                dispute_reason=reason,
                dispute_amount=to_float(amount) if amount is not None else None,
                dispute_currency=currency,
                disputed_at=now,
            )
            self._record(
                TimelineKind.DISPUTE,
                f"Payment disputed: {reason or 'unspecified'}",
                Actor.GATEWAY,
                now,
                data={"dispute_id": dispute_id},
            )

        self.raise_(
            PaymentDisputed(
                order_id=str(self.id),
                order_number=self.order_number,
                dispute_id=dispute_id,
                reason=reason,
                amount=to_float(amount) if amount is not None else None,
                disputed_at=now,
            )
        )
        return True

    def record_refund(self, amount, return_id=None, gateway_refund_id=None, reason=None, actor=Actor.ADMIN):
        """Add ``amount`` to the cumulative refund.

        The payment becomes REFUNDED when the cumulative refund reaches the
        total, PARTIALLY_REFUNDED otherwise. A fully refunded delivered or
        returned order moves to REFUNDED.
        """
        amount = quantize(amount)
        if amount <= ZERO:
            raise InvalidRefundAmountError("Refund amount must be positive", {"amount": str(amount)})
        if not self.is_paid:
            raise InvalidStateError(
                "Only completed payments can be refunded",
                {"order_number": self.order_number, "payment_status": self.payment.status},
            )

        cumulative = quantize(self.payment.refund_amount) + amount
        total = quantize(self.total_amount)
        if cumulative > total:
            raise RefundExceedsTotalError(
                "Refund would exceed the order total",
                {
                    "order_number": self.order_number,
                    "requested": str(amount),
                    "already_refunded": str(quantize(self.payment.refund_amount)),
                    "total_amount": str(total),
                },
            )

        target = PaymentStatus.REFUNDED if cumulative == total else PaymentStatus.PARTIALLY_REFUNDED
        self._assert_payment_can_move(target)

        record = self.refundable_return(return_id) if return_id else None
        move_order = target == PaymentStatus.REFUNDED and OrderStatus.REFUNDED in _VALID_TRANSITIONS[self.order_status]

        now = utcnow()
        with atomic_change(self):
            self._replace_payment(status=target.value, refund_amount=float(cumulative))
            if self.pending_refund:
                self.pending_refund = float(max(ZERO, quantize(self.pending_refund) - amount))
            self._record(
                TimelineKind.REFUND,
                f"Refund of {amount} issued" + (f": {reason}" if reason else ""),
                actor,
                now,
                data={"amount": str(amount), "return_id": str(return_id) if return_id else None},
            )
            if record is not None:
                record.status = ReturnStatus.REFUNDED.value
                record.refunded_at = now
            if move_order:
                self._change_status(OrderStatus.REFUNDED, actor, "Order fully refunded", now)
            self.updated_at = now

        self.raise_(
            RefundRecorded(
                order_id=str(self.id),
                order_number=self.order_number,
                amount=float(amount),
                cumulative_refund=float(cumulative),
                payment_status=target.value,
                return_id=str(return_id) if return_id else None,
                gateway_refund_id=gateway_refund_id,
                refunded_at=now,
            )
        )
        return target

    # -------------------------------------------------------------------
    # Returns
    # -------------------------------------------------------------------
    def returned_quantities(self) -> dict[str, int]:
        """Quantities per product claimed by returns that were not rejected."""
        quantities: dict[str, int] = {}
        for record in self.returns:
            if record.status == ReturnStatus.REJECTED.value:
                continue
            for entry in record.requested_items:
                product_id = str(entry["product_id"])
                quantities[product_id] = quantities.get(product_id, 0) + int(entry["quantity"])
        return quantities

    def has_open_return(self) -> bool:
        return any(ReturnStatus(record.status) in _OPEN_RETURN_STATES for record in self.returns)

    def request_return(self, items, reason, description=None, window_days=30, now=None):
        """Open a return for some or all delivered units.

        Args:
            items: List of dicts with product_id, quantity and optional
                   reason and condition.
            reason: One of ``ReturnReason``.
            window_days: Days after delivery during which returns are accepted.
        """
        now = now or utcnow()
        reason = _parse(ReturnReason, reason, "reason").value
        if self.order_status not in (OrderStatus.DELIVERED, OrderStatus.RETURNED):
            raise InvalidStateError(
                "Only delivered orders can be returned",
                {"order_number": self.order_number, "status": self.status},
            )
        if self.has_open_return():
            raise InvalidStateError(
                "Order already has a return in progress",
                {"order_number": self.order_number},
            )

        delivered_at = as_utc(self.delivered_at)
        if delivered_at is None or as_utc(now) - delivered_at > timedelta(days=window_days):
            raise ReturnWindowExpired(
                f"Return window of {window_days} days has passed",
                {"order_number": self.order_number, "delivered_at": str(self.delivered_at)},
            )

        requested = self._validate_return_items(items)
        now = as_utc(now)
        record = ReturnRecord(
            reason=reason,
            description=description,
            items=json.dumps(requested),
            status=ReturnStatus.REQUESTED.value,
            requested_at=now,
        )
        with atomic_change(self):
            self.add_returns(record)
            self._change_status(OrderStatus.RETURN_REQUESTED, Actor.CUSTOMER, f"Return requested: {reason}", now)

        self.raise_(
            ReturnRequested(
                order_id=str(self.id),
                order_number=self.order_number,
                return_id=str(record.id),
                items=record.items,
                reason=reason,
                requested_at=now,
            )
        )
        return record

    def _validate_return_items(self, items) -> list[dict]:
        if not items:
            raise InvalidItemsError("A return needs at least one item", {"order_number": self.order_number})

        already = self.returned_quantities()
        merged: dict[str, dict] = {}
        for entry in items:
            product_id = str(entry["product_id"])
            quantity = int(entry["quantity"])
            if quantity < 1:
                raise InvalidItemsError("Return quantity must be at least 1", {"product_id": product_id})
            current = merged.setdefault(
                product_id,
                {
                    "product_id": product_id,
                    "quantity": 0,
                    "reason": _parse(ReturnReason, entry.get("reason") or ReturnReason.OTHER.value, "reason").value,
                    "condition": _parse(ItemCondition, entry.get("condition") or ItemCondition.NEW.value, "condition").value,
                },
            )
            current["quantity"] += quantity

        for product_id, entry in merged.items():
            item = self.item_for(product_id)
            remaining = item.quantity - already.get(product_id, 0)
            if entry["quantity"] > remaining:
                raise InvalidItemsError(
                    "Return quantity exceeds what can still be returned",
                    {"product_id": product_id, "requested": entry["quantity"], "returnable": remaining},
                )
        return list(merged.values())

    def approve_return(self, return_id, actor=Actor.ADMIN):
        record = self.return_for(return_id)
        if record.status != ReturnStatus.REQUESTED.value:
            raise InvalidStateError(
                f"Return is {record.status} and cannot be approved",
                {"return_id": str(return_id)},
            )
        self._assert_can_transition(OrderStatus.RETURN_APPROVED)

        now = utcnow()
        with atomic_change(self):
            record.status = ReturnStatus.APPROVED.value
            record.approved_at = now
            self._change_status(OrderStatus.RETURN_APPROVED, actor, "Return approved", now)

        self.raise_(
            ReturnApproved(
                order_id=str(self.id),
                order_number=self.order_number,
                return_id=str(return_id),
                approved_at=now,
            )
        )

    def reject_return(self, return_id, note=None, actor=Actor.ADMIN):
        record = self.return_for(return_id)
        if record.status != ReturnStatus.REQUESTED.value:
            raise InvalidStateError(
                f"Return is {record.status} and cannot be rejected",
                {"return_id": str(return_id)},
            )

        earlier_returns = any(
            r.status in (ReturnStatus.RECEIVED.value, ReturnStatus.REFUNDED.value) for r in self.returns
        )
        target = OrderStatus.RETURNED if earlier_returns else OrderStatus.DELIVERED
        self._assert_can_transition(target)

        now = utcnow()
        with atomic_change(self):
            record.status = ReturnStatus.REJECTED.value
            record.rejected_at = now
            record.note = note
            self._change_status(target, actor, f"Return rejected: {note or 'no reason given'}", now)

        self.raise_(
            ReturnRejected(
                order_id=str(self.id),
                order_number=self.order_number,
                return_id=str(return_id),
                note=note,
                rejected_at=now,
            )
        )

    def receive_return(self, return_id, actor=Actor.ADMIN):
        """Confirm the goods are back and compute the refund owed for them."""
        record = self.return_for(return_id)
        if record.status != ReturnStatus.APPROVED.value:
            raise InvalidStateError(
                f"Return is {record.status} and cannot be received",
                {"return_id": str(return_id)},
            )
        self._assert_can_transition(OrderStatus.RETURNED)

        refund_amount = self.refund_for_items(record.requested_items)
        now = utcnow()
        with atomic_change(self):
            record.status = ReturnStatus.RECEIVED.value
            record.received_at = now
            record.refund_amount = float(refund_amount)
            self._change_status(OrderStatus.RETURNED, actor, "Returned items received", now)
            returned = self.returned_quantities()
            for item in self.items:
                if returned.get(str(item.product_id), 0) >= item.quantity:
                    if ItemFulfillmentStatus.RETURNED in _ITEM_TRANSITIONS[ItemFulfillmentStatus(item.fulfillment_status)]:
                        item.fulfillment_status = ItemFulfillmentStatus.RETURNED.value

        self.raise_(
            ReturnReceived(
                order_id=str(self.id),
                order_number=self.order_number,
                return_id=str(return_id),
                items=record.items,
                refund_amount=float(refund_amount),
                received_at=now,
            )
        )
        return record

    def refund_for_items(self, entries) -> Decimal:
        """Refund owed for returned units.

        Each unit is refunded at its unit price less its share of the line
        discount. The order-level coupon discount and the tax are apportioned
        by the returned amount's share of the subtotal. Shipping is not
        refunded. The result never exceeds what is still refundable.
        """
        item_amount = ZERO
        for entry in entries:
            item = self.item_for(entry["product_id"])
            quantity = Decimal(int(entry["quantity"]))
            line_discount = to_decimal(item.discount) * quantity / Decimal(item.quantity)
            item_amount += to_decimal(item.unit_price) * quantity - line_discount

        subtotal = to_decimal(self.subtotal)
        share = item_amount / subtotal if subtotal > ZERO else ZERO
        amount = item_amount - to_decimal(self.discount) * share + to_decimal(self.tax) * share
        return min(quantize(amount), self.refundable_amount)

    # -------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------
    def to_document(self) -> dict:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "buyer_id": str(self.buyer_id),
            "status": self.status,
            "items": [_line_snapshot(item) for item in self.items],
            "subtotal": self.subtotal,
            "discount": self.discount,
            "tax": self.tax,
            "shipping_cost": self.shipping_cost,
            "total_amount": self.total_amount,
            "currency": self.currency,
            "coupon_code": self.coupon_code,
            "vendor_breakdown": json.loads(self.vendor_breakdown) if self.vendor_breakdown else [],
            "shipping_method": self.shipping_method,
            "shipping_address": _address_dict(self.shipping_address),
            "payment": _payment_dict(self.payment),
            "returns": [_return_dict(record) for record in self.returns],
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "estimated_delivery": _iso(self.estimated_delivery),
            "cancellation_reason": self.cancellation_reason,
            "pending_refund": self.pending_refund,
            "placed_at": _iso(self.placed_at),
            "delivered_at": _iso(self.delivered_at),
            "status_history": self.history_document(),
        }

    def history_document(self) -> list[dict]:
        return [
            {
                "sequence": change.sequence,
                "status": change.status,
                "previous_status": change.previous_status,
                "actor": change.actor,
                "note": change.note,
                "occurred_at": _iso(change.occurred_at),
            }
            for change in sorted(self.status_history, key=lambda change: change.sequence)
        ]

    def timeline_document(self) -> list[dict]:
        return [
            {
                "sequence": entry.sequence,
                "kind": entry.kind,
                "status": entry.status,
                "actor": entry.actor,
                "description": entry.description,
                "data": json.loads(entry.data) if entry.data else None,
                "occurred_at": _iso(entry.occurred_at),
            }
            for entry in sorted(self.timeline, key=lambda entry: entry.sequence)
        ]


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------
def _line_item_from(line, variant=None) -> OrderLineItem:
    return OrderLineItem(
        product_id=str(line.product_id),
        name=line.name,
        sku=line.sku,
        variant=variant,
        vendor_id=str(line.vendor_id),
        quantity=line.quantity,
        unit_price=to_float(line.unit_price),
        discount=to_float(line.discount),
        line_total=to_float(line.line_total),
        weight=float(line.weight) if line.weight is not None else None,
        requires_shipping=line.requires_shipping,
    )


def _line_snapshot(item) -> dict:
    return {
        "product_id": str(item.product_id),
        "name": item.name,
        "sku": item.sku,
        "vendor_id": str(item.vendor_id),
        "quantity": item.quantity,
        "unit_price": item.unit_price,
        "discount": item.discount,
        "line_total": item.line_total,
        "fulfillment_status": item.fulfillment_status,
    }


def _generate_tracking_number(now) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"TRK{int(now.timestamp() * 1000)}{suffix}"


def _iso(value):
    return value.isoformat() if value else None


def _address_dict(address) -> dict | None:
    if address is None:
        return None
    return {
        "recipient_name": address.recipient_name,
        "street": address.street,
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "country": address.country,
    }


def _payment_dict(payment) -> dict | None:
    if payment is None:
        return None
    document = {name: getattr(payment, name) for name in _PAYMENT_FIELDS if name != "client_secret"}
    for name in ("authorized_at", "paid_at", "disputed_at"):
        document[name] = _iso(document[name])
    return document


def _return_dict(record) -> dict:
    return {
        "id": str(record.id),
        "reason": record.reason,
        "description": record.description,
        "items": record.requested_items,
        "status": record.status,
        "refund_amount": record.refund_amount,
        "note": record.note,
        "requested_at": _iso(record.requested_at),
        "received_at": _iso(record.received_at),
        "refunded_at": _iso(record.refunded_at),
    }
