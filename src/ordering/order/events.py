"""Domain events for the Order aggregate."""

from protean.fields import DateTime, Float, Identifier, String, Text

from ordering.domain import ordering


@ordering.event(part_of="Order")
class OrderPlaced:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    buyer_id = Identifier(required=True)
    items = Text(required=True)  # JSON list of line item snapshots
    subtotal = Float(required=True)
    discount = Float(required=True)
    tax = Float(required=True)
    shipping_cost = Float(required=True)
    total_amount = Float(required=True)
    currency = String(max_length=3, required=True)
    coupon_code = String(max_length=100)
    placed_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderRepriced:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    items = Text(required=True)
    subtotal = Float(required=True)
    discount = Float(required=True)
    tax = Float(required=True)
    shipping_cost = Float(required=True)
    total_amount = Float(required=True)


@ordering.event(part_of="Order")
class OrderConfirmed:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    confirmed_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderProcessing:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    started_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderShipped:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    carrier = String(max_length=100)
    tracking_number = String(required=True, max_length=255)
    shipped_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderDelivered:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    delivered_at = DateTime(required=True)


@ordering.event(part_of="Order")
class OrderCancelled:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    reason = String(required=True, max_length=500)
    cancelled_by = String(required=True, max_length=50)
    refund_required = String(max_length=5)  # "true" / "false"
    cancelled_at = DateTime(required=True)


@ordering.event(part_of="Order")
class LineItemFulfillmentUpdated:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    product_id = Identifier(required=True)
    previous_status = String(required=True)
    new_status = String(required=True)


@ordering.event(part_of="Order")
class PaymentAuthorizationRequested:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    payment_method = String(required=True, max_length=50)
    gateway_transaction_id = String(max_length=255)
    amount = Float(required=True)
    requested_at = DateTime(required=True)


@ordering.event(part_of="Order")
class PaymentCompleted:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    gateway_transaction_id = String(max_length=255)
    amount = Float(required=True)
    paid_at = DateTime(required=True)


@ordering.event(part_of="Order")
class PaymentFailed:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    gateway_transaction_id = String(max_length=255)
    reason = String(max_length=500)
    failed_at = DateTime(required=True)


@ordering.event(part_of="Order")
class PaymentDisputed:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    dispute_id = String(required=True, max_length=255)
    reason = String(max_length=255)
    amount = Float()
    disputed_at = DateTime(required=True)


@ordering.event(part_of="Order")
class RefundRecorded:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    amount = Float(required=True)
    cumulative_refund = Float(required=True)
    payment_status = String(required=True)
    return_id = Identifier()
    gateway_refund_id = String(max_length=255)
    refunded_at = DateTime(required=True)


@ordering.event(part_of="Order")
class ReturnRequested:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    return_id = Identifier(required=True)
    items = Text(required=True)
    reason = String(required=True, max_length=50)
    requested_at = DateTime(required=True)


@ordering.event(part_of="Order")
class ReturnApproved:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    return_id = Identifier(required=True)
    approved_at = DateTime(required=True)


@ordering.event(part_of="Order")
class ReturnRejected:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    return_id = Identifier(required=True)
    note = String(max_length=500)
    rejected_at = DateTime(required=True)


@ordering.event(part_of="Order")
class ReturnReceived:
    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    return_id = Identifier(required=True)
    items = Text(required=True)
    refund_amount = Float(required=True)
    received_at = DateTime(required=True)
