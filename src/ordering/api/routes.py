"""FastAPI routes for the Ordering domain.

Checkout, payments and returns call the saga services directly; the single
aggregate fulfillment transitions and stock administration go through
Protean commands.
"""

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from protean.utils.globals import current_domain

from ordering.api.schemas import (
    AuthorizationResponse,
    AuthorizePaymentRequest,
    CancelOrderRequest,
    ChangeItemQuantityRequest,
    CheckoutRequest,
    DeliverOrderRequest,
    OrderPlacedResponse,
    RefundRequest,
    RefundResponse,
    RefundSweepResponse,
    RejectReturnRequest,
    RequestReturnRequest,
    ReturnRefundRequest,
    ReturnResponse,
    ShipOrderRequest,
    StatusResponse,
    StockLevelsResponse,
    StockQuantityRequest,
    SweepResponse,
    UpdateItemFulfillmentRequest,
    WebhookResponse,
)
from ordering.checkout.saga import CheckoutSaga
from ordering.domain import ordering
from ordering.gateway import get_gateway
from ordering.inventory.ledger import InventoryLedger
from ordering.inventory.management import InitializeStock, ReceiveStock
from ordering.order.fulfillment import (
    DeliverOrder,
    MarkProcessing,
    ShipOrder,
    UpdateLineItemFulfillment,
)
from ordering.order.lifecycle import OrderLifecycle
from ordering.order.order import Order
from ordering.order.updates import load_order
from ordering.payment.coordinator import PaymentCoordinator
from ordering.payment.webhook import parse_gateway_event
from ordering.returns.manager import ReturnManager


async def _off_loop(operation, *args, **kwargs):
    """Run a service call that may wait on the payment gateway in the threadpool.

    Gateway calls and their retry backoff block, so they never run on the
    event loop. The worker thread gets its own ordering domain context.
    """

    def _run():
        with ordering.domain_context():
            return operation(*args, **kwargs)

    return await run_in_threadpool(_run)


def _refund_response(order) -> RefundResponse:
    return RefundResponse(
        order_number=order.order_number,
        payment_status=order.payment.status,
        refund_amount=order.payment.refund_amount,
        order_status=order.status,
    )


def _return_response(record) -> ReturnResponse:
    return ReturnResponse(
        return_id=str(record.id),
        status=record.status,
        refund_amount=record.refund_amount,
    )


# ---------------------------------------------------------------------------
# Checkout Router
# ---------------------------------------------------------------------------
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])


@checkout_router.post("", status_code=201, response_model=OrderPlacedResponse)
async def checkout(body: CheckoutRequest) -> OrderPlacedResponse:
    order = CheckoutSaga().place_order(
        buyer_id=body.buyer_id,
        shipping_address=body.shipping_address.model_dump(),
        shipping_method=body.shipping_method,
        coupon_code=body.coupon_code,
    )
    return OrderPlacedResponse(
        order_number=order.order_number,
        order_id=str(order.id),
        status=order.status,
        total_amount=order.total_amount,
        currency=order.currency,
    )


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.get("")
async def list_orders(buyer_id: str) -> list[dict]:
    orders = current_domain.repository_for(Order).find_by_buyer(buyer_id)
    return [order.to_document() for order in sorted(orders, key=lambda o: o.placed_at)]


@order_router.get("/{order_number}")
async def get_order(order_number: str) -> dict:
    return load_order(order_number).to_document()


@order_router.get("/{order_number}/history")
async def get_order_history(order_number: str) -> list[dict]:
    return load_order(order_number).history_document()


@order_router.get("/{order_number}/timeline")
async def get_order_timeline(order_number: str) -> list[dict]:
    return load_order(order_number).timeline_document()


@order_router.post("/{order_number}/payment", response_model=AuthorizationResponse)
async def authorize_payment(order_number: str, body: AuthorizePaymentRequest) -> AuthorizationResponse:
    authorization = await _off_loop(PaymentCoordinator().authorize, order_number, body.payment_method)
    return AuthorizationResponse(**authorization.to_dict())


@order_router.post("/{order_number}/refunds", response_model=RefundResponse)
async def refund_order(order_number: str, body: RefundRequest) -> RefundResponse:
    order = await _off_loop(PaymentCoordinator().refund, order_number, amount=body.amount, reason=body.reason)
    return _refund_response(order)


@order_router.put("/{order_number}/processing", response_model=StatusResponse)
async def mark_processing(order_number: str) -> StatusResponse:
    current_domain.process(MarkProcessing(order_number=order_number), asynchronous=False)
    return StatusResponse()


@order_router.put("/{order_number}/ship")
async def ship_order(order_number: str, body: ShipOrderRequest) -> dict:
    command = ShipOrder(
        order_number=order_number,
        carrier=body.carrier,
        tracking_number=body.tracking_number,
    )
    tracking_number = current_domain.process(command, asynchronous=False)
    return {"status": "ok", "tracking_number": tracking_number}


@order_router.put("/{order_number}/deliver", response_model=StatusResponse)
async def deliver_order(order_number: str, body: DeliverOrderRequest) -> StatusResponse:
    command = DeliverOrder(order_number=order_number, delivered_at=body.delivered_at)
    current_domain.process(command, asynchronous=False)
    return StatusResponse()


@order_router.put("/{order_number}/items/{product_id}/fulfillment", response_model=StatusResponse)
async def update_item_fulfillment(
    order_number: str, product_id: str, body: UpdateItemFulfillmentRequest
) -> StatusResponse:
    command = UpdateLineItemFulfillment(
        order_number=order_number,
        product_id=product_id,
        status=body.status,
        vendor_id=body.vendor_id,
    )
    current_domain.process(command, asynchronous=False)
    return StatusResponse()


@order_router.post("/{order_number}/cancel")
async def cancel_order(order_number: str, body: CancelOrderRequest) -> dict:
    order = await _off_loop(OrderLifecycle().cancel, order_number, body.reason, body.actor)
    return {"status": order.status, "payment_status": order.payment.status, "pending_refund": order.pending_refund}


@order_router.put("/{order_number}/items/{product_id}")
async def change_item_quantity(order_number: str, product_id: str, body: ChangeItemQuantityRequest) -> dict:
    order = OrderLifecycle().change_item_quantity(order_number, product_id, body.quantity)
    return order.to_document()


@order_router.delete("/{order_number}/items/{product_id}")
async def remove_item(order_number: str, product_id: str) -> dict:
    order = OrderLifecycle().remove_item(order_number, product_id)
    return order.to_document()


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------
@order_router.post("/{order_number}/returns", status_code=201, response_model=ReturnResponse)
async def request_return(order_number: str, body: RequestReturnRequest) -> ReturnResponse:
    record = ReturnManager().request_return(
        order_number,
        items=[item.model_dump() for item in body.items],
        reason=body.reason,
        description=body.description,
    )
    return _return_response(record)


@order_router.put("/{order_number}/returns/{return_id}/approve", response_model=ReturnResponse)
async def approve_return(order_number: str, return_id: str) -> ReturnResponse:
    return _return_response(ReturnManager().approve_return(order_number, return_id))


@order_router.put("/{order_number}/returns/{return_id}/reject", response_model=ReturnResponse)
async def reject_return(order_number: str, return_id: str, body: RejectReturnRequest) -> ReturnResponse:
    return _return_response(ReturnManager().reject_return(order_number, return_id, note=body.note))


@order_router.put("/{order_number}/returns/{return_id}/receive", response_model=ReturnResponse)
async def receive_return(order_number: str, return_id: str) -> ReturnResponse:
    return _return_response(ReturnManager().receive_return(order_number, return_id))


@order_router.post("/{order_number}/returns/{return_id}/refund", response_model=RefundResponse)
async def refund_return(order_number: str, return_id: str, body: ReturnRefundRequest) -> RefundResponse:
    order = await _off_loop(ReturnManager().issue_refund, order_number, amount=body.amount, return_id=return_id)
    return _refund_response(order)


# ---------------------------------------------------------------------------
# Payment Gateway Webhooks
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("/webhook", response_model=WebhookResponse)
async def gateway_webhook(
    request: Request,
    x_gateway_signature: str = Header(default=""),
) -> WebhookResponse:
    """Receive a signed gateway event.

    Duplicate and out-of-order deliveries are acknowledged with 200 so the
    gateway stops retrying; only unsigned or malformed payloads are refused.
    """
    payload = await request.body()
    if not get_gateway().verify_webhook_signature(payload, x_gateway_signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event = parse_gateway_event(payload)
    outcome = PaymentCoordinator().handle_gateway_event(event)
    return WebhookResponse(outcome=outcome.value)


# ---------------------------------------------------------------------------
# Inventory Router
# ---------------------------------------------------------------------------
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])


@inventory_router.put("/{product_id}", response_model=StockLevelsResponse)
async def initialize_stock(product_id: str, body: StockQuantityRequest) -> StockLevelsResponse:
    current_domain.process(InitializeStock(product_id=product_id, quantity=body.quantity), asynchronous=False)
    return StockLevelsResponse(**InventoryLedger().stock_levels(product_id))


@inventory_router.post("/{product_id}/receive", response_model=StockLevelsResponse)
async def receive_stock(product_id: str, body: StockQuantityRequest) -> StockLevelsResponse:
    current_domain.process(ReceiveStock(product_id=product_id, quantity=body.quantity), asynchronous=False)
    return StockLevelsResponse(**InventoryLedger().stock_levels(product_id))


@inventory_router.get("/{product_id}", response_model=StockLevelsResponse)
async def get_stock(product_id: str) -> StockLevelsResponse:
    return StockLevelsResponse(**InventoryLedger().stock_levels(product_id))


# ---------------------------------------------------------------------------
# Maintenance Router
# ---------------------------------------------------------------------------
maintenance_router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@maintenance_router.post("/reservations/sweep", response_model=SweepResponse)
async def sweep_reservations() -> SweepResponse:
    return SweepResponse(expired=InventoryLedger().sweep_expired())


@maintenance_router.post("/authorizations/sweep", response_model=SweepResponse)
async def sweep_authorizations() -> SweepResponse:
    return SweepResponse(expired=PaymentCoordinator().expire_stale_authorizations())


@maintenance_router.post("/refunds/retry", response_model=RefundSweepResponse)
async def retry_pending_refunds() -> RefundSweepResponse:
    return RefundSweepResponse(refunded=await _off_loop(PaymentCoordinator().retry_pending_refunds))
