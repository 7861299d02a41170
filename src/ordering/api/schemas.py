"""Pydantic request/response schemas for the Ordering API.

These are external contracts (anti-corruption layer), separate from the
internal services and Protean commands.
"""

from datetime import datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------
class AddressSchema(BaseModel):
    recipient_name: str | None = None
    street: str
    city: str
    state: str | None = None
    postal_code: str
    country: str


class ReturnItemSchema(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    reason: str | None = None
    condition: str | None = None


# ---------------------------------------------------------------------------
# Checkout and payment
# ---------------------------------------------------------------------------
class CheckoutRequest(BaseModel):
    buyer_id: str
    shipping_address: AddressSchema
    shipping_method: str = "standard"
    coupon_code: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "buyer_id": "buyer-001",
                    "shipping_address": {
                        "recipient_name": "Jane Doe",
                        "street": "123 Main St",
                        "city": "Springfield",
                        "state": "IL",
                        "postal_code": "62701",
                        "country": "US",
                    },
                    "shipping_method": "standard",
                    "coupon_code": "SAVE10",
                }
            ]
        }
    }


class AuthorizePaymentRequest(BaseModel):
    payment_method: str

    model_config = {"json_schema_extra": {"examples": [{"payment_method": "credit_card"}]}}


class RefundRequest(BaseModel):
    amount: float | None = Field(default=None, gt=0)
    reason: str = ""


# ---------------------------------------------------------------------------
# Fulfillment and cancellation
# ---------------------------------------------------------------------------
class ShipOrderRequest(BaseModel):
    carrier: str | None = None
    tracking_number: str | None = None


class DeliverOrderRequest(BaseModel):
    delivered_at: datetime | None = None


class UpdateItemFulfillmentRequest(BaseModel):
    status: str
    vendor_id: str | None = None


class CancelOrderRequest(BaseModel):
    reason: str
    actor: str = "Customer"

    model_config = {"json_schema_extra": {"examples": [{"reason": "Changed my mind", "actor": "Customer"}]}}


class ChangeItemQuantityRequest(BaseModel):
    quantity: int = Field(ge=1)


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------
class RequestReturnRequest(BaseModel):
    items: list[ReturnItemSchema] = Field(min_length=1)
    reason: str
    description: str = ""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [{"product_id": "prod-001", "quantity": 1, "condition": "new"}],
                    "reason": "changed_mind",
                    "description": "Bought one too many",
                }
            ]
        }
    }


class RejectReturnRequest(BaseModel):
    note: str | None = None


class ReturnRefundRequest(BaseModel):
    amount: float | None = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------
class StockQuantityRequest(BaseModel):
    quantity: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
class StatusResponse(BaseModel):
    status: str = "ok"


class OrderPlacedResponse(BaseModel):
    order_number: str
    order_id: str
    status: str
    total_amount: float
    currency: str


class AuthorizationResponse(BaseModel):
    order_number: str
    payment_method: str | None = None
    payment_status: str
    order_status: str
    transaction_id: str | None = None
    client_secret: str | None = None
    requires_action: bool = False


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


class ReturnResponse(BaseModel):
    return_id: str
    status: str
    refund_amount: float | None = None


class RefundResponse(BaseModel):
    order_number: str
    payment_status: str
    refund_amount: float
    order_status: str


class StockLevelsResponse(BaseModel):
    product_id: str
    available: int
    reserved: int
    committed: int


class SweepResponse(BaseModel):
    expired: int


class RefundSweepResponse(BaseModel):
    refunded: int
