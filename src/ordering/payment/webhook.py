"""Inbound gateway webhook events.

The gateway posts JSON events signed with a shared secret. Only three event
types change order state; every other type is acknowledged and ignored.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from ordering.errors import OrderingValidationError
from ordering.money import to_decimal


class GatewayEventType(Enum):
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    DISPUTE_CREATED = "charge.dispute.created"


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    event_type: str
    gateway_transaction_id: str
    order_number: str | None = None
    failure_reason: str | None = None
    dispute_id: str | None = None
    dispute_reason: str | None = None
    dispute_amount: Decimal | None = None
    currency: str | None = None

    @property
    def kind(self) -> GatewayEventType | None:
        try:
            return GatewayEventType(self.event_type)
        except ValueError:
            return None


def parse_gateway_event(payload) -> GatewayEvent:
    """Build a GatewayEvent from a raw (bytes, str or dict) webhook payload."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise OrderingValidationError("Webhook payload is not valid JSON") from exc

    try:
        event_type = payload["type"]
        obj = payload["data"]["object"]
    except (KeyError, TypeError) as exc:
        raise OrderingValidationError("Webhook payload is missing type or data.object") from exc

    if event_type == GatewayEventType.DISPUTE_CREATED.value:
        amount = obj.get("amount")
        return GatewayEvent(
            event_id=payload.get("id", ""),
            event_type=event_type,
            gateway_transaction_id=obj.get("payment_intent") or obj.get("charge") or "",
            dispute_id=obj.get("id"),
            dispute_reason=obj.get("reason"),
            # Disputes report amounts in minor units
            dispute_amount=to_decimal(amount) / Decimal(100) if amount is not None else None,
            currency=(obj.get("currency") or "").upper() or None,
        )

    error = obj.get("last_payment_error") or {}
    return GatewayEvent(
        event_id=payload.get("id", ""),
        event_type=event_type,
        gateway_transaction_id=obj.get("id", ""),
        order_number=(obj.get("metadata") or {}).get("order_number"),
        failure_reason=error.get("message"),
    )
