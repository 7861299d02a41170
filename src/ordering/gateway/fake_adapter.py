"""Configurable fake payment gateway for development and testing.

Simulates a card gateway without external calls. It can be told to decline,
to time out a number of times before answering, or to confirm payments
synchronously instead of asking for customer action. Webhook payloads are
signed with HMAC-SHA256 the way hosted gateways sign them, and ``sign`` /
``build_event`` let tests produce authentic deliveries.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from uuid import uuid4

from ordering.gateway.port import GatewayTimeout, PaymentGateway, PaymentIntent, RefundResult


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self, webhook_secret: str = "whsec_test") -> None:
        self.webhook_secret = webhook_secret
        self.calls: list[dict] = []
        self._intents: dict[str, PaymentIntent] = {}
        self.configure()

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Card declined",
        requires_action: bool = True,
        timeouts: int = 0,
        refunds_succeed: bool = True,
    ) -> None:
        """Configure gateway behavior at runtime.

        Args:
            should_succeed: Decline new intents when False.
            requires_action: When False, intents succeed synchronously.
            timeouts: Number of upcoming calls that raise GatewayTimeout.
            refunds_succeed: Fail refunds when False.
        """
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.requires_action = requires_action
        self.timeouts = timeouts
        self.refunds_succeed = refunds_succeed

    def _maybe_time_out(self, method: str) -> None:
        if self.timeouts > 0:
            self.timeouts -= 1
            self.calls.append({"method": method, "outcome": "timeout"})
            raise GatewayTimeout(f"{method} timed out")

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        method_token: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> PaymentIntent:
        self._maybe_time_out("create_payment_intent")
        self.calls.append(
            {
                "method": "create_payment_intent",
                "amount": amount,
                "currency": currency,
                "method_token": method_token,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )

        if idempotency_key in self._intents:
            return self._intents[idempotency_key]

        intent_id = f"pi_{uuid4().hex[:16]}"
        if not self.should_succeed:
            intent = PaymentIntent(
                id=intent_id,
                client_secret=None,
                status="failed",
                failure_reason=self.failure_reason,
            )
        else:
            intent = PaymentIntent(
                id=intent_id,
                client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
                status="requires_action" if self.requires_action else "succeeded",
            )
        self._intents[idempotency_key] = intent
        return intent

    def refund(self, gateway_transaction_id: str, amount: Decimal) -> RefundResult:
        self._maybe_time_out("refund")
        self.calls.append(
            {
                "method": "refund",
                "gateway_transaction_id": gateway_transaction_id,
                "amount": amount,
            }
        )
        if not self.refunds_succeed:
            return RefundResult(refund_id=None, status="failed", failure_reason="Refund rejected")
        return RefundResult(refund_id=f"re_{uuid4().hex[:16]}", status="succeeded")

    def calls_to(self, method: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method and "outcome" not in call]

    # -------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------
    def sign(self, payload: bytes | str) -> str:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def verify_webhook_signature(self, payload: bytes | str, signature: str) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    @staticmethod
    def build_event(event_type: str, intent_id: str, **fields) -> dict:
        """Build a webhook payload shaped like the gateway's deliveries.

        ``payment_intent.*`` events carry the intent as ``data.object``;
        ``charge.dispute.created`` carries the dispute, with the intent id in
        ``payment_intent`` and the amount in minor units.
        """
        event_id = fields.pop("event_id", f"evt_{uuid4().hex[:16]}")
        if event_type == "charge.dispute.created":
            obj = {
                "id": fields.pop("dispute_id", f"dp_{uuid4().hex[:12]}"),
                "payment_intent": intent_id,
                "amount": fields.pop("amount", 0),
                "currency": fields.pop("currency", "usd"),
                "reason": fields.pop("reason", "fraudulent"),
            }
        else:
            obj = {"id": intent_id, "metadata": fields.pop("metadata", {})}
            if "failure_reason" in fields:
                obj["last_payment_error"] = {"message": fields.pop("failure_reason")}
        obj.update(fields)
        return {"id": event_id, "type": event_type, "data": {"object": obj}}

    @staticmethod
    def encode(event: dict) -> bytes:
        return json.dumps(event, sort_keys=True).encode("utf-8")
