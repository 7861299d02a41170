"""Payment gateway port (abstract interface).

Defines the contract that gateway adapters implement so the payment
coordinator never depends on a particular provider.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal


class GatewayTimeout(Exception):
    """The gateway did not answer in time; the call may be retried."""


@dataclass(frozen=True)
class PaymentIntent:
    """Result of creating a payment intent.

    ``status`` is one of ``requires_action``, ``processing``, ``succeeded``
    or ``failed``.
    """

    id: str
    client_secret: str | None
    status: str
    failure_reason: str | None = None

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"


@dataclass(frozen=True)
class RefundResult:
    refund_id: str | None
    status: str
    failure_reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status in ("succeeded", "pending")


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        method_token: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> PaymentIntent:
        """Create (or return the existing) intent for ``idempotency_key``."""
        ...

    @abstractmethod
    def refund(self, gateway_transaction_id: str, amount: Decimal) -> RefundResult:
        """Refund part or all of a captured payment."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes | str, signature: str) -> bool:
        """Verify that a webhook payload is authentically from the gateway."""
        ...
