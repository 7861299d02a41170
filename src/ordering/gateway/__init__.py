"""Payment gateway factory.

Provides get_gateway() / set_gateway() to swap implementations. The
FakeGateway is the default for development and testing.
"""

from ordering.gateway.fake_adapter import FakeGateway
from ordering.gateway.port import PaymentGateway

_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    """Return the current payment gateway. Defaults to FakeGateway."""
    global _current_gateway
    if _current_gateway is None:
        from ordering.settings import get_settings

        _current_gateway = FakeGateway(webhook_secret=get_settings().webhook_secret)
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Override the active payment gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    """Reset to default gateway."""
    global _current_gateway
    _current_gateway = None
