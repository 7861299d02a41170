"""Runtime configuration for the ordering context.

Values are read from the environment once and frozen. Monetary rates are
kept as decimal strings so they never pass through binary floats.
"""

import os
from dataclasses import dataclass
from decimal import Decimal


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


@dataclass(frozen=True)
class Settings:
    return_window_days: int = 30
    reservation_ttl_minutes: int = 15
    payment_auth_window_minutes: int = 30
    tax_rate: Decimal = Decimal("0.08")
    currency: str = "USD"
    shipping_policy: str = "tiered"
    flat_shipping_rate: Decimal = Decimal("8.00")
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.2
    conflict_retries: int = 5
    commission_rate: Decimal = Decimal("0.10")
    webhook_secret: str = "whsec_test"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            return_window_days=_env_int("ORDERING_RETURN_WINDOW_DAYS", 30),
            reservation_ttl_minutes=_env_int("ORDERING_RESERVATION_TTL_MINUTES", 15),
            payment_auth_window_minutes=_env_int("ORDERING_PAYMENT_AUTH_WINDOW_MINUTES", 30),
            tax_rate=_env_decimal("ORDERING_TAX_RATE", "0.08"),
            currency=os.getenv("ORDERING_CURRENCY", "USD"),
            shipping_policy=os.getenv("ORDERING_SHIPPING_POLICY", "tiered"),
            flat_shipping_rate=_env_decimal("ORDERING_FLAT_SHIPPING_RATE", "8.00"),
            gateway_max_attempts=_env_int("ORDERING_GATEWAY_MAX_ATTEMPTS", 3),
            gateway_backoff_seconds=float(os.getenv("ORDERING_GATEWAY_BACKOFF_SECONDS", "0.2")),
            conflict_retries=_env_int("ORDERING_CONFLICT_RETRIES", 5),
            commission_rate=_env_decimal("ORDERING_COMMISSION_RATE", "0.10"),
            webhook_secret=os.getenv("ORDERING_WEBHOOK_SECRET", "whsec_test"),
        )


_current_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the active settings, loading them from the environment on first use."""
    global _current_settings
    if _current_settings is None:
        _current_settings = Settings.from_env()
    return _current_settings


def set_settings(settings: Settings) -> None:
    """Override the active settings (useful for tests)."""
    global _current_settings
    _current_settings = settings


def reset_settings() -> None:
    global _current_settings
    _current_settings = None
