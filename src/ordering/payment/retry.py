"""Bounded exponential backoff for gateway calls."""

import time

import structlog

from ordering.errors import GatewayUnavailableError
from ordering.gateway.port import GatewayTimeout

logger = structlog.get_logger(__name__)


def call_with_backoff(operation, max_attempts: int, base_delay: float, sleep=time.sleep, description="gateway call"):
    """Run ``operation`` and retry it on GatewayTimeout.

    Waits ``base_delay * 2 ** (attempt - 1)`` seconds between attempts and
    raises GatewayUnavailableError once ``max_attempts`` calls timed out.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except GatewayTimeout as exc:
            if attempt == max_attempts:
                logger.error(
                    "Gateway retries exhausted",
                    operation=description,
                    attempts=attempt,
                    error=str(exc),
                )
                raise GatewayUnavailableError(
                    "Payment gateway is unavailable",
                    {"operation": description, "attempts": attempt},
                ) from exc

            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(
                "Gateway call timed out, backing off",
                operation=description,
                attempt=attempt,
                delay_seconds=delay,
            )
            sleep(delay)
