"""Optimistic read-modify-write of Order documents.

``update_order`` loads a fresh copy, applies a mutation and saves it. When
another writer saved the same order in between, the save fails on the version
check and the whole read-mutate-save is repeated on the newer copy, so the
mutation always sees the latest state (a webhook racing a cancellation is
decided on the state that actually won).
"""

import structlog
from protean.exceptions import ExpectedVersionError, ValidationError
from protean.utils.globals import current_domain

from ordering.errors import ConcurrencyConflictError, InvariantViolation
from ordering.order.order import Order
from ordering.settings import get_settings

logger = structlog.get_logger(__name__)


class Unchanged:
    """Returned by a mutation that decided nothing needs saving."""

    def __init__(self, reason=None) -> None:
        self.reason = reason


def load_order(order_number: str) -> Order:
    return current_domain.repository_for(Order).find_by_order_number(order_number)


def update_order(order_number: str, mutation, retries: int | None = None):
    """Apply ``mutation(order)`` and persist it, retrying on version conflicts.

    Returns ``(order, result)`` where ``result`` is the mutation's return value.
    Nothing is saved when the mutation returns an ``Unchanged``.
    """
    retries = retries or get_settings().conflict_retries
    repo = current_domain.repository_for(Order)

    for attempt in range(1, retries + 1):
        order = repo.find_by_order_number(order_number)
        try:
            result = mutation(order)
        except ValidationError as exc:
            logger.error(
                "Order invariant violated",
                anomaly="invariant_violation",
                order_number=order_number,
                messages=exc.messages,
            )
            raise InvariantViolation(
                "Order invariant violated",
                {"order_number": order_number, "messages": exc.messages},
            ) from exc

        if isinstance(result, Unchanged):
            return order, result

        try:
            repo.add(order)
            return order, result
        except ExpectedVersionError:
            logger.info("Order version conflict, retrying", order_number=order_number, attempt=attempt)

    raise ConcurrencyConflictError(
        "Order kept changing concurrently",
        {"order_number": order_number, "attempts": retries},
    )
