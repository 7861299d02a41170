"""Error taxonomy for the ordering context.

Every error carries a stable ``code`` that is returned to API callers, an
HTTP status used by the exception handlers, and an optional ``details`` dict.

    OrderingError
    ├── OrderingValidationError   bad input, rejected before any side effect
    ├── NotFoundError             unknown order, reservation or return
    ├── ConflictError             insufficient stock, version mismatch
    ├── ExternalServiceError      gateway timeouts and declines
    └── InvariantViolation        data-integrity bugs, logged loudly
"""

from typing import Any


class OrderingError(Exception):
    code = "ORDERING_ERROR"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class OrderingValidationError(OrderingError):
    code = "VALIDATION_ERROR"
    http_status = 400


class EmptyCartError(OrderingValidationError):
    code = "EMPTY_CART"


class InvalidCouponError(OrderingValidationError):
    code = "INVALID_COUPON"


class InvalidItemsError(OrderingValidationError):
    code = "INVALID_ITEMS"


class ReturnWindowExpired(OrderingValidationError):
    code = "RETURN_WINDOW_EXPIRED"


class UnknownProductError(OrderingValidationError):
    code = "UNKNOWN_PRODUCT"


class InvalidRefundAmountError(OrderingValidationError):
    code = "INVALID_REFUND_AMOUNT"


class InvalidStateError(OrderingValidationError):
    """The requested operation is not allowed in the aggregate's current state."""

    code = "INVALID_STATE"
    http_status = 409


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------
class NotFoundError(OrderingError):
    code = "NOT_FOUND"
    http_status = 404


class OrderNotFoundError(NotFoundError):
    code = "ORDER_NOT_FOUND"


class ReservationNotFoundError(NotFoundError):
    code = "RESERVATION_NOT_FOUND"


class ReturnNotFoundError(NotFoundError):
    code = "RETURN_NOT_FOUND"


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------
class ConflictError(OrderingError):
    code = "CONFLICT"
    http_status = 409


class InsufficientStockError(ConflictError):
    code = "INSUFFICIENT_STOCK"


class ConcurrencyConflictError(ConflictError):
    code = "CONCURRENCY_CONFLICT"


class ReservationReleasedError(ConflictError):
    """A released or expired reservation cannot be committed."""

    code = "RESERVATION_RELEASED"


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------
class ExternalServiceError(OrderingError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class GatewayUnavailableError(ExternalServiceError):
    code = "GATEWAY_UNAVAILABLE"


class PaymentFailedError(ExternalServiceError):
    code = "PAYMENT_FAILED"
    http_status = 402


# ---------------------------------------------------------------------------
# Invariant violations
# ---------------------------------------------------------------------------
class InvariantViolation(OrderingError):
    code = "INVARIANT_VIOLATION"
    http_status = 422


class RefundExceedsTotalError(InvariantViolation):
    code = "REFUND_EXCEEDS_TOTAL"


class BackwardTransitionError(InvariantViolation):
    code = "BACKWARD_TRANSITION"
