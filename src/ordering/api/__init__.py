"""Ordering domain API package."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.exceptions import ObjectNotFoundError, ValidationError

from ordering.api.routes import (
    checkout_router,
    inventory_router,
    maintenance_router,
    order_router,
    payment_router,
)
from ordering.errors import OrderingError

routers = [checkout_router, order_router, payment_router, inventory_router, maintenance_router]


def _error_body(code: str, message: str, details) -> dict:
    return {"success": False, "error": {"code": code, "message": message, "details": details}}


def register_error_handlers(app: FastAPI) -> None:
    """Map ordering and protean errors to their HTTP status and stable error body."""

    @app.exception_handler(OrderingError)
    async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", "Invalid input", exc.messages))

    @app.exception_handler(ObjectNotFoundError)
    async def not_found_handler(request: Request, exc: ObjectNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body("NOT_FOUND", str(exc), {}))


__all__ = [
    "checkout_router",
    "inventory_router",
    "maintenance_router",
    "order_router",
    "payment_router",
    "register_error_handlers",
    "routers",
]
