"""
errors.py - Error Taxonomy for the Ordering Pipeline

Every error raised by the cart, checkout, webhook and order modules derives from
ServiceError and carries the HTTP status the API layer answers with. Routes do not
translate errors by hand: register_exception_handlers() installs one handler that
renders {"type": ..., "message": ...} for all of them.

    ValidationError     400  malformed or missing input (terminal)
    NotFoundError       404  missing customer / product / reservation (terminal)
    InsufficientStock   400  stock conflict, transaction rolled back
    PaymentError        500  gateway rejection or timeout, holds released
    Unauthorized        401  bad webhook signature or bearer token
    Forbidden           403  token valid but not allowed (another user, not admin)
    DuplicateEvent      200  webhook already applied (idempotent no-op)
    ConflictError       409  transactional write conflict, retried internally
    RateLimited         429  too many verification requests
    InternalError       500  anything unexpected
    MaterializationFailed 500  paid order could not be created (not retried)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    transient: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"type": self.type, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class InsufficientStock(ServiceError):
    """Raised when the ledger cannot cover a requested quantity."""

    status_code = 400

    def __init__(self, product_id: str, product_name: str, requested: int, remaining: int):
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"{product_name}: Only {remaining} left in stock",
            details={"product_id": product_id, "requested": requested, "remaining": remaining},
        )


class PaymentError(ServiceError):
    status_code = 500


class Unauthorized(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class DuplicateEvent(ServiceError):
    status_code = 200


class ConflictError(ServiceError):
    status_code = 409
    transient = True


class RateLimited(ServiceError):
    status_code = 429


class InternalError(ServiceError):
    status_code = 500
    transient = True


class MaterializationFailed(InternalError):
    """A paid checkout could not be turned into an order for a non-retryable reason."""

    transient = False


def register_exception_handlers(app: FastAPI) -> None:
    """Render every ServiceError, and anything unexpected as InternalError, as {type, message}."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.type} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.type} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content=InternalError("Internal server error").to_dict())
