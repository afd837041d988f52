from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Request,status
from fastapi.exceptions import RequestValidationError
from stockledger.common.logging_setup import get_logger
from stockledger.common.utils import build_error, json_error
from stockledger.common.constants import request_id_ctx

logger = get_logger("stockledger.errors")


class InventoryError(Exception):
    """Base for errors raised by the stock control core."""

    code = "INVENTORY_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_details(self) -> Dict[str, Any]:
        return {"message": self.message, **self.details}


class ValidationError(InventoryError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(InventoryError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(InventoryError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class InsufficientStockError(InventoryError):
    code = "INSUFFICIENT_STOCK"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, product_id: Any, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: requested={requested}, available={available}",
            details={"product_id": str(product_id), "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ConcurrencyConflictError(InventoryError):
    """Conditional write matched no rows: someone else changed the row first."""

    code = "CONCURRENCY_CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class RetryExhaustedError(InventoryError):
    code = "RETRY_EXHAUSTED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, *, attempts: int, last_error: Optional[BaseException] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"attempts": attempts, **(details or {})})
        self.attempts = attempts
        self.last_error = last_error


async def inventory_error_handler(request: Request, exc: InventoryError):
    rid = request_id_ctx.get(None)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "inventory.request_failed",
        extra={
            "code": exc.code,
            "reason": exc.message,
            "path": request.url.path,
            "method": request.method,
        },
    )

    payload = build_error(code=exc.code, details=exc.to_details(), request_id=rid)
    return json_error(payload, status_code=exc.status_code)


async def fallback_handler(request: Request, exc: Exception):

    rid = request_id_ctx.get(None)

    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc,
    )

    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": exc.errors(),
            "path": request.url.path,
        },
    )

    payload = build_error(code="UNPROCESSABLE_ENTITY", details={"message":"invalid request","errors":exc.errors()}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):

    rid = request_id_ctx.get(None)

    payload = build_error(code=f"HTTP_{exc.status_code}", details={"message":exc.detail}, request_id=rid)
    return json_error(payload, status_code=exc.status_code)


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(
        Exception, # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(
        RequestValidationError,
        validation_exception_handler
    )

    app.add_exception_handler(
        HTTPException,
        http_exception_handler
    )

    app.add_exception_handler(
        InventoryError,
        inventory_error_handler
    )
