"""
Error handling and sanitization

- StorefrontError subclasses map to fixed HTTP statuses with a lowercase
  `error` code and a safe message
- Unhandled exceptions are logged with traceback and returned as a generic 500
- Provider and database detail never reaches the client outside DEBUG
"""
import logging
import traceback
from typing import Union

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.config import settings
from storefront.core.exceptions import (
    IllegalTransition,
    InsufficientStock,
    InvalidCart,
    InvalidSignature,
    InvariantViolation,
    OrderNotFound,
    PaymentError,
    PaymentInitializationFailed,
    ProductNotFound,
    StorefrontError,
    UnsupportedProvider,
)

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "traceback",
    "file \"",
    "line ",
]

# Most specific first
STATUS_BY_ERROR = [
    (InsufficientStock, 400),
    (InvalidCart, 400),
    (ProductNotFound, 400),
    (PaymentInitializationFailed, 400),
    (UnsupportedProvider, 400),
    (InvalidSignature, 401),
    (OrderNotFound, 404),
    (IllegalTransition, 409),
    (InvariantViolation, 500),
    (PaymentError, 502),
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Sanitize an error message for safe client exposure."""
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 200:
        return message[:200] + "..."

    return message


def status_for(exc: StorefrontError) -> int:
    for error_cls, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.to_dict()}")
        message = "An unexpected error occurred. Please try again later."
        if isinstance(exc, PaymentError):
            message = "The payment provider is unavailable. Please try again later."
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        message = sanitize_error_message(exc.message)

    content = {"error": exc.code.lower(), "message": message}
    if isinstance(exc, InsufficientStock):
        content["product_id"] = exc.product_id
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StorefrontError, storefront_error_handler)


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            if settings.DEBUG:
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "internal_error",
                        "message": str(e),
                        "type": type(e).__name__,
                        "error_id": error_id,
                    }
                )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "error_id": error_id,
                }
            )
