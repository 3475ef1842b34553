"""
Error Handling
==============

Standardized error codes, exceptions and exception handlers.

Two families live here:

- ``AppException`` subclasses are raised by the HTTP layer and already
  carry a status code.
- ``EntitledError`` subclasses are raised by services and store adapters,
  which know nothing about HTTP. A registered handler turns them into the
  same ``{"success": false, "error": {...}}`` envelope.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_INVALID_API_KEY = "AUTH_001"
    AUTH_INVALID_CRON_SECRET = "AUTH_002"

    # Store (STORE_001 - STORE_010)
    STORE_NOT_CONFIGURED = "STORE_001"
    STORE_UNAVAILABLE = "STORE_002"
    STORE_REJECTED = "STORE_003"

    # Receipts (RECEIPT_001 - RECEIPT_010)
    RECEIPT_PRODUCT_NOT_RECOGNIZED = "RECEIPT_001"
    RECEIPT_INVALID = "RECEIPT_002"

    # Notifications (NOTIFY_001 - NOTIFY_010)
    NOTIFY_UNSUPPORTED_TYPE = "NOTIFY_001"
    NOTIFY_MALFORMED = "NOTIFY_002"

    # Subscribers
    SUBSCRIBER_NOT_FOUND = "SUBSCRIBER_001"
    ENTITLEMENT_NOT_FOUND = "ENTITLEMENT_001"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Domain Exceptions
# =============================================================================

class EntitledError(Exception):
    """Base class for errors raised below the HTTP layer."""

    code: str = ErrorCodes.INTERNAL_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_detail(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        detail.update(self.extra)
        return detail


class StoreError(EntitledError):
    """Any failure talking to Apple or Google."""

    code = ErrorCodes.STORE_REJECTED
    status_code = status.HTTP_400_BAD_REQUEST


class StoreConfigurationError(StoreError):
    """App store credentials are missing or unusable. Not retried."""

    code = ErrorCodes.STORE_NOT_CONFIGURED
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StoreTransientError(StoreError):
    """Network failure, timeout, 5xx or throttling from a store API."""

    code = ErrorCodes.STORE_UNAVAILABLE
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class StoreRequestError(StoreError):
    """The store rejected the request (unknown transaction, bad token)."""

    code = ErrorCodes.RECEIPT_INVALID
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, store_status: Optional[int] = None, **extra):
        super().__init__(message, **extra)
        self.store_status = store_status


class ProductNotRecognizedError(EntitledError):
    """The store product id has no matching Product for this app."""

    code = ErrorCodes.RECEIPT_PRODUCT_NOT_RECOGNIZED
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class SubscriberNotFoundError(EntitledError):
    code = ErrorCodes.SUBSCRIBER_NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class EntitlementNotFoundError(EntitledError):
    code = ErrorCodes.ENTITLEMENT_NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class UnsupportedNotificationError(EntitledError):
    """A store push whose type this service does not know."""

    code = ErrorCodes.NOTIFY_UNSUPPORTED_TYPE
    status_code = status.HTTP_400_BAD_REQUEST


class MalformedNotificationError(EntitledError):
    """A store push that cannot be decoded at all."""

    code = ErrorCodes.NOTIFY_MALFORMED
    status_code = status.HTTP_400_BAD_REQUEST


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_API_KEY,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.VALIDATION_ERROR,
            message=message,
            field=field,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """A required collaborator (database, cron secret) is not available."""

    def __init__(
        self,
        message: str = "Service temporarily unavailable",
        code: str = ErrorCodes.INTERNAL_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
    )


async def entitled_error_handler(
    request: Request,
    exc: EntitledError,
) -> JSONResponse:
    """Handler for service-level errors; never leaks raw store responses."""
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.to_detail(),
        },
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s: %s", request.url.path, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from entitled.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(EntitledError, entitled_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
