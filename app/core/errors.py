"""
Error Handling
==============

Standardized error codes, entitlement failure kinds, internal exceptions
and exception handlers.
"""

import logging
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_INVALID_API_KEY = "AUTH_001"

    # Subscription (SUB_001 - SUB_010)
    SUB_STATUS_UNAVAILABLE = "SUB_001"
    SUB_SYNC_FAILED = "SUB_002"
    SUB_HISTORY_UNAVAILABLE = "SUB_003"

    # Webhooks (WEBHOOK_001 - WEBHOOK_010)
    WEBHOOK_MALFORMED = "WEBHOOK_001"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_002"
    WEBHOOK_TEST_FAILED = "WEBHOOK_003"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# =============================================================================
# Entitlement Failure Kinds
# =============================================================================

class EntitlementErrorKind(str, Enum):
    """Why an entitlement operation did not fully succeed."""

    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    OWNERSHIP_MISMATCH = "OWNERSHIP_MISMATCH"
    UNATTRIBUTED_TRANSACTION = "UNATTRIBUTED_TRANSACTION"
    STORE_ERROR = "STORE_ERROR"
    # The record was written but a profile flag was not
    DEGRADED_SUCCESS = "DEGRADED_SUCCESS"
    MALFORMED_NOTIFICATION = "MALFORMED_NOTIFICATION"
    PLATFORM_ERROR = "PLATFORM_ERROR"


# =============================================================================
# Internal Exceptions
# =============================================================================

class EntitlementError(Exception):
    """Base for failures raised inside the entitlement services."""

    kind: EntitlementErrorKind = EntitlementErrorKind.STORE_ERROR

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SignatureInvalidError(EntitlementError):
    """A signed payload failed chain, signature, bundle or date checks."""

    kind = EntitlementErrorKind.SIGNATURE_INVALID


class StoreError(EntitlementError):
    """The persistent store rejected or failed a read or write."""

    kind = EntitlementErrorKind.STORE_ERROR


class PlatformError(EntitlementError):
    """The App Store Server API call failed."""

    kind = EntitlementErrorKind.PLATFORM_ERROR

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        api_error: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause=cause)
        self.http_status = http_status
        self.api_error = api_error


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
    """Missing or wrong API key."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_API_KEY,
        message: str = "Invalid or missing API key",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class BadRequestError(AppException):
    """Request body that cannot be acted on."""

    def __init__(
        self,
        code: str,
        message: str,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


class InternalServerError(AppException):
    """Processing failure the caller is expected to retry."""

    def __init__(
        self,
        code: str = ErrorCodes.INTERNAL_ERROR,
        message: str = "An unexpected error occurred",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
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


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
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
        status_code=status.HTTP_400_BAD_REQUEST,
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
    logger.exception(
        "Unhandled error on %s %s: %s", request.method, request.url.path, type(exc).__name__
    )

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
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
