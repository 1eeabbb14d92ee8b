"""
Error Handling
==============

Standardized error codes, the entitlement error taxonomy and
FastAPI exception handlers.
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

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_005"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Entitlement (ENT_001 - ENT_010)
    ENT_CONNECTION_UNAVAILABLE = "ENT_001"
    ENT_PRODUCT_NOT_FOUND = "ENT_002"
    ENT_PURCHASE_CANCELLED = "ENT_003"
    ENT_VERIFICATION_FAILED = "ENT_004"
    ENT_TIMEOUT = "ENT_005"
    ENT_DUPLICATE_NOTIFICATION = "ENT_006"
    ENT_SIGNATURE_INVALID = "ENT_007"
    ENT_MALFORMED_PAYLOAD = "ENT_008"
    ENT_REMOTE_UNAVAILABLE = "ENT_009"
    ENT_ALREADY_ENTITLED = "ENT_010"
    ENT_TRANSACTION_OWNER_MISMATCH = "ENT_011"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Entitlement Error Taxonomy
# =============================================================================

class EntitlementError(Exception):
    """Base class for purchase/entitlement failures."""

    code: str = ErrorCodes.INTERNAL_ERROR

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ConnectionUnavailable(EntitlementError):
    """Purchase framework unreachable. Non-fatal, retry later."""

    code = ErrorCodes.ENT_CONNECTION_UNAVAILABLE


class ProductNotFound(EntitlementError):
    """Requested product id is not in the fetched catalog."""

    code = ErrorCodes.ENT_PRODUCT_NOT_FOUND


class PurchaseCancelled(EntitlementError):
    """The user dismissed the purchase sheet."""

    code = ErrorCodes.ENT_PURCHASE_CANCELLED


class VerificationFailed(EntitlementError):
    """A transaction could not be authenticated and was discarded."""

    code = ErrorCodes.ENT_VERIFICATION_FAILED


class EntitlementTimeout(EntitlementError, TimeoutError):
    """A bounded operation exceeded its deadline."""

    code = ErrorCodes.ENT_TIMEOUT


class DuplicateNotification(EntitlementError):
    """Same-or-older event for a known transaction. Acknowledged as success."""

    code = ErrorCodes.ENT_DUPLICATE_NOTIFICATION

    def __init__(self, message: str = "", transaction_id: Optional[str] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class SignatureInvalid(EntitlementError):
    """Signed payload failed certificate chain or signature checks."""

    code = ErrorCodes.ENT_SIGNATURE_INVALID


class MalformedNotification(EntitlementError):
    """Payload could not be decoded into a notification/transaction."""

    code = ErrorCodes.ENT_MALFORMED_PAYLOAD


class RemoteStoreError(EntitlementError):
    """Remote entitlement store unreachable after retries."""

    code = ErrorCodes.ENT_REMOTE_UNAVAILABLE


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
        code: str = ErrorCodes.AUTH_INVALID_TOKEN,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission errors."""

    def __init__(
        self,
        code: str = ErrorCodes.FORBIDDEN,
        message: str = "Access denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
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
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
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
        headers=getattr(exc, "headers", None),
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
    logger.error("Unhandled error: %s: %s", type(exc).__name__, exc)

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
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
