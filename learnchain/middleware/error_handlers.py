"""Centralized error handling with consistent categorization.

Every domain error is rendered as::

    {"error": {"category": ..., "code": ..., "detail": ..., "suggestions"?: [...], "metadata"?: {...}}}
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from psycopg.errors import (
    CheckViolation as CheckViolationError,
    ForeignKeyViolation as ForeignKeyViolationError,
    NotNullViolation as NotNullViolationError,
)
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DatabaseError, IntegrityError, OperationalError

from learnchain.auth.dependencies import IdentityMissingError
from learnchain.exceptions import (
    InsufficientPointsError,
    NotEnrolledError,
    ResourceNotFoundError,
    ValidationError,
    WalletMismatchError,
)
from learnchain.ledger.exceptions import LedgerError, LedgerUnavailableError


logger = logging.getLogger(__name__)


# === Error Categories ===


class ErrorCategory:
    """Error category constants."""

    VALIDATION = "VALIDATION_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    ENROLLMENT = "ENROLLMENT_ERROR"
    DATABASE = "DATABASE_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE_ERROR"
    INTERNAL = "INTERNAL_ERROR"


class ErrorCode:
    """Specific error codes for better client handling."""

    # Validation errors
    INVALID_INPUT = "INVALID_INPUT"

    # Identity
    IDENTITY_MISSING = "IDENTITY_MISSING"
    WALLET_MISMATCH = "WALLET_MISMATCH"

    # Enrollment
    NOT_ENROLLED = "NOT_ENROLLED"
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"

    # Database errors
    DB_CONNECTION_FAILED = "DB_CONNECTION_FAILED"
    DB_CONSTRAINT_VIOLATION = "DB_CONSTRAINT_VIOLATION"
    DB_UNIQUE_VIOLATION = "DB_UNIQUE_VIOLATION"
    DB_FOREIGN_KEY_VIOLATION = "DB_FOREIGN_KEY_VIOLATION"

    # Resource errors
    NOT_FOUND = "NOT_FOUND"

    # External service errors
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    LEDGER_ERROR = "LEDGER_ERROR"

    # Internal errors
    INTERNAL = "INTERNAL_ERROR"


# === Error Response Formatting ===


def format_error_response(
    category: str,
    code: str,
    detail: str,
    status_code: int,
    suggestions: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> JSONResponse:
    """Format a consistent error response."""
    content = {
        "error": {
            "category": category,
            "code": code,
            "detail": detail,
        }
    }

    if suggestions:
        content["error"]["suggestions"] = suggestions

    if metadata:
        content["error"]["metadata"] = metadata

    return JSONResponse(status_code=status_code, content=content)


async def handle_validation_errors(request: Request, exc: Exception) -> JSONResponse:
    """Handle validation errors from Pydantic and the domain layer."""
    logger.info(f"Validation error on {request.method} {request.url.path}", extra={"error": str(exc)})

    if isinstance(exc, PydanticValidationError):
        errors = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append({"field": field, "message": error["msg"], "type": error["type"]})

        return format_error_response(
            category=ErrorCategory.VALIDATION,
            code=ErrorCode.INVALID_INPUT,
            detail="Invalid input data",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            metadata={"errors": errors},
        )

    if isinstance(exc, ResourceNotFoundError):
        return format_error_response(
            category=ErrorCategory.RESOURCE_NOT_FOUND,
            code=ErrorCode.NOT_FOUND,
            detail=str(exc),
            status_code=status.HTTP_404_NOT_FOUND,
            suggestions=["The requested resource does not exist"],
        )

    return format_error_response(
        category=ErrorCategory.VALIDATION,
        code=ErrorCode.INVALID_INPUT,
        detail=str(exc),
        status_code=status.HTTP_400_BAD_REQUEST,
    )


async def handle_identity_errors(request: Request, exc: IdentityMissingError) -> JSONResponse:
    """Handle requests that arrive without a verified identity."""
    logger.info(f"Unauthenticated request on {request.method} {request.url.path}")

    return format_error_response(
        category=ErrorCategory.AUTHENTICATION,
        code=ErrorCode.IDENTITY_MISSING,
        detail=str(exc),
        status_code=status.HTTP_401_UNAUTHORIZED,
    )


async def handle_wallet_mismatch_errors(request: Request, exc: WalletMismatchError) -> JSONResponse:
    """Handle identities whose wallet differs from the registered one."""
    logger.warning(f"Wallet mismatch on {request.method} {request.url.path}: {exc}")

    return format_error_response(
        category=ErrorCategory.AUTHENTICATION,
        code=ErrorCode.WALLET_MISMATCH,
        detail=str(exc),
        status_code=status.HTTP_403_FORBIDDEN,
        suggestions=["Sign in with the wallet registered for this account"],
    )


async def handle_not_enrolled_errors(request: Request, exc: NotEnrolledError) -> JSONResponse:
    """Handle operations that require an enrollment."""
    logger.info(f"Not enrolled on {request.method} {request.url.path}: {exc}")

    return format_error_response(
        category=ErrorCategory.ENROLLMENT,
        code=ErrorCode.NOT_ENROLLED,
        detail=str(exc),
        status_code=status.HTTP_403_FORBIDDEN,
        suggestions=["Enroll in the course first"],
        metadata={"course_id": exc.course_id},
    )


async def handle_insufficient_points_errors(request: Request, exc: InsufficientPointsError) -> JSONResponse:
    """Handle enrollment attempts that the balance cannot cover."""
    logger.info(f"Insufficient points on {request.method} {request.url.path}: {exc}")

    return format_error_response(
        category=ErrorCategory.ENROLLMENT,
        code=ErrorCode.INSUFFICIENT_POINTS,
        detail=str(exc),
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        suggestions=["Earn more points by watching lessons and passing quizzes"],
        metadata={"required": exc.required, "available": exc.available, "reason": exc.reason},
    )


async def handle_ledger_errors(request: Request, exc: LedgerError) -> JSONResponse:
    """Handle ledger failures on read-only endpoints.

    Progress and enrollment writes never reach this handler; their sync failures
    are deferred to reconciliation.
    """
    logger.warning(f"Ledger error on {request.method} {request.url.path}: {exc}")

    unavailable = isinstance(exc, LedgerUnavailableError)
    return format_error_response(
        category=ErrorCategory.EXTERNAL_SERVICE,
        code=ErrorCode.LEDGER_UNAVAILABLE if unavailable else ErrorCode.LEDGER_ERROR,
        detail=str(exc),
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE if unavailable else status.HTTP_502_BAD_GATEWAY,
        suggestions=["The ledger is temporarily unavailable", "Please try again later"],
    )


async def handle_database_errors(request: Request, exc: Exception) -> JSONResponse:
    """Handle database-related errors."""
    logger.exception(
        f"Database error on {request.method} {request.url.path}: {exc}",
        extra={"error_type": type(exc).__name__},
        exc_info=(type(exc), exc, exc.__traceback__),
    )

    orig = getattr(exc, "orig", None)

    if isinstance(exc, IntegrityError) and "unique" in str(exc).lower():
        return format_error_response(
            category=ErrorCategory.DATABASE,
            code=ErrorCode.DB_UNIQUE_VIOLATION,
            detail="This resource already exists",
            status_code=status.HTTP_409_CONFLICT,
        )

    if isinstance(orig, ForeignKeyViolationError):
        return format_error_response(
            category=ErrorCategory.DATABASE,
            code=ErrorCode.DB_FOREIGN_KEY_VIOLATION,
            detail="Referenced resource does not exist",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(orig, (NotNullViolationError, CheckViolationError)):
        return format_error_response(
            category=ErrorCategory.DATABASE,
            code=ErrorCode.DB_CONSTRAINT_VIOLATION,
            detail="Required data is missing or invalid",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, OperationalError):
        return format_error_response(
            category=ErrorCategory.DATABASE,
            code=ErrorCode.DB_CONNECTION_FAILED,
            detail="Database connection error",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            suggestions=["Please try again later"],
        )

    return format_error_response(
        category=ErrorCategory.DATABASE,
        code=ErrorCode.INTERNAL,
        detail="A database error occurred",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


# === Utility Functions ===


def log_error_context(request: Request, exc: Exception, error_id: UUID | None = None) -> None:
    """Log comprehensive error context for debugging."""
    context = {
        "error_id": str(error_id) if error_id else None,
        "method": request.method,
        "path": request.url.path,
        "query_params": dict(request.query_params),
        "client_host": request.client.host if request.client else "unknown",
        "user_id": str(getattr(request.state, "user_id", None)),
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }

    # Add request headers (excluding sensitive ones)
    safe_headers = {
        k: v for k, v in request.headers.items() if k.lower() not in ["authorization", "cookie", "x-api-key"]
    }
    context["headers"] = safe_headers

    logger.error("Request failed", extra=context, exc_info=exc)


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the handlers above to the application."""

    @app.exception_handler(ValidationError)
    async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return await handle_validation_errors(request, exc)

    @app.exception_handler(PydanticValidationError)
    async def pydantic_validation_handler(request: Request, exc: PydanticValidationError) -> JSONResponse:
        return await handle_validation_errors(request, exc)

    @app.exception_handler(IdentityMissingError)
    async def identity_handler(request: Request, exc: IdentityMissingError) -> JSONResponse:
        return await handle_identity_errors(request, exc)

    @app.exception_handler(WalletMismatchError)
    async def wallet_mismatch_handler(request: Request, exc: WalletMismatchError) -> JSONResponse:
        return await handle_wallet_mismatch_errors(request, exc)

    @app.exception_handler(NotEnrolledError)
    async def not_enrolled_handler(request: Request, exc: NotEnrolledError) -> JSONResponse:
        return await handle_not_enrolled_errors(request, exc)

    @app.exception_handler(InsufficientPointsError)
    async def insufficient_points_handler(request: Request, exc: InsufficientPointsError) -> JSONResponse:
        return await handle_insufficient_points_errors(request, exc)

    @app.exception_handler(LedgerError)
    async def ledger_handler(request: Request, exc: LedgerError) -> JSONResponse:
        return await handle_ledger_errors(request, exc)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        return await handle_database_errors(request, exc)

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        return await handle_database_errors(request, exc)

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        return await handle_database_errors(request, exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        from uuid import uuid4

        error_id = uuid4()
        log_error_context(request, exc, error_id)

        return format_error_response(
            category=ErrorCategory.INTERNAL,
            code=ErrorCode.INTERNAL,
            detail="An unexpected error occurred",
            status_code=500,
            metadata={"error_id": str(error_id)},
            suggestions=["Please try again later", "If the problem persists, contact support with the error ID"],
        )
