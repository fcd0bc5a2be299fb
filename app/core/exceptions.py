"""Custom exceptions and FastAPI exception handlers.

Errors are rendered as RFC 7807 Problem Details so report consumers get a
machine-readable body for every failure.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from app.core.logging import get_logger
from app.core.problem_details import ProblemDetailResponse, problem_response

logger = get_logger(__name__)


# =============================================================================
# Exception Classes
# =============================================================================


class ReportingError(Exception):
    """Base exception for reporting API errors.

    Subclasses fix ``code``, ``status_code`` and the default message; the
    code selects the RFC 7807 problem type URI.
    """

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize reporting error.

        Args:
            message: Human-readable error message (class default when omitted).
            details: Additional error context. Returned to the client for 4xx
                errors only.
        """
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def title(self) -> str:
        """RFC 7807 title - short summary of problem type."""
        return self.code.replace("_", " ").title()

    @property
    def is_client_error(self) -> bool:
        """Whether the request, not the service, is at fault."""
        return self.status_code < 500


class BadRequestError(ReportingError):
    """Malformed report request (bad timezone, date range, tenant key...)."""

    code = "BAD_REQUEST"
    status_code = 400
    default_message = "Bad request"


class DatabaseError(ReportingError):
    """Fact store or tenant directory query failed.

    Not retried here; connection-level retries belong to the driver/pool.
    """

    code = "DATABASE_ERROR"
    status_code = 500
    default_message = "Database operation failed"


class FactContractError(ReportingError):
    """The fact fetcher returned rows that break its grouping contract.

    Raised when two rows share the same full dimension-value tuple.
    """

    code = "FACT_CONTRACT"
    status_code = 500
    default_message = "Fact rows violate the grouping contract"


# =============================================================================
# Exception Handlers (RFC 7807)
# =============================================================================


async def reporting_exception_handler(
    request: Request,
    exc: ReportingError,
) -> ProblemDetailResponse:
    """Render a ReportingError; server-side details stay in the logs."""
    if exc.is_client_error:
        logger.warning(
            "app.request_rejected",
            error=exc.message,
            error_code=exc.code,
            path=str(request.url.path),
            details=exc.details,
        )
    else:
        logger.error(
            "app.error_handled",
            error=exc.message,
            error_type=type(exc).__name__,
            error_code=exc.code,
            path=str(request.url.path),
            details=exc.details,
            exc_info=exc,
        )

    return problem_response(
        status=exc.status_code,
        title=exc.title,
        detail=exc.message,
        error_code=exc.code,
        context=exc.details if exc.is_client_error and exc.details else None,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> ProblemDetailResponse:
    """Handle query parameter validation errors with field-level details.

    Args:
        request: FastAPI request object.
        exc: Validation error raised by FastAPI.

    Returns:
        RFC 7807 Problem Detail response with one entry per invalid field.
    """
    field_errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "query"),
            "message": str(error.get("msg", "Validation failed")),
            "type": str(error.get("type", "unknown")),
        }
        for error in exc.errors()
    ]

    logger.warning(
        "app.validation_error",
        path=str(request.url.path),
        fields=[e["field"] for e in field_errors],
    )

    return problem_response(
        status=422,
        title="Validation Error",
        detail=f"{len(field_errors)} invalid request parameter(s). See 'errors'.",
        error_code="VALIDATION_ERROR",
        errors=field_errors,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> ProblemDetailResponse:
    """Log the failure and return a generic 500 that leaks nothing."""
    logger.error(
        "app.unhandled_error",
        error=str(exc),
        error_type=type(exc).__name__,
        path=str(request.url.path),
        exc_info=exc,
    )

    return problem_response(
        status=500,
        title="Internal Server Error",
        detail="An unexpected error occurred. Contact support with the request_id.",
        error_code="INTERNAL_ERROR",
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the problem+json handlers on ``app``."""
    app.add_exception_handler(ReportingError, reporting_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
