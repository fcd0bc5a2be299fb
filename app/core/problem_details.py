"""RFC 7807 Problem Details for HTTP APIs.

Reference: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.core.logging import request_id_ctx

ERROR_TYPE_BASE = "/errors"

ERROR_TYPES = {
    "BAD_REQUEST": f"{ERROR_TYPE_BASE}/bad-request",
    "VALIDATION_ERROR": f"{ERROR_TYPE_BASE}/validation",
    "DATABASE_ERROR": f"{ERROR_TYPE_BASE}/database",
    "FACT_CONTRACT": f"{ERROR_TYPE_BASE}/fact-contract",
    "INTERNAL_ERROR": f"{ERROR_TYPE_BASE}/internal",
}


def error_type_uri(error_code: str) -> str:
    """Problem type URI for an error code."""
    return ERROR_TYPES.get(error_code, f"{ERROR_TYPE_BASE}/{error_code.lower().replace('_', '-')}")


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details body.

    Attributes:
        type: URI identifying the error type.
        title: Short human-readable summary of the problem.
        status: HTTP status code.
        detail: Explanation specific to this occurrence.
        instance: URI reference for this specific occurrence.
        errors: Field-level validation errors (extension for 422).
        context: Offending values of a rejected request (extension for 400).
        code: Machine-readable error code.
        request_id: Request correlation ID.
    """

    model_config = ConfigDict(extra="allow")

    type: str = Field(
        default="about:blank",
        description="URI reference identifying the problem type.",
    )
    title: str = Field(..., description="Short, human-readable summary of the problem type.")
    status: int = Field(..., ge=400, le=599, description="HTTP status code.")
    detail: str | None = Field(None, description="Explanation specific to this occurrence.")
    instance: str | None = Field(None, description="URI reference for this occurrence.")
    errors: list[dict[str, Any]] | None = Field(
        None,
        description="Field-level validation errors (422 only).",
    )
    context: dict[str, Any] | None = Field(
        None,
        description="Request values that caused a 400, e.g. the rejected timezone.",
    )
    code: str | None = Field(None, description="Machine-readable error code.")
    request_id: str | None = Field(None, description="Request correlation ID.")


class ProblemDetailResponse(JSONResponse):
    """JSON response with RFC 7807 content type."""

    media_type = "application/problem+json"


def problem_response(
    status: int,
    title: str,
    detail: str | None = None,
    error_code: str = "INTERNAL_ERROR",
    errors: list[dict[str, Any]] | None = None,
    context: dict[str, Any] | None = None,
) -> ProblemDetailResponse:
    """Build a problem+json response for the current request.

    Args:
        status: HTTP status code.
        title: Short problem summary.
        detail: Detailed explanation.
        error_code: Machine-readable code; selects the type URI.
        errors: Field-level validation errors.
        context: Offending request values.

    Returns:
        Response whose ``instance`` and ``request_id`` identify the request.
    """
    request_id = request_id_ctx.get()
    problem = ProblemDetail(
        type=error_type_uri(error_code),
        title=title,
        status=status,
        detail=detail,
        instance=f"/requests/{request_id}" if request_id else None,
        errors=errors,
        context=context,
        code=error_code,
        request_id=request_id,
    )
    return ProblemDetailResponse(
        status_code=status,
        content=problem.model_dump(mode="json", exclude_none=True),
    )
