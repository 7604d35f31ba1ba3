"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..schemas.common import Problem, Violation
from .database import utcnow

logger = logging.getLogger(__name__)

PROBLEM_BASE_URI = "https://example.com/problems"


class ProblemDetailsException(HTTPException):
    """
    Error rendered as an RFC 9457 Problem Details body.

    ``extensions`` become top-level members next to type, title and status;
    clients branch on the ``code`` member rather than on the title.
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        self.problem_details = {"type": self.type_uri, "title": title, "status": status_code}
        if detail:
            self.problem_details["detail"] = detail
        if instance:
            self.problem_details["instance"] = instance
        self.problem_details.update(self.extensions)

        super().__init__(status_code=status_code, detail=self.problem_details, headers=headers)


class ValidationError(ProblemDetailsException):
    """Input that parses but makes no sense, such as an empty or inverted window."""

    def __init__(self, detail: str = "The request data failed validation", errors: Optional[Dict[str, Any]] = None):
        extensions: Dict[str, Any] = {"code": "VALIDATION_ERROR", "retryable": False}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/validation-error",
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Salon-scoped lookup that found nothing."""

    def __init__(self, resource_type: str = "resource", resource_id: Optional[str] = None):
        detail = f"The requested {resource_type}"
        if resource_id:
            detail += f" with ID '{resource_id}'"
        detail += " could not be found"

        extensions: Dict[str, Any] = {"code": "NOT_FOUND", "resource_type": resource_type}
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-not-found",
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Operation not allowed in the resource's current status."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        code: str = "INVALID_STATE",
        extensions: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-conflict",
            extensions={"code": code, "retryable": False, **(extensions or {})},
        )


class SlotUnavailableError(ConflictError):
    """Booking window overlaps a booking, time block or break; carries alternatives."""

    def __init__(self, employee_id: str, conflicts: list[dict[str, Any]], suggested_slots: list[dict[str, Any]]):
        super().__init__(
            detail=f"The requested time is not available for employee {employee_id}",
            code="SLOT_UNAVAILABLE",
            extensions={"conflicts": conflicts, "suggested_slots": suggested_slots},
        )


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    The request path is reported without its query string so claim tokens never
    end up in an error body.
    """
    error_id = str(uuid.uuid4())

    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={"error_id": error_id, "path": request.url.path},
    )

    problem_details = {
        "type": f"{PROBLEM_BASE_URI}/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": request.url.path,
        "error_id": error_id,
        "timestamp": utcnow().isoformat() + "Z",
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request body validation failures as Problem Details with one violation per field."""
    violations = [
        Violation(
            path=".".join(str(part) for part in error["loc"] if part != "body") or "body",
            message=error["msg"],
        )
        for error in exc.errors()
    ]

    problem = Problem(
        type=f"{PROBLEM_BASE_URI}/request-validation-error",
        title="Validation Error",
        status=422,
        detail="The request body is not valid",
        instance=request.url.path,
        code="VALIDATION_ERROR",
        retryable=False,
        violations=violations,
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(mode="json", exclude_none=True),
    )
