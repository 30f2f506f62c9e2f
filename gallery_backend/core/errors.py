"""
Error taxonomy and FastAPI handlers for the lifecycle engine.

Every error response has the same envelope:
    {"error": {"code", "message", "request_id"[, "failed_steps"]}, "detail": message}
and echoes x-request-id so a webhook failure can be found in the logs.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gallery_backend.core.logging import get_request_id


logger = logging.getLogger("gallery")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    """Malformed input: unknown plan tier, negative limit or window."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    """Account or customer reference could not be resolved. Not retried."""
    code = "not_found"
    status_code = 404


class PolicyViolationError(AppError):
    """A transition was requested from a state that does not allow it.

    Indicates a duplicate or out-of-order billing event. Callers log and
    ignore it.
    """
    code = "policy_violation"
    status_code = 409


class PartialCascadeFailureError(AppError):
    """The state transition committed but a later cascade step failed.

    Re-invoking the same entry point with the same correlation id resumes
    the remaining steps.
    """
    code = "partial_cascade_failure"
    status_code = 500

    def __init__(self, message: str, *, failed_steps: Optional[List[str]] = None, outcome=None, **kwargs):
        super().__init__(message, **kwargs)
        self.failed_steps = list(failed_steps or [])
        self.outcome = outcome


def _request_id(request: Request, preferred: Optional[str] = None) -> str:
    return (
        preferred
        or getattr(request.state, "request_id", None)
        or get_request_id()
        or str(uuid4())
    )


def _error_response(status: int, code: str, message: Any, rid: str, **details) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": rid}
    error.update({k: v for k, v in details.items() if v})
    response = JSONResponse(status_code=status, content={"error": error, "detail": message})
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = _request_id(request, exc.request_id)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(
        exc.status_code, exc.code, exc.message, rid,
        failed_steps=getattr(exc, "failed_steps", None),
    )


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(exc.status_code, code, exc.detail or "HTTP error", rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(500, "internal_error", "Unexpected error", rid)
