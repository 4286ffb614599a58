"""
Subscription engine error taxonomy and its HTTP rendering.

Expected outcomes (not found, invalid transition, validation, quota) are
raised as AppError subclasses and surfaced to the caller as-is. Every error
response has the same body:

    {"error": {"code", "message", "request_id"}, "detail": message}

and echoes the request id in the x-request-id header.
"""

import builtins
import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from cargo_subscriptions.core.logging import LOGGER_NAME, get_correlation_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.status_code = status_code or type(self).status_code
        self.request_id = request_id

    @property
    def expected(self) -> bool:
        """True for caller-facing outcomes that are not system faults."""
        return self.status_code < 500


class ValidationError(AppError, ValueError):
    """Malformed input, e.g. an out-of-range duration."""
    code = "validation_failed"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InvalidStateTransitionError(ConflictError):
    """The operation is not permitted from the subscription's current status."""
    code = "invalid_state_transition"

    def __init__(self, message: str, *, current_status: Optional[str] = None, action: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status
        self.action = action


class AlreadyProcessedError(ConflictError):
    """Lost a race: another operation changed the subscription first."""
    code = "already_processed"


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class DependencyUnavailableError(AppError):
    """The store (or another collaborator) could not be reached."""
    code = "dependency_unavailable"
    status_code = 503


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_correlation_id() or uuid4().hex


def error_response(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.INFO if exc.expected else logging.ERROR,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(exc.status_code, code, str(exc.detail or "HTTP error"), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    # Internal text never reaches the caller
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(500, "internal_error", "Unexpected error", rid)
