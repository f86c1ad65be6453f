"""
Error taxonomy for the Inference Management API.

Every failure a handler can surface is an ``APIError`` subclass carrying a
machine-readable ``kind`` and the HTTP status it maps to. The exception
handlers registered by ``register_exception_handlers`` render them as::

    {"kind": "NotFound", "message": "...", "details": ..., "resources": [...]}
"""
import re
from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from logger import get_logger

logger = get_logger(__name__)


class APIError(Exception):
    """Base class for errors that map onto an HTTP response."""

    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(APIError):
    kind = "ValidationError"
    status_code = 400


class ModelNotReady(ValidationError):
    kind = "ModelNotReady"


class Invalid(ValidationError):
    """The cluster rejected a resource body."""
    kind = "Invalid"


class Unauthenticated(APIError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(APIError):
    kind = "Forbidden"
    status_code = 403


class NotFound(APIError):
    kind = "NotFound"
    status_code = 404


class Conflict(APIError):
    kind = "Conflict"
    status_code = 409


class AlreadyExists(Conflict):
    kind = "AlreadyExists"


class BackendError(APIError):
    """The model server answered with a non-2xx status."""

    kind = "BackendError"
    status_code = 502

    def __init__(self, backend_status: int, body: str):
        super().__init__(
            f"Model prediction failed with status {backend_status}",
            details={"statusCode": backend_status, "body": sanitize_error_message(body)},
        )
        self.backend_status = backend_status
        self.body = body


class ProxyError(APIError):
    """The model server could not be reached."""
    kind = "ProxyError"
    status_code = 502


class ClusterUnavailable(APIError):
    kind = "ClusterUnavailable"
    status_code = 503


class ClusterError(APIError):
    kind = "ClusterError"
    status_code = 500


class PartialFailure(APIError):
    """
    A multi-step operation failed and could not be fully undone.

    ``resources`` names every resource left behind or left half-changed,
    which needs manual reconciliation.
    """

    kind = "PartialFailure"
    status_code = 500

    def __init__(self, message: str, resources: List[str], details: Any = None):
        super().__init__(message, details)
        self.resources = list(resources)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["resources"] = self.resources
        return body


def sanitize_error_message(error_text: str) -> str:
    """Sanitize error messages to prevent token/credential leakage."""
    sanitized = error_text
    sanitized = re.sub(r'Bearer\s+[A-Za-z0-9\-._~+/]+=*', 'Bearer [REDACTED]', sanitized)
    sanitized = re.sub(r'(api[_-]?key|token|password|secret)(["\s:=]+)[^\s",}]+',
                       r'\1\2[REDACTED]', sanitized, flags=re.IGNORECASE)
    return sanitized


def error_response(error: APIError, headers: Optional[dict] = None) -> JSONResponse:
    if isinstance(error, Unauthenticated):
        headers = {**(headers or {}), "WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return error_response(ValidationError("Invalid request format", details=errors))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return error_response(APIError("Internal server error"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error handlers on the application."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
