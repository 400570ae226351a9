import time
import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from labelops.config.logging import add_request_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class LabelOpsException(Exception):
    """Base exception for LabelOps application.

    Carries the HTTP status and optional structured details so that the
    job store and workers can raise domain errors without knowing about
    the HTTP layer; the handlers below turn them into error envelopes.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(LabelOpsException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid request"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


class NotFoundError(LabelOpsException):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


class UnauthorizedError(LabelOpsException):
    """Trigger request without a valid bearer secret."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


class ConflictError(LabelOpsException):
    """Action not allowed in the job's current state (e.g. retry after max attempts)."""

    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflict"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


class ConfigurationError(LabelOpsException):
    """Deployment is misconfigured; the request fails closed."""

    default_message = "Configuration error"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


class StoreUnavailableError(LabelOpsException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Job store unavailable"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


def _current_request_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("request_id")


def _envelope(ok: bool, request_id: str | None, **body: Any) -> dict[str, Any]:
    return {
        "ok": ok,
        **body,
        "request_id": request_id or _current_request_id(),
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Build the `{ok: false, error: {...}}` envelope."""
    error = {"message": message, "code": status_code, "details": details or {}}
    return _envelope(False, request_id, error=error)


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Build the `{ok: true, data: ...}` envelope for the current request."""
    return _envelope(True, request_id, data=data, message=message)


def _error_json(
    request: Request,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    content = create_error_response(status_code, message, details, request_id)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


async def labelops_exception_handler(
    request: Request, exc: LabelOpsException
) -> JSONResponse:
    # Client errors are expected traffic; only server-side failures are errors
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request rejected",
        error_type=type(exc).__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )
    return _error_json(request, exc.status_code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail)
    return _error_json(request, exc.status_code, str(exc.detail))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report body and query validation failures in the error envelope."""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    logger.info("Request validation failed", errors=errors)
    return _error_json(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        {"errors": errors},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        error_type=type(exc).__name__,
        message=str(exc),
        exc_info=True,
    )
    return _error_json(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LabelOpsException, labelops_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, echo it back and log the outcome.

    An incoming `X-Request-ID` is reused so a scheduler's own id can be
    followed through the worker invocation it triggered.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        add_request_context(
            request_id=request_id, method=request.method, path=request.url.path
        )

        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.debug(
            "Request finished",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response
