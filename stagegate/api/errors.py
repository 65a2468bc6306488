"""FastAPI error handler registration for the admission error taxonomy."""
from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..admission.errors import (
    AdmissionError,
    ConcurrencyExceeded,
    DependencyMissing,
    ExternalServiceUnavailable,
    Forbidden,
    InfrastructureError,
    InvalidTransition,
    JobNotFoundError,
    MaxAttemptsExceeded,
    QuotaExceeded,
    RateLimitExceeded,
    Unauthorized,
    UpgradeRequired,
    ValidationError,
)
from .schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)


# ── Error → HTTP mapping ────────────────────────────────────────────

_EXCEPTION_STATUS = {
    Unauthorized: 401,
    Forbidden: 403,
    ValidationError: 400,
    UpgradeRequired: 402,
    QuotaExceeded: 429,
    ConcurrencyExceeded: 429,
    RateLimitExceeded: 429,
    DependencyMissing: 400,
    ExternalServiceUnavailable: 503,
    InfrastructureError: 500,
    JobNotFoundError: 404,
    InvalidTransition: 409,
    MaxAttemptsExceeded: 409,
}


def status_for(exc: Exception) -> int:
    for cls in type(exc).__mro__:
        if cls in _EXCEPTION_STATUS:
            return _EXCEPTION_STATUS[cls]
    return 500


def error_response(exc: Exception) -> JSONResponse:
    """Render *exc* in the envelope with its mapped status."""
    if isinstance(exc, AdmissionError):
        resp = ApiResponse.fail(exc.message, details={"code": exc.code, **exc.details})
    else:
        resp = ApiResponse.fail(str(exc))
    return JSONResponse(status_code=status_for(exc), content=resp.model_dump())


def _make_handler(status_code: int):
    """Create a handler that wraps an exception in ApiResponse."""

    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return error_response(exc)

    return _handler


async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    resp = ApiResponse.fail(
        "Invalid request", details={"code": ValidationError.code, "errors": errors}
    )
    return JSONResponse(status_code=400, content=resp.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))
    app.add_exception_handler(RequestValidationError, _request_validation)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        resp = ApiResponse.fail("Internal server error")
        return JSONResponse(status_code=500, content=resp.model_dump())
