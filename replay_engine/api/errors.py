"""Structured error responses for the replay API.

Every failure uses the same envelope:

    {
        "error": {
            "code": "TIMEOUT",
            "message": "Human-readable description",
            "details": {...optional context...},
            "request_id": "abc-123"
        }
    }
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from replay_engine.core.errors import AnalysisExhaustedError, ErrorKind, ReplayError

logger = logging.getLogger(__name__)


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Standard error codes returned in the error envelope."""

    # 4xx client errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TX_HASH = "INVALID_TX_HASH"
    INVALID_BLOCK_ID = "INVALID_BLOCK_ID"
    UNSUPPORTED_TRACER = "UNSUPPORTED_TRACER"
    NOT_FOUND = "NOT_FOUND"
    BAD_REQUEST = "BAD_REQUEST"
    RATE_LIMITED = "RATE_LIMITED"
    OPERATION_CANCELLED = "OPERATION_CANCELLED"

    # 5xx server errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    PARSING_ERROR = "PARSING_ERROR"
    RPC_ERROR = "RPC_ERROR"
    ANALYSIS_EXHAUSTED = "ANALYSIS_EXHAUSTED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


# ── Error Schemas ────────────────────────────────────────────────────────────


class FieldError(BaseModel):
    """Individual field validation error."""

    field: str
    message: str
    type: str


class ErrorEnvelope(BaseModel):
    """Standard error response envelope."""

    code: str
    message: str
    details: list[FieldError] | list[dict[str, Any]] | dict[str, Any] | None = None
    request_id: str | None = None


class ErrorResponse(BaseModel):
    """Top-level error response."""

    error: ErrorEnvelope


# ── Status mappings ──────────────────────────────────────────────────────────

_STATUS_TO_CODE: dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    404: ErrorCode.NOT_FOUND,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
    500: ErrorCode.INTERNAL_ERROR,
    502: ErrorCode.RPC_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.TIMEOUT,
}

# 499 follows the nginx convention for a request the client abandoned.
KIND_TO_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INVALID_TX_HASH: 422,
    ErrorKind.INVALID_BLOCK_ID: 422,
    ErrorKind.UNSUPPORTED_TRACER: 422,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.PARSING_ERROR: 502,
    ErrorKind.RPC_ERROR: 502,
    ErrorKind.OPERATION_CANCELLED: 499,
}


def _get_request_id(request: Request) -> str | None:
    """Extract request ID from headers (set by RequestIDMiddleware)."""
    return request.headers.get("X-Request-ID") or getattr(request.state, "request_id", None)


def _envelope(status_code: int, code: str, message: str, request: Request, details: Any = None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorEnvelope(
            code=code,
            message=message,
            details=details or None,
            request_id=_get_request_id(request),
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ── Exception Handlers ──────────────────────────────────────────────────────


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic / FastAPI validation errors with structured detail."""
    details = []
    for err in exc.errors():
        loc = err.get("loc", [])
        field = ".".join(str(l) for l in loc if l != "body")
        details.append(
            FieldError(
                field=field or "unknown",
                message=err.get("msg", "Invalid value"),
                type=err.get("type", "value_error"),
            ).model_dump()
        )
    return _envelope(
        422,
        ErrorCode.VALIDATION_ERROR.value,
        f"Request validation failed: {len(details)} error(s)",
        request,
        details,
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Handle HTTP exceptions with structured error envelope."""
    code = _STATUS_TO_CODE.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return _envelope(exc.status_code, code.value, str(exc.detail) if exc.detail else code.value, request)


async def replay_error_handler(request: Request, exc: ReplayError) -> JSONResponse:
    """Map a classified replay failure to its HTTP status."""
    status_code = KIND_TO_STATUS.get(exc.kind, 502)
    if status_code >= 500:
        logger.warning(
            "Replay failed on %s %s: %s", request.method, request.url.path, exc.message,
            extra={"status_code": status_code, "path": request.url.path},
        )
    return _envelope(status_code, exc.kind.name, exc.message, request, exc.details)


async def exhausted_error_handler(request: Request, exc: AnalysisExhaustedError) -> JSONResponse:
    return _envelope(
        503,
        ErrorCode.ANALYSIS_EXHAUSTED.value,
        str(exc),
        request,
        {"target": exc.target, "attempted": exc.attempted},
    )


async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Log the full traceback of an unexpected exception and return a generic error."""
    logger.exception(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )
    return _envelope(
        500,
        ErrorCode.INTERNAL_ERROR.value,
        "An internal server error occurred. Please try again later.",
        request,
    )


def register_error_handlers(app: Any) -> None:
    """Register all structured error handlers on a FastAPI app."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(ReplayError, replay_error_handler)
    app.add_exception_handler(AnalysisExhaustedError, exhausted_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
