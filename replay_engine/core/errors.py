"""Error taxonomy for replay requests and the fallback chain.

Every failure that crosses a component boundary is a ``ReplayError`` carrying
an ``ErrorKind``.  Validation kinds fail fast and are never retried; transient
kinds are retried locally by the RPC client before being surfaced.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    """Closed set of replay failure kinds."""

    INVALID_TX_HASH = "INVALID_TX_HASH"
    INVALID_BLOCK_ID = "INVALID_BLOCK_ID"
    UNSUPPORTED_TRACER = "UNSUPPORTED_TRACER"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    PARSING_ERROR = "PARSING_ERROR"
    OPERATION_CANCELLED = "OPERATION_CANCELLED"
    RPC_ERROR = "RPC_ERROR"


_VALIDATION_KINDS = frozenset({
    ErrorKind.INVALID_TX_HASH,
    ErrorKind.INVALID_BLOCK_ID,
    ErrorKind.UNSUPPORTED_TRACER,
    ErrorKind.VALIDATION_ERROR,
})

_RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.RPC_ERROR,
})


class ReplayError(Exception):
    """A classified replay failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def is_validation(self) -> bool:
        return self.kind in _VALIDATION_KINDS

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"ReplayError({self.kind.value}, {self.message!r})"


class JsonRpcError(Exception):
    """Error object returned inside a JSON-RPC response."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")


class AnalysisExhaustedError(Exception):
    """Raised when every analysis method, including the last resort, failed."""

    def __init__(self, target: str, attempted: list[str] | None = None) -> None:
        self.target = target
        self.attempted = attempted or []
        super().__init__(f"All analysis methods failed for {target}")


def classify_rpc_error(exc: BaseException, method: str = "") -> ReplayError:
    """Map a provider or transport exception onto the replay error taxonomy."""
    if isinstance(exc, ReplayError):
        return exc

    details: dict[str, Any] = {"method": method} if method else {}

    if isinstance(exc, JsonRpcError):
        details["rpc_code"] = exc.code
        if exc.code == -32700:
            return ReplayError(ErrorKind.PARSING_ERROR, f"Malformed RPC response: {exc.message}", details)
        if exc.code == -32602:
            return ReplayError(ErrorKind.VALIDATION_ERROR, f"Invalid parameters: {exc.message}", details)
        if exc.code == -32603:
            return ReplayError(ErrorKind.RPC_ERROR, f"Internal RPC error: {exc.message}", details)
        if exc.code == 429:
            return ReplayError(ErrorKind.RATE_LIMITED, "Rate limit exceeded. Please try again later.", details)

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        details["status_code"] = status
        if status == 429:
            return ReplayError(ErrorKind.RATE_LIMITED, "Rate limit exceeded. Please try again later.", details)
        return ReplayError(ErrorKind.RPC_ERROR, f"RPC endpoint returned HTTP {status}", details)

    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return ReplayError(ErrorKind.TIMEOUT, f"Request timed out: {exc}", details)

    if isinstance(exc, httpx.TransportError):
        return ReplayError(ErrorKind.NETWORK_ERROR, f"Network error: {exc}", details)

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return ReplayError(ErrorKind.TIMEOUT, f"Request timed out: {message}", details)
    if "network" in lowered:
        return ReplayError(ErrorKind.NETWORK_ERROR, f"Network error: {message}", details)
    return ReplayError(ErrorKind.RPC_ERROR, message, details)
