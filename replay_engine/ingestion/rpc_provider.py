"""Minimal async JSON-RPC 2.0 transport over HTTP."""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any

import httpx

from replay_engine.core.config import Settings, get_settings
from replay_engine.core.errors import JsonRpcError
from replay_engine.core.networks import resolve_rpc_url

logger = logging.getLogger(__name__)


class JsonRpcProvider:
    """Send JSON-RPC requests to a single node endpoint.

    Raises ``JsonRpcError`` for error objects in the response body and lets
    ``httpx`` exceptions (timeouts, transport failures, HTTP status errors)
    propagate unchanged so the caller can classify them.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 330.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    @classmethod
    def for_network(cls, network: str, settings: Settings | None = None) -> "JsonRpcProvider":
        settings = settings or get_settings()
        return cls(resolve_rpc_url(network, settings), timeout=settings.rpc_http_timeout)

    async def send(self, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC call and return its ``result`` member."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        start = time.perf_counter()
        response = await self._client.post(self.url, json=payload)
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(
            "%s → HTTP %d (%.1fms)",
            method,
            response.status_code,
            elapsed,
            extra={"rpc_method": method, "status_code": response.status_code, "duration_ms": round(elapsed, 1)},
        )
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError as exc:
            raise JsonRpcError(-32700, f"Response to {method} is not valid JSON") from exc
        if not isinstance(body, dict):
            raise JsonRpcError(-32700, f"Unexpected JSON-RPC response for {method}")

        error = body.get("error")
        if error:
            raise JsonRpcError(
                int(error.get("code", -32000)),
                str(error.get("message", "Unknown RPC error")),
                error.get("data"),
            )
        return body.get("result")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "JsonRpcProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
