"""Replay RPC client.

Wraps ``trace_replayTransaction`` and ``trace_replayBlockTransactions`` with
input validation, a per-method timeout, cooperative cancellation, retries
with exponential back-off and shape validation of the node's response.

Each RPC attempt races three things: the RPC response, the timeout and the
caller's cancellation event.  Whichever finishes first decides the outcome;
the losers are cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from replay_engine.core.cache import ReplayCache, replay_cache_key
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import RPC_METHODS, SUPPORTED_TRACERS
from replay_engine.core.errors import ErrorKind, ReplayError, classify_rpc_error
from replay_engine.core.types import CostEstimate
from replay_engine.ingestion.rpc_provider import JsonRpcProvider

logger = logging.getLogger(__name__)

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_HEX_INT_RE = re.compile(r"^0x[0-9a-fA-F]{1,16}$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")

DEFAULT_TRACERS = ("trace", "stateDiff")


# ── Input validation ─────────────────────────────────────────────────────────


def validate_tx_hash(tx_hash: str) -> str:
    """Return the lower-cased hash or raise ``INVALID_TX_HASH``."""
    if not isinstance(tx_hash, str) or not _TX_HASH_RE.match(tx_hash):
        raise ReplayError(
            ErrorKind.INVALID_TX_HASH,
            "Invalid transaction hash format. Expected 0x followed by 64 hex characters.",
            {"tx_hash": tx_hash},
        )
    return tx_hash.lower()


def normalize_block_id(block: int | str) -> str:
    """Normalise a block number, hex number or block hash to ``0x`` hex."""
    if isinstance(block, bool):
        raise ReplayError(ErrorKind.INVALID_BLOCK_ID, f"Invalid block identifier: {block!r}")

    if isinstance(block, int):
        if block < 0:
            raise ReplayError(ErrorKind.INVALID_BLOCK_ID, f"Block number must be non-negative: {block}")
        return hex(block)

    if isinstance(block, str):
        value = block.strip()
        if _DECIMAL_RE.match(value):
            return hex(int(value))
        if _TX_HASH_RE.match(value):
            return value.lower()
        if _HEX_INT_RE.match(value):
            return hex(int(value, 16))

    raise ReplayError(
        ErrorKind.INVALID_BLOCK_ID,
        "Invalid block identifier. Expected a block number, 0x-prefixed hex number or 32-byte block hash.",
        {"block": block},
    )


def validate_tracers(tracers: Iterable[Any]) -> list[str]:
    """Validate a tracer set and return it deduplicated in canonical order."""
    requested = [str(getattr(t, "value", t)) for t in tracers]
    if not requested:
        raise ReplayError(ErrorKind.UNSUPPORTED_TRACER, "At least one tracer must be requested.")

    unsupported = sorted(set(requested) - set(SUPPORTED_TRACERS))
    if unsupported:
        raise ReplayError(
            ErrorKind.UNSUPPORTED_TRACER,
            f"Unsupported tracer(s): {', '.join(unsupported)}. Supported: {', '.join(SUPPORTED_TRACERS)}",
            {"unsupported": unsupported},
        )
    return [t for t in SUPPORTED_TRACERS if t in requested]


def _is_block_hash(block_param: str) -> bool:
    return len(block_param) == 66


# ── Progress ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProgressUpdate:
    completed: int
    total: int
    message: str


ProgressCallback = Callable[[ProgressUpdate], None]


# ── Client ───────────────────────────────────────────────────────────────────


class ReplayClient:
    """Issue trace replays against a node with retry and cancellation support."""

    def __init__(
        self,
        provider: JsonRpcProvider | None = None,
        *,
        settings: Settings | None = None,
        cache: ReplayCache | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache
        self._provider = provider
        self._providers: dict[str, JsonRpcProvider] = {}
        self._sleep = sleep

    def _provider_for(self, network: str) -> JsonRpcProvider:
        if self._provider is not None:
            return self._provider
        if network not in self._providers:
            try:
                self._providers[network] = JsonRpcProvider.for_network(network, self.settings)
            except ValueError as exc:
                raise ReplayError(ErrorKind.VALIDATION_ERROR, str(exc), {"network": network}) from exc
        return self._providers[network]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        self._providers.clear()

    # ── Racing primitives ────────────────────────────────────────────────────

    async def _race(
        self,
        awaitable: Awaitable[Any],
        *,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
        label: str,
    ) -> Any:
        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter: asyncio.Future[Any] | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if cancel_waiter is not None and cancel_waiter in done:
            if task.done() and not task.cancelled():
                task.exception()  # mark retrieved; the cancellation wins
            raise ReplayError(ErrorKind.OPERATION_CANCELLED, f"{label} was cancelled")
        if task in done:
            return task.result()
        raise ReplayError(
            ErrorKind.TIMEOUT,
            f"{label} timed out after {timeout:g}s",
            {"timeout_seconds": timeout},
        )

    async def call(
        self,
        method: str,
        params: list[Any],
        *,
        network: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """Send one RPC call raced against *timeout* and *cancel_event*.

        Every failure surfaces as a classified ``ReplayError``.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise ReplayError(ErrorKind.OPERATION_CANCELLED, f"{method} was cancelled")

        provider = self._provider_for(network or self.settings.default_network)
        try:
            return await self._race(
                provider.send(method, params),
                timeout=timeout,
                cancel_event=cancel_event,
                label=method,
            )
        except ReplayError:
            raise
        except Exception as exc:
            raise classify_rpc_error(exc, method) from exc

    async def _backoff(self, delay: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await self._sleep(delay)
            return
        await self._race(self._sleep(delay), timeout=None, cancel_event=cancel_event, label="Retry back-off")

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        max_retries: int,
        base_delay: float,
        max_delay: float,
        label: str,
        cancel_event: asyncio.Event | None,
        progress: ProgressCallback | None = None,
        log_extra: dict[str, Any] | None = None,
    ) -> Any:
        """Run *operation* sequentially up to ``max_retries + 1`` times."""
        attempts = max_retries + 1
        last_exc: ReplayError | None = None
        for attempt in range(attempts):
            try:
                return await operation()
            except ReplayError as exc:
                last_exc = exc
                if not exc.retryable or attempt >= max_retries:
                    raise
                delay = min(base_delay * (2 ** attempt), max_delay)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label, attempt + 1, attempts, delay, exc.message,
                    extra={**(log_extra or {}), "attempt": attempt + 1},
                )
                if progress is not None:
                    progress(ProgressUpdate(0, 4, f"Retrying... (attempt {attempt + 2}/{attempts})"))
                await self._backoff(delay, cancel_event)
        raise last_exc  # unreachable but keeps mypy happy

    # ── Transaction replay ───────────────────────────────────────────────────

    async def replay_transaction(
        self,
        tx_hash: str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        *,
        network: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Single ``trace_replayTransaction`` attempt."""
        tx_hash = validate_tx_hash(tx_hash)
        tracer_list = validate_tracers(tracers)

        result = await self.call(
            "trace_replayTransaction",
            [tx_hash, tracer_list],
            network=network,
            timeout=self.settings.replay_tx_timeout_seconds,
            cancel_event=cancel_event,
        )
        _validate_transaction_result(result)
        return result

    async def replay_transaction_with_retry(
        self,
        tx_hash: str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        *,
        network: str | None = None,
        max_retries: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        tx_hash = validate_tx_hash(tx_hash)
        tracer_list = validate_tracers(tracers)
        network = network or self.settings.default_network

        key = replay_cache_key("tx", tx_hash, network, tracer_list)
        if self.cache is not None:
            hit = await self.cache.get(key)
            if hit is not None:
                logger.debug("Replay cache hit for %s", key, extra={"tx_hash": tx_hash})
                return hit

        result = await self._with_retry(
            lambda: self.replay_transaction(tx_hash, tracer_list, network=network, cancel_event=cancel_event),
            max_retries=self.settings.replay_tx_max_retries if max_retries is None else max_retries,
            base_delay=self.settings.replay_tx_backoff_base,
            max_delay=self.settings.replay_tx_backoff_cap,
            label="trace_replayTransaction",
            cancel_event=cancel_event,
            log_extra={"tx_hash": tx_hash, "rpc_method": "trace_replayTransaction"},
        )

        if self.cache is not None:
            await self.cache.set(key, result)
        return result

    # ── Block replay ─────────────────────────────────────────────────────────

    async def _preflight_transaction_count(
        self,
        block_param: str,
        network: str | None,
        cancel_event: asyncio.Event | None,
    ) -> int | None:
        """Cheap block lookup used only for progress reporting."""
        method = "eth_getBlockByHash" if _is_block_hash(block_param) else "eth_getBlockByNumber"
        try:
            block = await self.call(
                method,
                [block_param, False],
                network=network,
                timeout=min(30.0, self.settings.replay_block_timeout_seconds),
                cancel_event=cancel_event,
            )
        except ReplayError as exc:
            if exc.kind == ErrorKind.OPERATION_CANCELLED:
                raise
            logger.warning("Block pre-flight failed, continuing without transaction count: %s", exc.message,
                           extra={"block": block_param, "rpc_method": method})
            return None

        if isinstance(block, dict) and isinstance(block.get("transactions"), list):
            return len(block["transactions"])
        return None

    async def replay_block_transactions(
        self,
        block: int | str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        *,
        network: str | None = None,
        cancel_event: asyncio.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> list[dict[str, Any]]:
        """Single ``trace_replayBlockTransactions`` attempt with progress callbacks."""
        block_param = normalize_block_id(block)
        tracer_list = validate_tracers(tracers)

        def report(completed: int, message: str) -> None:
            if progress is not None:
                progress(ProgressUpdate(completed, 4, message))

        report(1, "Fetching block information...")
        tx_count = await self._preflight_transaction_count(block_param, network, cancel_event)
        report(2, f"Processing {tx_count} transactions..." if tx_count is not None
               else "Processing block transactions...")

        report(3, "Replaying block transactions...")
        result = await self.call(
            "trace_replayBlockTransactions",
            [block_param, tracer_list],
            network=network,
            timeout=self.settings.replay_block_timeout_seconds,
            cancel_event=cancel_event,
        )
        _validate_block_result(result)

        report(4, "Processing complete")
        return result

    async def replay_block_with_retry(
        self,
        block: int | str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        *,
        network: str | None = None,
        max_retries: int | None = None,
        cancel_event: asyncio.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> list[dict[str, Any]]:
        block_param = normalize_block_id(block)
        tracer_list = validate_tracers(tracers)
        network = network or self.settings.default_network

        key = replay_cache_key("block", block_param, network, tracer_list)
        if self.cache is not None:
            hit = await self.cache.get(key)
            if hit is not None:
                if progress is not None:
                    progress(ProgressUpdate(4, 4, "Loaded from cache"))
                return hit

        result = await self._with_retry(
            lambda: self.replay_block_transactions(
                block_param, tracer_list, network=network, cancel_event=cancel_event, progress=progress
            ),
            max_retries=self.settings.replay_block_max_retries if max_retries is None else max_retries,
            base_delay=self.settings.replay_block_backoff_base,
            max_delay=self.settings.replay_block_backoff_cap,
            label="trace_replayBlockTransactions",
            cancel_event=cancel_event,
            progress=progress,
            log_extra={"block": block_param, "rpc_method": "trace_replayBlockTransactions"},
        )

        if self.cache is not None:
            await self.cache.set(key, result)
        return result

    # ── Cost estimates ───────────────────────────────────────────────────────

    @staticmethod
    def get_estimated_cost(operation: str, transaction_count: int = 1) -> CostEstimate:
        """Rough relative cost of a replay, for confirmation prompts."""
        if operation == "block":
            n = max(transaction_count, 1)
            if n > 50:
                recommendation = (
                    "Large block: consider replaying individual transactions instead of the whole block."
                )
            else:
                recommendation = "Block replay is expensive; results are cached after the first run."
            return CostEstimate(
                operation="block",
                cost_multiplier=RPC_METHODS["trace_replayBlockTransactions"].cost_multiplier * n,
                estimated_time=f"{math.ceil(n / 10)}-{math.ceil(n / 5)} minutes",
                recommendation=recommendation,
            )
        if operation == "transaction":
            return CostEstimate(
                operation="transaction",
                cost_multiplier=RPC_METHODS["trace_replayTransaction"].cost_multiplier,
                estimated_time="30-60 seconds",
                recommendation="Transaction replay is expensive; results are cached for repeated views.",
            )
        raise ValueError(f"Unknown operation: {operation}")


# ── Response shape checks ────────────────────────────────────────────────────


def _parsing_error(message: str) -> ReplayError:
    return ReplayError(ErrorKind.PARSING_ERROR, message)


def _validate_tracer_payload(result: dict[str, Any], where: str) -> None:
    trace = result.get("trace")
    if trace is not None and not isinstance(trace, list):
        raise _parsing_error(f"{where}: trace must be an array")
    for tracer in ("stateDiff", "vmTrace"):
        payload = result.get(tracer)
        if payload is not None and not isinstance(payload, dict):
            raise _parsing_error(f"{where}: {tracer} must be an object")


def _validate_transaction_result(result: Any) -> None:
    if not isinstance(result, dict):
        raise _parsing_error("Invalid response format from trace_replayTransaction")
    _validate_tracer_payload(result, "trace_replayTransaction")


def _validate_block_result(result: Any) -> None:
    if not isinstance(result, list):
        raise _parsing_error("Invalid response format from trace_replayBlockTransactions: expected an array")
    for index, item in enumerate(result):
        if not isinstance(item, dict):
            raise _parsing_error(f"trace_replayBlockTransactions[{index}] is not an object")
        _validate_tracer_payload(item, f"trace_replayBlockTransactions[{index}]")
