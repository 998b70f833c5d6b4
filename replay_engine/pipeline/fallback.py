"""Cost-aware fallback analysis.

A static registry of analysis methods, each with a cost estimate, a
reliability score and the set of methods it can stand in for.  ``analyze``
walks a small state machine:

    cache hit ──────────────────────────────► cached result (confidence 0.95)
    preferred affordable and succeeds ──────► preferred result
    otherwise, affordable fallbacks ordered
      by reliability desc, cost tier asc ───► first success (suggested upgrade)
    last-resort minimal method ─────────────► best-effort result
    nothing left ───────────────────────────► AnalysisExhaustedError

Methods are a closed set dispatched on ``MethodId``; every executor talks
to the node through the shared ``ReplayClient``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from replay_engine.analyzer.storage_slots import format_token_amount, parse_hex_int
from replay_engine.analyzer.trace_processor import TraceProcessor
from replay_engine.core.cache import ReplayCache
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import TRANSFER_EVENT_TOPIC, get_token_config
from replay_engine.core.errors import AnalysisExhaustedError, ErrorKind, ReplayError
from replay_engine.core.types import CostBenefitEntry, CostTier, FallbackResult
from replay_engine.ingestion.replay_client import (
    DEFAULT_TRACERS,
    ReplayClient,
    normalize_block_id,
    validate_tracers,
    validate_tx_hash,
)

logger = logging.getLogger(__name__)

CACHED_CONFIDENCE = 0.95
TRANSACTION = "transaction"
BLOCK = "block"


class MethodId(str, enum.Enum):
    TRACE_REPLAY_TRANSACTION = "trace_replayTransaction"
    TRACE_REPLAY_BLOCK = "trace_replayBlockTransactions"
    DEBUG_TRACE_TRANSACTION = "debug_traceTransaction"
    BASIC_TRACE = "basic_trace"
    RECEIPT_ANALYSIS = "receipt_analysis"
    LOG_ANALYSIS = "log_analysis"
    BASIC_INFO = "basic_info"
    BLOCK_ANALYSIS = "block_analysis"
    RECEIPT_BATCH_ANALYSIS = "receipt_batch_analysis"


# ── Registry ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AnalysisMethod:
    """Static description of one analysis strategy."""

    id: MethodId
    name: str
    description: str
    target: str  # TRANSACTION or BLOCK
    time_estimate_ms: int
    rpc_calls: int
    cost_tier: CostTier
    reliability: float
    data_requirements: tuple[str, ...]
    fallback_for: frozenset[MethodId] = frozenset()
    limitations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id.value,
            "name": self.name,
            "description": self.description,
            "target": self.target,
            "time_estimate_ms": self.time_estimate_ms,
            "rpc_calls": self.rpc_calls,
            "cost_tier": self.cost_tier.value,
            "reliability": self.reliability,
            "data_requirements": list(self.data_requirements),
            "fallback_for": sorted(m.value for m in self.fallback_for),
            "limitations": list(self.limitations),
        }


ANALYSIS_METHODS: dict[MethodId, AnalysisMethod] = {
    MethodId.TRACE_REPLAY_TRANSACTION: AnalysisMethod(
        id=MethodId.TRACE_REPLAY_TRANSACTION,
        name="Full Transaction Replay",
        description="Complete transaction replay with the requested tracers",
        target=TRANSACTION,
        time_estimate_ms=5_000,
        rpc_calls=1,
        cost_tier=CostTier.VERY_HIGH,
        reliability=0.95,
        data_requirements=("transaction_hash",),
    ),
    MethodId.TRACE_REPLAY_BLOCK: AnalysisMethod(
        id=MethodId.TRACE_REPLAY_BLOCK,
        name="Block Transaction Replay",
        description="Replay every transaction in a block",
        target=BLOCK,
        time_estimate_ms=30_000,
        rpc_calls=1,
        cost_tier=CostTier.VERY_HIGH,
        reliability=0.95,
        data_requirements=("block_number",),
    ),
    MethodId.DEBUG_TRACE_TRANSACTION: AnalysisMethod(
        id=MethodId.DEBUG_TRACE_TRANSACTION,
        name="Debug Trace",
        description="Call tree from debug_traceTransaction without state diff",
        target=TRANSACTION,
        time_estimate_ms=2_000,
        rpc_calls=1,
        cost_tier=CostTier.HIGH,
        reliability=0.85,
        data_requirements=("transaction_hash",),
        fallback_for=frozenset({MethodId.TRACE_REPLAY_TRANSACTION}),
        limitations=("No state diff", "Limited storage analysis"),
    ),
    MethodId.BASIC_TRACE: AnalysisMethod(
        id=MethodId.BASIC_TRACE,
        name="Basic Call Trace",
        description="Flat call trace from trace_transaction without opcode details",
        target=TRANSACTION,
        time_estimate_ms=1_000,
        rpc_calls=1,
        cost_tier=CostTier.MEDIUM,
        reliability=0.75,
        data_requirements=("transaction_hash",),
        fallback_for=frozenset({MethodId.TRACE_REPLAY_TRANSACTION, MethodId.DEBUG_TRACE_TRANSACTION}),
        limitations=("No state changes", "Basic call info only"),
    ),
    MethodId.RECEIPT_ANALYSIS: AnalysisMethod(
        id=MethodId.RECEIPT_ANALYSIS,
        name="Receipt Analysis",
        description="Analysis based on the transaction receipt and its logs",
        target=TRANSACTION,
        time_estimate_ms=100,
        rpc_calls=1,
        cost_tier=CostTier.LOW,
        reliability=0.6,
        data_requirements=("transaction_hash",),
        fallback_for=frozenset({
            MethodId.TRACE_REPLAY_TRANSACTION,
            MethodId.DEBUG_TRACE_TRANSACTION,
            MethodId.BASIC_TRACE,
        }),
        limitations=("No internal calls", "Event-based only"),
    ),
    MethodId.LOG_ANALYSIS: AnalysisMethod(
        id=MethodId.LOG_ANALYSIS,
        name="Event Log Analysis",
        description="Analysis based on emitted events only",
        target=TRANSACTION,
        time_estimate_ms=50,
        rpc_calls=1,
        cost_tier=CostTier.LOW,
        reliability=0.45,
        data_requirements=("transaction_hash",),
        fallback_for=frozenset({
            MethodId.TRACE_REPLAY_TRANSACTION,
            MethodId.DEBUG_TRACE_TRANSACTION,
            MethodId.RECEIPT_ANALYSIS,
        }),
        limitations=("Events only", "No gas breakdown"),
    ),
    MethodId.BASIC_INFO: AnalysisMethod(
        id=MethodId.BASIC_INFO,
        name="Basic Transaction Info",
        description="Transaction envelope without any execution analysis",
        target=TRANSACTION,
        time_estimate_ms=20,
        rpc_calls=1,
        cost_tier=CostTier.LOW,
        reliability=0.3,
        data_requirements=("transaction_hash",),
        fallback_for=frozenset({
            MethodId.TRACE_REPLAY_TRANSACTION,
            MethodId.DEBUG_TRACE_TRANSACTION,
            MethodId.RECEIPT_ANALYSIS,
            MethodId.LOG_ANALYSIS,
        }),
        limitations=(
            "Limited analysis depth",
            "No internal call information",
            "No state change details",
            "Basic gas information only",
        ),
    ),
    MethodId.BLOCK_ANALYSIS: AnalysisMethod(
        id=MethodId.BLOCK_ANALYSIS,
        name="Block Header Analysis",
        description="Analysis based on the block header and transaction list",
        target=BLOCK,
        time_estimate_ms=200,
        rpc_calls=1,
        cost_tier=CostTier.LOW,
        reliability=0.5,
        data_requirements=("block_number",),
        fallback_for=frozenset({MethodId.TRACE_REPLAY_BLOCK}),
        limitations=("No transaction details", "Aggregate only"),
    ),
    MethodId.RECEIPT_BATCH_ANALYSIS: AnalysisMethod(
        id=MethodId.RECEIPT_BATCH_ANALYSIS,
        name="Batch Receipt Analysis",
        description="Receipts of a sample of the block's transactions",
        target=BLOCK,
        time_estimate_ms=500,
        rpc_calls=10,
        cost_tier=CostTier.MEDIUM,
        reliability=0.65,
        data_requirements=("block_number",),
        fallback_for=frozenset({MethodId.TRACE_REPLAY_BLOCK}),
        limitations=("Limited transaction depth", "Sampled receipts only"),
    ),
}

# Minimal method tried after every fallback failed.
LAST_RESORT: dict[str, MethodId] = {
    TRANSACTION: MethodId.BASIC_INFO,
    BLOCK: MethodId.BLOCK_ANALYSIS,
}

DEFAULT_PREFERRED: dict[str, MethodId] = {
    TRANSACTION: MethodId.TRACE_REPLAY_TRANSACTION,
    BLOCK: MethodId.TRACE_REPLAY_BLOCK,
}


def get_method(method_id: MethodId | str) -> AnalysisMethod:
    """Look up a registry entry, raising ``VALIDATION_ERROR`` for unknown ids."""
    try:
        return ANALYSIS_METHODS[MethodId(method_id)]
    except ValueError as exc:
        raise ReplayError(
            ErrorKind.VALIDATION_ERROR,
            f"Unknown analysis method: {method_id}",
            {"available": [m.value for m in MethodId]},
        ) from exc


def get_all_methods() -> list[AnalysisMethod]:
    return list(ANALYSIS_METHODS.values())


def get_fallback_methods(primary: MethodId | str) -> list[AnalysisMethod]:
    """Methods that can stand in for *primary*, best first."""
    primary_id = get_method(primary).id
    candidates = [m for m in ANALYSIS_METHODS.values() if primary_id in m.fallback_for]
    return sorted(candidates, key=lambda m: (-m.reliability, m.cost_tier.rank))


def parse_cost_tier(value: CostTier | str) -> CostTier:
    try:
        return CostTier(value)
    except ValueError as exc:
        raise ReplayError(
            ErrorKind.VALIDATION_ERROR,
            f"Unknown cost tier: {value}",
            {"allowed": [t.value for t in CostTier]},
        ) from exc


def is_affordable(method: AnalysisMethod, max_cost: CostTier) -> bool:
    return method.cost_tier.rank <= max_cost.rank


def fallback_cache_key(kind: str, target: str, network: str, method: MethodId, tracers: Iterable[str]) -> str:
    tracer_part = "_".join(sorted(tracers))
    return f"fallback_{kind}_{target.lower()}_{network}_{method.value}_{tracer_part}"


# ── Log decoding ─────────────────────────────────────────────────────────────


def decode_transfer_logs(logs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Decode ERC-20 ``Transfer`` events from receipt logs."""
    transfers: list[dict[str, Any]] = []
    for log in logs:
        topics = log.get("topics") or []
        if len(topics) != 3 or str(topics[0]).lower() != TRANSFER_EVENT_TOPIC:
            continue
        address = str(log.get("address", "")).lower()
        amount = parse_hex_int(log.get("data"))
        token = get_token_config(address)
        transfers.append({
            "token_address": address,
            "token_symbol": token.symbol if token else None,
            "from": "0x" + str(topics[1])[-40:].lower(),
            "to": "0x" + str(topics[2])[-40:].lower(),
            "amount": str(amount),
            "formatted_amount": format_token_amount(amount, token.decimals) if token else str(amount),
            "log_index": parse_hex_int(log.get("logIndex")),
        })
    return transfers


def _token_volume(transfers: list[dict[str, Any]]) -> dict[str, str]:
    totals: dict[str, int] = {}
    for transfer in transfers:
        address = transfer["token_address"]
        totals[address] = totals.get(address, 0) + int(transfer["amount"])
    volume: dict[str, str] = {}
    for address, amount in totals.items():
        token = get_token_config(address)
        if token is None:
            volume[address] = str(amount)
        else:
            volume[token.symbol] = format_token_amount(amount, token.decimals)
    return volume


def _count_calls(frame: dict[str, Any]) -> int:
    count = 0
    pending = [frame]
    while pending:
        node = pending.pop()
        count += 1
        pending.extend(node.get("calls") or [])
    return count


# ── Engine ───────────────────────────────────────────────────────────────────


class FallbackAnalysisEngine:
    """Pick the best affordable analysis for a target and degrade gracefully."""

    def __init__(
        self,
        client: ReplayClient,
        cache: ReplayCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.settings = settings or get_settings()
        self._trace_processor = TraceProcessor(self.settings)

    async def analyze(
        self,
        target: int | str,
        *,
        preferred_method: MethodId | str | None = None,
        max_cost: CostTier | str | None = None,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        network: str | None = None,
        use_cache: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> FallbackResult:
        """Analyse a transaction hash or block identifier.

        The target kind follows *preferred_method* when given; otherwise a
        66-character hex string is a transaction and anything else a block.
        """
        if preferred_method is not None:
            preferred = get_method(preferred_method)
            kind = preferred.target
        else:
            kind = TRANSACTION if isinstance(target, str) and len(target) == 66 else BLOCK
            preferred = ANALYSIS_METHODS[DEFAULT_PREFERRED[kind]]

        normalized = validate_tx_hash(str(target)) if kind == TRANSACTION else normalize_block_id(target)
        tracer_list = validate_tracers(tracers)
        ceiling = parse_cost_tier(max_cost or self.settings.fallback_default_max_cost)
        network = network or self.settings.default_network
        log_extra = {"tx_hash": normalized} if kind == TRANSACTION else {"block": normalized}

        key = fallback_cache_key(kind, normalized, network, preferred.id, tracer_list)
        if use_cache and self.cache is not None:
            hit = await self.cache.get(key)
            if hit is not None:
                logger.debug("Fallback cache hit for %s", key, extra=log_extra)
                return FallbackResult(
                    target=normalized,
                    method_used=hit["method"],
                    data=hit["data"],
                    confidence=CACHED_CONFIDENCE,
                    limitations=[],
                    cached=True,
                )

        attempted: list[str] = []
        params = (normalized, tracer_list, network, cancel_event)

        # 1. Preferred method
        if is_affordable(preferred, ceiling):
            data = await self._attempt(preferred, params, attempted, log_extra)
            if data is not None:
                ttl = self.settings.fallback_block_ttl if kind == BLOCK else self.settings.fallback_preferred_ttl
                await self._store(key, preferred.id, data, ttl, use_cache)
                return self._result(normalized, preferred, data, attempted)
        else:
            logger.info(
                "Preferred method %s (%s) exceeds max cost %s",
                preferred.id.value, preferred.cost_tier.value, ceiling.value, extra=log_extra,
            )

        # 2. Ranked fallbacks
        for method in get_fallback_methods(preferred.id):
            if not is_affordable(method, ceiling):
                continue
            logger.info("Falling back to %s for %s", method.id.value, normalized, extra=log_extra)
            data = await self._attempt(method, params, attempted, log_extra)
            if data is not None:
                await self._store(key, method.id, data, self.settings.fallback_secondary_ttl, use_cache)
                return self._result(normalized, method, data, attempted, suggested_upgrade=preferred.id)

        # 3. Last resort
        last_resort = ANALYSIS_METHODS[LAST_RESORT[kind]]
        if last_resort.id.value not in attempted:
            logger.info("Trying last-resort method %s for %s", last_resort.id.value, normalized, extra=log_extra)
            data = await self._attempt(last_resort, params, attempted, log_extra)
            if data is not None:
                return self._result(normalized, last_resort, data, attempted, suggested_upgrade=preferred.id)

        raise AnalysisExhaustedError(normalized, attempted)

    async def analyze_transaction(self, tx_hash: str, **kwargs: Any) -> FallbackResult:
        kwargs.setdefault("preferred_method", MethodId.TRACE_REPLAY_TRANSACTION)
        return await self.analyze(tx_hash, **kwargs)

    async def analyze_block(self, block: int | str, **kwargs: Any) -> FallbackResult:
        kwargs.setdefault("preferred_method", MethodId.TRACE_REPLAY_BLOCK)
        return await self.analyze(block, **kwargs)

    # ── State machine helpers ────────────────────────────────────────────────

    async def _attempt(
        self,
        method: AnalysisMethod,
        params: tuple[str, list[str], str, asyncio.Event | None],
        attempted: list[str],
        log_extra: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Run one method; ``None`` means it failed and the walk continues."""
        attempted.append(method.id.value)
        try:
            return await self.execute(method.id, *params)
        except ReplayError as exc:
            if exc.kind == ErrorKind.OPERATION_CANCELLED:
                raise
            logger.warning(
                "Analysis method %s failed: %s", method.id.value, exc.message,
                extra={**log_extra, "analysis_method": method.id.value},
            )
            return None

    async def _store(self, key: str, method: MethodId, data: dict[str, Any], ttl: int, use_cache: bool) -> None:
        if use_cache and self.cache is not None:
            await self.cache.set(key, {"method": method.value, "data": data}, ttl=ttl)

    @staticmethod
    def _result(
        target: str,
        method: AnalysisMethod,
        data: dict[str, Any],
        attempted: list[str],
        suggested_upgrade: MethodId | None = None,
    ) -> FallbackResult:
        return FallbackResult(
            target=target,
            method_used=method.id.value,
            data=data,
            confidence=method.reliability,
            limitations=list(method.limitations),
            cached=False,
            suggested_upgrade=suggested_upgrade.value if suggested_upgrade else None,
            attempted=list(attempted),
        )

    # ── Executors ────────────────────────────────────────────────────────────

    async def execute(
        self,
        method_id: MethodId,
        target: str,
        tracers: list[str],
        network: str,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Dispatch to the executor for *method_id*."""
        if method_id == MethodId.TRACE_REPLAY_TRANSACTION:
            replay = await self.client.replay_transaction_with_retry(
                target, tracers, network=network, cancel_event=cancel_event
            )
            return {"type": "full_replay", "tx_hash": target, "tracers": tracers, "replay": replay}

        if method_id == MethodId.TRACE_REPLAY_BLOCK:
            replays = await self.client.replay_block_with_retry(
                target, tracers, network=network, cancel_event=cancel_event
            )
            return {
                "type": "block_replay",
                "block": target,
                "tracers": tracers,
                "transaction_count": len(replays),
                "transactions": replays,
            }

        if method_id == MethodId.DEBUG_TRACE_TRANSACTION:
            return await self._debug_trace(target, network, cancel_event)
        if method_id == MethodId.BASIC_TRACE:
            return await self._basic_trace(target, network, cancel_event)
        if method_id == MethodId.RECEIPT_ANALYSIS:
            return await self._receipt_analysis(target, network, cancel_event)
        if method_id == MethodId.LOG_ANALYSIS:
            return await self._log_analysis(target, network, cancel_event)
        if method_id == MethodId.BASIC_INFO:
            return await self._basic_info(target, network, cancel_event)
        if method_id == MethodId.BLOCK_ANALYSIS:
            return await self._block_analysis(target, network, cancel_event)
        if method_id == MethodId.RECEIPT_BATCH_ANALYSIS:
            return await self._receipt_batch_analysis(target, network, cancel_event)
        raise ReplayError(ErrorKind.VALIDATION_ERROR, f"No executor for {method_id}")

    async def _cheap_call(
        self,
        method: str,
        params: list[Any],
        network: str,
        cancel_event: asyncio.Event | None,
    ) -> Any:
        result = await self.client.call(
            method,
            params,
            network=network,
            timeout=self.settings.fallback_call_timeout_seconds,
            cancel_event=cancel_event,
        )
        if result is None:
            raise ReplayError(ErrorKind.RPC_ERROR, f"{method} returned no data", {"params": params})
        return result

    async def _debug_trace(self, tx_hash: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        frame = await self._cheap_call(
            "debug_traceTransaction", [tx_hash, {"tracer": "callTracer"}], network, cancel_event
        )
        if not isinstance(frame, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, "debug_traceTransaction must return an object")
        return {
            "type": "debug_trace",
            "tx_hash": tx_hash,
            "gas_used": parse_hex_int(frame.get("gasUsed")),
            "call_count": _count_calls(frame),
            "error": frame.get("error"),
            "trace": frame,
        }

    async def _basic_trace(self, tx_hash: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        records = await self._cheap_call("trace_transaction", [tx_hash], network, cancel_event)
        if not isinstance(records, list):
            raise ReplayError(ErrorKind.PARSING_ERROR, "trace_transaction must return an array")
        analysis = self._trace_processor.process(records, tx_hash)
        return {
            "type": "basic_trace",
            "tx_hash": tx_hash,
            "call_count": analysis.total_calls,
            "gas_used": analysis.total_gas_used,
            "trace_analysis": analysis.model_dump(mode="json"),
        }

    async def _receipt(self, tx_hash: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        receipt = await self._cheap_call("eth_getTransactionReceipt", [tx_hash], network, cancel_event)
        if not isinstance(receipt, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, "eth_getTransactionReceipt must return an object")
        return receipt

    async def _receipt_analysis(
        self, tx_hash: str, network: str, cancel_event: asyncio.Event | None
    ) -> dict[str, Any]:
        receipt = await self._receipt(tx_hash, network, cancel_event)
        transfers = decode_transfer_logs(receipt.get("logs") or [])
        return {
            "type": "receipt_analysis",
            "tx_hash": tx_hash,
            "status": "success" if parse_hex_int(receipt.get("status")) == 1 else "failed",
            "gas_used": parse_hex_int(receipt.get("gasUsed")),
            "effective_gas_price": parse_hex_int(receipt.get("effectiveGasPrice")),
            "contract_address": receipt.get("contractAddress"),
            "log_count": len(receipt.get("logs") or []),
            "token_transfers": transfers,
            "token_volume": _token_volume(transfers),
        }

    async def _log_analysis(self, tx_hash: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        receipt = await self._receipt(tx_hash, network, cancel_event)
        logs = receipt.get("logs") or []
        return {
            "type": "log_analysis",
            "tx_hash": tx_hash,
            "events": [
                {
                    "address": str(log.get("address", "")).lower(),
                    "topic": (log.get("topics") or [None])[0],
                    "log_index": parse_hex_int(log.get("logIndex")),
                }
                for log in logs
            ],
            "token_transfers": decode_transfer_logs(logs),
        }

    async def _basic_info(self, tx_hash: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        tx = await self._cheap_call("eth_getTransactionByHash", [tx_hash], network, cancel_event)
        if not isinstance(tx, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, "eth_getTransactionByHash must return an object")
        calldata = tx.get("input") or "0x"
        return {
            "type": "basic_info",
            "tx_hash": tx_hash,
            "from": tx.get("from"),
            "to": tx.get("to"),
            "value": str(parse_hex_int(tx.get("value"))),
            "gas": parse_hex_int(tx.get("gas")),
            "gas_price": str(parse_hex_int(tx.get("gasPrice"))),
            "nonce": parse_hex_int(tx.get("nonce")),
            "block_number": parse_hex_int(tx.get("blockNumber")) if tx.get("blockNumber") else None,
            "selector": calldata[:10] if len(calldata) >= 10 else None,
        }

    async def _block(self, block: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        method = "eth_getBlockByHash" if len(block) == 66 else "eth_getBlockByNumber"
        header = await self._cheap_call(method, [block, False], network, cancel_event)
        if not isinstance(header, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, f"{method} must return an object")
        return header

    async def _block_analysis(self, block: str, network: str, cancel_event: asyncio.Event | None) -> dict[str, Any]:
        header = await self._block(block, network, cancel_event)
        gas_used = parse_hex_int(header.get("gasUsed"))
        gas_limit = parse_hex_int(header.get("gasLimit"))
        return {
            "type": "block_analysis",
            "block": block,
            "block_number": parse_hex_int(header.get("number")),
            "hash": header.get("hash"),
            "timestamp": parse_hex_int(header.get("timestamp")),
            "miner": header.get("miner"),
            "transaction_count": len(header.get("transactions") or []),
            "gas_used": gas_used,
            "gas_limit": gas_limit,
            "gas_utilization": round(gas_used / gas_limit * 100, 2) if gas_limit else 0.0,
            "base_fee_per_gas": str(parse_hex_int(header.get("baseFeePerGas"))),
        }

    async def _receipt_batch_analysis(
        self, block: str, network: str, cancel_event: asyncio.Event | None
    ) -> dict[str, Any]:
        header = await self._block(block, network, cancel_event)
        tx_hashes = [h if isinstance(h, str) else h.get("hash") for h in header.get("transactions") or []]
        sample = tx_hashes[: self.settings.fallback_receipt_sample_size]
        receipts = await asyncio.gather(*(self._receipt(h, network, cancel_event) for h in sample))

        transfers: list[dict[str, Any]] = []
        gas_total = 0
        succeeded = 0
        for receipt in receipts:
            gas_total += parse_hex_int(receipt.get("gasUsed"))
            succeeded += parse_hex_int(receipt.get("status")) == 1
            transfers.extend(decode_transfer_logs(receipt.get("logs") or []))

        return {
            "type": "receipt_batch_analysis",
            "block": block,
            "total_transactions": len(tx_hashes),
            "analyzed_transactions": len(receipts),
            "successful_transactions": succeeded,
            "total_gas_used": gas_total,
            "average_gas_used": gas_total // len(receipts) if receipts else 0,
            "token_transfer_count": len(transfers),
            "token_volume": _token_volume(transfers),
        }

    # ── Advisory selection ───────────────────────────────────────────────────

    def select_optimal_method(
        self,
        primary: MethodId | str,
        *,
        max_time_ms: int | None = None,
        max_cost: CostTier | str | None = None,
        min_reliability: float | None = None,
    ) -> MethodId:
        """Best method satisfying time, cost and reliability constraints."""
        primary_method = get_method(primary)
        max_time_ms = self.settings.fallback_max_time_ms if max_time_ms is None else max_time_ms
        ceiling = parse_cost_tier(max_cost or self.settings.fallback_default_max_cost)
        min_reliability = self.settings.fallback_min_reliability if min_reliability is None else min_reliability

        def acceptable(method: AnalysisMethod) -> bool:
            return (
                is_affordable(method, ceiling)
                and method.time_estimate_ms <= max_time_ms
                and method.reliability >= min_reliability
            )

        if acceptable(primary_method):
            return primary_method.id
        for method in get_fallback_methods(primary_method.id):
            if acceptable(method):
                return method.id
        return LAST_RESORT[primary_method.target]

    @staticmethod
    def analyze_cost_benefit(
        method_ids: Iterable[MethodId | str],
        preferences: dict[str, float] | None = None,
    ) -> list[CostBenefitEntry]:
        """Score methods against weighted accuracy, speed and cost preferences."""
        weights = {"accuracy": 1.0, "speed": 1.0, "cost": 1.0, **(preferences or {})}
        entries: list[CostBenefitEntry] = []
        for method_id in method_ids:
            try:
                method = ANALYSIS_METHODS[MethodId(method_id)]
            except ValueError:
                continue
            accuracy = method.reliability * weights["accuracy"]
            speed = (1 - method.time_estimate_ms / 30_000) * weights["speed"]
            cost = (1 - (method.cost_tier.rank - 1) / 3) * weights["cost"]
            entries.append(CostBenefitEntry(
                method=method.id.value,
                score=round((accuracy + speed + cost) / 3, 4),
                reasoning=f"Accuracy: {accuracy * 100:.0f}%, Speed: {speed * 100:.0f}%, Cost: {cost * 100:.0f}%",
                estimated_time_ms=method.time_estimate_ms,
                cost_tier=method.cost_tier,
                reliability=method.reliability,
            ))
        return sorted(entries, key=lambda e: e.score, reverse=True)
