"""Replay orchestrator: composes the client, processors and security engine.

Transaction flow:
1. REPLAY: ``trace_replayTransaction`` with retry, cancellation and cache
2. PROCESS: run the processor for every requested tracer
3. TOKENS: derive token flows from trace and state diff
4. SECURITY: detectors, cross-reference, patterns and risk score
5. METRICS: efficiency score, gas breakdown and optimisation hints

A tracer whose payload is missing or malformed is reported in ``warnings``
and left out of the result; the rest of the request still succeeds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from typing import Any

from replay_engine.analyzer.security_engine import SecurityAnalysisEngine
from replay_engine.analyzer.state_diff_processor import StateDiffProcessor
from replay_engine.analyzer.storage_slots import format_token_amount
from replay_engine.analyzer.trace_processor import TraceProcessor
from replay_engine.analyzer.vm_trace_processor import VmTraceProcessor
from replay_engine.core.cache import ReplayCache
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import RPC_METHODS, get_token_config
from replay_engine.core.errors import ReplayError
from replay_engine.core.types import (
    FallbackResult,
    OptimizationSuggestion,
    PerformanceMetrics,
    ProcessedBlockReplayData,
    ProcessedReplayData,
    Severity,
    StateDiffAnalysis,
    TokenAnalysis,
    TraceAnalysis,
    Tracer,
    TransactionSummary,
    VmTraceAnalysis,
)
from replay_engine.ingestion.replay_client import (
    DEFAULT_TRACERS,
    ProgressCallback,
    ReplayClient,
    normalize_block_id,
    validate_tracers,
)
from replay_engine.pipeline.fallback import FallbackAnalysisEngine

logger = logging.getLogger(__name__)


# ── Token analysis ───────────────────────────────────────────────────────────


def build_token_analysis(
    trace: TraceAnalysis | None,
    state_diff: StateDiffAnalysis | None,
) -> TokenAnalysis:
    """Merge calldata-decoded transfers with storage-derived token deltas."""
    tokens: set[str] = set()
    addresses: set[str] = set()
    transfers = []
    supply_changes = []
    balance_changes = []
    volume_raw: dict[str, int] = {}

    if trace is not None:
        transfers = list(trace.token_transfers)
        tokens.update(i.address for i in trace.contract_interactions if i.is_token)
        for transfer in transfers:
            tokens.add(transfer.token_address)
            addresses.update((transfer.from_address, transfer.to_address))
            if transfer.success:
                volume_raw[transfer.token_address] = volume_raw.get(transfer.token_address, 0) + transfer.amount

    if state_diff is not None:
        for summary in state_diff.token_changes:
            tokens.add(summary.token_address)
            for change in summary.changes:
                if change.kind == "supply":
                    supply_changes.append(change)
                elif change.kind == "balance":
                    balance_changes.append(change)

    total_volume: dict[str, str] = {}
    for address, amount in sorted(volume_raw.items()):
        token = get_token_config(address)
        if token is None:
            total_volume[address] = str(amount)
        else:
            total_volume[token.symbol] = format_token_amount(amount, token.decimals)

    return TokenAnalysis(
        tokens_involved=sorted(tokens),
        transfers=transfers,
        unique_addresses=sorted(addresses),
        supply_changes=supply_changes,
        balance_changes=balance_changes,
        total_volume=total_volume,
    )


def _token_volume_estimate(tokens: TokenAnalysis) -> float:
    """Approximate human-unit volume, used only for activity intensity."""
    total = 0.0
    for change in tokens.supply_changes + tokens.balance_changes:
        total += abs(float(change.formatted_change))
    return total


# ── Transaction processor ────────────────────────────────────────────────────


class ReplayDataProcessor:
    """Turn one raw replay result into an immutable ``ProcessedReplayData``."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        security_engine: SecurityAnalysisEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.trace_processor = TraceProcessor(self.settings)
        self.state_diff_processor = StateDiffProcessor(self.settings)
        self.vm_trace_processor = VmTraceProcessor(self.settings)
        self.security_engine = security_engine or SecurityAnalysisEngine(self.settings)

    def process(
        self,
        raw: dict[str, Any],
        tx_hash: str,
        network: str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
    ) -> ProcessedReplayData:
        requested = [Tracer(t) for t in validate_tracers(tracers)]
        warnings: list[str] = []
        processed: list[Tracer] = []

        trace: TraceAnalysis | None = None
        state_diff: StateDiffAnalysis | None = None
        vm_trace: VmTraceAnalysis | None = None

        for tracer in requested:
            payload = raw.get(tracer.value)
            if payload is None:
                warnings.append(f"{tracer.value} was requested but the node returned no data")
                continue
            try:
                if tracer == Tracer.TRACE:
                    trace = self.trace_processor.process(payload, tx_hash)
                elif tracer == Tracer.STATE_DIFF:
                    state_diff = self.state_diff_processor.process(payload, tx_hash)
                else:
                    vm_trace = self.vm_trace_processor.process(payload)
            except ReplayError as exc:
                logger.warning(
                    "Failed to process %s: %s", tracer.value, exc.message,
                    extra={"tx_hash": tx_hash},
                )
                warnings.append(f"{tracer.value} could not be processed: {exc.message}")
                continue
            processed.append(tracer)

        tokens = build_token_analysis(trace, state_diff)
        security = self.security_engine.analyze(trace, state_diff, tokens, tx_hash)

        return ProcessedReplayData(
            tx_hash=tx_hash,
            network=network,
            tracers_requested=requested,
            tracers_processed=processed,
            output=raw.get("output"),
            trace_analysis=trace,
            state_diff_analysis=state_diff,
            vm_trace_analysis=vm_trace,
            token_analysis=tokens,
            security_flags=security.flags,
            security_analysis=security,
            performance_metrics=self._performance_metrics(trace, state_diff, vm_trace),
            warnings=warnings,
        )

    def _performance_metrics(
        self,
        trace: TraceAnalysis | None,
        state_diff: StateDiffAnalysis | None,
        vm_trace: VmTraceAnalysis | None,
    ) -> PerformanceMetrics:
        efficiency = 70.0
        error_rate = 0.0
        storage_ratio = 0.0

        if trace is not None and trace.total_calls:
            error_rate = trace.error_count / trace.total_calls
            efficiency -= error_rate * 30
            if trace.max_depth > self.settings.deep_call_stack:
                efficiency -= 10
        if vm_trace is not None and vm_trace.total_steps:
            storage_ratio = vm_trace.storage_operations / vm_trace.total_steps
            if storage_ratio > 0.2:
                efficiency -= 15
        efficiency = max(0.0, min(100.0, efficiency))

        if trace is not None:
            total_gas = trace.total_gas_used
        elif vm_trace is not None:
            total_gas = vm_trace.total_gas
        else:
            total_gas = 0

        gas_breakdown: dict[str, int] = {}
        if trace is not None:
            for node in trace.call_hierarchy:
                gas_breakdown[node.call_type] = gas_breakdown.get(node.call_type, 0) + node.gas_used
        elif vm_trace is not None:
            gas_breakdown = {category: stat.gas for category, stat in vm_trace.category_breakdown.items()}

        cost_analysis: dict[str, Any] = {
            "total_gas_used": total_gas,
            "rpc_cost_multiplier": RPC_METHODS["trace_replayTransaction"].cost_multiplier,
        }
        if vm_trace is not None:
            storage_gas = vm_trace.category_breakdown["storage"].gas if "storage" in vm_trace.category_breakdown else 0
            cost_analysis["storage_gas"] = storage_gas
            cost_analysis["computation_gas"] = vm_trace.total_gas - storage_gas

        suggestions: list[OptimizationSuggestion] = []
        if trace is not None:
            suggestions.extend(self.trace_processor.optimization_suggestions(trace))
        if state_diff is not None:
            suggestions.extend(self.state_diff_processor.optimization_suggestions(state_diff))
        if vm_trace is not None:
            suggestions.extend(
                OptimizationSuggestion(kind=p.kind, severity=p.severity, description=p.description)
                for p in vm_trace.anti_patterns
            )

        return PerformanceMetrics(
            total_gas_used=total_gas,
            efficiency_score=round(efficiency, 2),
            error_rate=round(error_rate, 4),
            max_depth=trace.max_depth if trace is not None else 0,
            storage_operation_ratio=round(storage_ratio, 4),
            gas_breakdown=gas_breakdown,
            cost_analysis=cost_analysis,
            optimization_suggestions=suggestions,
        )


# ── Block summaries ──────────────────────────────────────────────────────────


def activity_intensity(state_changes: int, token_volume: float, gas_used: int) -> float:
    """Blend of state, token and gas activity, each saturating at 1."""
    state = min(state_changes / 50, 1.0)
    volume = min(token_volume / 1_000_000, 1.0)
    gas = min(gas_used / 500_000, 1.0)
    return round((state + volume + gas) / 3, 4)


def block_gas_efficiency(summaries: list[TransactionSummary], failed: int) -> float:
    if not summaries:
        return 70.0
    efficiency = 70.0
    average_gas = sum(s.gas_used for s in summaries) / len(summaries)
    if average_gas < 100_000:
        efficiency += 20
    elif average_gas > 500_000:
        efficiency -= 20
    efficiency -= failed / len(summaries) * 30
    return round(max(0.0, min(100.0, efficiency)), 2)


def state_change_distribution(summaries: list[TransactionSummary]) -> dict[str, int]:
    distribution: dict[str, int] = {}
    for summary in summaries:
        if summary.state_changes <= 0:
            continue
        if summary.state_changes < 5:
            band = "Low"
        elif summary.state_changes < 20:
            band = "Medium"
        else:
            band = "High"
        distribution[band] = distribution.get(band, 0) + 1
    return distribution


def _state_change_count(state_diff: StateDiffAnalysis | None) -> int:
    if state_diff is None:
        return 0
    return (
        state_diff.total_storage_changes
        + len(state_diff.balance_changes)
        + len(state_diff.nonce_changes)
        + len(state_diff.code_changes)
    )


# ── Service ──────────────────────────────────────────────────────────────────


class ReplayService:
    """Entry point used by the API and CLI."""

    def __init__(
        self,
        client: ReplayClient,
        cache: ReplayCache | None = None,
        settings: Settings | None = None,
        *,
        processor: ReplayDataProcessor | None = None,
        fallback: FallbackAnalysisEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self.cache = cache
        self.processor = processor or ReplayDataProcessor(self.settings)
        self.fallback = fallback or FallbackAnalysisEngine(client, cache, self.settings)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ReplayService":
        settings = settings or get_settings()
        cache = ReplayCache(settings)
        client = ReplayClient(settings=settings, cache=cache)
        return cls(client, cache, settings)

    async def close(self) -> None:
        await self.client.close()
        if self.cache is not None:
            await self.cache.close()

    async def analyze_transaction(
        self,
        tx_hash: str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        *,
        network: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ProcessedReplayData:
        network = network or self.settings.default_network
        tracer_list = validate_tracers(tracers)
        started = time.monotonic()

        raw = await self.client.replay_transaction_with_retry(
            tx_hash, tracer_list, network=network, cancel_event=cancel_event
        )
        result = self.processor.process(raw, tx_hash.lower(), network, tracer_list)

        logger.info(
            "Analysed transaction: risk %.1f (%s), %d flags",
            result.security_analysis.risk_score,
            result.security_analysis.risk_level.value,
            len(result.security_flags),
            extra={"tx_hash": result.tx_hash, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return result

    async def analyze_block(
        self,
        block: int | str,
        tracers: Iterable[Any] = DEFAULT_TRACERS,
        *,
        network: str | None = None,
        cancel_event: asyncio.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> ProcessedBlockReplayData:
        network = network or self.settings.default_network
        tracer_list = validate_tracers(tracers)
        block_param = normalize_block_id(block)
        started = time.monotonic()

        replays = await self.client.replay_block_with_retry(
            block_param, tracer_list, network=network, cancel_event=cancel_event, progress=progress
        )

        summaries: list[TransactionSummary] = []
        flags = []
        warnings: list[str] = []
        failed = 0
        for index, raw in enumerate(replays):
            tx_hash = str(raw.get("transactionHash") or f"tx_{index}").lower()
            processed = self.processor.process(raw, tx_hash, network, tracer_list)
            trace = processed.trace_analysis
            security = processed.security_analysis
            state_changes = _state_change_count(processed.state_diff_analysis)
            token_volume = _token_volume_estimate(processed.token_analysis)
            gas_used = processed.performance_metrics.total_gas_used

            summaries.append(TransactionSummary(
                index=index,
                tx_hash=tx_hash,
                gas_used=gas_used,
                call_count=trace.total_calls if trace is not None else 0,
                state_changes=state_changes,
                token_volume=token_volume,
                error_count=trace.error_count if trace is not None else 0,
                risk_score=security.risk_score,
                risk_level=security.risk_level,
                activity_intensity=activity_intensity(state_changes, token_volume, gas_used),
            ))
            flags.extend(processed.security_flags)
            warnings.extend(f"{tx_hash}: {w}" for w in processed.warnings)
            if any(f.severity == Severity.CRITICAL for f in processed.security_flags):
                failed += 1

        result = ProcessedBlockReplayData(
            block=block_param,
            network=network,
            tracers_requested=[Tracer(t) for t in tracer_list],
            transaction_count=len(summaries),
            total_gas_used=sum(s.gas_used for s in summaries),
            total_state_changes=sum(s.state_changes for s in summaries),
            average_efficiency=block_gas_efficiency(summaries, failed),
            transactions=summaries,
            state_change_distribution=state_change_distribution(summaries),
            security_flags=flags,
            warnings=warnings,
        )
        logger.info(
            "Analysed block: %d transactions, %d flags",
            result.transaction_count, len(flags),
            extra={"block": block_param, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return result

    async def analyze_with_fallback(self, target: int | str, **kwargs: Any) -> FallbackResult:
        """Run the fallback engine; full transaction replays are also processed."""
        result = await self.fallback.analyze(target, **kwargs)
        data = result.data
        if isinstance(data, dict) and data.get("type") == "full_replay":
            processed = self.processor.process(
                data["replay"],
                data["tx_hash"],
                kwargs.get("network") or self.settings.default_network,
                data.get("tracers") or DEFAULT_TRACERS,
            )
            result = result.model_copy(update={"data": {**data, "analysis": processed.model_dump(mode="json")}})
        return result
