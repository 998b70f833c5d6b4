"""Tests for the replay orchestrator (replay_engine/pipeline/orchestrator.py)."""

from __future__ import annotations

import itertools

import pytest

from conftest import CONTRACT, TX_HASH, USDC, FakeProvider
from replay_engine.core.cache import ReplayCache
from replay_engine.core.config import Settings
from replay_engine.core.constants import SUPPORTED_TRACERS
from replay_engine.core.errors import ErrorKind, ReplayError
from replay_engine.core.types import FlagType, RiskLevel, Tracer, TransactionSummary
from replay_engine.ingestion.replay_client import ProgressUpdate, ReplayClient
from replay_engine.pipeline.orchestrator import (
    ReplayDataProcessor,
    ReplayService,
    activity_intensity,
    block_gas_efficiency,
    build_token_analysis,
    state_change_distribution,
)


def _summary(index: int = 0, gas_used: int = 50_000, state_changes: int = 0) -> TransactionSummary:
    return TransactionSummary(
        index=index,
        tx_hash=f"tx_{index}",
        gas_used=gas_used,
        call_count=1,
        state_changes=state_changes,
        token_volume=0.0,
        error_count=0,
        risk_score=0.0,
        risk_level=RiskLevel.MINIMAL,
        activity_intensity=0.0,
    )


@pytest.fixture
def service(client: ReplayClient, cache: ReplayCache, settings: Settings) -> ReplayService:
    return ReplayService(client, cache, settings)


@pytest.fixture
def processor(settings: Settings) -> ReplayDataProcessor:
    return ReplayDataProcessor(settings)


class TestReplayDataProcessor:
    def test_only_requested_tracers_are_processed(self, processor: ReplayDataProcessor, nested_trace, usdc_state_diff):
        raw = {"output": "0x", "trace": nested_trace, "stateDiff": usdc_state_diff}
        result = processor.process(raw, TX_HASH, "mainnet", ["trace"])
        assert result.tracers_requested == [Tracer.TRACE]
        assert result.tracers_processed == [Tracer.TRACE]
        assert result.trace_analysis is not None
        assert result.state_diff_analysis is None
        assert result.vm_trace_analysis is None
        assert result.warnings == []

    def test_missing_payload_is_a_warning(self, processor: ReplayDataProcessor, eth_transfer_trace):
        result = processor.process({"trace": eth_transfer_trace}, TX_HASH, "mainnet", ["stateDiff", "trace"])
        assert result.tracers_requested == [Tracer.TRACE, Tracer.STATE_DIFF]
        assert result.tracers_processed == [Tracer.TRACE]
        assert result.warnings == ["stateDiff was requested but the node returned no data"]

    def test_malformed_payload_is_a_warning(self, processor: ReplayDataProcessor, eth_transfer_trace):
        raw = {"trace": eth_transfer_trace, "stateDiff": {CONTRACT: "gone"}}
        result = processor.process(raw, TX_HASH, "mainnet", ["trace", "stateDiff"])
        assert result.tracers_processed == [Tracer.TRACE]
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("stateDiff could not be processed:")

    @pytest.mark.parametrize(
        "tracers",
        [list(c) for n in (1, 2, 3) for c in itertools.combinations(SUPPORTED_TRACERS, n)],
        ids=lambda t: "+".join(t),
    )
    def test_every_tracer_subset(
        self, processor: ReplayDataProcessor, tracers, nested_trace, usdc_state_diff, sample_vm_trace
    ):
        raw = {"trace": nested_trace, "stateDiff": usdc_state_diff, "vmTrace": sample_vm_trace}
        result = processor.process(raw, TX_HASH, "mainnet", tracers)
        assert result.tracers_processed == [Tracer(t) for t in tracers]
        assert (result.trace_analysis is not None) == ("trace" in tracers)
        assert (result.state_diff_analysis is not None) == ("stateDiff" in tracers)
        assert (result.vm_trace_analysis is not None) == ("vmTrace" in tracers)
        assert result.warnings == []

    def test_malformed_balance_quantity_keeps_trace(self, processor: ReplayDataProcessor, eth_transfer_trace):
        raw = {
            "trace": eth_transfer_trace,
            "stateDiff": {CONTRACT: {"balance": {"*": {"from": "0xzz", "to": "0x1"}}}},
        }
        result = processor.process(raw, TX_HASH, "mainnet", ["trace", "stateDiff"])
        assert result.tracers_processed == [Tracer.TRACE]
        assert result.trace_analysis.total_gas_used == 21_000
        assert result.state_diff_analysis is None
        assert result.warnings[0].startswith("stateDiff could not be processed: Malformed quantity")

    def test_malformed_opcode_cost_keeps_trace(self, processor: ReplayDataProcessor, eth_transfer_trace):
        raw = {"trace": eth_transfer_trace, "vmTrace": {"ops": [{"op": "ADD", "cost": "nothex"}]}}
        result = processor.process(raw, TX_HASH, "mainnet", ["trace", "vmTrace"])
        assert result.tracers_processed == [Tracer.TRACE]
        assert result.vm_trace_analysis is None
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("vmTrace could not be processed:")

    def test_security_flags_are_surfaced(self, processor: ReplayDataProcessor, nested_trace, usdc_state_diff):
        result = processor.process({"trace": nested_trace, "stateDiff": usdc_state_diff}, TX_HASH, "mainnet")
        assert [f.type for f in result.security_flags] == [FlagType.FAILED_CALLS]
        assert result.security_analysis.risk_score == 8.0
        assert result.token_analysis.tokens_involved == [USDC]
        assert result.token_analysis.total_volume == {"USDC": "2.5"}
        assert len(result.token_analysis.balance_changes) == 2

    def test_performance_metrics_from_trace(self, processor: ReplayDataProcessor, nested_trace):
        metrics = processor.process({"trace": nested_trace}, TX_HASH, "mainnet", ["trace"]).performance_metrics
        assert metrics.total_gas_used == 120_000
        assert metrics.error_rate == 0.3333
        assert metrics.efficiency_score == 60.0
        assert metrics.gas_breakdown == {"call": 160_000, "staticcall": 0}
        assert [s.kind for s in metrics.optimization_suggestions] == ["high_gas_call", "failed_call"]

    def test_performance_metrics_from_vm_trace(self, processor: ReplayDataProcessor, sample_vm_trace):
        metrics = processor.process({"vmTrace": sample_vm_trace}, TX_HASH, "mainnet", ["vmTrace"]).performance_metrics
        assert metrics.total_gas_used == 24_721
        assert metrics.storage_operation_ratio == 0.25
        assert metrics.efficiency_score == 55.0
        assert metrics.cost_analysis["storage_gas"] == 22_100
        assert metrics.cost_analysis["computation_gas"] == 2_621
        assert {s.kind for s in metrics.optimization_suggestions} == {"expensive_operation"}

    def test_token_analysis_without_inputs(self):
        tokens = build_token_analysis(None, None)
        assert tokens.transfers == []
        assert tokens.total_volume == {}


class TestAnalyzeTransaction:
    @pytest.mark.asyncio
    async def test_success(self, service: ReplayService, provider: FakeProvider, nested_trace, usdc_state_diff):
        provider.responses["trace_replayTransaction"] = {
            "output": "0x",
            "trace": nested_trace,
            "stateDiff": usdc_state_diff,
        }
        result = await service.analyze_transaction(TX_HASH.upper().replace("0X", "0x"))
        assert result.tx_hash == TX_HASH
        assert result.network == "mainnet"
        assert result.tracers_processed == [Tracer.TRACE, Tracer.STATE_DIFF]
        assert provider.calls == [("trace_replayTransaction", [TX_HASH, ["trace", "stateDiff"]])]

    @pytest.mark.asyncio
    async def test_invalid_tracer_fails_before_rpc(self, service: ReplayService, provider: FakeProvider):
        with pytest.raises(ReplayError) as info:
            await service.analyze_transaction(TX_HASH, ["opcodes"])
        assert info.value.kind == ErrorKind.UNSUPPORTED_TRACER
        assert provider.calls == []


class TestAnalyzeBlock:
    @pytest.mark.asyncio
    async def test_block_summary(
        self, service: ReplayService, provider: FakeProvider, eth_transfer_trace, nested_trace, usdc_state_diff
    ):
        provider.responses.update({
            "eth_getBlockByNumber": {"transactions": [TX_HASH, "0x" + "01" * 32]},
            "trace_replayBlockTransactions": [
                {"transactionHash": TX_HASH, "trace": eth_transfer_trace, "stateDiff": usdc_state_diff},
                {"trace": nested_trace, "stateDiff": {}},
            ],
        })
        updates: list[ProgressUpdate] = []
        result = await service.analyze_block("19000000", progress=updates.append)

        assert result.block == "0x121eac0"
        assert result.transaction_count == 2
        assert [t.tx_hash for t in result.transactions] == [TX_HASH, "tx_1"]
        assert result.total_gas_used == 141_000
        assert result.total_state_changes == 4
        assert result.state_change_distribution == {"Low": 1}
        assert result.average_efficiency == 90.0
        assert [f.type for f in result.security_flags] == [FlagType.FAILED_CALLS]
        assert result.transactions[0].token_volume == 5.0
        assert result.transactions[1].error_count == 1
        assert updates[-1] == ProgressUpdate(4, 4, "Processing complete")

    @pytest.mark.asyncio
    async def test_tracer_warnings_are_prefixed(self, service: ReplayService, provider: FakeProvider, eth_transfer_trace):
        provider.responses.update({
            "eth_getBlockByNumber": {"transactions": [TX_HASH]},
            "trace_replayBlockTransactions": [{"transactionHash": TX_HASH, "trace": eth_transfer_trace}],
        })
        result = await service.analyze_block(19_000_000)
        assert result.warnings == [f"{TX_HASH}: stateDiff was requested but the node returned no data"]


class TestAnalyzeWithFallback:
    @pytest.mark.asyncio
    async def test_full_replay_is_processed(self, service: ReplayService, provider: FakeProvider, nested_trace):
        provider.responses["trace_replayTransaction"] = {"output": "0x", "trace": nested_trace, "stateDiff": {}}
        result = await service.analyze_with_fallback(TX_HASH, max_cost="very-high")
        assert result.method_used == "trace_replayTransaction"
        analysis = result.data["analysis"]
        assert analysis["tx_hash"] == TX_HASH
        assert analysis["trace_analysis"]["total_calls"] == 3

    @pytest.mark.asyncio
    async def test_cheap_method_is_passed_through(self, service: ReplayService, provider: FakeProvider):
        provider.responses["eth_getTransactionReceipt"] = {"status": "0x1", "gasUsed": "0x5208", "logs": []}
        result = await service.analyze_with_fallback(TX_HASH, max_cost="low")
        assert result.method_used == "receipt_analysis"
        assert "analysis" not in result.data


class TestBlockHelpers:
    def test_activity_intensity(self):
        assert activity_intensity(0, 0.0, 0) == 0.0
        assert activity_intensity(500, 5e6, 10**7) == 1.0
        assert activity_intensity(25, 0.0, 250_000) == 0.3333

    def test_block_gas_efficiency(self):
        assert block_gas_efficiency([], 0) == 70.0
        assert block_gas_efficiency([_summary(gas_used=50_000)], 0) == 90.0
        assert block_gas_efficiency([_summary(gas_used=600_000)], 0) == 50.0
        assert block_gas_efficiency([_summary(0, 200_000), _summary(1, 200_000)], 1) == 55.0

    def test_state_change_distribution(self):
        summaries = [_summary(i, state_changes=n) for i, n in enumerate([0, 1, 4, 5, 19, 20, 200])]
        assert state_change_distribution(summaries) == {"Low": 2, "Medium": 2, "High": 2}
