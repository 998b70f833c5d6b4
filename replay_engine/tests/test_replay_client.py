"""Tests for the replay RPC client (replay_engine/ingestion/replay_client.py).

Covers:
- Input validation (hash, block id, tracers) before any RPC
- Retry count and back-off schedule
- Timeout and cancellation races
- Response shape validation
- Block pre-flight and progress reporting
- Cache hits
- Cost estimates
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import BLOCK_HASH, TX_HASH, FakeProvider, RecordingSleep
from replay_engine.core.cache import ReplayCache
from replay_engine.core.config import Settings
from replay_engine.core.errors import ErrorKind, JsonRpcError, ReplayError
from replay_engine.ingestion.replay_client import (
    ProgressUpdate,
    ReplayClient,
    normalize_block_id,
    validate_tracers,
    validate_tx_hash,
)
from replay_engine.ingestion.rpc_provider import JsonRpcProvider


# ── Validation ───────────────────────────────────────────────────────────────


class TestValidation:
    def test_tx_hash_is_lowercased(self):
        assert validate_tx_hash("0x" + "AB" * 32) == TX_HASH

    @pytest.mark.parametrize("bad", ["", "0x123", "ab" * 32, "0x" + "zz" * 32, "0x" + "ab" * 33])
    def test_invalid_tx_hash(self, bad):
        with pytest.raises(ReplayError) as info:
            validate_tx_hash(bad)
        assert info.value.kind == ErrorKind.INVALID_TX_HASH

    @pytest.mark.parametrize(
        "block, expected",
        [
            (0, "0x0"),
            (19_000_000, "0x121eac0"),
            ("19000000", "0x121eac0"),
            ("0x121EAC0", "0x121eac0"),
            (BLOCK_HASH.upper().replace("0X", "0x"), BLOCK_HASH),
        ],
    )
    def test_normalize_block_id(self, block, expected):
        assert normalize_block_id(block) == expected

    @pytest.mark.parametrize("bad", [-1, "latest", "0x", "0xnothex", True, 1.5])
    def test_invalid_block_id(self, bad):
        with pytest.raises(ReplayError) as info:
            normalize_block_id(bad)
        assert info.value.kind == ErrorKind.INVALID_BLOCK_ID

    def test_tracers_canonical_order_and_dedup(self):
        assert validate_tracers(["vmTrace", "trace", "trace"]) == ["trace", "vmTrace"]

    def test_unsupported_tracer(self):
        with pytest.raises(ReplayError) as info:
            validate_tracers(["trace", "prestateTracer"])
        assert info.value.kind == ErrorKind.UNSUPPORTED_TRACER
        assert info.value.details["unsupported"] == ["prestateTracer"]

    def test_empty_tracers(self):
        with pytest.raises(ReplayError) as info:
            validate_tracers([])
        assert info.value.kind == ErrorKind.UNSUPPORTED_TRACER

    @pytest.mark.asyncio
    async def test_invalid_input_makes_no_rpc(self, client: ReplayClient, provider: FakeProvider):
        with pytest.raises(ReplayError):
            await client.replay_transaction_with_retry("0x1234")
        with pytest.raises(ReplayError):
            await client.replay_transaction_with_retry(TX_HASH, ["bogus"])
        assert provider.calls == []


# ── Transaction replay ───────────────────────────────────────────────────────


class TestTransactionReplay:
    @pytest.mark.asyncio
    async def test_success(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["trace_replayTransaction"] = {"output": "0x", "trace": [], "stateDiff": {}}
        result = await client.replay_transaction_with_retry("0x" + "AB" * 32, ["stateDiff", "trace"])
        assert result["trace"] == []
        assert provider.calls == [("trace_replayTransaction", [TX_HASH, ["trace", "stateDiff"]])]

    @pytest.mark.asyncio
    async def test_timeouts_retry_with_backoff(
        self, client: ReplayClient, provider: FakeProvider, recording_sleep: RecordingSleep
    ):
        provider.responses["trace_replayTransaction"] = httpx.ReadTimeout("timed out")
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction_with_retry(TX_HASH)
        assert info.value.kind == ErrorKind.TIMEOUT
        assert provider.methods().count("trace_replayTransaction") == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(
        self, client: ReplayClient, provider: FakeProvider, recording_sleep: RecordingSleep
    ):
        provider.queue("trace_replayTransaction", httpx.ConnectError("refused"), {"trace": []})
        assert await client.replay_transaction_with_retry(TX_HASH) == {"trace": []}
        assert len(provider.calls) == 2
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, provider: FakeProvider, recording_sleep: RecordingSleep):
        settings = Settings(_env_file=None, replay_tx_backoff_base=4.0, replay_tx_backoff_cap=6.0)
        client = ReplayClient(provider, settings=settings, sleep=recording_sleep)
        provider.responses["trace_replayTransaction"] = httpx.ReadTimeout("timed out")
        with pytest.raises(ReplayError):
            await client.replay_transaction_with_retry(TX_HASH, max_retries=3)
        assert recording_sleep.delays == [4.0, 6.0, 6.0]

    @pytest.mark.asyncio
    async def test_validation_error_from_node_is_not_retried(
        self, client: ReplayClient, provider: FakeProvider, recording_sleep: RecordingSleep
    ):
        provider.responses["trace_replayTransaction"] = JsonRpcError(-32602, "invalid params")
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction_with_retry(TX_HASH)
        assert info.value.kind == ErrorKind.VALIDATION_ERROR
        assert len(provider.calls) == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_malformed_response_is_parsing_error(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["trace_replayTransaction"] = ["unexpected", "array"]
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction_with_retry(TX_HASH)
        assert info.value.kind == ErrorKind.PARSING_ERROR
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_wrong_tracer_shape_is_parsing_error(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["trace_replayTransaction"] = {"trace": {"oops": 1}}
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction(TX_HASH)
        assert info.value.kind == ErrorKind.PARSING_ERROR

    @pytest.mark.asyncio
    async def test_html_body_is_parsing_error_without_retry(
        self, settings: Settings, recording_sleep: RecordingSleep
    ):
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>bad gateway page</html>"))
        )
        client = ReplayClient(JsonRpcProvider("http://node.test", client=http), settings=settings, sleep=recording_sleep)
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction_with_retry(TX_HASH)
        assert info.value.kind == ErrorKind.PARSING_ERROR
        assert recording_sleep.delays == []
        await http.aclose()

    @pytest.mark.asyncio
    async def test_race_timeout(self, recording_sleep: RecordingSleep):
        provider = FakeProvider({"trace_replayTransaction": {"trace": []}}, delay=1.0)
        settings = Settings(_env_file=None, replay_tx_timeout_seconds=0.05)
        client = ReplayClient(provider, settings=settings, sleep=recording_sleep)
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction_with_retry(TX_HASH, max_retries=0)
        assert info.value.kind == ErrorKind.TIMEOUT
        assert info.value.details["timeout_seconds"] == 0.05

    @pytest.mark.asyncio
    async def test_cache_hit_skips_rpc(self, provider: FakeProvider, settings: Settings):
        client = ReplayClient(provider, settings=settings, cache=ReplayCache(settings))
        provider.responses["trace_replayTransaction"] = {"trace": []}
        first = await client.replay_transaction_with_retry(TX_HASH, ["trace"])
        second = await client.replay_transaction_with_retry(TX_HASH, ["trace"])
        assert first == second
        assert len(provider.calls) == 1


# ── Cancellation ─────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_already_cancelled(self, client: ReplayClient, provider: FakeProvider):
        event = asyncio.Event()
        event.set()
        with pytest.raises(ReplayError) as info:
            await client.replay_transaction_with_retry(TX_HASH, cancel_event=event)
        assert info.value.kind == ErrorKind.OPERATION_CANCELLED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_call(self, settings: Settings, recording_sleep: RecordingSleep):
        provider = FakeProvider({"trace_replayTransaction": {"trace": []}}, delay=5.0)
        client = ReplayClient(provider, settings=settings, sleep=recording_sleep)
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, event.set)

        with pytest.raises(ReplayError) as info:
            await asyncio.wait_for(client.replay_transaction_with_retry(TX_HASH, cancel_event=event), 2.0)
        assert info.value.kind == ErrorKind.OPERATION_CANCELLED
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, settings: Settings):
        provider = FakeProvider({"trace_replayTransaction": httpx.ReadTimeout("timed out")})
        event = asyncio.Event()

        async def slow_sleep(delay: float) -> None:
            event.set()
            await asyncio.sleep(10)

        client = ReplayClient(provider, settings=settings, sleep=slow_sleep)
        with pytest.raises(ReplayError) as info:
            await asyncio.wait_for(client.replay_transaction_with_retry(TX_HASH, cancel_event=event), 2.0)
        assert info.value.kind == ErrorKind.OPERATION_CANCELLED
        assert len(provider.calls) == 1


# ── Block replay ─────────────────────────────────────────────────────────────


class TestBlockReplay:
    @pytest.mark.asyncio
    async def test_progress_messages(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["eth_getBlockByNumber"] = {"transactions": ["0x1", "0x2", "0x3"]}
        provider.responses["trace_replayBlockTransactions"] = [{"trace": []}] * 3
        updates: list[ProgressUpdate] = []

        result = await client.replay_block_with_retry(19_000_000, progress=updates.append)

        assert len(result) == 3
        assert [u.message for u in updates] == [
            "Fetching block information...",
            "Processing 3 transactions...",
            "Replaying block transactions...",
            "Processing complete",
        ]
        assert [u.completed for u in updates] == [1, 2, 3, 4]
        assert provider.calls[0] == ("eth_getBlockByNumber", ["0x121eac0", False])
        assert provider.calls[1] == ("trace_replayBlockTransactions", ["0x121eac0", ["trace", "stateDiff"]])

    @pytest.mark.asyncio
    async def test_block_hash_uses_get_block_by_hash(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["eth_getBlockByHash"] = {"transactions": []}
        provider.responses["trace_replayBlockTransactions"] = []
        assert await client.replay_block_with_retry(BLOCK_HASH) == []
        assert provider.methods()[0] == "eth_getBlockByHash"

    @pytest.mark.asyncio
    async def test_preflight_failure_does_not_abort(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["eth_getBlockByNumber"] = JsonRpcError(-32000, "header not found")
        provider.responses["trace_replayBlockTransactions"] = [{"trace": []}]
        updates: list[ProgressUpdate] = []

        result = await client.replay_block_with_retry("0x10", progress=updates.append)

        assert result == [{"trace": []}]
        assert updates[1].message == "Processing block transactions..."

    @pytest.mark.asyncio
    async def test_block_retry_schedule(
        self, client: ReplayClient, provider: FakeProvider, recording_sleep: RecordingSleep
    ):
        provider.responses["eth_getBlockByNumber"] = {"transactions": []}
        provider.responses["trace_replayBlockTransactions"] = httpx.ReadTimeout("timed out")
        updates: list[ProgressUpdate] = []

        with pytest.raises(ReplayError) as info:
            await client.replay_block_with_retry(16, progress=updates.append)

        assert info.value.kind == ErrorKind.TIMEOUT
        assert provider.methods().count("trace_replayBlockTransactions") == 2
        assert recording_sleep.delays == [2.0]
        assert any(u.message == "Retrying... (attempt 2/2)" for u in updates)

    @pytest.mark.asyncio
    async def test_non_array_block_result(self, client: ReplayClient, provider: FakeProvider):
        provider.responses["eth_getBlockByNumber"] = {"transactions": []}
        provider.responses["trace_replayBlockTransactions"] = {"trace": []}
        with pytest.raises(ReplayError) as info:
            await client.replay_block_with_retry(1)
        assert info.value.kind == ErrorKind.PARSING_ERROR

    @pytest.mark.asyncio
    async def test_block_cache_hit_reports_progress(self, provider: FakeProvider, settings: Settings):
        client = ReplayClient(provider, settings=settings, cache=ReplayCache(settings))
        provider.responses["eth_getBlockByNumber"] = {"transactions": []}
        provider.responses["trace_replayBlockTransactions"] = []
        await client.replay_block_with_retry(5)
        updates: list[ProgressUpdate] = []
        await client.replay_block_with_retry("5", progress=updates.append)
        assert provider.methods().count("trace_replayBlockTransactions") == 1
        assert updates == [ProgressUpdate(4, 4, "Loaded from cache")]


# ── Cost estimates ───────────────────────────────────────────────────────────


class TestCostEstimate:
    def test_transaction(self):
        estimate = ReplayClient.get_estimated_cost("transaction")
        assert estimate.cost_multiplier == 100
        assert estimate.estimated_time == "30-60 seconds"

    def test_small_block(self):
        estimate = ReplayClient.get_estimated_cost("block", 20)
        assert estimate.cost_multiplier == 20_000
        assert estimate.estimated_time == "2-4 minutes"
        assert "cached" in estimate.recommendation

    def test_large_block(self):
        estimate = ReplayClient.get_estimated_cost("block", 120)
        assert estimate.cost_multiplier == 120_000
        assert estimate.estimated_time == "12-24 minutes"
        assert "individual transactions" in estimate.recommendation

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            ReplayClient.get_estimated_cost("contract")
