"""Tests for the call-trace processor and hierarchy reconstruction."""

from __future__ import annotations

import pytest

from conftest import CONTRACT, ONE_ETH, RECEIVER, SENDER, USDC
from replay_engine.analyzer.trace_processor import RawTraceRecord, TraceProcessor, build_call_hierarchy
from replay_engine.core.config import Settings
from replay_engine.core.errors import ErrorKind, ReplayError
from replay_engine.core.types import FlagType


def _record(path: tuple[int, ...], gas: int = 0, error: str | None = None) -> RawTraceRecord:
    return RawTraceRecord(
        from_address=SENDER,
        to_address=CONTRACT,
        value=0,
        gas_used=gas,
        input="0x",
        error=error,
        type="call",
        address_path=path,
    )


@pytest.fixture
def processor(settings: Settings) -> TraceProcessor:
    return TraceProcessor(settings)


class TestEthTransfer:
    def test_plain_transfer(self, processor: TraceProcessor, eth_transfer_trace):
        analysis = processor.process(eth_transfer_trace, "0xabc")
        assert analysis.total_calls == 1
        assert analysis.total_gas_used == 21_000
        assert analysis.max_depth == 0
        assert analysis.error_count == 0
        assert analysis.function_calls == []
        assert len(analysis.value_transfers) == 1
        transfer = analysis.value_transfers[0]
        assert transfer.value_wei == ONE_ETH
        assert transfer.value_eth == "1"
        assert transfer.from_address == SENDER
        assert transfer.to_address == RECEIVER
        assert analysis.roots == [0]
        assert analysis.orphans == []

    def test_idempotent(self, processor: TraceProcessor, eth_transfer_trace, nested_trace):
        assert processor.process(nested_trace) == processor.process(nested_trace)
        assert processor.process(eth_transfer_trace) == processor.process(eth_transfer_trace)


class TestNestedTrace:
    def test_aggregates(self, processor: TraceProcessor, nested_trace):
        analysis = processor.process(nested_trace)
        assert analysis.total_calls == 3
        # Only the root frame counts; it already includes its children
        assert analysis.total_gas_used == 120_000
        assert analysis.max_depth == 1
        assert analysis.error_count == 1
        assert analysis.call_types == {"call": 2, "staticcall": 1}

    def test_child_gas_is_not_counted_twice(self, processor: TraceProcessor):
        analysis = processor.process([_record((), gas=100), _record((0,), gas=50), _record((0, 0), gas=20)])
        assert analysis.total_gas_used == 100

    def test_function_calls_decoded(self, processor: TraceProcessor, nested_trace):
        analysis = processor.process(nested_trace)
        names = [c.name for c in analysis.function_calls]
        assert names == ["unknown", "transfer"]
        transfer_call = analysis.function_calls[1]
        assert transfer_call.selector == "0xa9059cbb"
        assert transfer_call.category == "transfer"
        assert transfer_call.gas_category == "good"

    def test_token_transfer_decoded(self, processor: TraceProcessor, nested_trace):
        analysis = processor.process(nested_trace)
        assert len(analysis.token_transfers) == 1
        transfer = analysis.token_transfers[0]
        assert transfer.token_symbol == "USDC"
        assert transfer.from_address == CONTRACT
        assert transfer.to_address == RECEIVER
        assert transfer.amount == 2_500_000
        assert transfer.formatted_amount == "2.5"
        assert transfer.call_index == 1

    def test_contract_interactions(self, processor: TraceProcessor, nested_trace):
        analysis = processor.process(nested_trace)
        by_address = {i.address: i for i in analysis.contract_interactions}
        assert by_address[USDC].is_token
        assert by_address[USDC].name == "USD Coin"
        assert by_address[USDC].functions == ["transfer"]
        assert by_address[CONTRACT].call_count == 1
        assert not by_address[CONTRACT].is_token

    def test_hierarchy(self, processor: TraceProcessor, nested_trace):
        analysis = processor.process(nested_trace)
        root, first, second = analysis.call_hierarchy
        assert root.children == [1, 2]
        assert first.parent == 0
        assert second.parent == 0
        assert second.error == "Reverted"
        assert first.function_name == "transfer"
        assert [n.id for n in analysis.call_hierarchy] == ["call_0", "call_1", "call_2"]

    def test_high_gas_frame_flag(self, nested_trace):
        analysis = TraceProcessor(Settings(_env_file=None, high_gas_usage=100_000)).process(nested_trace)
        flags = [f for f in analysis.security_flags if f.type == FlagType.HIGH_GAS_USAGE]
        assert len(flags) == 1
        assert flags[0].details["call_index"] == 0

    def test_admin_call_flag(self, processor: TraceProcessor):
        records = [{
            "action": {"from": SENDER, "to": CONTRACT, "input": "0xf2fde38b" + "00" * 32, "value": "0x0"},
            "result": {"gasUsed": "0x7530"},
            "traceAddress": [],
            "type": "call",
        }]
        analysis = processor.process(records, "0xabc")
        assert analysis.security_flags[0].type == FlagType.ADMIN_FUNCTION
        assert analysis.security_flags[0].tx_hash == "0xabc"


class TestHierarchy:
    def test_every_non_root_has_parent_one_level_up(self):
        records = [_record(()), _record((0,)), _record((0, 0)), _record((0, 1)), _record((1,))]
        nodes, roots, orphans = build_call_hierarchy(records)
        assert roots == [0]
        assert orphans == []
        for node in nodes[1:]:
            parent = nodes[node.parent]
            assert parent.depth == node.depth - 1
            assert node.index in parent.children
            assert parent.trace_address == node.trace_address[:-1]

    def test_out_of_order_records(self):
        records = [_record((0, 0)), _record((0,)), _record(())]
        nodes, roots, orphans = build_call_hierarchy(records)
        assert roots == [2]
        assert nodes[0].parent == 1
        assert nodes[1].parent == 2
        assert orphans == []

    def test_orphans_are_reported(self):
        records = [_record(()), _record((3, 0))]
        nodes, roots, orphans = build_call_hierarchy(records)
        assert orphans == [1]
        assert nodes[1].parent is None
        assert nodes[0].children == []

    def test_empty(self):
        assert build_call_hierarchy([]) == ([], [], [])


class TestRawRecords:
    def test_create_frame(self):
        record = RawTraceRecord.from_rpc({
            "action": {"from": SENDER, "value": "0x0", "init": "0x6080"},
            "result": {"address": CONTRACT, "gasUsed": "0x100"},
            "traceAddress": [0],
            "type": "create",
        })
        assert record.to_address == CONTRACT
        assert record.input == "0x6080"
        assert record.depth == 1

    def test_selfdestruct_frame(self):
        record = RawTraceRecord.from_rpc({
            "action": {"address": CONTRACT, "refundAddress": RECEIVER, "balance": hex(ONE_ETH)},
            "traceAddress": [0],
            "type": "suicide",
        })
        assert record.from_address == CONTRACT
        assert record.to_address == RECEIVER
        assert record.value == ONE_ETH

    def test_malformed_record(self, processor: TraceProcessor):
        with pytest.raises(ReplayError) as info:
            processor.process(["not a record"])
        assert info.value.kind == ErrorKind.PARSING_ERROR


class TestOptimizationSuggestions:
    def test_failed_call_and_high_gas(self, processor: TraceProcessor, nested_trace):
        analysis = processor.process(nested_trace)
        kinds = [s.kind for s in processor.optimization_suggestions(analysis)]
        assert kinds == ["high_gas_call", "failed_call"]
