"""Call-trace processor.

Turns the flat list of call frames returned by the ``trace`` tracer into
aggregate statistics, decoded function calls, value and token transfers and
a reconstructed call hierarchy.

The node encodes the call tree only through each frame's ``traceAddress``
(the child indices from the root).  The hierarchy is rebuilt as an arena:
``call_hierarchy[i]`` is the node for record ``i`` and parent/child links
are indices into the same list.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from replay_engine.analyzer.storage_slots import format_eth, format_token_amount, parse_hex_int
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import (
    ZERO_ADDRESS,
    FunctionSignature,
    TokenConfig,
    categorize_gas_usage,
    decode_function_selector,
    get_token_config,
)
from replay_engine.core.errors import ErrorKind, ReplayError
from replay_engine.core.types import (
    CallNode,
    ContractInteraction,
    FlagType,
    FunctionCall,
    OptimizationSuggestion,
    SecurityFlag,
    Severity,
    TokenTransfer,
    TraceAnalysis,
    ValueTransfer,
)

logger = logging.getLogger(__name__)

_TOKEN_MOVING_FUNCTIONS = frozenset({"transfer", "transferFrom", "mint", "burn"})


@dataclass(frozen=True)
class RawTraceRecord:
    """One call frame, normalised from the node's trace format."""

    from_address: str
    to_address: str | None
    value: int
    gas_used: int
    input: str
    error: str | None
    type: str
    address_path: tuple[int, ...]
    call_type: str | None = None
    output: str | None = None

    @property
    def depth(self) -> int:
        return len(self.address_path)

    @classmethod
    def from_rpc(cls, record: dict[str, Any]) -> "RawTraceRecord":
        """Build from a Parity/Erigon trace entry or an already flat record."""
        if not isinstance(record, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, f"Trace record must be an object, got {type(record).__name__}")

        action = record.get("action") or record
        result = record.get("result") or {}
        trace_type = str(record.get("type") or "call")

        try:
            if trace_type in ("suicide", "selfdestruct"):
                from_address = action.get("address") or ""
                to_address = action.get("refundAddress")
                value = parse_hex_int(action.get("balance"))
                input_data = ""
            elif trace_type == "create":
                from_address = action.get("from") or ""
                to_address = result.get("address") or record.get("to")
                value = parse_hex_int(action.get("value"))
                input_data = action.get("init") or action.get("input") or ""
            else:
                from_address = action.get("from") or action.get("author") or ""
                to_address = action.get("to")
                value = parse_hex_int(action.get("value"))
                input_data = action.get("input") or ""

            gas_used = parse_hex_int(result.get("gasUsed", record.get("gasUsed")))
            path = tuple(int(i) for i in record.get("traceAddress", record.get("addressPath")) or ())
        except (TypeError, ValueError, AttributeError) as exc:
            raise ReplayError(ErrorKind.PARSING_ERROR, f"Malformed trace record: {exc}") from exc

        return cls(
            from_address=from_address.lower(),
            to_address=to_address.lower() if to_address else None,
            value=value,
            gas_used=gas_used,
            input=input_data,
            error=record.get("error"),
            type=trace_type,
            address_path=path,
            call_type=action.get("callType"),
            output=result.get("output"),
        )


@dataclass
class _InteractionTally:
    name: str
    is_token: bool
    token_symbol: str | None
    call_count: int = 0
    gas_used: int = 0
    functions: list[str] = field(default_factory=list)


def build_call_hierarchy(
    records: Sequence[RawTraceRecord],
    function_names: Sequence[str | None] | None = None,
) -> tuple[list[CallNode], list[int], list[int]]:
    """Rebuild the call tree from address paths.

    Returns ``(nodes, roots, orphans)``.  Nodes are linked by processing
    depths in ascending order and attaching each frame to the record whose
    path is its own path minus the last element.  A frame whose parent is
    missing stays parentless and is reported as an orphan.
    """
    count = len(records)
    names = function_names or [None] * count

    first_at_path: dict[tuple[int, ...], int] = {}
    for index, record in enumerate(records):
        first_at_path.setdefault(record.address_path, index)

    parents: list[int | None] = [None] * count
    children: list[list[int]] = [[] for _ in range(count)]
    for index in sorted(range(count), key=lambda i: (records[i].depth, i)):
        path = records[index].address_path
        if not path:
            continue
        parent = first_at_path.get(path[:-1])
        if parent is None or parent == index:
            logger.debug("Trace frame %d at %s has no parent frame", index, list(path))
            continue
        parents[index] = parent
        children[parent].append(index)

    nodes = [
        CallNode(
            index=index,
            id=f"call_{index}",
            call_type=record.call_type or record.type,
            from_address=record.from_address,
            to_address=record.to_address,
            function_name=names[index],
            gas_used=record.gas_used,
            value_wei=record.value,
            error=record.error,
            depth=record.depth,
            trace_address=list(record.address_path),
            parent=parents[index],
            children=children[index],
        )
        for index, record in enumerate(records)
    ]
    roots = [i for i, record in enumerate(records) if record.depth == 0]
    orphans = [i for i, record in enumerate(records) if record.depth > 0 and parents[i] is None]
    return nodes, roots, orphans


def _words(calldata: str) -> list[str]:
    body = calldata[10:]
    return [body[i:i + 64] for i in range(0, len(body) - 63, 64)]


def decode_token_transfer(
    index: int,
    record: RawTraceRecord,
    signature: FunctionSignature,
    token: TokenConfig,
) -> TokenTransfer | None:
    """Decode the ABI arguments of a token-moving call."""
    words = _words(record.input)
    try:
        if signature.name == "transfer" and len(words) >= 2:
            sender, receiver, amount = record.from_address, "0x" + words[0][-40:], int(words[1], 16)
        elif signature.name == "transferFrom" and len(words) >= 3:
            sender, receiver, amount = "0x" + words[0][-40:], "0x" + words[1][-40:], int(words[2], 16)
        elif signature.name == "mint" and len(words) >= 2:
            sender, receiver, amount = ZERO_ADDRESS, "0x" + words[0][-40:], int(words[1], 16)
        elif signature.name == "burn" and len(words) >= 1:
            sender, receiver, amount = record.from_address, ZERO_ADDRESS, int(words[0], 16)
        else:
            return None
    except ValueError:
        logger.debug("Undecodable %s calldata in frame %d", signature.name, index)
        return None

    return TokenTransfer(
        token_address=token.address,
        token_symbol=token.symbol,
        function=signature.name,
        from_address=sender.lower(),
        to_address=receiver.lower(),
        amount=amount,
        formatted_amount=format_token_amount(amount, token.decimals),
        call_index=index,
        success=record.error is None,
    )


class TraceProcessor:
    """Aggregate a transaction's call frames in one linear pass."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def process(self, trace_records: Sequence[Any], tx_hash: str = "") -> TraceAnalysis:
        records = [
            r if isinstance(r, RawTraceRecord) else RawTraceRecord.from_rpc(r)
            for r in trace_records
        ]

        total_gas = 0
        max_depth = 0
        error_count = 0
        call_types: dict[str, int] = {}
        interactions: dict[str, _InteractionTally] = {}
        function_calls: list[FunctionCall] = []
        function_names: list[str | None] = []
        value_transfers: list[ValueTransfer] = []
        token_transfers: list[TokenTransfer] = []
        flags: list[SecurityFlag] = []

        for index, record in enumerate(records):
            # Root frames already include their children's gas
            if record.depth == 0:
                total_gas += record.gas_used
            max_depth = max(max_depth, record.depth)
            if record.error:
                error_count += 1
            kind = record.call_type or record.type
            call_types[kind] = call_types.get(kind, 0) + 1

            signature = decode_function_selector(record.input)
            function_names.append(signature.name if signature else None)
            token = get_token_config(record.to_address)

            if record.to_address:
                tally = interactions.get(record.to_address)
                if tally is None:
                    tally = _InteractionTally(
                        name=token.name if token else f"Contract {record.to_address[:8]}...",
                        is_token=token is not None,
                        token_symbol=token.symbol if token else None,
                    )
                    interactions[record.to_address] = tally
                tally.call_count += 1
                tally.gas_used += record.gas_used
                if signature and signature.name not in tally.functions:
                    tally.functions.append(signature.name)

            if signature is not None:
                gas_category, gas_efficiency = categorize_gas_usage(signature.name, record.gas_used)
                function_calls.append(FunctionCall(
                    index=index,
                    from_address=record.from_address,
                    to_address=record.to_address,
                    selector=signature.selector or record.input[:10].lower(),
                    name=signature.name,
                    category=signature.category,
                    gas_used=record.gas_used,
                    success=record.error is None,
                    depth=record.depth,
                    gas_category=gas_category,
                    gas_efficiency=gas_efficiency,
                ))

                if token is not None and signature.name in _TOKEN_MOVING_FUNCTIONS:
                    transfer = decode_token_transfer(index, record, signature, token)
                    if transfer is not None:
                        token_transfers.append(transfer)

                if signature.category == "admin":
                    flags.append(SecurityFlag(
                        severity=Severity.WARNING,
                        type=FlagType.ADMIN_FUNCTION,
                        description=f"Admin function {signature.name} called",
                        details={"function": signature.name, "call_index": index},
                        tx_hash=tx_hash or None,
                        address=record.to_address,
                    ))

            if record.value > 0:
                value_transfers.append(ValueTransfer(
                    index=index,
                    from_address=record.from_address,
                    to_address=record.to_address,
                    value_wei=record.value,
                    value_eth=format_eth(record.value),
                    success=record.error is None,
                    depth=record.depth,
                ))

            if record.gas_used > self.settings.high_gas_usage:
                flags.append(SecurityFlag(
                    severity=Severity.INFO,
                    type=FlagType.HIGH_GAS_USAGE,
                    description=f"Call {index} used {record.gas_used:,} gas",
                    details={"gas_used": record.gas_used, "call_index": index},
                    tx_hash=tx_hash or None,
                    address=record.to_address,
                ))

        nodes, roots, orphans = build_call_hierarchy(records, function_names)
        if orphans:
            logger.warning("%d trace frames have no parent frame", len(orphans), extra={"tx_hash": tx_hash})

        return TraceAnalysis(
            total_calls=len(records),
            total_gas_used=total_gas,
            max_depth=max_depth,
            error_count=error_count,
            call_types=call_types,
            contract_interactions=[
                ContractInteraction(
                    address=address,
                    name=tally.name,
                    call_count=tally.call_count,
                    gas_used=tally.gas_used,
                    functions=tally.functions,
                    is_token=tally.is_token,
                    token_symbol=tally.token_symbol,
                )
                for address, tally in interactions.items()
            ],
            function_calls=function_calls,
            value_transfers=value_transfers,
            token_transfers=token_transfers,
            call_hierarchy=nodes,
            roots=roots,
            orphans=orphans,
            security_flags=flags,
        )

    def optimization_suggestions(self, analysis: TraceAnalysis) -> list[OptimizationSuggestion]:
        """Derive gas and reliability suggestions from a processed trace."""
        suggestions: list[OptimizationSuggestion] = []
        threshold = self.settings.optimization_gas_threshold

        for node in analysis.call_hierarchy:
            if node.gas_used > threshold:
                suggestions.append(OptimizationSuggestion(
                    kind="high_gas_call",
                    severity="medium",
                    description=(
                        f"Call {node.id} to {node.to_address or 'contract creation'} used "
                        f"{node.gas_used:,} gas; review for redundant work"
                    ),
                    call_index=node.index,
                    estimated_savings=node.gas_used // 10,
                ))
            if node.error:
                suggestions.append(OptimizationSuggestion(
                    kind="failed_call",
                    severity="high",
                    description=f"Call {node.id} failed ({node.error}); gas spent on it was wasted",
                    call_index=node.index,
                    estimated_savings=node.gas_used,
                ))

        if analysis.max_depth > self.settings.deep_call_stack:
            suggestions.append(OptimizationSuggestion(
                kind="deep_call_stack",
                severity="medium",
                description=(
                    f"Call stack reaches depth {analysis.max_depth}; flattening calls "
                    "reduces overhead and reentrancy surface"
                ),
            ))
        return suggestions
