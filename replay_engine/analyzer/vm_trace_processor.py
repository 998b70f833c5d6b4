"""VM-trace processor.

Flattens the ``vmTrace`` tracer output, including the nested sub-traces of
internal calls, into one per-opcode tally and derives gas distribution,
category breakdown and opcode-level anti-patterns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from replay_engine.analyzer.storage_slots import parse_hex_int
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import OPCODE_NAMES, get_opcode_category
from replay_engine.core.errors import ErrorKind, ReplayError
from replay_engine.core.types import (
    CategoryStat,
    GasEfficiencyReport,
    OpcodeStat,
    VmPattern,
    VmTraceAnalysis,
)

logger = logging.getLogger(__name__)

# (good-below, moderate-below) percentage of gas per category
_CATEGORY_BANDS: dict[str, tuple[float, float]] = {
    "storage": (20.0, 40.0),
    "system": (30.0, 50.0),
    "keccak": (10.0, 20.0),
    "memory": (15.0, 30.0),
}
_DEFAULT_BAND = (25.0, 50.0)


@dataclass(frozen=True)
class RawVmStep:
    opcode: str
    gas_cost: int
    sub: dict[str, Any] | None = None


def _opcode_at(code: bytes, pc: int | None) -> str:
    if pc is None or pc >= len(code):
        return "UNKNOWN"
    return OPCODE_NAMES.get(code[pc], "INVALID")


def _code_bytes(trace: dict[str, Any]) -> bytes:
    code = trace.get("code") or ""
    try:
        return bytes.fromhex(code[2:] if code.startswith("0x") else code)
    except ValueError:
        return b""


def iter_steps(vm_trace: dict[str, Any]):
    """Yield every step of *vm_trace* and its sub-traces, depth first."""
    pending: list[dict[str, Any]] = [vm_trace]
    while pending:
        trace = pending.pop()
        if not isinstance(trace, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, "vmTrace frames must be objects")
        ops = trace.get("ops") or []
        if not isinstance(ops, list):
            raise ReplayError(ErrorKind.PARSING_ERROR, "vmTrace ops must be an array")
        code: bytes | None = None
        subs: list[dict[str, Any]] = []
        for op in ops:
            if not isinstance(op, dict):
                raise ReplayError(ErrorKind.PARSING_ERROR, "vmTrace steps must be objects")
            name = op.get("op") or op.get("opcode")
            if not name:
                if code is None:
                    code = _code_bytes(trace)
                name = _opcode_at(code, op.get("pc"))
            sub = op.get("sub")
            yield RawVmStep(
                opcode=str(name).upper(),
                gas_cost=parse_hex_int(op.get("cost", op.get("gasCost"))),
                sub=sub,
            )
            if sub:
                subs.append(sub)
        # Reverse so sub-traces are visited in call order
        pending.extend(reversed(subs))


class VmTraceProcessor:
    """Aggregate opcode execution statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def process(self, vm_trace: dict[str, Any]) -> VmTraceAnalysis:
        if not isinstance(vm_trace, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, "vmTrace must be an object")

        counts: dict[str, int] = {}
        gas: dict[str, int] = {}
        total_steps = 0
        for step in iter_steps(vm_trace):
            total_steps += 1
            counts[step.opcode] = counts.get(step.opcode, 0) + 1
            gas[step.opcode] = gas.get(step.opcode, 0) + step.gas_cost

        total_gas = sum(gas.values())

        def pct(value: int) -> float:
            return round(value / total_gas * 100, 2) if total_gas else 0.0

        opcode_stats = sorted(
            (
                OpcodeStat(
                    opcode=opcode,
                    category=get_opcode_category(opcode),
                    count=counts[opcode],
                    gas=gas[opcode],
                    gas_percentage=pct(gas[opcode]),
                )
                for opcode in counts
            ),
            key=lambda s: (-s.gas, -s.count, s.opcode),
        )

        category_counts: dict[str, int] = {}
        category_gas: dict[str, int] = {}
        for stat in opcode_stats:
            category_counts[stat.category] = category_counts.get(stat.category, 0) + stat.count
            category_gas[stat.category] = category_gas.get(stat.category, 0) + stat.gas
        category_breakdown = {
            category: CategoryStat(
                count=category_counts[category],
                gas=category_gas[category],
                gas_percentage=pct(category_gas[category]),
            )
            for category in sorted(category_counts)
        }

        memory_ops = category_counts.get("memory", 0)
        storage_ops = category_counts.get("storage", 0)
        stack_ops = category_counts.get("stack", 0)

        return VmTraceAnalysis(
            total_steps=total_steps,
            total_gas=total_gas,
            memory_operations=memory_ops,
            storage_operations=storage_ops,
            stack_operations=stack_ops,
            opcode_stats=opcode_stats,
            top_opcodes=opcode_stats[: self.settings.top_opcode_count],
            category_breakdown=category_breakdown,
            patterns=self._patterns(counts, total_steps, memory_ops, stack_ops),
            anti_patterns=self._anti_patterns(counts, gas, opcode_stats, total_steps, stack_ops),
            gas_efficiency=self._gas_efficiency(category_breakdown),
        )

    # ── Pattern detection ────────────────────────────────────────────────────

    def _patterns(
        self,
        counts: dict[str, int],
        total_steps: int,
        memory_ops: int,
        stack_ops: int,
    ) -> list[VmPattern]:
        patterns: list[VmPattern] = []
        keccak = counts.get("KECCAK256", 0) + counts.get("SHA3", 0)
        if keccak > 20:
            patterns.append(VmPattern(
                kind="hash_heavy",
                severity="medium",
                description=f"{keccak} KECCAK256 operations; mapping-heavy access pattern",
                count=keccak,
            ))
        if total_steps and memory_ops / total_steps > 0.3:
            patterns.append(VmPattern(
                kind="memory_intensive",
                severity="low",
                description=f"Memory operations are {memory_ops / total_steps:.0%} of all steps",
                count=memory_ops,
            ))
        if total_steps and stack_ops / total_steps > 0.5:
            patterns.append(VmPattern(
                kind="stack_heavy",
                severity="low",
                description=f"Stack operations are {stack_ops / total_steps:.0%} of all steps",
                count=stack_ops,
            ))
        return patterns

    def _anti_patterns(
        self,
        counts: dict[str, int],
        gas: dict[str, int],
        opcode_stats: list[OpcodeStat],
        total_steps: int,
        stack_ops: int,
    ) -> list[VmPattern]:
        found: list[VmPattern] = []

        sstore = counts.get("SSTORE", 0)
        if sstore > self.settings.excessive_sstore_count:
            found.append(VmPattern(
                kind="excessive_storage_writes",
                severity="high",
                description=f"{sstore} SSTORE operations; consider batching or packing storage writes",
                count=sstore,
                gas=gas.get("SSTORE", 0),
            ))

        sload = counts.get("SLOAD", 0)
        if sload > self.settings.excessive_sload_count:
            found.append(VmPattern(
                kind="redundant_storage_reads",
                severity="high",
                description=f"{sload} SLOAD operations; cache repeated storage reads in memory",
                count=sload,
                gas=gas.get("SLOAD", 0),
            ))

        jumpi = counts.get("JUMPI", 0)
        if jumpi > 50:
            found.append(VmPattern(
                kind="complex_branching",
                severity="medium",
                description=f"{jumpi} conditional jumps",
                count=jumpi,
            ))

        external = counts.get("CALL", 0) + counts.get("STATICCALL", 0)
        if external > 10:
            found.append(VmPattern(
                kind="excessive_external_calls",
                severity="medium",
                description=f"{external} external calls",
                count=external,
            ))

        if total_steps and stack_ops / total_steps > 0.6:
            found.append(VmPattern(
                kind="stack_thrashing",
                severity="low",
                description="Stack manipulation dominates execution",
                count=stack_ops,
            ))

        ratio_pct = self.settings.expensive_op_gas_ratio * 100
        for stat in opcode_stats:
            if stat.gas_percentage > ratio_pct:
                found.append(VmPattern(
                    kind="expensive_operation",
                    severity="medium",
                    description=f"{stat.opcode} consumes {stat.gas_percentage:.1f}% of total gas",
                    count=stat.count,
                    gas=stat.gas,
                ))
        return found

    @staticmethod
    def _gas_efficiency(breakdown: dict[str, CategoryStat]) -> GasEfficiencyReport:
        bands: dict[str, str] = {}
        for category, stat in breakdown.items():
            good, moderate = _CATEGORY_BANDS.get(category, _DEFAULT_BAND)
            if stat.gas_percentage < good:
                bands[category] = "good"
            elif stat.gas_percentage < moderate:
                bands[category] = "moderate"
            else:
                bands[category] = "poor"

        storage_pct = breakdown["storage"].gas_percentage if "storage" in breakdown else 0.0
        system_pct = breakdown["system"].gas_percentage if "system" in breakdown else 0.0
        overall = max(0.0, min(100.0, 100 - storage_pct * 0.5 - system_pct * 0.3))
        return GasEfficiencyReport(overall_score=round(overall, 2), categories=bands)
