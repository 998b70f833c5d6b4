"""Shared enums and result types used across the engine."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class Tracer(str, enum.Enum):
    """Tracers accepted by trace_replayTransaction / trace_replayBlockTransactions."""

    TRACE = "trace"
    STATE_DIFF = "stateDiff"
    VM_TRACE = "vmTrace"


class Severity(str, enum.Enum):
    """Severity of a security flag or pattern."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    WARNING = "warning"
    LOW = "low"
    INFO = "info"


class FlagType(str, enum.Enum):
    """Closed set of security flag types."""

    ADMIN_FUNCTION = "admin_function"
    OWNERSHIP_CHANGE = "ownership_change"
    CODE_CHANGE = "code_change"
    SUPPLY_CHANGE = "supply_change"
    PAUSE_STATE_CHANGE = "pause_state_change"
    LARGE_TRANSFER = "large_transfer"
    HIGH_GAS_USAGE = "high_gas_usage"
    DEEP_CALL_STACK = "deep_call_stack"
    FAILED_CALLS = "failed_calls"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    UNUSUAL_ACTIVITY = "unusual_activity"


class PatternType(str, enum.Enum):
    """Heuristic multi-signal patterns detected by the security engine."""

    FLASH_LOAN = "flash_loan"
    SANDWICH_ATTACK = "sandwich_attack"
    ADMIN_ABUSE = "admin_abuse"
    REPEATED_CALLS = "repeated_calls"
    EXCESSIVE_STORAGE_WRITES = "excessive_storage_writes"
    CIRCULAR_TRANSFERS = "circular_transfers"


class RiskLevel(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MINIMAL = "minimal"


class CostTier(str, enum.Enum):
    """Coarse RPC cost tier, ordered low < medium < high < very-high."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very-high"

    @property
    def rank(self) -> int:
        return _COST_TIER_RANK[self]


_COST_TIER_RANK = {
    CostTier.LOW: 1,
    CostTier.MEDIUM: 2,
    CostTier.HIGH: 3,
    CostTier.VERY_HIGH: 4,
}


class CodeChangeType(str, enum.Enum):
    CREATED = "created"
    DESTROYED = "destroyed"
    MODIFIED = "modified"


class _Record(BaseModel):
    """Immutable result record."""

    model_config = ConfigDict(frozen=True)


# ── Security ─────────────────────────────────────────────────────────────────


class SecurityFlag(_Record):
    """A single security finding. Never mutated once emitted."""

    severity: Severity
    type: FlagType
    description: str
    details: dict[str, Any] = Field(default_factory=dict)
    tx_hash: str | None = None
    address: str | None = None


class SecurityPattern(_Record):
    type: PatternType
    severity: Severity
    confidence: float
    description: str
    evidence: dict[str, Any] = Field(default_factory=dict)


class Recommendation(_Record):
    id: str
    title: str
    description: str
    priority: str
    triggered_by: str


class TimelineEntry(_Record):
    sequence: int
    severity: Severity
    flag_type: FlagType
    description: str
    address: str | None = None


class SecurityAnalysisResult(_Record):
    flags: list[SecurityFlag] = Field(default_factory=list)
    patterns: list[SecurityPattern] = Field(default_factory=list)
    risk_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.MINIMAL
    recommendations: list[Recommendation] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)


class OptimizationSuggestion(_Record):
    kind: str
    severity: str
    description: str
    call_index: int | None = None
    estimated_savings: int | None = None


# ── Trace analysis ───────────────────────────────────────────────────────────


class FunctionCall(_Record):
    index: int
    from_address: str
    to_address: str | None
    selector: str
    name: str
    category: str
    gas_used: int
    success: bool
    depth: int
    gas_category: str
    gas_efficiency: float


class ValueTransfer(_Record):
    index: int
    from_address: str
    to_address: str | None
    value_wei: int
    value_eth: str
    success: bool
    depth: int


class TokenTransfer(_Record):
    token_address: str
    token_symbol: str
    function: str
    from_address: str
    to_address: str
    amount: int
    formatted_amount: str
    call_index: int
    success: bool = True


class ContractInteraction(_Record):
    address: str
    name: str
    call_count: int
    gas_used: int
    functions: list[str] = Field(default_factory=list)
    is_token: bool = False
    token_symbol: str | None = None


class CallNode(_Record):
    """One call frame in the reconstructed hierarchy (arena entry)."""

    index: int
    id: str
    call_type: str
    from_address: str
    to_address: str | None
    function_name: str | None
    gas_used: int
    value_wei: int
    error: str | None
    depth: int
    trace_address: list[int]
    parent: int | None = None
    children: list[int] = Field(default_factory=list)


class TraceAnalysis(_Record):
    total_calls: int
    total_gas_used: int
    max_depth: int
    error_count: int
    call_types: dict[str, int] = Field(default_factory=dict)
    contract_interactions: list[ContractInteraction] = Field(default_factory=list)
    function_calls: list[FunctionCall] = Field(default_factory=list)
    value_transfers: list[ValueTransfer] = Field(default_factory=list)
    token_transfers: list[TokenTransfer] = Field(default_factory=list)
    call_hierarchy: list[CallNode] = Field(default_factory=list)
    roots: list[int] = Field(default_factory=list)
    orphans: list[int] = Field(default_factory=list)
    security_flags: list[SecurityFlag] = Field(default_factory=list)


# ── State diff analysis ──────────────────────────────────────────────────────


class BalanceChange(_Record):
    address: str
    from_wei: int
    to_wei: int
    change_wei: int
    change_eth: str


class NonceChange(_Record):
    address: str
    from_nonce: int
    to_nonce: int
    change: int


class CodeChange(_Record):
    address: str
    change_type: CodeChangeType
    from_hash: str | None = None
    to_hash: str | None = None
    from_size: int = 0
    to_size: int = 0


class SlotInterpretation(_Record):
    kind: str
    label: str
    from_display: str | None = None
    to_display: str | None = None
    heuristic: bool = False


class StorageChange(_Record):
    address: str
    slot: str
    from_value: str | None
    to_value: str | None
    interpretation: SlotInterpretation | None = None


class TokenStateChange(_Record):
    token_address: str
    symbol: str
    kind: str
    slot: str
    from_raw: int
    to_raw: int
    change: int
    formatted_change: str


class TokenDiffSummary(_Record):
    token_address: str
    symbol: str
    decimals: int
    supply_change: int = 0
    formatted_supply_change: str = "0"
    changes: list[TokenStateChange] = Field(default_factory=list)


class StateDiffAnalysis(_Record):
    addresses_affected: int
    total_storage_changes: int
    balance_changes: list[BalanceChange] = Field(default_factory=list)
    nonce_changes: list[NonceChange] = Field(default_factory=list)
    code_changes: list[CodeChange] = Field(default_factory=list)
    storage_changes: list[StorageChange] = Field(default_factory=list)
    token_changes: list[TokenDiffSummary] = Field(default_factory=list)
    security_flags: list[SecurityFlag] = Field(default_factory=list)


# ── VM trace analysis ────────────────────────────────────────────────────────


class OpcodeStat(_Record):
    opcode: str
    category: str
    count: int
    gas: int
    gas_percentage: float


class CategoryStat(_Record):
    count: int
    gas: int
    gas_percentage: float


class VmPattern(_Record):
    kind: str
    severity: str
    description: str
    count: int = 0
    gas: int = 0


class GasEfficiencyReport(_Record):
    overall_score: float
    categories: dict[str, str] = Field(default_factory=dict)


class VmTraceAnalysis(_Record):
    total_steps: int
    total_gas: int
    memory_operations: int
    storage_operations: int
    stack_operations: int
    opcode_stats: list[OpcodeStat] = Field(default_factory=list)
    top_opcodes: list[OpcodeStat] = Field(default_factory=list)
    category_breakdown: dict[str, CategoryStat] = Field(default_factory=dict)
    patterns: list[VmPattern] = Field(default_factory=list)
    anti_patterns: list[VmPattern] = Field(default_factory=list)
    gas_efficiency: GasEfficiencyReport | None = None


# ── Aggregate output ─────────────────────────────────────────────────────────


class TokenAnalysis(_Record):
    tokens_involved: list[str] = Field(default_factory=list)
    transfers: list[TokenTransfer] = Field(default_factory=list)
    unique_addresses: list[str] = Field(default_factory=list)
    supply_changes: list[TokenStateChange] = Field(default_factory=list)
    balance_changes: list[TokenStateChange] = Field(default_factory=list)
    total_volume: dict[str, str] = Field(default_factory=dict)


class PerformanceMetrics(_Record):
    total_gas_used: int = 0
    efficiency_score: float = 0.0
    error_rate: float = 0.0
    max_depth: int = 0
    storage_operation_ratio: float = 0.0
    gas_breakdown: dict[str, int] = Field(default_factory=dict)
    cost_analysis: dict[str, Any] = Field(default_factory=dict)
    optimization_suggestions: list[OptimizationSuggestion] = Field(default_factory=list)


class ProcessedReplayData(_Record):
    """Aggregate output for one transaction replay."""

    tx_hash: str
    network: str
    tracers_requested: list[Tracer]
    tracers_processed: list[Tracer] = Field(default_factory=list)
    output: str | None = None
    trace_analysis: TraceAnalysis | None = None
    state_diff_analysis: StateDiffAnalysis | None = None
    vm_trace_analysis: VmTraceAnalysis | None = None
    token_analysis: TokenAnalysis = Field(default_factory=TokenAnalysis)
    security_flags: list[SecurityFlag] = Field(default_factory=list)
    security_analysis: SecurityAnalysisResult = Field(default_factory=SecurityAnalysisResult)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    warnings: list[str] = Field(default_factory=list)


class TransactionSummary(_Record):
    index: int
    tx_hash: str
    gas_used: int
    call_count: int
    state_changes: int
    token_volume: float
    error_count: int
    risk_score: float
    risk_level: RiskLevel
    activity_intensity: float


class ProcessedBlockReplayData(_Record):
    """Aggregate output for a whole-block replay."""

    block: str
    network: str
    tracers_requested: list[Tracer]
    transaction_count: int
    total_gas_used: int
    total_state_changes: int
    average_efficiency: float
    transactions: list[TransactionSummary] = Field(default_factory=list)
    state_change_distribution: dict[str, int] = Field(default_factory=dict)
    security_flags: list[SecurityFlag] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ── Fallback ─────────────────────────────────────────────────────────────────


class FallbackResult(_Record):
    target: str
    method_used: str
    data: Any = None
    confidence: float
    limitations: list[str] = Field(default_factory=list)
    cached: bool = False
    suggested_upgrade: str | None = None
    attempted: list[str] = Field(default_factory=list)


class CostBenefitEntry(_Record):
    method: str
    score: float
    reasoning: str
    estimated_time_ms: int
    cost_tier: CostTier
    reliability: float


class CostEstimate(_Record):
    operation: str
    cost_multiplier: int
    estimated_time: str
    recommendation: str
