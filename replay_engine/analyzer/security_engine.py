"""Security analysis engine.

Runs independent detectors over the processed trace, state diff and token
data, cross-references them, applies coarse heuristic patterns and scores
the result.

Pattern detections are heuristics, not proofs: a flash-loan flag means a
large balance swing happened inside one transaction, a sandwich flag means
a swap-like call was present.  Thresholds live in ``Settings``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import ADMIN_FUNCTIONS, WEI_PER_ETH, get_token_config
from replay_engine.core.types import (
    FlagType,
    PatternType,
    Recommendation,
    RiskLevel,
    SecurityAnalysisResult,
    SecurityFlag,
    SecurityPattern,
    Severity,
    StateDiffAnalysis,
    TimelineEntry,
    TokenAnalysis,
    TraceAnalysis,
)

logger = logging.getLogger(__name__)


# ── Scoring ──────────────────────────────────────────────────────────────────

FLAG_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.WARNING: 8,
    Severity.LOW: 3,
    Severity.INFO: 0,
}

PATTERN_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 20,
    Severity.HIGH: 12,
    Severity.MEDIUM: 6,
    Severity.WARNING: 6,
    Severity.LOW: 2,
    Severity.INFO: 0,
}


def calculate_risk_score(
    flags: Sequence[SecurityFlag],
    patterns: Sequence[SecurityPattern] = (),
) -> float:
    """Weighted severity sum, clamped to [0, 100]."""
    score = float(sum(FLAG_WEIGHTS[f.severity] for f in flags))
    score += sum(PATTERN_WEIGHTS[p.severity] * p.confidence for p in patterns)
    return round(max(0.0, min(100.0, score)), 2)


def risk_level_for(score: float) -> RiskLevel:
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 40:
        return RiskLevel.MEDIUM
    if score >= 20:
        return RiskLevel.LOW
    return RiskLevel.MINIMAL


# ── Recommendations ──────────────────────────────────────────────────────────

RECOMMENDATIONS: dict[str, tuple[str, str, str]] = {
    FlagType.OWNERSHIP_CHANGE.value: (
        "Verify ownership transfer",
        "Confirm the new owner address is expected and controlled by the project.",
        "critical",
    ),
    FlagType.CODE_CHANGE.value: (
        "Investigate code change",
        "Contract code was created, replaced or destroyed; verify the deployment or self-destruct was intended.",
        "critical",
    ),
    FlagType.ADMIN_FUNCTION.value: (
        "Review privileged calls",
        "Check that admin functions were invoked by an authorised multisig or timelock.",
        "high",
    ),
    FlagType.PAUSE_STATE_CHANGE.value: (
        "Confirm pause state change",
        "A pause flag changed; confirm the incident response that triggered it.",
        "high",
    ),
    FlagType.LARGE_TRANSFER.value: (
        "Monitor large transfers",
        "Set up alerts for transfers of this size on the affected accounts and tokens.",
        "high",
    ),
    FlagType.SUPPLY_CHANGE.value: (
        "Reconcile supply change",
        "Match the mint or burn against an authorised issuance or redemption.",
        "medium",
    ),
    FlagType.SUSPICIOUS_PATTERN.value: (
        "Cross-check token accounting",
        "A token transfer has no matching storage change; verify the token implementation.",
        "medium",
    ),
    FlagType.FAILED_CALLS.value: (
        "Inspect failed calls",
        "Failed internal calls may hide reverted attack attempts or broken integrations.",
        "medium",
    ),
    FlagType.HIGH_GAS_USAGE.value: (
        "Profile gas usage",
        "Gas usage is unusually high; profile the hot paths for optimisation.",
        "low",
    ),
    FlagType.DEEP_CALL_STACK.value: (
        "Review call depth",
        "Deep call stacks widen the reentrancy surface; review the call chain.",
        "low",
    ),
    PatternType.FLASH_LOAN.value: (
        "Flash loan monitoring",
        "Large intra-transaction balance swings; check for price manipulation around this transaction.",
        "high",
    ),
    PatternType.SANDWICH_ATTACK.value: (
        "Check for MEV",
        "Inspect neighbouring transactions in the block for front- and back-running swaps.",
        "medium",
    ),
    PatternType.ADMIN_ABUSE.value: (
        "Audit admin activity",
        "Multiple privileged calls in one transaction; audit the admin key usage.",
        "critical",
    ),
    PatternType.REPEATED_CALLS.value: (
        "Review repeated calls",
        "The same function was called many times; look for loops driven by attacker input.",
        "medium",
    ),
    PatternType.EXCESSIVE_STORAGE_WRITES.value: (
        "Review storage writes",
        "Unusually many storage slots changed in one transaction.",
        "low",
    ),
    PatternType.CIRCULAR_TRANSFERS.value: (
        "Trace circular flows",
        "Tokens moved in a cycle; check for wash trading or accounting exploits.",
        "medium",
    ),
}

_CRITICAL_ADMIN = frozenset({"transferOwnership", "renounceOwnership", "upgradeTo", "upgradeToAndCall"})
_HIGH_ADMIN = frozenset({"mint", "burn", "burnFrom", "pause", "unpause"})


class SecurityAnalysisEngine:
    """Detect, cross-reference and score security signals for one transaction."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def analyze(
        self,
        trace_analysis: TraceAnalysis | None = None,
        state_diff_analysis: StateDiffAnalysis | None = None,
        token_analysis: TokenAnalysis | None = None,
        tx_hash: str = "",
    ) -> SecurityAnalysisResult:
        flags: list[SecurityFlag] = []
        if trace_analysis is not None:
            flags.extend(self._trace_flags(trace_analysis, tx_hash))
        if state_diff_analysis is not None:
            flags.extend(self._state_diff_flags(state_diff_analysis, tx_hash))
        if token_analysis is not None:
            flags.extend(self._token_flags(token_analysis, tx_hash))
        if token_analysis is not None and state_diff_analysis is not None:
            flags.extend(self._cross_reference(token_analysis, state_diff_analysis, tx_hash))

        patterns = self._patterns(trace_analysis, state_diff_analysis, token_analysis)
        score = calculate_risk_score(flags, patterns)
        level = risk_level_for(score)

        if flags or patterns:
            logger.info(
                "Security analysis: %d flags, %d patterns, risk %.1f (%s)",
                len(flags), len(patterns), score, level.value,
                extra={"tx_hash": tx_hash} if tx_hash else None,
            )

        return SecurityAnalysisResult(
            flags=flags,
            patterns=patterns,
            risk_score=score,
            risk_level=level,
            recommendations=self._recommendations(flags, patterns),
            timeline=[
                TimelineEntry(
                    sequence=i,
                    severity=flag.severity,
                    flag_type=flag.type,
                    description=flag.description,
                    address=flag.address,
                )
                for i, flag in enumerate(flags)
            ],
        )

    # ── Detectors ────────────────────────────────────────────────────────────

    def _trace_flags(self, trace: TraceAnalysis, tx_hash: str) -> list[SecurityFlag]:
        flags: list[SecurityFlag] = []
        tx = tx_hash or None

        for call in trace.function_calls:
            if call.name not in ADMIN_FUNCTIONS:
                continue
            if call.name in _CRITICAL_ADMIN:
                severity = Severity.CRITICAL
            elif call.name in _HIGH_ADMIN:
                severity = Severity.HIGH
            else:
                severity = Severity.MEDIUM
            flags.append(SecurityFlag(
                severity=severity,
                type=FlagType.ADMIN_FUNCTION,
                description=f"Admin function {call.name} called by {call.from_address}",
                details={"function": call.name, "call_index": call.index, "success": call.success},
                tx_hash=tx,
                address=call.to_address,
            ))

        if trace.total_gas_used > self.settings.high_gas_usage:
            flags.append(SecurityFlag(
                severity=Severity.MEDIUM,
                type=FlagType.HIGH_GAS_USAGE,
                description=f"Transaction used {trace.total_gas_used:,} gas",
                details={"gas_used": trace.total_gas_used, "threshold": self.settings.high_gas_usage},
                tx_hash=tx,
            ))

        if trace.max_depth > self.settings.deep_call_stack:
            flags.append(SecurityFlag(
                severity=Severity.MEDIUM,
                type=FlagType.DEEP_CALL_STACK,
                description=f"Call stack depth reached {trace.max_depth}",
                details={"max_depth": trace.max_depth, "threshold": self.settings.deep_call_stack},
                tx_hash=tx,
            ))

        if trace.error_count:
            flags.append(SecurityFlag(
                severity=Severity.HIGH if trace.error_count > 3 else Severity.MEDIUM,
                type=FlagType.FAILED_CALLS,
                description=f"{trace.error_count} internal call(s) failed",
                details={"error_count": trace.error_count},
                tx_hash=tx,
            ))
        return flags

    def _state_diff_flags(self, diff: StateDiffAnalysis, tx_hash: str) -> list[SecurityFlag]:
        flags: list[SecurityFlag] = []
        tx = tx_hash or None

        for change in diff.storage_changes:
            kind = change.interpretation.kind if change.interpretation else None
            if kind == "owner":
                flags.append(SecurityFlag(
                    severity=Severity.CRITICAL,
                    type=FlagType.OWNERSHIP_CHANGE,
                    description=f"Owner of {change.address} changed to {change.interpretation.to_display}",
                    details={"slot": change.slot, "from": change.interpretation.from_display,
                             "to": change.interpretation.to_display},
                    tx_hash=tx,
                    address=change.address,
                ))
            elif kind == "paused":
                flags.append(SecurityFlag(
                    severity=Severity.HIGH,
                    type=FlagType.PAUSE_STATE_CHANGE,
                    description=f"Pause state of {change.address} changed",
                    details={"slot": change.slot, "paused": change.interpretation.to_display},
                    tx_hash=tx,
                    address=change.address,
                ))

        for code in diff.code_changes:
            flags.append(SecurityFlag(
                severity=Severity.CRITICAL,
                type=FlagType.CODE_CHANGE,
                description=f"Contract code {code.change_type.value} at {code.address}",
                details={"change_type": code.change_type.value},
                tx_hash=tx,
                address=code.address,
            ))

        large = self.settings.large_balance_eth * WEI_PER_ETH
        critical = self.settings.critical_balance_eth * WEI_PER_ETH
        for balance in diff.balance_changes:
            magnitude = abs(balance.change_wei)
            if magnitude <= large:
                continue
            flags.append(SecurityFlag(
                severity=Severity.CRITICAL if magnitude > critical else Severity.HIGH,
                type=FlagType.LARGE_TRANSFER,
                description=f"ETH balance of {balance.address} changed by {balance.change_eth}",
                details={"change_wei": str(balance.change_wei)},
                tx_hash=tx,
                address=balance.address,
            ))
        return flags

    def _token_flags(self, tokens: TokenAnalysis, tx_hash: str) -> list[SecurityFlag]:
        flags: list[SecurityFlag] = []
        tx = tx_hash or None

        for transfer in tokens.transfers:
            token = get_token_config(transfer.token_address)
            decimals = token.decimals if token else 18
            large = self.settings.large_transfer_tokens * 10**decimals

            if transfer.function in ("mint", "burn"):
                flags.append(SecurityFlag(
                    severity=Severity.MEDIUM,
                    type=FlagType.SUPPLY_CHANGE,
                    description=f"{transfer.token_symbol} {transfer.function} of {transfer.formatted_amount}",
                    details={"function": transfer.function, "amount": str(transfer.amount)},
                    tx_hash=tx,
                    address=transfer.token_address,
                ))
            if transfer.amount > large:
                flags.append(SecurityFlag(
                    severity=Severity.CRITICAL if transfer.amount > large * 10 else Severity.HIGH,
                    type=FlagType.LARGE_TRANSFER,
                    description=f"Large {transfer.token_symbol} transfer of {transfer.formatted_amount}",
                    details={"amount": str(transfer.amount), "from": transfer.from_address,
                             "to": transfer.to_address},
                    tx_hash=tx,
                    address=transfer.token_address,
                ))
        return flags

    def _cross_reference(
        self,
        tokens: TokenAnalysis,
        diff: StateDiffAnalysis,
        tx_hash: str,
    ) -> list[SecurityFlag]:
        """A successful token transfer must leave a storage change on its token."""
        touched = {change.address for change in diff.storage_changes}
        flags: list[SecurityFlag] = []
        for transfer in tokens.transfers:
            if not transfer.success or transfer.amount == 0 or transfer.token_address in touched:
                continue
            flags.append(SecurityFlag(
                severity=Severity.MEDIUM,
                type=FlagType.SUSPICIOUS_PATTERN,
                description=(
                    f"{transfer.token_symbol} {transfer.function} of {transfer.formatted_amount} "
                    "has no matching storage change"
                ),
                details={"call_index": transfer.call_index, "function": transfer.function},
                tx_hash=tx_hash or None,
                address=transfer.token_address,
            ))
        return flags

    # ── Heuristic patterns ───────────────────────────────────────────────────

    def _patterns(
        self,
        trace: TraceAnalysis | None,
        diff: StateDiffAnalysis | None,
        tokens: TokenAnalysis | None,
    ) -> list[SecurityPattern]:
        patterns: list[SecurityPattern] = []

        if diff is not None:
            swings = [
                b for b in diff.balance_changes
                if abs(b.change_wei) > self.settings.flash_loan_wei_threshold
            ]
            if swings:
                patterns.append(SecurityPattern(
                    type=PatternType.FLASH_LOAN,
                    severity=Severity.MEDIUM,
                    confidence=0.8,
                    description="Large balance swing within a single transaction",
                    evidence={"addresses": [b.address for b in swings]},
                ))
            if diff.total_storage_changes > self.settings.storage_write_threshold:
                patterns.append(SecurityPattern(
                    type=PatternType.EXCESSIVE_STORAGE_WRITES,
                    severity=Severity.MEDIUM,
                    confidence=0.7,
                    description=f"{diff.total_storage_changes} storage slots changed",
                    evidence={"storage_changes": diff.total_storage_changes},
                ))

        if trace is not None:
            swaps = [c.name for c in trace.function_calls if "swap" in c.name.lower()]
            if swaps:
                patterns.append(SecurityPattern(
                    type=PatternType.SANDWICH_ATTACK,
                    severity=Severity.HIGH,
                    confidence=0.7,
                    description="Swap activity present; possible sandwich or MEV exposure",
                    evidence={"swap_calls": swaps},
                ))

            admin_calls = [c.name for c in trace.function_calls if c.name in ADMIN_FUNCTIONS]
            if len(admin_calls) > self.settings.admin_abuse_call_count:
                patterns.append(SecurityPattern(
                    type=PatternType.ADMIN_ABUSE,
                    severity=Severity.CRITICAL,
                    confidence=0.9,
                    description=f"{len(admin_calls)} admin function calls in one transaction",
                    evidence={"admin_calls": admin_calls},
                ))

            repeats: dict[tuple[str | None, str], int] = {}
            for call in trace.function_calls:
                key = (call.to_address, call.selector)
                repeats[key] = repeats.get(key, 0) + 1
            hot = {f"{to}:{sel}": n for (to, sel), n in repeats.items() if n > self.settings.repeated_call_threshold}
            if hot:
                patterns.append(SecurityPattern(
                    type=PatternType.REPEATED_CALLS,
                    severity=Severity.MEDIUM,
                    confidence=0.6,
                    description="Same function called repeatedly",
                    evidence={"calls": hot},
                ))

        if tokens is not None and len(tokens.transfers) >= 3:
            senders = {t.from_address for t in tokens.transfers}
            receivers = {t.to_address for t in tokens.transfers}
            cycle = sorted(senders & receivers)
            if cycle:
                patterns.append(SecurityPattern(
                    type=PatternType.CIRCULAR_TRANSFERS,
                    severity=Severity.MEDIUM,
                    confidence=0.6,
                    description="Tokens flowed back to an address that sent them",
                    evidence={"addresses": cycle},
                ))
        return patterns

    @staticmethod
    def _recommendations(
        flags: Sequence[SecurityFlag],
        patterns: Sequence[SecurityPattern],
    ) -> list[Recommendation]:
        triggers: list[str] = []
        for trigger in [f.type.value for f in flags] + [p.type.value for p in patterns]:
            if trigger not in triggers and trigger in RECOMMENDATIONS:
                triggers.append(trigger)

        recommendations = []
        for trigger in triggers:
            title, description, priority = RECOMMENDATIONS[trigger]
            recommendations.append(Recommendation(
                id=f"rec_{trigger}",
                title=title,
                description=description,
                priority=priority,
                triggered_by=trigger,
            ))
        return recommendations
