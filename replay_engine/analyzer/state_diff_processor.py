"""State-diff processor.

Turns the ``stateDiff`` tracer output (per-address balance, nonce, code and
storage before/after pairs) into change lists, interprets storage slots of
token contracts and emits security flags as a side channel.

Each field arrives in one of the node's diff encodings:

  ``"="``                      unchanged
  ``{"+": value}``             created (account born)
  ``{"-": value}``             removed (account died)
  ``{"*": {"from", "to"}}``    modified
  ``{"from", "to"}``           plain pair (either side may be absent)
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from replay_engine.analyzer.storage_slots import (
    format_eth,
    format_token_amount,
    interpret_slot,
    parse_hex_int,
)
from replay_engine.core.config import Settings, get_settings
from replay_engine.core.constants import WEI_PER_ETH, get_token_config
from replay_engine.core.errors import ErrorKind, ReplayError
from replay_engine.core.types import (
    BalanceChange,
    CodeChange,
    CodeChangeType,
    FlagType,
    NonceChange,
    OptimizationSuggestion,
    SecurityFlag,
    Severity,
    StateDiffAnalysis,
    StorageChange,
    TokenDiffSummary,
    TokenStateChange,
)

logger = logging.getLogger(__name__)

_TOKEN_KINDS = {
    "total_supply": "supply",
    "balance": "balance",
    "allowance": "allowance",
}


def unpack_diff(entry: Any) -> tuple[Any, Any] | None:
    """Return ``(from, to)`` for one diff field, or ``None`` when unchanged."""
    if entry is None or entry == "=":
        return None
    if not isinstance(entry, dict):
        raise ReplayError(ErrorKind.PARSING_ERROR, f"Unexpected state diff entry: {entry!r}")
    if "*" in entry:
        inner = entry["*"] or {}
        return inner.get("from"), inner.get("to")
    if "+" in entry:
        return None, entry["+"]
    if "-" in entry:
        return entry["-"], None
    if "from" in entry or "to" in entry:
        return entry.get("from"), entry.get("to")
    return None


def _code_hash(code: str | None) -> str | None:
    if not code or code == "0x":
        return None
    return hashlib.sha256(code.encode()).hexdigest()[:16]


def _code_size(code: str | None) -> int:
    if not code or code == "0x":
        return 0
    return (len(code) - 2) // 2 if code.startswith("0x") else len(code) // 2


class StateDiffProcessor:
    """Compute balance, nonce, code and storage deltas for one transaction."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def process(self, state_diff: dict[str, Any], tx_hash: str = "") -> StateDiffAnalysis:
        if not isinstance(state_diff, dict):
            raise ReplayError(ErrorKind.PARSING_ERROR, "stateDiff must be an object keyed by address")

        balance_changes: list[BalanceChange] = []
        nonce_changes: list[NonceChange] = []
        code_changes: list[CodeChange] = []
        storage_changes: list[StorageChange] = []
        token_changes: dict[str, list[TokenStateChange]] = {}
        flags: list[SecurityFlag] = []

        for raw_address, account in state_diff.items():
            address = raw_address.lower()
            if not isinstance(account, dict):
                raise ReplayError(ErrorKind.PARSING_ERROR, f"State diff for {address} must be an object")

            balance = self._balance_change(address, account.get("balance"))
            if balance is not None:
                balance_changes.append(balance)
                flag = self._balance_flag(balance, tx_hash)
                if flag is not None:
                    flags.append(flag)

            nonce = self._nonce_change(address, account.get("nonce"))
            if nonce is not None:
                nonce_changes.append(nonce)

            code = self._code_change(address, account.get("code"))
            if code is not None:
                code_changes.append(code)
                flags.append(SecurityFlag(
                    severity=Severity.CRITICAL,
                    type=FlagType.CODE_CHANGE,
                    description=f"Contract code {code.change_type.value} at {address}",
                    details={"change_type": code.change_type.value, "to_size": code.to_size},
                    tx_hash=tx_hash or None,
                    address=address,
                ))

            storage = account.get("storage") or {}
            if not isinstance(storage, dict):
                raise ReplayError(ErrorKind.PARSING_ERROR, f"Storage diff for {address} must be an object")
            for slot_key, entry in storage.items():
                change = self._storage_change(address, slot_key, entry)
                if change is None:
                    continue
                storage_changes.append(change)
                flags.extend(self._storage_flags(change, tx_hash))
                token_change = self._token_state_change(change)
                if token_change is not None:
                    token_changes.setdefault(address, []).append(token_change)

        return StateDiffAnalysis(
            addresses_affected=len(state_diff),
            total_storage_changes=len(storage_changes),
            balance_changes=balance_changes,
            nonce_changes=nonce_changes,
            code_changes=code_changes,
            storage_changes=storage_changes,
            token_changes=[self._summarize_token(changes) for changes in token_changes.values()],
            security_flags=flags,
        )

    # ── Field deltas ─────────────────────────────────────────────────────────

    def _balance_change(self, address: str, entry: Any) -> BalanceChange | None:
        pair = unpack_diff(entry)
        if pair is None:
            return None
        before, after = parse_hex_int(pair[0]), parse_hex_int(pair[1])
        if before == after:
            return None
        change = after - before
        return BalanceChange(
            address=address,
            from_wei=before,
            to_wei=after,
            change_wei=change,
            change_eth=format_eth(change),
        )

    def _nonce_change(self, address: str, entry: Any) -> NonceChange | None:
        pair = unpack_diff(entry)
        if pair is None:
            return None
        before, after = parse_hex_int(pair[0]), parse_hex_int(pair[1])
        if before == after:
            return None
        return NonceChange(address=address, from_nonce=before, to_nonce=after, change=after - before)

    def _code_change(self, address: str, entry: Any) -> CodeChange | None:
        pair = unpack_diff(entry)
        if pair is None:
            return None
        before, after = pair
        had_code = bool(before) and before != "0x"
        has_code = bool(after) and after != "0x"
        if had_code and not has_code:
            change_type = CodeChangeType.DESTROYED
        elif has_code and not had_code:
            change_type = CodeChangeType.CREATED
        elif before != after:
            change_type = CodeChangeType.MODIFIED
        else:
            return None
        return CodeChange(
            address=address,
            change_type=change_type,
            from_hash=_code_hash(before),
            to_hash=_code_hash(after),
            from_size=_code_size(before),
            to_size=_code_size(after),
        )

    def _storage_change(self, address: str, slot_key: str, entry: Any) -> StorageChange | None:
        pair = unpack_diff(entry)
        if pair is None:
            return None
        before, after = pair
        slot = parse_hex_int(slot_key)
        from_int = None if before is None else parse_hex_int(before)
        to_int = None if after is None else parse_hex_int(after)
        return StorageChange(
            address=address,
            slot=slot_key,
            from_value=before,
            to_value=after,
            interpretation=interpret_slot(slot, from_int, to_int, get_token_config(address)),
        )

    # ── Flags ────────────────────────────────────────────────────────────────

    def _balance_flag(self, change: BalanceChange, tx_hash: str) -> SecurityFlag | None:
        magnitude = abs(change.change_wei)
        if magnitude > self.settings.critical_balance_eth * WEI_PER_ETH:
            severity = Severity.CRITICAL
        elif magnitude > self.settings.large_balance_eth * WEI_PER_ETH:
            severity = Severity.HIGH
        else:
            return None
        return SecurityFlag(
            severity=severity,
            type=FlagType.LARGE_TRANSFER,
            description=f"Balance of {change.address} changed by {change.change_eth} ETH",
            details={"change_wei": str(change.change_wei), "change_eth": change.change_eth},
            tx_hash=tx_hash or None,
            address=change.address,
        )

    def _storage_flags(self, change: StorageChange, tx_hash: str) -> list[SecurityFlag]:
        interpretation = change.interpretation
        if interpretation is None:
            return []

        if interpretation.kind == "owner":
            return [SecurityFlag(
                severity=Severity.CRITICAL,
                type=FlagType.OWNERSHIP_CHANGE,
                description=(
                    f"Ownership slot of {change.address} changed from "
                    f"{interpretation.from_display} to {interpretation.to_display}"
                ),
                details={"slot": change.slot, "from": interpretation.from_display, "to": interpretation.to_display},
                tx_hash=tx_hash or None,
                address=change.address,
            )]

        if interpretation.kind == "paused":
            return [SecurityFlag(
                severity=Severity.HIGH,
                type=FlagType.PAUSE_STATE_CHANGE,
                description=f"Pause state of {change.address} set to {interpretation.to_display}",
                details={"slot": change.slot, "paused": interpretation.to_display == "true"},
                tx_hash=tx_hash or None,
                address=change.address,
            )]

        token = get_token_config(change.address)
        if interpretation.kind == "total_supply" and token is not None:
            delta = parse_hex_int(change.to_value) - parse_hex_int(change.from_value)
            if abs(delta) > self.settings.large_transfer_tokens * 10**token.decimals:
                return [SecurityFlag(
                    severity=Severity.WARNING,
                    type=FlagType.SUPPLY_CHANGE,
                    description=f"{token.symbol} supply changed by {format_token_amount(delta, token.decimals)}",
                    details={"change": str(delta), "symbol": token.symbol},
                    tx_hash=tx_hash or None,
                    address=change.address,
                )]
        return []

    # ── Token view ───────────────────────────────────────────────────────────

    def _token_state_change(self, change: StorageChange) -> TokenStateChange | None:
        token = get_token_config(change.address)
        if token is None or change.interpretation is None:
            return None
        kind = _TOKEN_KINDS.get(change.interpretation.kind)
        if kind is None:
            return None
        before = parse_hex_int(change.from_value)
        after = parse_hex_int(change.to_value)
        return TokenStateChange(
            token_address=token.address,
            symbol=token.symbol,
            kind=kind,
            slot=change.slot,
            from_raw=before,
            to_raw=after,
            change=after - before,
            formatted_change=format_token_amount(after - before, token.decimals),
        )

    def _summarize_token(self, changes: list[TokenStateChange]) -> TokenDiffSummary:
        first = changes[0]
        token = get_token_config(first.token_address)
        decimals = token.decimals if token else 18
        supply = sum(c.change for c in changes if c.kind == "supply")
        return TokenDiffSummary(
            token_address=first.token_address,
            symbol=first.symbol,
            decimals=decimals,
            supply_change=supply,
            formatted_supply_change=format_token_amount(supply, decimals),
            changes=changes,
        )

    # ── Suggestions ──────────────────────────────────────────────────────────

    def optimization_suggestions(self, analysis: StateDiffAnalysis) -> list[OptimizationSuggestion]:
        suggestions: list[OptimizationSuggestion] = []
        if analysis.total_storage_changes > self.settings.storage_change_suggestion:
            suggestions.append(OptimizationSuggestion(
                kind="many_storage_writes",
                severity="medium",
                description=(
                    f"{analysis.total_storage_changes} storage slots changed; batching or "
                    "packing state reduces SSTORE cost"
                ),
            ))
        if analysis.code_changes:
            suggestions.append(OptimizationSuggestion(
                kind="code_change",
                severity="high",
                description="Contract code changed; verify deployment or self-destruct was intended",
            ))
        if analysis.addresses_affected > self.settings.contracts_affected_suggestion:
            suggestions.append(OptimizationSuggestion(
                kind="wide_state_footprint",
                severity="low",
                description=f"{analysis.addresses_affected} accounts touched by one transaction",
            ))
        return suggestions
