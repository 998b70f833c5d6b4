"""Replay engine CLI: transaction and block replay analysis from the terminal.

Usage:
    replay-engine tx <hash>                  Replay and analyse one transaction
    replay-engine block <block>              Replay and summarise a whole block
    replay-engine fallback <target>          Cost-constrained analysis with fallbacks
    replay-engine methods                    List analysis methods
    replay-engine estimate <operation>       Relative cost of a replay
    replay-engine config                     Show current configuration

Examples:
    replay-engine tx 0xabc...def --tracers trace stateDiff vmTrace
    replay-engine block 19000000 --format json -o block.json
    replay-engine fallback 0xabc...def --max-cost low
    replay-engine methods --primary trace_replayTransaction --max-cost medium
    replay-engine estimate block --count 120
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from replay_engine.core.constants import SUPPORTED_TRACERS
from replay_engine.core.errors import AnalysisExhaustedError, ReplayError
from replay_engine.core.types import (
    FallbackResult,
    ProcessedBlockReplayData,
    ProcessedReplayData,
    RiskLevel,
)
from replay_engine.ingestion.replay_client import DEFAULT_TRACERS, ProgressUpdate, ReplayClient

__version__ = "1.0.0"


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "critical": _RED,
    "high": "\033[38;5;208m",  # orange
    "medium": _YELLOW,
    "warning": _YELLOW,
    "low": _CYAN,
    "info": _DIM,
    "minimal": _GREEN,
}

_SEV_ORDER = ["critical", "high", "medium", "warning", "low", "info"]


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN} ____  _____ ____  _        _ __   __
|  _ \| ____|  _ \| |      / \\ \ / /
| |_) |  _| | |_) | |     / _ \\ V /
|  _ <| |___|  __/| |___ / ___ \| |
|_| \_\_____|_|   |_____/_/   \_\_|{_RESET}
  {_DIM}Transaction Replay Analysis  v{__version__}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def _add_common(p: argparse.ArgumentParser, tracers: bool = True) -> None:
    if tracers:
        p.add_argument(
            "--tracers",
            "-t",
            nargs="+",
            default=list(DEFAULT_TRACERS),
            choices=SUPPORTED_TRACERS,
            help="Tracers to request (default: trace stateDiff)",
        )
    p.add_argument("--network", "-n", help="Network name (default: from configuration)")
    p.add_argument(
        "--format",
        "-f",
        default="table",
        choices=["table", "json"],
        help="Output format (default: table)",
    )
    p.add_argument("--output", "-o", help="Write output to file instead of stdout")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replay-engine",
        description="Replay analysis of call trees, state diffs, gas profiles and security flags",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")

    sub = parser.add_subparsers(dest="command")

    # ── tx ───────────────────────────────────────────────────────────────────
    tx_p = sub.add_parser("tx", help="Replay and analyse a transaction")
    tx_p.add_argument("tx_hash", help="Transaction hash (0x + 64 hex)")
    _add_common(tx_p)

    # ── block ────────────────────────────────────────────────────────────────
    block_p = sub.add_parser("block", help="Replay every transaction in a block")
    block_p.add_argument("block", help="Block number, 0x hex number or block hash")
    _add_common(block_p)

    # ── fallback ─────────────────────────────────────────────────────────────
    fb_p = sub.add_parser("fallback", help="Cost-constrained analysis with fallbacks")
    fb_p.add_argument("target", help="Transaction hash or block identifier")
    fb_p.add_argument("--preferred", help="Preferred analysis method id")
    fb_p.add_argument(
        "--max-cost",
        choices=["low", "medium", "high", "very-high"],
        help="Most expensive cost tier allowed (default: from configuration)",
    )
    fb_p.add_argument("--no-cache", action="store_true", help="Bypass the result cache")
    _add_common(fb_p)

    # ── methods ──────────────────────────────────────────────────────────────
    methods_p = sub.add_parser("methods", help="List analysis methods and fallback chains")
    methods_p.add_argument("--primary", help="Show the fallback chain for this method")
    methods_p.add_argument("--max-cost", choices=["low", "medium", "high", "very-high"])

    # ── estimate ─────────────────────────────────────────────────────────────
    est_p = sub.add_parser("estimate", help="Relative cost of a replay")
    est_p.add_argument("operation", choices=["transaction", "block"])
    est_p.add_argument("--count", type=int, default=1, help="Transactions in the block (default: 1)")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


def _build_service():
    from replay_engine.pipeline.orchestrator import ReplayService

    return ReplayService.from_settings()


def _emit(output: str, args: argparse.Namespace) -> None:
    if args.output:
        Path(args.output).write_text(output)
        if not args.quiet:
            print(f"  Written to {_c(args.output, _CYAN)}")
    else:
        print(output)


def _print_error(exc: Exception) -> None:
    if isinstance(exc, ReplayError):
        print(_c(f"\n{exc.kind.name}: {exc.message}", _RED), file=sys.stderr)
    else:
        print(_c(f"\nAnalysis failed: {exc}", _RED), file=sys.stderr)


# ── Table renderers ──────────────────────────────────────────────────────────


def _print_flags(flags: list[Any], limit: int = 20) -> None:
    if not flags:
        print(_c("  ✓ No security flags.", _GREEN))
        return

    by_sev: dict[str, int] = {}
    for f in flags:
        by_sev[f.severity.value] = by_sev.get(f.severity.value, 0) + 1
    parts = [
        f"{_SEV_COLOR.get(sev, '')}{by_sev[sev]} {sev.upper()}{_RESET}"
        for sev in _SEV_ORDER
        if by_sev.get(sev)
    ]
    print(f"  {' · '.join(parts)}\n")

    ordered = sorted(flags, key=lambda f: _SEV_ORDER.index(f.severity.value))
    for i, f in enumerate(ordered[:limit], 1):
        badge = _c(f" {f.severity.value.upper()} ", _SEV_COLOR.get(f.severity.value, "") + _BOLD)
        print(f"  {_DIM}{i:>3}.{_RESET} {badge} {_c(f.type.value, _BOLD)}  {f.description}")
    if len(flags) > limit:
        print(_c(f"       … {len(flags) - limit} more", _DIM))


def _print_transaction(result: ProcessedReplayData, quiet: bool = False) -> None:
    security = result.security_analysis
    level_color = _SEV_COLOR.get(security.risk_level.value, "")
    metrics = result.performance_metrics

    print(f"\n{_BOLD}Transaction{_RESET} {result.tx_hash}  {_DIM}({result.network}){_RESET}")
    print(
        f"  Risk: {_c(f'{security.risk_score:.0f}/100 {security.risk_level.value}', level_color)}"
        f"  |  Gas: {metrics.total_gas_used:,}"
        f"  |  Efficiency: {metrics.efficiency_score:.0f}"
        f"  |  Tracers: {', '.join(t.value for t in result.tracers_processed) or '-'}\n"
    )

    if not quiet:
        if result.trace_analysis is not None:
            trace = result.trace_analysis
            print(
                f"  {_DIM}Calls:{_RESET} {trace.total_calls}  {_DIM}depth:{_RESET} {trace.max_depth}"
                f"  {_DIM}errors:{_RESET} {trace.error_count}"
                f"  {_DIM}value transfers:{_RESET} {len(trace.value_transfers)}"
            )
        if result.state_diff_analysis is not None:
            diff = result.state_diff_analysis
            print(
                f"  {_DIM}Accounts:{_RESET} {diff.addresses_affected}"
                f"  {_DIM}storage changes:{_RESET} {diff.total_storage_changes}"
                f"  {_DIM}code changes:{_RESET} {len(diff.code_changes)}"
            )
        if result.vm_trace_analysis is not None:
            vm = result.vm_trace_analysis
            top = ", ".join(f"{s.opcode} {s.gas_percentage:.0f}%" for s in vm.top_opcodes[:5])
            print(f"  {_DIM}Steps:{_RESET} {vm.total_steps}  {_DIM}top opcodes:{_RESET} {top}")
        for symbol, volume in result.token_analysis.total_volume.items():
            print(f"  {_DIM}Token volume:{_RESET} {volume} {symbol}")
        print()

    _print_flags(result.security_flags)

    if not quiet:
        for rec in security.recommendations:
            print(f"  {_CYAN}→{_RESET} {rec.title}: {_DIM}{rec.description}{_RESET}")
    for warning in result.warnings:
        print(_c(f"  ! {warning}", _YELLOW))
    print()


def _print_block(result: ProcessedBlockReplayData, quiet: bool = False) -> None:
    print(f"\n{_BOLD}Block{_RESET} {result.block}  {_DIM}({result.network}){_RESET}")
    print(
        f"  Transactions: {result.transaction_count}"
        f"  |  Gas: {result.total_gas_used:,}"
        f"  |  State changes: {result.total_state_changes}"
        f"  |  Efficiency: {result.average_efficiency:.0f}\n"
    )

    if not quiet:
        busiest = sorted(result.transactions, key=lambda s: s.activity_intensity, reverse=True)[:10]
        for s in busiest:
            color = _SEV_COLOR.get(s.risk_level.value, "")
            print(
                f"  {_DIM}{s.index:>4}{_RESET} {s.tx_hash[:18]}…"
                f"  gas {s.gas_used:>10,}  intensity {s.activity_intensity:.2f}"
                f"  {_c(s.risk_level.value, color)}"
            )
        print()

    _print_flags(result.security_flags)
    for warning in result.warnings[:10]:
        print(_c(f"  ! {warning}", _YELLOW))
    print()


def _print_fallback(result: FallbackResult) -> None:
    print(f"\n{_BOLD}Fallback analysis{_RESET} {result.target}")
    cached = _c(" (cached)", _DIM) if result.cached else ""
    print(f"  Method: {_c(result.method_used, _CYAN)}{cached}  |  Confidence: {result.confidence:.0%}")
    if result.suggested_upgrade:
        print(f"  {_DIM}Upgrade with:{_RESET} {result.suggested_upgrade}")
    if result.attempted:
        print(f"  {_DIM}Attempted:{_RESET} {' → '.join(result.attempted)}")
    for limitation in result.limitations:
        print(_c(f"  - {limitation}", _YELLOW))
    print()


# ── Commands ─────────────────────────────────────────────────────────────────


async def _run_tx(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        result = await service.analyze_transaction(args.tx_hash, args.tracers, network=args.network)
    except ReplayError as exc:
        _print_error(exc)
        return 1
    finally:
        await service.close()

    if args.format == "json":
        _emit(result.model_dump_json(indent=2), args)
    else:
        _print_transaction(result, quiet=args.quiet)

    # Exit code: 1 if the transaction is high risk
    return 1 if result.security_analysis.risk_level in (RiskLevel.CRITICAL, RiskLevel.HIGH) else 0


async def _run_block(args: argparse.Namespace) -> int:
    def progress(update: ProgressUpdate) -> None:
        if not args.quiet:
            print(_c(f"  [{update.completed}/{update.total}] {update.message}", _DIM), file=sys.stderr)

    service = _build_service()
    try:
        result = await service.analyze_block(args.block, args.tracers, network=args.network, progress=progress)
    except ReplayError as exc:
        _print_error(exc)
        return 1
    finally:
        await service.close()

    if args.format == "json":
        _emit(result.model_dump_json(indent=2), args)
    else:
        _print_block(result, quiet=args.quiet)
    return 0


async def _run_fallback(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        result = await service.analyze_with_fallback(
            args.target,
            preferred_method=args.preferred,
            max_cost=args.max_cost,
            tracers=args.tracers,
            network=args.network,
            use_cache=not args.no_cache,
        )
    except (ReplayError, AnalysisExhaustedError) as exc:
        _print_error(exc)
        return 1
    finally:
        await service.close()

    if args.format == "json":
        _emit(result.model_dump_json(indent=2), args)
    else:
        _print_fallback(result)
    return 0


def _run_methods(args: argparse.Namespace) -> int:
    from replay_engine.pipeline.fallback import (
        FallbackAnalysisEngine,
        get_all_methods,
        get_fallback_methods,
        get_method,
    )

    def row(method: Any) -> str:
        return (
            f"  {_c(f'{method.id.value:<30}', _CYAN)} {method.cost_tier.value:<10}"
            f" reliability {method.reliability:.2f}  ~{method.time_estimate_ms}ms"
        )

    if not args.primary:
        print(f"\n{_BOLD}Analysis methods{_RESET}\n")
        for method in get_all_methods():
            print(row(method))
        print()
        return 0

    try:
        primary = get_method(args.primary)
    except ReplayError as exc:
        _print_error(exc)
        return 1

    engine = FallbackAnalysisEngine(client=ReplayClient())
    recommended = engine.select_optimal_method(primary.id, max_cost=args.max_cost)
    print(f"\n{_BOLD}Fallback chain for {primary.id.value}{_RESET}\n")
    print(row(primary))
    for method in get_fallback_methods(primary.id):
        print(row(method))
    print(f"\n  Recommended: {_c(recommended.value, _GREEN)}\n")
    return 0


def _run_estimate(args: argparse.Namespace) -> int:
    estimate = ReplayClient.get_estimated_cost(args.operation, args.count)
    print(f"\n{_BOLD}Estimated cost{_RESET}: {estimate.operation}")
    print(f"  Cost multiplier: {estimate.cost_multiplier}")
    print(f"  Estimated time:  {estimate.estimated_time}")
    print(f"  {_DIM}{estimate.recommendation}{_RESET}\n")
    return 0


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings (redacted)."""
    from replay_engine.core.config import get_settings
    from replay_engine.core.networks import get_all_networks

    s = get_settings()
    print(f"\n{_BOLD}Replay Engine Configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        val = getattr(s, field_name, "")
        # Redact secrets
        if field_name.endswith(("_password", "_secret", "_key", "_token")):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")

    print(f"\n{_BOLD}Networks{_RESET}\n")
    for network in get_all_networks():
        testnet = _c(" (testnet)", _DIM) if network.is_testnet else ""
        print(f"  {network.name} {_DIM}chain {network.chain_id}{_RESET}{testnet}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"replay-engine {__version__}")
        return 0

    if not args.no_banner and not args.quiet:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "config":
        return _run_config()
    if args.command == "methods":
        return _run_methods(args)
    if args.command == "estimate":
        return _run_estimate(args)

    from replay_engine.core.config import get_settings
    from replay_engine.core.logging import setup_logging

    settings = get_settings()
    setup_logging(
        env=settings.app_env,
        log_level="WARNING" if args.quiet else settings.log_level,
        fmt=settings.log_format,
    )

    if args.command == "tx":
        return asyncio.run(_run_tx(args))
    if args.command == "block":
        return asyncio.run(_run_block(args))
    if args.command == "fallback":
        return asyncio.run(_run_fallback(args))

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
