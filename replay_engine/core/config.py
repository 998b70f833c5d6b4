"""Core configuration for the replay analysis engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REPLAY_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "Replay Analysis Engine"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_format: Literal["auto", "json", "text"] = "auto"
    cors_allowed_origins: str = "http://localhost:3000,http://localhost:3001"

    # ── RPC ──────────────────────────────────────────────────────────────
    default_network: str = "mainnet"
    rpc_url: str = ""  # overrides the network registry when set
    alchemy_api_key: str = ""
    rpc_http_timeout: float = 330.0

    # ── Replay ───────────────────────────────────────────────────────────
    replay_tx_timeout_seconds: float = 60.0
    replay_tx_max_retries: int = 2
    replay_block_timeout_seconds: float = 300.0
    replay_block_max_retries: int = 1
    replay_tx_backoff_base: float = 1.0
    replay_tx_backoff_cap: float = 10.0
    replay_block_backoff_base: float = 2.0
    replay_block_backoff_cap: float = 30.0

    # ── Cache ────────────────────────────────────────────────────────────
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_default_ttl: int = 300
    cache_max_entries: int = 1_000
    fallback_preferred_ttl: int = 30 * 60
    fallback_secondary_ttl: int = 15 * 60
    fallback_block_ttl: int = 60 * 60
    fallback_default_max_cost: Literal["low", "medium", "high", "very-high"] = "medium"
    fallback_max_time_ms: int = 10_000
    fallback_min_reliability: float = 0.5
    fallback_call_timeout_seconds: float = 30.0
    fallback_receipt_sample_size: int = 10

    # ── Trace thresholds ─────────────────────────────────────────────────
    optimization_gas_threshold: int = 100_000
    high_gas_usage: int = 500_000
    deep_call_stack: int = 10
    repeated_call_threshold: int = 10

    # ── State diff thresholds ────────────────────────────────────────────
    large_balance_eth: int = 100
    critical_balance_eth: int = 1_000
    large_transfer_tokens: int = 1_000_000
    storage_change_suggestion: int = 20
    contracts_affected_suggestion: int = 10
    storage_write_threshold: int = 50

    # ── VM trace thresholds ──────────────────────────────────────────────
    excessive_sstore_count: int = 10
    excessive_sload_count: int = 20
    expensive_op_gas_ratio: float = 0.10
    top_opcode_count: int = 10

    # ── Heuristic patterns ───────────────────────────────────────────────
    flash_loan_wei_threshold: int = 1_000 * 10**18
    admin_abuse_call_count: int = 2


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
