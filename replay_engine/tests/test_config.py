"""Tests for settings, the network registry and logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from replay_engine.core.config import Settings, get_settings
from replay_engine.core.logging import DevFormatter, JSONFormatter, setup_logging
from replay_engine.core.networks import NETWORKS, get_all_networks, get_network_config, resolve_rpc_url


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.default_network == "mainnet"
        assert s.replay_tx_timeout_seconds == 60.0
        assert s.replay_tx_max_retries == 2
        assert s.replay_block_timeout_seconds == 300.0
        assert s.replay_block_max_retries == 1
        assert s.fallback_preferred_ttl == 1800
        assert s.fallback_secondary_ttl == 900
        assert s.fallback_block_ttl == 3600
        assert s.cache_backend == "memory"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("REPLAY_DEFAULT_NETWORK", "sepolia")
        monkeypatch.setenv("REPLAY_REPLAY_TX_MAX_RETRIES", "5")
        s = Settings(_env_file=None)
        assert s.default_network == "sepolia"
        assert s.replay_tx_max_retries == 5

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestNetworks:
    def test_registry(self):
        assert set(NETWORKS) == {"mainnet", "sepolia", "holesky"}
        assert get_network_config("MAINNET").chain_id == 1
        assert get_network_config("unknown") is None
        assert len(get_all_networks()) == 3

    def test_rpc_url_override_wins(self):
        s = Settings(_env_file=None, rpc_url="http://localhost:8545")
        assert resolve_rpc_url("anything", s) == "http://localhost:8545"

    def test_rpc_url_from_template(self):
        s = Settings(_env_file=None, alchemy_api_key="k3y")
        assert resolve_rpc_url("sepolia", s) == "https://eth-sepolia.g.alchemy.com/v2/k3y"

    def test_missing_key_raises(self):
        with pytest.raises(ValueError, match="No RPC endpoint"):
            resolve_rpc_url("mainnet", Settings(_env_file=None))

    def test_unknown_network_raises(self):
        with pytest.raises(ValueError, match="Unsupported network"):
            resolve_rpc_url("polygon", Settings(_env_file=None, alchemy_api_key="k"))


class TestLogging:
    def test_json_formatter_nests_replay_context(self):
        record = logging.LogRecord("replay", logging.WARNING, __file__, 10, "retrying %s", ("x",), None)
        record.tx_hash = "0xabc"
        record.attempt = 2
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "retrying x"
        assert entry["context"] == {"tx_hash": "0xabc", "attempt": 2}
        assert entry["level"] == "WARNING"
        assert entry["source"].endswith(":10")

    def test_dev_formatter_appends_short_context(self):
        record = logging.LogRecord("replay", logging.INFO, __file__, 10, "fallback", (), None)
        record.tx_hash = "0x" + "ab" * 32
        record.analysis_method = "receipt_analysis"
        line = DevFormatter().format(record)
        assert "tx=0xabababab…" in line
        assert "via=receipt_analysis" in line

    def test_setup_logging_production_uses_json(self):
        setup_logging(env="production", log_level="DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        setup_logging()

    def test_explicit_format_overrides_env(self):
        setup_logging(env="development", fmt="json")
        assert isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)
        setup_logging(env="production", fmt="text")
        assert isinstance(logging.getLogger().handlers[0].formatter, DevFormatter)
        setup_logging()
