"""Supported replay networks and their RPC endpoints."""

from __future__ import annotations

from dataclasses import dataclass

from replay_engine.core.config import Settings, get_settings


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a network that exposes the trace RPC namespace."""

    chain_id: int
    name: str
    short_name: str
    rpc_url_template: str  # Use {api_key} placeholder
    explorer_url: str
    native_currency: str = "ETH"
    is_testnet: bool = False


# ── Network Registry ─────────────────────────────────────────────────────────

NETWORKS: dict[str, NetworkConfig] = {
    "mainnet": NetworkConfig(
        chain_id=1,
        name="Ethereum Mainnet",
        short_name="eth",
        rpc_url_template="https://eth-mainnet.g.alchemy.com/v2/{api_key}",
        explorer_url="https://etherscan.io",
    ),
    "sepolia": NetworkConfig(
        chain_id=11155111,
        name="Sepolia",
        short_name="sep",
        rpc_url_template="https://eth-sepolia.g.alchemy.com/v2/{api_key}",
        explorer_url="https://sepolia.etherscan.io",
        is_testnet=True,
    ),
    "holesky": NetworkConfig(
        chain_id=17000,
        name="Holesky",
        short_name="hol",
        rpc_url_template="https://eth-holesky.g.alchemy.com/v2/{api_key}",
        explorer_url="https://holesky.etherscan.io",
        is_testnet=True,
    ),
}


def get_network_config(network: str) -> NetworkConfig | None:
    """Get network configuration by name."""
    return NETWORKS.get(network.lower())


def get_all_networks() -> list[NetworkConfig]:
    """Return all supported networks."""
    return list(NETWORKS.values())


def resolve_rpc_url(network: str, settings: Settings | None = None) -> str:
    """Return the JSON-RPC endpoint for *network*.

    ``REPLAY_RPC_URL`` wins over the registry so a self-hosted Erigon or
    Nethermind node can be used for any network name.
    """
    settings = settings or get_settings()
    if settings.rpc_url:
        return settings.rpc_url

    config = get_network_config(network)
    if config is None:
        raise ValueError(f"Unsupported network: {network}")
    if not settings.alchemy_api_key:
        raise ValueError(
            f"No RPC endpoint configured for {network}: set REPLAY_RPC_URL or REPLAY_ALCHEMY_API_KEY"
        )
    return config.rpc_url_template.format(api_key=settings.alchemy_api_key)
