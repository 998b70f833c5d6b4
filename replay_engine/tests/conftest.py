"""Shared fixtures for the replay engine test suite."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from replay_engine.core.cache import ReplayCache
from replay_engine.core.config import Settings
from replay_engine.ingestion.replay_client import ReplayClient

TX_HASH = "0x" + "ab" * 32
OTHER_TX_HASH = "0x" + "cd" * 32
BLOCK_HASH = "0x" + "ef" * 32

SENDER = "0x1111111111111111111111111111111111111111"
RECEIVER = "0x2222222222222222222222222222222222222222"
CONTRACT = "0x3333333333333333333333333333333333333333"
NEW_OWNER = "0x4444444444444444444444444444444444444444"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"

ONE_ETH = 10**18


def _word(value: int | str) -> str:
    if isinstance(value, str):
        return value[2:].rjust(64, "0")
    return f"{value:064x}"


def erc20_transfer_input(to: str, amount: int) -> str:
    return "0xa9059cbb" + _word(to) + _word(amount)


# ── Fake JSON-RPC provider ───────────────────────────────────────────────────


class FakeProvider:
    """Scripted stand-in for ``JsonRpcProvider``.

    ``responses`` maps an RPC method to a value, an exception or a callable
    taking the params.  ``queue`` scripts successive responses; the last one
    repeats.
    """

    def __init__(self, responses: dict[str, Any] | None = None, delay: float = 0.0):
        self.responses: dict[str, Any] = dict(responses or {})
        self.sequences: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, list[Any]]] = []
        self.delay = delay
        self.closed = False

    def queue(self, method: str, *responses: Any) -> None:
        self.sequences[method] = list(responses)

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    async def send(self, method: str, params: list[Any]) -> Any:
        self.calls.append((method, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        sequence = self.sequences.get(method)
        if sequence:
            response = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        elif method in self.responses:
            response = self.responses[method]
        else:
            raise AssertionError(f"Unexpected RPC call {method}")
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(params)
        return response

    async def aclose(self) -> None:
        self.closed = True


class RecordingSleep:
    """Back-off sleep that returns immediately and remembers the delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, cache_backend="memory", default_network="mainnet")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def cache(settings: Settings) -> ReplayCache:
    return ReplayCache(settings)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def client(provider: FakeProvider, settings: Settings, recording_sleep: RecordingSleep) -> ReplayClient:
    return ReplayClient(provider, settings=settings, sleep=recording_sleep)


# ── Sample node payloads ─────────────────────────────────────────────────────


@pytest.fixture
def eth_transfer_trace() -> list[dict[str, Any]]:
    """Plain 1 ETH transfer: one root frame, no calldata."""
    return [
        {
            "action": {
                "from": SENDER,
                "to": RECEIVER,
                "value": hex(ONE_ETH),
                "gas": "0x5208",
                "input": "0x",
                "callType": "call",
            },
            "result": {"gasUsed": "0x5208", "output": "0x"},
            "subtraces": 0,
            "traceAddress": [],
            "type": "call",
        }
    ]


@pytest.fixture
def nested_trace() -> list[dict[str, Any]]:
    """Root call into a contract that makes a USDC transfer and a failing call."""
    return [
        {
            "action": {"from": SENDER, "to": CONTRACT, "value": "0x0", "input": "0x12345678", "callType": "call"},
            "result": {"gasUsed": hex(120_000)},
            "traceAddress": [],
            "type": "call",
        },
        {
            "action": {
                "from": CONTRACT,
                "to": USDC,
                "value": "0x0",
                "input": erc20_transfer_input(RECEIVER, 2_500_000),
                "callType": "call",
            },
            "result": {"gasUsed": hex(40_000)},
            "traceAddress": [0],
            "type": "call",
        },
        {
            "action": {"from": CONTRACT, "to": RECEIVER, "value": "0x0", "input": "0x", "callType": "staticcall"},
            "result": None,
            "error": "Reverted",
            "traceAddress": [1],
            "type": "call",
        },
    ]


@pytest.fixture
def usdc_state_diff() -> dict[str, Any]:
    """Storage writes on USDC matching a 2.5 USDC transfer, plus the sender's nonce."""
    return {
        USDC: {
            "balance": "=",
            "nonce": "=",
            "code": "=",
            "storage": {
                "0x" + "aa" * 32: {"*": {"from": "0x" + _word(10_000_000), "to": "0x" + _word(7_500_000)}},
                "0x" + "bb" * 32: {"*": {"from": "0x" + _word(0), "to": "0x" + _word(2_500_000)}},
            },
        },
        SENDER: {
            "balance": {"*": {"from": hex(5 * ONE_ETH), "to": hex(4 * ONE_ETH)}},
            "nonce": {"*": {"from": "0x1", "to": "0x2"}},
            "code": "=",
            "storage": {},
        },
    }


@pytest.fixture
def sample_vm_trace() -> dict[str, Any]:
    return {
        "code": "0x6080",
        "ops": [
            {"op": "PUSH1", "cost": 3, "pc": 0},
            {"op": "PUSH1", "cost": 3, "pc": 2},
            {"op": "MSTORE", "cost": 12, "pc": 4},
            {"op": "SLOAD", "cost": 2100, "pc": 5},
            {"op": "SSTORE", "cost": 20000, "pc": 6},
            {
                "op": "CALL",
                "cost": 2600,
                "pc": 7,
                "sub": {
                    "code": "0x",
                    "ops": [
                        {"op": "PUSH1", "cost": 3, "pc": 0},
                        {"op": "STOP", "cost": 0, "pc": 2},
                    ],
                },
            },
        ],
    }
