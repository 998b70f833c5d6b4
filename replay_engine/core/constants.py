"""Static lookup tables for replay interpretation.

Function selectors, the known-token registry, opcode categories, ERC-20
storage layout and per-function gas profiles.  All tables are plain
read-only maps built once at import time.
"""

from __future__ import annotations

from dataclasses import dataclass

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
WEI_PER_ETH = 10**18
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


# ── ERC-20 storage layout ────────────────────────────────────────────────────


class Erc20Slot:
    """Conventional storage positions of a simple ERC-20 implementation."""

    TOTAL_SUPPLY = 0
    BALANCES = 1
    ALLOWANCES = 2
    OWNER = 3
    PAUSED = 4
    NAME = 5
    SYMBOL = 6
    DECIMALS = 7


# ── Known tokens ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TokenConfig:
    """A token contract the analyzers know the decimals of."""

    address: str
    symbol: str
    name: str
    decimals: int
    token_type: str = "erc20"


KNOWN_TOKENS: dict[str, TokenConfig] = {
    token.address: token
    for token in (
        TokenConfig(
            address="0x6c3ea9036406852006290770bedfcaba0e23a0e8",
            symbol="PYUSD",
            name="PayPal USD",
            decimals=6,
            token_type="stablecoin",
        ),
        TokenConfig(
            address="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
            symbol="USDC",
            name="USD Coin",
            decimals=6,
            token_type="stablecoin",
        ),
        TokenConfig(
            address="0xdac17f958d2ee523a2206206994597c13d831ec7",
            symbol="USDT",
            name="Tether USD",
            decimals=6,
            token_type="stablecoin",
        ),
        TokenConfig(
            address="0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
            symbol="WETH",
            name="Wrapped Ether",
            decimals=18,
            token_type="wrapped",
        ),
    )
}


def get_token_config(address: str | None) -> TokenConfig | None:
    """Look up a known token by contract address (case-insensitive)."""
    if not address:
        return None
    return KNOWN_TOKENS.get(address.lower())


# ── Function selectors ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class FunctionSignature:
    selector: str
    name: str
    category: str


FUNCTION_SIGNATURES: dict[str, FunctionSignature] = {
    sig.selector: sig
    for sig in (
        # ERC-20
        FunctionSignature("0xa9059cbb", "transfer", "transfer"),
        FunctionSignature("0x23b872dd", "transferFrom", "transfer"),
        FunctionSignature("0x095ea7b3", "approve", "approval"),
        FunctionSignature("0xd505accf", "permit", "approval"),
        FunctionSignature("0x70a08231", "balanceOf", "view"),
        FunctionSignature("0xdd62ed3e", "allowance", "view"),
        FunctionSignature("0x18160ddd", "totalSupply", "view"),
        FunctionSignature("0x313ce567", "decimals", "view"),
        FunctionSignature("0x95d89b41", "symbol", "view"),
        FunctionSignature("0x06fdde03", "name", "view"),
        FunctionSignature("0x7ecebe00", "nonces", "view"),
        FunctionSignature("0x8da5cb5b", "owner", "view"),
        FunctionSignature("0x5c975abb", "paused", "view"),
        # Supply management
        FunctionSignature("0x40c10f19", "mint", "admin"),
        FunctionSignature("0x42966c68", "burn", "admin"),
        FunctionSignature("0x79cc6790", "burnFrom", "admin"),
        # Ownership / pausing / roles
        FunctionSignature("0xf2fde38b", "transferOwnership", "admin"),
        FunctionSignature("0x715018a6", "renounceOwnership", "admin"),
        FunctionSignature("0x8456cb59", "pause", "admin"),
        FunctionSignature("0x3f4ba83a", "unpause", "admin"),
        FunctionSignature("0x2f2ff15d", "grantRole", "admin"),
        FunctionSignature("0xd547741f", "revokeRole", "admin"),
        FunctionSignature("0x8129fc1c", "initialize", "admin"),
        # Proxies
        FunctionSignature("0x3659cfe6", "upgradeTo", "admin"),
        FunctionSignature("0x4f1ef286", "upgradeToAndCall", "admin"),
        # Batching
        FunctionSignature("0x8d80ff0a", "multiSend", "batch"),
        FunctionSignature("0x6a761202", "execTransaction", "batch"),
        # DEX swaps
        FunctionSignature("0x38ed1739", "swapExactTokensForTokens", "swap"),
        FunctionSignature("0x7ff36ab5", "swapExactETHForTokens", "swap"),
        FunctionSignature("0x18cbafe5", "swapExactTokensForETH", "swap"),
        FunctionSignature("0x022c0d9f", "swap", "swap"),
        FunctionSignature("0x414bf389", "exactInputSingle", "swap"),
        # Flash loans
        FunctionSignature("0xab9c4b5d", "flashLoan", "flashloan"),
        FunctionSignature("0x5cffe9de", "flashLoan", "flashloan"),
        FunctionSignature("0x490e6cbc", "flash", "flashloan"),
    )
}


def decode_function_selector(input_data: str | None) -> FunctionSignature | None:
    """Match calldata against the selector table.

    Returns ``None`` when the calldata is too short to carry a selector and
    an ``unknown`` signature carrying the selector when it is unmatched.
    """
    if not input_data or len(input_data) < 10:
        return None
    selector = input_data[:10].lower()
    return FUNCTION_SIGNATURES.get(selector) or FunctionSignature(selector, "unknown", "unknown")


# Function names treated as privileged by the security engine
ADMIN_FUNCTIONS = frozenset({
    "transferOwnership",
    "renounceOwnership",
    "pause",
    "unpause",
    "mint",
    "burn",
    "burnFrom",
    "setMinter",
    "removeMinter",
    "upgradeTo",
    "upgradeToAndCall",
    "initialize",
    "grantRole",
    "revokeRole",
    "setAdmin",
    "removeAdmin",
})


# ── Opcode categories ────────────────────────────────────────────────────────

_OPCODES_BY_CATEGORY: dict[str, tuple[str, ...]] = {
    "arithmetic": ("ADD", "SUB", "MUL", "DIV", "SDIV", "MOD", "SMOD", "ADDMOD", "MULMOD", "EXP", "SIGNEXTEND"),
    "comparison": ("LT", "GT", "SLT", "SGT", "EQ", "ISZERO", "AND", "OR", "XOR", "NOT"),
    "bitwise": ("BYTE", "SHL", "SHR", "SAR"),
    "keccak": ("KECCAK256", "SHA3"),
    "environment": (
        "ADDRESS", "BALANCE", "ORIGIN", "CALLER", "CALLVALUE", "CALLDATALOAD",
        "CALLDATASIZE", "CALLDATACOPY", "CODESIZE", "CODECOPY", "GASPRICE",
        "EXTCODESIZE", "EXTCODECOPY", "RETURNDATASIZE", "RETURNDATACOPY", "EXTCODEHASH",
    ),
    "block": (
        "BLOCKHASH", "COINBASE", "TIMESTAMP", "NUMBER", "DIFFICULTY", "PREVRANDAO",
        "GASLIMIT", "CHAINID", "SELFBALANCE", "BASEFEE", "BLOBHASH", "BLOBBASEFEE",
    ),
    "storage": ("SLOAD", "SSTORE", "TLOAD", "TSTORE"),
    "memory": ("MLOAD", "MSTORE", "MSTORE8", "MSIZE", "MCOPY"),
    "stack": (
        ("POP", "PUSH0")
        + tuple(f"PUSH{i}" for i in range(1, 33))
        + tuple(f"DUP{i}" for i in range(1, 17))
        + tuple(f"SWAP{i}" for i in range(1, 17))
    ),
    "flow": ("STOP", "JUMP", "JUMPI", "PC", "GAS", "JUMPDEST"),
    "system": (
        "CREATE", "CALL", "CALLCODE", "RETURN", "DELEGATECALL", "CREATE2",
        "STATICCALL", "REVERT", "INVALID", "SELFDESTRUCT",
    ),
    "log": ("LOG0", "LOG1", "LOG2", "LOG3", "LOG4"),
}

OPCODE_CATEGORIES: dict[str, str] = {
    opcode: category
    for category, opcodes in _OPCODES_BY_CATEGORY.items()
    for opcode in opcodes
}


def get_opcode_category(opcode: str) -> str:
    return OPCODE_CATEGORIES.get(opcode.upper(), "unknown")


# ── Gas profiles ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GasProfile:
    low: int
    typical: int
    high: int


GAS_PROFILES: dict[str, GasProfile] = {
    "transfer": GasProfile(21_000, 65_000, 80_000),
    "transferFrom": GasProfile(21_000, 80_000, 100_000),
    "approve": GasProfile(21_000, 46_000, 60_000),
    "mint": GasProfile(50_000, 120_000, 150_000),
    "burn": GasProfile(30_000, 90_000, 120_000),
    "pause": GasProfile(25_000, 35_000, 50_000),
    "unpause": GasProfile(25_000, 35_000, 50_000),
    "transferOwnership": GasProfile(25_000, 35_000, 50_000),
}


def categorize_gas_usage(function_name: str, gas_used: int) -> tuple[str, float]:
    """Rate *gas_used* against the function's profile.

    Returns ``(category, efficiency)`` where category is one of
    excellent/good/average/poor and efficiency is a 0-100 score.
    """
    profile = GAS_PROFILES.get(function_name)
    if profile is None:
        return "average", 50.0

    if gas_used <= profile.low:
        return "excellent", 100.0
    if gas_used <= profile.typical:
        ratio = (gas_used - profile.low) / (profile.typical - profile.low)
        return "good", round(100 - ratio * 20, 2)
    if gas_used <= profile.high:
        ratio = (gas_used - profile.typical) / (profile.high - profile.typical)
        return "average", round(80 - ratio * 30, 2)

    excess = (gas_used - profile.high) / profile.high
    return "poor", round(max(0.0, 50 - excess * 50), 2)


# ── RPC methods ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RpcMethod:
    """Relative cost of a trace RPC call (multiplier over a plain eth_call)."""

    name: str
    cost_multiplier: int
    cost_tier: str
    description: str


RPC_METHODS: dict[str, RpcMethod] = {
    "trace_replayTransaction": RpcMethod(
        name="trace_replayTransaction",
        cost_multiplier=100,
        cost_tier="very-high",
        description="Replay a single transaction with trace, stateDiff and vmTrace tracers",
    ),
    "trace_replayBlockTransactions": RpcMethod(
        name="trace_replayBlockTransactions",
        cost_multiplier=1_000,  # per transaction in the block
        cost_tier="very-high",
        description="Replay every transaction in a block",
    ),
    "eth_getBlockByNumber": RpcMethod(
        name="eth_getBlockByNumber",
        cost_multiplier=1,
        cost_tier="low",
        description="Block header and transaction hashes",
    ),
}

SUPPORTED_TRACERS = ("trace", "stateDiff", "vmTrace")


# ── Opcode bytes ─────────────────────────────────────────────────────────────

# OpenEthereum-style vmTrace steps carry only a pc; the opcode is read from code
OPCODE_NAMES: dict[int, str] = {
    0x00: "STOP", 0x01: "ADD", 0x02: "MUL", 0x03: "SUB", 0x04: "DIV", 0x05: "SDIV",
    0x06: "MOD", 0x07: "SMOD", 0x08: "ADDMOD", 0x09: "MULMOD", 0x0A: "EXP", 0x0B: "SIGNEXTEND",
    0x10: "LT", 0x11: "GT", 0x12: "SLT", 0x13: "SGT", 0x14: "EQ", 0x15: "ISZERO",
    0x16: "AND", 0x17: "OR", 0x18: "XOR", 0x19: "NOT", 0x1A: "BYTE", 0x1B: "SHL",
    0x1C: "SHR", 0x1D: "SAR", 0x20: "KECCAK256",
    0x30: "ADDRESS", 0x31: "BALANCE", 0x32: "ORIGIN", 0x33: "CALLER", 0x34: "CALLVALUE",
    0x35: "CALLDATALOAD", 0x36: "CALLDATASIZE", 0x37: "CALLDATACOPY", 0x38: "CODESIZE",
    0x39: "CODECOPY", 0x3A: "GASPRICE", 0x3B: "EXTCODESIZE", 0x3C: "EXTCODECOPY",
    0x3D: "RETURNDATASIZE", 0x3E: "RETURNDATACOPY", 0x3F: "EXTCODEHASH",
    0x40: "BLOCKHASH", 0x41: "COINBASE", 0x42: "TIMESTAMP", 0x43: "NUMBER", 0x44: "PREVRANDAO",
    0x45: "GASLIMIT", 0x46: "CHAINID", 0x47: "SELFBALANCE", 0x48: "BASEFEE", 0x49: "BLOBHASH",
    0x4A: "BLOBBASEFEE",
    0x50: "POP", 0x51: "MLOAD", 0x52: "MSTORE", 0x53: "MSTORE8", 0x54: "SLOAD", 0x55: "SSTORE",
    0x56: "JUMP", 0x57: "JUMPI", 0x58: "PC", 0x59: "MSIZE", 0x5A: "GAS", 0x5B: "JUMPDEST",
    0x5C: "TLOAD", 0x5D: "TSTORE", 0x5E: "MCOPY", 0x5F: "PUSH0",
    **{0x60 + i: f"PUSH{i + 1}" for i in range(32)},
    **{0x80 + i: f"DUP{i + 1}" for i in range(16)},
    **{0x90 + i: f"SWAP{i + 1}" for i in range(16)},
    **{0xA0 + i: f"LOG{i}" for i in range(5)},
    0xF0: "CREATE", 0xF1: "CALL", 0xF2: "CALLCODE", 0xF3: "RETURN", 0xF4: "DELEGATECALL",
    0xF5: "CREATE2", 0xFA: "STATICCALL", 0xFD: "REVERT", 0xFE: "INVALID", 0xFF: "SELFDESTRUCT",
}
