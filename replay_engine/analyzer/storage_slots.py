"""Storage slot interpretation and exact token amount formatting.

Slots are interpreted by position using the conventional ERC-20 layout in
``Erc20Slot``.  Hashed mapping slots cannot be attributed to a key without
the preimage, so balance vs. allowance is decided by a magnitude heuristic
(see ``looks_like_token_amount``).
"""

from __future__ import annotations

from typing import Any

from replay_engine.core.constants import Erc20Slot, TokenConfig
from replay_engine.core.errors import ErrorKind, ReplayError
from replay_engine.core.types import SlotInterpretation

DEFAULT_DECIMALS = 18


def parse_hex_int(value: Any) -> int:
    """Parse a quantity that may be ``0x`` hex, a decimal string or an int."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text in ("", "0x", "0X"):
        return 0
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    except ValueError as exc:
        raise ReplayError(
            ErrorKind.PARSING_ERROR, f"Malformed quantity: {text!r}", {"value": text}
        ) from exc


def format_token_amount(raw: int, decimals: int) -> str:
    """Format a raw integer amount with *decimals* places, exactly.

    >>> format_token_amount(1_500_000, 6)
    '1.5'
    >>> format_token_amount(-10**18, 18)
    '-1'
    """
    sign = "-" if raw < 0 else ""
    magnitude = abs(raw)
    if decimals <= 0:
        return f"{sign}{magnitude}"
    whole, fraction = divmod(magnitude, 10**decimals)
    fraction_text = str(fraction).rjust(decimals, "0").rstrip("0")
    if fraction_text:
        return f"{sign}{whole}.{fraction_text}"
    return f"{sign}{whole}"


def format_eth(wei: int) -> str:
    return format_token_amount(wei, 18)


def looks_like_token_amount(value: int, decimals: int) -> bool:
    """Heuristic: is *value* a plausible token balance for *decimals*?

    Accepts zero and anything between ``10**(decimals-6)`` and
    ``10**(decimals+12)``.  This is a magnitude guess, not ground truth:
    a large allowance (including ``type(uint256).max``-style approvals) is
    rejected and read as an allowance, while a modest allowance inside the
    window is read as a balance.
    """
    if value == 0:
        return True
    lower = 10 ** max(0, decimals - 6)
    upper = 10 ** (decimals + 12)
    return lower <= value <= upper


def decode_address(word: int) -> str:
    return "0x" + f"{word:064x}"[-40:]


def decode_short_string(word: int) -> str:
    """Decode a Solidity short string (< 32 bytes) stored inline in one slot.

    The low byte holds ``2 * length``; the text itself is UTF-8.
    """
    data = word.to_bytes(32, "big")
    length_marker = data[-1]
    if length_marker % 2 == 0 and length_marker // 2 < 32:
        text = data[: length_marker // 2]
    else:
        text = data[:31]
    return text.strip(b"\0").decode("utf-8", errors="replace").strip()


def _display(kind: str, value: int | None, decimals: int) -> str | None:
    if value is None:
        return None
    if kind == "owner":
        return decode_address(value)
    if kind == "paused":
        return "true" if value else "false"
    if kind in ("name", "symbol"):
        return decode_short_string(value)
    if kind in ("total_supply", "balance", "allowance"):
        return format_token_amount(value, decimals)
    return str(value)


_POSITION_KINDS = {
    Erc20Slot.TOTAL_SUPPLY: ("total_supply", "Total supply"),
    Erc20Slot.OWNER: ("owner", "Owner"),
    Erc20Slot.PAUSED: ("paused", "Paused flag"),
    Erc20Slot.NAME: ("name", "Token name"),
    Erc20Slot.SYMBOL: ("symbol", "Token symbol"),
    Erc20Slot.DECIMALS: ("decimals", "Decimals"),
}


def interpret_slot(
    slot: int,
    from_value: int | None,
    to_value: int | None,
    token: TokenConfig | None = None,
) -> SlotInterpretation:
    """Give a storage slot change its conventional ERC-20 meaning."""
    decimals = token.decimals if token else DEFAULT_DECIMALS

    if slot in _POSITION_KINDS:
        kind, label = _POSITION_KINDS[slot]
        return SlotInterpretation(
            kind=kind,
            label=label,
            from_display=_display(kind, from_value, decimals),
            to_display=_display(kind, to_value, decimals),
        )

    # Everything else is a hashed mapping entry
    basis = to_value if to_value is not None else (from_value or 0)
    kind = "balance" if looks_like_token_amount(basis, decimals) else "allowance"
    return SlotInterpretation(
        kind=kind,
        label="Balance mapping entry" if kind == "balance" else "Allowance mapping entry",
        from_display=_display(kind, from_value, decimals),
        to_display=_display(kind, to_value, decimals),
        heuristic=True,
    )
