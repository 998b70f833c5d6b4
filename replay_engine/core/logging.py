"""Logging setup for the API server and the CLI.

Replay components attach their context through ``extra=``::

    logger.warning("retrying", extra={"tx_hash": tx_hash, "attempt": 2})

``JSONFormatter`` nests those fields under ``context``; ``DevFormatter``
appends them as a compact ``key=value`` tail so retries and fallback
transitions stay readable on a terminal.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Literal

LogFormat = Literal["auto", "json", "text"]

# extra= key -> short label used by the text formatter
_CONTEXT_LABELS: dict[str, str] = {
    "tx_hash": "tx",
    "block": "block",
    "network": "net",
    "rpc_method": "rpc",
    "analysis_method": "via",
    "attempt": "attempt",
    "duration_ms": "ms",
    "status_code": "status",
    "method": "http",
    "path": "path",
}


def replay_context(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the replay fields a component attached to *record*."""
    return {key: getattr(record, key) for key in _CONTEXT_LABELS if hasattr(record, key)}


def _short(value: Any) -> str:
    text = str(value)
    if text.startswith("0x") and len(text) > 14:
        return f"{text[:10]}…"
    return text


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for staging and production."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.lineno}",
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id

        context = replay_context(record)
        if context:
            entry["context"] = context

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """Coloured single-line output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        line = f"{color}{ts} [{record.levelname:>8s}]{self.RESET} {record.name}: "

        request_id = getattr(record, "request_id", None)
        if request_id:
            line += f"[{request_id[:8]}] "
        line += record.getMessage()

        context = replay_context(record)
        if context:
            tail = " ".join(f"{_CONTEXT_LABELS[k]}={_short(v)}" for k, v in context.items())
            line += f" {self.DIM}{tail}{self.RESET}"

        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(env: str = "development", log_level: str = "INFO", fmt: LogFormat = "auto") -> None:
    """Install a single stderr handler on the root logger.

    With ``fmt="auto"`` staging and production get JSON lines, anything
    else gets the coloured text format.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    use_json = fmt == "json" or (fmt == "auto" and env in ("staging", "production"))
    handler.setFormatter(JSONFormatter() if use_json else DevFormatter())
    root.addHandler(handler)

    # Quiet noisy libraries
    for noisy in ("uvicorn.access", "httpcore", "httpx", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
