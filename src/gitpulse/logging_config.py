"""Logging setup for gitpulse workers and scripts.

Every module logs through ``logging.getLogger("gitpulse.<area>")`` with an
event name as the message and its fields passed via ``extra``. This module
turns those records into one JSON line each, or plain text when
GITPULSE_LOG_FORMAT=text. GITPULSE_LOG_LEVEL sets the level.

Installation tokens, the app private key and webhook secrets must never
reach a log sink, so any extra whose name contains a sensitive fragment is
replaced with ``[REDACTED]``, including keys nested in dict values.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

ROOT_LOGGER = "gitpulse"
REDACTED = "[REDACTED]"

# Substrings, matched case-insensitively against extra field names
SENSITIVE_FRAGMENTS = (
    "token",
    "secret",
    "password",
    "private_key",
    "authorization",
    "credential",
    "api_key",
    "apikey",
    "bearer",
    "jwt",
)

# Attributes every LogRecord carries; anything else came from ``extra``
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(fragment in lowered for fragment in SENSITIVE_FRAGMENTS)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if is_sensitive(str(k)) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Fields a caller attached through ``extra``, scrubbed."""
    return {
        name: REDACTED if is_sensitive(name) else _scrub(value)
        for name, value in vars(record).items()
        if name not in _RECORD_ATTRS and not name.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``timestamp`` (UTC, ``Z`` suffix, taken from the record), ``level``,
    ``logger``, ``message``, then ``context`` when extras were passed and
    ``exception`` when the record carries exc_info.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            entry["exception"] = record.exc_text
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Console format for local runs; extras are appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        fields = " ".join(f"{k}={v}" for k, v in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} {fields}{sep}{tail}"


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Point the ``gitpulse`` logger tree at stderr.

    Args:
        level: Level name; defaults to GITPULSE_LOG_LEVEL, then INFO.
            Unknown names fall back to INFO.
        fmt: ``json`` or ``text``; defaults to GITPULSE_LOG_FORMAT, then json.

    Safe to call more than once: the existing handler is reconfigured.
    """
    level_name = (level or os.getenv("GITPULSE_LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    fmt = (fmt or os.getenv("GITPULSE_LOG_FORMAT") or "json").lower()
    formatter: logging.Formatter = TextFormatter() if fmt == "text" else StructuredFormatter()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(resolved)
    logger.propagate = False
    if not logger.handlers:
        logger.addHandler(logging.StreamHandler())
    for handler in logger.handlers:
        handler.setFormatter(formatter)
