"""Content hashing for canonical event deduplication.

The hash covers only identity-relevant fields (display text, source URL,
metrics), so the same activity reached through a webhook and through a
backfill listing hashes identically.
"""

import hashlib
import json
import math
from typing import Any

__all__ = ["UNDEFINED", "compute_content_hash", "stable_stringify"]


class _Undefined:
    """Marker for keys that are present but carry no value; omitted when serialized."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


def _scalar(value: Any) -> str:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        value = int(value)
    elif isinstance(value, float) and not math.isfinite(value):
        # JSON has no NaN/Infinity
        return "null"
    return json.dumps(value, ensure_ascii=False)


def stable_stringify(value: Any) -> str:
    """Serialize ``value`` to JSON with a canonical key order.

    - Object keys are sorted lexicographically at every nesting level
    - Arrays (lists and tuples) keep their order
    - Keys whose value is UNDEFINED are omitted; None is kept as null
    - Integral floats serialize as integers (1.0 -> 1)

    Args:
        value: JSON-compatible value

    Returns:
        Compact JSON string
    """
    if isinstance(value, dict):
        items = sorted(
            ((str(k), v) for k, v in value.items() if v is not UNDEFINED),
            key=lambda kv: kv[0],
        )
        body = ",".join(
            f"{json.dumps(k, ensure_ascii=False)}:{stable_stringify(v)}" for k, v in items
        )
        return "{" + body + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(
            "null" if v is UNDEFINED else stable_stringify(v) for v in value
        ) + "]"
    return _scalar(value)


def compute_content_hash(
    canonical_text: str,
    source_url: str,
    metrics: dict[str, Any] | None = None,
) -> str:
    """Compute the SHA-256 dedup key for a canonical event.

    Args:
        canonical_text: Event display text
        source_url: Link back to the source object
        metrics: Optional metrics mapping; key order does not matter

    Returns:
        64-character lowercase hex digest of ``text::url::metricsJSON``
    """
    metrics_part = stable_stringify(metrics) if metrics is not None else ""
    payload = f"{canonical_text.strip()}::{source_url.strip()}::{metrics_part}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
