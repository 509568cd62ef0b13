"""Sync admission policy.

Pure decision logic, no I/O: ``evaluate(installation, trigger, now)``
returns whether a sync may start. Checks run in a fixed order and the
first failing check decides:

1. linked user present              -> block / no_clerk_user
2. repositories configured          -> block / no_repositories
3. manual cooldown (stale bypass)   -> skip  / cooldown_active
4. rate-limit budget                -> block / rate_limited
5. manual already-syncing guard     -> block / already_syncing
6.                                  -> start / ready
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import DAY_MS, PolicyThresholds
from ..models import Installation, SyncStatus, SyncTrigger

__all__ = [
    "DEFAULT_RATE_LIMIT_BUDGET",
    "SyncAction",
    "SyncDecision",
    "SyncReason",
    "calculate_sync_since",
    "can_start",
    "evaluate",
    "reason_to_user_message",
]

# Assumed budget when no rate-limit headers have been seen yet
DEFAULT_RATE_LIMIT_BUDGET = 5000

DEFAULT_THRESHOLDS = PolicyThresholds()


class SyncAction(str, Enum):
    START = "start"
    SKIP = "skip"
    BLOCK = "block"


class SyncReason(str, Enum):
    READY = "ready"
    NO_CLERK_USER = "no_clerk_user"
    NO_REPOSITORIES = "no_repositories"
    COOLDOWN_ACTIVE = "cooldown_active"
    RATE_LIMITED = "rate_limited"
    ALREADY_SYNCING = "already_syncing"


@dataclass(frozen=True)
class SyncDecision:
    """Outcome of evaluate().

    Metadata keys by reason:
        cooldown_active: cooldown_ms
        rate_limited: required_budget, available_budget, blocked_until
    """

    action: SyncAction
    reason: SyncReason
    metadata: dict[str, Any] = field(default_factory=dict)


def evaluate(
    installation: Installation,
    trigger: SyncTrigger,
    now: int,
    thresholds: PolicyThresholds = DEFAULT_THRESHOLDS,
) -> SyncDecision:
    """Decide whether a sync may start for ``installation``.

    Args:
        installation: Current installation state
        trigger: What asked for the sync
        now: Epoch ms
        thresholds: Policy knobs

    Returns:
        SyncDecision
    """
    if not installation.linked_user_id:
        return SyncDecision(SyncAction.BLOCK, SyncReason.NO_CLERK_USER)

    if not installation.repositories:
        return SyncDecision(SyncAction.BLOCK, SyncReason.NO_REPOSITORIES)

    if trigger == SyncTrigger.MANUAL:
        cooldown = _manual_cooldown(installation, now, thresholds)
        if cooldown is not None:
            return cooldown

    budget = _rate_limit_budget(installation, trigger, thresholds)
    if budget is not None:
        return budget

    if trigger == SyncTrigger.MANUAL and installation.sync_status == SyncStatus.SYNCING:
        return SyncDecision(SyncAction.BLOCK, SyncReason.ALREADY_SYNCING)

    return SyncDecision(SyncAction.START, SyncReason.READY)


def _manual_cooldown(
    installation: Installation, now: int, thresholds: PolicyThresholds
) -> SyncDecision | None:
    last_manual = installation.last_manual_sync_at or 0
    remaining = last_manual + thresholds.manual_sync_cooldown_ms - now
    if remaining <= 0:
        return None

    last_synced = installation.last_synced_at
    if not last_synced or now - last_synced > thresholds.stale_bypass_threshold_ms:
        return None

    return SyncDecision(
        SyncAction.SKIP, SyncReason.COOLDOWN_ACTIVE, {"cooldown_ms": remaining}
    )


def _rate_limit_budget(
    installation: Installation, trigger: SyncTrigger, thresholds: PolicyThresholds
) -> SyncDecision | None:
    budget = installation.rate_limit_remaining
    if budget is None:
        budget = DEFAULT_RATE_LIMIT_BUDGET

    required = thresholds.min_sync_budget
    if trigger == SyncTrigger.CRON:
        # Cron leaves headroom for webhook-driven traffic
        required += thresholds.webhook_budget_reserve

    if budget < required:
        return SyncDecision(
            SyncAction.BLOCK,
            SyncReason.RATE_LIMITED,
            {
                "required_budget": required,
                "available_budget": budget,
                "blocked_until": installation.rate_limit_reset,
            },
        )
    return None


def reason_to_user_message(reason: SyncReason, metadata: dict[str, Any] | None = None) -> str:
    """User-facing text for a decision reason."""
    metadata = metadata or {}
    if reason == SyncReason.READY:
        return "Sync started"
    if reason == SyncReason.NO_CLERK_USER:
        return "Installation not configured"
    if reason == SyncReason.NO_REPOSITORIES:
        return "No repositories selected for sync"
    if reason == SyncReason.COOLDOWN_ACTIVE:
        cooldown_ms = metadata.get("cooldown_ms")
        mins = math.ceil(cooldown_ms / 60000) if cooldown_ms else 60
        return f"Please wait {mins} minute{'' if mins == 1 else 's'} before syncing again"
    if reason == SyncReason.RATE_LIMITED:
        return "GitHub API rate limit reached. Please try again later."
    if reason == SyncReason.ALREADY_SYNCING:
        return "Sync already in progress"
    raise ValueError(f"Unknown sync reason: {reason!r}")


def can_start(decision: SyncDecision) -> bool:
    return decision.action == SyncAction.START


def calculate_sync_since(
    last_synced_at: int | None,
    now: int,
    overlap_buffer_ms: int = DEFAULT_THRESHOLDS.sync_overlap_buffer_ms,
    default_window_days: int = DEFAULT_THRESHOLDS.default_sync_window_days,
) -> int:
    """Lower bound for an incremental sync window.

    Re-scans ``overlap_buffer_ms`` before the last sync to absorb clock skew
    and late-arriving data; content-hash dedup absorbs the overlap. Never
    synced installations look back ``default_window_days``.
    """
    if last_synced_at:
        return last_synced_at - overlap_buffer_ms
    return now - default_window_days * DAY_MS
