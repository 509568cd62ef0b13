"""Sync status view-model.

get_status() folds installation state, the running batch and the manual
sync policy into one SyncStatusView for UIs and the operator CLI. Reading
status is also one of the lazy finalize triggers: when every job of the
running batch is terminal, the batch is finalized before the view is built.
"""

import logging
from dataclasses import dataclass
from typing import Any

from ..config import PolicyThresholds
from ..models import JobStatus, SyncStatus, SyncTrigger, now_ms
from ..storage import SyncStore
from .batch import BatchManager, BatchProgress
from .policy import DEFAULT_THRESHOLDS, SyncAction, SyncReason, evaluate

__all__ = ["SyncStatusView", "get_status", "normalize_error_message"]

logger = logging.getLogger("gitpulse.sync.status")

RATE_LIMIT_MESSAGE = "GitHub API rate limit reached. Sync will resume automatically."
AUTH_MESSAGE = "GitHub authentication failed. Please reconnect your account."
NETWORK_MESSAGE = "Connection to GitHub failed. Please try again."
GENERIC_MESSAGE = "Sync encountered an error. Please try again."


@dataclass
class SyncStatusView:
    """Everything a client needs to render sync state.

    Attributes:
        state: idle, syncing, blocked, error or finishing (all jobs done,
            batch not yet finalized)
        can_sync_now: A manual sync would be admitted
        cooldown_ms: Remaining manual cooldown, when that is what blocks it
        blocked_until: Resume time of a blocked job in the running batch
        batch: Live progress of the running batch
        last_synced_at: Epoch ms of the last successful batch
        last_sync_error: User-facing error text
    """

    state: str
    can_sync_now: bool
    cooldown_ms: int | None = None
    blocked_until: int | None = None
    batch: BatchProgress | None = None
    last_synced_at: int | None = None
    last_sync_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "can_sync_now": self.can_sync_now,
            "cooldown_ms": self.cooldown_ms,
            "blocked_until": self.blocked_until,
            "batch": self.batch.to_dict() if self.batch else None,
            "last_synced_at": self.last_synced_at,
            "last_sync_error": self.last_sync_error,
        }


def normalize_error_message(error: str | None) -> str | None:
    """Map internal error text to a user-facing message."""
    if not error:
        return None
    lowered = error.lower()
    if "rate limit" in lowered:
        return RATE_LIMIT_MESSAGE
    if "token" in lowered or "auth" in lowered or "401" in lowered:
        return AUTH_MESSAGE
    if "network" in lowered or "fetch" in lowered or "timeout" in lowered:
        return NETWORK_MESSAGE
    if len(error) > 100 or "Error:" in error:
        return GENERIC_MESSAGE
    return error


def get_status(
    store: SyncStore,
    batch_manager: BatchManager,
    installation_id: int,
    now: int | None = None,
    thresholds: PolicyThresholds = DEFAULT_THRESHOLDS,
) -> SyncStatusView | None:
    """Build the status view for ``installation_id``.

    Returns:
        SyncStatusView, or None if the installation does not exist.
    """
    now = now_ms() if now is None else now
    installation = store.get_installation(installation_id)
    if installation is None:
        return None

    state = "idle"
    blocked_until = None
    progress = None

    active = batch_manager.get_active_batch(installation_id)
    if active is not None:
        progress = batch_manager.get_progress(active.id)
        if progress and progress.completed_repos + progress.failed_repos >= progress.total_repos:
            result = batch_manager.maybe_finalize(active.id)
            if result.finalized or result.reason == "already_finalized":
                logger.debug(
                    "batch_finalized_on_read",
                    extra={"batch_id": active.id, "installation_id": installation_id},
                )
                return get_status(store, batch_manager, installation_id, now, thresholds)
            state = "finishing"
        else:
            blocked = [
                j for j in store.jobs_for_batch(active.id) if j.status == JobStatus.BLOCKED
            ]
            if blocked:
                state = "blocked"
                blocked_until = min(
                    (j.blocked_until for j in blocked if j.blocked_until is not None),
                    default=None,
                )
            else:
                state = "syncing"
    elif installation.sync_status == SyncStatus.ERROR:
        state = "error"

    decision = evaluate(installation, SyncTrigger.MANUAL, now, thresholds)
    cooldown_ms = None
    if decision.action == SyncAction.SKIP and decision.reason == SyncReason.COOLDOWN_ACTIVE:
        cooldown_ms = decision.metadata.get("cooldown_ms")

    return SyncStatusView(
        state=state,
        # A running batch also blocks a manual request at the service layer
        can_sync_now=decision.action == SyncAction.START and active is None,
        cooldown_ms=cooldown_ms,
        blocked_until=blocked_until,
        batch=progress,
        last_synced_at=installation.last_synced_at,
        last_sync_error=normalize_error_message(installation.last_sync_error),
    )
