"""Single entrypoint for sync requests.

Callers (manual "sync now", cron, webhook follow-ups, maintenance) call
request_sync() and get back a SyncRequestResult. Policy evaluation,
installation status updates, batch creation and job scheduling stay
behind this interface.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..config import SyncConfig, get_config
from ..metrics import sync_requests_total
from ..models import Installation, SyncStatus, SyncTrigger, now_ms
from ..scheduler import PROCESS_SYNC_JOB, Scheduler
from ..storage import SyncStore
from .batch import BatchManager
from .policy import (
    SyncAction,
    SyncReason,
    calculate_sync_since,
    can_start,
    evaluate,
    reason_to_user_message,
)

__all__ = ["SyncRequestResult", "SyncService"]

logger = logging.getLogger("gitpulse.sync.service")


@dataclass
class SyncRequestResult:
    """Outcome of a sync request.

    Attributes:
        started: A batch was created and its jobs scheduled
        message: User-facing text
        reason: Policy reason, or a service-level reason (not_found, active_batch, error)
        batch_id: Batch created (or the one already running)
        details: cooldown_ms, blocked_until, job_ids when relevant
    """

    started: bool
    message: str
    reason: str | None = None
    batch_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "message": self.message,
            "reason": self.reason,
            "batch_id": self.batch_id,
            "details": dict(self.details),
        }


class SyncService:
    """Admission and start-up of installation syncs.

    Args:
        store: Durable store
        scheduler: Jobs are scheduled here with PROCESS_SYNC_JOB
        batch_manager: Creates the batch and its jobs (built if omitted)
        config: SyncConfig (policy thresholds, catch-up threshold)
        clock: Epoch-ms clock
    """

    def __init__(
        self,
        store: SyncStore,
        scheduler: Scheduler,
        batch_manager: BatchManager | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.config = config or get_config()
        self.batches = batch_manager or BatchManager(store, scheduler, self.config, clock)
        self._clock = clock

    def request_sync(
        self,
        installation_id: int,
        trigger: SyncTrigger,
        since: int | None = None,
        until: int | None = None,
    ) -> SyncRequestResult:
        """Request a sync for ``installation_id``.

        Args:
            installation_id: GitHub App installation id
            trigger: manual, cron, webhook, maintenance or recovery
            since: Override for the window start (epoch ms)
            until: Optional window end (epoch ms)

        Returns:
            SyncRequestResult
        """
        trigger = SyncTrigger(trigger)
        now = self._clock()

        installation = self.store.get_installation(installation_id)
        if installation is None:
            self._count(trigger, "rejected")
            return SyncRequestResult(False, "Installation not found", reason="not_found")

        # Known race: two concurrent requests can both pass this check
        active = self.batches.get_active_batch(installation_id)
        if active is not None:
            self._count(trigger, "rejected")
            logger.info(
                "sync_request_skipped_active_batch",
                extra={
                    "installation_id": installation_id,
                    "trigger": trigger.value,
                    "batch_id": active.id,
                },
            )
            return SyncRequestResult(
                False,
                "A sync is already in progress",
                reason="active_batch",
                batch_id=active.id,
            )

        decision = evaluate(installation, trigger, now, self.config.policy_thresholds)
        if not can_start(decision):
            return self._decline(
                installation, trigger, decision.action, decision.reason, decision.metadata
            )

        return self._start(installation, trigger, since, until, now)

    def _decline(
        self,
        installation: Installation,
        trigger: SyncTrigger,
        action: SyncAction,
        reason: SyncReason,
        metadata: dict[str, Any],
    ) -> SyncRequestResult:
        self._count(trigger, "skipped" if action == SyncAction.SKIP else "blocked")
        logger.info(
            "sync_request_declined",
            extra={
                "installation_id": installation.installation_id,
                "trigger": trigger.value,
                "reason": reason.value,
                "metadata": metadata,
            },
        )

        blocked_until = metadata.get("blocked_until")
        if reason == SyncReason.RATE_LIMITED and blocked_until:
            self.store.patch_installation(
                installation.installation_id,
                {
                    "sync_status": SyncStatus.RATE_LIMITED,
                    "next_sync_at": blocked_until,
                    "updated_at": self._clock(),
                },
            )

        details = {
            k: metadata[k] for k in ("cooldown_ms", "blocked_until") if metadata.get(k) is not None
        }
        return SyncRequestResult(
            False,
            reason_to_user_message(reason, metadata),
            reason=reason.value,
            details=details,
        )

    def _start(
        self,
        installation: Installation,
        trigger: SyncTrigger,
        since: int | None,
        until: int | None,
        now: int,
    ) -> SyncRequestResult:
        installation_id = installation.installation_id
        thresholds = self.config.policy_thresholds
        if since is None:
            since = calculate_sync_since(
                installation.last_synced_at,
                now,
                thresholds.sync_overlap_buffer_ms,
                thresholds.default_sync_window_days,
            )

        changes: dict[str, Any] = {
            "sync_status": SyncStatus.SYNCING,
            "last_sync_error": None,
            "next_sync_at": None,
            "updated_at": now,
        }
        if trigger == SyncTrigger.MANUAL:
            changes["last_manual_sync_at"] = now
        self.store.patch_installation(installation_id, changes)

        batch_id = None
        try:
            batch_id, job_ids = self.batches.create(
                installation_id, trigger, list(installation.repositories), since, until
            )
            for job_id in job_ids:
                self.scheduler.schedule_after(0, PROCESS_SYNC_JOB, {"job_id": job_id})
        except Exception as e:
            # create() cleans up its own partial writes; a scheduling failure leaves ours
            if batch_id is not None:
                self.batches.abandon(
                    batch_id, f"Job scheduling failed: {str(e) or type(e).__name__}"
                )
            self.store.patch_installation(
                installation_id,
                {
                    "sync_status": SyncStatus.ERROR,
                    "last_sync_error": str(e) or type(e).__name__,
                    "updated_at": self._clock(),
                },
            )
            self._count(trigger, "error")
            logger.error(
                "sync_start_failed",
                extra={
                    "installation_id": installation_id,
                    "trigger": trigger.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return SyncRequestResult(
                False, "Sync failed to start. Please try again.", reason="error"
            )

        self._count(trigger, "started")
        logger.info(
            "sync_started",
            extra={
                "installation_id": installation_id,
                "trigger": trigger.value,
                "batch_id": batch_id,
                "repo_count": len(job_ids),
                "since": since,
                "until": until,
            },
        )
        return SyncRequestResult(
            True,
            reason_to_user_message(SyncReason.READY),
            reason=SyncReason.READY.value,
            batch_id=batch_id,
            details={"job_ids": job_ids},
        )

    # --- Drivers ---

    def run_cron_sync(self) -> dict[str, int]:
        """Request a cron sync for every installation."""
        return self._request_all(self.store.list_installations(), SyncTrigger.CRON)

    def run_catch_up_sync(self) -> dict[str, int]:
        """Request a maintenance sync for linked installations gone stale."""
        cutoff = self._clock() - self.config.catch_up_threshold_ms
        stale = [
            i
            for i in self.store.list_installations()
            if i.linked_user_id
            and i.repositories
            and (i.last_synced_at is None or i.last_synced_at < cutoff)
        ]
        return self._request_all(stale, SyncTrigger.MAINTENANCE)

    def _request_all(
        self, installations: list[Installation], trigger: SyncTrigger
    ) -> dict[str, int]:
        summary = {"checked": len(installations), "started": 0, "declined": 0}
        for installation in installations:
            result = self.request_sync(installation.installation_id, trigger)
            summary["started" if result.started else "declined"] += 1
        logger.info("sync_sweep_complete", extra={"trigger": trigger.value, **summary})
        return summary

    @staticmethod
    def _count(trigger: SyncTrigger, result: str) -> None:
        sync_requests_total.labels(trigger=trigger.value, result=result).inc()
