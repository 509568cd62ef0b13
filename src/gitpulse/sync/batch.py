"""Sync batches: one batch per sync request, one job per repository.

Batch progress is never incremented. compute_state() recounts the batch's
jobs every time, and maybe_finalize() writes the terminal status once all
jobs are terminal. The terminal write is conditional on the batch still
being ``running``, so concurrent or repeated finalize calls finalize
exactly once and only the winner updates the installation and schedules
the downstream trigger.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..config import SyncConfig, get_config
from ..metrics import batches_finalized_total
from ..models import (
    BatchStatus,
    IngestionJob,
    JobStatus,
    SyncBatch,
    SyncStatus,
    SyncTrigger,
    now_ms,
)
from ..scheduler import Scheduler
from ..storage import INGESTION_JOBS, SYNC_BATCHES, SyncStore

__all__ = ["BatchManager", "BatchProgress", "BatchState", "FinalizeResult"]

logger = logging.getLogger("gitpulse.sync.batch")


@dataclass
class BatchState:
    """Counts recomputed from the batch's jobs."""

    completed: int = 0
    failed: int = 0
    events_ingested: int = 0
    total: int = 0


@dataclass
class FinalizeResult:
    finalized: bool
    reason: str | None = None  # not_found, already_finalized, not_complete
    status: BatchStatus | None = None
    events_ingested: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "finalized": self.finalized,
            "reason": self.reason,
            "status": self.status.value if self.status else None,
            "events_ingested": self.events_ingested,
        }


@dataclass
class BatchProgress:
    batch_id: str
    status: BatchStatus
    total_repos: int
    completed_repos: int
    failed_repos: int
    events_ingested: int
    progress_percent: int
    current_repo: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total_repos": self.total_repos,
            "completed_repos": self.completed_repos,
            "failed_repos": self.failed_repos,
            "events_ingested": self.events_ingested,
            "progress_percent": self.progress_percent,
            "current_repo": self.current_repo,
        }


class BatchManager:
    """Create, aggregate and finalize sync batches.

    Args:
        store: Durable store
        scheduler: Used to schedule the downstream trigger
        config: SyncConfig (downstream handler name)
        clock: Epoch-ms clock
    """

    def __init__(
        self,
        store: SyncStore,
        scheduler: Scheduler,
        config: SyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.config = config or get_config()
        self._clock = clock

    def create(
        self,
        installation_id: int,
        trigger: SyncTrigger,
        repos: list[str],
        since: int | None = None,
        until: int | None = None,
    ) -> tuple[str, list[str]]:
        """Insert a running batch and one pending job per repository.

        Returns:
            (batch_id, job_ids)
        """
        now = self._clock()
        batch = SyncBatch(
            id=self.store.new_id(),
            installation_id=installation_id,
            trigger=trigger,
            status=BatchStatus.RUNNING,
            total_repos=len(repos),
            since=since,
            until=until,
            created_at=now,
        )
        batch_id = self.store.insert(SYNC_BATCHES, batch.to_dict())

        job_ids = []
        try:
            for repo_full_name in repos:
                job = IngestionJob(
                    id=self.store.new_id(),
                    batch_id=batch_id,
                    installation_id=installation_id,
                    repo_full_name=repo_full_name,
                    since=since,
                    until=until,
                    created_at=now,
                    last_updated_at=now,
                )
                job_ids.append(self.store.insert(INGESTION_JOBS, job.to_dict()))
        except Exception as e:
            self.abandon(batch_id, f"Batch creation failed: {str(e) or type(e).__name__}")
            raise

        logger.info(
            "batch_created",
            extra={
                "batch_id": batch_id,
                "installation_id": installation_id,
                "trigger": SyncTrigger(trigger).value,
                "repo_count": len(repos),
            },
        )
        return batch_id, job_ids

    def abandon(self, batch_id: str, message: str) -> bool:
        """Fail a batch that never fully started.

        Every job of the batch that is not terminal yet is failed with
        ``message``, then the batch is moved from ``running`` to ``failed``
        with ``total_repos`` cut down to the jobs that actually exist.
        The installation is left to the caller and no downstream work is
        scheduled.

        Returns:
            True if this call moved the batch out of ``running``.
        """
        now = self._clock()
        for job in self.store.jobs_for_batch(batch_id):
            if job.status.is_terminal:
                continue
            self.store.patch(
                INGESTION_JOBS,
                job.id,
                {
                    "status": JobStatus.FAILED,
                    "error_message": message,
                    "completed_at": now,
                    "last_updated_at": now,
                },
                expect={"status": job.status},
            )

        state = self.compute_state(batch_id)
        won = self.store.patch(
            SYNC_BATCHES,
            batch_id,
            {
                "status": BatchStatus.FAILED,
                "total_repos": state.total,
                "completed_repos": state.completed,
                "failed_repos": state.failed,
                "events_ingested": state.events_ingested,
                "completed_at": now,
            },
            expect={"status": BatchStatus.RUNNING},
        )
        if won:
            batches_finalized_total.labels(status=BatchStatus.FAILED.value).inc()
            logger.warning(
                "batch_abandoned",
                extra={"batch_id": batch_id, "error": message, "failed_repos": state.failed},
            )
        return won

    def compute_state(self, batch_id: str) -> BatchState:
        """Recount completed/failed jobs and completed-job events."""
        state = BatchState()
        for job in self.store.jobs_for_batch(batch_id):
            state.total += 1
            if job.status == JobStatus.COMPLETED:
                state.completed += 1
                state.events_ingested += job.events_ingested or 0
            elif job.status == JobStatus.FAILED:
                state.failed += 1
        return state

    def maybe_finalize(self, batch_id: str) -> FinalizeResult:
        """Finalize the batch if every job is terminal.

        Safe to call any number of times from any number of callers.
        """
        batch = self.store.get_batch(batch_id)
        if batch is None:
            return FinalizeResult(False, "not_found")
        if batch.status != BatchStatus.RUNNING:
            return FinalizeResult(False, "already_finalized", batch.status)

        state = self.compute_state(batch_id)
        if state.completed + state.failed < batch.total_repos:
            return FinalizeResult(False, "not_complete")

        status = (
            BatchStatus.FAILED
            if state.failed == batch.total_repos and batch.total_repos > 0
            else BatchStatus.COMPLETED
        )
        now = self._clock()
        won = self.store.patch(
            SYNC_BATCHES,
            batch_id,
            {
                "status": status,
                "completed_repos": state.completed,
                "failed_repos": state.failed,
                "events_ingested": state.events_ingested,
                "completed_at": now,
            },
            expect={"status": BatchStatus.RUNNING},
        )
        if not won:
            return FinalizeResult(False, "already_finalized")

        self._finalize_installation(batch, state, status, now)
        batches_finalized_total.labels(status=status.value).inc()
        logger.info(
            "batch_finalized",
            extra={
                "batch_id": batch_id,
                "status": status.value,
                "total_repos": batch.total_repos,
                "completed_repos": state.completed,
                "failed_repos": state.failed,
                "events_ingested": state.events_ingested,
            },
        )
        return FinalizeResult(True, None, status, state.events_ingested)

    def _finalize_installation(
        self, batch: SyncBatch, state: BatchState, status: BatchStatus, now: int
    ) -> None:
        changes: dict[str, Any] = {
            "sync_status": SyncStatus.ERROR if status == BatchStatus.FAILED else SyncStatus.IDLE,
            "last_sync_error": (
                f"{state.failed} repo(s) failed to sync" if state.failed > 0 else None
            ),
            "updated_at": now,
        }
        if state.completed > 0:
            changes["last_synced_at"] = now
        self.store.patch_installation(batch.installation_id, changes)

        # Downstream work is gated on completion, not on new events
        if status == BatchStatus.COMPLETED:
            installation = self.store.get_installation(batch.installation_id)
            self.scheduler.schedule_after(
                0,
                self.config.downstream_handler,
                {
                    "user_id": installation.linked_user_id if installation else None,
                    "installation_id": batch.installation_id,
                    "batch_id": batch.id,
                },
            )

    def finalize_complete_batches(self) -> dict[str, int]:
        """Sweep every running batch through maybe_finalize()."""
        running = self.store.query(SYNC_BATCHES, status=BatchStatus.RUNNING)
        finalized = 0
        for record in running:
            if self.maybe_finalize(record["id"]).finalized:
                finalized += 1
        if finalized:
            logger.info(
                "complete_batches_finalized",
                extra={"finalized": finalized, "checked": len(running)},
            )
        return {"checked": len(running), "finalized": finalized}

    def get_progress(self, batch_id: str) -> BatchProgress | None:
        """Live progress of a batch, recomputed from its jobs."""
        batch = self.store.get_batch(batch_id)
        if batch is None:
            return None
        jobs = self.store.jobs_for_batch(batch_id)
        state = self.compute_state(batch_id)
        done = state.completed + state.failed
        current = next((j.repo_full_name for j in jobs if j.status == JobStatus.RUNNING), None)
        return BatchProgress(
            batch_id=batch_id,
            status=batch.status,
            total_repos=batch.total_repos,
            completed_repos=state.completed,
            failed_repos=state.failed,
            events_ingested=state.events_ingested,
            progress_percent=round(done / batch.total_repos * 100) if batch.total_repos else 100,
            current_repo=current,
        )

    def get_active_batch(self, installation_id: int) -> SyncBatch | None:
        records = self.store.query(
            SYNC_BATCHES, installation_id=installation_id, status=BatchStatus.RUNNING
        )
        return SyncBatch.from_dict(records[0]) if records else None

    def get_latest_batch(self, installation_id: int) -> SyncBatch | None:
        records = self.store.query(SYNC_BATCHES, installation_id=installation_id)
        if not records:
            return None
        return SyncBatch.from_dict(max(records, key=lambda r: r.get("created_at") or 0))
