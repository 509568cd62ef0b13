"""Ingestion job state machine: one resumable job per repository.

    pending -> running -> completed | failed | blocked
    blocked -> running   (scheduled resume)

Each invocation of process_job() loads the job, short-circuits when it is
already terminal or still blocked, claims it with a conditional write, and
otherwise walks the repository's activity one page at a time: the issue/PR
timeline first, then the commit listing. The cursor and ETag are persisted
after every page, so a job blocked on the rate limit resumes exactly where
it stopped. Re-processing an overlapping page is harmless because
persistence is deduplicated by content hash.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..config import SyncConfig, get_config
from ..connectors.github.canonicalize import (
    CanonicalizeInput,
    canonicalize,
    commit_from_api,
)
from ..connectors.github.client import GitHubClient, RateLimitExceeded
from ..connectors.github.timeline import PageResult, TimelineFetcher, should_pause
from ..facts import FactContext, FactService
from ..metrics import job_duration_seconds, rate_limit_remaining, sync_jobs_total
from ..models import (
    IngestionJob,
    Installation,
    JobStatus,
    PersistStatus,
    SyncStatus,
    now_ms,
)
from ..scheduler import PROCESS_SYNC_JOB, Scheduler
from ..storage import INGESTION_JOBS, SyncStore
from .policy import calculate_sync_since

__all__ = [
    "COMMITS_PHASE",
    "TIMELINE_PHASE",
    "IngestionJobRunner",
    "JobResult",
    "format_cursor",
    "parse_cursor",
    "phase_progress",
]

logger = logging.getLogger("gitpulse.sync.job")

TIMELINE_PHASE = "timeline"
COMMITS_PHASE = "commits"

ZOMBIE_ERROR = "Job timed out (zombie detection)"

TokenProvider = Callable[[int], Awaitable[str]]


@dataclass
class JobResult:
    """Outcome of one process_job() invocation."""

    job_id: str
    status: JobStatus | None
    events_ingested: int = 0
    blocked_until: int | None = None
    error: str | None = None
    skipped: bool = False
    duration_ms: int | None = None


def parse_cursor(cursor: str | None) -> tuple[str, str | None]:
    """Split a job cursor into (phase, page cursor).

    >>> parse_cursor("commits:3")
    ('commits', '3')
    >>> parse_cursor(None)
    ('timeline', None)
    """
    if not cursor:
        return TIMELINE_PHASE, None
    phase, _, page = cursor.partition(":")
    if phase not in (TIMELINE_PHASE, COMMITS_PHASE):
        return TIMELINE_PHASE, None
    return phase, page or None


def format_cursor(phase: str, page: str | None) -> str:
    return f"{phase}:{page or 1}"


def _page_index(page: str | None) -> int:
    try:
        return max(int(page or 1), 1)
    except ValueError:
        return 1


def phase_progress(phase: str, page: int, total_count: int | None = None) -> int:
    """Progress after finishing ``page`` of ``phase``; never reaches 100.

    The timeline phase spans 0-50 (scaled by the search total when known),
    the commit phase 50-99.
    """
    if phase == TIMELINE_PHASE:
        if total_count:
            capped = min(total_count, TimelineFetcher.SEARCH_MAX_RESULTS)
            fetched = min(page * TimelineFetcher.SEARCH_PER_PAGE, capped)
            return min(50, round(fetched / capped * 50))
        return min(49, page * 5)
    return min(99, 50 + page * 10)


class IngestionJobRunner:
    """Drive ingestion jobs against the GitHub API.

    Args:
        store: Durable store
        scheduler: Used to schedule the resume of blocked jobs
        token_provider: ``async (installation_id) -> token`` (GitHubAppAuth.get_token)
        fact_service: Persists canonical events
        config: SyncConfig (budget floor, blocked delay, zombie timeout)
        client_factory: Builds a GitHubClient for a token
        fetcher_factory: Builds a TimelineFetcher around a client
        clock: Epoch-ms clock
    """

    def __init__(
        self,
        store: SyncStore,
        scheduler: Scheduler,
        token_provider: TokenProvider,
        fact_service: FactService | None = None,
        config: SyncConfig | None = None,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
        fetcher_factory: Callable[[GitHubClient], TimelineFetcher] = TimelineFetcher,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.token_provider = token_provider
        self.fact_service = fact_service or FactService(store, clock=clock)
        self.config = config or get_config()
        self._client_factory = client_factory
        self._fetcher_factory = fetcher_factory
        self._clock = clock

    async def handle(self, args: dict[str, Any]) -> JobResult:
        """Scheduler entry point for PROCESS_SYNC_JOB."""
        return await self.process_job(args["job_id"])

    async def process_job(self, job_id: str) -> JobResult:
        """Run one invocation of the job. Safe to re-invoke with the same id."""
        started = time.monotonic()
        result = await self._process(job_id)
        elapsed = time.monotonic() - started
        result.duration_ms = int(elapsed * 1000)
        if not result.skipped:
            job_duration_seconds.observe(elapsed)
        sync_jobs_total.labels(
            status="skipped" if result.skipped else (result.status or JobStatus.FAILED).value
        ).inc()
        return result

    async def _process(self, job_id: str) -> JobResult:
        job = self.store.get_job(job_id)
        if job is None:
            logger.error("job_not_found", extra={"job_id": job_id})
            return JobResult(job_id, None, error="Job not found", skipped=True)

        if job.status.is_terminal:
            logger.info(
                "job_already_finished",
                extra={"job_id": job_id, "status": job.status.value},
            )
            return JobResult(job_id, job.status, job.events_ingested, skipped=True)

        blocked_until = job.blocked_until if job.status == JobStatus.BLOCKED else None
        if blocked_until and blocked_until > self._clock():
            logger.info(
                "job_still_blocked",
                extra={"job_id": job_id, "blocked_until": blocked_until},
            )
            return JobResult(
                job_id,
                job.status,
                job.events_ingested,
                blocked_until=blocked_until,
                skipped=True,
            )

        installation = self.store.get_installation(job.installation_id)
        if installation is None:
            return self._fail(job, "Installation not found", propagate=False)

        if not self._mark_running(job, installation):
            logger.info("job_claimed_elsewhere", extra={"job_id": job_id})
            return JobResult(job_id, None, job.events_ingested, skipped=True)

        try:
            return await self._run(job, installation)
        except Exception as e:
            logger.error(
                "job_processing_failed",
                extra={
                    "job_id": job.id,
                    "repo": job.repo_full_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return self._fail(job, str(e) or type(e).__name__)

    def _mark_running(self, job: IngestionJob, installation: Installation) -> bool:
        """Claim the job; False when another invocation changed it first."""
        now = self._clock()
        won = self.store.patch(
            INGESTION_JOBS,
            job.id,
            {
                "status": JobStatus.RUNNING,
                "blocked_until": None,
                "started_at": job.started_at or now,
                "last_updated_at": now,
            },
            expect={"status": job.status, "last_updated_at": job.last_updated_at},
        )
        if not won:
            return False
        if installation.sync_status == SyncStatus.RATE_LIMITED:
            self.store.patch_installation(
                installation.installation_id,
                {"sync_status": SyncStatus.SYNCING, "updated_at": now},
            )
        return True

    async def _run(self, job: IngestionJob, installation: Installation) -> JobResult:
        token = await self.token_provider(job.installation_id)
        since = job.since if job.since is not None else calculate_sync_since(None, self._clock())

        async with self._client_factory(
            token, base_url=self.config.github_api_url, wait_on_rate_limit=False
        ) as client:
            try:
                repository = await client.get_repository(job.repo_full_name)
            except RateLimitExceeded as e:
                return self._block(job, e.reset_ms, job.events_ingested, 0)

            fetcher = self._fetcher_factory(client)
            context = FactContext(job.installation_id, repository, source="job")
            phase, page = parse_cursor(job.cursor)
            etag = job.etag
            events = job.events_ingested or 0
            progress = job.progress or 0

            logger.info(
                "job_started",
                extra={
                    "job_id": job.id,
                    "repo": job.repo_full_name,
                    "phase": phase,
                    "page": page,
                    "since": since,
                    "until": job.until,
                },
            )

            done = False
            while True:
                if phase == TIMELINE_PHASE:
                    result = await fetcher.fetch_page(
                        job.repo_full_name, since, page, etag, job.until
                    )
                else:
                    result = await fetcher.fetch_commit_page(
                        job.repo_full_name, since, page, etag, job.until
                    )

                if not result.rate_limited:
                    events += self._persist_page(phase, result, repository, context)
                    if result.has_next_page:
                        page, etag = result.end_cursor, result.etag
                        progress = max(
                            progress,
                            phase_progress(phase, _page_index(page) - 1, result.total_count),
                        )
                    elif phase == TIMELINE_PHASE:
                        phase, page, etag = COMMITS_PHASE, None, None
                        progress = max(progress, 50)
                    else:
                        done = True

                self._save_page(job, installation, phase, page, etag, events, progress, result)
                if done:
                    return self._complete(job, events)

                if result.rate_limited or should_pause(
                    result.rate_limit.remaining, self.config.min_backfill_budget
                ):
                    return self._block(
                        job, result.rate_limit.reset, events, result.rate_limit.remaining
                    )

    def _persist_page(
        self,
        phase: str,
        result: PageResult,
        repository: dict[str, Any],
        context: FactContext,
    ) -> int:
        inserted = 0
        for node in result.nodes:
            if phase == TIMELINE_PHASE:
                source = CanonicalizeInput.timeline(node, repository.get("full_name") or "")
            else:
                source = CanonicalizeInput.commit(commit_from_api(node), repository)
            event = canonicalize(source)
            if event is None:
                continue
            if self.fact_service.persist(event, context).status is PersistStatus.INSERTED:
                inserted += 1
        return inserted

    def _save_page(
        self,
        job: IngestionJob,
        installation: Installation,
        phase: str,
        page: str | None,
        etag: str | None,
        events: int,
        progress: int,
        result: PageResult,
    ) -> None:
        now = self._clock()
        changes: dict[str, Any] = {
            "cursor": format_cursor(phase, page),
            "etag": etag,
            "events_ingested": events,
            "progress": min(progress, 99),
            "last_updated_at": now,
        }
        snapshot = result.rate_limit
        if snapshot.remaining is not None:
            changes["rate_limit_remaining"] = snapshot.remaining
            changes["rate_limit_reset"] = snapshot.reset
            self.store.patch_installation(
                installation.installation_id,
                {
                    "rate_limit_remaining": snapshot.remaining,
                    "rate_limit_reset": snapshot.reset,
                    "updated_at": now,
                },
            )
            rate_limit_remaining.labels(installation=str(installation.installation_id)).set(
                snapshot.remaining
            )
        self.store.patch(INGESTION_JOBS, job.id, changes)

    def _block(
        self,
        job: IngestionJob,
        reset: int | None,
        events: int,
        remaining: int | None,
    ) -> JobResult:
        now = self._clock()
        blocked_until = reset if reset and reset > now else now + self.config.default_blocked_delay_ms
        self.store.patch(
            INGESTION_JOBS,
            job.id,
            {
                "status": JobStatus.BLOCKED,
                "blocked_until": blocked_until,
                "rate_limit_remaining": remaining,
                "rate_limit_reset": blocked_until,
                "last_updated_at": now,
            },
        )
        self.store.patch_installation(
            job.installation_id,
            {
                "sync_status": SyncStatus.RATE_LIMITED,
                "rate_limit_remaining": remaining,
                "rate_limit_reset": blocked_until,
                "updated_at": now,
            },
        )
        self.scheduler.schedule_at(blocked_until, PROCESS_SYNC_JOB, {"job_id": job.id})
        logger.info(
            "job_blocked",
            extra={
                "job_id": job.id,
                "repo": job.repo_full_name,
                "blocked_until": blocked_until,
                "remaining": remaining,
            },
        )
        return JobResult(job.id, JobStatus.BLOCKED, events, blocked_until=blocked_until)

    def _complete(self, job: IngestionJob, events: int) -> JobResult:
        now = self._clock()
        self.store.patch(
            INGESTION_JOBS,
            job.id,
            {
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "events_ingested": events,
                "cursor": None,
                "etag": None,
                "completed_at": now,
                "last_updated_at": now,
            },
        )
        logger.info(
            "job_completed",
            extra={"job_id": job.id, "repo": job.repo_full_name, "events_ingested": events},
        )
        return JobResult(job.id, JobStatus.COMPLETED, events)

    def _fail(self, job: IngestionJob, message: str, propagate: bool = True) -> JobResult:
        now = self._clock()
        self.store.patch(
            INGESTION_JOBS,
            job.id,
            {
                "status": JobStatus.FAILED,
                "error_message": message,
                "completed_at": now,
                "last_updated_at": now,
            },
        )
        if propagate:
            self.store.patch_installation(
                job.installation_id,
                {
                    "sync_status": SyncStatus.ERROR,
                    "last_sync_error": message,
                    "updated_at": now,
                },
            )
        logger.error(
            "job_failed",
            extra={"job_id": job.id, "repo": job.repo_full_name, "error": message},
        )
        return JobResult(job.id, JobStatus.FAILED, job.events_ingested, error=message)

    # --- Sweeps ---

    def resume_stuck_blocked_jobs(self, now: int | None = None) -> int:
        """Re-schedule blocked jobs still blocked well past their resume time.

        Covers resumes lost by the scheduler. A job is stuck only once
        ``blocked_until`` is more than ``blocked_resume_grace_ms`` in the past,
        so a resume that is merely due is left to its own scheduled call.
        Returns the number scheduled.
        """
        now = self._clock() if now is None else now
        cutoff = now - self.config.blocked_resume_grace_ms
        resumed = 0
        for job in self.store.jobs_with_status(JobStatus.BLOCKED):
            if job.blocked_until is None or job.blocked_until >= cutoff:
                continue
            self.scheduler.schedule_after(0, PROCESS_SYNC_JOB, {"job_id": job.id})
            resumed += 1
        if resumed:
            logger.info("blocked_jobs_resumed", extra={"count": resumed})
        return resumed

    def fail_zombie_jobs(self, now: int | None = None) -> int:
        """Fail running jobs with no update for ``zombie_job_timeout_ms``."""
        now = self._clock() if now is None else now
        cutoff = now - self.config.zombie_job_timeout_ms
        failed = 0
        for job in self.store.jobs_with_status(JobStatus.RUNNING):
            last_seen = job.last_updated_at or job.started_at or job.created_at or 0
            if last_seen >= cutoff:
                continue
            won = self.store.patch(
                INGESTION_JOBS,
                job.id,
                {
                    "status": JobStatus.FAILED,
                    "error_message": ZOMBIE_ERROR,
                    "completed_at": now,
                    "last_updated_at": now,
                },
                expect={"status": JobStatus.RUNNING, "last_updated_at": job.last_updated_at},
            )
            if won:
                failed += 1
                logger.warning(
                    "zombie_job_failed",
                    extra={"job_id": job.id, "repo": job.repo_full_name, "last_seen": last_seen},
                )
        return failed
