"""Data models for installations, sync batches, ingestion jobs, webhook
envelopes and canonical events.

Records are stored as plain dicts (see storage.py). Each model converts to
and from that representation with ``to_dict()`` / ``from_dict()``; enum
fields are stored by value.
"""

import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

__all__ = [
    "BatchStatus",
    "CanonicalActor",
    "CanonicalEvent",
    "CanonicalMetrics",
    "CanonicalRepo",
    "EventType",
    "IngestionJob",
    "Installation",
    "JobStatus",
    "PersistResult",
    "PersistStatus",
    "SyncBatch",
    "SyncStatus",
    "SyncTrigger",
    "WebhookEnvelope",
    "WebhookStatus",
    "now_ms",
]


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class SyncStatus(str, Enum):
    """Installation-level sync status."""

    IDLE = "idle"
    SYNCING = "syncing"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


class SyncTrigger(str, Enum):
    """What asked for a sync."""

    MANUAL = "manual"
    CRON = "cron"
    WEBHOOK = "webhook"
    MAINTENANCE = "maintenance"
    RECOVERY = "recovery"


class BatchStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Ingestion job lifecycle.

    pending -> running -> {completed | failed | blocked}; blocked -> running.
    """

    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    """Canonical event types."""

    PR_OPENED = "pr_opened"
    PR_CLOSED = "pr_closed"
    PR_MERGED = "pr_merged"
    REVIEW_SUBMITTED = "review_submitted"
    COMMIT = "commit"
    ISSUE_OPENED = "issue_opened"
    ISSUE_CLOSED = "issue_closed"
    ISSUE_COMMENT = "issue_comment"


class PersistStatus(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class _Record:
    """Shared dict conversion for stored dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = list(value)
            elif isinstance(value, dict):
                value = dict(value)
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Installation(_Record):
    """A linked GitHub App installation and its sync state.

    Attributes:
        id: Store record id
        installation_id: GitHub App installation id (natural key)
        account_login: Owner account of the installation
        linked_user_id: Id of the application user the installation is linked to
        repositories: Repository full names (owner/name) selected for sync
        sync_status: idle, syncing, rate_limited or error
        last_synced_at: Epoch ms of the last successful batch finalize
        last_manual_sync_at: Epoch ms of the last admitted manual sync
        rate_limit_remaining: Last X-RateLimit-Remaining seen for this credential
        rate_limit_reset: Epoch ms when the rate-limit window resets
        next_sync_at: Earliest time a blocked sync may be retried
        last_sync_error: Operator-visible message for the last failure
        cursor: Resumable pagination cursor for installation-wide listings
        etag: ETag paired with ``cursor``
    """

    id: str
    installation_id: int
    account_login: str = ""
    linked_user_id: str | None = None
    repositories: list[str] = field(default_factory=list)
    sync_status: SyncStatus = SyncStatus.IDLE
    last_synced_at: int | None = None
    last_manual_sync_at: int | None = None
    rate_limit_remaining: int | None = None
    rate_limit_reset: int | None = None
    next_sync_at: int | None = None
    last_sync_error: str | None = None
    cursor: str | None = None
    etag: str | None = None
    created_at: int | None = None
    updated_at: int | None = None

    def __post_init__(self) -> None:
        self.sync_status = SyncStatus(self.sync_status)


@dataclass
class SyncBatch(_Record):
    """The set of per-repository jobs created by one sync request.

    Counters are written only by finalize, from a recomputation over the
    batch's jobs.
    """

    id: str
    installation_id: int
    trigger: SyncTrigger
    status: BatchStatus = BatchStatus.RUNNING
    total_repos: int = 0
    completed_repos: int = 0
    failed_repos: int = 0
    events_ingested: int = 0
    since: int | None = None
    until: int | None = None
    created_at: int | None = None
    completed_at: int | None = None

    def __post_init__(self) -> None:
        self.trigger = SyncTrigger(self.trigger)
        self.status = BatchStatus(self.status)


@dataclass
class IngestionJob(_Record):
    """Resumable ingestion of one repository.

    ``cursor`` encodes the fetch phase and page (``timeline:3``,
    ``commits:2``). ``etag`` is the one returned with the page that produced
    ``cursor``, so page N's ETag is saved next to the cursor for page N+1
    and sent with that request. Both reset to None when the phase changes.
    """

    id: str
    batch_id: str
    installation_id: int
    repo_full_name: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    cursor: str | None = None
    etag: str | None = None
    events_ingested: int = 0
    blocked_until: int | None = None
    since: int | None = None
    until: int | None = None
    rate_limit_remaining: int | None = None
    rate_limit_reset: int | None = None
    error_message: str | None = None
    created_at: int | None = None
    started_at: int | None = None
    last_updated_at: int | None = None
    completed_at: int | None = None

    def __post_init__(self) -> None:
        self.status = JobStatus(self.status)


@dataclass
class WebhookEnvelope(_Record):
    """A raw webhook delivery awaiting (or done with) processing."""

    id: str
    delivery_id: str
    event_kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    installation_id: int | None = None
    status: WebhookStatus = WebhookStatus.PENDING
    retry_count: int = 0
    error_message: str | None = None
    received_at: int | None = None
    processing_started_at: int | None = None
    processed_at: int | None = None

    def __post_init__(self) -> None:
        self.status = WebhookStatus(self.status)


# =============================================================================
# Canonical events (produced transiently, persisted by the fact service)
# =============================================================================


@dataclass
class CanonicalActor:
    login: str
    gh_id: int | None = None
    node_id: str | None = None
    name: str | None = None
    avatar_url: str | None = None


@dataclass
class CanonicalRepo:
    full_name: str
    gh_id: int | None = None
    node_id: str | None = None


@dataclass
class CanonicalMetrics:
    additions: int | None = None
    deletions: int | None = None
    files_changed: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Metrics as a dict; unset values are omitted."""
        result = {
            "additions": self.additions,
            "deletions": self.deletions,
            "files_changed": self.files_changed,
        }
        return {k: v for k, v in result.items() if v is not None}


@dataclass
class CanonicalEvent:
    """The single normalized shape every source payload is converted into.

    Attributes:
        type: Canonical event type
        repo: Repository the event belongs to
        actor: Who did it
        timestamp: Epoch ms
        canonical_text: Display text, at most 512 characters
        source_url: Link back to GitHub
        metrics: Optional diff statistics
        metadata: Type-specific extra fields
        gh_id: Source object id (PR id, review id, commit sha, ...)
        gh_node_id: Source GraphQL node id, when known
    """

    type: EventType
    repo: CanonicalRepo
    actor: CanonicalActor
    timestamp: int
    canonical_text: str
    source_url: str
    metrics: CanonicalMetrics | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    gh_id: str | None = None
    gh_node_id: str | None = None

    @property
    def metrics_dict(self) -> dict[str, Any] | None:
        return self.metrics.to_dict() if self.metrics is not None else None


@dataclass
class PersistResult:
    """Outcome of FactService.persist()."""

    status: PersistStatus
    event_id: str | None = None
    content_hash: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "event_id": self.event_id,
            "content_hash": self.content_hash,
            "reason": self.reason,
        }
