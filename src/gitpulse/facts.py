"""Idempotent persistence of canonical events.

FactService.persist() is the single write path for events, used by both
ingestion jobs and webhook processing:

1. Refuse (skipped) when the repository context or actor is unusable;
   nothing is written in that case.
2. Upsert the actor and repository dimension records by natural id.
3. Look the event up by content hash; an existing row is a duplicate.
4. Insert the event and enqueue embedding work keyed by the same hash.

Concurrent persists of the same event converge on one row: the store
rejects the second insert with DuplicateKeyError, which is reported as a
duplicate.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .content_hash import compute_content_hash
from .metrics import events_persisted_total
from .models import CanonicalEvent, PersistResult, PersistStatus, now_ms
from .storage import (
    ACTORS,
    EMBEDDING_QUEUE,
    EVENTS,
    REPOS,
    DuplicateKeyError,
    SyncStore,
)

__all__ = ["EMBEDDING_MAX_ATTEMPTS", "FactContext", "FactService", "actor_key"]

logger = logging.getLogger("gitpulse.facts")

EMBEDDING_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class FactContext:
    """Where an event came from.

    Attributes:
        installation_id: Owning installation, when known
        repository: GitHub repository payload (id, node_id, full_name, ...)
        source: "job" or "webhook", for metrics
    """

    installation_id: int | None = None
    repository: dict[str, Any] | None = None
    source: str = "job"


def actor_key(event: CanonicalEvent) -> str:
    """Natural key for an actor: the GitHub user id, else the login."""
    if event.actor.gh_id is not None:
        return f"gh:{event.actor.gh_id}"
    return f"login:{event.actor.login.lower()}"


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


class FactService:
    """Persist canonical events exactly once per content hash."""

    def __init__(self, store: SyncStore, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self._clock = clock

    def persist(self, event: CanonicalEvent, context: FactContext) -> PersistResult:
        """Persist one canonical event.

        Args:
            event: Canonicalized event
            context: Repository payload and installation of the event

        Returns:
            PersistResult with status inserted, duplicate or skipped
        """
        repo = context.repository
        if not repo or not repo.get("full_name") or not isinstance(repo.get("id"), int):
            return self._done(
                PersistResult(PersistStatus.SKIPPED, reason="missing_repo_context"),
                context,
            )
        if not event.actor.login:
            return self._done(
                PersistResult(PersistStatus.SKIPPED, reason="missing_actor"), context
            )

        now = self._clock()
        actor_id = self._upsert_actor(event, now)
        self._upsert_repo(repo, context.installation_id, now)

        content_hash = compute_content_hash(
            event.canonical_text, event.source_url, event.metrics_dict
        )
        existing = self.store.get_by(EVENTS, "content_hash", content_hash)
        if existing is not None:
            return self._done(
                PersistResult(PersistStatus.DUPLICATE, existing["id"], content_hash),
                context,
            )

        record = {
            "type": event.type,
            "installation_id": context.installation_id,
            "repo_full_name": repo["full_name"],
            "repo_gh_id": repo["id"],
            "actor_id": actor_id,
            "actor_login": event.actor.login,
            "timestamp": event.timestamp,
            "canonical_text": event.canonical_text,
            "source_url": event.source_url,
            "metrics": event.metrics_dict,
            "metadata": event.metadata,
            "gh_id": event.gh_id,
            "gh_node_id": event.gh_node_id,
            "content_hash": content_hash,
            "created_at": now,
        }
        try:
            event_id = self.store.insert(EVENTS, record)
        except DuplicateKeyError as e:
            # Lost a race with a concurrent persist of the same event
            return self._done(
                PersistResult(PersistStatus.DUPLICATE, e.existing_id, content_hash),
                context,
            )

        self.enqueue_embedding(content_hash, event_id)
        return self._done(
            PersistResult(PersistStatus.INSERTED, event_id, content_hash), context
        )

    def enqueue_embedding(self, content_hash: str, event_id: str) -> str:
        """Queue embedding generation for ``content_hash``.

        Idempotent by hash. A previously failed job is reset to pending.

        Returns:
            Embedding queue record id
        """
        existing = self.store.get_by(EMBEDDING_QUEUE, "content_hash", content_hash)
        if existing is None:
            try:
                return self.store.insert(
                    EMBEDDING_QUEUE,
                    {
                        "content_hash": content_hash,
                        "event_id": event_id,
                        "status": "pending",
                        "attempts": 0,
                        "max_attempts": EMBEDDING_MAX_ATTEMPTS,
                        "created_at": self._clock(),
                    },
                )
            except DuplicateKeyError as e:
                return e.existing_id

        if existing.get("status") == "failed":
            self.store.patch(
                EMBEDDING_QUEUE,
                existing["id"],
                {"status": "pending", "attempts": 0, "error_message": None},
            )
            logger.info(
                "embedding_job_reset",
                extra={"content_hash": content_hash, "queue_id": existing["id"]},
            )
        return existing["id"]

    # --- Dimensions ---

    def _upsert_actor(self, event: CanonicalEvent, now: int) -> str:
        key = actor_key(event)
        actor = event.actor
        return self.store.upsert_by(
            ACTORS,
            "actor_key",
            key,
            _compact(
                {
                    "gh_id": actor.gh_id,
                    "login": actor.login,
                    "node_id": actor.node_id,
                    "name": actor.name,
                    "avatar_url": actor.avatar_url,
                    "updated_at": now,
                }
            ),
        )

    def _upsert_repo(self, repo: dict[str, Any], installation_id: int | None, now: int) -> str:
        owner = repo.get("owner") or {}
        return self.store.upsert_by(
            REPOS,
            "full_name",
            repo["full_name"],
            _compact(
                {
                    "gh_id": repo.get("id"),
                    "node_id": repo.get("node_id"),
                    "owner": owner.get("login"),
                    "name": repo.get("name"),
                    "private": repo.get("private"),
                    "fork": repo.get("fork"),
                    "archived": repo.get("archived"),
                    "html_url": repo.get("html_url"),
                    "installation_id": installation_id,
                    "updated_at": now,
                }
            ),
        )

    @staticmethod
    def _done(result: PersistResult, context: FactContext) -> PersistResult:
        events_persisted_total.labels(status=result.status.value, source=context.source).inc()
        if result.status is PersistStatus.SKIPPED:
            logger.debug("event_skipped", extra={"reason": result.reason})
        return result
