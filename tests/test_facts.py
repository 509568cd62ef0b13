"""Tests for idempotent canonical event persistence."""

import pytest

from fakes import INSTALLATION_ID, repository_payload
from gitpulse.content_hash import compute_content_hash
from gitpulse.facts import FactContext, FactService, actor_key
from gitpulse.models import (
    CanonicalActor,
    CanonicalEvent,
    CanonicalMetrics,
    CanonicalRepo,
    EventType,
    PersistStatus,
)
from gitpulse.storage import ACTORS, EMBEDDING_QUEUE, EVENTS, REPOS


def _event(text="PR #1 – Add retries opened by octo", login="octo", gh_id=7, **overrides):
    values = {
        "type": EventType.PR_OPENED,
        "repo": CanonicalRepo(full_name="acme/api", gh_id=101),
        "actor": CanonicalActor(login=login, gh_id=gh_id),
        "timestamp": 1_759_900_000_000,
        "canonical_text": text,
        "source_url": "https://github.com/acme/api/pull/1",
        "metrics": CanonicalMetrics(additions=10, deletions=2),
        "gh_id": "555",
    }
    values.update(overrides)
    return CanonicalEvent(**values)


@pytest.fixture
def facts(store, clock):
    return FactService(store, clock)


@pytest.fixture
def context():
    return FactContext(INSTALLATION_ID, repository_payload(), source="job")


class TestPersist:
    """Test insert, duplicate and skip outcomes."""

    def test_insert_then_duplicate(self, facts, context, store):
        first = facts.persist(_event(), context)
        second = facts.persist(_event(), context)

        assert first.status == PersistStatus.INSERTED
        assert second.status == PersistStatus.DUPLICATE
        assert second.event_id == first.event_id
        assert second.content_hash == first.content_hash
        assert store.count(EVENTS) == 1

    def test_event_record_shape(self, facts, context, store):
        result = facts.persist(_event(), context)

        record = store.get(EVENTS, result.event_id)
        assert record["type"] == "pr_opened"
        assert record["repo_full_name"] == "acme/api"
        assert record["repo_gh_id"] == 101
        assert record["installation_id"] == INSTALLATION_ID
        assert record["actor_login"] == "octo"
        assert record["metrics"] == {"additions": 10, "deletions": 2}
        assert record["content_hash"] == compute_content_hash(
            "PR #1 – Add retries opened by octo",
            "https://github.com/acme/api/pull/1",
            {"additions": 10, "deletions": 2},
        )

    def test_hash_ignores_timestamp_and_type(self, facts, context, store):
        """The same activity seen through two sources dedups."""
        facts.persist(_event(), context)

        again = facts.persist(
            _event(type=EventType.PR_CLOSED, timestamp=1, gh_node_id="PR_x"), context
        )

        assert again.status == PersistStatus.DUPLICATE
        assert store.count(EVENTS) == 1

    def test_missing_repository_context_skips(self, facts, store):
        result = facts.persist(_event(), FactContext(INSTALLATION_ID, None))

        assert result.status == PersistStatus.SKIPPED
        assert result.reason == "missing_repo_context"
        assert store.count(EVENTS) == 0
        assert store.count(ACTORS) == 0

    def test_non_numeric_repository_id_skips(self, facts):
        repository = {**repository_payload(), "id": "101"}

        result = facts.persist(_event(), FactContext(INSTALLATION_ID, repository))

        assert result.reason == "missing_repo_context"

    def test_missing_actor_skips(self, facts, context, store):
        result = facts.persist(_event(login=""), context)

        assert result.status == PersistStatus.SKIPPED
        assert result.reason == "missing_actor"
        assert store.count(REPOS) == 0

    def test_concurrent_insert_reports_duplicate(self, facts, context, store, monkeypatch):
        """Losing the insert race yields the winner's id, not an error."""
        winner = facts.persist(_event(), context)
        original = store.get_by

        def stale_get_by(table, field, value):
            if table == EVENTS:
                return None
            return original(table, field, value)

        monkeypatch.setattr(store, "get_by", stale_get_by)

        result = facts.persist(_event(), context)

        assert result.status == PersistStatus.DUPLICATE
        assert result.event_id == winner.event_id


class TestDimensions:
    """Test actor and repository upserts."""

    def test_actor_and_repo_upserted_once(self, facts, context, store):
        facts.persist(_event(text="one"), context)
        facts.persist(_event(text="two"), context)

        assert store.count(ACTORS) == 1
        assert store.count(REPOS) == 1
        actor = store.get_by(ACTORS, "actor_key", "gh:7")
        assert actor["login"] == "octo"
        repo = store.get_by(REPOS, "full_name", "acme/api")
        assert repo["gh_id"] == 101
        assert repo["owner"] == "acme"
        assert repo["installation_id"] == INSTALLATION_ID

    def test_actor_key_falls_back_to_login(self):
        assert actor_key(_event(gh_id=None, login="Octo")) == "login:octo"
        assert actor_key(_event(gh_id=7)) == "gh:7"


class TestEmbeddingQueue:
    """Test embedding work enqueued alongside inserts."""

    def test_one_pending_row_per_hash(self, facts, context, store):
        result = facts.persist(_event(), context)
        facts.persist(_event(), context)

        assert store.count(EMBEDDING_QUEUE) == 1
        row = store.get_by(EMBEDDING_QUEUE, "content_hash", result.content_hash)
        assert row["status"] == "pending"
        assert row["event_id"] == result.event_id

    def test_failed_row_is_reset(self, facts, context, store):
        result = facts.persist(_event(), context)
        row = store.get_by(EMBEDDING_QUEUE, "content_hash", result.content_hash)
        store.patch(EMBEDDING_QUEUE, row["id"], {"status": "failed", "attempts": 5})

        queue_id = facts.enqueue_embedding(result.content_hash, result.event_id)

        assert queue_id == row["id"]
        reset = store.get(EMBEDDING_QUEUE, row["id"])
        assert (reset["status"], reset["attempts"]) == ("pending", 0)
