"""Tests for the in-memory store contract."""

import pytest

from gitpulse.models import JobStatus, SyncStatus
from gitpulse.storage import (
    EVENTS,
    INGESTION_JOBS,
    INSTALLATIONS,
    REPOS,
    WEBHOOK_EVENTS,
    DuplicateKeyError,
    InMemoryStore,
    StoreError,
)


@pytest.fixture
def store():
    return InMemoryStore()


class TestPrimitives:
    """Test get, get_by, query, insert and patch."""

    def test_insert_assigns_id(self, store):
        record_id = store.insert(EVENTS, {"content_hash": "h1", "canonical_text": "x"})

        assert store.get(EVENTS, record_id) == {
            "id": record_id,
            "content_hash": "h1",
            "canonical_text": "x",
        }

    def test_insert_keeps_given_id(self, store):
        assert store.insert(EVENTS, {"id": "e-1", "content_hash": "h1"}) == "e-1"

    def test_unique_key_conflict(self, store):
        first = store.insert(WEBHOOK_EVENTS, {"delivery_id": "d-1"})

        with pytest.raises(DuplicateKeyError) as exc_info:
            store.insert(WEBHOOK_EVENTS, {"delivery_id": "d-1"})

        assert exc_info.value.existing_id == first
        assert exc_info.value.field == "delivery_id"
        assert store.count(WEBHOOK_EVENTS) == 1

    def test_duplicate_id_conflict(self, store):
        store.insert(INGESTION_JOBS, {"id": "j-1"})

        with pytest.raises(DuplicateKeyError):
            store.insert(INGESTION_JOBS, {"id": "j-1"})

    def test_missing_unique_value_not_checked(self, store):
        store.insert(EVENTS, {"content_hash": None})
        store.insert(EVENTS, {"content_hash": None})

        assert store.count(EVENTS) == 2

    def test_enums_stored_by_value(self, store):
        record_id = store.insert(INGESTION_JOBS, {"status": JobStatus.RUNNING})

        assert store.get(INGESTION_JOBS, record_id)["status"] == "running"
        assert [r["id"] for r in store.query(INGESTION_JOBS, status=JobStatus.RUNNING)] == [
            record_id
        ]

    def test_query_matches_all_fields(self, store):
        store.insert(INGESTION_JOBS, {"batch_id": "b1", "status": "pending"})
        wanted = store.insert(INGESTION_JOBS, {"batch_id": "b1", "status": "blocked"})
        store.insert(INGESTION_JOBS, {"batch_id": "b2", "status": "blocked"})

        assert [r["id"] for r in store.query(INGESTION_JOBS, batch_id="b1", status="blocked")] == [
            wanted
        ]
        assert len(store.query(INGESTION_JOBS)) == 3

    def test_get_by_and_missing(self, store):
        store.insert(REPOS, {"full_name": "acme/api"})

        assert store.get_by(REPOS, "full_name", "acme/api")["full_name"] == "acme/api"
        assert store.get_by(REPOS, "full_name", "acme/web") is None
        assert store.get(REPOS, "nope") is None

    def test_records_are_copies(self, store):
        record_id = store.insert(INSTALLATIONS, {"repositories": ["acme/api"]})

        store.get(INSTALLATIONS, record_id)["repositories"].append("acme/web")

        assert store.get(INSTALLATIONS, record_id)["repositories"] == ["acme/api"]


class TestConditionalPatch:
    """Test compare-and-set writes."""

    def test_patch_applies(self, store):
        record_id = store.insert(INGESTION_JOBS, {"status": "pending"})

        assert store.patch(INGESTION_JOBS, record_id, {"status": "running"}) is True
        assert store.get(INGESTION_JOBS, record_id)["status"] == "running"

    def test_expectation_met(self, store):
        record_id = store.insert(INGESTION_JOBS, {"status": "pending"})

        applied = store.patch(
            INGESTION_JOBS, record_id, {"status": "running"}, expect={"status": JobStatus.PENDING}
        )

        assert applied is True

    def test_expectation_not_met(self, store):
        record_id = store.insert(INGESTION_JOBS, {"status": "completed"})

        applied = store.patch(
            INGESTION_JOBS, record_id, {"status": "running"}, expect={"status": "pending"}
        )

        assert applied is False
        assert store.get(INGESTION_JOBS, record_id)["status"] == "completed"

    def test_unknown_record(self, store):
        with pytest.raises(StoreError, match="not found"):
            store.patch(INGESTION_JOBS, "missing", {"status": "running"})


class TestDerivedHelpers:
    """Test upsert_by and typed accessors."""

    def test_upsert_inserts_then_patches(self, store):
        first = store.upsert_by(REPOS, "full_name", "acme/api", {"gh_id": 101})
        second = store.upsert_by(REPOS, "full_name", "acme/api", {"gh_id": 102})

        assert first == second
        assert store.count(REPOS) == 1
        assert store.get(REPOS, first) == {"id": first, "full_name": "acme/api", "gh_id": 102}

    def test_upsert_recovers_from_insert_race(self, store, monkeypatch):
        existing = store.insert(REPOS, {"full_name": "acme/api", "gh_id": 1})
        monkeypatch.setattr(store, "get_by", lambda *args: None)

        record_id = store.upsert_by(REPOS, "full_name", "acme/api", {"gh_id": 2})

        assert record_id == existing
        assert store.get(REPOS, existing)["gh_id"] == 2

    def test_installation_accessors(self, store):
        store.insert(
            INSTALLATIONS,
            {"installation_id": 42, "repositories": ["acme/api"], "sync_status": "syncing"},
        )

        installation = store.get_installation(42)

        assert installation.sync_status == SyncStatus.SYNCING
        assert installation.repositories == ["acme/api"]
        assert [i.installation_id for i in store.list_installations()] == [42]
        assert store.get_installation(7) is None

    def test_patch_installation(self, store):
        store.insert(INSTALLATIONS, {"installation_id": 42})

        assert store.patch_installation(42, {"sync_status": SyncStatus.ERROR}) is True
        assert store.get_installation(42).sync_status == SyncStatus.ERROR
        assert store.patch_installation(7, {"sync_status": "idle"}) is False

    def test_job_accessors(self, store):
        job_id = store.insert(
            INGESTION_JOBS,
            {
                "batch_id": "b1",
                "installation_id": 42,
                "repo_full_name": "acme/api",
                "status": "blocked",
                "unknown_field": "ignored",
            },
        )

        job = store.get_job(job_id)

        assert job.status == JobStatus.BLOCKED
        assert [j.id for j in store.jobs_for_batch("b1")] == [job_id]
        assert [j.id for j in store.jobs_with_status(JobStatus.BLOCKED)] == [job_id]
        assert store.jobs_with_status(JobStatus.RUNNING) == []
        assert store.get_batch("missing") is None
        assert store.get_envelope("missing") is None
