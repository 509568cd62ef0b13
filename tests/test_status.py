"""Tests for the sync status view-model."""

import pytest

from fakes import INSTALLATION_ID
from gitpulse.config import MINUTE_MS
from gitpulse.models import BatchStatus, JobStatus, SyncStatus, SyncTrigger
from gitpulse.storage import INGESTION_JOBS
from gitpulse.sync.status import (
    AUTH_MESSAGE,
    GENERIC_MESSAGE,
    NETWORK_MESSAGE,
    RATE_LIMIT_MESSAGE,
    get_status,
    normalize_error_message,
)


@pytest.fixture
def status(store, batch_manager, clock):
    def _status():
        return get_status(store, batch_manager, INSTALLATION_ID, now=clock())

    return _status


class TestGetStatus:
    """Test state derivation."""

    def test_unknown_installation(self, store, batch_manager):
        assert get_status(store, batch_manager, 404) is None

    def test_idle(self, make_installation, status):
        make_installation()

        view = status()

        assert view.state == "idle"
        assert view.can_sync_now is True
        assert view.batch is None
        assert view.to_dict()["batch"] is None

    def test_syncing_with_progress(self, make_installation, batch_manager, store, status):
        make_installation(repositories=["acme/api", "acme/web"])
        batch_id, (api, web) = batch_manager.create(
            INSTALLATION_ID, SyncTrigger.MANUAL, ["acme/api", "acme/web"]
        )
        store.patch(INGESTION_JOBS, api, {"status": JobStatus.COMPLETED, "events_ingested": 3})
        store.patch(INGESTION_JOBS, web, {"status": JobStatus.RUNNING})

        view = status()

        assert view.state == "syncing"
        assert view.can_sync_now is False
        assert view.batch.batch_id == batch_id
        assert view.batch.progress_percent == 50
        assert view.batch.current_repo == "acme/web"

    def test_blocked_reports_earliest_resume(self, make_installation, batch_manager, store, status, clock):
        make_installation(repositories=["acme/api", "acme/web"])
        _, (api, web) = batch_manager.create(
            INSTALLATION_ID, SyncTrigger.CRON, ["acme/api", "acme/web"]
        )
        later, sooner = clock() + 9 * MINUTE_MS, clock() + 3 * MINUTE_MS
        store.patch(INGESTION_JOBS, api, {"status": JobStatus.BLOCKED, "blocked_until": later})
        store.patch(INGESTION_JOBS, web, {"status": JobStatus.BLOCKED, "blocked_until": sooner})

        view = status()

        assert view.state == "blocked"
        assert view.blocked_until == sooner

    def test_reading_status_finalizes_finished_batch(
        self, make_installation, batch_manager, store, scheduler, config, status, clock
    ):
        """All jobs terminal: the read finalizes the batch exactly once."""
        make_installation()
        batch_id, (job_id,) = batch_manager.create(INSTALLATION_ID, SyncTrigger.CRON, ["acme/api"])
        store.patch(INGESTION_JOBS, job_id, {"status": JobStatus.COMPLETED, "events_ingested": 2})

        first = status()
        second = status()

        assert first.state == "idle"
        assert first.last_synced_at == clock()
        assert second.state == "idle"
        assert store.get_batch(batch_id).status == BatchStatus.COMPLETED
        assert len(scheduler.calls_for(config.downstream_handler)) == 1

    def test_error_state_after_failed_batch(self, make_installation, batch_manager, store, status):
        make_installation()
        _, (job_id,) = batch_manager.create(INSTALLATION_ID, SyncTrigger.CRON, ["acme/api"])
        store.patch(INGESTION_JOBS, job_id, {"status": JobStatus.FAILED})

        view = status()

        assert view.state == "error"
        assert view.last_sync_error == "1 repo(s) failed to sync"

    def test_cooldown_reported_after_manual_sync(self, make_installation, status, clock):
        make_installation(
            last_manual_sync_at=clock() - 2 * MINUTE_MS,
            last_synced_at=clock() - MINUTE_MS,
            sync_status=SyncStatus.IDLE,
        )

        view = status()

        assert view.can_sync_now is False
        assert view.cooldown_ms == 3 * MINUTE_MS


class TestNormalizeErrorMessage:
    """Test mapping of internal errors to user-facing text."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            ("Rate limit exceeded. Resets at 2025-10-09T10:00:00+00:00", RATE_LIMIT_MESSAGE),
            ("GitHub API error 401: Bad credentials", AUTH_MESSAGE),
            ("Failed to mint installation token for 42", AUTH_MESSAGE),
            ("Request timeout after 3 retries", NETWORK_MESSAGE),
            ("TypeError: 'NoneType' object is not subscriptable", GENERIC_MESSAGE),
            ("x" * 101, GENERIC_MESSAGE),
            ("2 repo(s) failed to sync", "2 repo(s) failed to sync"),
            (None, None),
            ("", None),
        ],
    )
    def test_mapping(self, error, expected):
        assert normalize_error_message(error) == expected
