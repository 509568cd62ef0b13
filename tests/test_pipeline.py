"""Tests for pipeline wiring."""

import pytest

from fakes import INSTALLATION_ID
from gitpulse.config import SyncConfig
from gitpulse.models import Installation, JobStatus, SyncStatus, SyncTrigger
from gitpulse.pipeline import build_pipeline, log_downstream_trigger
from gitpulse.scheduler import PROCESS_SYNC_JOB, PROCESS_WEBHOOK
from gitpulse.storage import INSTALLATIONS, InMemoryStore


@pytest.fixture
def pipeline():
    return build_pipeline(SyncConfig(_env_file=None, store_backend="memory"))


def _add_installation(store):
    installation = Installation(
        id=store.new_id(),
        installation_id=INSTALLATION_ID,
        linked_user_id="user_1",
        repositories=["acme/api"],
    )
    store.insert(INSTALLATIONS, installation.to_dict())


class TestBuildPipeline:
    """Test assembly from configuration."""

    def test_memory_store_and_handlers(self, pipeline):
        assert isinstance(pipeline.store, InMemoryStore)
        assert pipeline.scheduler._handlers[PROCESS_SYNC_JOB] == pipeline.jobs.handle
        assert pipeline.scheduler._handlers[PROCESS_WEBHOOK] == pipeline.webhooks.handle
        assert (
            pipeline.scheduler._handlers[pipeline.config.downstream_handler]
            is log_downstream_trigger
        )

    def test_store_is_shared(self):
        store = InMemoryStore()

        pipeline = build_pipeline(SyncConfig(_env_file=None), store=store)

        assert pipeline.store is store
        assert pipeline.jobs.store is store
        assert pipeline.webhooks.store is store

    @pytest.mark.asyncio
    async def test_jobs_fail_without_app_credentials(self, pipeline):
        _add_installation(pipeline.store)

        result = pipeline.sync.request_sync(INSTALLATION_ID, SyncTrigger.CRON)
        await pipeline.scheduler.run_due()

        (job_id,) = result.details["job_ids"]
        job = pipeline.store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "GITHUB_APP_ID" in job.error_message

        sweeps = pipeline.run_sweeps()

        assert sweeps["batches"] == {"checked": 1, "finalized": 1}
        assert sweeps["webhooks"] == {"pending": 0, "retried": 0, "stalled": 0}
        assert pipeline.store.get_installation(INSTALLATION_ID).sync_status == SyncStatus.ERROR
