"""Wiring for the CLI and the worker service.

build_pipeline() assembles the store, scheduler, GitHub App auth and every
service from one SyncConfig and registers the scheduler handlers.
"""

import logging
from dataclasses import dataclass
from typing import Any

from .config import SyncConfig, get_config
from .connectors.github.auth import GitHubAppAuth, TokenCache, TokenMintError
from .facts import FactService
from .qdrant_store import QdrantStore
from .scheduler import PROCESS_SYNC_JOB, PROCESS_WEBHOOK, InMemoryScheduler
from .storage import InMemoryStore, SyncStore
from .sync.batch import BatchManager
from .sync.job import IngestionJobRunner
from .sync.service import SyncService
from .webhooks import WebhookIntake

__all__ = ["Pipeline", "build_pipeline", "build_store"]

logger = logging.getLogger("gitpulse.pipeline")


@dataclass
class Pipeline:
    config: SyncConfig
    store: SyncStore
    scheduler: InMemoryScheduler
    facts: FactService
    batches: BatchManager
    jobs: IngestionJobRunner
    sync: SyncService
    webhooks: WebhookIntake

    def run_sweeps(self) -> dict[str, Any]:
        """One pass of every periodic safety net."""
        return {
            "zombies_failed": self.jobs.fail_zombie_jobs(),
            "blocked_resumed": self.jobs.resume_stuck_blocked_jobs(),
            "batches": self.batches.finalize_complete_batches(),
            "webhooks": self.webhooks.sweep(),
        }


def build_store(config: SyncConfig) -> SyncStore:
    if config.store_backend == "qdrant":
        store = QdrantStore.from_config(config)
        store.ensure_collections()
        return store
    return InMemoryStore()


async def missing_app_credentials(installation_id: int) -> str:
    raise TokenMintError("GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY must be configured")


def log_downstream_trigger(args: dict[str, Any]) -> None:
    """Default downstream handler: report generation runs elsewhere."""
    logger.info("downstream_trigger", extra=dict(args))


def build_pipeline(
    config: SyncConfig | None = None,
    store: SyncStore | None = None,
    auth: GitHubAppAuth | None = None,
) -> Pipeline:
    config = config or get_config()
    store = store if store is not None else build_store(config)
    scheduler = InMemoryScheduler()
    if auth is None and config.github_app_id:
        auth = GitHubAppAuth.from_config(config, cache=TokenCache())
    token_provider = auth.get_token if auth is not None else missing_app_credentials

    facts = FactService(store)
    batches = BatchManager(store, scheduler, config)
    jobs = IngestionJobRunner(store, scheduler, token_provider, facts, config)
    service = SyncService(store, scheduler, batches, config)
    webhooks = WebhookIntake(store, scheduler, facts, config)

    scheduler.register(PROCESS_SYNC_JOB, jobs.handle)
    scheduler.register(PROCESS_WEBHOOK, webhooks.handle)
    scheduler.register(config.downstream_handler, log_downstream_trigger)

    return Pipeline(config, store, scheduler, facts, batches, jobs, service, webhooks)
