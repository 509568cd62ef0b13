"""Shared pytest fixtures for gitpulse tests.

Fixture Organization:
    - Clock and infrastructure: FakeClock, InMemoryStore, InMemoryScheduler, SyncConfig
    - Sample data: installation factory (payload builders live in fakes.py)
    - Runners: BatchManager and an IngestionJobRunner factory wired to the fakes

Integration tests (tests/integration/) are skipped unless --run-integration
is given.
"""

import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from gitpulse.config import SyncConfig
from gitpulse.facts import FactService
from gitpulse.models import Installation
from gitpulse.scheduler import InMemoryScheduler
from gitpulse.storage import INSTALLATIONS, InMemoryStore
from gitpulse.sync.batch import BatchManager
from gitpulse.sync.job import IngestionJobRunner

# Test modules import shared helpers from tests/fakes.py
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from fakes import (  # noqa: E402
    INSTALLATION_ID,
    START_MS,
    FakeGitHubClient,
    ScriptedFetcher,
    repository_payload,
)


# =============================================================================
# Pytest CLI Options
# =============================================================================


def pytest_addoption(parser):
    """Add custom command line options for test selection."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against qdrant-client local mode",
    )


def pytest_collection_modifyitems(session, config, items):
    """Skip integration tests unless --run-integration is provided."""
    if config.getoption("--run-integration", default=False):
        return
    skip_integration = pytest.mark.skip(
        reason="Need --run-integration option to run integration tests"
    )
    for item in items:
        if "integration" in item.keywords or "/integration/" in str(item.fspath):
            item.add_marker(skip_integration)


# =============================================================================
# Clock and infrastructure
# =============================================================================


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def scheduler(clock):
    return InMemoryScheduler(clock)


@pytest.fixture
def config():
    """Defaults only; .env files are ignored."""
    return SyncConfig(_env_file=None)


@pytest.fixture
def make_installation(store, clock):
    """Factory inserting an installation record; returns the Installation."""

    def _make(**overrides: Any) -> Installation:
        values: dict[str, Any] = {
            "id": store.new_id(),
            "installation_id": INSTALLATION_ID,
            "account_login": "acme",
            "linked_user_id": "user_1",
            "repositories": ["acme/api"],
            "created_at": clock(),
        }
        values.update(overrides)
        installation = Installation(**values)
        store.insert(INSTALLATIONS, installation.to_dict())
        return installation

    return _make


@pytest.fixture
def batch_manager(store, scheduler, config, clock):
    return BatchManager(store, scheduler, config, clock)


@pytest.fixture
def github_client():
    return FakeGitHubClient(
        {
            "acme/api": repository_payload("acme/api", 101),
            "acme/web": repository_payload("acme/web", 102),
        }
    )


@pytest.fixture
def token_provider():
    return AsyncMock(return_value="ghs_test_token")


@pytest.fixture
def make_runner(store, scheduler, config, clock, github_client, token_provider):
    """Factory building an IngestionJobRunner around a ScriptedFetcher."""

    def _make(fetcher: ScriptedFetcher, **overrides: Any) -> IngestionJobRunner:
        return IngestionJobRunner(
            store,
            scheduler,
            overrides.get("token_provider", token_provider),
            FactService(store, clock),
            overrides.get("config", config),
            client_factory=overrides.get("client_factory", github_client),
            fetcher_factory=fetcher,
            clock=clock,
        )

    return _make
