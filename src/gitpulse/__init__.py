"""gitpulse - GitHub activity ingestion and sync pipeline.

Provides resumable, rate-limit aware ingestion of GitHub activity into a
deduplicated event store through:
- Sync admission policy, batches and per-repository ingestion jobs
- GitHub REST client, App authentication and page fetchers
- Canonicalization of webhook/API payloads into one event shape
- Content-hash idempotent persistence (in-memory or Qdrant-backed store)
- Webhook intake with delivery-id deduplication

Python Version: 3.10+ required
"""

# Configure logging before other imports
from .logging_config import StructuredFormatter, configure_logging

# Initialize structured logging on module import
configure_logging()

from .__version__ import __version__
from .config import SyncConfig, get_config, reset_config
from .content_hash import compute_content_hash, stable_stringify
from .facts import FactContext, FactService
from .models import (
    BatchStatus,
    CanonicalEvent,
    EventType,
    Installation,
    IngestionJob,
    JobStatus,
    PersistResult,
    PersistStatus,
    SyncBatch,
    SyncStatus,
    SyncTrigger,
    WebhookEnvelope,
    WebhookStatus,
)
from .scheduler import InMemoryScheduler, Scheduler
from .storage import DuplicateKeyError, InMemoryStore, StoreError, SyncStore
from .webhooks import WebhookIntake, verify_signature

__all__ = [
    "__version__",
    # Logging
    "StructuredFormatter",
    "configure_logging",
    # Configuration
    "SyncConfig",
    "get_config",
    "reset_config",
    # Hashing and persistence
    "compute_content_hash",
    "stable_stringify",
    "FactContext",
    "FactService",
    # Models
    "BatchStatus",
    "CanonicalEvent",
    "EventType",
    "Installation",
    "IngestionJob",
    "JobStatus",
    "PersistResult",
    "PersistStatus",
    "SyncBatch",
    "SyncStatus",
    "SyncTrigger",
    "WebhookEnvelope",
    "WebhookStatus",
    # Store and scheduler
    "DuplicateKeyError",
    "InMemoryStore",
    "StoreError",
    "SyncStore",
    "InMemoryScheduler",
    "Scheduler",
    # Webhooks
    "WebhookIntake",
    "verify_signature",
]
