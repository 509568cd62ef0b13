"""Durable store contract for the sync pipeline.

The pipeline needs only a narrow set of primitives from its store:

- point read by id
- point read by unique key (delivery_id, content_hash, installation_id)
- equality scan over indexed fields (status, installation_id, batch_id)
- insert, patch by id (optionally conditional on current field values)

No multi-record transactions are assumed; single-record writes are atomic.
Cross-record consistency (batch aggregation, dedup) is achieved by
recomputing from the records themselves.

InMemoryStore implements the contract for tests and single-process use.
QdrantStore (qdrant_store.py) implements it on top of Qdrant payloads.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import Any

from .models import (
    IngestionJob,
    Installation,
    JobStatus,
    SyncBatch,
    WebhookEnvelope,
)

__all__ = [
    "ACTORS",
    "EMBEDDING_QUEUE",
    "EVENTS",
    "INDEXED_FIELDS",
    "INGESTION_JOBS",
    "INSTALLATIONS",
    "REPOS",
    "SYNC_BATCHES",
    "TABLES",
    "UNIQUE_KEYS",
    "WEBHOOK_EVENTS",
    "DuplicateKeyError",
    "InMemoryStore",
    "StoreError",
    "SyncStore",
]

logger = logging.getLogger("gitpulse.storage")

INSTALLATIONS = "installations"
SYNC_BATCHES = "sync_batches"
INGESTION_JOBS = "ingestion_jobs"
WEBHOOK_EVENTS = "webhook_events"
EVENTS = "events"
ACTORS = "actors"
REPOS = "repos"
EMBEDDING_QUEUE = "embedding_queue"

TABLES = (
    INSTALLATIONS,
    SYNC_BATCHES,
    INGESTION_JOBS,
    WEBHOOK_EVENTS,
    EVENTS,
    ACTORS,
    REPOS,
    EMBEDDING_QUEUE,
)

# At most one record per value of these fields
UNIQUE_KEYS: dict[str, str] = {
    INSTALLATIONS: "installation_id",
    WEBHOOK_EVENTS: "delivery_id",
    EVENTS: "content_hash",
    EMBEDDING_QUEUE: "content_hash",
    ACTORS: "actor_key",
    REPOS: "full_name",
}

# Fields that are scanned by equality; value is the payload schema type
INDEXED_FIELDS: dict[str, dict[str, str]] = {
    INSTALLATIONS: {"installation_id": "integer", "sync_status": "keyword"},
    SYNC_BATCHES: {"installation_id": "integer", "status": "keyword"},
    INGESTION_JOBS: {
        "batch_id": "keyword",
        "installation_id": "integer",
        "status": "keyword",
    },
    WEBHOOK_EVENTS: {"delivery_id": "keyword", "status": "keyword"},
    EVENTS: {"content_hash": "keyword", "repo_full_name": "keyword"},
    EMBEDDING_QUEUE: {"content_hash": "keyword", "status": "keyword"},
    ACTORS: {"actor_key": "keyword"},
    REPOS: {"full_name": "keyword"},
}


class StoreError(Exception):
    """Raised when a store operation cannot be applied (e.g. unknown id)."""

    pass


class DuplicateKeyError(StoreError):
    """Raised by insert() when a unique key is already taken."""

    def __init__(self, table: str, field: str, value: Any, existing_id: str):
        self.table = table
        self.field = field
        self.value = value
        self.existing_id = existing_id
        super().__init__(f"{table}.{field}={value!r} already exists ({existing_id})")


def plain(value: Any) -> Any:
    """Convert enum members to their stored value."""
    if isinstance(value, Enum):
        return value.value
    return value


def plain_record(record: dict[str, Any]) -> dict[str, Any]:
    return {k: plain(v) for k, v in record.items()}


class SyncStore(ABC):
    """Abstract durable store used by every pipeline component."""

    # --- Primitives ---

    @abstractmethod
    def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Read one record by id, or None."""

    @abstractmethod
    def get_by(self, table: str, field: str, value: Any) -> dict[str, Any] | None:
        """Read one record by a unique key, or None."""

    @abstractmethod
    def query(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        """Return all records whose fields equal the given values."""

    @abstractmethod
    def insert(self, table: str, record: dict[str, Any]) -> str:
        """Insert a record and return its id.

        Raises:
            DuplicateKeyError: If the table's unique key is already taken.
        """

    @abstractmethod
    def patch(
        self,
        table: str,
        record_id: str,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        """Apply ``changes`` to one record.

        When ``expect`` is given, the write is applied only if every
        expected field currently holds the expected value; the check and
        the write are atomic for that record.

        Returns:
            True if the changes were applied.

        Raises:
            StoreError: If the record does not exist.
        """

    # --- Derived helpers ---

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def upsert_by(
        self, table: str, field: str, value: Any, record: dict[str, Any]
    ) -> str:
        """Insert ``record`` or patch the record holding ``field == value``.

        Returns:
            Id of the inserted or updated record.
        """
        existing = self.get_by(table, field, value)
        if existing is None:
            try:
                return self.insert(table, {**record, field: value})
            except DuplicateKeyError as e:
                existing = self.get(table, e.existing_id)
                if existing is None:
                    raise
        self.patch(table, existing["id"], record)
        return existing["id"]

    # --- Typed accessors ---

    def get_installation(self, installation_id: int) -> Installation | None:
        record = self.get_by(INSTALLATIONS, "installation_id", installation_id)
        return Installation.from_dict(record) if record else None

    def list_installations(self) -> list[Installation]:
        return [Installation.from_dict(r) for r in self.query(INSTALLATIONS)]

    def patch_installation(self, installation_id: int, changes: dict[str, Any]) -> bool:
        record = self.get_by(INSTALLATIONS, "installation_id", installation_id)
        if record is None:
            logger.warning(
                "installation_patch_skipped",
                extra={"installation_id": installation_id, "reason": "not_found"},
            )
            return False
        return self.patch(INSTALLATIONS, record["id"], changes)

    def get_batch(self, batch_id: str) -> SyncBatch | None:
        record = self.get(SYNC_BATCHES, batch_id)
        return SyncBatch.from_dict(record) if record else None

    def get_job(self, job_id: str) -> IngestionJob | None:
        record = self.get(INGESTION_JOBS, job_id)
        return IngestionJob.from_dict(record) if record else None

    def jobs_for_batch(self, batch_id: str) -> list[IngestionJob]:
        return [
            IngestionJob.from_dict(r)
            for r in self.query(INGESTION_JOBS, batch_id=batch_id)
        ]

    def jobs_with_status(self, status: JobStatus) -> list[IngestionJob]:
        return [
            IngestionJob.from_dict(r)
            for r in self.query(INGESTION_JOBS, status=status.value)
        ]

    def get_envelope(self, envelope_id: str) -> WebhookEnvelope | None:
        record = self.get(WEBHOOK_EVENTS, envelope_id)
        return WebhookEnvelope.from_dict(record) if record else None


class InMemoryStore(SyncStore):
    """Dict-backed store.

    A single lock makes each primitive atomic, which gives the same
    single-record guarantees as the durable backends. Records are copied on
    the way in and out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._lock = threading.RLock()

    def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._tables[table].get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def get_by(self, table: str, field: str, value: Any) -> dict[str, Any] | None:
        value = plain(value)
        with self._lock:
            for record in self._tables[table].values():
                if record.get(field) == value:
                    return copy.deepcopy(record)
        return None

    def query(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        wanted = plain_record(equals)
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._tables[table].values()
                if all(record.get(k) == v for k, v in wanted.items())
            ]

    def insert(self, table: str, record: dict[str, Any]) -> str:
        record = copy.deepcopy(plain_record(record))
        record_id = record.get("id") or self.new_id()
        record["id"] = record_id
        unique = UNIQUE_KEYS.get(table)
        with self._lock:
            if record_id in self._tables[table]:
                raise DuplicateKeyError(table, "id", record_id, record_id)
            if unique is not None and record.get(unique) is not None:
                for existing in self._tables[table].values():
                    if existing.get(unique) == record[unique]:
                        raise DuplicateKeyError(
                            table, unique, record[unique], existing["id"]
                        )
            self._tables[table][record_id] = record
        return record_id

    def patch(
        self,
        table: str,
        record_id: str,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        changes = copy.deepcopy(plain_record(changes))
        with self._lock:
            record = self._tables[table].get(record_id)
            if record is None:
                raise StoreError(f"{table}/{record_id} not found")
            if expect is not None:
                for k, v in plain_record(expect).items():
                    if record.get(k) != v:
                        return False
            record.update(changes)
            return True

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables[table])
