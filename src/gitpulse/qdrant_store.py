"""Qdrant-backed implementation of the SyncStore contract.

Each table maps to one Qdrant collection whose points carry the record as
payload. Vectors are a fixed 1-dimensional placeholder; only payload
filtering is used.

- Unique-key tables derive the point id from the key (uuid5) and ignore any
  id the caller assigned, so concurrent inserts of the same key converge on
  one point. insert() returns the id actually stored.
- Conditional patches use set_payload with a filter selector plus a write
  token that is read back to learn whether the filter matched.
"""

import logging
import uuid
from typing import Any

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HasIdCondition,
    IsNullCondition,
    KeywordIndexParams,
    MatchValue,
    PayloadField,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from .config import SyncConfig, get_config
from .storage import (
    INDEXED_FIELDS,
    TABLES,
    UNIQUE_KEYS,
    DuplicateKeyError,
    StoreError,
    SyncStore,
    plain_record,
)

__all__ = ["QdrantStore", "QdrantUnavailable", "get_qdrant_client"]

logger = logging.getLogger("gitpulse.storage.qdrant")

_KEY_NAMESPACE = uuid.UUID("6f1c2d8e-3b5a-4f0e-9a7d-2c4b8e1f0a93")
_WRITE_TOKEN = "_write_token"
_PLACEHOLDER_VECTOR = [0.0]
_SCROLL_PAGE = 256


class QdrantUnavailable(StoreError):
    """Raised when Qdrant cannot be reached while preparing collections."""

    pass


def get_qdrant_client(config: SyncConfig | None = None) -> QdrantClient:
    """Get a QdrantClient configured from SyncConfig.

    Args:
        config: Optional SyncConfig instance. Uses get_config() if not provided.

    Returns:
        Configured QdrantClient instance.
    """
    config = config or get_config()
    api_key = config.qdrant_api_key.get_secret_value() if config.qdrant_api_key else None
    return QdrantClient(
        host=config.qdrant_host,
        port=config.qdrant_port,
        api_key=api_key,
        https=config.qdrant_use_https,
        timeout=config.qdrant_timeout,
    )


def _match(field: str, value: Any):
    if value is None:
        return IsNullCondition(is_null=PayloadField(key=field))
    return FieldCondition(key=field, match=MatchValue(value=value))


class QdrantStore(SyncStore):
    """SyncStore on Qdrant payload collections.

    Args:
        client: QdrantClient (remote or ``QdrantClient(":memory:")``)
        prefix: Collection name prefix, one collection per table
    """

    def __init__(self, client: QdrantClient, prefix: str = "gitpulse") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_config(cls, config: SyncConfig | None = None) -> "QdrantStore":
        config = config or get_config()
        return cls(get_qdrant_client(config), prefix=config.qdrant_collection_prefix)

    def collection(self, table: str) -> str:
        return f"{self.prefix}_{table}"

    def ensure_collections(self) -> dict[str, int]:
        """Create missing collections and their payload indexes.

        Idempotent; existing collections are left untouched.

        Returns:
            Mapping of collection name to number of indexes requested.

        Raises:
            QdrantUnavailable: If Qdrant cannot be reached.
        """
        created: dict[str, int] = {}
        for table in TABLES:
            name = self.collection(table)
            try:
                if not self.client.collection_exists(name):
                    self.client.create_collection(
                        collection_name=name,
                        vectors_config=VectorParams(size=1, distance=Distance.DOT),
                    )
                    logger.info("collection_created", extra={"collection": name})
                count = 0
                for field, schema in INDEXED_FIELDS.get(table, {}).items():
                    self.client.create_payload_index(
                        collection_name=name,
                        field_name=field,
                        field_schema=(
                            KeywordIndexParams(type="keyword")
                            if schema == "keyword"
                            else PayloadSchemaType.INTEGER
                        ),
                    )
                    count += 1
                created[name] = count
            except Exception as e:
                logger.error(
                    "collection_setup_failed",
                    extra={"collection": name, "error": str(e)},
                )
                raise QdrantUnavailable(f"Failed to prepare {name}: {e}") from e
        return created

    # --- Reads ---

    @staticmethod
    def _clean(payload: dict[str, Any] | None) -> dict[str, Any] | None:
        if payload is None:
            return None
        return {k: v for k, v in payload.items() if not k.startswith("_")}

    def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        points = self.client.retrieve(
            collection_name=self.collection(table),
            ids=[record_id],
            with_payload=True,
            with_vectors=False,
        )
        if not points:
            return None
        return self._clean(points[0].payload)

    def get_by(self, table: str, field: str, value: Any) -> dict[str, Any] | None:
        records = self._scroll(table, Filter(must=[_match(field, value)]), limit=1)
        return records[0] if records else None

    def query(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        conditions = [_match(k, v) for k, v in plain_record(equals).items()]
        return self._scroll(table, Filter(must=conditions) if conditions else None)

    def _scroll(
        self, table: str, scroll_filter: Filter | None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=self.collection(table),
                scroll_filter=scroll_filter,
                limit=_SCROLL_PAGE if limit is None else limit,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            results.extend(self._clean(p.payload) for p in points)
            if offset is None or (limit is not None and len(results) >= limit):
                break
        return results[:limit] if limit is not None else results

    # --- Writes ---

    def _point_id(self, table: str, record: dict[str, Any]) -> str:
        """Key-derived id for unique-key tables, else the record's own id."""
        unique = UNIQUE_KEYS.get(table)
        if unique is not None and record.get(unique) is not None:
            return str(uuid.uuid5(_KEY_NAMESPACE, f"{table}:{record[unique]}"))
        if record.get("id"):
            return str(record["id"])
        return self.new_id()

    def insert(self, table: str, record: dict[str, Any]) -> str:
        record = plain_record(record)
        record_id = self._point_id(table, record)
        record["id"] = record_id

        unique = UNIQUE_KEYS.get(table)
        keyed = unique is not None and record.get(unique) is not None

        if self.get(table, record_id) is not None:
            if keyed:
                raise DuplicateKeyError(table, unique, record[unique], record_id)
            raise DuplicateKeyError(table, "id", record_id, record_id)
        if keyed:
            existing = self.get_by(table, unique, record[unique])
            if existing is not None:
                raise DuplicateKeyError(table, unique, record[unique], existing["id"])

        self.client.upsert(
            collection_name=self.collection(table),
            points=[
                PointStruct(id=record_id, vector=_PLACEHOLDER_VECTOR, payload=record)
            ],
            wait=True,
        )
        return record_id

    def patch(
        self,
        table: str,
        record_id: str,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        if self.get(table, record_id) is None:
            raise StoreError(f"{table}/{record_id} not found")

        changes = plain_record(changes)
        if expect is None:
            self.client.set_payload(
                collection_name=self.collection(table),
                payload=changes,
                points=[record_id],
                wait=True,
            )
            return True

        token = self.new_id()
        conditions = [HasIdCondition(has_id=[record_id])]
        conditions.extend(_match(k, v) for k, v in plain_record(expect).items())
        self.client.set_payload(
            collection_name=self.collection(table),
            payload={**changes, _WRITE_TOKEN: token},
            points=Filter(must=conditions),
            wait=True,
        )
        points = self.client.retrieve(
            collection_name=self.collection(table),
            ids=[record_id],
            with_payload=[_WRITE_TOKEN],
        )
        return bool(points) and (points[0].payload or {}).get(_WRITE_TOKEN) == token
