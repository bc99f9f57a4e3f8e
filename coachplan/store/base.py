"""Document store contract used by the content core.

The store addresses documents by (collection path, document id). Collection
paths may be nested ("plans/{planId}/modules"), which is how subcollections
are expressed. Values are JSON-safe dicts; SERVER_TIMESTAMP placeholders are
replaced with the store's UTC write time (ISO-8601 string).
"""

from __future__ import annotations

import copy
import fnmatch
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from loguru import logger

from coachplan.errors import IndexUnavailableError


class _ServerTimestamp:
    """Placeholder resolved to the write time by the store."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo):
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document read from a collection.

    Attributes:
        collection: Collection path the document lives in
        id: Document id within the collection
        data: Document fields (a private copy)
    """

    collection: str
    id: str
    data: dict[str, Any]


@dataclass(frozen=True)
class BatchOperation:
    kind: Literal["set", "update", "delete"]
    collection: str
    doc_id: str
    data: dict[str, Any] | None = None
    merge: bool = False


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve_server_timestamps(value: Any, now: str) -> Any:
    """Return a deep copy of value with SERVER_TIMESTAMP replaced by now."""
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_timestamps(v, now) for v in value]
    return copy.deepcopy(value)


def get_field(data: dict[str, Any], path: str) -> Any:
    """Read a dotted field path; returns None when any segment is missing."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def apply_update(existing: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Apply an update where dotted keys address nested fields.

    A top-level key replaces the whole value; "a.b" replaces only a.b and
    creates intermediate maps as needed.
    """
    result = copy.deepcopy(existing)
    for key, value in updates.items():
        parts = key.split(".")
        target = result
        for part in parts[:-1]:
            nxt = target.get(part)
            if not isinstance(nxt, dict):
                nxt = {}
                target[part] = nxt
            target = nxt
        target[parts[-1]] = copy.deepcopy(value)
    return result


def deep_merge(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Merge incoming into existing, recursing into nested maps (set with merge=True)."""
    result = copy.deepcopy(existing)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class WriteBatch:
    """All-or-nothing group of writes, committed through the owning store."""

    def __init__(self, store: DocumentStore):
        self._store = store
        self._operations: list[BatchOperation] = []
        self._committed = False

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> WriteBatch:
        self._operations.append(BatchOperation("set", collection, doc_id, dict(data), merge))
        return self

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> WriteBatch:
        self._operations.append(BatchOperation("update", collection, doc_id, dict(data)))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self._operations.append(BatchOperation("delete", collection, doc_id))
        return self

    @property
    def operations(self) -> list[BatchOperation]:
        return list(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    async def commit(self) -> None:
        """Commit every queued write, or none of them.

        Raises:
            RuntimeError: If the batch was already committed
            BatchCommitError: If the store rejected the batch
        """
        if self._committed:
            raise RuntimeError("WriteBatch already committed")
        self._committed = True
        if not self._operations:
            return
        await self._store._commit_batch(self._operations)
        logger.debug(f"[STORE] Batch committed: {len(self._operations)} operations")


@dataclass
class IndexConfig:
    """Which (collection, field) pairs a store can query by equality.

    Collection keys are fnmatch patterns, so "client_plan_content/*/sessions"
    covers every week's session subcollection.
    """

    fields: dict[str, set[str]] = field(default_factory=dict)

    def is_indexed(self, collection: str, field_path: str) -> bool:
        for pattern, indexed in self.fields.items():
            if field_path in indexed and fnmatch.fnmatchcase(collection, pattern):
                return True
        return False


class DocumentStore(ABC):
    """Async document store with keyed access, equality queries and batches."""

    def __init__(self, index_config: IndexConfig | None = None):
        self.index_config = index_config or IndexConfig()

    def require_index(self, collection: str, field_path: str) -> None:
        """Raise IndexUnavailableError unless (collection, field) is indexed."""
        if not self.index_config.is_indexed(collection, field_path):
            raise IndexUnavailableError(collection, field_path)

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return the document's fields, or None if it does not exist."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        """Create or overwrite a document (merge=True deep-merges into an existing one)."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Update fields of an existing document.

        Raises:
            NotFoundError: If the document does not exist
        """

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is a no-op."""

    @abstractmethod
    async def list_documents(self, collection: str) -> list[DocumentSnapshot]:
        """Return every document in a collection, ordered by document id."""

    @abstractmethod
    async def where(self, collection: str, field_path: str, value: Any) -> list[DocumentSnapshot]:
        """Equality query on a (possibly dotted) field.

        Raises:
            IndexUnavailableError: If the field is not indexed for the collection
        """

    @abstractmethod
    async def _commit_batch(self, operations: list[BatchOperation]) -> None:
        """Apply operations atomically."""

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a store-generated id and return the id."""
        doc_id = self.new_id()
        await self.set(collection, doc_id, data)
        return doc_id

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:20]

    async def exists(self, collection: str, doc_id: str) -> bool:
        return await self.get(collection, doc_id) is not None

    async def where_or_scan(self, collection: str, field_path: str, value: Any) -> list[DocumentSnapshot]:
        """Equality query that falls back to scan + in-memory filter when unindexed.

        Both paths return the same shape, ordered by document id.
        """
        try:
            return await self.where(collection, field_path, value)
        except IndexUnavailableError:
            logger.warning(
                f"[STORE] Missing index on {collection}.{field_path}, falling back to full collection scan",
                collection=collection,
                field=field_path,
            )
        docs = await self.list_documents(collection)
        return [d for d in docs if get_field(d.data, field_path) == value]
