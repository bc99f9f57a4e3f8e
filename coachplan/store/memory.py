"""In-memory document store.

Used by tests and local tooling. Supports the same index semantics as the SQL
store plus fault injection so partial-failure paths can be exercised.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from loguru import logger

from coachplan.errors import BatchCommitError, NotFoundError
from coachplan.store.base import (
    BatchOperation,
    DocumentSnapshot,
    DocumentStore,
    IndexConfig,
    apply_update,
    deep_merge,
    get_field,
    resolve_server_timestamps,
    utc_now_iso,
)


@dataclass
class _Fault:
    operation: str
    collection: str | None
    doc_id: str | None
    remaining: int
    error: Exception

    def matches(self, operation: str, collection: str, doc_id: str | None) -> bool:
        if self.remaining <= 0 or self.operation != operation:
            return False
        if self.collection is not None and self.collection != collection:
            return False
        return self.doc_id is None or self.doc_id == doc_id


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store: {collection: {doc_id: data}}."""

    def __init__(self, index_config: IndexConfig | None = None):
        super().__init__(index_config)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._faults: list[_Fault] = []

    def inject_fault(
        self,
        operation: str,
        collection: str | None = None,
        doc_id: str | None = None,
        times: int = 1,
        error: Exception | None = None,
    ) -> None:
        """Make the next `times` matching operations raise.

        Args:
            operation: One of get, set, update, delete, list, where, batch
            collection: Restrict to a collection path (None matches any)
            doc_id: Restrict to a document id (None matches any)
            times: How many matching calls fail
            error: Exception to raise (defaults to RuntimeError)
        """
        self._faults.append(
            _Fault(operation, collection, doc_id, times, error or RuntimeError(f"injected {operation} failure"))
        )

    def _check_fault(self, operation: str, collection: str, doc_id: str | None = None) -> None:
        for fault in self._faults:
            if fault.matches(operation, collection, doc_id):
                fault.remaining -= 1
                raise fault.error

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        self._check_fault("get", collection, doc_id)
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        self._check_fault("set", collection, doc_id)
        self._apply(BatchOperation("set", collection, doc_id, data, merge), self._collections, utc_now_iso())

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._check_fault("update", collection, doc_id)
        self._apply(BatchOperation("update", collection, doc_id, data), self._collections, utc_now_iso())

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check_fault("delete", collection, doc_id)
        self._collections.get(collection, {}).pop(doc_id, None)

    async def list_documents(self, collection: str) -> list[DocumentSnapshot]:
        self._check_fault("list", collection)
        bucket = self._collections.get(collection, {})
        return [DocumentSnapshot(collection, doc_id, copy.deepcopy(bucket[doc_id])) for doc_id in sorted(bucket)]

    async def where(self, collection: str, field_path: str, value: Any) -> list[DocumentSnapshot]:
        self.require_index(collection, field_path)
        self._check_fault("where", collection)
        bucket = self._collections.get(collection, {})
        return [
            DocumentSnapshot(collection, doc_id, copy.deepcopy(bucket[doc_id]))
            for doc_id in sorted(bucket)
            if get_field(bucket[doc_id], field_path) == value
        ]

    async def _commit_batch(self, operations: list[BatchOperation]) -> None:
        now = utc_now_iso()
        staged = copy.deepcopy(self._collections)
        try:
            for op in operations:
                self._check_fault("batch", op.collection, op.doc_id)
                self._apply(op, staged, now)
        except Exception as e:
            logger.bind(operations=len(operations)).warning(f"[STORE] Batch rejected, nothing written: {e}")
            raise BatchCommitError(f"Batch of {len(operations)} writes failed: {e}") from e
        self._collections = staged

    @staticmethod
    def _apply(op: BatchOperation, collections: dict[str, dict[str, dict[str, Any]]], now: str) -> None:
        bucket = collections.setdefault(op.collection, {})
        if op.kind == "delete":
            bucket.pop(op.doc_id, None)
            return
        payload = resolve_server_timestamps(op.data or {}, now)
        if op.kind == "update":
            if op.doc_id not in bucket:
                raise NotFoundError("document", f"{op.collection}/{op.doc_id}")
            bucket[op.doc_id] = apply_update(bucket[op.doc_id], payload)
        elif op.merge and op.doc_id in bucket:
            bucket[op.doc_id] = deep_merge(bucket[op.doc_id], payload)
        else:
            bucket[op.doc_id] = payload

    def collection_ids(self, collection: str) -> list[str]:
        """Document ids in a collection (test helper, no fault checks)."""
        return sorted(self._collections.get(collection, {}))
