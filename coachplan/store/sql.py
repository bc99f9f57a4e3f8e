"""SQLAlchemy-backed document store.

Each document is one row of the `documents` table. Equality queries on
indexed fields are pushed down as JSON path comparisons; fields outside the
index configuration raise IndexUnavailableError like any other store.
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from coachplan.db import session as db_session
from coachplan.db.models import DocumentRow
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


def _json_condition(field_path: str, value: Any):
    parts = field_path.split(".")
    element = DocumentRow.data[tuple(parts)] if len(parts) > 1 else DocumentRow.data[parts[0]]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, float):
        return element.as_float() == value
    return element.as_string() == str(value)


class SqlDocumentStore(DocumentStore):
    """Document store over the SQLAlchemy session factory in coachplan.db.session.

    SQLAlchemy sessions are synchronous; every operation runs its session
    block in a worker thread (asyncio.to_thread) so store calls never block
    the event loop.
    """

    def __init__(self, index_config: IndexConfig | None = None, create_schema: bool = True):
        super().__init__(index_config)
        if create_schema:
            db_session.init_db()

    @staticmethod
    def _row(session: Session, collection: str, doc_id: str) -> DocumentRow | None:
        return session.execute(
            select(DocumentRow).where(DocumentRow.collection == collection, DocumentRow.doc_id == doc_id)
        ).scalar_one_or_none()

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get_sync, collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        await asyncio.to_thread(self._write_sync, BatchOperation("set", collection, doc_id, data, merge))

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_sync, BatchOperation("update", collection, doc_id, data))

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.to_thread(self._write_sync, BatchOperation("delete", collection, doc_id))

    async def list_documents(self, collection: str) -> list[DocumentSnapshot]:
        return await asyncio.to_thread(self._list_sync, collection)

    async def where(self, collection: str, field_path: str, value: Any) -> list[DocumentSnapshot]:
        self.require_index(collection, field_path)
        return await asyncio.to_thread(self._where_sync, collection, field_path, value)

    async def _commit_batch(self, operations: list[BatchOperation]) -> None:
        await asyncio.to_thread(self._commit_sync, operations)

    # --- blocking session work (runs in a worker thread) ---------------------

    def _get_sync(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with db_session.get_session() as session:
            row = self._row(session, collection, doc_id)
            return dict(row.data) if row is not None else None

    def _write_sync(self, op: BatchOperation) -> None:
        with db_session.get_session() as session:
            self._apply(session, op, utc_now_iso())

    def _list_sync(self, collection: str) -> list[DocumentSnapshot]:
        with db_session.get_session() as session:
            rows = session.execute(
                select(DocumentRow).where(DocumentRow.collection == collection).order_by(DocumentRow.doc_id)
            ).scalars()
            return [DocumentSnapshot(collection, row.doc_id, dict(row.data)) for row in rows]

    def _where_sync(self, collection: str, field_path: str, value: Any) -> list[DocumentSnapshot]:
        with db_session.get_session() as session:
            rows = session.execute(
                select(DocumentRow)
                .where(DocumentRow.collection == collection, _json_condition(field_path, value))
                .order_by(DocumentRow.doc_id)
            ).scalars()
            # JSON path casts are lossy for mixed types; confirm the match on the decoded value
            return [
                DocumentSnapshot(collection, row.doc_id, dict(row.data))
                for row in rows
                if get_field(row.data, field_path) == value
            ]

    def _commit_sync(self, operations: list[BatchOperation]) -> None:
        now = utc_now_iso()
        try:
            with db_session.get_session() as session:
                for op in operations:
                    self._apply(session, op, now)
                    session.flush()
        except Exception as e:
            logger.bind(operations=len(operations)).warning(f"[STORE] Batch rolled back: {e}")
            raise BatchCommitError(f"Batch of {len(operations)} writes failed: {e}") from e

    def _apply(self, session: Session, op: BatchOperation, now: str) -> None:
        row = self._row(session, op.collection, op.doc_id)
        if op.kind == "delete":
            if row is not None:
                session.delete(row)
            return

        payload = resolve_server_timestamps(op.data or {}, now)
        if op.kind == "update":
            if row is None:
                raise NotFoundError("document", f"{op.collection}/{op.doc_id}")
            row.data = apply_update(row.data, payload)
        elif row is None:
            session.add(DocumentRow(collection=op.collection, doc_id=op.doc_id, data=payload))
        elif op.merge:
            row.data = deep_merge(row.data, payload)
        else:
            row.data = payload
