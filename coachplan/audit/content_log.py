"""Content event audit logging.

Append-only record of copy-on-write transitions, propagation deletions and
workflow steps, so the history of a client's week can be replayed.
"""

import time
from typing import Any

from loguru import logger

from coachplan.config.settings import settings
from coachplan.content import keys
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore

_last_seq = 0


def _next_seq() -> int:
    """Strictly increasing write sequence, so events sort in the order they were logged."""
    global _last_seq
    _last_seq = max(time.time_ns(), _last_seq + 1)
    return _last_seq


async def log_content_event(
    store: DocumentStore,
    event: str,
    client_id: str | None = None,
    subject_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Log a content event and append it to the audit collection.

    The persisted write is best-effort: a failure is logged and swallowed so
    that auditing never aborts the operation being audited.

    Args:
        store: Document store to append to
        event: Event name (e.g. "week_copy_created", "propagation_deleted")
        client_id: Client the event concerns, if any
        subject_id: Copy / plan / workflow id the event is about
        details: Extra JSON-safe context
    """
    details = details or {}
    logger.bind(event=event, client_id=client_id, subject_id=subject_id, **details).info(
        f"[AUDIT] {event} subject={subject_id} client={client_id}"
    )

    if not settings.audit_enabled:
        return

    try:
        await store.add(
            keys.AUDIT_EVENTS,
            {
                "event": event,
                "client_id": client_id,
                "subject_id": subject_id,
                "details": details,
                "created_at": SERVER_TIMESTAMP,
                "seq": _next_seq(),
            },
        )
    except Exception as e:
        logger.bind(event=event, error=str(e)).warning("Failed to persist audit event")


async def list_content_events(store: DocumentStore, subject_id: str | None = None) -> list[dict[str, Any]]:
    """Audit events in write order, optionally for one subject."""
    docs = await store.list_documents(keys.AUDIT_EVENTS)
    events = [d.data for d in docs if subject_id is None or d.data.get("subject_id") == subject_id]
    return sorted(events, key=lambda e: e.get("seq") or 0)
