"""Date-assigned client sessions (client_sessions/{clientId}_{YYYY-MM-DD}_{sessionId}).

One record per (client, calendar date, session). A client has at most one
session per date per program: assigning a session to an occupied date first
removes that program's existing assignments for the date.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from loguru import logger

from coachplan.content import keys
from coachplan.content.types import ClientSessionAssignment
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore
from coachplan.utils.calendar import format_date_for_storage, week_dates

DateLike = date | datetime | str


def _date_str(value: DateLike) -> str:
    return value if isinstance(value, str) else format_date_for_storage(value)


class ClientSessionService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def assign_session_to_date(
        self,
        client_id: str,
        program_id: str,
        plan_id: str | None,
        session_id: str,
        session_date: DateLike,
        module_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        library_session_ref: bool = False,
    ) -> str:
        """Place a session on a date, replacing the program's existing session for that date.

        Returns:
            The client_sessions document id
        """
        date_str = _date_str(session_date)
        await self.remove_sessions_for_date_and_program(client_id, program_id, date_str)

        client_session_id = keys.client_session_id(client_id, date_str, session_id)
        await self.store.set(
            keys.CLIENT_SESSIONS,
            client_session_id,
            {
                "client_id": client_id,
                "program_id": program_id,
                "plan_id": plan_id,
                "session_id": session_id,
                "module_id": module_id,
                "date": date_str,
                "library_session_ref": library_session_ref,
                "created_at": SERVER_TIMESTAMP,
                "updated_at": SERVER_TIMESTAMP,
                **(metadata or {}),
            },
        )
        logger.debug(f"[SCHEDULER] Session {session_id} assigned to {date_str}", client_id=client_id, program_id=program_id)
        return client_session_id

    async def get_client_session(self, client_session_id: str) -> ClientSessionAssignment | None:
        data = await self.store.get(keys.CLIENT_SESSIONS, client_session_id)
        return ClientSessionAssignment.model_validate({**data, "id": client_session_id}) if data is not None else None

    async def get_client_sessions(
        self, client_id: str, start: DateLike | None = None, end: DateLike | None = None
    ) -> list[ClientSessionAssignment]:
        """A client's sessions with start <= date <= end (inclusive), in date order.

        Uses the client_id index when the store has it and a full scan otherwise;
        the result is the same either way.
        """
        docs = await self.store.where_or_scan(keys.CLIENT_SESSIONS, "client_id", client_id)
        start_str = _date_str(start) if start is not None else None
        end_str = _date_str(end) if end is not None else None

        sessions = []
        for doc in docs:
            date_str = doc.data.get("date")
            if not date_str:
                continue
            if start_str is not None and date_str < start_str:
                continue
            if end_str is not None and date_str > end_str:
                continue
            sessions.append(ClientSessionAssignment.model_validate({**doc.data, "id": doc.id}))
        return sorted(sessions, key=lambda s: (s.date, s.id))

    async def get_session_for_date(self, client_id: str, session_date: DateLike) -> ClientSessionAssignment | None:
        sessions = await self.get_client_sessions(client_id, session_date, session_date)
        return sessions[0] if sessions else None

    async def get_sessions_for_program(self, client_id: str, program_id: str) -> list[ClientSessionAssignment]:
        return [s for s in await self.get_client_sessions(client_id) if s.program_id == program_id]

    async def remove_session_from_date(self, client_id: str, session_date: DateLike, session_id: str | None = None) -> None:
        """Remove one session (or every session) from a date."""
        date_str = _date_str(session_date)
        if session_id:
            await self.store.delete(keys.CLIENT_SESSIONS, keys.client_session_id(client_id, date_str, session_id))
            return
        for session in await self.get_client_sessions(client_id, date_str, date_str):
            await self.store.delete(keys.CLIENT_SESSIONS, session.id)

    async def remove_sessions_for_date_and_program(self, client_id: str, program_id: str, session_date: DateLike) -> int:
        date_str = _date_str(session_date)
        removed = 0
        for session in await self.get_client_sessions(client_id, date_str, date_str):
            if session.program_id == program_id:
                await self.store.delete(keys.CLIENT_SESSIONS, session.id)
                removed += 1
        if removed:
            logger.debug(f"[SCHEDULER] Replaced {removed} session(s) on {date_str}", client_id=client_id, program_id=program_id)
        return removed

    async def update_session_metadata(self, client_session_id: str, metadata: dict[str, Any]) -> None:
        """Raises NotFoundError when the assignment does not exist."""
        await self.store.update(keys.CLIENT_SESSIONS, client_session_id, {**metadata, "updated_at": SERVER_TIMESTAMP})

    async def delete_client_sessions_for_week(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        keep_session_ids: Iterable[str] = (),
    ) -> list[str]:
        """Delete a program's sessions in a week, except those whose session id is kept.

        Returns:
            Ids of the deleted client_sessions documents
        """
        keep = set(keep_session_ids)
        week = week_dates(week_key)
        deleted = []
        for session in await self.get_client_sessions(client_id, week.start, week.end):
            if session.program_id != program_id or session.session_id in keep:
                continue
            await self.store.delete(keys.CLIENT_SESSIONS, session.id)
            deleted.append(session.id)
        logger.info(
            f"[SCHEDULER] Deleted {len(deleted)} client sessions in {week_key}",
            client_id=client_id,
            program_id=program_id,
            kept=len(keep),
        )
        return deleted
