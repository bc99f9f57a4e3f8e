"""Creator library sessions (creator_libraries/{creatorId}/sessions/{sessionId}).

Exercises and their sets are embedded in the session document.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import ValidationError

from coachplan.content import keys
from coachplan.content.tree import normalize_exercises
from coachplan.content.types import LibrarySession
from coachplan.errors import NotFoundError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore


class LibraryRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_session(
        self,
        creator_id: str,
        title: str,
        exercises: list[dict[str, Any]] | None = None,
        image_url: str | None = None,
        session_id: str | None = None,
    ) -> LibrarySession:
        """Create a library session.

        Args:
            creator_id: Owning creator
            title: Session title
            exercises: Exercise dicts, each optionally holding a "sets" list
            image_url: Optional cover image
            session_id: Explicit id (generated when omitted)

        Returns:
            The stored LibrarySession
        """
        session = LibrarySession(
            id=session_id or self.store.new_id(),
            creator_id=creator_id,
            title=title,
            image_url=image_url,
            exercises=normalize_exercises(exercises or []),
        )
        payload = session.to_document(exclude={"id"})
        payload.update({"created_at": SERVER_TIMESTAMP, "updated_at": SERVER_TIMESTAMP})
        await self.store.set(keys.library_sessions(creator_id), session.id, payload)
        logger.info(f"Library session created: {session.id}", creator_id=creator_id)
        return session

    async def get_session(self, creator_id: str, session_id: str) -> LibrarySession | None:
        """Load a library session with its exercises, or None when missing or unreadable."""
        data = await self.store.get(keys.library_sessions(creator_id), session_id)
        if data is None:
            return None
        try:
            return LibrarySession.model_validate({**data, "id": session_id, "creator_id": creator_id})
        except ValidationError as e:
            logger.bind(creator_id=creator_id, session_id=session_id).warning(f"Malformed library session: {e}")
            return None

    async def update_session(self, creator_id: str, session_id: str, updates: dict[str, Any]) -> LibrarySession:
        """Apply creator-side edits and bump the session version.

        An "exercises" entry replaces the whole exercise list.

        Raises:
            NotFoundError: If the library session does not exist
        """
        current = await self.get_session(creator_id, session_id)
        if current is None:
            raise NotFoundError("library session", session_id)

        payload = dict(updates)
        if "exercises" in payload:
            payload["exercises"] = [ex.to_document() for ex in normalize_exercises(payload["exercises"])]
        payload["version"] = current.version + 1
        payload["updated_at"] = SERVER_TIMESTAMP
        await self.store.update(keys.library_sessions(creator_id), session_id, payload)
        logger.info(f"Library session updated: {session_id} (version {current.version + 1})", creator_id=creator_id)

        updated = await self.get_session(creator_id, session_id)
        if updated is None:
            raise NotFoundError("library session", session_id)
        return updated

    async def delete_session(self, creator_id: str, session_id: str) -> None:
        await self.store.delete(keys.library_sessions(creator_id), session_id)
        logger.info(f"Library session deleted: {session_id}", creator_id=creator_id)
