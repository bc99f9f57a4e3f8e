"""Copy-on-write personalization of single date-assigned sessions.

A session placed on a client's calendar (client_sessions/{clientId}_{date}_{sessionId})
resolves live from the creator's library session until the first client
edit, which copies the library session into
client_session_content/{clientSessionId}. The copy embeds its exercises
and sets and records its origin as provenance (library_session).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from loguru import logger

from coachplan.audit.content_log import log_content_event
from coachplan.config.settings import settings
from coachplan.content import keys
from coachplan.content.resolver import ContentResolver
from coachplan.content.tree import find_exercise, normalize_sets, sort_by_order
from coachplan.content.types import ClientSessionContent, Exercise, Provenance, SetEntry
from coachplan.errors import NotFoundError, PreconditionFailedError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore

_T = TypeVar("_T")

# Fields that record where the copy came from; client edits never change them.
_PROTECTED_FIELDS = {"id", "provenance", "source_session_id", "creator_id", "client_id", "created_at"}


class ClientSessionContentService:
    def __init__(self, store: DocumentStore, resolver: ContentResolver | None = None):
        self.store = store
        self.resolver = resolver or ContentResolver(store)

    async def get_client_session_content(self, client_session_id: str) -> ClientSessionContent | None:
        return await self.resolver.load_session_copy(client_session_id)

    async def copy_from_library(self, creator_id: str, client_session_id: str, library_session_id: str) -> ClientSessionContent:
        """Copy a library session (exercises and sets included) into the client's session copy.

        Raises:
            NotFoundError: If the library session does not exist
        """
        library_session = await self.resolver.library.get_session(creator_id, library_session_id)
        if library_session is None:
            raise NotFoundError("library session", library_session_id)

        provenance = Provenance(source_type="library_session", source_id=library_session_id)
        content = ClientSessionContent(
            id=client_session_id,
            client_id=await self._owner(client_session_id),
            title=library_session.title,
            image_url=library_session.image_url,
            creator_id=creator_id,
            provenance=provenance,
            source_session_id=library_session_id,
            version=1,
            exercises=[ex.model_copy(deep=True) for ex in sort_by_order(library_session.exercises)],
        )
        payload = content.to_document(exclude={"id", "created_at", "updated_at"})
        payload.update(
            {
                "source_version": library_session.version,
                "created_at": SERVER_TIMESTAMP,
                "updated_at": SERVER_TIMESTAMP,
            }
        )
        await self.store.set(keys.CLIENT_SESSION_CONTENT, client_session_id, payload)

        logger.info(f"[COPY_ON_WRITE] Copied library session {library_session_id} into {client_session_id}", creator_id=creator_id)
        await log_content_event(
            self.store,
            "session_copy_created",
            client_id=content.client_id,
            subject_id=client_session_id,
            details={"from_state": "library_backed", "to_state": "personalized", "library_session_id": library_session_id},
        )
        copy = await self.get_client_session_content(client_session_id)
        if copy is None:
            raise NotFoundError("client session content", client_session_id)
        return copy

    async def ensure_session_copy(
        self,
        client_session_id: str,
        creator_id: str | None = None,
        library_session_id: str | None = None,
    ) -> ClientSessionContent:
        """Return the session copy, creating it from the library on first edit.

        The library session and creator default to the ones behind the
        client_sessions assignment (creator taken from the assignment's plan).

        Raises:
            NotFoundError: If the assignment or library session does not exist
            PreconditionFailedError: If the creator cannot be determined
        """
        existing = await self.get_client_session_content(client_session_id)
        if existing is not None:
            return existing

        if library_session_id is None or creator_id is None:
            assignment = await self.resolver.get_client_session(client_session_id)
            if assignment is None:
                raise NotFoundError("client session", client_session_id)
            library_session_id = library_session_id or assignment.session_id
            if creator_id is None and assignment.plan_id:
                plan = await self.resolver.plans.get_plan(assignment.plan_id)
                creator_id = plan.creator_id if plan is not None else None
        if creator_id is None:
            raise PreconditionFailedError(f"Cannot personalize session {client_session_id}: creator is unknown")

        return await self.copy_from_library(creator_id, client_session_id, library_session_id)

    async def update_session(
        self, client_session_id: str, updates: dict[str, Any], creator_id: str | None = None
    ) -> ClientSessionContent:
        """Update session-level fields (title, image_url, ...). Provenance fields are ignored."""

        def apply(content: ClientSessionContent) -> ClientSessionContent:
            for field_name, value in updates.items():
                if field_name in _PROTECTED_FIELDS or field_name == "exercises":
                    continue
                setattr(content, field_name, value)
            return content

        return await self._mutate(client_session_id, creator_id, "update_session", apply)

    async def create_exercise(
        self,
        client_session_id: str,
        exercise_data: dict[str, Any] | None = None,
        order: int | None = None,
        creator_id: str | None = None,
    ) -> Exercise:
        def apply(content: ClientSessionContent) -> Exercise:
            data = dict(exercise_data or {})
            title = data.get("title") or data.get("name") or settings.default_exercise_title
            data.update(
                {
                    "id": self.store.new_id(),
                    "title": title,
                    "name": data.get("name") or title,
                    "order": order if order is not None else len(content.exercises),
                    "sets": normalize_sets(data.get("sets") or []),
                }
            )
            exercise = Exercise.model_validate(data)
            content.exercises.append(exercise)
            return exercise

        return await self._mutate(client_session_id, creator_id, "create_exercise", apply)

    async def update_exercise(
        self, client_session_id: str, exercise_id: str, updates: dict[str, Any], creator_id: str | None = None
    ) -> Exercise:
        def apply(content: ClientSessionContent) -> Exercise:
            exercise = self._exercise_or_raise(content, exercise_id)
            data = exercise.model_dump(by_alias=True)
            data.update({k: v for k, v in updates.items() if k != "id"})
            if "sets" in updates:
                data["sets"] = normalize_sets(updates["sets"] or [])
            updated = Exercise.model_validate(data)
            content.exercises = [updated if ex.id == exercise_id else ex for ex in content.exercises]
            return updated

        return await self._mutate(client_session_id, creator_id, "update_exercise", apply)

    async def delete_exercise(self, client_session_id: str, exercise_id: str, creator_id: str | None = None) -> None:
        def apply(content: ClientSessionContent) -> None:
            self._exercise_or_raise(content, exercise_id)
            content.exercises = [ex for ex in content.exercises if ex.id != exercise_id]

        await self._mutate(client_session_id, creator_id, "delete_exercise", apply)

    async def update_exercise_order(
        self, client_session_id: str, exercise_orders: list[dict[str, Any]], creator_id: str | None = None
    ) -> list[Exercise]:
        """Reorder exercises.

        Args:
            exercise_orders: [{"exerciseId": ..., "order": ...}]; entries without
                an exercise id are skipped
        """

        def apply(content: ClientSessionContent) -> list[Exercise]:
            for entry in exercise_orders:
                exercise_id = entry.get("exerciseId") or entry.get("exercise_id")
                if not exercise_id:
                    continue
                self._exercise_or_raise(content, exercise_id).order = int(entry["order"])
            content.exercises = sort_by_order(content.exercises)
            return content.exercises

        return await self._mutate(client_session_id, creator_id, "update_exercise_order", apply)

    async def get_sets(self, client_session_id: str, exercise_id: str) -> list[SetEntry]:
        content = await self.get_client_session_content(client_session_id)
        exercise = find_exercise(content.exercises, exercise_id) if content is not None else None
        return sort_by_order(exercise.sets) if exercise is not None else []

    async def add_set(
        self,
        client_session_id: str,
        exercise_id: str,
        set_data: dict[str, Any] | None = None,
        creator_id: str | None = None,
    ) -> SetEntry:
        def apply(content: ClientSessionContent) -> SetEntry:
            exercise = self._exercise_or_raise(content, exercise_id)
            position = len(exercise.sets)
            data = {"title": f"Set {position + 1}", "order": position, **(set_data or {})}
            data["id"] = self.store.new_id()
            entry = SetEntry.model_validate(data)
            exercise.sets.append(entry)
            return entry

        return await self._mutate(client_session_id, creator_id, "add_set", apply)

    async def update_set(
        self,
        client_session_id: str,
        exercise_id: str,
        set_id: str,
        updates: dict[str, Any],
        creator_id: str | None = None,
    ) -> SetEntry:
        def apply(content: ClientSessionContent) -> SetEntry:
            exercise = self._exercise_or_raise(content, exercise_id)
            current = next((s for s in exercise.sets if s.id == set_id), None)
            if current is None:
                raise NotFoundError("set", set_id)
            data = current.model_dump(by_alias=True)
            data.update({k: v for k, v in updates.items() if k != "id"})
            updated = SetEntry.model_validate(data)
            exercise.sets = [updated if s.id == set_id else s for s in exercise.sets]
            return updated

        return await self._mutate(client_session_id, creator_id, "update_set", apply)

    async def delete_set(self, client_session_id: str, exercise_id: str, set_id: str, creator_id: str | None = None) -> None:
        def apply(content: ClientSessionContent) -> None:
            exercise = self._exercise_or_raise(content, exercise_id)
            if not any(s.id == set_id for s in exercise.sets):
                raise NotFoundError("set", set_id)
            exercise.sets = [s for s in exercise.sets if s.id != set_id]

        await self._mutate(client_session_id, creator_id, "delete_set", apply)

    async def reset_to_library(self, client_session_id: str, confirm: bool = False) -> bool:
        """Discard the client's copy so the session reads from the library again.

        Raises:
            PreconditionFailedError: Unless confirm=True
        """
        if not confirm:
            raise PreconditionFailedError("Resetting a session discards the client's changes; pass confirm=True to proceed")
        existing = await self.get_client_session_content(client_session_id)
        deleted = await self.delete_client_session_content(client_session_id)
        if deleted:
            await log_content_event(
                self.store,
                "session_copy_reset",
                client_id=existing.client_id if existing is not None else None,
                subject_id=client_session_id,
                details={"from_state": "personalized", "to_state": "library_backed"},
            )
        return deleted

    async def delete_client_session_content(self, client_session_id: str) -> bool:
        if await self.store.get(keys.CLIENT_SESSION_CONTENT, client_session_id) is None:
            return False
        await self.store.delete(keys.CLIENT_SESSION_CONTENT, client_session_id)
        logger.info(f"[COPY_ON_WRITE] Deleted session copy {client_session_id}")
        return True

    async def _mutate(
        self,
        client_session_id: str,
        creator_id: str | None,
        action: str,
        mutate: Callable[[ClientSessionContent], _T],
    ) -> _T:
        content = await self.ensure_session_copy(client_session_id, creator_id)
        result = mutate(content)
        payload = content.to_document(exclude={"id", "created_at", "updated_at"})
        payload["updated_at"] = SERVER_TIMESTAMP
        await self.store.update(keys.CLIENT_SESSION_CONTENT, client_session_id, payload)
        logger.debug(f"[COPY_ON_WRITE] {action} on session copy {client_session_id}")
        await log_content_event(
            self.store,
            "session_copy_edited",
            client_id=content.client_id,
            subject_id=client_session_id,
            details={"action": action},
        )
        return result

    async def _owner(self, client_session_id: str) -> str | None:
        """Client the session is assigned to; parsed from the id only for unassigned sessions."""
        assignment = await self.resolver.get_client_session(client_session_id)
        if assignment is not None:
            return assignment.client_id
        return keys.client_id_from_session_content_id(client_session_id)

    @staticmethod
    def _exercise_or_raise(content: ClientSessionContent, exercise_id: str) -> Exercise:
        exercise = find_exercise(content.exercises, exercise_id)
        if exercise is None:
            raise NotFoundError("exercise", exercise_id)
        return exercise
