"""Copy-on-write personalization of client weeks.

A client week (client x program x week) moves through three states:

    NoAssignment -> PlanBacked -> Personalized

PlanBacked content is never edited in place. Every mutator first calls
ensure_week_copy, which deep-copies the assigned plan module into
client_plan_content/{clientId}_{programId}_{weekKey} (library references
resolved into literal exercises at copy time), and then edits the copy.
reset_to_source deletes the copy so the week reads from the plan again.

Storage: the root document holds the week metadata and provenance; each
session is a document in client_plan_content/{id}/sessions with its
exercises and sets embedded.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from loguru import logger

from coachplan.audit.content_log import log_content_event
from coachplan.config.settings import settings
from coachplan.content import keys
from coachplan.content.resolver import ContentResolver
from coachplan.content.tree import clone_exercises_with_new_ids, find_exercise, normalize_exercises, normalize_sets, sort_by_order
from coachplan.content.types import ClientPlanContent, Exercise, PlanSession, Provenance, SetEntry
from coachplan.errors import CrossWeekMoveError, NotFoundError, PreconditionFailedError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore
from coachplan.utils.calendar import parse_week_key
from coachplan.workflows.saga import Workflow, WorkflowRecord

_T = TypeVar("_T")

MOVE_SESSION_WORKFLOW = "move_session_across_weeks"

_SESSION_FIELD_ALIASES = {"day_index": "dayIndex", "library_session_ref": "librarySessionRef", "use_local_content": "useLocalContent"}


def _check_day_index(day_index: int | None) -> None:
    if day_index is not None and not 0 <= day_index <= 6:
        raise ValueError(f"day index must be between 0 (Monday) and 6 (Sunday), got {day_index}")


class ClientPlanContentService:
    def __init__(self, store: DocumentStore, resolver: ContentResolver | None = None):
        self.store = store
        self.resolver = resolver or ContentResolver(store)

    # --- reads -------------------------------------------------------------

    async def get_client_plan_content(self, client_id: str, program_id: str, week_key: str) -> ClientPlanContent | None:
        """The week copy with sessions, exercises and sets in order, or None."""
        return await self.resolver.load_week_copy(client_id, program_id, week_key)

    async def get_session_content(self, client_id: str, program_id: str, week_key: str, session_id: str) -> PlanSession | None:
        content_id = keys.client_plan_content_id(client_id, program_id, week_key)
        return await self._load_session(content_id, session_id)

    async def get_exercises(self, client_id: str, program_id: str, week_key: str, session_id: str) -> list[Exercise]:
        session = await self.get_session_content(client_id, program_id, week_key, session_id)
        return session.exercises if session is not None else []

    async def get_sets(self, client_id: str, program_id: str, week_key: str, session_id: str, exercise_id: str) -> list[SetEntry]:
        session = await self.get_session_content(client_id, program_id, week_key, session_id)
        exercise = find_exercise(session.exercises, exercise_id) if session is not None else None
        return sort_by_order(exercise.sets) if exercise is not None else []

    # --- copy lifecycle ----------------------------------------------------

    async def copy_from_plan(self, client_id: str, program_id: str, week_key: str, plan_id: str, module_id: str) -> ClientPlanContent:
        """Deep-copy a plan module into the client's week in one atomic batch.

        Sessions that reference the library get the library's exercises and
        sets as literal data; librarySessionRef stays on the copied session
        as provenance. Sessions already in the copy that did not come from
        the module (added client-side) are kept.

        Raises:
            NotFoundError: If the plan or module does not exist (nothing is written)
            BatchCommitError: If the store rejects the batch (nothing is written)
        """
        parse_week_key(week_key)
        module = await self.resolver.resolve_plan_module(plan_id, module_id)
        if module is None:
            raise NotFoundError("plan module", f"{plan_id}/{module_id}")

        content_id = keys.client_plan_content_id(client_id, program_id, week_key)
        sessions_collection = keys.client_plan_content_sessions(content_id)
        provenance = Provenance(source_type="plan", source_id=plan_id, source_sub_id=module_id)

        batch = self.store.batch()
        batch.set(
            keys.CLIENT_PLAN_CONTENT,
            content_id,
            {
                "title": module.title,
                "order": module.order,
                "client_id": client_id,
                "program_id": program_id,
                "week_key": week_key,
                "provenance": provenance.to_document(),
                "source_plan_id": plan_id,
                "source_module_id": module_id,
                "created_at": SERVER_TIMESTAMP,
                "updated_at": SERVER_TIMESTAMP,
            },
        )
        for session in module.sessions:
            payload = session.to_document(exclude={"id"})
            payload["updated_at"] = SERVER_TIMESTAMP
            batch.set(sessions_collection, session.id, payload)

        try:
            await batch.commit()
        except Exception:
            logger.bind(client_id=client_id, content_id=content_id).exception("[COPY_ON_WRITE] copy_from_plan failed")
            raise

        logger.info(f"[COPY_ON_WRITE] Copied plan {plan_id} module {module_id} into {content_id} ({len(module.sessions)} sessions)")
        await log_content_event(
            self.store,
            "week_copy_created",
            client_id=client_id,
            subject_id=content_id,
            details={"from_state": "plan_backed", "to_state": "personalized", "plan_id": plan_id, "module_id": module_id},
        )
        copy = await self.get_client_plan_content(client_id, program_id, week_key)
        if copy is None:
            raise NotFoundError("client plan content", content_id)
        return copy

    async def ensure_week_copy(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> ClientPlanContent:
        """Make sure the week has a copy that can be edited.

        - A copy with sessions (or one the client emptied) is returned as is.
        - Otherwise, when plan provenance is known (passed in, or taken from
          the week's plan assignment), the module is copied. This also
          repairs an empty shell left behind for a plan-backed week.
        - Otherwise a minimal empty shell is created for client-only sessions.

        Raises:
            PreconditionFailedError: If the program is not assigned to the client
            NotFoundError: If the given plan module does not exist
        """
        existing = await self.get_client_plan_content(client_id, program_id, week_key)
        if existing is not None and existing.is_personalized:
            return existing

        if existing is None:
            await self._require_client_program(client_id, program_id)

        if not (plan_id and module_id):
            assigned = await self._assigned_source(client_id, program_id, week_key)
            if assigned is not None:
                plan_id, module_id = assigned

        if plan_id and module_id:
            return await self.copy_from_plan(client_id, program_id, week_key, plan_id, module_id)

        if existing is not None:
            return existing

        parse_week_key(week_key)
        content_id = keys.client_plan_content_id(client_id, program_id, week_key)
        await self.store.set(
            keys.CLIENT_PLAN_CONTENT,
            content_id,
            {
                "title": settings.personalized_week_title,
                "order": 0,
                "client_id": client_id,
                "program_id": program_id,
                "week_key": week_key,
                "created_at": SERVER_TIMESTAMP,
                "updated_at": SERVER_TIMESTAMP,
            },
        )
        logger.info(f"[COPY_ON_WRITE] Created empty week shell {content_id}")
        await log_content_event(
            self.store,
            "week_shell_created",
            client_id=client_id,
            subject_id=content_id,
            details={"from_state": "no_assignment", "to_state": "personalized"},
        )
        shell = await self.get_client_plan_content(client_id, program_id, week_key)
        if shell is None:
            raise NotFoundError("client plan content", content_id)
        return shell

    async def reset_to_source(self, client_id: str, program_id: str, week_key: str, confirm: bool = False) -> bool:
        """Discard the client's personalization of a week.

        The next read resolves from the assigned plan again.

        Raises:
            PreconditionFailedError: Unless confirm=True

        Returns:
            True if a copy was deleted
        """
        if not confirm:
            raise PreconditionFailedError("Resetting a week discards the client's changes; pass confirm=True to proceed")
        deleted = await self.delete_client_plan_content(client_id, program_id, week_key)
        if deleted:
            has_plan = await self.resolver.assignments.get(client_id, program_id, week_key) is not None
            await log_content_event(
                self.store,
                "week_copy_reset",
                client_id=client_id,
                subject_id=keys.client_plan_content_id(client_id, program_id, week_key),
                details={"from_state": "personalized", "to_state": "plan_backed" if has_plan else "no_assignment"},
            )
        return deleted

    async def delete_client_plan_content(self, client_id: str, program_id: str, week_key: str) -> bool:
        """Delete a week copy and all of its sessions in one batch."""
        content_id = keys.client_plan_content_id(client_id, program_id, week_key)
        return await self.delete_by_content_id(content_id)

    async def delete_by_content_id(self, content_id: str) -> bool:
        if await self.store.get(keys.CLIENT_PLAN_CONTENT, content_id) is None:
            return False
        sessions_collection = keys.client_plan_content_sessions(content_id)
        batch = self.store.batch()
        for doc in await self.store.list_documents(sessions_collection):
            batch.delete(sessions_collection, doc.id)
        batch.delete(keys.CLIENT_PLAN_CONTENT, content_id)
        await batch.commit()
        logger.info(f"[COPY_ON_WRITE] Deleted week copy {content_id}")
        return True

    # --- session mutators --------------------------------------------------

    async def add_session(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        title: str | None = None,
        day_index: int | None = None,
        exercises: list[dict[str, Any]] | None = None,
        order: int | None = None,
        plan_id: str | None = None,
        module_id: str | None = None,
        session_id: str | None = None,
    ) -> PlanSession:
        """Add a client-only session (with optional exercises and sets) to a week."""
        _check_day_index(day_index)
        copy = await self.ensure_week_copy(client_id, program_id, week_key, plan_id, module_id)
        session = PlanSession(
            id=session_id or self.store.new_id(),
            title=title or settings.default_session_title,
            order=order if order is not None else len(copy.sessions),
            dayIndex=day_index,
            useLocalContent=True,
            exercises=normalize_exercises(exercises or [], default_title=settings.default_exercise_title),
        )
        await self._save_session(copy.id, session)
        await self._edited(client_id, copy.id, "add_session", session.id)
        return session

    async def update_session(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        updates: dict[str, Any],
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> PlanSession:
        """Update session fields (title, dayIndex, image_url, ...). Raises NotFoundError for unknown sessions."""
        payload = {_SESSION_FIELD_ALIASES.get(k, k): v for k, v in updates.items() if k != "id"}
        if "dayIndex" in payload:
            _check_day_index(payload["dayIndex"])

        def apply(session: PlanSession) -> PlanSession:
            data = session.model_dump(by_alias=True)
            data.update(payload)
            if "exercises" in payload:
                data["exercises"] = normalize_exercises(payload["exercises"], default_title=settings.default_exercise_title)
            return PlanSession.model_validate(data)

        return await self._replace_session(client_id, program_id, week_key, session_id, plan_id, module_id, "update_session", apply)

    async def move_session_day(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        day_index: int,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> PlanSession:
        """Move a session to another day of the same week."""
        return await self.update_session(client_id, program_id, week_key, session_id, {"dayIndex": day_index}, plan_id, module_id)

    async def delete_session(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> None:
        copy = await self.ensure_week_copy(client_id, program_id, week_key, plan_id, module_id)
        if not any(s.id == session_id for s in copy.sessions):
            raise NotFoundError("client plan session", session_id)
        await self._remove_session(copy.id, session_id)
        await self._edited(client_id, copy.id, "delete_session", session_id)

    # --- exercise / set mutators -------------------------------------------

    async def create_exercise(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        title: str | None = None,
        order: int | None = None,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> Exercise:
        def apply(session: PlanSession) -> Exercise:
            exercise_title = title or settings.default_exercise_title
            exercise = Exercise(
                id=self.store.new_id(),
                title=exercise_title,
                name=exercise_title,
                order=order if order is not None else len(session.exercises),
            )
            session.exercises.append(exercise)
            return exercise

        return await self._mutate_session(client_id, program_id, week_key, session_id, plan_id, module_id, "create_exercise", apply)

    async def update_exercise(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        exercise_id: str,
        updates: dict[str, Any],
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> Exercise:
        def apply(session: PlanSession) -> Exercise:
            exercise = self._exercise_or_raise(session, exercise_id)
            data = exercise.model_dump(by_alias=True)
            data.update({k: v for k, v in updates.items() if k != "id"})
            if "sets" in updates:
                data["sets"] = normalize_sets(updates["sets"] or [])
            updated = Exercise.model_validate(data)
            session.exercises = [updated if ex.id == exercise_id else ex for ex in session.exercises]
            return updated

        return await self._mutate_session(client_id, program_id, week_key, session_id, plan_id, module_id, "update_exercise", apply)

    async def delete_exercise(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        exercise_id: str,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> None:
        def apply(session: PlanSession) -> None:
            self._exercise_or_raise(session, exercise_id)
            session.exercises = [ex for ex in session.exercises if ex.id != exercise_id]

        await self._mutate_session(client_id, program_id, week_key, session_id, plan_id, module_id, "delete_exercise", apply)

    async def add_set(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        exercise_id: str,
        set_data: dict[str, Any] | None = None,
        order: int | None = None,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> SetEntry:
        def apply(session: PlanSession) -> SetEntry:
            exercise = self._exercise_or_raise(session, exercise_id)
            position = order if order is not None else len(exercise.sets)
            data = {"title": f"Set {position + 1}", **(set_data or {})}
            data.update({"id": self.store.new_id(), "order": position})
            entry = SetEntry.model_validate(data)
            exercise.sets.append(entry)
            return entry

        return await self._mutate_session(client_id, program_id, week_key, session_id, plan_id, module_id, "add_set", apply)

    async def update_set(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        exercise_id: str,
        set_id: str,
        updates: dict[str, Any],
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> SetEntry:
        def apply(session: PlanSession) -> SetEntry:
            exercise = self._exercise_or_raise(session, exercise_id)
            current = next((s for s in exercise.sets if s.id == set_id), None)
            if current is None:
                raise NotFoundError("set", set_id)
            data = current.model_dump(by_alias=True)
            data.update({k: v for k, v in updates.items() if k != "id"})
            updated = SetEntry.model_validate(data)
            exercise.sets = [updated if s.id == set_id else s for s in exercise.sets]
            return updated

        return await self._mutate_session(client_id, program_id, week_key, session_id, plan_id, module_id, "update_set", apply)

    async def delete_set(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        exercise_id: str,
        set_id: str,
        plan_id: str | None = None,
        module_id: str | None = None,
    ) -> None:
        def apply(session: PlanSession) -> None:
            exercise = self._exercise_or_raise(session, exercise_id)
            if not any(s.id == set_id for s in exercise.sets):
                raise NotFoundError("set", set_id)
            exercise.sets = [s for s in exercise.sets if s.id != set_id]

        await self._mutate_session(client_id, program_id, week_key, session_id, plan_id, module_id, "delete_set", apply)

    # --- cross-week move ---------------------------------------------------

    def _move_workflow(self) -> Workflow:
        return Workflow(
            self.store,
            MOVE_SESSION_WORKFLOW,
            {
                "ensure_target": self._move_ensure_target,
                "add_to_target": self._move_add_to_target,
                "delete_from_source": self._move_delete_from_source,
            },
            error_class=CrossWeekMoveError,
        )

    async def move_session_across_weeks(
        self,
        client_id: str,
        program_id: str,
        source_week_key: str,
        target_week_key: str,
        session_id: str,
        target_day_index: int,
        target_plan_id: str | None = None,
        target_module_id: str | None = None,
    ) -> WorkflowRecord:
        """Move a session to a day of another week.

        Runs as a persisted workflow: ensure the target week copy, add the
        session there under fresh ids, delete it from the source week. A
        failure partway leaves the session in both weeks (or neither) and
        raises CrossWeekMoveError carrying the workflow id; resume_move
        finishes the move.

        Raises:
            NotFoundError: If the session is not in the source week (nothing is written)
            CrossWeekMoveError: If a step of the move fails
        """
        _check_day_index(target_day_index)
        parse_week_key(target_week_key)
        visible = await self.resolver.resolve_week(client_id, program_id, source_week_key)
        if not any(s.id == session_id for s in visible.sessions):
            raise NotFoundError("client plan session", session_id)
        source = await self.ensure_week_copy(client_id, program_id, source_week_key)
        session = next((s for s in source.sessions if s.id == session_id), None)
        if session is None:
            raise NotFoundError("client plan session", session_id)

        moved = session.model_copy(
            update={"id": self.store.new_id(), "day_index": target_day_index, "exercises": clone_exercises_with_new_ids(session.exercises)},
            deep=True,
        )
        payload = {
            "client_id": client_id,
            "program_id": program_id,
            "source_week_key": source_week_key,
            "target_week_key": target_week_key,
            "session_id": session_id,
            "target_plan_id": target_plan_id,
            "target_module_id": target_module_id,
            "new_session_id": moved.id,
            "session": moved.to_document(exclude={"id"}),
        }
        logger.info(
            f"[COPY_ON_WRITE] Moving session {session_id} from {source_week_key} to {target_week_key} (day {target_day_index})",
            client_id=client_id,
        )
        return await self._move_workflow().start(
            ["ensure_target", "add_to_target", "delete_from_source"], payload, client_id=client_id
        )

    async def resume_move(self, workflow_id: str) -> WorkflowRecord:
        """Finish a cross-week move that failed partway."""
        return await self._move_workflow().resume(workflow_id)

    async def _move_ensure_target(self, step: str, payload: dict[str, Any]) -> None:
        await self.ensure_week_copy(
            payload["client_id"],
            payload["program_id"],
            payload["target_week_key"],
            payload.get("target_plan_id"),
            payload.get("target_module_id"),
        )

    async def _move_add_to_target(self, step: str, payload: dict[str, Any]) -> None:
        content_id = keys.client_plan_content_id(payload["client_id"], payload["program_id"], payload["target_week_key"])
        sessions_collection = keys.client_plan_content_sessions(content_id)
        existing = await self.store.list_documents(sessions_collection)
        session = PlanSession.model_validate({**payload["session"], "id": payload["new_session_id"]})
        if not any(doc.id == session.id for doc in existing):
            session.order = len(existing)
        await self._save_session(content_id, session)
        await self._edited(payload["client_id"], content_id, "move_session_in", session.id)

    async def _move_delete_from_source(self, step: str, payload: dict[str, Any]) -> None:
        content_id = keys.client_plan_content_id(payload["client_id"], payload["program_id"], payload["source_week_key"])
        await self._remove_session(content_id, payload["session_id"])
        await self._edited(payload["client_id"], content_id, "move_session_out", payload["session_id"])

    # --- internals ---------------------------------------------------------

    async def _require_client_program(self, client_id: str, program_id: str) -> None:
        if await self.store.get(keys.CLIENT_PROGRAMS, keys.client_program_id(client_id, program_id)) is None:
            raise PreconditionFailedError(f"Program {program_id} is not assigned to client {client_id}; assign it before editing weeks")

    async def _assigned_source(self, client_id: str, program_id: str, week_key: str) -> tuple[str, str] | None:
        """(plan_id, module_id) of the week's plan assignment, if it resolves."""
        assignment = await self.resolver.assignments.get(client_id, program_id, week_key)
        if assignment is None:
            return None
        module = await self.resolver.plans.get_module_by_index(assignment.plan_id, assignment.module_index)
        if module is None:
            logger.bind(plan_id=assignment.plan_id, module_index=assignment.module_index).warning(
                "[COPY_ON_WRITE] Week assignment points past the plan's modules, creating an empty copy"
            )
            return None
        return assignment.plan_id, module.id

    async def _load_session(self, content_id: str, session_id: str) -> PlanSession | None:
        data = await self.store.get(keys.client_plan_content_sessions(content_id), session_id)
        if data is None:
            return None
        session = PlanSession.model_validate({**data, "id": session_id})
        session.exercises = sort_by_order(session.exercises)
        for exercise in session.exercises:
            exercise.sets = sort_by_order(exercise.sets)
        return session

    async def _save_session(self, content_id: str, session: PlanSession) -> None:
        payload = session.to_document(exclude={"id"})
        payload["updated_at"] = SERVER_TIMESTAMP
        await self.store.set(keys.client_plan_content_sessions(content_id), session.id, payload)
        await self.store.update(keys.CLIENT_PLAN_CONTENT, content_id, {"updated_at": SERVER_TIMESTAMP, "cleared": False})

    async def _remove_session(self, content_id: str, session_id: str) -> None:
        sessions_collection = keys.client_plan_content_sessions(content_id)
        await self.store.delete(sessions_collection, session_id)
        remaining = await self.store.list_documents(sessions_collection)
        updates: dict[str, Any] = {"updated_at": SERVER_TIMESTAMP}
        if not remaining:
            updates["cleared"] = True
        if await self.store.exists(keys.CLIENT_PLAN_CONTENT, content_id):
            await self.store.update(keys.CLIENT_PLAN_CONTENT, content_id, updates)

    async def _replace_session(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        plan_id: str | None,
        module_id: str | None,
        action: str,
        build: Callable[[PlanSession], PlanSession],
    ) -> PlanSession:
        copy = await self.ensure_week_copy(client_id, program_id, week_key, plan_id, module_id)
        session = await self._load_session(copy.id, session_id)
        if session is None:
            raise NotFoundError("client plan session", session_id)
        updated = build(session)
        await self._save_session(copy.id, updated)
        await self._edited(client_id, copy.id, action, session_id)
        return updated

    async def _mutate_session(
        self,
        client_id: str,
        program_id: str,
        week_key: str,
        session_id: str,
        plan_id: str | None,
        module_id: str | None,
        action: str,
        mutate: Callable[[PlanSession], _T],
    ) -> _T:
        result: list[_T] = []

        def build(session: PlanSession) -> PlanSession:
            result.append(mutate(session))
            return session

        await self._replace_session(client_id, program_id, week_key, session_id, plan_id, module_id, action, build)
        return result[0]

    @staticmethod
    def _exercise_or_raise(session: PlanSession, exercise_id: str) -> Exercise:
        exercise = find_exercise(session.exercises, exercise_id)
        if exercise is None:
            raise NotFoundError("exercise", exercise_id)
        return exercise

    async def _edited(self, client_id: str, content_id: str, action: str, session_id: str) -> None:
        logger.debug(f"[COPY_ON_WRITE] {action} on {content_id} session {session_id}")
        await log_content_event(
            self.store, "week_copy_edited", client_id=client_id, subject_id=content_id, details={"action": action, "session_id": session_id}
        )
