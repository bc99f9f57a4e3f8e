"""Content resolver.

Decides what a client sees for a week or a date-assigned session:

    client copy (personalized)  >  plan module (live)  >  nothing

Read-only. A missing plan, module or library session is an inconsistent
reference, not a crash: it is logged and resolves to empty content.
"""

from __future__ import annotations

from loguru import logger

from coachplan.content import keys
from coachplan.content.library import LibraryRepository
from coachplan.content.merge import merge_plan_session
from coachplan.content.plans import PlanRepository
from coachplan.content.tree import sort_by_order
from coachplan.content.types import (
    ClientPlanContent,
    ClientSessionAssignment,
    ClientSessionContent,
    LibrarySession,
    Module,
    PlanSession,
    ResolvedSession,
    ResolvedWeek,
)
from coachplan.scheduling.plan_assignments import PlanAssignmentRepository
from coachplan.store.base import DocumentStore


class ContentResolver:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.plans = PlanRepository(store)
        self.library = LibraryRepository(store)
        self.assignments = PlanAssignmentRepository(store)

    # --- stored copies ---------------------------------------------------

    async def load_week_copy(self, client_id: str, program_id: str, week_key: str) -> ClientPlanContent | None:
        """Read a client week copy with its sessions, or None when there is none."""
        content_id = keys.client_plan_content_id(client_id, program_id, week_key)
        data = await self.store.get(keys.CLIENT_PLAN_CONTENT, content_id)
        if data is None:
            return None
        session_docs = await self.store.list_documents(keys.client_plan_content_sessions(content_id))
        sessions = sort_by_order(PlanSession.model_validate({**d.data, "id": d.id}) for d in session_docs)
        for session in sessions:
            session.exercises = sort_by_order(session.exercises)
        return ClientPlanContent.model_validate({**data, "id": content_id, "sessions": sessions})

    async def load_session_copy(self, client_session_id: str) -> ClientSessionContent | None:
        data = await self.store.get(keys.CLIENT_SESSION_CONTENT, client_session_id)
        if data is None:
            return None
        content = ClientSessionContent.model_validate({**data, "id": client_session_id})
        content.exercises = sort_by_order(content.exercises)
        return content

    # --- plan / library resolution ---------------------------------------

    async def _library_session(self, creator_id: str | None, library_session_id: str) -> LibrarySession | None:
        if not creator_id:
            logger.warning(f"[RESOLVER] Cannot resolve library session {library_session_id}: no creator id")
            return None
        library_session = await self.library.get_session(creator_id, library_session_id)
        if library_session is None:
            logger.bind(creator_id=creator_id, library_session_id=library_session_id).warning(
                "[RESOLVER] Inconsistent reference: library session not found"
            )
        return library_session

    async def resolve_plan_module(self, plan_id: str, module_id: str) -> Module | None:
        """Module with every session merged against the live library.

        Returns None when the plan or module is missing.
        """
        plan = await self.plans.get_plan(plan_id)
        if plan is None:
            logger.bind(plan_id=plan_id).warning("[RESOLVER] Inconsistent reference: plan not found")
            return None
        module = await self.plans.get_module_full(plan_id, module_id)
        if module is None:
            logger.bind(plan_id=plan_id, module_id=module_id).warning("[RESOLVER] Inconsistent reference: module not found")
            return None

        merged: list[PlanSession] = []
        cache: dict[str, LibrarySession | None] = {}
        for session in module.sessions:
            library_session = None
            if session.is_library_reference:
                ref = session.library_session_ref
                if ref not in cache:
                    cache[ref] = await self._library_session(plan.creator_id, ref)
                library_session = cache[ref]
            merged.append(merge_plan_session(session, library_session))
        return module.model_copy(update={"sessions": merged})

    async def resolve_plan_module_by_index(self, plan_id: str, module_index: int) -> Module | None:
        module = await self.plans.get_module_by_index(plan_id, module_index)
        if module is None:
            logger.bind(plan_id=plan_id, module_index=module_index).warning(
                "[RESOLVER] Inconsistent reference: module index out of range"
            )
            return None
        return await self.resolve_plan_module(plan_id, module.id)

    # --- public reads ----------------------------------------------------

    async def resolve_week(self, client_id: str, program_id: str, week_key: str) -> ResolvedWeek:
        """Sessions visible on the calendar for one client week.

        1. A client copy with at least one session wins, verbatim.
        2. Else the assigned plan module, merged against the library.
        3. Else no content.
        """
        copy = await self.load_week_copy(client_id, program_id, week_key)
        if copy is not None and copy.is_personalized:
            logger.debug(f"[RESOLVER] {week_key} resolved from client copy", client_id=client_id, program_id=program_id)
            return ResolvedWeek(
                week_key=week_key,
                source="client_copy",
                title=copy.title,
                plan_id=copy.source_plan_id,
                module_id=copy.source_module_id,
                sessions=copy.sessions,
            )

        assignment = await self.assignments.get(client_id, program_id, week_key)
        if assignment is None:
            return ResolvedWeek(week_key=week_key, source="none")

        module = await self.resolve_plan_module_by_index(assignment.plan_id, assignment.module_index)
        if module is None:
            return ResolvedWeek(week_key=week_key, source="none", plan_id=assignment.plan_id)

        logger.debug(f"[RESOLVER] {week_key} resolved from plan {assignment.plan_id}", client_id=client_id, program_id=program_id)
        return ResolvedWeek(
            week_key=week_key,
            source="plan",
            title=module.title,
            plan_id=assignment.plan_id,
            module_id=module.id,
            sessions=module.sessions,
        )

    async def resolve_weeks(self, client_id: str, program_id: str, week_keys: list[str]) -> dict[str, ResolvedWeek]:
        return {week_key: await self.resolve_week(client_id, program_id, week_key) for week_key in week_keys}

    async def get_client_session(self, client_session_id: str) -> ClientSessionAssignment | None:
        data = await self.store.get(keys.CLIENT_SESSIONS, client_session_id)
        return ClientSessionAssignment.model_validate({**data, "id": client_session_id}) if data is not None else None

    async def resolve_session(self, client_session_id: str, creator_id: str) -> ResolvedSession:
        """Content of a date-assigned session: client copy, else the live library session."""
        copy = await self.load_session_copy(client_session_id)
        if copy is not None:
            return ResolvedSession(
                client_session_id=client_session_id,
                source="client_copy",
                title=copy.title,
                image_url=copy.image_url,
                exercises=copy.exercises,
            )

        assignment = await self.get_client_session(client_session_id)
        if assignment is None:
            logger.bind(client_session_id=client_session_id).warning("[RESOLVER] Inconsistent reference: session assignment not found")
            return ResolvedSession(client_session_id=client_session_id, source="none")

        library_session = await self._library_session(creator_id, assignment.session_id)
        if library_session is None:
            return ResolvedSession(client_session_id=client_session_id, source="none")

        return ResolvedSession(
            client_session_id=client_session_id,
            source="library",
            title=library_session.title,
            image_url=library_session.image_url,
            exercises=[ex.model_copy(deep=True) for ex in sort_by_order(library_session.exercises)],
        )
