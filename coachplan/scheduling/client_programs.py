"""Client programs and the plan-to-calendar scheduler.

A program assigned to a client (client_programs/{clientId}_{programId}) is
the container for that client's calendar. Plans are laid onto it week by
week: module i of a plan fills the i-th consecutive week starting at the
chosen week, and every module session with a day index is also placed on
its calendar date as a client_sessions record.

The client program also holds per-client overrides (any field set through
update_client_override, e.g. modules.<moduleId>.sessions.<sessionId>.title)
and a version snapshot of the library sessions its content plan references,
taken when the plan is attached, so edits made since then can be detected.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from loguru import logger

from coachplan.audit.content_log import log_content_event
from coachplan.content import keys
from coachplan.content.library import LibraryRepository
from coachplan.content.plan_copy import ClientPlanContentService
from coachplan.content.plans import PlanRepository
from coachplan.content.types import ClientPlanContent, ClientProgram, Module, PlanAssignment
from coachplan.errors import NotFoundError, PreconditionFailedError
from coachplan.scheduling.client_sessions import ClientSessionService
from coachplan.scheduling.plan_assignments import PlanAssignmentRepository
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore
from coachplan.utils.calendar import consecutive_week_keys, date_for_day_index, parse_week_key
from coachplan.workflows.saga import Workflow, step_argument

ASSIGN_PLAN_WORKFLOW = "assign_plan_to_consecutive_weeks"

# Fields overrides can never replace
_PROGRAM_IDENTITY_FIELDS = {"id", "program_id", "user_id", "version_snapshot", "created_at", "updated_at"}
# Fields copied from one client's program to another's
_COPYABLE_OVERRIDE_FIELDS = ("modules", "title", "description", "image_url")


def _copied_module_id(copy: ClientPlanContent) -> str | None:
    if copy.source_module_id:
        return copy.source_module_id
    return copy.provenance.source_sub_id if copy.provenance is not None else None


class ClientProgramService:
    def __init__(
        self,
        store: DocumentStore,
        plan_content: ClientPlanContentService | None = None,
        client_sessions: ClientSessionService | None = None,
    ):
        self.store = store
        self.plan_content = plan_content or ClientPlanContentService(store)
        self.client_sessions = client_sessions or ClientSessionService(store)
        self.plans = PlanRepository(store)
        self.library = LibraryRepository(store)
        self.assignments = PlanAssignmentRepository(store)

    # --- client program ------------------------------------------------------

    async def assign_program_to_client(
        self,
        program_id: str,
        client_id: str,
        content_plan_id: str | None = None,
        initial_overrides: dict[str, Any] | None = None,
    ) -> str:
        """Create the client program if it does not exist yet.

        Args:
            program_id: Program to assign
            client_id: Client receiving it
            content_plan_id: Plan the program takes its content from
            initial_overrides: Client-specific fields stored on the new record;
                may also carry content_plan_id

        Returns:
            The client program id ({clientId}_{programId})
        """
        client_program_id = keys.client_program_id(client_id, program_id)
        if await self.store.exists(keys.CLIENT_PROGRAMS, client_program_id):
            return client_program_id

        overrides = {k: v for k, v in (initial_overrides or {}).items() if k not in _PROGRAM_IDENTITY_FIELDS}
        content_plan_id = overrides.pop("content_plan_id", content_plan_id)
        await self.store.set(
            keys.CLIENT_PROGRAMS,
            client_program_id,
            {
                **overrides,
                "program_id": program_id,
                "user_id": client_id,
                "content_plan_id": content_plan_id,
                "version_snapshot": await self._version_snapshot(content_plan_id),
                "created_at": SERVER_TIMESTAMP,
                "updated_at": SERVER_TIMESTAMP,
            },
        )
        logger.info(f"[SCHEDULER] Program {program_id} assigned to client", client_id=client_id)
        return client_program_id

    async def get_client_program(self, program_id: str, client_id: str) -> ClientProgram | None:
        client_program_id = keys.client_program_id(client_id, program_id)
        data = await self.store.get(keys.CLIENT_PROGRAMS, client_program_id)
        return ClientProgram.model_validate({**data, "id": client_program_id}) if data is not None else None

    async def get_client_programs_for_program(self, program_id: str) -> list[ClientProgram]:
        """Every client's copy of a program, ordered by client program id."""
        docs = await self.store.where_or_scan(keys.CLIENT_PROGRAMS, "program_id", program_id)
        return sorted((ClientProgram.model_validate({**d.data, "id": d.id}) for d in docs), key=lambda p: p.id)

    async def set_client_content_plan(self, program_id: str, client_id: str, plan_id: str | None) -> None:
        """Set (or clear) the plan a client program takes its content from.

        The library version snapshot is retaken for the new plan.

        Raises:
            PreconditionFailedError: If the program is not assigned to the client
        """
        client_program_id = keys.client_program_id(client_id, program_id)
        if not await self.store.exists(keys.CLIENT_PROGRAMS, client_program_id):
            raise PreconditionFailedError("Client program not found. Assign the program to the client first.")
        await self.store.update(
            keys.CLIENT_PROGRAMS,
            client_program_id,
            {
                "content_plan_id": plan_id,
                "version_snapshot": await self._version_snapshot(plan_id),
                "updated_at": SERVER_TIMESTAMP,
            },
        )

    async def delete_client_program(self, program_id: str, client_id: str) -> None:
        """Unassign a program: deletes the client program and its week assignments."""
        batch = self.store.batch()
        for doc in await self.store.where_or_scan(
            keys.CLIENT_PLAN_ASSIGNMENTS, "client_program_id", keys.client_program_id(client_id, program_id)
        ):
            batch.delete(keys.CLIENT_PLAN_ASSIGNMENTS, doc.id)
        batch.delete(keys.CLIENT_PROGRAMS, keys.client_program_id(client_id, program_id))
        await batch.commit()
        logger.info(f"[SCHEDULER] Program {program_id} unassigned from client", client_id=client_id)

    # --- overrides -------------------------------------------------------------

    async def update_client_override(self, program_id: str, client_id: str, path: str, value: Any) -> None:
        """Set one client override at a dotted path; None clears it.

        Raises:
            ValueError: If the path is empty or addresses an identity field
            NotFoundError: If the program is not assigned to the client
        """
        root = path.split(".", 1)[0]
        if not root or any(not part for part in path.split(".")):
            raise ValueError(f"Invalid override path '{path}'")
        if root in _PROGRAM_IDENTITY_FIELDS:
            raise ValueError(f"'{root}' cannot be overridden")
        await self.store.update(
            keys.CLIENT_PROGRAMS,
            keys.client_program_id(client_id, program_id),
            {path: value, "updated_at": SERVER_TIMESTAMP},
        )
        logger.debug(f"[SCHEDULER] Client override {path} updated", client_id=client_id, program_id=program_id)

    async def bulk_update_client_programs(self, program_id: str, client_ids: Iterable[str], path: str, value: Any) -> int:
        """Apply the same override to several clients. Stops at the first client that fails."""
        updated = 0
        for client_id in client_ids:
            await self.update_client_override(program_id, client_id, path, value)
            updated += 1
        logger.info(f"[SCHEDULER] Bulk updated {updated} client programs", program_id=program_id, path=path)
        return updated

    async def copy_client_overrides(self, source_client_id: str, target_client_id: str, program_id: str) -> None:
        """Copy one client's overrides (modules, title, description, image_url) to another.

        The target's program is created when it does not exist yet.

        Raises:
            NotFoundError: If the source client has no such program
        """
        source = await self.store.get(keys.CLIENT_PROGRAMS, keys.client_program_id(source_client_id, program_id))
        if source is None:
            raise NotFoundError("client program", keys.client_program_id(source_client_id, program_id))
        overrides = {name: source.get(name) for name in _COPYABLE_OVERRIDE_FIELDS}
        overrides["modules"] = overrides["modules"] or {}

        target_id = keys.client_program_id(target_client_id, program_id)
        if await self.store.exists(keys.CLIENT_PROGRAMS, target_id):
            await self.store.update(keys.CLIENT_PROGRAMS, target_id, {**overrides, "updated_at": SERVER_TIMESTAMP})
        else:
            await self.assign_program_to_client(program_id, target_client_id, initial_overrides=overrides)
        logger.info(f"[SCHEDULER] Copied overrides of {source_client_id} to {target_client_id}", program_id=program_id)

    # --- library version snapshot ----------------------------------------------

    async def extract_library_versions(self, plan_id: str) -> dict[str, int]:
        """Current version of every library session a plan references, {librarySessionId: version}.

        Sessions that cannot be loaded are left out.
        """
        plan = await self.plans.get_plan(plan_id)
        if plan is None:
            logger.bind(plan_id=plan_id).warning("[SCHEDULER] Cannot snapshot library versions: plan not found")
            return {}

        versions: dict[str, int] = {}
        for module in await self.plans.get_modules(plan_id):
            for session in await self.plans.get_sessions(plan_id, module.id):
                ref = session.library_session_ref
                if not ref or ref in versions:
                    continue
                library_session = await self.library.get_session(plan.creator_id, ref)
                if library_session is None:
                    logger.bind(plan_id=plan_id, library_session_id=ref).warning("[SCHEDULER] Library session not found for snapshot")
                    continue
                versions[ref] = library_session.version
        return versions

    async def _version_snapshot(self, plan_id: str | None) -> dict[str, Any]:
        return {
            "plan_id": plan_id,
            "library_versions": {"sessions": await self.extract_library_versions(plan_id) if plan_id else {}},
        }

    async def get_outdated_library_sessions(self, program_id: str, client_id: str) -> dict[str, int]:
        """Library sessions edited since the client program's snapshot, {librarySessionId: current version}.

        Raises:
            NotFoundError: If the program is not assigned to the client
        """
        client_program = await self.get_client_program(program_id, client_id)
        if client_program is None:
            raise NotFoundError("client program", keys.client_program_id(client_id, program_id))
        if not client_program.content_plan_id:
            return {}

        snapshot = ((client_program.version_snapshot or {}).get("library_versions") or {}).get("sessions") or {}
        current = await self.extract_library_versions(client_program.content_plan_id)
        return {ref: version for ref, version in sorted(current.items()) if snapshot.get(ref) != version}

    async def refresh_version_snapshot(self, program_id: str, client_id: str) -> None:
        """Retake the snapshot, marking the current library versions as seen."""
        client_program = await self.get_client_program(program_id, client_id)
        if client_program is None:
            raise NotFoundError("client program", keys.client_program_id(client_id, program_id))
        await self.store.update(
            keys.CLIENT_PROGRAMS,
            client_program.id,
            {"version_snapshot": await self._version_snapshot(client_program.content_plan_id), "updated_at": SERVER_TIMESTAMP},
        )

    # --- plan assignments ----------------------------------------------------

    async def get_plan_assignments(self, program_id: str, client_id: str) -> dict[str, PlanAssignment]:
        return await self.assignments.get_all(client_id, program_id)

    async def assign_plan_to_week(self, program_id: str, client_id: str, plan_id: str, week_key: str, module_index: int = 0) -> None:
        """Assign one plan module to one week, replacing that week's assignment only.

        A week copy personalized from another plan, or from another module of
        the same plan, no longer matches the week and is removed; a copy of
        the same module is kept. When the week already held an assignment its
        dated sessions are cleared (completed ones stay), then the module's
        sessions with a day index are placed on their dates.
        """
        parse_week_key(week_key)
        await self.assign_program_to_client(program_id, client_id)

        previous = await self.assignments.get(client_id, program_id, week_key)
        module = await self.plans.get_module_by_index(plan_id, module_index)
        copy = await self.plan_content.get_client_plan_content(client_id, program_id, week_key)
        copy_kept = copy is not None and self._copy_matches(copy, plan_id, module)
        if copy is not None and copy.source_plan_id is not None and not copy_kept:
            await self.plan_content.delete_client_plan_content(client_id, program_id, week_key)
            logger.info(
                f"[SCHEDULER] Dropped week copy of plan {copy.source_plan_id} module {_copied_module_id(copy)} from {week_key}",
                client_id=client_id,
            )

        if previous is not None:
            completed = await self.get_completed_session_ids(program_id, client_id)
            await self.client_sessions.delete_client_sessions_for_week(client_id, program_id, week_key, keep_session_ids=completed)

        await self.assignments.set(client_id, program_id, week_key, plan_id, module_index)
        if module is not None:
            await self._place_module_sessions(client_id, program_id, plan_id, week_key, module.id)
        await log_content_event(
            self.store,
            "week_plan_assigned",
            client_id=client_id,
            subject_id=keys.plan_assignment_id(client_id, program_id, week_key),
            details={
                "from_state": "no_assignment" if previous is None else "plan_backed",
                "to_state": "personalized" if copy_kept else "plan_backed",
                "plan_id": plan_id,
                "module_index": module_index,
            },
        )

    @staticmethod
    def _copy_matches(copy: ClientPlanContent, plan_id: str, module: Module | None) -> bool:
        """Whether a week copy was personalized from the module now assigned to its week."""
        if copy.source_plan_id != plan_id:
            return False
        copied_module_id = _copied_module_id(copy)
        if copied_module_id is None:
            return True
        return module is not None and module.id == copied_module_id

    def _assign_workflow(self) -> Workflow:
        return Workflow(
            self.store,
            ASSIGN_PLAN_WORKFLOW,
            {"client_program": self._step_client_program, "assign_week": self._step_assign_week},
        )

    async def assign_plan_to_consecutive_weeks(
        self, program_id: str, client_id: str, plan_id: str, start_week_key: str
    ) -> dict[str, PlanAssignment]:
        """Lay a plan's modules onto consecutive weeks starting at start_week_key.

        Module i (in module order) fills week i. Each module session with a
        day index is also placed on its date. Runs as a resumable workflow,
        one step per week.

        Returns:
            {weekKey: PlanAssignment} for the weeks written

        Raises:
            NotFoundError: If the plan does not exist (nothing is written)
            PreconditionFailedError: If the plan has no modules (nothing is written)
            WorkflowFailedError: If a week fails; earlier weeks stay assigned
        """
        parse_week_key(start_week_key)
        if await self.plans.get_plan(plan_id) is None:
            raise NotFoundError("plan", plan_id)
        modules = await self.plans.get_modules(plan_id)
        if not modules:
            raise PreconditionFailedError("Plan has no weeks")

        week_keys = consecutive_week_keys(start_week_key, len(modules))
        payload = {
            "program_id": program_id,
            "client_id": client_id,
            "plan_id": plan_id,
            "week_keys": week_keys,
        }
        steps = ["client_program"] + [f"assign_week:{index}" for index in range(len(modules))]
        logger.info(
            f"[SCHEDULER] Assigning plan {plan_id} to {week_keys[0]}..{week_keys[-1]} ({len(modules)} weeks)", client_id=client_id
        )
        await self._assign_workflow().start(steps, payload, client_id=client_id)
        return await self._assignments_for(client_id, program_id, week_keys)

    async def resume_assignment(self, workflow_id: str) -> dict[str, PlanAssignment]:
        """Finish a consecutive-weeks assignment that failed partway."""
        record = await self._assign_workflow().resume(workflow_id)
        return await self._assignments_for(record.payload["client_id"], record.payload["program_id"], record.payload["week_keys"])

    async def _assignments_for(self, client_id: str, program_id: str, week_keys: list[str]) -> dict[str, PlanAssignment]:
        assignments = await self.get_plan_assignments(program_id, client_id)
        return {week_key: assignments[week_key] for week_key in week_keys if week_key in assignments}

    async def _step_client_program(self, step: str, payload: dict[str, Any]) -> None:
        await self.assign_program_to_client(payload["program_id"], payload["client_id"])

    async def _step_assign_week(self, step: str, payload: dict[str, Any]) -> None:
        index = int(step_argument(step))
        await self.assign_plan_to_week(
            payload["program_id"], payload["client_id"], payload["plan_id"], payload["week_keys"][index], module_index=index
        )

    async def _place_module_sessions(self, client_id: str, program_id: str, plan_id: str, week_key: str, module_id: str) -> None:
        for session in await self.plans.get_sessions(plan_id, module_id):
            if session.day_index is None:
                continue
            await self.client_sessions.assign_session_to_date(
                client_id,
                program_id,
                plan_id,
                session.id,
                date_for_day_index(week_key, session.day_index),
                module_id=module_id,
                library_session_ref=session.is_library_reference,
            )

    async def remove_plan_from_week(self, program_id: str, client_id: str, week_key: str) -> None:
        """Take a plan off a week.

        Deletes the week's assignment and its personalized copy, and deletes
        the week's client sessions except the ones the client has completed.
        """
        parse_week_key(week_key)
        try:
            await self.assignments.delete(client_id, program_id, week_key)
            copy_deleted = await self.plan_content.delete_client_plan_content(client_id, program_id, week_key)
            completed = await self.get_completed_session_ids(program_id, client_id)
            deleted = await self.client_sessions.delete_client_sessions_for_week(
                client_id, program_id, week_key, keep_session_ids=completed
            )
        except Exception:
            logger.bind(client_id=client_id, program_id=program_id, week_key=week_key).exception(
                "[SCHEDULER] Failed to remove plan from week"
            )
            raise

        await log_content_event(
            self.store,
            "week_plan_removed",
            client_id=client_id,
            subject_id=keys.plan_assignment_id(client_id, program_id, week_key),
            details={
                "to_state": "no_assignment",
                "copy_deleted": copy_deleted,
                "sessions_deleted": len(deleted),
            },
        )

    # --- completion record -----------------------------------------------------

    async def get_completed_session_ids(self, program_id: str, client_id: str) -> set[str]:
        """Session ids the client has completed in a program (users/{clientId}.courseProgress)."""
        user = await self.store.get(keys.USERS, client_id) or {}
        progress = (user.get("courseProgress") or {}).get(program_id) or {}
        return set(progress.get("allSessionsCompleted") or [])

    async def mark_session_completed(self, program_id: str, client_id: str, session_id: str) -> None:
        completed = await self.get_completed_session_ids(program_id, client_id)
        if session_id in completed:
            return
        await self.store.set(
            keys.USERS,
            client_id,
            {"courseProgress": {program_id: {"allSessionsCompleted": sorted(completed | {session_id})}}},
            merge=True,
        )
        logger.debug(f"Session {session_id} marked completed", client_id=client_id, program_id=program_id)
