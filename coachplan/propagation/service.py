"""Propagation of creator-side edits to client copies.

When a creator edits a library session, a plan or a nutrition plan, the
clients who personalized content derived from it keep their copy until the
creator chooses to propagate. Propagating deletes every derived copy, so the
next read resolves from the updated source again (for nutrition plans the
cached plan snapshot on each assignment is also rewritten).

Copies are found by provenance. Queries use the store's provenance index
when it has one and fall back to a full collection scan otherwise, unless
REQUIRE_PROVENANCE_INDEX is set. Propagation is best-effort: each copy is
deleted independently and failures are collected, never raised.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from loguru import logger

from coachplan.audit.content_log import log_content_event
from coachplan.config.settings import settings
from coachplan.content import keys
from coachplan.content.nutrition import NutritionRepository
from coachplan.content.nutrition_copy import ClientNutritionPlanContentService
from coachplan.content.plan_copy import ClientPlanContentService
from coachplan.content.session_copy import ClientSessionContentService
from coachplan.content.types import SourceType
from coachplan.propagation.types import AffectedCopies, AffectedUser, PropagationResult
from coachplan.store.base import DocumentSnapshot, DocumentStore

PROVENANCE_FIELD = "provenance.source_id"


def _client_id_from_plan_content_id(content_id: str) -> str | None:
    parts = keys.split_client_plan_content_id(content_id)
    return parts[0] if parts is not None else None


def _owner(doc: DocumentSnapshot, parse_id: Callable[[str], str | None]) -> str | None:
    """Client owning a copy; the id is parsed only for copies stored without client_id."""
    return doc.data.get("client_id") or parse_id(doc.id)


class PropagationEngine:
    def __init__(self, store: DocumentStore, require_index: bool | None = None):
        self.store = store
        self.require_index = settings.require_provenance_index if require_index is None else require_index
        self.plan_content = ClientPlanContentService(store)
        self.session_content = ClientSessionContentService(store, self.plan_content.resolver)
        self.nutrition_content = ClientNutritionPlanContentService(store, require_index=self.require_index)
        self.nutrition = NutritionRepository(store)

    async def _find_by_provenance(self, collection: str, source_type: SourceType, source_id: str) -> list[DocumentSnapshot]:
        if self.require_index:
            docs = await self.store.where(collection, PROVENANCE_FIELD, source_id)
        else:
            docs = await self.store.where_or_scan(collection, PROVENANCE_FIELD, source_id)
        return [d for d in docs if (d.data.get("provenance") or {}).get("source_type") == source_type]

    # --- finding affected copies ---------------------------------------------

    async def find_affected_by_library_session(self, library_session_id: str) -> AffectedCopies:
        """Session copies of the library session, and week copies containing a session that references it."""
        owners: dict[str, str] = {}

        session_content_ids = []
        for doc in await self._find_by_provenance(keys.CLIENT_SESSION_CONTENT, "library_session", library_session_id):
            session_content_ids.append(doc.id)
            client_id = _owner(doc, keys.client_id_from_session_content_id)
            if client_id:
                owners[doc.id] = client_id

        # Week copies record library references per session, so every week is inspected.
        plan_content_ids = []
        for doc in await self.store.list_documents(keys.CLIENT_PLAN_CONTENT):
            client_id = _owner(doc, _client_id_from_plan_content_id)
            if client_id is None:
                continue
            sessions = await self.store.list_documents(keys.client_plan_content_sessions(doc.id))
            if any(s.data.get("librarySessionRef") == library_session_id for s in sessions):
                plan_content_ids.append(doc.id)
                owners[doc.id] = client_id

        user_ids = sorted(set(owners.values()))
        logger.info(
            f"[PROPAGATION] Library session {library_session_id}: "
            f"{len(session_content_ids)} session copies, {len(plan_content_ids)} week copies, {len(user_ids)} clients"
        )
        return AffectedCopies(
            affected_user_ids=user_ids,
            client_session_content_ids=session_content_ids,
            client_plan_content_ids=plan_content_ids,
            copy_owners=owners,
        )

    async def find_affected_by_plan(self, plan_id: str) -> AffectedCopies:
        owners: dict[str, str] = {}
        plan_content_ids = []
        for doc in await self._find_by_provenance(keys.CLIENT_PLAN_CONTENT, "plan", plan_id):
            client_id = _owner(doc, _client_id_from_plan_content_id)
            if client_id is None:
                continue
            plan_content_ids.append(doc.id)
            owners[doc.id] = client_id

        user_ids = sorted(set(owners.values()))
        logger.info(f"[PROPAGATION] Plan {plan_id}: {len(plan_content_ids)} week copies, {len(user_ids)} clients")
        return AffectedCopies(affected_user_ids=user_ids, client_plan_content_ids=plan_content_ids, copy_owners=owners)

    async def find_affected_by_nutrition_plan(self, plan_id: str) -> AffectedCopies:
        assignment_ids = await self.nutrition_content.get_assignment_ids_by_source_plan_id(plan_id)
        owners: dict[str, str] = {}
        for assignment_id in assignment_ids:
            try:
                assignment = await self.nutrition.get_assignment(assignment_id)
            except Exception as e:
                logger.bind(assignment_id=assignment_id, error=str(e)).warning("[PROPAGATION] Could not load nutrition assignment")
                continue
            if assignment is not None:
                owners[assignment_id] = assignment.user_id

        user_ids = sorted(set(owners.values()))
        logger.info(f"[PROPAGATION] Nutrition plan {plan_id}: {len(assignment_ids)} copies, {len(user_ids)} clients")
        return AffectedCopies(affected_user_ids=user_ids, assignment_ids=assignment_ids, copy_owners=owners)

    # --- affected users for notification ------------------------------------

    async def _with_details(self, user_ids: list[str]) -> list[AffectedUser]:
        users = []
        for user_id in user_ids:
            data = await self.store.get(keys.USERS, user_id) or {}
            display_name = data.get("displayName") or data.get("name") or data.get("email") or user_id
            users.append(AffectedUser(user_id=user_id, display_name=display_name))
        return users

    async def get_affected_users_with_details_by_library_session(self, library_session_id: str) -> list[AffectedUser]:
        affected = await self.find_affected_by_library_session(library_session_id)
        return await self._with_details(affected.affected_user_ids)

    async def get_affected_users_with_details_by_plan(self, plan_id: str) -> list[AffectedUser]:
        affected = await self.find_affected_by_plan(plan_id)
        return await self._with_details(affected.affected_user_ids)

    async def get_affected_users_with_details_by_nutrition_plan(self, plan_id: str) -> list[AffectedUser]:
        affected = await self.find_affected_by_nutrition_plan(plan_id)
        return await self._with_details(affected.affected_user_ids)

    # --- propagation ---------------------------------------------------------

    async def _delete_each(
        self,
        label: str,
        ids: list[str],
        delete: Callable[[str], Awaitable[object]],
        source_id: str,
        owners: dict[str, str],
        errors: list[str],
    ) -> int:
        propagated = 0
        for copy_id in ids:
            try:
                await delete(copy_id)
            except Exception as e:
                logger.bind(copy_id=copy_id, source_id=source_id).warning(f"[PROPAGATION] Failed to delete {label} {copy_id}: {e}")
                errors.append(f"{label} {copy_id}: {e}")
                continue
            propagated += 1
            await log_content_event(
                self.store,
                "propagation_deleted",
                client_id=owners.get(copy_id),
                subject_id=copy_id,
                details={"collection": label, "source_id": source_id, "to_state": "source_backed"},
            )
        return propagated

    async def propagate_library_session(self, library_session_id: str) -> PropagationResult:
        """Delete every copy derived from a library session.

        Returns:
            PropagationResult with the number of deleted copies and per-copy errors
        """
        affected = await self.find_affected_by_library_session(library_session_id)
        errors: list[str] = []
        propagated = await self._delete_each(
            keys.CLIENT_SESSION_CONTENT,
            affected.client_session_content_ids,
            self.session_content.delete_client_session_content,
            library_session_id,
            affected.copy_owners,
            errors,
        )
        propagated += await self._delete_each(
            keys.CLIENT_PLAN_CONTENT,
            affected.client_plan_content_ids,
            self.plan_content.delete_by_content_id,
            library_session_id,
            affected.copy_owners,
            errors,
        )
        self._log_result(f"library session {library_session_id}", propagated, errors)
        return PropagationResult(propagated=propagated, errors=errors)

    async def propagate_plan(self, plan_id: str) -> PropagationResult:
        affected = await self.find_affected_by_plan(plan_id)
        errors: list[str] = []
        propagated = await self._delete_each(
            keys.CLIENT_PLAN_CONTENT,
            affected.client_plan_content_ids,
            self.plan_content.delete_by_content_id,
            plan_id,
            affected.copy_owners,
            errors,
        )
        self._log_result(f"plan {plan_id}", propagated, errors)
        return PropagationResult(propagated=propagated, errors=errors)

    async def propagate_nutrition_plan(self, plan_id: str, creator_id: str | None = None) -> PropagationResult:
        """Delete nutrition copies and refresh the plan snapshot cached on each assignment.

        The snapshot is only rewritten when creator_id is given and the
        library plan can be loaded; copies are deleted either way.
        """
        affected = await self.find_affected_by_nutrition_plan(plan_id)
        snapshot = None
        if creator_id:
            try:
                plan = await self.nutrition.get_plan(creator_id, plan_id)
            except Exception as e:
                logger.bind(plan_id=plan_id, error=str(e)).warning("[PROPAGATION] Could not load nutrition plan for snapshot")
                plan = None
            snapshot = plan.snapshot() if plan is not None else None

        async def refresh(assignment_id: str) -> None:
            await self.nutrition_content.delete_by_assignment_id(assignment_id)
            if snapshot is not None:
                await self.nutrition.update_assignment_snapshot(assignment_id, snapshot)

        errors: list[str] = []
        propagated = await self._delete_each(
            keys.CLIENT_NUTRITION_PLAN_CONTENT, affected.assignment_ids, refresh, plan_id, affected.copy_owners, errors
        )
        self._log_result(f"nutrition plan {plan_id}", propagated, errors)
        return PropagationResult(propagated=propagated, errors=errors)

    @staticmethod
    def _log_result(source: str, propagated: int, errors: list[str]) -> None:
        if errors:
            logger.bind(errors=errors).warning(f"[PROPAGATION] {source}: {propagated} copies refreshed, {len(errors)} failed")
        else:
            logger.info(f"[PROPAGATION] {source}: {propagated} copies refreshed")
