"""Per-week plan assignment records.

One document per client x program x week
(client_plan_assignments/{clientId}_{programId}_{weekKey}) instead of a
single planAssignments map on the client program. Writing one week never
reads or rewrites another week, so concurrent edits to different weeks of the
same program cannot lose each other's updates.
"""

from __future__ import annotations

from loguru import logger

from coachplan.content import keys
from coachplan.content.types import PlanAssignment
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore


class PlanAssignmentRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, client_id: str, program_id: str, week_key: str) -> PlanAssignment | None:
        data = await self.store.get(keys.CLIENT_PLAN_ASSIGNMENTS, keys.plan_assignment_id(client_id, program_id, week_key))
        return PlanAssignment.model_validate(data) if data is not None else None

    async def set(self, client_id: str, program_id: str, week_key: str, plan_id: str, module_index: int) -> None:
        """Assign a plan module to a week, replacing whatever that week held."""
        await self.store.set(
            keys.CLIENT_PLAN_ASSIGNMENTS,
            keys.plan_assignment_id(client_id, program_id, week_key),
            {
                "client_program_id": keys.client_program_id(client_id, program_id),
                "client_id": client_id,
                "program_id": program_id,
                "week_key": week_key,
                "planId": plan_id,
                "moduleIndex": module_index,
                "assignedAt": SERVER_TIMESTAMP,
            },
        )

    async def delete(self, client_id: str, program_id: str, week_key: str) -> None:
        await self.store.delete(keys.CLIENT_PLAN_ASSIGNMENTS, keys.plan_assignment_id(client_id, program_id, week_key))

    async def get_all(self, client_id: str, program_id: str) -> dict[str, PlanAssignment]:
        """planAssignments map for a client program: {weekKey: PlanAssignment}."""
        docs = await self.store.where_or_scan(
            keys.CLIENT_PLAN_ASSIGNMENTS,
            "client_program_id",
            keys.client_program_id(client_id, program_id),
        )
        assignments = {d.data["week_key"]: PlanAssignment.model_validate(d.data) for d in docs if d.data.get("week_key")}
        logger.debug(f"Loaded {len(assignments)} plan assignments", client_id=client_id, program_id=program_id)
        return dict(sorted(assignments.items()))
