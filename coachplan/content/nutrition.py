"""Creator nutrition plans and their assignments to clients.

Plans live in creator_nutrition_library/{creatorId}/plans/{planId}. Each
nutrition_assignments record caches a snapshot of the plan under `plan`,
which the client app reads directly.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from coachplan.content import keys
from coachplan.content.types import NUTRITION_SNAPSHOT_FIELDS, NutritionAssignment, NutritionPlan
from coachplan.errors import NotFoundError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore


class NutritionRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_plan(self, creator_id: str, name: str, plan_id: str | None = None, **fields: Any) -> NutritionPlan:
        plan = NutritionPlan(id=plan_id or self.store.new_id(), creator_id=creator_id, name=name, **fields)
        payload = plan.to_document(exclude={"id"})
        payload.update({"created_at": SERVER_TIMESTAMP, "updated_at": SERVER_TIMESTAMP})
        await self.store.set(keys.nutrition_library_plans(creator_id), plan.id, payload)
        logger.info(f"Nutrition plan created: {plan.id}", creator_id=creator_id)
        return plan

    async def get_plan(self, creator_id: str, plan_id: str) -> NutritionPlan | None:
        data = await self.store.get(keys.nutrition_library_plans(creator_id), plan_id)
        if data is None:
            return None
        return NutritionPlan.model_validate({**data, "id": plan_id, "creator_id": creator_id})

    async def update_plan(self, creator_id: str, plan_id: str, updates: dict[str, Any]) -> None:
        await self.store.update(keys.nutrition_library_plans(creator_id), plan_id, {**updates, "updated_at": SERVER_TIMESTAMP})

    async def create_assignment(
        self, user_id: str, plan: NutritionPlan, assigned_by: str | None = None, assignment_id: str | None = None
    ) -> NutritionAssignment:
        """Assign a plan to a client, caching the plan snapshot on the record."""
        assignment = NutritionAssignment(
            id=assignment_id or self.store.new_id(),
            userId=user_id,
            planId=plan.id,
            assignedBy=assigned_by or plan.creator_id,
            plan=plan.snapshot(),
        )
        payload = assignment.to_document(exclude={"id"})
        payload.update({"createdAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP})
        await self.store.set(keys.NUTRITION_ASSIGNMENTS, assignment.id, payload)
        return assignment

    async def get_assignment(self, assignment_id: str) -> NutritionAssignment | None:
        data = await self.store.get(keys.NUTRITION_ASSIGNMENTS, assignment_id)
        return NutritionAssignment.model_validate({**data, "id": assignment_id}) if data is not None else None

    async def update_assignment_snapshot(self, assignment_id: str, snapshot: dict[str, Any]) -> None:
        """Replace the cached plan snapshot on an assignment.

        Raises:
            NotFoundError: If the assignment does not exist
        """
        unknown = set(snapshot) - set(NUTRITION_SNAPSHOT_FIELDS)
        if unknown:
            raise ValueError(f"Not snapshot fields: {sorted(unknown)}")
        if await self.store.get(keys.NUTRITION_ASSIGNMENTS, assignment_id) is None:
            raise NotFoundError("nutrition assignment", assignment_id)
        await self.store.update(keys.NUTRITION_ASSIGNMENTS, assignment_id, {"plan": snapshot, "updatedAt": SERVER_TIMESTAMP})
