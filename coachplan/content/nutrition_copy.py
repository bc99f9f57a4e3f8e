"""Copy-on-write personalization of nutrition plans.

One copy per assignment: client_nutrition_plan_content/{assignmentId}. The
copy is a flat snapshot of the plan fields plus provenance; there is no
session-level graph below it.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from coachplan.audit.content_log import log_content_event
from coachplan.config.settings import settings
from coachplan.content import keys
from coachplan.content.types import ClientNutritionPlanContent, NutritionPlan, Provenance
from coachplan.errors import NotFoundError, PreconditionFailedError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore

_PROTECTED_FIELDS = {"id", "assignment_id", "source_plan_id", "provenance", "created_at"}


class ClientNutritionPlanContentService:
    def __init__(self, store: DocumentStore, require_index: bool | None = None):
        self.store = store
        self.require_index = settings.require_provenance_index if require_index is None else require_index

    async def get_by_assignment_id(self, assignment_id: str) -> ClientNutritionPlanContent | None:
        if not assignment_id:
            return None
        data = await self.store.get(keys.CLIENT_NUTRITION_PLAN_CONTENT, assignment_id)
        return ClientNutritionPlanContent.model_validate({**data, "id": assignment_id}) if data is not None else None

    async def set_from_library(self, assignment_id: str, plan: NutritionPlan) -> ClientNutritionPlanContent:
        """Create (or overwrite) the client's copy of a library nutrition plan."""
        if not assignment_id:
            raise PreconditionFailedError("assignment_id is required to personalize a nutrition plan")
        content = ClientNutritionPlanContent(
            id=assignment_id,
            assignment_id=assignment_id,
            provenance=Provenance(source_type="nutrition_plan", source_id=plan.id),
            source_plan_id=plan.id,
            **plan.snapshot(),
        )
        payload = content.to_document(exclude={"id"})
        payload.update({"created_at": SERVER_TIMESTAMP, "updated_at": SERVER_TIMESTAMP})
        await self.store.set(keys.CLIENT_NUTRITION_PLAN_CONTENT, assignment_id, payload)
        logger.info(f"[COPY_ON_WRITE] Copied nutrition plan {plan.id} for assignment {assignment_id}")
        await log_content_event(
            self.store,
            "nutrition_copy_created",
            subject_id=assignment_id,
            details={"from_state": "library_backed", "to_state": "personalized", "plan_id": plan.id},
        )
        return content

    async def update(self, assignment_id: str, data: dict[str, Any]) -> None:
        """Merge plan fields into the copy. Provenance fields cannot be changed.

        Raises:
            NotFoundError: If the assignment has no copy
        """
        if await self.store.get(keys.CLIENT_NUTRITION_PLAN_CONTENT, assignment_id) is None:
            raise NotFoundError("client nutrition plan content", assignment_id)
        payload = {k: v for k, v in data.items() if k not in _PROTECTED_FIELDS}
        payload["updated_at"] = SERVER_TIMESTAMP
        await self.store.update(keys.CLIENT_NUTRITION_PLAN_CONTENT, assignment_id, payload)
        await log_content_event(
            self.store, "nutrition_copy_edited", subject_id=assignment_id, details={"fields": sorted(k for k in payload if k != "updated_at")}
        )

    async def delete_by_assignment_id(self, assignment_id: str) -> None:
        if not assignment_id:
            return
        await self.store.delete(keys.CLIENT_NUTRITION_PLAN_CONTENT, assignment_id)
        logger.info(f"[COPY_ON_WRITE] Deleted nutrition copy {assignment_id}")

    async def get_assignment_ids_by_source_plan_id(self, plan_id: str) -> list[str]:
        """Assignments holding a copy of a library nutrition plan."""
        if not plan_id:
            return []
        collection = keys.CLIENT_NUTRITION_PLAN_CONTENT
        field_path = "provenance.source_id"
        if self.require_index:
            docs = await self.store.where(collection, field_path, plan_id)
        else:
            docs = await self.store.where_or_scan(collection, field_path, plan_id)
        return [d.id for d in docs if (d.data.get("provenance") or {}).get("source_type") == "nutrition_plan"]
