"""Plan store: plans/{planId}, modules and module sessions.

Modules are weeks. Their calendar offset is their position when sorted by
`order`. Module sessions embed their exercises; a session that references a
library session normally has no exercises of its own.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from coachplan.content import keys
from coachplan.content.tree import normalize_exercises, sort_by_order
from coachplan.content.types import Module, Plan, PlanSession
from coachplan.errors import NotFoundError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore


class PlanRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_plan(self, creator_id: str, title: str, description: str | None = None, plan_id: str | None = None) -> Plan:
        plan = Plan(id=plan_id or self.store.new_id(), creator_id=creator_id, title=title, description=description)
        payload = plan.to_document(exclude={"id"})
        payload.update({"created_at": SERVER_TIMESTAMP, "updated_at": SERVER_TIMESTAMP})
        await self.store.set(keys.PLANS, plan.id, payload)
        logger.info(f"Plan created: {plan.id}", creator_id=creator_id)
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        data = await self.store.get(keys.PLANS, plan_id)
        return Plan.model_validate({**data, "id": plan_id}) if data is not None else None

    async def update_plan(self, plan_id: str, updates: dict[str, Any]) -> None:
        await self.store.update(keys.PLANS, plan_id, {**updates, "updated_at": SERVER_TIMESTAMP})

    async def create_module(self, plan_id: str, title: str, order: int | None = None, module_id: str | None = None) -> Module:
        """Append a module (week) to a plan.

        Raises:
            NotFoundError: If the plan does not exist
        """
        if await self.store.get(keys.PLANS, plan_id) is None:
            raise NotFoundError("plan", plan_id)
        if order is None:
            order = len(await self.store.list_documents(keys.plan_modules(plan_id)))
        module = Module(id=module_id or self.store.new_id(), title=title, order=order)
        payload = module.to_document(exclude={"id", "sessions"})
        payload.update({"created_at": SERVER_TIMESTAMP, "updated_at": SERVER_TIMESTAMP})
        await self.store.set(keys.plan_modules(plan_id), module.id, payload)
        return module

    async def get_modules(self, plan_id: str) -> list[Module]:
        """Modules in calendar order, without their sessions."""
        docs = await self.store.list_documents(keys.plan_modules(plan_id))
        return sort_by_order(Module.model_validate({**d.data, "id": d.id}) for d in docs)

    async def get_module(self, plan_id: str, module_id: str) -> Module | None:
        data = await self.store.get(keys.plan_modules(plan_id), module_id)
        return Module.model_validate({**data, "id": module_id}) if data is not None else None

    async def get_module_by_index(self, plan_id: str, module_index: int) -> Module | None:
        """The module at a 0-based calendar offset, or None when out of range."""
        modules = await self.get_modules(plan_id)
        if 0 <= module_index < len(modules):
            return modules[module_index]
        return None

    async def update_module(self, plan_id: str, module_id: str, updates: dict[str, Any]) -> None:
        await self.store.update(keys.plan_modules(plan_id), module_id, {**updates, "updated_at": SERVER_TIMESTAMP})

    async def delete_module(self, plan_id: str, module_id: str) -> None:
        """Delete a module and its sessions."""
        collection = keys.plan_module_sessions(plan_id, module_id)
        batch = self.store.batch()
        for doc in await self.store.list_documents(collection):
            batch.delete(collection, doc.id)
        batch.delete(keys.plan_modules(plan_id), module_id)
        await batch.commit()

    async def create_session(
        self,
        plan_id: str,
        module_id: str,
        title: str | None = None,
        order: int | None = None,
        image_url: str | None = None,
        library_session_ref: str | None = None,
        day_index: int | None = None,
        exercises: list[dict[str, Any]] | None = None,
        session_id: str | None = None,
    ) -> PlanSession:
        """Add a session to a module.

        Passing exercises makes the session inline (use_local_content=True);
        otherwise a library_session_ref makes it a reference resolved at read time.
        """
        collection = keys.plan_module_sessions(plan_id, module_id)
        if order is None:
            order = len(await self.store.list_documents(collection))
        session = PlanSession(
            id=session_id or self.store.new_id(),
            title=title,
            image_url=image_url,
            order=order,
            dayIndex=day_index,
            librarySessionRef=library_session_ref,
            useLocalContent=exercises is not None,
            exercises=normalize_exercises(exercises or []),
        )
        payload = session.to_document(exclude={"id"})
        payload["updated_at"] = SERVER_TIMESTAMP
        await self.store.set(collection, session.id, payload)
        return session

    async def get_sessions(self, plan_id: str, module_id: str) -> list[PlanSession]:
        docs = await self.store.list_documents(keys.plan_module_sessions(plan_id, module_id))
        return sort_by_order(PlanSession.model_validate({**d.data, "id": d.id}) for d in docs)

    async def update_session(self, plan_id: str, module_id: str, session_id: str, updates: dict[str, Any]) -> None:
        payload = dict(updates)
        if "exercises" in payload:
            payload["exercises"] = [ex.to_document() for ex in normalize_exercises(payload["exercises"])]
        payload["updated_at"] = SERVER_TIMESTAMP
        await self.store.update(keys.plan_module_sessions(plan_id, module_id), session_id, payload)

    async def delete_session(self, plan_id: str, module_id: str, session_id: str) -> None:
        await self.store.delete(keys.plan_module_sessions(plan_id, module_id), session_id)

    async def get_module_full(self, plan_id: str, module_id: str) -> Module | None:
        """Module with its (unresolved) sessions, or None when the module is missing."""
        module = await self.get_module(plan_id, module_id)
        if module is None:
            return None
        return module.model_copy(update={"sessions": await self.get_sessions(plan_id, module_id)})
