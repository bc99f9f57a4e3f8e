"""Persisted multi-step workflows.

Operations that touch several independent documents without a shared
transaction (assigning a plan across weeks, moving a session between weeks)
run as a workflow: an ordered list of named steps persisted in
workflows/{id} together with the steps already completed. A failed workflow
keeps its progress and can be resumed; resume runs only the steps that have
not completed. Step handlers must be idempotent (set by deterministic id,
delete), so re-running a step whose completion was not recorded is safe.

Step names are "<handler>" or "<handler>:<argument>"; the part before the
first colon selects the handler.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from coachplan.audit.content_log import log_content_event
from coachplan.content import keys
from coachplan.errors import NotFoundError, PreconditionFailedError, WorkflowFailedError
from coachplan.store.base import SERVER_TIMESTAMP, DocumentStore

StepHandler = Callable[[str, dict[str, Any]], Awaitable[None]]
WorkflowStatus = Literal["running", "completed", "failed"]


class WorkflowRecord(BaseModel):
    id: str
    kind: str
    client_id: str | None = None
    steps: list[str]
    payload: dict[str, Any] = Field(default_factory=dict)
    completed_steps: list[str] = Field(default_factory=list)
    last_completed_step: str | None = None
    status: WorkflowStatus = "running"
    last_error: str | None = None

    @property
    def pending_steps(self) -> list[str]:
        done = set(self.completed_steps)
        return [step for step in self.steps if step not in done]


def step_argument(step: str) -> str:
    """Argument part of "handler:argument" (empty when there is none)."""
    return step.split(":", 1)[1] if ":" in step else ""


async def load_workflow(store: DocumentStore, workflow_id: str) -> WorkflowRecord | None:
    data = await store.get(keys.WORKFLOWS, workflow_id)
    return WorkflowRecord.model_validate({**data, "id": workflow_id}) if data is not None else None


class Workflow:
    """Runner for one kind of workflow.

    Args:
        store: Document store holding the workflow records
        kind: Workflow kind; resume refuses records of another kind
        handlers: {handler name: async (step, payload) -> None}
        error_class: WorkflowFailedError subclass raised when a step fails
    """

    def __init__(
        self,
        store: DocumentStore,
        kind: str,
        handlers: dict[str, StepHandler],
        error_class: type[WorkflowFailedError] = WorkflowFailedError,
    ):
        self.store = store
        self.kind = kind
        self.handlers = handlers
        self.error_class = error_class

    async def start(
        self,
        steps: list[str],
        payload: dict[str, Any],
        client_id: str | None = None,
        workflow_id: str | None = None,
    ) -> WorkflowRecord:
        """Persist a new workflow record and run it to completion.

        Raises:
            WorkflowFailedError: (or error_class) when a step fails; the record
                is left with status "failed" and can be resumed
        """
        unknown = [step for step in steps if step.split(":", 1)[0] not in self.handlers]
        if unknown:
            raise ValueError(f"No handler for workflow steps: {unknown}")

        record = WorkflowRecord(
            id=workflow_id or self.store.new_id(),
            kind=self.kind,
            client_id=client_id,
            steps=steps,
            payload=payload,
        )
        document = record.model_dump(mode="json", exclude={"id"})
        document.update({"created_at": SERVER_TIMESTAMP, "updated_at": SERVER_TIMESTAMP})
        await self.store.set(keys.WORKFLOWS, record.id, document)
        logger.info(f"[WORKFLOW] Started {self.kind} {record.id} ({len(steps)} steps)", client_id=client_id)
        await log_content_event(
            self.store, "workflow_started", client_id=client_id, subject_id=record.id, details={"kind": self.kind, "steps": steps}
        )
        return await self._run(record)

    async def resume(self, workflow_id: str) -> WorkflowRecord:
        """Run the steps of a stored workflow that have not completed yet.

        Raises:
            NotFoundError: If there is no such workflow
            PreconditionFailedError: If the workflow is of another kind
            WorkflowFailedError: (or error_class) when a step fails again
        """
        record = await load_workflow(self.store, workflow_id)
        if record is None:
            raise NotFoundError("workflow", workflow_id)
        if record.kind != self.kind:
            raise PreconditionFailedError(f"Workflow {workflow_id} is a {record.kind} workflow, not {self.kind}")
        if record.status == "completed":
            logger.info(f"[WORKFLOW] {workflow_id} already completed, nothing to resume")
            return record

        logger.info(f"[WORKFLOW] Resuming {self.kind} {workflow_id}: {len(record.pending_steps)} steps pending")
        await log_content_event(
            self.store, "workflow_resumed", client_id=record.client_id, subject_id=record.id, details={"pending": record.pending_steps}
        )
        record.status = "running"
        record.last_error = None
        return await self._run(record)

    async def _run(self, record: WorkflowRecord) -> WorkflowRecord:
        for step in record.pending_steps:
            handler = self.handlers[step.split(":", 1)[0]]
            try:
                await handler(step, record.payload)
                record.completed_steps.append(step)
                record.last_completed_step = step
                await self._save_progress(record)
            except Exception as e:
                await self._mark_failed(record, step, e)
                raise self.error_class(
                    f"{self.kind} workflow {record.id} failed at step {step}: {e}",
                    workflow_id=record.id,
                    failed_step=step,
                    completed_steps=list(record.completed_steps),
                ) from e

            await log_content_event(
                self.store, "workflow_step_completed", client_id=record.client_id, subject_id=record.id, details={"step": step}
            )

        record.status = "completed"
        await self._save_progress(record)
        logger.info(f"[WORKFLOW] Completed {self.kind} {record.id}")
        await log_content_event(self.store, "workflow_completed", client_id=record.client_id, subject_id=record.id)
        return record

    async def _save_progress(self, record: WorkflowRecord) -> None:
        await self.store.update(
            keys.WORKFLOWS,
            record.id,
            {
                "completed_steps": record.completed_steps,
                "last_completed_step": record.last_completed_step,
                "status": record.status,
                "last_error": record.last_error,
                "updated_at": SERVER_TIMESTAMP,
            },
        )

    async def _mark_failed(self, record: WorkflowRecord, step: str, error: Exception) -> None:
        record.status = "failed"
        record.last_error = f"{step}: {error}"
        logger.bind(workflow_id=record.id, step=step, completed=len(record.completed_steps)).error(
            f"[WORKFLOW] {self.kind} failed at step {step}: {error}"
        )
        try:
            await self._save_progress(record)
        except Exception as save_error:
            # Resume still works from the last recorded progress.
            logger.bind(workflow_id=record.id, error=str(save_error)).warning("[WORKFLOW] Could not persist failure state")
        await log_content_event(
            self.store, "workflow_failed", client_id=record.client_id, subject_id=record.id, details={"step": step, "error": str(error)}
        )
