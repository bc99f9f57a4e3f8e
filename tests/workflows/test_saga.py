"""Tests for persisted, resumable workflows."""

import pytest

from coachplan.audit.content_log import list_content_events
from coachplan.errors import NotFoundError, PreconditionFailedError, WorkflowFailedError
from coachplan.workflows.saga import Workflow, load_workflow, step_argument


class Recorder:
    """Step handlers that record calls and fail on demand."""

    def __init__(self):
        self.calls = []
        self.fail_on = set()

    async def write(self, step, payload):
        if step in self.fail_on:
            raise RuntimeError(f"cannot {step}")
        self.calls.append((step, payload["value"]))


def _workflow(store, recorder, kind="demo"):
    return Workflow(store, kind, {"write": recorder.write})


def test_step_argument():
    assert step_argument("assign_week:3") == "3"
    assert step_argument("client_program") == ""
    assert step_argument("a:b:c") == "b:c"


class TestWorkflow:
    @pytest.mark.asyncio
    async def test_runs_all_steps_in_order(self, store):
        recorder = Recorder()
        record = await _workflow(store, recorder).start(["write:1", "write:2"], {"value": 7}, client_id="client1")

        assert recorder.calls == [("write:1", 7), ("write:2", 7)]
        assert record.status == "completed"
        stored = await load_workflow(store, record.id)
        assert stored.completed_steps == ["write:1", "write:2"]
        assert stored.last_completed_step == "write:2"
        assert stored.status == "completed"

        events = [e["event"] for e in await list_content_events(store, subject_id=record.id)]
        assert events == ["workflow_started", "workflow_step_completed", "workflow_step_completed", "workflow_completed"]

    @pytest.mark.asyncio
    async def test_unknown_handler_is_rejected_before_anything_runs(self, store):
        with pytest.raises(ValueError):
            await _workflow(store, Recorder()).start(["write:1", "other"], {"value": 1})
        assert store.collection_ids("workflows") == []

    @pytest.mark.asyncio
    async def test_failure_keeps_progress_and_resume_runs_pending_steps(self, store):
        recorder = Recorder()
        recorder.fail_on = {"write:2"}
        workflow = _workflow(store, recorder)

        with pytest.raises(WorkflowFailedError) as exc_info:
            await workflow.start(["write:1", "write:2", "write:3"], {"value": 1})

        error = exc_info.value
        assert error.failed_step == "write:2"
        assert error.completed_steps == ["write:1"]
        stored = await load_workflow(store, error.workflow_id)
        assert stored.status == "failed"
        assert stored.last_error.startswith("write:2")

        recorder.fail_on = set()
        record = await workflow.resume(error.workflow_id)
        assert record.status == "completed"
        assert recorder.calls == [("write:1", 1), ("write:2", 1), ("write:3", 1)]

    @pytest.mark.asyncio
    async def test_custom_error_class(self, store):
        class MoveFailed(WorkflowFailedError):
            pass

        recorder = Recorder()
        recorder.fail_on = {"write"}
        workflow = Workflow(store, "demo", {"write": recorder.write}, error_class=MoveFailed)
        with pytest.raises(MoveFailed):
            await workflow.start(["write"], {"value": 1})

    @pytest.mark.asyncio
    async def test_resume_completed_workflow_is_a_no_op(self, store):
        recorder = Recorder()
        workflow = _workflow(store, recorder)
        record = await workflow.start(["write"], {"value": 1})

        await workflow.resume(record.id)
        assert recorder.calls == [("write", 1)]

    @pytest.mark.asyncio
    async def test_resume_checks_existence_and_kind(self, store):
        recorder = Recorder()
        record = await _workflow(store, recorder).start(["write"], {"value": 1})

        with pytest.raises(NotFoundError):
            await _workflow(store, recorder).resume("missing")
        with pytest.raises(PreconditionFailedError):
            await _workflow(store, recorder, kind="other").resume(record.id)

    @pytest.mark.asyncio
    async def test_unsaved_failure_state_still_resumes(self, store):
        recorder = Recorder()
        workflow = _workflow(store, recorder)

        async def fail_and_break_store(step, payload):
            store.inject_fault("update", collection="workflows", error=RuntimeError("store down"))
            raise RuntimeError("step failed")

        workflow.handlers["broken"] = fail_and_break_store
        with pytest.raises(WorkflowFailedError) as exc_info:
            await workflow.start(["write:1", "broken"], {"value": 1})
        assert exc_info.value.failed_step == "broken"

        stored = await load_workflow(store, exc_info.value.workflow_id)
        assert stored.status == "running"
        assert stored.pending_steps == ["broken"]

        workflow.handlers["broken"] = recorder.write
        record = await workflow.resume(stored.id)
        assert record.status == "completed"
        assert recorder.calls == [("write:1", 1), ("broken", 1)]
