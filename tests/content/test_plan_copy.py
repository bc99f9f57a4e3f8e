"""Tests for copy-on-write week personalization."""

import pytest
import pytest_asyncio
from conftest import CLIENT_ID, CREATOR_ID, PLAN_ID, PROGRAM_ID

from coachplan.audit.content_log import list_content_events
from coachplan.content import keys
from coachplan.content.library import LibraryRepository
from coachplan.content.plan_copy import ClientPlanContentService
from coachplan.content.plans import PlanRepository
from coachplan.content.resolver import ContentResolver
from coachplan.errors import BatchCommitError, CrossWeekMoveError, NotFoundError, PreconditionFailedError
from coachplan.scheduling.client_programs import ClientProgramService
from coachplan.workflows.saga import load_workflow

WEEK = "2025-W10"
CONTENT_ID = keys.client_plan_content_id(CLIENT_ID, PROGRAM_ID, WEEK)


@pytest_asyncio.fixture
async def assigned(store, seeded):
    await ClientProgramService(store).assign_plan_to_consecutive_weeks(PROGRAM_ID, CLIENT_ID, PLAN_ID, WEEK)
    return seeded


@pytest.fixture
def copies(store) -> ClientPlanContentService:
    return ClientPlanContentService(store)


async def _resolve(store, week=WEEK):
    return await ContentResolver(store).resolve_week(CLIENT_ID, PROGRAM_ID, week)


class TestCopyFromPlan:
    @pytest.mark.asyncio
    async def test_copy_is_self_contained(self, store, assigned, copies):
        copy = await copies.copy_from_plan(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "mod_w1")

        assert copy.id == CONTENT_ID
        assert copy.title == "Week1"
        assert copy.source_plan_id == PLAN_ID
        assert copy.source_module_id == "mod_w1"
        assert copy.provenance.source_type == "plan"
        assert copy.provenance.source_id == PLAN_ID
        assert copy.provenance.source_sub_id == "mod_w1"

        squat = copy.sessions[0]
        assert squat.library_session_ref == "lib_squat"
        assert [ex.title for ex in squat.exercises] == ["Back Squat"]
        assert len(squat.exercises[0].sets) == 3

    @pytest.mark.asyncio
    async def test_copy_is_independent_of_later_plan_and_library_edits(self, store, assigned, copies):
        await copies.copy_from_plan(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "mod_w1")
        before = await _resolve(store)

        await LibraryRepository(store).update_session(CREATOR_ID, "lib_squat", {"exercises": [{"title": "Front Squat"}]})
        plans = PlanRepository(store)
        await plans.update_session(PLAN_ID, "mod_w1", "s_w1_row", {"title": "Creator rows"})
        await plans.create_session(PLAN_ID, "mod_w1", title="Extra", day_index=4)

        after = await _resolve(store)
        assert after.source == "client_copy"
        assert after.sessions == before.sessions

    @pytest.mark.asyncio
    async def test_missing_module_raises_and_writes_nothing(self, store, assigned, copies):
        with pytest.raises(NotFoundError):
            await copies.copy_from_plan(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "no_such_module")
        assert store.collection_ids(keys.CLIENT_PLAN_CONTENT) == []

    @pytest.mark.asyncio
    async def test_failed_batch_leaves_no_partial_copy(self, store, assigned, copies):
        store.inject_fault("batch", collection=keys.client_plan_content_sessions(CONTENT_ID), doc_id="s_w1_row")

        with pytest.raises(BatchCommitError):
            await copies.copy_from_plan(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "mod_w1")

        assert store.collection_ids(keys.CLIENT_PLAN_CONTENT) == []
        assert store.collection_ids(keys.client_plan_content_sessions(CONTENT_ID)) == []
        assert (await _resolve(store)).source == "plan"


class TestEnsureWeekCopy:
    @pytest.mark.asyncio
    async def test_first_edit_copies_assigned_module(self, store, assigned, copies):
        copy = await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK)
        assert [s.id for s in copy.sessions] == ["s_w1_squat", "s_w1_row"]

        events = await list_content_events(store, subject_id=CONTENT_ID)
        created = [e for e in events if e["event"] == "week_copy_created"]
        assert created[0]["details"]["to_state"] == "personalized"

    @pytest.mark.asyncio
    async def test_existing_copy_is_left_alone(self, store, assigned, copies):
        await copies.update_session(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row", {"title": "Mine"})
        copy = await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "mod_w1")
        assert copy.sessions[1].title == "Mine"

    @pytest.mark.asyncio
    async def test_unassigned_week_gets_an_empty_shell(self, store, seeded, copies):
        await ClientProgramService(store).assign_program_to_client(PROGRAM_ID, CLIENT_ID)
        shell = await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, "2025-W30")

        assert shell.title == "Personalized week"
        assert shell.sessions == []
        assert shell.provenance is None
        assert (await _resolve(store, "2025-W30")).source == "none"

    @pytest.mark.asyncio
    async def test_empty_shell_is_recopied_when_plan_is_known(self, store, seeded, copies):
        await ClientProgramService(store).assign_program_to_client(PROGRAM_ID, CLIENT_ID)
        await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK)

        copy = await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "mod_w1")
        assert [s.id for s in copy.sessions] == ["s_w1_squat", "s_w1_row"]
        assert copy.source_module_id == "mod_w1"

    @pytest.mark.asyncio
    async def test_requires_client_program(self, store, seeded, copies):
        with pytest.raises(PreconditionFailedError):
            await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK, PLAN_ID, "mod_w1")
        assert store.collection_ids(keys.CLIENT_PLAN_CONTENT) == []


class TestMutators:
    @pytest.mark.asyncio
    async def test_add_session_to_plan_backed_week_keeps_plan_sessions(self, store, assigned, copies):
        session = await copies.add_session(
            CLIENT_ID,
            PROGRAM_ID,
            WEEK,
            title="Mobility",
            day_index=6,
            exercises=[{"title": "Hip flow", "sets": [{"reps": 1}, {"reps": 2}]}],
        )
        resolved = await _resolve(store)
        assert resolved.source == "client_copy"
        assert [s.id for s in resolved.sessions] == ["s_w1_squat", "s_w1_row", session.id]
        added = resolved.sessions[2]
        assert added.day_index == 6
        assert [s.reps for s in added.exercises[0].sets] == [1, 2]

    @pytest.mark.asyncio
    async def test_add_session_defaults(self, store, seeded, copies):
        await ClientProgramService(store).assign_program_to_client(PROGRAM_ID, CLIENT_ID)
        session = await copies.add_session(CLIENT_ID, PROGRAM_ID, "2025-W30", exercises=[{}])
        assert session.title == "Session"
        assert session.exercises[0].title == "Exercise"
        assert (await _resolve(store, "2025-W30")).source == "client_copy"

    @pytest.mark.asyncio
    async def test_exercise_and_set_editing(self, store, assigned, copies):
        args = (CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row")
        exercise = await copies.create_exercise(*args, title="Face Pull")
        first_set = await copies.add_set(*args, exercise.id, {"reps": 15})
        second_set = await copies.add_set(*args, exercise.id)
        assert first_set.title == "Set 1"
        assert second_set.title == "Set 2"

        await copies.update_set(*args, exercise.id, first_set.id, {"reps": 20, "tempo": "2-0-2"})
        sets = await copies.get_sets(*args, exercise.id)
        assert [s.reps for s in sets] == [20, None]
        assert sets[0].model_extra["tempo"] == "2-0-2"

        await copies.delete_set(*args, exercise.id, second_set.id)
        assert [s.id for s in await copies.get_sets(*args, exercise.id)] == [first_set.id]

        await copies.update_exercise(*args, exercise.id, {"title": "Cable Face Pull"})
        titles = [ex.title for ex in await copies.get_exercises(*args)]
        assert titles == ["Barbell Row", "Cable Face Pull"]

        await copies.delete_exercise(*args, exercise.id)
        assert [ex.title for ex in await copies.get_exercises(*args)] == ["Barbell Row"]

    @pytest.mark.asyncio
    async def test_edits_do_not_touch_the_plan(self, store, assigned, copies):
        await copies.update_session(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row", {"title": "Mine"})
        plan_sessions = await PlanRepository(store).get_sessions(PLAN_ID, "mod_w1")
        assert plan_sessions[1].title == "Rows"

    @pytest.mark.asyncio
    async def test_move_session_day(self, store, assigned, copies):
        await copies.move_session_day(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row", 4)
        session = await copies.get_session_content(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row")
        assert session.day_index == 4

        with pytest.raises(ValueError):
            await copies.move_session_day(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row", 7)

    @pytest.mark.asyncio
    async def test_unknown_ids_raise_not_found(self, store, assigned, copies):
        with pytest.raises(NotFoundError):
            await copies.update_session(CLIENT_ID, PROGRAM_ID, WEEK, "nope", {"title": "x"})
        with pytest.raises(NotFoundError):
            await copies.update_exercise(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row", "nope", {"title": "x"})
        with pytest.raises(NotFoundError):
            await copies.delete_session(CLIENT_ID, PROGRAM_ID, WEEK, "nope")

    @pytest.mark.asyncio
    async def test_week_emptied_by_client_stays_personalized(self, store, assigned, copies):
        await copies.delete_session(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_squat")
        await copies.delete_session(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row")

        resolved = await _resolve(store)
        assert resolved.source == "client_copy"
        assert resolved.sessions == []

        copy = await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK)
        assert copy.sessions == []


class TestResetToSource:
    @pytest.mark.asyncio
    async def test_requires_confirmation(self, store, assigned, copies):
        await copies.ensure_week_copy(CLIENT_ID, PROGRAM_ID, WEEK)
        with pytest.raises(PreconditionFailedError):
            await copies.reset_to_source(CLIENT_ID, PROGRAM_ID, WEEK)
        assert (await _resolve(store)).source == "client_copy"

    @pytest.mark.asyncio
    async def test_reset_reads_from_plan_again(self, store, assigned, copies):
        await copies.update_session(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row", {"title": "Mine"})
        assert await copies.reset_to_source(CLIENT_ID, PROGRAM_ID, WEEK, confirm=True) is True

        assert await copies.get_client_plan_content(CLIENT_ID, PROGRAM_ID, WEEK) is None
        assert store.collection_ids(keys.client_plan_content_sessions(CONTENT_ID)) == []
        resolved = await _resolve(store)
        assert resolved.source == "plan"
        assert resolved.sessions[1].title == "Rows"

    @pytest.mark.asyncio
    async def test_reset_without_copy(self, store, assigned, copies):
        assert await copies.reset_to_source(CLIENT_ID, PROGRAM_ID, WEEK, confirm=True) is False


class TestPersonalizedWeekScenario:
    @pytest.mark.asyncio
    async def test_personalized_week_ignores_new_plan_sessions_until_reset(self, store, assigned, copies):
        await copies.delete_session(CLIENT_ID, PROGRAM_ID, WEEK, "s_w1_row")
        await PlanRepository(store).create_session(PLAN_ID, "mod_w1", title="Conditioning", day_index=5, session_id="s_new")

        resolved = await _resolve(store)
        assert resolved.source == "client_copy"
        assert [s.id for s in resolved.sessions] == ["s_w1_squat"]

        await copies.reset_to_source(CLIENT_ID, PROGRAM_ID, WEEK, confirm=True)
        assert [s.id for s in (await _resolve(store)).sessions] == ["s_w1_squat", "s_w1_row", "s_new"]


class TestMoveSessionAcrossWeeks:
    @pytest.mark.asyncio
    async def test_move(self, store, assigned, copies):
        record = await copies.move_session_across_weeks(CLIENT_ID, PROGRAM_ID, WEEK, "2025-W11", "s_w1_row", 3)
        assert record.status == "completed"

        source = await _resolve(store)
        target = await _resolve(store, "2025-W11")
        assert [s.id for s in source.sessions] == ["s_w1_squat"]
        assert [s.title for s in target.sessions] == ["Bench Day", "Rows"]
        moved = target.sessions[1]
        assert moved.day_index == 3
        assert moved.id != "s_w1_row"
        assert [ex.title for ex in moved.exercises] == ["Barbell Row"]

    @pytest.mark.asyncio
    async def test_move_into_unassigned_week_creates_shell(self, store, assigned, copies):
        await copies.move_session_across_weeks(CLIENT_ID, PROGRAM_ID, WEEK, "2025-W30", "s_w1_squat", 0)
        target = await _resolve(store, "2025-W30")
        assert target.source == "client_copy"
        assert [s.title for s in target.sessions] == ["Squat Day"]

    @pytest.mark.asyncio
    async def test_unknown_session_writes_nothing(self, store, assigned, copies):
        with pytest.raises(NotFoundError):
            await copies.move_session_across_weeks(CLIENT_ID, PROGRAM_ID, WEEK, "2025-W11", "nope", 3)
        assert store.collection_ids(keys.CLIENT_PLAN_CONTENT) == []
        assert store.collection_ids(keys.WORKFLOWS) == []

    @pytest.mark.asyncio
    async def test_failure_is_reported_and_resumable(self, store, assigned, copies):
        store.inject_fault("delete", collection=keys.client_plan_content_sessions(CONTENT_ID), doc_id="s_w1_row")

        with pytest.raises(CrossWeekMoveError) as exc_info:
            await copies.move_session_across_weeks(CLIENT_ID, PROGRAM_ID, WEEK, "2025-W11", "s_w1_row", 3)

        error = exc_info.value
        assert error.failed_step == "delete_from_source"
        assert error.completed_steps == ["ensure_target", "add_to_target"]

        # Duplicated until the workflow is resumed.
        assert "s_w1_row" in [s.id for s in (await _resolve(store)).sessions]
        assert [s.title for s in (await _resolve(store, "2025-W11")).sessions] == ["Bench Day", "Rows"]
        record = await load_workflow(store, error.workflow_id)
        assert record.status == "failed"
        assert record.last_completed_step == "add_to_target"

        resumed = await copies.resume_move(error.workflow_id)
        assert resumed.status == "completed"
        assert [s.id for s in (await _resolve(store)).sessions] == ["s_w1_squat"]
        assert [s.title for s in (await _resolve(store, "2025-W11")).sessions] == ["Bench Day", "Rows"]
