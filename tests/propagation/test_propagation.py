"""Tests for pushing creator edits out to personalized client copies."""

from datetime import date

import pytest
import pytest_asyncio
from conftest import CLIENT_ID, CREATOR_ID, OTHER_CLIENT_ID, PLAN_ID, PROGRAM_ID, seed_content

from coachplan.audit.content_log import list_content_events
from coachplan.content import keys
from coachplan.content.library import LibraryRepository
from coachplan.content.nutrition import NutritionRepository
from coachplan.content.nutrition_copy import ClientNutritionPlanContentService
from coachplan.content.plan_copy import ClientPlanContentService
from coachplan.content.plans import PlanRepository
from coachplan.content.resolver import ContentResolver
from coachplan.content.session_copy import ClientSessionContentService
from coachplan.errors import IndexUnavailableError
from coachplan.propagation.service import PropagationEngine
from coachplan.scheduling.client_programs import ClientProgramService
from coachplan.scheduling.client_sessions import ClientSessionService

W10 = "2025-W10"
W11 = "2025-W11"


async def _personalize(store) -> dict[str, str]:
    """Week copies for both clients plus one session copy per library session.

    Returns the session copy ids keyed by library session id.
    """
    programs = ClientProgramService(store)
    copies = ClientPlanContentService(store)
    for client_id in (CLIENT_ID, OTHER_CLIENT_ID):
        await programs.assign_plan_to_consecutive_weeks(PROGRAM_ID, client_id, PLAN_ID, W10)
        await copies.update_session(client_id, PROGRAM_ID, W10, "s_w1_row", {"title": f"{client_id} rows"})
    await copies.update_session(CLIENT_ID, PROGRAM_ID, W11, "s_w2_bench", {"title": "Light bench"})

    sessions = ClientSessionService(store)
    session_copies = ClientSessionContentService(store)
    ids = {}
    for library_session_id, day in (("lib_squat", 1), ("lib_bench", 2)):
        client_session_id = await sessions.assign_session_to_date(
            CLIENT_ID, "prog_solo", None, library_session_id, date(2025, 5, day)
        )
        await session_copies.update_session(client_session_id, {"title": "Mine"}, creator_id=CREATOR_ID)
        ids[library_session_id] = client_session_id
    return ids


async def _personalized_store(request, name: str):
    store = request.getfixturevalue(name)
    await seed_content(store)
    ids = await _personalize(store)
    return store, ids


class TestFindAffected:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_name", ["store", "sql_store"])
    async def test_plan(self, request, store_name):
        store, _ = await _personalized_store(request, store_name)
        affected = await PropagationEngine(store).find_affected_by_plan(PLAN_ID)

        assert affected.affected_user_ids == [CLIENT_ID, OTHER_CLIENT_ID]
        assert sorted(affected.client_plan_content_ids) == [
            "client1_prog1_2025-W10",
            "client1_prog1_2025-W11",
            "client2_prog1_2025-W10",
        ]
        assert affected.total == 3

    @pytest.mark.asyncio
    async def test_library_session(self, request):
        store, ids = await _personalized_store(request, "store")
        affected = await PropagationEngine(store).find_affected_by_library_session("lib_squat")

        assert affected.client_session_content_ids == [ids["lib_squat"]]
        assert sorted(affected.client_plan_content_ids) == ["client1_prog1_2025-W10", "client2_prog1_2025-W10"]
        assert affected.affected_user_ids == [CLIENT_ID, OTHER_CLIENT_ID]

    @pytest.mark.asyncio
    async def test_scan_fallback_matches_indexed_lookup(self, request):
        indexed, _ = await _personalized_store(request, "store")
        unindexed, _ = await _personalized_store(request, "unindexed_store")

        for find in ("find_affected_by_plan", "find_affected_by_library_session"):
            source_id = PLAN_ID if find == "find_affected_by_plan" else "lib_bench"
            expected = await getattr(PropagationEngine(indexed), find)(source_id)
            actual = await getattr(PropagationEngine(unindexed), find)(source_id)
            assert actual.affected_user_ids == expected.affected_user_ids
            assert sorted(actual.client_plan_content_ids) == sorted(expected.client_plan_content_ids)
            assert len(actual.client_session_content_ids) == len(expected.client_session_content_ids)

    @pytest.mark.asyncio
    async def test_required_index_is_enforced(self, request):
        store, _ = await _personalized_store(request, "unindexed_store")
        with pytest.raises(IndexUnavailableError):
            await PropagationEngine(store, require_index=True).find_affected_by_plan(PLAN_ID)

    @pytest.mark.asyncio
    async def test_copies_without_provenance_are_not_found(self, store, seeded):
        await store.set(keys.CLIENT_PLAN_CONTENT, "client1_prog1_2025-W20", {"title": "Legacy", "source_plan_id": PLAN_ID})
        affected = await PropagationEngine(store).find_affected_by_plan(PLAN_ID)
        assert affected.client_plan_content_ids == []

    @pytest.mark.asyncio
    async def test_affected_users_with_details(self, request):
        store, _ = await _personalized_store(request, "store")
        await store.set(keys.USERS, CLIENT_ID, {"displayName": "Ana", "email": "ana@example.com"})
        await store.set(keys.USERS, OTHER_CLIENT_ID, {"email": "ben@example.com"})

        users = await PropagationEngine(store).get_affected_users_with_details_by_plan(PLAN_ID)
        assert [(u.user_id, u.display_name) for u in users] == [(CLIENT_ID, "Ana"), (OTHER_CLIENT_ID, "ben@example.com")]

        users = await PropagationEngine(store).get_affected_users_with_details_by_library_session("lib_bench")
        assert [u.user_id for u in users] == [CLIENT_ID]


class TestCopyOwners:
    CLIENT = "client_a"

    @pytest.mark.asyncio
    async def test_owner_is_read_from_the_copy(self, store, seeded):
        await ClientProgramService(store).assign_plan_to_consecutive_weeks(PROGRAM_ID, self.CLIENT, PLAN_ID, W10)
        await ClientPlanContentService(store).update_session(self.CLIENT, PROGRAM_ID, W10, "s_w1_row", {"title": "Mine"})
        client_session_id = await ClientSessionService(store).assign_session_to_date(
            self.CLIENT, "prog_solo", None, "lib_squat", date(2025, 5, 1)
        )
        copy = await ClientSessionContentService(store).update_session(client_session_id, {"title": "Mine"}, creator_id=CREATOR_ID)
        assert copy.client_id == self.CLIENT

        engine = PropagationEngine(store)
        affected = await engine.find_affected_by_plan(PLAN_ID)
        assert affected.affected_user_ids == [self.CLIENT]
        assert affected.copy_owners == {"client_a_prog1_2025-W10": self.CLIENT}

        affected = await engine.find_affected_by_library_session("lib_squat")
        assert affected.affected_user_ids == [self.CLIENT]
        assert affected.copy_owners == {client_session_id: self.CLIENT, "client_a_prog1_2025-W10": self.CLIENT}

        result = await engine.propagate_library_session("lib_squat")
        assert result.propagated == 2
        assert result.ok
        for copy_id in (client_session_id, "client_a_prog1_2025-W10"):
            events = await list_content_events(store, subject_id=copy_id)
            assert [e["client_id"] for e in events if e["event"] == "propagation_deleted"] == [self.CLIENT]

    @pytest.mark.asyncio
    async def test_copies_without_client_id_fall_back_to_the_id(self, store, seeded):
        await store.set(
            keys.CLIENT_PLAN_CONTENT,
            "client3_prog1_2025-W20",
            {"title": "Legacy", "provenance": {"source_type": "plan", "source_id": PLAN_ID}},
        )
        affected = await PropagationEngine(store).find_affected_by_plan(PLAN_ID)
        assert affected.copy_owners == {"client3_prog1_2025-W20": "client3"}


class TestPropagate:
    @pytest.mark.asyncio
    async def test_plan_edits_reach_clients_after_propagation(self, request):
        store, ids = await _personalized_store(request, "store")
        await PlanRepository(store).update_session(PLAN_ID, "mod_w1", "s_w1_row", {"title": "Pendlay Rows"})

        resolver = ContentResolver(store)
        assert (await resolver.resolve_week(CLIENT_ID, PROGRAM_ID, W10)).sessions[1].title == "client1 rows"

        result = await PropagationEngine(store).propagate_plan(PLAN_ID)
        assert result.propagated == 3
        assert result.ok

        for client_id in (CLIENT_ID, OTHER_CLIENT_ID):
            resolved = await resolver.resolve_week(client_id, PROGRAM_ID, W10)
            assert resolved.source == "plan"
            assert resolved.sessions[1].title == "Pendlay Rows"
        # Session copies do not derive from the plan.
        assert sorted(store.collection_ids(keys.CLIENT_SESSION_CONTENT)) == sorted(ids.values())

    @pytest.mark.asyncio
    async def test_library_edits_reach_clients_after_propagation(self, request):
        store, ids = await _personalized_store(request, "store")
        await LibraryRepository(store).update_session(CREATOR_ID, "lib_squat", {"exercises": [{"title": "Pause Squat"}]})

        result = await PropagationEngine(store).propagate_library_session("lib_squat")
        assert result.propagated == 3

        resolver = ContentResolver(store)
        week = await resolver.resolve_week(CLIENT_ID, PROGRAM_ID, W10)
        assert week.source == "plan"
        assert [ex.title for ex in week.sessions[0].exercises] == ["Pause Squat"]
        session = await resolver.resolve_session(ids["lib_squat"], CREATOR_ID)
        assert session.source == "library"
        assert [ex.title for ex in session.exercises] == ["Pause Squat"]

        # Copies that do not derive from lib_squat are untouched.
        assert (await resolver.resolve_week(CLIENT_ID, PROGRAM_ID, W11)).source == "client_copy"
        assert (await resolver.resolve_session(ids["lib_bench"], CREATOR_ID)).source == "client_copy"

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported_and_the_rest_continues(self, request):
        store, _ = await _personalized_store(request, "store")
        store.inject_fault("batch", collection=keys.CLIENT_PLAN_CONTENT, doc_id="client1_prog1_2025-W10")

        result = await PropagationEngine(store).propagate_plan(PLAN_ID)

        assert result.propagated == 2
        assert not result.ok
        assert len(result.errors) == 1
        assert "client1_prog1_2025-W10" in result.errors[0]
        assert store.collection_ids(keys.CLIENT_PLAN_CONTENT) == ["client1_prog1_2025-W10"]

    @pytest.mark.asyncio
    async def test_nothing_to_propagate(self, store, seeded):
        result = await PropagationEngine(store).propagate_plan(PLAN_ID)
        assert result.propagated == 0
        assert result.ok


class TestNutritionPropagation:
    @pytest_asyncio.fixture
    async def nutrition_setup(self, store):
        nutrition = NutritionRepository(store)
        copies = ClientNutritionPlanContentService(store)
        cut = await nutrition.create_plan(CREATOR_ID, "Cut", plan_id="nut_cut", daily_calories=2000)
        bulk = await nutrition.create_plan(CREATOR_ID, "Bulk", plan_id="nut_bulk", daily_calories=3200)

        await nutrition.create_assignment(CLIENT_ID, cut, assignment_id="a1")
        await nutrition.create_assignment(OTHER_CLIENT_ID, cut, assignment_id="a2")
        await nutrition.create_assignment(CLIENT_ID, bulk, assignment_id="a3")
        for assignment_id, plan in (("a1", cut), ("a2", cut), ("a3", bulk)):
            await copies.set_from_library(assignment_id, plan)
        await copies.update(assignment_id="a1", data={"daily_calories": 1900, "source_plan_id": "forged"})
        return nutrition, copies

    @pytest.mark.asyncio
    async def test_copy_edits_keep_provenance(self, store, nutrition_setup):
        _, copies = nutrition_setup
        copy = await copies.get_by_assignment_id("a1")
        assert copy.daily_calories == 1900
        assert copy.source_plan_id == "nut_cut"
        assert await copies.get_assignment_ids_by_source_plan_id("nut_cut") == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_affected_users(self, store, nutrition_setup):
        affected = await PropagationEngine(store).find_affected_by_nutrition_plan("nut_cut")
        assert affected.assignment_ids == ["a1", "a2"]
        assert affected.affected_user_ids == [CLIENT_ID, OTHER_CLIENT_ID]

        await store.set(keys.USERS, CLIENT_ID, {"name": "Ana"})
        users = await PropagationEngine(store).get_affected_users_with_details_by_nutrition_plan("nut_cut")
        assert [(u.user_id, u.display_name) for u in users] == [(CLIENT_ID, "Ana"), (OTHER_CLIENT_ID, OTHER_CLIENT_ID)]

    @pytest.mark.asyncio
    async def test_propagation_deletes_copies_and_refreshes_snapshot(self, store, nutrition_setup):
        nutrition, copies = nutrition_setup
        await nutrition.update_plan(CREATOR_ID, "nut_cut", {"daily_calories": 1800})

        result = await PropagationEngine(store).propagate_nutrition_plan("nut_cut", creator_id=CREATOR_ID)

        assert result.propagated == 2
        assert await copies.get_by_assignment_id("a1") is None
        assert await copies.get_by_assignment_id("a2") is None
        assert await copies.get_by_assignment_id("a3") is not None
        assert (await nutrition.get_assignment("a1")).plan["daily_calories"] == 1800
        assert (await nutrition.get_assignment("a3")).plan["daily_calories"] == 3200

    @pytest.mark.asyncio
    async def test_propagation_without_creator_keeps_snapshot(self, store, nutrition_setup):
        nutrition, copies = nutrition_setup
        await nutrition.update_plan(CREATOR_ID, "nut_cut", {"daily_calories": 1800})

        result = await PropagationEngine(store).propagate_nutrition_plan("nut_cut")

        assert result.propagated == 2
        assert await copies.get_by_assignment_id("a1") is None
        assert (await nutrition.get_assignment("a1")).plan["daily_calories"] == 2000
