"""Root conftest for all tests.

Stores are created per test. Service calls are async; tests are marked
@pytest.mark.asyncio and await them.
"""

from dataclasses import dataclass

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from coachplan.config.settings import settings
from coachplan.content.library import LibraryRepository
from coachplan.content.plans import PlanRepository
from coachplan.store.base import IndexConfig
from coachplan.store.memory import InMemoryDocumentStore

CREATOR_ID = "creator1"
CLIENT_ID = "client1"
OTHER_CLIENT_ID = "client2"
PROGRAM_ID = "prog1"
PLAN_ID = "plan_hyp"


@dataclass
class SeededContent:
    """Ids of the library sessions, plan and modules created by seed_content."""

    creator_id: str
    plan_id: str
    module_ids: list[str]
    squat_id: str
    bench_id: str


async def seed_content(store) -> SeededContent:
    """Library sessions plus plan "Hypertrophy A" with three modules.

    Week1: squat (library ref, Monday) + row (inline, Wednesday)
    Week2: bench (library ref, Tuesday)
    Week3: squat (library ref, Friday)
    """
    library = LibraryRepository(store)
    plans = PlanRepository(store)

    await library.create_session(
        CREATOR_ID,
        "Squat Day",
        exercises=[{"title": "Back Squat", "sets": [{"reps": 5, "intensity": "80%"} for _ in range(3)]}],
        session_id="lib_squat",
    )
    await library.create_session(
        CREATOR_ID,
        "Bench Day",
        exercises=[{"title": "Bench Press", "sets": [{"reps": 8, "intensity": "RPE 8"}]}],
        session_id="lib_bench",
    )

    await plans.create_plan(CREATOR_ID, "Hypertrophy A", plan_id=PLAN_ID)
    for index, title in enumerate(["Week1", "Week2", "Week3"]):
        await plans.create_module(PLAN_ID, title, module_id=f"mod_w{index + 1}")

    await plans.create_session(PLAN_ID, "mod_w1", library_session_ref="lib_squat", day_index=0, session_id="s_w1_squat")
    await plans.create_session(
        PLAN_ID,
        "mod_w1",
        title="Rows",
        day_index=2,
        exercises=[{"title": "Barbell Row", "sets": [{"reps": 10}]}],
        session_id="s_w1_row",
    )
    await plans.create_session(PLAN_ID, "mod_w2", library_session_ref="lib_bench", day_index=1, session_id="s_w2_bench")
    await plans.create_session(PLAN_ID, "mod_w3", library_session_ref="lib_squat", day_index=4, session_id="s_w3_squat")

    return SeededContent(
        creator_id=CREATOR_ID,
        plan_id=PLAN_ID,
        module_ids=["mod_w1", "mod_w2", "mod_w3"],
        squat_id="lib_squat",
        bench_id="lib_bench",
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """In-memory store with the default provenance and lookup indexes."""
    return InMemoryDocumentStore(IndexConfig(settings.indexed_field_map()))


@pytest.fixture
def unindexed_store() -> InMemoryDocumentStore:
    """In-memory store without any index: every equality query needs a scan."""
    return InMemoryDocumentStore()


@pytest_asyncio.fixture
async def seeded(store) -> SeededContent:
    return await seed_content(store)


@pytest_asyncio.fixture
async def seeded_unindexed(unindexed_store) -> SeededContent:
    return await seed_content(unindexed_store)


@pytest.fixture(scope="function")
def sql_store(monkeypatch):
    """SQL document store over an isolated in-memory SQLite database.

    The engine getter in coachplan.db.session is patched so every
    get_session() call in the store shares the one in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    def mock_get_engine():
        return engine

    monkeypatch.setattr("coachplan.db.session._get_engine", mock_get_engine)
    monkeypatch.setattr("coachplan.db.session.get_engine", mock_get_engine)
    monkeypatch.setattr("coachplan.db.session._SessionLocal", None)

    from coachplan.store.sql import SqlDocumentStore

    try:
        yield SqlDocumentStore(IndexConfig(settings.indexed_field_map()))
    finally:
        engine.dispose()
