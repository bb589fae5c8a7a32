"""
Shared fixtures for the progress engine tests.

The clock starts on Wednesday 2026-03-04 at 10:00 UTC so that day and week
boundaries are reached only when a test advances it.
"""

import random
import datetime

import pytest
import pytest_asyncio

from pharmalingo.common.clock import FixedClock
from pharmalingo.common.config import EngineConfig, PersistenceConfig
from pharmalingo.progress.catalog import Catalog, Chapter, LessonPart
from pharmalingo.progress.engine import ProgressEngine
from pharmalingo.progress.models import Answer
from pharmalingo.progress.repository import MemoryProgressStore

START = datetime.datetime(2026, 3, 4, 10, 0, tzinfo=datetime.timezone.utc)


def make_config(**overrides) -> EngineConfig:
    """Engine config with fast, retry-free persistence"""
    data = {"persistence": PersistenceConfig(max_retries=0, retry_delay=0, warn_after_failures=1)}
    data.update(overrides)
    return EngineConfig(**data)


def answers(correct: int, wrong: int = 0, drug_id: str = "atorvastatin") -> list:
    """``correct`` right answers followed by ``wrong`` wrong ones on one drug"""
    return (
        [Answer(is_correct=True, drug_id=drug_id) for _ in range(correct)]
        + [Answer(is_correct=False, drug_id=drug_id) for _ in range(wrong)]
    )


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def clock():
    return FixedClock(START, tz="UTC")


@pytest.fixture
def catalog():
    return Catalog(
        [
            Chapter(id="mod-1", title="Cardio", parts=[
                LessonPart(id="mod-1-p1", drug_ids=["atorvastatin", "lisinopril"]),
                LessonPart(id="mod-1-p2", drug_ids=["metoprolol"]),
            ]),
            Chapter(id="mod-2", title="Endocrine", parts=[
                LessonPart(id="mod-2-p1", drug_ids=["metformin"]),
                LessonPart(id="mod-2-p2", drug_ids=["levothyroxine"]),
            ]),
            Chapter(id="mod-11", title="End Game", parts=[
                LessonPart(id="mod-11-p1", drug_ids=[]),
            ]),
        ],
        capstone_chapter_id="mod-11",
    )


@pytest.fixture
def store():
    return MemoryProgressStore()


@pytest_asyncio.fixture
async def engine(store, config, clock, catalog):
    engine = ProgressEngine(store, config=config, clock=clock, catalog=catalog, rng=random.Random(7))
    await engine.init("learner-1")
    yield engine
    await engine.teardown()
