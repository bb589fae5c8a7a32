import asyncio

import pytest

from pharmalingo.common.config import PersistenceConfig
from pharmalingo.common.error_handling import PersistenceFailure
from pharmalingo.progress.repository import MemoryProgressStore
from pharmalingo.progress.writer import WriteBehindWriter

NO_RETRY = PersistenceConfig(max_retries=0, retry_delay=0, warn_after_failures=2)


class FlakyStore(MemoryProgressStore):
    """Memory store that fails while ``failing`` is set and records every save"""

    def __init__(self):
        super().__init__()
        self.failing = False
        self.attempts = []

    async def save(self, user_id, data):
        self.attempts.append(data)
        await asyncio.sleep(0)
        if self.failing:
            raise PersistenceFailure("disk full", user_id=user_id)
        await super().save(user_id, data)


@pytest.mark.asyncio
async def test_saves_in_background():
    store = FlakyStore()
    writer = WriteBehindWriter(store, "learner-1", NO_RETRY)
    writer.submit({"level": 1})
    assert await writer.flush()
    assert await store.load("learner-1") == {"level": 1}
    assert writer.saves == 1


@pytest.mark.asyncio
async def test_latest_snapshot_wins():
    store = FlakyStore()
    writer = WriteBehindWriter(store, "learner-1", NO_RETRY)
    writer.submit({"level": 1})
    await asyncio.sleep(0)
    for level in range(2, 6):
        writer.submit({"level": level})
    await writer.flush()
    assert await store.load("learner-1") == {"level": 5}
    # the first save was already in flight, the rest collapsed into one
    assert store.attempts == [{"level": 1}, {"level": 5}]


@pytest.mark.asyncio
async def test_failed_snapshot_is_retried_on_flush():
    store = FlakyStore()
    store.failing = True
    writer = WriteBehindWriter(store, "learner-1", NO_RETRY)
    writer.submit({"level": 2})
    assert not await writer.flush()
    assert writer.has_unsaved

    store.failing = False
    assert await writer.flush()
    assert await store.load("learner-1") == {"level": 2}


@pytest.mark.asyncio
async def test_warns_once_after_repeated_failures():
    store = FlakyStore()
    store.failing = True
    warnings = []
    writer = WriteBehindWriter(store, "learner-1", NO_RETRY, on_warning=warnings.append)

    for level in range(4):
        writer.submit({"level": level})
        await writer.flush()
    assert len(warnings) == 1
    assert isinstance(warnings[0], PersistenceFailure)

    store.failing = False
    writer.submit({"level": 9})
    await writer.flush()
    store.failing = True
    for level in range(2):
        writer.submit({"level": level})
        await writer.flush()
    assert len(warnings) == 2


@pytest.mark.asyncio
async def test_retries_before_giving_up():
    store = FlakyStore()
    store.failing = True
    config = PersistenceConfig(max_retries=2, retry_delay=0, warn_after_failures=1)
    writer = WriteBehindWriter(store, "learner-1", config)
    writer.submit({"level": 1})
    await writer.flush()
    assert len(store.attempts) == 3
