import asyncio
import random
import datetime

import pytest

from pharmalingo.common.clock import FixedClock
from pharmalingo.common.config import LeagueConfig
from pharmalingo.common.error_handling import (
    AlreadyClaimed,
    EngineNotInitialized,
    HeartsAlreadyFull,
    InsufficientCoins,
    InsufficientHearts,
    LootAlreadyOpened,
    NoStreakSaveAvailable,
    PersistenceFailure,
    QuestNotCompleted,
    UnknownItem,
)
from pharmalingo.progress.collaborators import Leaderboard, StaticStreakStatusProvider, StreakStatusProvider
from pharmalingo.progress.engine import ProgressEngine
from pharmalingo.progress.models import Answer, LootRewardType, StreakState, UserProgress
from pharmalingo.progress.repository import MemoryProgressStore
from pharmalingo.tests.conftest import START, answers, make_config


class FixedRoll:
    def __init__(self, roll: float):
        self.roll = roll

    def random(self) -> float:
        return self.roll

    def randint(self, low: int, high: int) -> int:
        return low


class FixedRankLeaderboard(Leaderboard):
    def __init__(self, rank: int):
        self.rank = rank
        self.calls = []

    async def get_rank(self, user_id, week_id):
        self.calls.append((user_id, week_id))
        return self.rank


class BrokenLeaderboard(Leaderboard):
    async def get_rank(self, user_id, week_id):
        raise ConnectionError("leaderboard offline")


class GatedLeaderboard(Leaderboard):
    """Answers only once released; hangs forever if never released"""

    def __init__(self, rank: int = 3):
        self.rank = rank
        self.entered = asyncio.Event()
        self.released = asyncio.Event()

    async def get_rank(self, user_id, week_id):
        self.entered.set()
        await self.released.wait()
        return self.rank


class BrokenStreakProvider(StreakStatusProvider):
    async def fetch(self):
        raise ConnectionError("rpc offline")


class FailingStore(MemoryProgressStore):
    def __init__(self, initial=None, fail_loads=False):
        super().__init__(initial)
        self.fail_loads = fail_loads
        self.fail_saves = False

    async def load(self, user_id):
        if self.fail_loads:
            raise PersistenceFailure("unreachable", user_id=user_id)
        return await super().load(user_id)

    async def save(self, user_id, data):
        if self.fail_saves:
            raise PersistenceFailure("disk full", user_id=user_id)
        await super().save(user_id, data)


async def started(store, clock, catalog, user_id="learner-1", **kwargs) -> ProgressEngine:
    engine = ProgressEngine(store, config=make_config(), clock=clock, catalog=catalog, **kwargs)
    await engine.init(user_id)
    return engine


# Lifecycle

@pytest.mark.asyncio
async def test_new_learner_is_saved(engine, store):
    progress = engine.progress
    assert progress.stats.hearts == 5
    assert progress.stats.coins == 50
    assert progress.stats.league_week_start == datetime.date(2026, 3, 2)
    assert await engine.on_background()
    assert (await store.load("learner-1"))["schema_version"] == 2


@pytest.mark.asyncio
async def test_operations_require_init(config, clock, catalog):
    engine = ProgressEngine(MemoryProgressStore(), config=config, clock=clock, catalog=catalog)
    with pytest.raises(EngineNotInitialized):
        await engine.consume_heart()
    with pytest.raises(EngineNotInitialized):
        engine.progress


@pytest.mark.asyncio
async def test_load_failure_propagates(clock, catalog):
    engine = ProgressEngine(FailingStore(fail_loads=True), config=make_config(), clock=clock, catalog=catalog)
    with pytest.raises(PersistenceFailure):
        await engine.init("learner-1")
    assert not engine.initialized


@pytest.mark.asyncio
async def test_init_catches_up_stored_progress(clock, catalog):
    stored = UserProgress.new(make_config())
    stored.stats.streak_current = 9
    stored.stats.last_active_date = datetime.date(2026, 2, 20)
    stored.stats.hearts = 1
    stored.stats.next_heart_at = START - datetime.timedelta(hours=10)
    stored.completed_lessons = {"mod-1-p1": 85}
    store = MemoryProgressStore({"learner-1": stored.to_dict()})

    engine = await started(store, clock, catalog)
    progress = engine.progress
    assert progress.stats.streak_current == 0
    assert progress.stats.hearts == 5
    assert progress.stats.next_heart_at is None
    assert progress.lesson_stars == {"mod-1-p1": 1}
    await engine.teardown()
    assert (await store.load("learner-1"))["stats"]["streak_current"] == 0


@pytest.mark.asyncio
async def test_legacy_record_is_migrated_on_init(clock, catalog):
    store = MemoryProgressStore({"learner-1": {
        "xp": 700, "streak": 2, "lastActiveDate": "2026-03-03", "heartsRemaining": 4,
        "coins": 90, "completedLessons": {"mod-1-p1": 75}, "level": 2,
    }})
    engine = await started(store, clock, catalog)
    assert engine.progress.stats.xp_total == 700
    assert engine.streak_state is StreakState.ACTIVE
    await engine.teardown()
    saved = await store.load("learner-1")
    assert saved["schema_version"] == 2
    assert "xp" not in saved


@pytest.mark.asyncio
async def test_switching_learner_releases_previous(engine, store):
    await engine.complete_lesson("mod-1-p1", answers(5))
    await engine.init("learner-2")
    assert engine.user_id == "learner-2"
    assert engine.progress.stats.xp_total == 0
    assert (await store.load("learner-1"))["stats"]["xp_total"] == 50


# Sessions

@pytest.mark.asyncio
async def test_complete_lesson_rewards(engine):
    result = await engine.complete_lesson("mod-1-p1", answers(4, wrong=1))
    assert (result.xp_earned, result.coins_earned) == (24, 8)
    assert result.score == 80
    assert result.passed
    assert result.streak == 1
    assert result.stars == 1

    progress = engine.progress
    assert progress.stats.coins == 58
    assert progress.stats.lessons_completed == 1
    assert progress.chapter_progress["mod-1"] == 50
    assert progress.drug_mastery["atorvastatin"].mastery_level == 3
    assert [m.lesson_id for m in progress.mistake_bank] == ["mod-1-p1"]
    assert engine.accuracy == 80
    assert engine.is_lesson_unlocked("mod-1", 1)
    assert engine.is_lesson_unlocked("mod-2", 0)


@pytest.mark.asyncio
async def test_perfect_lesson_bonuses(engine):
    result = await engine.complete_lesson("mod-1-p1", answers(5))
    assert result.xp_earned == 50
    assert result.coins_earned == 16 + 5 + 16
    assert result.highest_combo == 5


@pytest.mark.asyncio
async def test_best_score_and_stars_accumulate(engine):
    await engine.complete_lesson("mod-1-p1", answers(5))
    await engine.complete_lesson("mod-1-p1", answers(1, wrong=4))
    assert engine.lesson_score("mod-1-p1") == 100
    assert engine.lesson_stars("mod-1-p1") == 1
    for _ in range(3):
        await engine.complete_lesson("mod-1-p1", answers(5))
    assert engine.lesson_stars("mod-1-p1") == 3


@pytest.mark.asyncio
async def test_capstone_earns_no_stars(engine):
    result = await engine.complete_lesson("mod-11-p1", answers(5))
    assert result.stars == 0
    assert engine.lesson_stars("mod-11-p1") == 0


@pytest.mark.asyncio
async def test_double_xp_applies_to_one_lesson(engine):
    engine.rng = FixedRoll(0.15)
    reward = await engine.open_loot_box()
    assert reward.type is LootRewardType.DOUBLE_XP

    practice = await engine.complete_practice(answers(4, wrong=1))
    assert not practice.double_xp
    assert engine.progress.stats.double_xp_next_lesson

    first = await engine.complete_lesson("mod-1-p1", answers(4, wrong=1))
    second = await engine.complete_lesson("mod-1-p2", answers(4, wrong=1))
    assert (first.double_xp, first.xp_earned) == (True, 48)
    assert (second.double_xp, second.xp_earned) == (False, 24)


@pytest.mark.asyncio
async def test_review_practice_resolves_mistakes(engine):
    await engine.complete_lesson("mod-2-p1", answers(1, wrong=2, drug_id="metformin"))
    assert engine.recent_mistake_drug_ids() == ["metformin"]
    await engine.complete_practice([Answer(is_correct=True, drug_id="metformin")], review_mistakes=True)
    assert len(engine.recent_mistakes()) == 1


@pytest.mark.asyncio
async def test_review_queues(engine, clock):
    await engine.complete_lesson("mod-1-p1", answers(1, drug_id="lisinopril"))
    assert engine.seen_drug_ids() == ["lisinopril"]
    assert engine.due_for_review() == []
    assert engine.low_mastery() == ["lisinopril"]
    clock.advance(days=1)
    assert engine.due_for_review() == ["lisinopril"]


@pytest.mark.asyncio
async def test_concepts_through_sessions(engine):
    concept = [Answer(is_correct=True, drug_id="metoprolol", concept_id="beta-blockers") for _ in range(3)]
    await engine.complete_practice(concept)
    assert engine.is_concept_mastered("beta-blockers")


# Streak

@pytest.mark.asyncio
async def test_streak_over_days(engine, clock):
    assert (await engine.complete_lesson("mod-1-p1", answers(4))).streak == 1
    assert (await engine.complete_lesson("mod-1-p2", answers(4))).streak == 1
    clock.advance(days=1)
    assert (await engine.complete_lesson("mod-1-p1", answers(4))).streak == 2

    clock.advance(days=2)
    assert engine.streak_break_pending
    assert (await engine.complete_lesson("mod-1-p1", answers(4))).streak == 0
    clock.advance(days=1)
    assert (await engine.complete_lesson("mod-1-p1", answers(4))).streak == 1
    assert engine.progress.stats.streak_best == 2


@pytest.mark.asyncio
async def test_streak_save_rescues_pending_break(clock, catalog):
    stored = UserProgress.new(make_config())
    stored.stats.coins = 500
    stored.stats.streak_current = 6
    stored.stats.streak_best = 6
    stored.stats.last_active_date = datetime.date(2026, 3, 2)
    engine = await started(MemoryProgressStore({"learner-1": stored.to_dict()}), clock, catalog)

    assert engine.streak_state is StreakState.PENDING_BREAK
    assert engine.effective_streak == 6
    assert await engine.buy_streak_save() == 1
    assert engine.progress.stats.coins == 300
    assert await engine.use_streak_save() == 0
    assert engine.streak_state is StreakState.ACTIVE
    assert await engine.record_streak_activity() == 7
    await engine.teardown()


@pytest.mark.asyncio
async def test_accept_break(clock, catalog):
    stored = UserProgress.new(make_config())
    stored.stats.streak_current = 6
    stored.stats.last_active_date = datetime.date(2026, 3, 2)
    engine = await started(MemoryProgressStore({"learner-1": stored.to_dict()}), clock, catalog)

    with pytest.raises(NoStreakSaveAvailable):
        await engine.use_streak_save()
    await engine.accept_streak_break()
    assert engine.effective_streak == 0
    clock.advance(days=1)
    assert await engine.record_streak_activity() == 1
    await engine.teardown()


@pytest.mark.asyncio
async def test_server_streak_preferred_for_display(clock, catalog):
    provider = StaticStreakStatusProvider([{"streak_current": 12, "status": "at_risk"}])
    engine = await started(MemoryProgressStore(), clock, catalog, streak_provider=provider)
    await engine.complete_lesson("mod-1-p1", answers(4))
    assert engine.effective_streak == 1

    assert (await engine.refresh_server_streak()).streak_current == 12
    assert engine.effective_streak == 12
    assert engine.progress.stats.streak_current == 1

    provider.payload = {"streak_current": 12, "status": "lost"}
    await engine.on_foreground()
    await engine._refresh_task
    assert engine.effective_streak == 0

    provider.payload = {"status": "bogus"}
    await engine.refresh_server_streak()
    assert engine.server_streak.is_lost
    await engine.teardown()


@pytest.mark.asyncio
async def test_server_streak_failure_keeps_local(clock, catalog):
    engine = await started(MemoryProgressStore(), clock, catalog, streak_provider=BrokenStreakProvider())
    await engine.complete_lesson("mod-1-p1", answers(4))
    assert await engine.refresh_server_streak() is None
    assert engine.effective_streak == 1
    await engine.teardown()


# Hearts and shop

@pytest.mark.asyncio
async def test_hearts_run_out_and_regenerate(engine, clock):
    for expected in (4, 3, 2, 1, 0):
        assert await engine.consume_heart() == expected
    with pytest.raises(InsufficientHearts):
        await engine.consume_heart()
    assert engine.heart_countdown_seconds() == 3600

    clock.advance(minutes=90)
    assert engine.current_hearts() == 1
    assert engine.heart_countdown_seconds() == 1800
    clock.advance(hours=5)
    assert engine.current_hearts() == 5
    assert engine.heart_countdown_seconds() == 0


@pytest.mark.asyncio
async def test_concurrent_consumes_are_serialized(engine):
    results = await asyncio.gather(*(engine.consume_heart() for _ in range(5)))
    assert sorted(results) == [0, 1, 2, 3, 4]
    assert engine.progress.stats.hearts == 0


@pytest.mark.asyncio
async def test_rejected_purchase_changes_nothing(engine, store):
    await engine.on_background()
    before = engine.progress.to_dict()
    with pytest.raises(HeartsAlreadyFull):
        await engine.buy_full_refill_with_coins()
    with pytest.raises(UnknownItem):
        await engine.buy_item("hat")
    assert engine.progress.to_dict() == before
    await engine.on_background()
    assert await store.load("learner-1") == before


@pytest.mark.asyncio
async def test_rejection_still_commits_elapsed_time(engine, clock):
    for _ in range(5):
        await engine.consume_heart()
    clock.advance(hours=2)
    with pytest.raises(NoStreakSaveAvailable):
        await engine.use_streak_save()
    assert engine.progress.stats.hearts == 2


@pytest.mark.asyncio
async def test_shop(engine):
    await engine.consume_heart()
    assert await engine.buy_item("heart") == 5
    assert engine.progress.stats.coins == 20
    await engine.consume_heart()
    with pytest.raises(InsufficientCoins):
        await engine.buy_item("full_refill")
    assert engine.progress.stats.coins == 20
    await engine.add_heart()
    assert engine.current_hearts() == 5


# Quests and loot

@pytest.mark.asyncio
async def test_daily_quest_claims(engine, clock):
    with pytest.raises(QuestNotCompleted):
        await engine.claim_daily_quest(1)
    await engine.complete_lesson("mod-1-p1", answers(4))
    assert await engine.claim_daily_quest(1) == 20
    with pytest.raises(AlreadyClaimed):
        await engine.claim_daily_quest(1)
    assert [q.claimed for q in engine.daily_quests()] == [True, False, False]

    clock.advance(days=1)
    assert [q.current for q in engine.daily_quests()] == [0, 0, 0]
    await engine.complete_practice(answers(5))
    assert await engine.claim_daily_quest(1) == 20
    assert await engine.claim_daily_quest(2) == 10
    assert await engine.claim_daily_quest(3) == 15


@pytest.mark.asyncio
async def test_loot_once_per_day(engine, clock):
    engine.rng = FixedRoll(0.9)
    reward = await engine.open_loot_box()
    assert reward.type is LootRewardType.COINS
    assert engine.progress.stats.coins == 60
    with pytest.raises(LootAlreadyOpened):
        await engine.open_loot_box()
    clock.advance(days=1)
    await engine.open_loot_box()
    assert engine.progress.stats.coins == 70


@pytest.mark.asyncio
async def test_loot_with_seeded_rng_is_reproducible(engine, catalog):
    first = await engine.open_loot_box()
    other = await started(MemoryProgressStore(), FixedClock(START, tz="UTC"), catalog, rng=random.Random(7))
    assert (await other.open_loot_box()).to_dict() == first.to_dict()
    await other.teardown()


# League

@pytest.mark.asyncio
async def test_league_rollover_on_new_week(clock, catalog):
    board = FixedRankLeaderboard(3)
    engine = await started(MemoryProgressStore(), clock, catalog, leaderboard=board)
    await engine.complete_lesson("mod-1-p1", answers(5))

    clock.advance(days=5)
    await engine.on_foreground()
    result = engine.league_week_result
    assert result.promoted
    assert (result.previous_tier, result.new_tier, result.xp_earned) == ("Bronze", "Silver", 50)
    assert board.calls == [("learner-1", "2026-03-02")]

    stats = engine.progress.stats
    assert stats.league_tier == "Silver"
    assert stats.xp_this_week == 0
    assert stats.xp_total == 50

    engine.dismiss_league_result()
    await engine.on_foreground()
    assert engine.league_week_result is None
    assert len(board.calls) == 1
    await engine.teardown()


@pytest.mark.asyncio
async def test_league_rollover_without_rank_stays(clock, catalog):
    engine = await started(MemoryProgressStore(), clock, catalog, leaderboard=BrokenLeaderboard())
    clock.advance(days=7)
    await engine.record_streak_activity()
    result = engine.league_week_result
    assert result.stayed
    assert result.rank == 0
    assert engine.progress.stats.league_week_start == datetime.date(2026, 3, 9)
    await engine.teardown()


@pytest.mark.asyncio
async def test_hung_leaderboard_does_not_block_operations(clock, catalog):
    config = make_config(league=LeagueConfig(rank_timeout_seconds=0.05))
    engine = ProgressEngine(
        MemoryProgressStore(), config=config, clock=clock, catalog=catalog, leaderboard=GatedLeaderboard()
    )
    await engine.init("learner-1")
    clock.advance(days=7)

    result = await asyncio.wait_for(engine.complete_lesson("mod-1-p1", answers(5)), timeout=2)
    assert result.xp_earned == 50
    week = engine.league_week_result
    assert week.stayed
    assert week.rank == 0
    assert engine.progress.stats.league_week_start == datetime.date(2026, 3, 9)
    await engine.teardown()


@pytest.mark.asyncio
async def test_teardown_waits_for_operation_in_flight(clock, catalog, store):
    board = GatedLeaderboard()
    engine = await started(store, clock, catalog, leaderboard=board)
    clock.advance(days=7)

    lesson = asyncio.ensure_future(engine.complete_lesson("mod-1-p1", answers(5)))
    await board.entered.wait()
    teardown = asyncio.ensure_future(engine.teardown())
    for _ in range(5):
        await asyncio.sleep(0)
    assert not teardown.done()
    assert engine.initialized

    board.released.set()
    result = await lesson
    assert result.xp_earned == 50
    assert await teardown
    assert not engine.initialized

    saved = await store.load("learner-1")
    assert saved["stats"]["xp_total"] == 50
    assert "mod-1-p1" in saved["completed_lessons"]
    with pytest.raises(EngineNotInitialized):
        await engine.consume_heart()


@pytest.mark.asyncio
async def test_end_week_now(clock, catalog):
    engine = await started(MemoryProgressStore(), clock, catalog, leaderboard=FixedRankLeaderboard(30))
    result = await engine.end_week_now()
    assert result.stayed
    assert result.new_tier == "Bronze"
    await engine.teardown()


@pytest.mark.asyncio
async def test_default_leaderboard_uses_offline_cohort(engine, clock):
    clock.advance(days=7)
    await engine.on_foreground()
    result = engine.league_week_result
    assert result.rank == 30
    assert result.stayed


# Preferences, persistence and reset

@pytest.mark.asyncio
async def test_flags_and_preferences(engine):
    assert not engine.has_seen_teaching_slides("mod-1-p2")
    await engine.mark_teaching_slides_seen("mod-1-p2")
    assert engine.has_seen_teaching_slides("mod-1-p2")

    assert await engine.set_reminders_enabled(True)
    await engine.select_school("uni-7", "Pharmacy School")
    stats = engine.progress.stats
    assert (stats.selected_school_id, stats.selected_school_name) == ("uni-7", "Pharmacy School")

    for _ in range(5):
        await engine.consume_heart()
    state = engine.notification_state()
    assert state.heart_reminder_due
    assert state.next_heart_at == START + datetime.timedelta(hours=1)


@pytest.mark.asyncio
async def test_save_failures_warn_once_and_keep_state(clock, catalog):
    store = FailingStore()
    warnings = []
    engine = await started(store, clock, catalog, on_persistence_warning=warnings.append)
    await engine.on_background()

    store.fail_saves = True
    await engine.complete_lesson("mod-1-p1", answers(5))
    await engine.consume_heart()
    assert not await engine.on_background()
    assert len(warnings) == 1
    assert engine.progress.stats.xp_total == 50

    store.fail_saves = False
    assert await engine.teardown()
    assert (await store.load("learner-1"))["stats"]["hearts"] == 4


@pytest.mark.asyncio
async def test_reset_progress(engine, store):
    await engine.complete_lesson("mod-1-p1", answers(5))
    progress = await engine.reset_progress()
    assert progress.stats.xp_total == 0
    assert progress.completed_lessons == {}
    await engine.on_background()
    assert (await store.load("learner-1"))["stats"]["xp_total"] == 0
