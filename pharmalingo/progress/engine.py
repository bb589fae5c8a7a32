"""
Progress Engine

The single owner of a learner's ``UserProgress``. It coordinates:
1. Hearts - consumption, regeneration and purchases
2. Streak - daily activity, breaks and streak saves
3. Mastery - drug and concept spaced repetition, mistake bank
4. Quests & rewards - XP, coins, daily quests, loot chest
5. League - weekly rollover and tier changes
6. Persistence - write-behind saves of every committed state

Every public mutation runs under one asyncio lock. It first catches the
time-based state up to the clock, then computes the next state on a copy and
swaps it in, then queues exactly one save. A rejected operation changes
nothing beyond that catch-up.
"""

import copy
import random
import asyncio
import datetime
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, TypeVar, Union

from pharmalingo.common.clock import Clock, SystemClock
from pharmalingo.common.config import EngineConfig, get_config
from pharmalingo.common.error_handling import (
    EngineNotInitialized,
    ExternalServiceError,
    PharmaLingoError,
    UnknownItem,
    log_error,
)
from pharmalingo.common.logger import app_logger, for_user, log_execution_time
from pharmalingo.common.serialization import SerializableMixin
from pharmalingo.progress.catalog import Catalog
from pharmalingo.progress.collaborators import (
    Leaderboard,
    NotificationState,
    SimulatedLeaderboard,
    StreakStatus,
    StreakStatusProvider,
    parse_streak_status,
)
from pharmalingo.progress.hearts import HeartScheduler, reconcile
from pharmalingo.progress.league import LeagueManager
from pharmalingo.progress.mastery import MasteryTracker
from pharmalingo.progress.models import (
    Answer,
    DailyQuest,
    LeagueWeekResult,
    LootReward,
    MistakeBankEntry,
    ShopItem,
    StreakState,
    UserProgress,
)
from pharmalingo.progress.quests import (
    QuestLedger,
    award_xp,
    coins_for_xp,
    combo_bonus,
    credit_coins,
    highest_combo,
    lesson_xp,
    take_double_xp,
)
from pharmalingo.progress.repository import ProgressStore
from pharmalingo.progress.streak import StreakEngine, effective_streak, streak_state
from pharmalingo.progress.writer import WarningCallback, WriteBehindWriter

logger = app_logger.getChild("progress.engine")

R = TypeVar('R')


@dataclass
class SessionResult(SerializableMixin):
    """Rewards and state changes produced by a lesson or practice session"""

    __serializable_fields__ = [
        "xp_earned", "coins_earned", "correct", "total", "score", "passed",
        "highest_combo", "double_xp", "streak", "stars", "level",
    ]

    xp_earned: int
    coins_earned: int
    correct: int
    total: int
    score: int
    passed: bool
    highest_combo: int
    double_xp: bool
    streak: int
    stars: int
    level: int


class ProgressEngine:
    """
    Orchestrates every progress operation for one learner at a time.

    Usage:
        engine = ProgressEngine(MemoryProgressStore())
        await engine.init("user-1")
        result = await engine.complete_lesson("ch1-p1", answers)
        await engine.teardown()
    """

    def __init__(
        self,
        store: ProgressStore,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        catalog: Optional[Catalog] = None,
        leaderboard: Optional[Leaderboard] = None,
        streak_provider: Optional[StreakStatusProvider] = None,
        rng: Optional[random.Random] = None,
        on_persistence_warning: Optional[WarningCallback] = None
    ):
        """
        Initialize the engine.

        Args:
            store: Persisted store for progress documents
            config: Engine configuration (defaults to the loaded configuration)
            clock: Time source (defaults to the wall clock in the configured zone)
            catalog: Course structure for unlocking, stars and chapter progress
            leaderboard: League rank source (defaults to the offline cohort)
            streak_provider: Source of the server streak record
            rng: Random source for the loot chest
            on_persistence_warning: Called once when saves keep failing
        """
        self.config = config or get_config()
        self.store = store
        self.clock = clock or SystemClock(self.config.streak.timezone)
        self.catalog = catalog or Catalog()
        self.leaderboard = leaderboard or SimulatedLeaderboard(self._standing, self.config.league)
        self.streak_provider = streak_provider
        self.rng = rng or random.Random()
        self.on_persistence_warning = on_persistence_warning

        self.hearts = HeartScheduler(self.config.hearts)
        self.streak = StreakEngine(self.config.streak)
        self.mastery = MasteryTracker(self.config.mastery)
        self.quests = QuestLedger(self.config)
        self.league = LeagueManager(self.config.league)

        self.user_id: Optional[str] = None
        self.log = for_user(logger, None)
        self._progress: Optional[UserProgress] = None
        self._writer: Optional[WriteBehindWriter] = None
        self._lock = asyncio.Lock()
        self._league_result: Optional[LeagueWeekResult] = None
        self._server_streak: Optional[StreakStatus] = None
        self._refresh_task: Optional[asyncio.Task] = None

    # Lifecycle

    @property
    def initialized(self) -> bool:
        return self._progress is not None

    @log_execution_time(logger)
    async def init(self, user_id: str) -> UserProgress:
        """
        Load the learner's progress and catch it up to now.

        Stored records are merged with defaults and migrated when needed; a
        learner without a record starts fresh. The caught-up state is saved
        when anything changed.

        Raises:
            PersistenceFailure: if the store could not be read
        """
        if self.user_id is not None and self.user_id != user_id:
            await self.teardown()

        async with self._lock:
            now = self.clock.now()
            data = await self.store.load(user_id)
            if data is None:
                progress = UserProgress.new(self.config)
            else:
                progress = UserProgress.from_dict(data, now=now, tz=self.clock.tz, config=self.config)
            progress.lesson_stars = self.catalog.seed_stars(
                progress.completed_lessons, progress.lesson_stars, self.config.economy.pass_score
            )

            self.user_id = user_id
            self.log = for_user(logger, user_id)
            self._writer = WriteBehindWriter(
                self.store, user_id, self.config.persistence, on_warning=self.on_persistence_warning
            )
            self._league_result = None
            self._server_streak = None
            self._progress = progress

            changed = await self._catch_up(progress, now)
            if changed or data is None or progress.to_dict() != data:
                self._commit(progress)
            self.log.info(
                f"Progress loaded: xp={progress.stats.xp_total}, streak={progress.stats.streak_current}, "
                f"hearts={progress.stats.hearts}/{progress.stats.hearts_max}"
            )
            return self.progress

    async def on_foreground(self) -> UserProgress:
        """Catch time-based state up after a resume and refresh the server streak in the background"""
        self._require_init()
        async with self._lock:
            self._require_init()
            working = copy.deepcopy(self._progress)
            if await self._catch_up(working, self.clock.now()):
                self._commit(working)
        if self.streak_provider is not None:
            if self._refresh_task is not None and not self._refresh_task.done():
                self._refresh_task.cancel()
            self._refresh_task = asyncio.get_running_loop().create_task(self.refresh_server_streak())
        return self.progress

    async def on_background(self) -> bool:
        """
        Wait for pending saves before the app is suspended.

        Returns:
            True if everything was written
        """
        if self._writer is None:
            return True
        return await self._writer.flush()

    async def teardown(self) -> bool:
        """Cancel the server refresh, flush saves and release the learner"""
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None
        async with self._lock:
            saved = await self.on_background()
            if self.user_id is not None:
                self.log.info("Progress engine released")
            self.user_id = None
            self._progress = None
            self._writer = None
            self._league_result = None
            self._server_streak = None
        return saved

    # Internals

    def _require_init(self) -> None:
        if self._progress is None:
            raise EngineNotInitialized()

    def _standing(self, user_id: str, week_id: str) -> Tuple[int, str]:
        stats = self._progress.stats if self._progress else None
        if stats is None:
            return 0, self.config.league.tiers[0]
        return stats.xp_this_week, stats.league_tier

    def _commit(self, progress: UserProgress) -> None:
        if self._writer is None:
            raise EngineNotInitialized()
        self._progress = progress
        self._writer.submit(progress.to_dict())

    async def _lookup_rank(self, week_id: str) -> Optional[int]:
        try:
            return await asyncio.wait_for(
                self.leaderboard.get_rank(self.user_id, week_id),
                timeout=self.config.league.rank_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_error(ExternalServiceError("leaderboard", cause=e), context={"user_id": self.user_id})
            return None

    async def _catch_up(self, progress: UserProgress, now: datetime.datetime) -> bool:
        """
        Apply everything that happened with the passage of time.

        Returns:
            True if the progress changed
        """
        before = progress.to_dict()
        stats = progress.stats
        today = self.clock.local_date(now)

        self.hearts.reconcile(stats, now)
        self.quests.reset_if_new_day(stats, today)
        self.streak.evaluate(stats, today)

        rank = None
        if self.league.needs_rollover(stats, today):
            rank = await self._lookup_rank(stats.league_week_start.isoformat())
        result = self.league.roll_over(stats, today, rank)
        if result is not None:
            self._league_result = result

        self.mastery.prune_mistakes(progress, now)
        return progress.to_dict() != before

    async def _mutate(self, operation: str, apply: Callable[[UserProgress, datetime.datetime, datetime.date], R]) -> R:
        """
        Run one operation atomically.

        The caught-up state is committed even when ``apply`` rejects the
        operation, since it only reflects elapsed time.
        """
        self._require_init()
        async with self._lock:
            self._require_init()
            now = self.clock.now()
            today = self.clock.local_date(now)
            caught_up = copy.deepcopy(self._progress)
            changed = await self._catch_up(caught_up, now)

            working = copy.deepcopy(caught_up)
            try:
                result = apply(working, now, today)
            except PharmaLingoError as e:
                self.log.debug(f"{operation} rejected: {e.code.value}")
                if changed:
                    self._commit(caught_up)
                raise

            self._commit(working)
            self.log.debug(f"{operation} applied")
            return result

    # Sessions

    def _apply_answers(
        self,
        progress: UserProgress,
        answers: List[Answer],
        now: datetime.datetime,
        lesson_id: str
    ) -> Tuple[int, int, int]:
        for answer in answers:
            self.mastery.record_answer(
                progress,
                answer.is_correct,
                now,
                drug_id=answer.drug_id,
                concept_id=answer.concept_id,
                question_type=answer.question_type,
                lesson_id=lesson_id,
            )
        correct = sum(1 for a in answers if a.is_correct)
        progress.stats.accuracy_correct += correct
        progress.stats.accuracy_total += len(answers)
        return correct, len(answers), highest_combo([a.is_correct for a in answers])

    def _reward_session(
        self,
        progress: UserProgress,
        correct: int,
        total: int,
        combo: int,
        today: datetime.date,
        double_xp: bool
    ) -> Tuple[int, int]:
        economy = self.config.economy
        xp = lesson_xp(correct, total, self.config)
        if double_xp:
            xp *= 2
        award_xp(progress, xp, today, self.config)

        coins = coins_for_xp(xp, self.config) + combo_bonus(combo, self.config)
        if total > 0 and correct >= total:
            coins += economy.perfect_bonus_coins
        credit_coins(progress.stats, coins)
        return xp, coins

    async def complete_lesson(
        self,
        lesson_id: str,
        answers: List[Answer],
        score: Optional[int] = None
    ) -> SessionResult:
        """
        Record a finished lesson.

        Applies every answer to mastery, awards XP (doubled once if the
        double XP token is held) and coins, records the best score and stars,
        extends the streak and advances the daily quests.

        Args:
            lesson_id: Lesson (chapter part or mastery quiz) id
            answers: Answers given during the lesson
            score: Score percent; derived from the answers when omitted

        Returns:
            The session's rewards
        """
        economy = self.config.economy

        def apply(progress: UserProgress, now: datetime.datetime, today: datetime.date) -> SessionResult:
            stats = progress.stats
            correct, total, combo = self._apply_answers(progress, answers, now, lesson_id)
            percent = score if score is not None else (round(correct * 100 / total) if total else 0)
            percent = min(100, max(0, percent))
            passed = percent >= economy.pass_score

            double_xp = take_double_xp(stats)
            xp, coins = self._reward_session(progress, correct, total, combo, today, double_xp)

            progress.completed_lessons[lesson_id] = max(progress.completed_lessons.get(lesson_id, 0), percent)
            stars = progress.lesson_stars.get(lesson_id, 0)
            if passed and self.catalog.is_star_eligible(lesson_id):
                stars = min(economy.max_lesson_stars, stars + 1)
                progress.lesson_stars[lesson_id] = stars
            stats.lessons_completed = sum(
                1 for value in progress.completed_lessons.values() if value >= economy.pass_score
            )
            progress.chapter_progress.update(
                self.catalog.chapter_progress(progress.completed_lessons, economy.pass_score)
            )

            self.streak.record_activity(stats, today)
            self.quests.record_lesson_completed(stats, today)
            self.quests.record_combo_achieved(stats, today, combo)

            self.log.info(
                f"Lesson {lesson_id} completed: {correct}/{total} ({percent}%), +{xp} XP"
                f"{' (double)' if double_xp else ''}, +{coins} coins"
            )
            return SessionResult(
                xp_earned=xp, coins_earned=coins, correct=correct, total=total, score=percent,
                passed=passed, highest_combo=combo, double_xp=double_xp,
                streak=stats.streak_current, stars=stars, level=progress.level,
            )

        return await self._mutate("complete_lesson", apply)

    async def complete_practice(self, answers: List[Answer], review_mistakes: bool = False) -> SessionResult:
        """
        Record a finished practice session.

        Practice earns XP and coins like a lesson but never consumes the
        double XP token. In mistake review, every correct answer resolves one
        mistake bank entry for its drug and question type.
        """
        economy = self.config.economy

        def apply(progress: UserProgress, now: datetime.datetime, today: datetime.date) -> SessionResult:
            stats = progress.stats
            correct, total, combo = self._apply_answers(progress, answers, now, "practice")
            if review_mistakes:
                for answer in answers:
                    if answer.is_correct and answer.drug_id:
                        self.mastery.resolve_mistake(progress, answer.drug_id, answer.question_type)
            percent = round(correct * 100 / total) if total else 0
            xp, coins = self._reward_session(progress, correct, total, combo, today, double_xp=False)

            self.streak.record_activity(stats, today)
            self.quests.record_practice_completed(stats, today)
            self.quests.record_combo_achieved(stats, today, combo)

            self.log.info(f"Practice completed: {correct}/{total}, +{xp} XP, +{coins} coins")
            return SessionResult(
                xp_earned=xp, coins_earned=coins, correct=correct, total=total, score=percent,
                passed=percent >= economy.pass_score, highest_combo=combo, double_xp=False,
                streak=stats.streak_current, stars=0, level=progress.level,
            )

        return await self._mutate("complete_practice", apply)

    async def record_streak_activity(self) -> int:
        """Count an activity that awards nothing but keeps the streak alive"""
        return await self._mutate(
            "record_streak_activity",
            lambda progress, now, today: self.streak.record_activity(progress.stats, today)
        )

    # Hearts

    async def consume_heart(self) -> int:
        """Spend a heart for a wrong answer; raises ``InsufficientHearts`` at zero"""
        return await self._mutate(
            "consume_heart",
            lambda progress, now, today: self.hearts.consume_heart(progress.stats, now)
        )

    async def add_heart(self) -> int:
        return await self._mutate(
            "add_heart",
            lambda progress, now, today: self.hearts.add_heart(progress.stats, now)
        )

    async def buy_full_refill_with_coins(self) -> int:
        return await self._mutate(
            "buy_full_refill",
            lambda progress, now, today: self.hearts.buy_full_refill(progress.stats, now)
        )

    # Shop

    async def buy_item(self, kind: Union[ShopItem, str]) -> int:
        """
        Buy a shop item for coins.

        Args:
            kind: ``heart``, ``full_refill`` or ``streak_save``

        Returns:
            Hearts after a heart purchase, or saves held after a streak save

        Raises:
            UnknownItem: for anything else
        """
        try:
            item = ShopItem(kind)
        except ValueError:
            raise UnknownItem(kind)

        def apply(progress: UserProgress, now: datetime.datetime, today: datetime.date) -> int:
            stats = progress.stats
            if item is ShopItem.HEART:
                return self.hearts.buy_heart(stats, now)
            if item is ShopItem.FULL_REFILL:
                return self.hearts.buy_full_refill(stats, now)
            return self.streak.buy_streak_save(stats, today, require_pending=False)

        return await self._mutate(f"buy_item[{item.value}]", apply)

    # Streak remediation

    async def use_streak_save(self) -> int:
        return await self._mutate(
            "use_streak_save",
            lambda progress, now, today: self.streak.use_streak_save(progress.stats, today)
        )

    async def accept_streak_break(self) -> None:
        return await self._mutate(
            "accept_streak_break",
            lambda progress, now, today: self.streak.accept_streak_break(progress.stats, today)
        )

    async def buy_streak_save(self) -> int:
        return await self._mutate(
            "buy_streak_save",
            lambda progress, now, today: self.streak.buy_streak_save(progress.stats, today)
        )

    # Rewards

    async def claim_daily_quest(self, slot: int) -> int:
        return await self._mutate(
            f"claim_daily_quest[{slot}]",
            lambda progress, now, today: self.quests.claim(progress.stats, slot, today)
        )

    async def open_loot_box(self) -> LootReward:
        return await self._mutate(
            "open_loot_box",
            lambda progress, now, today: self.quests.open_loot_box(progress.stats, today, self.rng)
        )

    # Preferences and content flags

    async def mark_teaching_slides_seen(self, part_id: str) -> None:
        def apply(progress: UserProgress, now: datetime.datetime, today: datetime.date) -> None:
            if part_id:
                progress.teaching_slides_seen[part_id] = True

        await self._mutate("mark_teaching_slides_seen", apply)

    async def set_reminders_enabled(self, enabled: bool) -> bool:
        def apply(progress: UserProgress, now: datetime.datetime, today: datetime.date) -> bool:
            progress.stats.reminders_enabled = bool(enabled)
            return progress.stats.reminders_enabled

        return await self._mutate("set_reminders_enabled", apply)

    async def select_school(self, school_id: Optional[str], school_name: Optional[str]) -> None:
        def apply(progress: UserProgress, now: datetime.datetime, today: datetime.date) -> None:
            progress.stats.selected_school_id = school_id or None
            progress.stats.selected_school_name = school_name or None

        await self._mutate("select_school", apply)

    # League

    async def end_week_now(self) -> LeagueWeekResult:
        """Close the current league week immediately"""
        self._require_init()
        async with self._lock:
            self._require_init()
            now = self.clock.now()
            today = self.clock.local_date(now)
            working = copy.deepcopy(self._progress)
            await self._catch_up(working, now)
            rank = await self._lookup_rank(working.stats.league_week_start.isoformat())
            result = self.league.end_week(working.stats, today, rank)
            self._league_result = result
            self._commit(working)
            return result

    @property
    def league_week_result(self) -> Optional[LeagueWeekResult]:
        """Result of the last closed week, until dismissed"""
        return self._league_result

    def dismiss_league_result(self) -> None:
        self._league_result = None

    # Server reconciliation

    async def refresh_server_streak(self) -> Optional[StreakStatus]:
        """
        Fetch the server streak record.

        Runs outside the engine lock and never touches local progress; a
        failed or malformed fetch leaves the previous record in place.
        """
        if self.streak_provider is None:
            return self._server_streak
        try:
            payload = await self.streak_provider.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_error(ExternalServiceError("streak_status", cause=e), context={"user_id": self.user_id})
            return self._server_streak

        status = parse_streak_status(payload)
        if status is not None:
            self._server_streak = status
        return self._server_streak

    @property
    def server_streak(self) -> Optional[StreakStatus]:
        return self._server_streak

    @property
    def effective_streak(self) -> int:
        """Streak to display, preferring the server record"""
        self._require_init()
        local = self._progress.stats.streak_current
        if self.streak_state is StreakState.BROKEN:
            local = 0
        return effective_streak(local, self._server_streak)

    # Reset

    async def reset_progress(self) -> UserProgress:
        """Erase the learner's progress and start over"""
        self._require_init()
        async with self._lock:
            self._require_init()
            await self._writer.flush()
            await self.store.delete(self.user_id)
            fresh = UserProgress.new(self.config)
            await self._catch_up(fresh, self.clock.now())
            self._league_result = None
            self._commit(fresh)
            self.log.info("Progress reset")
            return self.progress

    # Read helpers

    @property
    def progress(self) -> UserProgress:
        """Snapshot of the current progress"""
        self._require_init()
        return copy.deepcopy(self._progress)

    def _today(self) -> datetime.date:
        return self.clock.today()

    @property
    def streak_state(self) -> StreakState:
        self._require_init()
        return streak_state(self._progress.stats, self._today())

    @property
    def streak_break_pending(self) -> bool:
        return self.streak_state is StreakState.PENDING_BREAK

    def daily_quests(self) -> List[DailyQuest]:
        self._require_init()
        return self.quests.daily_quests(self._progress.stats, self._today())

    @property
    def accuracy(self) -> int:
        """Lifetime accuracy percent"""
        self._require_init()
        stats = self._progress.stats
        if stats.accuracy_total == 0:
            return 0
        return round(stats.accuracy_correct * 100 / stats.accuracy_total)

    def current_hearts(self) -> int:
        self._require_init()
        stats = self._progress.stats
        hearts, _ = reconcile(stats.hearts, stats.hearts_max, stats.next_heart_at, self.clock.now(), self.hearts.interval)
        return hearts

    def heart_countdown_seconds(self) -> int:
        self._require_init()
        return self.hearts.seconds_until_next_heart(self._progress.stats, self.clock.now())

    def notification_state(self) -> NotificationState:
        """What a reminder scheduler needs, computed for now"""
        self._require_init()
        stats = self._progress.stats
        now = self.clock.now()
        hearts, next_heart_at = reconcile(stats.hearts, stats.hearts_max, stats.next_heart_at, now, self.hearts.interval)
        return NotificationState(
            next_heart_at=next_heart_at,
            completed_lesson_today=stats.last_active_date == self.clock.local_date(now),
            hearts=hearts,
            reminders_enabled=stats.reminders_enabled,
        )

    def lesson_score(self, lesson_id: str) -> int:
        self._require_init()
        return self._progress.completed_lessons.get(lesson_id, 0)

    def lesson_stars(self, lesson_id: str) -> int:
        self._require_init()
        return self._progress.lesson_stars.get(lesson_id, 0)

    def is_chapter_gold(self, chapter_id: str) -> bool:
        self._require_init()
        return self.catalog.is_chapter_gold(
            chapter_id, self._progress.lesson_stars, self.config.economy.max_lesson_stars
        )

    def is_lesson_unlocked(self, chapter_id: str, part_index: int) -> bool:
        self._require_init()
        return self.catalog.is_lesson_unlocked(
            chapter_id, part_index, self._progress.completed_lessons, self.config.economy.pass_score
        )

    def unlocked_lesson_drug_ids(self) -> List[str]:
        self._require_init()
        return self.catalog.unlocked_drug_ids(self._progress.completed_lessons, self.config.economy.pass_score)

    def has_seen_teaching_slides(self, part_id: str) -> bool:
        """Slides count as seen for lessons completed before slides were tracked"""
        self._require_init()
        if not part_id:
            return False
        if part_id in self._progress.completed_lessons:
            return True
        return self._progress.teaching_slides_seen.get(part_id, False)

    def is_concept_mastered(self, concept_id: str) -> bool:
        self._require_init()
        return self.mastery.is_concept_mastered(self._progress, concept_id)

    def due_for_review(self) -> List[str]:
        self._require_init()
        return self.mastery.due_for_review(self._progress, self.clock.now())

    def low_mastery(self) -> List[str]:
        self._require_init()
        return self.mastery.low_mastery(self._progress)

    def seen_drug_ids(self) -> List[str]:
        self._require_init()
        return self.mastery.seen_drug_ids(self._progress)

    def recent_mistakes(self, days: Optional[int] = None) -> List[MistakeBankEntry]:
        self._require_init()
        return self.mastery.recent_mistakes(self._progress, self.clock.now(), days)

    def recent_mistake_drug_ids(self, days: Optional[int] = None) -> List[str]:
        self._require_init()
        return self.mastery.recent_mistake_drug_ids(self._progress, self.clock.now(), days)
