"""
Progress Models

This module defines the records that make up a learner's persisted progress:
1. UserStats - counters, consumables, streak, quests and league state
2. DrugMastery / ConceptMastery - spaced repetition state
3. MistakeBankEntry - append-only log of wrong answers
4. UserProgress - the root aggregate persisted per learner

Transient values handed back to callers (DailyQuest, LeagueWeekResult,
LootReward) and the engine's input/enum types live here as well.

Loading never fails on a stored record: missing fields take their defaults,
unknown fields are ignored, malformed counters fall back to defaults and
malformed timestamps are treated as having just happened.
"""

import enum
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pharmalingo.common.config import EngineConfig, get_config
from pharmalingo.common.serialization import (
    SerializableMixin,
    MalformedValue,
    parse_date,
    parse_datetime,
    coerce_int,
    coerce_bool,
)

SCHEMA_VERSION = 2


class StreakState(enum.Enum):
    """Where the learner stands relative to today's streak."""
    NONE = "none"                    # no streak running
    COUNTED = "counted"              # already active today
    ACTIVE = "active"                # active yesterday, today extends it
    PENDING_BREAK = "pending_break"  # exactly one day missed, remediation offered
    BROKEN = "broken"                # more than one day missed


class ShopItem(enum.Enum):
    """Items sold for coins"""
    HEART = "heart"
    FULL_REFILL = "full_refill"
    STREAK_SAVE = "streak_save"


class LootRewardType(enum.Enum):
    COINS = "coins"
    BIG_COINS = "big_coins"
    DOUBLE_XP = "double_xp"
    STREAK_SAVE = "streak_save"


def _dump_instant(value: Optional[datetime.date]) -> str:
    return value.isoformat() if value is not None else ""


def _load_instant(data: Dict[str, Any], key: str, now: datetime.datetime,
                  tz: Optional[datetime.tzinfo]) -> Optional[datetime.datetime]:
    try:
        return parse_datetime(data.get(key), field=key, tz=tz)
    except MalformedValue:
        return now


def _load_day(data: Dict[str, Any], key: str, today: datetime.date,
              tz: Optional[datetime.tzinfo]) -> Optional[datetime.date]:
    try:
        return parse_date(data.get(key), field=key, tz=tz)
    except MalformedValue:
        return today


def _int_map(raw: Any) -> Dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    return {str(key): coerce_int(value, 0) for key, value in raw.items()}


@dataclass
class UserStats(SerializableMixin):
    """
    Learner counters and time-gated state.

    Calendar fields (``last_active_date``, ``league_week_start``, ...) are
    local dates; ``next_heart_at`` is an instant and is None while hearts
    are full.
    """

    __serializable_fields__ = [
        "xp_total", "xp_this_week", "xp_today", "streak_current", "streak_best",
        "last_active_date", "hearts", "hearts_max", "coins", "lessons_completed",
        "accuracy_correct", "accuracy_total", "streak_saves", "daily_goal_xp",
        "last_xp_date", "last_daily_reward_date", "next_heart_at", "league_tier",
        "league_week_start", "daily_quests_date", "daily_quest_lessons_done",
        "daily_quest_highest_combo", "daily_quest_practice_done",
        "daily_quest_claimed_1", "daily_quest_claimed_2", "daily_quest_claimed_3",
        "double_xp_next_lesson", "last_loot_date", "reminders_enabled",
        "selected_school_id", "selected_school_name",
    ]

    _INT_FIELDS = (
        "xp_total", "xp_this_week", "xp_today", "streak_current", "streak_best",
        "hearts", "hearts_max", "coins", "lessons_completed", "accuracy_correct",
        "accuracy_total", "streak_saves", "daily_goal_xp", "daily_quest_lessons_done",
        "daily_quest_highest_combo", "daily_quest_practice_done",
    )
    _BOOL_FIELDS = (
        "daily_quest_claimed_1", "daily_quest_claimed_2", "daily_quest_claimed_3",
        "double_xp_next_lesson", "reminders_enabled",
    )
    _DATE_FIELDS = (
        "last_active_date", "last_xp_date", "last_daily_reward_date",
        "league_week_start", "daily_quests_date", "last_loot_date",
    )

    xp_total: int = 0
    xp_this_week: int = 0
    xp_today: int = 0
    streak_current: int = 0
    streak_best: int = 0
    last_active_date: Optional[datetime.date] = None
    hearts: int = 5
    hearts_max: int = 5
    coins: int = 50
    lessons_completed: int = 0
    accuracy_correct: int = 0
    accuracy_total: int = 0
    streak_saves: int = 0
    daily_goal_xp: int = 50
    last_xp_date: Optional[datetime.date] = None
    last_daily_reward_date: Optional[datetime.date] = None
    next_heart_at: Optional[datetime.datetime] = None
    league_tier: str = "Bronze"
    league_week_start: Optional[datetime.date] = None
    daily_quests_date: Optional[datetime.date] = None
    daily_quest_lessons_done: int = 0
    daily_quest_highest_combo: int = 0
    daily_quest_practice_done: int = 0
    daily_quest_claimed_1: bool = False
    daily_quest_claimed_2: bool = False
    daily_quest_claimed_3: bool = False
    double_xp_next_lesson: bool = False
    last_loot_date: Optional[datetime.date] = None
    reminders_enabled: bool = False
    selected_school_id: Optional[str] = None
    selected_school_name: Optional[str] = None

    @classmethod
    def default(cls, config: Optional[EngineConfig] = None) -> 'UserStats':
        """Fresh stats for a new learner"""
        config = config or get_config()
        return cls(
            hearts=config.hearts.hearts_max,
            hearts_max=config.hearts.hearts_max,
            coins=config.economy.starting_coins,
            daily_goal_xp=config.economy.daily_goal_xp,
            league_tier=config.league.tiers[0],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        for name in self._DATE_FIELDS + ("next_heart_at",):
            data[name] = _dump_instant(getattr(self, name))
        return data

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        now: Optional[datetime.datetime] = None,
        tz: Optional[datetime.tzinfo] = None,
        config: Optional[EngineConfig] = None,
        **kwargs: Any
    ) -> 'UserStats':
        """
        Merge a stored stats dictionary over the defaults.

        Args:
            data: Stored stats
            now: Current instant, substituted for malformed timestamps
            tz: Learner time zone, used to derive local dates
            config: Engine configuration supplying the defaults

        Returns:
            UserStats with every field populated
        """
        config = config or get_config()
        now = now or datetime.datetime.now(datetime.timezone.utc)
        today = now.astimezone(tz).date() if tz else now.date()
        stats = cls.default(config)
        if not isinstance(data, dict):
            return stats

        for name in cls._INT_FIELDS:
            if name in data:
                setattr(stats, name, coerce_int(data[name], getattr(stats, name)))
        for name in cls._BOOL_FIELDS:
            if name in data:
                setattr(stats, name, coerce_bool(data[name], getattr(stats, name)))
        for name in cls._DATE_FIELDS:
            setattr(stats, name, _load_day(data, name, today, tz))

        try:
            stats.next_heart_at = parse_datetime(data.get("next_heart_at"), field="next_heart_at", tz=tz)
        except MalformedValue:
            # restart the regeneration timer from now
            stats.next_heart_at = now + datetime.timedelta(minutes=config.hearts.regen_minutes)

        tier = data.get("league_tier")
        if isinstance(tier, str) and tier in config.league.tiers:
            stats.league_tier = tier
        for name in ("selected_school_id", "selected_school_name"):
            value = data.get(name)
            setattr(stats, name, str(value) if value not in (None, "") else None)

        stats.hearts_max = max(1, stats.hearts_max)
        stats.hearts = min(max(0, stats.hearts), stats.hearts_max)
        if stats.hearts >= stats.hearts_max:
            stats.next_heart_at = None
        for name in ("xp_total", "xp_this_week", "xp_today", "coins", "streak_current",
                     "streak_best", "streak_saves"):
            setattr(stats, name, max(0, getattr(stats, name)))
        return stats

    def quest_claimed(self, slot: int) -> bool:
        return getattr(self, f"daily_quest_claimed_{slot}")

    def set_quest_claimed(self, slot: int, claimed: bool = True) -> None:
        setattr(self, f"daily_quest_claimed_{slot}", claimed)


@dataclass
class DrugMastery(SerializableMixin):
    """Spaced repetition state for one drug"""

    __serializable_fields__ = ["mastery_level", "last_seen", "next_review"]

    mastery_level: int = 0
    last_seen: Optional[datetime.datetime] = None
    next_review: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mastery_level": self.mastery_level,
            "last_seen": _dump_instant(self.last_seen),
            "next_review": _dump_instant(self.next_review),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[datetime.datetime] = None,
                  tz: Optional[datetime.tzinfo] = None, max_level: int = 5, **kwargs: Any) -> 'DrugMastery':
        now = now or datetime.datetime.now(datetime.timezone.utc)
        if not isinstance(data, dict):
            data = {}
        level = coerce_int(data.get("mastery_level"), 0)
        return cls(
            mastery_level=min(max(0, level), max_level),
            last_seen=_load_instant(data, "last_seen", now, tz),
            next_review=_load_instant(data, "next_review", now, tz),
        )


@dataclass
class ConceptMastery(SerializableMixin):
    """Mastered / unmastered state for one concept"""

    __serializable_fields__ = ["mastered", "correct_streak", "wrong_since_mastered", "last_seen"]

    mastered: bool = False
    correct_streak: int = 0
    wrong_since_mastered: int = 0
    last_seen: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mastered": self.mastered,
            "correct_streak": self.correct_streak,
            "wrong_since_mastered": self.wrong_since_mastered,
            "last_seen": _dump_instant(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[datetime.datetime] = None,
                  tz: Optional[datetime.tzinfo] = None, **kwargs: Any) -> 'ConceptMastery':
        now = now or datetime.datetime.now(datetime.timezone.utc)
        if not isinstance(data, dict):
            data = {}
        return cls(
            mastered=coerce_bool(data.get("mastered"), False),
            correct_streak=max(0, coerce_int(data.get("correct_streak"), 0)),
            wrong_since_mastered=max(0, coerce_int(data.get("wrong_since_mastered"), 0)),
            last_seen=_load_instant(data, "last_seen", now, tz),
        )


@dataclass(frozen=True)
class MistakeBankEntry(SerializableMixin):
    """One wrong answer; never mutated once recorded"""

    __serializable_fields__ = ["drug_id", "question_type", "date", "lesson_id"]

    drug_id: str
    question_type: str
    date: datetime.datetime
    lesson_id: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[datetime.datetime] = None,
                  tz: Optional[datetime.tzinfo] = None, **kwargs: Any) -> Optional['MistakeBankEntry']:
        """Returns None for entries without a drug id"""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        if not isinstance(data, dict) or not data.get("drug_id"):
            return None
        return cls(
            drug_id=str(data["drug_id"]),
            question_type=str(data.get("question_type") or ""),
            date=_load_instant(data, "date", now, tz) or now,
            lesson_id=str(data.get("lesson_id") or ""),
        )


@dataclass
class DailyQuest(SerializableMixin):
    """Derived view of one daily quest slot"""

    __serializable_fields__ = [
        "id", "title", "description", "reward", "current", "target", "claimed", "completed"
    ]

    id: int
    title: str
    description: str
    reward: int
    current: int
    target: int
    claimed: bool
    completed: bool


@dataclass
class LeagueWeekResult(SerializableMixin):
    """Outcome of a league week, shown once to the learner"""

    __serializable_fields__ = [
        "previous_tier", "new_tier", "rank", "xp_earned", "promoted", "demoted", "stayed"
    ]

    previous_tier: str
    new_tier: str
    rank: int
    xp_earned: int
    promoted: bool = False
    demoted: bool = False
    stayed: bool = True


@dataclass
class LootReward(SerializableMixin):
    """Reward drawn from the daily loot chest"""

    __serializable_fields__ = ["type", "amount", "label"]

    type: LootRewardType
    amount: int
    label: str


@dataclass
class Answer:
    """One answered question, as reported by a lesson or practice session"""
    is_correct: bool
    drug_id: Optional[str] = None
    concept_id: Optional[str] = None
    question_type: str = "multiple_choice"


@dataclass
class UserProgress(SerializableMixin):
    """
    Root aggregate persisted per learner.

    Only the progress engine mutates this record; every engine operation
    works on a deep copy and swaps the result in.
    """

    __serializable_fields__ = [
        "stats", "completed_lessons", "lesson_stars", "chapter_progress", "drug_mastery",
        "concept_mastery", "teaching_slides_seen", "mistake_bank", "level",
    ]

    stats: UserStats = field(default_factory=UserStats)
    completed_lessons: Dict[str, int] = field(default_factory=dict)
    lesson_stars: Dict[str, int] = field(default_factory=dict)
    chapter_progress: Dict[str, int] = field(default_factory=dict)
    drug_mastery: Dict[str, DrugMastery] = field(default_factory=dict)
    concept_mastery: Dict[str, ConceptMastery] = field(default_factory=dict)
    teaching_slides_seen: Dict[str, bool] = field(default_factory=dict)
    mistake_bank: List[MistakeBankEntry] = field(default_factory=list)
    level: int = 1

    @classmethod
    def new(cls, config: Optional[EngineConfig] = None) -> 'UserProgress':
        """Fresh progress for a new learner"""
        return cls(stats=UserStats.default(config))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["schema_version"] = SCHEMA_VERSION
        return data

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        now: Optional[datetime.datetime] = None,
        tz: Optional[datetime.tzinfo] = None,
        config: Optional[EngineConfig] = None,
        **kwargs: Any
    ) -> 'UserProgress':
        """
        Build progress from a stored record, merging field by field with the
        defaults.

        Records written by the first app release (a flat dictionary without a
        ``stats`` section) are migrated first.
        """
        config = config or get_config()
        now = now or datetime.datetime.now(datetime.timezone.utc)
        if not isinstance(data, dict):
            return cls.new(config)
        if is_legacy_record(data):
            data = migrate_legacy_record(data)

        max_level = config.mastery.max_level
        drug_mastery = {
            str(drug_id): DrugMastery.from_dict(entry, now=now, tz=tz, max_level=max_level)
            for drug_id, entry in (data.get("drug_mastery") or {}).items()
        } if isinstance(data.get("drug_mastery"), dict) else {}
        concept_mastery = {
            str(concept_id): ConceptMastery.from_dict(entry, now=now, tz=tz)
            for concept_id, entry in (data.get("concept_mastery") or {}).items()
        } if isinstance(data.get("concept_mastery"), dict) else {}

        mistakes = []
        raw_mistakes = data.get("mistake_bank")
        if isinstance(raw_mistakes, list):
            for raw in raw_mistakes:
                entry = MistakeBankEntry.from_dict(raw, now=now, tz=tz)
                if entry is not None:
                    mistakes.append(entry)

        slides = data.get("teaching_slides_seen")
        teaching_slides_seen = {
            str(key): coerce_bool(value, False) for key, value in slides.items()
        } if isinstance(slides, dict) else {}

        return cls(
            stats=UserStats.from_dict(data.get("stats") or {}, now=now, tz=tz, config=config),
            completed_lessons=_int_map(data.get("completed_lessons")),
            lesson_stars=_int_map(data.get("lesson_stars")),
            chapter_progress=_int_map(data.get("chapter_progress")),
            drug_mastery=drug_mastery,
            concept_mastery=concept_mastery,
            teaching_slides_seen=teaching_slides_seen,
            mistake_bank=mistakes,
            level=max(1, coerce_int(data.get("level"), 1)),
        )


# First-release flat record keys
LEGACY_KEYS = (
    "xp", "streak", "lastActiveDate", "heartsRemaining", "coins", "completedLessons",
    "correctAnswers", "totalQuestionsAnswered", "chapterProgress", "level",
)


def is_legacy_record(data: Dict[str, Any]) -> bool:
    """A flat first-release record has no ``stats`` section"""
    return "stats" not in data and any(key in data for key in LEGACY_KEYS)


def migrate_legacy_record(old: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a first-release flat record to the current layout.

    Args:
        old: Flat record (``xp``, ``streak``, ``heartsRemaining``, ...)

    Returns:
        Dictionary in the current storage layout
    """
    completed = _int_map(old.get("completedLessons"))
    streak = coerce_int(old.get("streak"), 0)
    return {
        "stats": {
            "xp_total": coerce_int(old.get("xp"), 0),
            "streak_current": streak,
            "streak_best": streak,
            "last_active_date": old.get("lastActiveDate") or "",
            "hearts": coerce_int(old.get("heartsRemaining"), 5),
            "coins": coerce_int(old.get("coins"), 50),
            "lessons_completed": sum(1 for score in completed.values() if score >= 70),
            "accuracy_correct": coerce_int(old.get("correctAnswers"), 0),
            "accuracy_total": coerce_int(old.get("totalQuestionsAnswered"), 0),
        },
        "completed_lessons": completed,
        "chapter_progress": _int_map(old.get("chapterProgress")),
        "level": coerce_int(old.get("level"), 1),
    }
