"""
Quest & Reward Ledger

This module owns everything that credits or debits the learner's economy:
1. Daily quests - date-keyed counters, one claim per slot per day
2. XP and coins - lesson XP formula, level, combo and perfect bonuses
3. Daily loot chest - one weighted draw per day
4. The one-shot double XP token granted by the loot chest

All functions mutate the ``UserStats`` / ``UserProgress`` handed to them;
the engine always passes a working copy.
"""

import random
import datetime
from typing import Dict, List, Optional

from pharmalingo.common.config import EngineConfig, QuestDefinition
from pharmalingo.common.error_handling import (
    AlreadyClaimed,
    InsufficientCoins,
    LootAlreadyOpened,
    QuestNotCompleted,
    UnknownQuestSlot,
)
from pharmalingo.common.logger import app_logger
from pharmalingo.progress.models import (
    DailyQuest,
    LootReward,
    LootRewardType,
    UserProgress,
    UserStats,
)

logger = app_logger.getChild("progress.quests")

# quest counter name -> stats attribute
COUNTER_FIELDS = {
    "lessons": "daily_quest_lessons_done",
    "combo": "daily_quest_highest_combo",
    "practice": "daily_quest_practice_done",
}


# Coins

def credit_coins(stats: UserStats, amount: int) -> int:
    """Add coins, returning the new balance"""
    if amount > 0:
        stats.coins += amount
    return stats.coins


def debit_coins(stats: UserStats, amount: int) -> int:
    """
    Remove coins, returning the new balance.

    Raises:
        InsufficientCoins: if the balance is below ``amount``; nothing changes
    """
    if stats.coins < amount:
        raise InsufficientCoins(required=amount, available=stats.coins)
    stats.coins -= amount
    return stats.coins


# XP

def lesson_xp(correct: int, total: int, config: EngineConfig) -> int:
    """
    XP earned by a lesson before any multiplier.

    Args:
        correct: Number of correct answers
        total: Number of questions
        config: Engine configuration

    Returns:
        ``xp_per_correct`` per correct answer plus the perfect bonus,
        capped at ``max_lesson_xp``
    """
    economy = config.economy
    xp = economy.xp_per_correct * max(0, correct)
    if total > 0 and correct >= total:
        xp += economy.perfect_bonus_xp
    return min(economy.max_lesson_xp, xp)


def coins_for_xp(xp: int, config: EngineConfig) -> int:
    return xp // config.economy.coins_per_xp_divisor


def level_for_xp(xp_total: int, config: EngineConfig) -> int:
    return xp_total // config.economy.xp_per_level + 1


def combo_bonus(combo: int, config: EngineConfig) -> int:
    """Coins for the highest combo reached in a session (best tier only)"""
    bonus = 0
    for threshold, coins in sorted(config.economy.combo_bonus_coins.items()):
        if combo >= threshold:
            bonus = coins
    return bonus


def highest_combo(results: List[bool]) -> int:
    """Longest run of consecutive correct answers"""
    best = run = 0
    for is_correct in results:
        run = run + 1 if is_correct else 0
        best = max(best, run)
    return best


def take_double_xp(stats: UserStats) -> bool:
    """Consume the double XP token, returning whether it was set"""
    if stats.double_xp_next_lesson:
        stats.double_xp_next_lesson = False
        return True
    return False


def award_xp(progress: UserProgress, amount: int, today: datetime.date, config: EngineConfig) -> int:
    """
    Credit XP to the total, the league week and today's tally.

    ``xp_total`` only ever grows; the level follows it.

    Returns:
        The new XP total
    """
    stats = progress.stats
    amount = max(0, amount)
    if stats.last_xp_date != today:
        stats.xp_today = 0
        stats.last_xp_date = today
    stats.xp_total += amount
    stats.xp_this_week += amount
    stats.xp_today += amount
    progress.level = level_for_xp(stats.xp_total, config)
    return stats.xp_total


class QuestLedger:
    """
    Daily quest state machine.

    Counters are keyed by ``daily_quests_date``; the first access on a new
    local day zeroes them and clears the claims.
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self.definitions: Dict[int, QuestDefinition] = {q.slot: q for q in config.quests.quests}

    def reset_if_new_day(self, stats: UserStats, today: datetime.date) -> bool:
        """
        Zero the daily counters when the stored quest day is not today.

        Returns:
            True if a reset happened
        """
        if stats.daily_quests_date == today:
            return False
        stats.daily_quests_date = today
        stats.daily_quest_lessons_done = 0
        stats.daily_quest_highest_combo = 0
        stats.daily_quest_practice_done = 0
        for slot in self.definitions:
            stats.set_quest_claimed(slot, False)
        logger.debug(f"Daily quests reset for {today}")
        return True

    def record_lesson_completed(self, stats: UserStats, today: datetime.date) -> None:
        self.reset_if_new_day(stats, today)
        stats.daily_quest_lessons_done += 1

    def record_combo_achieved(self, stats: UserStats, today: datetime.date, combo: int) -> None:
        """Keeps the best combo of the day (max, not a sum)"""
        self.reset_if_new_day(stats, today)
        stats.daily_quest_highest_combo = max(stats.daily_quest_highest_combo, combo)

    def record_practice_completed(self, stats: UserStats, today: datetime.date) -> None:
        """A practice session also counts as a completed lesson"""
        self.reset_if_new_day(stats, today)
        stats.daily_quest_practice_done += 1
        stats.daily_quest_lessons_done += 1

    def _current(self, stats: UserStats, definition: QuestDefinition, today: datetime.date) -> int:
        if stats.daily_quests_date != today:
            return 0
        return getattr(stats, COUNTER_FIELDS[definition.counter])

    def daily_quests(self, stats: UserStats, today: datetime.date) -> List[DailyQuest]:
        """
        Derive the quest cards for ``today`` without touching the stats.

        Args:
            stats: Learner stats
            today: Local date

        Returns:
            One DailyQuest per slot, ordered by slot
        """
        same_day = stats.daily_quests_date == today
        quests = []
        for slot in sorted(self.definitions):
            definition = self.definitions[slot]
            current = self._current(stats, definition, today)
            quests.append(DailyQuest(
                id=slot,
                title=definition.title,
                description=definition.description,
                reward=definition.reward,
                current=min(current, definition.target),
                target=definition.target,
                claimed=same_day and stats.quest_claimed(slot),
                completed=current >= definition.target,
            ))
        return quests

    def claim(self, stats: UserStats, slot: int, today: datetime.date) -> int:
        """
        Claim a completed quest's reward.

        Args:
            stats: Learner stats
            slot: Quest slot (1-3)
            today: Local date

        Returns:
            Coins credited

        Raises:
            UnknownQuestSlot: if no quest is defined for ``slot``
            QuestNotCompleted: if the quest's counter is below its target
            AlreadyClaimed: if the slot was already claimed today
        """
        definition = self.definitions.get(slot)
        if definition is None:
            raise UnknownQuestSlot(slot)

        self.reset_if_new_day(stats, today)
        current = self._current(stats, definition, today)
        if stats.quest_claimed(slot):
            raise AlreadyClaimed(
                f"Daily quest {slot} already claimed",
                details={"slot": slot, "date": today.isoformat()}
            )
        if current < definition.target:
            raise QuestNotCompleted(slot=slot, current=current, target=definition.target)

        stats.set_quest_claimed(slot, True)
        credit_coins(stats, definition.reward)
        logger.info(f"Daily quest {slot} claimed: +{definition.reward} coins")
        return definition.reward

    def open_loot_box(
        self,
        stats: UserStats,
        today: datetime.date,
        rng: Optional[random.Random] = None
    ) -> LootReward:
        """
        Draw today's loot chest reward and apply it.

        Raises:
            LootAlreadyOpened: if the chest was already opened today
        """
        if stats.last_loot_date == today:
            raise LootAlreadyOpened(stats.last_loot_date)

        rng = rng or random.Random()
        odds = self.config.economy.loot
        roll = rng.random()
        can_get_save = stats.streak_saves < self.config.streak.max_saves(stats.streak_current)

        if roll < odds.streak_save_chance and can_get_save:
            stats.streak_saves += 1
            reward = LootReward(type=LootRewardType.STREAK_SAVE, amount=1, label="Streak Save")
        elif roll < odds.streak_save_chance + odds.double_xp_chance:
            stats.double_xp_next_lesson = True
            reward = LootReward(type=LootRewardType.DOUBLE_XP, amount=1, label="2x XP Next Lesson")
        elif roll < odds.streak_save_chance + odds.double_xp_chance + odds.big_coins_chance:
            amount = rng.randint(odds.big_coins_min, odds.big_coins_max)
            credit_coins(stats, amount)
            reward = LootReward(type=LootRewardType.BIG_COINS, amount=amount, label=f"{amount} Coins")
        else:
            amount = rng.randint(odds.coins_min, odds.coins_max)
            credit_coins(stats, amount)
            reward = LootReward(type=LootRewardType.COINS, amount=amount, label=f"{amount} Coins")

        stats.last_loot_date = today
        logger.info(f"Loot chest opened: {reward.type.value} x{reward.amount}")
        return reward
