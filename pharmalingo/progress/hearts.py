"""
Heart Regeneration Scheduler

Hearts are consumed by wrong answers and regenerate one per interval while
below the maximum. There is no running timer: the regenerated count is
recomputed from ``next_heart_at`` whenever the state is read or mutated,
so a learner returning after days gets every heart in one step.
"""

import math
import datetime
from typing import Optional, Tuple

from pharmalingo.common.config import HeartsConfig
from pharmalingo.common.error_handling import HeartsAlreadyFull, InsufficientHearts
from pharmalingo.common.logger import app_logger
from pharmalingo.progress.models import UserStats
from pharmalingo.progress.quests import debit_coins

logger = app_logger.getChild("progress.hearts")


def reconcile(
    hearts: int,
    hearts_max: int,
    next_heart_at: Optional[datetime.datetime],
    now: datetime.datetime,
    interval: datetime.timedelta
) -> Tuple[int, Optional[datetime.datetime]]:
    """
    Apply elapsed regeneration.

    Args:
        hearts: Current hearts
        hearts_max: Heart capacity
        next_heart_at: When the next heart is due, None if no timer runs
        now: Current instant
        interval: Regeneration interval

    Returns:
        Tuple of (hearts, next_heart_at). ``next_heart_at`` is None when full
        and otherwise always later than ``now``, so calling again with the
        same ``now`` returns the same values.
    """
    if hearts >= hearts_max:
        return hearts_max, None

    hearts = max(0, hearts)
    if next_heart_at is None:
        return hearts, now + interval

    # clock moved backwards
    if next_heart_at > now + interval:
        next_heart_at = now + interval

    if now < next_heart_at:
        return hearts, next_heart_at

    gained = 1 + (now - next_heart_at) // interval
    hearts = min(hearts_max, hearts + gained)
    if hearts >= hearts_max:
        return hearts_max, None
    return hearts, next_heart_at + gained * interval


class HeartScheduler:
    """Heart operations over ``UserStats`` using the configured economy"""

    def __init__(self, config: HeartsConfig):
        self.config = config
        self.interval = datetime.timedelta(minutes=config.regen_minutes)

    def reconcile(self, stats: UserStats, now: datetime.datetime) -> bool:
        """
        Bring hearts up to date in place.

        Returns:
            True if hearts or the timer changed
        """
        hearts, next_heart_at = reconcile(stats.hearts, stats.hearts_max, stats.next_heart_at, now, self.interval)
        changed = (hearts, next_heart_at) != (stats.hearts, stats.next_heart_at)
        if hearts != stats.hearts:
            logger.debug(f"Regenerated {hearts - stats.hearts} heart(s): {stats.hearts} -> {hearts}")
        stats.hearts, stats.next_heart_at = hearts, next_heart_at
        return changed

    def consume_heart(self, stats: UserStats, now: datetime.datetime) -> int:
        """
        Spend one heart.

        Raises:
            InsufficientHearts: if no heart is left; nothing changes
        """
        self.reconcile(stats, now)
        if stats.hearts <= 0:
            raise InsufficientHearts(available=stats.hearts)
        stats.hearts -= 1
        if stats.hearts < stats.hearts_max and stats.next_heart_at is None:
            stats.next_heart_at = now + self.interval
        return stats.hearts

    def add_heart(self, stats: UserStats, now: datetime.datetime) -> int:
        """Grant one heart (ad reward); no-op when full"""
        self.reconcile(stats, now)
        if stats.hearts < stats.hearts_max:
            stats.hearts += 1
            if stats.hearts >= stats.hearts_max:
                stats.next_heart_at = None
        return stats.hearts

    def buy_heart(self, stats: UserStats, now: datetime.datetime, cost: Optional[int] = None) -> int:
        """
        Buy a single heart for coins.

        Raises:
            HeartsAlreadyFull: if hearts are at max
            InsufficientCoins: if the balance is too low
        """
        self.reconcile(stats, now)
        if stats.hearts >= stats.hearts_max:
            raise HeartsAlreadyFull(stats.hearts_max)
        debit_coins(stats, self.config.single_heart_cost if cost is None else cost)
        return self.add_heart(stats, now)

    def buy_full_refill(self, stats: UserStats, now: datetime.datetime, cost: Optional[int] = None) -> int:
        """
        Refill hearts to max for coins.

        Raises:
            HeartsAlreadyFull: if hearts are at max
            InsufficientCoins: if the balance is too low
        """
        self.reconcile(stats, now)
        if stats.hearts >= stats.hearts_max:
            raise HeartsAlreadyFull(stats.hearts_max)
        debit_coins(stats, self.config.refill_cost if cost is None else cost)
        stats.hearts = stats.hearts_max
        stats.next_heart_at = None
        logger.info("Hearts refilled with coins")
        return stats.hearts

    def seconds_until_next_heart(self, stats: UserStats, now: datetime.datetime) -> int:
        """Countdown for display; 0 when full"""
        hearts, next_heart_at = reconcile(stats.hearts, stats.hearts_max, stats.next_heart_at, now, self.interval)
        if next_heart_at is None:
            return 0
        return max(0, math.ceil((next_heart_at - now).total_seconds()))
