"""
Streak Engine

Tracks consecutive active days on the learner's local calendar.

State by days since the last active day:
- 0: COUNTED, today already counts
- 1: ACTIVE, today's first activity extends the streak
- 2 with a running streak: PENDING_BREAK, one day was missed and the learner
  may use a streak save or accept the break
- 3 or more: BROKEN, the streak is zeroed and the zero is persisted

An activity on a pending or broken streak restarts it: today becomes the
reset day and the next day's activity counts as day one.
"""

import datetime
from typing import Optional

from pharmalingo.common.config import StreakConfig
from pharmalingo.common.error_handling import (
    NoStreakSaveAvailable,
    StreakNotPending,
    StreakSaveLimitReached,
)
from pharmalingo.common.logger import app_logger
from pharmalingo.progress.collaborators import StreakStatus
from pharmalingo.progress.models import StreakState, UserStats
from pharmalingo.progress.quests import debit_coins

logger = app_logger.getChild("progress.streak")


def streak_state(stats: UserStats, today: datetime.date) -> StreakState:
    """Classify the streak relative to ``today`` without changing anything"""
    if stats.last_active_date is None:
        return StreakState.NONE

    gap = (today - stats.last_active_date).days
    if gap <= 0:
        return StreakState.COUNTED
    if gap == 1:
        return StreakState.ACTIVE
    if gap == 2 and stats.streak_current > 0:
        return StreakState.PENDING_BREAK
    return StreakState.BROKEN


def effective_streak(local_streak: int, server: Optional[StreakStatus]) -> int:
    """
    Streak to display.

    The server record wins when present (0 once it reports the streak lost);
    without one the local streak is shown. Local state is never rewritten
    from this value.
    """
    if server is None:
        return local_streak
    return 0 if server.is_lost else server.streak_current


class StreakEngine:
    """Streak transitions and remediation over ``UserStats``"""

    def __init__(self, config: StreakConfig):
        self.config = config

    def evaluate(self, stats: UserStats, today: datetime.date) -> StreakState:
        """
        Catch the streak up to ``today``.

        A broken streak is zeroed here so the zero gets persisted; a pending
        break is only reported.
        """
        state = streak_state(stats, today)
        if state is StreakState.BROKEN and stats.streak_current != 0:
            logger.info(f"Streak of {stats.streak_current} broken (last active {stats.last_active_date})")
            stats.streak_current = 0
        return state

    def record_activity(self, stats: UserStats, today: datetime.date) -> int:
        """
        Count a qualifying activity for ``today``.

        Returns:
            The streak after the activity
        """
        state = streak_state(stats, today)
        if state is StreakState.COUNTED:
            return stats.streak_current

        if state is StreakState.ACTIVE:
            stats.streak_current += 1
        elif state is StreakState.NONE:
            stats.streak_current = 1
        else:
            # pending or broken: today is the reset day
            stats.streak_current = 0

        stats.streak_best = max(stats.streak_best, stats.streak_current)
        stats.last_active_date = today
        logger.debug(f"Streak activity ({state.value}): streak now {stats.streak_current}")
        return stats.streak_current

    def _require_pending(self, stats: UserStats, today: datetime.date) -> None:
        state = streak_state(stats, today)
        if state is not StreakState.PENDING_BREAK:
            raise StreakNotPending(state.value)

    def use_streak_save(self, stats: UserStats, today: datetime.date) -> int:
        """
        Spend a streak save to cover the missed day.

        Raises:
            NoStreakSaveAvailable: if no save is held
            StreakNotPending: if no break is pending
        """
        if stats.streak_saves <= 0:
            raise NoStreakSaveAvailable()
        self._require_pending(stats, today)

        stats.streak_saves -= 1
        stats.last_active_date = today - datetime.timedelta(days=1)
        logger.info(f"Streak save used; streak {stats.streak_current} kept, {stats.streak_saves} save(s) left")
        return stats.streak_saves

    def accept_streak_break(self, stats: UserStats, today: datetime.date) -> None:
        """
        Let the pending break happen.

        Raises:
            StreakNotPending: if no break is pending
        """
        self._require_pending(stats, today)
        logger.info(f"Streak break accepted at {stats.streak_current}")
        stats.streak_current = 0
        stats.last_active_date = today

    def max_saves(self, stats: UserStats) -> int:
        return self.config.max_saves(stats.streak_current)

    def buy_streak_save(
        self,
        stats: UserStats,
        today: datetime.date,
        require_pending: bool = True,
        cost: Optional[int] = None
    ) -> int:
        """
        Buy one streak save for coins.

        Args:
            stats: Learner stats
            today: Local date
            require_pending: Only allow the purchase while a break is pending
            cost: Price override

        Returns:
            Saves held after the purchase

        Raises:
            StreakNotPending: if ``require_pending`` and no break is pending
            StreakSaveLimitReached: if the learner already holds the maximum
            InsufficientCoins: if the balance is too low
        """
        if require_pending:
            self._require_pending(stats, today)
        limit = self.max_saves(stats)
        if stats.streak_saves >= limit:
            raise StreakSaveLimitReached(held=stats.streak_saves, limit=limit)

        debit_coins(stats, self.config.streak_save_cost if cost is None else cost)
        stats.streak_saves += 1
        logger.info(f"Streak save bought ({stats.streak_saves}/{limit})")
        return stats.streak_saves
