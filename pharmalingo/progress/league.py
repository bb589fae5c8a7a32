"""
League Cycle Manager

Weekly tiered leagues. Weeks start on Monday in the learner's time zone and
are identified by that Monday's ISO date. When the first load of a new week
sees the stored week start, the finished week is scored: a top rank promotes
one tier, a bottom rank demotes one tier, and weekly XP starts over.
"""

import datetime
from typing import Optional

from pharmalingo.common.config import LeagueConfig
from pharmalingo.common.logger import app_logger
from pharmalingo.progress.models import LeagueWeekResult, UserStats

logger = app_logger.getChild("progress.league")


def week_start(day: datetime.date) -> datetime.date:
    """Monday of the week containing ``day``"""
    return day - datetime.timedelta(days=day.weekday())


def week_id(day: datetime.date) -> str:
    return week_start(day).isoformat()


class LeagueManager:
    """Tier ladder and weekly rollover"""

    def __init__(self, config: LeagueConfig):
        self.config = config
        self.tiers = list(config.tiers)

    def promote(self, tier: str) -> str:
        index = self._index(tier)
        return self.tiers[min(index + 1, len(self.tiers) - 1)]

    def demote(self, tier: str) -> str:
        index = self._index(tier)
        return self.tiers[max(index - 1, 0)]

    def _index(self, tier: str) -> int:
        try:
            return self.tiers.index(tier)
        except ValueError:
            return 0

    def week_result(self, tier: str, xp_earned: int, rank: Optional[int]) -> LeagueWeekResult:
        """
        Score a finished week.

        Args:
            tier: Tier the week was played in
            xp_earned: Weekly XP
            rank: Final rank, or None when it could not be determined

        Returns:
            The week's result; an unknown rank always stays
        """
        new_tier = tier
        if rank is not None:
            if rank <= self.config.promotion_cutoff:
                new_tier = self.promote(tier)
            elif rank >= self.config.demotion_cutoff:
                new_tier = self.demote(tier)

        promoted = self._index(new_tier) > self._index(tier)
        demoted = self._index(new_tier) < self._index(tier)
        return LeagueWeekResult(
            previous_tier=tier,
            new_tier=new_tier,
            rank=rank or 0,
            xp_earned=xp_earned,
            promoted=promoted,
            demoted=demoted,
            stayed=not promoted and not demoted,
        )

    def needs_rollover(self, stats: UserStats, today: datetime.date) -> bool:
        """True when the stored week has ended"""
        return stats.league_week_start is not None and week_start(today) > stats.league_week_start

    def roll_over(
        self,
        stats: UserStats,
        today: datetime.date,
        rank: Optional[int]
    ) -> Optional[LeagueWeekResult]:
        """
        Close the stored week if ``today`` is in a later one.

        A learner without a stored week is enrolled in the current week and
        gets no result. Repeated calls within the same week return None.
        """
        current = week_start(today)
        if stats.league_week_start is None:
            stats.league_week_start = current
            return None
        if current <= stats.league_week_start:
            return None

        closed = stats.league_week_start
        result = self._close_week(stats, current, rank)
        logger.info(
            f"League week {closed} closed: rank={result.rank}, "
            f"{result.previous_tier} -> {result.new_tier}"
        )
        return result

    def end_week(self, stats: UserStats, today: datetime.date, rank: Optional[int]) -> LeagueWeekResult:
        """Close the current week immediately regardless of the calendar"""
        result = self._close_week(stats, week_start(today), rank)
        logger.info(f"League week ended early: {result.previous_tier} -> {result.new_tier}")
        return result

    def _close_week(self, stats: UserStats, new_week_start: datetime.date, rank: Optional[int]) -> LeagueWeekResult:
        result = self.week_result(stats.league_tier, stats.xp_this_week, rank)
        stats.league_tier = result.new_tier
        stats.xp_this_week = 0
        stats.league_week_start = new_week_start
        return result
