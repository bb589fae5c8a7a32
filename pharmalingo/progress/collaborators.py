"""
External Collaborators

Interfaces the engine talks to but does not own:
1. StreakStatusProvider - canonical streak record from the server
2. Leaderboard - weekly league rank lookup
3. NotificationState - what a reminder scheduler needs to know

Server payloads are validated into ``StreakStatus`` at this boundary; the
rest of the engine never sees raw rows.
"""

import math
import asyncio
import datetime
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from pharmalingo.common.config import LeagueConfig
from pharmalingo.common.logger import app_logger
from pharmalingo.common.serialization import SerializableMixin

logger = app_logger.getChild("progress.collaborators")


class StreakStatus(BaseModel):
    """Server-side streak record"""
    streak_current: int = Field(default=0, ge=0)
    streak_longest: int = Field(default=0, ge=0)
    streak_last_day: Optional[datetime.date] = None
    status: str = "lost"
    seconds_left: float = 0
    deadline_at: Optional[datetime.datetime] = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        """Validate status"""
        valid = ['extended', 'at_risk', 'lost']
        if v not in valid:
            raise ValueError(f"Invalid streak status: {v}. Must be one of {valid}")
        return v

    @field_validator('streak_last_day', 'deadline_at', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        return None if v == "" else v

    @property
    def is_lost(self) -> bool:
        return self.status == "lost"


def parse_streak_status(payload: Any) -> Optional[StreakStatus]:
    """
    Validate a server payload.

    A list is unwrapped to its first row; anything malformed yields None.
    """
    row = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(row, dict):
        return None
    try:
        return StreakStatus.model_validate(row)
    except ValidationError as e:
        logger.warning(f"Discarding malformed streak status payload: {e.error_count()} error(s)")
        return None


class StreakStatusProvider:
    """Source of the server streak record"""

    async def fetch(self) -> Any:
        """Return the raw server payload"""
        raise NotImplementedError


class StaticStreakStatusProvider(StreakStatusProvider):
    """Returns a fixed payload; used when no server is wired and in tests"""

    def __init__(self, payload: Any = None):
        self.payload = payload

    async def fetch(self) -> Any:
        return self.payload


class CallableStreakStatusProvider(StreakStatusProvider):
    """Adapts an async callable (an RPC client method) to the provider interface"""

    def __init__(self, fetcher: Callable[[], Awaitable[Any]], timeout: Optional[float] = 10.0):
        self.fetcher = fetcher
        self.timeout = timeout

    async def fetch(self) -> Any:
        if self.timeout is None:
            return await self.fetcher()
        return await asyncio.wait_for(self.fetcher(), timeout=self.timeout)


class Leaderboard:
    """Weekly league rank lookup"""

    async def get_rank(self, user_id: str, week_id: str) -> int:
        """
        Rank of the learner in the given league week.

        Args:
            user_id: Learner id
            week_id: ISO date of the week's Monday

        Returns:
            1-based rank within the learner's cohort
        """
        raise NotImplementedError


class SimulatedLeaderboard(Leaderboard):
    """
    Deterministic offline cohort.

    Each tier has a seeded cohort of ``cohort_size - 1`` rivals whose weekly
    XP scales with the tier; the learner's rank is one more than the number
    of rivals with strictly more XP.
    """

    TIER_MULTIPLIERS = {"Bronze": 1.0, "Silver": 1.5, "Gold": 2.0}

    def __init__(
        self,
        standing: Callable[[str, str], Tuple[int, str]],
        config: Optional[LeagueConfig] = None
    ):
        """
        Args:
            standing: Returns ``(xp_this_week, tier)`` for ``(user_id, week_id)``
            config: League configuration
        """
        self.standing = standing
        self.config = config or LeagueConfig()

    def rival_xp(self, tier: str) -> List[int]:
        seed = len(tier) * 31 + self.config.cohort_size
        multiplier = self.TIER_MULTIPLIERS.get(tier, 1.0)
        return [
            math.floor(((seed * (i + 1) * 7 + 13) % 400 + 30) * multiplier)
            for i in range(self.config.cohort_size - 1)
        ]

    def rank_for(self, xp: int, tier: str) -> int:
        return 1 + sum(1 for rival in self.rival_xp(tier) if rival > xp)

    async def get_rank(self, user_id: str, week_id: str) -> int:
        xp, tier = self.standing(user_id, week_id)
        return self.rank_for(xp, tier)


@dataclass
class NotificationState(SerializableMixin):
    """Inputs for a reminder scheduler"""

    __serializable_fields__ = ["next_heart_at", "completed_lesson_today", "hearts", "reminders_enabled"]

    next_heart_at: Optional[datetime.datetime]
    completed_lesson_today: bool
    hearts: int
    reminders_enabled: bool

    @property
    def heart_reminder_due(self) -> bool:
        """A heart reminder only makes sense while out of hearts"""
        return self.reminders_enabled and self.hearts == 0 and self.next_heart_at is not None
