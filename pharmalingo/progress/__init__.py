"""
Progress & Gamification Engine

This package owns a learner's persistent progress and evolves it across
wall-clock time:
1. Hearts - consumption and lazy regeneration
2. Streak - daily activity, pending breaks and streak saves
3. Mastery - drug and concept spaced repetition
4. Quests & rewards - XP, coins, daily quests, loot chest
5. League - weekly tier rollover
6. Engine - the orchestrator, with write-behind persistence
"""

from pharmalingo.progress.models import (
    Answer, UserStats, UserProgress, DrugMastery, ConceptMastery, MistakeBankEntry,
    DailyQuest, LeagueWeekResult, LootReward, LootRewardType, ShopItem, StreakState
)
from pharmalingo.progress.engine import ProgressEngine, SessionResult
from pharmalingo.progress.repository import (
    ProgressStore, MemoryProgressStore, SqlAlchemyProgressStore, RedisProgressStore, create_store
)
from pharmalingo.progress.catalog import Catalog, Chapter, LessonPart
from pharmalingo.progress.collaborators import (
    StreakStatus, StreakStatusProvider, StaticStreakStatusProvider, CallableStreakStatusProvider,
    Leaderboard, SimulatedLeaderboard, NotificationState, parse_streak_status
)
