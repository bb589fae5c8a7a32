"""
Centralized Configuration for the Progress Engine

Every product-tunable number (heart regeneration interval, shop prices,
spacing table, quest rewards, league cutoffs) lives here rather than in the
components that use it.

Configuration is resolved from:
1. Defaults declared on the models below
2. A YAML or JSON file (``PHARMALINGO_CONFIG_PATH``)
3. Environment variables, ``PHARMALINGO_<SECTION>__<FIELD>`` (highest priority);
   a ``.env`` file is read first when present
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from pharmalingo.common.logger import apply_logging_config

logger = logging.getLogger(__name__)

ENV_PREFIX = "PHARMALINGO_"


class HeartsConfig(BaseModel):
    """Heart economy"""
    hearts_max: int = Field(default=5, ge=1)
    regen_minutes: int = Field(default=60, ge=1)
    refill_cost: int = Field(default=100, ge=0)
    single_heart_cost: int = Field(default=30, ge=0)


class StreakConfig(BaseModel):
    """Streak and streak-save rules"""
    timezone: str = "UTC"
    streak_save_cost: int = Field(default=200, ge=0)
    # minimum streak length -> streak saves the learner may hold
    save_limits: Dict[int, int] = Field(default_factory=lambda: {0: 1, 100: 2, 365: 3})

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        """Validate the zone name resolves"""
        from zoneinfo import ZoneInfo
        try:
            ZoneInfo(v)
        except Exception:
            raise ValueError(f"Unknown time zone: {v}")
        return v

    def max_saves(self, streak: int) -> int:
        """Streak saves allowed for a streak of the given length"""
        allowed = 0
        for minimum, limit in sorted(self.save_limits.items()):
            if streak >= minimum:
                allowed = limit
        return allowed


class MasteryConfig(BaseModel):
    """Spaced repetition and concept mastery policy"""
    max_level: int = Field(default=5, ge=1)
    review_intervals_days: List[float] = Field(default_factory=lambda: [0.5, 1, 2, 4, 8, 16])
    concept_mastery_threshold: int = Field(default=3, ge=1)
    concept_demotion_threshold: int = Field(default=3, ge=1)
    low_mastery_level: int = Field(default=3, ge=0)
    recent_mistake_days: int = Field(default=7, ge=1)
    mistake_bank_max_entries: int = Field(default=500, ge=1)
    mistake_bank_max_age_days: int = Field(default=90, ge=1)

    @field_validator('review_intervals_days')
    @classmethod
    def validate_intervals(cls, v):
        """Spacing must be positive and must never shrink as level rises"""
        if not v:
            raise ValueError("review_intervals_days must not be empty")
        if any(days <= 0 for days in v):
            raise ValueError("review intervals must be positive")
        if any(later < earlier for earlier, later in zip(v, v[1:])):
            raise ValueError(f"review intervals must be non-decreasing, got {v}")
        return v


class QuestDefinition(BaseModel):
    """Static definition of one daily quest slot"""
    slot: int
    title: str
    description: str
    reward: int = Field(ge=0)
    target: int = Field(ge=1)
    counter: str

    @field_validator('counter')
    @classmethod
    def validate_counter(cls, v):
        """Validate the stats counter backing the quest"""
        valid = ['lessons', 'combo', 'practice']
        if v not in valid:
            raise ValueError(f"Invalid quest counter: {v}. Must be one of {valid}")
        return v


def default_quests() -> List[QuestDefinition]:
    return [
        QuestDefinition(slot=1, title="Complete 1 Lesson", description="Finish any lesson or practice",
                        reward=20, target=1, counter="lessons"),
        QuestDefinition(slot=2, title="5 Combo Streak", description="Get 5 correct in a row",
                        reward=10, target=5, counter="combo"),
        QuestDefinition(slot=3, title="Practice Session", description="Complete a practice or review",
                        reward=15, target=1, counter="practice"),
    ]


class QuestConfig(BaseModel):
    """Daily quest table"""
    quests: List[QuestDefinition] = Field(default_factory=default_quests)

    @model_validator(mode='after')
    def validate_slots(self):
        """Exactly the three persisted slots must be defined"""
        slots = sorted(q.slot for q in self.quests)
        if slots != [1, 2, 3]:
            raise ValueError(f"Daily quests must define slots 1, 2 and 3, got {slots}")
        return self


class LootConfig(BaseModel):
    """Daily loot chest odds (cumulative thresholds on a uniform roll)"""
    streak_save_chance: float = Field(default=0.10, ge=0, le=1)
    double_xp_chance: float = Field(default=0.20, ge=0, le=1)
    big_coins_chance: float = Field(default=0.15, ge=0, le=1)
    big_coins_min: int = 50
    big_coins_max: int = 100
    coins_min: int = 10
    coins_max: int = 30

    @model_validator(mode='after')
    def validate_odds(self):
        """Odds must not exceed certainty"""
        total = self.streak_save_chance + self.double_xp_chance + self.big_coins_chance
        if total > 1:
            raise ValueError(f"Loot odds add up to {total:.2f} > 1")
        return self


class EconomyConfig(BaseModel):
    """XP, coins and lesson rewards"""
    starting_coins: int = 50
    daily_goal_xp: int = 50
    xp_per_correct: int = 6
    perfect_bonus_xp: int = 20
    max_lesson_xp: int = 99
    coins_per_xp_divisor: int = Field(default=3, ge=1)
    perfect_bonus_coins: int = 16
    combo_bonus_coins: Dict[int, int] = Field(default_factory=lambda: {5: 5, 10: 10})
    xp_per_level: int = Field(default=500, ge=1)
    pass_score: int = Field(default=70, ge=0, le=100)
    max_lesson_stars: int = Field(default=3, ge=1)
    loot: LootConfig = Field(default_factory=LootConfig)


class LeagueConfig(BaseModel):
    """Weekly league ladder"""
    tiers: List[str] = Field(default_factory=lambda: ["Bronze", "Silver", "Gold"])
    promotion_cutoff: int = Field(default=10, ge=1)
    demotion_cutoff: int = Field(default=25, ge=1)
    cohort_size: int = Field(default=30, ge=2)
    rank_timeout_seconds: float = Field(default=5.0, gt=0)

    @model_validator(mode='after')
    def validate_cutoffs(self):
        """Promotion band must sit above the demotion band"""
        if self.promotion_cutoff >= self.demotion_cutoff:
            raise ValueError("promotion_cutoff must be lower than demotion_cutoff")
        return self


class PersistenceConfig(BaseModel):
    """Persisted store settings"""
    backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./pharmalingo.db"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "pharmalingo_state_"
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    warn_after_failures: int = Field(default=3, ge=1)

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        """Validate store backend"""
        valid = ['memory', 'sqlalchemy', 'redis']
        if v.lower() not in valid:
            raise ValueError(f"Invalid persistence backend: {v}. Must be one of {valid}")
        return v.lower()


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    json_output: bool = False
    file_path: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class EngineConfig(BaseModel):
    """Main engine configuration"""
    app_name: str = "PharmaLingo"
    hearts: HeartsConfig = Field(default_factory=HeartsConfig)
    streak: StreakConfig = Field(default_factory=StreakConfig)
    mastery: MasteryConfig = Field(default_factory=MasteryConfig)
    quests: QuestConfig = Field(default_factory=QuestConfig)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    league: LeagueConfig = Field(default_factory=LeagueConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    """
    Collect ``PHARMALINGO_<SECTION>__<FIELD>`` variables into a nested dict.

    Values are parsed as JSON when possible so numbers, booleans and lists
    keep their type; anything else is passed through as a string.
    """
    overrides: Dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue
        path = key[len(ENV_PREFIX):].lower().split("__")
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw
        target = overrides
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return overrides


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """
    Configuration loader for the engine.

    Loads configuration from defaults, a config file and the environment.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to config file (YAML or JSON)
            environ: Environment mapping, defaults to ``os.environ``
        """
        self.config_path = config_path or os.environ.get(f"{ENV_PREFIX}CONFIG_PATH")
        self.environ = environ
        self._config: Optional[EngineConfig] = None

    def load(self) -> EngineConfig:
        """
        Load configuration from all sources.

        Returns:
            Loaded configuration
        """
        if self._config is not None:
            return self._config

        if self.environ is None:
            load_dotenv()
            environ = dict(os.environ)
        else:
            environ = self.environ

        file_config: Dict[str, Any] = {}
        if self.config_path:
            file_config = self._load_from_file(self.config_path)

        merged = _deep_merge(file_config, _env_overrides(environ))
        self._config = EngineConfig(**merged)
        return self._config

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            path: Path to config file

        Returns:
            Loaded configuration dictionary
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        try:
            if path.suffix.lower() in ['.yaml', '.yml']:
                with open(path, 'r') as f:
                    return yaml.safe_load(f) or {}
            elif path.suffix.lower() == '.json':
                with open(path, 'r') as f:
                    return json.load(f)
            else:
                logger.warning(f"Unsupported config file format: {path.suffix}")
                return {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            return {}


_config_loader = ConfigLoader()
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """
    Get the loaded configuration, loading it on first use.

    Loading also (re)configures the application logger from the
    ``logging`` section.

    Returns:
        Loaded configuration
    """
    global _config
    if _config is None:
        _config = _config_loader.load()
        apply_logging_config(_config.logging)
    return _config


def reload_config(config_path: Optional[str] = None) -> EngineConfig:
    """
    Reload the configuration.

    Args:
        config_path: Path to config file

    Returns:
        Reloaded configuration
    """
    global _config_loader, _config
    _config_loader = ConfigLoader(config_path)
    _config = _config_loader.load()
    apply_logging_config(_config.logging)
    return _config
