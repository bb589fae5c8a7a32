import unittest
import datetime

from pharmalingo.common.config import EngineConfig
from pharmalingo.progress.models import (
    SCHEMA_VERSION,
    DrugMastery,
    MistakeBankEntry,
    UserProgress,
    UserStats,
    is_legacy_record,
    migrate_legacy_record,
)

NOW = datetime.datetime(2026, 3, 4, 10, 0, tzinfo=datetime.timezone.utc)


class TestUserStatsLoading(unittest.TestCase):
    """Test tolerant loading of stored stats."""

    def setUp(self):
        self.config = EngineConfig()

    def load(self, data):
        return UserStats.from_dict(data, now=NOW, config=self.config)

    def test_empty_record_gives_defaults(self):
        stats = self.load({})
        self.assertEqual(stats.hearts, 5)
        self.assertEqual(stats.coins, 50)
        self.assertEqual(stats.league_tier, "Bronze")
        self.assertIsNone(stats.last_active_date)

    def test_unknown_fields_are_ignored(self):
        stats = self.load({"coins": 80, "favourite_colour": "teal"})
        self.assertEqual(stats.coins, 80)
        self.assertNotIn("favourite_colour", stats.to_dict())

    def test_empty_strings_are_unset(self):
        stats = self.load({"last_active_date": "", "next_heart_at": "", "hearts": 2})
        self.assertIsNone(stats.last_active_date)
        self.assertIsNone(stats.next_heart_at)

    def test_malformed_date_is_today(self):
        stats = self.load({"last_active_date": "yesterday-ish"})
        self.assertEqual(stats.last_active_date, NOW.date())

    def test_malformed_heart_timer_restarts(self):
        stats = self.load({"hearts": 2, "next_heart_at": "soon"})
        self.assertEqual(stats.next_heart_at, NOW + datetime.timedelta(minutes=60))

    def test_full_timestamp_as_date(self):
        stats = self.load({"last_active_date": "2026-03-03T23:30:00Z"})
        self.assertEqual(stats.last_active_date, datetime.date(2026, 3, 3))

    def test_out_of_range_values_are_clamped(self):
        stats = self.load({"hearts": 9, "coins": -5, "next_heart_at": "2026-03-04T11:00:00Z"})
        self.assertEqual(stats.hearts, 5)
        self.assertEqual(stats.coins, 0)
        self.assertIsNone(stats.next_heart_at)

    def test_malformed_counters_fall_back(self):
        stats = self.load({"coins": "lots", "double_xp_next_lesson": "true", "league_tier": "Diamond"})
        self.assertEqual(stats.coins, 50)
        self.assertTrue(stats.double_xp_next_lesson)
        self.assertEqual(stats.league_tier, "Bronze")

    def test_dates_dump_as_empty_strings_when_unset(self):
        data = UserStats().to_dict()
        self.assertEqual(data["last_active_date"], "")
        self.assertEqual(data["next_heart_at"], "")


class TestUserProgress(unittest.TestCase):
    """Test the persisted progress document."""

    def setUp(self):
        self.config = EngineConfig()

    def sample(self) -> UserProgress:
        progress = UserProgress.new(self.config)
        progress.stats.streak_current = 4
        progress.stats.last_active_date = datetime.date(2026, 3, 3)
        progress.stats.hearts = 3
        progress.stats.next_heart_at = NOW + datetime.timedelta(minutes=20)
        progress.completed_lessons = {"mod-1-p1": 90}
        progress.lesson_stars = {"mod-1-p1": 2}
        progress.drug_mastery = {
            "metformin": DrugMastery(mastery_level=2, last_seen=NOW, next_review=NOW + datetime.timedelta(days=2))
        }
        progress.mistake_bank = [
            MistakeBankEntry(drug_id="metformin", question_type="dosing", date=NOW, lesson_id="mod-2-p1")
        ]
        progress.level = 2
        return progress

    def test_load_of_save_is_identity(self):
        data = self.sample().to_dict()
        reloaded = UserProgress.from_dict(data, now=NOW, config=self.config)
        self.assertEqual(reloaded.to_dict(), data)
        self.assertEqual(data["schema_version"], SCHEMA_VERSION)

    def test_mistakes_without_drug_are_dropped(self):
        data = self.sample().to_dict()
        data["mistake_bank"].append({"question_type": "dosing"})
        reloaded = UserProgress.from_dict(data, now=NOW, config=self.config)
        self.assertEqual(len(reloaded.mistake_bank), 1)

    def test_mastery_level_is_clamped(self):
        data = {"stats": {}, "drug_mastery": {"x": {"mastery_level": 12, "next_review": "bad"}}}
        reloaded = UserProgress.from_dict(data, now=NOW, config=self.config)
        self.assertEqual(reloaded.drug_mastery["x"].mastery_level, 5)
        self.assertEqual(reloaded.drug_mastery["x"].next_review, NOW)

    def test_non_dict_gives_fresh_progress(self):
        reloaded = UserProgress.from_dict("garbage", now=NOW, config=self.config)
        self.assertEqual(reloaded.to_dict(), UserProgress.new(self.config).to_dict())


class TestLegacyMigration(unittest.TestCase):
    """Test migration of first-release flat records."""

    LEGACY = {
        "xp": 640,
        "streak": 3,
        "lastActiveDate": "2026-03-03",
        "heartsRemaining": 2,
        "coins": 75,
        "completedLessons": {"mod-1-p1": 80, "mod-1-p2": 40},
        "correctAnswers": 30,
        "totalQuestionsAnswered": 40,
        "chapterProgress": {"mod-1": 50},
        "level": 2,
    }

    def test_detects_legacy_layout(self):
        self.assertTrue(is_legacy_record(self.LEGACY))
        self.assertFalse(is_legacy_record({"stats": {"xp_total": 1}}))
        self.assertFalse(is_legacy_record({}))

    def test_migrates_fields(self):
        migrated = migrate_legacy_record(self.LEGACY)
        self.assertEqual(migrated["stats"]["xp_total"], 640)
        self.assertEqual(migrated["stats"]["streak_best"], 3)
        self.assertEqual(migrated["stats"]["lessons_completed"], 1)
        self.assertEqual(migrated["completed_lessons"], {"mod-1-p1": 80, "mod-1-p2": 40})

    def test_loads_through_migration(self):
        progress = UserProgress.from_dict(self.LEGACY, now=NOW, config=EngineConfig())
        self.assertEqual(progress.stats.hearts, 2)
        self.assertEqual(progress.stats.accuracy_total, 40)
        self.assertEqual(progress.stats.last_active_date, datetime.date(2026, 3, 3))
        self.assertEqual(progress.chapter_progress, {"mod-1": 50})
        self.assertEqual(progress.level, 2)
