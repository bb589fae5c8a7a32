"""
PharmaLingo Progress Engine

This package owns a learner's persistent progress for the PharmaLingo
drug-knowledge quiz app and evolves it across wall-clock time:

1. Hearts that regenerate on a fixed interval
2. Daily streaks with streak-save remediation
3. Per-drug and per-concept mastery with spaced review
4. Daily quests, XP, coins and loot rewards
5. Weekly league promotion and demotion

The engine is UI-agnostic; screens and notification schedulers consume the
snapshots it returns.
"""

__version__ = "1.0.0"
