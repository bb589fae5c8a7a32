"""
Mastery Tracker

Spaced repetition over two kinds of items:
1. Drugs - a 0..max_level mastery level; each answer moves it one step and
   schedules the next review from the spacing table
2. Concepts - mastered after a run of correct answers, unmastered again after
   repeated misses so the intro slides reappear

Wrong drug answers are appended to the mistake bank, which the engine prunes
by age and size and which review practice drains.
"""

import datetime
from typing import List, Optional

from pharmalingo.common.config import MasteryConfig
from pharmalingo.common.logger import app_logger
from pharmalingo.progress.models import (
    ConceptMastery,
    DrugMastery,
    MistakeBankEntry,
    UserProgress,
)

logger = app_logger.getChild("progress.mastery")


class MasteryTracker:
    """Updates and queries drug/concept mastery on a ``UserProgress``"""

    def __init__(self, config: MasteryConfig):
        self.config = config

    def spacing(self, level: int) -> datetime.timedelta:
        """Review interval for a mastery level; levels past the table reuse its last entry"""
        intervals = self.config.review_intervals_days
        days = intervals[min(max(0, level), len(intervals) - 1)]
        return datetime.timedelta(days=days)

    def record_answer(
        self,
        progress: UserProgress,
        is_correct: bool,
        now: datetime.datetime,
        drug_id: Optional[str] = None,
        concept_id: Optional[str] = None,
        question_type: str = "",
        lesson_id: str = ""
    ) -> None:
        """
        Apply one answer to the drug and/or concept it touched.

        Unknown ids are created on first exposure; missing ids are skipped.
        """
        if drug_id:
            self.record_drug_answer(progress, drug_id, is_correct, now, question_type, lesson_id)
        if concept_id:
            self.record_concept_answer(progress, concept_id, is_correct, now)

    def record_drug_answer(
        self,
        progress: UserProgress,
        drug_id: str,
        is_correct: bool,
        now: datetime.datetime,
        question_type: str = "",
        lesson_id: str = ""
    ) -> DrugMastery:
        existing = progress.drug_mastery.get(drug_id) or DrugMastery()
        if is_correct:
            level = min(self.config.max_level, existing.mastery_level + 1)
        else:
            level = max(0, existing.mastery_level - 1)
            progress.mistake_bank.append(MistakeBankEntry(
                drug_id=drug_id,
                question_type=question_type,
                date=now,
                lesson_id=lesson_id,
            ))

        mastery = DrugMastery(mastery_level=level, last_seen=now, next_review=now + self.spacing(level))
        progress.drug_mastery[drug_id] = mastery
        logger.debug(
            f"Drug {drug_id}: level {existing.mastery_level} -> {level}, "
            f"next review {mastery.next_review.date()}"
        )
        return mastery

    def record_concept_answer(
        self,
        progress: UserProgress,
        concept_id: str,
        is_correct: bool,
        now: datetime.datetime
    ) -> ConceptMastery:
        existing = progress.concept_mastery.get(concept_id) or ConceptMastery()
        if is_correct:
            correct_streak = existing.correct_streak + 1
            updated = ConceptMastery(
                mastered=existing.mastered or correct_streak >= self.config.concept_mastery_threshold,
                correct_streak=correct_streak,
                wrong_since_mastered=0,
                last_seen=now,
            )
        elif existing.mastered:
            wrong = existing.wrong_since_mastered + 1
            if wrong >= self.config.concept_demotion_threshold:
                logger.debug(f"Concept {concept_id} unmastered after {wrong} misses")
                updated = ConceptMastery(mastered=False, last_seen=now)
            else:
                updated = ConceptMastery(mastered=True, correct_streak=0, wrong_since_mastered=wrong, last_seen=now)
        else:
            updated = ConceptMastery(mastered=False, correct_streak=0, wrong_since_mastered=0, last_seen=now)

        progress.concept_mastery[concept_id] = updated
        return updated

    def is_concept_mastered(self, progress: UserProgress, concept_id: str) -> bool:
        if not concept_id:
            return False
        concept = progress.concept_mastery.get(concept_id)
        return bool(concept and concept.mastered)

    # Queries

    def seen_drug_ids(self, progress: UserProgress) -> List[str]:
        """Every drug the learner has answered a question on"""
        return list(progress.drug_mastery)

    def due_for_review(self, progress: UserProgress, now: datetime.datetime) -> List[str]:
        """
        Drugs whose review is due, weakest first.

        Args:
            progress: Learner progress
            now: Current instant

        Returns:
            Drug ids ordered by mastery level, then by how overdue they are
        """
        due = [
            (mastery.mastery_level, mastery.next_review, drug_id)
            for drug_id, mastery in progress.drug_mastery.items()
            if mastery.next_review is None or mastery.next_review <= now
        ]
        due.sort(key=lambda item: (item[0], item[1] or now))
        return [drug_id for _, _, drug_id in due]

    def low_mastery(self, progress: UserProgress) -> List[str]:
        """Drugs below the low-mastery level, weakest first"""
        low = [
            (mastery.mastery_level, drug_id)
            for drug_id, mastery in progress.drug_mastery.items()
            if mastery.mastery_level < self.config.low_mastery_level
        ]
        low.sort(key=lambda item: item[0])
        return [drug_id for _, drug_id in low]

    def recent_mistakes(
        self,
        progress: UserProgress,
        now: datetime.datetime,
        days: Optional[int] = None
    ) -> List[MistakeBankEntry]:
        cutoff = now - datetime.timedelta(days=days or self.config.recent_mistake_days)
        return [entry for entry in progress.mistake_bank if entry.date >= cutoff]

    def recent_mistake_drug_ids(
        self,
        progress: UserProgress,
        now: datetime.datetime,
        days: Optional[int] = None
    ) -> List[str]:
        """Distinct drugs with recent mistakes, in first-mistake order"""
        seen = {}
        for entry in self.recent_mistakes(progress, now, days):
            seen.setdefault(entry.drug_id, None)
        return list(seen)

    def resolve_mistake(self, progress: UserProgress, drug_id: str, question_type: Optional[str] = None) -> bool:
        """
        Remove the oldest mistake for a drug (and question type, when given).

        Returns:
            True if an entry was removed
        """
        for index, entry in enumerate(progress.mistake_bank):
            if entry.drug_id == drug_id and (question_type is None or entry.question_type == question_type):
                del progress.mistake_bank[index]
                return True
        return False

    def prune_mistakes(self, progress: UserProgress, now: datetime.datetime) -> int:
        """
        Drop entries older than the retention window, then the oldest entries
        beyond the size cap.

        Returns:
            Number of entries removed
        """
        before = len(progress.mistake_bank)
        cutoff = now - datetime.timedelta(days=self.config.mistake_bank_max_age_days)
        kept = [entry for entry in progress.mistake_bank if entry.date >= cutoff]
        overflow = len(kept) - self.config.mistake_bank_max_entries
        if overflow > 0:
            kept = kept[overflow:]
        progress.mistake_bank = kept

        removed = before - len(kept)
        if removed:
            logger.debug(f"Pruned {removed} mistake bank entries")
        return removed
