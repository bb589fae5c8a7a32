"""
Course Catalog

Read-only course structure (chapters made of lesson parts) used to derive
chapter progress, lesson unlocking and star eligibility from the learner's
completed lessons. Content itself (drugs, questions) lives elsewhere.
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from pharmalingo.common.logger import app_logger

logger = app_logger.getChild("progress.catalog")


class LessonPart(BaseModel):
    """One lesson inside a chapter"""
    id: str
    title: str = ""
    description: str = ""
    drug_ids: List[str] = Field(default_factory=list)
    question_count: int = 10


class Chapter(BaseModel):
    """Ordered group of lesson parts"""
    id: str
    title: str = ""
    subtitle: str = ""
    parts: List[LessonPart] = Field(default_factory=list)

    @property
    def mastery_lesson_id(self) -> str:
        """Id of the chapter's end-of-module quiz"""
        return f"mastery-{self.id}"


class Catalog:
    """
    Course structure queries.

    The optional capstone chapter is the final module: it earns no stars and
    unlocks only once every other chapter's parts and mastery quizzes are
    passed.
    """

    def __init__(self, chapters: Optional[List[Chapter]] = None, capstone_chapter_id: Optional[str] = None):
        self.chapters = list(chapters or [])
        self.capstone_chapter_id = capstone_chapter_id
        self._part_to_chapter: Dict[str, str] = {
            part.id: chapter.id for chapter in self.chapters for part in chapter.parts
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Catalog':
        chapters = [Chapter.model_validate(raw) for raw in data.get("chapters", [])]
        return cls(chapters, capstone_chapter_id=data.get("capstone_chapter_id"))

    @classmethod
    def from_file(cls, path: str) -> 'Catalog':
        """
        Load a catalog from a YAML or JSON file.

        Args:
            path: Catalog file path

        Returns:
            Loaded catalog
        """
        path = Path(path)
        with open(path, 'r') as f:
            if path.suffix.lower() in ['.yaml', '.yml']:
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        catalog = cls.from_dict(data)
        logger.info(f"Loaded catalog with {len(catalog.chapters)} chapters from {path}")
        return catalog

    def chapter(self, chapter_id: str) -> Optional[Chapter]:
        for chapter in self.chapters:
            if chapter.id == chapter_id:
                return chapter
        return None

    def chapter_for_part(self, part_id: str) -> Optional[str]:
        return self._part_to_chapter.get(part_id)

    def core_chapters(self) -> List[Chapter]:
        return [c for c in self.chapters if c.id != self.capstone_chapter_id]

    def is_star_eligible(self, lesson_id: str) -> bool:
        """Only chapter parts outside the capstone chapter earn stars"""
        chapter_id = self.chapter_for_part(lesson_id)
        return chapter_id is not None and chapter_id != self.capstone_chapter_id

    def chapter_progress(self, completed: Dict[str, int], pass_score: int) -> Dict[str, int]:
        """Percent of passed parts per chapter"""
        progress = {}
        for chapter in self.chapters:
            if not chapter.parts:
                continue
            passed = sum(1 for part in chapter.parts if completed.get(part.id, 0) >= pass_score)
            progress[chapter.id] = round(passed * 100 / len(chapter.parts))
        return progress

    def seed_stars(self, completed: Dict[str, int], stars: Dict[str, int], pass_score: int) -> Dict[str, int]:
        """Give one star to eligible lessons passed before stars were tracked"""
        seeded = dict(stars)
        for lesson_id, score in completed.items():
            if score >= pass_score and self.is_star_eligible(lesson_id) and seeded.get(lesson_id, 0) < 1:
                seeded[lesson_id] = 1
        return seeded

    def is_lesson_unlocked(self, chapter_id: str, part_index: int, completed: Dict[str, int], pass_score: int) -> bool:
        """
        Whether a lesson part can be started.

        Args:
            chapter_id: Chapter id
            part_index: Position of the part within the chapter
            completed: Best score per lesson id
            pass_score: Passing score percent

        Returns:
            True for the first part of the first chapter, for the first part
            of a chapter whose predecessor is at least half passed, and for
            any part whose previous part is passed
        """
        def passed(lesson_id: str) -> bool:
            return completed.get(lesson_id, 0) >= pass_score

        if chapter_id == self.capstone_chapter_id:
            core = self.core_chapters()
            return all(passed(p.id) for c in core for p in c.parts) and all(passed(c.mastery_lesson_id) for c in core)

        index = next((i for i, c in enumerate(self.chapters) if c.id == chapter_id), None)
        if index is None:
            return False
        chapter = self.chapters[index]

        if part_index == 0:
            if index == 0:
                return True
            previous = self.chapters[index - 1]
            done = sum(1 for p in previous.parts if passed(p.id))
            return done >= math.ceil(len(previous.parts) / 2)

        if part_index < 1 or part_index >= len(chapter.parts):
            return False
        return passed(chapter.parts[part_index - 1].id)

    def unlocked_drug_ids(self, completed: Dict[str, int], pass_score: int) -> List[str]:
        """Drugs from every unlocked core lesson, first occurrence order"""
        ids: Dict[str, None] = {}
        for chapter in self.core_chapters():
            for index, part in enumerate(chapter.parts):
                if self.is_lesson_unlocked(chapter.id, index, completed, pass_score):
                    for drug_id in part.drug_ids:
                        ids.setdefault(drug_id, None)
        return list(ids)

    def is_chapter_gold(self, chapter_id: str, stars: Dict[str, int], max_stars: int) -> bool:
        """All parts of a core chapter carry full stars"""
        chapter = self.chapter(chapter_id)
        if chapter is None or chapter_id == self.capstone_chapter_id:
            return False
        return all(stars.get(p.id, 0) >= max_stars for p in chapter.parts)
