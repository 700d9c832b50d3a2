"""
Hierarchy repository: creation, cascading deletion and lookups for the
Level -> Month -> Story -> Question tree.

Levels and months are never created directly. They are found-or-created
atomically by the store while a story is created, and removed once the
last story beneath them is deleted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from storybank.db import (
    DbClient,
    DbTransaction,
    DuplicateKeyError,
    LevelRecord,
    MonthRecord,
    QuestionRecord,
    StoryRecord,
)
from storybank.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
UNKNOWN_LEVEL_NAME = "Unknown"


@dataclass
class NewQuestion:
    question: Optional[str]
    answer: Optional[str]


@dataclass
class DeleteResult:
    level_name: str
    story_number: int
    level_deleted: bool

    @property
    def message(self) -> str:
        if self.level_deleted:
            return (
                f"Story and level '{self.level_name}' deleted as it had no "
                "remaining content."
            )
        return f"Story '{self.story_number}' deleted successfully."


@dataclass
class RecentStory:
    level_name: str
    month_number: Optional[int]
    story_number: int
    story_name: str
    story_created_at: float


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _require_text(field: str, value: Any) -> str:
    if not _has_text(value):
        raise ValidationError(field)
    return value


def _require_number(field: str, value: Any) -> int:
    if value is None:
        raise ValidationError(field)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(field, f"'{field}' must be a positive integer.")
    return value


def validate_story_request(
    level_name: Any,
    month_number: Any,
    story_number: Any,
    story_name: Any,
    questions: Optional[Sequence[NewQuestion]],
) -> list[tuple[str, str]]:
    """
    Check the creation preconditions and return the question/answer pairs.

    Raises ValidationError naming the first missing or invalid field.
    """
    _require_text("levelName", level_name)
    _require_number("monthNumber", month_number)
    _require_number("storyNumber", story_number)
    _require_text("storyName", story_name)
    if not questions:
        raise ValidationError(
            "questions", "Question Array is required and may not be empty."
        )
    pairs = []
    for index, item in enumerate(questions):
        if not _has_text(item.question) or not _has_text(item.answer):
            raise ValidationError(
                f"questions[{index}]",
                "Each question must have both 'question' and 'answer' fields.",
            )
        pairs.append((item.question, item.answer))
    return pairs


class HierarchyRepository:
    """Keeps the parent id lists and the child parent references in sync."""

    def __init__(self, db: DbClient):
        self.db = db

    def create_story_with_questions(
        self,
        level_name: Any,
        month_number: Any,
        story_number: Any,
        story_name: Any,
        questions: Optional[Sequence[NewQuestion]],
    ) -> LevelRecord:
        pairs = validate_story_request(
            level_name, month_number, story_number, story_name, questions
        )

        with self.db.transaction() as tx:
            question_docs = tx.insert_questions(pairs)

            level = tx.upsert_level(level_name)
            month = tx.upsert_month(month_number, level.id)

            if tx.find_story(story_number, month.id):
                raise self._story_conflict(story_number, month_number)
            try:
                story = tx.insert_story(
                    story_number,
                    story_name,
                    month.id,
                    [q.id for q in question_docs],
                )
            except DuplicateKeyError as exc:
                raise self._story_conflict(story_number, month_number) from exc

            if story.id not in month.stories:
                month.stories.append(story.id)
                tx.save_month(month)

            if month.id not in level.months:
                level.months.append(month.id)
                tx.save_level(level)

        logger.info(
            "Created story %s (%s) in level '%s' month %s with %d questions",
            story_number,
            story_name,
            level_name,
            month_number,
            len(question_docs),
        )
        return level

    @staticmethod
    def _story_conflict(story_number: int, month_number: int) -> ConflictError:
        return ConflictError(
            f"Story Number {story_number} already exists for month {month_number}."
        )

    def delete_story(
        self, level_name: str, month_number: int, story_number: int
    ) -> DeleteResult:
        with self.db.transaction() as tx:
            level = tx.find_level(level_name, for_update=True)
            if not level:
                raise NotFoundError("Level")
            month = tx.find_month(month_number, level.id, for_update=True)
            if not month:
                raise NotFoundError("Month", "Month not found in this level")
            story = tx.find_story(story_number, month.id)
            if not story:
                raise NotFoundError("Story", "Story not found in this month")

            tx.delete_questions(story.questions)

            month.stories = [s for s in month.stories if s != story.id]
            tx.save_month(month)
            tx.delete_story(story.id)

            if not month.stories:
                level.months = [m for m in level.months if m != month.id]
                tx.delete_month(month.id)

            level_deleted = not level.months
            if level_deleted:
                tx.delete_level(level.id)
            else:
                tx.save_level(level)

        logger.info(
            "Deleted story %s from level '%s' month %s (level removed: %s)",
            story_number,
            level_name,
            month_number,
            level_deleted,
        )
        return DeleteResult(
            level_name=level_name,
            story_number=story_number,
            level_deleted=level_deleted,
        )

    def list_levels(self) -> list[LevelRecord]:
        with self.db.transaction() as tx:
            return tx.list_levels()

    @staticmethod
    def _resolve_level(tx: DbTransaction, level_name: str) -> LevelRecord:
        level = tx.find_level(level_name)
        if not level:
            raise NotFoundError("Level")
        return level

    @classmethod
    def _resolve_month(
        cls, tx: DbTransaction, level_name: str, month_number: int
    ) -> MonthRecord:
        level = cls._resolve_level(tx, level_name)
        month = tx.find_month(month_number, level.id)
        if not month:
            raise NotFoundError("Month", "Month not found in this level")
        return month

    def list_months_for_level(self, level_name: str) -> list[MonthRecord]:
        with self.db.transaction() as tx:
            level = self._resolve_level(tx, level_name)
            return tx.list_months(level.id)

    def list_stories_for_month(
        self, level_name: str, month_number: int
    ) -> list[StoryRecord]:
        with self.db.transaction() as tx:
            month = self._resolve_month(tx, level_name, month_number)
            return tx.list_stories(month.id)

    def list_questions_for_story(
        self, level_name: str, month_number: int, story_number: int
    ) -> list[QuestionRecord]:
        with self.db.transaction() as tx:
            month = self._resolve_month(tx, level_name, month_number)
            story = tx.find_story(story_number, month.id)
            if not story:
                raise NotFoundError("Story", "Story not found in this month")
            return tx.get_questions(story.questions)

    def list_recent_stories(
        self, window_days: int = 7, *, now: Optional[float] = None
    ) -> list[RecentStory]:
        """
        Stories created in the trailing window, newest first. An empty list
        means there is nothing recent; callers decide how to report that.
        """
        cutoff = (now if now is not None else time.time()) - (
            window_days * SECONDS_PER_DAY
        )
        with self.db.transaction() as tx:
            stories = tx.list_stories_since(cutoff)
            months: dict[str, Optional[MonthRecord]] = {}
            levels: dict[str, Optional[LevelRecord]] = {}
            results = []
            for story in stories:
                if story.month_id not in months:
                    months[story.month_id] = tx.get_month(story.month_id)
                month = months[story.month_id]
                level = None
                if month:
                    if month.level_id not in levels:
                        levels[month.level_id] = tx.get_level(month.level_id)
                    level = levels[month.level_id]
                results.append(
                    RecentStory(
                        level_name=level.level_name if level else UNKNOWN_LEVEL_NAME,
                        month_number=month.month_number if month else None,
                        story_number=story.story_number,
                        story_name=story.story_name,
                        story_created_at=story.created_at,
                    )
                )
            return results
