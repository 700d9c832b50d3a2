"""
Document store abstraction for Postgres and an in-memory test implementation.

Four collections (questions, stories, months, levels), each keyed by a
generated id. Parents keep an ordered list of child ids and children keep a
single parent id; keeping both sides in sync is the repository's job.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import ContextManager, Dict, Iterator, Optional, Protocol, Sequence

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    insert,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from storybank.errors import InternalError

import logging

logger = logging.getLogger(__name__)

# A find-or-create can lose its row to a concurrent delete between the
# conditional insert and the read-back; retry that many times.
UPSERT_ATTEMPTS = 3


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class QuestionRecord:
    id: str
    question: str
    answer: str
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class StoryRecord:
    id: str
    story_number: int
    story_name: str
    month_id: str
    questions: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


@dataclass
class MonthRecord:
    id: str
    month_number: int
    level_id: str
    stories: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


@dataclass
class LevelRecord:
    id: str
    level_name: str
    months: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


class DuplicateKeyError(Exception):
    """Raised when an insert collides with a unique key."""


class DbTransaction(Protocol):
    """Document operations available inside a store transaction."""

    def insert_questions(
        self, pairs: Sequence[tuple[str, str]]
    ) -> list[QuestionRecord]:
        ...

    def upsert_level(self, level_name: str) -> LevelRecord:
        ...

    def upsert_month(self, month_number: int, level_id: str) -> MonthRecord:
        ...

    def find_level(
        self, level_name: str, *, for_update: bool = False
    ) -> Optional[LevelRecord]:
        ...

    def find_month(
        self, month_number: int, level_id: str, *, for_update: bool = False
    ) -> Optional[MonthRecord]:
        ...

    def find_story(
        self, story_number: int, month_id: str
    ) -> Optional[StoryRecord]:
        ...

    def get_level(self, level_id: str) -> Optional[LevelRecord]:
        ...

    def get_month(self, month_id: str) -> Optional[MonthRecord]:
        ...

    def insert_story(
        self,
        story_number: int,
        story_name: str,
        month_id: str,
        question_ids: Sequence[str],
    ) -> StoryRecord:
        ...

    def save_level(self, level: LevelRecord) -> None:
        ...

    def save_month(self, month: MonthRecord) -> None:
        ...

    def delete_questions(self, question_ids: Sequence[str]) -> int:
        ...

    def delete_story(self, story_id: str) -> None:
        ...

    def delete_month(self, month_id: str) -> None:
        ...

    def delete_level(self, level_id: str) -> None:
        ...

    def list_levels(self) -> list[LevelRecord]:
        ...

    def list_months(self, level_id: str) -> list[MonthRecord]:
        ...

    def list_stories(self, month_id: str) -> list[StoryRecord]:
        ...

    def get_questions(self, question_ids: Sequence[str]) -> list[QuestionRecord]:
        ...

    def list_stories_since(self, cutoff: float) -> list[StoryRecord]:
        ...


class DbClient(Protocol):
    """Interface for database access."""

    def transaction(self) -> ContextManager[DbTransaction]:
        """
        Open a unit of work. Everything done through the yielded transaction
        commits together, or not at all if the block raises.
        """
        ...


class InMemoryDbClient:
    """Simple in-memory document store for development and tests."""

    def __init__(self):
        self.levels: Dict[str, LevelRecord] = {}
        self.months: Dict[str, MonthRecord] = {}
        self.stories: Dict[str, StoryRecord] = {}
        self.questions: Dict[str, QuestionRecord] = {}
        # Held for a whole transaction, which makes every upsert atomic.
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["InMemoryTransaction"]:
        with self._lock:
            tx = InMemoryTransaction(self)
            try:
                yield tx
            except Exception:
                if tx.snapshot is not None:
                    (
                        self.levels,
                        self.months,
                        self.stories,
                        self.questions,
                    ) = tx.snapshot
                raise

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.levels.clear()
            self.months.clear()
            self.stories.clear()
            self.questions.clear()


class InMemoryTransaction:
    """
    Operates directly on the client's dicts. Records handed out are copies,
    so callers must save them back for changes to stick.

    The rollback snapshot is taken on the first write, so read-only
    transactions copy nothing.
    """

    def __init__(self, db: InMemoryDbClient):
        self._db = db
        self.snapshot: Optional[tuple] = None

    def _before_write(self) -> None:
        if self.snapshot is None:
            self.snapshot = copy.deepcopy(
                (self._db.levels, self._db.months, self._db.stories, self._db.questions)
            )

    def insert_questions(
        self, pairs: Sequence[tuple[str, str]]
    ) -> list[QuestionRecord]:
        self._before_write()
        records = [
            QuestionRecord(id=_new_id(), question=question, answer=answer)
            for question, answer in pairs
        ]
        for record in records:
            self._db.questions[record.id] = record
        return copy.deepcopy(records)

    def upsert_level(self, level_name: str) -> LevelRecord:
        existing = self.find_level(level_name)
        if existing:
            return existing
        self._before_write()
        record = LevelRecord(id=_new_id(), level_name=level_name)
        self._db.levels[record.id] = record
        return copy.deepcopy(record)

    def upsert_month(self, month_number: int, level_id: str) -> MonthRecord:
        existing = self.find_month(month_number, level_id)
        if existing:
            return existing
        self._before_write()
        record = MonthRecord(
            id=_new_id(), month_number=month_number, level_id=level_id
        )
        self._db.months[record.id] = record
        return copy.deepcopy(record)

    def find_level(
        self, level_name: str, *, for_update: bool = False
    ) -> Optional[LevelRecord]:
        for level in self._db.levels.values():
            if level.level_name == level_name:
                return copy.deepcopy(level)
        return None

    def find_month(
        self, month_number: int, level_id: str, *, for_update: bool = False
    ) -> Optional[MonthRecord]:
        for month in self._db.months.values():
            if month.month_number == month_number and month.level_id == level_id:
                return copy.deepcopy(month)
        return None

    def find_story(
        self, story_number: int, month_id: str
    ) -> Optional[StoryRecord]:
        for story in self._db.stories.values():
            if story.story_number == story_number and story.month_id == month_id:
                return copy.deepcopy(story)
        return None

    def get_level(self, level_id: str) -> Optional[LevelRecord]:
        level = self._db.levels.get(level_id)
        return copy.deepcopy(level) if level else None

    def get_month(self, month_id: str) -> Optional[MonthRecord]:
        month = self._db.months.get(month_id)
        return copy.deepcopy(month) if month else None

    def insert_story(
        self,
        story_number: int,
        story_name: str,
        month_id: str,
        question_ids: Sequence[str],
    ) -> StoryRecord:
        if self.find_story(story_number, month_id):
            raise DuplicateKeyError(f"stories({story_number}, {month_id})")
        self._before_write()
        record = StoryRecord(
            id=_new_id(),
            story_number=story_number,
            story_name=story_name,
            month_id=month_id,
            questions=list(question_ids),
        )
        self._db.stories[record.id] = record
        return copy.deepcopy(record)

    def save_level(self, level: LevelRecord) -> None:
        if level.id not in self._db.levels:
            return
        self._before_write()
        level.updated_at = time.time()
        self._db.levels[level.id] = copy.deepcopy(level)

    def save_month(self, month: MonthRecord) -> None:
        if month.id not in self._db.months:
            return
        self._before_write()
        month.updated_at = time.time()
        self._db.months[month.id] = copy.deepcopy(month)

    def delete_questions(self, question_ids: Sequence[str]) -> int:
        self._before_write()
        deleted = 0
        for question_id in question_ids:
            if self._db.questions.pop(question_id, None) is not None:
                deleted += 1
        return deleted

    def delete_story(self, story_id: str) -> None:
        self._before_write()
        self._db.stories.pop(story_id, None)

    def delete_month(self, month_id: str) -> None:
        self._before_write()
        self._db.months.pop(month_id, None)

    def delete_level(self, level_id: str) -> None:
        self._before_write()
        self._db.levels.pop(level_id, None)

    def list_levels(self) -> list[LevelRecord]:
        levels = sorted(self._db.levels.values(), key=lambda l: l.level_name)
        return copy.deepcopy(levels)

    def list_months(self, level_id: str) -> list[MonthRecord]:
        months = [m for m in self._db.months.values() if m.level_id == level_id]
        months.sort(key=lambda m: m.month_number)
        return copy.deepcopy(months)

    def list_stories(self, month_id: str) -> list[StoryRecord]:
        stories = [s for s in self._db.stories.values() if s.month_id == month_id]
        stories.sort(key=lambda s: s.story_number)
        return copy.deepcopy(stories)

    def get_questions(self, question_ids: Sequence[str]) -> list[QuestionRecord]:
        return [
            copy.deepcopy(self._db.questions[question_id])
            for question_id in question_ids
            if question_id in self._db.questions
        ]

    def list_stories_since(self, cutoff: float) -> list[StoryRecord]:
        stories = [s for s in self._db.stories.values() if s.created_at >= cutoff]
        stories.sort(key=lambda s: s.created_at, reverse=True)
        return copy.deepcopy(stories)


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator["SqlTransaction"]:
        try:
            with self.Session() as session, session.begin():
                yield SqlTransaction(session)
        except SQLAlchemyError as exc:
            logger.exception("Database transaction failed")
            raise InternalError("Database operation failed") from exc


class SqlTransaction:
    """DbTransaction over a single SQLAlchemy session/transaction."""

    def __init__(self, session: Session):
        self.session = session

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def _insert_if_absent(
        self, row_cls, values: dict, index_elements: list[str]
    ) -> None:
        """Conditional insert keyed on a unique index, in one round trip."""
        table = row_cls.__table__
        dialect = self._dialect_name()
        if dialect == "postgresql":
            stmt = postgresql.insert(table).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(table).values(**values)
        else:
            try:
                with self.session.begin_nested():
                    self.session.execute(insert(table).values(**values))
            except IntegrityError:
                # Row already present; the read-back picks it up.
                logger.debug("Upsert on %s hit an existing row", table.name)
            return
        self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=index_elements)
        )

    def _scalar(self, stmt, *, for_update: bool = False):
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def insert_questions(
        self, pairs: Sequence[tuple[str, str]]
    ) -> list[QuestionRecord]:
        now = time.time()
        rows = [
            QuestionRow(
                id=_new_id(), question=question, answer=answer, created_at=now
            )
            for question, answer in pairs
        ]
        self.session.add_all(rows)
        self.session.flush()
        return [_to_question_record(row) for row in rows]

    def upsert_level(self, level_name: str) -> LevelRecord:
        for _ in range(UPSERT_ATTEMPTS):
            now = time.time()
            self._insert_if_absent(
                LevelRow,
                {
                    "id": _new_id(),
                    "level_name": level_name,
                    "months": [],
                    "created_at": now,
                    "updated_at": now,
                },
                ["level_name"],
            )
            level = self.find_level(level_name, for_update=True)
            if level:
                return level
        raise InternalError(f"Could not create level '{level_name}'")

    def upsert_month(self, month_number: int, level_id: str) -> MonthRecord:
        for _ in range(UPSERT_ATTEMPTS):
            now = time.time()
            self._insert_if_absent(
                MonthRow,
                {
                    "id": _new_id(),
                    "month_number": month_number,
                    "level_id": level_id,
                    "stories": [],
                    "created_at": now,
                    "updated_at": now,
                },
                ["month_number", "level_id"],
            )
            month = self.find_month(month_number, level_id, for_update=True)
            if month:
                return month
        raise InternalError(f"Could not create month {month_number}")

    def find_level(
        self, level_name: str, *, for_update: bool = False
    ) -> Optional[LevelRecord]:
        row = self._scalar(
            select(LevelRow).where(LevelRow.level_name == level_name),
            for_update=for_update,
        )
        return _to_level_record(row) if row else None

    def find_month(
        self, month_number: int, level_id: str, *, for_update: bool = False
    ) -> Optional[MonthRecord]:
        row = self._scalar(
            select(MonthRow).where(
                MonthRow.month_number == month_number,
                MonthRow.level_id == level_id,
            ),
            for_update=for_update,
        )
        return _to_month_record(row) if row else None

    def find_story(
        self, story_number: int, month_id: str
    ) -> Optional[StoryRecord]:
        row = self._scalar(
            select(StoryRow).where(
                StoryRow.story_number == story_number,
                StoryRow.month_id == month_id,
            )
        )
        return _to_story_record(row) if row else None

    def get_level(self, level_id: str) -> Optional[LevelRecord]:
        row = self.session.get(LevelRow, level_id)
        return _to_level_record(row) if row else None

    def get_month(self, month_id: str) -> Optional[MonthRecord]:
        row = self.session.get(MonthRow, month_id)
        return _to_month_record(row) if row else None

    def insert_story(
        self,
        story_number: int,
        story_name: str,
        month_id: str,
        question_ids: Sequence[str],
    ) -> StoryRecord:
        now = time.time()
        row = StoryRow(
            id=_new_id(),
            story_number=story_number,
            story_name=story_name,
            month_id=month_id,
            questions=list(question_ids),
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateKeyError(f"stories({story_number}, {month_id})") from exc
        return _to_story_record(row)

    def save_level(self, level: LevelRecord) -> None:
        row = self.session.get(LevelRow, level.id)
        if not row:
            return
        level.updated_at = time.time()
        row.months = list(level.months)
        row.updated_at = level.updated_at

    def save_month(self, month: MonthRecord) -> None:
        row = self.session.get(MonthRow, month.id)
        if not row:
            return
        month.updated_at = time.time()
        row.stories = list(month.stories)
        row.updated_at = month.updated_at

    def delete_questions(self, question_ids: Sequence[str]) -> int:
        if not question_ids:
            return 0
        rows = (
            self.session.execute(
                select(QuestionRow).where(QuestionRow.id.in_(list(question_ids)))
            )
            .scalars()
            .all()
        )
        for row in rows:
            self.session.delete(row)
        return len(rows)

    def _delete_by_id(self, row_cls, row_id: str) -> None:
        row = self.session.get(row_cls, row_id)
        if row:
            self.session.delete(row)

    def delete_story(self, story_id: str) -> None:
        self._delete_by_id(StoryRow, story_id)

    def delete_month(self, month_id: str) -> None:
        self._delete_by_id(MonthRow, month_id)

    def delete_level(self, level_id: str) -> None:
        self._delete_by_id(LevelRow, level_id)

    def list_levels(self) -> list[LevelRecord]:
        rows = self.session.execute(
            select(LevelRow).order_by(LevelRow.level_name.asc())
        ).scalars()
        return [_to_level_record(row) for row in rows]

    def list_months(self, level_id: str) -> list[MonthRecord]:
        rows = self.session.execute(
            select(MonthRow)
            .where(MonthRow.level_id == level_id)
            .order_by(MonthRow.month_number.asc())
        ).scalars()
        return [_to_month_record(row) for row in rows]

    def list_stories(self, month_id: str) -> list[StoryRecord]:
        rows = self.session.execute(
            select(StoryRow)
            .where(StoryRow.month_id == month_id)
            .order_by(StoryRow.story_number.asc())
        ).scalars()
        return [_to_story_record(row) for row in rows]

    def get_questions(self, question_ids: Sequence[str]) -> list[QuestionRecord]:
        if not question_ids:
            return []
        rows = self.session.execute(
            select(QuestionRow).where(QuestionRow.id.in_(list(question_ids)))
        ).scalars()
        by_id = {row.id: row for row in rows}
        return [
            _to_question_record(by_id[question_id])
            for question_id in question_ids
            if question_id in by_id
        ]

    def list_stories_since(self, cutoff: float) -> list[StoryRecord]:
        rows = self.session.execute(
            select(StoryRow)
            .where(StoryRow.created_at >= cutoff)
            .order_by(StoryRow.created_at.desc())
        ).scalars()
        return [_to_story_record(row) for row in rows]


def _to_question_record(row: "QuestionRow") -> QuestionRecord:
    return QuestionRecord(
        id=row.id,
        question=row.question,
        answer=row.answer,
        created_at=row.created_at,
    )


def _to_story_record(row: "StoryRow") -> StoryRecord:
    return StoryRecord(
        id=row.id,
        story_number=row.story_number,
        story_name=row.story_name,
        month_id=row.month_id,
        questions=list(row.questions or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_month_record(row: "MonthRow") -> MonthRecord:
    return MonthRecord(
        id=row.id,
        month_number=row.month_number,
        level_id=row.level_id,
        stories=list(row.stories or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_level_record(row: "LevelRow") -> LevelRecord:
    return LevelRecord(
        id=row.id,
        level_name=row.level_name,
        months=list(row.months or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


Base = declarative_base()


class LevelRow(Base):
    __tablename__ = "levels"

    id = Column(String, primary_key=True)
    level_name = Column(String, nullable=False, unique=True)
    months = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class MonthRow(Base):
    __tablename__ = "months"
    __table_args__ = (
        UniqueConstraint("month_number", "level_id", name="uq_months_number_level"),
    )

    id = Column(String, primary_key=True)
    month_number = Column(Integer, nullable=False)
    level_id = Column(String, nullable=False, index=True)
    stories = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class StoryRow(Base):
    __tablename__ = "stories"
    __table_args__ = (
        UniqueConstraint("story_number", "month_id", name="uq_stories_number_month"),
    )

    id = Column(String, primary_key=True)
    story_number = Column(Integer, nullable=False)
    story_name = Column(String, nullable=False)
    month_id = Column(String, nullable=False, index=True)
    questions = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class QuestionRow(Base):
    __tablename__ = "questions"

    id = Column(String, primary_key=True)
    question = Column(String, nullable=False)
    answer = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
