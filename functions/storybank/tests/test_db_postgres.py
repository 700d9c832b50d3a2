import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from storybank.db import (
    DuplicateKeyError,
    PostgresDbClient,
    QuestionRow,
    SqlTransaction,
    StoryRow,
)
from storybank.errors import ConflictError, InternalError, NotFoundError
from storybank.repository import HierarchyRepository, NewQuestion


class PostgresDbClientTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def setUp(self):
        self.db = PostgresDbClient("sqlite+pysqlite:///:memory:")
        self.repo = HierarchyRepository(self.db)

    def _count(self, row_cls) -> int:
        with self.db.Session() as session:
            return session.query(row_cls).count()

    def test_upserts_are_idempotent(self):
        with self.db.transaction() as tx:
            first = tx.upsert_level("L1")
            again = tx.upsert_level("L1")
            month = tx.upsert_month(1, first.id)
            month_again = tx.upsert_month(1, first.id)
        self.assertEqual(first.id, again.id)
        self.assertEqual(first.months, [])
        self.assertEqual(month.id, month_again.id)

        with self.db.transaction() as tx:
            self.assertEqual(tx.upsert_level("L1").id, first.id)
            self.assertEqual(len(tx.list_levels()), 1)
            self.assertEqual(len(tx.list_months(first.id)), 1)

    def test_insert_story_duplicate_key(self):
        with self.db.transaction() as tx:
            level = tx.upsert_level("L1")
            month = tx.upsert_month(1, level.id)
            tx.insert_story(1, "S1", month.id, [])
        with self.assertRaises(DuplicateKeyError):
            with self.db.transaction() as tx:
                tx.insert_story(1, "again", month.id, [])
        self.assertEqual(self._count(StoryRow), 1)

    def test_create_and_query_roundtrip(self):
        questions = [NewQuestion("one?", "1"), NewQuestion("two?", "2")]
        level = self.repo.create_story_with_questions("L1", 4, 2, "Story", questions)
        self.repo.create_story_with_questions("L1", 4, 1, "First", questions[:1])

        self.assertEqual(len(level.months), 1)
        months = self.repo.list_months_for_level("L1")
        self.assertEqual([m.id for m in months], level.months)
        self.assertEqual(len(months[0].stories), 2)

        stories = self.repo.list_stories_for_month("L1", 4)
        self.assertEqual([s.story_name for s in stories], ["First", "Story"])

        loaded = self.repo.list_questions_for_story("L1", 4, 2)
        self.assertEqual([q.answer for q in loaded], ["1", "2"])

        recent = self.repo.list_recent_stories(7)
        self.assertEqual({r.story_name for r in recent}, {"First", "Story"})
        self.assertTrue(all(r.level_name == "L1" for r in recent))

    def test_conflict_rolls_back_questions(self):
        self.repo.create_story_with_questions("L1", 1, 1, "S1", [NewQuestion("q", "a")])
        with self.assertRaises(ConflictError):
            self.repo.create_story_with_questions(
                "L1", 1, 1, "S1 again", [NewQuestion("q", "a")]
            )
        self.assertEqual(self._count(QuestionRow), 1)
        self.assertEqual(self.repo.list_stories_for_month("L1", 1)[0].story_name, "S1")

    def test_failed_creation_leaves_nothing_behind(self):
        with patch.object(
            SqlTransaction, "save_level", side_effect=RuntimeError("boom")
        ):
            with self.assertRaises(RuntimeError):
                self.repo.create_story_with_questions(
                    "L1", 1, 1, "S1", [NewQuestion("q", "a")]
                )
        self.assertEqual(self._count(QuestionRow), 0)
        self.assertEqual(self.repo.list_levels(), [])

    def test_delete_cascade(self):
        self.repo.create_story_with_questions("L1", 1, 1, "S1", [NewQuestion("q", "a")])
        self.repo.create_story_with_questions("L1", 2, 1, "S1", [NewQuestion("q", "a")])

        result = self.repo.delete_story("L1", 1, 1)
        self.assertFalse(result.level_deleted)
        levels = self.repo.list_levels()
        self.assertEqual(len(levels), 1)
        self.assertEqual(
            levels[0].months, [m.id for m in self.repo.list_months_for_level("L1")]
        )
        with self.assertRaises(NotFoundError):
            self.repo.list_stories_for_month("L1", 1)

        result = self.repo.delete_story("L1", 2, 1)
        self.assertTrue(result.level_deleted)
        self.assertEqual(self.repo.list_levels(), [])
        self.assertEqual(self._count(QuestionRow), 0)
        self.assertEqual(self._count(StoryRow), 0)

    def test_upsert_falls_back_to_savepoint_without_on_conflict(self):
        with patch.object(SqlTransaction, "_dialect_name", return_value="mssql"):
            self.repo.create_story_with_questions("L1", 1, 1, "S1", [NewQuestion("q", "a")])
            level = self.repo.create_story_with_questions(
                "L1", 1, 2, "S2", [NewQuestion("q", "a")]
            )

        levels = self.repo.list_levels()
        self.assertEqual([l.id for l in levels], [level.id])
        months = self.repo.list_months_for_level("L1")
        self.assertEqual(len(months), 1)
        self.assertEqual(level.months, [months[0].id])
        self.assertEqual(len(months[0].stories), 2)
        self.assertEqual(self._count(StoryRow), 2)

    def test_store_failures_become_internal_errors(self):
        failure = OperationalError("SELECT 1", {}, Exception("db-host:5432 refused"))
        with patch.object(SqlTransaction, "list_levels", side_effect=failure):
            with self.assertRaises(InternalError) as ctx:
                self.repo.list_levels()
        self.assertIsInstance(ctx.exception.__cause__, OperationalError)
        self.assertNotIn("db-host", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
