import unittest
from datetime import datetime, timedelta, timezone

from quota.db import Database
from quota.errors import LoggingFailure
from quota.records import UsageLogEntry
from quota.usage_logger import InMemoryUsageLogger, SqlUsageLogger


BASE = datetime(2026, 2, 18, 9, 0, tzinfo=timezone.utc)


def _entry(user_id="u1", minutes=0, category="studio_hub", size=100, question=""):
    return UsageLogEntry(
        user_id=user_id,
        timestamp=BASE + timedelta(minutes=minutes),
        plan="free",
        category=category,
        artifact_size=size,
        question=question,
    )


class UsageLogEntryTestCase(unittest.TestCase):
    def test_defaults_and_truncation(self):
        entry = UsageLogEntry(user_id="u1", timestamp=BASE, plan="free", category="", artifact_size=-5, question="q" * 900)
        self.assertEqual(entry.category, "studio_hub")
        self.assertEqual(entry.artifact_size, 0)
        self.assertEqual(len(entry.question), 500)
        self.assertTrue(entry.session_id.startswith("session_"))
        self.assertTrue(entry.id)

    def test_explicit_session_id_is_kept(self):
        entry = UsageLogEntry(user_id="u1", timestamp=BASE, plan="free", session_id="s-1")
        self.assertEqual(entry.session_id, "s-1")


class LoggerContractMixin:
    def make_logger(self):
        raise NotImplementedError

    def setUp(self):
        self.usage_logger = self.make_logger()

    def test_recent_is_newest_first_and_limited(self):
        for minutes in [0, 5, 2]:
            self.usage_logger.append(_entry(minutes=minutes, question=f"m{minutes}"))
        self.usage_logger.append(_entry(user_id="other", minutes=10))
        recent = self.usage_logger.recent("u1", limit=2)
        self.assertEqual([x.question for x in recent], ["m5", "m2"])

    def test_entries_since_filters_by_time_and_user(self):
        self.usage_logger.append(_entry(minutes=-60 * 24 * 10))
        self.usage_logger.append(_entry(minutes=0, category="idea_lab", size=250))
        self.usage_logger.append(_entry(user_id="other", minutes=0))
        rows = self.usage_logger.entries_since("u1", BASE - timedelta(days=1))
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].category, "idea_lab")
        self.assertEqual(rows[0].artifact_size, 250)
        self.assertEqual(rows[0].timestamp, BASE)


class InMemoryUsageLoggerTestCase(LoggerContractMixin, unittest.TestCase):
    def make_logger(self):
        return InMemoryUsageLogger()


class SqlUsageLoggerTestCase(LoggerContractMixin, unittest.TestCase):
    def make_logger(self):
        self.db = Database("sqlite://")
        self.db.create_tables()
        return SqlUsageLogger(self.db)

    def tearDown(self):
        self.db.dispose()

    def test_append_failure_raises_logging_failure(self):
        empty = Database("sqlite://")
        try:
            with self.assertRaises(LoggingFailure):
                SqlUsageLogger(empty).append(_entry())
        finally:
            empty.dispose()


if __name__ == "__main__":
    unittest.main()
