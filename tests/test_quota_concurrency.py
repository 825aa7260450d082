import os
import tempfile
import threading
import time
import unittest
from datetime import date, datetime, timezone

from quota.cache import UsageCache
from quota.clock import FixedClock
from quota.db import Database
from quota.quota_service import QuotaService
from quota.records import UsageRecord
from quota.store import InMemoryUsageStore, SqlUsageStore
from quota.usage_logger import InMemoryUsageLogger


NOW = datetime(2026, 2, 18, 9, 30, tzinfo=timezone.utc)
YESTERDAY = date(2026, 2, 17)


def _exhausted_yesterday(user_id="u1"):
    return UsageRecord(
        user_id=user_id,
        questions_used=5,
        daily_limit=5,
        plan="free",
        period_start=YESTERDAY,
        last_reset_date=YESTERDAY,
        last_updated=datetime(2026, 2, 17, 22, 0, tzinfo=timezone.utc),
    )


class SlowStore(InMemoryUsageStore):
    """Shared store with latency between the quota check and the increment."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def load(self, user_id):
        time.sleep(self.delay)
        return super().load(user_id)

    def atomic_increment(self, user_id, amount=1, updated_at=None):
        time.sleep(self.delay)
        return super().atomic_increment(user_id, amount, updated_at)


class InterleavingStore(InMemoryUsageStore):
    """Two callers read the same absent or stale record; the second caller's
    create/reset write is held back until the first caller has incremented."""

    def __init__(self):
        super().__init__()
        self.loaded = threading.Barrier(2)
        self.incremented = threading.Event()
        self.armed = True
        self._order_lock = threading.Lock()
        self._writers = 0

    def load(self, user_id):
        record = super().load(user_id)
        if self.armed:
            self.loaded.wait(timeout=5)
        return record

    def _hold_second_writer(self):
        with self._order_lock:
            self._writers += 1
            second = self._writers > 1
        if second:
            self.incremented.wait(timeout=5)

    def create_if_absent(self, user_id, record):
        self._hold_second_writer()
        return super().create_if_absent(user_id, record)

    def reset_if_stale(self, user_id, record):
        self._hold_second_writer()
        return super().reset_if_stale(user_id, record)

    def atomic_increment(self, user_id, amount=1, updated_at=None):
        count = super().atomic_increment(user_id, amount, updated_at)
        self.incremented.set()
        return count


def _burst(service, size, user_id="u1"):
    barrier = threading.Barrier(size)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        result = service.record_consumption(user_id, "free", "studio_hub", 10)
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


class QuotaConcurrencyTestCase(unittest.TestCase):
    """Concurrent consumption may overshoot the limit by at most the number
    of callers already in flight when the limit became visible; it never
    keeps growing once the store shows the limit reached."""

    LIMIT = 5  # free plan

    def setUp(self):
        self.store = SlowStore(delay=0.02)
        self.usage_logger = InMemoryUsageLogger()
        self.service = QuotaService(
            store=self.store,
            usage_logger=self.usage_logger,
            cache=UsageCache(ttl_seconds=3600),
            clock=FixedClock(NOW),
            store_timeout=30.0,
            max_workers=32,
        )
        # freshly reset record for today
        self.service.get_usage("u1", "free")

    def tearDown(self):
        self.service.close()

    def test_burst_overshoot_is_bounded_and_no_update_is_lost(self):
        k = 20
        results = _burst(self.service, k)
        consumed = [r for r in results if r]
        final = self.store.load("u1").questions_used

        self.assertEqual(len(results), k)
        self.assertTrue(all(r.consumed or r.quota_exceeded for r in results))
        # every successful consumption is counted exactly once
        self.assertEqual(final, len(consumed))
        self.assertGreaterEqual(final, self.LIMIT)
        self.assertLessEqual(final, self.LIMIT + k)
        self.assertEqual(len(self.usage_logger), len(consumed))

    def test_burst_on_first_access_loses_nothing(self):
        k = 12
        results = _burst(self.service, k, user_id="fresh")
        consumed = [r for r in results if r]
        self.assertTrue(all(r.consumed or r.quota_exceeded for r in results))
        self.assertEqual(self.store.load("fresh").questions_used, len(consumed))
        self.assertLessEqual(len(consumed), self.LIMIT + k)

    def test_burst_across_midnight_reset_loses_nothing(self):
        self.store.save("stale", _exhausted_yesterday("stale"))
        k = 12
        results = _burst(self.service, k, user_id="stale")
        consumed = [r for r in results if r]
        record = self.store.load("stale")
        self.assertGreaterEqual(len(consumed), 1)
        self.assertEqual(record.last_reset_date, NOW.date())
        self.assertEqual(record.questions_used, len(consumed))

    def test_no_growth_after_limit_is_visible(self):
        _burst(self.service, 12)
        after_first = self.store.load("u1").questions_used
        self.assertGreaterEqual(after_first, self.LIMIT)

        second = _burst(self.service, 12)
        self.assertFalse(any(second))
        for _ in range(20):
            self.assertTrue(self.service.record_consumption("u1", "free").quota_exceeded)
        self.assertEqual(self.store.load("u1").questions_used, after_first)

    def test_overshoot_bounded_by_batch_size(self):
        batch = 4
        for _ in range(5):
            _burst(self.service, batch)
        final = self.store.load("u1").questions_used
        self.assertGreaterEqual(final, self.LIMIT)
        self.assertLessEqual(final, self.LIMIT + batch - 1)

    def test_distinct_users_do_not_interfere(self):
        barrier = threading.Barrier(10)
        users = [f"user-{i}" for i in range(10)]

        def worker(user_id):
            barrier.wait()
            for _ in range(3):
                self.service.record_consumption(user_id, "free")

        threads = [threading.Thread(target=worker, args=(u,)) for u in users]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        for user_id in users:
            self.assertEqual(self.store.load(user_id).questions_used, 3)


class InterleavedWriteTestCase(unittest.TestCase):
    """A create or reset decided on an out-of-date read must not wipe a count
    that another caller has already added."""

    def setUp(self):
        self.store = InterleavingStore()
        self.service = QuotaService(
            store=self.store,
            usage_logger=InMemoryUsageLogger(),
            cache=UsageCache(ttl_seconds=3600),
            clock=FixedClock(NOW),
            store_timeout=10.0,
        )

    def tearDown(self):
        self.service.close()

    def _consume_twice(self):
        results = _burst(self.service, 2)
        self.store.armed = False
        return results

    def test_second_creation_after_first_increment_keeps_count(self):
        results = self._consume_twice()
        self.assertEqual([r.status for r in results], ["consumed", "consumed"])
        stored = self.store.load("u1")
        self.assertEqual(stored.questions_used, 2)
        self.assertEqual(sorted(r.record.questions_used for r in results), [1, 2])

    def test_second_reset_after_first_increment_keeps_count(self):
        self.store.save("u1", _exhausted_yesterday())
        results = self._consume_twice()
        self.assertEqual([r.status for r in results], ["consumed", "consumed"])
        stored = self.store.load("u1")
        self.assertEqual(stored.last_reset_date, NOW.date())
        self.assertEqual(stored.questions_used, 2)


class SqlQuotaConcurrencyTestCase(unittest.TestCase):
    LIMIT = 5

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database("sqlite:///" + os.path.join(self.tmp.name, "quota.db"))
        self.db.create_tables()
        self.store = SqlUsageStore(self.db)
        self.service = QuotaService(
            store=self.store,
            usage_logger=InMemoryUsageLogger(),
            cache=UsageCache(ttl_seconds=3600),
            clock=FixedClock(NOW),
            store_timeout=30.0,
            max_workers=8,
        )

    def tearDown(self):
        self.service.close()
        self.db.dispose()
        self.tmp.cleanup()

    def test_concurrent_first_access_never_fails_accounting(self):
        for idx in range(10):
            user_id = f"user-{idx}"
            results = _burst(self.service, 8, user_id=user_id)
            consumed = [r for r in results if r]
            self.assertFalse(any(r.accounting_failed for r in results), [str(r.error) for r in results])
            self.assertEqual(self.store.load(user_id).questions_used, len(consumed))
            self.assertLessEqual(len(consumed), self.LIMIT + 8)

    def test_concurrent_reset_never_fails_accounting(self):
        self.store.save("u1", _exhausted_yesterday())
        results = _burst(self.service, 8)
        consumed = [r for r in results if r]
        record = self.store.load("u1")
        self.assertFalse(any(r.accounting_failed for r in results))
        self.assertEqual(record.last_reset_date, NOW.date())
        self.assertEqual(record.questions_used, len(consumed))


if __name__ == "__main__":
    unittest.main()
