"""AI assistant question quota.

QuotaService answers "may this user ask another question today?" and
accounts consumed questions against the authoritative UsageStore.

Failure policy:
    * reads (get_usage / can_consume) fail open: when the store is down the
      caller gets a zeroed in-memory record, so the assistant stays usable
      while usage goes untracked;
    * record_consumption fails closed on accounting: a store failure yields
      an ``accounting_failed`` result, never a silent success and never a
      fake "quota exceeded".

The in-process cache is advisory only. Every consumption re-reads the store
and increments through ``atomic_increment``.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from quota.analytics import AnalyticsAggregator
from quota.cache import UsageCache
from quota.clock import Clock, SystemClock
from quota.config import cfg, get_float
from quota.db import DB, Database
from quota.errors import StoreUnavailable
from quota.events import E, log_event
from quota.log import get_logger
from quota.plan_limits import is_unlimited, limit_for, normalize_plan
from quota.records import DEFAULT_CATEGORY, UsageLogEntry, UsageRecord, UsageStats
from quota.store import InMemoryUsageStore, SqlUsageStore, UsageStore
from quota.usage_logger import InMemoryUsageLogger, SqlUsageLogger, UsageLogger

logger = get_logger(__name__)

DEFAULT_STORE_TIMEOUT_SECONDS = 2.0

CONSUME_STATUS_CONSUMED = "consumed"
CONSUME_STATUS_QUOTA_EXCEEDED = "quota_exceeded"
CONSUME_STATUS_ACCOUNTING_FAILED = "accounting_failed"


@dataclass
class ConsumeResult:
    """Outcome of record_consumption. Truthy only when the question was counted."""

    status: str
    record: Optional[UsageRecord] = None
    error: Optional[Exception] = None

    def __bool__(self) -> bool:
        return self.status == CONSUME_STATUS_CONSUMED

    @property
    def consumed(self) -> bool:
        return self.status == CONSUME_STATUS_CONSUMED

    @property
    def quota_exceeded(self) -> bool:
        return self.status == CONSUME_STATUS_QUOTA_EXCEEDED

    @property
    def accounting_failed(self) -> bool:
        return self.status == CONSUME_STATUS_ACCOUNTING_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "consumed": self.consumed,
            "usage": self.record.to_dict() if self.record else None,
            "error": str(self.error) if self.error else "",
        }


class QuotaService:
    def __init__(
        self,
        store: UsageStore,
        usage_logger: UsageLogger,
        cache: Optional[UsageCache] = None,
        clock: Optional[Clock] = None,
        store_timeout: Optional[float] = None,
        max_workers: int = 8,
    ):
        self._store = store
        self._usage_logger = usage_logger
        self._cache = cache if cache is not None else UsageCache()
        self._clock = clock or SystemClock()
        if store_timeout is None:
            store_timeout = get_float("quota.store.timeout_seconds", DEFAULT_STORE_TIMEOUT_SECONDS, min_value=0.01, max_value=60.0)
        self._store_timeout = float(store_timeout)
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="quota-store")
        self._aggregator = AnalyticsAggregator(usage_logger, self._clock)

    @property
    def clock(self) -> Clock:
        return self._clock

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ─── store access ─────────────────────────────────────────────────────────
    def _call_store(self, operation: str, fn: Callable, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._store_timeout)
        except FutureTimeout as e:
            future.cancel()
            log_event(logger, E.STORE_TIMEOUT, level="warning", operation=operation, timeout=self._store_timeout)
            raise StoreUnavailable(
                f"{operation} timed out after {self._store_timeout}s",
                operation=operation,
                timed_out=True,
            ) from e
        except StoreUnavailable:
            raise
        except Exception as e:
            raise StoreUnavailable(str(e), operation=operation) from e

    def _new_record(self, user_id: str, plan: str, today: date, now: datetime) -> UsageRecord:
        return UsageRecord(
            user_id=user_id,
            questions_used=0,
            daily_limit=limit_for(plan),
            plan=normalize_plan(plan),
            period_start=today,
            last_reset_date=today,
            last_updated=now,
        )

    def _resolve(self, user_id: str, plan: str, use_cache: bool = True) -> UsageRecord:
        today = self._clock.today()
        if use_cache:
            cached = self._cache.get(user_id)
            if cached is not None and cached.last_reset_date >= today:
                return cached

        # 建档与重置均为条件写入，返回库中实际记录，不会覆盖并发请求已累加的次数
        record = self._call_store("load", self._store.load, user_id)
        now = self._clock.now()
        if record is None:
            fresh = self._new_record(user_id, plan, today, now)
            record = self._call_store("create", self._store.create_if_absent, user_id, fresh)
            log_event(logger, E.USAGE_CREATE, user_id=user_id, plan=record.plan, limit=record.daily_limit)
        elif record.last_reset_date < today:
            previous = record.questions_used
            fresh = self._new_record(user_id, plan, today, now)
            record = self._call_store("reset", self._store.reset_if_stale, user_id, fresh)
            log_event(
                logger,
                E.USAGE_RESET,
                user_id=user_id,
                plan=record.plan,
                previous_used=previous,
                day=today.isoformat(),
            )
        self._cache.put(user_id, record)
        return record

    # ─── public operations ────────────────────────────────────────────────────
    def get_usage(self, user_id: str, plan: str) -> UsageRecord:
        """Current usage record for ``user_id``, reset if it belongs to a past day.

        Fails open: if the store cannot be reached a zeroed record is returned
        (and not cached) so the feature keeps working while untracked.
        """
        try:
            return self._resolve(user_id, plan)
        except StoreUnavailable as e:
            log_event(
                logger,
                E.STORE_DEGRADED,
                level="warning",
                user_id=user_id,
                operation=e.operation,
                timed_out=e.timed_out,
                reason=e,
            )
            return self._new_record(user_id, plan, self._clock.today(), self._clock.now())

    def can_consume(self, user_id: str, plan: str) -> bool:
        record = self.get_usage(user_id, plan)
        allowed = record.has_remaining()
        log_event(
            logger,
            E.USAGE_CHECK,
            level="debug",
            user_id=user_id,
            used=record.questions_used,
            limit=record.daily_limit,
            allowed=allowed,
        )
        return allowed

    def record_consumption(
        self,
        user_id: str,
        plan: str,
        category: str = DEFAULT_CATEGORY,
        artifact_size: int = 0,
        question: str = "",
        session_id: str = "",
    ) -> ConsumeResult:
        try:
            record = self._resolve(user_id, plan, use_cache=False)
        except StoreUnavailable as e:
            log_event(logger, E.STORE_FAIL, level="error", user_id=user_id, operation=e.operation, reason=e)
            return ConsumeResult(CONSUME_STATUS_ACCOUNTING_FAILED, error=e)

        if not record.has_remaining():
            log_event(logger, E.USAGE_EXCEED, user_id=user_id, used=record.questions_used, limit=record.daily_limit)
            return ConsumeResult(CONSUME_STATUS_QUOTA_EXCEEDED, record=record)

        now = self._clock.now()
        try:
            count = self._call_store("atomic_increment", self._store.atomic_increment, user_id, 1, now)
        except StoreUnavailable as e:
            # 计数是否已落库未知，丢弃缓存让下次读取回源
            self._cache.invalidate(user_id)
            log_event(logger, E.STORE_FAIL, level="error", user_id=user_id, operation=e.operation, reason=e)
            return ConsumeResult(CONSUME_STATUS_ACCOUNTING_FAILED, record=record, error=e)

        updated = replace(record, questions_used=int(count), last_updated=now)
        self._cache.put(user_id, updated)

        if not updated.is_unlimited and updated.questions_used > int(updated.daily_limit):
            log_event(
                logger,
                E.USAGE_OVERSHOOT,
                level="warning",
                user_id=user_id,
                used=updated.questions_used,
                limit=updated.daily_limit,
            )
        log_event(logger, E.USAGE_CONSUME, user_id=user_id, used=updated.questions_used, limit=updated.daily_limit, category=category)

        self._append_log(
            UsageLogEntry(
                user_id=user_id,
                timestamp=now,
                plan=updated.plan,
                category=category,
                artifact_size=artifact_size,
                question=question,
                session_id=session_id,
            )
        )
        return ConsumeResult(CONSUME_STATUS_CONSUMED, record=updated)

    def _append_log(self, entry: UsageLogEntry) -> None:
        try:
            self._usage_logger.append(entry)
        except Exception as e:
            log_event(logger, E.LOG_FAIL, level="error", user_id=entry.user_id, entry_id=entry.id, reason=e)

    def get_usage_stats(self, user_id: str, plan: str) -> UsageStats:
        record = self.get_usage(user_id, plan)
        if is_unlimited(record.daily_limit):
            remaining = None
            percentage = 0.0
        else:
            limit = int(record.daily_limit)
            remaining = max(0, limit - record.questions_used)
            percentage = round(min(100.0, record.questions_used * 100.0 / limit), 2) if limit > 0 else 100.0
        return UsageStats(
            questions_remaining=remaining,
            questions_used=record.questions_used,
            daily_limit=record.daily_limit,
            is_unlimited=record.is_unlimited,
            percentage_used=percentage,
            resets_at=self._clock.next_reset_at(),
            plan=record.plan,
        )

    def get_recent_questions(self, user_id: str, limit: int = 10) -> List[UsageLogEntry]:
        try:
            return self._usage_logger.recent(user_id, limit)
        except Exception:
            logger.exception("读取最近提问记录失败: user_id=%s", user_id)
            return []

    def summarize_usage(self, user_id: str, window_days: int = 7) -> Optional[Dict[str, Any]]:
        try:
            return self._aggregator.summarize(user_id, window_days)
        except Exception:
            logger.exception("统计提问用量失败: user_id=%s", user_id)
            return None

    def clear_cache(self) -> None:
        size = self._cache.clear()
        log_event(logger, E.CACHE_CLEAR, entries=size)


def build_quota_service(db: Optional[Database] = None, backend: Optional[str] = None) -> QuotaService:
    """Wire a QuotaService from configuration (``quota.store.backend``)."""
    kind = str(backend or cfg.get("quota.store.backend", "sql") or "sql").strip().lower()
    if kind == "memory":
        return QuotaService(
            store=InMemoryUsageStore(),
            usage_logger=InMemoryUsageLogger(),
            cache=UsageCache.from_config(),
        )
    database = db or DB
    database.create_tables()
    return QuotaService(
        store=SqlUsageStore(database),
        usage_logger=SqlUsageLogger(database),
        cache=UsageCache.from_config(),
    )
