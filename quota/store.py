"""Usage record stores.

``UsageStore`` is the contract the quota service depends on. The store is
the only synchronization point for writes:

* ``atomic_increment`` must not lose updates when several callers increment
  the same user at once;
* ``create_if_absent`` and ``reset_if_stale`` are conditional writes, so a
  caller acting on an out-of-date read can never wipe a count another caller
  already added. Both return the record the store actually holds.

Stores never read the wall clock; timestamps come from the caller.
"""

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quota.db import Database
from quota.errors import StoreUnavailable, UsageRecordMissing
from quota.models.ai_assistant_usage import AIAssistantUsage
from quota.plan_limits import UNLIMITED, is_unlimited
from quota.records import UsageRecord


class UsageStore(Protocol):
    def load(self, user_id: str) -> Optional[UsageRecord]:
        """Return the stored record, or None if the user has none yet."""
        ...

    def save(self, user_id: str, record: UsageRecord) -> None:
        """Overwrite the full record unconditionally (seeding, admin repair)."""
        ...

    def create_if_absent(self, user_id: str, record: UsageRecord) -> UsageRecord:
        """Insert ``record`` unless the user already has one; return the stored record."""
        ...

    def reset_if_stale(self, user_id: str, record: UsageRecord) -> UsageRecord:
        """Replace the stored record only if its last_reset_date precedes
        ``record.last_reset_date``; return the stored record either way."""
        ...

    def atomic_increment(self, user_id: str, amount: int = 1, updated_at: Optional[datetime] = None) -> int:
        """Add ``amount`` to questions_used and return the new count.

        Raises:
            UsageRecordMissing: the user has no saved record.
        """
        ...


class InMemoryUsageStore:
    """Process-local store. Every write is serialized by one lock."""

    def __init__(self):
        self._records: Dict[str, UsageRecord] = {}
        self._lock = threading.Lock()

    def load(self, user_id: str) -> Optional[UsageRecord]:
        with self._lock:
            record = self._records.get(user_id)
            return record.copy() if record else None

    def save(self, user_id: str, record: UsageRecord) -> None:
        with self._lock:
            self._records[user_id] = record.copy()

    def create_if_absent(self, user_id: str, record: UsageRecord) -> UsageRecord:
        with self._lock:
            return self._records.setdefault(user_id, record.copy()).copy()

    def reset_if_stale(self, user_id: str, record: UsageRecord) -> UsageRecord:
        with self._lock:
            current = self._records.get(user_id)
            if current is None or current.last_reset_date < record.last_reset_date:
                current = record.copy()
                self._records[user_id] = current
            return current.copy()

    def atomic_increment(self, user_id: str, amount: int = 1, updated_at: Optional[datetime] = None) -> int:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                raise UsageRecordMissing(user_id)
            record.questions_used = int(record.questions_used) + int(amount)
            if updated_at is not None:
                record.last_updated = updated_at
            return record.questions_used


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row: AIAssistantUsage) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        questions_used=max(0, int(row.questions_used or 0)),
        daily_limit=UNLIMITED if row.daily_limit is None else int(row.daily_limit),
        plan=row.plan or "",
        period_start=row.period_start,
        last_reset_date=row.last_reset_date,
        last_updated=_as_utc(row.last_updated),
    )


def _record_columns(record: UsageRecord) -> Dict:
    return {
        "questions_used": max(0, int(record.questions_used)),
        "daily_limit": None if is_unlimited(record.daily_limit) else int(record.daily_limit),
        "plan": record.plan,
        "period_start": record.period_start,
        "last_reset_date": record.last_reset_date,
        "last_updated": _as_utc(record.last_updated),
    }


class SqlUsageStore:
    """SQLAlchemy-backed store over the ``ai_assistant_usage`` table.

    The unlimited sentinel is persisted as a NULL ``daily_limit``.
    """

    def __init__(self, db: Database):
        self._db = db

    def load(self, user_id: str) -> Optional[UsageRecord]:
        session = self._db.get_session()
        try:
            row = session.get(AIAssistantUsage, user_id)
            return _row_to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e), operation="load") from e
        finally:
            session.close()

    def _reload(self, user_id: str, operation: str) -> UsageRecord:
        record = self.load(user_id)
        if record is None:
            raise StoreUnavailable(f"usage record for {user_id} vanished", operation=operation)
        return record

    def save(self, user_id: str, record: UsageRecord) -> None:
        session = self._db.get_session()
        try:
            session.merge(AIAssistantUsage(user_id=user_id, **_record_columns(record)))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(str(e), operation="save") from e
        finally:
            session.close()

    def create_if_absent(self, user_id: str, record: UsageRecord) -> UsageRecord:
        session = self._db.get_session()
        try:
            session.add(AIAssistantUsage(user_id=user_id, **_record_columns(record)))
            session.commit()
        except IntegrityError:
            # 并发首次访问：另一请求已建档，以库中记录为准
            session.rollback()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(str(e), operation="create") from e
        finally:
            session.close()
        return self._reload(user_id, "create")

    def reset_if_stale(self, user_id: str, record: UsageRecord) -> UsageRecord:
        session = self._db.get_session()
        try:
            result = session.execute(
                update(AIAssistantUsage)
                .where(AIAssistantUsage.user_id == user_id)
                .where(AIAssistantUsage.last_reset_date < record.last_reset_date)
                .values(**_record_columns(record))
            )
            session.commit()
            updated = result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(str(e), operation="reset") from e
        finally:
            session.close()
        if updated == 0 and self.load(user_id) is None:
            return self.create_if_absent(user_id, record)
        return self._reload(user_id, "reset")

    def atomic_increment(self, user_id: str, amount: int = 1, updated_at: Optional[datetime] = None) -> int:
        values = {"questions_used": AIAssistantUsage.questions_used + int(amount)}
        if updated_at is not None:
            values["last_updated"] = _as_utc(updated_at)
        session = self._db.get_session()
        try:
            # 单条 UPDATE 自增，由数据库行锁串行化并发写入
            result = session.execute(
                update(AIAssistantUsage).where(AIAssistantUsage.user_id == user_id).values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                raise UsageRecordMissing(user_id)
            count = session.execute(
                select(AIAssistantUsage.questions_used).where(AIAssistantUsage.user_id == user_id)
            ).scalar_one()
            session.commit()
            return int(count)
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(str(e), operation="atomic_increment") from e
        finally:
            session.close()
