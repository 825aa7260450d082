import threading
from datetime import datetime, timezone
from typing import List, Protocol

from sqlalchemy.exc import SQLAlchemyError

from quota.db import Database
from quota.errors import LoggingFailure
from quota.models.ai_assistant_log import AIAssistantLog
from quota.records import UsageLogEntry


class UsageLogger(Protocol):
    def append(self, entry: UsageLogEntry) -> None:
        ...

    def recent(self, user_id: str, limit: int = 10) -> List[UsageLogEntry]:
        """Newest entries first."""
        ...

    def entries_since(self, user_id: str, since: datetime) -> List[UsageLogEntry]:
        ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryUsageLogger:
    def __init__(self):
        self._entries: List[UsageLogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: UsageLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(self, user_id: str, limit: int = 10) -> List[UsageLogEntry]:
        with self._lock:
            rows = [x for x in self._entries if x.user_id == user_id]
        rows.sort(key=lambda x: _as_utc(x.timestamp), reverse=True)
        return rows[: max(0, int(limit))]

    def entries_since(self, user_id: str, since: datetime) -> List[UsageLogEntry]:
        cutoff = _as_utc(since)
        with self._lock:
            rows = [x for x in self._entries if x.user_id == user_id and _as_utc(x.timestamp) >= cutoff]
        rows.sort(key=lambda x: _as_utc(x.timestamp), reverse=True)
        return rows

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _row_to_entry(row: AIAssistantLog) -> UsageLogEntry:
    return UsageLogEntry(
        id=row.id,
        user_id=row.user_id,
        timestamp=_as_utc(row.created_at),
        plan=row.plan or "",
        category=row.category or "",
        artifact_size=int(row.artifact_size or 0),
        question=row.question or "",
        session_id=row.session_id or "",
    )


class SqlUsageLogger:
    """Appends audit entries to the ``ai_assistant_logs`` table."""

    MAX_RECENT = 200

    def __init__(self, db: Database):
        self._db = db

    def append(self, entry: UsageLogEntry) -> None:
        session = self._db.get_session()
        try:
            session.add(
                AIAssistantLog(
                    id=entry.id,
                    user_id=entry.user_id,
                    plan=entry.plan,
                    category=entry.category,
                    artifact_size=entry.artifact_size,
                    question=entry.question,
                    session_id=entry.session_id,
                    created_at=_as_utc(entry.timestamp),
                )
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise LoggingFailure(str(e)) from e
        finally:
            session.close()

    def recent(self, user_id: str, limit: int = 10) -> List[UsageLogEntry]:
        size = max(1, min(int(limit or 10), self.MAX_RECENT))
        session = self._db.get_session()
        try:
            rows = (
                session.query(AIAssistantLog)
                .filter(AIAssistantLog.user_id == user_id)
                .order_by(AIAssistantLog.created_at.desc())
                .limit(size)
                .all()
            )
            return [_row_to_entry(x) for x in rows]
        except SQLAlchemyError as e:
            raise LoggingFailure(str(e)) from e
        finally:
            session.close()

    def entries_since(self, user_id: str, since: datetime) -> List[UsageLogEntry]:
        session = self._db.get_session()
        try:
            rows = (
                session.query(AIAssistantLog)
                .filter(
                    AIAssistantLog.user_id == user_id,
                    AIAssistantLog.created_at >= _as_utc(since),
                )
                .order_by(AIAssistantLog.created_at.desc())
                .limit(50000)
                .all()
            )
            return [_row_to_entry(x) for x in rows]
        except SQLAlchemyError as e:
            raise LoggingFailure(str(e)) from e
        finally:
            session.close()
