import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, Optional

from quota.plan_limits import Limit, is_unlimited

QUESTION_MAX_LENGTH = 500
DEFAULT_CATEGORY = "studio_hub"


def _format_dt(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


@dataclass
class UsageRecord:
    user_id: str
    questions_used: int
    daily_limit: Limit
    plan: str
    period_start: date
    last_reset_date: date
    last_updated: datetime

    def copy(self) -> "UsageRecord":
        return replace(self)

    @property
    def is_unlimited(self) -> bool:
        return is_unlimited(self.daily_limit)

    def has_remaining(self) -> bool:
        if self.is_unlimited:
            return True
        return self.questions_used < int(self.daily_limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "questions_used": int(self.questions_used),
            "daily_limit": None if self.is_unlimited else int(self.daily_limit),
            "is_unlimited": self.is_unlimited,
            "plan": self.plan,
            "period_start": _format_dt(self.period_start),
            "last_reset_date": _format_dt(self.last_reset_date),
            "last_updated": _format_dt(self.last_updated),
        }


def new_session_id(now: Optional[datetime] = None) -> str:
    stamp = int((now or datetime.now()).timestamp() * 1000)
    return f"session_{stamp}_{uuid.uuid4().hex[:9]}"


@dataclass
class UsageLogEntry:
    user_id: str
    timestamp: datetime
    plan: str
    category: str = DEFAULT_CATEGORY
    artifact_size: int = 0
    question: str = ""
    session_id: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.question = str(self.question or "")[:QUESTION_MAX_LENGTH]
        self.category = str(self.category or "").strip()[:120] or DEFAULT_CATEGORY
        self.artifact_size = max(0, int(self.artifact_size or 0))
        if not self.session_id:
            self.session_id = new_session_id(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "timestamp": _format_dt(self.timestamp),
            "plan": self.plan,
            "category": self.category,
            "artifact_size": self.artifact_size,
            "question": self.question,
            "session_id": self.session_id,
        }


@dataclass
class UsageStats:
    questions_remaining: Optional[int]
    questions_used: int
    daily_limit: Limit
    is_unlimited: bool
    percentage_used: float
    resets_at: datetime
    plan: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions_remaining": self.questions_remaining,
            "questions_used": self.questions_used,
            "daily_limit": None if self.is_unlimited else int(self.daily_limit),
            "is_unlimited": self.is_unlimited,
            "percentage_used": self.percentage_used,
            "resets_at": _format_dt(self.resets_at),
            "plan": self.plan,
        }
