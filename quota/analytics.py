from collections import defaultdict
from datetime import datetime, time, timedelta
from statistics import mean
from typing import Any, Dict, Iterable, List

from quota.clock import Clock
from quota.records import UsageLogEntry
from quota.usage_logger import UsageLogger

MAX_WINDOW_DAYS = 90


def summarize_entries(entries: Iterable[UsageLogEntry], clock: Clock, window_days: int = 7) -> Dict[str, Any]:
    """Fold log entries into per-day and per-category counts.

    Only entries falling inside the last ``window_days`` calendar days
    (today included, canonical time zone) are counted.
    """
    window = max(1, min(int(window_days or 7), MAX_WINDOW_DAYS))
    today = clock.today()
    first_day = today - timedelta(days=window - 1)

    daily_map: Dict[str, int] = {}
    for offset in range(window):
        daily_map[(first_day + timedelta(days=offset)).isoformat()] = 0
    category_counter: Dict[str, int] = defaultdict(int)
    sizes: List[int] = []

    for entry in entries:
        day = clock.day_boundary(entry.timestamp)
        if day < first_day or day > today:
            continue
        daily_map[day.isoformat()] += 1
        category_counter[entry.category or "(unknown)"] += 1
        sizes.append(int(entry.artifact_size or 0))

    total = len(sizes)
    return {
        "window_days": window,
        "total_count": total,
        "per_day_counts": daily_map,
        "per_category_counts": dict(sorted(category_counter.items(), key=lambda x: x[1], reverse=True)),
        "average_artifact_size": round(mean(sizes), 2) if sizes else 0,
        "average_per_day": round(total / float(window), 2),
    }


class AnalyticsAggregator:
    """Read-only reporting over the usage log. Never touches quota state."""

    def __init__(self, usage_logger: UsageLogger, clock: Clock):
        self._usage_logger = usage_logger
        self._clock = clock

    def window_start(self, window_days: int) -> datetime:
        window = max(1, min(int(window_days or 7), MAX_WINDOW_DAYS))
        first_day = self._clock.today() - timedelta(days=window - 1)
        return datetime.combine(first_day, time.min, tzinfo=self._clock.tz)

    def summarize(self, user_id: str, window_days: int = 7) -> Dict[str, Any]:
        entries = self._usage_logger.entries_since(user_id, self.window_start(window_days))
        data = summarize_entries(entries, self._clock, window_days=window_days)
        data["user_id"] = user_id
        return data
