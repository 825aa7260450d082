"""In-process cache of recently read usage records.

Thread-safe via threading.Lock. Purely a latency optimization: the quota
service re-checks day staleness on every hit and always increments through
the store, so a lost or stale entry can never grant extra questions.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from quota.config import get_float, get_int
from quota.records import UsageRecord

DEFAULT_TTL_SECONDS = 60.0
DEFAULT_MAX_ENTRIES = 10000


class UsageCache:
    _SWEEP_INTERVAL = 100  # sweep expired entries every N puts

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._timer = timer
        self._entries: "OrderedDict[str, Tuple[float, UsageRecord]]" = OrderedDict()
        self._lock = threading.Lock()
        self._put_count = 0

    @classmethod
    def from_config(cls) -> "UsageCache":
        return cls(
            ttl_seconds=get_float("quota.cache.ttl_seconds", DEFAULT_TTL_SECONDS, max_value=86400.0),
            max_entries=get_int("quota.cache.max_entries", DEFAULT_MAX_ENTRIES, min_value=1),
        )

    def get(self, user_id: str) -> Optional[UsageRecord]:
        now = self._timer()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            expires_at, record = entry
            if expires_at <= now:
                del self._entries[user_id]
                return None
            return record.copy()

    def put(self, user_id: str, record: UsageRecord) -> None:
        now = self._timer()
        with self._lock:
            self._entries[user_id] = (now + self._ttl_seconds, record.copy())
            self._entries.move_to_end(user_id)

            self._put_count += 1
            if self._put_count % self._SWEEP_INTERVAL == 0:
                self._sweep_expired(now)

            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            return size

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _sweep_expired(self, now: float) -> None:
        """Drop expired entries. Must hold _lock."""
        stale = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in stale:
            del self._entries[key]
