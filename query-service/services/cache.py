import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    result: Any
    timestamp: float


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float


class QueryCache:
    """
    Process-local cache for read-query results.

    Entries expire ``ttl_seconds`` after they are written. Once more than
    ``max_entries`` are stored the oldest written entry is evicted; reads do
    not refresh an entry's position.
    """

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 100, schema_prefix: int = 100, clock: Clock = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.schema_prefix = schema_prefix
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def make_key(self, schema: str, user_request: str) -> str:
        return f"cache:{schema[:self.schema_prefix]}:{user_request}"

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self.clock() - entry.timestamp > self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.result

    def set(self, key: str, result: Any) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(result=result, timestamp=self.clock())
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._entries), "maxSize": self.max_entries, "ttlSeconds": self.ttl_seconds}


class RateLimiter:
    """
    Fixed-window request counter per caller identity.

    A caller's window opens with its first request; within the window at
    most ``max_requests`` are admitted.
    """

    def __init__(self, max_requests: int = 10, window_seconds: float = 60, clock: Clock = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(caller_id: str) -> str:
        return f"rate_limit:{caller_id}"

    def check(self, key: str) -> bool:
        """Count a request against ``key``; returns False if it must be rejected."""
        now = self.clock()
        with self._lock:
            record = self._records.get(key)
            if record is None or now > record.reset_time:
                self._records[key] = RateLimitRecord(count=1, reset_time=now + self.window_seconds)
                return True

            if record.count >= self.max_requests:
                return False

            record.count += 1
            return True
