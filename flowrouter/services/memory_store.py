"""Bounded in-process key/value store used while Redis is unavailable."""

import time
from collections import OrderedDict
from typing import Any, Callable, Optional

from flowrouter.logging_config import get_logger

logger = get_logger("memory_store")


class MemoryStore:
    """TTL store with the subset of Redis semantics the router needs.

    Values are consistent within one process only. When ``max_entries`` is
    reached the oldest written entry is evicted first.
    """

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[str, tuple[Any, Optional[float]]]" = OrderedDict()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def _evict(self) -> None:
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)
            self.evictions += 1

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if self._expired(expires_at, now)]
        for key in expired:
            self._data.pop(key, None)
        return len(expired)

    def get(self, key: str) -> Any:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._expired(expires_at, self._clock()):
            self._data.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data.pop(key, None)
        self._data[key] = (value, expires_at)
        self._evict()

    def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        if self.get(key) is not None:
            return False
        self.set(key, value, ttl)
        return True

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def incr(self, key: str, ttl: float) -> int:
        """Increment a counter; the TTL is fixed when the counter is created."""
        now = self._clock()
        item = self._data.get(key)
        if item is None or self._expired(item[1], now):
            self._data.pop(key, None)
            self._data[key] = (1, now + ttl)
            if len(self._data) > self.max_entries:
                self.purge_expired()
                self._evict()
            return 1
        count = int(item[0]) + 1
        self._data[key] = (count, item[1])
        return count

    def ttl(self, key: str) -> Optional[float]:
        item = self._data.get(key)
        if item is None or item[1] is None:
            return None
        return max(0.0, item[1] - self._clock())
