"""In-process TTL cache for upstream API responses.

Each client constructs its own cache; nothing is shared at module level, so
a fresh process always starts cold and tests can drive expiry through the
injected clock.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Generic, Hashable, TypeVar

from ..logging import logger
from .datetime_utils import Clock, now_utc

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Bounded mapping whose entries expire ``ttl_seconds`` after being set.

    Expired entries are dropped lazily on read. When ``max_entries`` is
    exceeded the least recently written entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 256,
        *,
        clock: Clock = now_utc,
        name: str = "ttl_cache",
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self.name = name
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[datetime, V]] = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> V | Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            logger.debug("cache_expired", cache=self.name, key=str(key))
            return default
        return value

    def set(self, key: Hashable, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = (self._clock() + self.ttl, value)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("cache_evicted", cache=self.name, key=str(evicted))

    def pop(self, key: Hashable, default: Any = None) -> V | Any:
        entry = self._entries.pop(key, None)
        if entry is None:
            return default
        return entry[1]

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at, _ in self._entries.values() if now < expires_at)


_MISSING = object()
