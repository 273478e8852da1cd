import os
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional

FOOD_OPTIONS_CACHE_TTL_SECONDS = int(os.getenv("FOOD_OPTIONS_CACHE_TTL_SECONDS", "300"))
FOOD_OPTIONS_CACHE_MAX_ENTRIES = int(os.getenv("FOOD_OPTIONS_CACHE_MAX_ENTRIES", "256"))


class ResponseCache:
    """In-process TTL cache with a capacity bound.

    Entries expire by wall clock. When full, the oldest insertion is evicted.
    A ttl of 0 or less disables the cache.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 256,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[Hashable, tuple[float, Any]]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[Any]:
        if self.ttl_seconds <= 0:
            return None
        entry = self._entries.get(key)
        if not entry:
            return None
        stored_at, value = entry
        if (self._clock() - stored_at) > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries.pop(key, None)
        self._entries[key] = (self._clock(), value)
        self._purge_expired()
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (stored_at, _) in self._entries.items() if (now - stored_at) > self.ttl_seconds]
        for key in expired:
            self._entries.pop(key, None)


def build_food_options_cache() -> ResponseCache:
    return ResponseCache(
        ttl_seconds=FOOD_OPTIONS_CACHE_TTL_SECONDS,
        max_entries=FOOD_OPTIONS_CACHE_MAX_ENTRIES,
    )
