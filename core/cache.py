# =============================================================================
# core/cache.py  —  Short-TTL Source Cache
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Memoizes source results so that one turn (and nearby turns) never call
#   the same provider twice for the same location set and calendar day.
#
# DESIGN:
#   - One TtlCache instance per process, passed into the SourceFetcher.
#     No module-level dict, so tests get a clean cache each time.
#   - Expired entries are pruned lazily on read.
#   - Errors are never cached; a miss always re-fetches.
#   - The clock is injectable (milliseconds) so TTL behavior is testable.
# =============================================================================

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CacheHit:
    value: Any
    fetched_at_ms: int


@dataclass
class _Entry:
    value: Any
    fetched_at_ms: int
    expires_at_ms: int


class TtlCache:
    def __init__(self, clock_ms: Callable[[], int] = _now_ms):
        self._clock_ms = clock_ms
        self._entries: dict[str, _Entry] = {}

    def read(self, key: str) -> Optional[CacheHit]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at_ms < self._clock_ms():
            del self._entries[key]
            return None
        return CacheHit(value=entry.value, fetched_at_ms=entry.fetched_at_ms)

    def write(self, key: str, value: Any, ttl_ms: int) -> None:
        now = self._clock_ms()
        self._entries[key] = _Entry(value=value, fetched_at_ms=now, expires_at_ms=now + ttl_ms)

    def age_seconds(self, hit: CacheHit) -> int:
        return max(0, (self._clock_ms() - hit.fetched_at_ms) // 1000)

    def __len__(self) -> int:
        return len(self._entries)
