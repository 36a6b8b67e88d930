# =============================================================================
# agent/idempotency.py  —  Idempotency Cache for Turns
# =============================================================================
#
# A client may tag a turn with an idempotency key (e.g. a retried HTTP
# request).  Within the TTL window, a second call with the same key does
# NOT run the turn again: it awaits the first call's task, in flight or
# finished, and gets the identical result.
#
# Only successful results are kept.  A failed operation removes its entry
# so the next call with that key runs fresh.
# =============================================================================

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from core.config import IDEMPOTENCY_TTL_MS


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Entry:
    expires_at_ms: int
    task: asyncio.Future


class IdempotencyCache:
    def __init__(self, ttl_ms: int = IDEMPOTENCY_TTL_MS, clock_ms: Callable[[], int] = _now_ms):
        self.ttl_ms = ttl_ms
        self._clock_ms = clock_ms
        self._entries: dict[str, _Entry] = {}

    def _prune(self) -> None:
        now = self._clock_ms()
        for key in [key for key, entry in self._entries.items() if entry.expires_at_ms <= now]:
            del self._entries[key]

    async def run(self, key: str, operation: Callable[[], Awaitable[Any]]) -> tuple[Any, bool]:
        """Run `operation` once per key; returns (value, reused)."""
        self._prune()
        existing: Optional[_Entry] = self._entries.get(key)
        if existing is not None:
            return await asyncio.shield(existing.task), True

        task = asyncio.ensure_future(operation())
        entry = _Entry(expires_at_ms=self._clock_ms() + self.ttl_ms, task=task)
        self._entries[key] = entry
        try:
            return await asyncio.shield(task), False
        except Exception:
            if self._entries.get(key) is entry:
                del self._entries[key]
            raise

    def __len__(self) -> int:
        return len(self._entries)
