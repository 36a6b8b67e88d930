# =============================================================================
# agent/session_lock.py  —  Per-Session Turn Lock
# =============================================================================
#
# Turns within one session must run strictly one after another (turn
# numbering, baseline memory and the competitor check all read what the
# previous turn wrote).  Turns in different sessions run concurrently.
#
# One asyncio.Lock per session id.  asyncio.Lock wakes waiters in FIFO
# order, so queued turns run in submission order.  The entry is dropped
# when the last holder/waiter leaves, so idle sessions cost nothing.
#
# Usage:
#     async with locks.hold(session_id) as wait_ms:
#         ...   # wait_ms = how long this turn queued behind earlier ones
# =============================================================================

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator


@dataclass
class _SessionEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionLocks:
    def __init__(self) -> None:
        self._entries: dict[str, _SessionEntry] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[int]:
        entry = self._entries.setdefault(session_id, _SessionEntry())
        entry.users += 1
        started = time.monotonic()
        try:
            async with entry.lock:
                yield int(round((time.monotonic() - started) * 1000))
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(session_id) is entry:
                del self._entries[session_id]

    def active_sessions(self) -> int:
        return len(self._entries)
