# =============================================================================
# core/circuit_breaker.py  —  Per-Turn Circuit Breaker
# =============================================================================
#
# A turn's time budget cannot absorb repeated retries against a misbehaving
# source.  The breaker counts failures per source and, once the threshold is
# reached (default: 1), blocks that source for the rest of the turn.
#
# A new breaker is constructed for every turn, so failures never leak across
# turns: the next turn gets a clean shot at every source.
# =============================================================================

from dataclasses import dataclass

from core.config import CIRCUIT_BREAKER_THRESHOLD


@dataclass(frozen=True)
class BreakerEvent:
    """Recorded when a source transitions to open."""

    source_name: str
    failure_count: int
    state: str = "open"


class TurnCircuitBreaker:
    def __init__(self, threshold: int = CIRCUIT_BREAKER_THRESHOLD):
        self.threshold = threshold
        self._failure_counts: dict[str, int] = {}
        self._open_sources: set[str] = set()
        self._events: list[BreakerEvent] = []

    def can_run(self, source_name: str) -> bool:
        return source_name not in self._open_sources

    def mark_success(self, source_name: str) -> None:
        self._failure_counts[source_name] = 0

    def mark_failure(self, source_name: str) -> None:
        count = self._failure_counts.get(source_name, 0) + 1
        self._failure_counts[source_name] = count
        if count >= self.threshold and source_name not in self._open_sources:
            self._open_sources.add(source_name)
            self._events.append(BreakerEvent(source_name=source_name, failure_count=count))

    def events(self) -> list[BreakerEvent]:
        return list(self._events)
