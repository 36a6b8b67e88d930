# =============================================================================
# agent/store.py  —  In-Memory Session Store
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Append-only persistence for chat sessions: sessions, messages, tool
#   calls, recommendations, fallbacks, review-signal runs, baseline memory
#   events and competitor checks.
#
#   The read side is deliberately small.  A turn only ever needs:
#     next_turn_index(session)          highest stored turn + 1
#     memory_snapshot(session)          latest baseline event per key
#     competitor_check(session)         the one allowed competitor lookup
#
#   Everything lives in RAM (like ADK's InMemorySessionService): good for a
#   single process and tests, gone on restart.  Methods are async so a
#   database-backed store can replace this one without touching callers.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from core.baseline import MemoryEvent
from core.models import Recommendation, ReviewSignals


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    session_id: str
    distinct_id: Optional[str] = None
    status: str = "active"             # active | ended | error
    card_type: str = "none"
    location_count: int = 0
    had_fallback: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None


@dataclass
class MessageRecord:
    session_id: str
    turn_index: int
    role: str                          # user | assistant
    content_text: str
    card_type: Optional[str] = None


@dataclass
class ToolCallRecord:
    session_id: str
    turn_index: int
    tool_name: str
    source_name: str
    status: str
    latency_ms: int
    cache_hit: Optional[bool] = None
    freshness_seconds: Optional[int] = None
    error_code: Optional[str] = None


@dataclass
class FallbackRecord:
    session_id: str
    turn_index: int
    fallback_type: str                 # partial_data | all_sources_down | timeout | validation
    reason: str
    sources_down: list[str]
    response_text: str


@dataclass
class ReviewSignalRun:
    session_id: str
    turn_index: int
    entity_type: str                   # own_location | competitor
    location_label: Optional[str]
    signal: ReviewSignals


@dataclass
class CompetitorCheck:
    session_id: str
    turn_index: int
    query: str
    status: str                        # resolved | not_found
    place_id: Optional[str] = None
    resolved_name: Optional[str] = None


class InMemoryStore:
    def __init__(self) -> None:
        self.sessions: dict[str, SessionRecord] = {}
        self.messages: list[MessageRecord] = []
        self.tool_calls: list[ToolCallRecord] = []
        self.recommendations: list[tuple[str, int, Recommendation]] = []
        self.fallbacks: list[FallbackRecord] = []
        self.review_signal_runs: list[ReviewSignalRun] = []
        self.memory_events: list[tuple[str, int, MemoryEvent]] = []
        self.competitor_checks: list[CompetitorCheck] = []

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    async def ensure_session(self, session_id: str, distinct_id: Optional[str] = None) -> SessionRecord:
        record = self.sessions.get(session_id)
        if record is None:
            record = SessionRecord(session_id=session_id, distinct_id=distinct_id)
            self.sessions[session_id] = record
        return record

    async def update_session(self, session_id: str, **changes) -> None:
        record = await self.ensure_session(session_id)
        for key, value in changes.items():
            setattr(record, key, value)

    async def end_session(self, session_id: str, end_reason: str) -> SessionRecord:
        record = await self.ensure_session(session_id)
        record.status = "error" if end_reason == "error" else "ended"
        record.end_reason = end_reason
        record.ended_at = _utcnow()
        return record

    async def next_turn_index(self, session_id: str) -> int:
        turns = [m.turn_index for m in self.messages if m.session_id == session_id]
        return max(turns, default=0) + 1

    # -------------------------------------------------------------------------
    # Append-only writes
    # -------------------------------------------------------------------------
    async def append_message(self, message: MessageRecord) -> None:
        self.messages.append(message)

    async def record_tool_calls(self, calls: list[ToolCallRecord]) -> None:
        self.tool_calls.extend(calls)

    async def record_recommendations(
        self, session_id: str, turn_index: int, recommendations: list[Recommendation]
    ) -> None:
        self.recommendations.extend((session_id, turn_index, rec) for rec in recommendations)

    async def record_fallback(self, fallback: FallbackRecord) -> None:
        self.fallbacks.append(fallback)

    async def record_review_signal_runs(self, runs: list[ReviewSignalRun]) -> None:
        self.review_signal_runs.extend(runs)

    # -------------------------------------------------------------------------
    # Baseline memory
    # -------------------------------------------------------------------------
    async def record_memory_event(self, session_id: str, turn_index: int, event: MemoryEvent) -> None:
        self.memory_events.append((session_id, turn_index, event))

    async def memory_snapshot(self, session_id: str) -> dict[str, MemoryEvent]:
        """Latest event per memory key for one session."""
        latest: dict[str, MemoryEvent] = {}
        for stored_session, _, event in self.memory_events:
            if stored_session == session_id:
                latest[event.memory_key] = event
        return latest

    # -------------------------------------------------------------------------
    # Competitor checks (one per session)
    # -------------------------------------------------------------------------
    async def competitor_check(self, session_id: str) -> Optional[CompetitorCheck]:
        return next((c for c in self.competitor_checks if c.session_id == session_id), None)

    async def record_competitor_check(self, check: CompetitorCheck) -> None:
        self.competitor_checks.append(check)
