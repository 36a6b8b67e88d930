# =============================================================================
# agent/events.py  —  Structured Event Emitter
# =============================================================================
#
# Every notable thing a turn does (source fetched, fallback applied, lock
# waited, turn completed, ...) becomes ONE JSON line through the standard
# logging module:
#
#   {"ts": "...", "level": "info", "event": "chat.turn.completed",
#    "schema_version": "1.0.0", "trace_id": "...", "session_id": "...",
#    "turn_index": 2, ...fields}
#
# Keys that may carry PII (address, email, phone, content_text,
# raw_review_text) are dropped before anything is written.
#
# Emission must never fail a turn: errors are logged and swallowed.
# Tests pass a `sink` to capture events instead of parsing log output.
# =============================================================================

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

SCHEMA_VERSION = "1.0.0"
DISALLOWED_KEYS = frozenset({"address", "email", "phone", "content_text", "raw_review_text"})

_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}

logger = logging.getLogger("ops_advisor.events")


def sanitize_event_payload(payload: dict[str, Any]) -> dict[str, Any]:
    sanitized = {key: value for key, value in payload.items() if key not in DISALLOWED_KEYS}
    sanitized["schema_version"] = SCHEMA_VERSION
    return sanitized


class EventEmitter:
    """Writes structured events to the log and, optionally, to a sink."""

    def __init__(self, sink: Optional[Callable[[dict], None]] = None):
        self.sink = sink

    def emit(
        self,
        event: str,
        level: str = "info",
        trace_id: Optional[str] = None,
        session_id: Optional[str] = None,
        turn_index: Optional[int] = None,
        **fields: Any,
    ) -> None:
        try:
            record = {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "event": event,
                "trace_id": trace_id,
                "session_id": session_id,
                "turn_index": turn_index,
            }
            record.update(fields)
            record = sanitize_event_payload(record)
            logger.log(_LEVELS.get(level, logging.INFO), json.dumps(record, default=str, separators=(",", ":")))
            if self.sink is not None:
                self.sink(record)
        except Exception:
            logger.exception("Failed to emit event %s", event)
