# =============================================================================
# tools/mcp_server.py  —  FastMCP Server (the inbound turn RPC)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Exposes the ops advisor to any MCP client (a chat UI, another agent,
#   an IDE) as three tools:
#
#     run_turn           run one chat turn and return the full TurnResult
#     end_session        close a session with a reason
#     resolve_locations  check free-text inputs against NYC places only
#
# HOW IT WORKS (the flow):
#   1. The client calls a tool by name via MCP (e.g., "run_turn")
#   2. FastMCP routes the call to the decorated coroutine below
#   3. The coroutine hands it to the process-wide TurnOrchestrator
#   4. The dataclass result is flattened with asdict() and returned
#
# CONTEXT BUDGET DISCIPLINE:
#   Every tool returns a DICT.  Review evidence inside recommendations is
#   already capped (top references, 160-char excerpts) by core/, so the
#   turn result stays bounded no matter how many reviews a place has.
#
# RUNNING THIS SERVER:
#     python -m tools.mcp_server        (stdio transport)
# =============================================================================

import json
import logging
import sys
from dataclasses import asdict
from typing import Optional

from dotenv import load_dotenv

# The advisor reads settings (AGENT_MODE, API keys) from the environment,
# so .env must be loaded before it is created.
load_dotenv()

from fastmcp import FastMCP

from core.models import CARD_TYPES, BaselineContext, TurnRequest

from agent.orchestrator import END_REASONS, TurnOrchestrator
from agent.ops_agent import create_advisor

# =============================================================================
# Logging Setup
# =============================================================================
# We log to STDERR because the MCP stdio transport owns STDOUT.  If we
# logged to stdout, our log lines would corrupt the MCP JSON stream.
#
# ANSI COLOR CODES:
#     - CYAN for incoming requests (tool name + parameters)
#     - GREEN for response JSON
#     - YELLOW for intermediate status/progress messages
# =============================================================================

_CYAN = "\033[36m"     # Requests (tool calls with params)
_GREEN = "\033[32m"    # Responses (JSON output)
_YELLOW = "\033[33m"   # Status/progress messages
_RESET = "\033[0m"     # Reset to default terminal color

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [MCP] %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)


def _log_request(tool_name: str, **params) -> None:
    """Log an incoming tool call with its parameters in CYAN."""
    param_str = ", ".join(f"{k}={v!r}" for k, v in params.items())
    logging.info(f"{_CYAN}{tool_name} called with: {param_str}{_RESET}")


def _log_status(message: str) -> None:
    """Log an intermediate status message in YELLOW."""
    logging.info(f"{_YELLOW}  → {message}{_RESET}")


def _log_response(tool_name: str, result: dict) -> dict:
    """Log the tool response as compact JSON in GREEN, then return it."""
    logging.info(
        f"{_GREEN}  ← {tool_name} response: {json.dumps(result, default=str, separators=(',', ':'))}{_RESET}"
    )
    return result


# =============================================================================
# Create the FastMCP server instance
# =============================================================================
mcp = FastMCP("nyc-ops-advisor")

# One orchestrator per process: the source cache, session locks and the
# idempotency window only work if every call shares them.
_advisor: Optional[TurnOrchestrator] = None


def get_advisor() -> TurnOrchestrator:
    global _advisor
    if _advisor is None:
        _advisor = create_advisor()
    return _advisor


# =============================================================================
# TOOL 1: run_turn
# =============================================================================
@mcp.tool()
async def run_turn(
    card_type: str,
    locations: list[str],
    session_id: Optional[str] = None,
    distinct_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    baseline_context: Optional[list[dict]] = None,
    competitor_name: Optional[str] = None,
) -> dict:
    """Run one staffing/prep advisory turn for 1-3 NYC restaurant locations.

    WHEN TO CALL THIS: For the first message of a chat (omit session_id) and
    for every follow-up (pass the session_id from the previous result).

    Args:
        card_type:        "staffing", "risk" or "opportunity".
        locations:        1-3 free-text NYC addresses, ZIPs or neighborhoods.
        session_id:       Session to continue; a new one is created if omitted.
        distinct_id:      Optional stable user identifier.
        idempotency_key:  Retries with the same key return the same result.
        baseline_context: [{"location_label": ..., "baseline_foh": 4}, ...]
        competitor_name:  Optional competitor to compare reviews against
                          (one check per session).

    Returns:
        A dict with: session_id, turn_index, summary, message, location_labels,
        recommendations, snapshots, sources (per-source status), used_fallback,
        latency_ms, invalid_locations, competitor_snapshot, lock_wait_ms.  On
        bad input: {"error": "..."}.
    """
    _log_request("run_turn", card_type=card_type, locations=locations, session_id=session_id,
                 competitor_name=competitor_name)

    if card_type not in CARD_TYPES:
        return _log_response("run_turn", {"error": f"card_type must be one of {', '.join(CARD_TYPES)}"})
    if not locations or len(locations) > 3:
        return _log_response("run_turn", {"error": "Provide between 1 and 3 locations."})

    request = TurnRequest(
        card_type=card_type,
        locations=locations,
        session_id=session_id,
        distinct_id=distinct_id,
        idempotency_key=idempotency_key,
        baseline_context=[
            BaselineContext(location_label=entry["location_label"], baseline_foh=entry.get("baseline_foh"))
            for entry in (baseline_context or [])
            if entry.get("location_label")
        ],
        competitor_name=competitor_name,
    )
    result = await get_advisor().run_turn(request)
    _log_status(f"Turn {result.turn_index} of {result.session_id}: "
                f"{len(result.recommendations)} recommendations, used_fallback={result.used_fallback}")
    return _log_response("run_turn", asdict(result))


# =============================================================================
# TOOL 2: end_session
# =============================================================================
@mcp.tool()
async def end_session(session_id: str, end_reason: str = "completed") -> dict:
    """Close a chat session.

    Args:
        session_id: The session to end.
        end_reason: "completed", "user_exit", "inactive_timeout" or "error".

    Returns:
        {"session_id": ..., "ended": true} or {"error": "..."}.
    """
    _log_request("end_session", session_id=session_id, end_reason=end_reason)
    if end_reason not in END_REASONS:
        return _log_response("end_session", {"error": f"end_reason must be one of {', '.join(END_REASONS)}"})
    await get_advisor().end_session(session_id, end_reason)
    return _log_response("end_session", {"session_id": session_id, "ended": True, "end_reason": end_reason})


# =============================================================================
# TOOL 3: resolve_locations
# =============================================================================
@mcp.tool()
async def resolve_locations(locations: list[str]) -> dict:
    """Check which inputs resolve to NYC places, without running a turn.

    WHEN TO CALL THIS: To validate user input before starting a chat.

    Args:
        locations: Free-text inputs; combined strings are split on
                   newlines, semicolons, or commas after a ZIP.

    Returns:
        {"resolved": [{label, place_id, lat, lon, ...}], "invalid": [...]}
        At most three locations are ever resolved.
    """
    _log_request("resolve_locations", locations=locations)
    resolution = await get_advisor().resolve_locations(locations)
    _log_status(f"{len(resolution.resolved)} resolved, {len(resolution.invalid)} invalid")
    return _log_response("resolve_locations", {
        "resolved": [asdict(location) for location in resolution.resolved],
        "invalid": resolution.invalid,
    })


# =============================================================================
# Server entry point
# =============================================================================
if __name__ == "__main__":
    mcp.run()
