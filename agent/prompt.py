# =============================================================================
# agent/prompt.py  —  Prompts for the Ops Advisor Model
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Holds every piece of text the model sees, and the small builders that
#   assemble them per turn:
#
#     IDENTITY_PROMPT      who the model is and what it focuses on
#     TOOL_POLICY_PROMPT   when (not) to call tools, no fabrication
#     OUTPUT_PROMPT        the exact JSON shape (see agent/schema.py)
#     REPAIR_PROMPT        retry wording after a schema failure
#
# PROMPT ENGINEERING PRINCIPLES USED:
#
#   1. ROLE DEFINITION: a named advisor with a narrow job (staffing and
#      prep, next 3 days).  Narrow roles drift less.
#
#   2. EVIDENCE BEFORE CLAIMS: the tool policy forbids fabricated events,
#      weather, closures, DOE facts or review evidence.
#
#   3. PRE-FETCHED CONTEXT: core signals are fetched before the model runs
#      and summarized into the user prompt, so most turns need zero tool
#      calls.  Tools exist for deeper evidence only.
#
#   4. DYNAMIC CONTEXT: today's NYC date, hard limits, and session memory
#      are injected per turn, never hard-coded.
#
#   5. OUTPUT FORMAT: JSON only, with explicit length hints so answers
#      survive the schema limits.
# =============================================================================

import json
from datetime import date
from typing import Optional

from core.models import ResolvedLocation

IDENTITY_PROMPT = """You are Patty, a NYC restaurant staffing and prep operations advisor.
Focus only on staffing and prep decisions for the next 3 days.
Be direct, concrete, and operationally useful."""

TOOL_POLICY_PROMPT = """Use tools before making factual claims.
Never fabricate events, weather, closures, DOE calendar facts, or review evidence.
Keep tool usage bounded and relevant to the user's request.
Session memory is already included in prompt context; do not spend tool calls re-reading memory."""

OUTPUT_PROMPT = """Return ONLY valid JSON matching this shape:
{
  "narrative": "max 2 short sentences, <= 45 words",
  "recommendations": [
    {
      "locationLabel": "string",
      "action": "string",
      "timeWindow": "string",
      "confidence": "low|medium|high",
      "sourceName": "weather|events|closures|doe|reviews|system",
      "why": ["string", "string"],
      "deltaReasoning": "string",
      "escalationTrigger": "string",
      "reviewBacked": false,
      "citations": [
        {
          "sourceName": "weather|events|closures|doe|reviews|system",
          "freshnessSeconds": 0,
          "note": "string"
        }
      ]
    }
  ],
  "assumptions": ["string"],
  "followUpQuestion": "optional short question <= 16 words"
}
Rules:
- Keep recommendations to 1-3 items.
- Keep why bullets concise and concrete.
- Do not repeat details that already appear in action cards."""

REPAIR_PROMPT = """Your prior output failed schema validation.
Repair and return ONLY valid JSON in the required shape with no extra prose."""

NO_TOOLS_PROMPT = "Do not call tools in this step. Use provided signal pack only."

MISSION_CONTEXT = "Mission: provide concrete staffing/prep recommendations for NYC restaurants over next 3 days."

SUMMARY_SYSTEM_PROMPT = "Summarize structured operations signals for an NYC restaurant staffing assistant."


def build_session_memory(
    session_id: str,
    turn_index: int,
    card_type: str,
    locations: list[ResolvedLocation],
    baseline_by_location: dict[str, int],
    baseline_assumed_for_first: bool,
    competitor_name: Optional[str] = None,
) -> dict:
    """Session memory as the model sees it (also returned by get_memory)."""
    return {
        "sessionId": session_id,
        "turnIndex": turn_index,
        "cardType": card_type,
        "locations": [{"label": loc.label, "placeId": loc.place_id} for loc in locations],
        "baselines": [
            {
                "locationLabel": loc.label,
                "baselineFoh": baseline_by_location.get(loc.label),
                "assumed": index == 0 and baseline_assumed_for_first and loc.label not in baseline_by_location,
            }
            for index, loc in enumerate(locations)
        ],
        "competitorName": competitor_name,
    }


def build_system_prompt(
    memory: dict,
    max_tool_calls: int,
    max_rounds: int,
    turn_budget_ms: int,
    objective: str,
    today: Optional[date] = None,
) -> str:
    """Assemble the tool-loop system prompt.

    WHY A FUNCTION INSTEAD OF A STATIC STRING?
      The limits, the card objective and the session memory change every
      turn, and the model has no idea what "the next 3 days" means unless
      we tell it today's date.
    """
    today = today or date.today()
    return "\n\n".join([
        IDENTITY_PROMPT,
        TOOL_POLICY_PROMPT,
        OUTPUT_PROMPT,
        f"Context: {MISSION_CONTEXT} Today (America/New_York): {today.isoformat()}. Card objective: {objective}",
        f"Limits: Hard limits: max {max_tool_calls} tool calls, max {max_rounds} rounds, "
        f"max {turn_budget_ms}ms turn budget, no fabricated claims.",
        f"Memory: {json.dumps(memory, separators=(',', ':'))}",
    ])


def build_user_prompt(card_type: str, location_labels: list[str], signal_pack_summary: str) -> str:
    return "\n".join([
        f"Card type: {card_type}",
        f"Location labels: {', '.join(location_labels)}",
        "Goal: produce staffing/prep recommendations for next 3 days with concrete action windows.",
        f"Signal pack summary: {signal_pack_summary}",
        "Core signals already fetched (weather/events/closures/doe/reviews). "
        "Do not re-fetch unless you need deeper evidence for a specific claim.",
        "If uncertainty is material, ask one short follow-up question.",
    ])


def build_repair_system_prompt() -> str:
    return "\n\n".join([IDENTITY_PROMPT, TOOL_POLICY_PROMPT, OUTPUT_PROMPT, REPAIR_PROMPT, NO_TOOLS_PROMPT])


def build_repair_user_prompt(
    card_type: str,
    location_labels: list[str],
    reason: str,
    signal_pack_summary: str,
    signal_pack_json: str,
) -> str:
    return "\n".join([
        f"Card type: {card_type}",
        f"Locations: {', '.join(location_labels)}",
        f"Reason for retry: {reason}",
        f"Signal pack summary: {signal_pack_summary}",
        f"Signal pack JSON: {signal_pack_json}",
        "Return only valid JSON in the required schema.",
    ])


def build_summary_user_prompt(card_type: str, signal_pack_json: str, deterministic_summary: str) -> str:
    return "\n".join([
        'Return JSON only: {"summary":"<=70 words single paragraph"}.',
        f"Card type: {card_type}",
        f"Signal pack: {signal_pack_json}",
        f"Fallback deterministic summary: {deterministic_summary}",
    ])
