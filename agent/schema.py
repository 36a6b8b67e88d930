# =============================================================================
# agent/schema.py  —  Model Response Schema + Tiered Parser
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Defines the JSON shape the model must return (pydantic models with the
#   camelCase keys the prompt asks for) and parses raw model text into it.
#
# PARSING TIERS (tried in order, each testable on its own):
#   1. strict     extract the JSON object (fenced block first, else the
#                 outermost braces) and validate it against the schema
#   2. repaired   fix the usual model slips (trailing commas, Python
#                 literals, // comments) and validate again
#   3. salvaged   the JSON is beyond repair: pull just narrative and
#                 followUpQuestion out with patterns.  Not a valid response,
#                 but the controller can still use the text if every other
#                 phase fails.
#
#   If tiers 1-2 fail, parse_agent_response raises AgentResponseError with
#   one of the AGENT_RESPONSE_* codes and attaches any salvage.
# =============================================================================

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.models import (
    Citation,
    Explanation,
    Recommendation,
    RecommendationEvidence,
    ReviewEvidenceRef,
)

logger = logging.getLogger(__name__)

AgentSourceName = Literal["weather", "events", "closures", "doe", "reviews", "system"]
AgentConfidence = Literal["low", "medium", "high"]

NO_JSON = "AGENT_RESPONSE_NO_JSON"
INVALID_JSON = "AGENT_RESPONSE_INVALID_JSON"
SCHEMA_INVALID = "AGENT_RESPONSE_SCHEMA_INVALID"
TRUNCATED = "AGENT_RESPONSE_TRUNCATED"


# =============================================================================
# Schema
# =============================================================================
class AgentCitation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_name: AgentSourceName = Field(alias="sourceName")
    freshness_seconds: Optional[int] = Field(default=None, ge=0, alias="freshnessSeconds")
    note: Optional[str] = Field(default=None, max_length=120)


class AgentEvidenceRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: Literal["google_reviews"] = "google_reviews"
    place_id: str = Field(alias="placeId")
    review_id_or_hash: str = Field(alias="reviewIdOrHash")
    publish_time: str = Field(alias="publishTime")
    rating: Optional[float] = None
    theme: Literal["wait_time", "service_speed", "host_queue", "kitchen_delay", "other"]
    excerpt: Optional[str] = None


class AgentEvidence(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    evidence_count: int = Field(ge=0, alias="evidenceCount")
    recency_window_days: int = Field(gt=0, alias="recencyWindowDays")
    top_refs: list[AgentEvidenceRef] = Field(default_factory=list, alias="topRefs")


class AgentRecommendation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    location_label: str = Field(min_length=1, max_length=120, alias="locationLabel")
    action: str = Field(min_length=1, max_length=180)
    time_window: str = Field(min_length=1, max_length=80, alias="timeWindow")
    confidence: AgentConfidence
    source_name: AgentSourceName = Field(alias="sourceName")
    why: list[Annotated[str, Field(min_length=1, max_length=160)]] = Field(default_factory=list, max_length=2)
    delta_reasoning: str = Field(min_length=1, max_length=240, alias="deltaReasoning")
    escalation_trigger: str = Field(min_length=1, max_length=200, alias="escalationTrigger")
    review_backed: bool = Field(default=False, alias="reviewBacked")
    citations: list[AgentCitation] = Field(default_factory=list, max_length=3)
    evidence: Optional[AgentEvidence] = None

    def to_recommendation(self) -> Recommendation:
        evidence = None
        if self.evidence is not None:
            evidence = RecommendationEvidence(
                evidence_count=self.evidence.evidence_count,
                recency_window_days=self.evidence.recency_window_days,
                top_refs=[
                    ReviewEvidenceRef(
                        place_id=ref.place_id,
                        review_id_or_hash=ref.review_id_or_hash,
                        publish_time=ref.publish_time,
                        theme=ref.theme,
                        rating=ref.rating,
                        excerpt=ref.excerpt,
                        source=ref.source,
                    )
                    for ref in self.evidence.top_refs
                ],
            )
        return Recommendation(
            location_label=self.location_label,
            action=self.action,
            time_window=self.time_window,
            confidence=self.confidence,
            source_name=self.source_name,
            explanation=Explanation(
                why=list(self.why),
                delta_reasoning=self.delta_reasoning,
                escalation_trigger=self.escalation_trigger,
            ),
            review_backed=self.review_backed,
            evidence=evidence,
            citations=[
                Citation(source_name=c.source_name, freshness_seconds=c.freshness_seconds, note=c.note)
                for c in self.citations
            ],
        )


class AgentResponse(BaseModel):
    """The full model answer for one turn."""

    model_config = ConfigDict(populate_by_name=True)

    narrative: str = Field(min_length=1, max_length=360)
    recommendations: list[AgentRecommendation] = Field(min_length=1, max_length=3)
    assumptions: list[Annotated[str, Field(min_length=1, max_length=180)]] = Field(
        default_factory=list, max_length=4
    )
    follow_up_question: Optional[str] = Field(
        default=None, min_length=1, max_length=140, alias="followUpQuestion"
    )

    @field_validator("narrative")
    def _narrative_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("narrative cannot be blank")
        return value.strip()


class SignalPackSummary(BaseModel):
    summary: str = Field(min_length=1)


# =============================================================================
# Errors and results
# =============================================================================
@dataclass
class SalvagedText:
    narrative: Optional[str] = None
    follow_up_question: Optional[str] = None


class AgentResponseError(Exception):
    """Model output could not be turned into an AgentResponse."""

    def __init__(self, code: str, salvage: Optional[SalvagedText] = None):
        super().__init__(code)
        self.code = code
        self.salvage = salvage


@dataclass
class ParseResult:
    response: AgentResponse
    strategy_used: Literal["strict", "repaired"]
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Tier helpers
# =============================================================================
_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def extract_json_object(text: str) -> Optional[str]:
    fenced = _FENCED.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1 or last <= first:
        return None
    return text[first:last + 1]


def repair_json(raw: str) -> str:
    repaired = re.sub(r"//[^\n]*\n", "\n", raw)
    repaired = re.sub(r",(\s*[}\]])", r"\1", repaired)
    repaired = re.sub(r"\bTrue\b", "true", repaired)
    repaired = re.sub(r"\bFalse\b", "false", repaired)
    repaired = re.sub(r"\bNone\b", "null", repaired)
    return repaired


def _string_field(text: str, key: str) -> Optional[str]:
    match = re.search(rf'"{key}"\s*:\s*"((?:[^"\\]|\\.)*)"', text)
    if not match:
        return None
    try:
        value = json.loads(f'"{match.group(1)}"')
    except json.JSONDecodeError:
        value = match.group(1)
    return value.strip() or None


def salvage_text(text: str) -> Optional[SalvagedText]:
    """Last-resort extraction of the narrative and follow-up fields."""
    narrative = _string_field(text, "narrative")
    follow_up = _string_field(text, "followUpQuestion")
    if narrative is None and follow_up is None:
        return None
    return SalvagedText(
        narrative=narrative[:360] if narrative else None,
        follow_up_question=follow_up[:140] if follow_up else None,
    )


# =============================================================================
# Entry points
# =============================================================================
def parse_agent_response_detailed(content: str) -> ParseResult:
    raw = extract_json_object(content or "")
    if raw is None:
        raise AgentResponseError(NO_JSON, salvage_text(content or ""))

    warnings: list[str] = []
    try:
        return ParseResult(AgentResponse.model_validate(json.loads(raw)), "strict")
    except json.JSONDecodeError as exc:
        warnings.append(f"JSON parse failed: {exc}")
        first_code = INVALID_JSON
    except ValidationError as exc:
        warnings.append(f"Schema validation failed: {exc.error_count()} errors")
        first_code = SCHEMA_INVALID

    if first_code == INVALID_JSON:
        try:
            parsed = json.loads(repair_json(raw))
        except json.JSONDecodeError:
            raise AgentResponseError(INVALID_JSON, salvage_text(content))
        try:
            response = AgentResponse.model_validate(parsed)
        except ValidationError:
            raise AgentResponseError(SCHEMA_INVALID, salvage_text(content))
        warnings.append("JSON required repair")
        logger.debug("Agent response parsed after repair")
        return ParseResult(response, "repaired", warnings)

    raise AgentResponseError(first_code, salvage_text(content))


def parse_agent_response(content: str) -> AgentResponse:
    """Parse model text into an AgentResponse or raise AgentResponseError."""
    return parse_agent_response_detailed(content).response


def parse_signal_pack_summary(content: str) -> str:
    raw = extract_json_object(content or "")
    if raw is None:
        raise AgentResponseError(NO_JSON)
    try:
        return SignalPackSummary.model_validate(json.loads(raw)).summary.strip()
    except json.JSONDecodeError:
        raise AgentResponseError(INVALID_JSON)
    except ValidationError:
        raise AgentResponseError(SCHEMA_INVALID)
