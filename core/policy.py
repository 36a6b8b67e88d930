# =============================================================================
# core/policy.py  —  Response Policy
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   The last stop for every recommendation set, whichever phase produced it
#   (model draft or deterministic engine).  Business rules here are not
#   negotiable:
#
#     1. A recommendation whose source is stale/error/timeout drops to low.
#     2. While the first location's baseline is only assumed, that location's
#        recommendations are capped at medium.
#     3. A non-system recommendation with no citation drops to low.
#     4. Clamping only ever LOWERS confidence.
#
#   After clamping it fills citations/evidence, trims `why` to two items,
#   re-ranks by the card profile and guarantees a follow-up question.
#
# FAILURE MODE:
#   apply_response_policy never raises.  Any internal error yields exactly
#   one system fallback recommendation so the caller still has something
#   to show.
# =============================================================================

import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from core.card_profile import default_follow_up, rank_by_card_profile
from core.models import (
    CONFIDENCE_RANK,
    Citation,
    Explanation,
    Recommendation,
    RecommendationEvidence,
    ReviewSignals,
    SourceStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class PolicyDraft:
    """A candidate answer before policy: recommendations plus framing."""

    recommendations: list[Recommendation]
    assumptions: list[str] = field(default_factory=list)
    follow_up_question: Optional[str] = None


@dataclass
class PolicyOutcome:
    recommendations: list[Recommendation]
    assumptions: list[str]
    follow_up_question: str
    caps_applied: bool = False
    failed: bool = False


def clamp_confidence(current: str, cap: str) -> str:
    return current if CONFIDENCE_RANK[current] <= CONFIDENCE_RANK[cap] else cap


def _citations_for(rec: Recommendation, statuses: dict[str, SourceStatus]) -> list[Citation]:
    if rec.citations:
        return list(rec.citations)
    if rec.source_name == "system":
        return [Citation(source_name="system", note="Deterministic fallback policy path")]
    status = statuses.get(rec.source_name)
    if status is None:
        return []
    return [Citation(
        source_name=rec.source_name,
        freshness_seconds=status.freshness_seconds,
        note=f"Source status: {status.status}",
    )]


def policy_fallback_recommendation(location_label: str) -> Recommendation:
    return Recommendation(
        location_label=location_label,
        action="Next 24h: run standard staffing and prep, keep delivery timing flexible, and recheck in 30 minutes",
        time_window="Next 24h",
        confidence="low",
        source_name="system",
        explanation=Explanation(
            why=["Live tool signals were insufficient for a higher-confidence adjustment."],
            delta_reasoning="Conservative operating posture minimizes disruption risk under uncertainty.",
            escalation_trigger="Re-run checks if service pace deviates from baseline.",
            baseline_assumption="Fallback applied because response policy enforcement failed.",
        ),
        citations=[Citation(source_name="system", note="Deterministic fallback policy path")],
    )


def _apply(
    card_type: str,
    draft: PolicyDraft,
    statuses: dict[str, SourceStatus],
    first_location_label: Optional[str],
    baseline_assumed_for_first: bool,
    review_by_location: dict[str, ReviewSignals],
) -> PolicyOutcome:
    caps_applied = False
    assumptions = list(draft.assumptions)
    if baseline_assumed_for_first and first_location_label:
        assumptions.append(
            f"Baseline staffing for {first_location_label} remains assumed until explicitly confirmed."
        )

    enforced = []
    for rec in draft.recommendations:
        confidence = rec.confidence
        status = None if rec.source_name == "system" else statuses.get(rec.source_name)

        if status is not None and status.is_degraded():
            confidence = clamp_confidence(confidence, "low")
            caps_applied = True

        if baseline_assumed_for_first and first_location_label and rec.location_label == first_location_label:
            confidence = clamp_confidence(confidence, "medium")
            caps_applied = True

        citations = _citations_for(rec, statuses)
        if not citations and rec.source_name != "system":
            confidence = "low"
            caps_applied = True

        evidence = rec.evidence
        review = review_by_location.get(rec.location_label)
        if evidence is None and rec.review_backed and review is not None:
            evidence = RecommendationEvidence(
                evidence_count=review.evidence_count,
                recency_window_days=review.recency_window_days,
                top_refs=list(review.top_refs[:3]),
            )

        enforced.append(replace(
            rec,
            confidence=confidence,
            citations=citations,
            evidence=evidence,
            source_freshness_seconds=status.freshness_seconds if status is not None else rec.source_freshness_seconds,
            explanation=replace(rec.explanation, why=list(rec.explanation.why[:2])),
        ))

    return PolicyOutcome(
        recommendations=rank_by_card_profile(card_type, enforced),
        assumptions=assumptions,
        follow_up_question=draft.follow_up_question or default_follow_up(card_type),
        caps_applied=caps_applied,
    )


def apply_response_policy(
    card_type: str,
    draft: PolicyDraft,
    statuses: dict[str, SourceStatus],
    first_location_label: Optional[str] = None,
    baseline_assumed_for_first: bool = False,
    review_by_location: Optional[dict[str, ReviewSignals]] = None,
) -> PolicyOutcome:
    """Enforce confidence caps, citations and ranking on a draft.

    Args:
        card_type:                  Active card type (drives ranking and follow-up).
        draft:                      Recommendations + assumptions + optional follow-up.
        statuses:                   Source name → SourceStatus for this turn.
        first_location_label:       Label of the first-mentioned location.
        baseline_assumed_for_first: True while that location's FOH baseline is assumed.
        review_by_location:         Review signals used to back-fill evidence.

    Returns:
        PolicyOutcome.  Never raises; `failed` is set when the fallback was used.
    """
    try:
        return _apply(
            card_type,
            draft,
            statuses,
            first_location_label,
            baseline_assumed_for_first,
            review_by_location or {},
        )
    except Exception:
        logger.exception("Response policy failed; using fallback recommendation")
        label = first_location_label or "your locations"
        return PolicyOutcome(
            recommendations=[policy_fallback_recommendation(label)],
            assumptions=list(draft.assumptions) if isinstance(draft.assumptions, list) else [],
            follow_up_question=default_follow_up(card_type),
            caps_applied=True,
            failed=True,
        )
