# =============================================================================
# core/card_profile.py  —  Card Type Profiles
# =============================================================================
#
# Each card type (staffing / risk / opportunity) frames the same signals
# differently.  A profile carries:
#
#   objective         one line fed to the model as the card's goal
#   follow_up_default the closing question when the draft has none
#   source_weights    how much each source matters for this card
#   review_bonus      extra score for review-backed recommendations
#
# Ranking score = confidence_score * 10 + source_weight * 5 + review_bonus,
# sorted descending with the original order as the tie-break.
# =============================================================================

from dataclasses import dataclass

from core.models import Recommendation

CONFIDENCE_SCORE = {"low": 10, "medium": 20, "high": 30}


@dataclass(frozen=True)
class CardProfile:
    objective: str
    follow_up_default: str
    source_weights: dict
    review_bonus: int


CARD_PROFILES: dict[str, CardProfile] = {
    "staffing": CardProfile(
        objective="Prioritize labor alignment against demand shifts and baseline staffing gaps.",
        follow_up_default="Want me to tune these to your current FOH baseline by location?",
        source_weights={"weather": 6, "events": 9, "closures": 5, "doe": 4, "reviews": 8, "system": 1},
        review_bonus=4,
    ),
    "risk": CardProfile(
        objective=(
            "Prioritize downside prevention, access disruption risk, and conservative escalation triggers."
        ),
        follow_up_default="Want tighter risk triggers for when to staff up or pull back?",
        source_weights={"weather": 10, "events": 7, "closures": 12, "doe": 8, "reviews": 4, "system": 1},
        review_bonus=1,
    ),
    "opportunity": CardProfile(
        objective="Prioritize reversible upside plays for peak windows while containing downside risk.",
        follow_up_default="Want a conservative versus aggressive opportunity plan?",
        source_weights={"weather": 7, "events": 12, "closures": 3, "doe": 4, "reviews": 8, "system": 1},
        review_bonus=3,
    ),
}


def get_card_profile(card_type: str) -> CardProfile:
    return CARD_PROFILES.get(card_type, CARD_PROFILES["staffing"])


def default_follow_up(card_type: str) -> str:
    return get_card_profile(card_type).follow_up_default


def score_recommendation(card_type: str, recommendation: Recommendation) -> int:
    profile = get_card_profile(card_type)
    weight = profile.source_weights.get(recommendation.source_name, 1)
    bonus = profile.review_bonus if recommendation.review_backed else 0
    return CONFIDENCE_SCORE[recommendation.confidence] * 10 + weight * 5 + bonus


def rank_by_card_profile(card_type: str, recommendations: list[Recommendation]) -> list[Recommendation]:
    # sorted() is stable, so equal scores keep their incoming order.
    return sorted(recommendations, key=lambda rec: -score_recommendation(card_type, rec))
