# =============================================================================
# core/recommendation_engine.py  —  Deterministic Recommendation Engine
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Maps per-location signals to ranked, explained staffing/prep actions.
#   This is the system of record: whenever the model path fails, this is the
#   answer the user gets.
#
# RULES (per location, first match wins):
#
#     1. closure nearby         → move deliveries ahead of the closure window
#     2. venue event nearby     → add FOH for the impact window
#                                 (+ flex runner when a DOE day-off lands on
#                                 the event date; host + floater when reviews
#                                 show a dominant wait/host theme)
#     3. rain or extreme temps  → bias staffing indoors
#     4. DOE non-school day     → keep a flex FOH over lunch
#     5. reviews only (>= 3)    → run throughput checks
#
#   If nothing fires anywhere, exactly one system recommendation is returned.
#   The list is never empty.
#
# DETERMINISM:
#   No clock, no randomness.  Identical inputs give identical output.  Time
#   labels are derived from the timestamps inside the signals themselves.
# =============================================================================

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from core.models import (
    CONFIDENCE_RANK,
    EngineOutput,
    Explanation,
    GuestSnapshot,
    LocationInputs,
    Recommendation,
    RecommendationEvidence,
    ReviewSignals,
    SchoolCalendarDay,
)
from core.reviews import dominant_theme

NYC_TZ = ZoneInfo("America/New_York")

CARD_INTROS = {
    "staffing": "Next 3 days staffing and prep signals for your locations:",
    "risk": "Next 3 days risk signals for your locations:",
    "opportunity": "Next 3 days opportunity signals for your locations:",
}

# Domain priority buckets used for ordering, per card type.
SOURCE_PRIORITY = {
    "risk": ["closures", "weather", "events", "doe", "reviews", "system"],
    "opportunity": ["events", "reviews", "weather", "doe", "closures", "system"],
    "staffing": ["events", "closures", "weather", "reviews", "doe", "system"],
}

UPGRADE_THEMES = ("wait_time", "host_queue")


# -----------------------------------------------------------------------------
# Time label helpers
# -----------------------------------------------------------------------------
def parse_local_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO string → NYC-local datetime.  Naive values are taken as NYC time."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=NYC_TZ)
    return parsed.astimezone(NYC_TZ)


def weekday_label(moment: datetime) -> str:
    return moment.strftime("%a")


def clock_label(moment: datetime) -> str:
    """'7:00 PM' style, no leading zero."""
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def theme_label(theme: str) -> str:
    return theme.replace("_", " ")


def top_theme(review: ReviewSignals) -> str:
    ranked = review.sorted_themes()
    return theme_label(ranked[0][0]) if ranked else "service"


def second_theme(review: ReviewSignals) -> str:
    ranked = review.sorted_themes()
    return theme_label(ranked[1][0]) if len(ranked) > 1 else "wait time"


def _evidence(review: ReviewSignals) -> RecommendationEvidence:
    return RecommendationEvidence(
        evidence_count=review.evidence_count,
        recency_window_days=review.recency_window_days,
        top_refs=list(review.top_refs),
    )


# -----------------------------------------------------------------------------
# DOE modifier
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DoeModifier:
    date: str
    event_type: str
    weekday: str


def first_doe_modifier(days: list[SchoolCalendarDay]) -> Optional[DoeModifier]:
    row = next((day for day in days if not day.is_school_day), None)
    if row is None:
        return None
    return DoeModifier(
        date=row.date,
        event_type=theme_label(row.event_type),
        weekday=date.fromisoformat(row.date).strftime("%a"),
    )


# =============================================================================
# Rule builders
# =============================================================================
def build_closure_recommendation(inputs: LocationInputs) -> Optional[Recommendation]:
    if not inputs.closures:
        return None
    closure = inputs.closures[0]
    start = parse_local_timestamp(closure.start_at)
    time_window = f"{weekday_label(start) if start else 'Next day'} AM window"
    where = f" on {closure.street}" if closure.street else ""

    return Recommendation(
        location_label=inputs.location_label,
        action=f"{time_window}: move delivery before closure window at {inputs.location_label}",
        time_window=time_window,
        confidence="high",
        source_name="closures",
        explanation=Explanation(
            why=[f"{closure.title}{where} can block or slow access"],
            delta_reasoning="Shifting delivery timing reduces service disruption risk.",
            escalation_trigger="If vendors confirm delay risk, reroute deliveries to alternate windows.",
        ),
    )


def build_event_recommendation(
    inputs: LocationInputs, doe: Optional[DoeModifier]
) -> Optional[Recommendation]:
    if not inputs.events:
        return None
    event = inputs.events[0]
    impact_start = parse_local_timestamp(event.impact_start_at)
    impact_end = parse_local_timestamp(event.impact_end_at)
    time_window = (
        f"{weekday_label(impact_start)} {clock_label(impact_start)}-{clock_label(impact_end)}"
    )

    label = inputs.location_label
    action = f"{time_window}: +1-2 FOH at {label}"
    why = [f"{event.event_name} at {event.venue_name} increases nearby foot traffic"]

    review_backed = False
    if dominant_theme(inputs.review) in UPGRADE_THEMES:
        action = f"{time_window}: add 1 host + 1 FOH floater at {label}"
        why.append("Recent guest feedback flags wait/host pressure during peak windows")
        review_backed = True

    if doe is not None and doe.date == event.start_at[:10]:
        if "+1-2 FOH" in action:
            action = action.replace("+1-2 FOH", "+1-2 FOH + 1 flex runner")
        else:
            action = f"{action} + keep 1 flex runner"
        why.append(
            f"NYC DOE marks {doe.event_type} on {doe.weekday}, which can shift midday-to-dinner demand mix"
        )

    if inputs.baseline_foh is not None:
        baseline_text = f"Baseline {inputs.baseline_foh} FOH at {label}"
        delta = f"With baseline {inputs.baseline_foh}, adding coverage protects throughput during event overlap."
    else:
        baseline_text = "Baseline staffing not provided"
        delta = "Adding coverage protects throughput in the event window."

    return Recommendation(
        location_label=label,
        action=action,
        time_window=time_window,
        confidence="medium" if inputs.baseline_assumed else "high",
        source_name="events",
        explanation=Explanation(
            why=why,
            delta_reasoning=delta,
            escalation_trigger="Move to the upper staffing range if quoted wait exceeds 15 minutes by 6:30pm.",
            baseline_assumption=baseline_text,
        ),
        review_backed=review_backed,
        evidence=_evidence(inputs.review) if review_backed else None,
    )


def build_weather_recommendation(inputs: LocationInputs) -> Optional[Recommendation]:
    weather = inputs.weather
    if weather is None or not (weather.rain_likely or weather.temp_extreme_likely):
        return None

    slot = parse_local_timestamp(weather.rain_window or weather.temp_window)
    time_window = f"{weekday_label(slot)} service window" if slot else "Next 72h"
    reason = (
        "Rain probability is elevated during service hours"
        if weather.rain_likely
        else "Feels-like temperature is extreme during peak periods"
    )

    return Recommendation(
        location_label=inputs.location_label,
        action=f"{time_window}: reduce patio/prep exposure and bias staffing indoors at {inputs.location_label}",
        time_window=time_window,
        confidence="medium",
        source_name="weather",
        explanation=Explanation(
            why=[reason],
            delta_reasoning="Weather volatility can shift dine-in behavior and pacing.",
            escalation_trigger="If precipitation begins before peak, rebalance FOH to indoor sections.",
        ),
    )


def build_doe_recommendation(inputs: LocationInputs, doe: DoeModifier) -> Recommendation:
    time_window = f"{doe.weekday} lunch (11am-2pm)"
    return Recommendation(
        location_label=inputs.location_label,
        action=f"{time_window}: keep 1 flex FOH at {inputs.location_label} and move non-urgent prep before 10am",
        time_window=time_window,
        confidence="medium",
        source_name="doe",
        explanation=Explanation(
            why=[
                f"NYC DOE calendar marks {doe.event_type} on {doe.weekday}.",
                "School-day schedule shifts can change lunchtime pacing and family order mix.",
            ],
            delta_reasoning="A flex role protects throughput while avoiding overstaffing.",
            escalation_trigger="Escalate +1 FOH if lunch queue exceeds normal pace by noon.",
        ),
    )


def build_review_only_recommendation(inputs: LocationInputs) -> Optional[Recommendation]:
    review = inputs.review
    if review is None or review.evidence_count < 3:
        return None
    time_window = "Next 3 days peak windows"
    return Recommendation(
        location_label=inputs.location_label,
        action=f"{time_window}: run a host/FOH throughput check every 15 min at {inputs.location_label}",
        time_window=time_window,
        confidence=review.confidence,
        source_name="reviews",
        explanation=Explanation(
            why=[f"Guest reviews repeatedly reference {top_theme(review)} friction."],
            delta_reasoning="Monitoring and quick staffing adjustments reduce repeat complaint patterns.",
            escalation_trigger="Escalate +1 FOH if queue or quoted wait rises above normal baseline.",
        ),
        review_backed=True,
        evidence=_evidence(review),
    )


def system_fallback_recommendation(location_label: str) -> Recommendation:
    return Recommendation(
        location_label=location_label,
        action="Next 24h: run standard staffing and prep, keep delivery timing flexible, and recheck in 30 minutes",
        time_window="Next 24h",
        confidence="low",
        source_name="system",
        explanation=Explanation(
            why=["No high-signal external factors are currently available."],
            delta_reasoning="Conservative operating posture minimizes disruption risk under uncertainty.",
            escalation_trigger="Re-run checks when new external signals arrive.",
        ),
    )


def build_snapshot(location_label: str, review: ReviewSignals) -> GuestSnapshot:
    return GuestSnapshot(
        location_label=location_label,
        text=(
            f"{review.guest_snapshot} Operationally, this points to pressure around "
            f"{second_theme(review)} patterns in peak periods."
        ),
        sample_review_count=review.sample_review_count,
        recency_window_days=review.recency_window_days,
        confidence=review.confidence,
    )


# =============================================================================
# Ordering
# =============================================================================
def sort_recommendations(card_type: str, recommendations: list[Recommendation]) -> list[Recommendation]:
    """Card bucket, then confidence (high first), then location label."""
    priority = SOURCE_PRIORITY.get(card_type, SOURCE_PRIORITY["staffing"])

    def key(rec: Recommendation):
        bucket = priority.index(rec.source_name) if rec.source_name in priority else len(priority)
        return (bucket, -CONFIDENCE_RANK[rec.confidence], rec.location_label)

    return sorted(recommendations, key=key)


# =============================================================================
# PUBLIC API
# =============================================================================
def _recommendation_for(inputs: LocationInputs, doe: Optional[DoeModifier]) -> Optional[Recommendation]:
    return (
        build_closure_recommendation(inputs)
        or build_event_recommendation(inputs, doe)
        or build_weather_recommendation(inputs)
        or (build_doe_recommendation(inputs, doe) if doe is not None else None)
        or build_review_only_recommendation(inputs)
    )


def build_recommendations(
    card_type: str,
    inputs: list[LocationInputs],
    doe_days: Optional[list[SchoolCalendarDay]] = None,
    competitor_line: Optional[str] = None,
) -> EngineOutput:
    """Build the deterministic recommendation set for one turn.

    Args:
        card_type:       "staffing", "risk" or "opportunity".
        inputs:          One LocationInputs per resolved location, in user order.
        doe_days:        School calendar rows for the next few days.
        competitor_line: Optional line appended to the summary.

    Returns:
        EngineOutput with a summary, at least one recommendation, and a guest
        snapshot for every location that has review evidence.
    """
    doe = first_doe_modifier(doe_days or [])
    recommendations: list[Recommendation] = []
    snapshots: list[GuestSnapshot] = []

    for location in inputs:
        if location.review is not None and location.review.evidence_count > 0:
            snapshots.append(build_snapshot(location.location_label, location.review))
        recommendation = _recommendation_for(location, doe)
        if recommendation is not None:
            recommendations.append(recommendation)

    if not recommendations:
        label = inputs[0].location_label if inputs else "your locations"
        recommendations.append(system_fallback_recommendation(label))

    recommendations = sort_recommendations(card_type, recommendations)

    lines = [CARD_INTROS.get(card_type, CARD_INTROS["staffing"])]
    lines.extend(f"- {rec.action} ({rec.confidence})" for rec in recommendations[:4])
    if competitor_line:
        lines.append(competitor_line)

    return EngineOutput(summary="\n".join(lines), recommendations=recommendations, snapshots=snapshots)
