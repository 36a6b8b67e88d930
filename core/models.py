# =============================================================================
# core/models.py  —  Data Models (the "nouns" of the system)
# =============================================================================
#
# These dataclasses define the *shape* of every piece of information that flows
# through a turn: resolved locations, per-source signals and statuses, review
# evidence, recommendations, snapshots, and the turn request/result pair.
#
# They carry almost no behavior.  The few helpers that exist (is_degraded,
# sorted_themes) are pure reads of the fields.
#
# TIMESTAMPS:
#   Every timestamp crossing a boundary is an ISO-8601 string with a UTC
#   offset in America/New_York local time (e.g. "2026-10-20T19:00:00-04:00").
#   Dates with no time of day are "YYYY-MM-DD".
# =============================================================================

from dataclasses import dataclass, field
from typing import Literal, Optional


CardType = Literal["staffing", "risk", "opportunity"]
Confidence = Literal["low", "medium", "high"]
SourceName = Literal["weather", "events", "closures", "doe", "reviews", "system"]
FetchStatus = Literal["ok", "error", "stale", "timeout"]
ReviewTheme = Literal["wait_time", "service_speed", "host_queue", "kitchen_delay", "other"]

CARD_TYPES: tuple[str, ...] = ("staffing", "risk", "opportunity")
CORE_SOURCES: tuple[str, ...] = ("weather", "events", "closures", "doe", "reviews")
REVIEW_THEMES: tuple[str, ...] = ("wait_time", "service_speed", "host_queue", "kitchen_delay", "other")

# low < medium < high.  Clamping compares these ranks and never raises.
CONFIDENCE_RANK: dict[str, int] = {"low": 1, "medium": 2, "high": 3}


# -----------------------------------------------------------------------------
# ResolvedLocation: a validated, in-bounds NYC place
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ResolvedLocation:
    """A free-text location input matched to a single NYC place."""

    input: str                         # What the user typed
    label: str                         # Display name, used as the location key everywhere
    place_id: str
    address: str
    lat: float
    lon: float
    is_nyc: bool = True


# -----------------------------------------------------------------------------
# SourceStatus: how trustworthy one source is for this turn
# -----------------------------------------------------------------------------
# "ok" with zero results ("no nearby events") is a valid outcome and is NOT
# the same as "error".
# -----------------------------------------------------------------------------
@dataclass
class SourceStatus:
    status: FetchStatus = "ok"
    freshness_seconds: Optional[int] = None
    cache_hit: Optional[bool] = None
    error_code: Optional[str] = None

    def is_degraded(self) -> bool:
        return self.status in ("stale", "error", "timeout")


# -----------------------------------------------------------------------------
# Per-source signals
# -----------------------------------------------------------------------------
@dataclass
class WeatherSignal:
    location_label: str
    rain_likely: bool
    rain_window: Optional[str]         # Forecast point timestamp of the first rainy slot
    temp_extreme_likely: bool
    temp_window: Optional[str]


@dataclass
class VenueEventSignal:
    venue_id: str
    venue_name: str
    event_name: str
    start_at: str
    impact_start_at: str               # start - 2h
    impact_end_at: str                 # start + 1h
    distance_miles: float


@dataclass
class ClosureSignal:
    location_label: str
    title: str
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    street: Optional[str] = None


@dataclass
class SchoolCalendarDay:
    """One NYC DOE calendar row: 'YYYY-MM-DD', event type, school in session."""

    date: str
    event_type: str
    is_school_day: bool


# -----------------------------------------------------------------------------
# Review evidence
# -----------------------------------------------------------------------------
@dataclass
class ReviewEvidenceRef:
    place_id: str
    review_id_or_hash: str             # First 16 hex chars of a SHA-256 digest
    publish_time: str
    theme: ReviewTheme
    rating: Optional[float] = None
    excerpt: Optional[str] = None
    source: str = "google_reviews"


@dataclass
class ReviewSignals:
    """Aggregated guest-review signal for one place, built once per turn."""

    place_id: str
    sample_review_count: int           # Recent reviews considered
    evidence_count: int                # Recent reviews with text, theme-classified
    recency_window_days: int
    themes: dict[str, int]
    top_refs: list[ReviewEvidenceRef]
    guest_snapshot: str
    confidence: Confidence

    def sorted_themes(self) -> list[tuple[str, int]]:
        """Themes by descending count; ties keep the canonical theme order."""
        return sorted(self.themes.items(), key=lambda item: -item[1])


# -----------------------------------------------------------------------------
# Recommendation: one operational action card
# -----------------------------------------------------------------------------
@dataclass
class RecommendationEvidence:
    evidence_count: int
    recency_window_days: int
    top_refs: list[ReviewEvidenceRef] = field(default_factory=list)


@dataclass
class Explanation:
    why: list[str]
    delta_reasoning: str
    escalation_trigger: str
    baseline_assumption: Optional[str] = None


@dataclass
class Citation:
    source_name: SourceName
    freshness_seconds: Optional[int] = None
    note: Optional[str] = None


@dataclass
class Recommendation:
    location_label: str
    action: str
    time_window: str
    confidence: Confidence
    source_name: SourceName
    explanation: Explanation
    review_backed: bool = False
    evidence: Optional[RecommendationEvidence] = None
    source_freshness_seconds: Optional[int] = None
    citations: list[Citation] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Snapshots shown next to the recommendations
# -----------------------------------------------------------------------------
@dataclass
class GuestSnapshot:
    location_label: str
    text: str
    sample_review_count: int
    recency_window_days: int
    confidence: Confidence


CompetitorStatus = Literal["not_requested", "limit_reached", "not_found", "resolved"]
CompetitorSnapshotStatus = Literal[
    "resolved_with_reviews", "resolved_no_recent_reviews", "not_found", "limit_reached"
]


@dataclass
class CompetitorContext:
    """Outcome of the once-per-session competitor lookup."""

    status: CompetitorStatus = "not_requested"
    place_id: Optional[str] = None
    resolved_name: Optional[str] = None
    snapshot: Optional[str] = None


@dataclass
class CompetitorSnapshot:
    label: str
    text: str
    confidence: Confidence
    sample_review_count: int
    recency_window_days: int
    status: CompetitorSnapshotStatus


# -----------------------------------------------------------------------------
# Engine input/output
# -----------------------------------------------------------------------------
@dataclass
class LocationInputs:
    """Everything the recommendation engine knows about one location."""

    location_label: str
    weather: Optional[WeatherSignal] = None
    events: list[VenueEventSignal] = field(default_factory=list)
    closures: list[ClosureSignal] = field(default_factory=list)
    review: Optional[ReviewSignals] = None
    baseline_foh: Optional[int] = None
    baseline_assumed: bool = False


@dataclass
class EngineOutput:
    summary: str
    recommendations: list[Recommendation]
    snapshots: list[GuestSnapshot]


# -----------------------------------------------------------------------------
# Source fetch results
# -----------------------------------------------------------------------------
# One bag shape for all five sources.  Which fields are populated depends on
# the source: weather/events/closures/reviews fill by_location, doe fills
# days, reviews may also fill competitor_review.
# -----------------------------------------------------------------------------
@dataclass
class SourceResult:
    status: SourceStatus
    by_location: dict = field(default_factory=dict)
    days: list[SchoolCalendarDay] = field(default_factory=list)
    competitor_review: Optional[ReviewSignals] = None


@dataclass
class SourceSnapshot:
    """Frozen view of all source data a turn has fetched so far."""

    weather_by_location: dict[str, WeatherSignal] = field(default_factory=dict)
    events_by_location: dict[str, list[VenueEventSignal]] = field(default_factory=dict)
    closures_by_location: dict[str, list[ClosureSignal]] = field(default_factory=dict)
    doe_days: list[SchoolCalendarDay] = field(default_factory=list)
    review_by_location: dict[str, ReviewSignals] = field(default_factory=dict)
    competitor_review: Optional[ReviewSignals] = None


# -----------------------------------------------------------------------------
# Turn request / result: the inbound RPC contract
# -----------------------------------------------------------------------------
@dataclass
class BaselineContext:
    location_label: str
    baseline_foh: Optional[int] = None


@dataclass
class TurnRequest:
    card_type: CardType
    locations: list[str]
    session_id: Optional[str] = None
    distinct_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    baseline_context: list[BaselineContext] = field(default_factory=list)
    competitor_name: Optional[str] = None


@dataclass
class TurnResult:
    session_id: str
    turn_index: int
    summary: str
    message: str
    location_labels: list[str]
    recommendations: list[Recommendation]
    snapshots: list[GuestSnapshot]
    sources: dict[str, SourceStatus]
    used_fallback: bool
    latency_ms: int
    invalid_locations: list[str] = field(default_factory=list)
    competitor_snapshot: Optional[CompetitorSnapshot] = None
    lock_wait_ms: int = 0
