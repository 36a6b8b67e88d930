# =============================================================================
# core/signal_pack.py  —  Signal Pack (compact digest of fetched signals)
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Compresses everything the sources returned into a small structure the
#   model can read cheaply, plus a one-line text digest.
#
#   The pack is used twice: as context for the tool loop, and as the ONLY
#   input to the repair call when the loop fails.  So it must stand on its
#   own: per-location headline signals, school-calendar modifiers, the
#   competitor, and a status for every source.
#
#   Context budget discipline: only the TOP event and TOP closure per
#   location make it in.  The model can call tools if it needs more.
# =============================================================================

import json
from dataclasses import asdict, dataclass, field
from typing import Optional

from core.models import CompetitorContext, ResolvedLocation, ReviewSignals, SourceSnapshot, SourceStatus


@dataclass
class PackWeather:
    rain_likely: bool
    rain_window: Optional[str]
    temp_extreme_likely: bool
    temp_window: Optional[str]


@dataclass
class PackEvent:
    venue: str
    event: str
    impact_window: str


@dataclass
class PackClosure:
    title: str
    window: str


@dataclass
class PackReview:
    top_theme: Optional[str]
    evidence_count: int
    recency_window_days: int


@dataclass
class PackLocation:
    location_label: str
    weather: Optional[PackWeather] = None
    top_event: Optional[PackEvent] = None
    top_closure: Optional[PackClosure] = None
    review: Optional[PackReview] = None


@dataclass
class PackCompetitor:
    label: str
    top_theme: Optional[str]
    evidence_count: int
    recency_window_days: int


@dataclass
class SignalPack:
    window: str = "next_3_days"
    locations: list[PackLocation] = field(default_factory=list)
    doe: list[dict] = field(default_factory=list)
    competitor: Optional[PackCompetitor] = None
    source_status: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))


def format_window(start_at: Optional[str], end_at: Optional[str]) -> str:
    if not start_at and not end_at:
        return "timing not specified"
    if not start_at:
        return f"until {end_at}"
    if not end_at:
        return f"from {start_at}"
    return f"{start_at} to {end_at}"


def top_review_theme(signal: ReviewSignals) -> Optional[str]:
    ranked = signal.sorted_themes()
    return ranked[0][0] if ranked else None


def build_signal_pack(
    locations: list[ResolvedLocation],
    snapshot: SourceSnapshot,
    statuses: dict[str, SourceStatus],
    competitor: Optional[CompetitorContext] = None,
) -> SignalPack:
    pack = SignalPack()

    for location in locations:
        entry = PackLocation(location_label=location.label)
        weather = snapshot.weather_by_location.get(location.label)
        if weather is not None:
            entry.weather = PackWeather(
                weather.rain_likely, weather.rain_window, weather.temp_extreme_likely, weather.temp_window
            )
        events = snapshot.events_by_location.get(location.label) or []
        if events:
            top = events[0]
            entry.top_event = PackEvent(
                venue=top.venue_name,
                event=top.event_name,
                impact_window=format_window(top.impact_start_at, top.impact_end_at),
            )
        closures = snapshot.closures_by_location.get(location.label) or []
        if closures:
            entry.top_closure = PackClosure(
                title=closures[0].title, window=format_window(closures[0].start_at, closures[0].end_at)
            )
        review = snapshot.review_by_location.get(location.label)
        if review is not None:
            entry.review = PackReview(top_review_theme(review), review.evidence_count, review.recency_window_days)
        pack.locations.append(entry)

    pack.doe = [
        {"date": day.date, "event_type": day.event_type}
        for day in snapshot.doe_days
        if day.event_type.lower() != "weekend"
    ][:2]

    competitor_review = snapshot.competitor_review
    if competitor is not None and competitor.status == "resolved" and competitor_review is not None:
        pack.competitor = PackCompetitor(
            label=competitor.resolved_name or "Competitor",
            top_theme=top_review_theme(competitor_review),
            evidence_count=competitor_review.evidence_count,
            recency_window_days=competitor_review.recency_window_days,
        )

    pack.source_status = {
        name: statuses[name].status if name in statuses else "error"
        for name in ("weather", "events", "closures", "doe", "reviews")
    }
    return pack


def summarize_signal_pack(pack: SignalPack) -> str:
    """Deterministic one-line digest, segments joined by ' | '."""
    lines = []
    for location in pack.locations:
        fragments = []
        if location.weather is not None and location.weather.rain_likely:
            fragments.append("rain risk in service windows")
        if location.top_event is not None:
            fragments.append(f"{location.top_event.event} near {location.top_event.venue}")
        if location.top_closure is not None:
            fragments.append(f"closure: {location.top_closure.title}")
        if location.review is not None and location.review.top_theme and location.review.evidence_count > 0:
            fragments.append(f"reviews theme={location.review.top_theme} ({location.review.evidence_count} refs)")
        lines.append(f"{location.location_label}: {'; '.join(fragments) if fragments else 'no major external signals'}")

    if pack.doe:
        lines.append("DOE modifiers: " + ", ".join(f"{d['date']} {d['event_type']}" for d in pack.doe))
    if pack.competitor is not None:
        lines.append(
            f"Competitor {pack.competitor.label}: theme={pack.competitor.top_theme or 'mixed'} "
            f"({pack.competitor.evidence_count} refs)"
        )
    status = pack.source_status
    lines.append(
        f"Source status: w={status.get('weather')}, e={status.get('events')}, c={status.get('closures')}, "
        f"d={status.get('doe')}, r={status.get('reviews')}"
    )
    return " | ".join(lines)
