# =============================================================================
# core/sources.py  —  Source Fetchers (weather, events, closures, DOE, reviews)
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Wraps each external provider in a typed fetcher that ALWAYS returns a
#   SourceResult and never raises:
#
#     fetch_weather(locations)   → by_location[label] = WeatherSignal
#     fetch_events(locations)    → by_location[label] = [VenueEventSignal, ...]
#     fetch_closures(locations)  → by_location[label] = [ClosureSignal, ...]
#     fetch_doe()                → days = [SchoolCalendarDay, ...]
#     fetch_reviews(locations)   → by_location[label] = ReviewSignals
#                                  (+ competitor_review when asked)
#
# STATUS RULES:
#   ok       data fetched (zero results is still ok)
#   stale    partial data, or data known to be old
#   timeout  the per-source timeout fired
#   error    anything else went wrong
#
# CACHING:
#   Successful results are written to the shared TtlCache, keyed by source +
#   location set + NYC calendar day.  A cache hit is reported as ok with
#   cache_hit=True and freshness equal to the entry's age.
#
# CLOCK:
#   `clock` returns the current America/New_York datetime.  Tests pin it.
# =============================================================================

import asyncio
import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from core import config
from core.cache import TtlCache
from core.config import Settings
from core.geo import distance_miles
from core.mock_providers import (
    MockClosuresProvider,
    MockEventsProvider,
    MockPlacesProvider,
    MockWeatherProvider,
    SeededSchoolCalendar,
)
from core.models import (
    ClosureSignal,
    ResolvedLocation,
    SchoolCalendarDay,
    SourceResult,
    SourceSnapshot,
    SourceStatus,
    VenueEventSignal,
    WeatherSignal,
)
from core.providers import (
    ForecastPoint,
    GooglePlacesClient,
    NycDotClosuresClient,
    OpenWeatherClient,
    Providers,
    RawEvent,
    TicketmasterClient,
)
from core.reviews import build_review_signals, parse_timestamp

logger = logging.getLogger(__name__)

NYC_TZ = ZoneInfo("America/New_York")


def _nyc_now() -> datetime:
    return datetime.now(NYC_TZ)


# =============================================================================
# Provider wiring (Strategy Pattern)
# =============================================================================
def build_providers(settings: Settings) -> Providers:
    """Live HTTP providers or deterministic mocks, per USE_LIVE_PROVIDERS."""
    if settings.use_live_providers:
        return Providers(
            places=GooglePlacesClient(settings.google_places_api_key),
            weather=OpenWeatherClient(settings.openweather_api_key),
            events=TicketmasterClient(settings.ticketmaster_api_key),
            closures=NycDotClosuresClient(settings.nyc_dot_closures_url, settings.nyc_open_data_app_token),
            calendar=SeededSchoolCalendar(),
        )
    return Providers(
        places=MockPlacesProvider(),
        weather=MockWeatherProvider(),
        events=MockEventsProvider(),
        closures=MockClosuresProvider(),
        calendar=SeededSchoolCalendar(),
    )


# =============================================================================
# Pure signal builders
# =============================================================================
def make_weather_signal(location_label: str, points: list[ForecastPoint]) -> WeatherSignal:
    rainy = next((p for p in points if p.pop >= config.RAIN_PROBABILITY_THRESHOLD), None)
    extreme = next(
        (
            p for p in points
            if p.feels_like <= config.FEELS_LIKE_COLD_F or p.feels_like >= config.FEELS_LIKE_HOT_F
        ),
        None,
    )
    return WeatherSignal(
        location_label=location_label,
        rain_likely=rainy is not None,
        rain_window=rainy.at if rainy else None,
        temp_extreme_likely=extreme is not None,
        temp_window=extreme.at if extreme else None,
    )


def event_start(raw: RawEvent, now: datetime) -> datetime:
    """NYC-local start time; a missing date means "now", a missing time 7pm."""
    if not raw.local_date:
        return now
    start_time = time.fromisoformat(raw.local_time or config.EVENT_DEFAULT_START_TIME)
    return datetime.combine(date.fromisoformat(raw.local_date), start_time, tzinfo=NYC_TZ)


def _failure_status(source_name: str, exc: BaseException) -> SourceStatus:
    if isinstance(exc, asyncio.TimeoutError):
        return SourceStatus(status="timeout", error_code=f"{source_name.upper()}_TIMEOUT")
    return SourceStatus(status="error", error_code=f"{source_name.upper()}_ERROR")


def _place_ids(locations: list[ResolvedLocation]) -> str:
    return ",".join(location.place_id for location in locations)


# =============================================================================
# SourceFetcher
# =============================================================================
class SourceFetcher:
    """Fetches all five sources for a set of resolved locations.

    One instance per process: the cache it holds is meant to be shared by
    every turn.  Nothing here is turn-scoped.
    """

    def __init__(
        self,
        providers: Providers,
        cache: Optional[TtlCache] = None,
        clock: Callable[[], datetime] = _nyc_now,
        timeouts_ms: Optional[dict[str, int]] = None,
    ):
        self.providers = providers
        self.cache = cache if cache is not None else TtlCache()
        self.clock = clock
        self.timeouts_ms = dict(config.SOURCE_TIMEOUTS_MS, **(timeouts_ms or {}))

    def _timeout(self, source_name: str) -> float:
        return self.timeouts_ms[source_name] / 1000

    def _today(self) -> str:
        return self.clock().date().isoformat()

    def _cached(self, key: str) -> Optional[SourceResult]:
        hit = self.cache.read(key)
        if hit is None:
            return None
        result: SourceResult = hit.value
        return SourceResult(
            status=SourceStatus(status="ok", freshness_seconds=self.cache.age_seconds(hit), cache_hit=True),
            by_location=result.by_location,
            days=result.days,
            competitor_review=result.competitor_review,
        )

    @staticmethod
    def _fresh_ok() -> SourceStatus:
        return SourceStatus(status="ok", freshness_seconds=0, cache_hit=False)

    # -------------------------------------------------------------------------
    # Weather
    # -------------------------------------------------------------------------
    async def fetch_weather(self, locations: list[ResolvedLocation]) -> SourceResult:
        key = f"weather:{_place_ids(locations)}:{self._today()}"
        cached = self._cached(key)
        if cached:
            return cached

        async def one(location: ResolvedLocation):
            points = await asyncio.wait_for(
                self.providers.weather.forecast(location.lat, location.lon),
                timeout=self._timeout("weather"),
            )
            return location.label, make_weather_signal(location.label, points)

        try:
            entries = await asyncio.gather(*(one(location) for location in locations))
        except Exception as exc:
            logger.info("Weather fetch failed: %s", exc.__class__.__name__)
            return SourceResult(status=_failure_status("weather", exc))

        result = SourceResult(status=self._fresh_ok(), by_location=dict(entries))
        self.cache.write(key, result, config.CACHE_TTL_MS["weather"])
        return result

    # -------------------------------------------------------------------------
    # Events (one search per impact venue, attached by distance)
    # -------------------------------------------------------------------------
    async def fetch_events(self, locations: list[ResolvedLocation]) -> SourceResult:
        key = f"events:{self._today()}:{_place_ids(locations)}"
        cached = self._cached(key)
        if cached:
            return cached

        now = self.clock()
        window_end = now + timedelta(days=3)

        async def one(venue: config.ImpactVenue):
            events = await asyncio.wait_for(
                self.providers.events.search(
                    venue.name, now, window_end, size=config.EVENT_SEARCH_PAGE_SIZE
                ),
                timeout=self._timeout("events"),
            )
            return venue, events

        outcomes = await asyncio.gather(
            *(one(venue) for venue in config.IMPACT_VENUES), return_exceptions=True
        )
        succeeded = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
        failed = len(outcomes) - len(succeeded)

        by_location: dict[str, list[VenueEventSignal]] = {location.label: [] for location in locations}
        if not succeeded:
            logger.info("Events fetch failed for every venue")
            return SourceResult(
                status=SourceStatus(status="error", error_code="EVENTS_UNAVAILABLE"),
                by_location=by_location,
            )

        lead = timedelta(hours=config.EVENT_IMPACT_LEAD_HOURS)
        tail = timedelta(hours=config.EVENT_IMPACT_TAIL_HOURS)
        try:
            for location in locations:
                for venue, events in succeeded:
                    miles = distance_miles(location.lat, location.lon, venue.lat, venue.lon)
                    if miles > venue.impact_radius_miles:
                        continue
                    for raw in events:
                        start = event_start(raw, now)
                        by_location[location.label].append(VenueEventSignal(
                            venue_id=venue.id,
                            venue_name=venue.name,
                            event_name=raw.name,
                            start_at=start.isoformat(),
                            impact_start_at=(start - lead).isoformat(),
                            impact_end_at=(start + tail).isoformat(),
                            distance_miles=round(miles, 3),
                        ))
        except (TypeError, ValueError) as exc:
            # Malformed dates in the provider payload.
            logger.info("Events payload rejected: %s", exc)
            return SourceResult(
                status=SourceStatus(status="error", error_code="EVENTS_ERROR"),
                by_location={location.label: [] for location in locations},
            )

        if failed:
            return SourceResult(
                status=SourceStatus(status="stale", freshness_seconds=0, cache_hit=False, error_code="EVENTS_PARTIAL"),
                by_location=by_location,
            )

        result = SourceResult(status=self._fresh_ok(), by_location=by_location)
        self.cache.write(key, result, config.CACHE_TTL_MS["events"])
        return result

    # -------------------------------------------------------------------------
    # Street closures
    # -------------------------------------------------------------------------
    async def fetch_closures(self, locations: list[ResolvedLocation]) -> SourceResult:
        key = f"closures:{self._today()}:{_place_ids(locations)}"
        cached = self._cached(key)
        if cached:
            return cached

        async def one(location: ResolvedLocation):
            raw = await asyncio.wait_for(
                self.providers.closures.nearby(
                    location.lat, location.lon,
                    radius_miles=config.CLOSURE_RADIUS_MILES,
                    limit=config.CLOSURE_FETCH_LIMIT,
                ),
                timeout=self._timeout("closures"),
            )
            signals = [
                ClosureSignal(
                    location_label=location.label,
                    title=closure.title,
                    start_at=closure.start_at,
                    end_at=closure.end_at,
                    street=closure.street,
                )
                for closure in raw[: config.CLOSURE_MAX_PER_LOCATION]
            ]
            return location.label, signals

        try:
            entries = await asyncio.gather(*(one(location) for location in locations))
        except Exception as exc:
            logger.info("Closures fetch failed: %s", exc.__class__.__name__)
            return SourceResult(status=_failure_status("closures", exc))

        result = SourceResult(status=self._fresh_ok(), by_location=dict(entries))
        self.cache.write(key, result, config.CACHE_TTL_MS["closures"])
        return result

    # -------------------------------------------------------------------------
    # NYC DOE school calendar
    # -------------------------------------------------------------------------
    async def fetch_doe(self) -> SourceResult:
        now = self.clock()
        start = now.date()
        try:
            rows = await asyncio.wait_for(
                self.providers.calendar.days_in_range(start, start + timedelta(days=3)),
                timeout=self._timeout("doe"),
            )
        except Exception as exc:
            logger.info("DOE calendar read failed: %s", exc.__class__.__name__)
            return SourceResult(status=_failure_status("doe", exc))

        if not rows:
            return SourceResult(status=SourceStatus(status="stale", error_code="DOE_EMPTY"))

        freshness = None
        updated_at = parse_timestamp(rows[0].source_updated_at)
        if updated_at is not None:
            freshness = max(0, int((now - updated_at).total_seconds()))
        stale = freshness is not None and freshness > config.DOE_STALE_AFTER_SECONDS

        days = [SchoolCalendarDay(row.date, row.event_type, row.is_school_day) for row in rows]
        status = SourceStatus(
            status="stale" if stale else "ok",
            freshness_seconds=freshness,
            error_code="DOE_STALE" if stale else None,
        )
        return SourceResult(status=status, days=days)

    # -------------------------------------------------------------------------
    # Guest reviews (own locations + optional competitor)
    # -------------------------------------------------------------------------
    async def _review_signal(self, place_id: str, now: datetime):
        reviews = await asyncio.wait_for(
            self.providers.places.reviews(place_id), timeout=self._timeout("reviews")
        )
        return build_review_signals(place_id, reviews, now)

    async def fetch_reviews(
        self, locations: list[ResolvedLocation], competitor_place_id: Optional[str] = None
    ) -> SourceResult:
        key = f"reviews:{_place_ids(locations)}:{competitor_place_id or 'none'}"
        cached = self._cached(key)
        if cached:
            return cached

        now = self.clock()
        place_ids = [location.place_id for location in locations]
        if competitor_place_id:
            place_ids.append(competitor_place_id)
        outcomes = await asyncio.gather(
            *(self._review_signal(place_id, now) for place_id in place_ids), return_exceptions=True
        )

        by_location = {}
        failures: list[BaseException] = []
        for location, outcome in zip(locations, outcomes):
            if isinstance(outcome, BaseException):
                failures.append(outcome)
            else:
                by_location[location.label] = outcome

        competitor_review = None
        if competitor_place_id:
            outcome = outcomes[-1]
            if isinstance(outcome, BaseException):
                failures.append(outcome)
            else:
                competitor_review = outcome

        if failures and len(failures) == len(outcomes):
            logger.info("Reviews fetch failed for every place")
            return SourceResult(status=_failure_status("reviews", failures[0]))
        if failures:
            return SourceResult(
                status=SourceStatus(status="stale", freshness_seconds=0, cache_hit=False, error_code="REVIEWS_PARTIAL"),
                by_location=by_location,
                competitor_review=competitor_review,
            )

        result = SourceResult(
            status=self._fresh_ok(), by_location=by_location, competitor_review=competitor_review
        )
        self.cache.write(key, result, config.CACHE_TTL_MS["reviews"])
        return result

    # -------------------------------------------------------------------------
    # Everything at once
    # -------------------------------------------------------------------------
    async def fetch_all(
        self, locations: list[ResolvedLocation], competitor_place_id: Optional[str] = None
    ) -> dict[str, SourceResult]:
        weather, events, closures, doe, reviews = await asyncio.gather(
            self.fetch_weather(locations),
            self.fetch_events(locations),
            self.fetch_closures(locations),
            self.fetch_doe(),
            self.fetch_reviews(locations, competitor_place_id),
        )
        return {"weather": weather, "events": events, "closures": closures, "doe": doe, "reviews": reviews}


def snapshot_from_results(results: dict[str, SourceResult]) -> SourceSnapshot:
    """Flatten per-source results into the engine's SourceSnapshot."""
    snapshot = SourceSnapshot()
    if "weather" in results:
        snapshot.weather_by_location = dict(results["weather"].by_location)
    if "events" in results:
        snapshot.events_by_location = dict(results["events"].by_location)
    if "closures" in results:
        snapshot.closures_by_location = dict(results["closures"].by_location)
    if "doe" in results:
        snapshot.doe_days = list(results["doe"].days)
    if "reviews" in results:
        snapshot.review_by_location = dict(results["reviews"].by_location)
        snapshot.competitor_review = results["reviews"].competitor_review
    return snapshot
