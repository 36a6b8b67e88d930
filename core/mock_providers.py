# =============================================================================
# core/mock_providers.py  —  Deterministic Offline Providers
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Stand-ins for the live HTTP providers that return hand-built NYC fixture
#   data.  Same inputs, same outputs, no network.  Used whenever
#   USE_LIVE_PROVIDERS is not "true", and by the CLI for demos.
#
# THE FIXTURE WORLD (relative to "today" in New York):
#   - Hell's Kitchen sits ~0.2 mi from Madison Square Garden, which has a
#     Knicks game tomorrow at 7:30pm  → event rule fires.
#   - The Atlantic Ave location is next to Barclays Center, where the Nets
#     play in two days (no listed start time, so 7pm is assumed).
#   - Astoria has a street fair closure on Ditmars Blvd  → closure rule fires.
#   - Every location sees a rainy evening slot the day after tomorrow.
#   - Hoboken resolves, but is in New Jersey, so it fails NYC validation.
#
#   Reviews are generated per place from a seeded random.Random, so each
#   place always gets the same mix of themes.
#
# The school calendar is also here.  NYC DOE publishes its calendar as a
# document, not an API, so both live and mock modes read these seeded rows.
# =============================================================================

import random
import zlib
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from core.geo import distance_miles
from core.providers import (
    CalendarRow,
    ForecastPoint,
    Place,
    PlaceReview,
    RawClosure,
    RawEvent,
)

NYC_TZ = ZoneInfo("America/New_York")


def _nyc_now() -> datetime:
    return datetime.now(NYC_TZ)


def _normalize_query(query: str) -> str:
    return query.lower().replace("'", "").replace("’", "").strip()


# =============================================================================
# MOCK PROVIDER: Places
# =============================================================================
# Keyed by a lowercase token that must appear in the normalized query.
# -----------------------------------------------------------------------------
_PLACE_FIXTURES: dict[str, list[Place]] = {
    "hells kitchen": [
        Place("mock-hk-001", "Hell's Kitchen Tavern",
              "456 W 34th St, New York, NY 10001, USA", 40.7530, -73.9960),
    ],
    "350 5th": [
        Place("mock-esb-001", "Empire Corner Cafe",
              "350 5th Ave, New York, NY 10118, USA", 40.7484, -73.9857),
    ],
    "atlantic": [
        Place("mock-atl-001", "Atlantic Ave Grill",
              "620 Atlantic Ave, Brooklyn, NY 11217, USA", 40.6840, -73.9770),
    ],
    "williamsburg": [
        Place("mock-wb-001", "Williamsburg Kitchen",
              "150 N 6th St, Brooklyn, NY 11249, USA", 40.7185, -73.9590),
    ],
    "astoria": [
        Place("mock-ast-001", "Astoria Taverna",
              "31-10 Ditmars Blvd, Astoria, NY 11105, USA", 40.7750, -73.9110),
    ],
    "11201": [
        Place("mock-bkh-001", "Brooklyn Heights Diner",
              "125 Court St, Brooklyn, NY 11201, USA", 40.6890, -73.9920),
    ],
    "hoboken": [
        Place("mock-hob-001", "Hoboken Grill",
              "300 Washington St, Hoboken, NJ 07030, USA", 40.7440, -74.0290),
    ],
    # Competitors
    "joes pizza": [
        Place("mock-cmp-joes", "Joe's Pizza",
              "7 Carmine St, New York, NY 10014, USA", 40.7306, -74.0021),
    ],
    "shake shack": [
        Place("mock-cmp-shack", "Shake Shack Madison Square Park",
              "Madison Ave & E 23rd St, New York, NY 10010, USA", 40.7415, -73.9882),
    ],
}

# Theme keywords in these texts are deliberate.
_REVIEW_TEMPLATES = [
    "Had to wait 40 minutes for a table even with a reservation-free walk in. Long line out the door.",
    "Great food but the wait to get seated was brutal on Friday night.",
    "We queued for ages, the line barely moved.",
    "Slow service, our server disappeared for twenty minutes.",
    "The host was overwhelmed and lost our reservation.",
    "Kitchen was backed up and the food took almost an hour.",
    "Lovely atmosphere, friendly staff, would come back.",
    "Excellent cocktails and the burger was perfect.",
]


class MockPlacesProvider:
    def __init__(self, now: Callable[[], datetime] = _nyc_now):
        self._now = now
        self.search_calls = 0
        self.review_calls = 0

    async def search(self, query: str, max_results: int = 3) -> list[Place]:
        self.search_calls += 1
        normalized = _normalize_query(query)
        for token, places in _PLACE_FIXTURES.items():
            if token in normalized:
                return list(places[:max_results])
        return []

    async def reviews(self, place_id: str) -> list[PlaceReview]:
        self.review_calls += 1
        # Seed per place so the theme mix is stable across runs.
        rng = random.Random(zlib.crc32(place_id.encode("utf-8")))
        now = self._now()
        reviews = []
        for index in range(rng.randint(4, 7)):
            text = rng.choice(_REVIEW_TEMPLATES)
            days_ago = rng.randint(2, 80)
            reviews.append(PlaceReview(
                name=f"places/{place_id}/reviews/{index}",
                publish_time=(now - timedelta(days=days_ago)).isoformat(),
                rating=float(rng.randint(2, 5)),
                text=text,
            ))
        return reviews


# =============================================================================
# MOCK PROVIDER: Weather
# =============================================================================
class MockWeatherProvider:
    """Five days of 3-hour slots with one rainy evening, day after tomorrow."""

    def __init__(self, now: Callable[[], datetime] = _nyc_now):
        self._now = now

    async def forecast(self, lat: float, lon: float) -> list[ForecastPoint]:
        start = self._now().replace(minute=0, second=0, microsecond=0)
        rain_day = (start + timedelta(days=2)).date()
        points = []
        for step in range(40):
            at = start + timedelta(hours=3 * step)
            rainy = at.date() == rain_day and 17 <= at.hour <= 22
            points.append(ForecastPoint(
                at=at.isoformat(),
                pop=0.75 if rainy else 0.1,
                feels_like=58.0 if rainy else 64.0,
            ))
        return points


# =============================================================================
# MOCK PROVIDER: Events
# =============================================================================
# Offsets are days after the search window's start date.
# -----------------------------------------------------------------------------
_EVENT_FIXTURES: dict[str, list[tuple[str, int, Optional[str]]]] = {
    "Madison Square Garden": [("New York Knicks vs. Boston Celtics", 1, "19:30:00")],
    "Barclays Center": [("Brooklyn Nets vs. Miami Heat", 2, None)],
}


class MockEventsProvider:
    def __init__(self):
        self.calls = 0

    async def search(self, keyword: str, start: datetime, end: datetime, size: int = 8) -> list[RawEvent]:
        self.calls += 1
        base_day = start.astimezone(NYC_TZ).date()
        events = []
        for name, offset, local_time in _EVENT_FIXTURES.get(keyword, [])[:size]:
            events.append(RawEvent(
                name=name,
                local_date=(base_day + timedelta(days=offset)).isoformat(),
                local_time=local_time,
            ))
        return events


# =============================================================================
# MOCK PROVIDER: Closures
# =============================================================================
class MockClosuresProvider:
    def __init__(self, now: Callable[[], datetime] = _nyc_now):
        self._now = now

    def _fixtures(self) -> list[RawClosure]:
        tomorrow = (self._now() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
        return [
            RawClosure(
                id="mock-dot-001",
                title="Ditmars Blvd street fair",
                street="Ditmars Blvd",
                start_at=tomorrow.isoformat(),
                end_at=(tomorrow + timedelta(hours=8)).isoformat(),
                lat=40.7752,
                lon=-73.9105,
            ),
        ]

    async def nearby(self, lat: float, lon: float, radius_miles: float, limit: int = 100) -> list[RawClosure]:
        return [
            closure
            for closure in self._fixtures()[:limit]
            if distance_miles(lat, lon, closure.lat, closure.lon) <= radius_miles
        ]


# =============================================================================
# School calendar (NYC DOE)
# =============================================================================
# Days students are not in attendance, beyond weekends.
# -----------------------------------------------------------------------------
DOE_NON_ATTENDANCE_DAYS: dict[str, str] = {
    "2025-11-04": "election_day",
    "2025-11-11": "veterans_day",
    "2025-11-27": "thanksgiving_recess",
    "2025-11-28": "thanksgiving_recess",
    "2025-12-24": "winter_recess",
    "2025-12-25": "winter_recess",
    "2025-12-26": "winter_recess",
    "2026-01-01": "winter_recess",
    "2026-01-19": "mlk_day",
    "2026-02-16": "midwinter_recess",
    "2026-02-17": "midwinter_recess",
    "2026-02-18": "midwinter_recess",
    "2026-02-19": "midwinter_recess",
    "2026-02-20": "midwinter_recess",
    "2026-04-03": "spring_recess",
    "2026-04-06": "spring_recess",
    "2026-04-07": "spring_recess",
    "2026-04-08": "spring_recess",
    "2026-04-09": "spring_recess",
    "2026-04-10": "spring_recess",
    "2026-05-25": "memorial_day",
    "2026-06-04": "anniversary_day",
    "2026-06-19": "juneteenth",
    "2026-11-03": "election_day",
    "2026-11-11": "veterans_day",
    "2026-11-26": "thanksgiving_recess",
    "2026-11-27": "thanksgiving_recess",
    "2026-12-24": "winter_recess",
    "2026-12-25": "winter_recess",
    "2026-12-31": "winter_recess",
    "2027-01-01": "winter_recess",
}


class SeededSchoolCalendar:
    """DOE calendar rows for any date range, built from the table above."""

    def __init__(
        self,
        non_attendance: Optional[dict[str, str]] = None,
        updated_at: Optional[Callable[[], datetime]] = None,
    ):
        self._non_attendance = DOE_NON_ATTENDANCE_DAYS if non_attendance is None else non_attendance
        self._updated_at = updated_at or _nyc_now

    async def days_in_range(self, start: date, end: date) -> list[CalendarRow]:
        rows = []
        updated = self._updated_at().isoformat()
        current = start
        while current <= end:
            key = current.isoformat()
            if key in self._non_attendance:
                rows.append(CalendarRow(key, self._non_attendance[key], False, updated))
            elif current.weekday() >= 5:
                rows.append(CalendarRow(key, "weekend", False, updated))
            else:
                rows.append(CalendarRow(key, "instruction", True, updated))
            current += timedelta(days=1)
        return rows
