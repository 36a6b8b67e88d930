# =============================================================================
# core/providers.py  —  External Provider Boundary (protocols + live clients)
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Defines the contracts the source fetchers consume, and the thin LIVE HTTP
#   clients that satisfy them:
#
#     PlacesProvider     search(text) / reviews(place_id)   → Google Places (New)
#     WeatherProvider    forecast(lat, lon)                 → OpenWeather 5-day/3h
#     EventsProvider     search(keyword, start, end)        → Ticketmaster Discovery
#     ClosuresProvider   nearby(lat, lon, radius)           → NYC Open Data (DOT)
#     SchoolCalendar     days_in_range(start, end)          → seeded DOE rows
#
#   The deterministic offline versions live in core/mock_providers.py.  Both
#   return the SAME boundary dataclasses, so the fetchers don't know or care
#   which one they are talking to (Strategy Pattern).
#
# ERRORS:
#   Live clients raise on any failure (HTTP error, timeout, malformed JSON).
#   Converting exceptions into a SourceStatus is the fetcher's job, not theirs.
#
# HTTP:
#   One httpx.AsyncClient per live client, created on first use with
#   HTTP_TIMEOUT_S / HTTP_CONNECT_TIMEOUT_S.  Non-2xx responses raise
#   httpx.HTTPStatusError via raise_for_status().
# =============================================================================

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Protocol
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from core.geo import distance_miles

NYC_TZ = ZoneInfo("America/New_York")

# Per-request ceilings.  The fetchers apply their own, tighter, per-source
# timeouts on top of these.
HTTP_TIMEOUT_S = 10.0
HTTP_CONNECT_TIMEOUT_S = 5.0


# =============================================================================
# Boundary dataclasses
# =============================================================================
@dataclass
class Place:
    id: str
    name: str
    formatted_address: str
    lat: float
    lon: float


@dataclass
class PlaceReview:
    name: Optional[str]                # Provider review resource id, if any
    publish_time: Optional[str]
    rating: Optional[float]
    text: str


@dataclass
class ForecastPoint:
    at: str                            # NYC-local ISO timestamp of the 3h slot
    pop: float                         # Probability of precipitation, 0..1
    feels_like: float                  # Fahrenheit


@dataclass
class RawEvent:
    name: str
    local_date: Optional[str] = None   # "YYYY-MM-DD"
    local_time: Optional[str] = None   # "HH:MM:SS"


@dataclass
class RawClosure:
    id: str
    title: str
    street: Optional[str] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


@dataclass
class CalendarRow:
    date: str
    event_type: str
    is_school_day: bool
    source_updated_at: Optional[str] = None


# =============================================================================
# Provider protocols
# =============================================================================
class PlacesProvider(Protocol):
    async def search(self, query: str, max_results: int = 3) -> list[Place]: ...

    async def reviews(self, place_id: str) -> list[PlaceReview]: ...


class WeatherProvider(Protocol):
    async def forecast(self, lat: float, lon: float) -> list[ForecastPoint]: ...


class EventsProvider(Protocol):
    async def search(
        self, keyword: str, start: datetime, end: datetime, size: int = 8
    ) -> list[RawEvent]: ...


class ClosuresProvider(Protocol):
    async def nearby(
        self, lat: float, lon: float, radius_miles: float, limit: int = 100
    ) -> list[RawClosure]: ...


class SchoolCalendar(Protocol):
    async def days_in_range(self, start: date, end: date) -> list[CalendarRow]: ...


@dataclass
class Providers:
    """The full set of collaborators one SourceFetcher talks to."""

    places: PlacesProvider
    weather: WeatherProvider
    events: EventsProvider
    closures: ClosuresProvider
    calendar: SchoolCalendar


# =============================================================================
# HTTP base
# =============================================================================
class _HttpProvider:
    """Owns one lazily created httpx.AsyncClient; tests inject their own."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self._http = http

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(HTTP_TIMEOUT_S, connect=HTTP_CONNECT_TIMEOUT_S))
        return self._http

    async def _get_json(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None):
        response = await self._client().get(url, params=params, headers=headers)
        response.raise_for_status()
        return response.json()

    async def _post_json(self, url: str, body: dict, headers: Optional[dict] = None):
        response = await self._client().post(url, json=body, headers=headers)
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise RuntimeError(f"{name} is not configured")
    return value


# =============================================================================
# LIVE PROVIDER: Google Places (New)
# =============================================================================
class GooglePlacesClient(_HttpProvider):
    BASE_URL = "https://places.googleapis.com/v1"
    _SEARCH_FIELDS = "places.id,places.displayName,places.formattedAddress,places.location"
    _DETAIL_FIELDS = "id,displayName,reviews"

    def __init__(self, api_key: Optional[str], http: Optional[httpx.AsyncClient] = None):
        super().__init__(http)
        self.api_key = api_key

    async def search(self, query: str, max_results: int = 3) -> list[Place]:
        data = await self._post_json(
            f"{self.BASE_URL}/places:searchText",
            {"textQuery": query, "maxResultCount": max_results},
            headers={
                "X-Goog-Api-Key": _require(self.api_key, "GOOGLE_PLACES_API_KEY"),
                "X-Goog-FieldMask": self._SEARCH_FIELDS,
            },
        )
        places = []
        for item in data.get("places", []):
            location = item.get("location", {})
            places.append(Place(
                id=item["id"],
                name=item.get("displayName", {}).get("text", item["id"]),
                formatted_address=item.get("formattedAddress", ""),
                lat=float(location.get("latitude", 0.0)),
                lon=float(location.get("longitude", 0.0)),
            ))
        return places

    async def reviews(self, place_id: str) -> list[PlaceReview]:
        data = await self._get_json(
            f"{self.BASE_URL}/places/{quote(place_id)}",
            headers={
                "X-Goog-Api-Key": _require(self.api_key, "GOOGLE_PLACES_API_KEY"),
                "X-Goog-FieldMask": self._DETAIL_FIELDS,
            },
        )
        return [
            PlaceReview(
                name=review.get("name"),
                publish_time=review.get("publishTime"),
                rating=review.get("rating"),
                text=(review.get("text") or {}).get("text", ""),
            )
            for review in data.get("reviews", [])
        ]


# =============================================================================
# LIVE PROVIDER: OpenWeather 5-day / 3-hour forecast
# =============================================================================
class OpenWeatherClient(_HttpProvider):
    BASE_URL = "https://api.openweathermap.org/data/2.5"

    def __init__(self, api_key: Optional[str], http: Optional[httpx.AsyncClient] = None):
        super().__init__(http)
        self.api_key = api_key

    async def forecast(self, lat: float, lon: float) -> list[ForecastPoint]:
        data = await self._get_json(f"{self.BASE_URL}/forecast", params={
            "lat": lat,
            "lon": lon,
            "units": "imperial",
            "appid": _require(self.api_key, "OPENWEATHER_API_KEY"),
        })
        points = []
        for item in data.get("list", []):
            # dt is epoch seconds (UTC); convert once here so downstream code
            # only ever sees NYC-local timestamps.
            at = datetime.fromtimestamp(item["dt"], tz=timezone.utc).astimezone(NYC_TZ)
            points.append(ForecastPoint(
                at=at.isoformat(),
                pop=float(item.get("pop", 0.0)),
                feels_like=float(item.get("main", {}).get("feels_like", 60.0)),
            ))
        return points


# =============================================================================
# LIVE PROVIDER: Ticketmaster Discovery API
# =============================================================================
def _rfc3339(moment: datetime) -> str:
    """Ticketmaster expects UTC RFC3339 without fractional seconds."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class TicketmasterClient(_HttpProvider):
    BASE_URL = "https://app.ticketmaster.com/discovery/v2"

    def __init__(self, api_key: Optional[str], http: Optional[httpx.AsyncClient] = None):
        super().__init__(http)
        self.api_key = api_key

    async def search(self, keyword: str, start: datetime, end: datetime, size: int = 8) -> list[RawEvent]:
        data = await self._get_json(f"{self.BASE_URL}/events.json", params={
            "apikey": _require(self.api_key, "TICKETMASTER_API_KEY"),
            "keyword": keyword,
            "city": "New York",
            "stateCode": "NY",
            "startDateTime": _rfc3339(start),
            "endDateTime": _rfc3339(end),
            "size": size,
            "page": 0,
            "sort": "date,asc",
        })
        events = []
        for item in data.get("_embedded", {}).get("events", []):
            start_info = item.get("dates", {}).get("start", {})
            events.append(RawEvent(
                name=item.get("name", "Event"),
                local_date=start_info.get("localDate"),
                local_time=start_info.get("localTime"),
            ))
        return events


# =============================================================================
# LIVE PROVIDER: NYC DOT street closures (NYC Open Data / Socrata)
# =============================================================================
# The dataset's column names have drifted over the years, so every field is
# read from a list of candidate keys.
# -----------------------------------------------------------------------------
def _first_key(record: dict, *keys: str):
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_closure_record(record: dict, index: int) -> RawClosure:
    location = record.get("location") or {}
    lat = _to_float(_first_key(record, "latitude", "lat")) or _to_float(location.get("latitude"))
    lon = _to_float(_first_key(record, "longitude", "lon")) or _to_float(location.get("longitude"))
    return RawClosure(
        id=str(_first_key(record, "id", "unique_id") or index),
        title=_first_key(record, "event_name", "activity", "type", "description") or "Street closure",
        street=_first_key(record, "street_name", "on_street_name", "street", "from_street_name"),
        start_at=_first_key(record, "start_date", "start_datetime", "from_date", "start_time"),
        end_at=_first_key(record, "end_date", "end_datetime", "to_date", "end_time"),
        lat=lat,
        lon=lon,
    )


class NycDotClosuresClient(_HttpProvider):
    def __init__(
        self, base_url: Optional[str], app_token: Optional[str] = None, http: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(http)
        self.base_url = base_url
        self.app_token = app_token

    async def nearby(self, lat: float, lon: float, radius_miles: float, limit: int = 100) -> list[RawClosure]:
        if not self.base_url:
            # Closures are optional: with no dataset configured there is
            # simply nothing nearby.
            return []
        headers = {"X-App-Token": self.app_token} if self.app_token else None
        records = await self._get_json(
            self.base_url, params={"$limit": limit, "$order": "updated_at DESC"}, headers=headers
        )

        closures = []
        for index, record in enumerate(records):
            closure = parse_closure_record(record, index)
            if closure.lat is not None and closure.lon is not None:
                if distance_miles(lat, lon, closure.lat, closure.lon) > radius_miles:
                    continue
            closures.append(closure)
        return closures
