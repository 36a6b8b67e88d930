"""
Unit tests for the live provider clients.

Tests core/providers.py against httpx.MockTransport, so no request ever
leaves the process.
"""

from datetime import datetime, timezone

import httpx
import pytest

from core.providers import (
    GooglePlacesClient,
    NycDotClosuresClient,
    OpenWeatherClient,
    TicketmasterClient,
    parse_closure_record,
)

from fakes import NYC_TZ


def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestGooglePlaces:
    @pytest.mark.asyncio
    async def test_search_parses_places(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"places": [{
                "id": "ChIJ-hk",
                "displayName": {"text": "Hell's Kitchen Tavern"},
                "formattedAddress": "456 W 34th St, New York, NY 10001, USA",
                "location": {"latitude": 40.753, "longitude": -73.996},
            }]})

        client = GooglePlacesClient("key-1", http=mock_http(handler))
        places = await client.search("Hell's Kitchen", max_results=2)

        assert [(p.id, p.name, p.lat) for p in places] == [("ChIJ-hk", "Hell's Kitchen Tavern", 40.753)]
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/places:searchText"
        assert request.headers["X-Goog-Api-Key"] == "key-1"
        assert b'"maxResultCount":2' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_reviews(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/places/ChIJ-hk"
            return httpx.Response(200, json={"reviews": [
                {"name": "places/ChIJ-hk/reviews/1", "publishTime": "2026-03-01T12:00:00Z",
                 "rating": 4, "text": {"text": "Long wait at the door."}},
                {"name": "places/ChIJ-hk/reviews/2"},
            ]})

        reviews = await GooglePlacesClient("key-1", http=mock_http(handler)).reviews("ChIJ-hk")

        assert reviews[0].text == "Long wait at the door."
        assert reviews[1].text == ""
        assert reviews[1].rating is None

    @pytest.mark.asyncio
    async def test_missing_key_raises(self):
        client = GooglePlacesClient(None, http=mock_http(lambda request: httpx.Response(200, json={})))
        with pytest.raises(RuntimeError):
            await client.search("Astoria")


class TestOpenWeather:
    @pytest.mark.asyncio
    async def test_forecast_is_converted_to_nyc_time(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["units"] == "imperial"
            assert request.url.params["appid"] == "wx"
            return httpx.Response(200, json={"list": [
                # 2026-03-10 20:00 UTC
                {"dt": 1773172800, "pop": 0.6, "main": {"feels_like": 41.5}},
            ]})

        points = await OpenWeatherClient("wx", http=mock_http(handler)).forecast(40.75, -73.99)

        assert points[0].at == "2026-03-10T16:00:00-04:00"
        assert (points[0].pop, points[0].feels_like) == (0.6, 41.5)

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        client = OpenWeatherClient("wx", http=mock_http(lambda request: httpx.Response(503)))
        with pytest.raises(httpx.HTTPStatusError):
            await client.forecast(40.75, -73.99)


class TestTicketmaster:
    @pytest.mark.asyncio
    async def test_search(self):
        def handler(request: httpx.Request) -> httpx.Response:
            params = request.url.params
            assert params["keyword"] == "Madison Square Garden"
            assert params["startDateTime"] == "2026-03-10T13:00:00Z"
            assert params["sort"] == "date,asc"
            return httpx.Response(200, json={"_embedded": {"events": [
                {"name": "New York Knicks vs. Boston Celtics",
                 "dates": {"start": {"localDate": "2026-03-11", "localTime": "19:30:00"}}},
                {"name": "Open Practice", "dates": {"start": {"localDate": "2026-03-12"}}},
            ]}})

        start = datetime(2026, 3, 10, 9, 0, tzinfo=NYC_TZ)
        end = datetime(2026, 3, 13, 9, 0, tzinfo=timezone.utc)
        events = await TicketmasterClient("tm", http=mock_http(handler)).search("Madison Square Garden", start, end)

        assert events[0].local_time == "19:30:00"
        assert events[1].local_time is None

    @pytest.mark.asyncio
    async def test_no_events(self):
        client = TicketmasterClient("tm", http=mock_http(lambda request: httpx.Response(200, json={"page": {}})))
        start = datetime(2026, 3, 10, tzinfo=NYC_TZ)
        assert await client.search("Barclays Center", start, start) == []


class TestNycDotClosures:
    @pytest.mark.asyncio
    async def test_unconfigured_dataset_means_no_closures(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = NycDotClosuresClient(None, http=mock_http(handler))
        assert await client.nearby(40.775, -73.911, 0.5) == []

    @pytest.mark.asyncio
    async def test_radius_filter(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["X-App-Token"] == "token"
            assert request.url.params["$limit"] == "50"
            return httpx.Response(200, json=[
                {"id": "near", "event_name": "Street fair", "latitude": "40.7752", "longitude": "-73.9105"},
                {"id": "far", "event_name": "Parade", "latitude": "40.6892", "longitude": "-74.0445"},
                {"id": "unplaced", "activity": "Paving"},
            ])

        client = NycDotClosuresClient("https://data.example/closures.json", "token", http=mock_http(handler))
        closures = await client.nearby(40.775, -73.911, 0.5, limit=50)

        assert [c.id for c in closures] == ["near", "unplaced"]

    def test_record_field_fallbacks(self):
        closure = parse_closure_record(
            {"on_street_name": "Ditmars Blvd", "from_date": "2026-03-11T10:00:00",
             "location": {"latitude": "40.7752", "longitude": "-73.9105"}},
            7,
        )
        assert closure.id == "7"
        assert closure.title == "Street closure"
        assert closure.street == "Ditmars Blvd"
        assert closure.start_at == "2026-03-11T10:00:00"
        assert closure.lat == 40.7752
