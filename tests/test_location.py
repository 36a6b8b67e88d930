"""
Unit tests for NYC geography checks and location resolution.

Tests core/geo.py and core/location.py
"""

import asyncio

import pytest

from core.geo import distance_miles, is_nyc_address, is_nyc_zip, is_within_nyc_bounds, truncate_snippet
from core.location import parse_location_inputs, resolve_locations, should_reject_before_lookup

from fakes import ASTORIA_LABEL, HK_LABEL, FakePlaces


class TestGeo:
    """NYC bounds, ZIP and address checks."""

    def test_bounds(self):
        assert is_within_nyc_bounds(40.7530, -73.9960)
        assert not is_within_nyc_bounds(42.6526, -73.7562)  # Albany

    def test_nyc_zip(self):
        assert is_nyc_zip("11201")
        assert is_nyc_zip(" 10001 ")
        assert not is_nyc_zip("07030")
        assert not is_nyc_zip("1120")

    def test_nyc_address_needs_state_and_borough_or_zip(self):
        assert is_nyc_address("620 Atlantic Ave, Brooklyn, NY 11217, USA")
        assert is_nyc_address("456 W 34th St, New York, NY 10001, USA")
        assert not is_nyc_address("300 Washington St, Hoboken, NJ 07030, USA")
        assert not is_nyc_address("12 Main St, Brooklyn, CT 06234")

    def test_distance_between_garden_and_hells_kitchen(self):
        miles = distance_miles(40.7505, -73.9934, 40.7530, -73.9960)
        assert 0.1 < miles < 0.4

    def test_truncate_snippet(self):
        assert truncate_snippet("short   text") == "short text"
        cut = truncate_snippet("x" * 200, 160)
        assert len(cut) == 160
        assert cut.endswith("…")


class TestParseLocationInputs:
    """Splitting, dedupe and the three-location cap."""

    def test_semicolons_and_newlines_split(self):
        assert parse_location_inputs(["Astoria; Williamsburg\n11201"]) == ["Astoria", "Williamsburg", "11201"]

    def test_single_address_with_commas_is_kept_whole(self):
        assert parse_location_inputs(["350 5th Ave, New York, NY 10118"]) == ["350 5th Ave, New York, NY 10118"]

    def test_comma_after_zip_splits_multiple_addresses(self):
        parsed = parse_location_inputs(["350 5th Ave, New York, NY 10118, 620 Atlantic Ave, Brooklyn, NY 11217"])
        assert parsed == ["350 5th Ave, New York, NY 10118", "620 Atlantic Ave, Brooklyn, NY 11217"]

    def test_dedupe_and_cap(self):
        parsed = parse_location_inputs(["Astoria", "Astoria", "Williamsburg", "11201", "Hell's Kitchen"])
        assert parsed == ["Astoria", "Williamsburg", "11201"]

    def test_noise_rejected_before_lookup(self):
        assert should_reject_before_lookup("xy")
        assert should_reject_before_lookup("   ")
        assert not should_reject_before_lookup("11201")
        assert not should_reject_before_lookup("Astoria")


class TestResolveLocations:
    """Provider-backed resolution with NYC validation."""

    @pytest.mark.asyncio
    async def test_resolves_in_input_order_and_flags_non_nyc(self):
        places = FakePlaces()
        resolution = await resolve_locations(["Hell's Kitchen; Hoboken; Astoria"], places)

        assert [loc.label for loc in resolution.resolved] == [HK_LABEL, ASTORIA_LABEL]
        assert resolution.invalid == ["Hoboken"]
        assert all(loc.is_nyc for loc in resolution.resolved)

    @pytest.mark.asyncio
    async def test_noise_never_reaches_the_provider(self):
        places = FakePlaces()
        resolution = await resolve_locations(["xy"], places)

        assert resolution.resolved == []
        assert resolution.invalid == ["xy"]
        assert places.search_calls == 0

    @pytest.mark.asyncio
    async def test_lookup_timeout_marks_input_invalid(self):
        class SlowPlaces(FakePlaces):
            async def search(self, query, max_results=3):
                await asyncio.sleep(0.2)
                return await super().search(query, max_results)

        resolution = await resolve_locations(["Astoria"], SlowPlaces(), timeout_ms=20)

        assert resolution.resolved == []
        assert resolution.invalid == ["Astoria"]
