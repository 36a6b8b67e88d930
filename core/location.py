# =============================================================================
# core/location.py  —  Location Resolver
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Turns the user's free-text location inputs into validated NYC places.
#
#   1. SPLIT   combined text on newlines/semicolons, or on commas that follow
#              a ZIP when a single string carries several ZIPs
#   2. DEDUPE  preserving first-seen order, then cap at MAX_LOCATIONS
#   3. FILTER  obvious noise before spending a geocode call on it
#   4. LOOKUP  each survivor through the places provider (in parallel) and
#              accept the first result that is inside the NYC bounding box
#              AND carries NYC markers in its formatted address
#
#   Inputs that fail anywhere along the way land in `invalid`; nothing is
#   silently dropped.
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from core.config import MAX_LOCATIONS, SOURCE_TIMEOUTS_MS
from core.geo import is_nyc_address, is_nyc_zip, is_within_nyc_bounds
from core.models import ResolvedLocation
from core.providers import PlacesProvider

logger = logging.getLogger(__name__)

_HARD_SPLIT_RE = re.compile(r"[\n;]+")
_ZIP_ANYWHERE_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
# Python's lookbehind must be fixed width, so the ZIP+4 form gets its own branch.
_COMMA_AFTER_ZIP_RE = re.compile(r"(?:(?<=\b\d{5})|(?<=\b\d{5}-\d{4}))\s*,\s*")
_STREET_TOKEN_RE = re.compile(
    r"\b(st|street|ave|avenue|blvd|boulevard|rd|road|dr|drive|ln|lane|pl|place|ct|court|way|pkwy|parkway)\b"
)
_DIGIT_RE = re.compile(r"\d")


@dataclass
class LocationResolution:
    resolved: list[ResolvedLocation] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)


def _split_location_input(raw: str) -> list[str]:
    normalized = raw.strip()
    if not normalized:
        return []

    if "\n" in normalized or ";" in normalized:
        return [item.strip() for item in _HARD_SPLIT_RE.split(normalized) if item.strip()]

    if len(_ZIP_ANYWHERE_RE.findall(normalized)) <= 1:
        return [normalized]

    pieces = [item.strip() for item in _COMMA_AFTER_ZIP_RE.split(normalized) if item.strip()]
    return pieces or [normalized]


def parse_location_inputs(inputs: list[str]) -> list[str]:
    """Split, dedupe (order-preserving) and cap the raw inputs."""
    expanded = [piece for raw in inputs for piece in _split_location_input(raw)]
    deduped = list(dict.fromkeys(expanded))
    return deduped[:MAX_LOCATIONS]


def is_likely_address_input(value: str) -> bool:
    normalized = value.lower()
    return bool(_DIGIT_RE.search(normalized)) and bool(_STREET_TOKEN_RE.search(normalized))


def should_reject_before_lookup(value: str) -> bool:
    """Noise filter: reject without a provider call.

    ZIPs and street-address-looking inputs always survive; anything else
    shorter than three characters is rejected.
    """
    normalized = value.strip()
    if not normalized:
        return True
    if is_nyc_zip(normalized) or is_likely_address_input(normalized):
        return False
    return len(normalized) < 3


async def _resolve_one(
    candidate: str, places: PlacesProvider, timeout_ms: int
) -> Optional[ResolvedLocation]:
    try:
        results = await asyncio.wait_for(
            places.search(candidate, max_results=3), timeout=timeout_ms / 1000
        )
    except Exception as exc:
        logger.info("Location lookup failed for %r: %s", candidate, exc.__class__.__name__)
        return None

    for place in results:
        if is_within_nyc_bounds(place.lat, place.lon) and is_nyc_address(place.formatted_address):
            return ResolvedLocation(
                input=candidate,
                label=place.name,
                place_id=place.id,
                address=place.formatted_address,
                lat=place.lat,
                lon=place.lon,
                is_nyc=True,
            )
    return None


async def resolve_locations(
    inputs: list[str],
    places: PlacesProvider,
    timeout_ms: int = SOURCE_TIMEOUTS_MS["geocode"],
) -> LocationResolution:
    """Resolve up to three free-text inputs to NYC places.

    Args:
        inputs:     Raw strings from the user (may each contain several locations).
        places:     Places search provider.
        timeout_ms: Per-lookup timeout; a timeout marks that input invalid.

    Returns:
        LocationResolution with resolved places and invalid inputs, both in
        input order.
    """
    candidates = parse_location_inputs(inputs)
    result = LocationResolution()

    lookups = [c for c in candidates if not should_reject_before_lookup(c)]
    resolved = await asyncio.gather(*(_resolve_one(c, places, timeout_ms) for c in lookups))
    by_candidate = dict(zip(lookups, resolved))

    for candidate in candidates:
        location = by_candidate.get(candidate)
        if location is None:
            result.invalid.append(candidate)
        else:
            result.resolved.append(location)
    return result
