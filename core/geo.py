# =============================================================================
# core/geo.py  —  NYC Geography Helpers
# =============================================================================
#
# Small pure functions shared by the location resolver and the source
# fetchers: bounding-box checks, ZIP/address validation, great-circle
# distance, and review excerpt normalisation.
# =============================================================================

import math
import re

from core.config import NYC_BOROUGH_TOKENS, NYC_BOUNDS, NYC_ZIP_PREFIXES

_EARTH_RADIUS_MILES = 3958.8
_NY_STATE_RE = re.compile(r"\bny\b|new york,\s*ny")
_ZIP_RE = re.compile(r"\b(\d{5})\b")
_FIVE_DIGITS_RE = re.compile(r"^\d{5}$")
_WHITESPACE_RE = re.compile(r"\s+")


def is_within_nyc_bounds(lat: float, lon: float) -> bool:
    return (
        NYC_BOUNDS["min_lat"] <= lat <= NYC_BOUNDS["max_lat"]
        and NYC_BOUNDS["min_lon"] <= lon <= NYC_BOUNDS["max_lon"]
    )


def is_nyc_zip(value: str) -> bool:
    """True for a bare 5-digit ZIP whose 3-digit prefix is an NYC prefix."""
    zip_code = value.strip()
    if not _FIVE_DIGITS_RE.match(zip_code):
        return False
    return zip_code[:3] in NYC_ZIP_PREFIXES


def is_nyc_address(address: str) -> bool:
    """Check a provider's formatted address for NYC markers.

    A match needs an NY state token AND either a borough token or a ZIP with
    an NYC prefix.  This catches provider results that land just outside the
    five boroughs but still inside the lat/lon bounding box.
    """
    normalized = address.lower()
    has_ny_state = bool(_NY_STATE_RE.search(normalized))
    has_borough = any(token in normalized for token in NYC_BOROUGH_TOKENS)
    zip_match = _ZIP_RE.search(normalized)
    zip_ok = bool(zip_match) and zip_match.group(1)[:3] in NYC_ZIP_PREFIXES
    return has_ny_state and (has_borough or zip_ok)


def distance_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in miles."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return _EARTH_RADIUS_MILES * c


def truncate_snippet(text: str, max_len: int = 160) -> str:
    """Collapse whitespace and cut to max_len characters, ending in an ellipsis."""
    normalized = _WHITESPACE_RE.sub(" ", text).strip()
    if len(normalized) <= max_len:
        return normalized
    return normalized[: max_len - 1] + "…"
