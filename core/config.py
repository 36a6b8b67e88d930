# =============================================================================
# core/config.py  —  Product Constants & Runtime Settings
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Collects every tunable number the operations advisor depends on, in two
#   groups:
#
#     1. PRODUCT CONSTANTS  (module-level, rarely change)
#        NYC bounds, borough tokens, venue coordinates, per-source timeouts,
#        cache TTLs, review thresholds, version stamps.
#
#     2. RUNTIME SETTINGS  (Settings dataclass, read from the environment)
#        Agent mode, model identifiers, turn budgets, token caps, provider
#        toggle and API keys.
#
# DATA SOURCE TOGGLE:
#   USE_LIVE_PROVIDERS=true   → real HTTP providers (needs API keys)
#   USE_LIVE_PROVIDERS=false  → deterministic mock providers (offline)
#
# The environment is read lazily by load_settings(), never at import time,
# so callers can run load_dotenv() first and tests can pass a Settings
# instance directly.
# =============================================================================

import os
from dataclasses import dataclass
from typing import Optional


# -----------------------------------------------------------------------------
# Version stamps (persisted on sessions and emitted with turn telemetry)
# -----------------------------------------------------------------------------
PROMPT_VERSION = "v1.1.0"
RULE_VERSION = "v1.1.0"
TOOL_CONTRACT_VERSION = "v1.1.0"
POLICY_VERSION = "v1.1.0"


# -----------------------------------------------------------------------------
# NYC geography
# -----------------------------------------------------------------------------
NYC_BOUNDS = {
    "min_lat": 40.4774,
    "max_lat": 40.9176,
    "min_lon": -74.2591,
    "max_lon": -73.7004,
}

NYC_BOROUGH_TOKENS = [
    "manhattan",
    "brooklyn",
    "queens",
    "bronx",
    "staten island",
    "new york",
]

NYC_ZIP_PREFIXES = ["100", "101", "102", "103", "104", "111", "112", "113", "114", "116"]

MAX_LOCATIONS = 3


@dataclass(frozen=True)
class ImpactVenue:
    """A large venue whose events move foot traffic for nearby restaurants."""

    id: str
    name: str
    lat: float
    lon: float
    impact_radius_miles: float


IMPACT_VENUES: list[ImpactVenue] = [
    ImpactVenue("msg", "Madison Square Garden", 40.7505, -73.9934, 0.4),
    ImpactVenue("barclays", "Barclays Center", 40.6826, -73.9754, 0.4),
    ImpactVenue("yankee", "Yankee Stadium", 40.8296, -73.9262, 0.3),
    ImpactVenue("citi", "Citi Field", 40.7571, -73.8458, 0.3),
    ImpactVenue("ubs", "UBS Arena", 40.7118, -73.7260, 0.3),
]

# Event impact window, relative to event start.
EVENT_IMPACT_LEAD_HOURS = 2
EVENT_IMPACT_TAIL_HOURS = 1
EVENT_DEFAULT_START_TIME = "19:00:00"
EVENT_SEARCH_PAGE_SIZE = 8

CLOSURE_RADIUS_MILES = 0.6
CLOSURE_FETCH_LIMIT = 100
CLOSURE_MAX_PER_LOCATION = 5

# Weather thresholds (OpenWeather 3-hour forecast points, imperial units).
RAIN_PROBABILITY_THRESHOLD = 0.6
FEELS_LIKE_COLD_F = 35
FEELS_LIKE_HOT_F = 90


# -----------------------------------------------------------------------------
# Source timeouts and cache TTLs
# -----------------------------------------------------------------------------
# A timeout yields a "timeout" source status, never an exception.
SOURCE_TIMEOUTS_MS = {
    "geocode": 900,
    "weather": 1200,
    "events": 1500,
    "closures": 1600,
    "reviews": 800,
    "doe": 250,
}

CACHE_TTL_MS = {
    "weather": 3 * 60 * 60 * 1000,
    "events": 12 * 60 * 60 * 1000,
    "closures": 6 * 60 * 60 * 1000,
    "reviews": 24 * 60 * 60 * 1000,
}

DOE_STALE_AFTER_SECONDS = 7 * 24 * 60 * 60


# -----------------------------------------------------------------------------
# Review signal thresholds
# -----------------------------------------------------------------------------
# These came out of empirical tuning; override through the environment rather
# than editing them here.
REVIEW_RECENCY_WINDOW_DAYS = 90
REVIEW_OLD_THRESHOLD_DAYS = int(os.environ.get("REVIEW_OLD_THRESHOLD_DAYS", "180"))
REVIEW_THEME_MIN_COUNT = int(os.environ.get("REVIEW_THEME_MIN_COUNT", "2"))
REVIEW_THEME_MIN_SHARE = float(os.environ.get("REVIEW_THEME_MIN_SHARE", "0.30"))
REVIEW_MIN_EVIDENCE_FOR_MEDIUM = 3
REVIEW_EXCERPT_MAX_LEN = 160
REVIEW_TOP_REFS = 3


# -----------------------------------------------------------------------------
# Agent loop limits
# -----------------------------------------------------------------------------
MIN_REPAIR_BUDGET_MS = 300
MAX_REPAIR_TIMEOUT_MS = 1200
SIGNAL_PACK_SUMMARY_TIMEOUT_MS = 700
SIGNAL_PACK_SUMMARY_MIN_BUDGET_MS = 200
SIGNAL_PACK_SUMMARY_MAX_TOKENS = 220

# Share of a request budget the primary model may spend when a fallback
# model is configured; the fallback gets whatever is left.
PRIMARY_MODEL_BUDGET_SHARE = 0.6

IDEMPOTENCY_TTL_MS = 5 * 60 * 1000
CIRCUIT_BREAKER_THRESHOLD = 1


# =============================================================================
# Runtime settings
# =============================================================================
def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("true", "on", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class Settings:
    """Runtime configuration for one process.

    Every field has a safe default so the advisor runs offline with mock
    providers and the deterministic engine when nothing is configured.
    """

    agent_mode: bool = False                       # AGENT_MODE=on enables the LLM path
    primary_model: str = "openrouter/moonshotai/kimi-k2.5"
    fallback_model: str = "openrouter/minimax/minimax-m2.5"

    # --- Turn budgets (milliseconds) ---
    turn_budget_first_ms: int = 8000
    turn_budget_followup_ms: int = 6000
    turn_repair_reserve_ms: int = 1500

    # --- Model output caps ---
    max_tokens_first_turn: int = 900
    max_tokens_followup: int = 700
    max_tool_rounds: int = 2
    max_tool_calls: int = 8

    # --- Providers ---
    use_live_providers: bool = False
    openweather_api_key: Optional[str] = None
    ticketmaster_api_key: Optional[str] = None
    google_places_api_key: Optional[str] = None
    nyc_dot_closures_url: Optional[str] = None
    nyc_open_data_app_token: Optional[str] = None


def load_settings() -> Settings:
    """Build Settings from the current process environment.

    Call this AFTER load_dotenv() so values from .env are visible.
    """
    return Settings(
        agent_mode=os.environ.get("AGENT_MODE", "off").lower() == "on",
        primary_model=os.environ.get("OPENROUTER_MODEL", Settings.primary_model),
        fallback_model=os.environ.get("OPENROUTER_FALLBACK_MODEL", Settings.fallback_model),
        turn_budget_first_ms=_env_int("TURN_BUDGET_FIRST_MS", Settings.turn_budget_first_ms),
        turn_budget_followup_ms=_env_int("TURN_BUDGET_FOLLOWUP_MS", Settings.turn_budget_followup_ms),
        turn_repair_reserve_ms=_env_int("TURN_REPAIR_RESERVE_MS", Settings.turn_repair_reserve_ms),
        max_tokens_first_turn=_env_int("AGENT_MAX_TOKENS_FIRST_TURN", Settings.max_tokens_first_turn),
        max_tokens_followup=_env_int("AGENT_MAX_TOKENS_FOLLOWUP", Settings.max_tokens_followup),
        max_tool_rounds=_env_int("AGENT_MAX_TOOL_ROUNDS", Settings.max_tool_rounds),
        max_tool_calls=_env_int("AGENT_MAX_TOOL_CALLS", Settings.max_tool_calls),
        use_live_providers=_env_bool("USE_LIVE_PROVIDERS"),
        openweather_api_key=os.environ.get("OPENWEATHER_API_KEY"),
        ticketmaster_api_key=os.environ.get("TICKETMASTER_API_KEY"),
        google_places_api_key=os.environ.get("GOOGLE_PLACES_API_KEY"),
        nyc_dot_closures_url=os.environ.get("NYC_DOT_CLOSURES_URL"),
        nyc_open_data_app_token=os.environ.get("NYC_OPEN_DATA_APP_TOKEN"),
    )
