# =============================================================================
# tools/registry.py  —  Agent Tool Registry (closed tool set + per-turn toolbox)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Defines the ONLY tools the model may call during a turn, and executes
#   them against the source fetchers.
#
#   ToolName     closed enum of tool names.  Anything else is UNKNOWN_TOOL.
#   TOOL_SPECS   name → description + JSON-schema parameters.  The model
#                reads the description to decide WHEN to call a tool, so
#                these are written for the model, not for developers.
#   TurnToolbox  one per turn.  Owns the turn's circuit breaker and memoises
#                each source's result, so the prefetch and any later model
#                calls for the same source share ONE fetch.
#
# TOOL RESULT SHAPES (Context Budget Discipline):
#   get_memory               the session memory payload as given
#   get_weather / reviews    {location_label, signal, source_status}
#   get_events / closures    {location_label, signals, source_status}
#   get_doe                  {days, source_status}
#   get_competitor_reviews   {competitor_status, competitor_name,
#                             competitor_review, source_status}
#
# FAILURE CODES:
#   CIRCUIT_OPEN          the source already failed this turn
#   TOOL_EXECUTION_ERROR  the handler itself raised
#   UNKNOWN_TOOL          the model asked for a tool that does not exist
#
# Like the rest of tools/, nothing here knows about Google ADK.  The model
# client converts TOOL_SPECS into its own declaration format.
# =============================================================================

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from core.circuit_breaker import BreakerEvent, TurnCircuitBreaker
from core.models import (
    CORE_SOURCES,
    CompetitorContext,
    ResolvedLocation,
    SourceResult,
    SourceSnapshot,
    SourceStatus,
)
from core.sources import SourceFetcher, snapshot_from_results

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    GET_MEMORY = "get_memory"
    GET_WEATHER = "get_weather"
    GET_EVENTS = "get_events"
    GET_CLOSURES = "get_closures"
    GET_DOE = "get_doe"
    GET_REVIEWS = "get_reviews"
    GET_COMPETITOR_REVIEWS = "get_competitor_reviews"


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    source_name: str
    description: str
    parameters: dict


_NO_PARAMS = {"type": "object", "additionalProperties": False, "properties": {}}
_LOCATION_PARAMS = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "location_label": {"type": "string", "description": "Exact location label from memory"},
    },
}

TOOL_SPECS: dict[ToolName, ToolSpec] = {
    ToolName.GET_MEMORY: ToolSpec(
        ToolName.GET_MEMORY, "system",
        "Read current session memory including locations, baseline staffing, card type, and assumptions.",
        _NO_PARAMS,
    ),
    ToolName.GET_WEATHER: ToolSpec(
        ToolName.GET_WEATHER, "weather",
        "Get weather signal for a location for the next 3 days (rain and temperature extremes).",
        _LOCATION_PARAMS,
    ),
    ToolName.GET_EVENTS: ToolSpec(
        ToolName.GET_EVENTS, "events",
        "Get nearby major venue event signals for a location (MSG, Barclays, etc.).",
        _LOCATION_PARAMS,
    ),
    ToolName.GET_CLOSURES: ToolSpec(
        ToolName.GET_CLOSURES, "closures",
        "Get nearby NYC DOT street closure signals for a location to assess access risk.",
        _LOCATION_PARAMS,
    ),
    ToolName.GET_DOE: ToolSpec(
        ToolName.GET_DOE, "doe",
        "Get DOE calendar signals that may shift weekday lunch/dinner demand mix.",
        _NO_PARAMS,
    ),
    ToolName.GET_REVIEWS: ToolSpec(
        ToolName.GET_REVIEWS, "reviews",
        "Get own-location guest review signals and evidence references for staffing friction themes.",
        _LOCATION_PARAMS,
    ),
    ToolName.GET_COMPETITOR_REVIEWS: ToolSpec(
        ToolName.GET_COMPETITOR_REVIEWS, "reviews",
        "Get one competitor's review snapshot when competitor is already resolved for this session.",
        _NO_PARAMS,
    ),
}


def parse_tool_name(name: str) -> Optional[ToolName]:
    try:
        return ToolName(name)
    except ValueError:
        return None


@dataclass
class ToolExecution:
    """What happened when one tool ran; `result` is what the model sees."""

    tool_name: str
    source_name: str
    status: str
    latency_ms: int
    result: dict
    args: dict = field(default_factory=dict)
    cache_hit: Optional[bool] = None
    freshness_seconds: Optional[int] = None
    error_code: Optional[str] = None


def _dump(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, list):
        return [asdict(item) for item in value]
    return asdict(value)


class TurnToolbox:
    """Executes agent tools for one turn.

    Args:
        fetcher:        Process-wide SourceFetcher (holds the shared cache).
        locations:      Resolved locations for the turn.
        memory_payload: Dict returned verbatim by get_memory.
        competitor:     Outcome of the session's competitor lookup.
        breaker:        Fresh per turn; defaults to a new TurnCircuitBreaker.
    """

    def __init__(
        self,
        fetcher: SourceFetcher,
        locations: list[ResolvedLocation],
        memory_payload: dict,
        competitor: Optional[CompetitorContext] = None,
        breaker: Optional[TurnCircuitBreaker] = None,
    ):
        self.fetcher = fetcher
        self.locations = locations
        self.memory_payload = memory_payload
        self.competitor = competitor or CompetitorContext()
        self.breaker = breaker or TurnCircuitBreaker()
        self._statuses: dict[str, SourceStatus] = {name: SourceStatus() for name in CORE_SOURCES}
        self._results: dict[str, SourceResult] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._handlers: dict[ToolName, Callable[[dict], Awaitable[ToolExecution]]] = {
            ToolName.GET_MEMORY: self._get_memory,
            ToolName.GET_WEATHER: self._get_weather,
            ToolName.GET_EVENTS: self._get_events,
            ToolName.GET_CLOSURES: self._get_closures,
            ToolName.GET_DOE: self._get_doe,
            ToolName.GET_REVIEWS: self._get_reviews,
            ToolName.GET_COMPETITOR_REVIEWS: self._get_competitor_reviews,
        }

    # -------------------------------------------------------------------------
    # Public surface
    # -------------------------------------------------------------------------
    async def execute(self, name: str, args: Optional[dict] = None) -> ToolExecution:
        args = args or {}
        tool = parse_tool_name(name)
        if tool is None:
            logger.info("Model requested unknown tool %s", name)
            return ToolExecution(
                tool_name=name,
                source_name="system",
                status="error",
                latency_ms=0,
                args=args,
                error_code="UNKNOWN_TOOL",
                result={"error": f"Unknown tool {name}"},
            )
        return await self._handlers[tool](args)

    async def prefetch_core(self) -> list[ToolExecution]:
        """Run every core source tool concurrently, whatever the model will need."""
        names = [
            ToolName.GET_WEATHER,
            ToolName.GET_EVENTS,
            ToolName.GET_CLOSURES,
            ToolName.GET_DOE,
            ToolName.GET_REVIEWS,
        ]
        if self._competitor_resolved():
            names.append(ToolName.GET_COMPETITOR_REVIEWS)
        return list(await asyncio.gather(*(self.execute(name.value) for name in names)))

    def source_statuses(self) -> dict[str, SourceStatus]:
        return dict(self._statuses)

    def source_snapshot(self) -> SourceSnapshot:
        return snapshot_from_results(self._results)

    def breaker_events(self) -> list[BreakerEvent]:
        return self.breaker.events()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------
    def _competitor_resolved(self) -> bool:
        return self.competitor.status == "resolved" and bool(self.competitor.place_id)

    def _pick_location_label(self, args: dict) -> str:
        provided = str(args.get("location_label") or "").strip()
        fallback = self.locations[0].label if self.locations else "your locations"
        if not provided:
            return fallback
        return next((loc.label for loc in self.locations if loc.label == provided), fallback)

    def _start_fetch(self, source_name: str) -> Awaitable[SourceResult]:
        if source_name == "weather":
            return self.fetcher.fetch_weather(self.locations)
        if source_name == "events":
            return self.fetcher.fetch_events(self.locations)
        if source_name == "closures":
            return self.fetcher.fetch_closures(self.locations)
        if source_name == "doe":
            return self.fetcher.fetch_doe()
        competitor_id = self.competitor.place_id if self._competitor_resolved() else None
        return self.fetcher.fetch_reviews(self.locations, competitor_id)

    async def _load(self, source_name: str) -> None:
        # Concurrent callers for the same source await the same future.
        if source_name not in self._inflight:
            self._inflight[source_name] = asyncio.ensure_future(self._start_fetch(source_name))
        result = await self._inflight[source_name]
        self._results[source_name] = result
        self._statuses[source_name] = result.status

    async def _run(
        self,
        tool: ToolName,
        args: dict,
        build_result: Callable[[], dict],
        load: bool = True,
    ) -> ToolExecution:
        source_name = TOOL_SPECS[tool].source_name
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        if not self.breaker.can_run(source_name):
            return ToolExecution(
                tool_name=tool.value,
                source_name=source_name,
                status="error",
                latency_ms=elapsed(),
                args=args,
                error_code="CIRCUIT_OPEN",
                result={"error": f"{source_name} temporarily unavailable in this turn"},
            )

        try:
            if load:
                await self._load(source_name)
            status = self._statuses[source_name]
            if status.status in ("ok", "stale"):
                self.breaker.mark_success(source_name)
            else:
                self.breaker.mark_failure(source_name)
            return ToolExecution(
                tool_name=tool.value,
                source_name=source_name,
                status=status.status,
                latency_ms=elapsed(),
                args=args,
                cache_hit=status.cache_hit,
                freshness_seconds=status.freshness_seconds,
                error_code=status.error_code,
                result=build_result(),
            )
        except Exception as exc:
            logger.warning("Tool %s failed: %s", tool.value, exc)
            self.breaker.mark_failure(source_name)
            self._statuses[source_name] = SourceStatus(status="error", error_code="TOOL_EXECUTION_ERROR")
            return ToolExecution(
                tool_name=tool.value,
                source_name=source_name,
                status="error",
                latency_ms=elapsed(),
                args=args,
                error_code="TOOL_EXECUTION_ERROR",
                result={"error": str(exc) or "unknown_error"},
            )

    def _status_dict(self, source_name: str) -> dict:
        return asdict(self._statuses[source_name])

    def _by_location(self, source_name: str, label: str, default: Any) -> Any:
        result = self._results.get(source_name)
        return result.by_location.get(label, default) if result is not None else default

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------
    async def _get_memory(self, args: dict) -> ToolExecution:
        return ToolExecution(
            tool_name=ToolName.GET_MEMORY.value,
            source_name="system",
            status="ok",
            latency_ms=0,
            args=args,
            result=self.memory_payload,
        )

    async def _get_weather(self, args: dict) -> ToolExecution:
        label = self._pick_location_label(args)
        return await self._run(ToolName.GET_WEATHER, args, lambda: {
            "location_label": label,
            "signal": _dump(self._by_location("weather", label, None)),
            "source_status": self._status_dict("weather"),
        })

    async def _get_events(self, args: dict) -> ToolExecution:
        label = self._pick_location_label(args)
        return await self._run(ToolName.GET_EVENTS, args, lambda: {
            "location_label": label,
            "signals": _dump(self._by_location("events", label, [])),
            "source_status": self._status_dict("events"),
        })

    async def _get_closures(self, args: dict) -> ToolExecution:
        label = self._pick_location_label(args)
        return await self._run(ToolName.GET_CLOSURES, args, lambda: {
            "location_label": label,
            "signals": _dump(self._by_location("closures", label, [])),
            "source_status": self._status_dict("closures"),
        })

    async def _get_doe(self, args: dict) -> ToolExecution:
        return await self._run(ToolName.GET_DOE, args, lambda: {
            "days": _dump(self._results["doe"].days if "doe" in self._results else []),
            "source_status": self._status_dict("doe"),
        })

    async def _get_reviews(self, args: dict) -> ToolExecution:
        label = self._pick_location_label(args)
        return await self._run(ToolName.GET_REVIEWS, args, lambda: {
            "location_label": label,
            "signal": _dump(self._by_location("reviews", label, None)),
            "source_status": self._status_dict("reviews"),
        })

    async def _get_competitor_reviews(self, args: dict) -> ToolExecution:
        resolved = self._competitor_resolved()

        def build() -> dict:
            review = self._results["reviews"].competitor_review if resolved and "reviews" in self._results else None
            return {
                "competitor_status": self.competitor.status,
                "competitor_name": self.competitor.resolved_name,
                "competitor_review": _dump(review),
                "source_status": self._status_dict("reviews"),
            }

        return await self._run(ToolName.GET_COMPETITOR_REVIEWS, args, build, load=resolved)
