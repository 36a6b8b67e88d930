# =============================================================================
# agent/orchestrator.py  —  Turn Orchestrator
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Owns one chat turn from request to result:
#
#     idempotency check      same key within the TTL → same result, no rerun
#     session lock           turns of one session run strictly in order
#     resolve locations      zero valid → validation turn, no source calls
#     sync baseline memory   explicit vs. assumed FOH baselines, audited
#     resolve competitor     at most once per session
#     agent OR deterministic path (AGENT_MODE)
#     agent fallback         degraded agent output → deterministic engine on
#                            the SAME prefetched snapshot
#     persist + emit         messages, tool calls, recommendations, review
#                            runs, fallbacks, then "chat.turn.completed"
#
# FAILURE POLICY:
#   Nothing escapes run_turn.  Persistence and telemetry go through
#   _safe_side_effect (logged, swallowed).  Anything else unexpected is
#   caught by the outer guard and turned into a conservative system answer.
# =============================================================================

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Awaitable, Optional

from core.baseline import plan_baseline_memory
from core.config import SOURCE_TIMEOUTS_MS, Settings
from core.location import LocationResolution, resolve_locations
from core.models import (
    CORE_SOURCES,
    Citation,
    CompetitorContext,
    CompetitorSnapshot,
    Explanation,
    GuestSnapshot,
    LocationInputs,
    Recommendation,
    ResolvedLocation,
    SourceSnapshot,
    SourceStatus,
    TurnRequest,
    TurnResult,
)
from core.policy import PolicyDraft, apply_response_policy
from core.reviews import dominant_theme
from core.recommendation_engine import build_recommendations, system_fallback_recommendation
from core.sources import SourceFetcher

from agent.controller import (
    AgentController,
    AgentTurnInput,
    AgentTurnOutput,
    build_card_summary,
    build_competitor_snapshot,
)
from agent.events import EventEmitter
from agent.idempotency import IdempotencyCache
from agent.prompt import build_session_memory
from agent.session_lock import SessionLocks
from agent.store import (
    CompetitorCheck,
    FallbackRecord,
    InMemoryStore,
    MessageRecord,
    ReviewSignalRun,
    ToolCallRecord,
)
from tools.registry import ToolExecution, TurnToolbox

logger = logging.getLogger(__name__)

END_REASONS = ("completed", "user_exit", "inactive_timeout", "error")

VALIDATION_MESSAGE = (
    "I couldn't confidently match that to a NYC location. Please share a fuller NYC address, "
    "ZIP, or neighborhood (for example: 350 5th Ave, 11201, or Astoria)."
)
COMPETITOR_LIMIT_SNAPSHOT = "Competitor check already used in this session (v1.1 limit is one)."
SYSTEM_ONLY_REASON = "agent_returned_system_only_recommendations"


def validation_recommendation() -> Recommendation:
    return Recommendation(
        location_label="your NYC locations",
        action=(
            "Next 24h: run standard staffing and prep, keep delivery timing flexible, "
            "and re-check once valid NYC locations are entered"
        ),
        time_window="Next 24h",
        confidence="low",
        source_name="system",
        explanation=Explanation(
            why=[
                "No valid NYC locations were detected from this input.",
                "A conservative operating baseline reduces risk until location context is confirmed.",
            ],
            delta_reasoning=(
                "Use baseline staffing for the next 24 hours, then re-run once location inputs are corrected."
            ),
            escalation_trigger="Escalate only if live service indicators exceed your normal baseline.",
        ),
        citations=[Citation(source_name="system", note="location validation")],
    )


def build_deterministic_message(
    headline: str,
    recommendations: list[Recommendation],
    follow_up_question: str,
    competitor_snapshot: Optional[CompetitorSnapshot] = None,
) -> str:
    lines = [headline.strip() or "Next 3 days staffing and prep signals:"]
    if recommendations:
        top = recommendations[0]
        lines += ["", f"Top action: {top.action}"]
        if top.explanation.why and top.explanation.why[0].strip():
            lines.append(f"Why now: {top.explanation.why[0].strip()}")
    if competitor_snapshot is not None:
        lines += ["", f"Competitor check: {competitor_snapshot.label} ({competitor_snapshot.confidence})."]
    if len(recommendations) > 1:
        lines.append(f"I added {len(recommendations) - 1} more actions in the cards below.")
    lines += ["", follow_up_question]
    return "\n".join(lines)


@dataclass
class _TurnAnswer:
    """What either path hands back to the persistence/telemetry tail."""

    summary: str
    message: str
    recommendations: list[Recommendation]
    snapshots: list[GuestSnapshot]
    competitor_snapshot: Optional[CompetitorSnapshot]
    sources: dict[str, SourceStatus]
    source_snapshot: SourceSnapshot
    tool_executions: list[ToolExecution]
    agent_fallback: bool = False
    fallback_reason: Optional[str] = None


# =============================================================================
# TurnOrchestrator
# =============================================================================
class TurnOrchestrator:
    """Runs chat turns for any number of concurrent sessions.

    Args:
        settings:    Runtime settings (budgets, AGENT_MODE).
        fetcher:     Process-wide SourceFetcher; its providers.places is also
                     used for location and competitor lookups.
        controller:  AgentController for the model path; None means the
                     deterministic path runs even if AGENT_MODE is on.
        store:       Persistence; defaults to a fresh InMemoryStore.
        events:      Structured event emitter.
    """

    def __init__(
        self,
        settings: Settings,
        fetcher: SourceFetcher,
        controller: Optional[AgentController] = None,
        store: Optional[InMemoryStore] = None,
        events: Optional[EventEmitter] = None,
        locks: Optional[SessionLocks] = None,
        idempotency: Optional[IdempotencyCache] = None,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.places = fetcher.providers.places
        self.controller = controller
        self.store = store if store is not None else InMemoryStore()
        self.events = events if events is not None else EventEmitter()
        self.locks = locks if locks is not None else SessionLocks()
        self.idempotency = idempotency if idempotency is not None else IdempotencyCache()

    @property
    def agent_enabled(self) -> bool:
        return self.settings.agent_mode and self.controller is not None

    # -------------------------------------------------------------------------
    # Public surface
    # -------------------------------------------------------------------------
    async def run_turn(self, request: TurnRequest) -> TurnResult:
        """Run one turn.  Never raises; always returns a non-empty result."""
        session_id = request.session_id or str(uuid.uuid4())
        request = replace(request, session_id=session_id)
        trace_id = uuid.uuid4().hex

        if not request.idempotency_key:
            return await self._locked_turn(request, trace_id)

        key = f"{session_id}:{request.idempotency_key}"
        result, reused = await self.idempotency.run(key, lambda: self._locked_turn(request, trace_id))
        if not reused:
            return result
        self.events.emit(
            "agent_idempotency_reused",
            trace_id=trace_id,
            session_id=session_id,
            turn_index=result.turn_index,
            idempotency_key=request.idempotency_key,
        )
        # Same object as the first caller; reuse shows up in telemetry only.
        return result

    async def end_session(self, session_id: str, end_reason: str = "completed") -> None:
        if end_reason not in END_REASONS:
            raise ValueError(f"Unknown end reason {end_reason!r}; expected one of {', '.join(END_REASONS)}")
        record = await self.store.end_session(session_id, end_reason)
        self.events.emit(
            "chat_session_ended",
            session_id=session_id,
            end_reason=end_reason,
            status=record.status,
            had_fallback=record.had_fallback,
        )

    async def resolve_locations(self, inputs: list[str]) -> LocationResolution:
        return await resolve_locations(inputs, self.places)

    # -------------------------------------------------------------------------
    # Lock + guard
    # -------------------------------------------------------------------------
    async def _locked_turn(self, request: TurnRequest, trace_id: str) -> TurnResult:
        async with self.locks.hold(request.session_id) as wait_ms:
            if wait_ms > 0:
                self.events.emit(
                    "agent_lock_waited", trace_id=trace_id, session_id=request.session_id, wait_ms=wait_ms
                )
            result = await self._guarded_turn(request, trace_id)
            result.lock_wait_ms = wait_ms
            return result

    async def _guarded_turn(self, request: TurnRequest, trace_id: str) -> TurnResult:
        started = time.monotonic()
        session_id = request.session_id
        turn_index = 0
        try:
            await self.store.ensure_session(session_id, request.distinct_id)
            turn_index = await self.store.next_turn_index(session_id)
            return await self._execute_turn(request, turn_index, trace_id, started)
        except Exception as exc:
            logger.exception("Turn %s/%s failed; returning conservative answer", session_id, turn_index)
            self.events.emit(
                "chat.error",
                level="error",
                trace_id=trace_id,
                session_id=session_id,
                turn_index=turn_index,
                error_code="TURN_FAILED",
                error_class=type(exc).__name__,
            )
            return self._conservative_result(request, turn_index, started)

    def _conservative_result(self, request: TurnRequest, turn_index: int, started: float) -> TurnResult:
        recommendation = system_fallback_recommendation("your locations")
        return TurnResult(
            session_id=request.session_id,
            turn_index=turn_index,
            summary="I hit a problem pulling signals for this turn, so here is a conservative plan.",
            message=(
                "I hit a problem pulling signals for this turn, so here is a conservative plan.\n\n"
                f"Top action: {recommendation.action}\n\n"
                "Want me to retry now with the same locations and baseline?"
            ),
            location_labels=[],
            recommendations=[recommendation],
            snapshots=[],
            sources={name: SourceStatus(status="error", error_code="TURN_FAILED") for name in CORE_SOURCES},
            used_fallback=True,
            latency_ms=_elapsed_ms(started),
        )

    async def _safe_side_effect(
        self, label: str, operation: Awaitable, trace_id: str, session_id: str, turn_index: int
    ) -> None:
        try:
            await operation
        except Exception as exc:
            logger.warning("Side effect %s failed: %s", label, exc)
            self.events.emit(
                "chat.error",
                level="error",
                trace_id=trace_id,
                session_id=session_id,
                turn_index=turn_index,
                error_code="SIDE_EFFECT_FAILED",
                side_effect=label,
                error_class=type(exc).__name__,
            )

    # -------------------------------------------------------------------------
    # The turn
    # -------------------------------------------------------------------------
    async def _execute_turn(
        self, request: TurnRequest, turn_index: int, trace_id: str, started: float
    ) -> TurnResult:
        session_id = request.session_id
        ctx = {"trace_id": trace_id, "session_id": session_id, "turn_index": turn_index}

        await self._safe_side_effect("user_message", self.store.append_message(MessageRecord(
            session_id, turn_index, "user", f"Locations: {' | '.join(request.locations)}", request.card_type
        )), **ctx)

        resolution = await self.resolve_locations(request.locations)
        if not resolution.resolved:
            return await self._validation_turn(request, turn_index, resolution.invalid, ctx, started)

        locations = resolution.resolved
        labels = [loc.label for loc in locations]
        await self._safe_side_effect("session_update", self.store.update_session(
            session_id, card_type=request.card_type, location_count=len(locations)
        ), **ctx)

        baseline_by_location = await self._sync_baseline(request, labels, ctx)
        baseline_assumed_for_first = labels[0] not in baseline_by_location
        competitor = await self._resolve_competitor(session_id, turn_index, request.competitor_name)

        answer = None
        if self.agent_enabled:
            answer = await self._agent_answer(
                request, turn_index, locations, baseline_by_location, baseline_assumed_for_first, competitor, ctx
            )
        if answer is None:
            memory = build_session_memory(
                session_id, turn_index, request.card_type, locations, baseline_by_location,
                baseline_assumed_for_first, competitor.resolved_name or request.competitor_name,
            )
            toolbox = TurnToolbox(self.fetcher, locations, memory, competitor)
            executions = await toolbox.prefetch_core()
            self._emit_breaker_events(toolbox.breaker_events(), ctx)
            answer = self._deterministic_answer(
                request.card_type,
                locations,
                toolbox.source_snapshot(),
                toolbox.source_statuses(),
                baseline_by_location,
                baseline_assumed_for_first,
                competitor,
                request.competitor_name,
                executions,
            )

        return await self._finish_turn(request, turn_index, labels, resolution.invalid, answer, ctx, started)

    async def _agent_answer(
        self,
        request: TurnRequest,
        turn_index: int,
        locations: list[ResolvedLocation],
        baseline_by_location: dict[str, int],
        baseline_assumed_for_first: bool,
        competitor: CompetitorContext,
        ctx: dict,
    ) -> Optional[_TurnAnswer]:
        """Agent path.  Returns None only if the controller itself blew up."""
        try:
            output = await self.controller.run(AgentTurnInput(
                session_id=request.session_id,
                turn_index=turn_index,
                card_type=request.card_type,
                locations=locations,
                baseline_by_location=baseline_by_location,
                baseline_assumed_for_first=baseline_assumed_for_first,
                competitor=competitor,
                competitor_name=request.competitor_name,
            ))
        except Exception as exc:
            logger.exception("Agent controller raised; using deterministic path")
            self.events.emit(
                "agent_fallback_applied", level="warn", **ctx,
                reason=f"AGENT_UNKNOWN_ERROR: {exc}", failure_stage="provider", failure_code="AGENT_UNKNOWN_ERROR",
            )
            return None

        self._emit_agent_telemetry(output, ctx)

        system_only = all(rec.source_name == "system" for rec in output.recommendations)
        if not output.degraded and not system_only:
            return _TurnAnswer(
                summary=output.summary,
                message=output.message,
                recommendations=output.recommendations,
                snapshots=output.snapshots,
                competitor_snapshot=output.competitor_snapshot,
                sources=output.sources,
                source_snapshot=output.source_snapshot,
                tool_executions=output.tool_executions,
            )

        reason = output.failure_reason or SYSTEM_ONLY_REASON
        self.events.emit(
            "agent_fallback_applied",
            level="warn",
            **ctx,
            reason=reason,
            failure_stage=output.failure_stage,
            failure_code=output.failure_code,
        )
        answer = self._deterministic_answer(
            request.card_type,
            locations,
            output.source_snapshot,
            output.sources,
            baseline_by_location,
            baseline_assumed_for_first,
            competitor,
            request.competitor_name,
            output.tool_executions,
        )
        answer.agent_fallback = True
        answer.fallback_reason = reason
        return answer

    def _deterministic_answer(
        self,
        card_type: str,
        locations: list[ResolvedLocation],
        snapshot: SourceSnapshot,
        statuses: dict[str, SourceStatus],
        baseline_by_location: dict[str, int],
        baseline_assumed_for_first: bool,
        competitor: CompetitorContext,
        competitor_name: Optional[str],
        executions: list[ToolExecution],
    ) -> _TurnAnswer:
        inputs = [
            LocationInputs(
                location_label=loc.label,
                weather=snapshot.weather_by_location.get(loc.label),
                events=snapshot.events_by_location.get(loc.label, []),
                closures=snapshot.closures_by_location.get(loc.label, []),
                review=snapshot.review_by_location.get(loc.label),
                baseline_foh=baseline_by_location.get(loc.label),
                baseline_assumed=index == 0 and baseline_assumed_for_first,
            )
            for index, loc in enumerate(locations)
        ]
        competitor_snapshot = build_competitor_snapshot(competitor, snapshot.competitor_review, competitor_name)
        competitor_line = None
        if competitor_snapshot is not None:
            competitor_line = f"Competitor check: {competitor_snapshot.label}. {competitor_snapshot.text}"

        engine = build_recommendations(card_type, inputs, snapshot.doe_days, competitor_line)
        outcome = apply_response_policy(
            card_type,
            PolicyDraft(engine.recommendations),
            statuses,
            locations[0].label,
            baseline_assumed_for_first,
            snapshot.review_by_location,
        )

        # Re-list the actions with their post-policy confidence.
        summary_lines = [build_card_summary(card_type, outcome.recommendations)]
        if competitor_line:
            summary_lines.append(competitor_line)
        headline = engine.summary.split("\n")[0]

        return _TurnAnswer(
            summary="\n".join(summary_lines),
            message=build_deterministic_message(
                headline, outcome.recommendations, outcome.follow_up_question, competitor_snapshot
            ),
            recommendations=outcome.recommendations,
            snapshots=engine.snapshots,
            competitor_snapshot=competitor_snapshot,
            sources=statuses,
            source_snapshot=snapshot,
            tool_executions=executions,
        )

    # -------------------------------------------------------------------------
    # Baseline memory and competitor
    # -------------------------------------------------------------------------
    async def _sync_baseline(self, request: TurnRequest, labels: list[str], ctx: dict) -> dict[str, int]:
        """Merge remembered and newly supplied FOH baselines; record changes."""
        memory = await self.store.memory_snapshot(request.session_id)
        baseline_by_location: dict[str, int] = {}
        for event in memory.values():
            label = event.new_value.get("locationLabel")
            value = event.new_value.get("baselineFoh")
            if not event.assumed and label in labels and value is not None:
                baseline_by_location[label] = value
        for entry in request.baseline_context:
            if entry.baseline_foh is not None and entry.location_label in labels:
                baseline_by_location[entry.location_label] = entry.baseline_foh

        for event in plan_baseline_memory(labels, baseline_by_location, memory.get):
            await self._safe_side_effect(
                "memory_event",
                self.store.record_memory_event(request.session_id, ctx["turn_index"], event),
                **ctx,
            )
            if event.event_type in ("assumption_set", "assumption_corrected"):
                self.events.emit(
                    event.event_type,
                    **ctx,
                    memory_key=event.memory_key,
                    value_source=event.value_source,
                    confidence_cap=event.confidence_cap,
                )
        return baseline_by_location

    async def _resolve_competitor(
        self, session_id: str, turn_index: int, competitor_name: Optional[str]
    ) -> CompetitorContext:
        if not competitor_name or not competitor_name.strip():
            return CompetitorContext()
        if await self.store.competitor_check(session_id) is not None:
            return CompetitorContext(status="limit_reached", snapshot=COMPETITOR_LIMIT_SNAPSHOT)

        try:
            results = await asyncio.wait_for(
                self.places.search(competitor_name, max_results=1),
                timeout=SOURCE_TIMEOUTS_MS["geocode"] / 1000,
            )
        except Exception as exc:
            logger.info("Competitor lookup failed for %r: %s", competitor_name, exc.__class__.__name__)
            results = []

        place = results[0] if results else None
        await self.store.record_competitor_check(CompetitorCheck(
            session_id=session_id,
            turn_index=turn_index,
            query=competitor_name,
            status="resolved" if place else "not_found",
            place_id=place.id if place else None,
            resolved_name=place.name if place else None,
        ))
        if place is None:
            return CompetitorContext(
                status="not_found",
                snapshot=f'Could not resolve competitor "{competitor_name}" from places search.',
            )
        return CompetitorContext(
            status="resolved",
            place_id=place.id,
            resolved_name=place.name,
            snapshot=f"Competitor check resolved: {place.name}.",
        )

    # -------------------------------------------------------------------------
    # Validation turn
    # -------------------------------------------------------------------------
    async def _validation_turn(
        self, request: TurnRequest, turn_index: int, invalid: list[str], ctx: dict, started: float
    ) -> TurnResult:
        session_id = request.session_id
        recommendation = validation_recommendation()
        sources = {name: SourceStatus(status="error", error_code="LOCATION_VALIDATION_FAILED") for name in CORE_SOURCES}

        await self._safe_side_effect("assistant_message", self.store.append_message(MessageRecord(
            session_id, turn_index, "assistant", VALIDATION_MESSAGE, request.card_type
        )), **ctx)
        await self._safe_side_effect(
            "recommendations", self.store.record_recommendations(session_id, turn_index, [recommendation]), **ctx
        )
        await self._safe_side_effect("fallback", self.store.record_fallback(FallbackRecord(
            session_id, turn_index, "validation", "no_valid_locations", list(CORE_SOURCES), VALIDATION_MESSAGE
        )), **ctx)
        await self._safe_side_effect(
            "session_update", self.store.update_session(session_id, had_fallback=True), **ctx
        )

        latency_ms = _elapsed_ms(started)
        self.events.emit(
            "chat.fallback.triggered", level="warn", **ctx,
            fallback_type="validation", reason="no_valid_locations", invalid_location_count=len(invalid),
        )
        self.events.emit(
            "chat.turn.completed", **ctx,
            latency_ms=latency_ms,
            card_type=request.card_type,
            location_count=0,
            invalid_location_count=len(invalid),
            used_fallback=True,
            recommendation_count=1,
            review_backed_recommendation_count=0,
            **{f"source_status_{name}": "error" for name in CORE_SOURCES},
        )
        return TurnResult(
            session_id=session_id,
            turn_index=turn_index,
            summary=VALIDATION_MESSAGE,
            message=VALIDATION_MESSAGE,
            location_labels=[],
            recommendations=[recommendation],
            snapshots=[],
            sources=sources,
            used_fallback=True,
            latency_ms=latency_ms,
            invalid_locations=list(invalid),
        )

    # -------------------------------------------------------------------------
    # Persistence + telemetry tail
    # -------------------------------------------------------------------------
    async def _finish_turn(
        self,
        request: TurnRequest,
        turn_index: int,
        labels: list[str],
        invalid: list[str],
        answer: _TurnAnswer,
        ctx: dict,
        started: float,
    ) -> TurnResult:
        session_id = request.session_id
        sources_down = [name for name in CORE_SOURCES if answer.sources.get(name, SourceStatus("error")).status != "ok"]
        used_fallback = bool(sources_down) or answer.agent_fallback

        await self._safe_side_effect("assistant_message", self.store.append_message(MessageRecord(
            session_id, turn_index, "assistant", answer.message, request.card_type
        )), **ctx)
        await self._safe_side_effect("tool_calls", self.store.record_tool_calls([
            ToolCallRecord(
                session_id, turn_index, e.tool_name, e.source_name, e.status, e.latency_ms,
                e.cache_hit, e.freshness_seconds, e.error_code,
            )
            for e in answer.tool_executions
        ]), **ctx)
        for execution in answer.tool_executions:
            self.events.emit(
                f"tool.{execution.source_name}.completed",
                **ctx,
                tool_name=execution.tool_name,
                status=execution.status,
                latency_ms=execution.latency_ms,
                cache_hit=execution.cache_hit,
                freshness_seconds=execution.freshness_seconds,
                error_code=execution.error_code,
            )
        await self._safe_side_effect(
            "recommendations",
            self.store.record_recommendations(session_id, turn_index, answer.recommendations),
            **ctx,
        )
        await self._record_review_runs(answer.source_snapshot, ctx)

        if used_fallback:
            fallback_type = "all_sources_down" if len(sources_down) == len(CORE_SOURCES) else "partial_data"
            reason = answer.fallback_reason or "degraded_sources"
            await self._safe_side_effect("fallback", self.store.record_fallback(FallbackRecord(
                session_id, turn_index, fallback_type, reason, sources_down, answer.message
            )), **ctx)
            await self._safe_side_effect(
                "session_update", self.store.update_session(session_id, had_fallback=True), **ctx
            )
            self.events.emit(
                "chat.fallback.triggered", level="warn", **ctx,
                fallback_type=fallback_type, reason=reason, sources_down=sources_down,
            )

        latency_ms = _elapsed_ms(started)
        self.events.emit(
            "chat.turn.completed",
            **ctx,
            latency_ms=latency_ms,
            card_type=request.card_type,
            location_count=len(labels),
            invalid_location_count=len(invalid),
            used_fallback=used_fallback,
            agent_mode=self.agent_enabled,
            agent_fallback=answer.agent_fallback,
            recommendation_count=len(answer.recommendations),
            review_backed_recommendation_count=sum(1 for rec in answer.recommendations if rec.review_backed),
            **{
                f"source_status_{name}": answer.sources[name].status if name in answer.sources else "error"
                for name in CORE_SOURCES
            },
        )
        return TurnResult(
            session_id=session_id,
            turn_index=turn_index,
            summary=answer.summary,
            message=answer.message,
            location_labels=labels,
            recommendations=answer.recommendations,
            snapshots=answer.snapshots,
            sources=answer.sources,
            used_fallback=used_fallback,
            latency_ms=latency_ms,
            invalid_locations=list(invalid),
            competitor_snapshot=answer.competitor_snapshot,
        )

    async def _record_review_runs(self, snapshot: SourceSnapshot, ctx: dict) -> None:
        runs = [
            ReviewSignalRun(ctx["session_id"], ctx["turn_index"], "own_location", label, signal)
            for label, signal in snapshot.review_by_location.items()
        ]
        if snapshot.competitor_review is not None:
            runs.append(ReviewSignalRun(
                ctx["session_id"], ctx["turn_index"], "competitor", None, snapshot.competitor_review
            ))
        await self._safe_side_effect("review_signal_runs", self.store.record_review_signal_runs(runs), **ctx)
        for run in runs:
            self.events.emit(
                "review_signal_extracted",
                **ctx,
                entity_type=run.entity_type,
                location_label=run.location_label,
                evidence_count=run.signal.evidence_count,
                sample_review_count=run.signal.sample_review_count,
                recency_window_days=run.signal.recency_window_days,
                confidence=run.signal.confidence,
                dominant_theme=dominant_theme(run.signal),
            )

    def _emit_agent_telemetry(self, output: AgentTurnOutput, ctx: dict) -> None:
        for phase in output.phases:
            self.events.emit(
                "agent.turn.phase",
                level="warn" if phase.status == "error" else "info",
                **ctx,
                phase=phase.phase,
                status=phase.status,
                duration_ms=phase.duration_ms,
                failure_stage=phase.failure_stage,
                failure_code=phase.failure_code,
            )
        for attempt in output.model_attempts:
            self.events.emit(
                "agent.model.attempt",
                **ctx,
                attempt_number=attempt.attempt_number,
                model=attempt.model,
                status=attempt.status,
                retryable=attempt.retryable,
                finish_reason=attempt.finish_reason,
                has_tool_calls=attempt.has_tool_calls,
                failure_code=attempt.failure_code,
            )
        self._emit_breaker_events(output.breaker_events, ctx)

    def _emit_breaker_events(self, breaker_events, ctx: dict) -> None:
        for event in breaker_events:
            self.events.emit(
                "agent_circuit_breaker_opened",
                level="warn",
                **ctx,
                source_name=event.source_name,
                failure_count=event.failure_count,
            )


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))
