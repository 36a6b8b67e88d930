# =============================================================================
# agent/controller.py  —  Agent Turn Controller (the model-driven path)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Runs the optional language-model path for one turn as a fixed sequence
#   of phases, each one timed and each one allowed to fail without taking
#   the turn down:
#
#     prefetch_core        fetch all five core sources, always
#     signal_pack_summary  compact digest; LLM wording if budget allows,
#                          otherwise the deterministic one-liner
#     llm_tool_loop        bounded tool-calling loop (rounds/calls/deadline)
#     schema_parse         strict JSON schema, then light repair of the JSON
#     repair               ONE no-tools call composing from the signal pack
#     policy               confidence caps, citations, ranking, follow-up
#
#   If the loop/parse fail and repair is skipped or fails too, a fixed
#   conservative draft is used and the output is flagged `degraded`.  The
#   orchestrator then swaps in the deterministic engine.
#
# TIME BUDGET:
#   deadline       = start + turn budget (first turn is allowed longer)
#   loop_deadline  = deadline - repair reserve
#   The repair reserve is what is left for the repair phase; if less than
#   MIN_REPAIR_BUDGET_MS remains when repair is due, it is skipped.
# =============================================================================

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from core.card_profile import get_card_profile
from core.circuit_breaker import BreakerEvent
from core.config import (
    MAX_REPAIR_TIMEOUT_MS,
    MIN_REPAIR_BUDGET_MS,
    POLICY_VERSION,
    PROMPT_VERSION,
    REVIEW_RECENCY_WINDOW_DAYS,
    SIGNAL_PACK_SUMMARY_MAX_TOKENS,
    SIGNAL_PACK_SUMMARY_MIN_BUDGET_MS,
    SIGNAL_PACK_SUMMARY_TIMEOUT_MS,
    TOOL_CONTRACT_VERSION,
    Settings,
)
from core.models import (
    Citation,
    CompetitorContext,
    CompetitorSnapshot,
    Explanation,
    GuestSnapshot,
    Recommendation,
    ResolvedLocation,
    ReviewSignals,
    SourceSnapshot,
    SourceStatus,
)
from core.policy import PolicyDraft, apply_response_policy
from core.recommendation_engine import CARD_INTROS
from core.signal_pack import SignalPack, build_signal_pack, summarize_signal_pack
from core.sources import SourceFetcher

from agent.llm_client import (
    PROVIDER_EMPTY,
    PROVIDER_ERROR,
    TOOL_CALL_LIMIT,
    TOOL_ROUND_LIMIT,
    TURN_BUDGET_EXCEEDED,
    ModelAttempt,
    ModelCallError,
    ModelClient,
    ToolLoopDiagnostics,
    ToolLoopError,
)
from agent.prompt import (
    SUMMARY_SYSTEM_PROMPT,
    build_repair_system_prompt,
    build_repair_user_prompt,
    build_session_memory,
    build_summary_user_prompt,
    build_system_prompt,
    build_user_prompt,
)
from agent.schema import (
    INVALID_JSON,
    NO_JSON,
    TRUNCATED,
    AgentResponse,
    AgentResponseError,
    SalvagedText,
    parse_agent_response,
    parse_agent_response_detailed,
    parse_signal_pack_summary,
)
from tools.registry import ToolExecution, TurnToolbox

logger = logging.getLogger(__name__)

REPAIR_SKIPPED_PROVIDER_EMPTY = "AGENT_REPAIR_SKIPPED_PROVIDER_EMPTY"
REPAIR_TIMEOUT_LOCAL = "AGENT_REPAIR_TIMEOUT_LOCAL"
POLICY_ERROR = "AGENT_POLICY_ERROR"
UNKNOWN_ERROR = "AGENT_UNKNOWN_ERROR"

# Slack on top of the repair call's own timeout before we give up locally.
REPAIR_LOCAL_GRACE_MS = 150

_TOOL_LOOP_CODES = {TOOL_CALL_LIMIT, TOOL_ROUND_LIMIT, TURN_BUDGET_EXCEEDED}

FALLBACK_NARRATIVE = "Live model synthesis is temporarily unavailable, so I am using a conservative operating fallback."
FALLBACK_FOLLOW_UP = "Want me to retry now with the same locations and baseline?"
FALLBACK_ASSUMPTION = "Fallback applied due to agent synthesis failure."

COMPETITOR_LIMIT_TEXT = "Already used in this session. You can run one competitor check per chat."
COMPETITOR_NOT_FOUND_TEXT = "Could not resolve competitor from places search."
COMPETITOR_NO_REVIEWS_TEXT = (
    "Resolved successfully, but there is not enough recent review evidence to summarize yet."
)


# =============================================================================
# Inputs and outputs
# =============================================================================
@dataclass
class AgentTurnInput:
    session_id: str
    turn_index: int
    card_type: str
    locations: list[ResolvedLocation]
    baseline_by_location: dict[str, int] = field(default_factory=dict)
    baseline_assumed_for_first: bool = False
    competitor: CompetitorContext = field(default_factory=CompetitorContext)
    competitor_name: Optional[str] = None


@dataclass
class AgentPhase:
    phase: str
    status: str                        # ok | error | skipped
    duration_ms: int
    failure_stage: Optional[str] = None
    failure_code: Optional[str] = None


@dataclass
class AgentTurnOutput:
    """Everything the model path produced for one turn.  Never persisted as-is."""

    summary: str
    message: str
    recommendations: list[Recommendation]
    snapshots: list[GuestSnapshot]
    competitor_snapshot: Optional[CompetitorSnapshot]
    sources: dict[str, SourceStatus]
    source_snapshot: SourceSnapshot
    tool_executions: list[ToolExecution]
    assumptions: list[str]
    follow_up_question: str
    degraded: bool = False
    failure_reason: Optional[str] = None
    failure_stage: str = "none"
    failure_code: Optional[str] = None
    policy_caps_applied: bool = False
    phases: list[AgentPhase] = field(default_factory=list)
    model_attempts: list[ModelAttempt] = field(default_factory=list)
    breaker_events: list[BreakerEvent] = field(default_factory=list)
    diagnostics: dict = field(default_factory=dict)


# =============================================================================
# Shared helpers (also used by the deterministic path)
# =============================================================================
def build_competitor_snapshot(
    competitor: CompetitorContext,
    review: Optional[ReviewSignals],
    requested_name: Optional[str] = None,
) -> Optional[CompetitorSnapshot]:
    if competitor.status == "not_requested":
        return None
    if competitor.status == "limit_reached":
        return CompetitorSnapshot(
            label="Competitor check",
            text=COMPETITOR_LIMIT_TEXT,
            confidence="low",
            sample_review_count=0,
            recency_window_days=REVIEW_RECENCY_WINDOW_DAYS,
            status="limit_reached",
        )

    label = competitor.resolved_name or requested_name or "Competitor"
    if competitor.status == "not_found":
        return CompetitorSnapshot(
            label=label,
            text=competitor.snapshot or COMPETITOR_NOT_FOUND_TEXT,
            confidence="low",
            sample_review_count=0,
            recency_window_days=REVIEW_RECENCY_WINDOW_DAYS,
            status="not_found",
        )
    if review is not None and review.evidence_count > 0:
        return CompetitorSnapshot(
            label=label,
            text=review.guest_snapshot,
            confidence=review.confidence,
            sample_review_count=review.sample_review_count,
            recency_window_days=review.recency_window_days,
            status="resolved_with_reviews",
        )
    return CompetitorSnapshot(
        label=label,
        text=COMPETITOR_NO_REVIEWS_TEXT,
        confidence="low",
        sample_review_count=review.sample_review_count if review is not None else 0,
        recency_window_days=REVIEW_RECENCY_WINDOW_DAYS,
        status="resolved_no_recent_reviews",
    )


def build_card_summary(card_type: str, recommendations: list[Recommendation]) -> str:
    lines = [CARD_INTROS.get(card_type, CARD_INTROS["staffing"])]
    lines.extend(f"- {rec.action} ({rec.confidence})" for rec in recommendations[:4])
    return "\n".join(lines)


def build_agent_message(
    narrative: str,
    recommendations: list[Recommendation],
    follow_up_question: str,
    competitor_snapshot: Optional[CompetitorSnapshot] = None,
) -> str:
    lines = [narrative]
    if recommendations:
        top = recommendations[0]
        lines += ["", f"Top action: {top.action}", f"{top.confidence} confidence · source {top.source_name}"]
    if competitor_snapshot is not None:
        lines += ["", f"Competitor check: {competitor_snapshot.label}."]
    lines += ["", follow_up_question]
    return "\n".join(lines)


def fallback_recommendation(location_label: str) -> Recommendation:
    return Recommendation(
        location_label=location_label,
        action="Next 24h: run standard staffing and prep, keep delivery timing flexible, and recheck in 30 minutes",
        time_window="Next 24h",
        confidence="low",
        source_name="system",
        explanation=Explanation(
            why=["Live model/tool synthesis failed for this turn."],
            delta_reasoning="Fallback keeps operations stable under uncertainty.",
            escalation_trigger="Escalate only if live service indicators exceed baseline.",
        ),
        citations=[Citation(source_name="system", note="agent fallback")],
    )


def _failure_stage(code: str) -> str:
    if code in _TOOL_LOOP_CODES:
        return "tool_loop"
    if code in (PROVIDER_EMPTY, PROVIDER_ERROR):
        return "provider"
    if code.startswith("AGENT_RESPONSE_"):
        return "schema_parse"
    return "provider"


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


# =============================================================================
# AgentController
# =============================================================================
class AgentController:
    """Runs the model path for a turn.  One instance per process.

    Args:
        settings: Budgets, token caps and tool limits.
        model:    ModelClient (primary/fallback chain).
        fetcher:  Process-wide SourceFetcher; each turn wraps it in a fresh
                  TurnToolbox so breaker state never leaks between turns.
    """

    def __init__(self, settings: Settings, model: ModelClient, fetcher: SourceFetcher):
        self.settings = settings
        self.model = model
        self.fetcher = fetcher

    def _budget_ms(self, turn_index: int) -> int:
        if turn_index <= 1:
            return self.settings.turn_budget_first_ms
        return self.settings.turn_budget_followup_ms

    def _max_tokens(self, turn_index: int) -> int:
        if turn_index <= 1:
            return self.settings.max_tokens_first_turn
        return self.settings.max_tokens_followup

    async def run(self, turn: AgentTurnInput) -> AgentTurnOutput:
        started = time.monotonic()
        budget_ms = self._budget_ms(turn.turn_index)
        deadline = started + budget_ms / 1000
        reserve_ms = min(self.settings.turn_repair_reserve_ms, max(0, budget_ms - MIN_REPAIR_BUDGET_MS))
        loop_deadline = deadline - reserve_ms / 1000
        max_tokens = self._max_tokens(turn.turn_index)
        labels = [loc.label for loc in turn.locations]

        phases: list[AgentPhase] = []
        attempts: list[ModelAttempt] = []
        diagnostics: dict = {
            "prompt_version": PROMPT_VERSION,
            "tool_contract_version": TOOL_CONTRACT_VERSION,
            "policy_version": POLICY_VERSION,
            "turn_budget_ms": budget_ms,
        }

        memory = build_session_memory(
            turn.session_id,
            turn.turn_index,
            turn.card_type,
            turn.locations,
            turn.baseline_by_location,
            turn.baseline_assumed_for_first,
            turn.competitor.resolved_name or turn.competitor_name,
        )
        toolbox = TurnToolbox(self.fetcher, turn.locations, memory, turn.competitor)

        # ---------------------------------------------------------------------
        # Phase 1: prefetch_core
        # ---------------------------------------------------------------------
        phase_started = time.monotonic()
        prefetched = await toolbox.prefetch_core()
        phases.append(AgentPhase("prefetch_core", "ok", _elapsed_ms(phase_started)))
        snapshot = toolbox.source_snapshot()
        pack = build_signal_pack(turn.locations, snapshot, toolbox.source_statuses(), turn.competitor)

        # ---------------------------------------------------------------------
        # Phase 2: signal_pack_summary
        # ---------------------------------------------------------------------
        pack_summary = await self._summarize(turn, pack, loop_deadline, phases, attempts, diagnostics)

        # ---------------------------------------------------------------------
        # Phase 3 + 4: llm_tool_loop, schema_parse
        # ---------------------------------------------------------------------
        response: Optional[AgentResponse] = None
        failure_code: Optional[str] = None
        failure_message = ""
        salvage: Optional[SalvagedText] = None
        loop_executions: list[ToolExecution] = []
        loop_diagnostics = ToolLoopDiagnostics()

        phase_started = time.monotonic()
        system_prompt = build_system_prompt(
            memory,
            self.settings.max_tool_calls,
            self.settings.max_tool_rounds,
            budget_ms,
            get_card_profile(turn.card_type).objective,
        )
        try:
            loop = await self.model.run_tool_loop(
                system_prompt,
                build_user_prompt(turn.card_type, labels, pack_summary),
                toolbox.execute,
                max_rounds=self.settings.max_tool_rounds,
                max_tool_calls=self.settings.max_tool_calls,
                temperature=0.2,
                max_tokens=max_tokens,
                deadline=loop_deadline,
                attempt_log=attempts,
            )
            loop_executions = loop.tool_executions
            loop_diagnostics = loop.diagnostics
            phases.append(AgentPhase("llm_tool_loop", "ok", _elapsed_ms(phase_started)))
        except ToolLoopError as exc:
            loop_diagnostics = exc.diagnostics
            failure_code = exc.code
            failure_message = str(exc.cause) if exc.cause is not None else exc.code
            phases.append(AgentPhase(
                "llm_tool_loop", "error", _elapsed_ms(phase_started), _failure_stage(exc.code), exc.code
            ))
        except Exception as exc:
            logger.exception("Tool loop failed unexpectedly")
            failure_code = UNKNOWN_ERROR
            failure_message = str(exc)
            phases.append(AgentPhase("llm_tool_loop", "error", _elapsed_ms(phase_started), "provider", UNKNOWN_ERROR))
        else:
            phase_started = time.monotonic()
            try:
                parsed = parse_agent_response_detailed(loop.content)
                response = parsed.response
                diagnostics["parse_strategy"] = parsed.strategy_used
                diagnostics["parse_warnings"] = parsed.warnings
                phases.append(AgentPhase("schema_parse", "ok", _elapsed_ms(phase_started)))
            except AgentResponseError as exc:
                failure_code = exc.code
                if exc.code in (NO_JSON, INVALID_JSON) and loop_diagnostics.final_finish_reason == "length":
                    failure_code = TRUNCATED
                failure_message = f"Model output failed schema parse ({failure_code})"
                salvage = exc.salvage
                phases.append(AgentPhase(
                    "schema_parse", "error", _elapsed_ms(phase_started), "schema_parse", failure_code
                ))

        diagnostics.update({
            "rounds": loop_diagnostics.rounds,
            "tool_call_count": loop_diagnostics.tool_call_count,
            "tool_calls_by_name": dict(loop_diagnostics.tool_calls_by_name),
            "final_finish_reason": loop_diagnostics.final_finish_reason,
            "salvaged": salvage is not None,
        })

        # ---------------------------------------------------------------------
        # Phase 5: repair
        # ---------------------------------------------------------------------
        degraded = False
        root_stage = "none"
        root_code: Optional[str] = None
        failure_reason: Optional[str] = None

        if response is None and failure_code is not None:
            root_stage = _failure_stage(failure_code)
            root_code = failure_code
            failure_reason = f"{failure_code}: {failure_message}"
            response = await self._repair(
                turn, pack, pack_summary, failure_code, deadline, max_tokens, phases, attempts, diagnostics
            )
            if response is None:
                degraded = True

        if response is not None:
            recommendations = [rec.to_recommendation() for rec in response.recommendations]
            draft = PolicyDraft(recommendations, list(response.assumptions), response.follow_up_question)
            narrative = response.narrative
        else:
            first_label = labels[0] if labels else "your locations"
            draft = PolicyDraft(
                [fallback_recommendation(first_label)],
                [FALLBACK_ASSUMPTION],
                (salvage.follow_up_question if salvage else None) or FALLBACK_FOLLOW_UP,
            )
            narrative = (salvage.narrative if salvage else None) or FALLBACK_NARRATIVE

        # ---------------------------------------------------------------------
        # Phase 6: policy
        # ---------------------------------------------------------------------
        statuses = toolbox.source_statuses()
        phase_started = time.monotonic()
        outcome = apply_response_policy(
            turn.card_type,
            draft,
            statuses,
            labels[0] if labels else None,
            turn.baseline_assumed_for_first,
            snapshot.review_by_location,
        )
        if outcome.failed:
            degraded = True
            if root_code is None:
                root_stage, root_code = "policy", POLICY_ERROR
                failure_reason = f"{POLICY_ERROR}: response policy fell back"
            phases.append(AgentPhase("policy", "error", _elapsed_ms(phase_started), "policy", POLICY_ERROR))
        else:
            phases.append(AgentPhase("policy", "ok", _elapsed_ms(phase_started)))

        competitor_snapshot = build_competitor_snapshot(
            turn.competitor, snapshot.competitor_review, turn.competitor_name
        )
        snapshots = [
            GuestSnapshot(
                location_label=label,
                text=review.guest_snapshot,
                sample_review_count=review.sample_review_count,
                recency_window_days=review.recency_window_days,
                confidence=review.confidence,
            )
            for label, review in snapshot.review_by_location.items()
            if review.evidence_count > 0
        ]
        diagnostics["latency_ms"] = _elapsed_ms(started)

        return AgentTurnOutput(
            summary=build_card_summary(turn.card_type, outcome.recommendations),
            message=build_agent_message(
                narrative, outcome.recommendations, outcome.follow_up_question, competitor_snapshot
            ),
            recommendations=outcome.recommendations,
            snapshots=snapshots,
            competitor_snapshot=competitor_snapshot,
            sources=statuses,
            source_snapshot=snapshot,
            tool_executions=prefetched + loop_executions,
            assumptions=outcome.assumptions,
            follow_up_question=outcome.follow_up_question,
            degraded=degraded,
            failure_reason=failure_reason,
            failure_stage=root_stage,
            failure_code=root_code,
            policy_caps_applied=outcome.caps_applied,
            phases=phases,
            model_attempts=attempts,
            breaker_events=toolbox.breaker_events(),
            diagnostics=diagnostics,
        )

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------
    async def _summarize(
        self,
        turn: AgentTurnInput,
        pack: SignalPack,
        loop_deadline: float,
        phases: list[AgentPhase],
        attempts: list[ModelAttempt],
        diagnostics: dict,
    ) -> str:
        """LLM wording of the signal pack, or the deterministic digest.  Never fails."""
        deterministic = summarize_signal_pack(pack)
        remaining_ms = int((loop_deadline - time.monotonic()) * 1000)
        budget_ms = min(SIGNAL_PACK_SUMMARY_TIMEOUT_MS, max(0, remaining_ms - MIN_REPAIR_BUDGET_MS))
        diagnostics["signal_pack_summary_source"] = "deterministic"
        if budget_ms < SIGNAL_PACK_SUMMARY_MIN_BUDGET_MS:
            phases.append(AgentPhase("signal_pack_summary", "skipped", 0))
            return deterministic

        started = time.monotonic()
        try:
            reply = await self.model.complete_text(
                SUMMARY_SYSTEM_PROMPT,
                build_summary_user_prompt(turn.card_type, pack.to_json(), deterministic),
                temperature=0.1,
                max_tokens=SIGNAL_PACK_SUMMARY_MAX_TOKENS,
                timeout_ms=budget_ms,
                attempt_log=attempts,
            )
            summary = parse_signal_pack_summary(reply.text)
        except (ModelCallError, AgentResponseError) as exc:
            logger.info("Signal pack summary fell back to deterministic digest: %s", exc)
            phases.append(AgentPhase(
                "signal_pack_summary", "error", _elapsed_ms(started), _failure_stage(exc.code), exc.code
            ))
            return deterministic
        except Exception as exc:
            logger.warning("Signal pack summary failed: %s", exc)
            phases.append(AgentPhase("signal_pack_summary", "error", _elapsed_ms(started), "provider", UNKNOWN_ERROR))
            return deterministic

        diagnostics["signal_pack_summary_source"] = "llm"
        phases.append(AgentPhase("signal_pack_summary", "ok", _elapsed_ms(started)))
        return summary

    async def _repair(
        self,
        turn: AgentTurnInput,
        pack: SignalPack,
        pack_summary: str,
        reason_code: str,
        deadline: float,
        max_tokens: int,
        phases: list[AgentPhase],
        attempts: list[ModelAttempt],
        diagnostics: dict,
    ) -> Optional[AgentResponse]:
        """One no-tools retry from the signal pack.  None when skipped or failed."""
        diagnostics["repair_attempted"] = False
        if reason_code == PROVIDER_EMPTY:
            phases.append(AgentPhase("repair", "skipped", 0, "repair", REPAIR_SKIPPED_PROVIDER_EMPTY))
            return None
        remaining_ms = int((deadline - time.monotonic()) * 1000)
        if remaining_ms < MIN_REPAIR_BUDGET_MS:
            phases.append(AgentPhase("repair", "skipped", 0, "repair", TURN_BUDGET_EXCEEDED))
            return None

        timeout_ms = min(remaining_ms, MAX_REPAIR_TIMEOUT_MS)
        labels = [loc.label for loc in turn.locations]
        diagnostics["repair_attempted"] = True
        started = time.monotonic()

        async def compose() -> AgentResponse:
            reply = await self.model.complete_text(
                build_repair_system_prompt(),
                build_repair_user_prompt(turn.card_type, labels, reason_code, pack_summary, pack.to_json()),
                temperature=0.1,
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
                attempt_log=attempts,
            )
            try:
                return parse_agent_response(reply.text)
            except AgentResponseError as exc:
                if exc.code in (NO_JSON, INVALID_JSON) and reply.finish_reason == "length":
                    raise AgentResponseError(TRUNCATED, exc.salvage) from exc
                raise

        try:
            response = await asyncio.wait_for(compose(), timeout=(timeout_ms + REPAIR_LOCAL_GRACE_MS) / 1000)
        except asyncio.TimeoutError:
            code = REPAIR_TIMEOUT_LOCAL
        except (ModelCallError, AgentResponseError) as exc:
            code = exc.code
        except Exception:
            logger.exception("Repair call failed unexpectedly")
            code = UNKNOWN_ERROR
        else:
            diagnostics["repair_succeeded"] = True
            phases.append(AgentPhase("repair", "ok", _elapsed_ms(started)))
            return response

        diagnostics["repair_succeeded"] = False
        phases.append(AgentPhase("repair", "error", _elapsed_ms(started), "repair", code))
        return None
