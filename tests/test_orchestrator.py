"""
Scenario tests for the turn orchestrator.

Tests agent/orchestrator.py end to end against the fixture world: location
validation, deterministic and agent paths, baseline memory, the competitor
limit, session ordering and idempotency.
"""

import asyncio

import pytest

from core.config import Settings
from core.models import BaselineContext, TurnRequest

from agent.controller import AgentController
from agent.llm_client import ModelClient
from agent.orchestrator import VALIDATION_MESSAGE, TurnOrchestrator
from agent.store import InMemoryStore

from fakes import (
    AGENT_JSON,
    ASTORIA_LABEL,
    HK_EVENT_ACTION,
    HK_LABEL,
    WAIT_HEAVY_REVIEWS,
    BrokenWeather,
    CountingWeather,
    FakePlaces,
    MalformedEvents,
    ScriptedLlm,
    broken_providers,
    make_fetcher,
    make_providers,
)

STAFFING_FOLLOW_UP = "Want me to tune these to your current FOH baseline by location?"


def orchestrator(providers=None, sink=None, settings=None, llm=None) -> TurnOrchestrator:
    settings = settings or Settings()
    fetcher = make_fetcher(providers or make_providers())
    controller = None
    if llm is not None:
        controller = AgentController(settings, ModelClient("primary", "backup", llm=llm), fetcher)
    return TurnOrchestrator(
        settings,
        fetcher,
        controller=controller,
        store=InMemoryStore(),
        events=sink.emitter if sink is not None else None,
    )


class TestDeterministicScenarios:
    """Fixture-world turns with AGENT_MODE off."""

    @pytest.mark.asyncio
    async def test_event_near_location(self, sink):
        result = await orchestrator(sink=sink).run_turn(
            TurnRequest(card_type="staffing", locations=["Hell's Kitchen"])
        )

        assert result.turn_index == 1
        assert result.location_labels == [HK_LABEL]
        rec = result.recommendations[0]
        assert rec.action == HK_EVENT_ACTION
        assert rec.confidence == "medium"
        assert rec.source_name == "events"
        assert rec.citations[0].source_name == "events"
        assert result.summary.split("\n")[1] == f"- {HK_EVENT_ACTION} (medium)"
        assert f"Top action: {HK_EVENT_ACTION}" in result.message
        assert "Why now: " in result.message
        assert result.message.endswith(STAFFING_FOLLOW_UP)
        assert not result.used_fallback
        assert {status.status for status in result.sources.values()} == {"ok"}

        completed = sink.of("chat.turn.completed")[0]
        assert completed["used_fallback"] is False
        assert completed["recommendation_count"] == 1
        assert sink.names().count("tool.weather.completed") == 1
        assert "assumption_set" in sink.names()

    @pytest.mark.asyncio
    async def test_explicit_baseline_keeps_high_confidence(self):
        result = await orchestrator().run_turn(TurnRequest(
            card_type="staffing",
            locations=["Hell's Kitchen"],
            baseline_context=[BaselineContext(HK_LABEL, 4)],
        ))

        rec = result.recommendations[0]
        assert rec.confidence == "high"
        assert rec.explanation.baseline_assumption == f"Baseline 4 FOH at {HK_LABEL}"

    @pytest.mark.asyncio
    async def test_closure_on_risk_card(self):
        result = await orchestrator().run_turn(TurnRequest(card_type="risk", locations=["Astoria"]))

        rec = result.recommendations[0]
        assert rec.action == f"Wed AM window: move delivery before closure window at {ASTORIA_LABEL}"
        assert rec.source_name == "closures"
        assert rec.confidence == "medium"

    @pytest.mark.asyncio
    async def test_wait_heavy_reviews_upgrade_the_action(self):
        places = FakePlaces(reviews_by_place={"mock-hk-001": WAIT_HEAVY_REVIEWS})
        advisor = orchestrator(make_providers(places=places))

        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Hell's Kitchen"]))

        rec = result.recommendations[0]
        assert rec.action == f"Wed 5:30 PM-8:30 PM: add 1 host + 1 FOH floater at {HK_LABEL}"
        assert rec.review_backed
        assert len(result.snapshots) == 1
        assert advisor.store.review_signal_runs[0].signal.evidence_count == 4

    @pytest.mark.asyncio
    async def test_out_of_city_input_is_reported(self):
        result = await orchestrator().run_turn(
            TurnRequest(card_type="staffing", locations=["Hell's Kitchen; Hoboken"])
        )

        assert result.location_labels == [HK_LABEL]
        assert result.invalid_locations == ["Hoboken"]


class TestValidation:
    @pytest.mark.asyncio
    async def test_no_valid_location_skips_sources(self, sink):
        weather = CountingWeather()
        advisor = orchestrator(make_providers(weather=weather), sink=sink)

        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Hoboken"]))

        assert result.message == VALIDATION_MESSAGE
        assert result.used_fallback
        assert result.recommendations[0].source_name == "system"
        assert {status.error_code for status in result.sources.values()} == {"LOCATION_VALIDATION_FAILED"}
        assert weather.calls == 0
        assert advisor.store.fallbacks[0].fallback_type == "validation"
        assert sink.of("chat.fallback.triggered")[0]["reason"] == "no_valid_locations"

    @pytest.mark.asyncio
    async def test_noise_never_reaches_places(self):
        places = FakePlaces()
        result = await orchestrator(make_providers(places=places)).run_turn(
            TurnRequest(card_type="staffing", locations=["xy"])
        )

        assert result.invalid_locations == ["xy"]
        assert places.search_calls == 0


class TestDegradedSources:
    @pytest.mark.asyncio
    async def test_all_sources_down(self, sink):
        advisor = orchestrator(broken_providers(), sink=sink)

        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Hell's Kitchen"]))

        assert result.used_fallback
        assert result.recommendations
        assert {rec.confidence for rec in result.recommendations} == {"low"}
        assert {status.status for status in result.sources.values()} == {"error"}
        assert advisor.store.fallbacks[0].fallback_type == "all_sources_down"
        assert advisor.store.fallbacks[0].reason == "degraded_sources"
        opened = {record["source_name"] for record in sink.of("agent_circuit_breaker_opened")}
        assert {"weather", "events"} <= opened

    @pytest.mark.asyncio
    async def test_malformed_events_are_reported_not_ok(self):
        advisor = orchestrator(make_providers(events=MalformedEvents()))

        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Hell's Kitchen"]))

        assert result.sources["events"].status == "error"
        assert result.used_fallback
        assert advisor.store.fallbacks[0].fallback_type == "partial_data"
        assert "events" in advisor.store.fallbacks[0].sources_down

    @pytest.mark.asyncio
    async def test_breaker_starts_closed_each_turn(self):
        weather = BrokenWeather()
        advisor = orchestrator(make_providers(weather=weather))
        request = TurnRequest(card_type="staffing", locations=["Hell's Kitchen"], session_id="s-breaker")

        await advisor.run_turn(request)
        calls_after_first_turn = weather.calls
        second = await advisor.run_turn(request)

        assert weather.calls > calls_after_first_turn
        assert second.sources["weather"].error_code == "WEATHER_ERROR"
        second_turn_calls = [call for call in advisor.store.tool_calls if call.turn_index == 2]
        assert "CIRCUIT_OPEN" not in {call.error_code for call in second_turn_calls}


class TestSessionControl:
    """Ordering, idempotency, competitor limit and session end."""

    @pytest.mark.asyncio
    async def test_turns_of_one_session_run_in_order(self, sink):
        advisor = orchestrator(make_providers(weather=CountingWeather(delay=0.05)), sink=sink)
        request = TurnRequest(card_type="staffing", locations=["Hell's Kitchen"], session_id="s-lock")

        first, second = await asyncio.gather(advisor.run_turn(request), advisor.run_turn(request))

        assert (first.turn_index, second.turn_index) == (1, 2)
        assert first.lock_wait_ms == 0
        assert second.lock_wait_ms > 0
        assert len(sink.of("agent_lock_waited")) == 1

    @pytest.mark.asyncio
    async def test_idempotent_retry_reuses_the_result(self, sink):
        weather = CountingWeather(delay=0.02)
        advisor = orchestrator(make_providers(weather=weather), sink=sink)
        request = TurnRequest(
            card_type="staffing", locations=["Hell's Kitchen"], session_id="s-idem", idempotency_key="req-1"
        )

        first, second = await asyncio.gather(advisor.run_turn(request), advisor.run_turn(request))
        third = await advisor.run_turn(request)

        assert first.turn_index == second.turn_index == third.turn_index == 1
        assert second == first
        assert third == first
        assert weather.calls == 1
        assert len(sink.of("chat.turn.completed")) == 1
        assert len(sink.of("agent_idempotency_reused")) == 2

    @pytest.mark.asyncio
    async def test_one_competitor_check_per_session(self):
        places = FakePlaces()
        advisor = orchestrator(make_providers(places=places))
        request = TurnRequest(
            card_type="opportunity", locations=["Hell's Kitchen"], session_id="s-cmp", competitor_name="Joe's Pizza"
        )

        first = await advisor.run_turn(request)
        second = await advisor.run_turn(request)

        assert first.competitor_snapshot.label == "Joe's Pizza"
        assert first.competitor_snapshot.status == "resolved_no_recent_reviews"
        assert second.competitor_snapshot.status == "limit_reached"
        assert places.search_queries.count("Joe's Pizza") == 1
        assert len(advisor.store.competitor_checks) == 1

    @pytest.mark.asyncio
    async def test_unknown_competitor_still_uses_the_check(self):
        advisor = orchestrator()
        request = TurnRequest(
            card_type="opportunity", locations=["Hell's Kitchen"], session_id="s-nf", competitor_name="Nowhere Grill"
        )

        first = await advisor.run_turn(request)
        second = await advisor.run_turn(request)

        assert first.competitor_snapshot.status == "not_found"
        assert second.competitor_snapshot.status == "limit_reached"

    @pytest.mark.asyncio
    async def test_end_session(self, sink):
        advisor = orchestrator(sink=sink)
        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Astoria"]))

        await advisor.end_session(result.session_id, "user_exit")

        record = advisor.store.sessions[result.session_id]
        assert (record.status, record.end_reason) == ("ended", "user_exit")
        assert sink.of("chat_session_ended")[0]["end_reason"] == "user_exit"

    @pytest.mark.asyncio
    async def test_end_session_rejects_unknown_reason(self):
        with pytest.raises(ValueError):
            await orchestrator().end_session("s-1", "bored")


class TestAgentMode:
    """AGENT_MODE on, with a scripted model."""

    @pytest.mark.asyncio
    async def test_agent_answer_is_used(self, agent_settings, sink):
        advisor = orchestrator(settings=agent_settings, sink=sink, llm=ScriptedLlm([AGENT_JSON]))
        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Hell's Kitchen"]))

        assert not result.used_fallback
        assert result.recommendations[0].action == f"Wed 5:30 PM-8:30 PM: +2 FOH at {HK_LABEL}"
        assert result.recommendations[0].confidence == "medium"
        phases = [record["phase"] for record in sink.of("agent.turn.phase")]
        assert phases == ["prefetch_core", "signal_pack_summary", "llm_tool_loop", "schema_parse", "policy"]
        assert sink.of("chat.turn.completed")[0]["agent_mode"] is True
        assert "agent_fallback_applied" not in sink.names()

    @pytest.mark.asyncio
    async def test_degraded_agent_falls_back_to_engine(self, agent_settings, sink):
        weather = CountingWeather()
        advisor = orchestrator(
            make_providers(weather=weather), settings=agent_settings, sink=sink, llm=ScriptedLlm([])
        )

        result = await advisor.run_turn(TurnRequest(card_type="staffing", locations=["Hell's Kitchen"]))

        assert result.used_fallback
        assert result.recommendations[0].action == HK_EVENT_ACTION
        assert result.recommendations[0].confidence == "medium"
        assert weather.calls == 1

        fallback = advisor.store.fallbacks[0]
        assert fallback.fallback_type == "partial_data"
        assert fallback.reason.startswith("AGENT_PROVIDER_EMPTY")
        applied = sink.of("agent_fallback_applied")[0]
        assert applied["failure_stage"] == "provider"
        assert sink.of("chat.turn.completed")[0]["agent_fallback"] is True
