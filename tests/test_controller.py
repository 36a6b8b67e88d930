"""
Unit tests for the agent turn controller (the model path).

Tests agent/controller.py with a scripted model and fixture providers.
"""

import pytest
from google.genai import types

from core.models import CompetitorContext

from agent.controller import (
    FALLBACK_NARRATIVE,
    REPAIR_SKIPPED_PROVIDER_EMPTY,
    AgentController,
    AgentTurnInput,
    build_competitor_snapshot,
)
from agent.llm_client import PROVIDER_EMPTY, ModelClient
from agent.schema import NO_JSON, TRUNCATED

from fakes import (
    AGENT_JSON,
    HK_LABEL,
    CountingWeather,
    ScriptedLlm,
    hells_kitchen,
    make_fetcher,
    make_providers,
    text_response,
    tool_call_response,
)


def turn(**overrides) -> AgentTurnInput:
    values = dict(
        session_id="s-1",
        turn_index=1,
        card_type="staffing",
        locations=[hells_kitchen()],
        baseline_by_location={},
        baseline_assumed_for_first=True,
    )
    values.update(overrides)
    return AgentTurnInput(**values)


def controller(settings, llm, providers=None) -> AgentController:
    fetcher = make_fetcher(providers or make_providers())
    return AgentController(settings, ModelClient("primary", "backup", llm=llm), fetcher)


def phase_statuses(output) -> list[tuple[str, str]]:
    return [(phase.phase, phase.status) for phase in output.phases]


class TestHappyPath:
    """The model answers with valid JSON."""

    @pytest.mark.asyncio
    async def test_valid_answer_passes_policy(self, agent_settings):
        llm = ScriptedLlm([AGENT_JSON])
        output = await controller(agent_settings, llm).run(turn())

        assert not output.degraded
        assert output.failure_stage == "none"
        rec = output.recommendations[0]
        assert rec.action == f"Wed 5:30 PM-8:30 PM: +2 FOH at {HK_LABEL}"
        # Assumed baseline for the first location caps "high" to "medium".
        assert rec.confidence == "medium"
        assert output.follow_up_question == "Want a Thursday rain plan too?"
        assert f"Baseline staffing for {HK_LABEL} remains assumed until explicitly confirmed." in output.assumptions
        assert phase_statuses(output) == [
            ("prefetch_core", "ok"),
            ("signal_pack_summary", "ok"),
            ("llm_tool_loop", "ok"),
            ("schema_parse", "ok"),
            ("policy", "ok"),
        ]
        assert output.diagnostics["signal_pack_summary_source"] == "llm"
        assert output.diagnostics["parse_strategy"] == "strict"
        assert output.message.startswith("Knicks night at the Garden will push Wednesday dinner.")
        assert output.summary.split("\n")[1] == f"- Wed 5:30 PM-8:30 PM: +2 FOH at {HK_LABEL} (medium)"

    @pytest.mark.asyncio
    async def test_summary_text_reaches_the_tool_loop(self, agent_settings):
        llm = ScriptedLlm([AGENT_JSON], summary='{"summary": "Garden crowd Wednesday."}')
        await controller(agent_settings, llm).run(turn())

        user_text = llm.turn_requests[0].contents[0].parts[0].text
        assert "Signal pack summary: Garden crowd Wednesday." in user_text

    @pytest.mark.asyncio
    async def test_bad_summary_falls_back_to_digest(self, agent_settings):
        llm = ScriptedLlm([AGENT_JSON], summary="not json")
        output = await controller(agent_settings, llm).run(turn())

        assert output.diagnostics["signal_pack_summary_source"] == "deterministic"
        assert ("signal_pack_summary", "error") in phase_statuses(output)
        user_text = llm.turn_requests[0].contents[0].parts[0].text
        assert f"Signal pack summary: {HK_LABEL}: " in user_text
        assert "New York Knicks vs. Boston Celtics near Madison Square Garden" in user_text
        assert not output.degraded

    @pytest.mark.asyncio
    async def test_tool_calls_share_the_prefetch(self, agent_settings):
        weather = CountingWeather()
        llm = ScriptedLlm([tool_call_response(("get_weather", {"location_label": HK_LABEL})), AGENT_JSON])
        output = await controller(agent_settings, llm, make_providers(weather=weather)).run(turn())

        assert weather.calls == 1
        assert [e.tool_name for e in output.tool_executions][-1] == "get_weather"
        assert len(output.tool_executions) == 6
        assert output.diagnostics["tool_call_count"] == 1


class TestRepairAndFallback:
    """Parse failures, repair and the degraded fallback draft."""

    @pytest.mark.asyncio
    async def test_repair_recovers_from_prose(self, agent_settings):
        llm = ScriptedLlm(["Add two servers on Wednesday.", AGENT_JSON])
        output = await controller(agent_settings, llm).run(turn())

        assert not output.degraded
        assert output.failure_code == NO_JSON
        assert ("schema_parse", "error") in phase_statuses(output)
        assert ("repair", "ok") in phase_statuses(output)
        assert output.diagnostics["repair_attempted"] is True
        assert output.recommendations[0].source_name == "events"

    @pytest.mark.asyncio
    async def test_provider_empty_skips_repair(self, agent_settings):
        llm = ScriptedLlm([])
        output = await controller(agent_settings, llm).run(turn())

        assert output.degraded
        assert output.failure_stage == "provider"
        assert output.failure_code == PROVIDER_EMPTY
        repair = next(phase for phase in output.phases if phase.phase == "repair")
        assert (repair.status, repair.failure_code) == ("skipped", REPAIR_SKIPPED_PROVIDER_EMPTY)
        assert len(llm.turn_requests) == 1
        assert output.recommendations[0].source_name == "system"
        assert output.recommendations[0].confidence == "low"
        assert output.message.startswith(FALLBACK_NARRATIVE)

    @pytest.mark.asyncio
    async def test_truncated_output_is_labelled(self, agent_settings):
        llm = ScriptedLlm([text_response('{"narrative": "Knicks night', finish_reason=types.FinishReason.MAX_TOKENS)])
        output = await controller(agent_settings, llm).run(turn())

        assert output.failure_code == TRUNCATED
        assert output.failure_stage == "schema_parse"
        assert output.degraded
        assert ("repair", "error") in phase_statuses(output)

    @pytest.mark.asyncio
    async def test_salvaged_narrative_is_kept(self, agent_settings):
        llm = ScriptedLlm(['{"narrative": "Rain Thursday, Knicks Wednesday.", "recommendations": [}'])
        output = await controller(agent_settings, llm).run(turn())

        assert output.degraded
        assert output.diagnostics["salvaged"] is True
        assert output.message.startswith("Rain Thursday, Knicks Wednesday.")

    @pytest.mark.asyncio
    async def test_no_repair_budget_left(self, agent_settings):
        agent_settings.turn_budget_first_ms = 250
        agent_settings.turn_repair_reserve_ms = 0
        llm = ScriptedLlm(["prose only"])
        output = await controller(agent_settings, llm).run(turn())

        assert output.degraded
        repair = next(phase for phase in output.phases if phase.phase == "repair")
        assert repair.status == "skipped"


class TestCompetitorSnapshot:
    def test_states(self):
        assert build_competitor_snapshot(CompetitorContext(), None) is None

        limited = build_competitor_snapshot(CompetitorContext(status="limit_reached"), None)
        assert limited.status == "limit_reached"

        missing = build_competitor_snapshot(CompetitorContext(status="not_found"), None, "Nowhere Grill")
        assert (missing.label, missing.status) == ("Nowhere Grill", "not_found")

        quiet = build_competitor_snapshot(
            CompetitorContext(status="resolved", place_id="p", resolved_name="Joe's Pizza"), None
        )
        assert (quiet.label, quiet.status, quiet.confidence) == ("Joe's Pizza", "resolved_no_recent_reviews", "low")
