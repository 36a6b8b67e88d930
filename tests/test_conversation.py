"""
Tests for the chat conversation wrapper (baseline follow-ups).

Tests agent/conversation.py on top of a deterministic orchestrator.
"""

import pytest

from core.config import Settings

from agent.conversation import ChatConversation
from agent.orchestrator import TurnOrchestrator

from fakes import ASTORIA_LABEL, HK_LABEL, make_fetcher, make_providers


def conversation(inputs, sink=None) -> ChatConversation:
    advisor = TurnOrchestrator(
        Settings(),
        make_fetcher(make_providers()),
        events=sink.emitter if sink is not None else None,
    )
    return ChatConversation(advisor, "staffing", inputs)


def confidence_by_label(result) -> dict[str, str]:
    return {rec.location_label: rec.confidence for rec in result.recommendations}


class TestBaselineFollowUps:
    """'we run N FOH' messages."""

    @pytest.mark.asyncio
    async def test_ambiguous_baseline_asks_once_then_defaults_to_first(self, sink):
        chat = conversation(["Hell's Kitchen; Astoria"], sink)
        opening = await chat.start()
        assert confidence_by_label(opening.result)[HK_LABEL] == "medium"

        question = await chat.send("we run 4 FOH on Tuesdays")
        assert question.clarification
        assert question.result is None
        assert question.text.endswith(f"I will apply it to {HK_LABEL}.")

        answer = await chat.send("not sure")

        assert not answer.clarification
        assert answer.result.turn_index == 2
        assert chat.baseline_by_location == {HK_LABEL: 4}
        assert confidence_by_label(answer.result)[HK_LABEL] == "high"
        memory_types = [event.event_type for _, _, event in chat.orchestrator.store.memory_events]
        assert memory_types == ["assumption_set", "assumption_corrected"]
        assert sink.names().count("assumption_corrected") == 1

    @pytest.mark.asyncio
    async def test_all_scope_applies_everywhere(self):
        chat = conversation(["Hell's Kitchen; Astoria"])
        await chat.start()

        reply = await chat.send("We run 3 FOH at both")

        assert chat.baseline_by_location == {HK_LABEL: 3, ASTORIA_LABEL: 3}
        assert not reply.clarification
        assert reply.result.session_id == chat.session_id

    @pytest.mark.asyncio
    async def test_single_location_needs_no_question(self):
        chat = conversation(["Hell's Kitchen"])
        await chat.start()

        reply = await chat.send("we run 5 FOH")

        assert not reply.clarification
        assert chat.baseline_by_location == {HK_LABEL: 5}

    @pytest.mark.asyncio
    async def test_other_follow_ups_rerun_the_turn(self):
        chat = conversation(["Astoria"])
        await chat.start()

        reply = await chat.send("what about Thursday?")

        assert reply.result.turn_index == 2
        assert chat.baseline_by_location == {}


class TestClose:
    @pytest.mark.asyncio
    async def test_close_ends_the_session(self, sink):
        chat = conversation(["Astoria"], sink)
        await chat.start()

        await chat.close()

        record = chat.orchestrator.store.sessions[chat.session_id]
        assert (record.status, record.end_reason) == ("ended", "user_exit")
        assert "chat_session_ended" in sink.names()

    @pytest.mark.asyncio
    async def test_close_before_start_is_a_no_op(self):
        chat = conversation(["Astoria"])
        await chat.close()
        assert chat.orchestrator.store.sessions == {}
