"""
Unit tests for the model client.

Tests agent/llm_client.py against a scripted stand-in for ADK's LiteLlm.
"""

import asyncio
import time

import pytest
from google.genai import types

from agent.llm_client import (
    PROVIDER_EMPTY,
    PROVIDER_ERROR,
    TOOL_CALL_LIMIT,
    TOOL_ROUND_LIMIT,
    TURN_BUDGET_EXCEEDED,
    ModelCallError,
    ModelClient,
    ToolLoopError,
    build_tool_declarations,
    is_retryable_failure,
)
from tools.registry import ToolExecution

from fakes import FakeHttpError, ScriptedLlm, text_response, tool_call_response


async def echo_tool(name: str, args: dict) -> ToolExecution:
    return ToolExecution(
        tool_name=name, source_name="events", status="ok", latency_ms=1, args=args, result={"echo": args}
    )


def deadline_in(seconds: float) -> float:
    return time.monotonic() + seconds


class TestRetryClassification:
    """Only transient failures move on to the fallback model."""

    def test_retryable(self):
        assert is_retryable_failure(asyncio.TimeoutError())
        assert is_retryable_failure(ConnectionError("reset"))
        assert is_retryable_failure(FakeHttpError(429))
        assert is_retryable_failure(FakeHttpError(503))
        assert is_retryable_failure(RuntimeError("Rate limit exceeded"))
        assert is_retryable_failure(RuntimeError("Upstream overloaded"))

    def test_not_retryable(self):
        assert not is_retryable_failure(FakeHttpError(400, "bad request"))
        assert not is_retryable_failure(ValueError("invalid tool schema"))


class TestComplete:
    """Primary → fallback chain for a single request."""

    @pytest.mark.asyncio
    async def test_primary_success(self):
        llm = ScriptedLlm(["hello"])
        client = ModelClient("primary", "backup", llm=llm)
        attempts = []

        reply = await client.complete_text("sys", "hi", 0.1, 50, 1_000, attempt_log=attempts)

        assert reply.text == "hello"
        assert reply.model == "primary"
        assert reply.finish_reason == "stop"
        assert [(a.model, a.status) for a in attempts] == [("primary", "ok")]

    @pytest.mark.asyncio
    async def test_retryable_failure_uses_fallback(self):
        llm = ScriptedLlm(["from backup"], fail_models={"primary": FakeHttpError(429, "rate limit")})
        client = ModelClient("primary", "backup", llm=llm)
        attempts = []

        reply = await client.complete_text("sys", "hi", 0.1, 50, 1_000, attempt_log=attempts)

        assert reply.model == "backup"
        assert [(a.model, a.status, a.retryable) for a in attempts] == [
            ("primary", "error", True),
            ("backup", "ok", False),
        ]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_skips_fallback(self):
        llm = ScriptedLlm(["never"], fail_models={"primary": FakeHttpError(400, "bad request")})
        client = ModelClient("primary", "backup", llm=llm)

        with pytest.raises(ModelCallError) as err:
            await client.complete_text("sys", "hi", 0.1, 50, 1_000)

        assert err.value.code == PROVIDER_ERROR
        assert not err.value.retryable
        assert [r.model for r in llm.requests] == ["primary"]

    @pytest.mark.asyncio
    async def test_empty_stream_is_provider_empty(self):
        client = ModelClient("primary", "backup", llm=ScriptedLlm([]))
        with pytest.raises(ModelCallError) as err:
            await client.complete_text("sys", "hi", 0.1, 50, 1_000)
        assert err.value.code == PROVIDER_EMPTY

    @pytest.mark.asyncio
    async def test_max_tokens_reads_as_length(self):
        llm = ScriptedLlm([text_response('{"narrative": "cut', finish_reason=types.FinishReason.MAX_TOKENS)])
        reply = await ModelClient("primary", llm=llm).complete_text("sys", "hi", 0.1, 50, 1_000)
        assert reply.finish_reason == "length"

    @pytest.mark.asyncio
    async def test_timeout_on_both_models(self):
        client = ModelClient("primary", "backup", llm=ScriptedLlm(["late"], delay=0.2))
        with pytest.raises(ModelCallError) as err:
            await client.complete_text("sys", "hi", 0.1, 50, 50)
        assert err.value.code == PROVIDER_ERROR
        assert err.value.retryable

    @pytest.mark.asyncio
    async def test_primary_timeout_leaves_budget_for_fallback(self):
        llm = ScriptedLlm(["from backup"], model_delays={"primary": 1.0})
        client = ModelClient("primary", "backup", llm=llm)
        attempts = []

        reply = await client.complete_text("sys", "hi", 0.1, 50, 500, attempt_log=attempts)

        assert reply.model == "backup"
        assert [(a.model, a.status, a.retryable) for a in attempts] == [
            ("primary", "error", True),
            ("backup", "ok", False),
        ]

    def test_same_fallback_as_primary_is_dropped(self):
        assert ModelClient("primary", "primary", llm=ScriptedLlm()).fallback_model is None


class TestToolLoop:
    """Bounded tool calling."""

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self):
        llm = ScriptedLlm([
            tool_call_response(("get_events", {"location_label": "A"}), ("get_weather", {})),
            "final answer",
        ])
        client = ModelClient("primary", llm=llm)

        result = await client.run_tool_loop(
            "sys", "user", echo_tool, max_rounds=2, max_tool_calls=8,
            temperature=0.2, max_tokens=100, deadline=deadline_in(5),
        )

        assert result.content == "final answer"
        assert [e.tool_name for e in result.tool_executions] == ["get_events", "get_weather"]
        assert result.diagnostics.rounds == 1
        assert result.diagnostics.tool_calls_by_name == {"get_events": 1, "get_weather": 1}

        follow_up = llm.requests[1]
        responses = [part.function_response for part in follow_up.contents[-1].parts]
        assert [(r.id, r.name) for r in responses] == [("call-1", "get_events"), ("call-2", "get_weather")]
        assert responses[0].response == {"echo": {"location_label": "A"}}

    @pytest.mark.asyncio
    async def test_tools_are_withdrawn_after_last_round(self):
        llm = ScriptedLlm([tool_call_response(("get_doe", {})), tool_call_response(("get_doe", {}))])
        client = ModelClient("primary", llm=llm)

        with pytest.raises(ToolLoopError) as err:
            await client.run_tool_loop(
                "sys", "user", echo_tool, max_rounds=1, max_tool_calls=8,
                temperature=0.2, max_tokens=100, deadline=deadline_in(5),
            )

        assert err.value.code == TOOL_ROUND_LIMIT
        assert llm.requests[0].config.tools
        assert not llm.requests[1].config.tools

    @pytest.mark.asyncio
    async def test_tool_call_limit(self):
        llm = ScriptedLlm([tool_call_response(("get_doe", {}), ("get_weather", {}))])
        client = ModelClient("primary", llm=llm)

        with pytest.raises(ToolLoopError) as err:
            await client.run_tool_loop(
                "sys", "user", echo_tool, max_rounds=2, max_tool_calls=1,
                temperature=0.2, max_tokens=100, deadline=deadline_in(5),
            )
        assert err.value.code == TOOL_CALL_LIMIT

    @pytest.mark.asyncio
    async def test_spent_deadline_makes_no_request(self):
        llm = ScriptedLlm(["unused"])
        client = ModelClient("primary", llm=llm)

        with pytest.raises(ToolLoopError) as err:
            await client.run_tool_loop(
                "sys", "user", echo_tool, max_rounds=2, max_tool_calls=8,
                temperature=0.2, max_tokens=100, deadline=time.monotonic() - 1,
            )
        assert err.value.code == TURN_BUDGET_EXCEEDED
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_model_failure_keeps_cause(self):
        client = ModelClient("primary", llm=ScriptedLlm([]))
        with pytest.raises(ToolLoopError) as err:
            await client.run_tool_loop(
                "sys", "user", echo_tool, max_rounds=2, max_tool_calls=8,
                temperature=0.2, max_tokens=100, deadline=deadline_in(5),
            )
        assert err.value.code == PROVIDER_EMPTY
        assert isinstance(err.value.cause, ModelCallError)

    def test_declarations_cover_every_tool(self):
        names = [d.name for d in build_tool_declarations()[0].function_declarations]
        assert names == [
            "get_memory", "get_weather", "get_events", "get_closures",
            "get_doe", "get_reviews", "get_competitor_reviews",
        ]
