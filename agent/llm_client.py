# =============================================================================
# agent/llm_client.py  —  Model Client (Google ADK LiteLlm via OpenRouter)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Talks to the language model.  Two entry points:
#
#     complete(...)        one request, no tools (signal-pack summary, repair)
#     run_tool_loop(...)   the bounded tool-calling loop for the main answer
#
# MODEL CHAIN:
#   ADK LiteLlm → LiteLLM → OpenRouter → primary model
#                                     ↘ fallback model (only if retryable)
#
#   One LiteLlm instance serves both models: LlmRequest.model overrides the
#   instance default per call.  The fallback is attempted ONLY when the
#   primary failure looks transient (HTTP 408/409/425/429/5xx, timeouts,
#   "rate limit", "overloaded", ...).  A malformed request would fail on the
#   fallback too, so it is not retried.
#
# TOOL LOOP LIMITS:
#   max_rounds       rounds in which the model may request tools; after the
#                    last one tools are withdrawn and a final answer is due
#   max_tool_calls   total tool calls across all rounds
#   deadline         absolute time.monotonic() value; every call gets only
#                    what is left
#
#   Exceeding any of them raises ToolLoopError with a stable code.
# =============================================================================

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from google.adk.models.lite_llm import LiteLlm
from google.adk.models.llm_request import LlmRequest
from google.adk.models.llm_response import LlmResponse
from google.genai import types

from core.config import PRIMARY_MODEL_BUDGET_SHARE

from tools.registry import TOOL_SPECS, ToolExecution

logger = logging.getLogger(__name__)

PROVIDER_EMPTY = "AGENT_PROVIDER_EMPTY"
PROVIDER_ERROR = "OPENROUTER_ERROR"
TOOL_CALL_LIMIT = "AGENT_TOOL_CALL_LIMIT_REACHED"
TOOL_ROUND_LIMIT = "AGENT_TOOL_ROUND_LIMIT_REACHED"
TURN_BUDGET_EXCEEDED = "AGENT_TURN_BUDGET_EXCEEDED"

_RETRYABLE_STATUSES = {408, 409, 425, 429}
_RETRYABLE_SIGNALS = (
    "rate limit",
    "temporar",
    "timeout",
    "timed out",
    "unavailable",
    "overload",
    "capacity",
    "provider",
    "upstream",
    "endpoint",
)


# =============================================================================
# Errors and records
# =============================================================================
@dataclass
class ModelAttempt:
    attempt_number: int
    model: str
    status: str                        # "ok" | "error"
    retryable: bool = False
    finish_reason: Optional[str] = None
    has_tool_calls: bool = False
    failure_code: Optional[str] = None


class ModelCallError(Exception):
    """Every model in the chain failed (or the only one did)."""

    def __init__(self, code: str, message: str, retryable: bool = False, attempts: Optional[list] = None):
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.attempts = attempts or []


@dataclass
class ToolLoopDiagnostics:
    rounds: int = 0
    tool_call_count: int = 0
    tool_calls_by_name: dict[str, int] = field(default_factory=dict)
    final_finish_reason: Optional[str] = None


class ToolLoopError(Exception):
    def __init__(self, code: str, diagnostics: ToolLoopDiagnostics, cause: Optional[BaseException] = None):
        super().__init__(code)
        self.code = code
        self.diagnostics = diagnostics
        self.cause = cause


@dataclass
class ModelReply:
    model: str
    text: str
    content: Optional[types.Content]
    function_calls: list[types.FunctionCall]
    finish_reason: Optional[str]


@dataclass
class ToolLoopResult:
    content: str
    tool_executions: list[ToolExecution]
    diagnostics: ToolLoopDiagnostics


# =============================================================================
# Failure classification
# =============================================================================
def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable_failure(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True
    status = _status_code(exc)
    if status is not None and (status in _RETRYABLE_STATUSES or status >= 500):
        return True
    signal = f"{exc} {type(exc).__name__}".lower()
    return any(needle in signal for needle in _RETRYABLE_SIGNALS)


def _finish_reason_name(response: LlmResponse) -> Optional[str]:
    if response.finish_reason is None:
        return None
    if response.finish_reason == types.FinishReason.MAX_TOKENS:
        return "length"
    return str(getattr(response.finish_reason, "name", response.finish_reason)).lower()


def build_tool_declarations() -> list[types.Tool]:
    """Translate the framework-agnostic TOOL_SPECS into a genai Tool."""
    return [types.Tool(function_declarations=[
        types.FunctionDeclaration(
            name=spec.name.value,
            description=spec.description,
            parameters_json_schema=spec.parameters,
        )
        for spec in TOOL_SPECS.values()
    ])]


def user_content(text: str) -> types.Content:
    return types.Content(role="user", parts=[types.Part(text=text)])


# =============================================================================
# ModelClient
# =============================================================================
class ModelClient:
    """Primary/fallback model access through one ADK LiteLlm adapter.

    Args:
        primary_model:  LiteLLM model string, e.g. "openrouter/moonshotai/kimi-k2.5".
        fallback_model: Tried only when the primary failure is retryable.
        llm:            Injected adapter (tests pass a fake with the same
                        generate_content_async signature).
    """

    def __init__(self, primary_model: str, fallback_model: Optional[str] = None, llm: Optional[Any] = None):
        self.primary_model = primary_model
        self.fallback_model = fallback_model if fallback_model and fallback_model != primary_model else None
        self.llm = llm if llm is not None else LiteLlm(model=primary_model)

    async def _request_once(
        self,
        model: str,
        system_instruction: str,
        contents: list[types.Content],
        temperature: float,
        max_tokens: int,
        timeout_ms: int,
        tools: Optional[list[types.Tool]],
    ) -> ModelReply:
        request = LlmRequest(
            model=model,
            contents=list(contents),
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                temperature=temperature,
                max_output_tokens=max_tokens,
                tools=tools,
            ),
        )

        async def collect() -> Optional[LlmResponse]:
            final = None
            async for response in self.llm.generate_content_async(request, stream=False):
                final = response
            return final

        response = await asyncio.wait_for(collect(), timeout=max(timeout_ms, 1) / 1000)
        if response is None:
            raise ModelCallError(PROVIDER_EMPTY, "No response content from model")
        if response.error_code and response.content is None:
            raise ModelCallError(PROVIDER_ERROR, f"Model API error: {response.error_code} - {response.error_message}")

        parts = response.content.parts if response.content and response.content.parts else []
        text = "".join(part.text for part in parts if part.text and not part.thought)
        calls = [part.function_call for part in parts if part.function_call]
        if not text.strip() and not calls:
            raise ModelCallError(PROVIDER_EMPTY, "No response content from model")
        return ModelReply(
            model=model,
            text=text,
            content=response.content,
            function_calls=calls,
            finish_reason=_finish_reason_name(response),
        )

    async def complete(
        self,
        system_instruction: str,
        contents: list[types.Content],
        temperature: float,
        max_tokens: int,
        timeout_ms: int,
        tools: Optional[list[types.Tool]] = None,
        attempt_log: Optional[list[ModelAttempt]] = None,
    ) -> ModelReply:
        """One request through the primary → fallback chain.

        Raises:
            ModelCallError: code OPENROUTER_ERROR or AGENT_PROVIDER_EMPTY.
        """
        attempts = attempt_log if attempt_log is not None else []
        chain = [self.primary_model] + ([self.fallback_model] if self.fallback_model else [])
        started = time.monotonic()
        last_error: Optional[BaseException] = None

        for index, model in enumerate(chain):
            remaining_ms = timeout_ms - int((time.monotonic() - started) * 1000)
            if index > 0 and remaining_ms <= 0:
                break
            attempt_ms = remaining_ms
            if index == 0 and len(chain) > 1:
                # A primary timeout is retryable, so leave the fallback room to run.
                attempt_ms = max(1, int(timeout_ms * PRIMARY_MODEL_BUDGET_SHARE))
            try:
                reply = await self._request_once(
                    model, system_instruction, contents, temperature, max_tokens, attempt_ms, tools
                )
            except ModelCallError as exc:
                attempts.append(ModelAttempt(len(attempts) + 1, model, "error", False, failure_code=exc.code))
                raise ModelCallError(exc.code, str(exc), False, attempts) from exc
            except Exception as exc:
                retryable = is_retryable_failure(exc)
                attempts.append(ModelAttempt(len(attempts) + 1, model, "error", retryable, failure_code=PROVIDER_ERROR))
                logger.warning("Model %s failed (retryable=%s): %s", model, retryable, exc)
                last_error = exc
                if not retryable:
                    break
                continue

            attempts.append(ModelAttempt(
                len(attempts) + 1,
                model,
                "ok",
                finish_reason=reply.finish_reason,
                has_tool_calls=bool(reply.function_calls),
            ))
            return reply

        retryable = last_error is not None and is_retryable_failure(last_error)
        raise ModelCallError(PROVIDER_ERROR, f"Model API error: {last_error}", retryable, attempts)

    async def complete_text(
        self,
        system_instruction: str,
        user_text: str,
        temperature: float,
        max_tokens: int,
        timeout_ms: int,
        attempt_log: Optional[list[ModelAttempt]] = None,
    ) -> ModelReply:
        return await self.complete(
            system_instruction, [user_content(user_text)], temperature, max_tokens, timeout_ms,
            attempt_log=attempt_log,
        )

    async def run_tool_loop(
        self,
        system_instruction: str,
        user_text: str,
        execute_tool: Callable[[str, dict], Awaitable[ToolExecution]],
        max_rounds: int,
        max_tool_calls: int,
        temperature: float,
        max_tokens: int,
        deadline: float,
        attempt_log: Optional[list[ModelAttempt]] = None,
    ) -> ToolLoopResult:
        """Let the model call tools for up to `max_rounds`, then demand an answer.

        Tool calls within one round run concurrently.  Tool results go back
        to the model as function responses matched by call id.

        Raises:
            ToolLoopError: limits or deadline exceeded, or the model chain failed
                           (the ModelCallError is kept as `cause`).
        """
        diagnostics = ToolLoopDiagnostics()
        contents = [user_content(user_text)]
        executions: list[ToolExecution] = []
        declarations = build_tool_declarations()

        for round_index in range(max_rounds + 1):
            remaining_ms = int((deadline - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                raise ToolLoopError(TURN_BUDGET_EXCEEDED, diagnostics)

            tools_allowed = round_index < max_rounds
            try:
                reply = await self.complete(
                    system_instruction,
                    contents,
                    temperature,
                    max_tokens,
                    remaining_ms,
                    tools=declarations if tools_allowed else None,
                    attempt_log=attempt_log,
                )
            except ModelCallError as exc:
                raise ToolLoopError(exc.code, diagnostics, cause=exc) from exc

            diagnostics.final_finish_reason = reply.finish_reason
            if not reply.function_calls:
                return ToolLoopResult(reply.text, executions, diagnostics)
            if not tools_allowed:
                raise ToolLoopError(TOOL_ROUND_LIMIT, diagnostics)
            if diagnostics.tool_call_count + len(reply.function_calls) > max_tool_calls:
                raise ToolLoopError(TOOL_CALL_LIMIT, diagnostics)

            diagnostics.rounds += 1
            for call in reply.function_calls:
                diagnostics.tool_call_count += 1
                diagnostics.tool_calls_by_name[call.name] = diagnostics.tool_calls_by_name.get(call.name, 0) + 1

            round_executions = await asyncio.gather(
                *(execute_tool(call.name, dict(call.args or {})) for call in reply.function_calls)
            )
            executions.extend(round_executions)

            contents.append(reply.content)
            contents.append(types.Content(role="user", parts=[
                types.Part(function_response=types.FunctionResponse(
                    id=call.id,
                    name=call.name,
                    response=json.loads(json.dumps(execution.result, default=str)),
                ))
                for call, execution in zip(reply.function_calls, round_executions)
            ]))

        raise ToolLoopError(TOOL_ROUND_LIMIT, diagnostics)
