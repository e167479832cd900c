"""Transcript post-processing with tool calling."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from dictate_tools.config import DEFAULT_LLM_TEMP, DEFAULT_MAX_TOOL_ROUNDS, DEFAULT_TOOL_PROMPT
from dictate_tools.models import ToolCallRequest, ToolCallResult
from dictate_tools.orchestrator import ToolOrchestrator, UnknownToolError

try:
    from openai import AsyncOpenAI
except ImportError:
    AsyncOpenAI = None  # type: ignore


logger = logging.getLogger(__name__)


class LLMToolError(Exception):
    """Raised when the LLM client is unavailable or a request fails."""


@dataclass
class ExecutedToolCall:
    name: str
    arguments: dict[str, Any]
    result: ToolCallResult


@dataclass
class ToolProcessingResult:
    """Final model reply plus every tool call made on the way."""

    text: str
    tool_calls: list[ExecutedToolCall] = field(default_factory=list)
    rounds: int = 0


async def process_with_tools(
    raw_text: str,
    orchestrator: ToolOrchestrator,
    endpoint: str,
    model: str,
    api_key: str | None,
    prompt: str = DEFAULT_TOOL_PROMPT,
    temperature: float = DEFAULT_LLM_TEMP,
    max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    timeout: float = 30.0,
    client: Any = None,
) -> ToolProcessingResult:
    """
    Send a transcript to an OpenAI-compatible LLM with the orchestrator's tools attached.

    Tool calls requested by the model are executed and their results fed back until the
    model answers without calling tools, or ``max_rounds`` requests have been made.

    Args:
        raw_text: Dictated text
        orchestrator: Source of tools and executor of tool calls
        endpoint: Base URL for the OpenAI-compatible API
        model: Model name to use
        api_key: API key (optional, can be None)
        prompt: System prompt
        temperature: Temperature for generation
        max_rounds: Maximum number of chat requests
        timeout: Per-request timeout in seconds
        client: Pre-built async OpenAI client, mostly for tests

    Returns:
        The model's final text and the executed tool calls

    Raises:
        LLMToolError: If the client is unavailable or a request fails
    """
    if not raw_text.strip():
        return ToolProcessingResult(text="")

    if client is None:
        if AsyncOpenAI is None:
            raise LLMToolError("OpenAI client not installed. Run: pip install openai")
        client = AsyncOpenAI(base_url=endpoint, api_key=api_key or "sk-no-key")

    tools = [tool.to_openai_tool() for tool in orchestrator.get_available_tools()]
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": prompt.strip()},
        {"role": "user", "content": raw_text},
    ]
    executed: list[ExecutedToolCall] = []
    input_tokens = 0
    output_tokens = 0
    text = ""
    start_time = time.perf_counter()

    rounds = 0
    while rounds < max_rounds:
        rounds += 1
        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": timeout,
        }
        if tools:
            request["tools"] = tools

        try:
            response = await client.chat.completions.create(**request)
        except Exception as e:
            raise LLMToolError(f"LLM request failed: {e}") from e

        usage = getattr(response, "usage", None)
        if usage is not None:
            input_tokens += getattr(usage, "prompt_tokens", 0) or 0
            output_tokens += getattr(usage, "completion_tokens", 0) or 0

        if not response.choices:
            raise LLMToolError("LLM returned no choices")
        message = response.choices[0].message
        text = (message.content or "").strip()
        tool_calls = message.tool_calls or []
        if not tool_calls:
            break

        messages.append(
            {
                "role": "assistant",
                "content": message.content or "",
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.function.name, "arguments": call.function.arguments},
                    }
                    for call in tool_calls
                ],
            }
        )
        for call in tool_calls:
            arguments, result = await _run_tool_call(orchestrator, call.function.name, call.function.arguments)
            executed.append(ExecutedToolCall(name=call.function.name, arguments=arguments, result=result))
            messages.append({"role": "tool", "tool_call_id": call.id, "content": result.as_text()})
    else:
        logger.warning("Stopped after %d LLM rounds with tool calls still pending", max_rounds)

    total_time = time.perf_counter() - start_time
    logger.info(
        "LLM tool statistics: rounds=%d tool_calls=%d total_time=%.3fs input_tokens=%d output_tokens=%d",
        rounds,
        len(executed),
        total_time,
        input_tokens,
        output_tokens,
    )
    return ToolProcessingResult(text=text, tool_calls=executed, rounds=rounds)


async def _run_tool_call(
    orchestrator: ToolOrchestrator, name: str, raw_arguments: str | None
) -> tuple[dict[str, Any], ToolCallResult]:
    try:
        arguments = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError as e:
        logger.warning("Model sent invalid arguments for %s: %s", name, e)
        return {}, ToolCallResult.error(f"Invalid JSON arguments for {name}: {e}")
    if not isinstance(arguments, dict):
        return {}, ToolCallResult.error(f"Arguments for {name} must be a JSON object")

    logger.info("Executing tool call: %s", name)
    try:
        result = await orchestrator.execute_tool_call(ToolCallRequest(name=name, arguments=arguments))
    except UnknownToolError as e:
        logger.warning("Model requested unknown tool: %s", name)
        result = ToolCallResult.error(str(e))
    return arguments, result
