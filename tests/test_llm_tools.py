"""Tests for llm_tools.py - transcript processing with tool calls."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dictate_tools.llm_tools import LLMToolError, process_with_tools
from dictate_tools.orchestrator import ToolOrchestrator


def tool_call(call_id, name, arguments):
    call = MagicMock()
    call.id = call_id
    call.function.name = name
    call.function.arguments = arguments
    return call


def completion(content=None, tool_calls=None, prompt_tokens=10, completion_tokens=5):
    response = MagicMock()
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls
    response.choices = [MagicMock(message=message)]
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    return response


def mock_client(*responses):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


def run(text, client, orchestrator=None, **kwargs):
    async def scenario():
        return await process_with_tools(
            text,
            orchestrator or ToolOrchestrator(),
            endpoint="http://localhost:1234/v1",
            model="local-model",
            api_key=None,
            client=client,
            **kwargs,
        )

    return asyncio.run(scenario())


class TestProcessWithTools:
    """Tests for process_with_tools."""

    def test_empty_text_skips_llm(self):
        """Test that blank transcripts never reach the model."""
        client = mock_client()

        result = run("   ", client)

        assert result.text == ""
        client.chat.completions.create.assert_not_called()

    def test_plain_answer_without_tools(self):
        """Test a reply with no tool calls."""
        client = mock_client(completion("What's the weather like?"))

        result = run("whats the weather like", client)

        assert result.text == "What's the weather like?"
        assert result.tool_calls == []
        assert result.rounds == 1
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "local-model"
        assert [t["function"]["name"] for t in kwargs["tools"]] == [
            "create_file",
            "read_file",
            "list_files",
            "send_notification",
        ]
        assert kwargs["messages"][1] == {"role": "user", "content": "whats the weather like"}

    def test_executes_requested_tool_and_returns_final_text(self, tmp_path):
        """Test the full loop: the model calls a tool, sees the result and answers."""
        target = tmp_path / "groceries.txt"
        arguments = json.dumps({"path": str(target), "content": "eggs"})
        client = mock_client(
            completion(tool_calls=[tool_call("call_1", "create_file", arguments)]),
            completion("Created your grocery list."),
        )

        result = run("make a grocery list with eggs", client)

        assert target.read_text(encoding="utf-8") == "eggs"
        assert result.text == "Created your grocery list."
        assert result.rounds == 2
        assert [(c.name, c.result.is_error) for c in result.tool_calls] == [("create_file", False)]

        second_messages = client.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert second_messages[2]["role"] == "assistant"
        assert second_messages[2]["tool_calls"][0]["id"] == "call_1"
        assert second_messages[3] == {
            "role": "tool",
            "tool_call_id": "call_1",
            "content": f"File created: {target}",
        }

    def test_unknown_tool_is_reported_to_model(self):
        """Test that a hallucinated tool name becomes an error tool message."""
        client = mock_client(
            completion(tool_calls=[tool_call("call_1", "launch_rockets", "{}")]),
            completion("Sorry, I can't do that."),
        )

        result = run("launch the rockets", client)

        assert result.tool_calls[0].result.is_error is True
        tool_message = client.chat.completions.create.call_args_list[1].kwargs["messages"][3]
        assert tool_message["content"] == "Unknown tool: launch_rockets"

    @pytest.mark.parametrize("arguments", ["{not json", "[1, 2]"])
    def test_bad_arguments_are_reported_to_model(self, arguments):
        """Test that malformed arguments never reach the tool."""
        client = mock_client(
            completion(tool_calls=[tool_call("call_1", "read_file", arguments)]),
            completion("Done."),
        )

        result = run("read my notes", client)

        assert result.tool_calls[0].result.is_error is True
        assert result.tool_calls[0].arguments == {}

    def test_stops_after_max_rounds(self, caplog):
        """Test that a model that keeps calling tools is cut off."""
        looping = [
            completion(tool_calls=[tool_call(f"call_{i}", "list_files", json.dumps({"path": "."}))])
            for i in range(2)
        ]
        client = mock_client(*looping)

        result = run("list everything forever", client, max_rounds=2)

        assert result.rounds == 2
        assert len(result.tool_calls) == 2
        assert client.chat.completions.create.call_count == 2
        assert "Stopped after 2 LLM rounds" in caplog.text

    def test_request_failure_raises(self):
        """Test that transport errors are wrapped."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(LLMToolError, match="LLM request failed: refused"):
            run("hello", client)

    def test_no_choices_raises(self):
        """Test that an empty response is an error."""
        response = completion("x")
        response.choices = []

        with pytest.raises(LLMToolError, match="no choices"):
            run("hello", mock_client(response))

    def test_missing_openai_package(self):
        """Test the error when the openai package is unavailable."""
        with patch("dictate_tools.llm_tools.AsyncOpenAI", None):
            with pytest.raises(LLMToolError, match="OpenAI client not installed"):
                run("hello", None)

    def test_builds_client_from_endpoint(self):
        """Test that a client is created for the endpoint when none is given."""
        client = mock_client(completion("ok"))
        with patch("dictate_tools.llm_tools.AsyncOpenAI", return_value=client) as mock_openai:
            result = run("hello", None)

        mock_openai.assert_called_once_with(base_url="http://localhost:1234/v1", api_key="sk-no-key")
        assert result.text == "ok"

    def test_logs_statistics(self, caplog):
        """Test that timing and token statistics are logged."""
        import logging

        caplog.set_level(logging.INFO, logger="dictate_tools.llm_tools")
        run("hello", mock_client(completion("hi", prompt_tokens=12, completion_tokens=3)))

        assert "LLM tool statistics: rounds=1 tool_calls=0" in caplog.text
        assert "input_tokens=12 output_tokens=3" in caplog.text
