"""Tests for the litellm-backed completion client.

litellm.completion is patched with canned responses built from
SimpleNamespace objects shaped like litellm's response and chunk models.
"""

from types import SimpleNamespace
from unittest.mock import patch

import litellm
import pytest

from completion_client import CancellationToken, LiteLLMCompletionClient, TextUpdate, ToolCallUpdate, UsageUpdate
from doc_tools import DocumentToolbox
from errors import RateLimitedError, StreamCancelled, TransportError
from generation_config import GenerationConfig


def _tool_call(name, arguments, call_id="call_1", index=0):
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _response(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _chunk(content=None, tool_calls=None, usage=None):
    choices = [] if usage else [SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))]
    return SimpleNamespace(usage=usage, choices=choices)


@pytest.fixture
def client():
    config = GenerationConfig(chat_model="openai/gpt-4o", llm_base_url="http://llm.test", llm_api_key="key")
    return LiteLLMCompletionClient(config)


class TestCancellationToken:
    def test_deadline(self):
        now = [0.0]
        token = CancellationToken(5, clock=lambda: now[0])
        assert not token.cancelled
        now[0] = 5.0
        assert token.cancelled
        with pytest.raises(StreamCancelled):
            token.raise_if_cancelled()

    def test_explicit_cancel(self):
        token = CancellationToken(None)
        token.cancel()
        assert token.cancelled


class TestCompleteWithTool:
    @patch("completion_client.litellm.completion")
    def test_forces_tool_and_dispatches(self, mock_completion, client):
        mock_completion.return_value = _response(tool_calls=[_tool_call("docs_generate", '{"content": "# Hi"}')])
        toolbox = DocumentToolbox()

        status = client.complete_with_tool([{"role": "user", "content": "go"}], toolbox, "docs_generate")

        assert "successful" in status
        assert toolbox.content == "# Hi"
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "function", "function": {"name": "docs_generate"}}
        assert [t["function"]["name"] for t in kwargs["tools"]] == ["docs_generate"]
        assert kwargs["model"] == "openai/gpt-4o"
        assert kwargs["api_base"] == "http://llm.test"
        assert kwargs["api_key"] == "key"
        assert "max_tokens" not in kwargs

    @patch("completion_client.litellm.completion")
    def test_no_tool_call_returns_empty(self, mock_completion, client):
        mock_completion.return_value = _response(content="I refuse")
        toolbox = DocumentToolbox()
        assert client.complete_with_tool([], toolbox, "docs_generate", max_tokens=512) == ""
        assert toolbox.content is None
        assert mock_completion.call_args.kwargs["max_tokens"] == 512

    @patch("completion_client.litellm.completion")
    def test_connection_error_becomes_transport_error(self, mock_completion, client):
        mock_completion.side_effect = ConnectionError("refused")
        with pytest.raises(TransportError):
            client.complete_with_tool([], DocumentToolbox(), "docs_generate")

    @patch("completion_client.litellm.completion")
    def test_rate_limit_is_translated(self, mock_completion, client):
        mock_completion.side_effect = litellm.RateLimitError(
            message="slow down", llm_provider="openai", model="gpt-4o",
        )
        with pytest.raises(RateLimitedError):
            client.complete_with_tool([], DocumentToolbox(), "docs_generate")


class TestComplete:
    @patch("completion_client.litellm.completion")
    def test_runs_tools_until_model_stops(self, mock_completion, client):
        mock_completion.side_effect = [
            _response(tool_calls=[_tool_call("docs_summarize", '{"summary": "Short"}')]),
            _response(content="All done"),
        ]
        toolbox = DocumentToolbox()
        messages = [{"role": "user", "content": "summarize"}]

        assert client.complete(messages, toolbox) == "All done"

        assert toolbox.summary == "Short"
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[2]["tool_call_id"] == "call_1"


class TestStream:
    @patch("completion_client.litellm.completion")
    def test_streams_tool_round_then_text(self, mock_completion, client):
        first_round = [
            _chunk(tool_calls=[_tool_call("docs_generate", '{"content": ')]),
            _chunk(tool_calls=[SimpleNamespace(index=0, id=None,
                                               function=SimpleNamespace(name=None, arguments='"# Doc"}'))]),
            _chunk(usage=SimpleNamespace(prompt_tokens=30, completion_tokens=12)),
        ]
        second_round = [_chunk(content="Finished"), _chunk(usage=SimpleNamespace(prompt_tokens=40, completion_tokens=2))]
        mock_completion.side_effect = [iter(first_round), iter(second_round)]
        toolbox = DocumentToolbox()
        messages = [{"role": "user", "content": "write"}]

        updates = list(client.stream(messages, toolbox, cancel_token=CancellationToken(None)))

        assert toolbox.content == "# Doc"
        assert [type(u) for u in updates] == [ToolCallUpdate, ToolCallUpdate, UsageUpdate, TextUpdate, UsageUpdate]
        assert messages[1]["tool_calls"][0]["function"]["arguments"] == '{"content": "# Doc"}'
        assert messages[-1] == {"role": "assistant", "content": "Finished"}
        assert mock_completion.call_args.kwargs["stream"] is True

    @patch("completion_client.litellm.completion")
    def test_second_generate_is_reported_to_model(self, mock_completion, client):
        call = _tool_call("docs_generate", '{"content": "# A"}')
        mock_completion.side_effect = [
            iter([_chunk(tool_calls=[call])]),
            iter([_chunk(tool_calls=[call])]),
            iter([_chunk(content="ok")]),
        ]
        toolbox = DocumentToolbox()
        messages = []

        list(client.stream(messages, toolbox, cancel_token=CancellationToken(None)))

        tool_results = [m["content"] for m in messages if m["role"] == "tool"]
        assert "successful" in tool_results[0]
        assert "only be called once" in tool_results[1]

    @patch("completion_client.litellm.completion")
    def test_cancelled_token_stops_stream(self, mock_completion, client):
        mock_completion.return_value = iter([_chunk(content="a"), _chunk(content="b")])
        token = CancellationToken(None)
        token.cancel()
        with pytest.raises(StreamCancelled):
            list(client.stream([], DocumentToolbox(), cancel_token=token))
