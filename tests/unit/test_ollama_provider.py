"""Tests for the Ollama provider."""

from collections.abc import AsyncIterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import ollama
import pytest

from agentbench.exceptions import LLMProviderError
from agentbench.models.config import LLMConfig
from agentbench.models.conversation import Message, ToolCallRequest
from agentbench.providers.factory import ProviderRegistry
from agentbench.providers.ollama import DEFAULT_CONTEXT_SIZE, OllamaProvider
from agentbench.providers.retry_after import RetryAfterTracker


def _part(
    content: str = "",
    *,
    tool_calls: list[Any] | None = None,
    done: bool = True,
    done_reason: str | None = "stop",
    prompt_eval_count: int | None = None,
    eval_count: int | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        message=SimpleNamespace(content=content, tool_calls=tool_calls),
        done=done,
        done_reason=done_reason,
        prompt_eval_count=prompt_eval_count,
        eval_count=eval_count,
    )


def _ollama_call(name: str, arguments: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(function=SimpleNamespace(name=name, arguments=arguments))


async def _stream(parts: list[SimpleNamespace]) -> AsyncIterator[SimpleNamespace]:
    for part in parts:
        yield part


@pytest.fixture
def provider() -> OllamaProvider:
    """Create a provider with test config."""
    config = LLMConfig(
        provider="ollama",
        model="test-model:latest",
        base_url="http://localhost:11434",
    )
    return OllamaProvider(config)


class TestSetup:
    """Tests for registration and configuration."""

    def test_registered(self) -> None:
        """The provider is registered as ollama."""
        assert ProviderRegistry.get("ollama") is OllamaProvider

    def test_with_retry_after_tracker(self) -> None:
        """A tracker can be installed without an API key."""
        provider = OllamaProvider(
            LLMConfig(provider="ollama", model="llama3.2"), retry_after=RetryAfterTracker()
        )

        assert provider.name == "ollama"

    def test_options(self) -> None:
        """Only non-default sampling settings are sent, plus a larger context."""
        default = OllamaProvider(LLMConfig(provider="ollama", model="m"))
        tuned = OllamaProvider(
            LLMConfig(provider="ollama", model="m", temperature=0.3, max_tokens=256)
        )

        assert default._options() == {"num_ctx": DEFAULT_CONTEXT_SIZE}
        assert tuned._options() == {
            "temperature": 0.3,
            "num_predict": 256,
            "num_ctx": DEFAULT_CONTEXT_SIZE,
        }


class TestMessageConversion:
    """Tests for message conversion."""

    def test_tool_messages(self, provider: OllamaProvider) -> None:
        """Tool requests carry dict arguments and responses carry the tool name."""
        messages = [
            Message(
                role="assistant",
                tool_calls=[ToolCallRequest(id="call_0", name="read_file", arguments='{"path": "/a"}')],
            ),
            Message(role="tool", content="contents", tool_call_id="call_0", name="read_file"),
        ]

        assert provider._convert_messages(messages) == [
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "read_file", "arguments": {"path": "/a"}}}],
            },
            {"role": "tool", "content": "contents", "tool_name": "read_file"},
        ]

    def test_malformed_arguments_dropped(self, provider: OllamaProvider) -> None:
        """Unparseable arguments in history become an empty object."""
        messages = [
            Message(
                role="assistant",
                tool_calls=[ToolCallRequest(id="call_0", name="x", arguments="{oops")],
            )
        ]

        converted = provider._convert_messages(messages)

        assert converted[0]["tool_calls"][0]["function"]["arguments"] == {}

    def test_extract_tool_calls(self, provider: OllamaProvider) -> None:
        """Calls get positional ids and JSON arguments."""
        calls = provider._extract_tool_calls(
            [_ollama_call("a", {"k": 1}), _ollama_call("b", {})], offset=2
        )

        assert calls == [
            ToolCallRequest(id="call_2", name="a", arguments='{"k": 1}'),
            ToolCallRequest(id="call_3", name="b", arguments="{}"),
        ]


class TestGenerate:
    """Tests for generation."""

    @pytest.mark.asyncio
    async def test_generate(self, provider: OllamaProvider) -> None:
        """The response is mapped to a single choice with usage."""
        provider._client = AsyncMock()
        provider._client.chat = AsyncMock(
            return_value=_part(
                "",
                tool_calls=[_ollama_call("list_directory", {"path": "/tmp"})],
                prompt_eval_count=12,
                eval_count=4,
            )
        )
        tools = [{"type": "function", "function": {"name": "list_directory"}}]

        result = await provider.generate([Message.user("ls")], tools=tools)

        choice = result.choices[0]
        assert choice.tool_calls == [
            ToolCallRequest(id="call_0", name="list_directory", arguments='{"path": "/tmp"}')
        ]
        assert result.usage == {"prompt_tokens": 12, "completion_tokens": 4}
        call_kwargs = provider._client.chat.call_args.kwargs
        assert call_kwargs["tools"] == tools
        assert call_kwargs["model"] == "test-model:latest"

    @pytest.mark.asyncio
    async def test_stream(self, provider: OllamaProvider) -> None:
        """Streamed parts are forwarded and merged."""
        provider._client = AsyncMock()
        provider._client.chat = AsyncMock(
            return_value=_stream(
                [
                    _part("Hel", done=False),
                    _part("lo", tool_calls=[_ollama_call("a", {})], done=False),
                    _part(
                        "",
                        tool_calls=[_ollama_call("b", {"x": 1})],
                        done_reason="stop",
                        prompt_eval_count=3,
                        eval_count=2,
                    ),
                ]
            )
        )
        received: list[str] = []

        async def on_chunk(text: str) -> None:
            received.append(text)

        result = await provider.generate([Message.user("hi")], on_chunk=on_chunk)

        assert received == ["Hel", "lo"]
        choice = result.choices[0]
        assert choice.content == "Hello"
        assert [call.id for call in choice.tool_calls] == ["call_0", "call_1"]
        assert result.usage == {"prompt_tokens": 3, "completion_tokens": 2}
        assert provider._client.chat.call_args.kwargs["stream"] is True


class TestErrorHandling:
    """Tests for Ollama provider error messages."""

    @pytest.mark.asyncio
    async def test_model_not_found_error_message(self, provider: OllamaProvider) -> None:
        """Model-not-found errors have helpful messages."""
        provider._client = AsyncMock()
        provider._client.chat = AsyncMock(
            side_effect=ollama.ResponseError("model 'test-model:latest' not found")
        )

        with pytest.raises(LLMProviderError) as exc_info:
            await provider.generate([Message.user("test")])

        error_msg = str(exc_info.value)
        assert "test-model:latest" in error_msg
        assert "not found" in error_msg.lower()
        assert "ollama list" in error_msg
        assert "/api/tags" in error_msg

    @pytest.mark.asyncio
    async def test_other_response_error_preserved(self, provider: OllamaProvider) -> None:
        """Other ResponseErrors keep their message and status."""
        provider._client = AsyncMock()
        provider._client.chat = AsyncMock(
            side_effect=ollama.ResponseError("too many requests", status_code=429)
        )

        with pytest.raises(LLMProviderError) as exc_info:
            await provider.generate([Message.user("test")])

        error_msg = str(exc_info.value)
        assert "Ollama API error (status 429)" in error_msg
        assert "too many requests" in error_msg

    @pytest.mark.asyncio
    async def test_connection_error(self, provider: OllamaProvider) -> None:
        """Transport failures are wrapped."""
        provider._client = AsyncMock()
        provider._client.chat = AsyncMock(side_effect=ConnectionError("connection refused"))

        with pytest.raises(LLMProviderError, match="Ollama API error: connection refused"):
            await provider.generate([Message.user("test")], on_chunk=AsyncMock())
