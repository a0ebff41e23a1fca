"""OpenAI-compatible LLM providers.

Works with any OpenAI API-compatible endpoint including:
- OpenAI API
- Azure OpenAI
- Groq
- vLLM, LiteLLM, Ollama (OpenAI compatibility mode)
"""

import os
from typing import Any

import httpx
from openai import AsyncAzureOpenAI, AsyncOpenAI

from agentbench.cancellation import CancellationToken, guarded
from agentbench.exceptions import LLMProviderError, ProviderConfigError
from agentbench.models.config import LLMConfig
from agentbench.models.conversation import Message, ToolCallRequest
from agentbench.providers.base import ChunkCallback, Choice, LLMProvider, LLMResponse
from agentbench.providers.factory import ProviderRegistry
from agentbench.providers.retry_after import RetryAfterTracker

# Default max tokens value from LLMConfig
DEFAULT_MAX_TOKENS = 4096

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@ProviderRegistry.register("openai")
class OpenAICompatibleProvider(LLMProvider):
    """OpenAI-compatible provider for LLM inference."""

    api_key_env = "OPENAI_API_KEY"
    default_base_url: str | None = None
    # Ask for usage on the final streamed chunk
    stream_usage = True

    def __init__(
        self,
        config: LLMConfig,
        retry_after: RetryAfterTracker | None = None,
    ) -> None:
        """Initialize the OpenAI-compatible provider.

        Args:
            config: LLM configuration with model, optional base_url, and api_key.
            retry_after: Optional tracker for Retry-After headers; when given,
                the SDK's own retries are disabled so 429s reach the
                rate-limited wrapper.

        Raises:
            ProviderConfigError: If no API key is available.
        """
        super().__init__(config, retry_after)
        self._client = self._create_client(self._resolve_api_key(), self._client_kwargs())

    def _resolve_api_key(self) -> str:
        # Config takes priority, then environment variable
        if self._config.api_key:
            api_key = self._config.api_key.get_secret_value()
        else:
            api_key = os.environ.get(self.api_key_env, "")

        if not api_key:
            msg = (
                f"API key not found for provider '{self._config.provider}'. "
                f"Provide via config.api_key or {self.api_key_env} environment variable."
            )
            raise ProviderConfigError(msg)
        return api_key

    def _client_kwargs(self) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {}
        if self._retry_after is not None:
            client_kwargs["max_retries"] = 0
            client_kwargs["http_client"] = httpx.AsyncClient(
                event_hooks=self._retry_after.event_hooks(),
                timeout=httpx.Timeout(600.0, connect=10.0),
            )
        return client_kwargs

    def _create_client(self, api_key: str, client_kwargs: dict[str, Any]) -> AsyncOpenAI:
        base_url = self._config.base_url or self.default_base_url
        if base_url:
            client_kwargs["base_url"] = base_url
        return AsyncOpenAI(api_key=api_key, **client_kwargs)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert conversation messages to OpenAI format.

        Args:
            messages: List of conversation messages.

        Returns:
            List of OpenAI message dictionaries.
        """
        openai_messages: list[dict[str, Any]] = []

        for msg in messages:
            openai_msg: dict[str, Any] = {
                "role": msg.role,
                "content": msg.content,
            }

            # Include tool_call_id for tool result messages
            if msg.tool_call_id:
                openai_msg["tool_call_id"] = msg.tool_call_id

            # Include tool_calls for assistant messages that made tool calls
            if msg.tool_calls:
                openai_msg["content"] = msg.content or None
                openai_msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": call.arguments or "{}",
                        },
                    }
                    for call in msg.tool_calls
                ]

            openai_messages.append(openai_msg)

        return openai_messages

    def _extract_tool_calls(self, tool_calls: list[Any] | None) -> list[ToolCallRequest]:
        """Extract tool calls from an OpenAI response message.

        Args:
            tool_calls: Tool calls from OpenAI response.

        Returns:
            List of tool call requests in response order.
        """
        if not tool_calls:
            return []

        return [
            ToolCallRequest(
                id=tool_call.id,
                name=tool_call.function.name,
                arguments=tool_call.function.arguments or "",
            )
            for tool_call in tool_calls
        ]

    def _build_request(
        self, messages: list[Message], tools: list[dict[str, Any]] | None
    ) -> dict[str, Any]:
        request_kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": self._convert_messages(messages),
        }

        if self._config.temperature != 0.0:
            request_kwargs["temperature"] = self._config.temperature

        if self._config.max_tokens != DEFAULT_MAX_TOKENS:
            request_kwargs["max_tokens"] = self._config.max_tokens

        # OpenAI uses the standard tool format
        if tools:
            request_kwargs["tools"] = tools

        return request_kwargs

    async def generate(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> LLMResponse:
        """Generate a completion from messages.

        Args:
            messages: List of conversation messages.
            tools: Optional list of tool definitions.
            on_chunk: Streams narration to this callback when given.
            cancel: Optional cancellation token aborting the call.

        Returns:
            LLMResponse with the generated choices.

        Raises:
            LLMProviderError: If the API call fails.
        """
        request_kwargs = self._build_request(messages, tools)
        if on_chunk is None:
            return await guarded(self._complete(request_kwargs), cancel)
        return await guarded(self._stream(request_kwargs, on_chunk), cancel)

    async def _complete(self, request_kwargs: dict[str, Any]) -> LLMResponse:
        try:
            response = await self._client.chat.completions.create(**request_kwargs)
        except Exception as e:
            msg = f"OpenAI API error: {e}"
            raise LLMProviderError(msg) from e

        choices = [
            Choice(
                content=choice.message.content or "",
                stop_reason=choice.finish_reason or "stop",
                tool_calls=self._extract_tool_calls(choice.message.tool_calls),
            )
            for choice in response.choices or []
        ]

        usage: dict[str, int] = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(choices=choices, usage=usage, raw_response=response)

    async def _stream(
        self, request_kwargs: dict[str, Any], on_chunk: ChunkCallback
    ) -> LLMResponse:
        request_kwargs["stream"] = True
        if self.stream_usage:
            request_kwargs["stream_options"] = {"include_usage": True}

        content_parts: list[str] = []
        # Tool call deltas arrive in fragments keyed by index
        partial_calls: dict[int, dict[str, str]] = {}
        stop_reason = "stop"
        usage: dict[str, int] = {}
        saw_choice = False

        try:
            stream = await self._client.chat.completions.create(**request_kwargs)
            async for chunk in stream:
                if chunk.usage:
                    usage = {
                        "prompt_tokens": chunk.usage.prompt_tokens,
                        "completion_tokens": chunk.usage.completion_tokens,
                        "total_tokens": chunk.usage.total_tokens,
                    }
                if not chunk.choices:
                    continue

                saw_choice = True
                choice = chunk.choices[0]
                delta = choice.delta
                if delta.content:
                    content_parts.append(delta.content)
                    await on_chunk(delta.content)

                for fragment in delta.tool_calls or []:
                    entry = partial_calls.setdefault(
                        fragment.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if fragment.id:
                        entry["id"] = fragment.id
                    if fragment.function is not None:
                        entry["name"] += fragment.function.name or ""
                        entry["arguments"] += fragment.function.arguments or ""

                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except Exception as e:
            msg = f"OpenAI API error: {e}"
            raise LLMProviderError(msg) from e

        if not saw_choice:
            return LLMResponse(choices=[], usage=usage)

        tool_calls = [
            ToolCallRequest(
                id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments=entry["arguments"],
            )
            for index, entry in sorted(partial_calls.items())
        ]
        choice = Choice(
            content="".join(content_parts),
            stop_reason=stop_reason,
            tool_calls=tool_calls,
        )
        return LLMResponse(choices=[choice], usage=usage)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()


@ProviderRegistry.register("groq")
class GroqProvider(OpenAICompatibleProvider):
    """Groq provider through its OpenAI-compatible endpoint."""

    api_key_env = "GROQ_API_KEY"
    default_base_url = GROQ_BASE_URL
    stream_usage = False


@ProviderRegistry.register("azure")
class AzureOpenAIProvider(OpenAICompatibleProvider):
    """Azure OpenAI provider. The model is the deployment name."""

    api_key_env = "AZURE_OPENAI_API_KEY"

    def _create_client(self, api_key: str, client_kwargs: dict[str, Any]) -> AsyncOpenAI:
        if not self._config.api_version:
            msg = "Azure provider requires api_version"
            raise ProviderConfigError(msg)
        if not self._config.base_url:
            msg = "Azure provider requires base_url"
            raise ProviderConfigError(msg)

        return AsyncAzureOpenAI(
            api_key=api_key,
            api_version=self._config.api_version,
            azure_endpoint=self._config.base_url,
            **client_kwargs,
        )
