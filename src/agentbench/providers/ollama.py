"""Ollama LLM provider.

Uses the ollama Python SDK for local model inference.
"""

import json
import logging
from typing import Any

import ollama

from agentbench.cancellation import CancellationToken, guarded
from agentbench.exceptions import LLMProviderError
from agentbench.models.config import LLMConfig
from agentbench.models.conversation import Message, ToolCallRequest
from agentbench.providers.base import ChunkCallback, Choice, LLMProvider, LLMResponse
from agentbench.providers.factory import ProviderRegistry
from agentbench.providers.retry_after import RetryAfterTracker

logger = logging.getLogger(__name__)

# Default max tokens value from LLMConfig
DEFAULT_MAX_TOKENS = 4096

# Default context size for Ollama (much larger than Ollama's default of 2048)
DEFAULT_CONTEXT_SIZE = 65536


@ProviderRegistry.register("ollama")
class OllamaProvider(LLMProvider):
    """Ollama provider for local LLM inference."""

    def __init__(
        self,
        config: LLMConfig,
        retry_after: RetryAfterTracker | None = None,
    ) -> None:
        """Initialize the Ollama provider.

        Args:
            config: LLM configuration with model and optional base_url.
            retry_after: Optional tracker installed as an httpx response hook.
        """
        super().__init__(config, retry_after)

        # Extra keyword arguments are handed to the underlying httpx client
        client_kwargs: dict[str, Any] = {}
        if config.base_url:
            client_kwargs["host"] = config.base_url
        if retry_after is not None:
            client_kwargs["event_hooks"] = retry_after.event_hooks()

        self._client = ollama.AsyncClient(**client_kwargs)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert conversation messages to Ollama format.

        Args:
            messages: List of conversation messages.

        Returns:
            List of Ollama message dictionaries.
        """
        ollama_messages: list[dict[str, Any]] = []

        for msg in messages:
            ollama_msg: dict[str, Any] = {
                "role": msg.role,
                "content": msg.content,
            }
            if msg.role == "tool" and msg.name:
                ollama_msg["tool_name"] = msg.name
            if msg.tool_calls:
                ollama_msg["tool_calls"] = [
                    {
                        "function": {
                            "name": call.name,
                            "arguments": _arguments_to_dict(call.arguments),
                        }
                    }
                    for call in msg.tool_calls
                ]
            ollama_messages.append(ollama_msg)

        return ollama_messages

    def _extract_tool_calls(
        self, tool_calls: list[Any] | None, offset: int = 0
    ) -> list[ToolCallRequest]:
        """Extract tool calls from an Ollama response message.

        Ollama does not assign call IDs, so positional ones are generated.

        Args:
            tool_calls: Tool calls from the Ollama message.
            offset: Index of the first call, for calls spread over stream parts.

        Returns:
            List of tool call requests.
        """
        if not tool_calls:
            return []

        return [
            ToolCallRequest(
                id=f"call_{offset + i}",
                name=tool_call.function.name,
                arguments=json.dumps(tool_call.function.arguments or {}),
            )
            for i, tool_call in enumerate(tool_calls)
        ]

    def _options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self._config.temperature != 0.0:
            options["temperature"] = self._config.temperature
        if self._config.max_tokens != DEFAULT_MAX_TOKENS:
            options["num_predict"] = self._config.max_tokens

        # Set context window size (Ollama defaults to only 2048)
        options["num_ctx"] = DEFAULT_CONTEXT_SIZE
        return options

    def _wrap_error(self, e: Exception) -> LLMProviderError:
        if isinstance(e, ollama.ResponseError):
            # Parse common Ollama errors for better user feedback
            if "not found" in str(e).lower():
                msg = (
                    f"Ollama model '{self._config.model}' not found. "
                    f"Check that the model exists on the server "
                    f"(run 'ollama list' or check /api/tags endpoint). "
                    f"Original error: {e}"
                )
            else:
                msg = f"Ollama API error (status {e.status_code}): {e}"
            return LLMProviderError(msg)
        return LLMProviderError(f"Ollama API error: {e}")

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
            tools: Optional list of tool definitions (OpenAI format).
            on_chunk: Streams narration to this callback when given.
            cancel: Optional cancellation token aborting the call.

        Returns:
            LLMResponse with a single choice.

        Raises:
            LLMProviderError: If the API call fails.
        """
        request_kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": self._convert_messages(messages),
            # Ollama uses OpenAI-compatible tool format
            "tools": tools or None,
            "options": self._options(),
        }
        if on_chunk is None:
            return await guarded(self._complete(request_kwargs), cancel)
        return await guarded(self._stream(request_kwargs, on_chunk), cancel)

    async def _complete(self, request_kwargs: dict[str, Any]) -> LLMResponse:
        try:
            response = await self._client.chat(**request_kwargs)
        except Exception as e:
            raise self._wrap_error(e) from e

        choice = Choice(
            content=response.message.content or "",
            stop_reason=response.done_reason or "stop",
            tool_calls=self._extract_tool_calls(response.message.tool_calls),
        )
        return LLMResponse(
            choices=[choice],
            usage=_usage(response),
            raw_response=response,
        )

    async def _stream(
        self, request_kwargs: dict[str, Any], on_chunk: ChunkCallback
    ) -> LLMResponse:
        content_parts: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        stop_reason = "stop"
        usage: dict[str, int] = {}

        try:
            stream = await self._client.chat(**request_kwargs, stream=True)
            async for part in stream:
                text = part.message.content or ""
                if text:
                    content_parts.append(text)
                    await on_chunk(text)
                tool_calls.extend(
                    self._extract_tool_calls(part.message.tool_calls, offset=len(tool_calls))
                )
                if part.done:
                    stop_reason = part.done_reason or "stop"
                    usage = _usage(part)
        except Exception as e:
            raise self._wrap_error(e) from e

        choice = Choice(
            content="".join(content_parts),
            stop_reason=stop_reason,
            tool_calls=tool_calls,
        )
        return LLMResponse(choices=[choice], usage=usage)


def _usage(response: ollama.ChatResponse) -> dict[str, int]:
    return {
        "prompt_tokens": response.prompt_eval_count or 0,
        "completion_tokens": response.eval_count or 0,
    }


def _arguments_to_dict(arguments: str) -> dict[str, Any]:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning("Dropping malformed tool arguments in history: %s", arguments)
        return {}
    return parsed if isinstance(parsed, dict) else {}
