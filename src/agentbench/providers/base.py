"""Abstract base class for LLM providers.

Defines the generation contract shared by raw provider clients and the
rate-limited wrapper around them.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from agentbench.models.config import LLMConfig
from agentbench.models.conversation import Message, ToolCallRequest

if TYPE_CHECKING:
    from agentbench.cancellation import CancellationToken
    from agentbench.providers.retry_after import RetryAfterTracker

# Receives narration text as the provider produces it
ChunkCallback = Callable[[str], Awaitable[None]]


class Choice(BaseModel):
    """One candidate completion returned by a provider."""

    content: str = ""
    stop_reason: str = "stop"
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)


class LLMResponse(BaseModel):
    """Unified response format from LLM providers."""

    choices: list[Choice] = Field(default_factory=list)
    usage: dict[str, Any] = Field(default_factory=dict)  # Provider-reported token counts
    raw_response: Any = None  # Provider-specific response for debugging


class LLMProvider(ABC):
    """Abstract base class for all LLM providers."""

    def __init__(
        self,
        config: LLMConfig,
        retry_after: "RetryAfterTracker | None" = None,
    ) -> None:
        """Initialize the provider with configuration.

        Args:
            config: LLM provider configuration.
            retry_after: Optional tracker capturing Retry-After headers from
                the provider's HTTP responses.
        """
        self._config = config
        self._retry_after = retry_after

    @property
    def config(self) -> LLMConfig:
        """Get the provider configuration."""
        return self._config

    @property
    def name(self) -> str:
        """Provider identifier recorded on execution traces."""
        return self._config.display_name

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel: "CancellationToken | None" = None,
    ) -> LLMResponse:
        """Generate a completion from messages.

        Args:
            messages: List of conversation messages.
            tools: Optional list of tool definitions for function calling.
            on_chunk: When given, the provider streams and calls this with
                each piece of narration text as it arrives.
            cancel: Optional cancellation token aborting the call.

        Returns:
            LLMResponse with the generated choices and usage.

        Raises:
            LLMProviderError: If the API call fails.
            OperationCancelledError: If the token fired during the call.
        """
        ...

    async def close(self) -> None:  # noqa: B027 - Default impl is intentionally empty
        """Release network resources held by the provider."""
