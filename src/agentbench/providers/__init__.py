"""LLM provider abstractions."""

from agentbench.providers.base import ChunkCallback, Choice, LLMProvider, LLMResponse
from agentbench.providers.factory import ProviderRegistry, create_provider
from agentbench.providers.ollama import OllamaProvider
from agentbench.providers.openai_compat import (
    AzureOpenAIProvider,
    GroqProvider,
    OpenAICompatibleProvider,
)
from agentbench.providers.ratelimit import (
    RateLimitedProvider,
    RateLimitStatsProvider,
    is_rate_limit_error,
    needs_wrapper,
)
from agentbench.providers.retry_after import RetryAfterTracker
from agentbench.providers.token_bucket import TokenBucket

__all__ = [
    "AzureOpenAIProvider",
    "ChunkCallback",
    "Choice",
    "GroqProvider",
    "LLMProvider",
    "LLMResponse",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "ProviderRegistry",
    "RateLimitStatsProvider",
    "RateLimitedProvider",
    "RetryAfterTracker",
    "TokenBucket",
    "create_provider",
    "is_rate_limit_error",
    "needs_wrapper",
]
