"""Provider factory and registry.

Provides decorator-based registration and factory functions for LLM providers.
"""

import logging
from collections.abc import Callable
from typing import ClassVar

from agentbench.exceptions import ProviderConfigError, ProviderNotFoundError
from agentbench.models.config import LLMConfig
from agentbench.providers.base import LLMProvider
from agentbench.providers.ratelimit import RateLimitedProvider, needs_wrapper
from agentbench.providers.retry_after import RetryAfterTracker

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available LLM providers."""

    _providers: ClassVar[dict[str, type[LLMProvider]]] = {}

    @classmethod
    def register(cls, name: str) -> Callable[[type[LLMProvider]], type[LLMProvider]]:
        """Decorator to register a provider.

        Args:
            name: The name to register the provider under (e.g., "openai", "ollama").

        Returns:
            Decorator function that registers the provider class.

        Example:
            @ProviderRegistry.register("groq")
            class GroqProvider(OpenAICompatibleProvider):
                ...
        """

        def decorator(provider_class: type[LLMProvider]) -> type[LLMProvider]:
            cls._providers[name.lower()] = provider_class
            return provider_class

        return decorator

    @classmethod
    def get(cls, name: str) -> type[LLMProvider]:
        """Get a provider class by name.

        Args:
            name: The registered name of the provider.

        Returns:
            The provider class.

        Raises:
            ProviderNotFoundError: If the provider is not registered.
        """
        provider = cls._providers.get(name.lower())
        if provider is None:
            available = ", ".join(sorted(cls._providers.keys()))
            msg = f"Provider '{name}' not found. Available: {available or 'none'}"
            raise ProviderNotFoundError(msg)
        return provider

    @classmethod
    def list_providers(cls) -> list[str]:
        """List all registered provider names.

        Returns:
            Sorted list of registered provider names.
        """
        return sorted(cls._providers.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        """Check if a provider is registered.

        Args:
            name: The name to check.

        Returns:
            True if the provider is registered.
        """
        return name.lower() in cls._providers


def create_provider(config: LLMConfig) -> LLMProvider:
    """Factory function to create a provider instance from config.

    When the config asks for rate limits or 429 retries, the provider is
    wrapped in a RateLimitedProvider. With retries enabled, a
    RetryAfterTracker is installed on the provider's HTTP client so server
    hints reach the retry logic.

    Args:
        config: LLM configuration specifying the provider and settings.

    Returns:
        Configured LLMProvider instance.

    Raises:
        ProviderNotFoundError: If the provider is not registered.
        ProviderConfigError: If provider instantiation fails.
    """
    provider_class = ProviderRegistry.get(config.provider)

    retry_after = RetryAfterTracker() if config.retry.retry_on_429 else None
    try:
        provider = provider_class(config, retry_after=retry_after)
    except ProviderConfigError:
        raise
    except Exception as e:
        msg = f"Failed to create provider '{config.provider}': {e}"
        raise ProviderConfigError(msg) from e

    if not needs_wrapper(config):
        return provider

    logger.info(
        "Wrapping provider %s with rate limiter (tpm=%d, rpm=%d, retry_on_429=%s)",
        config.display_name,
        config.rate_limits.tpm,
        config.rate_limits.rpm,
        config.retry.retry_on_429,
    )
    return RateLimitedProvider(
        provider,
        config.rate_limits,
        config.retry,
        model_name=config.model,
        retry_after=retry_after,
    )
