"""Configuration data models.

Defines LLM provider settings, including proactive rate limits and reactive
429 retry behavior, and the per-turn agent loop settings.
"""

from pydantic import BaseModel, Field, SecretStr, field_validator

DEFAULT_MAX_ITERATIONS = 10


class RateLimitConfig(BaseModel):
    """Proactive throttling ceilings for a provider (0 = unlimited)."""

    tpm: int = Field(default=0, ge=0)  # tokens per minute
    rpm: int = Field(default=0, ge=0)  # requests per minute


class RetryConfig(BaseModel):
    """Reactive handling of provider throttling (HTTP 429)."""

    retry_on_429: bool = False
    # Only used when retry_on_429 is enabled; <= 0 means the default of 3
    max_retries: int = 0


class LLMConfig(BaseModel):
    """Configuration for an LLM provider."""

    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    name: str | None = None
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1)
    api_key: SecretStr | None = None
    base_url: str | None = None
    # Azure OpenAI API version, e.g. 2025-01-01-preview
    api_version: str | None = None
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @property
    def display_name(self) -> str:
        """Name used in logs and traces."""
        return self.name or self.provider


class AgentRunConfig(BaseModel):
    """Settings for one turn of the agentic loop."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tool_timeout_seconds: float = Field(default=0.0, ge=0.0)  # 0 = no timeout
    add_not_final_responses: bool = False
    verbose: bool = False

    @field_validator("max_iterations")
    @classmethod
    def default_invalid_iterations(cls, v: int) -> int:
        """Fall back to the default when the value is not positive."""
        if v <= 0:
            return DEFAULT_MAX_ITERATIONS
        return v
