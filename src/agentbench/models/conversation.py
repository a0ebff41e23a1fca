"""Conversation and execution trace data models.

Defines the conversation messages shared between the agent loop and the LLM
providers, and the execution trace handed to assertion and reporting
collaborators. Trace models serialize with camelCase aliases so the JSON
shape stays stable for reporting.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["system", "user", "assistant", "tool"]


def _now() -> datetime:
    return datetime.now(UTC)


class TraceModel(BaseModel):
    """Base for models that form part of the reporting wire contract."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolCallRequest(TraceModel):
    """A tool invocation requested by the LLM."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = ""  # Raw payload, expected to be JSON or empty


class Message(TraceModel):
    """Single message in a conversation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: str | None = None  # Pairs a tool response with its request
    name: str | None = None  # Tool name for tool responses
    timestamp: datetime = Field(default_factory=_now)

    @classmethod
    def user(cls, content: str) -> "Message":
        """Build a user message."""
        return cls(role="user", content=content)

    @classmethod
    def system(cls, content: str) -> "Message":
        """Build a system message."""
        return cls(role="system", content=content)


class ContentItem(TraceModel):
    """One content block returned by a tool."""

    type: str = "text"
    text: str = ""


class ToolResult(TraceModel):
    """Parsed tool result payload."""

    content: list[ContentItem] = Field(default_factory=list)
    structured_content: dict[str, Any] | None = None
    is_error: bool = False

    @classmethod
    def from_text(cls, text: str) -> "ToolResult":
        """Build a result holding a single text block."""
        return cls(content=[ContentItem(type="text", text=text)])


class ToolCallRecord(TraceModel):
    """Record of one tool invocation, successful or not."""

    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult = Field(default_factory=ToolResult)
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None
    duration_ms: int = Field(default=0, serialization_alias="duration_ms")


class RateLimitStats(TraceModel):
    """Snapshot of rate limiting and 429 handling statistics."""

    throttle_count: int = 0
    throttle_wait_time_ms: int = 0
    rate_limit_hits: int = 0
    retry_count: int = 0
    retry_wait_time_ms: int = 0
    retry_success_count: int = 0


class ExecutionResult(TraceModel):
    """Execution trace of a single agent turn."""

    agent_name: str
    provider_type: str
    test_name: str | None = None
    session_name: str | None = None
    start_time: datetime = Field(default_factory=_now)
    end_time: datetime | None = None
    messages: list[Message] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    final_output: str = ""
    tokens_used: int = 0
    latency_ms: int = 0
    errors: list[str] = Field(default_factory=list)
    rate_limit_stats: RateLimitStats | None = None

    @property
    def succeeded(self) -> bool:
        """True when the turn produced output without recording errors."""
        return not self.errors and bool(self.final_output)
