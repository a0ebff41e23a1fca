"""Data models for agentbench."""

from agentbench.models.config import (
    DEFAULT_MAX_ITERATIONS,
    AgentRunConfig,
    LLMConfig,
    RateLimitConfig,
    RetryConfig,
)
from agentbench.models.conversation import (
    ContentItem,
    ExecutionResult,
    Message,
    RateLimitStats,
    ToolCallRecord,
    ToolCallRequest,
    ToolResult,
)

__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "AgentRunConfig",
    "ContentItem",
    "ExecutionResult",
    "LLMConfig",
    "Message",
    "RateLimitConfig",
    "RateLimitStats",
    "RetryConfig",
    "ToolCallRecord",
    "ToolCallRequest",
    "ToolResult",
]
