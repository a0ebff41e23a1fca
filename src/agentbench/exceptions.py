"""Custom exception hierarchy for agentbench.

All exceptions inherit from AgentBenchError for easy catching at the top level.
Inside an agent turn these errors are recorded on the execution trace rather
than propagated; outside of it they propagate immediately.
"""


class AgentBenchError(Exception):
    """Base exception for all agentbench errors."""


class ConfigurationError(AgentBenchError):
    """Configuration-related errors."""


class ProviderError(AgentBenchError):
    """LLM provider errors."""


class ProviderNotFoundError(ProviderError):
    """Requested provider is not registered."""


class ProviderConfigError(ProviderError):
    """Provider configuration is invalid."""


class LLMProviderError(ProviderError):
    """Error during LLM API call."""


class OperationCancelledError(AgentBenchError):
    """The caller's cancellation token fired while an operation was waiting."""


class ToolServerError(AgentBenchError):
    """Tool server connection or protocol errors."""


class ToolError(AgentBenchError):
    """Errors raised while invoking a single tool."""


class ToolNotFoundError(ToolError):
    """Tool or owning server is unknown, or the tool is not allowed."""


class ToolArgumentsError(ToolError):
    """Tool arguments are not valid JSON."""


class ToolTimeoutError(ToolError):
    """Tool call exceeded its deadline."""


class ToolExecutionError(ToolError):
    """The owning server failed to execute the tool."""
