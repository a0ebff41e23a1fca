"""Tool servers, the tool registry and the tool invoker."""

from agentbench.tools.invoker import ToolInvoker, parse_arguments
from agentbench.tools.registry import AgentServer, ToolRegistry
from agentbench.tools.server import MCPToolServer, ToolDefinition, ToolServer

__all__ = [
    "AgentServer",
    "MCPToolServer",
    "ToolDefinition",
    "ToolInvoker",
    "ToolRegistry",
    "ToolServer",
    "parse_arguments",
]
