"""Agents running the tool-calling loop."""

from agentbench.agents.mcp_agent import MCPAgent
from agentbench.agents.streaming import StreamingTurn, is_tool_call_chunk

__all__ = ["MCPAgent", "StreamingTurn", "is_tool_call_chunk"]
