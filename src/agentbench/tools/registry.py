"""Tool registry mapping tool names to the servers that own them.

Built once per agent and read-only afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from agentbench.exceptions import ToolNotFoundError, ToolServerError
from agentbench.tools.server import ToolDefinition, ToolServer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentServer:
    """Binds an agent to a tool server, optionally restricting its tools."""

    name: str
    allowed_tools: frozenset[str] = field(default_factory=frozenset)

    def allows(self, tool_name: str) -> bool:
        """An empty allow-list permits every tool."""
        return not self.allowed_tools or tool_name in self.allowed_tools


class ToolRegistry:
    """Read-only view of the tools an agent may call and who owns them."""

    def __init__(
        self,
        servers: Mapping[str, ToolServer],
        server_tools: Mapping[str, Sequence[ToolDefinition]],
        bindings: Iterable[AgentServer] | None = None,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        """Index tools by name.

        When two servers expose the same tool name, the first registration
        wins and a warning is logged.

        Args:
            servers: Tool servers by name.
            server_tools: Tools exposed to the agent, per server name.
            bindings: Agent bindings carrying allow-lists; servers without a
                binding allow every tool.
            log: Logger to use instead of the module logger.
        """
        self._log = log or logger
        self._servers = dict(servers)
        self._server_tools = {name: list(tools) for name, tools in server_tools.items()}
        self._bindings = {binding.name: binding for binding in bindings or ()}

        self._tool_to_server: dict[str, str] = {}
        for server_name, tools in self._server_tools.items():
            for tool in tools:
                owner = self._tool_to_server.get(tool.name)
                if owner is not None:
                    self._log.warning(
                        "Tool name collision: %s exists in servers %s and %s, using %s",
                        tool.name,
                        owner,
                        server_name,
                        owner,
                    )
                    continue
                self._tool_to_server[tool.name] = server_name

    @classmethod
    async def build(
        cls,
        bindings: Sequence[AgentServer],
        servers: Mapping[str, ToolServer],
        *,
        log: logging.Logger | None = None,
    ) -> ToolRegistry:
        """List tools from every bound server and apply the allow-lists.

        Unknown servers and servers that fail to list their tools are logged
        and skipped.

        Args:
            bindings: Servers the agent uses, in registration order.
            servers: Available tool servers by name.
            log: Logger to use instead of the module logger.

        Returns:
            The populated registry.
        """
        log = log or logger
        bound_servers: dict[str, ToolServer] = {}
        server_tools: dict[str, list[ToolDefinition]] = {}

        for binding in bindings:
            server = servers.get(binding.name)
            if server is None:
                log.warning("Server %s not found for agent binding, skipping", binding.name)
                continue

            try:
                tools = await server.list_tools()
            except ToolServerError as e:
                log.error("Failed to list tools from server %s: %s", binding.name, e)
                continue

            allowed = [tool for tool in tools if binding.allows(tool.name)]
            log.debug(
                "Registered %d of %d tools from server %s",
                len(allowed),
                len(tools),
                binding.name,
            )
            bound_servers[binding.name] = server
            server_tools[binding.name] = allowed

        registry = cls(bound_servers, server_tools, bindings, log=log)
        log.info(
            "Tool registry built: servers=%d, unique_tools=%d",
            len(bound_servers),
            len(registry),
        )
        return registry

    def __len__(self) -> int:
        return len(self._tool_to_server)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tool_to_server

    @property
    def tool_names(self) -> list[str]:
        """Registered tool names in registration order."""
        return list(self._tool_to_server)

    def server_for(self, tool_name: str) -> str | None:
        """Name of the server owning a tool, or None if unknown."""
        return self._tool_to_server.get(tool_name)

    def is_allowed(self, server_name: str, tool_name: str) -> bool:
        """Whether the agent may call a tool on a server."""
        tools = self._server_tools.get(server_name)
        if tools is None or not any(tool.name == tool_name for tool in tools):
            return False
        binding = self._bindings.get(server_name)
        return binding is None or binding.allows(tool_name)

    def resolve(self, tool_name: str) -> ToolServer:
        """Find the server that executes a tool.

        Raises:
            ToolNotFoundError: If the tool or its server is unknown, or the
                tool is not allowed on that server.
        """
        server_name = self._tool_to_server.get(tool_name)
        if server_name is None:
            msg = f"tool '{tool_name}' not found in any registered server"
            raise ToolNotFoundError(msg)

        server = self._servers.get(server_name)
        if server is None:
            msg = f"MCP server '{server_name}' not found for tool '{tool_name}'"
            raise ToolNotFoundError(msg)

        if not self.is_allowed(server_name, tool_name):
            msg = f"tool '{tool_name}' is not allowed on server '{server_name}'"
            raise ToolNotFoundError(msg)

        return server

    def tool_schemas(self) -> list[dict[str, Any]]:
        """Render every exposed tool as an OpenAI function-calling schema."""
        schemas: list[dict[str, Any]] = []
        for server_name, tools in self._server_tools.items():
            for tool in tools:
                # Shadowed duplicates are not offered to the model
                if self._tool_to_server.get(tool.name) != server_name:
                    continue
                input_schema = tool.input_schema
                parameters: dict[str, Any] = {
                    "type": input_schema.get("type", "object"),
                    "properties": input_schema.get("properties", {}),
                }
                required = input_schema.get("required")
                if required:
                    parameters["required"] = required

                schemas.append(
                    {
                        "type": "function",
                        "function": {
                            "name": tool.name,
                            "description": tool.description or "",
                            "parameters": parameters,
                        },
                    }
                )
        return schemas
