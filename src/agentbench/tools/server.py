"""Tool server interface and its MCP adapter."""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client

from agentbench.exceptions import ToolServerError

if TYPE_CHECKING:
    from types import TracebackType

    from agentbench.config.loader import ServerConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDefinition:
    """Tool advertised by a tool server."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)


class ToolServer(ABC):
    """A named server that lists and executes tools."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def list_tools(self) -> list[ToolDefinition]:
        """Return the tools this server offers.

        Raises:
            ToolServerError: If the server cannot be queried.
        """
        ...

    @abstractmethod
    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Execute a tool.

        Args:
            name: Tool name.
            arguments: Parsed tool arguments (empty for none).

        Returns:
            The result payload as a JSON-compatible mapping.

        Raises:
            ToolServerError: If the call fails.
        """
        ...

    async def close(self) -> None:  # noqa: B027 - Default impl is intentionally empty
        """Release the server connection."""


class MCPToolServer(ToolServer):
    """Tool server reached through an MCP client session.

    Supports both stdio (command-based) and SSE (URL-based) connections.
    Use ``connect()`` and ``close()``, or ``async with``.
    """

    def __init__(
        self,
        name: str,
        *,
        command: str | None = None,
        env: dict[str, str] | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Configure the connection; nothing is opened until ``connect()``.

        Args:
            name: Server name used by agent bindings.
            command: Command line starting a stdio server.
            env: Extra environment for the stdio server process.
            url: SSE endpoint of an HTTP server.
            headers: Optional headers for HTTP connections.

        Raises:
            ToolServerError: If neither or both of command and url are given.
        """
        super().__init__(name)
        if bool(command) == bool(url):
            msg = f"Server '{name}' needs exactly one of command or url"
            raise ToolServerError(msg)

        self._command = command
        self._env = env
        self._url = url
        self._headers = headers
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    @classmethod
    def from_config(cls, config: ServerConfig) -> MCPToolServer:
        """Create an unconnected server from configuration."""
        return cls(
            config.name,
            command=config.command,
            env=config.env,
            url=config.url,
            headers=config.headers,
        )

    @property
    def connected(self) -> bool:
        """Whether a session is open."""
        return self._session is not None

    async def connect(self) -> None:
        """Open the transport and initialize the MCP session.

        Raises:
            ToolServerError: If the connection or handshake fails.
        """
        if self._session is not None:
            return

        stack = AsyncExitStack()
        try:
            if self._command:
                parts = shlex.split(self._command)
                params = StdioServerParameters(command=parts[0], args=parts[1:], env=self._env)
                read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
            else:
                read_stream, write_stream = await stack.enter_async_context(
                    sse_client(self._url, headers=self._headers)
                )
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except Exception as e:
            await stack.aclose()
            msg = f"Failed to connect to MCP server '{self.name}': {e}"
            raise ToolServerError(msg) from e

        self._stack = stack
        self._session = session
        logger.info("Connected to MCP server %s", self.name)

    async def close(self) -> None:
        """Close the session and transport."""
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()
            logger.debug("Closed MCP server %s", self.name)

    async def __aenter__(self) -> MCPToolServer:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            msg = f"MCP server '{self.name}' is not connected"
            raise ToolServerError(msg)
        return self._session

    async def list_tools(self) -> list[ToolDefinition]:
        session = self._require_session()
        try:
            result = await session.list_tools()
            return [
                ToolDefinition(
                    name=tool.name,
                    description=tool.description,
                    input_schema=dict(tool.inputSchema or {}),
                )
                for tool in result.tools
            ]
        except Exception as e:
            msg = f"Failed to list tools on MCP server '{self.name}': {e}"
            raise ToolServerError(msg) from e

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        session = self._require_session()
        try:
            result = await session.call_tool(name, arguments)
            if result.isError:
                logger.warning(
                    "MCP tool %s on server %s reported an error result", name, self.name
                )
            return result.model_dump(mode="json", by_alias=True, exclude_none=True)
        except Exception as e:
            msg = f"failed to call MCP tool '{name}' on server '{self.name}': {e}"
            raise ToolServerError(msg) from e
