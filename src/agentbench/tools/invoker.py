"""Tool invocation with argument validation and per-call deadlines."""

import asyncio
import json
import logging
from typing import Any

from agentbench.cancellation import CancellationToken, guarded
from agentbench.exceptions import (
    OperationCancelledError,
    ToolArgumentsError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolServerError,
    ToolTimeoutError,
)
from agentbench.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def parse_arguments(arguments_json: str) -> dict[str, Any]:
    """Parse a raw tool argument payload.

    Empty payloads and "{}" mean no arguments.

    Raises:
        ToolArgumentsError: If the payload is not valid JSON or not an object.
    """
    if not arguments_json or arguments_json.strip() in ("", "{}"):
        return {}

    try:
        parsed = json.loads(arguments_json)
    except json.JSONDecodeError as e:
        msg = f"invalid JSON: {e}"
        raise ToolArgumentsError(msg) from e

    if not isinstance(parsed, dict):
        msg = f"arguments must be a JSON object, got {type(parsed).__name__}"
        raise ToolArgumentsError(msg)
    return parsed


class ToolInvoker:
    """Executes tool calls against the servers in a registry."""

    def __init__(self, registry: ToolRegistry, *, log: logging.Logger | None = None) -> None:
        self._registry = registry
        self._log = log or logger

    @property
    def registry(self) -> ToolRegistry:
        """Registry used to resolve tools."""
        return self._registry

    async def invoke(
        self,
        tool_name: str,
        arguments_json: str,
        *,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Execute one tool call.

        Args:
            tool_name: Name of the tool to run.
            arguments_json: Raw argument payload from the LLM.
            timeout: Deadline in seconds for the server call; None or 0 for none.
            cancel: Optional turn-level cancellation token.

        Returns:
            The JSON-serialized result payload.

        Raises:
            ToolNotFoundError: If the tool or server is unknown, or the tool
                is not allowed.
            ToolArgumentsError: If the arguments are malformed. No server
                call is made.
            ToolTimeoutError: If the deadline expired.
            ToolExecutionError: If the server failed to execute the tool.
            OperationCancelledError: If the turn was cancelled.
        """
        if self._registry.server_for(tool_name) is None:
            msg = f"tool '{tool_name}' not found in any registered server"
            raise ToolNotFoundError(msg)

        try:
            arguments = parse_arguments(arguments_json)
        except ToolArgumentsError as e:
            msg = f"failed to parse arguments for tool '{tool_name}': {e}"
            raise ToolArgumentsError(msg) from e

        server = self._registry.resolve(tool_name)
        deadline = timeout if timeout and timeout > 0 else None

        self._log.debug(
            "Calling tool %s on server %s (timeout=%s)", tool_name, server.name, deadline
        )
        timer = asyncio.timeout(deadline)
        try:
            async with timer:
                payload = await guarded(server.call_tool(tool_name, arguments), cancel)
        except TimeoutError as e:
            if not timer.expired():
                msg = f"failed to call MCP tool '{tool_name}' on server '{server.name}': {e}"
                raise ToolExecutionError(msg) from e
            msg = f"tool '{tool_name}' on server '{server.name}' timed out after {deadline:g}s"
            raise ToolTimeoutError(msg) from e
        except (OperationCancelledError, ToolError):
            raise
        except ToolServerError as e:
            raise ToolExecutionError(str(e)) from e
        except Exception as e:
            msg = f"failed to call MCP tool '{tool_name}' on server '{server.name}': {e}"
            raise ToolExecutionError(msg) from e

        try:
            return json.dumps(payload)
        except (TypeError, ValueError) as e:
            msg = f"failed to marshal MCP tool result: {e}"
            raise ToolExecutionError(msg) from e
