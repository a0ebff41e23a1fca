"""Fake providers and tool servers for unit tests."""

import asyncio
from collections.abc import Callable
from typing import Any

from agentbench.cancellation import CancellationToken, guarded
from agentbench.exceptions import ToolServerError
from agentbench.models.config import LLMConfig
from agentbench.models.conversation import Message, ToolCallRequest
from agentbench.providers.base import ChunkCallback, Choice, LLMProvider, LLMResponse
from agentbench.tools.server import ToolDefinition, ToolServer

ScriptStep = LLMResponse | Exception | Callable[[list[Message]], LLMResponse]


def text_response(content: str, usage: dict[str, Any] | None = None) -> LLMResponse:
    """Response with narration and no tool calls."""
    return LLMResponse(choices=[Choice(content=content)], usage=usage or {})


def tool_response(
    *calls: ToolCallRequest, content: str = "", usage: dict[str, Any] | None = None
) -> LLMResponse:
    """Response requesting tool calls."""
    return LLMResponse(
        choices=[Choice(content=content, stop_reason="tool_calls", tool_calls=list(calls))],
        usage=usage or {},
    )


def call(name: str, arguments: str = "", call_id: str | None = None) -> ToolCallRequest:
    """Tool call request with a generated id."""
    return ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=arguments)


def text_payload(text: str, *, is_error: bool = False) -> dict[str, Any]:
    """Tool result payload shaped like an MCP CallToolResult."""
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


class ScriptedProvider(LLMProvider):
    """Provider replaying a fixed script of responses or errors.

    The last step repeats once the script is exhausted. Narration is sent to
    ``on_chunk`` when streaming, preceded by any configured raw chunks.
    """

    def __init__(
        self,
        script: list[ScriptStep],
        *,
        chunks: list[str] | None = None,
        block: bool = False,
        model: str = "test-model",
    ) -> None:
        super().__init__(LLMConfig(provider="scripted", model=model))
        self._script = list(script)
        self._chunks = chunks or []
        self._block = block
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[dict[str, Any]] | None] = []

    async def generate(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> LLMResponse:
        self.calls.append(list(messages))
        self.tools_seen.append(tools)

        if self._block:
            await guarded(asyncio.Event().wait(), cancel)

        index = min(len(self.calls) - 1, len(self._script) - 1)
        step = self._script[index]
        if isinstance(step, Exception):
            raise step
        response = step(messages) if callable(step) else step

        if on_chunk is not None:
            for chunk in self._chunks:
                await on_chunk(chunk)
            if response.choices and response.choices[0].content:
                await on_chunk(response.choices[0].content)
        return response


class FakeToolServer(ToolServer):
    """In-memory tool server.

    Handlers map tool names to a payload, an exception to raise, or a
    callable receiving the arguments.
    """

    def __init__(
        self,
        name: str,
        tools: list[ToolDefinition],
        handlers: dict[str, Any] | None = None,
        *,
        delay: float = 0.0,
        list_error: Exception | None = None,
    ) -> None:
        super().__init__(name)
        self.tools = tools
        self._handlers = handlers or {}
        self._delay = delay
        self._list_error = list_error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def list_tools(self) -> list[ToolDefinition]:
        if self._list_error is not None:
            raise self._list_error
        return list(self.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((name, arguments))
        if self._delay:
            await asyncio.sleep(self._delay)

        handler = self._handlers.get(name)
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(arguments)
        if handler is None:
            msg = f"no handler for tool {name}"
            raise ToolServerError(msg)
        return handler


def tool(name: str, description: str = "", **schema: Any) -> ToolDefinition:
    """Tool definition with an object input schema."""
    input_schema = {"type": "object", "properties": schema.pop("properties", {}), **schema}
    return ToolDefinition(name=name, description=description, input_schema=input_schema)


