"""Streaming delivery of an agent turn.

A StreamingTurn pairs an unbounded narration chunk queue with a single-slot
result future. The background task running the turn finishes both exactly
once, so consumers can rely on the end of iteration as the completion signal.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from agentbench.models.conversation import ExecutionResult

_END = object()


def is_tool_call_chunk(chunk: str) -> bool:
    """Check whether a streamed chunk is a tool call rather than narration.

    Tool call chunks are non-empty JSON arrays, or JSON objects carrying
    ``tool_calls`` at the top level or in their first choice.
    """
    text = chunk.strip()
    if not text or text[0] not in "[{":
        return False

    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError:
        return False

    if isinstance(data, list):
        return len(data) > 0

    if not isinstance(data, dict):
        return False
    if data.get("tool_calls"):
        return True

    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return bool(choices[0].get("tool_calls"))
    return False


class StreamingTurn:
    """Handle on a turn running in the background.

    Iterate it with ``async for`` to receive narration chunks, then
    ``await turn.result()`` for the execution trace.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._result: asyncio.Future[ExecutionResult] = (
            asyncio.get_running_loop().create_future()
        )
        self._closed = False
        self._task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        """Whether the turn has delivered its result."""
        return self._closed

    @property
    def task(self) -> "asyncio.Task[None] | None":
        """Background task running the turn."""
        return self._task

    def attach(self, task: "asyncio.Task[None]") -> None:
        """Remember the background task so it is not garbage collected."""
        self._task = task

    def emit(self, chunk: str) -> None:
        """Queue a narration chunk; dropped once the turn is closed."""
        if self._closed or not chunk:
            return
        self._queue.put_nowait(chunk)

    def finish(
        self,
        result: ExecutionResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Deliver the outcome and end the chunk stream. Only the first call counts."""
        if self._closed:
            return
        self._closed = True

        if isinstance(error, asyncio.CancelledError):
            self._result.cancel()
        elif error is not None:
            self._result.set_exception(error)
        else:
            self._result.set_result(result)  # type: ignore[arg-type]
        self._queue.put_nowait(_END)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _END:
            # Keep the marker for any other consumer
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def result(self) -> ExecutionResult:
        """Wait for the execution trace of the turn."""
        return await asyncio.shield(self._result)

    async def collect(self) -> tuple[str, ExecutionResult]:
        """Drain the stream and return the joined narration with the trace."""
        chunks = [chunk async for chunk in self]
        return "".join(chunks), await self.result()
