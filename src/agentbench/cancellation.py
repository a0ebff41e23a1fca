"""Cooperative cancellation for agent turns.

A CancellationToken is handed down from the caller through the agent loop,
the rate limiter and the tool invoker. Every suspension point awaits through
the token, so firing it unblocks whatever the turn is currently waiting on.
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from agentbench.exceptions import OperationCancelledError

T = TypeVar("T")

DEFAULT_REASON = "cancelled"


class CancellationToken:
    """Caller-owned cancellation signal shared by every wait in one turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        """Whether the token has fired."""
        return self._event.is_set()

    @property
    def reason(self) -> str:
        """Why the token fired (or the default reason if it has not)."""
        return self._reason or DEFAULT_REASON

    def cancel(self, reason: str = DEFAULT_REASON) -> None:
        """Fire the token. Only the first reason is kept."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel_after(self, seconds: float) -> None:
        """Fire the token after a deadline, e.g. a suite-level timeout.

        Must be called from within a running event loop.
        """
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            seconds, self.cancel, f"deadline of {seconds:g}s exceeded"
        )

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if the token has fired."""
        if self.cancelled:
            raise OperationCancelledError(self.reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await something, aborting it if the token fires first.

        Args:
            awaitable: Coroutine or future to await.

        Returns:
            The awaitable's result.

        Raises:
            OperationCancelledError: If the token fired before completion.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise OperationCancelledError(self.reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        # Let the aborted operation unwind before reporting cancellation
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelledError(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for the given duration unless the token fires first."""
        await self.run(asyncio.sleep(max(0.0, seconds)))


async def guarded(awaitable: Awaitable[T], cancel: CancellationToken | None) -> T:
    """Await through a token when one is given, directly otherwise."""
    if cancel is None:
        return await awaitable
    return await cancel.run(awaitable)


async def guarded_sleep(seconds: float, cancel: CancellationToken | None) -> None:
    """Sleep, interruptibly when a token is given."""
    if cancel is None:
        await asyncio.sleep(max(0.0, seconds))
    else:
        await cancel.sleep(seconds)
