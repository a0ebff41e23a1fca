"""Token bucket used for requests-per-minute and tokens-per-minute ceilings."""

import logging
import threading
import time

from agentbench.cancellation import CancellationToken, guarded_sleep

logger = logging.getLogger(__name__)

# Upper bound on a single sleep so refills are picked up promptly
MAX_POLL_INTERVAL = 0.5


class TokenBucket:
    """Token bucket holding one minute's quota.

    Capacity is the per-minute quota and the bucket refills at quota/60 units
    per second, starting full. State changes happen under a lock, so one
    bucket can be shared by concurrent callers.
    """

    def __init__(self, per_minute: int, name: str = "bucket") -> None:
        """Initialize a full bucket.

        Args:
            per_minute: Quota per minute; also the bucket capacity.
            name: Label used in log messages.

        Raises:
            ValueError: If per_minute is not positive.
        """
        if per_minute <= 0:
            msg = f"Token bucket quota must be positive, got {per_minute}"
            raise ValueError(msg)

        self.name = name
        self.capacity = float(per_minute)
        self.refill_rate = per_minute / 60.0
        self._tokens = self.capacity
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._last_refill = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)

    def _clamp(self, n: float) -> float:
        if n > self.capacity:
            logger.warning(
                "%s request of %d units exceeds capacity %d, clamping",
                self.name,
                n,
                self.capacity,
            )
            return self.capacity
        return n

    @property
    def available(self) -> float:
        """Units currently available (negative while repaying a reservation)."""
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self, n: float = 1) -> float:
        """Take n units if available.

        Returns:
            0.0 on success, otherwise the seconds until n units will be available.
        """
        n = self._clamp(n)
        with self._lock:
            self._refill()
            if self._tokens >= n:
                self._tokens -= n
                return 0.0
            return (n - self._tokens) / self.refill_rate

    async def wait(self, n: float = 1, cancel: CancellationToken | None = None) -> float:
        """Block until n units are available, then take them.

        Args:
            n: Units to acquire. Requests above capacity are clamped.
            cancel: Optional token interrupting the wait.

        Returns:
            Seconds spent waiting.

        Raises:
            OperationCancelledError: If the token fired while waiting.
        """
        if n <= 0:
            return 0.0

        n = self._clamp(n)
        start = time.monotonic()
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            delay = self.try_acquire(n)
            if delay <= 0:
                return time.monotonic() - start
            await guarded_sleep(min(delay, MAX_POLL_INTERVAL), cancel)

    def reserve(self, n: float) -> float:
        """Consume n units immediately, going into debt if needed.

        Used to account for consumption discovered after the fact; later
        callers wait for the debt to be repaid by refill.

        Returns:
            Seconds until the balance is non-negative again.
        """
        if n <= 0:
            return 0.0
        n = self._clamp(n)
        with self._lock:
            self._refill()
            self._tokens -= n
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.refill_rate
