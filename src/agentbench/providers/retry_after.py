"""Retry-After capture from provider HTTP responses.

SDK exceptions for 429 responses do not always carry the response headers, so
the provider's httpx client is given a response hook that remembers the most
recent Retry-After hint for the rate limiter to pick up.
"""

import logging
import threading
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx

logger = logging.getLogger(__name__)

# Captured values older than this are ignored entirely
STALE_AFTER_SECONDS = 60.0

HTTP_TOO_MANY_REQUESTS = 429


def parse_retry_after_header(value: str | None) -> float:
    """Parse a Retry-After header value.

    The header is either a number of seconds (e.g. "120") or an HTTP-date
    (e.g. "Wed, 21 Oct 2025 07:28:00 GMT").

    Args:
        value: Raw header value.

    Returns:
        Seconds to wait, or 0.0 if the value is missing or unparseable.
        A date in the past yields a minimum backoff of one second.
    """
    if not value:
        return 0.0

    value = value.strip()
    try:
        seconds = int(value)
    except ValueError:
        pass
    else:
        return float(seconds) if seconds > 0 else 0.0

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Could not parse Retry-After header: %s", value)
        return 0.0

    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    delay = (when - datetime.now(UTC)).total_seconds()
    return delay if delay > 0 else 1.0


def retry_after_from_headers(headers: httpx.Headers) -> float:
    """Extract a retry delay from response headers.

    Azure OpenAI sends both retry-after-ms and Retry-After; the millisecond
    value is preferred for its precision.
    """
    ms_value = headers.get("retry-after-ms")
    if ms_value:
        try:
            ms = int(ms_value.strip())
        except ValueError:
            ms = 0
        if ms > 0:
            return ms / 1000.0

    return parse_retry_after_header(headers.get("retry-after"))


class RetryAfterTracker:
    """Remembers the last Retry-After hint seen on a 429 response.

    Install ``on_response`` as an httpx response event hook.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._retry_after = 0.0
        self._captured_at = 0.0

    async def on_response(self, response: httpx.Response) -> None:
        """httpx event hook recording Retry-After from 429 responses."""
        self.record(response)

    def record(self, response: httpx.Response) -> None:
        """Record the retry hint carried by a response, if any."""
        if response.status_code != HTTP_TOO_MANY_REQUESTS:
            return

        retry_after = retry_after_from_headers(response.headers)
        if retry_after <= 0:
            return

        with self._lock:
            self._retry_after = retry_after
            self._captured_at = time.monotonic()
        logger.debug(
            "Captured Retry-After from 429 response: %.3fs (retry-after-ms=%s, retry-after=%s)",
            retry_after,
            response.headers.get("retry-after-ms"),
            response.headers.get("retry-after"),
        )

    def last_retry_after(self) -> tuple[float, float]:
        """Return the last captured delay and its monotonic capture time.

        Returns:
            (seconds, captured_at), or (0.0, 0.0) when nothing fresh is held.
        """
        with self._lock:
            if self._retry_after <= 0:
                return 0.0, 0.0
            if time.monotonic() - self._captured_at > STALE_AFTER_SECONDS:
                return 0.0, 0.0
            return self._retry_after, self._captured_at

    def clear(self) -> None:
        """Forget the captured value so it is not reused."""
        with self._lock:
            self._retry_after = 0.0
            self._captured_at = 0.0

    def event_hooks(self) -> dict[str, list]:
        """Event hooks mapping for ``httpx.AsyncClient(event_hooks=...)``."""
        return {"response": [self.on_response]}
