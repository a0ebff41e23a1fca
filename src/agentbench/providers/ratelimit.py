"""Rate-limited LLM provider wrapper.

Wraps any LLMProvider with proactive throttling (requests-per-minute and
tokens-per-minute token buckets) and optional reactive retry on provider
throttling (HTTP 429).

Rate limiting here is best-effort, not guaranteed. Token estimates are
approximations made before the call (tokenizers differ from the provider's
own counting, and tool schemas and message framing are not modelled), and
actual consumption is only known once the response arrives. The layer
narrows the gap with an adaptive calibration ratio and by reserving any
shortfall after the fact, and measures what slips through in its stats.
Callers that need a hard guarantee should queue requests above this layer.
"""

import asyncio
import logging
import math
import re
import threading
import time
from typing import Any, Protocol, runtime_checkable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from agentbench.cancellation import CancellationToken, guarded, guarded_sleep
from agentbench.models.config import LLMConfig, RateLimitConfig, RetryConfig
from agentbench.models.conversation import Message, RateLimitStats
from agentbench.providers.base import ChunkCallback, LLMProvider, LLMResponse
from agentbench.providers.retry_after import RetryAfterTracker
from agentbench.providers.token_bucket import TokenBucket
from agentbench.providers.tokens import estimate_input_tokens, extract_total_tokens

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0
DEFAULT_MAX_BACKOFF = 60.0
# Added to server retry hints; token buckets on the provider side refill gradually
DEFAULT_RETRY_AFTER_BUFFER = 10.0
# A captured Retry-After header is only trusted if it is this recent
RETRY_AFTER_FRESHNESS = 5.0

CALIBRATION_ALPHA = 0.2
CALIBRATION_MIN = 1.0
CALIBRATION_MAX = 5.0

# Waits shorter than this are not counted as throttling
SIGNIFICANT_WAIT = 0.01

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")
RETRY_AFTER_PATTERN = re.compile(r"retry after (\d+) seconds?", re.IGNORECASE)


def is_rate_limit_error(error: BaseException | str | None) -> bool:
    """Classify an error as provider throttling by its text."""
    if error is None:
        return False
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def parse_retry_after_text(error: BaseException | str) -> float:
    """Parse "retry after N seconds" from an error message.

    Returns:
        N in seconds, or 0.0 when the pattern is absent.
    """
    match = RETRY_AFTER_PATTERN.search(str(error))
    if not match:
        return 0.0
    seconds = int(match.group(1))
    return float(seconds) if seconds > 0 else 0.0


def has_rate_limiting(rate_limits: RateLimitConfig) -> bool:
    """True if any proactive ceiling is configured."""
    return rate_limits.tpm > 0 or rate_limits.rpm > 0


def has_retry_on_429(retry: RetryConfig) -> bool:
    """True if reactive 429 retry is enabled."""
    return retry.retry_on_429


def needs_wrapper(config: LLMConfig) -> bool:
    """True if a provider needs the rate-limited wrapper."""
    return has_rate_limiting(config.rate_limits) or has_retry_on_429(config.retry)


@runtime_checkable
class RateLimitStatsProvider(Protocol):
    """Anything that can report and reset rate limiting statistics."""

    def get_stats(self) -> RateLimitStats: ...

    def reset_stats(self) -> None: ...


class RateLimitedProvider(LLMProvider):
    """LLM provider wrapper enforcing rate limits and retrying on 429.

    Shared by every call made through one provider instance. The buckets,
    the calibration ratio and the statistics are the only mutable state; the
    ratio and the statistics are guarded by a single lock.
    """

    def __init__(  # noqa: PLR0913 - mirrors the provider's configuration surface
        self,
        wrapped: LLMProvider,
        rate_limits: RateLimitConfig | None = None,
        retry: RetryConfig | None = None,
        model_name: str = "",
        retry_after: RetryAfterTracker | None = None,
        *,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        retry_after_buffer: float = DEFAULT_RETRY_AFTER_BUFFER,
        log: logging.Logger | None = None,
    ) -> None:
        """Wrap a provider.

        Args:
            wrapped: Provider performing the actual calls.
            rate_limits: TPM/RPM ceilings; zero disables a ceiling.
            retry: 429 retry settings.
            model_name: Model identifier used to pick a tokenizer.
            retry_after: Tracker holding Retry-After headers captured from
                the wrapped provider's HTTP responses.
            initial_backoff: First exponential backoff delay in seconds.
            max_backoff: Cap on any single retry wait in seconds.
            retry_after_buffer: Seconds added to server-supplied retry hints.
            log: Logger to use instead of the module logger.
        """
        super().__init__(wrapped.config, retry_after)
        rate_limits = rate_limits or RateLimitConfig()
        retry = retry or RetryConfig()

        self._wrapped = wrapped
        self._log = log or logger
        self._model_name = model_name
        self._max_backoff = max_backoff
        self._backoff = wait_exponential(multiplier=initial_backoff, max=max_backoff)
        self._retry_after_buffer = retry_after_buffer

        self._retry_on_429 = retry.retry_on_429
        self._max_retries = retry.max_retries
        if self._retry_on_429 and self._max_retries <= 0:
            self._max_retries = DEFAULT_MAX_RETRIES

        self._tpm_bucket: TokenBucket | None = None
        self._rpm_bucket: TokenBucket | None = None
        if rate_limits.tpm > 0:
            self._tpm_bucket = TokenBucket(rate_limits.tpm, name="TPM")
            self._log.info(
                "Rate limiter configured: TPM=%d (%.2f tokens/s)",
                rate_limits.tpm,
                rate_limits.tpm / 60.0,
            )
        if rate_limits.rpm > 0:
            self._rpm_bucket = TokenBucket(rate_limits.rpm, name="RPM")
            self._log.info(
                "Rate limiter configured: RPM=%d (%.3f requests/s)",
                rate_limits.rpm,
                rate_limits.rpm / 60.0,
            )
        if self._retry_on_429:
            self._log.info("429 retry handling enabled (max_retries=%d)", self._max_retries)

        self._lock = threading.Lock()
        self._calibration_ratio = CALIBRATION_MIN
        self._stats = RateLimitStats()

    @property
    def wrapped(self) -> LLMProvider:
        """The provider performing the actual calls."""
        return self._wrapped

    @property
    def name(self) -> str:
        """Provider identifier of the wrapped provider."""
        return self._wrapped.name

    @property
    def max_retries(self) -> int:
        """Effective retry budget for 429 errors."""
        return self._max_retries

    @property
    def calibration_ratio(self) -> float:
        """Current multiplier applied to token estimates."""
        with self._lock:
            return self._calibration_ratio

    async def generate(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> LLMResponse:
        """Generate a completion, throttling first and retrying on 429.

        Raises:
            OperationCancelledError: If the token fired during any wait.
            LLMProviderError: If the call fails with a non-rate-limit error,
                or with a rate-limit error after the retry budget is spent.
        """
        if self._rpm_bucket is not None:
            self._log.debug("Waiting for RPM rate limit")
            waited = await self._rpm_bucket.wait(1, cancel)
            if waited > SIGNIFICANT_WAIT:
                self._record_throttle(waited)

        # The first tokenizer lookup for a model may download its encoding
        base_estimate = await guarded(
            asyncio.to_thread(estimate_input_tokens, messages, self._model_name), cancel
        )
        calibrated = self._apply_calibration(base_estimate)

        if self._tpm_bucket is not None and calibrated > 0:
            self._log.debug(
                "Waiting for TPM rate limit (estimated=%d, calibrated=%d, ratio=%.3f)",
                base_estimate,
                calibrated,
                self.calibration_ratio,
            )
            waited = await self._tpm_bucket.wait(calibrated, cancel)
            if waited > SIGNIFICANT_WAIT:
                self._record_throttle(waited)

        start = time.monotonic()
        if self._retry_on_429:
            response = await self._generate_with_retry(messages, tools, on_chunk, cancel)
        else:
            response = await self._call(messages, tools, on_chunk, cancel)

        self._after_success(response, base_estimate, calibrated, time.monotonic() - start)
        return response

    async def _call(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        on_chunk: ChunkCallback | None,
        cancel: CancellationToken | None,
    ) -> LLMResponse:
        try:
            return await self._wrapped.generate(
                messages, tools=tools, on_chunk=on_chunk, cancel=cancel
            )
        except Exception as e:
            if is_rate_limit_error(e):
                self._record_rate_limit_hit()
            raise

    async def _generate_with_retry(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        on_chunk: ChunkCallback | None,
        cancel: CancellationToken | None,
    ) -> LLMResponse:
        """Call the wrapped provider, retrying throttled attempts.

        Retries stop at the first success, at the first error that is not a
        rate limit, or once the budget is spent. The error of the final
        attempt is re-raised unchanged.
        """
        async for attempt in self._retrying(cancel):
            with attempt:
                response = await self._call(messages, tools, on_chunk, cancel)
                retries = attempt.retry_state.attempt_number - 1
                if retries > 0:
                    self._log.info("Request succeeded after 429 retry (attempt %d)", retries)
                    self._record_retry_success()
                return response
        msg = "429 retry loop ended without a result"
        raise RuntimeError(msg)

    def _retrying(self, cancel: CancellationToken | None) -> AsyncRetrying:
        """Build the Tenacity controller for one generate call."""
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._retry_delay,
            retry=retry_if_exception(is_rate_limit_error),
            sleep=lambda seconds: self._backoff_sleep(seconds, cancel),
            before_sleep=self._log_retry,
            after=self._log_exhausted,
            reraise=True,
        )

    async def _backoff_sleep(self, seconds: float, cancel: CancellationToken | None) -> None:
        wait_start = time.monotonic()
        await guarded_sleep(seconds, cancel)
        self._record_retry(time.monotonic() - wait_start)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self._log.warning(
            "429 rate limit hit, retrying (attempt %d/%d, waiting %.2fs): %s",
            retry_state.attempt_number,
            self._max_retries,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            retry_state.outcome.exception() if retry_state.outcome else None,
        )

    def _log_exhausted(self, retry_state: RetryCallState) -> None:
        if retry_state.attempt_number <= self._max_retries:
            return
        self._log.error(
            "429 retries exhausted (max_retries=%d): %s",
            self._max_retries,
            retry_state.outcome.exception() if retry_state.outcome else None,
        )

    def _retry_delay(self, retry_state: RetryCallState) -> float:
        """Pick the wait before the next attempt.

        Order of preference: a fresh Retry-After header, a retry hint in the
        error text, then exponential backoff. All are capped at max_backoff.
        """
        delay = self._header_retry_after()
        if delay <= 0 and retry_state.outcome is not None:
            hinted = parse_retry_after_text(retry_state.outcome.exception())
            if hinted > 0:
                self._log.debug("Using Retry-After from error message: %ds", hinted)
                delay = hinted + self._retry_after_buffer
        if delay <= 0:
            delay = self._backoff(retry_state)
        return min(delay, self._max_backoff)

    def _header_retry_after(self) -> float:
        if self._retry_after is None:
            return 0.0
        seconds, captured_at = self._retry_after.last_retry_after()
        if seconds <= 0:
            return 0.0
        age = time.monotonic() - captured_at
        if age >= RETRY_AFTER_FRESHNESS:
            return 0.0
        self._log.debug(
            "Using Retry-After from HTTP header: %.3fs (captured %.0fms ago)",
            seconds,
            age * 1000,
        )
        self._retry_after.clear()
        return seconds + self._retry_after_buffer

    def _after_success(
        self, response: LLMResponse, base_estimate: int, calibrated: int, elapsed: float
    ) -> None:
        actual = extract_total_tokens(response.usage)
        if actual <= 0:
            return

        self._update_calibration(base_estimate, actual)
        if self._tpm_bucket is not None and actual > calibrated:
            additional = actual - calibrated
            delay = self._tpm_bucket.reserve(additional)
            self._log.debug(
                "Reserved %d additional tokens (estimated=%d, calibrated=%d, actual=%d, delay=%.2fs)",
                additional,
                base_estimate,
                calibrated,
                actual,
                delay,
            )
        self._log.debug(
            "Request completed in %.2fs (estimated=%d, calibrated=%d, actual=%d, ratio=%.3f)",
            elapsed,
            base_estimate,
            calibrated,
            actual,
            self.calibration_ratio,
        )

    def _apply_calibration(self, estimated: int) -> int:
        if estimated <= 0:
            return estimated
        ratio = self.calibration_ratio
        if ratio <= 1.0:
            return estimated
        return max(estimated, math.ceil(estimated * ratio))

    def _update_calibration(self, estimated: int, actual: int) -> None:
        if estimated <= 0 or actual <= 0:
            return

        observed = min(max(actual / estimated, CALIBRATION_MIN), CALIBRATION_MAX)
        with self._lock:
            ratio = (1.0 - CALIBRATION_ALPHA) * self._calibration_ratio + CALIBRATION_ALPHA * observed
            self._calibration_ratio = min(max(ratio, CALIBRATION_MIN), CALIBRATION_MAX)
            current = self._calibration_ratio
        self._log.debug(
            "Updated token calibration (estimated=%d, actual=%d, observed=%.3f, ratio=%.3f)",
            estimated,
            actual,
            observed,
            current,
        )

    def _record_throttle(self, waited: float) -> None:
        with self._lock:
            self._stats.throttle_count += 1
            self._stats.throttle_wait_time_ms += int(waited * 1000)
            count = self._stats.throttle_count
        self._log.debug("Throttle recorded (count=%d, wait=%.3fs)", count, waited)

    def _record_rate_limit_hit(self) -> None:
        with self._lock:
            self._stats.rate_limit_hits += 1
            hits = self._stats.rate_limit_hits
        self._log.debug("429 hit recorded (total=%d)", hits)

    def _record_retry(self, waited: float) -> None:
        with self._lock:
            self._stats.retry_count += 1
            self._stats.retry_wait_time_ms += int(waited * 1000)

    def _record_retry_success(self) -> None:
        with self._lock:
            self._stats.retry_success_count += 1

    def get_stats(self) -> RateLimitStats:
        """Return a snapshot of the rate limiting statistics."""
        with self._lock:
            return self._stats.model_copy()

    def reset_stats(self) -> None:
        """Clear statistics, e.g. between benchmark runs."""
        with self._lock:
            self._stats = RateLimitStats()

    async def close(self) -> None:
        """Close the wrapped provider."""
        await self._wrapped.close()
