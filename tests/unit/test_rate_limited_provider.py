"""Tests for the rate-limited provider wrapper."""

import asyncio
import threading
from collections.abc import Iterator

import httpx
import pytest
from fakes import ScriptedProvider, text_response
from tenacity import AsyncRetrying, RetryCallState

from agentbench.cancellation import CancellationToken
from agentbench.exceptions import LLMProviderError, OperationCancelledError
from agentbench.models.config import LLMConfig, RateLimitConfig, RetryConfig
from agentbench.models.conversation import Message
from agentbench.providers.ratelimit import (
    CALIBRATION_MAX,
    RateLimitedProvider,
    RateLimitStatsProvider,
    is_rate_limit_error,
    needs_wrapper,
    parse_retry_after_text,
)
from agentbench.providers.retry_after import RetryAfterTracker

# 400 characters estimate to 100 tokens with the heuristic
PROMPT = [Message.user("x" * 400)]


def _rate_limited(error: str = "Error code: 429 - rate limit exceeded") -> LLMProviderError:
    return LLMProviderError(error)


def _failed_attempt(error: Exception, attempt_number: int = 1) -> RetryCallState:
    state = RetryCallState(retry_object=AsyncRetrying(), fn=None, args=(), kwargs={})
    state.attempt_number = attempt_number
    state.set_exception((type(error), error, None))
    return state


def _wrap(
    provider: ScriptedProvider,
    *,
    tpm: int = 0,
    rpm: int = 0,
    retry_on_429: bool = False,
    max_retries: int = 0,
    **kwargs: object,
) -> RateLimitedProvider:
    return RateLimitedProvider(
        provider,
        rate_limits=RateLimitConfig(tpm=tpm, rpm=rpm),
        retry=RetryConfig(retry_on_429=retry_on_429, max_retries=max_retries),
        initial_backoff=0.001,
        **kwargs,  # type: ignore[arg-type]
    )


class TestClassification:
    """Tests for error classification and wrapper selection."""

    @pytest.mark.parametrize(
        "error",
        [
            "Error code: 429",
            "Rate limit exceeded for model",
            "HTTP 503: Too Many Requests",
            LLMProviderError("OpenAI API error: Error code: 429"),
        ],
    )
    def test_rate_limit_errors(self, error: object) -> None:
        """Throttling is detected from the error text."""
        assert is_rate_limit_error(error)  # type: ignore[arg-type]

    @pytest.mark.parametrize("error", [None, "boom", "Error code: 500"])
    def test_other_errors(self, error: str | None) -> None:
        """Anything else is not throttling."""
        assert not is_rate_limit_error(error)

    def test_parse_retry_after_text(self) -> None:
        """Retry hints in error text are extracted."""
        assert parse_retry_after_text("Please retry after 20 seconds.") == 20.0
        assert parse_retry_after_text("Retry after 1 second") == 1.0
        assert parse_retry_after_text("rate limited") == 0.0

    def test_needs_wrapper(self) -> None:
        """Only configs with limits or retry get the wrapper."""
        assert not needs_wrapper(LLMConfig(provider="openai", model="m"))
        assert needs_wrapper(
            LLMConfig(provider="openai", model="m", rate_limits=RateLimitConfig(tpm=1))
        )
        assert needs_wrapper(
            LLMConfig(provider="openai", model="m", rate_limits=RateLimitConfig(rpm=1))
        )
        assert needs_wrapper(
            LLMConfig(provider="openai", model="m", retry=RetryConfig(retry_on_429=True))
        )

    def test_stats_protocol(self) -> None:
        """The wrapper reports stats and plain providers do not."""
        inner = ScriptedProvider([text_response("ok")])

        assert isinstance(_wrap(inner), RateLimitStatsProvider)
        assert not isinstance(inner, RateLimitStatsProvider)


class TestRetry:
    """Tests for reactive 429 handling."""

    @pytest.mark.asyncio
    async def test_passthrough(self) -> None:
        """Successful calls are returned unchanged."""
        response = text_response("ok")
        provider = _wrap(ScriptedProvider([response]))

        assert await provider.generate(PROMPT) is response
        assert provider.name == "scripted"
        assert provider.get_stats().rate_limit_hits == 0

    @pytest.mark.asyncio
    async def test_default_retry_budget(self) -> None:
        """Enabling retry without a budget uses three retries."""
        provider = _wrap(ScriptedProvider([text_response("ok")]), retry_on_429=True)

        assert provider.max_retries == 3

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self) -> None:
        """A persistent 429 is retried max_retries times, then raised."""
        inner = ScriptedProvider([_rate_limited()])
        provider = _wrap(inner, retry_on_429=True, max_retries=3)

        with pytest.raises(LLMProviderError, match="429"):
            await provider.generate(PROMPT)

        stats = provider.get_stats()
        assert len(inner.calls) == 4
        assert stats.rate_limit_hits == 4
        assert stats.retry_count == 3
        assert stats.retry_success_count == 0

    @pytest.mark.asyncio
    async def test_exhaustion_raises_final_attempt_error(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """The provider's own error from the last attempt is raised and logged."""
        errors = [_rate_limited(f"429 rate limit (attempt {n})") for n in range(1, 4)]
        provider = _wrap(ScriptedProvider(list(errors)), retry_on_429=True, max_retries=2)

        with (
            caplog.at_level("WARNING", logger="agentbench.providers.ratelimit"),
            pytest.raises(LLMProviderError) as exc_info,
        ):
            await provider.generate(PROMPT)

        assert exc_info.value is errors[-1]
        assert caplog.text.count("429 rate limit hit, retrying") == 2
        assert "429 retries exhausted (max_retries=2)" in caplog.text

    @pytest.mark.asyncio
    async def test_retry_success(self) -> None:
        """A transient 429 is retried and the response returned."""
        inner = ScriptedProvider([_rate_limited(), _rate_limited(), text_response("ok")])
        provider = _wrap(inner, retry_on_429=True, max_retries=3)

        response = await provider.generate(PROMPT)

        stats = provider.get_stats()
        assert response.choices[0].content == "ok"
        assert len(inner.calls) == 3
        assert stats.rate_limit_hits == 2
        assert stats.retry_count == 2
        assert stats.retry_success_count == 1

    @pytest.mark.asyncio
    async def test_retry_disabled(self) -> None:
        """Without retry a 429 is counted and raised at once."""
        inner = ScriptedProvider([_rate_limited()])
        provider = _wrap(inner, tpm=100000)

        with pytest.raises(LLMProviderError):
            await provider.generate(PROMPT)

        assert len(inner.calls) == 1
        assert provider.get_stats().rate_limit_hits == 1
        assert provider.get_stats().retry_count == 0

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self) -> None:
        """Non-throttling errors propagate without retry."""
        inner = ScriptedProvider([LLMProviderError("invalid model")])
        provider = _wrap(inner, retry_on_429=True)

        with pytest.raises(LLMProviderError, match="invalid model"):
            await provider.generate(PROMPT)

        assert len(inner.calls) == 1
        assert provider.get_stats().rate_limit_hits == 0

    @pytest.mark.asyncio
    async def test_other_error_during_retry(self) -> None:
        """A different error during a retry ends the retry loop."""
        inner = ScriptedProvider([_rate_limited(), LLMProviderError("server exploded")])
        provider = _wrap(inner, retry_on_429=True, max_retries=3)

        with pytest.raises(LLMProviderError, match="server exploded"):
            await provider.generate(PROMPT)

        assert len(inner.calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_during_backoff(self) -> None:
        """The backoff sleep is interruptible."""
        inner = ScriptedProvider([_rate_limited()])
        provider = RateLimitedProvider(
            inner, retry=RetryConfig(retry_on_429=True), initial_backoff=30.0
        )
        cancel = CancellationToken()
        cancel.cancel_after(0.02)

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(provider.generate(PROMPT, cancel=cancel), timeout=2.0)
        assert len(inner.calls) == 1


class TestRetryDelay:
    """Tests for choosing the wait before a retry."""

    def test_exponential_backoff(self) -> None:
        """Without hints the delay doubles per attempt."""
        provider = RateLimitedProvider(
            ScriptedProvider([text_response("ok")]), initial_backoff=1.0
        )
        error = _rate_limited()

        delays = [
            provider._retry_delay(_failed_attempt(error, attempt)) for attempt in (1, 2, 3)
        ]

        assert delays == [1.0, 2.0, 4.0]

    def test_error_text_hint(self) -> None:
        """A retry hint in the error text wins over backoff, plus the buffer."""
        provider = RateLimitedProvider(ScriptedProvider([text_response("ok")]))

        delay = provider._retry_delay(_failed_attempt(_rate_limited("429: retry after 5 seconds")))

        assert delay == 15.0

    def test_header_hint_wins(self) -> None:
        """A fresh Retry-After header wins over the error text and is consumed."""
        tracker = RetryAfterTracker()
        tracker.record(httpx.Response(429, headers={"retry-after": "2"}))
        provider = RateLimitedProvider(
            ScriptedProvider([text_response("ok")]), retry_after=tracker
        )
        error = _rate_limited("429: retry after 5 seconds")

        assert provider._retry_delay(_failed_attempt(error)) == 12.0
        assert provider._retry_delay(_failed_attempt(error)) == 15.0

    def test_cap(self) -> None:
        """No delay exceeds the backoff cap."""
        provider = RateLimitedProvider(
            ScriptedProvider([text_response("ok")]), initial_backoff=1.0, max_backoff=3.0
        )

        assert provider._retry_delay(_failed_attempt(_rate_limited(), 5)) == 3.0
        hinted = _failed_attempt(_rate_limited("retry after 120 seconds"))
        assert provider._retry_delay(hinted) == 3.0


class TestEstimation:
    """Tests for estimating tokens off the event loop."""

    @pytest.fixture
    def release(self, monkeypatch: pytest.MonkeyPatch) -> Iterator[threading.Event]:
        """Make estimation block until the returned event is set."""
        release = threading.Event()

        def blocking_estimate(messages: list[Message], model_name: str = "") -> int:
            release.wait(timeout=2.0)
            return 100

        monkeypatch.setattr(
            "agentbench.providers.ratelimit.estimate_input_tokens", blocking_estimate
        )
        yield release
        release.set()

    @pytest.mark.asyncio
    async def test_slow_estimate_does_not_block_loop(self, release: threading.Event) -> None:
        """Other coroutines keep running while a tokenizer loads."""
        provider = _wrap(ScriptedProvider([text_response("ok")]), tpm=100000)

        task = asyncio.create_task(provider.generate(PROMPT))
        await asyncio.sleep(0.05)

        assert not task.done()
        release.set()
        response = await asyncio.wait_for(task, timeout=2.0)
        assert response.choices[0].content == "ok"

    @pytest.mark.asyncio
    async def test_cancelled_while_estimating(self, release: threading.Event) -> None:
        """Cancellation interrupts the wait for an estimate."""
        inner = ScriptedProvider([text_response("ok")])
        provider = _wrap(inner, tpm=100000)
        cancel = CancellationToken()
        cancel.cancel_after(0.02)

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(provider.generate(PROMPT, cancel=cancel), timeout=1.0)
        assert inner.calls == []


class TestThrottling:
    """Tests for proactive rate limiting."""

    @pytest.mark.asyncio
    async def test_rpm_throttle_recorded(self) -> None:
        """Waiting on an exhausted RPM bucket counts as a throttle."""
        provider = _wrap(ScriptedProvider([text_response("ok")]), rpm=3000)
        provider._rpm_bucket.try_acquire(3000)  # type: ignore[union-attr]

        await asyncio.wait_for(provider.generate(PROMPT), timeout=2.0)

        stats = provider.get_stats()
        assert stats.throttle_count == 1
        assert stats.throttle_wait_time_ms > 0

    @pytest.mark.asyncio
    async def test_no_throttle_when_capacity_available(self) -> None:
        """Calls within quota are not counted."""
        provider = _wrap(ScriptedProvider([text_response("ok")]), rpm=600, tpm=100000)

        await provider.generate(PROMPT)

        assert provider.get_stats().throttle_count == 0

    @pytest.mark.asyncio
    async def test_tpm_consumes_estimate_and_reserves_shortfall(self) -> None:
        """The estimate is taken up front and any excess usage reserved after."""
        inner = ScriptedProvider([text_response("ok", usage={"total_tokens": 250})])
        provider = _wrap(inner, tpm=6000)

        await provider.generate(PROMPT)

        # 100 estimated up front, 150 more reserved once usage is known
        assert provider._tpm_bucket.available == pytest.approx(5750, abs=5)  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_cancelled_while_throttled(self) -> None:
        """Waiting on a bucket is interruptible."""
        inner = ScriptedProvider([text_response("ok")])
        provider = _wrap(inner, rpm=60)
        provider._rpm_bucket.try_acquire(60)  # type: ignore[union-attr]
        cancel = CancellationToken()
        cancel.cancel_after(0.02)

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(provider.generate(PROMPT, cancel=cancel), timeout=2.0)
        assert inner.calls == []


class TestCalibration:
    """Tests for adaptive token calibration."""

    @pytest.mark.asyncio
    async def test_starts_neutral(self) -> None:
        """The ratio starts at one."""
        provider = _wrap(ScriptedProvider([text_response("ok")]))

        assert provider.calibration_ratio == 1.0

    @pytest.mark.asyncio
    async def test_converges_to_observed_ratio(self) -> None:
        """Consistent underestimates pull the ratio towards actual/estimate."""
        inner = ScriptedProvider([text_response("ok", usage={"total_tokens": 200})])
        provider = _wrap(inner)

        for _ in range(30):
            await provider.generate(PROMPT)

        assert provider.calibration_ratio == pytest.approx(2.0, abs=0.01)

    @pytest.mark.asyncio
    async def test_ratio_capped(self) -> None:
        """Extreme underestimates cannot push the ratio past the cap."""
        inner = ScriptedProvider([text_response("ok", usage={"total_tokens": 5000})])
        provider = _wrap(inner)

        for _ in range(50):
            await provider.generate(PROMPT)

        assert 4.9 < provider.calibration_ratio <= CALIBRATION_MAX

    @pytest.mark.asyncio
    async def test_overestimates_keep_floor(self) -> None:
        """Overestimates never shrink the ratio below one."""
        inner = ScriptedProvider([text_response("ok", usage={"total_tokens": 10})])
        provider = _wrap(inner)

        await provider.generate(PROMPT)

        assert provider.calibration_ratio == 1.0

    @pytest.mark.asyncio
    async def test_missing_usage_leaves_ratio(self) -> None:
        """Responses without usage do not update the ratio."""
        provider = _wrap(ScriptedProvider([text_response("ok")]))

        await provider.generate(PROMPT)

        assert provider.calibration_ratio == 1.0


class TestStats:
    """Tests for statistics snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self) -> None:
        """Mutating a snapshot does not affect the provider."""
        provider = _wrap(ScriptedProvider([_rate_limited()]))
        with pytest.raises(LLMProviderError):
            await provider.generate(PROMPT)

        snapshot = provider.get_stats()
        snapshot.rate_limit_hits = 99

        assert provider.get_stats().rate_limit_hits == 1

    @pytest.mark.asyncio
    async def test_reset(self) -> None:
        """Reset clears every counter."""
        provider = _wrap(ScriptedProvider([_rate_limited()]))
        with pytest.raises(LLMProviderError):
            await provider.generate(PROMPT)

        provider.reset_stats()

        assert provider.get_stats().model_dump() == {
            "throttle_count": 0,
            "throttle_wait_time_ms": 0,
            "rate_limit_hits": 0,
            "retry_count": 0,
            "retry_wait_time_ms": 0,
            "retry_success_count": 0,
        }

    @pytest.mark.asyncio
    async def test_close_closes_wrapped(self) -> None:
        """Closing the wrapper closes the wrapped provider."""
        inner = ScriptedProvider([text_response("ok")])
        closed = False

        async def close() -> None:
            nonlocal closed
            closed = True

        inner.close = close  # type: ignore[method-assign]
        await _wrap(inner).close()

        assert closed
