"""
Unit tests for the retry coordinator and error classification
"""
import httpx
import pytest

from vehicle_catalog.exceptions import ProviderError, ProviderTimeout, RateLimited
from vehicle_catalog.services.retry import (
    NO_RETRY,
    RetryCoordinator,
    RetryDecision,
    is_rate_limit_error,
    provider_error_classifier,
)


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class ScriptedCall:
    """Raises the scripted errors in turn, then returns the result"""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def coordinator(sleep):
    return RetryCoordinator(sleep=sleep)


@pytest.fixture
def classify():
    return provider_error_classifier(rate_limit_base_delay=5.0, timeout_retry_delay=2.0)


class TestClassifier:
    """Test the standard provider classifier"""

    def test_rate_limit_is_exponential(self, classify):
        decision = classify(RateLimited("slow down", provider="document_ai_ocr"))
        assert decision.retryable is True
        assert [decision.delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    def test_timeout_retried_once(self, classify):
        decision = classify(ProviderTimeout("too slow"))
        assert decision.retryable is True
        assert decision.max_retries == 1
        assert decision.delay_for(1) == 2.0

    def test_other_errors_propagate(self, classify):
        assert classify(ProviderError("bad request", status_code=400)) == NO_RETRY
        assert classify(ValueError("boom")) == NO_RETRY

    def test_rate_limit_detected_from_status_and_message(self):
        request = httpx.Request("POST", "https://eu-documentai.googleapis.com")
        response = httpx.Response(429, request=request)
        assert is_rate_limit_error(httpx.HTTPStatusError("429", request=request, response=response))
        assert is_rate_limit_error(ProviderError("quota", status_code=429))
        assert is_rate_limit_error(Exception("RESOURCE_EXHAUSTED: quota exceeded"))
        assert not is_rate_limit_error(ProviderError("server error", status_code=500))


class TestRetryCoordinator:
    """Test retry loop behavior"""

    @pytest.mark.asyncio
    async def test_success_without_retry(self, coordinator, classify, sleep):
        call = ScriptedCall([])
        assert await coordinator.with_retry(call, max_attempts=3, classify=classify) == "ok"
        assert call.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_then_succeeds(self, coordinator, classify, sleep):
        call = ScriptedCall([RateLimited("429"), RateLimited("429")])

        result = await coordinator.with_retry(call, max_attempts=4, classify=classify)

        assert result == "ok"
        assert call.calls == 3
        assert sleep.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_attempts(self, coordinator, classify, sleep):
        """Three 429s in a row with a budget of three surface the last error"""
        call = ScriptedCall([RateLimited("429")] * 3)

        with pytest.raises(RateLimited) as exc_info:
            await coordinator.with_retry(call, max_attempts=3, classify=classify)

        assert call.calls == 3
        assert sleep.delays == [5.0, 10.0]
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_four_attempts_back_off_exponentially(self, coordinator, classify, sleep):
        call = ScriptedCall([RateLimited("429")] * 4)

        with pytest.raises(RateLimited):
            await coordinator.with_retry(call, max_attempts=4, classify=classify)

        assert sleep.delays == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_timeout_retried_only_once(self, coordinator, classify, sleep):
        call = ScriptedCall([ProviderTimeout("t1"), ProviderTimeout("t2")])

        with pytest.raises(ProviderTimeout) as exc_info:
            await coordinator.with_retry(call, max_attempts=5, classify=classify)

        assert call.calls == 2
        assert sleep.delays == [2.0]
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self, coordinator, classify, sleep):
        call = ScriptedCall([ProviderError("bad request", status_code=400)])

        with pytest.raises(ProviderError) as exc_info:
            await coordinator.with_retry(call, max_attempts=3, classify=classify)

        assert call.calls == 1
        assert sleep.delays == []
        assert exc_info.value.details["attempts"] == 1

    @pytest.mark.asyncio
    async def test_on_retry_hook_called_before_each_retry(self, coordinator, classify):
        seen = []
        call = ScriptedCall([ProviderTimeout("t1")])

        await coordinator.with_retry(
            call,
            max_attempts=3,
            classify=classify,
            on_retry=lambda error, decision: seen.append((str(error), decision.reason)),
        )

        assert seen == [("[EXTRACTION] t1", "timeout")]

    @pytest.mark.asyncio
    async def test_budgets_are_independent_per_call(self, coordinator, classify):
        """Test that the coordinator keeps no state between calls"""
        first = ScriptedCall([RateLimited("429")])
        second = ScriptedCall([RateLimited("429")])

        assert await coordinator.with_retry(first, max_attempts=2, classify=classify) == "ok"
        assert await coordinator.with_retry(second, max_attempts=2, classify=classify) == "ok"

    @pytest.mark.asyncio
    async def test_custom_classifier(self, coordinator, sleep):
        call = ScriptedCall([KeyError("flaky")])

        result = await coordinator.with_retry(
            call,
            max_attempts=2,
            classify=lambda error: RetryDecision(retryable=True, backoff_seconds=0.5),
        )

        assert result == "ok"
        assert sleep.delays == [0.5]
