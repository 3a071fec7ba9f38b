"""
Retry policy shared by every remote provider call.

The coordinator holds no state between calls; each with_retry() invocation
gets its own attempt budget. What to do with a given error is decided by a
pure classify() function.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from vehicle_catalog.exceptions import (
    ProviderError,
    ProviderTimeout,
    RateLimited,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryDecision(BaseModel):
    """How to react to one failed call"""

    retryable: bool
    backoff_seconds: float = Field(0.0, ge=0.0)
    exponential: bool = False
    max_retries: Optional[int] = Field(None, ge=0)
    reason: str = "error"

    model_config = ConfigDict(frozen=True)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)"""
        if self.exponential:
            return self.backoff_seconds * (2 ** (retry_number - 1))
        return self.backoff_seconds


NO_RETRY = RetryDecision(retryable=False)

Classifier = Callable[[Exception], RetryDecision]


def is_rate_limit_error(error: Exception) -> bool:
    if isinstance(error, RateLimited):
        return True
    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if status == 429:
        return True
    message = str(error).lower()
    return "rate_limit" in message or "rate limit" in message or "resource_exhausted" in message


def is_timeout_error(error: Exception) -> bool:
    return isinstance(error, (ProviderTimeout, httpx.TimeoutException, asyncio.TimeoutError))


def provider_error_classifier(
    rate_limit_base_delay: float = 5.0,
    timeout_retry_delay: float = 2.0,
) -> Classifier:
    """
    Build the standard classifier for a provider.

    Rate limits back off exponentially from ``rate_limit_base_delay``;
    timeouts are retried once after ``timeout_retry_delay``; everything else
    propagates immediately.
    """

    def classify(error: Exception) -> RetryDecision:
        if is_rate_limit_error(error):
            return RetryDecision(
                retryable=True,
                backoff_seconds=rate_limit_base_delay,
                exponential=True,
                reason="rate_limited",
            )
        if is_timeout_error(error):
            return RetryDecision(
                retryable=True,
                backoff_seconds=timeout_retry_delay,
                max_retries=1,
                reason="timeout",
            )
        return NO_RETRY

    return classify


class RetryCoordinator:
    """
    Run an async call with retries decided by a classifier.

    ``sleep`` is injectable for tests.
    """

    def __init__(
        self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self._sleep = sleep

    async def with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        max_attempts: int,
        classify: Classifier,
        operation: str = "provider_call",
        on_retry: Optional[Callable[[Exception, RetryDecision], None]] = None,
    ) -> T:
        """
        Call ``fn`` until it succeeds or the policy gives up.

        Args:
            fn: Zero-argument coroutine factory, called once per attempt
            max_attempts: Total number of calls allowed (at least 1)
            classify: Maps an error to a RetryDecision
            operation: Name used in log events
            on_retry: Called before each retry, e.g. to open a fresh
                connection after a timeout

        Returns:
            Whatever ``fn`` returns

        Raises:
            The last error, once it is non-retryable or the budget is spent.
            ProviderError instances get ``details["attempts"]`` set.
        """
        max_attempts = max(1, max_attempts)
        call_logger = logger.bind(operation=operation, max_attempts=max_attempts)
        retries_by_reason: dict[str, int] = {}

        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as error:
                decision = classify(error)
                retries = retries_by_reason.get(decision.reason, 0)

                exhausted = attempt >= max_attempts or (
                    decision.max_retries is not None and retries >= decision.max_retries
                )
                if not decision.retryable or exhausted:
                    if isinstance(error, ProviderError):
                        error.details["attempts"] = attempt
                    if decision.retryable:
                        call_logger.warning(
                            "Retry budget exhausted",
                            attempt=attempt,
                            reason=decision.reason,
                            error=str(error),
                        )
                    raise

                retries_by_reason[decision.reason] = retries + 1
                delay = decision.delay_for(retries + 1)
                call_logger.info(
                    "Retrying provider call",
                    attempt=attempt,
                    reason=decision.reason,
                    delay_seconds=delay,
                    error=str(error),
                )

                if on_retry is not None:
                    on_retry(error, decision)
                await self._sleep(delay)
