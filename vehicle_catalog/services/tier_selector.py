"""
Ordered fallback across extraction tiers.

Tiers are tried in the order given (structured OCR, plain OCR, LLM document
reader, local parser). The first tier producing non-empty output wins; every
try is recorded as an ExtractionAttempt. Costs travel with the attempts and
are never accumulated in process state.
"""
import asyncio
from decimal import Decimal
from typing import Optional, Sequence

import structlog

from vehicle_catalog.exceptions import (
    EmptyExtraction,
    ExtractionFailed,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from vehicle_catalog.logging_config import AttemptLog
from vehicle_catalog.models.domain import (
    ErrorKind,
    ExtractionAttempt,
    ExtractionOutcome,
    RawDocument,
    TierOutput,
    utc_now,
)
from vehicle_catalog.services.providers.base import ExtractionProvider

logger = structlog.get_logger(__name__)

RAW_OUTPUT_EXCERPT_CHARS = 2000


def error_kind_for(error: Exception) -> ErrorKind:
    if isinstance(error, ProviderUnavailable):
        return ErrorKind.UNAVAILABLE
    if isinstance(error, RateLimited):
        return ErrorKind.RATE_LIMITED
    if isinstance(error, (ProviderTimeout, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, EmptyExtraction):
        return ErrorKind.EMPTY
    return ErrorKind.ERROR


class ExtractionTierSelector:
    """
    Walk a tier chain for one document.

    Each tier call is bounded by ``tier_timeout_seconds`` on top of the
    provider's own request timeouts, so one hung tier cannot stall the run.
    """

    def __init__(
        self,
        tier_timeout_seconds: float = 240.0,
        attempt_log: Optional[AttemptLog] = None,
    ) -> None:
        self.tier_timeout_seconds = tier_timeout_seconds
        self.attempt_log = attempt_log
        self.logger = logger.bind(component="tier_selector")

    async def extract(
        self, document: RawDocument, tiers: Sequence[ExtractionProvider]
    ) -> ExtractionOutcome:
        """
        Return the first non-empty tier output with every attempt made.

        Raises:
            ExtractionFailed: every tier failed; carries all attempts
        """
        doc_logger = self.logger.bind(source_url=document.source_url)
        attempts: list[ExtractionAttempt] = []

        for tier in tiers:
            attempt, output = await self._try_tier(document, tier)
            attempts.append(attempt)
            if self.attempt_log is not None:
                self.attempt_log.record(attempt)

            if output is not None:
                outcome = ExtractionOutcome(output=output, attempts=attempts)
                doc_logger.info(
                    "Tier succeeded",
                    provider=tier.name,
                    elapsed_ms=attempt.elapsed_ms,
                    page_count=attempt.page_count,
                    tried=len(attempts),
                    degraded=outcome.degraded,
                )
                return outcome

        doc_logger.error(
            "All extraction tiers failed",
            providers=[a.provider for a in attempts],
            errors=[a.error for a in attempts],
        )
        raise ExtractionFailed(document.source_url, attempts)

    async def _try_tier(
        self, document: RawDocument, tier: ExtractionProvider
    ) -> tuple[ExtractionAttempt, Optional[TierOutput]]:
        started_at = utc_now()

        if not tier.is_configured():
            return (
                self._failed(tier, started_at, "Tier is not configured", ErrorKind.UNAVAILABLE),
                None,
            )

        try:
            output = await asyncio.wait_for(
                tier.extract(document), timeout=self.tier_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self.logger.warning(
                "Tier timed out", provider=tier.name, timeout_seconds=self.tier_timeout_seconds
            )
            return self._failed(tier, started_at, f"Timed out after {self.tier_timeout_seconds}s", error_kind_for(e)), None
        except ProviderError as e:
            self.logger.warning(
                "Tier failed",
                provider=tier.name,
                error=e.message,
                error_kind=error_kind_for(e).value,
                attempts=e.attempts,
            )
            return (
                self._failed(tier, started_at, e.message, error_kind_for(e), retries=e.attempts - 1),
                None,
            )
        except Exception as e:
            self.logger.exception("Unexpected tier error", provider=tier.name, error=str(e))
            return self._failed(tier, started_at, str(e) or e.__class__.__name__, ErrorKind.ERROR), None

        if output.is_empty:
            return (
                self._failed(
                    tier,
                    started_at,
                    "Tier returned empty output",
                    ErrorKind.EMPTY,
                    cost=output.cost_estimate,
                    page_count=output.page_count,
                ),
                None,
            )

        attempt = ExtractionAttempt(
            provider=tier.name,
            started_at=started_at,
            finished_at=utc_now(),
            succeeded=True,
            raw_output=(output.text or "")[:RAW_OUTPUT_EXCERPT_CHARS] or None,
            cost_estimate=output.cost_estimate,
            page_count=output.page_count,
            character_count=len(output.text or ""),
        )
        return attempt, output

    @staticmethod
    def _failed(
        tier: ExtractionProvider,
        started_at,
        error: str,
        error_kind: ErrorKind,
        retries: int = 0,
        cost: Decimal = Decimal("0"),
        page_count: int = 0,
    ) -> ExtractionAttempt:
        return ExtractionAttempt(
            provider=tier.name,
            started_at=started_at,
            finished_at=utc_now(),
            succeeded=False,
            error=error,
            error_kind=error_kind,
            retries=max(0, retries),
            cost_estimate=cost,
            page_count=page_count,
        )
