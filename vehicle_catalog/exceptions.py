"""
Exception hierarchy for the vehicle catalog pipeline.

Every failure the pipeline knows how to contain derives from PipelineError so
that tier, document and entity level handlers can convert it into an Issue
record instead of aborting the run.
"""
from typing import Any, Optional


class PipelineError(Exception):
    """
    Base exception class for all pipeline errors

    Attributes:
        message: Error message
        stage: Pipeline stage where error occurred
        details: Additional error details
        original_exception: Original exception that caused this error
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        self.message = message
        self.stage = stage
        self.details = details or {}
        self.original_exception = original_exception

        full_message = message
        if stage:
            full_message = f"[{stage.upper()}] {message}"

        super().__init__(full_message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "stage": self.stage,
            "details": self.details,
            "original_exception": (
                str(self.original_exception) if self.original_exception else None
            ),
        }


# ============================================================================
# Provider errors (one extraction tier)
# ============================================================================


class ProviderError(PipelineError):
    """
    Failure of a single remote or local extraction provider call.

    Common causes:
    - HTTP error responses from the OCR or LLM service
    - Malformed provider responses
    - PDF download failures
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        original_exception: Optional[Exception] = None,
    ):
        details: dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code

        self.provider = provider
        self.status_code = status_code

        super().__init__(
            message=message,
            stage="extraction",
            details=details,
            original_exception=original_exception,
        )

    @property
    def attempts(self) -> int:
        """Number of calls made before this error was surfaced"""
        return int(self.details.get("attempts", 1))


class ProviderUnavailable(ProviderError):
    """Provider is not configured or its credentials are missing"""


class RateLimited(ProviderError):
    """Provider signalled load shedding (HTTP 429 or a rate_limit error)"""


class ProviderTimeout(ProviderError):
    """Provider call exceeded its timeout"""


class EmptyExtraction(ProviderError):
    """Provider answered but produced no usable text or entities"""


# ============================================================================
# Terminal and data-quality errors
# ============================================================================


class ExtractionFailed(PipelineError):
    """Every tier in the fallback chain failed for one document"""

    def __init__(self, source_url: str, attempts: list):
        self.source_url = source_url
        self.attempts = list(attempts)

        providers = ", ".join(
            f"{attempt.provider}: {attempt.error}" for attempt in self.attempts
        )
        super().__init__(
            message=f"All extraction tiers failed for {source_url} ({providers or 'no tiers'})",
            stage="extraction",
            details={
                "source_url": source_url,
                "attempt_count": len(self.attempts),
                "providers": [attempt.provider for attempt in self.attempts],
            },
        )


class ParseFailed(PipelineError):
    """
    Structured output could not be parsed, even after repair.

    ``partial`` is True when an earlier, shorter prefix of the output could be
    recovered; ``recovered`` then holds that data and callers may keep it as a
    low confidence result. ``partial`` False means there was no usable data.
    """

    def __init__(
        self,
        message: str,
        partial: bool = False,
        recovered: Any = None,
        raw_excerpt: Optional[str] = None,
        original_exception: Optional[Exception] = None,
    ):
        self.partial = partial
        self.recovered = recovered
        self.raw_excerpt = raw_excerpt

        super().__init__(
            message=message,
            stage="parsing",
            details={
                "partial": partial,
                "raw_excerpt": raw_excerpt,
            },
            original_exception=original_exception,
        )


class CorrelationAmbiguous(PipelineError):
    """An entity precedes every variant anchor and cannot be attributed"""

    def __init__(self, entity: Any, reason: str = "no owning variant anchor"):
        self.entity = entity

        super().__init__(
            message=f"Entity '{getattr(entity, 'type', '?')}' dropped: {reason}",
            stage="correlation",
            details={
                "entity_type": getattr(entity, "type", None),
                "entity_text": getattr(entity, "text", None),
                "text_position": getattr(entity, "text_position", None),
            },
        )
