"""
Claude API access: text completions for schema extraction and a document
tier that reads PDFs directly.

Calls are streamed so that long outputs do not hit the SDK's non-streaming
request limits. Retries are driven by RetryCoordinator; the SDK's own retry
loop is disabled.
"""
import base64
from decimal import Decimal
from typing import Any, Optional

import anthropic
import structlog
from pydantic import BaseModel, Field

from vehicle_catalog.config.settings import ClaudeSettings
from vehicle_catalog.exceptions import (
    EmptyExtraction,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from vehicle_catalog.models.domain import RawDocument, TierOutput, TokenUsage
from vehicle_catalog.services.providers.base import ExtractionProvider
from vehicle_catalog.services.retry import (
    RetryCoordinator,
    RetryDecision,
    is_timeout_error,
    provider_error_classifier,
)

logger = structlog.get_logger(__name__)

# USD per million tokens: input, output, cache read, cache write
MODEL_PRICING: dict[str, tuple[Decimal, Decimal, Decimal, Decimal]] = {
    "sonnet": (Decimal("3.00"), Decimal("15.00"), Decimal("0.30"), Decimal("3.75")),
    "haiku": (Decimal("0.80"), Decimal("4.00"), Decimal("0.08"), Decimal("1.00")),
    "opus": (Decimal("15.00"), Decimal("75.00"), Decimal("1.50"), Decimal("18.75")),
}

PER_MILLION = Decimal("1000000")

DOCUMENT_SYSTEM_PROMPT = (
    "You transcribe Swedish car price lists. Preserve every model name, "
    "variant name, price and leasing amount exactly as printed."
)

DOCUMENT_INSTRUCTION = """Read the attached price list and return its content as plain text.

Rules:
- Keep one line per variant with its name followed by all prices on that line
- Keep table headers, separating cells with " | "
- Copy amounts exactly as printed, including spaces and "kr"
- Keep headings for models, trim levels and equipment packages
- Do not summarize, translate or add commentary"""


def pricing_for(model: str) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    """Price table for a model id; unknown models are priced as Sonnet"""
    for family, prices in MODEL_PRICING.items():
        if family in model:
            return prices
    return MODEL_PRICING["sonnet"]


def calculate_cost(usage: TokenUsage, model: str) -> Decimal:
    """
    Cost of one or more calls in USD.

    ``input_tokens`` excludes cache reads and writes, which are billed at
    their own rates.
    """
    input_price, output_price, cache_read_price, cache_write_price = pricing_for(model)
    total = (
        usage.input_tokens * input_price
        + usage.output_tokens * output_price
        + usage.cache_read_tokens * cache_read_price
        + usage.cache_creation_tokens * cache_write_price
    )
    return total / PER_MILLION


def usage_from_response(message: Any) -> TokenUsage:
    usage = getattr(message, "usage", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
        cache_read_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
        cache_creation_tokens=getattr(usage, "cache_creation_input_tokens", 0) or 0,
    )


def text_from_response(message: Any) -> str:
    return "".join(
        block.text for block in message.content if getattr(block, "type", None) == "text"
    )


class LLMCompletion(BaseModel):
    """Text answer from one Claude call with its usage and cost"""

    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    model: str
    stop_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


class ClaudeClient:
    """
    Thin async wrapper over the Anthropic SDK.

    Maps SDK errors onto the provider error hierarchy and retries rate
    limits and timeouts. A timeout replaces the underlying client so the
    retry runs on a fresh connection.
    """

    provider_name = "claude"

    def __init__(
        self,
        settings: ClaudeSettings,
        retry: Optional[RetryCoordinator] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self.settings = settings
        self.retry = retry or RetryCoordinator()
        self._client = client
        self.logger = logger.bind(service="claude", model=settings.model)

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if not self.settings.configured:
            raise ProviderUnavailable("Claude API key is not set", provider=self.provider_name)
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.api_key,
                timeout=self.settings.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def _reset_client(self, error: Exception, decision: RetryDecision) -> None:
        if is_timeout_error(error):
            self.logger.info("Recreating Claude client after timeout")
            self._client = None

    async def complete(
        self,
        prompt: str,
        document: Optional[bytes] = None,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMCompletion:
        """
        Send one prompt, optionally with a PDF attached.

        Args:
            prompt: User instruction
            document: PDF bytes sent as a base64 document block
            system: System prompt
            model: Overrides the configured model
            max_tokens: Overrides the configured output limit

        Returns:
            LLMCompletion with text, token usage and cost

        Raises:
            ProviderUnavailable, RateLimited, ProviderTimeout, ProviderError
        """
        model = model or self.settings.model
        timeout = self.settings.timeout_seconds
        if document is not None and len(document) > self.settings.large_document_bytes:
            timeout = self.settings.large_document_timeout_seconds

        content: list[dict[str, Any]] = []
        if document is not None:
            content.append(
                {
                    "type": "document",
                    "source": {
                        "type": "base64",
                        "media_type": "application/pdf",
                        "data": base64.b64encode(document).decode("ascii"),
                    },
                }
            )
        instruction: dict[str, Any] = {"type": "text", "text": prompt}
        if self.settings.use_prompt_cache:
            instruction["cache_control"] = {"type": "ephemeral"}
        content.append(instruction)

        request = {
            "model": model,
            "max_tokens": max_tokens or self.settings.max_tokens,
            "temperature": self.settings.temperature,
            "messages": [{"role": "user", "content": content}],
            "timeout": timeout,
        }
        if system:
            request["system"] = system

        classify = provider_error_classifier(
            rate_limit_base_delay=self.settings.rate_limit_base_delay_seconds,
            timeout_retry_delay=self.settings.timeout_retry_delay_seconds,
        )
        message = await self.retry.with_retry(
            lambda: self._send(request),
            max_attempts=self.settings.max_retries,
            classify=classify,
            operation="claude.messages",
            on_retry=self._reset_client,
        )

        usage = usage_from_response(message)
        completion = LLMCompletion(
            text=text_from_response(message),
            usage=usage,
            cost=calculate_cost(usage, model),
            model=model,
            stop_reason=getattr(message, "stop_reason", None),
        )
        self.logger.info(
            "Claude call complete",
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cost=str(completion.cost),
            stop_reason=completion.stop_reason,
        )
        return completion

    async def _send(self, request: dict[str, Any]) -> Any:
        client = self._get_client()
        try:
            async with client.messages.stream(**request) as stream:
                return await stream.get_final_message()
        except anthropic.RateLimitError as e:
            raise RateLimited(
                "Claude rate limit", provider=self.provider_name, status_code=429,
                original_exception=e,
            ) from e
        except anthropic.APITimeoutError as e:
            raise ProviderTimeout(
                "Claude request timed out", provider=self.provider_name, original_exception=e
            ) from e
        except anthropic.APIStatusError as e:
            if e.status_code == 429:
                raise RateLimited(
                    "Claude rate limit", provider=self.provider_name, status_code=429,
                    original_exception=e,
                ) from e
            raise ProviderError(
                f"Claude API error: {e.message}",
                provider=self.provider_name,
                status_code=e.status_code,
                original_exception=e,
            ) from e
        except anthropic.APIConnectionError as e:
            raise ProviderError(
                f"Claude connection error: {e}", provider=self.provider_name, original_exception=e
            ) from e
        except anthropic.APIError as e:
            # e.g. APIResponseValidationError on an unexpected response body
            raise ProviderError(
                f"Claude API error: {e.message}", provider=self.provider_name, original_exception=e
            ) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class ClaudeDocumentProvider(ExtractionProvider):
    """LLM document tier: Claude reads the PDF and transcribes it to text"""

    name = "claude_document"

    def __init__(self, client: ClaudeClient, enabled: bool = True) -> None:
        super().__init__()
        self.client = client
        self.enabled = enabled

    def is_configured(self) -> bool:
        return self.enabled and self.client.settings.configured

    async def extract(self, document: RawDocument) -> TierOutput:
        pdf_bytes = self.require_pdf_bytes(document)
        completion = await self.client.complete(
            DOCUMENT_INSTRUCTION, document=pdf_bytes, system=DOCUMENT_SYSTEM_PROMPT
        )

        if not completion.text.strip():
            raise EmptyExtraction("Claude returned no text for the document", provider=self.name)
        if completion.truncated:
            self.logger.warning(
                "Document transcription hit the output limit",
                source_url=document.source_url,
                characters=len(completion.text),
            )

        return TierOutput(
            provider=self.name,
            text=completion.text,
            cost_estimate=completion.cost,
            token_usage=completion.usage,
        )
