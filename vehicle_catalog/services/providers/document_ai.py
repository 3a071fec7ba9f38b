"""
Google Document AI tiers: structured custom extractor and plain OCR.

Both tiers share one DocumentAIClient which exchanges a service-account JWT
for a short-lived bearer token (cached in an explicit TokenCache) and posts
base64 PDF payloads to a processor endpoint.
"""
import base64
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog
from google.auth import crypt, jwt

from vehicle_catalog.config.settings import DocumentAISettings
from vehicle_catalog.exceptions import (
    EmptyExtraction,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from vehicle_catalog.models.domain import Entity, RawDocument, TierOutput
from vehicle_catalog.services.providers.base import ExtractionProvider
from vehicle_catalog.services.retry import (
    Classifier,
    RetryCoordinator,
    RetryDecision,
    is_timeout_error,
    provider_error_classifier,
)
from vehicle_catalog.services.token_cache import AccessToken, TokenCache

logger = structlog.get_logger(__name__)

TOKEN_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME_SECONDS = 3600


class DocumentAIClient:
    """
    Authenticated access to Document AI processors.

    The token cache is passed in so that several clients (or tests) can share
    or isolate it explicitly.
    """

    def __init__(
        self,
        settings: DocumentAISettings,
        token_cache: Optional[TokenCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry: Optional[RetryCoordinator] = None,
    ) -> None:
        self.settings = settings
        self.token_cache = token_cache or TokenCache(
            refresh_margin_seconds=settings.token_refresh_margin_seconds
        )
        self._client = http_client
        self._owns_client = http_client is None
        self._retired_clients: list[httpx.AsyncClient] = []
        self.retry = retry or RetryCoordinator()
        self._service_account: Optional[dict[str, Any]] = None
        self.logger = logger.bind(service="document_ai")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=5, max_keepalive_connections=2)
            )
        return self._client

    def _reset_client(self, error: Exception, decision: RetryDecision) -> None:
        if self._owns_client and is_timeout_error(error) and self._client is not None:
            self.logger.info("Recreating HTTP client after timeout")
            self._retired_clients.append(self._client)
            self._client = None

    def processor_url(self, processor_id: str) -> str:
        location = self.settings.location
        return (
            f"https://{location}-documentai.googleapis.com/v1/projects/"
            f"{self.settings.project_id}/locations/{location}/processors/{processor_id}:process"
        )

    def _load_service_account(self) -> dict[str, Any]:
        if self._service_account is None:
            path = Path(self.settings.credentials_path or "")
            try:
                self._service_account = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise ProviderUnavailable(
                    f"Cannot read service account credentials at {path}",
                    provider="document_ai",
                    original_exception=e,
                ) from e
        return self._service_account

    async def _fetch_token(self) -> AccessToken:
        """Sign a service-account JWT and exchange it for a bearer token"""
        info = self._load_service_account()
        token_uri = info.get("token_uri", DEFAULT_TOKEN_URI)

        issued_at = int(time.time())
        signer = crypt.RSASigner.from_service_account_info(info)
        assertion = jwt.encode(
            signer,
            {
                "iss": info["client_email"],
                "scope": TOKEN_SCOPE,
                "aud": token_uri,
                "iat": issued_at,
                "exp": issued_at + TOKEN_LIFETIME_SECONDS,
            },
        )

        try:
            response = await self._get_client().post(
                token_uri,
                data={
                    "grant_type": JWT_BEARER_GRANT,
                    "assertion": assertion.decode("utf-8"),
                },
                timeout=30.0,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(
                "Token exchange timed out", provider="document_ai", original_exception=e
            ) from e

        if response.status_code != 200:
            raise ProviderError(
                f"Token exchange failed: {response.text[:200]}",
                provider="document_ai",
                status_code=response.status_code,
            )

        payload = response.json()
        expires_in = int(payload.get("expires_in", TOKEN_LIFETIME_SECONDS))
        return AccessToken(
            value=payload["access_token"],
            expires_at=datetime.fromtimestamp(issued_at + expires_in, tz=timezone.utc),
        )

    async def process(
        self, processor_id: str, pdf_bytes: bytes, timeout_seconds: float, provider: str
    ) -> dict[str, Any]:
        """
        Process a PDF with retries; returns the response ``document``.

        A 401 drops the cached token and is retried once with a fresh one.
        A timeout is retried once on a new connection.
        """
        return await self.retry.with_retry(
            lambda: self._process_once(processor_id, pdf_bytes, timeout_seconds, provider),
            max_attempts=self.settings.max_retries,
            classify=self._classifier(),
            operation=f"{provider}.process",
            on_retry=self._reset_client,
        )

    def _classifier(self) -> Classifier:
        standard = provider_error_classifier(
            rate_limit_base_delay=self.settings.rate_limit_base_delay_seconds,
            timeout_retry_delay=self.settings.timeout_retry_delay_seconds,
        )

        def classify(error: Exception) -> RetryDecision:
            if isinstance(error, ProviderError) and error.status_code == 401:
                return RetryDecision(retryable=True, max_retries=1, reason="unauthorized")
            return standard(error)

        return classify

    async def _process_once(
        self, processor_id: str, pdf_bytes: bytes, timeout_seconds: float, provider: str
    ) -> dict[str, Any]:
        token = await self.token_cache.get(self._fetch_token)
        body = {
            "rawDocument": {
                "content": base64.b64encode(pdf_bytes).decode("ascii"),
                "mimeType": "application/pdf",
            }
        }

        try:
            response = await self._get_client().post(
                self.processor_url(processor_id),
                json=body,
                headers={"Authorization": f"Bearer {token.value}"},
                timeout=timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(
                f"Document AI did not answer within {timeout_seconds}s",
                provider=provider,
                original_exception=e,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"Document AI request failed: {e}", provider=provider, original_exception=e
            ) from e

        status = response.status_code
        if status == 429 or (status >= 400 and "RESOURCE_EXHAUSTED" in response.text[:500]):
            raise RateLimited(
                "Document AI rate limit", provider=provider, status_code=status
            )
        if status == 401:
            self.token_cache.invalidate()
        if status >= 400:
            raise ProviderError(
                f"Document AI error: {_error_message(response)}",
                provider=provider,
                status_code=status,
            )

        return response.json().get("document", {})

    async def close(self) -> None:
        if not self._owns_client:
            return
        for client in self._retired_clients:
            await client.aclose()
        self._retired_clients = []
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text[:200])
    except ValueError:
        return response.text[:200]


# ============================================================================
# Response helpers
# ============================================================================


def anchor_text(document_text: str, layout: Optional[dict[str, Any]]) -> str:
    """Text covered by a layout's textAnchor segments"""
    if not layout:
        return ""
    segments = (layout.get("textAnchor") or {}).get("textSegments") or []
    parts = []
    for segment in segments:
        start = int(segment.get("startIndex", 0))
        end = int(segment.get("endIndex", start))
        parts.append(document_text[start:end])
    return "".join(parts)


def _cell_text(document_text: str, cell: dict[str, Any]) -> str:
    text = cell.get("text") or anchor_text(document_text, cell.get("layout"))
    return " ".join(text.split())


def format_tables(document: dict[str, Any]) -> str:
    """Render detected tables as HEADER/ROW lines for downstream extraction"""
    text = document.get("text", "")
    blocks = []

    for page in document.get("pages", []):
        for table in page.get("tables", []):
            lines = ["--- TABLE START ---"]
            for prefix, rows in (("HEADER", table.get("headerRows", [])), ("ROW", table.get("bodyRows", []))):
                for row in rows:
                    cells = [_cell_text(text, cell) for cell in row.get("cells", [])]
                    if any(cells):
                        lines.append(f"{prefix}: {' | '.join(cells)}")
            lines.append("--- TABLE END ---")
            blocks.append("\n".join(lines))

    return "\n\n".join(blocks)


def parse_entity(raw: dict[str, Any]) -> Entity:
    """Convert one Document AI entity (with nested properties) to an Entity"""
    normalized = raw.get("normalizedValue") or {}
    text = raw.get("mentionText") or normalized.get("text") or ""
    if not text and normalized.get("moneyValue"):
        text = str(normalized["moneyValue"].get("units", ""))

    segments = (raw.get("textAnchor") or {}).get("textSegments") or []
    text_position = int(segments[0].get("startIndex", 0)) if segments else None

    page_refs = (raw.get("pageAnchor") or {}).get("pageRefs") or []
    page_index = int(page_refs[0].get("page", 0)) if page_refs else None

    bounding_box_y = None
    if page_refs:
        vertices = (page_refs[0].get("boundingPoly") or {}).get("normalizedVertices") or []
        if vertices:
            bounding_box_y = vertices[0].get("y")

    return Entity(
        type=raw.get("type", ""),
        text=text,
        confidence=float(raw.get("confidence", 0.0)),
        text_position=text_position,
        page_index=page_index,
        bounding_box_y=bounding_box_y,
        properties=[parse_entity(child) for child in raw.get("properties", [])],
    )


# ============================================================================
# Tiers
# ============================================================================


class DocumentAICustomExtractorProvider(ExtractionProvider):
    """Custom extractor: returns typed entities with positions"""

    name = "document_ai_custom"

    def __init__(self, client: DocumentAIClient, enabled: bool = True) -> None:
        super().__init__()
        self.client = client
        self.enabled = enabled
        settings = client.settings
        self.unit_cost_usd = Decimal(str(settings.ocr_cost_per_page))
        self.per_document_cost_usd = Decimal(str(settings.custom_extractor_cost_per_document))

    def is_configured(self) -> bool:
        return self.enabled and self.client.settings.custom_extractor_configured

    async def extract(self, document: RawDocument) -> TierOutput:
        pdf_bytes = self.require_pdf_bytes(document)
        result = await self.client.process(
            self.client.settings.custom_extractor_processor_id,
            pdf_bytes,
            self.client.settings.custom_timeout_seconds,
            provider=self.name,
        )

        entities = [parse_entity(raw) for raw in result.get("entities", [])]
        if not entities:
            raise EmptyExtraction("Custom extractor returned no entities", provider=self.name)

        page_count = len(result.get("pages", []))
        self.logger.info(
            "Custom extraction complete",
            source_url=document.source_url,
            entity_count=len(entities),
            page_count=page_count,
        )
        return TierOutput(
            provider=self.name,
            text=result.get("text"),
            entities=entities,
            page_count=page_count,
            cost_estimate=self.estimate_cost(page_count),
        )


class DocumentAIOcrProvider(ExtractionProvider):
    """Plain OCR: document text with tables appended as structured lines"""

    name = "document_ai_ocr"

    def __init__(self, client: DocumentAIClient) -> None:
        super().__init__()
        self.client = client
        self.unit_cost_usd = Decimal(str(client.settings.ocr_cost_per_page))

    def is_configured(self) -> bool:
        return self.client.settings.ocr_configured

    async def extract(self, document: RawDocument) -> TierOutput:
        pdf_bytes = self.require_pdf_bytes(document)
        result = await self.client.process(
            self.client.settings.ocr_processor_id,
            pdf_bytes,
            self.client.settings.ocr_timeout_seconds,
            provider=self.name,
        )

        text = result.get("text", "")
        tables = format_tables(result)
        if tables:
            text = f"{text}\n\n=== STRUCTURED TABLE DATA ===\n{tables}"

        page_count = len(result.get("pages", []))
        self.logger.info(
            "OCR extraction complete",
            source_url=document.source_url,
            page_count=page_count,
            characters=len(text),
            has_tables=bool(tables),
        )
        return TierOutput(
            provider=self.name,
            text=text,
            page_count=page_count,
            cost_estimate=self.estimate_cost(page_count),
        )
