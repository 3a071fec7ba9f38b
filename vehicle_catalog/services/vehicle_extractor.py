"""
Schema-driven vehicle extraction with Claude.

Tier text (PDF path) or an HTML batch is sent with a content-type specific
JSON schema. The answer goes through parse_structured (plain parse first,
repair second) and the ingestion schema before becoming domain vehicles.
Parse problems are returned as issues alongside whatever could be kept.
"""
import re
from decimal import Decimal
from typing import Optional

import structlog
from bs4 import BeautifulSoup, Comment
from pydantic import BaseModel, Field

from vehicle_catalog.exceptions import ParseFailed
from vehicle_catalog.models.domain import (
    ContentType,
    Issue,
    IssueKind,
    TokenUsage,
    Vehicle,
)
from vehicle_catalog.models.extraction_schema import ingest_payload
from vehicle_catalog.services.providers.claude import ClaudeClient
from vehicle_catalog.services.response_repair import parse_structured

logger = structlog.get_logger(__name__)

MAX_HTML_CHARS = 120_000
MAX_TEXT_CHARS = 150_000

_NOISE_TAGS = ["script", "style", "noscript", "svg"]
_SCRAPER_MARKER = re.compile(r"\s*(LINKED|CONTENT|Link)")
_BLANK_LINES = re.compile(r"\n\s*\n+")

EXTRACTION_RULES = """RULES:
- Answer with one JSON object only, no prose and no markdown
- Prices are whole kronor as numbers: "319.900:-" becomes 319900
- Use null for unknown values; never use 0 for an unknown price
- Put every financing term in an array, even when there is only one
- Merge repeated mentions of the same vehicle into one entry
- Same model with different trims: one vehicle, one vehicle_model entry per trim
- Keep descriptions under 160 characters"""

VARIANT_SCHEMA = """{
  "name": "string (exact variant name incl. engine and trim)",
  "price": number,
  "old_price": number,
  "fuel_type": "string",
  "transmission": "string",
  "financing_options": {
    "privatleasing": [{"monthly_price": number, "period_months": number, "annual_mileage": number}],
    "company_leasing": [{"monthly_price": number, "period_months": number}],
    "loan": [{"monthly_price": number, "period_months": number, "interest_rate": number}]
  },
  "equipment": ["string"],
  "thumbnail": "string"
}"""

VEHICLE_SCHEMA = """{
  "%(root)s": [{
    "title": "string (model name)",
    "brand": "string",
    "description": "string",
    "thumbnail": "string",
    "body_type": "string",
    "vehicle_model": [%(variant)s],
    "free_text": "string"
  }]
}"""

CAMPAIGN_SCHEMA = """{
  "campaigns": [{
    "title": "string (campaign title)",
    "brand": "string",
    "description": "string",
    "content": "string (full campaign text)",
    "thumbnail": "string",
    "vehicle_model": [%(variant)s],
    "campaign_start": "YYYY-MM-DD",
    "campaign_end": "YYYY-MM-DD",
    "whats_included": [{"name": "string"}]
  }]
}"""

SYSTEM_PROMPTS = {
    ContentType.CARS: "You extract vehicle models and their variants from Swedish car dealer material.",
    ContentType.TRANSPORT_CARS: "You extract vans and light commercial vehicles from Swedish dealer material.",
    ContentType.CAMPAIGNS: (
        "You extract the main campaign from a Swedish car dealer page. "
        "Secondary offers on the same page are ignored."
    ),
}


def schema_for(content_type: ContentType) -> str:
    if content_type == ContentType.CAMPAIGNS:
        return CAMPAIGN_SCHEMA % {"variant": VARIANT_SCHEMA}
    return VEHICLE_SCHEMA % {"root": content_type.value, "variant": VARIANT_SCHEMA}


def build_prompt(content: str, content_type: ContentType, source_kind: str, brand_hint: Optional[str] = None) -> str:
    hint = f"\nThe material is from a {brand_hint} dealer.\n" if brand_hint else ""
    return (
        f"Extract all {content_type.value.replace('_', ' ')} from the {source_kind} below.\n"
        f"{hint}\n{EXTRACTION_RULES}\n\nJSON STRUCTURE:\n{schema_for(content_type)}\n\n"
        f"{source_kind.upper()}:\n{content}"
    )


def clean_html(html: str) -> str:
    """Drop scripts, styles and non-marker comments before prompting"""
    soup = BeautifulSoup(html, "html.parser")
    for node in soup.find_all(_NOISE_TAGS):
        node.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        if not _SCRAPER_MARKER.match(comment):
            comment.extract()
    return _BLANK_LINES.sub("\n", str(soup)).strip()


class BatchExtraction(BaseModel):
    """Vehicles from one batch with the call's usage and any issues"""

    vehicles: list[Vehicle] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    issues: list[Issue] = Field(default_factory=list)


class VehicleExtractor:
    """
    Turn text or HTML into candidate vehicles.

    Never raises for bad model output: unrepairable answers become a
    parse_failed issue, repaired or partially recovered answers keep their
    vehicles with a low_confidence_parse issue.
    """

    def __init__(self, client: ClaudeClient) -> None:
        self.client = client
        self.logger = logger.bind(component="vehicle_extractor")

    def is_configured(self) -> bool:
        return self.client.settings.configured

    async def extract_from_text(
        self,
        text: str,
        source_url: str,
        content_type: ContentType = ContentType.CARS,
        brand_hint: Optional[str] = None,
    ) -> BatchExtraction:
        """Extract vehicles from tier text (OCR or transcribed PDF)"""
        prompt = build_prompt(text[:MAX_TEXT_CHARS], content_type, "price list text", brand_hint)
        return await self._extract(prompt, source_url, content_type)

    async def extract_from_html(
        self,
        batch_html: str,
        source_url: str,
        content_type: ContentType = ContentType.CARS,
        brand_hint: Optional[str] = None,
    ) -> BatchExtraction:
        """Extract vehicles from one scraped HTML batch"""
        html = clean_html(batch_html)[:MAX_HTML_CHARS]
        prompt = build_prompt(html, content_type, "html content", brand_hint)
        return await self._extract(prompt, source_url, content_type)

    async def _extract(
        self, prompt: str, source_url: str, content_type: ContentType
    ) -> BatchExtraction:
        completion = await self.client.complete(prompt, system=SYSTEM_PROMPTS[content_type])
        result = BatchExtraction(usage=completion.usage, cost=completion.cost)
        call_logger = self.logger.bind(source_url=source_url, content_type=content_type.value)

        if completion.truncated:
            call_logger.warning("Extraction output hit the token limit", characters=len(completion.text))

        try:
            parsed = parse_structured(completion.text)
        except ParseFailed as e:
            if not e.partial:
                call_logger.error("Extraction output unusable", error=e.message)
                result.issues.append(
                    Issue(
                        kind=IssueKind.PARSE_FAILED,
                        message=e.message,
                        source_url=source_url,
                        provider=self.client.provider_name,
                        details=e.to_dict(),
                    )
                )
                return result
            data, partial = e.recovered, True
        else:
            data, partial = parsed.data, False
            if parsed.repaired:
                result.issues.append(
                    Issue(
                        kind=IssueKind.LOW_CONFIDENCE_PARSE,
                        message="Output was truncated and repaired",
                        source_url=source_url,
                        provider=self.client.provider_name,
                        details={"partial": False},
                    )
                )

        if partial:
            result.issues.append(
                Issue(
                    kind=IssueKind.LOW_CONFIDENCE_PARSE,
                    message="Only the records before the damaged part were kept",
                    source_url=source_url,
                    provider=self.client.provider_name,
                    details={"partial": True},
                )
            )

        ingested = ingest_payload(data, content_type, source_url)
        result.vehicles = ingested.vehicles
        if ingested.rejected:
            result.issues.append(
                Issue(
                    kind=IssueKind.PARSE_FAILED,
                    message=f"{len(ingested.rejected)} extracted item(s) failed validation",
                    source_url=source_url,
                    provider=self.client.provider_name,
                    details={"rejected": ingested.rejected},
                )
            )

        call_logger.info(
            "Batch extracted",
            vehicle_count=len(result.vehicles),
            variant_count=sum(len(v.variants) for v in result.vehicles),
            issue_count=len(result.issues),
            cost=str(result.cost),
        )
        return result
