"""
Core domain models for the vehicle catalog reconciliation system.

All records crossing component boundaries are Pydantic models. Price-like
fields hold integers in the currency's display unit (SEK); None always
means "unknown" and is never coerced to zero.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

SpecValue = Union[str, int, float, bool]

PRICE_FIELDS = (
    "price",
    "old_price",
    "private_leasing",
    "old_private_leasing",
    "company_leasing",
    "old_company_leasing",
    "loan_price",
    "old_loan_price",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentKind(str, Enum):
    """Kinds of raw documents entering the pipeline"""

    HTML = "html"
    PDF = "pdf"


class ContentType(str, Enum):
    """Page content types the schema-driven extractor understands"""

    CAMPAIGNS = "campaigns"
    CARS = "cars"
    TRANSPORT_CARS = "transport_cars"


class ErrorKind(str, Enum):
    """Why an extraction attempt failed"""

    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    EMPTY = "empty"
    ERROR = "error"


class IssueKind(str, Enum):
    """Data-quality and provenance issues reported with a result"""

    PROVIDER_UNAVAILABLE = "provider_unavailable"
    RATE_LIMITED = "rate_limited"
    EXTRACTION_DEGRADED = "extraction_degraded"
    EXTRACTION_FAILED = "extraction_failed"
    PARSE_FAILED = "parse_failed"
    LOW_CONFIDENCE_PARSE = "low_confidence_parse"
    CORRELATION_AMBIGUOUS = "correlation_ambiguous"
    LOW_CONFIDENCE_CORRELATION = "low_confidence_correlation"
    PROVIDER_ERROR = "provider_error"


class PdfCategory(str, Enum):
    """Coarse classification of discovered PDF links"""

    PRICELIST = "pricelist"
    BROCHURE = "brochure"
    SPECIFICATIONS = "specifications"
    UNKNOWN = "unknown"


# ============================================================================
# Input documents and extraction attempts
# ============================================================================


class RawDocument(BaseModel):
    """A document produced by the scraper, consumed once by the pipeline"""

    source_url: str = Field(..., description="Page or PDF URL the payload came from")
    kind: DocumentKind
    payload: Optional[Union[bytes, str]] = Field(
        None, description="HTML text or PDF bytes; PDFs may be fetched lazily"
    )
    index: int = Field(0, ge=0, description="Position in the original scrape order")
    content_type: ContentType = ContentType.CARS
    brand_hint: Optional[str] = None
    model_hint: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def size_bytes(self) -> int:
        if self.payload is None:
            return 0
        if isinstance(self.payload, bytes):
            return len(self.payload)
        return len(self.payload.encode("utf-8"))


class ExtractionAttempt(BaseModel):
    """One try of one extraction tier; never mutated after completion"""

    provider: str
    started_at: datetime
    finished_at: datetime
    succeeded: bool
    raw_output: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cost_estimate: Decimal = Field(default=Decimal("0"), ge=0)
    page_count: int = Field(0, ge=0)
    character_count: int = Field(0, ge=0)
    retries: int = Field(0, ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def elapsed_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def rate_limited(self) -> bool:
        return self.error_kind == ErrorKind.RATE_LIMITED


class Entity(BaseModel):
    """A typed value recognized by a structured OCR extractor"""

    type: str
    text: str
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    text_position: Optional[int] = Field(None, ge=0)
    page_index: Optional[int] = Field(None, ge=0)
    bounding_box_y: Optional[float] = None
    properties: list["Entity"] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def has_position(self) -> bool:
        return self.text_position is not None


class TokenUsage(BaseModel):
    """LLM token counts for one or more calls"""

    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    cache_read_tokens: int = Field(0, ge=0)
    cache_creation_tokens: int = Field(0, ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens
            + other.cache_creation_tokens,
        )


class TierOutput(BaseModel):
    """What a provider returns: raw text, structured entities, or both"""

    provider: str
    text: Optional[str] = None
    entities: list[Entity] = Field(default_factory=list)
    page_count: int = Field(0, ge=0)
    cost_estimate: Decimal = Field(default=Decimal("0"), ge=0)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    model_config = ConfigDict(frozen=True)

    @property
    def is_empty(self) -> bool:
        return not (self.text and self.text.strip()) and not self.entities

    @property
    def has_entities(self) -> bool:
        return bool(self.entities)


class ExtractionOutcome(BaseModel):
    """Successful result of walking the tier chain for one document"""

    output: TierOutput
    attempts: list[ExtractionAttempt]

    @property
    def provider(self) -> str:
        return self.output.provider

    @property
    def degraded(self) -> bool:
        """A higher tier was rate limited before a lower tier succeeded"""
        return any(attempt.rate_limited for attempt in self.attempts)

    @property
    def total_cost(self) -> Decimal:
        return sum((a.cost_estimate for a in self.attempts), Decimal("0"))


# ============================================================================
# Catalog records
# ============================================================================


class Variant(BaseModel):
    """A purchasable trim/configuration of a vehicle model"""

    name: str = Field(..., min_length=1)
    price: Optional[int] = Field(None, gt=0)
    old_price: Optional[int] = Field(None, gt=0)
    private_leasing: Optional[int] = Field(None, gt=0)
    old_private_leasing: Optional[int] = Field(None, gt=0)
    company_leasing: Optional[int] = Field(None, gt=0)
    old_company_leasing: Optional[int] = Field(None, gt=0)
    loan_price: Optional[int] = Field(None, gt=0)
    old_loan_price: Optional[int] = Field(None, gt=0)
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    specs: dict[str, SpecValue] = Field(default_factory=dict)
    equipment: list[str] = Field(default_factory=list)
    thumbnail: Optional[str] = None

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("equipment")
    @classmethod
    def dedupe_equipment(cls, v):
        """Equipment behaves as a set; first spelling and order are kept"""
        seen: set[str] = set()
        unique = []
        for item in v:
            item = item.strip()
            key = item.lower()
            if item and key not in seen:
                seen.add(key)
                unique.append(item)
        return unique

    @field_validator("specs")
    @classmethod
    def drop_null_specs(cls, v):
        return {key: value for key, value in v.items() if value is not None}

    def populated_fields(self) -> int:
        """Count of known optional fields; used to compare completeness"""
        count = sum(1 for field in PRICE_FIELDS if getattr(self, field) is not None)
        count += sum(1 for value in (self.fuel_type, self.transmission, self.thumbnail) if value)
        return count + len(self.specs) + len(self.equipment)


class Vehicle(BaseModel):
    """A vehicle model with its ordered list of variants"""

    brand: str = Field("", description="Manufacturer, may be empty when unknown")
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    body_type: Optional[str] = None
    source_url: Optional[str] = None
    free_text: Optional[str] = None
    variants: list[Variant] = Field(default_factory=list)

    model_config = ConfigDict(str_strip_whitespace=True)


class Issue(BaseModel):
    """A contained failure or data-quality warning with its provenance"""

    kind: IssueKind
    message: str
    source_url: Optional[str] = None
    provider: Optional[str] = None
    vehicle_title: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class CorrelationResult(BaseModel):
    """Variants rebuilt from a flat entity list"""

    variants: list[Variant] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    low_confidence: bool = False
    unassigned: list[Entity] = Field(default_factory=list)
    brand: Optional[str] = None
    model_name: Optional[str] = None


class CostSummary(BaseModel):
    """Costs and usage returned by one run; never accumulated globally"""

    total_cost: Decimal = Field(default=Decimal("0"), ge=0)
    attempts_by_provider: dict[str, int] = Field(default_factory=dict)
    successes_by_provider: dict[str, int] = Field(default_factory=dict)
    page_count: int = Field(0, ge=0)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @classmethod
    def from_attempts(
        cls, attempts: list[ExtractionAttempt], token_usage: Optional[TokenUsage] = None
    ) -> "CostSummary":
        attempts_by_provider: dict[str, int] = {}
        successes_by_provider: dict[str, int] = {}
        page_count = 0
        for attempt in attempts:
            attempts_by_provider[attempt.provider] = (
                attempts_by_provider.get(attempt.provider, 0) + 1
            )
            if attempt.succeeded:
                successes_by_provider[attempt.provider] = (
                    successes_by_provider.get(attempt.provider, 0) + 1
                )
                page_count += attempt.page_count

        return cls(
            total_cost=sum((a.cost_estimate for a in attempts), Decimal("0")),
            attempts_by_provider=attempts_by_provider,
            successes_by_provider=successes_by_provider,
            page_count=page_count,
            token_usage=token_usage or TokenUsage(),
        )


class ReconciliationResult(BaseModel):
    """Externally visible output of one full run"""

    vehicles: list[Vehicle] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    attempts: list[ExtractionAttempt] = Field(default_factory=list)
    cost: CostSummary = Field(default_factory=CostSummary)

    @property
    def variant_count(self) -> int:
        return sum(len(vehicle.variants) for vehicle in self.vehicles)


# ============================================================================
# Scraper collaborator contract
# ============================================================================


class PdfLink(BaseModel):
    url: str
    category: PdfCategory = PdfCategory.UNKNOWN
    label: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ScrapeResult(BaseModel):
    """Output of the external scraper for one page"""

    source_url: str
    html_batches: list[str] = Field(default_factory=list)
    pdf_links: list[PdfLink] = Field(default_factory=list)
    # None: guessed from the URL and page wording
    content_type: Optional[ContentType] = None
    brand_hint: Optional[str] = None
