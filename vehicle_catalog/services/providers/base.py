"""
Extraction provider interface shared by every tier.
"""
from abc import ABC, abstractmethod
from decimal import Decimal

import structlog

from vehicle_catalog.exceptions import ProviderUnavailable
from vehicle_catalog.models.domain import DocumentKind, RawDocument, TierOutput

logger = structlog.get_logger(__name__)


class ExtractionProvider(ABC):
    """
    One extraction tier.

    Implementations raise ProviderError subclasses on failure and return a
    TierOutput carrying raw text, structured entities, or both.
    """

    name: str = "provider"
    unit_cost_usd: Decimal = Decimal("0")
    per_document_cost_usd: Decimal = Decimal("0")

    def __init__(self) -> None:
        self.logger = logger.bind(provider=self.name)

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials and settings allow this tier to run"""

    @abstractmethod
    async def extract(self, document: RawDocument) -> TierOutput:
        """Run the extraction for one document"""

    def estimate_cost(self, page_count: int) -> Decimal:
        """Page count times unit cost, plus any per-document fee"""
        return self.unit_cost_usd * page_count + self.per_document_cost_usd

    def require_pdf_bytes(self, document: RawDocument) -> bytes:
        if document.kind != DocumentKind.PDF or not isinstance(document.payload, bytes):
            raise ProviderUnavailable(
                "Document has no PDF bytes", provider=self.name
            )
        return document.payload

    async def close(self) -> None:
        """Release network resources, if any"""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
