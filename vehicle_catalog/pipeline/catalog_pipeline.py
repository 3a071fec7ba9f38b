"""
End-to-end catalog pipeline for one scraped page.

HTML batches and PDF documents are processed concurrently (bounded by a
semaphore). Each unit yields indexed candidate vehicles plus issues and
attempts; results are put back in input order before the serial
reconciliation pass, so the output does not depend on completion order.
Failures are contained per unit and reported as issues.
"""
import asyncio
import re
from decimal import Decimal
from pathlib import PurePosixPath
from typing import Optional, Sequence
from urllib.parse import unquote, urlsplit

import httpx
import structlog
from pydantic import BaseModel, Field

from vehicle_catalog.config.settings import ApplicationSettings, get_settings
from vehicle_catalog.exceptions import (
    ExtractionFailed,
    ParseFailed,
    PipelineError,
    ProviderUnavailable,
    RateLimited,
)
from vehicle_catalog.logging_config import AttemptLog
from vehicle_catalog.models.domain import (
    ContentType,
    CostSummary,
    DocumentKind,
    ExtractionAttempt,
    ExtractionOutcome,
    Issue,
    IssueKind,
    RawDocument,
    ReconciliationResult,
    TokenUsage,
    Vehicle,
)
from vehicle_catalog.repositories.catalog_repository import CatalogRepository, RepositoryError
from vehicle_catalog.services.document_intake import (
    Scraper,
    detect_content_type,
    extract_pdf_links,
    fetch_pdf,
    html_to_text,
    pdf_document,
    select_pdfs,
    split_html_batches,
)
from vehicle_catalog.services.entity_correlator import EntityCorrelator
from vehicle_catalog.services.price_list_parser import parse_price_list
from vehicle_catalog.services.providers.base import ExtractionProvider
from vehicle_catalog.services.providers.claude import ClaudeClient, ClaudeDocumentProvider
from vehicle_catalog.services.providers.document_ai import (
    DocumentAIClient,
    DocumentAICustomExtractorProvider,
    DocumentAIOcrProvider,
)
from vehicle_catalog.services.providers.local_parser import LocalPdfParser
from vehicle_catalog.services.tier_selector import ExtractionTierSelector
from vehicle_catalog.services.variant_reconciler import VariantReconciler
from vehicle_catalog.services.vehicle_extractor import VehicleExtractor
from vehicle_catalog.services.vehicle_reconciler import VehicleReconciler

logger = structlog.get_logger(__name__)

_URL_WORD_SEPARATORS = re.compile(r"[-_+]+")


def issue_kind_for(error: PipelineError) -> IssueKind:
    if isinstance(error, ExtractionFailed):
        return IssueKind.EXTRACTION_FAILED
    if isinstance(error, ParseFailed):
        return IssueKind.PARSE_FAILED
    if isinstance(error, ProviderUnavailable):
        return IssueKind.PROVIDER_UNAVAILABLE
    if isinstance(error, RateLimited):
        return IssueKind.RATE_LIMITED
    return IssueKind.PROVIDER_ERROR


def title_from_url(url: str) -> str:
    """Readable fallback title from a PDF file name"""
    stem = PurePosixPath(unquote(urlsplit(url).path)).stem
    words = _URL_WORD_SEPARATORS.sub(" ", stem).split()
    return " ".join(word.capitalize() for word in words) or "Unknown model"


class UnitResult(BaseModel):
    """Output of one HTML batch or PDF document"""

    index: int
    source_url: str
    vehicles: list[Vehicle] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    attempts: list[ExtractionAttempt] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    extraction_cost: Decimal = Field(default=Decimal("0"), ge=0)


class CatalogPipeline:
    """
    Orchestrates extraction, correlation and reconciliation.

    Collaborators are injected; from_settings() wires the production tier
    chain. The pipeline owns its AttemptLog; costs are returned with each
    result and never kept between runs.
    """

    def __init__(
        self,
        settings: ApplicationSettings,
        tiers: Sequence[ExtractionProvider],
        extractor: Optional[VehicleExtractor] = None,
        correlator: Optional[EntityCorrelator] = None,
        reconciler: Optional[VehicleReconciler] = None,
        repository: Optional[CatalogRepository] = None,
        attempt_log: Optional[AttemptLog] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.pipeline_settings = settings.pipeline
        self.tiers = list(tiers)
        self.extractor = extractor
        self.correlator = correlator or EntityCorrelator()
        self.reconciler = reconciler or VehicleReconciler(
            VariantReconciler(
                threshold=self.pipeline_settings.vehicle_merge_threshold,
                iterative=self.pipeline_settings.iterative_variant_clustering,
            )
        )
        self.variant_reconciler = VariantReconciler(
            threshold=self.pipeline_settings.variant_similarity_threshold,
            iterative=self.pipeline_settings.iterative_variant_clustering,
        )
        self.repository = repository
        self.attempt_log = attempt_log or AttemptLog(settings.monitoring.attempt_log_size)
        self.tier_selector = ExtractionTierSelector(
            tier_timeout_seconds=self.pipeline_settings.tier_timeout_seconds,
            attempt_log=self.attempt_log,
        )
        self.http_client = http_client
        self._owned_clients: list = []
        self.logger = logger.bind(component="catalog_pipeline")

    @classmethod
    def from_settings(
        cls,
        settings: Optional[ApplicationSettings] = None,
        repository: Optional[CatalogRepository] = None,
    ) -> "CatalogPipeline":
        """Build the standard tier chain: custom extractor, OCR, Claude, local"""
        settings = settings or get_settings()
        document_ai = DocumentAIClient(settings.document_ai)
        claude = ClaudeClient(settings.claude)

        tiers: list[ExtractionProvider] = [
            DocumentAICustomExtractorProvider(
                document_ai, enabled=settings.pipeline.enable_custom_extractor
            ),
            DocumentAIOcrProvider(document_ai),
            ClaudeDocumentProvider(claude, enabled=settings.pipeline.enable_llm_document_tier),
            LocalPdfParser(),
        ]
        pipeline = cls(
            settings=settings,
            tiers=tiers,
            extractor=VehicleExtractor(claude),
            repository=repository,
        )
        pipeline._owned_clients = [document_ai, claude]
        return pipeline

    # ------------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------------

    async def run(
        self,
        source_url: str,
        html_batches: Sequence[str] = (),
        pdf_documents: Sequence[RawDocument] = (),
        brand_hint: Optional[str] = None,
        content_type: ContentType = ContentType.CARS,
    ) -> ReconciliationResult:
        """
        Process one page's batches and PDFs into a reconciled catalog.

        Args:
            source_url: Page the material was scraped from
            html_batches: One HTML string per linked page
            pdf_documents: PDF documents; payload may be None to download
            brand_hint: Dealer brand, used where documents do not name one
            content_type: Content type for HTML extraction

        Returns:
            Vehicles, issues, every extraction attempt and the cost summary
        """
        documents = [
            RawDocument(
                source_url=source_url,
                kind=DocumentKind.HTML,
                payload=batch,
                index=position,
                content_type=content_type,
                brand_hint=brand_hint,
            )
            for position, batch in enumerate(html_batches)
        ]
        offset = len(documents)
        for position, document in enumerate(pdf_documents):
            documents.append(
                document.model_copy(
                    update={
                        "index": offset + position,
                        "brand_hint": document.brand_hint or brand_hint,
                    }
                )
            )

        run_logger = self.logger.bind(source_url=source_url)
        run_logger.info(
            "Pipeline run started",
            html_batches=len(html_batches),
            pdf_documents=len(pdf_documents),
        )

        semaphore = asyncio.Semaphore(self.pipeline_settings.max_concurrent_documents)

        async def bounded(document: RawDocument) -> UnitResult:
            async with semaphore:
                return await self.process_document(document)

        units = await asyncio.gather(*(bounded(document) for document in documents))
        units = sorted(units, key=lambda unit: unit.index)

        result = await self._reconcile(units)
        run_logger.info(
            "Pipeline run complete",
            vehicle_count=len(result.vehicles),
            variant_count=result.variant_count,
            issue_count=len(result.issues),
            total_cost=str(result.cost.total_cost),
        )
        return result

    async def run_scrape(self, scraper: Scraper, url: str) -> ReconciliationResult:
        """Scrape a page, pick its price-list PDFs and run the pipeline"""
        scrape = await scraper.scrape(url)

        html_batches: list[str] = []
        for html in scrape.html_batches:
            # Combined scraper output holds one linked page per marker block
            html_batches.extend(
                split_html_batches(html, self.pipeline_settings.min_batch_chars) or [html]
            )
        content_type = scrape.content_type or detect_content_type(
            scrape.source_url, "\n".join(html_batches)
        )

        links = list(scrape.pdf_links)
        known = {link.url for link in links}
        for batch in scrape.html_batches:
            for link in extract_pdf_links(batch, scrape.source_url):
                if link.url not in known:
                    known.add(link.url)
                    links.append(link)

        selected = select_pdfs(links, self.pipeline_settings.max_pdfs_per_page)
        pdfs = [
            pdf_document(
                link,
                payload=None,
                index=position,
                content_type=content_type,
                brand_hint=scrape.brand_hint,
            )
            for position, link in enumerate(selected)
        ]
        return await self.run(
            scrape.source_url,
            html_batches=html_batches,
            pdf_documents=pdfs,
            brand_hint=scrape.brand_hint,
            content_type=content_type,
        )

    async def close(self) -> None:
        for tier in self.tiers:
            await tier.close()
        for client in self._owned_clients:
            await client.close()

    # ------------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------------

    async def process_document(self, document: RawDocument) -> UnitResult:
        """Process one unit; failures become issues on the unit"""
        unit = UnitResult(index=document.index, source_url=document.source_url)
        try:
            if document.kind == DocumentKind.HTML:
                await self._process_html(document, unit)
            else:
                await self._process_pdf(document, unit)
        except ExtractionFailed as e:
            unit.attempts = list(e.attempts)
            unit.issues.append(self._issue_from_error(e, document))
        except PipelineError as e:
            self.logger.warning(
                "Unit failed", source_url=document.source_url, index=document.index, **e.to_dict()
            )
            unit.issues.append(self._issue_from_error(e, document))
        except Exception as e:
            self.logger.exception(
                "Unexpected error processing unit",
                source_url=document.source_url,
                index=document.index,
                error=str(e),
            )
            unit.issues.append(
                Issue(
                    kind=IssueKind.PROVIDER_ERROR,
                    message=f"Unexpected error: {e}",
                    source_url=document.source_url,
                    details={"index": document.index, "error_type": type(e).__name__},
                )
            )
        return unit

    async def _process_html(self, document: RawDocument, unit: UnitResult) -> None:
        if self.extractor is None or not self.extractor.is_configured():
            unit.issues.append(
                Issue(
                    kind=IssueKind.PROVIDER_UNAVAILABLE,
                    message="No LLM configured; HTML batch skipped",
                    source_url=document.source_url,
                    details={"index": document.index, "characters": len(html_to_text(str(document.payload or "")))},
                )
            )
            return

        batch = await self.extractor.extract_from_html(
            str(document.payload or ""),
            document.source_url,
            document.content_type,
            brand_hint=document.brand_hint,
        )
        unit.vehicles = [self._with_defaults(v, document) for v in batch.vehicles]
        unit.issues.extend(batch.issues)
        unit.usage = batch.usage
        unit.extraction_cost = batch.cost

    async def _process_pdf(self, document: RawDocument, unit: UnitResult) -> None:
        if document.payload is None:
            payload = await fetch_pdf(
                document.source_url,
                timeout_seconds=self.settings.document_ai.download_timeout_seconds,
                client=self.http_client,
            )
            document = document.model_copy(update={"payload": payload})

        outcome = await self.tier_selector.extract(document, self.tiers)
        unit.attempts = list(outcome.attempts)

        if outcome.degraded:
            unit.issues.append(
                Issue(
                    kind=IssueKind.EXTRACTION_DEGRADED,
                    message=f"Higher tiers were rate limited; used {outcome.provider}",
                    source_url=document.source_url,
                    provider=outcome.provider,
                    details={
                        "rate_limited": [a.provider for a in outcome.attempts if a.rate_limited]
                    },
                )
            )

        if outcome.output.has_entities:
            self._vehicles_from_entities(document, outcome, unit)
        else:
            await self._vehicles_from_text(document, outcome.output.text or "", outcome.provider, unit)

    def _vehicles_from_entities(
        self, document: RawDocument, outcome: ExtractionOutcome, unit: UnitResult
    ) -> None:
        correlation = self.correlator.correlate(outcome.output.entities, document.source_url)
        unit.issues.extend(correlation.issues)
        if not correlation.variants:
            return

        title = correlation.model_name or document.model_hint or title_from_url(document.source_url)
        unit.vehicles.append(
            Vehicle(
                brand=correlation.brand or document.brand_hint or "",
                title=title,
                source_url=document.source_url,
                variants=correlation.variants,
            )
        )

    async def _vehicles_from_text(
        self, document: RawDocument, text: str, provider: str, unit: UnitResult
    ) -> None:
        if self.extractor is not None and self.extractor.is_configured():
            batch = await self.extractor.extract_from_text(
                text, document.source_url, document.content_type, brand_hint=document.brand_hint
            )
            unit.vehicles = [self._with_defaults(v, document) for v in batch.vehicles]
            unit.issues.extend(batch.issues)
            unit.usage = batch.usage
            unit.extraction_cost = batch.cost
            return

        title = document.model_hint or title_from_url(document.source_url)
        variants = parse_price_list(text, title)
        if not variants:
            unit.issues.append(
                Issue(
                    kind=IssueKind.PARSE_FAILED,
                    message="No prices recognised in extracted text",
                    source_url=document.source_url,
                    provider=provider,
                    details={"partial": False, "characters": len(text)},
                )
            )
            return

        unit.issues.append(
            Issue(
                kind=IssueKind.LOW_CONFIDENCE_PARSE,
                message="Variants read with price-list heuristics",
                source_url=document.source_url,
                provider=provider,
                details={"variant_count": len(variants)},
            )
        )
        unit.vehicles.append(
            Vehicle(
                brand=document.brand_hint or "",
                title=title,
                source_url=document.source_url,
                variants=variants,
            )
        )

    @staticmethod
    def _with_defaults(vehicle: Vehicle, document: RawDocument) -> Vehicle:
        update = {}
        if not vehicle.brand and document.brand_hint:
            update["brand"] = document.brand_hint
        if not vehicle.source_url:
            update["source_url"] = document.source_url
        return vehicle.model_copy(update=update) if update else vehicle

    @staticmethod
    def _issue_from_error(error: PipelineError, document: RawDocument) -> Issue:
        return Issue(
            kind=issue_kind_for(error),
            message=error.message,
            source_url=document.source_url,
            provider=error.details.get("provider"),
            details=error.to_dict(),
        )

    # ------------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------------

    async def _reconcile(self, units: list[UnitResult]) -> ReconciliationResult:
        candidates: list[Vehicle] = []
        issues: list[Issue] = []
        attempts: list[ExtractionAttempt] = []
        usage = TokenUsage()
        extraction_cost = Decimal("0")

        for unit in units:
            candidates.extend(
                vehicle.model_copy(
                    update={"variants": self.variant_reconciler.deduplicate(vehicle.variants)}
                )
                for vehicle in unit.vehicles
            )
            issues.extend(unit.issues)
            attempts.extend(unit.attempts)
            usage = usage + unit.usage
            extraction_cost += unit.extraction_cost

        vehicles = self.reconciler.reconcile(candidates)

        if self.repository is not None:
            try:
                await self.repository.upsert_many(vehicles)
            except RepositoryError as e:
                self.logger.error("Catalog write failed", **e.to_dict())
                issues.append(
                    Issue(kind=IssueKind.PROVIDER_ERROR, message=e.message, details=e.to_dict())
                )

        cost = CostSummary.from_attempts(attempts, usage)
        cost = cost.model_copy(update={"total_cost": cost.total_cost + extraction_cost})

        return ReconciliationResult(
            vehicles=vehicles, issues=issues, attempts=attempts, cost=cost
        )
