"""
Document intake: turning scraper output into pipeline documents.

The scraper concatenates a page and its linked pages into one HTML string
with comment markers; this module splits it back into per-page batches,
finds and ranks PDF price-list links, and downloads PDFs.
"""
import re
from typing import Optional, Protocol
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx
import structlog
from bs4 import BeautifulSoup, Comment

from vehicle_catalog.exceptions import ProviderError, ProviderTimeout
from vehicle_catalog.models.domain import (
    ContentType,
    DocumentKind,
    PdfCategory,
    PdfLink,
    RawDocument,
    ScrapeResult,
)

logger = structlog.get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# ============================================================================
# HTML batches
# ============================================================================

LINKED_CONTENT_START = "<!-- LINKED CONTENT START"
LINKED_CONTENT_END = "<!-- LINKED CONTENT END -->"
CONTENT_START = "<!-- CONTENT START -->"
CONTENT_END = "<!-- CONTENT END -->"
_LINKED_PAGE = re.compile(r"<!-- LINKED PAGE \d+ START -->")
_LEGACY_LINKED_CONTENT = re.compile(r"<!-- LINKED CONTENT \(\d+ pages\) -->")
_LEGACY_LINK = re.compile(r"<!-- Link \d+: .+? -->")
_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)


def _substantial(content: str, min_chars: int) -> bool:
    return len(_COMMENT.sub("", content).strip()) > min_chars


def _page_body(section: str) -> str:
    start = section.find(CONTENT_START)
    end = section.find(CONTENT_END)
    if start != -1 and end != -1:
        return section[start + len(CONTENT_START):end].strip()

    end = section.find(LINKED_CONTENT_END)
    return (section[:end] if end != -1 else section).strip()


def split_html_batches(html: str, min_chars: int = 100) -> list[str]:
    """
    Split combined scraper HTML into one batch per linked page.

    Pages with ``min_chars`` or fewer characters outside comments are
    dropped. Returns an empty list when the HTML has no linked content.
    """
    start = html.find(LINKED_CONTENT_START)
    if start != -1:
        sections = _LINKED_PAGE.split(html[start:])[1:]
        batches = [_page_body(section) for section in sections]
        batches = [batch for batch in batches if _substantial(batch, min_chars)]
        logger.info("Linked pages found", batch_count=len(batches), format="current")
        return batches

    legacy = _LEGACY_LINKED_CONTENT.search(html)
    if legacy:
        sections = _LEGACY_LINK.split(html[legacy.end():])
        batches = [section.strip() for section in sections if _substantial(section, min_chars)]
        logger.info("Linked pages found", batch_count=len(batches), format="legacy")
        return batches

    logger.info("No linked content in scraped HTML")
    return []


_HIDDEN_TAGS = ["script", "style", "noscript"]
_BLOCK_TAGS = ["p", "div", "br", "li", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article", "table"]


def html_to_text(html: str) -> str:
    """Visible text of an HTML fragment, one block per line and one table row per line"""
    soup = BeautifulSoup(html, "html.parser")
    for node in soup.find_all(_HIDDEN_TAGS):
        node.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    for row in soup.find_all("tr"):
        cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["td", "th"])]
        row.replace_with("\n" + " | ".join(cell for cell in cells if cell) + "\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    lines = (" ".join(line.split()).strip("| ") for line in soup.get_text().splitlines())
    return "\n".join(line for line in lines if line)


def detect_content_type(source_url: str, html: str = "") -> ContentType:
    """Guess the page content type from its URL, then from its wording"""
    url = source_url.lower()
    if any(word in url for word in ("erbjudand", "kampanj", "offer", "finansiering")):
        return ContentType.CAMPAIGNS
    if "transportbilar" in url or "commercial" in url or re.search(r"\bvans?\b", url):
        return ContentType.TRANSPORT_CARS
    if any(word in url for word in ("personbilar", "modeller", "cars")):
        return ContentType.CARS

    content = html.lower()
    campaign_words = ("kampanj", "erbjudande", "rabatt", "specialpris", "begränsat", "finansiering")
    transport_words = ("transport", "commercial", "lastbil", "företag")
    if sum(word in content for word in campaign_words) > 2:
        return ContentType.CAMPAIGNS
    if sum(word in content for word in transport_words) > 1:
        return ContentType.TRANSPORT_CARS
    return ContentType.CARS


# ============================================================================
# PDF links
# ============================================================================

_BARE_PDF_URL = re.compile(r"""https?://[^\s"'<>]+\.pdf""", re.IGNORECASE)
_PAGE_COUNT_MARK = re.compile(r"_\d+s_")

PRICELIST_WORDS = ("prislista", "pricelist", "price", "prislistor", "produktfakta", "pris")
BROCHURE_WORDS = ("broschyr", "brochure", "folder", "webbversion")
SPECIFICATION_WORDS = ("spec", "tekn", "data")

CATEGORY_PRIORITY = {
    PdfCategory.PRICELIST: 0,
    PdfCategory.SPECIFICATIONS: 1,
    PdfCategory.BROCHURE: 2,
    PdfCategory.UNKNOWN: 3,
}


def categorize_pdf(url: str) -> PdfCategory:
    lowered = url.lower()
    if any(word in lowered for word in PRICELIST_WORDS):
        return PdfCategory.PRICELIST
    if any(word in lowered for word in BROCHURE_WORDS) or _PAGE_COUNT_MARK.search(lowered):
        return PdfCategory.BROCHURE
    if any(word in lowered for word in SPECIFICATION_WORDS):
        return PdfCategory.SPECIFICATIONS
    return PdfCategory.UNKNOWN


def _strip_query(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def extract_pdf_links(html: str, base_url: str) -> list[PdfLink]:
    """
    All distinct PDF links in document order.

    Query strings are dropped and relative URLs resolved against
    ``base_url``.
    """
    found: dict[str, Optional[str]] = {}

    def add(href: str, label: Optional[str] = None) -> None:
        url = _strip_query(urljoin(base_url, href.strip()))
        if not url.lower().endswith(".pdf"):
            return
        if url not in found or (label and not found[url]):
            found[url] = label

    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", href=True):
        add(anchor["href"], anchor.get_text(" ", strip=True) or None)
    for node in soup.find_all(href=True):
        add(node["href"])
    for match in _BARE_PDF_URL.finditer(html):
        add(match.group(0))

    links = [PdfLink(url=url, category=categorize_pdf(url), label=label) for url, label in found.items()]
    logger.info(
        "PDF links found",
        base_url=base_url,
        link_count=len(links),
        categories=[link.category.value for link in links],
    )
    return links


def filter_pricelist_pdfs(links: list[PdfLink]) -> list[PdfLink]:
    """Keep price lists and unknown PDFs (model sheets like "208.pdf")"""
    return [link for link in links if link.category in (PdfCategory.PRICELIST, PdfCategory.UNKNOWN)]


def prioritize_pdfs(links: list[PdfLink], limit: Optional[int] = None) -> list[PdfLink]:
    """Stable sort with price lists first; optionally capped"""
    ordered = sorted(links, key=lambda link: CATEGORY_PRIORITY[link.category])
    return ordered if limit is None else ordered[:limit]


def select_pdfs(links: list[PdfLink], limit: int = 3) -> list[PdfLink]:
    return prioritize_pdfs(filter_pricelist_pdfs(links), limit)


# ============================================================================
# Download and scraper contract
# ============================================================================


async def fetch_pdf(
    url: str,
    timeout_seconds: float = 60.0,
    client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """
    Download a PDF.

    Raises:
        ProviderTimeout: the download did not finish in time
        ProviderError: HTTP error or a response that is not a PDF
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(follow_redirects=True)
    try:
        response = await client.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout_seconds)
        response.raise_for_status()
    except httpx.TimeoutException as e:
        raise ProviderTimeout(f"PDF download timed out: {url}", provider="download", original_exception=e) from e
    except httpx.HTTPStatusError as e:
        raise ProviderError(
            f"PDF download failed: {url}",
            provider="download",
            status_code=e.response.status_code,
            original_exception=e,
        ) from e
    except httpx.HTTPError as e:
        raise ProviderError(f"PDF download failed: {url}: {e}", provider="download", original_exception=e) from e
    finally:
        if owns_client:
            await client.aclose()

    content = response.content
    if not content.startswith(b"%PDF"):
        raise ProviderError(f"Response is not a PDF: {url}", provider="download")

    logger.info("PDF downloaded", url=url, size_kb=len(content) // 1024)
    return content


def pdf_document(
    link: PdfLink,
    payload: Optional[bytes],
    index: int,
    content_type: ContentType = ContentType.CARS,
    brand_hint: Optional[str] = None,
    model_hint: Optional[str] = None,
) -> RawDocument:
    return RawDocument(
        source_url=link.url,
        kind=DocumentKind.PDF,
        payload=payload,
        index=index,
        content_type=content_type,
        brand_hint=brand_hint,
        model_hint=model_hint or link.label,
    )


class Scraper(Protocol):
    """External scraper collaborator"""

    async def scrape(self, url: str) -> ScrapeResult:
        ...
