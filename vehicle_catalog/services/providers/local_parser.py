"""
Local PyMuPDF text extraction, the last tier before giving up.

Works only for digital PDFs with embedded text. Scanned documents or PDFs
with unreadable embedded fonts produce almost no text and are reported as
empty so the caller sees a real failure rather than a blank success.
"""
import asyncio

import fitz  # PyMuPDF

from vehicle_catalog.exceptions import EmptyExtraction, ProviderError
from vehicle_catalog.models.domain import RawDocument, TierOutput
from vehicle_catalog.services.providers.base import ExtractionProvider

# Below this many characters a PDF larger than MIN_SCANNED_BYTES is treated as scanned
MIN_TEXT_CHARS = 200
MIN_SCANNED_BYTES = 100 * 1024
SPARSE_CHARS_PER_PAGE = 100


def extract_pdf_text(pdf_bytes: bytes) -> tuple[str, int]:
    """Plain text of every page, pages separated by blank lines"""
    with fitz.open(stream=pdf_bytes, filetype="pdf") as pdf:
        pages = [pdf[page_num].get_text() for page_num in range(pdf.page_count)]
        return "\n\n".join(page.strip() for page in pages), pdf.page_count


class LocalPdfParser(ExtractionProvider):
    """Free, offline text extraction with PyMuPDF"""

    name = "local_parser"

    def is_configured(self) -> bool:
        return True

    async def extract(self, document: RawDocument) -> TierOutput:
        pdf_bytes = self.require_pdf_bytes(document)

        try:
            text, page_count = await asyncio.to_thread(extract_pdf_text, pdf_bytes)
        except (RuntimeError, ValueError) as e:
            raise ProviderError(
                f"PyMuPDF could not open the document: {e}",
                provider=self.name,
                original_exception=e,
            ) from e

        characters = len(text.strip())
        if page_count > 1 and characters < page_count * SPARSE_CHARS_PER_PAGE:
            self.logger.warning(
                "Very little text extracted",
                source_url=document.source_url,
                page_count=page_count,
                characters=characters,
            )

        if characters == 0 or (characters < MIN_TEXT_CHARS and len(pdf_bytes) > MIN_SCANNED_BYTES):
            raise EmptyExtraction(
                f"Only {characters} characters from a {len(pdf_bytes) // 1024} KB PDF; "
                "likely scanned or using embedded fonts",
                provider=self.name,
            )

        return TierOutput(provider=self.name, text=text, page_count=page_count)
