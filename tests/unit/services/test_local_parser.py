"""
Unit tests for local PyMuPDF extraction
"""
import fitz
import pytest

from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.exceptions import EmptyExtraction, ProviderError, ProviderUnavailable
from vehicle_catalog.services.providers.local_parser import LocalPdfParser, extract_pdf_text


def make_pdf(*pages: str) -> bytes:
    pdf = fitz.open()
    for text in pages:
        page = pdf.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = pdf.tobytes()
    pdf.close()
    return data


@pytest.fixture
def parser():
    return LocalPdfParser()


class TestExtractPdfText:
    """Test page text extraction"""

    def test_pages_joined(self):
        text, page_count = extract_pdf_text(make_pdf("Peugeot 208 Active", "Allure 249 900 kr"))

        assert page_count == 2
        assert "Peugeot 208 Active" in text
        assert "\n\n" in text
        assert text.index("Active") < text.index("Allure")


class TestLocalPdfParser:
    """Test the local extraction tier"""

    def test_always_configured_and_free(self, parser):
        assert parser.is_configured() is True
        assert parser.estimate_cost(12) == 0

    @pytest.mark.asyncio
    async def test_digital_pdf(self, parser):
        document = SampleDataFactory.pdf_document(payload=make_pdf("Suzuki Swift Select 189 900 kr"))

        output = await parser.extract(document)

        assert output.provider == "local_parser"
        assert "Swift Select" in output.text
        assert output.page_count == 1
        assert output.cost_estimate == 0

    @pytest.mark.asyncio
    async def test_blank_pdf_is_empty(self, parser):
        document = SampleDataFactory.pdf_document(payload=make_pdf(""))

        with pytest.raises(EmptyExtraction):
            await parser.extract(document)

    @pytest.mark.asyncio
    async def test_unreadable_bytes(self, parser):
        document = SampleDataFactory.pdf_document(payload=b"this is not a pdf")

        with pytest.raises(ProviderError) as exc_info:
            await parser.extract(document)
        assert exc_info.value.provider == "local_parser"

    @pytest.mark.asyncio
    async def test_needs_pdf_bytes(self, parser):
        with pytest.raises(ProviderUnavailable):
            await parser.extract(SampleDataFactory.pdf_document(payload=None))
