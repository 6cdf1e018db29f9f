"""PDF page operations backed by pypdfium2."""

import io
from typing import List, Optional, Sequence

import pypdfium2 as pdfium

from docflow.core.exceptions import ValidationError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class PdfService:
    """Page counting, page-range slicing and text sampling for PDFs."""

    def _open(self, pdf_bytes: bytes) -> pdfium.PdfDocument:
        try:
            return pdfium.PdfDocument(pdf_bytes)
        except pdfium.PdfiumError as e:
            raise ValidationError(f"Unreadable PDF: {e}", original_error=e)

    def get_page_count(self, pdf_bytes: bytes) -> int:
        pdf = self._open(pdf_bytes)
        try:
            return len(pdf)
        finally:
            pdf.close()

    def extract_pages(self, pdf_bytes: bytes, page_indices: Sequence[int]) -> bytes:
        """Build a new PDF holding the given 0-based pages in the given order.

        Raises:
            ValidationError: On an unreadable PDF or out-of-range page
        """
        src = self._open(pdf_bytes)
        dest = pdfium.PdfDocument.new()
        try:
            page_count = len(src)
            for index in page_indices:
                if not 0 <= index < page_count:
                    raise ValidationError(
                        f"Page index {index} out of range for {page_count}-page document"
                    )
            dest.import_pages(src, pages=list(page_indices))
            buffer = io.BytesIO()
            dest.save(buffer)
            LOGGER.debug(f"Extracted {len(page_indices)} of {page_count} pages")
            return buffer.getvalue()
        finally:
            dest.close()
            src.close()

    def extract_text(self, pdf_bytes: bytes, max_pages: Optional[int] = None) -> List[str]:
        """Text of each page, up to ``max_pages`` pages."""
        pdf = self._open(pdf_bytes)
        texts = []
        try:
            limit = len(pdf) if max_pages is None else min(max_pages, len(pdf))
            for i in range(limit):
                page = pdf[i]
                text_page = page.get_textpage()
                try:
                    texts.append(text_page.get_text_range())
                finally:
                    text_page.close()
                    page.close()
        finally:
            pdf.close()
        return texts
