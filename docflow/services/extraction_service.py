"""Document and chunk extraction on top of the Gemini client."""

import time
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from docflow.core.exceptions import ExtractionOutputError
from docflow.core.llm_client import GeminiExtractionClient
from docflow.prompts.logistics import DOCUMENT_CLASSIFICATION_PROMPT, build_extraction_prompt
from docflow.schemas.extraction import ChunkExtraction, ChunkPlan
from docflow.services.pdf_service import PdfService
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


def normalize_confidence(value: Any) -> float:
    """Coerce model confidence to the 0.0-1.0 scale.

    Models sometimes answer on a 0-100 scale; anything above 1 is read as a
    percentage.
    """
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence > 1.0:
        confidence = confidence / 100.0
    return max(0.0, min(1.0, confidence))


class ExtractionService:
    """Turns PDF bytes into validated ``ChunkExtraction`` objects."""

    def __init__(
        self,
        llm_client: GeminiExtractionClient,
        pdf_service: Optional[PdfService] = None,
        prompt_variant: str = "logistics",
    ):
        self.llm_client = llm_client
        self.pdf_service = pdf_service or PdfService()
        self.prompt_variant = prompt_variant

    @staticmethod
    def parse_output(raw: Dict[str, Any]) -> ChunkExtraction:
        """Validate raw model output.

        Raises:
            ExtractionOutputError: If the payload does not fit the schema
        """
        if not isinstance(raw, dict):
            raise ExtractionOutputError(f"Expected a JSON object, got {type(raw).__name__}")

        header = raw.get("invoice_header", raw.get("header_fields")) or {}
        line_items = raw.get("transport_line_items", raw.get("line_items")) or []
        if not isinstance(header, dict):
            raise ExtractionOutputError("invoice_header must be an object")
        if not isinstance(line_items, list):
            raise ExtractionOutputError("transport_line_items must be a list")

        try:
            return ChunkExtraction(
                header_fields=header,
                line_items=line_items,
                unclaimed_documents=raw.get("unclaimed_documents") or [],
                present_fields=raw.get("present_fields") or [],
                missing_fields=raw.get("missing_fields") or [],
                confidence=normalize_confidence(raw.get("confidence")),
                raw_payload=raw,
            )
        except PydanticValidationError as e:
            raise ExtractionOutputError(f"Malformed extraction output: {e}", original_error=e)

    async def extract_document(self, pdf_bytes: bytes) -> ChunkExtraction:
        """Single call over the whole document."""
        prompt = build_extraction_prompt(self.prompt_variant)
        return await self._extract(pdf_bytes, prompt)

    async def extract_chunk(
        self,
        pdf_bytes: bytes,
        chunk: ChunkPlan,
        chunk_total: int,
    ) -> ChunkExtraction:
        """Slice the chunk's pages out of the document and extract them."""
        chunk_bytes = self.pdf_service.extract_pages(pdf_bytes, chunk.page_indices)
        prompt = build_extraction_prompt(
            self.prompt_variant,
            chunk_number=chunk.chunk_index + 1,
            chunk_total=chunk_total,
            header_page_count=len(chunk.header_page_indices),
            body_first=chunk.body_start + 1,
            body_last=chunk.body_end,
        )
        LOGGER.info(
            f"Extracting chunk {chunk.chunk_index + 1}/{chunk_total}",
            extra={"body_start": chunk.body_start, "body_end": chunk.body_end}
        )
        return await self._extract(chunk_bytes, prompt)

    async def _extract(self, pdf_bytes: bytes, prompt: str) -> ChunkExtraction:
        start = time.perf_counter()
        raw = await self.llm_client.extract(pdf_bytes, prompt)
        result = self.parse_output(raw)
        result.duration_ms = int((time.perf_counter() - start) * 1000)
        return result

    async def classify(self, pdf_bytes: bytes) -> Dict[str, Any]:
        """Ask the model what kind of document this is."""
        raw = await self.llm_client.extract(pdf_bytes, DOCUMENT_CLASSIFICATION_PROMPT)
        return {
            "document_type": str(raw.get("document_type") or "unknown"),
            "confidence": normalize_confidence(raw.get("confidence")),
        }
