"""Token-budget chunk planning.

Pages are assumed to cost a fixed number of tokens. When the whole document
does not fit in ``model_context_budget * safety_margin`` it is cut into body
page ranges, and every chunk is sent together with the leading header pages
so each call sees the document's identifying fields.
"""

import math
from typing import List, Optional

from docflow.core.exceptions import ConfigurationError, ValidationError
from docflow.schemas.extraction import ChunkPlan
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ChunkPlanner:
    """Plans header-replicating page-range chunks for oversized documents."""

    def __init__(self, safety_margin: float = 0.8):
        """Initialize chunk planner.

        Args:
            safety_margin: Fraction of the context budget a call may use
        """
        if not 0 < safety_margin < 1:
            raise ConfigurationError(f"Safety margin must be between 0 and 1, got {safety_margin}")
        self.safety_margin = safety_margin

    def pages_per_chunk(
        self,
        tokens_per_page_estimate: int,
        model_context_budget: int,
        header_page_count: int,
    ) -> int:
        """Body pages that fit in one call next to the header pages.

        Raises:
            ConfigurationError: If the budget cannot hold even one body page
        """
        usable = math.floor(model_context_budget * self.safety_margin / tokens_per_page_estimate)
        pages = usable - header_page_count
        if pages < 1:
            raise ConfigurationError(
                f"Context budget {model_context_budget} at margin {self.safety_margin} fits "
                f"{usable} pages, not enough for {header_page_count} header pages plus a body page"
            )
        return pages

    def plan(
        self,
        page_count: int,
        tokens_per_page_estimate: int,
        model_context_budget: int,
        header_page_count: int,
    ) -> Optional[List[ChunkPlan]]:
        """Plan chunks for a document.

        Args:
            page_count: Total pages in the document
            tokens_per_page_estimate: Assumed tokens per page
            model_context_budget: Model context window in tokens
            header_page_count: Leading pages replicated into every chunk

        Returns:
            None when the document fits in a single call, otherwise the
            chunks in order. Body ranges partition ``[header, page_count)``.

        Raises:
            ValidationError: On non-positive counts or budgets
            ConfigurationError: If no body page fits next to the header pages
        """
        if page_count <= 0:
            raise ValidationError(f"page_count must be positive, got {page_count}")
        if tokens_per_page_estimate <= 0:
            raise ValidationError(f"tokens_per_page_estimate must be positive, got {tokens_per_page_estimate}")
        if model_context_budget <= 0:
            raise ValidationError(f"model_context_budget must be positive, got {model_context_budget}")
        if header_page_count < 0:
            raise ValidationError(f"header_page_count cannot be negative, got {header_page_count}")

        if page_count * tokens_per_page_estimate <= model_context_budget * self.safety_margin:
            return None

        pages_per_chunk = self.pages_per_chunk(
            tokens_per_page_estimate, model_context_budget, header_page_count
        )

        header_pages = list(range(min(header_page_count, page_count)))
        body_start = len(header_pages)
        body_pages = page_count - body_start
        chunk_total = math.ceil(body_pages / pages_per_chunk)

        chunks = []
        for i in range(chunk_total):
            start = body_start + i * pages_per_chunk
            end = min(body_start + (i + 1) * pages_per_chunk, page_count)
            chunks.append(
                ChunkPlan(
                    chunk_index=i,
                    header_page_indices=list(header_pages),
                    body_start=start,
                    body_end=end,
                )
            )

        LOGGER.info(
            f"Planned {len(chunks)} chunks of up to {pages_per_chunk} body pages",
            extra={"page_count": page_count, "header_pages": len(header_pages)}
        )
        return chunks
