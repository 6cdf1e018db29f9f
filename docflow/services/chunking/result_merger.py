"""Merge per-chunk extractions into one document-level result."""

from typing import Dict, List, Sequence

from docflow.schemas.extraction import (
    MATCHED,
    ChunkExtraction,
    ChunkOutcome,
    LineItem,
    MergedExtractionResult,
)
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


def _union_in_order(target: List[str], seen: set, values: Sequence[str]) -> None:
    for value in values:
        if value not in seen:
            seen.add(value)
            target.append(value)


class ResultMerger:
    """Combines chunk outcomes.

    Only successful outcomes contribute data. The header comes from the
    first success; line items are deduplicated by ``line_id`` and their
    evidence combined. Inputs are deep-copied and never mutated.
    """

    def merge(self, outcomes: Sequence[ChunkOutcome]) -> MergedExtractionResult:
        ordered = sorted(outcomes, key=lambda outcome: outcome.chunk_index)
        successes: List[ChunkOutcome] = [o for o in ordered if o.succeeded]
        failed_count = len(ordered) - len(successes)
        was_chunked = len(ordered) > 1

        if not successes:
            LOGGER.warning(f"No successful chunks to merge out of {len(ordered)}")
            return MergedExtractionResult(
                chunk_count=len(ordered),
                failed_chunk_count=failed_count,
                was_chunked=was_chunked,
            )

        if len(successes) == 1:
            merged = self._from_single(successes[0].result)
        else:
            merged = self._from_many(successes)

        merged.chunk_count = len(ordered)
        merged.failed_chunk_count = failed_count
        merged.was_chunked = was_chunked
        LOGGER.info(
            f"Merged {len(successes)} chunk results into {len(merged.line_items)} line items",
            extra={"failed_chunks": failed_count, "confidence": merged.confidence}
        )
        return merged

    def _from_single(self, result: ChunkExtraction) -> MergedExtractionResult:
        result = result.model_copy(deep=True)
        return MergedExtractionResult(
            header_fields=result.header_fields,
            line_items=result.line_items,
            unassigned_evidence=result.unclaimed_documents,
            present_fields=result.present_fields,
            missing_fields=result.missing_fields,
            confidence=result.confidence,
        )

    def _from_many(self, successes: Sequence[ChunkOutcome]) -> MergedExtractionResult:
        first = successes[0]
        header = dict(first.result.model_copy(deep=True).header_fields)

        line_items: List[LineItem] = []
        by_line_id: Dict[str, LineItem] = {}
        unassigned: List[dict] = []
        present: List[str] = []
        missing: List[str] = []
        seen_present: set = set()
        seen_missing: set = set()
        confidence_total = 0.0

        for outcome in successes:
            result = outcome.result.model_copy(deep=True)

            if outcome is not first and result.header_fields and result.header_fields != header:
                differing = sorted(
                    key for key in set(header) | set(result.header_fields)
                    if header.get(key) != result.header_fields.get(key)
                )
                LOGGER.warning(
                    f"Chunk {outcome.chunk_index} header disagrees with chunk "
                    f"{first.chunk_index}; keeping the first",
                    extra={"fields": ",".join(differing)}
                )

            for item in result.line_items:
                if item.line_id is None or item.line_id == "":
                    line_items.append(item)
                    continue
                key = str(item.line_id)
                kept = by_line_id.get(key)
                if kept is None:
                    by_line_id[key] = item
                    line_items.append(item)
                    continue
                kept.associated_documents.extend(item.associated_documents)
                if item.match_status == MATCHED and kept.match_status != MATCHED:
                    kept.match_status = MATCHED
                    kept.match_reason = item.match_reason

            unassigned.extend(result.unclaimed_documents)
            _union_in_order(present, seen_present, result.present_fields)
            _union_in_order(missing, seen_missing, result.missing_fields)
            confidence_total += result.confidence

        return MergedExtractionResult(
            header_fields=header,
            line_items=line_items,
            unassigned_evidence=unassigned,
            present_fields=present,
            missing_fields=missing,
            confidence=confidence_total / len(successes),
        )
