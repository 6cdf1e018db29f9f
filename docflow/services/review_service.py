"""Review rules for extraction results and reviewer patches."""

from typing import Any, Dict, List

from docflow.core.exceptions import ValidationError
from docflow.schemas.extraction import MATCHED, LineItem, MergedExtractionResult
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

PATCHABLE_FIELDS = ("header_fields", "line_items", "unassigned_evidence", "present_fields", "missing_fields")


class ReviewService:
    """Decides whether a result needs a human and applies reviewer patches."""

    def __init__(self, confidence_threshold: float = 0.7):
        self.confidence_threshold = confidence_threshold

    def review_reasons(self, result: MergedExtractionResult) -> List[str]:
        """Reasons a result should be reviewed; empty when it can pass."""
        reasons = []
        if result.confidence < self.confidence_threshold:
            reasons.append(
                f"confidence {result.confidence:.2f} below threshold {self.confidence_threshold:.2f}"
            )
        if result.failed_chunk_count:
            reasons.append(f"{result.failed_chunk_count} of {result.chunk_count} chunks failed")
        if not result.line_items:
            reasons.append("no line items extracted")
        unmatched = [item for item in result.line_items if item.match_status and item.match_status != MATCHED]
        if unmatched:
            reasons.append(f"{len(unmatched)} line items unmatched")
        return reasons

    def apply_patch(self, result: MergedExtractionResult, patch: Dict[str, Any]) -> MergedExtractionResult:
        """Return a copy of ``result`` with the reviewer's corrections.

        - ``header_fields`` is merged key by key.
        - ``line_items`` entries are merged into the item with the same
          ``line_id``; entries with an unknown or missing id are appended.
        - The remaining list fields are replaced.

        Raises:
            ValidationError: On unknown patch keys
        """
        unknown = set(patch) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown patch fields: {', '.join(sorted(unknown))}")

        patched = result.model_copy(deep=True)

        if "header_fields" in patch:
            patched.header_fields = {**patched.header_fields, **(patch["header_fields"] or {})}

        if "line_items" in patch:
            by_id = {str(item.line_id): item for item in patched.line_items if item.line_id is not None}
            for change in patch["line_items"] or []:
                line_id = change.get("line_id")
                target = by_id.get(str(line_id)) if line_id is not None else None
                if target is None:
                    patched.line_items.append(LineItem.model_validate(change))
                    continue
                for key, value in change.items():
                    setattr(target, key, value)

        for field in ("unassigned_evidence", "present_fields", "missing_fields"):
            if field in patch:
                setattr(patched, field, list(patch[field] or []))

        LOGGER.info(f"Applied review patch to fields: {', '.join(sorted(patch))}")
        return patched
