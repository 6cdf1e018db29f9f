"""Unit tests for ResultMerger."""

import pytest

from docflow.schemas.extraction import ChunkExtraction, ChunkOutcome, LineItem
from docflow.services.chunking.result_merger import ResultMerger


class TestResultMerger:

    @pytest.fixture
    def merger(self):
        return ResultMerger()

    def test_single_input_is_returned_unchanged(self, merger, make_outcome):
        outcome = make_outcome(0, line_ids=[1, 2], confidence=0.83, present_fields=["invoice_number"])

        merged = merger.merge([outcome])

        assert merged.header_fields == outcome.result.header_fields
        assert merged.line_items == outcome.result.line_items
        assert merged.present_fields == ["invoice_number"]
        assert merged.confidence == 0.83
        assert merged.chunk_count == 1
        assert merged.failed_chunk_count == 0
        assert merged.was_chunked is False

    def test_disjoint_line_ids_are_order_independent(self, merger, make_outcome):
        forward = merger.merge([make_outcome(0, [1, 2]), make_outcome(1, [3]), make_outcome(2, [4, 5])])
        shuffled = merger.merge([make_outcome(2, [4, 5]), make_outcome(0, [1, 2]), make_outcome(1, [3])])

        assert {item.line_id for item in forward.line_items} == {1, 2, 3, 4, 5}
        assert {item.line_id for item in shuffled.line_items} == {1, 2, 3, 4, 5}

    def test_partial_failure_averages_successes_only(self, merger, make_outcome):
        outcomes = [
            make_outcome(0, [1], confidence=0.9),
            make_outcome(1, error="APIClientError: timeout"),
            make_outcome(2, [3], confidence=0.7),
        ]

        merged = merger.merge(outcomes)

        assert merged.confidence == pytest.approx(0.8)
        assert [item.line_id for item in merged.line_items] == [1, 3]
        assert merged.chunk_count == 3
        assert merged.failed_chunk_count == 1
        assert merged.was_chunked is True

    def test_no_successes_gives_empty_result(self, merger, make_outcome):
        merged = merger.merge([make_outcome(0, error="boom"), make_outcome(1, error="boom")])

        assert merged.line_items == []
        assert merged.confidence == 0.0
        assert merged.failed_chunk_count == 2

    def test_duplicate_line_id_combines_evidence(self, merger):
        first = ChunkExtraction(
            line_items=[LineItem(
                line_id=7,
                match_status="Unmatched",
                associated_documents=[{"document_number": "CMR-1"}],
            )],
            confidence=0.8,
        )
        second = ChunkExtraction(
            line_items=[LineItem(
                line_id="7",
                match_status="Matched",
                match_reason="CMR number on page 9",
                associated_documents=[{"document_number": "CMR-2"}],
            )],
            confidence=0.8,
        )

        merged = merger.merge([ChunkOutcome.success(0, first), ChunkOutcome.success(1, second)])

        assert len(merged.line_items) == 1
        item = merged.line_items[0]
        assert [doc["document_number"] for doc in item.associated_documents] == ["CMR-1", "CMR-2"]
        assert item.match_status == "Matched"
        assert item.match_reason == "CMR number on page 9"

    def test_line_items_without_id_are_kept(self, merger):
        a = ChunkExtraction(line_items=[LineItem(description="no id")], confidence=1.0)
        b = ChunkExtraction(line_items=[LineItem(description="no id")], confidence=1.0)

        merged = merger.merge([ChunkOutcome.success(0, a), ChunkOutcome.success(1, b)])

        assert len(merged.line_items) == 2

    def test_first_header_wins(self, merger, make_outcome):
        merged = merger.merge([
            make_outcome(0, [1], header={"invoice_number": "INV-1"}),
            make_outcome(1, [2], header={"invoice_number": "INV-9"}),
        ])

        assert merged.header_fields == {"invoice_number": "INV-1"}

    def test_unclaimed_documents_and_fields(self, merger, make_outcome):
        merged = merger.merge([
            make_outcome(
                0, [1],
                unclaimed_documents=[{"document_number": "X-1"}],
                present_fields=["invoice_number", "supplier"],
                missing_fields=["vat_number"],
            ),
            make_outcome(
                1, [2],
                unclaimed_documents=[{"document_number": "X-2"}],
                present_fields=["supplier", "customer"],
                missing_fields=["vat_number", "due_date"],
            ),
        ])

        assert merged.unassigned_evidence == [{"document_number": "X-1"}, {"document_number": "X-2"}]
        assert merged.present_fields == ["invoice_number", "supplier", "customer"]
        assert merged.missing_fields == ["vat_number", "due_date"]

    def test_inputs_are_not_mutated(self, merger):
        a = ChunkExtraction(line_items=[LineItem(line_id=1, associated_documents=[{"n": 1}])])
        b = ChunkExtraction(line_items=[LineItem(line_id=1, associated_documents=[{"n": 2}])])

        merger.merge([ChunkOutcome.success(0, a), ChunkOutcome.success(1, b)])

        assert a.line_items[0].associated_documents == [{"n": 1}]
        assert b.line_items[0].associated_documents == [{"n": 2}]
