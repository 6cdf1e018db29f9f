"""Unit tests for ChunkPlanner."""

import pytest

from docflow.core.exceptions import ConfigurationError, ValidationError
from docflow.services.chunking.chunk_planner import ChunkPlanner


class TestChunkPlanner:

    @pytest.fixture
    def planner(self):
        return ChunkPlanner(safety_margin=0.8)

    def test_document_that_fits_is_not_chunked(self, planner):
        assert planner.plan(10, 3000, 1_000_000, 2) is None

    def test_exact_fit_is_not_chunked(self, planner):
        # 5 pages * 1000 tokens == 6250 * 0.8
        assert planner.plan(5, 1000, 6250, 2) is None

    def test_worked_example_body_ranges(self, planner):
        """12 pages, 2 header pages, 5 pages per call."""
        chunks = planner.plan(12, 1000, 6250, 2)

        assert [c.body_page_range for c in chunks] == [(2, 5), (5, 8), (8, 11), (11, 12)]
        assert [c.chunk_index for c in chunks] == [0, 1, 2, 3]

    def test_every_chunk_carries_all_header_pages(self, planner):
        chunks = planner.plan(12, 1000, 6250, 2)

        for chunk in chunks:
            assert chunk.header_page_indices == [0, 1]
            assert chunk.page_indices[:2] == [0, 1]

    @pytest.mark.parametrize("page_count,header_pages", [(7, 0), (12, 2), (40, 3), (101, 1)])
    def test_body_ranges_partition_the_body(self, planner, page_count, header_pages):
        chunks = planner.plan(page_count, 1000, 6250, header_pages)

        covered = []
        for chunk in chunks:
            covered.extend(range(chunk.body_start, chunk.body_end))
        assert covered == list(range(header_pages, page_count))

    def test_pages_per_chunk(self, planner):
        assert planner.pages_per_chunk(1000, 6250, 2) == 3

    def test_budget_without_room_for_body_raises(self, planner):
        with pytest.raises(ConfigurationError):
            planner.plan(20, 1000, 2500, 2)

    def test_one_body_page_per_chunk(self):
        planner = ChunkPlanner(safety_margin=0.5)
        # 2 usable pages per call, 1 header page, 3-page document
        chunks = planner.plan(3, 1000, 4000, 1)

        assert [c.body_page_range for c in chunks] == [(1, 2), (2, 3)]

    @pytest.mark.parametrize("args", [
        (0, 1000, 6250, 2),
        (5, 0, 6250, 2),
        (5, 1000, 0, 2),
        (5, 1000, 6250, -1),
    ])
    def test_invalid_inputs_raise(self, planner, args):
        with pytest.raises(ValidationError):
            planner.plan(*args)

    @pytest.mark.parametrize("margin", [0, 1, 1.5, -0.2])
    def test_invalid_safety_margin(self, margin):
        with pytest.raises(ConfigurationError):
            ChunkPlanner(safety_margin=margin)
