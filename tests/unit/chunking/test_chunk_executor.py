"""Unit tests for ChunkExecutor."""

import asyncio

import pytest

from docflow.core.exceptions import ConfigurationError
from docflow.schemas.extraction import ChunkExtraction, ChunkPlan
from docflow.services.chunking.chunk_executor import ChunkExecutor, all_chunks_failed


def _plans(count: int):
    return [
        ChunkPlan(chunk_index=i, header_page_indices=[0], body_start=1 + i, body_end=2 + i)
        for i in range(count)
    ]


class TestChunkExecutor:

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_the_others(self):
        async def extract(plan: ChunkPlan) -> ChunkExtraction:
            if plan.chunk_index == 1:
                raise RuntimeError("model unavailable")
            return ChunkExtraction(confidence=0.5)

        outcomes = await ChunkExecutor(extract).execute_all(_plans(3))

        assert [o.succeeded for o in outcomes] == [True, False, True]
        assert outcomes[1].error == "RuntimeError: model unavailable"
        assert not all_chunks_failed(outcomes)

    @pytest.mark.asyncio
    async def test_outcomes_are_in_chunk_order(self):
        async def extract(plan: ChunkPlan) -> ChunkExtraction:
            # Later chunks finish first
            await asyncio.sleep(0.01 * (3 - plan.chunk_index))
            return ChunkExtraction()

        outcomes = await ChunkExecutor(extract, max_concurrency=3).execute_all(_plans(3))

        assert [o.chunk_index for o in outcomes] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        running = 0
        peak = 0

        async def extract(plan: ChunkPlan) -> ChunkExtraction:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return ChunkExtraction()

        await ChunkExecutor(extract, max_concurrency=2).execute_all(_plans(5))

        assert peak == 2

    @pytest.mark.asyncio
    async def test_all_failed(self):
        async def extract(plan: ChunkPlan) -> ChunkExtraction:
            raise ValueError("bad")

        outcomes = await ChunkExecutor(extract).execute_all(_plans(2))

        assert all_chunks_failed(outcomes)

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ConfigurationError):
            ChunkExecutor(lambda plan: None, max_concurrency=0)
