import asyncio
from typing import Awaitable, Callable, List, Sequence

from docflow.core.exceptions import ConfigurationError
from docflow.schemas.extraction import ChunkExtraction, ChunkOutcome, ChunkPlan
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

ExtractFn = Callable[[ChunkPlan], Awaitable[ChunkExtraction]]


def all_chunks_failed(outcomes: Sequence[ChunkOutcome]) -> bool:
    """True when there is nothing to merge."""
    return not any(outcome.succeeded for outcome in outcomes)


class ChunkExecutor:
    """Runs extraction over each chunk with bounded concurrency.

    A failing chunk becomes a failure outcome; the other chunks still run.
    """

    def __init__(self, extract_fn: ExtractFn, max_concurrency: int = 1):
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        self.extract_fn = extract_fn
        self.max_concurrency = max_concurrency

    async def _run_one(self, chunk: ChunkPlan, semaphore: asyncio.Semaphore) -> ChunkOutcome:
        async with semaphore:
            try:
                result = await self.extract_fn(chunk)
                return ChunkOutcome.success(chunk.chunk_index, result)
            except Exception as e:
                LOGGER.warning(
                    f"Chunk {chunk.chunk_index} failed: {e}",
                    extra={"body_start": chunk.body_start, "body_end": chunk.body_end}
                )
                return ChunkOutcome.failure(chunk.chunk_index, f"{type(e).__name__}: {e}")

    async def execute_all(self, chunks: Sequence[ChunkPlan]) -> List[ChunkOutcome]:
        """Extract every chunk; outcomes come back in chunk-index order."""
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._run_one(chunk, semaphore) for chunk in chunks)
        )
        outcomes = sorted(outcomes, key=lambda outcome: outcome.chunk_index)

        failed = sum(1 for outcome in outcomes if not outcome.succeeded)
        LOGGER.info(
            f"Executed {len(outcomes)} chunks, {failed} failed",
            extra={"max_concurrency": self.max_concurrency}
        )
        return outcomes
