"""Chunking package.

Splits documents that exceed the model's context budget into header-carrying
page-range chunks, runs extraction per chunk and merges the outcomes back
into one document-level result.
"""

from docflow.services.chunking.chunk_planner import ChunkPlanner
from docflow.services.chunking.chunk_executor import ChunkExecutor, all_chunks_failed
from docflow.services.chunking.result_merger import ResultMerger

__all__ = [
    "ChunkPlanner",
    "ChunkExecutor",
    "all_chunks_failed",
    "ResultMerger",
]
