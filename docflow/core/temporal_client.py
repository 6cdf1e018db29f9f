"""Temporal client configuration and connection management.

Services and the API share one lazily created client through
``get_temporal_client``; it is handed to collaborators such as the
dispatcher rather than imported by them.
"""

import asyncio
from typing import Optional
from temporalio.client import Client as TemporalClient

from docflow.core.config import settings
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class TemporalClientManager:
    """Lazily creates a Temporal client and keeps it around for reuse."""

    def __init__(self, target_host: str, namespace: str):
        self.target_host = target_host
        self.namespace = namespace
        self._client: Optional[TemporalClient] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> TemporalClient:
        """Get or create Temporal client instance.

        Returns:
            TemporalClient: Connected Temporal client
        """
        async with self._lock:
            if self._client is None:
                LOGGER.info(f"Connecting to Temporal at {self.target_host} (namespace={self.namespace})")
                self._client = await TemporalClient.connect(
                    self.target_host,
                    namespace=self.namespace,
                )
        return self._client

    async def close(self) -> None:
        """Drop the cached client; the SDK closes connections on collection."""
        self._client = None


_temporal_manager = TemporalClientManager(
    target_host=f"{settings.temporal_host}:{settings.temporal_port}",
    namespace=settings.temporal_namespace,
)


async def get_temporal_client() -> TemporalClient:
    """Get Temporal client instance.

    Returns:
        TemporalClient: Connected Temporal client
    """
    return await _temporal_manager.get_client()


async def close_temporal_client() -> None:
    """Close Temporal client connection."""
    await _temporal_manager.close()
