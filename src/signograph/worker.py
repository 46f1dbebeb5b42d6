"""Background enrichment with generation stamps.

Enrichment is CPU-bound, so it runs in a worker thread. Every request is
stamped with a monotonically increasing generation; a result that comes
back after a newer generation was already published is discarded.
"""

from __future__ import annotations

import asyncio
import logging

from .errors import StaleResultError
from .metrics import MetricsConfig, enrich
from .models import Graph

logger = logging.getLogger(__name__)


class MetricsWorker:
    """Runs enrich() off the event loop and rejects out-of-order results."""

    def __init__(self, config: MetricsConfig | None = None):
        self.config = config or MetricsConfig()
        self._issued = 0
        self._published = 0

    @property
    def latest(self) -> int:
        """Newest generation handed out."""
        return self._issued

    @property
    def published(self) -> int:
        """Generation of the graph currently published."""
        return self._published

    def stamp(self) -> int:
        """Hand out the next generation number."""
        self._issued += 1
        return self._issued

    def mark_published(self, generation: int) -> None:
        """Record that a graph of ``generation`` was published without enrichment (undo/redo)."""
        self._published = max(self._published, generation)

    def is_stale(self, generation: int) -> bool:
        return generation < self._published

    async def compute(self, graph: Graph, generation: int) -> Graph:
        """Enrich ``graph`` in a worker thread.

        Raises:
            StaleResultError: If a newer generation was published meanwhile
        """
        enriched = await asyncio.to_thread(enrich, graph.snapshot(), self.config)
        if self.is_stale(generation):
            raise StaleResultError(generation, self._published)
        self._published = generation
        return enriched
