"""Bounded linear undo/redo over graph snapshots."""

from __future__ import annotations

import logging
from collections import deque

from .constants import HISTORY_CAPACITY
from .models import Graph

logger = logging.getLogger(__name__)


class HistoryManager:
    """Past/future stacks of deep-copied graphs.

    push() records the graph as it was before an edit and clears the redo
    stack: a new action after an undo discards the undone branch (linear
    history, not a tree). Enrichment passes never get their own entry.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.capacity = capacity
        self._past: deque[Graph] = deque(maxlen=capacity)  # oldest evicted first
        self._future: list[Graph] = []

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    def __len__(self) -> int:
        return len(self._past)

    @property
    def future_depth(self) -> int:
        return len(self._future)

    def push(self, graph: Graph) -> None:
        """Record ``graph`` before a mutation."""
        self._past.append(graph.snapshot())
        self._future.clear()

    def undo(self, current: Graph) -> Graph | None:
        """Step back one edit.

        Returns:
            Snapshot to publish, or None if there is nothing to undo
        """
        if not self._past:
            return None
        previous = self._past.pop()
        self._future.append(current.snapshot())
        logger.debug(f"Undo: {len(self._past)} past, {len(self._future)} future")
        return previous

    def redo(self, current: Graph) -> Graph | None:
        """Re-apply the most recently undone edit.

        Returns:
            Snapshot to publish, or None if there is nothing to redo
        """
        if not self._future:
            return None
        following = self._future.pop()
        self._past.append(current.snapshot())
        logger.debug(f"Redo: {len(self._past)} past, {len(self._future)} future")
        return following

    def clear(self) -> None:
        self._past.clear()
        self._future.clear()
