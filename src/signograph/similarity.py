"""Similarity detection for node deduplication.

Provides edit-distance (lexical) and embedding-based (semantic) scoring
to detect nodes that describe the same entity. Nodes are only compared
within the same type.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from pydantic import BaseModel, Field

from .constants import (
    LEXICAL_DUPLICATE_THRESHOLD,
    SEMANTIC_DUPLICATE_THRESHOLD,
    SEMANTIC_TOP_N,
)
from .models import DuplicateCandidate, Graph, Node
from .vectors import cosine_similarity

if TYPE_CHECKING:
    from .vectors import Embedder

logger = logging.getLogger(__name__)


class SimilarityConfig(BaseModel):
    """Thresholds and cost bounds for duplicate detection."""

    lexical_threshold: float = Field(default=LEXICAL_DUPLICATE_THRESHOLD, ge=0.0, le=1.0)
    semantic_threshold: float = Field(default=SEMANTIC_DUPLICATE_THRESHOLD, ge=-1.0, le=1.0)
    semantic_top_n: int = Field(default=SEMANTIC_TOP_N, ge=0)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance (insert/delete/substitute, unit cost).

    Examples:
        >>> levenshtein_distance("kowalski", "kowalsky")
        1
        >>> levenshtein_distance("", "")
        0
    """
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def lexical_similarity(label1: str, label2: str) -> float | None:
    """Normalized Levenshtein similarity of lowercased labels.

    (maxLen - distance) / maxLen. Returns None when both labels are empty,
    so callers skip the pair instead of dividing by zero.
    """
    s1, s2 = label1.lower(), label2.lower()
    longer = max(len(s1), len(s2))
    if longer == 0:
        return None
    return (longer - levenshtein_distance(s1, s2)) / longer


def group_by_type(nodes: list[Node]) -> dict[str, list[Node]]:
    """Group nodes by type, preserving input order within each group."""
    groups: dict[str, list[Node]] = {}
    for node in nodes:
        groups.setdefault(node.type, []).append(node)
    return groups


def _sort_candidates(candidates: list[DuplicateCandidate]) -> list[DuplicateCandidate]:
    return sorted(candidates, key=lambda c: c.similarity, reverse=True)


def lexical_duplicates(
    graph: Graph,
    threshold: float = LEXICAL_DUPLICATE_THRESHOLD,
) -> list[DuplicateCandidate]:
    """Find same-type node pairs whose labels are within edit-distance threshold.

    Args:
        graph: Graph snapshot to scan
        threshold: Minimum normalized similarity 0-1

    Returns:
        Candidates sorted by similarity, highest first
    """
    candidates = []
    for group in group_by_type(graph.nodes).values():
        for i in range(len(group)):
            for j in range(i + 1, len(group)):
                a, b = group[i], group[j]
                if a.id == b.id:
                    continue
                similarity = lexical_similarity(a.label, b.label)
                if similarity is None or similarity < threshold:
                    continue
                candidates.append(DuplicateCandidate(
                    node_a=a,
                    node_b=b,
                    similarity=similarity,
                    reason=f"String similarity: {similarity * 100:.0f}%",
                ))
    return _sort_candidates(candidates)


def embedding_text(node: Node) -> str:
    """Text embedded for a node: label plus description."""
    return f"{node.label}: {node.description or ''}"


def most_important(nodes: list[Node], top_n: int) -> list[Node]:
    """Top-N nodes by importance (stable for ties)."""
    return sorted(nodes, key=lambda n: n.importance, reverse=True)[:top_n]


async def semantic_duplicates(
    graph: Graph,
    embedder: "Embedder",
    threshold: float = SEMANTIC_DUPLICATE_THRESHOLD,
    top_n: int = SEMANTIC_TOP_N,
) -> list[DuplicateCandidate]:
    """Find same-type node pairs whose embeddings are close.

    Only the ``top_n`` most important nodes are embedded, in one batch.
    A node whose embedding came back empty (provider failure) takes no
    part in any comparison.

    Args:
        graph: Graph snapshot to scan (not mutated)
        embedder: Embedding collaborator (ideally a CachedEmbedder)
        threshold: Minimum cosine similarity
        top_n: How many nodes to embed

    Returns:
        Candidates sorted by similarity, highest first
    """
    nodes = most_important(list(graph.node_map().values()), top_n)
    if len(nodes) < 2:
        return []

    vectors = await embedder.embed_batch([embedding_text(n) for n in nodes])
    embedded = [(node, vec) for node, vec in zip(nodes, vectors) if vec]
    skipped = len(nodes) - len(embedded)
    if skipped:
        logger.debug(f"Excluded {skipped} nodes without embeddings from semantic comparison")

    candidates = []
    for i in range(len(embedded)):
        for j in range(i + 1, len(embedded)):
            (a, vec_a), (b, vec_b) = embedded[i], embedded[j]
            if a.type != b.type or a.id == b.id:
                continue
            similarity = cosine_similarity(vec_a, vec_b)
            if similarity >= threshold:
                candidates.append(DuplicateCandidate(
                    node_a=a,
                    node_b=b,
                    similarity=similarity,
                    reason=f"Semantic match: {similarity * 100:.1f}%",
                ))
    return _sort_candidates(candidates)


class SimilarityChecker:
    """Checks a graph for nodes that look like duplicates.

    Uses combination of:
    - Normalized Levenshtein distance on labels (always available)
    - Cosine similarity of label+description embeddings (optional)
    """

    def __init__(
        self,
        embedder_getter: Callable[[], "Embedder"] | None = None,
        config: SimilarityConfig | None = None,
    ):
        """Initialize checker.

        Args:
            embedder_getter: Callable that returns the Embedder (lazy loading)
            config: Thresholds (defaults from constants)
        """
        self._get_embedder = embedder_getter
        self.config = config or SimilarityConfig()

    def lexical_duplicates(self, graph: Graph, threshold: float | None = None) -> list[DuplicateCandidate]:
        if threshold is None:
            threshold = self.config.lexical_threshold
        return lexical_duplicates(graph, threshold)

    async def semantic_duplicates(self, graph: Graph, threshold: float | None = None) -> list[DuplicateCandidate]:
        """Semantic candidates, or an empty list if no embedder is configured."""
        if self._get_embedder is None:
            logger.debug("Semantic duplicate detection skipped: no embedder configured")
            return []
        if threshold is None:
            threshold = self.config.semantic_threshold
        return await semantic_duplicates(
            graph,
            self._get_embedder(),
            threshold=threshold,
            top_n=self.config.semantic_top_n,
        )
