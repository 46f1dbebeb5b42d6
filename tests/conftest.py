"""Shared test fixtures and helpers for signograph tests."""

import hashlib
import tempfile
from pathlib import Path

import pytest

from signograph.models import Edge, Graph, Node
from signograph.seed import Seed


# --- Helpers ---


def make_node(node_id: str, label: str | None = None, **fields) -> Node:
    """Build a node with sensible defaults for tests."""
    return Node(id=node_id, label=label or node_id, **fields)


def make_edge(source: str, target: str, label: str = "related", **fields) -> Edge:
    return Edge(id=f"e_{source}_{target}_{label}", source=source, target=target, label=label, **fields)


def make_graph(node_ids, edges=()) -> Graph:
    """Graph from node ids and (source, target[, label[, sign]]) tuples."""
    nodes = [n if isinstance(n, Node) else make_node(n) for n in node_ids]
    built = []
    for item in edges:
        if isinstance(item, Edge):
            built.append(item)
            continue
        source, target, *rest = item
        label = rest[0] if rest else "related"
        sign = rest[1] if len(rest) > 1 else None
        built.append(make_edge(source, target, label, sign=sign))
    return Graph(nodes=nodes, edges=built)


class FakeEmbedder:
    """Deterministic embedder: vectors come from a lookup table or a hash.

    Texts listed in ``failing`` get an empty vector, like a provider
    failure would produce.
    """

    def __init__(self, table: dict[str, list[float]] | None = None, failing: set[str] | None = None):
        self.table = table or {}
        self.failing = failing or set()
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> list[float]:
        if text in self.failing:
            return []
        for prefix, vector in self.table.items():
            if text.startswith(prefix):
                return vector
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 for b in digest[:8]]

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self._vector(t) for t in texts]


# --- Fixtures ---


@pytest.fixture
def temp_data_dir():
    """Provide a temporary data directory.

    Yields a Path to a temporary directory that's cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def triangle_graph():
    """Three mutually connected nodes plus a pendant node."""
    return make_graph(
        ["a", "b", "c", "d"],
        [("a", "b"), ("b", "c"), ("c", "a"), ("c", "d")],
    )


@pytest.fixture
def small_seed():
    """A tiny seed used instead of the bundled one in store tests."""
    nodes = [
        make_node("dmowski", "Roman Dmowski", type="person", dates="1864-1939", region="Warszawa", importance=1.0),
        make_node("poplawski", "Jan Popławski", type="person", dates="1854-1908", region="Warszawa", importance=0.9),
        make_node("liga", "Liga Narodowa", type="organization", dates="1893-1928", importance=1.0),
        make_node("pilsudski", "Józef Piłsudski", type="person", dates="1867-1935", region="Wilno", importance=0.95),
    ]
    edges = [
        make_edge("dmowski", "liga", "założył"),
        make_edge("poplawski", "liga", "współzałożył"),
        make_edge("dmowski", "poplawski", "współpracował"),
        make_edge("dmowski", "pilsudski", "rywalizował", sign="negative"),
    ]
    graph = Graph(nodes=nodes, edges=edges)
    graph = graph.model_copy(update={"meta": graph.meta.model_copy(update={"version": "2.0"})})
    return Seed(graph=graph, version="2.0")
