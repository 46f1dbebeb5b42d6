"""Tests for lexical and semantic duplicate detection."""

import asyncio

import pytest

from conftest import FakeEmbedder, make_graph, make_node
from signograph.models import Graph, Node
from signograph.similarity import (
    SimilarityChecker,
    SimilarityConfig,
    levenshtein_distance,
    lexical_duplicates,
    lexical_similarity,
    semantic_duplicates,
)
from signograph.storage import SnapshotStore
from signograph.vectors import CachedEmbedder, SentenceTransformerEmbedder, cosine_similarity


class TestLevenshtein:
    def test_basic(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_similarity_symmetric(self):
        assert lexical_similarity("Dmowski", "Dmowskiego") == lexical_similarity("Dmowskiego", "Dmowski")

    def test_case_insensitive(self):
        assert lexical_similarity("LIGA", "liga") == 1.0

    def test_both_empty(self):
        assert lexical_similarity("", "") is None


class TestLexicalDuplicates:
    def test_kowalski_pair(self):
        graph = Graph(nodes=[
            make_node("p1", "Jan Kowalski", type="person"),
            make_node("p2", "Jan Kowalsky", type="person"),
            make_node("o1", "Jan Kowalski", type="organization"),
        ])
        candidates = lexical_duplicates(graph)
        assert len(candidates) == 1
        pair = {candidates[0].node_a.id, candidates[0].node_b.id}
        assert pair == {"p1", "p2"}
        assert candidates[0].similarity == pytest.approx(11 / 12)
        assert candidates[0].reason.startswith("String similarity")

    def test_threshold(self):
        graph = Graph(nodes=[make_node("a", "Liga Narodowa"), make_node("b", "Liga Polska")])
        assert lexical_duplicates(graph, threshold=0.99) == []

    def test_sorted_descending(self):
        graph = Graph(nodes=[
            make_node("a", "Stronnictwo Narodowe"),
            make_node("b", "Stronnictwo Narodowy"),
            make_node("c", "Stronictwo Narodowa"),
        ])
        similarities = [c.similarity for c in lexical_duplicates(graph)]
        assert similarities == sorted(similarities, reverse=True)

    def test_empty_labels_skipped(self):
        graph = Graph(nodes=[Node(id="a"), Node(id="b")])
        assert lexical_duplicates(graph) == []


class TestSemanticDuplicates:
    def test_close_vectors_match(self):
        embedder = FakeEmbedder({
            "Roman Dmowski": [1.0, 0.0, 0.0],
            "R. Dmowski": [0.99, 0.05, 0.0],
            "Józef Piłsudski": [0.0, 1.0, 0.0],
        })
        graph = Graph(nodes=[
            make_node("a", "Roman Dmowski", type="person"),
            make_node("b", "R. Dmowski", type="person"),
            make_node("c", "Józef Piłsudski", type="person"),
        ])
        candidates = asyncio.run(semantic_duplicates(graph, embedder))
        assert [(c.node_a.id, c.node_b.id) for c in candidates] == [("a", "b")]
        assert candidates[0].reason.startswith("Semantic match")

    def test_one_batch_call(self):
        embedder = FakeEmbedder()
        graph = make_graph(["a", "b", "c"])
        asyncio.run(semantic_duplicates(graph, embedder))
        assert len(embedder.calls) == 1
        assert len(embedder.calls[0]) == 3

    def test_top_n_limits_embedded_nodes(self):
        embedder = FakeEmbedder()
        graph = Graph(nodes=[make_node(f"n{i}", importance=i / 10) for i in range(6)])
        asyncio.run(semantic_duplicates(graph, embedder, top_n=2))
        assert embedder.calls[0] == ["n5: ", "n4: "]

    def test_empty_embedding_excluded(self):
        embedder = FakeEmbedder(
            {"Roman Dmowski": [1.0, 0.0], "Dmowski Roman": [1.0, 0.0]},
            failing={"Dmowski Roman: "},
        )
        graph = Graph(nodes=[make_node("a", "Roman Dmowski"), make_node("b", "Dmowski Roman")])
        assert asyncio.run(semantic_duplicates(graph, embedder)) == []

    def test_different_types_not_compared(self):
        embedder = FakeEmbedder({"X": [1.0, 0.0]})
        graph = Graph(nodes=[make_node("a", "X", type="person"), make_node("b", "X", type="event")])
        assert asyncio.run(semantic_duplicates(graph, embedder)) == []

    def test_node_order_does_not_change_result(self):
        embedder = FakeEmbedder({
            "Roman Dmowski": [1.0, 0.0, 0.2],
            "R. Dmowski": [0.99, 0.05, 0.1],
            "Dmowski": [0.95, 0.1, 0.3],
            "Józef Piłsudski": [0.0, 1.0, 0.0],
        })
        graph = Graph(nodes=[
            make_node("a", "Roman Dmowski", type="person"),
            make_node("b", "R. Dmowski", type="person"),
            make_node("c", "Dmowski", type="person"),
            make_node("d", "Józef Piłsudski", type="person"),
        ])
        reversed_graph = Graph(nodes=list(reversed(graph.nodes)))

        def scores(candidates):
            return {frozenset((c.node_a.id, c.node_b.id)): c.similarity for c in candidates}

        forward = scores(asyncio.run(semantic_duplicates(graph, embedder, threshold=0.8)))
        backward = scores(asyncio.run(semantic_duplicates(reversed_graph, embedder, threshold=0.8)))
        assert len(forward) == 3
        assert forward == backward


class TestCachedEmbedder:
    def test_repeated_text_served_from_cache(self):
        inner = FakeEmbedder()
        cached = CachedEmbedder(inner)

        async def scenario():
            await cached.embed_batch(["a", "b"])
            await cached.embed_batch(["a", "b", "c"])

        asyncio.run(scenario())
        assert inner.calls == [["a", "b"], ["c"]]
        assert cached.hits == 2
        assert cached.misses == 3
        assert len(cached) == 3

    def test_failures_not_cached(self):
        inner = FakeEmbedder(failing={"bad"})
        cached = CachedEmbedder(inner)

        async def scenario():
            first = await cached.embed("bad")
            second = await cached.embed("bad")
            return first, second

        assert asyncio.run(scenario()) == ([], [])
        assert inner.calls == [["bad"], ["bad"]]

    def test_persists_in_sqlite(self, temp_data_dir):
        import sqlite3

        conn = sqlite3.connect(str(temp_data_dir / "cache.db"), check_same_thread=False)
        inner = FakeEmbedder({"hello": [0.5, 0.25]})
        asyncio.run(CachedEmbedder(inner, conn).embed("hello"))

        fresh_inner = FakeEmbedder()
        vector = asyncio.run(CachedEmbedder(fresh_inner, conn).embed("hello"))
        conn.close()

        assert vector == pytest.approx([0.5, 0.25])
        assert fresh_inner.calls == []

    def test_sqlite_access_waits_for_connection_lock(self, temp_data_dir):
        snapshots = SnapshotStore(temp_data_dir / "signograph.db")
        cached = CachedEmbedder(FakeEmbedder(), snapshots.get_connection(), lock=snapshots.lock)

        async def scenario():
            snapshots.lock.acquire()
            try:
                task = asyncio.create_task(cached.embed("hello"))
                await asyncio.sleep(0.05)
                blocked = not task.done()
            finally:
                snapshots.lock.release()
            return blocked, await task

        blocked, vector = asyncio.run(scenario())
        snapshots.close()
        assert blocked
        assert len(vector) == 8


class TestSimilarityChecker:
    def test_semantic_without_embedder_is_empty(self):
        checker = SimilarityChecker()
        graph = make_graph(["a", "b"])
        assert asyncio.run(checker.semantic_duplicates(graph)) == []

    def test_config_threshold_used(self):
        checker = SimilarityChecker(config=SimilarityConfig(lexical_threshold=0.5))
        graph = Graph(nodes=[make_node("a", "abcd"), make_node("b", "abxy")])
        assert len(checker.lexical_duplicates(graph)) == 1


def test_cosine_similarity_zero_vector():
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)


def test_cosine_similarity_symmetric():
    a, b = [0.3, -1.2, 4.0, 0.01], [2.5, 0.7, -0.4, 9.0]
    assert cosine_similarity(a, b) == cosine_similarity(b, a)


def test_embedder_health_before_first_use():
    embedder = SentenceTransformerEmbedder("some-model")
    health = embedder.health.to_dict()
    assert health["status"] == "degraded"
    assert health["embedding_model"] is None
    assert embedder.model_name == "some-model"
