"""Tests for the graph store: hydration, mutations, history and persistence."""

import asyncio

import pytest

from conftest import FakeEmbedder, make_node
from signograph.errors import MergeError, StaleResultError, StorageError
from signograph.metrics import enrich
from signograph.models import Graph
from signograph.oracle import OracleProposal
from signograph.storage import SnapshotStore
from signograph.store import GraphStore
from signograph.worker import MetricsWorker


def run(coro):
    return asyncio.run(coro)


def make_store(path, seed, **kwargs) -> GraphStore:
    kwargs.setdefault("autosave_interval", 0)
    return GraphStore(path, seed_loader=lambda: seed, **kwargs)


class TestHydration:
    def test_first_open_uses_seed_and_saves(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                return store.graph, store.version, store.dirty

        graph, version, dirty = run(scenario())
        assert version == "2.0"
        assert {n.id for n in graph.nodes} == {"dmowski", "poplawski", "liga", "pilsudski"}
        assert all(n.pagerank is not None for n in graph.nodes)
        assert dirty is False

        stored = SnapshotStore(temp_data_dir / "signograph.db")
        snapshot = stored.load()
        stored.close()
        assert snapshot.version == "2.0"

    def test_reopen_keeps_user_changes(self, temp_data_dir, small_seed):
        async def first():
            async with make_store(temp_data_dir, small_seed) as store:
                await store.apply_patch([{"id": "nowy", "label": "Nowy"}], [])

        async def second():
            async with make_store(temp_data_dir, small_seed) as store:
                return store.graph

        run(first())
        assert run(second()).get_node("nowy") is not None

    def test_version_mismatch_rehydrates_seed(self, temp_data_dir, small_seed):
        """A snapshot saved under another version is replaced by the seed."""
        snapshots = SnapshotStore(temp_data_dir / "signograph.db")
        snapshots.save(Graph(nodes=[make_node("stale")]), version="1.0")
        snapshots.close()

        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                return store.graph, store.version

        graph, version = run(scenario())
        assert version == "2.0"
        assert graph.get_node("stale") is None
        assert graph.get_node("dmowski") is not None

    def test_bundled_seed(self, temp_data_dir):
        async def scenario():
            async with GraphStore(temp_data_dir, autosave_interval=0) as store:
                return store.stats()

        stats = run(scenario())
        assert stats["version"] == "1.3"
        assert stats["nodes"] > 20
        assert stats["modularity"] is not None


class TestMutations:
    def test_apply_patch_and_undo_redo(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                before = store.graph.to_dict()
                report = await store.apply_patch(
                    [{"id": "balicki", "label": "Zygmunt Balicki", "type": "person"}],
                    [{"source": "balicki", "target": "liga", "label": "współzałożył"}],
                )
                after = store.graph.to_dict()
                assert report.nodes_created == ["balicki"]
                assert store.can_undo

                assert await store.undo() is True
                undone = store.graph.to_dict()
                assert await store.redo() is True
                redone = store.graph.to_dict()
                return before, after, undone, redone

        before, after, undone, redone = run(scenario())
        assert undone == before
        assert redone == after

    def test_no_op_patch_not_recorded(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                report = await store.apply_patch([], [{"source": "dmowski", "target": "ghost"}])
                return report, store.can_undo

        report, can_undo = run(scenario())
        assert report.edges_invalid == 1
        assert can_undo is False

    def test_merge_and_errors(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                await store.merge_nodes("dmowski", "poplawski")
                with pytest.raises(MergeError):
                    await store.merge_nodes("dmowski", "poplawski")
                return store.graph

        graph = run(scenario())
        assert graph.get_node("poplawski") is None
        assert all(e.source != e.target for e in graph.edges)

    def test_bulk_delete_clears_selection(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                store.select(["liga", "dmowski", "nobody"])
                removed = await store.bulk_delete(["liga", "nobody"])
                nothing = await store.bulk_delete(["nobody"])
                return removed, nothing, store.ui.selected_node_ids, store.graph

        removed, nothing, selection, graph = run(scenario())
        assert removed == 1
        assert nothing == 0
        assert selection == ["dmowski"]
        assert all("liga" not in (e.source, e.target) for e in graph.edges)

    def test_apply_failed_proposal_changes_nothing(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                report = await store.apply_proposal(OracleProposal.failed("bad json"))
                return report, store.can_undo

        report, can_undo = run(scenario())
        assert not report.changed
        assert can_undo is False

    def test_concurrent_mutations_serialize(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                await asyncio.gather(*[
                    store.apply_patch([{"id": f"n{i}"}], [{"source": f"n{i}", "target": "liga"}])
                    for i in range(5)
                ])
                return store.graph, len(store.history)

        graph, depth = run(scenario())
        assert all(graph.get_node(f"n{i}") is not None for i in range(5))
        assert len(graph.edges) == 4 + 5
        assert depth == 5

    def test_failed_recompute_publishes_stale_metrics(self, temp_data_dir, small_seed, monkeypatch):
        async def boom(self, graph, generation):
            raise RuntimeError("worker died")

        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                monkeypatch.setattr(MetricsWorker, "compute", boom)
                await store.apply_patch([{"id": "nowy"}], [])
                return store.graph

        graph = run(scenario())
        assert graph.get_node("nowy") is not None
        assert graph.meta.metrics_stale is True


class TestStaleResults:
    def test_older_generation_discarded(self, small_seed):
        async def scenario():
            worker = MetricsWorker()
            old = worker.stamp()
            new = worker.stamp()
            await worker.compute(small_seed.graph, new)
            with pytest.raises(StaleResultError):
                await worker.compute(small_seed.graph, old)
            return worker.published

        assert run(scenario()) == 2

    def test_refresh_discarded_after_mutation(self, temp_data_dir, small_seed, monkeypatch):
        original = MetricsWorker.compute
        gate = asyncio.Event()
        calls = []

        async def gated(self, graph, generation):
            calls.append(generation)
            if len(calls) == 1:
                await gate.wait()
            return await original(self, graph, generation)

        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                monkeypatch.setattr(MetricsWorker, "compute", gated)
                refresh = asyncio.create_task(store.refresh_metrics())
                while not calls:
                    await asyncio.sleep(0)
                await store.apply_patch([{"id": "nowy"}], [])
                gate.set()
                published = await refresh
                return published, store.graph

        published, graph = run(scenario())
        assert published is False
        assert graph.get_node("nowy") is not None
        assert graph.meta.metrics_stale is False


class TestPersistence:
    def test_save_failure_keeps_graph(self, temp_data_dir, small_seed):
        class BrokenSnapshots(SnapshotStore):
            def save(self, graph, version=None):
                raise StorageError("disk full")

        async def scenario():
            store = make_store(temp_data_dir, small_seed, snapshots=BrokenSnapshots(temp_data_dir / "x.db"))
            await store.open()
            await store.apply_patch([{"id": "nowy"}], [])
            saved = await store.save()
            graph = store.graph
            await store.close()
            return saved, graph

        saved, graph = run(scenario())
        assert saved is False
        assert graph.get_node("nowy") is not None

    def test_autosave(self, temp_data_dir, small_seed):
        async def scenario():
            store = make_store(temp_data_dir, small_seed, autosave_interval=0.01)
            await store.open()
            # A metrics refresh publishes without scheduling its own save
            assert await store.refresh_metrics()
            assert store.dirty
            for _ in range(100):
                await asyncio.sleep(0.01)
                if not store.dirty:
                    break
            dirty = store.dirty
            await store.close()
            return dirty

        assert run(scenario()) is False

    def test_mutation_saved_without_close(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                await store.apply_patch([{"id": "nowy", "label": "Nowy"}], [])
                await store.flush()
                reader = SnapshotStore(temp_data_dir / "signograph.db")
                after_patch = reader.load()

                await store.undo()
                await store.flush()
                after_undo = reader.load()
                reader.close()
                return after_patch, after_undo, store.dirty

        after_patch, after_undo, dirty = run(scenario())
        assert after_patch.graph.get_node("nowy") is not None
        assert after_undo.graph.get_node("nowy") is None
        assert dirty is False

    def test_saves_land_in_mutation_order(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                for i in range(5):
                    await store.apply_patch([{"id": f"n{i}"}], [])
                await store.flush()
                reader = SnapshotStore(temp_data_dir / "signograph.db")
                snapshot = reader.load()
                reader.close()
                return snapshot

        snapshot = run(scenario())
        assert all(snapshot.graph.get_node(f"n{i}") is not None for i in range(5))

    def test_embedding_health_in_stats(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as default_store:
                default_stats = default_store.stats()
            async with make_store(temp_data_dir, small_seed, embedder=FakeEmbedder()) as injected:
                injected_stats = injected.stats()
            return default_stats, injected_stats

        default_stats, injected_stats = run(scenario())
        assert default_stats["embeddings"]["status"] == "degraded"
        assert injected_stats["embeddings"] is None


class TestViews:
    def test_year_filter(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                store.set_year_filter(1865)
                return store.filtered_graph

        view = run(scenario())
        assert {n.id for n in view.nodes} == {"dmowski", "poplawski"}
        assert [(e.source, e.target) for e in view.edges] == [("dmowski", "poplawski")]

    def test_min_degree_filter(self, temp_data_dir, small_seed):
        async def scenario():
            async with make_store(temp_data_dir, small_seed) as store:
                store.set_min_degree(2)
                return store.filtered_graph

        view = run(scenario())
        assert {n.id for n in view.nodes} == {"dmowski", "poplawski", "liga"}

    def test_semantic_duplicates_use_injected_embedder(self, temp_data_dir, small_seed):
        embedder = FakeEmbedder({
            "Roman Dmowski": [1.0, 0.0],
            "Jan Popławski": [0.99, 0.1],
            "Józef Piłsudski": [0.0, 1.0],
        })

        async def scenario():
            async with make_store(temp_data_dir, small_seed, embedder=embedder) as store:
                return await store.find_duplicates(semantic=True)

        candidates = run(scenario())
        assert {(c.node_a.id, c.node_b.id) for c in candidates} == {("dmowski", "poplawski")}


def test_enriched_graph_survives_round_trip(temp_data_dir, small_seed):
    """Graph read back after close matches what was published."""
    async def scenario():
        async with make_store(temp_data_dir, small_seed) as store:
            await store.apply_patch([{"id": "nowy", "label": "Nowy"}], [{"source": "nowy", "target": "liga"}])
            published = store.graph

        async with make_store(temp_data_dir, small_seed) as store:
            return published, store.graph

    published, reloaded = run(scenario())
    assert reloaded.to_dict()["nodes"] == enrich(published).to_dict()["nodes"]
