"""Tests for patch application, merging and deletion."""

import pytest

from conftest import make_edge, make_graph, make_node
from signograph.errors import MergeError, PatchValidationError
from signograph.models import Graph, ProposedEdge, ProposedNode
from signograph.patch import (
    apply_patch,
    apply_patch_with_report,
    bulk_delete,
    merge_nodes,
    remove_node,
    update_node,
)


def assert_referential_integrity(graph: Graph) -> None:
    ids = graph.node_ids()
    for edge in graph.edges:
        assert edge.source in ids and edge.target in ids


class TestApplyPatch:
    def test_invalid_edge_is_dropped(self):
        """An edge to an unknown node is discarded, the rest is applied."""
        graph = make_graph(["A", "B"], [("A", "B")])
        result = apply_patch_with_report(graph, [], [{"source": "A", "target": "Z", "label": "zna"}])

        assert len(result.graph.edges) == 1
        assert result.report.edges_invalid == 1
        assert not result.report.changed
        assert_referential_integrity(result.graph)

    def test_new_node_gets_defaults(self):
        graph = apply_patch(Graph(), [{"id": "x", "label": "Nowy węzeł", "dates": "1918-1920"}], [])
        node = graph.get_node("x")
        assert node.type == "concept"
        assert node.importance == 0.5
        assert node.region == "Unknown"
        assert node.certainty == "confirmed"
        assert node.year == 1918
        assert node.pagerank is not None  # enriched

    def test_existing_node_is_merged_shallowly(self):
        graph = Graph(nodes=[make_node("x", "Old", description="Opis", region="Lwów", importance=0.9)])
        updated = apply_patch(graph, [{"id": "x", "label": "New"}], [], enrich_result=False)
        node = updated.get_node("x")
        assert node.label == "New"
        assert node.description == "Opis"
        assert node.region == "Lwów"
        assert node.importance == 0.9

    def test_year_rederived_only_without_explicit_year(self):
        graph = Graph(nodes=[make_node("x", dates="1900")])
        updated = apply_patch(graph, [{"id": "x", "dates": "1910-1920"}], [], enrich_result=False)
        assert updated.get_node("x").year == 1910

        updated = apply_patch(graph, [{"id": "x", "dates": "1910-1920", "year": 1915}], [], enrich_result=False)
        assert updated.get_node("x").year == 1915

    def test_node_without_id_skipped(self):
        result = apply_patch_with_report(Graph(), [{"label": "Anonim"}, {"id": "ok"}], [], enrich_result=False)
        assert [n.id for n in result.graph.nodes] == ["ok"]
        assert len(result.report.skipped) == 1
        assert isinstance(result.report.skipped[0], PatchValidationError)

    def test_derived_fields_ignored(self):
        graph = apply_patch(Graph(), [{"id": "x", "pagerank": 99.0, "kCore": 42}], [], enrich_result=False)
        node = graph.get_node("x")
        assert node.pagerank is None
        assert node.k_core is None

    def test_edge_to_node_created_in_same_patch(self):
        graph = make_graph(["A"])
        result = apply_patch_with_report(
            graph,
            [{"id": "B", "label": "B"}],
            [{"source": "A", "target": "B", "label": "zna"}],
            enrich_result=False,
        )
        assert result.report.nodes_created == ["B"]
        assert len(result.report.edges_added) == 1
        assert_referential_integrity(result.graph)

    def test_duplicate_edges_suppressed(self):
        graph = make_graph(["A", "B"], [("A", "B", "zna")])
        result = apply_patch_with_report(
            graph,
            [],
            [
                {"source": "A", "target": "B", "label": "zna"},
                {"source": "A", "target": "B", "label": "inny"},
                {"source": "A", "target": "B", "label": "inny"},
            ],
            enrich_result=False,
        )
        assert result.report.edges_duplicate == 2
        assert sorted(e.label for e in result.graph.edges) == ["inny", "zna"]

    def test_colliding_edge_id_replaced(self):
        graph = make_graph(["A", "B"], [("A", "B", "zna")])
        existing_id = graph.edges[0].id
        updated = apply_patch(
            graph, [], [{"id": existing_id, "source": "B", "target": "A", "label": "zna"}], enrich_result=False
        )
        ids = [e.id for e in updated.edges]
        assert len(ids) == len(set(ids)) == 2

    def test_accepts_proposed_models_and_aliases(self):
        graph = make_graph(["A", "B"])
        updated = apply_patch(
            graph,
            [ProposedNode(id="C", name="Cecylia", type="Person")],
            [ProposedEdge.model_validate({"from": "A", "to": "C", "relationship": "zna"})],
            enrich_result=False,
        )
        assert updated.get_node("C").label == "Cecylia"
        assert updated.get_node("C").type == "person"
        assert updated.edges[-1].label == "zna"

    def test_input_not_mutated(self):
        graph = make_graph(["A", "B"], [("A", "B")])
        before = graph.to_dict()
        apply_patch(graph, [{"id": "A", "label": "changed"}], [{"source": "B", "target": "A"}])
        assert graph.to_dict() == before


class TestMerge:
    def test_duplicate_merge_scenario(self):
        """Merging a lexical duplicate keeps every non-self-loop edge."""
        graph = Graph(
            nodes=[
                make_node("k1", "Jan Kowalski", type="person", region="Unknown", description="Krótko"),
                make_node("k2", "Jan Kowalsky", type="person", region="Poznań", description="Dłuższy opis"),
                make_node("x", "X"),
                make_node("y", "Y"),
            ],
            edges=[
                make_edge("k1", "x", "zna"),
                make_edge("k2", "y", "zna"),
                make_edge("y", "k2", "pisał"),
                make_edge("k1", "k2", "brat"),
            ],
        )
        merged = merge_nodes(graph, "k1", "k2")

        assert merged.get_node("k2") is None
        kept = merged.get_node("k1")
        assert kept.region == "Poznań"
        assert kept.description == "Dłuższy opis"
        assert len(merged.edges) == len(graph.edges) - 1
        assert {(e.source, e.target) for e in merged.edges} == {("k1", "x"), ("k1", "y"), ("y", "k1")}
        assert_referential_integrity(merged)

    def test_keep_description_when_longer(self):
        graph = Graph(nodes=[
            make_node("a", description="Bardzo długi opis"),
            make_node("b", description="Krótki"),
        ])
        merged = merge_nodes(graph, "a", "b", enrich_result=False)
        assert merged.get_node("a").description == "Bardzo długi opis"

    def test_sources_united(self):
        graph = Graph(nodes=[make_node("a", sources=["s1"]), make_node("b", sources=["s1", "s2"])])
        merged = merge_nodes(graph, "a", "b", enrich_result=False)
        assert merged.get_node("a").sources == ["s1", "s2"]

    def test_same_node_rejected(self):
        with pytest.raises(MergeError):
            merge_nodes(make_graph(["a"]), "a", "a")

    def test_missing_node_rejected(self):
        with pytest.raises(MergeError, match="not found"):
            merge_nodes(make_graph(["a"]), "a", "ghost")


class TestDelete:
    def test_bulk_delete_removes_incident_edges(self, triangle_graph):
        updated = bulk_delete(triangle_graph, ["c", "unknown"])
        assert triangle_graph.node_ids() - updated.node_ids() == {"c"}
        assert [(e.source, e.target) for e in updated.edges] == [("a", "b")]
        assert_referential_integrity(updated)

    def test_remove_node(self, triangle_graph):
        updated = remove_node(triangle_graph, "d", enrich_result=False)
        assert updated.get_node("d") is None
        assert len(updated.edges) == 3


class TestUpdateNode:
    def test_updates_fields_and_year(self):
        graph = Graph(nodes=[make_node("a", dates="1900")])
        updated = update_node(graph, "a", {"description": "Nowy", "dates": "1925-1930"}, enrich_result=False)
        node = updated.get_node("a")
        assert node.description == "Nowy"
        assert node.year == 1925

    def test_derived_field_rejected(self):
        graph = Graph(nodes=[make_node("a")])
        with pytest.raises(PatchValidationError, match="Derived"):
            update_node(graph, "a", {"pagerank": 0.9})

    def test_id_change_rejected(self):
        graph = Graph(nodes=[make_node("a")])
        with pytest.raises(PatchValidationError, match="immutable"):
            update_node(graph, "a", {"id": "b"})

    def test_missing_node_rejected(self):
        with pytest.raises(PatchValidationError, match="not found"):
            update_node(Graph(), "a", {"label": "x"})
