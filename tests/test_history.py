"""Tests for the undo/redo history."""

import pytest

from conftest import make_graph
from signograph.history import HistoryManager


def test_undo_redo_round_trip():
    history = HistoryManager()
    g0 = make_graph(["a"])
    g1 = make_graph(["a", "b"])

    history.push(g0)
    restored = history.undo(g1)
    assert restored.to_dict() == g0.to_dict()
    assert history.can_redo

    again = history.redo(restored)
    assert again.to_dict() == g1.to_dict()
    assert history.can_undo
    assert not history.can_redo


def test_empty_stacks_return_none():
    history = HistoryManager()
    graph = make_graph(["a"])
    assert history.undo(graph) is None
    assert history.redo(graph) is None
    assert not history.can_undo


def test_new_push_clears_future():
    history = HistoryManager()
    history.push(make_graph(["a"]))
    history.undo(make_graph(["a", "b"]))
    assert history.future_depth == 1

    history.push(make_graph(["x"]))
    assert history.future_depth == 0
    assert not history.can_redo


def test_capacity_evicts_oldest():
    history = HistoryManager(capacity=3)
    for i in range(5):
        history.push(make_graph([f"n{i}"]))
    assert len(history) == 3

    oldest = None
    current = make_graph(["now"])
    while history.can_undo:
        oldest = history.undo(current)
    assert [n.id for n in oldest.nodes] == ["n2"]


def test_snapshots_are_independent():
    history = HistoryManager()
    graph = make_graph(["a"])
    history.push(graph)
    graph.nodes[0].label = "mutated"
    assert history.undo(make_graph(["b"])).nodes[0].label == "a"


def test_invalid_capacity():
    with pytest.raises(ValueError):
        HistoryManager(capacity=0)
