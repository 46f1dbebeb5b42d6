"""Bundled seed graph.

The seed ships as package data (signograph/data/seed_graph.json) in the
historian-authored format: flat node/edge lists plus ``metadata.version``.
The store falls back to it when no snapshot exists or the stored
snapshot's version differs from the seed's.
"""

from __future__ import annotations

import importlib.resources
import json
import logging
from dataclasses import dataclass

from .constants import DEFAULT_GRAPH_VERSION
from .models import Edge, Graph, GraphMeta, Node

logger = logging.getLogger(__name__)

SEED_FILE = "seed_graph.json"


@dataclass
class Seed:
    graph: Graph
    version: str


def _load_seed_data() -> dict:
    """Read the raw seed JSON from package data."""
    data_file = importlib.resources.files("signograph.data").joinpath(SEED_FILE)
    with data_file.open("r", encoding="utf-8") as f:
        return json.load(f)


def build_seed(data: dict) -> Seed:
    """Turn raw seed JSON into a graph.

    Nodes with duplicate ids keep their first occurrence. Edges get ids
    ``edge_{i}_{source}_{target}``; edges whose endpoints are not seed
    nodes are dropped.
    """
    version = str((data.get("metadata") or {}).get("version") or DEFAULT_GRAPH_VERSION)

    nodes: dict[str, Node] = {}
    for raw in data.get("nodes", []):
        node = Node.model_validate(raw)
        nodes.setdefault(node.id, node)

    edges = []
    dropped = 0
    for i, raw in enumerate(data.get("edges", [])):
        source, target = raw.get("source"), raw.get("target")
        if source not in nodes or target not in nodes:
            dropped += 1
            continue
        edges.append(Edge.model_validate({**raw, "id": raw.get("id") or f"edge_{i}_{source}_{target}"}))
    if dropped:
        logger.debug(f"Dropped {dropped} seed edges with unknown endpoints")

    graph = Graph(nodes=list(nodes.values()), edges=edges, meta=GraphMeta(version=version))
    return Seed(graph=graph, version=version)


def load_seed() -> Seed:
    """Load the bundled seed graph."""
    return build_seed(_load_seed_data())
