"""Metrics engine: graph -> enriched graph.

enrich() is pure and total. Each metric runs in isolation; a metric that
raises is logged and replaced by a neutral default so the rest of the
enrichment still lands.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, TypeVar

from pydantic import BaseModel, Field

from .algorithms import (
    AdjacencyIndex,
    betweenness_centrality,
    closeness_centrality,
    clustering_coefficients,
    degree_centrality,
    louvain,
    modularity,
    pagerank,
)
from .constants import (
    BROKER_BETWEENNESS_THRESHOLD,
    BROKER_RISK_INCREMENT,
    CROSS_REGION_EDGE_THRESHOLD,
    CROSS_REGION_RISK_INCREMENT,
    DEFAULT_CERTAINTY,
    K_CORE_SCALE,
    LOUVAIN_RESOLUTION,
    METRIC_DECIMALS,
    MODULARITY_DECIMALS,
    NEGATIVE_EDGE_KEYWORDS,
    PAGERANK_DAMPING,
    PAGERANK_FALLBACK,
    PAGERANK_MAX_ITERATIONS,
    PAGERANK_PRECISION,
    SECURITY_DECIMALS,
    TRIAD_NODE_CAP,
)
from .models import Edge, Graph, Node, SecurityProfile

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MetricsConfig(BaseModel):
    """Tunable parameters for enrichment."""

    damping: float = Field(default=PAGERANK_DAMPING, gt=0.0, lt=1.0)
    precision: float = Field(default=PAGERANK_PRECISION, gt=0.0)
    max_iterations: int = Field(default=PAGERANK_MAX_ITERATIONS, ge=1)
    resolution: float = Field(default=LOUVAIN_RESOLUTION, gt=0.0)
    triad_node_cap: int = Field(default=TRIAD_NODE_CAP, ge=0)
    negative_keywords: tuple[str, ...] = NEGATIVE_EDGE_KEYWORDS
    broker_threshold: float = BROKER_BETWEENNESS_THRESHOLD
    cross_region_threshold: int = CROSS_REGION_EDGE_THRESHOLD


def _safely(name: str, compute: Callable[[], T], fallback: T) -> T:
    """Run one metric; log and return ``fallback`` if it raises."""
    try:
        return compute()
    except Exception as e:  # noqa: BLE001 - any metric failure degrades to its default
        logger.warning(f"Metric '{name}' failed, using default: {e}")
        return fallback


# --- Edge sign & balance ---


def classify_sign(label: str | None, keywords: tuple[str, ...] = NEGATIVE_EDGE_KEYWORDS) -> str:
    """Classify an edge label as 'negative' (conflict/rivalry) or 'positive'."""
    text = (label or "").lower()
    return "negative" if any(keyword in text for keyword in keywords) else "positive"


def process_edge_signs(edges: list[Edge], keywords: tuple[str, ...] = NEGATIVE_EDGE_KEYWORDS) -> list[Edge]:
    """Fill missing sign (from label keywords) and certainty on copies of the edges."""
    processed = []
    for edge in edges:
        processed.append(edge.model_copy(update={
            "sign": edge.sign or classify_sign(edge.label, keywords),
            "certainty": edge.certainty or DEFAULT_CERTAINTY,
        }))
    return processed


def triadic_balance(
    node_ids: list[str],
    edges: list[Edge],
    node_cap: int = TRIAD_NODE_CAP,
) -> tuple[float, dict[tuple[str, str], bool]]:
    """Fraction of balanced triangles among the first ``node_cap`` nodes.

    Signs are read on the undirected projection (+1 positive, -1 negative;
    when both directions exist the later edge wins). A triangle is balanced
    iff the product of its three signs is positive.

    Enumeration is cubic, so only the first ``node_cap`` nodes in input
    order take part; on larger graphs the result is an approximation.

    Returns:
        (global_balance, {unordered pair: in no unbalanced triangle})
        global_balance is 1.0 when no triangle exists.
    """
    signs: dict[str, dict[str, int]] = {}
    for edge in edges:
        value = -1 if edge.sign == "negative" else 1
        signs.setdefault(edge.source, {})[edge.target] = value
        signs.setdefault(edge.target, {})[edge.source] = value

    limit = min(len(node_ids), node_cap)
    candidates = node_ids[:limit]
    total = 0
    balanced = 0
    pair_balance: dict[tuple[str, str], bool] = {}

    for i in range(limit):
        u = candidates[i]
        u_signs = signs.get(u)
        if not u_signs:
            continue
        for j in range(i + 1, limit):
            v = candidates[j]
            uv = u_signs.get(v)
            if uv is None:
                continue
            v_signs = signs[v]
            for k in range(j + 1, limit):
                w = candidates[k]
                vw = v_signs.get(w)
                wu = u_signs.get(w)
                if vw is None or wu is None:
                    continue
                total += 1
                is_balanced = uv * vw * wu > 0
                if is_balanced:
                    balanced += 1
                for pair in (_pair(u, v), _pair(v, w), _pair(u, w)):
                    pair_balance[pair] = pair_balance.get(pair, True) and is_balanced

    global_balance = balanced / total if total > 0 else 1.0
    return global_balance, pair_balance


def _pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


# --- Security layer ---


def harmonic_mean(a: float, b: float) -> float:
    """Harmonic mean of two scores, 0 if either is 0."""
    if a <= 0 or b <= 0:
        return 0.0
    return 2 * a * b / (a + b)


def security_profile(
    betweenness: float,
    closeness: float,
    cross_region_edges: int,
    config: MetricsConfig,
) -> SecurityProfile:
    """Exposure/risk record for one node.

    safety = 1 - betweenness, efficiency = closeness, balance = their
    harmonic mean; risk accumulates from rule triggers, clamped to [0, 1].
    """
    safety = 1.0 - betweenness
    efficiency = closeness
    risk = 0.0
    vulnerabilities = []

    if betweenness > config.broker_threshold:
        vulnerabilities.append("Critical information broker")
        risk += BROKER_RISK_INCREMENT

    if cross_region_edges > config.cross_region_threshold:
        vulnerabilities.append("High cross-regional exposure")
        risk += CROSS_REGION_RISK_INCREMENT

    return SecurityProfile(
        efficiency=round(efficiency, SECURITY_DECIMALS),
        safety=round(safety, SECURITY_DECIMALS),
        balance=round(harmonic_mean(safety, efficiency), SECURITY_DECIMALS),
        risk=max(0.0, min(risk, 1.0)),
        vulnerabilities=vulnerabilities,
    )


def _cross_region_counts(nodes: dict[str, Node], edges: list[Edge]) -> dict[str, int]:
    """Per node, number of incident edges joining two different known regions."""
    counts: dict[str, int] = {}
    for edge in edges:
        source, target = nodes.get(edge.source), nodes.get(edge.target)
        if source is None or target is None:
            continue
        if source.has_known_region() and target.has_known_region() and source.region != target.region:
            counts[edge.source] = counts.get(edge.source, 0) + 1
            counts[edge.target] = counts.get(edge.target, 0) + 1
    return counts


# --- Enrichment ---


def _round(value: float) -> float:
    return round(value, METRIC_DECIMALS)


def communities(
    index: AdjacencyIndex,
    resolution: float = LOUVAIN_RESOLUTION,
) -> tuple[dict[str, int], float]:
    """Louvain partition and its modularity; empty partition when there are no edges."""
    if len(index) == 0 or not index.undirected_edges():
        return {}, 0.0
    partition = louvain(index, resolution=resolution)
    return partition, modularity(index, partition, resolution=resolution)


def enrich(graph: Graph, config: MetricsConfig | None = None) -> Graph:
    """Compute every structural metric and return a new, enriched graph.

    Never raises for metric failures and never mutates ``graph``. Edges
    with dangling endpoints are left out of the enriched result.

    Args:
        graph: Graph to analyse
        config: Metric parameters (defaults from constants)

    Returns:
        Fresh Graph with derived node/edge fields and meta filled
    """
    config = config or MetricsConfig()
    node_map = graph.node_map()
    nodes = list(node_map.values())

    if not nodes:
        return Graph(
            nodes=[],
            edges=[],
            meta=graph.meta.model_copy(update={"modularity": 0.0, "global_balance": 1.0, "metrics_stale": False}),
        )

    valid_edges = [e for e in graph.edges if e.source in node_map and e.target in node_map]
    if len(valid_edges) != len(graph.edges):
        logger.debug(f"Ignoring {len(graph.edges) - len(valid_edges)} dangling edges during enrichment")

    node_ids = [n.id for n in nodes]
    index = AdjacencyIndex.build(node_ids, ((e.source, e.target) for e in valid_edges))
    zeros = {node_id: 0.0 for node_id in node_ids}

    # 1. Centralities
    ranks = _safely(
        "pagerank",
        lambda: pagerank(index, config.damping, config.precision, config.max_iterations),
        {node_id: PAGERANK_FALLBACK for node_id in node_ids},
    )
    between = _safely("betweenness", lambda: betweenness_centrality(index), zeros)
    degrees = _safely("degree", lambda: degree_centrality(index), zeros)
    close = _safely("closeness", lambda: closeness_centrality(index), zeros)

    # 2. Local clustering
    clustering = _safely("clustering", lambda: clustering_coefficients(index), zeros)

    # 3. Communities
    partition, q = _safely("louvain", lambda: communities(index, config.resolution), ({}, 0.0))

    # 4. Edge signs and balance
    edges = _safely(
        "edge_signs",
        lambda: process_edge_signs(valid_edges, config.negative_keywords),
        [e.model_copy() for e in valid_edges],
    )
    global_balance, pair_balance = _safely(
        "triadic_balance",
        lambda: triadic_balance(node_ids, edges, config.triad_node_cap),
        (1.0, {}),
    )
    cross_region = _safely("cross_region", lambda: _cross_region_counts(node_map, edges), {})

    # 5. Nodes
    enriched_nodes = []
    for node in nodes:
        enriched_nodes.append(_safely(
            f"node:{node.id}",
            lambda node=node: _enrich_node(
                node, ranks, between, degrees, close, clustering, partition,
                cross_region.get(node.id, 0), config,
            ),
            node.model_copy(deep=True),
        ))

    # 6. Edge weights from endpoint PageRank
    published_rank = {n.id: n.pagerank or 0.0 for n in enriched_nodes}
    enriched_edges = []
    for edge in edges:
        weight = (published_rank.get(edge.source, 0.0) + published_rank.get(edge.target, 0.0)) / 2
        enriched_edges.append(edge.model_copy(update={
            "weight": _round(weight),
            "is_balanced": pair_balance.get(_pair(edge.source, edge.target)),
        }))

    meta = graph.meta.model_copy(update={
        "modularity": round(q, MODULARITY_DECIMALS),
        "global_balance": global_balance,
        "metrics_stale": False,
    })
    return Graph(nodes=enriched_nodes, edges=enriched_edges, meta=meta)


def _enrich_node(
    node: Node,
    ranks: dict[str, float],
    between: dict[str, float],
    degrees: dict[str, float],
    close: dict[str, float],
    clustering: dict[str, float],
    partition: dict[str, int],
    cross_region_edges: int,
    config: MetricsConfig,
) -> Node:
    degree = degrees.get(node.id, 0.0)
    rank = _round(ranks.get(node.id, PAGERANK_FALLBACK))
    betweenness = between.get(node.id, 0.0)
    closeness = close.get(node.id, 0.0)
    # Keep the previous community when Louvain did not place this node
    community = partition.get(node.id, node.louvain_community or 0)

    return node.model_copy(update={
        "degree_centrality": _round(degree),
        "pagerank": rank,
        "betweenness": _round(betweenness),
        "closeness": _round(closeness),
        "clustering": _round(clustering.get(node.id, 0.0)),
        "eigenvector": rank,
        "louvain_community": community,
        "k_core": math.floor(degree * K_CORE_SCALE),
        "security": security_profile(betweenness, closeness, cross_region_edges, config),
    })


def strip_metrics(graph: Graph) -> Graph:
    """Copy of ``graph`` with every derived field cleared and meta marked stale."""
    cleared = {
        "degree_centrality": None,
        "pagerank": None,
        "betweenness": None,
        "closeness": None,
        "clustering": None,
        "eigenvector": None,
        "k_core": None,
        "security": None,
    }
    return Graph(
        nodes=[n.model_copy(update=cleared) for n in graph.nodes],
        edges=[e.model_copy(update={"weight": None, "is_balanced": None}) for e in graph.edges],
        meta=graph.meta.model_copy(update={"metrics_stale": True}),
    )
