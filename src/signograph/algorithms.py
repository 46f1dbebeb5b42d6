"""Graph algorithms over plain adjacency maps.

Provides:
- AdjacencyIndex: successor/predecessor/undirected indices built from edges
- degree_centrality(), betweenness_centrality(), closeness_centrality()
- pagerank(): power iteration with uniform dangling redistribution
- clustering_coefficients(): local coefficient over the in/out neighbourhood
- louvain(): modularity-maximizing communities with a resolution parameter
- modularity(): partition quality on the undirected projection

All functions are pure and deterministic: iteration follows node input
order, never set or hash order.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from .constants import (
    LOUVAIN_MAX_PASSES,
    LOUVAIN_RESOLUTION,
    PAGERANK_DAMPING,
    PAGERANK_MAX_ITERATIONS,
    PAGERANK_PRECISION,
)

_EPSILON = 1e-12


@dataclass
class AdjacencyIndex:
    """Directed and undirected adjacency for a node list.

    Includes indices for O(1) lookups:
    - successors: node -> ordered unique targets of outgoing edges
    - predecessors: node -> ordered unique sources of incoming edges
    - neighbours: node -> ordered union of both (undirected projection)

    Self-loops and edges touching unknown nodes are ignored.
    """

    nodes: list[str] = field(default_factory=list)
    successors: dict[str, list[str]] = field(default_factory=dict)
    predecessors: dict[str, list[str]] = field(default_factory=dict)
    neighbours: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, node_ids: Iterable[str], edges: Iterable[tuple[str, str]]) -> "AdjacencyIndex":
        nodes = list(dict.fromkeys(node_ids))
        known = set(nodes)
        succ: dict[str, dict[str, None]] = {n: {} for n in nodes}
        pred: dict[str, dict[str, None]] = {n: {} for n in nodes}
        both: dict[str, dict[str, None]] = {n: {} for n in nodes}

        for source, target in edges:
            if source == target or source not in known or target not in known:
                continue
            succ[source][target] = None
            pred[target][source] = None
            both[source][target] = None
            both[target][source] = None

        return cls(
            nodes=nodes,
            successors={n: list(s) for n, s in succ.items()},
            predecessors={n: list(p) for n, p in pred.items()},
            neighbours={n: list(b) for n, b in both.items()},
        )

    def __len__(self) -> int:
        return len(self.nodes)

    def undirected_edges(self) -> list[tuple[str, str]]:
        """Each connected pair once, ordered by node input order."""
        position = {n: i for i, n in enumerate(self.nodes)}
        pairs = []
        for u in self.nodes:
            for v in self.neighbours[u]:
                if position[u] < position[v]:
                    pairs.append((u, v))
        return pairs

    def connected(self, u: str, v: str) -> bool:
        """True if an edge runs between u and v in either direction."""
        return v in self.neighbours.get(u, ())


def degree_centrality(index: AdjacencyIndex) -> dict[str, float]:
    """Normalized directed degree: (in + out) / (2 * (n - 1))."""
    n = len(index)
    if n < 2:
        return {node: 0.0 for node in index.nodes}
    scale = 1.0 / (2 * (n - 1))
    return {
        node: (len(index.successors[node]) + len(index.predecessors[node])) * scale
        for node in index.nodes
    }


def pagerank(
    index: AdjacencyIndex,
    damping: float = PAGERANK_DAMPING,
    precision: float = PAGERANK_PRECISION,
    max_iterations: int = PAGERANK_MAX_ITERATIONS,
) -> dict[str, float]:
    """PageRank by power iteration over the directed adjacency.

    Mass held by dangling nodes (no outgoing edges) is spread uniformly.
    Iteration stops once the L1 change between rounds drops below
    ``precision`` or after ``max_iterations`` rounds.

    Returns:
        Scores summing to 1.0 (empty dict for an empty graph)
    """
    n = len(index)
    if n == 0:
        return {}

    rank = {node: 1.0 / n for node in index.nodes}
    teleport = (1.0 - damping) / n

    for _ in range(max_iterations):
        dangling = sum(rank[node] for node in index.nodes if not index.successors[node])
        base = teleport + damping * dangling / n
        updated = {node: base for node in index.nodes}
        for node in index.nodes:
            targets = index.successors[node]
            if not targets:
                continue
            share = damping * rank[node] / len(targets)
            for target in targets:
                updated[target] += share

        change = sum(abs(updated[node] - rank[node]) for node in index.nodes)
        rank = updated
        if change < precision:
            break

    return rank


def _bfs_distances(index: AdjacencyIndex, source: str) -> dict[str, int]:
    """Hop distances from source along outgoing edges."""
    distances = {source: 0}
    queue = deque([source])
    while queue:
        node = queue.popleft()
        for target in index.successors[node]:
            if target not in distances:
                distances[target] = distances[node] + 1
                queue.append(target)
    return distances


def closeness_centrality(index: AdjacencyIndex) -> dict[str, float]:
    """Directed harmonic closeness: sum(1 / d(v, u)) / (n - 1).

    Harmonic form keeps disconnected graphs well defined; a node that
    reaches everything in one hop scores 1.0.
    """
    n = len(index)
    if n < 2:
        return {node: 0.0 for node in index.nodes}

    closeness = {}
    for node in index.nodes:
        distances = _bfs_distances(index, node)
        total = sum(1.0 / d for target, d in distances.items() if target != node)
        closeness[node] = total / (n - 1)
    return closeness


def betweenness_centrality(index: AdjacencyIndex) -> dict[str, float]:
    """Brandes betweenness on the directed, unweighted graph.

    Normalized by (n - 1)(n - 2), the number of ordered pairs excluding
    the node itself, so scores fall in [0, 1].
    """
    nodes = index.nodes
    betweenness = {node: 0.0 for node in nodes}

    for source in nodes:
        stack: list[str] = []
        parents: dict[str, list[str]] = {node: [] for node in nodes}
        sigma = {node: 0.0 for node in nodes}
        sigma[source] = 1.0
        depth = {source: 0}
        queue = deque([source])

        while queue:
            v = queue.popleft()
            stack.append(v)
            for w in index.successors[v]:
                if w not in depth:
                    depth[w] = depth[v] + 1
                    queue.append(w)
                if depth[w] == depth[v] + 1:
                    sigma[w] += sigma[v]
                    parents[w].append(v)

        delta = {node: 0.0 for node in nodes}
        while stack:
            w = stack.pop()
            for v in parents[w]:
                delta[v] += sigma[v] / sigma[w] * (1.0 + delta[w])
            if w != source:
                betweenness[w] += delta[w]

    n = len(nodes)
    if n <= 2:
        return {node: 0.0 for node in nodes}
    scale = 1.0 / ((n - 1) * (n - 2))
    return {node: value * scale for node, value in betweenness.items()}


def clustering_coefficients(index: AdjacencyIndex) -> dict[str, float]:
    """Local clustering coefficient on the in/out neighbourhood.

    For a neighbourhood of size k, counts the L unordered neighbour pairs
    joined by an edge in either direction: 2L / (k(k - 1)), 0 when k < 2.
    """
    coefficients = {}
    for node in index.nodes:
        neighbours = index.neighbours[node]
        k = len(neighbours)
        if k < 2:
            coefficients[node] = 0.0
            continue
        links = 0
        for i in range(k):
            for j in range(i + 1, k):
                if index.connected(neighbours[i], neighbours[j]):
                    links += 1
        coefficients[node] = (2.0 * links) / (k * (k - 1))
    return coefficients


# ─────────────────────────────────────────────────────────────────────────────
# Community detection
# ─────────────────────────────────────────────────────────────────────────────


WeightedAdjacency = dict[str, dict[str, float]]


def _undirected_weights(index: AdjacencyIndex) -> WeightedAdjacency:
    """Unit-weight undirected adjacency from the projection."""
    adjacency: WeightedAdjacency = {node: {} for node in index.nodes}
    for u, v in index.undirected_edges():
        adjacency[u][v] = 1.0
        adjacency[v][u] = 1.0
    return adjacency


def _node_strength(adjacency: WeightedAdjacency, node: str) -> float:
    """Weighted degree; a self-loop counts twice."""
    return sum(w * (2.0 if other == node else 1.0) for other, w in adjacency[node].items())


def _one_level(
    adjacency: WeightedAdjacency,
    order: list[str],
    resolution: float,
) -> tuple[dict[str, str], bool]:
    """Local moving phase: greedily move nodes to the best neighbouring community.

    Returns:
        (node -> community label, whether any node moved)
    """
    strength = {node: _node_strength(adjacency, node) for node in order}
    two_m = sum(strength.values())
    community = {node: node for node in order}
    total = dict(strength)  # community -> summed strength of its members

    if two_m <= 0:
        return community, False

    moved_any = False
    improved = True
    while improved:
        improved = False
        for node in order:
            current = community[node]
            k_i = strength[node]

            links: dict[str, float] = {}
            for other, w in adjacency[node].items():
                if other == node:
                    continue
                links[community[other]] = links.get(community[other], 0.0) + w

            total[current] -= k_i
            best = current
            best_gain = links.get(current, 0.0) - resolution * total[current] * k_i / two_m
            for candidate, k_in in links.items():
                gain = k_in - resolution * total[candidate] * k_i / two_m
                if gain > best_gain + _EPSILON:
                    best, best_gain = candidate, gain
            total[best] += k_i

            if best != current:
                community[node] = best
                improved = True
                moved_any = True

    return community, moved_any


def _aggregate(adjacency: WeightedAdjacency, community: dict[str, str], order: list[str]) -> tuple[WeightedAdjacency, list[str]]:
    """Collapse each community into a single node carrying its internal weight as a self-loop."""
    new_order = list(dict.fromkeys(community[node] for node in order))
    position = {node: i for i, node in enumerate(order)}
    aggregated: WeightedAdjacency = {c: {} for c in new_order}

    for u in order:
        for v, w in adjacency[u].items():
            if position[u] > position[v]:
                continue  # each undirected edge once
            cu, cv = community[u], community[v]
            if cu == cv:
                aggregated[cu][cu] = aggregated[cu].get(cu, 0.0) + w
            else:
                aggregated[cu][cv] = aggregated[cu].get(cv, 0.0) + w
                aggregated[cv][cu] = aggregated[cv].get(cu, 0.0) + w

    return aggregated, new_order


def _relabel(partition: dict[str, str], nodes: list[str]) -> dict[str, int]:
    """Map community labels to 0..k-1 in order of first appearance."""
    labels: dict[str, int] = {}
    result = {}
    for node in nodes:
        label = partition[node]
        if label not in labels:
            labels[label] = len(labels)
        result[node] = labels[label]
    return result


def louvain(
    index: AdjacencyIndex,
    resolution: float = LOUVAIN_RESOLUTION,
    max_passes: int = LOUVAIN_MAX_PASSES,
) -> dict[str, int]:
    """Louvain community detection on the undirected projection.

    Alternates local moving and aggregation until no node changes
    community. Higher ``resolution`` penalizes large communities harder,
    giving more, smaller communities.

    Returns:
        node -> community id (0..k-1, numbered by first appearance)
    """
    adjacency = _undirected_weights(index)
    order = list(index.nodes)
    membership = {node: node for node in order}  # original node -> current super-node

    for _ in range(max_passes):
        community, moved = _one_level(adjacency, order, resolution)
        if not moved:
            break
        membership = {node: community[membership[node]] for node in index.nodes}
        adjacency, order = _aggregate(adjacency, community, order)

    return _relabel(membership, index.nodes)


def modularity(
    index: AdjacencyIndex,
    partition: dict[str, int],
    resolution: float = LOUVAIN_RESOLUTION,
) -> float:
    """Newman modularity of a partition on the undirected projection.

    Q = sum_c [ L_c / m - resolution * (d_c / 2m)^2 ]

    Returns 0.0 for a graph without edges.
    """
    pairs = index.undirected_edges()
    m = float(len(pairs))
    if m == 0:
        return 0.0

    internal: dict[int, float] = {}
    degree_sum: dict[int, float] = {}
    for u, v in pairs:
        cu, cv = partition[u], partition[v]
        degree_sum[cu] = degree_sum.get(cu, 0.0) + 1.0
        degree_sum[cv] = degree_sum.get(cv, 0.0) + 1.0
        if cu == cv:
            internal[cu] = internal.get(cu, 0.0) + 1.0

    return sum(
        internal.get(c, 0.0) / m - resolution * (d / (2.0 * m)) ** 2
        for c, d in degree_sum.items()
    )
