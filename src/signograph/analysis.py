"""Read-only analyses over a graph snapshot.

Regional exposure, multi-resolution community hierarchy, the temporal
context window handed to the prediction oracle, and the filters behind the
timeline/degree views. Nothing here mutates the graph.
"""

from __future__ import annotations

import logging
from collections import Counter

from pydantic import BaseModel, Field

from .algorithms import AdjacencyIndex
from .constants import (
    RAG_MIN_COMMUNITY_SIZE,
    RAG_RESOLUTIONS,
    RAG_TOP_COMMUNITIES,
    TEMPORAL_EDGE_SAMPLE,
    TEMPORAL_ENTITY_SAMPLE,
    TEMPORAL_KEY_IMPORTANCE,
    TOP_BRIDGES,
    UNKNOWN_REGION,
)
from .metrics import communities
from .models import Graph, Node, derive_year

logger = logging.getLogger(__name__)

MIXED_REGION = "Mixed"


# --- Regional analysis ---


class BridgeNode(BaseModel):
    id: str
    label: str
    score: float


class RegionalAnalysis(BaseModel):
    """How regionally closed the network is, and who links the regions."""

    isolation_index: float = 0.0  # share of known-region edges within one region
    bridges: list[BridgeNode] = Field(default_factory=list)
    dominant_region: str = UNKNOWN_REGION
    region_counts: dict[str, int] = Field(default_factory=dict)


def regional_analysis(graph: Graph, top: int = TOP_BRIDGES) -> RegionalAnalysis:
    """Isolation index, top bridge nodes and dominant region.

    Only edges whose endpoints both have a known region count towards the
    isolation index. A node's bridge score is the number of its neighbours
    in a different known region times its importance (0 counts as 1).
    """
    nodes = graph.node_map()
    same_region = 0
    total = 0
    neighbours: dict[str, list[str]] = {}

    for edge in graph.edges:
        source, target = nodes.get(edge.source), nodes.get(edge.target)
        if source is None or target is None:
            continue
        neighbours.setdefault(source.id, []).append(target.id)
        neighbours.setdefault(target.id, []).append(source.id)
        if source.has_known_region() and target.has_known_region():
            total += 1
            if source.region == target.region:
                same_region += 1

    scores: list[tuple[Node, float]] = []
    for node in nodes.values():
        if not node.has_known_region():
            continue
        foreign = sum(
            1 for other_id in neighbours.get(node.id, [])
            if nodes[other_id].has_known_region() and nodes[other_id].region != node.region
        )
        if foreign:
            scores.append((node, foreign * (node.importance or 1.0)))
    scores.sort(key=lambda item: item[1], reverse=True)

    region_counts = Counter(n.region for n in nodes.values() if n.has_known_region())
    dominant = region_counts.most_common(1)[0][0] if region_counts else UNKNOWN_REGION

    return RegionalAnalysis(
        isolation_index=same_region / total if total > 0 else 0.0,
        bridges=[BridgeNode(id=n.id, label=n.label or n.id, score=s) for n, s in scores[:top]],
        dominant_region=dominant,
        region_counts=dict(region_counts),
    )


# --- Community hierarchy ---


class CommunitySummary(BaseModel):
    """One sizeable community at one resolution level."""

    id: str  # "L{level}-C{community}"
    level: int
    resolution: float
    community_id: int
    entities: list[str]
    timespan: str
    region: str


class CommunityHierarchy(BaseModel):
    levels: dict[int, dict[str, int]] = Field(default_factory=dict)
    summaries: list[CommunitySummary] = Field(default_factory=list)


def _timespan(members: list[Node]) -> str:
    years = [n.year for n in members if n.year is not None]
    if not years:
        return "Unknown"
    return f"{min(years)}-{max(years)}"


def _dominant_region(members: list[Node]) -> str:
    counts = Counter(n.region for n in members if n.has_known_region())
    return counts.most_common(1)[0][0] if counts else MIXED_REGION


def community_hierarchy(
    graph: Graph,
    resolutions: tuple[float, ...] = RAG_RESOLUTIONS,
    top: int = RAG_TOP_COMMUNITIES,
    min_size: int = RAG_MIN_COMMUNITY_SIZE,
) -> CommunityHierarchy:
    """Louvain partitions at several resolutions, coarse to fine.

    For each level the ``top`` largest communities with at least
    ``min_size`` members are summarized (members, timespan of known
    years, most common known region or "Mixed").
    """
    hierarchy = CommunityHierarchy()
    nodes = graph.node_map()
    if not nodes:
        return hierarchy

    index = AdjacencyIndex.build(nodes, ((e.source, e.target) for e in graph.edges))

    for level, resolution in enumerate(resolutions):
        try:
            partition, _ = communities(index, resolution)
        except (ValueError, ZeroDivisionError) as e:
            logger.warning(f"Community detection failed at resolution {resolution}: {e}")
            continue
        hierarchy.levels[level] = partition

        groups: dict[int, list[str]] = {}
        for node_id, community_id in partition.items():
            groups.setdefault(community_id, []).append(node_id)
        largest = sorted(groups.items(), key=lambda item: len(item[1]), reverse=True)[:top]

        for community_id, member_ids in largest:
            if len(member_ids) < min_size:
                continue
            members = [nodes[m] for m in member_ids]
            hierarchy.summaries.append(CommunitySummary(
                id=f"L{level}-C{community_id}",
                level=level,
                resolution=resolution,
                community_id=community_id,
                entities=member_ids,
                timespan=_timespan(members),
                region=_dominant_region(members),
            ))

    return hierarchy


# --- Temporal context ---


class TemporalContext(BaseModel):
    """Historical context window handed to the prediction oracle."""

    context_window: str
    active_entities_count: int
    key_entities_sample: list[str]
    historical_events_and_relations: list[dict]


def temporal_context(
    graph: Graph,
    start_year: int,
    end_year: int,
    entity_sample: int = TEMPORAL_ENTITY_SAMPLE,
    edge_sample: int = TEMPORAL_EDGE_SAMPLE,
) -> TemporalContext:
    """Entities and relations active between ``start_year`` and ``end_year``.

    Key entities (importance above 0.8) are always part of the window.
    """
    entities = [
        f"{n.label} ({n.type})" for n in graph.nodes
        if (n.year is not None and start_year <= n.year <= end_year)
        or n.importance > TEMPORAL_KEY_IMPORTANCE
    ]

    relations = []
    for edge in graph.edges:
        year = derive_year(edge.dates)
        if year is None or not start_year <= year <= end_year:
            continue
        relations.append({
            "source": edge.source,
            "target": edge.target,
            "label": edge.label,
            "year": edge.dates,
        })

    return TemporalContext(
        context_window=f"{start_year}-{end_year}",
        active_entities_count=len(entities),
        key_entities_sample=entities[:entity_sample],
        historical_events_and_relations=relations[:edge_sample],
    )


# --- View filters ---


def _restrict(graph: Graph, keep: set[str]) -> Graph:
    return Graph(
        nodes=[n for n in graph.nodes if n.id in keep],
        edges=[e for e in graph.edges if e.source in keep and e.target in keep],
        meta=graph.meta,
    )


def filter_by_year(graph: Graph, year: int | None) -> Graph:
    """Timeline view: nodes with no year or a year up to ``year``."""
    if year is None:
        return graph
    return _restrict(graph, {n.id for n in graph.nodes if n.year is None or n.year <= year})


def filter_by_min_degree(graph: Graph, min_degree: int) -> Graph:
    """Keep nodes with at least ``min_degree`` incident edges."""
    if min_degree <= 0:
        return graph
    ids = graph.node_ids()
    degree: Counter[str] = Counter()
    for edge in graph.edges:
        if edge.source in ids and edge.target in ids:
            degree[edge.source] += 1
            degree[edge.target] += 1
    return _restrict(graph, {node_id for node_id in ids if degree[node_id] >= min_degree})
