"""Patch/merge engine: structural changes with referential integrity.

Every function takes a graph and returns a new one; the input is never
mutated. By default the result is re-enriched before it is returned, so a
patch only counts as applied once the metrics engine has run over it.
Callers that enrich elsewhere (the store's background worker) pass
``enrich_result=False``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError

from .constants import DEFAULT_CERTAINTY, DEFAULT_IMPORTANCE, DEFAULT_NODE_TYPE, UNKNOWN_REGION
from .errors import MergeError, PatchValidationError
from .metrics import MetricsConfig, enrich
from .models import (
    DERIVED_NODE_FIELDS,
    Edge,
    Graph,
    Node,
    ProposedEdge,
    ProposedNode,
    derive_year,
    generate_edge_id,
)

logger = logging.getLogger(__name__)


@dataclass
class PatchReport:
    """What a patch did, item by item."""

    nodes_created: list[str] = field(default_factory=list)
    nodes_updated: list[str] = field(default_factory=list)
    edges_added: list[str] = field(default_factory=list)
    edges_invalid: int = 0  # dangling endpoints, dropped silently
    edges_duplicate: int = 0
    skipped: list[PatchValidationError] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.nodes_created or self.nodes_updated or self.edges_added)

    def to_dict(self) -> dict:
        return {
            "nodes_created": self.nodes_created,
            "nodes_updated": self.nodes_updated,
            "edges_added": self.edges_added,
            "edges_invalid": self.edges_invalid,
            "edges_duplicate": self.edges_duplicate,
            "skipped": [str(e) for e in self.skipped],
            "summary": (
                f"Created {len(self.nodes_created)}, updated {len(self.nodes_updated)} nodes; "
                f"added {len(self.edges_added)} edges"
            ),
        }


@dataclass
class PatchResult:
    graph: Graph
    report: PatchReport


def _finish(graph: Graph, enrich_result: bool, config: MetricsConfig | None) -> Graph:
    return enrich(graph, config) if enrich_result else graph


def _parse_items(items: Iterable[Any], model: type, kind: str, report: PatchReport) -> list:
    """Validate raw patch items into the proposed-change models, skipping bad ones."""
    parsed = []
    for item in items:
        if isinstance(item, model):
            parsed.append(item)
            continue
        if not isinstance(item, dict):
            report.skipped.append(PatchValidationError(f"{kind} patch is not an object: {item!r}"))
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            report.skipped.append(PatchValidationError(f"Invalid {kind} patch: {e.errors()[0]['msg']}", item))
    return parsed


def _new_node(proposal: ProposedNode, year: int | None) -> Node:
    return Node(
        id=proposal.id,
        label=proposal.label or proposal.id,
        type=proposal.type or DEFAULT_NODE_TYPE,
        year=year,
        dates=proposal.dates,
        description=proposal.description,
        importance=DEFAULT_IMPORTANCE if proposal.importance is None else proposal.importance,
        region=proposal.region or UNKNOWN_REGION,
        certainty=proposal.certainty or DEFAULT_CERTAINTY,
        sources=proposal.sources or [],
    )


def apply_patch_with_report(
    graph: Graph,
    node_patches: Iterable[ProposedNode | dict],
    edge_patches: Iterable[ProposedEdge | dict],
    *,
    enrich_result: bool = True,
    config: MetricsConfig | None = None,
) -> PatchResult:
    """Upsert nodes, then append valid, non-duplicate edges.

    Nodes are keyed by id: an unknown id creates a node with defaults, a
    known id gets the provided fields shallow-merged over it. The year is
    re-derived from ``dates`` only when the patch does not carry one.

    Edges need both endpoints present after the node upsert; others are
    dropped silently. An edge whose (source, target, label) already exists
    is discarded.

    Returns:
        PatchResult with the new graph and a per-item report
    """
    report = PatchReport()
    node_proposals = _parse_items(node_patches, ProposedNode, "node", report)
    edge_proposals = _parse_items(edge_patches, ProposedEdge, "edge", report)

    # 1. Nodes (upsert)
    nodes = graph.node_map()
    for proposal in node_proposals:
        if not proposal.id:
            report.skipped.append(PatchValidationError(
                "Node patch without id skipped", proposal.model_dump(exclude_none=True)
            ))
            continue

        year = proposal.year if proposal.year is not None else derive_year(proposal.dates)
        existing = nodes.get(proposal.id)
        if existing is None:
            nodes[proposal.id] = _new_node(proposal, year)
            report.nodes_created.append(proposal.id)
        else:
            updates = proposal.provided_fields()
            updates["year"] = year if year is not None else existing.year
            nodes[proposal.id] = existing.model_copy(update=updates)
            report.nodes_updated.append(proposal.id)

    # 2. Edges (validate + de-duplicate)
    edges = [e.model_copy() for e in graph.edges if e.source in nodes and e.target in nodes]
    seen_keys = {e.key for e in edges}
    seen_ids = {e.id for e in edges}
    for proposal in edge_proposals:
        if not proposal.source or not proposal.target or proposal.source not in nodes or proposal.target not in nodes:
            report.edges_invalid += 1
            logger.debug(f"Dropping edge with missing endpoint: {proposal.source} -> {proposal.target}")
            continue

        edge = proposal.to_edge()
        if edge.key in seen_keys:
            report.edges_duplicate += 1
            continue
        if edge.id in seen_ids:
            edge = edge.model_copy(update={"id": generate_edge_id()})

        edges.append(edge)
        seen_keys.add(edge.key)
        seen_ids.add(edge.id)
        report.edges_added.append(edge.id)

    if report.skipped:
        logger.info(f"Patch skipped {len(report.skipped)} malformed items")

    updated = Graph(nodes=list(nodes.values()), edges=edges, meta=graph.meta.model_copy())
    return PatchResult(graph=_finish(updated, enrich_result, config), report=report)


def apply_patch(
    graph: Graph,
    node_patches: Iterable[ProposedNode | dict],
    edge_patches: Iterable[ProposedEdge | dict],
    *,
    enrich_result: bool = True,
    config: MetricsConfig | None = None,
) -> Graph:
    """Upsert nodes and insert edges; see apply_patch_with_report()."""
    return apply_patch_with_report(
        graph, node_patches, edge_patches, enrich_result=enrich_result, config=config
    ).graph


def _backfill(keep: Node, drop: Node) -> dict[str, Any]:
    """Fields of the kept node to fill from the dropped one.

    Empty values are filled; an "Unknown" region yields to a specific one;
    of two descriptions the longer wins.
    """
    updates: dict[str, Any] = {}

    if not keep.has_known_region() and drop.has_known_region():
        updates["region"] = drop.region

    if drop.description and (not keep.description or len(drop.description) > len(keep.description)):
        updates["description"] = drop.description

    if not keep.dates and drop.dates:
        updates["dates"] = drop.dates
        updates["year"] = drop.year

    extra_sources = [s for s in drop.sources if s not in keep.sources]
    if extra_sources:
        updates["sources"] = keep.sources + extra_sources

    return updates


def merge_nodes(
    graph: Graph,
    keep_id: str,
    drop_id: str,
    *,
    enrich_result: bool = True,
    config: MetricsConfig | None = None,
) -> Graph:
    """Merge ``drop_id`` into ``keep_id``.

    - Every edge endpoint equal to drop_id is rewritten to keep_id
    - Edges that became self-loops are removed
    - The dropped node is removed; its region/description/dates backfill the kept node

    Raises:
        MergeError: If either node is missing or both ids are the same
    """
    if keep_id == drop_id:
        raise MergeError("Source and target are the same node")

    nodes = graph.node_map()
    keep = nodes.get(keep_id)
    drop = nodes.get(drop_id)
    if keep is None:
        raise MergeError(f"Node to keep not found: {keep_id}")
    if drop is None:
        raise MergeError(f"Node to drop not found: {drop_id}")

    merged = keep.model_copy(update=_backfill(keep, drop))
    new_nodes = [merged if n.id == keep_id else n for n in nodes.values() if n.id != drop_id]

    new_edges = []
    for edge in graph.edges:
        source = keep_id if edge.source == drop_id else edge.source
        target = keep_id if edge.target == drop_id else edge.target
        if source == target:
            continue
        new_edges.append(edge.model_copy(update={"source": source, "target": target}))

    logger.info(f"Merged node {drop_id} into {keep_id}")
    updated = Graph(nodes=new_nodes, edges=new_edges, meta=graph.meta.model_copy())
    return _finish(updated, enrich_result, config)


def bulk_delete(
    graph: Graph,
    ids: Iterable[str],
    *,
    enrich_result: bool = True,
    config: MetricsConfig | None = None,
) -> Graph:
    """Remove the given nodes and every edge touching them. Unknown ids are ignored."""
    doomed = set(ids)
    updated = Graph(
        nodes=[n.model_copy() for n in graph.nodes if n.id not in doomed],
        edges=[
            e.model_copy() for e in graph.edges
            if e.source not in doomed and e.target not in doomed
        ],
        meta=graph.meta.model_copy(),
    )
    return _finish(updated, enrich_result, config)


def remove_node(
    graph: Graph,
    node_id: str,
    *,
    enrich_result: bool = True,
    config: MetricsConfig | None = None,
) -> Graph:
    """Remove a single node and its edges."""
    return bulk_delete(graph, {node_id}, enrich_result=enrich_result, config=config)


def update_node(
    graph: Graph,
    node_id: str,
    fields: dict[str, Any],
    *,
    enrich_result: bool = True,
    config: MetricsConfig | None = None,
) -> Graph:
    """Apply a user edit to one node's descriptive fields.

    Raises:
        PatchValidationError: If the node is missing, the edit touches a
            derived metric field or tries to change the id
    """
    derived = DERIVED_NODE_FIELDS.intersection(fields) | {"degreeCentrality", "louvainCommunity", "kCore"}.intersection(fields)
    if derived:
        raise PatchValidationError(f"Derived fields cannot be edited: {sorted(derived)}", fields)
    if "id" in fields and fields["id"] != node_id:
        raise PatchValidationError("Node ids are immutable", fields)

    existing = graph.get_node(node_id)
    if existing is None:
        raise PatchValidationError(f"Node not found: {node_id}", fields)

    try:
        proposal = ProposedNode.model_validate({**fields, "id": node_id})
    except ValidationError as e:
        raise PatchValidationError(f"Invalid node edit: {e.errors()[0]['msg']}", fields) from e

    updates = proposal.provided_fields()
    if "dates" in updates and "year" not in updates:
        updates["year"] = derive_year(updates["dates"]) or existing.year

    updated = Graph(
        nodes=[n.model_copy(update=updates) if n.id == node_id else n.model_copy() for n in graph.nodes],
        edges=[e.model_copy() for e in graph.edges],
        meta=graph.meta.model_copy(),
    )
    return _finish(updated, enrich_result, config)
