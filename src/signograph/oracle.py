"""AI oracle boundary: prompts out, validated proposals in.

The oracle is any object with an async ``generate(prompt) -> str``. Its
replies are free text that should contain JSON, possibly wrapped in
markdown fences or prose. Parsing never raises: a reply that cannot be
read yields an empty proposal with ``ok=False``. Transport failures are
different and raise OracleError to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from .analysis import temporal_context
from .constants import TEMPORAL_LOOKBACK_YEARS
from .errors import OracleError
from .models import Graph, Node, ProposedEdge, ProposedNode, TemporalPrediction

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*", re.MULTILINE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$", re.MULTILINE)


class Oracle(Protocol):
    """Text-generation collaborator (e.g. a hosted LLM client)."""

    async def generate(self, prompt: str) -> str: ...


@dataclass
class OracleProposal:
    """Validated changes proposed by the oracle, ready for apply_patch()."""

    ok: bool = True
    error: str | None = None
    reasoning: str = ""
    nodes: list[ProposedNode] = field(default_factory=list)
    edges: list[ProposedEdge] = field(default_factory=list)
    predictions: list[TemporalPrediction] = field(default_factory=list)
    skipped: int = 0  # items that failed validation

    @property
    def is_empty(self) -> bool:
        return not (self.nodes or self.edges or self.predictions)

    @classmethod
    def failed(cls, error: str) -> "OracleProposal":
        return cls(ok=False, error=error)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "error": self.error,
            "reasoning": self.reasoning,
            "nodes": [n.model_dump(exclude_none=True) for n in self.nodes],
            "edges": [e.model_dump(exclude_none=True) for e in self.edges],
            "predictions": [p.model_dump() for p in self.predictions],
            "skipped": self.skipped,
        }


# --- JSON extraction ---


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences (```json ... ```) around a reply."""
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text)).strip()


def extract_json(text: str, expect: type = dict) -> Any:
    """Pull the first JSON object (or array) out of an oracle reply.

    Tries the fence-stripped text as a whole first, then the outermost
    ``{...}`` / ``[...]`` span inside it.

    Raises:
        ValueError: If no JSON of the expected kind can be found
    """
    if not text or not text.strip():
        raise ValueError("Empty oracle reply")

    clean = strip_code_fences(text)
    candidates = [clean]
    open_char, close_char = ("[", "]") if expect is list else ("{", "}")
    start, end = clean.find(open_char), clean.rfind(close_char)
    if start != -1 and end > start:
        candidates.append(clean[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, expect):
            return data

    raise ValueError(f"No JSON {expect.__name__} found in oracle reply")


def _validate_all(items: Any, model: type, proposal: OracleProposal) -> list:
    if not isinstance(items, list):
        return []
    valid = []
    for item in items:
        if not isinstance(item, dict):
            proposal.skipped += 1
            continue
        try:
            valid.append(model.model_validate(item))
        except ValidationError as e:
            proposal.skipped += 1
            logger.debug(f"Skipping invalid oracle {model.__name__}: {e.errors()[0]['msg']}")
    return valid


# --- Reply parsers ---


def parse_expansion(text: str) -> OracleProposal:
    """Parse an expansion reply: ``{thoughtProcess, nodes[], edges[]}``.

    ``thoughtSignature`` is accepted as an alias of ``thoughtProcess``.
    """
    try:
        data = extract_json(text, dict)
    except ValueError as e:
        logger.warning(f"Unreadable expansion reply: {e}")
        return OracleProposal.failed(str(e))

    proposal = OracleProposal(reasoning=str(data.get("thoughtProcess") or data.get("thoughtSignature") or ""))
    proposal.nodes = _validate_all(data.get("nodes") or data.get("newNodes"), ProposedNode, proposal)
    proposal.edges = _validate_all(data.get("edges") or data.get("newEdges"), ProposedEdge, proposal)
    return proposal


def parse_deepening(text: str, node_id: str) -> OracleProposal:
    """Parse a deepening reply for one node.

    ``{thoughtProcess, updatedProperties, newEdges[]}`` becomes a single
    node upsert for ``node_id`` plus edges; edges without a source start
    at ``node_id``.
    """
    try:
        data = extract_json(text, dict)
    except ValueError as e:
        logger.warning(f"Unreadable deepening reply for {node_id}: {e}")
        return OracleProposal.failed(str(e))

    proposal = OracleProposal(reasoning=str(data.get("thoughtProcess") or ""))

    updates = data.get("updatedProperties")
    if isinstance(updates, dict) and updates:
        try:
            proposal.nodes.append(ProposedNode.model_validate({**updates, "id": node_id}))
        except ValidationError as e:
            proposal.skipped += 1
            logger.debug(f"Skipping invalid property update for {node_id}: {e.errors()[0]['msg']}")

    raw_edges = data.get("newEdges")
    if isinstance(raw_edges, list):
        raw_edges = [
            {"source": node_id, **item} if isinstance(item, dict) and not (item.get("source") or item.get("from")) else item
            for item in raw_edges
        ]
    proposal.edges = _validate_all(raw_edges, ProposedEdge, proposal)
    return proposal


def parse_predictions(text: str) -> OracleProposal:
    """Parse a temporal prediction reply: a JSON array of predictions."""
    try:
        data = extract_json(text, list)
    except ValueError as e:
        logger.warning(f"Unreadable prediction reply: {e}")
        return OracleProposal.failed(str(e))

    proposal = OracleProposal()
    proposal.predictions = _validate_all(data, TemporalPrediction, proposal)
    return proposal


# --- Prompts ---


def _node_line(node: Node) -> str:
    return f"- {node.id}: {node.label} ({node.type}, {node.dates or 'n/d'}, {node.region})"


def expansion_prompt(graph: Graph, topic: str, limit: int = 40) -> str:
    """Prompt asking for new entities and relations around ``topic``."""
    known = sorted(graph.nodes, key=lambda n: n.importance, reverse=True)[:limit]
    return "\n".join([
        "You are a historian extending a knowledge graph of the Polish National Democracy movement.",
        f"Topic to research: {topic}",
        "",
        "Existing nodes (reuse these ids when referring to them):",
        *[_node_line(n) for n in known],
        "",
        "Return ONLY JSON of the form:",
        '{"thoughtProcess": "...", "nodes": [{"id", "label", "type", "dates", "description", '
        '"importance", "region"}], "edges": [{"source", "target", "label", "dates", "sign"}]}',
        "Node type is one of person, organization, event, publication, concept.",
        'Use "sign": "negative" for conflict or rivalry.',
    ])


def deepening_prompt(graph: Graph, node: Node) -> str:
    """Prompt asking for richer properties and connections of one node."""
    neighbours = {e.other_end(node.id) for e in graph.edges_for(node.id)}
    return "\n".join([
        "You are a historian deepening one entry of a knowledge graph.",
        f"Entity: {node.label} ({node.type}), id {node.id}",
        f"Dates: {node.dates or 'unknown'}; region: {node.region}",
        f"Description: {node.description or ''}",
        f"Already connected to: {', '.join(sorted(neighbours)) or 'nothing'}",
        "",
        "Return ONLY JSON of the form:",
        '{"thoughtProcess": "...", "updatedProperties": {"description", "dates", "region", "sources"}, '
        '"newEdges": [{"target", "label", "dates", "sign"}]}',
    ])


def prediction_prompt(graph: Graph, target_year: int) -> str:
    """Prompt asking for likely relationships around ``target_year``."""
    context = temporal_context(graph, target_year - TEMPORAL_LOOKBACK_YEARS, target_year)
    return "\n".join([
        "You are an expert historian on the Endecja movement.",
        f"Historical context from {context.context_window}:",
        json.dumps(context.model_dump(), indent=2, ensure_ascii=False),
        "",
        f"Predict 5 likely new relationships, splits or events around the year {target_year}.",
        "Return ONLY a JSON array of "
        '{"source", "relation", "target", "confidence" (0.0-1.0), "reasoning"}.',
    ])


# --- Round trips ---


async def _ask(oracle: Oracle, prompt: str) -> str:
    try:
        return await oracle.generate(prompt)
    except OracleError:
        raise
    except (OSError, RuntimeError, ValueError, asyncio.TimeoutError) as e:
        raise OracleError(f"Oracle request failed: {e}") from e


async def request_expansion(oracle: Oracle, graph: Graph, topic: str) -> OracleProposal:
    """Ask the oracle to expand the graph around ``topic``.

    Raises:
        OracleError: If the oracle cannot be reached
    """
    return parse_expansion(await _ask(oracle, expansion_prompt(graph, topic)))


async def request_deepening(oracle: Oracle, graph: Graph, node_id: str) -> OracleProposal:
    """Ask the oracle for more detail on one node.

    Raises:
        OracleError: If the node is unknown or the oracle cannot be reached
    """
    node = graph.get_node(node_id)
    if node is None:
        raise OracleError(f"Node not found: {node_id}")
    return parse_deepening(await _ask(oracle, deepening_prompt(graph, node)), node_id)


async def request_predictions(oracle: Oracle, graph: Graph, target_year: int) -> OracleProposal:
    """Ask the oracle for relationships likely to emerge around ``target_year``."""
    return parse_predictions(await _ask(oracle, prediction_prompt(graph, target_year)))
