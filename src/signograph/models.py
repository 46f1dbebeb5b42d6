"""Core data models for the knowledge graph.

Uses Pydantic v2 for validation, ULID for sortable unique edge IDs.
Python attributes are snake_case; serialized snapshots use the camelCase
names the rendering layer expects (``degreeCentrality``, ``globalBalance``...).
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from ulid import ULID

from .constants import (
    DEFAULT_CERTAINTY,
    DEFAULT_EDGE_LABEL,
    DEFAULT_IMPORTANCE,
    DEFAULT_NODE_TYPE,
    UNKNOWN_REGION,
)

NodeType = Literal["person", "organization", "event", "publication", "concept"]
NODE_TYPES: tuple[str, ...] = ("person", "organization", "event", "publication", "concept")

Certainty = Literal["confirmed", "disputed", "alleged"]
CERTAINTIES: tuple[str, ...] = ("confirmed", "disputed", "alleged")

Sign = Literal["positive", "negative"]

# Fields owned by the metrics engine; never accepted from users or the oracle
DERIVED_NODE_FIELDS = frozenset({
    "degree_centrality",
    "pagerank",
    "betweenness",
    "closeness",
    "clustering",
    "eigenvector",
    "louvain_community",
    "k_core",
    "security",
})

_YEAR_PATTERN = re.compile(r"\d{4}")


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def generate_edge_id() -> str:
    """Generate an edge ID in the ``edge_<ULID>`` form."""
    return f"edge_{generate_id()}"


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def derive_year(dates: Any) -> int | None:
    """Derive a year from a free-text date range.

    Takes the first four-digit run, so "1864-1939" gives 1864.

    Examples:
        >>> derive_year("ok. 1905-1907")
        1905
        >>> derive_year("unknown") is None
        True
    """
    if dates is None:
        return None
    if isinstance(dates, bool):
        return None
    if isinstance(dates, int):
        return dates
    match = _YEAR_PATTERN.search(str(dates))
    return int(match.group(0)) if match else None


def _normalize_node_type(value: Any) -> Any:
    """Lowercase legacy capitalized types ("Person" -> "person")."""
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _flatten_sources(value: Any) -> list[str]:
    """Flatten source entries to strings (objects collapse to their title)."""
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    flattened = []
    for source in value:
        if isinstance(source, str):
            flattened.append(source)
        elif isinstance(source, dict):
            flattened.append(source.get("title") or json.dumps(source, ensure_ascii=False))
        elif source is not None:
            flattened.append(str(source))
    return flattened


class _GraphModel(BaseModel):
    """Shared config: accept both snake_case names and camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)


class SecurityProfile(_GraphModel):
    """Exposure/risk record derived from closeness and betweenness."""

    efficiency: float = 0.0
    safety: float = 0.0
    balance: float = 0.0
    risk: float = 0.0
    vulnerabilities: list[str] = Field(default_factory=list)


class Node(_GraphModel):
    """An entity in the knowledge graph (person, organization, event...)."""

    id: str
    label: str = ""
    type: NodeType = DEFAULT_NODE_TYPE
    year: int | None = None
    dates: str | None = None
    description: str | None = None
    importance: float = Field(default=DEFAULT_IMPORTANCE, ge=0.0, le=1.0)
    region: str = UNKNOWN_REGION
    certainty: Certainty = DEFAULT_CERTAINTY
    sources: list[str] = Field(default_factory=list)

    # Derived, written only by the metrics engine
    degree_centrality: float | None = Field(default=None, alias="degreeCentrality")
    pagerank: float | None = None
    betweenness: float | None = None
    closeness: float | None = None
    clustering: float | None = None
    eigenvector: float | None = None
    louvain_community: int | None = Field(default=None, alias="louvainCommunity")
    k_core: int | None = Field(default=None, alias="kCore")
    security: SecurityProfile | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _lowercase_type(cls, value: Any) -> Any:
        return _normalize_node_type(value)

    @field_validator("sources", mode="before")
    @classmethod
    def _sources_as_strings(cls, value: Any) -> list[str]:
        return _flatten_sources(value)

    @field_validator("region", mode="before")
    @classmethod
    def _region_default(cls, value: Any) -> Any:
        return value or UNKNOWN_REGION

    @field_validator("importance", mode="before")
    @classmethod
    def _importance_default(cls, value: Any) -> Any:
        return DEFAULT_IMPORTANCE if value is None else value

    @field_validator("certainty", mode="before")
    @classmethod
    def _certainty_default(cls, value: Any) -> Any:
        return value or DEFAULT_CERTAINTY

    @field_validator("dates", mode="before")
    @classmethod
    def _dates_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @model_validator(mode="after")
    def _fill_year(self) -> "Node":
        if self.year is None and self.dates:
            self.year = derive_year(self.dates)
        return self

    def has_known_region(self) -> bool:
        return bool(self.region) and self.region != UNKNOWN_REGION

    def to_summary(self) -> dict:
        """Return a compact summary of this node."""
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "year": self.year,
            "region": self.region,
            "pagerank": self.pagerank,
            "community": self.louvain_community,
        }


class Edge(_GraphModel):
    """A directed, labeled, signed relationship between two node IDs."""

    id: str = Field(default_factory=generate_edge_id)
    source: str
    target: str
    label: str = DEFAULT_EDGE_LABEL
    dates: str | None = None
    sign: Sign | None = None
    certainty: Certainty | None = None

    # Derived
    weight: float | None = None
    is_balanced: bool | None = Field(default=None, alias="isBalanced")

    @field_validator("dates", mode="before")
    @classmethod
    def _dates_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def key(self) -> tuple[str, str, str]:
        """Identity used for duplicate suppression."""
        return (self.source, self.target, self.label)

    def other_end(self, node_id: str) -> str:
        """Return the node on the other end of this edge."""
        return self.target if self.source == node_id else self.source


class GraphMeta(_GraphModel):
    """Graph-level metrics and bookkeeping."""

    modularity: float | None = None
    global_balance: float | None = Field(default=None, alias="globalBalance")
    version: str | None = None
    last_saved: datetime | None = Field(default=None, alias="lastSaved")
    metrics_stale: bool = Field(default=False, alias="metricsStale")


class Graph(_GraphModel):
    """Nodes, edges and meta. Treated as an immutable value: mutations copy."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    meta: GraphMeta = Field(default_factory=GraphMeta)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_elements(cls, data: Any) -> Any:
        """Accept the renderer's ``{"data": {...}}`` element wrapping."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "edges" not in data and "links" in data:
            data["edges"] = data.pop("links")
        for key in ("nodes", "edges"):
            items = data.get(key)
            if isinstance(items, list):
                data[key] = [
                    item["data"] if isinstance(item, dict) and isinstance(item.get("data"), dict) else item
                    for item in items
                ]
        if data.get("meta") is None:
            data["meta"] = {}
        return data

    def node_map(self) -> dict[str, Node]:
        """Map node ID -> Node (first occurrence wins)."""
        mapping: dict[str, Node] = {}
        for node in self.nodes:
            mapping.setdefault(node.id, node)
        return mapping

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def edges_for(self, node_id: str) -> list[Edge]:
        """All edges touching a node (as source or target)."""
        return [e for e in self.edges if e.source == node_id or e.target == node_id]

    def dangling_edges(self) -> list[Edge]:
        """Edges whose source or target is not in the node set."""
        ids = self.node_ids()
        return [e for e in self.edges if e.source not in ids or e.target not in ids]

    def snapshot(self) -> "Graph":
        """Deep copy, used for history and worker hand-off."""
        return self.model_copy(deep=True)

    def to_dict(self) -> dict:
        """Serialize for storage / the rendering collaborator."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict) -> "Graph":
        """Deserialize from storage (accepts flat or ``data``-wrapped elements)."""
        return cls.model_validate(data)


class DuplicateCandidate(_GraphModel):
    """A pair of nodes that look like the same entity."""

    node_a: Node = Field(alias="nodeA")
    node_b: Node = Field(alias="nodeB")
    similarity: float
    reason: str = ""

    def to_summary(self) -> dict:
        return {
            "a": self.node_a.id,
            "a_label": self.node_a.label,
            "b": self.node_b.id,
            "b_label": self.node_b.label,
            "similarity": round(self.similarity, 3),
            "reason": self.reason,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Proposed changes (validated intermediate representation for external input)
# ─────────────────────────────────────────────────────────────────────────────


class ProposedNode(_GraphModel):
    """A node upsert as proposed by a user or the AI oracle.

    Every field is optional; a missing ``id`` makes the item invalid and it
    is skipped during patch application. Derived metric fields are not part
    of this model and are therefore dropped on parse.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    label: str | None = Field(default=None, validation_alias=AliasChoices("label", "name"))
    type: NodeType | None = None
    year: int | None = None
    dates: str | None = None
    description: str | None = None
    importance: float | None = Field(default=None, ge=0.0, le=1.0)
    region: str | None = None
    certainty: Certainty | None = None
    sources: list[str] | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _known_type_only(cls, value: Any) -> Any:
        value = _normalize_node_type(value)
        return value if value in NODE_TYPES else None

    @field_validator("certainty", mode="before")
    @classmethod
    def _known_certainty_only(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
        return value if value in CERTAINTIES else None

    @field_validator("year", mode="before")
    @classmethod
    def _year_from_anything(cls, value: Any) -> Any:
        if value is None or isinstance(value, int):
            return value
        return derive_year(value)

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0.0, min(1.0, float(value)))
        return value

    @field_validator("dates", mode="before")
    @classmethod
    def _dates_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("sources", mode="before")
    @classmethod
    def _sources_as_strings(cls, value: Any) -> Any:
        if value is None:
            return None
        return _flatten_sources(value)

    def provided_fields(self) -> dict[str, Any]:
        """Fields explicitly set by the proposer (None values dropped)."""
        return {
            k: v for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None and k != "id"
        }


class ProposedEdge(_GraphModel):
    """An edge insert as proposed by a user or the AI oracle."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    source: str | None = Field(default=None, validation_alias=AliasChoices("source", "from"))
    target: str | None = Field(default=None, validation_alias=AliasChoices("target", "to"))
    label: str | None = Field(
        default=None,
        validation_alias=AliasChoices("label", "relationship", "relation"),
    )
    dates: str | None = None
    sign: Sign | None = None
    certainty: Certainty | None = None

    @field_validator("dates", mode="before")
    @classmethod
    def _dates_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("sign", mode="before")
    @classmethod
    def _known_sign_only(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
        return value if value in ("positive", "negative") else None

    @field_validator("certainty", mode="before")
    @classmethod
    def _known_certainty_only(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
        return value if value in CERTAINTIES else None

    def to_edge(self) -> Edge:
        """Build a canonical edge (endpoints must already be checked)."""
        return Edge(
            id=self.id or generate_edge_id(),
            source=self.source,
            target=self.target,
            label=self.label or DEFAULT_EDGE_LABEL,
            dates=self.dates,
            certainty=self.certainty or DEFAULT_CERTAINTY,
            sign=self.sign,
        )


class TemporalPrediction(_GraphModel):
    """A predicted future relationship returned by the temporal oracle."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: str
    target: str
    relation: str = Field(validation_alias=AliasChoices("relation", "label", "relationship"))
    confidence: float = 0.0
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.0

    def to_proposed_edge(self) -> ProposedEdge:
        return ProposedEdge(source=self.source, target=self.target, label=self.relation)
