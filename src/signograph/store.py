"""Graph store: the single owner of the published graph.

Every structural mutation goes through one coroutine on GraphStore, is
serialized by an asyncio lock, records the previous graph in history,
runs the metrics engine in a worker thread and only then publishes.
Persistence is best-effort and never rolls back a mutation.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from .analysis import (
    CommunityHierarchy,
    RegionalAnalysis,
    community_hierarchy,
    filter_by_min_degree,
    filter_by_year,
    regional_analysis,
)
from .constants import AUTOSAVE_INTERVAL_SECONDS, DEFAULT_EMBEDDING_MODEL, HISTORY_CAPACITY
from .errors import StaleResultError, StorageError
from .history import HistoryManager
from .metrics import MetricsConfig, strip_metrics
from .models import DuplicateCandidate, Graph, ProposedEdge, ProposedNode
from .oracle import OracleProposal
from .patch import (
    PatchReport,
    apply_patch_with_report,
    bulk_delete,
    merge_nodes,
    remove_node,
    update_node,
)
from .seed import Seed, load_seed
from .similarity import SimilarityChecker, SimilarityConfig
from .storage import SnapshotStore
from .vectors import CachedEmbedder, Embedder, SentenceTransformerEmbedder
from .worker import MetricsWorker

logger = logging.getLogger(__name__)

DB_FILENAME = "signograph.db"


def default_data_path() -> Path:
    """Data directory from SIGNOGRAPH_PATH (default: ./.signograph)."""
    return Path(os.environ.get("SIGNOGRAPH_PATH", ".signograph"))


def autosave_interval_from_env() -> float:
    raw = os.environ.get("SIGNOGRAPH_AUTOSAVE_SECONDS")
    if not raw:
        return AUTOSAVE_INTERVAL_SECONDS
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid SIGNOGRAPH_AUTOSAVE_SECONDS={raw!r}, using {AUTOSAVE_INTERVAL_SECONDS}")
        return AUTOSAVE_INTERVAL_SECONDS


@dataclass
class UIState:
    """View state read by the rendering collaborator."""

    selected_node_ids: list[str] = field(default_factory=list)
    timeline_year: int | None = None
    min_degree: int = 0
    community_coloring: bool = False
    show_certainty: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class GraphStore:
    """Owns the graph, its history and its persistence.

    Use as an async context manager, or call open()/close() explicitly:

        async with GraphStore(path) as store:
            await store.apply_patch([...], [...])
    """

    def __init__(
        self,
        data_path: Path,
        *,
        snapshots: SnapshotStore | None = None,
        seed_loader: Callable[[], Seed] = load_seed,
        metrics_config: MetricsConfig | None = None,
        similarity_config: SimilarityConfig | None = None,
        embedder: Embedder | None = None,
        history_capacity: int = HISTORY_CAPACITY,
        autosave_interval: float | None = None,
    ):
        """Initialize store (nothing is loaded until open()).

        Args:
            data_path: Directory holding signograph.db
            snapshots: Snapshot persistence (default: SQLite in data_path)
            seed_loader: Returns the bundled seed graph and its version
            metrics_config: Enrichment parameters
            similarity_config: Duplicate detection thresholds
            embedder: Embedding provider; when None a sentence-transformers
                model is used, loaded lazily on first semantic search
            history_capacity: Undo depth
            autosave_interval: Seconds between autosaves, 0 disables
                (default: SIGNOGRAPH_AUTOSAVE_SECONDS or 10)
        """
        self.data_path = data_path
        self._snapshots = snapshots or SnapshotStore(data_path / DB_FILENAME)
        self._seed_loader = seed_loader
        self.metrics_config = metrics_config or MetricsConfig()
        self._worker = MetricsWorker(self.metrics_config)
        self.history = HistoryManager(history_capacity)
        self.ui = UIState()
        self.autosave_interval = autosave_interval_from_env() if autosave_interval is None else autosave_interval

        self._embedder = embedder
        self._provider: SentenceTransformerEmbedder | None = None
        if embedder is None:
            self._provider = SentenceTransformerEmbedder(
                os.environ.get("SIGNOGRAPH_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
            )
        self._cached_embedder: CachedEmbedder | None = None
        self.similarity = SimilarityChecker(self._get_embedder, similarity_config)

        self._graph = Graph()
        self._version: str | None = None
        self._dirty = False
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._pending_saves: set[asyncio.Task] = set()
        self._autosave_task: asyncio.Task | None = None
        self._opened = False

    # --- Lifecycle ---

    async def open(self) -> "GraphStore":
        """Hydrate from the stored snapshot, or from the seed.

        The seed wins when nothing is stored or the stored version differs
        from the seed version; the seeded graph is saved immediately.
        """
        seed = self._seed_loader()
        stored = await asyncio.to_thread(self._snapshots.load)

        if stored is not None and stored.version == seed.version:
            logger.info(f"Loaded snapshot v{stored.version} saved at {stored.saved_at.isoformat()}")
            base, version, fresh = stored.graph, stored.version, False
        else:
            if stored is not None:
                logger.info(f"Stored snapshot v{stored.version} is outdated, rehydrating seed v{seed.version}")
            base, version, fresh = seed.graph, seed.version, True

        self._version = version
        self._graph = await self._enrich_or_flag(base.model_copy(update={
            "meta": base.meta.model_copy(update={"version": version}),
        }))
        self._opened = True

        if fresh:
            self._dirty = True
            await self.save()

        if self.autosave_interval > 0:
            self._autosave_task = asyncio.create_task(self._autosave_loop())
        return self

    async def close(self) -> None:
        """Stop autosave, wait for pending saves, save one last time and release the database."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            try:
                await self._autosave_task
            except asyncio.CancelledError:
                pass
            self._autosave_task = None
        await self.flush()
        if self._opened:
            await self.save()
        self._snapshots.close()
        self._opened = False

    async def __aenter__(self) -> "GraphStore":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            if self._dirty:
                await self.save()

    def _schedule_save(self) -> None:
        """Save in the background after a mutation; the caller does not wait."""
        task = asyncio.create_task(self.save())
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def flush(self) -> None:
        """Wait until every save scheduled so far has finished."""
        if self._pending_saves:
            await asyncio.gather(*list(self._pending_saves))

    async def save(self) -> bool:
        """Persist the published graph. Failures are logged, not raised.

        Saves run one at a time, each writing the graph published when it
        starts, so the slot never goes back to an older graph.
        """
        async with self._save_lock:
            graph = self._graph
            try:
                stored = await asyncio.to_thread(self._snapshots.save, graph, self._version)
            except StorageError as e:
                logger.warning(f"Save failed, keeping in-memory graph: {e}")
                return False
            if self._graph is graph:
                self._graph = self._graph.model_copy(update={
                    "meta": self._graph.meta.model_copy(update={"last_saved": stored.saved_at}),
                })
                self._dirty = False
            return True

    # --- Published state ---

    @property
    def graph(self) -> Graph:
        return self._graph

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    @property
    def filtered_graph(self) -> Graph:
        """Published graph narrowed by the timeline year and degree filter."""
        graph = filter_by_year(self._graph, self.ui.timeline_year)
        return filter_by_min_degree(graph, self.ui.min_degree)

    def stats(self) -> dict[str, Any]:
        """Summary counts and graph-level metrics."""
        meta = self._graph.meta
        type_counts: dict[str, int] = {}
        for node in self._graph.nodes:
            type_counts[node.type] = type_counts.get(node.type, 0) + 1
        return {
            "nodes": len(self._graph.nodes),
            "edges": len(self._graph.edges),
            "node_types": type_counts,
            "modularity": meta.modularity,
            "global_balance": meta.global_balance,
            "metrics_stale": meta.metrics_stale,
            "version": self._version,
            "last_saved": meta.last_saved.isoformat() if meta.last_saved else None,
            "can_undo": self.can_undo,
            "can_redo": self.can_redo,
            "embeddings": self._provider.health.to_dict() if self._provider else None,
        }

    def _publish(self, graph: Graph) -> None:
        self._graph = graph
        self._dirty = True

    async def _enrich_or_flag(self, structural: Graph, generation: int | None = None) -> Graph:
        """Enrich ``structural``; on failure return it with metrics flagged stale.

        Raises:
            StaleResultError: If a newer graph was published meanwhile
        """
        if generation is None:
            generation = self._worker.stamp()
        try:
            return await self._worker.compute(structural, generation)
        except StaleResultError:
            raise
        except Exception as e:  # noqa: BLE001 - keep the structural change, flag metrics
            logger.warning(f"Metrics recompute failed, publishing stale metrics: {e}", exc_info=True)
            self._worker.mark_published(generation)
            return structural.model_copy(update={
                "meta": structural.meta.model_copy(update={"metrics_stale": True}),
            })

    async def _commit(self, structural: Graph) -> Graph:
        """Record history, enrich and publish one structural change (lock held)."""
        self.history.push(self._graph)
        published = await self._enrich_or_flag(structural)
        self._publish(published)
        self._schedule_save()
        self._forget_missing_selection()
        return published

    def _forget_missing_selection(self) -> None:
        ids = self._graph.node_ids()
        self.ui.selected_node_ids = [n for n in self.ui.selected_node_ids if n in ids]

    # --- Mutations ---

    async def apply_patch(
        self,
        node_patches: Iterable[ProposedNode | dict],
        edge_patches: Iterable[ProposedEdge | dict],
    ) -> PatchReport:
        """Upsert nodes and insert edges (see patch.apply_patch_with_report)."""
        async with self._lock:
            result = apply_patch_with_report(
                self._graph, list(node_patches), list(edge_patches), enrich_result=False
            )
            if not result.report.changed:
                logger.debug("Patch changed nothing; not recorded in history")
                return result.report
            await self._commit(result.graph)
            logger.info(
                f"Applied patch: {len(result.report.nodes_created)} created, "
                f"{len(result.report.nodes_updated)} updated, {len(result.report.edges_added)} edges"
            )
            return result.report

    async def apply_proposal(self, proposal: OracleProposal) -> PatchReport:
        """Apply an oracle proposal after review.

        Failed proposals change nothing and come back as an empty report.
        """
        if not proposal.ok:
            logger.info(f"Not applying failed oracle proposal: {proposal.error}")
            return PatchReport()
        edges = list(proposal.edges) + [p.to_proposed_edge() for p in proposal.predictions]
        return await self.apply_patch(proposal.nodes, edges)

    async def merge_nodes(self, keep_id: str, drop_id: str) -> Graph:
        """Merge ``drop_id`` into ``keep_id``.

        Raises:
            MergeError: If either node is missing or the ids are equal
        """
        async with self._lock:
            structural = merge_nodes(self._graph, keep_id, drop_id, enrich_result=False)
            return await self._commit(structural)

    async def bulk_delete(self, ids: Iterable[str]) -> int:
        """Delete nodes and their edges. Returns the number of nodes removed."""
        doomed = set(ids)
        async with self._lock:
            present = doomed & self._graph.node_ids()
            if not present:
                return 0
            structural = bulk_delete(self._graph, present, enrich_result=False)
            await self._commit(structural)
            logger.info(f"Deleted {len(present)} nodes")
            return len(present)

    async def remove_node(self, node_id: str) -> bool:
        async with self._lock:
            if self._graph.get_node(node_id) is None:
                return False
            await self._commit(remove_node(self._graph, node_id, enrich_result=False))
            return True

    async def update_node(self, node_id: str, fields: dict[str, Any]) -> Graph:
        """Edit a node's descriptive fields.

        Raises:
            PatchValidationError: On unknown node, id change or derived fields
        """
        async with self._lock:
            structural = update_node(self._graph, node_id, fields, enrich_result=False)
            return await self._commit(structural)

    async def undo(self) -> bool:
        """Publish the graph before the last mutation. False if nothing to undo."""
        async with self._lock:
            previous = self.history.undo(self._graph)
            if previous is None:
                return False
            self._worker.mark_published(self._worker.stamp())
            self._publish(previous)
            self._schedule_save()
            self._forget_missing_selection()
            return True

    async def redo(self) -> bool:
        """Re-publish the last undone graph. False if nothing to redo."""
        async with self._lock:
            following = self.history.redo(self._graph)
            if following is None:
                return False
            self._worker.mark_published(self._worker.stamp())
            self._publish(following)
            self._schedule_save()
            self._forget_missing_selection()
            return True

    async def refresh_metrics(self) -> bool:
        """Recompute metrics for the published graph without blocking mutations.

        The result is dropped if a mutation published a newer graph while
        it ran. Not recorded in history.

        Returns:
            True if the refreshed graph was published
        """
        # Stamp under the lock so a mutation in flight always outranks us
        async with self._lock:
            captured = self._graph
            generation = self._worker.stamp()
        try:
            enriched = await self._enrich_or_flag(strip_metrics(captured), generation)
        except StaleResultError as e:
            logger.debug(f"Discarding stale metrics refresh: {e}")
            return False
        if self._graph is not captured:
            logger.debug("Graph changed during metrics refresh; discarding result")
            return False
        self._publish(enriched)
        return True

    async def reset_to_seed(self) -> None:
        """Replace the graph with the bundled seed (undoable)."""
        seed = self._seed_loader()
        async with self._lock:
            self._version = seed.version
            await self._commit(seed.graph)

    # --- Analyses ---

    def _get_embedder(self) -> Embedder:
        if self._cached_embedder is None:
            if self._embedder is not None:
                inner, namespace = self._embedder, type(self._embedder).__name__
            else:
                inner, namespace = self._provider, self._provider.model_name
            # Vectors persist next to the snapshot, keyed per model
            self._cached_embedder = CachedEmbedder(
                inner, self._snapshots.get_connection(), namespace, lock=self._snapshots.lock
            )
        return self._cached_embedder

    async def find_duplicates(self, semantic: bool = False, threshold: float | None = None) -> list[DuplicateCandidate]:
        """Duplicate candidates in the published graph.

        Works on the graph captured at call time; concurrent mutations do
        not affect the scan.
        """
        graph = self._graph
        if semantic:
            return await self.similarity.semantic_duplicates(graph, threshold)
        return self.similarity.lexical_duplicates(graph, threshold)

    def regional_analysis(self) -> RegionalAnalysis:
        return regional_analysis(self._graph)

    def community_hierarchy(self) -> CommunityHierarchy:
        return community_hierarchy(self._graph)

    # --- View state ---

    def set_year_filter(self, year: int | None) -> None:
        self.ui.timeline_year = year

    def set_min_degree(self, min_degree: int) -> None:
        self.ui.min_degree = max(0, min_degree)

    def select(self, node_ids: Iterable[str], additive: bool = False) -> list[str]:
        """Select nodes (unknown ids ignored). Returns the new selection."""
        known = self._graph.node_ids()
        chosen = [n for n in node_ids if n in known]
        if additive:
            chosen = self.ui.selected_node_ids + [n for n in chosen if n not in self.ui.selected_node_ids]
        self.ui.selected_node_ids = chosen
        return chosen

    def clear_selection(self) -> None:
        self.ui.selected_node_ids = []

    def toggle_community_coloring(self) -> bool:
        self.ui.community_coloring = not self.ui.community_coloring
        return self.ui.community_coloring

    def toggle_certainty(self) -> bool:
        self.ui.show_certainty = not self.ui.show_certainty
        return self.ui.show_certainty
