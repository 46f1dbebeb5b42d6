"""Single-slot graph snapshot storage backed by SQLite.

Only the latest snapshot is kept, under the "current" slot:
{id: "current", graph, version, saved_at}. The same database file also
holds the embedding cache (see vectors.CachedEmbedder).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from .constants import DEFAULT_GRAPH_VERSION, SNAPSHOT_SLOT
from .errors import StorageError
from .models import Graph, utc_now

logger = logging.getLogger(__name__)


@dataclass
class StoredSnapshot:
    """A graph as read back from storage."""

    graph: Graph
    version: str
    saved_at: datetime


class SnapshotStore:
    """Latest-snapshot-only persistence.

    Saves run in worker threads, so the connection is shared across
    threads behind a lock. The embedding cache takes the same lock.
    """

    def __init__(self, db_path: Path):
        """Initialize snapshot store.

        Args:
            db_path: Path to signograph.db (shared with the embedding cache)
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                created_at TEXT DEFAULT (datetime('now'))
            )
        """)
        version = conn.execute("SELECT version FROM schema_version").fetchone()
        if version is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        elif version[0] < 1:
            logger.warning(f"Schema version {version[0]} detected, may need migration")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                id TEXT PRIMARY KEY,
                graph TEXT NOT NULL,
                version TEXT NOT NULL,
                saved_at TEXT NOT NULL
            )
        """)
        conn.commit()

    def save(self, graph: Graph, version: str | None = None) -> StoredSnapshot:
        """Overwrite the current slot with ``graph``.

        Args:
            graph: Graph to persist
            version: Data version tag (default: graph.meta.version, then "1.0")

        Raises:
            StorageError: If the write fails
        """
        saved_at = utc_now()
        version = version or graph.meta.version or DEFAULT_GRAPH_VERSION
        stored = graph.model_copy(update={
            "meta": graph.meta.model_copy(update={"last_saved": saved_at, "version": version}),
        })
        payload = json.dumps(stored.to_dict(), ensure_ascii=False)

        try:
            with self._lock:
                conn = self._get_conn()
                conn.execute(
                    """
                    INSERT OR REPLACE INTO snapshots (id, graph, version, saved_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (SNAPSHOT_SLOT, payload, version, saved_at.isoformat()),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save snapshot: {e}") from e

        return StoredSnapshot(graph=stored, version=version, saved_at=saved_at)

    def load(self) -> StoredSnapshot | None:
        """Read the current slot.

        Returns:
            The stored snapshot, or None if nothing was saved yet or the
            stored payload is unreadable (logged as a warning)
        """
        try:
            with self._lock:
                row = self._get_conn().execute(
                    "SELECT graph, version, saved_at FROM snapshots WHERE id = ?",
                    (SNAPSHOT_SLOT,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read snapshot: {e}") from e

        if row is None:
            return None

        try:
            graph = Graph.from_dict(json.loads(row["graph"]))
            version = row["version"] or DEFAULT_GRAPH_VERSION
            graph = graph.model_copy(update={"meta": graph.meta.model_copy(update={"version": version})})
            return StoredSnapshot(
                graph=graph,
                version=version,
                saved_at=datetime.fromisoformat(row["saved_at"]),
            )
        except (json.JSONDecodeError, ValidationError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable snapshot: {e}")
            return None

    def clear(self) -> None:
        """Delete the stored snapshot (used by tests and `init --force`)."""
        with self._lock:
            conn = self._get_conn()
            conn.execute("DELETE FROM snapshots")
            conn.commit()

    def get_connection(self) -> sqlite3.Connection:
        """Get the database connection for sharing with other components."""
        return self._get_conn()

    @property
    def lock(self) -> threading.Lock:
        """Lock guarding the shared connection; hold it around any use of get_connection()."""
        return self._lock

    def close(self) -> None:
        """Close database connection.

        Forces a WAL checkpoint before closing to ensure all changes
        are written to the main database file.
        """
        with self._lock:
            if self._conn is not None:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                self._conn.close()
                self._conn = None
