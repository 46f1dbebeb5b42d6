"""Embedding providers for semantic duplicate detection.

Uses sentence-transformers for embeddings, cached by exact input text in
memory and, when a connection is shared, in the snapshot SQLite database.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import numpy as np

from .constants import DEFAULT_EMBEDDING_MODEL

logger = logging.getLogger(__name__)

Vector = list[float]


class Embedder(Protocol):
    """Embedding collaborator: text in, vector out.

    An empty vector means the provider could not embed that text.
    """

    async def embed(self, text: str) -> Vector: ...

    async def embed_batch(self, texts: list[str]) -> list[Vector]: ...


class VectorStatus(Enum):
    """Status of the embedding subsystem."""

    READY = "ready"
    DEGRADED = "degraded"  # Model not loaded yet or failed to load
    UNAVAILABLE = "unavailable"  # sentence-transformers not installed


@dataclass
class VectorHealth:
    """Health status of the embedding provider."""

    status: VectorStatus
    error: str | None = None
    embedding_model: str | None = None
    dimension: int | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "error": self.error,
            "embedding_model": self.embedding_model,
            "dimension": self.dimension,
        }


def _stable_hash(text: str) -> str:
    """Deterministic hash used as the cache key.

    Uses SHA-256 instead of Python's hash() which is randomized
    by default (PYTHONHASHSEED) for security reasons.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def cosine_similarity(vec1: Vector, vec2: Vector) -> float:
    """Cosine similarity of two vectors; 0.0 if either has zero norm."""
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)
    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(a, b) / (norm1 * norm2))


class SentenceTransformerEmbedder:
    """Embeds text with a sentence-transformers model.

    The model loads lazily on first use to avoid the multi-second cold
    start; encoding runs in a worker thread so the event loop stays free.
    """

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL):
        self._model_name = model_name
        self._model = None
        self._model_loaded = False
        self.health = VectorHealth(
            status=VectorStatus.DEGRADED,
            error="Embedding model loads on first use",
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    def _try_load_model(self) -> bool:
        """Try to load embedding model. Returns True on success."""
        if self._model_loaded:
            return True

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            self.health = VectorHealth(
                status=VectorStatus.UNAVAILABLE,
                error=f"sentence-transformers not installed: {e}",
            )
            logger.warning(f"Embedding provider unavailable: {e}")
            return False

        try:
            self._model = SentenceTransformer(self._model_name)
            self._model_loaded = True
            self.health = VectorHealth(
                status=VectorStatus.READY,
                embedding_model=self._model_name,
                dimension=self._model.get_sentence_embedding_dimension(),
            )
            return True
        except (OSError, RuntimeError, ValueError) as e:
            self.health = VectorHealth(
                status=VectorStatus.DEGRADED,
                error=f"Embedding model failed: {e}",
            )
            logger.warning(f"Embedding model unavailable: {e}")
            return False

    @property
    def model(self):
        """Lazy-load the embedding model."""
        if not self._model_loaded:
            self._try_load_model()
        return self._model

    def _encode(self, texts: list[str]) -> list[Vector]:
        model = self.model
        if model is None:
            return [[] for _ in texts]
        try:
            return [row.tolist() for row in model.encode(texts)]
        except (RuntimeError, ValueError, TypeError) as e:
            logger.warning(f"Embedding batch of {len(texts)} failed: {e}")
            return [[] for _ in texts]

    async def embed(self, text: str) -> Vector:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


class CachedEmbedder:
    """Wraps an embedder with an exact-text cache.

    Repeated texts are served from the cache; all misses of one call go to
    the wrapped embedder as a single batch. Empty vectors (provider
    failures) are never cached so a later call can retry them.

    If a SQLite connection is given, cached vectors also persist in the
    ``embedding_cache`` table (float32 blobs keyed by text hash). Reads and
    writes run in a worker thread while holding ``lock``; pass the lock of
    whoever owns the connection.
    """

    def __init__(
        self,
        inner: Embedder,
        conn: sqlite3.Connection | None = None,
        namespace: str = "default",
        lock: threading.Lock | None = None,
    ):
        self._inner = inner
        self._conn = conn
        self._namespace = namespace
        self._lock = lock or threading.Lock()
        self._table_ready = False
        self._memory: dict[str, Vector] = {}
        self.hits = 0
        self.misses = 0

    def _ensure_table(self) -> None:
        """Create the cache table on first use (lock held)."""
        if self._table_ready:
            return
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS embedding_cache (
                text_hash TEXT NOT NULL,
                namespace TEXT NOT NULL,
                vector BLOB NOT NULL,
                PRIMARY KEY (text_hash, namespace)
            )
        """)
        self._conn.commit()
        self._table_ready = True

    def _read_rows(self, keys: list[str]) -> dict[str, Vector]:
        """Fetch persisted vectors for ``keys``. Runs in a worker thread."""
        found: dict[str, Vector] = {}
        with self._lock:
            try:
                self._ensure_table()
                for key in keys:
                    row = self._conn.execute(
                        "SELECT vector FROM embedding_cache WHERE text_hash = ? AND namespace = ?",
                        (key, self._namespace),
                    ).fetchone()
                    if row is not None:
                        found[key] = np.frombuffer(row[0], dtype=np.float32).tolist()
            except sqlite3.Error as e:
                logger.debug(f"Embedding cache read failed: {e}")
        return found

    def _write_rows(self, entries: dict[str, Vector]) -> None:
        """Persist new vectors. Runs in a worker thread."""
        with self._lock:
            try:
                self._ensure_table()
                self._conn.executemany(
                    "INSERT OR REPLACE INTO embedding_cache (text_hash, namespace, vector) VALUES (?, ?, ?)",
                    [
                        (key, self._namespace, np.asarray(vec, dtype=np.float32).tobytes())
                        for key, vec in entries.items()
                    ],
                )
                self._conn.commit()
            except sqlite3.Error as e:
                logger.warning(f"Embedding cache write failed: {e}")

    def __len__(self) -> int:
        return len(self._memory)

    async def embed(self, text: str) -> Vector:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        keys = [_stable_hash(t) for t in texts]
        unknown = [k for k in dict.fromkeys(keys) if k not in self._memory]
        if unknown and self._conn is not None:
            self._memory.update(await asyncio.to_thread(self._read_rows, unknown))

        missing: dict[str, str] = {}
        for key, text in zip(keys, texts):
            if key not in self._memory:
                missing.setdefault(key, text)
        self.hits += sum(1 for k in keys if k in self._memory)
        self.misses += len(missing)

        fetched_by_key: dict[str, Vector] = {}
        if missing:
            fetched = await self._inner.embed_batch(list(missing.values()))
            if len(fetched) != len(missing):
                logger.warning(
                    f"Embedder returned {len(fetched)} vectors for {len(missing)} texts; ignoring batch"
                )
                fetched = [[] for _ in missing]
            fetched_by_key = dict(zip(missing, fetched))
            new_entries = {key: vec for key, vec in fetched_by_key.items() if vec}
            self._memory.update(new_entries)
            if new_entries and self._conn is not None:
                await asyncio.to_thread(self._write_rows, new_entries)

        return [list(self._memory.get(k) or fetched_by_key.get(k, [])) for k in keys]
