"""Shared behaviour for vector indexes: validation, locking and SQLite persistence."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from assurag.config import config
from assurag.errors import DimensionMismatch, ModelMismatch
from assurag.models import IndexEntry, Passage, RetrievalResult

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from assurag.vector_store.filters import MetadataFilter

logger = config.get_logger(__name__)

VECTOR_DTYPE = np.dtype("<f4")


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        """Create an unlocked lock."""
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold shared access for the duration of the block."""
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Hold exclusive access for the duration of the block."""
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class VectorIndex:
    """Cosine-similarity index over unit-normalized passage vectors.

    The index fixes its dimension and embedding model id on the first insert
    and rejects anything that disagrees. Writers (``upsert``, ``delete``,
    ``rebuild``, ``load``) take the lock exclusively; ``query`` shares it.
    Subclasses own the search structure through the ``_backend_*`` hooks.
    """

    backend = "base"

    def __init__(self, db_path: Path = Path("data/vector_store.db")) -> None:
        """Initialize an empty index persisted to ``db_path``."""
        self.db_path = Path(db_path)
        self._entries: dict[str, IndexEntry] = {}
        self._dimension: int | None = None
        self._model_id: str | None = None
        self._lock = ReadWriteLock()
        self._save_lock = threading.Lock()

    @property
    def dimension(self) -> int | None:
        """Vector length established by the first insert."""
        return self._dimension

    @property
    def model_id(self) -> str | None:
        """Embedding model every stored vector belongs to."""
        return self._model_id

    def __len__(self) -> int:
        """Number of stored entries."""
        return len(self._entries)

    @staticmethod
    def _normalize_embedding(embedding: np.ndarray) -> np.ndarray:
        """Scale to unit length so inner product equals cosine similarity.

        Returns:
            Normalized float32 vector; zero vectors are returned unchanged.
        """
        vector = np.array(embedding, dtype=np.float32).reshape(-1)
        norm = float(np.linalg.norm(vector))
        if norm == 0:
            return vector
        return vector / norm

    def _check_model(self, model_id: str) -> None:
        if self._model_id is not None and model_id != self._model_id:
            msg = (
                f"Vectors from model '{model_id}' cannot be mixed with index model "
                f"'{self._model_id}'"
            )
            raise ModelMismatch(msg)

    def _check_dimension(self, length: int) -> None:
        if self._dimension is not None and length != self._dimension:
            msg = (
                f"Embedding dimension {length} does not match "
                f"index dimension {self._dimension}"
            )
            raise DimensionMismatch(msg)

    def upsert(
        self,
        passage_id: str,
        vector: np.ndarray,
        metadata: dict[str, Any],
        *,
        model_id: str,
    ) -> None:
        """Insert or replace the entry for ``passage_id``.

        Raises:
            DimensionMismatch: If the vector length disagrees with the index.
            ModelMismatch: If the vector comes from a different model.
        """
        self.upsert_batch([(passage_id, vector, metadata)], model_id=model_id)

    def upsert_batch(
        self,
        items: Sequence[tuple[str, np.ndarray, dict[str, Any]]],
        *,
        model_id: str,
    ) -> None:
        """Insert or replace several entries atomically.

        Every vector is validated before any is written, so a rejected batch
        leaves the index unchanged.

        Raises:
            DimensionMismatch: If a vector length disagrees with the index.
            ModelMismatch: If the vectors come from a different model.
        """
        if not items:
            return

        with self._lock.write():
            count = self._upsert_unlocked(items, model_id)
        logger.debug("Upserted %d entries into %s index", count, self.backend)

    def replace_document(
        self,
        document_id: str,
        items: Sequence[tuple[str, np.ndarray, dict[str, Any]]],
        *,
        model_id: str,
    ) -> int:
        """Swap every entry of ``document_id`` for ``items`` in one write.

        Readers see either the old passages or the new ones, never a mix.

        Returns:
            Number of stale entries removed.

        Raises:
            DimensionMismatch: If a vector length disagrees with the index.
            ModelMismatch: If the vectors come from a different model.
        """
        with self._lock.write():
            if items:
                self._upsert_unlocked(items, model_id)
            fresh = {passage_id for passage_id, _, _ in items}
            stale = [
                passage_id
                for passage_id, entry in self._entries.items()
                if entry.metadata.get("document_id") == document_id
                and passage_id not in fresh
            ]
            if stale:
                self._backend_remove(stale)
                for passage_id in stale:
                    del self._entries[passage_id]
        logger.info(
            "Indexed %d passages of document %s (%d stale removed)",
            len(items),
            document_id,
            len(stale),
        )
        return len(stale)

    def _upsert_unlocked(
        self,
        items: Sequence[tuple[str, np.ndarray, dict[str, Any]]],
        model_id: str,
    ) -> int:
        self._check_model(model_id)
        dimension = self._dimension
        batch: dict[str, IndexEntry] = {}
        for passage_id, vector, metadata in items:
            array = np.asarray(vector, dtype=np.float32).reshape(-1)
            if dimension is None:
                dimension = int(array.shape[0])
            if array.shape[0] != dimension:
                msg = (
                    f"Embedding dimension {array.shape[0]} does not match "
                    f"index dimension {dimension}"
                )
                raise DimensionMismatch(msg)
            batch[passage_id] = IndexEntry(
                passage_id=passage_id,
                vector=self._normalize_embedding(array),
                metadata=dict(metadata),
            )
        entries = list(batch.values())

        if self._dimension is None:
            self._dimension = dimension
            self._model_id = model_id
            self._backend_reset(dimension)
            logger.info(
                "Initialized %s index with dimension %d for model %s",
                self.backend,
                dimension,
                model_id,
            )

        replaced = [
            passage_id for passage_id in batch if passage_id in self._entries
        ]
        if replaced:
            self._backend_remove(replaced)
        self._backend_add(entries)
        for entry in entries:
            self._entries[entry.passage_id] = entry
        return len(entries)

    def delete(self, passage_id: str) -> bool:
        """Remove the entry for ``passage_id``.

        Returns:
            True if an entry was removed.
        """
        with self._lock.write():
            if passage_id not in self._entries:
                return False
            self._backend_remove([passage_id])
            del self._entries[passage_id]
        return True

    def delete_document(self, document_id: str) -> int:
        """Remove every entry whose metadata names ``document_id``.

        Returns:
            Number of entries removed.
        """
        with self._lock.write():
            passage_ids = [
                passage_id
                for passage_id, entry in self._entries.items()
                if entry.metadata.get("document_id") == document_id
            ]
            if passage_ids:
                self._backend_remove(passage_ids)
                for passage_id in passage_ids:
                    del self._entries[passage_id]
        if passage_ids:
            logger.info(
                "Removed %d entries of document %s", len(passage_ids), document_id
            )
        return len(passage_ids)

    def rebuild(self) -> None:
        """Recompute the search structure from all current entries."""
        with self._lock.write():
            self._rebuild_unlocked()

    def _rebuild_unlocked(self) -> None:
        if self._dimension is None:
            return
        self._backend_reset(self._dimension)
        self._backend_add(list(self._entries.values()))
        logger.info(
            "Rebuilt %s index with %d vectors", self.backend, len(self._entries)
        )

    def get(self, passage_id: str) -> IndexEntry | None:
        """Return the stored entry for ``passage_id``, if any."""
        with self._lock.read():
            return self._entries.get(passage_id)

    def passage(self, passage_id: str) -> Passage | None:
        """Hydrate the passage recorded in an entry's metadata snapshot."""
        entry = self.get(passage_id)
        if entry is None:
            return None
        return Passage.from_index_metadata(passage_id, entry.metadata)

    def query(
        self,
        vector: np.ndarray,
        k: int,
        metadata_filter: MetadataFilter | None = None,
        *,
        model_id: str | None = None,
    ) -> list[RetrievalResult]:
        """Return up to ``k`` entries most similar to ``vector``.

        The filter narrows the candidate set before the nearest-neighbour
        search, so a selective filter still yields up to ``k`` matches.

        Returns:
            Results ordered by descending cosine similarity, ranks from 1.

        Raises:
            DimensionMismatch: If the query vector has the wrong length.
            ModelMismatch: If the query vector comes from a different model.
        """
        if k <= 0:
            return []

        with self._lock.read():
            if model_id is not None:
                self._check_model(model_id)
            if not self._entries:
                return []

            query_vector = np.asarray(vector, dtype=np.float32).reshape(-1)
            self._check_dimension(int(query_vector.shape[0]))
            query_vector = self._normalize_embedding(query_vector)

            candidates: list[str] | None = None
            if metadata_filter is not None:
                candidates = [
                    passage_id
                    for passage_id, entry in self._entries.items()
                    if metadata_filter.matches(entry.metadata)
                ]
                if not candidates:
                    return []

            scored = self._backend_search(query_vector, k, candidates)

        scored.sort(key=lambda item: (-item[1], item[0]))
        return [
            RetrievalResult(passage_id=passage_id, score=score, rank=rank)
            for rank, (passage_id, score) in enumerate(scored[:k], start=1)
        ]

    def _create_tables(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS index_info (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                position INTEGER PRIMARY KEY,
                passage_id TEXT NOT NULL UNIQUE,
                document_id TEXT,
                vector BLOB NOT NULL,
                metadata TEXT NOT NULL
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_entries_document ON entries(document_id)"
        )

    def save(self) -> None:
        """Persist every entry, plus backend state, to the SQLite file."""
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        with self._save_lock, self._lock.read():
            try:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()
                    self._create_tables(cursor)
                    cursor.execute("DELETE FROM entries")
                    cursor.execute("DELETE FROM index_info")
                    cursor.executemany(
                        "INSERT INTO index_info (key, value) VALUES (?, ?)",
                        [
                            ("backend", self.backend),
                            ("dimension", str(self._dimension or "")),
                            ("model_id", self._model_id or ""),
                        ],
                    )
                    cursor.executemany(
                        """
                        INSERT INTO entries (
                            position, passage_id, document_id, vector, metadata
                        )
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                position,
                                entry.passage_id,
                                entry.metadata.get("document_id"),
                                entry.vector.astype(VECTOR_DTYPE).tobytes(),
                                json.dumps(entry.metadata, sort_keys=True),
                            )
                            for position, entry in enumerate(self._entries.values())
                        ],
                    )
                    self._backend_save(cursor)
                    conn.commit()
            except sqlite3.Error:
                logger.exception("Error saving %s index", self.backend)
                raise
        logger.info("Saved %d entries to %s", len(self._entries), self.db_path)

    def load(self) -> None:
        """Replace the in-memory state with the entries saved on disk.

        A missing file leaves an empty index.

        Raises:
            sqlite3.Error: If the metadata read fails.
        """
        if not self.db_path.exists():
            logger.warning(
                "Vector store not found at %s. Start with an empty index.",
                self.db_path,
            )
            return

        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                self._create_tables(cursor)
                cursor.execute("SELECT key, value FROM index_info")
                info = dict(cursor.fetchall())
                cursor.execute(
                    "SELECT passage_id, vector, metadata FROM entries ORDER BY position"
                )
                entries = {
                    passage_id: IndexEntry(
                        passage_id=passage_id,
                        vector=np.frombuffer(blob, dtype=VECTOR_DTYPE).astype(
                            np.float32
                        ),
                        metadata=json.loads(metadata),
                    )
                    for passage_id, blob, metadata in cursor.fetchall()
                }
                backend_state = self._backend_load_state(cursor)
        except sqlite3.Error:
            logger.exception("Error loading %s index", self.backend)
            raise

        with self._lock.write():
            self._entries = entries
            dimension = info.get("dimension")
            self._dimension = int(dimension) if dimension else None
            self._model_id = info.get("model_id") or None
            if self._dimension is not None and not self._backend_restore(
                backend_state
            ):
                self._rebuild_unlocked()

        logger.info("Loaded %d entries from %s", len(self._entries), self.db_path)

    # Backend hooks. Called with the write lock held (read lock for search/save).

    def _backend_reset(self, dimension: int) -> None:
        raise NotImplementedError

    def _backend_add(self, entries: list[IndexEntry]) -> None:
        raise NotImplementedError

    def _backend_remove(self, passage_ids: list[str]) -> None:
        raise NotImplementedError

    def _backend_search(
        self,
        query_vector: np.ndarray,
        k: int,
        candidates: list[str] | None,
    ) -> list[tuple[str, float]]:
        raise NotImplementedError

    def _backend_save(self, cursor: sqlite3.Cursor) -> None:  # noqa: PLR6301
        """Persist backend-specific state; nothing by default."""
        del cursor

    def _backend_load_state(
        self, cursor: sqlite3.Cursor
    ) -> Any:  # noqa: ANN401, PLR6301
        """Read backend-specific state saved by ``_backend_save``."""
        del cursor
        return None

    def _backend_restore(self, state: Any) -> bool:  # noqa: ANN401, ARG002, PLR6301
        """Restore from saved state; False requests a rebuild from entries."""
        return False
