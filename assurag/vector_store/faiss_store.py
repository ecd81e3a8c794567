"""FAISS-backed vector index with SQLite-persisted entries."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import faiss
import numpy as np

from assurag.config import config
from assurag.vector_store.base import VectorIndex

if TYPE_CHECKING:
    from assurag.models import IndexEntry

logger = config.get_logger(__name__)


class FaissVectorIndex(VectorIndex):
    """Vector index using a FAISS inner-product index over unit vectors.

    FAISS addresses vectors by int64 label, so each passage id is mapped to a
    label that is persisted alongside the index file.
    """

    backend = "faiss"

    def __init__(
        self,
        db_path: Path = Path("data/vector_store.db"),
        index_path: Path = Path("data/faiss/index.faiss"),
    ) -> None:
        """Configure FAISS-backed vector index."""
        super().__init__(db_path)
        self.index_path = Path(index_path)
        self.index: faiss.IndexIDMap | None = None
        self._labels: dict[str, int] = {}
        self._ids_by_label: dict[int, str] = {}
        self._next_label = 0

    def _init_index(self, dimension: int) -> None:
        """Initialize an empty FAISS IndexIDMap."""
        base_index = faiss.IndexFlatIP(dimension)
        self.index = faiss.IndexIDMap(base_index)
        logger.info("Initialized FAISS IndexIDMap with dimension %d", dimension)

    def _backend_reset(self, dimension: int) -> None:
        self._init_index(dimension)
        self._labels = {}
        self._ids_by_label = {}
        self._next_label = 0

    def _backend_add(self, entries: list[IndexEntry]) -> None:
        if not entries or self.index is None:
            return
        labels = []
        for entry in entries:
            label = self._next_label
            self._next_label += 1
            self._labels[entry.passage_id] = label
            self._ids_by_label[label] = entry.passage_id
            labels.append(label)

        vectors = np.vstack([entry.vector for entry in entries]).astype("float32")
        ids_array = np.asarray(labels, dtype="int64")
        try:
            self.index.add_with_ids(  # pyright: ignore[reportCallIssue]
                vectors, ids_array
            )
        except RuntimeError:
            logger.exception(
                "FAISS index does not support add_with_ids; ensure IndexIDMap is used."
            )
            raise
        logger.debug("Added %d vectors to FAISS index", len(labels))

    def _backend_remove(self, passage_ids: list[str]) -> None:
        if self.index is None:
            return
        labels = []
        for passage_id in passage_ids:
            label = self._labels.pop(passage_id, None)
            if label is not None:
                del self._ids_by_label[label]
                labels.append(label)
        if labels:
            self.index.remove_ids(np.asarray(labels, dtype="int64"))

    def _backend_search(
        self,
        query_vector: np.ndarray,
        k: int,
        candidates: list[str] | None,
    ) -> list[tuple[str, float]]:
        index = self.index
        if index is None or index.ntotal == 0:
            logger.warning("FAISS index not initialized; returning no results")
            return []

        params = None
        limit = index.ntotal
        if candidates is not None:
            # The selector restricts the search itself, not its truncated output.
            selector = faiss.IDSelectorBatch(
                np.asarray([self._labels[pid] for pid in candidates], dtype="int64")
            )
            params = faiss.SearchParameters(sel=selector)
            limit = len(candidates)

        scores, labels = index.search(
            query_vector.reshape(1, -1).astype("float32"),
            min(k, limit),
            params=params,
        )  # pyright: ignore[reportCallIssue]

        results: list[tuple[str, float]] = []
        for score, label in zip(scores[0], labels[0], strict=True):
            if int(label) == -1:  # faiss returns -1 for empty results
                continue
            results.append((self._ids_by_label[int(label)], float(score)))
        return results

    def _backend_save(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS faiss_labels (
                passage_id TEXT PRIMARY KEY,
                label INTEGER NOT NULL UNIQUE
            )
        """)
        cursor.execute("DELETE FROM faiss_labels")
        cursor.executemany(
            "INSERT INTO faiss_labels (passage_id, label) VALUES (?, ?)",
            list(self._labels.items()),
        )

        index = self.index
        if index is None:
            logger.warning("No FAISS index to save")
            return
        self.index_path.parent.mkdir(exist_ok=True, parents=True)
        faiss.write_index(index, str(self.index_path))
        logger.info("Saved FAISS index to %s", self.index_path)

    def _backend_load_state(
        self, cursor: sqlite3.Cursor
    ) -> dict[str, int]:  # noqa: PLR6301
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            ("faiss_labels",),
        )
        if cursor.fetchone() is None:
            return {}
        cursor.execute("SELECT passage_id, label FROM faiss_labels")
        return {passage_id: int(label) for passage_id, label in cursor.fetchall()}

    def _backend_restore(self, state: dict[str, int]) -> bool:
        if not self.index_path.exists():
            logger.warning(
                "FAISS index not found at %s; rebuilding from entries.",
                self.index_path,
            )
            return False

        loaded_index = faiss.read_index(str(self.index_path))
        if not isinstance(loaded_index, (faiss.IndexIDMap, faiss.IndexIDMap2)):
            logger.warning(
                "Loaded FAISS index is %s; rebuilding with IndexIDMap",
                type(loaded_index).__name__,
            )
            return False
        if (
            loaded_index.d != self._dimension
            or loaded_index.ntotal != len(self._entries)
            or state.keys() != self._entries.keys()
        ):
            logger.warning("FAISS index on disk is stale; rebuilding from entries.")
            return False

        self.index = loaded_index
        self._labels = dict(state)
        self._ids_by_label = {label: pid for pid, label in state.items()}
        self._next_label = max(state.values(), default=-1) + 1
        logger.info(
            "Loaded FAISS index from %s with %d vectors",
            self.index_path,
            loaded_index.ntotal,
        )
        return True
