"""Exact brute-force vector index over a numpy matrix."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from assurag.config import config
from assurag.vector_store.base import VectorIndex

if TYPE_CHECKING:
    from assurag.models import IndexEntry

logger = config.get_logger(__name__)


class FlatVectorIndex(VectorIndex):
    """Vector index scoring every candidate with one matrix product."""

    backend = "flat"

    def __init__(self, db_path: Path = Path("data/vector_store.db")) -> None:
        """Initialize the FlatVectorIndex with its persistence path.

        Args:
            db_path: Path to the SQLite file used by save/load.
        """
        super().__init__(db_path)
        self.embeddings: np.ndarray = np.empty((0, 0), dtype=np.float32)
        self._row_ids: list[str] = []
        self._rows: dict[str, int] = {}

    def _backend_reset(self, dimension: int) -> None:
        self.embeddings = np.empty((0, dimension), dtype=np.float32)
        self._row_ids = []
        self._rows = {}

    def _backend_add(self, entries: list[IndexEntry]) -> None:
        if not entries:
            return
        start = len(self._row_ids)
        vectors = np.vstack([entry.vector for entry in entries]).astype(np.float32)
        self.embeddings = np.vstack([self.embeddings, vectors])
        for offset, entry in enumerate(entries):
            self._rows[entry.passage_id] = start + offset
            self._row_ids.append(entry.passage_id)

    def _backend_remove(self, passage_ids: list[str]) -> None:
        doomed = {self._rows[pid] for pid in passage_ids if pid in self._rows}
        if not doomed:
            return
        keep = [row for row in range(len(self._row_ids)) if row not in doomed]
        self.embeddings = self.embeddings[keep]
        self._row_ids = [self._row_ids[row] for row in keep]
        self._rows = {pid: row for row, pid in enumerate(self._row_ids)}

    @staticmethod
    def cosine_similarity(
        query_embedding: np.ndarray,
        embeddings: np.ndarray,
    ) -> np.ndarray:
        """Calculate cosine similarity between a unit query and unit rows.

        Returns:
            np.ndarray: Similarity of the query to each row.
        """
        return embeddings @ query_embedding

    def _backend_search(
        self,
        query_vector: np.ndarray,
        k: int,
        candidates: list[str] | None,
    ) -> list[tuple[str, float]]:
        if candidates is None:
            ids = self._row_ids
            matrix = self.embeddings
        else:
            ids = candidates
            rows = np.fromiter(
                (self._rows[pid] for pid in candidates),
                dtype=np.int64,
                count=len(candidates),
            )
            matrix = self.embeddings[rows]

        if matrix.shape[0] == 0:
            return []

        similarities = self.cosine_similarity(query_vector, matrix)
        k = min(k, similarities.shape[0])
        top_indices = np.argpartition(-similarities, k - 1)[:k]
        return [(ids[idx], float(similarities[idx])) for idx in top_indices]
