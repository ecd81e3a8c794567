"""Vector index backends and factory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from assurag.config import config

from .base import ReadWriteLock, VectorIndex
from .faiss_store import FaissVectorIndex
from .filters import FilterClause, MetadataFilter, Operator
from .flat_store import FlatVectorIndex

if TYPE_CHECKING:
    from pathlib import Path

VectorBackend = Literal["faiss", "flat"]


def get_vector_index(
    store: VectorBackend | str = "faiss",
    *,
    db_path: Path | None = None,
    index_path: Path | None = None,
) -> VectorIndex:
    """Return a configured vector index instance.

    Raises:
        ValueError: If an unsupported backend is requested.
    """
    if db_path is None:
        db_path = config.VECTOR_STORE_DB_PATH
    backend = store.lower()

    if backend == "faiss":
        return FaissVectorIndex(
            db_path=db_path,
            index_path=(
                index_path if index_path is not None else config.FAISS_INDEX_PATH
            ),
        )

    if backend == "flat":
        return FlatVectorIndex(db_path=db_path)

    msg = f"Unsupported vector store backend: {store}"
    raise ValueError(msg)


__all__ = [
    "FaissVectorIndex",
    "FilterClause",
    "FlatVectorIndex",
    "MetadataFilter",
    "Operator",
    "ReadWriteLock",
    "VectorBackend",
    "VectorIndex",
    "get_vector_index",
]
