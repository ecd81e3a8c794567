"""Main RAG pipeline orchestrating document ingestion and querying."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .config import config
from .document_processing import DocumentLoader, TextChunker
from .embeddings import EmbeddingService
from .errors import IngestionError, VectorIndexError
from .models import Embedding
from .retrieval import Retriever
from .vector_store import get_vector_index

if TYPE_CHECKING:
    import datetime

    from .models import Document, RetrievalResult
    from .retrieval import Reranker
    from .vector_store import MetadataFilter, VectorIndex

logger = config.get_logger(__name__)


@dataclass
class IngestReport:
    """Outcome of one ingestion run."""

    documents: int = 0
    passages: int = 0
    removed: int = 0
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class RAGPipeline:
    """Main RAG pipeline orchestrating Load -> Chunk -> Embed -> Index."""

    def __init__(  # noqa: PLR0913
        self,
        openai_api_key: str | None = None,
        max_tokens: int | None = None,
        overlap_tokens: int | None = None,
        sqlite_db_path: Path | None = None,
        vector_backend: str | None = None,
        faiss_index_path: Path | None = None,
        *,
        embedding_service: EmbeddingService | None = None,
        vector_index: VectorIndex | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        """Initialize RAG pipeline with configurable vector storage.

        Args:
            openai_api_key: OpenAI API key.
            max_tokens: Passage size in tokens. If None, uses
                config.CHUNK_MAX_TOKENS.
            overlap_tokens: Tokens shared by consecutive passages. If None,
                uses config.CHUNK_OVERLAP_TOKENS.
            sqlite_db_path: SQLite file for index persistence. If None, uses
                config.VECTOR_STORE_DB_PATH.
            vector_backend: Which vector index backend to use ("faiss" | "flat").
                Defaults to config.VECTOR_BACKEND.
            faiss_index_path: Path to FAISS index file. If None, uses
                config.FAISS_INDEX_PATH.
            embedding_service: Prebuilt embedding service, mainly for tests.
            vector_index: Prebuilt vector index; skips backend construction.
            reranker: Optional second-stage reranker for retrieval.
        """
        self.chunker = TextChunker(
            max_tokens=config.CHUNK_MAX_TOKENS if max_tokens is None else max_tokens,
            overlap_tokens=(
                config.CHUNK_OVERLAP_TOKENS
                if overlap_tokens is None
                else overlap_tokens
            ),
        )
        self.embedding_service = embedding_service or EmbeddingService(
            api_key=openai_api_key
        )

        if vector_index is None:
            vector_index = get_vector_index(
                vector_backend or config.VECTOR_BACKEND,
                db_path=sqlite_db_path,
                index_path=faiss_index_path,
            )
            vector_index.load()
        self.vector_index = vector_index
        logger.info("Using %s vector index", self.vector_index.backend)

        self.retriever = Retriever(
            self.embedding_service, self.vector_index, reranker=reranker
        )

    async def process_document(self, document: Document) -> tuple[int, int]:
        """Chunk, embed and index one document, replacing its earlier passages.

        Returns:
            Passages indexed and stale passages removed.

        Raises:
            EmptyDocument: If the document has no text.
            EmbeddingServiceError: If the passages cannot be embedded.
            DimensionMismatch: If the vectors do not fit the index.
            ModelMismatch: If the index was built with another model.
        """
        logger.info("Starting RAG pipeline for document: %s", document.source_uri)
        passages = self.chunker.chunk(document)
        vectors = await self.embedding_service.embed_batch(
            [passage.text for passage in passages]
        )
        model_id = self.embedding_service.model_id
        embeddings = [
            Embedding(passage_id=passage.id, vector=vector, model_id=model_id)
            for passage, vector in zip(passages, vectors, strict=True)
        ]
        items = [
            (embedding.passage_id, embedding.vector, passage.to_index_metadata())
            for passage, embedding in zip(passages, embeddings, strict=True)
        ]
        removed = await asyncio.to_thread(
            self.vector_index.replace_document, document.id, items, model_id=model_id
        )
        return len(items), removed

    async def ingest(
        self,
        source: Path | str,
        *,
        product_category: str | None = None,
        effective_date: datetime.date | None = None,
    ) -> IngestReport:
        """Ingest a file, or every supported file in a directory, then save.

        A failing document is recorded in the report and does not stop the
        others.

        Returns:
            Counts of indexed documents and passages plus per-source failures.

        Raises:
            SourceUnavailable: If ``source`` does not exist.
            UnsupportedFormat: If ``source`` is a single unsupported file.
            EmbeddingServiceError: If the embedding endpoint stays unavailable.
        """
        path = Path(source)
        if path.is_dir():
            paths = DocumentLoader.discover(path)
        else:
            paths = [path]

        report = IngestReport()
        for file_path in paths:
            try:
                document = DocumentLoader.load_document(
                    file_path,
                    product_category=product_category,
                    effective_date=effective_date,
                )
            except IngestionError as exc:
                if not path.is_dir():
                    raise
                logger.warning("Skipping %s: %s", file_path, exc)
                report.failed[file_path.as_posix()] = exc.user_message
                continue

            try:
                passages, removed = await self.process_document(document)
            except (IngestionError, VectorIndexError) as exc:
                logger.exception("Failed to index %s", document.source_uri)
                report.failed[document.source_uri] = exc.user_message
                continue
            report.documents += 1
            report.passages += passages
            report.removed += removed

        if report.documents:
            await asyncio.to_thread(self.vector_index.save)
        logger.info(
            "Ingested %d documents (%d passages, %d failed)",
            report.documents,
            report.passages,
            len(report.failed),
        )
        return report

    async def query(
        self,
        question: str,
        top_k: int | None = None,
        min_score: float | None = None,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[RetrievalResult]:
        """Query the RAG system.

        Args:
            question: The input question to query.
            top_k: Number of top results to return.
            min_score: Relevance threshold; defaults to config.
            metadata_filter: Optional restriction on passage metadata.

        Returns:
            Scored passage references, best first.
        """
        logger.info("Processing query: %s", question)
        return await self.retriever.retrieve(
            question, top_k, min_score, metadata_filter
        )
