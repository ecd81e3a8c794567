"""Query-time passage retrieval with optional re-ranking."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Protocol

from .config import config
from .models import Passage, RetrievalResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .embeddings import EmbeddingService
    from .vector_store import MetadataFilter, VectorIndex

logger = config.get_logger(__name__)

WORD_PATTERN = re.compile(r"\w+")
MIN_KEYWORD_LENGTH = 3


class Reranker(Protocol):
    """Reorders a candidate pool; returns ``(passage_id, score)`` pairs."""

    def rerank(
        self, query_text: str, candidates: Sequence[tuple[Passage, float]]
    ) -> list[tuple[str, float]]: ...


def _keywords(text: str) -> set[str]:
    return {
        word
        for word in WORD_PATTERN.findall(text.lower())
        if len(word) >= MIN_KEYWORD_LENGTH
    }


class KeywordOverlapReranker:
    """Blend vector similarity with the share of query keywords a passage holds.

    Exact figures and product terms ("20 years", "rider") often matter more
    than topical closeness in policy documents.
    """

    def __init__(self, weight: float = 0.3) -> None:
        """Initialize the reranker.

        Args:
            weight: Share of the final score taken by keyword overlap, 0 to 1.

        Raises:
            ValueError: If weight is outside [0, 1].
        """
        if not 0 <= weight <= 1:
            msg = "weight must be between 0 and 1"
            raise ValueError(msg)
        self.weight = weight

    def rerank(
        self, query_text: str, candidates: Sequence[tuple[Passage, float]]
    ) -> list[tuple[str, float]]:
        """Rescore the candidates.

        Returns:
            Candidates ordered by blended score, highest first.
        """
        query_terms = _keywords(query_text)
        rescored = []
        for passage, score in candidates:
            overlap = (
                len(query_terms & _keywords(passage.text)) / len(query_terms)
                if query_terms
                else 0.0
            )
            blended = (1 - self.weight) * score + self.weight * overlap
            rescored.append((passage.id, blended))
        rescored.sort(key=lambda item: (-item[1], item[0]))
        return rescored


class Retriever:
    """Embeds a query and returns the most relevant indexed passages."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_index: VectorIndex,
        *,
        reranker: Reranker | None = None,
        candidate_multiplier: int | None = None,
    ) -> None:
        """Initialize the retriever.

        Args:
            embedding_service: Embeds query text with the index's model.
            vector_index: Index searched for candidates.
            reranker: Optional second stage applied to a wider candidate pool.
            candidate_multiplier: Pool size as a multiple of ``top_k`` when a
                reranker is configured.
        """
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.reranker = reranker
        self.candidate_multiplier = max(
            1, candidate_multiplier or config.VECTOR_RAW_TOP_K_MULTIPLIER
        )

    def _hydrate(
        self, scored: Sequence[tuple[str, float]]
    ) -> list[tuple[Passage, float]]:
        candidates = []
        for passage_id, score in scored:
            passage = self.vector_index.passage(passage_id)
            if passage is not None:
                candidates.append((passage, score))
        return candidates

    async def retrieve(
        self,
        query_text: str,
        top_k: int | None = None,
        min_score: float | None = None,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[RetrievalResult]:
        """Return at most ``top_k`` passages scoring at least ``min_score``.

        Returns:
            Results in descending score order with ranks 1..n. Empty when the
            query is blank or nothing clears the threshold.

        Raises:
            EmbeddingServiceError: If the query cannot be embedded.
            ModelMismatch: If the index was built with a different model.
        """
        top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k
        min_score = config.RETRIEVAL_MIN_SCORE if min_score is None else min_score
        if top_k <= 0 or not query_text.strip():
            return []

        query_vector = await self.embedding_service.embed(query_text)
        pool = top_k * self.candidate_multiplier if self.reranker else top_k
        # Index reads take a thread lock; keep them off the event loop.
        results = await asyncio.to_thread(
            self.vector_index.query,
            query_vector,
            pool,
            metadata_filter,
            model_id=self.embedding_service.model_id,
        )

        scored = [(result.passage_id, result.score) for result in results]
        if self.reranker is not None and scored:
            candidates = await asyncio.to_thread(self._hydrate, scored)
            scored = self.reranker.rerank(query_text, candidates)

        kept = sorted(
            ((pid, score) for pid, score in scored if score >= min_score),
            key=lambda item: (-item[1], item[0]),
        )[:top_k]
        logger.info(
            "Retrieved %d of %d candidates above %.2f",
            len(kept),
            len(scored),
            min_score,
        )
        return [
            RetrievalResult(passage_id=passage_id, score=score, rank=rank)
            for rank, (passage_id, score) in enumerate(kept, start=1)
        ]
