"""OpenAI embeddings service."""

from __future__ import annotations

from collections import OrderedDict

import numpy as np
from openai import AsyncOpenAI, OpenAIError

from .config import config
from .errors import EmbeddingServiceError
from .retry import RetryPolicy

logger = config.get_logger(__name__)


class EmbeddingService:
    """Handles OpenAI embeddings generation.

    Results are cached per text: for a fixed model the endpoint is treated as
    deterministic, so a cached vector is interchangeable with a fresh one.
    """

    def __init__(  # noqa: PLR0913
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        client: AsyncOpenAI | None = None,
        batch_size: int | None = None,
        cache_size: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the EmbeddingService with OpenAI API key and model.

        Args:
            api_key: OpenAI API key. If None,
                reads from OPENAI_API_KEY environment variable.
            model: Embedding model name. If None, uses config.EMBEDDING_MODEL.
            client: Preconfigured client, mainly for tests.
            batch_size: Texts per request in ``embed_batch``.
            cache_size: Maximum cached vectors; 0 disables caching.
            retry_policy: Backoff for transient endpoint failures.
        """
        if client is None:
            default_headers = config.get_api_headers()
            client = AsyncOpenAI(
                api_key=api_key or config.get_openai_api_key(),
                base_url=config.OPENAI_BASE_URL,
                default_headers=default_headers or None,
            )
        self.client = client
        self.model = model or config.EMBEDDING_MODEL
        self.batch_size = max(1, batch_size or config.EMBEDDING_BATCH_SIZE)
        self.cache_size = (
            config.EMBEDDING_CACHE_SIZE if cache_size is None else cache_size
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self._cache: OrderedDict[str, np.ndarray] = OrderedDict()

    @property
    def model_id(self) -> str:
        """Identifier of the model every vector from this service belongs to."""
        return self.model

    def _cache_get(self, text: str) -> np.ndarray | None:
        vector = self._cache.get(text)
        if vector is not None:
            self._cache.move_to_end(text)
        return vector

    def _cache_put(self, text: str, vector: np.ndarray) -> None:
        if self.cache_size <= 0:
            return
        self._cache[text] = vector
        self._cache.move_to_end(text)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    @staticmethod
    def _to_vector(values: list[float]) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float32)
        vector.flags.writeable = False
        return vector

    async def _create(self, payload: str | list[str]) -> list[list[float]]:
        async def _call() -> list[list[float]]:
            response = await self.client.embeddings.create(
                model=self.model,
                input=payload,
            )
            return [item.embedding for item in response.data]

        try:
            return await self.retry_policy.wrap(_call, logger)()
        except OpenAIError as exc:
            logger.exception("Error generating embedding")
            msg = f"Embedding request to {self.model} failed: {exc}"
            raise EmbeddingServiceError(msg) from exc

    async def embed(self, text: str) -> np.ndarray:
        """Get embedding for a single text.

        Args:
            text: The input text to generate an embedding for.

        Returns:
            np.ndarray: The embedding vector for the input text.

        Raises:
            ValueError: If the text is blank.
            EmbeddingServiceError: If the endpoint keeps failing.
        """
        if not text.strip():
            msg = "Cannot embed blank text"
            raise ValueError(msg)

        cached = self._cache_get(text)
        if cached is not None:
            return cached

        data = await self._create(text)
        if len(data) != 1:
            msg = f"Expected 1 embedding, received {len(data)}"
            raise EmbeddingServiceError(msg)
        vector = self._to_vector(data[0])
        self._cache_put(text, vector)
        return vector

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Get embeddings for multiple texts in batches.

        Same result as calling :meth:`embed` for each text; duplicate and
        cached texts are not sent again.

        Args:
            texts: List of input texts to generate embeddings for.

        Returns:
            list[np.ndarray]: Embedding vectors in input order.

        Raises:
            ValueError: If any text is blank.
            EmbeddingServiceError: If the endpoint keeps failing.
        """
        if any(not text.strip() for text in texts):
            msg = "Cannot embed blank text"
            raise ValueError(msg)

        resolved: dict[str, np.ndarray] = {}
        pending: dict[str, None] = {}
        for text in texts:
            if text in resolved or text in pending:
                continue
            cached = self._cache_get(text)
            if cached is not None:
                resolved[text] = cached
            else:
                pending[text] = None
        missing = list(pending)

        for i in range(0, len(missing), self.batch_size):
            batch_texts = missing[i : i + self.batch_size]
            data = await self._create(batch_texts)
            if len(data) != len(batch_texts):
                msg = (
                    f"Expected {len(batch_texts)} embeddings, received {len(data)}"
                )
                raise EmbeddingServiceError(msg)
            for text, values in zip(batch_texts, data, strict=True):
                vector = self._to_vector(values)
                resolved[text] = vector
                self._cache_put(text, vector)
            logger.info("Generated embeddings for batch %d", i // self.batch_size + 1)

        return [resolved[text] for text in texts]
