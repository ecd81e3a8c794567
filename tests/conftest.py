"""Test configuration and fixtures for AssuRAG tests.

This module provides reusable test fixtures organized by functionality:
- Constants and test data
- Mock services and API responses
- EmbeddingService fixtures
- Document and passage factories
- Vector index fixtures
- Pipeline and chatbot helpers
"""

import asyncio
import contextlib
import datetime
import re
import threading
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from assurag import (
    ContextAssembler,
    EmbeddingService,
    FaissVectorIndex,
    FlatVectorIndex,
    Generator,
    RAGChatbot,
    RAGPipeline,
    TextChunker,
)
from assurag.document_processing import DocumentLoader
from assurag.models import DocumentMetadata
from assurag.retry import NO_RETRY

WORD_PATTERN = re.compile(r"\w+")


class TestConstants:
    """Centralized test constants to avoid repetition across test files."""

    # API Configuration
    TEST_API_KEY = "test-key"
    TEST_EMBEDDING_MODEL = "text-embedding-3-small"
    TEST_CHAT_MODEL = "gpt-test"
    FAKE_MODEL_ID = "bag-of-words"
    DEFAULT_EMBEDDING_DIMENSION = 512

    # Chunking Configuration
    SMALL_MAX_TOKENS = 30
    SMALL_OVERLAP_TOKENS = 5

    # Retrieval Configuration
    TEST_MIN_SCORE = 0.1


LIFESECURE_TEXT = """LifeSecure Term Plan

LifeSecure is a pure protection plan sold through the bank's branches. It pays \
a lump sum to the nominee if the insured person dies during the policy term.

The policy term is 20 years. Premiums are payable monthly for the full policy \
term. A grace period of 30 days applies to every missed premium.

Entry age is between 18 and 55 years. The maximum maturity age is 75 years. \
No medical examination is needed for a sum assured up to 500000.

Optional riders add accidental death cover and critical illness cover. Each \
rider costs an extra premium and ends with the base policy."""

HEALTHPLUS_TEXT = """HealthPlus Family Floater

HealthPlus covers hospitalization expenses for the whole family under one sum \
insured. Cashless treatment is available at network hospitals.

Pre-existing diseases are covered after a waiting period of 4 years. Maternity \
benefits start after 9 months of continuous cover."""


class BagOfWordsEmbeddingService:
    """Deterministic stand-in for EmbeddingService.

    Each distinct lower-case word gets its own dimension, so cosine similarity
    is exactly the normalized word overlap of two texts.
    """

    def __init__(
        self,
        dimension: int = TestConstants.DEFAULT_EMBEDDING_DIMENSION,
        model_id: str = TestConstants.FAKE_MODEL_ID,
    ) -> None:
        self.dimension = dimension
        self.model_id = model_id
        self.vocabulary: dict[str, int] = {}
        self.calls: list[str] = []

    def vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        for word in WORD_PATTERN.findall(text.lower()):
            slot = self.vocabulary.setdefault(word, len(self.vocabulary))
            vector[slot % self.dimension] += 1.0
        return vector

    async def embed(self, text: str) -> np.ndarray:
        if not text.strip():
            msg = "Cannot embed blank text"
            raise ValueError(msg)
        self.calls.append(text)
        return self.vector(text)

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        return [await self.embed(text) for text in texts]


def create_mock_embedding_response(embeddings: list[list[float]]) -> SimpleNamespace:
    """Create a mock OpenAI embeddings API response.

    Args:
        embeddings: List of embedding vectors to return.

    Returns:
        Object shaped like the OpenAI embeddings API response.
    """
    return SimpleNamespace(data=[SimpleNamespace(embedding=emb) for emb in embeddings])


def create_mock_chat_response(content: str | None) -> SimpleNamespace:
    """Create a mock OpenAI chat completion response.

    Args:
        content: The content for the chat completion response.

    Returns:
        Object shaped like an OpenAI chat completion.
    """
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=None,
    )


def create_mock_chunk(content: str | None) -> SimpleNamespace:
    """Create one streamed chat completion chunk."""
    delta = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


class FakeChatStream:
    """Async iterable standing in for ``openai.AsyncStream`` of chunks."""

    def __init__(self, fragments: list[str | None], error: Exception | None = None):
        self.chunks = [create_mock_chunk(fragment) for fragment in fragments]
        self.error = error
        self.closed = False
        self.consumed = 0

    async def _iterate(self):  # noqa: ANN202
        for chunk in self.chunks:
            self.consumed += 1
            yield chunk
        if self.error is not None:
            raise self.error

    def __aiter__(self):  # noqa: ANN204
        return self._iterate()

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced clock for session timeout tests."""

    def __init__(self) -> None:
        self.now = datetime.datetime(2026, 1, 1, 9, 0, tzinfo=datetime.UTC)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


@contextlib.contextmanager
def index_write_locked(index, seconds: float):
    """Hold the index write lock from another thread for ``seconds``."""
    held = threading.Event()

    def _hold() -> None:
        with index._lock.write():  # noqa: SLF001
            held.set()
            time.sleep(seconds)

    thread = threading.Thread(target=_hold)
    thread.start()
    held.wait()
    try:
        yield
    finally:
        thread.join()


async def longest_loop_stall(awaitable, tick: float = 0.01):
    """Await ``awaitable`` while ticking the loop.

    Returns:
        The awaited result and the longest gap between ticks, in seconds.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(awaitable)
    longest = 0.0
    last = loop.time()
    while not task.done():
        await asyncio.sleep(tick)
        now = loop.time()
        longest = max(longest, now - last)
        last = now
    return task.result(), longest


def create_mock_chat_client(
    content: str | None = "Test response", side_effect=None
) -> SimpleNamespace:
    """Build an object shaped like ``AsyncOpenAI`` with a mocked chat endpoint."""
    create = AsyncMock(return_value=create_mock_chat_response(content))
    if side_effect is not None:
        create.side_effect = side_effect
    completions = SimpleNamespace(create=create)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.fixture
def openai_embeddings_api_mock():
    """Patch the async OpenAI embeddings.create method."""
    with patch(
        "openai.resources.embeddings.AsyncEmbeddings.create",
        new_callable=AsyncMock,
    ) as mock_create:
        yield mock_create


@pytest.fixture
def embedding_service_factory():
    """Factory for EmbeddingService instances that never sleep between retries."""

    def _create_service(api_key=None, model=None, **kwargs):  # noqa: ANN202
        kwargs.setdefault("retry_policy", NO_RETRY)
        return EmbeddingService(
            api_key=api_key or TestConstants.TEST_API_KEY,
            model=model or TestConstants.TEST_EMBEDDING_MODEL,
            **kwargs,
        )

    return _create_service


@pytest.fixture
def embedding_service(embedding_service_factory):
    """Default EmbeddingService with test API key for most tests."""
    return embedding_service_factory()


@pytest.fixture
def bow_embedding_service():
    """Bag-of-words fake embedding service."""
    return BagOfWordsEmbeddingService()


@pytest.fixture
def document_factory():
    """Factory that builds normalized documents from in-memory text."""

    def _create_document(
        text: str = LIFESECURE_TEXT,
        source_uri: str = "docs/life/lifesecure.txt",
        title: str = "LifeSecure Term Plan",
        product_category: str | None = "life",
        effective_date: datetime.date | None = None,
    ):
        metadata = DocumentMetadata(
            title=title,
            product_category=product_category,
            effective_date=effective_date,
        )
        return DocumentLoader.load_text(text, source_uri, metadata)

    return _create_document


@pytest.fixture
def small_chunker():
    """Chunker producing several passages from the sample documents."""
    return TextChunker(
        max_tokens=TestConstants.SMALL_MAX_TOKENS,
        overlap_tokens=TestConstants.SMALL_OVERLAP_TOKENS,
    )


@pytest.fixture
def random_vectors():
    """Factory of reproducible random vectors."""

    def _create(count: int, dimension: int = 8, seed: int = 7) -> list[np.ndarray]:
        rng = np.random.default_rng(seed)
        return [rng.normal(0, 1, dimension).astype(np.float32) for _ in range(count)]

    return _create


@pytest.fixture(params=["flat", "faiss"])
def vector_index(request, tmp_path):
    """Empty vector index, once per backend."""
    db_path = tmp_path / "vector_store.db"
    if request.param == "faiss":
        return FaissVectorIndex(db_path=db_path, index_path=tmp_path / "index.faiss")
    return FlatVectorIndex(db_path=db_path)


@pytest.fixture
def index_passages(bow_embedding_service):
    """Embed passages with the fake service and upsert them into an index."""

    def _index(index, passages) -> None:
        index.upsert_batch(
            [
                (
                    passage.id,
                    bow_embedding_service.vector(passage.text),
                    passage.to_index_metadata(),
                )
                for passage in passages
            ],
            model_id=bow_embedding_service.model_id,
        )

    return _index


@pytest.fixture
def pipeline_factory(tmp_path, bow_embedding_service, small_chunker):
    """Factory for RAGPipeline instances over a temporary flat index."""

    def _create_pipeline(backend: str = "flat") -> RAGPipeline:
        if backend == "faiss":
            index = FaissVectorIndex(
                db_path=tmp_path / "vector_store.db",
                index_path=tmp_path / "index.faiss",
            )
        else:
            index = FlatVectorIndex(db_path=tmp_path / "vector_store.db")
        return RAGPipeline(
            max_tokens=small_chunker.max_tokens,
            overlap_tokens=small_chunker.overlap_tokens,
            embedding_service=bow_embedding_service,
            vector_index=index,
        )

    return _create_pipeline


@pytest.fixture
def docs_dir(tmp_path):
    """Directory holding the sample product documents."""
    directory = tmp_path / "docs" / "life"
    directory.mkdir(parents=True)
    (directory / "lifesecure.txt").write_text(LIFESECURE_TEXT, encoding="utf-8")
    (directory / "healthplus.md").write_text(HEALTHPLUS_TEXT, encoding="utf-8")
    return directory


@pytest.fixture
def chatbot_factory(pipeline_factory):
    """Factory wiring a chatbot to a pipeline and a mocked chat client."""

    def _create_chatbot(
        content: str | None = "Test response",
        side_effect=None,
        pipeline: RAGPipeline | None = None,
        **kwargs,
    ) -> RAGChatbot:
        pipeline = pipeline or pipeline_factory()
        generator = Generator(
            model=TestConstants.TEST_CHAT_MODEL,
            client=create_mock_chat_client(content, side_effect),
            retry_policy=NO_RETRY,
        )
        kwargs.setdefault("min_score", TestConstants.TEST_MIN_SCORE)
        kwargs.setdefault("rewrite_queries", False)
        return RAGChatbot(
            pipeline.retriever,
            ContextAssembler(pipeline.vector_index, TestConstants.TEST_MIN_SCORE),
            generator,
            kwargs.pop("conversations", None),
            **kwargs,
        )

    return _create_chatbot
