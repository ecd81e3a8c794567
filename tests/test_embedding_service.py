"""Tests for EmbeddingService class."""

import os
from unittest.mock import patch

import httpx
import numpy as np
import pytest
from openai import APIConnectionError, AuthenticationError

from assurag import EmbeddingService
from assurag.config import config
from assurag.errors import EmbeddingServiceError
from assurag.retry import RetryPolicy

from conftest import create_mock_embedding_response

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def connection_error() -> APIConnectionError:
    return APIConnectionError(request=REQUEST)


def test_init_with_api_key(embedding_service_factory) -> None:
    service = embedding_service_factory(model="text-embedding-3-small")
    assert service.model_id == "text-embedding-3-small"
    assert service.client.api_key == "test-key"


def test_init_with_env_api_key() -> None:
    with patch.dict(os.environ, {"OPENAI_API_KEY": "env-key"}):
        service = EmbeddingService(model="text-embedding-3-small")
        assert service.client.api_key == "env-key"


def test_init_default_model() -> None:
    service = EmbeddingService(api_key="test-key")
    assert service.model == config.EMBEDDING_MODEL


@pytest.mark.asyncio
async def test_embed_success(openai_embeddings_api_mock, embedding_service) -> None:
    openai_embeddings_api_mock.return_value = create_mock_embedding_response(
        [[0.1, 0.2, 0.3]]
    )

    result = await embedding_service.embed("test text")

    openai_embeddings_api_mock.assert_awaited_once_with(
        model="text-embedding-3-small",
        input="test text",
    )
    assert isinstance(result, np.ndarray)
    assert result.dtype == np.float32
    np.testing.assert_allclose(result, [0.1, 0.2, 0.3], rtol=1e-6)


@pytest.mark.asyncio
async def test_embed_is_cached(openai_embeddings_api_mock, embedding_service) -> None:
    openai_embeddings_api_mock.return_value = create_mock_embedding_response(
        [[0.1, 0.2, 0.3]]
    )

    first = await embedding_service.embed("policy term")
    second = await embedding_service.embed("policy term")

    assert openai_embeddings_api_mock.await_count == 1
    np.testing.assert_array_equal(first, second)
    assert not second.flags.writeable


@pytest.mark.asyncio
async def test_cache_disabled_calls_every_time(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    openai_embeddings_api_mock.return_value = create_mock_embedding_response(
        [[0.1, 0.2]]
    )
    service = embedding_service_factory(cache_size=0)

    await service.embed("policy term")
    await service.embed("policy term")

    assert openai_embeddings_api_mock.await_count == 2


@pytest.mark.asyncio
async def test_cache_evicts_least_recently_used(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    openai_embeddings_api_mock.return_value = create_mock_embedding_response(
        [[1.0, 0.0]]
    )
    service = embedding_service_factory(cache_size=2)

    await service.embed("a")
    await service.embed("b")
    await service.embed("a")
    await service.embed("c")
    await service.embed("a")
    await service.embed("b")

    assert openai_embeddings_api_mock.await_count == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   "])
async def test_embed_rejects_blank_text(embedding_service, text) -> None:
    with pytest.raises(ValueError, match="blank"):
        await embedding_service.embed(text)


@pytest.mark.asyncio
async def test_embed_batch_success(
    openai_embeddings_api_mock, embedding_service
) -> None:
    openai_embeddings_api_mock.return_value = create_mock_embedding_response(
        [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6], [0.7, 0.8, 0.9]]
    )
    texts = ["text1", "text2", "text3"]

    results = await embedding_service.embed_batch(texts)

    openai_embeddings_api_mock.assert_awaited_once_with(
        model="text-embedding-3-small",
        input=texts,
    )
    expected = [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6], [0.7, 0.8, 0.9]]
    for result, values in zip(results, expected, strict=True):
        np.testing.assert_allclose(result, values, rtol=1e-6)


@pytest.mark.asyncio
async def test_embed_batch_with_batching(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    openai_embeddings_api_mock.side_effect = [
        create_mock_embedding_response([[0.1, 0.2], [0.3, 0.4]]),
        create_mock_embedding_response([[0.5, 0.6], [0.7, 0.8]]),
    ]
    service = embedding_service_factory(batch_size=2)

    results = await service.embed_batch(["text1", "text2", "text3", "text4"])

    assert openai_embeddings_api_mock.await_count == 2
    assert openai_embeddings_api_mock.await_args_list[1].kwargs["input"] == [
        "text3",
        "text4",
    ]
    np.testing.assert_allclose(results[3], [0.7, 0.8], rtol=1e-6)


@pytest.mark.asyncio
async def test_embed_batch_skips_duplicates_and_cached_texts(
    openai_embeddings_api_mock, embedding_service
) -> None:
    openai_embeddings_api_mock.side_effect = [
        create_mock_embedding_response([[1.0, 0.0]]),
        create_mock_embedding_response([[0.0, 1.0]]),
    ]
    cached = await embedding_service.embed("known")

    results = await embedding_service.embed_batch(["new", "known", "new"])

    assert openai_embeddings_api_mock.await_args_list[1].kwargs["input"] == ["new"]
    np.testing.assert_array_equal(results[1], cached)
    np.testing.assert_array_equal(results[0], results[2])


@pytest.mark.asyncio
async def test_embed_batch_matches_single_embeddings(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    openai_embeddings_api_mock.side_effect = [
        create_mock_embedding_response([[0.3, 0.4], [0.6, 0.8]]),
        create_mock_embedding_response([[0.3, 0.4]]),
    ]
    batch_service = embedding_service_factory()
    single_service = embedding_service_factory()

    batch = await batch_service.embed_batch(["first", "second"])
    single = await single_service.embed("first")

    np.testing.assert_array_equal(batch[0], single)


@pytest.mark.asyncio
async def test_embed_batch_empty_list(openai_embeddings_api_mock, embedding_service):
    assert await embedding_service.embed_batch([]) == []
    openai_embeddings_api_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_embed_batch_wrong_response_length(
    openai_embeddings_api_mock, embedding_service
) -> None:
    openai_embeddings_api_mock.return_value = create_mock_embedding_response(
        [[0.1, 0.2]]
    )

    with pytest.raises(EmbeddingServiceError, match="Expected 2 embeddings"):
        await embedding_service.embed_batch(["a", "b"])


@pytest.mark.asyncio
async def test_transient_error_is_retried(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    openai_embeddings_api_mock.side_effect = [
        connection_error(),
        create_mock_embedding_response([[0.1, 0.2]]),
    ]
    service = embedding_service_factory(
        retry_policy=RetryPolicy(max_attempts=3, min_wait=0, max_wait=0)
    )

    result = await service.embed("test text")

    assert openai_embeddings_api_mock.await_count == 2
    np.testing.assert_allclose(result, [0.1, 0.2], rtol=1e-6)


@pytest.mark.asyncio
async def test_retries_exhausted_raise_service_error(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    openai_embeddings_api_mock.side_effect = connection_error()
    service = embedding_service_factory(
        retry_policy=RetryPolicy(max_attempts=3, min_wait=0, max_wait=0)
    )

    with pytest.raises(EmbeddingServiceError) as exc_info:
        await service.embed("test text")

    assert openai_embeddings_api_mock.await_count == 3
    assert isinstance(exc_info.value.__cause__, APIConnectionError)
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_request_errors_are_not_retried(
    openai_embeddings_api_mock, embedding_service_factory
) -> None:
    response = httpx.Response(401, request=REQUEST)
    openai_embeddings_api_mock.side_effect = AuthenticationError(
        "bad key", response=response, body=None
    )
    service = embedding_service_factory(
        retry_policy=RetryPolicy(max_attempts=3, min_wait=0, max_wait=0)
    )

    with pytest.raises(EmbeddingServiceError):
        await service.embed("test text")

    assert openai_embeddings_api_mock.await_count == 1
