"""Tests for the Generator and streamed answers."""

from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, BadRequestError

from assurag import Generator
from assurag.errors import ContextTooLarge, GenerationServiceError
from assurag.generation import EMPTY_RESPONSE_ANSWER
from assurag.models import Prompt
from assurag.retry import NO_RETRY, RetryPolicy

from conftest import (
    FakeChatStream,
    TestConstants,
    create_mock_chat_client,
    create_mock_chat_response,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

PROMPT = Prompt(
    messages=(
        {"role": "system", "content": "You answer assurance questions."},
        {"role": "user", "content": "What is the policy term?"},
    )
)


def make_generator(content="Test response", side_effect=None, **kwargs):
    kwargs.setdefault("retry_policy", NO_RETRY)
    return Generator(
        model=TestConstants.TEST_CHAT_MODEL,
        client=create_mock_chat_client(content, side_effect),
        **kwargs,
    )


def create_mock(generator):
    return generator.client.chat.completions.create


@pytest.mark.asyncio
async def test_generate_returns_stripped_text():
    generator = make_generator("  The policy term is 20 years.  \n")

    answer = await generator.generate(PROMPT)

    assert answer == "The policy term is 20 years."
    create_mock(generator).assert_awaited_once_with(
        model=TestConstants.TEST_CHAT_MODEL,
        messages=list(PROMPT.messages),
        max_tokens=generator.max_tokens,
        temperature=generator.temperature,
        stream=False,
    )


@pytest.mark.asyncio
async def test_per_call_overrides():
    generator = make_generator(max_tokens=500, temperature=0.2)

    await generator.generate(PROMPT, max_tokens=50, temperature=0.0)

    kwargs = create_mock(generator).await_args.kwargs
    assert kwargs["max_tokens"] == 50
    assert kwargs["temperature"] == 0.0


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "", "   "])
async def test_empty_completion_falls_back(content):
    generator = make_generator(content)

    assert await generator.generate(PROMPT) == EMPTY_RESPONSE_ANSWER


@pytest.mark.asyncio
async def test_oversized_prompt_is_rejected_before_any_request():
    generator = make_generator(prompt_token_limit=5)

    with pytest.raises(ContextTooLarge) as exc_info:
        await generator.generate(PROMPT)

    assert exc_info.value.token_count == PROMPT.token_count
    assert exc_info.value.limit == 5
    create_mock(generator).assert_not_awaited()


@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    generator = make_generator(
        side_effect=[
            APIConnectionError(request=REQUEST),
            create_mock_chat_response("Recovered answer"),
        ],
        retry_policy=RetryPolicy(max_attempts=3, min_wait=0, max_wait=0),
    )

    assert await generator.generate(PROMPT) == "Recovered answer"
    assert create_mock(generator).await_count == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_service_error():
    generator = make_generator(
        side_effect=APIConnectionError(request=REQUEST),
        retry_policy=RetryPolicy(max_attempts=2, min_wait=0, max_wait=0),
    )

    with pytest.raises(GenerationServiceError) as exc_info:
        await generator.generate(PROMPT)

    assert create_mock(generator).await_count == 2
    assert isinstance(exc_info.value.__cause__, APIConnectionError)


@pytest.mark.asyncio
async def test_bad_request_is_not_retried():
    response = httpx.Response(400, request=REQUEST)
    generator = make_generator(
        side_effect=BadRequestError("bad request", response=response, body=None),
        retry_policy=RetryPolicy(max_attempts=3, min_wait=0, max_wait=0),
    )

    with pytest.raises(GenerationServiceError):
        await generator.generate(PROMPT)

    assert create_mock(generator).await_count == 1


@pytest.mark.asyncio
async def test_stream_yields_fragments_in_order():
    stream = FakeChatStream(["The policy ", None, "term is ", "", "20 years."])
    generator = make_generator()
    create_mock(generator).return_value = stream

    fragments = await generator.generate(PROMPT, stream=True)
    collected = [fragment async for fragment in fragments]

    assert collected == ["The policy ", "term is ", "20 years."]
    assert stream.closed
    assert create_mock(generator).await_args.kwargs["stream"] is True


@pytest.mark.asyncio
async def test_stream_is_lazy_and_closes_early():
    stream = FakeChatStream(["one ", "two ", "three"])
    generator = make_generator()
    create_mock(generator).return_value = stream

    fragments = await generator.generate(PROMPT, stream=True)
    assert stream.consumed == 0

    async with fragments:
        first = await anext(fragments)

    assert first == "one "
    assert stream.consumed == 1
    assert stream.closed
    assert [fragment async for fragment in fragments] == []


@pytest.mark.asyncio
async def test_stream_failure_raises_service_error():
    stream = FakeChatStream(["partial "], error=APIConnectionError(request=REQUEST))
    generator = make_generator()
    create_mock(generator).return_value = stream

    fragments = await generator.generate(PROMPT, stream=True)

    assert await anext(fragments) == "partial "
    with pytest.raises(GenerationServiceError):
        await anext(fragments)
    assert stream.closed


@pytest.mark.asyncio
async def test_stream_skips_chunks_without_choices():
    stream = FakeChatStream(["answer"])
    stream.chunks.insert(0, SimpleNamespace(choices=[]))
    generator = make_generator()
    create_mock(generator).return_value = stream

    fragments = await generator.generate(PROMPT, stream=True)

    assert [fragment async for fragment in fragments] == ["answer"]
