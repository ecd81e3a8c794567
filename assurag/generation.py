"""Answer generation against the OpenAI chat completions endpoint."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Literal, overload

import httpx
from openai import AsyncOpenAI, OpenAIError

from .config import config
from .errors import ContextTooLarge, GenerationServiceError
from .retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from openai import AsyncStream
    from openai.types.chat import ChatCompletion, ChatCompletionChunk

    from .models import Prompt

logger = config.get_logger(__name__)

EMPTY_RESPONSE_ANSWER = "I apologize, but I couldn't generate a response."


class FragmentStream:
    """Lazy, single-pass iterator over the text fragments of a streamed answer.

    Iteration ends when the endpoint finishes; ``aclose`` (or leaving an
    ``async with`` block) releases the HTTP stream early.
    """

    def __init__(self, stream: AsyncStream[ChatCompletionChunk]) -> None:
        self._stream = stream
        self._iterator: AsyncIterator[ChatCompletionChunk] | None = None
        self._closed = False

    def __aiter__(self) -> FragmentStream:
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self._iterator is None:
            self._iterator = self._stream.__aiter__()
        try:
            while True:
                chunk = await self._iterator.__anext__()
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    return content
        except StopAsyncIteration:
            await self.aclose()
            raise
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.exception("Answer stream failed")
            await self.aclose()
            msg = f"Answer stream failed: {exc}"
            raise GenerationServiceError(msg) from exc
        except asyncio.CancelledError:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        """Close the underlying HTTP response; later iteration yields nothing."""
        if self._closed:
            return
        self._closed = True
        await self._stream.close()

    async def __aenter__(self) -> FragmentStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()


class Generator:
    """Produces answers from composed prompts."""

    def __init__(  # noqa: PLR0913
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        client: AsyncOpenAI | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        prompt_token_limit: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the generator.

        Args:
            api_key: OpenAI API key. If None, reads OPENAI_API_KEY.
            model: Chat model name. If None, uses config.CHAT_MODEL.
            client: Preconfigured client, mainly for tests.
            max_tokens: Completion length cap. If None, config.CHAT_MAX_TOKENS.
            temperature: Sampling temperature. If None, config.CHAT_TEMPERATURE.
            prompt_token_limit: Largest prompt accepted. If None, derived from
                the model context window minus the completion cap.
            retry_policy: Backoff for transient endpoint failures.
        """
        if client is None:
            default_headers = config.get_api_headers()
            client = AsyncOpenAI(
                api_key=api_key or config.get_openai_api_key(),
                base_url=config.OPENAI_BASE_URL,
                default_headers=default_headers or None,
                timeout=config.REQUEST_TIMEOUT_SECONDS,
            )
        self.client = client
        self.model = model or config.CHAT_MODEL
        self.max_tokens = config.CHAT_MAX_TOKENS if max_tokens is None else max_tokens
        self.temperature = (
            config.CHAT_TEMPERATURE if temperature is None else temperature
        )
        self.prompt_token_limit = (
            config.prompt_token_limit()
            if prompt_token_limit is None
            else prompt_token_limit
        )
        self.retry_policy = retry_policy or RetryPolicy()

    def check_size(self, prompt: Prompt) -> None:
        """Reject prompts the model cannot accept.

        Raises:
            ContextTooLarge: If the prompt exceeds ``prompt_token_limit``.
        """
        if prompt.token_count > self.prompt_token_limit:
            raise ContextTooLarge(prompt.token_count, self.prompt_token_limit)

    @overload
    async def generate(
        self,
        prompt: Prompt,
        stream: Literal[False] = False,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...

    @overload
    async def generate(
        self,
        prompt: Prompt,
        stream: Literal[True],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> FragmentStream: ...

    async def generate(
        self,
        prompt: Prompt,
        stream: bool = False,  # noqa: FBT001, FBT002
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str | FragmentStream:
        """Generate the answer for ``prompt``.

        Returns:
            The answer text, or with ``stream=True`` a :class:`FragmentStream`
            whose connection is already open.

        Raises:
            ContextTooLarge: Before any request, if the prompt is too large.
            GenerationServiceError: If the endpoint fails after retries.
        """
        self.check_size(prompt)
        request = {
            "model": self.model,
            "messages": list(prompt.messages),
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }

        async def create() -> ChatCompletion | AsyncStream[ChatCompletionChunk]:
            return await self.client.chat.completions.create(
                **request, stream=stream
            )

        try:
            response = await self.retry_policy.wrap(create, logger)()
        except OpenAIError as exc:
            logger.exception("Error generating answer with %s", self.model)
            msg = f"Chat completion failed: {exc}"
            raise GenerationServiceError(msg) from exc

        if stream:
            logger.debug("Opened answer stream with %s", self.model)
            return FragmentStream(response)  # type: ignore[arg-type]

        content = response.choices[0].message.content  # type: ignore[union-attr]
        answer = content.strip() if content else ""
        if not answer:
            logger.warning("Empty completion from %s", self.model)
            return EMPTY_RESPONSE_ANSWER
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.info(
                "Generated answer (%d prompt / %d completion tokens)",
                usage.prompt_tokens,
                usage.completion_tokens,
            )
        return answer
