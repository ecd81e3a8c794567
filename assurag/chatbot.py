"""Question answering over the indexed product documents, per session."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from .config import config
from .context import ContextAssembler
from .conversation import ConversationManager, PromptBuilder
from .errors import AssuRAGError, ContextTooLarge
from .generation import Generator
from .models import Answer, AnswerFragment, Role

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from .context import ContextBlock
    from .models import Prompt, RetrievalResult, Turn
    from .pipeline import RAGPipeline
    from .retrieval import Retriever
    from .vector_store import MetadataFilter

logger = config.get_logger(__name__)

TIMEOUT_MESSAGE = "Sorry, answering took too long. Please try again."


class RAGChatbot:
    """Answers user questions with cited passages and session memory."""

    def __init__(  # noqa: PLR0913
        self,
        retriever: Retriever,
        assembler: ContextAssembler,
        generator: Generator,
        conversations: ConversationManager | None = None,
        *,
        prompt_builder: PromptBuilder | None = None,
        top_k: int | None = None,
        min_score: float | None = None,
        context_token_budget: int | None = None,
        history_max_turns: int | None = None,
        request_timeout: float | None = None,
        rewrite_queries: bool | None = None,
    ) -> None:
        """Wire the answering components together.

        Args:
            retriever: Finds passages for the (standalone) question.
            assembler: Packs passages into a cited context block.
            generator: Calls the chat model.
            conversations: Session store; a fresh in-memory one by default.
            prompt_builder: Composes chat messages.
            top_k: Passages retrieved per question.
            min_score: Relevance threshold for retrieval.
            context_token_budget: Tokens available for context passages.
            history_max_turns: Turns of history sent with each question.
            request_timeout: Seconds allowed for one answer.
            rewrite_queries: Rewrite follow-ups into standalone questions.
        """
        self.retriever = retriever
        self.assembler = assembler
        self.generator = generator
        self.conversations = (
            ConversationManager() if conversations is None else conversations
        )
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k
        self.min_score = assembler.min_score if min_score is None else min_score
        self.context_token_budget = (
            config.CONTEXT_TOKEN_BUDGET
            if context_token_budget is None
            else context_token_budget
        )
        self.history_max_turns = (
            config.HISTORY_MAX_TURNS if history_max_turns is None else history_max_turns
        )
        self.request_timeout = (
            config.REQUEST_TIMEOUT_SECONDS
            if request_timeout is None
            else request_timeout
        )
        self.rewrite_queries = (
            config.QUERY_REWRITE_ENABLED if rewrite_queries is None else rewrite_queries
        )

    @classmethod
    def from_pipeline(
        cls,
        pipeline: RAGPipeline,
        generator: Generator | None = None,
        conversations: ConversationManager | None = None,
        **kwargs: object,
    ) -> RAGChatbot:
        """Build a chatbot reading from the pipeline's index.

        Returns:
            The chatbot.
        """
        return cls(
            pipeline.retriever,
            ContextAssembler(pipeline.vector_index),
            generator or Generator(),
            conversations,
            **kwargs,  # type: ignore[arg-type]
        )

    async def standalone_query(self, question: str, history: Sequence[Turn]) -> str:
        """Rewrite a follow-up question so it can be retrieved on its own.

        Returns:
            The rewritten question, or ``question`` when there is no history.
        """
        if not history or not self.rewrite_queries:
            return question
        prompt = self.prompt_builder.build_rewrite(question, history[-3:])
        rewritten = await self.generator.generate(
            prompt,
            max_tokens=config.QUERY_REWRITE_MAX_TOKENS,
            temperature=config.QUERY_REWRITE_TEMPERATURE,
        )
        logger.info("Generated standalone query: %s", rewritten)
        return rewritten

    def compose(
        self,
        question: str,
        results: Sequence[RetrievalResult],
        history: Sequence[Turn],
    ) -> tuple[Prompt, ContextBlock]:
        """Assemble context and build a prompt that fits the model.

        Oldest history turns are dropped first, then the context budget is
        halved, until the prompt fits.

        Returns:
            The prompt and the context block it was built from.

        Raises:
            ContextTooLarge: If even the smallest useful prompt is too large.
        """
        limit = self.generator.prompt_token_limit
        history = list(history)
        budget = self.context_token_budget
        context = self.assembler.assemble(results, budget)
        had_context = not context.is_empty
        while True:
            prompt = self.prompt_builder.build(question, context, history)
            if prompt.token_count <= limit:
                return prompt, context
            if history:
                history.pop(0)
                continue
            budget //= 2
            context = self.assembler.assemble(results, budget)
            if budget <= 0 or (had_context and context.is_empty):
                raise ContextTooLarge(prompt.token_count, limit)
            logger.warning("Prompt too large; context budget cut to %d", budget)

    async def _prepare(
        self,
        session_id: str,
        query_text: str,
        metadata_filter: MetadataFilter | None,
    ) -> tuple[Prompt, ContextBlock, str]:
        history = self.conversations.history(session_id, self.history_max_turns)
        standalone = await self.standalone_query(query_text, history)
        results = await self.retriever.retrieve(
            standalone, self.top_k, self.min_score, metadata_filter
        )
        # Assembly reads passages under the index lock.
        prompt, context = await asyncio.to_thread(
            self.compose, query_text, results, history
        )
        if context.is_empty:
            logger.info("No relevant context for session %s", session_id)
        return prompt, context, standalone

    def _record(self, session_id: str, query_text: str, answer_text: str) -> None:
        self.conversations.append_turn(session_id, Role.USER, query_text)
        self.conversations.append_turn(session_id, Role.ASSISTANT, answer_text)

    async def answer(
        self,
        session_id: str,
        query_text: str,
        *,
        metadata_filter: MetadataFilter | None = None,
    ) -> Answer:
        """Answer one question within a session.

        Requests in the same session are served one at a time. Failures come
        back as an answer carrying a user-safe message and an error name.

        Returns:
            The answer with its citations.
        """
        logger.info("Processing question for session %s: %s", session_id, query_text)
        self.conversations.purge_expired()
        try:
            async with asyncio.timeout(self.request_timeout):
                async with self.conversations.lock(session_id):
                    prompt, context, standalone = await self._prepare(
                        session_id, query_text, metadata_filter
                    )
                    text = await self.generator.generate(prompt)
                    self._record(session_id, query_text, text)
        except AssuRAGError as exc:
            logger.exception("Failed to answer question in session %s", session_id)
            return Answer(
                text=exc.user_message,
                citations=[],
                session_id=session_id,
                error=type(exc).__name__,
            )
        except TimeoutError:
            logger.exception(
                "Answer for session %s exceeded %.1f seconds",
                session_id,
                self.request_timeout,
            )
            return Answer(
                text=TIMEOUT_MESSAGE,
                citations=[],
                session_id=session_id,
                error="Timeout",
            )

        for citation in context.citations:
            logger.info("  Cited %s", citation.citation_id)
        return Answer(
            text=text,
            citations=context.citations,
            session_id=session_id,
            standalone_query=standalone,
        )

    async def answer_stream(
        self,
        session_id: str,
        query_text: str,
        *,
        metadata_filter: MetadataFilter | None = None,
    ) -> AsyncIterator[AnswerFragment]:
        """Stream the answer to one question as it is generated.

        Yields:
            Text fragments, then one final fragment carrying the citations.
            On failure the final fragment carries a user-safe message instead.
        """
        self.conversations.purge_expired()
        lock = self.conversations.lock(session_id)
        try:
            # Waiting for the session lock counts towards the timeout.
            async with asyncio.timeout(self.request_timeout):
                await lock.acquire()
                try:
                    prompt, context, _ = await self._prepare(
                        session_id, query_text, metadata_filter
                    )
                    fragments = await self.generator.generate(prompt, stream=True)
                except BaseException:
                    lock.release()
                    raise
        except AssuRAGError as exc:
            logger.exception("Failed to answer question in session %s", session_id)
            yield AnswerFragment(
                text=exc.user_message, final=True, error=type(exc).__name__
            )
            return
        except TimeoutError:
            logger.exception("Answer for session %s timed out", session_id)
            yield AnswerFragment(text=TIMEOUT_MESSAGE, final=True, error="Timeout")
            return

        try:
            parts: list[str] = []
            async with fragments:
                try:
                    async for fragment in fragments:
                        parts.append(fragment)
                        yield AnswerFragment(text=fragment)
                except AssuRAGError as exc:
                    logger.exception("Answer stream broke in session %s", session_id)
                    yield AnswerFragment(
                        text=exc.user_message, final=True, error=type(exc).__name__
                    )
                    return

            self._record(session_id, query_text, "".join(parts).strip())
            yield AnswerFragment(
                text="", citations=tuple(context.citations), final=True
            )
        finally:
            lock.release()
