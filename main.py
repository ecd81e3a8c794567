"""Command-line entry point for ingesting documents and asking questions."""

from __future__ import annotations

import argparse
import asyncio
import datetime
import sys
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from assurag.chatbot import RAGChatbot
from assurag.config import config
from assurag.errors import AssuRAGError
from assurag.pipeline import RAGPipeline
from assurag.vector_store import MetadataFilter, Operator

if TYPE_CHECKING:
    from collections.abc import Sequence
    from logging import Logger

    from assurag.models import Citation

EXIT_COMMANDS = {"exit", "quit", ":q"}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Build the CLI parser and read command-line arguments."""  # noqa: DOC201
    parser = argparse.ArgumentParser(
        description="Answer questions about assurance products from their documents.",
    )
    parser.add_argument(
        "--backend",
        choices=["faiss", "flat"],
        default=None,
        help="Vector index backend (default: VECTOR_BACKEND or faiss).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Index a file or directory.")
    ingest.add_argument("source", type=Path, help="Document file or directory.")
    ingest.add_argument(
        "--category",
        dest="product_category",
        default=None,
        help="Product category label (default: parent directory name).",
    )
    ingest.add_argument(
        "--effective-date",
        type=datetime.date.fromisoformat,
        default=None,
        help="Date the documents take effect, as YYYY-MM-DD.",
    )

    for name, help_text in (
        ("ask", "Answer a single question."),
        ("chat", "Start an interactive conversation."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--category",
            dest="product_category",
            default=None,
            help="Only use passages of this product category.",
        )
        sub.add_argument(
            "--top-k",
            type=int,
            default=None,
            help=f"Passages to retrieve (default: {config.RETRIEVAL_TOP_K}).",
        )
        sub.add_argument(
            "--no-stream",
            dest="stream",
            action="store_false",
            help="Print the answer only once it is complete.",
        )
        sub.set_defaults(stream=True)
    subparsers.choices["ask"].add_argument("question", help="Question to answer.")
    return parser.parse_args(argv)


def format_citations(citations: Sequence[Citation]) -> str:
    """Render citations as a trailing sources list."""  # noqa: DOC201
    if not citations:
        return ""
    lines = [f"  [{c.citation_id}] {c.title}" for c in citations]
    return "Sources:\n" + "\n".join(lines)


async def run_ingest(pipeline: RAGPipeline, args: argparse.Namespace) -> int:
    """Ingest the requested source and report the outcome."""  # noqa: DOC201
    report = await pipeline.ingest(
        args.source,
        product_category=args.product_category,
        effective_date=args.effective_date,
    )
    print(  # noqa: T201
        f"Indexed {report.documents} documents "
        f"({report.passages} passages, {report.removed} stale removed)."
    )
    for source, reason in report.failed.items():
        print(f"  failed: {source}: {reason}")  # noqa: T201
    return 0 if report.ok else 1


async def answer_once(
    chatbot: RAGChatbot,
    session_id: str,
    question: str,
    *,
    stream: bool,
    metadata_filter: MetadataFilter | None,
) -> bool:
    """Print one answer; returns False if it failed."""  # noqa: DOC201
    if not stream:
        answer = await chatbot.answer(
            session_id, question, metadata_filter=metadata_filter
        )
        print(answer.text)  # noqa: T201
        sources = format_citations(answer.citations)
        if sources:
            print(sources)  # noqa: T201
        return answer.error is None

    ok = True
    async for fragment in chatbot.answer_stream(
        session_id, question, metadata_filter=metadata_filter
    ):
        if fragment.error is not None:
            ok = False
        print(fragment.text, end="", flush=True)  # noqa: T201
        if fragment.final:
            print()  # noqa: T201
            sources = format_citations(fragment.citations)
            if sources:
                print(sources)  # noqa: T201
    return ok


async def run_chat(
    chatbot: RAGChatbot, args: argparse.Namespace, logger: Logger
) -> int:
    """Read questions from stdin until EOF or an exit command."""  # noqa: DOC201
    metadata_filter = build_filter(args)
    session_id = uuid.uuid4().hex
    logger.info("Started chat session %s", session_id)
    print("Ask about your assurance products. Type 'exit' to quit.")  # noqa: T201
    while True:
        try:
            question = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        question = question.strip()
        if not question:
            continue
        if question.lower() in EXIT_COMMANDS:
            break
        await answer_once(
            chatbot,
            session_id,
            question,
            stream=args.stream,
            metadata_filter=metadata_filter,
        )
    return 0


def build_filter(args: argparse.Namespace) -> MetadataFilter | None:
    """Translate CLI options into a metadata filter."""  # noqa: DOC201
    if args.product_category:
        return MetadataFilter.where(
            "product_category", Operator.EQ, args.product_category
        )
    return None


async def run(args: argparse.Namespace, logger: Logger) -> int:
    """Dispatch the parsed command."""  # noqa: DOC201
    pipeline = RAGPipeline(vector_backend=args.backend)
    if args.command == "ingest":
        return await run_ingest(pipeline, args)

    chatbot = RAGChatbot.from_pipeline(
        pipeline, **({"top_k": args.top_k} if args.top_k else {})
    )
    if args.command == "ask":
        ok = await answer_once(
            chatbot,
            uuid.uuid4().hex,
            args.question,
            stream=args.stream,
            metadata_filter=build_filter(args),
        )
        return 0 if ok else 1
    return await run_chat(chatbot, args, logger)


def main(argv: Sequence[str] | None = None) -> int:
    """Validate configuration and run the requested command."""  # noqa: DOC201
    args = parse_args(argv)

    config.setup_logging()
    logger = config.get_logger(__name__)

    try:
        config.validate()
    except ValueError:
        logger.exception("Configuration invalid")
        return 1

    try:
        return asyncio.run(run(args, logger))
    except KeyboardInterrupt:
        logger.info("AssuRAG stopped by user")
        return 0
    except AssuRAGError as exc:
        logger.exception("Command %s failed", args.command)
        print(exc.user_message, file=sys.stderr)  # noqa: T201
        return 1


if __name__ == "__main__":
    sys.exit(main())
