"""Assemble retrieved passages into a bounded, cited context block."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import groupby
from typing import TYPE_CHECKING

from .config import config
from .models import Citation, Passage
from .tokens import count_tokens

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import RetrievalResult
    from .vector_store import VectorIndex

logger = config.get_logger(__name__)

ENTRY_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class ContextEntry:
    """One cited span of text: a passage or a run of adjacent passages."""

    citation: Citation
    text: str
    score: float

    def render(self) -> str:
        return f"[{self.citation.citation_id}] {self.citation.title}\n{self.text}"


@dataclass(frozen=True)
class ContextBlock:
    """Ordered context entries and the token count of their rendering."""

    entries: tuple[ContextEntry, ...] = ()
    token_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def citations(self) -> list[Citation]:
        return [entry.citation for entry in self.entries]

    def render(self) -> str:
        return ENTRY_SEPARATOR.join(entry.render() for entry in self.entries)


def citation_for(run: Sequence[Passage]) -> Citation:
    """Build the citation for a run of consecutive passages of one document."""
    first, last = run[0], run[-1]
    anchor = (
        str(first.ordinal)
        if first.ordinal == last.ordinal
        else f"{first.ordinal}-{last.ordinal}"
    )
    return Citation(
        citation_id=f"{first.source_uri}#{anchor}",
        source_uri=first.source_uri,
        title=first.metadata.title,
        ordinals=tuple(passage.ordinal for passage in run),
        passage_ids=tuple(passage.id for passage in run),
    )


def merge_run(run: Sequence[Passage]) -> str:
    """Join consecutive passages, dropping the text they share.

    Returns:
        The run's text without the overlap repeated.
    """
    text = run[0].text
    end = run[0].char_span.end
    for passage in run[1:]:
        start = passage.char_span.start
        if start < end:
            text += passage.text[end - start :]
        else:
            text += ENTRY_SEPARATOR + passage.text
        end = max(end, passage.char_span.end)
    return text


class ContextAssembler:
    """Selects passages greedily by score until the token budget is reached.

    Passages from the same document with consecutive ordinals are merged into
    one entry with a single citation.
    """

    def __init__(
        self, vector_index: VectorIndex, min_score: float | None = None
    ) -> None:
        """Initialize the assembler.

        Args:
            vector_index: Source of passage text via its metadata snapshots.
            min_score: Results below this relevance score are never included.
        """
        self.vector_index = vector_index
        self.min_score = config.RETRIEVAL_MIN_SCORE if min_score is None else min_score

    @staticmethod
    def _entries(selected: Sequence[tuple[Passage, float]]) -> list[ContextEntry]:
        scores = {passage.id: score for passage, score in selected}
        ordered = sorted(
            (passage for passage, _ in selected),
            key=lambda p: (p.document_id, p.ordinal),
        )
        entries = []
        for _, group in groupby(ordered, key=lambda p: p.document_id):
            run: list[Passage] = []
            for passage in group:
                if run and passage.ordinal != run[-1].ordinal + 1:
                    entries.append(
                        ContextEntry(
                            citation_for(run),
                            merge_run(run),
                            max(scores[p.id] for p in run),
                        )
                    )
                    run = []
                run.append(passage)
            entries.append(
                ContextEntry(
                    citation_for(run), merge_run(run), max(scores[p.id] for p in run)
                )
            )
        entries.sort(key=lambda entry: (-entry.score, entry.citation.citation_id))
        return entries

    def assemble(
        self, results: Sequence[RetrievalResult], token_budget: int
    ) -> ContextBlock:
        """Build the context block for one question.

        Passages are taken in descending score order; the first one that would
        push the rendered block over ``token_budget`` ends the selection.

        Returns:
            The block; empty when nothing relevant fits.
        """
        if token_budget <= 0:
            return ContextBlock()

        selected: list[tuple[Passage, float]] = []
        entries: list[ContextEntry] = []
        token_count = 0
        seen: set[str] = set()
        for result in sorted(results, key=lambda r: (-r.score, r.rank)):
            if result.score < self.min_score or result.passage_id in seen:
                continue
            passage = self.vector_index.passage(result.passage_id)
            if passage is None:
                logger.warning(
                    "Passage %s no longer indexed; skipping", result.passage_id
                )
                continue

            candidate = [*selected, (passage, result.score)]
            candidate_entries = self._entries(candidate)
            candidate_tokens = sum(
                count_tokens(entry.render()) for entry in candidate_entries
            )
            if candidate_tokens > token_budget:
                break
            selected, entries, token_count = (
                candidate,
                candidate_entries,
                candidate_tokens,
            )
            seen.add(passage.id)

        logger.debug(
            "Assembled %d passages into %d entries (%d tokens)",
            len(selected),
            len(entries),
            token_count,
        )
        return ContextBlock(entries=tuple(entries), token_count=token_count)
