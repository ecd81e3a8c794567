"""Data models for the RAG application."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, NamedTuple

import numpy as np

from .tokens import count_tokens


class Role(StrEnum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class CharSpan(NamedTuple):
    """Half-open character range ``[start, end)`` inside a document's text."""

    start: int
    end: int


@dataclass(frozen=True)
class DocumentMetadata:
    """Descriptive fields attached to a document and inherited by its passages."""

    title: str
    product_category: str | None = None
    effective_date: datetime.date | None = None

    def to_dict(self) -> dict[str, Any]:
        """Flatten into index-friendly scalar values."""
        return {
            "title": self.title,
            "product_category": self.product_category,
            "effective_date": (
                self.effective_date.isoformat() if self.effective_date else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentMetadata:
        """Rebuild metadata flattened by :meth:`to_dict`."""
        effective_date = data.get("effective_date")
        return cls(
            title=str(data.get("title", "")),
            product_category=data.get("product_category"),
            effective_date=(
                datetime.date.fromisoformat(effective_date) if effective_date else None
            ),
        )


@dataclass(frozen=True)
class Document:
    """A normalized source document. Replaced wholesale on re-ingestion."""

    id: str
    source_uri: str
    raw_text: str
    metadata: DocumentMetadata


@dataclass(frozen=True)
class Passage:
    """Represents a chunk of text from a document."""

    id: str
    document_id: str
    ordinal: int
    text: str
    char_span: CharSpan
    source_uri: str
    metadata: DocumentMetadata

    def to_index_metadata(self) -> dict[str, Any]:
        """Snapshot stored next to the passage vector in the index."""
        return {
            "document_id": self.document_id,
            "ordinal": self.ordinal,
            "text": self.text,
            "char_start": self.char_span.start,
            "char_end": self.char_span.end,
            "source_uri": self.source_uri,
            **self.metadata.to_dict(),
        }

    @classmethod
    def from_index_metadata(cls, passage_id: str, data: dict[str, Any]) -> Passage:
        """Hydrate a passage from an index metadata snapshot."""
        return cls(
            id=passage_id,
            document_id=str(data["document_id"]),
            ordinal=int(data["ordinal"]),
            text=str(data["text"]),
            char_span=CharSpan(int(data["char_start"]), int(data["char_end"])),
            source_uri=str(data["source_uri"]),
            metadata=DocumentMetadata.from_dict(data),
        )


@dataclass(frozen=True)
class Embedding:
    """Vector for one passage under a specific embedding model."""

    passage_id: str
    vector: np.ndarray
    model_id: str


@dataclass(frozen=True)
class IndexEntry:
    """Derived, rebuildable record held by a vector index."""

    passage_id: str
    vector: np.ndarray
    metadata: dict[str, Any]


@dataclass(frozen=True)
class RetrievalResult:
    """A scored passage reference produced for one query."""

    passage_id: str
    score: float
    rank: int


@dataclass(frozen=True)
class Turn:
    """Represents a single turn in the conversation."""

    role: Role
    text: str
    timestamp: datetime.datetime


@dataclass
class Session:
    """Ordered dialogue history for one user session. Append-only."""

    session_id: str
    created_at: datetime.datetime
    last_active: datetime.datetime
    turns: list[Turn] = field(default_factory=list)


@dataclass(frozen=True)
class Citation:
    """Attribution for a block of context shown to the model."""

    citation_id: str
    source_uri: str
    title: str
    ordinals: tuple[int, ...]
    passage_ids: tuple[str, ...]


@dataclass(frozen=True)
class Answer:
    """Response returned across the presentation boundary."""

    text: str
    citations: list[Citation]
    session_id: str
    standalone_query: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class AnswerFragment:
    """Piece of a streamed answer; the final fragment carries the citations."""

    text: str
    citations: tuple[Citation, ...] = ()
    final: bool = False
    error: str | None = None


@dataclass(frozen=True)
class Prompt:
    """Chat messages ready for the completion endpoint."""

    messages: tuple[dict[str, str], ...]
    has_context: bool = True

    @property
    def token_count(self) -> int:
        """Whitespace tokens across every message body."""
        return sum(count_tokens(message["content"]) for message in self.messages)
