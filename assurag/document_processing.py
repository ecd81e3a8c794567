"""Document loading and text chunking functionality."""

from __future__ import annotations

import datetime
import re
import unicodedata
from pathlib import Path
from uuid import NAMESPACE_URL, uuid5

import pypdf
from bs4 import BeautifulSoup
from pypdf.errors import PdfReadError

from .config import config
from .errors import EmptyDocument, SourceUnavailable, UnsupportedFormat
from .models import CharSpan, Document, DocumentMetadata, Passage
from .tokens import token_spans

logger = config.get_logger(__name__)

TEXT_EXTENSIONS = {".txt", ".md"}
HTML_EXTENSIONS = {".html", ".htm"}
PDF_EXTENSIONS = {".pdf"}
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | HTML_EXTENSIONS | PDF_EXTENSIONS

_INLINE_WHITESPACE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*$")


def normalize_text(raw: str) -> str:
    """Collapse whitespace and fix up Unicode so downstream sees clean text.

    Paragraph breaks survive as a single blank line.
    """
    text = unicodedata.normalize("NFKC", raw).replace("\u00a0", " ")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _INLINE_WHITESPACE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def document_id_for(source_uri: str) -> str:
    """Stable identifier so re-ingesting a source replaces the same document."""
    return uuid5(NAMESPACE_URL, source_uri).hex


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("Input is not valid UTF-8; decoding as cp1252")
        return data.decode("cp1252", errors="replace")


class DocumentLoader:
    """Handles loading of text, PDF and HTML documents."""

    @staticmethod
    def load_pdf(file_path: Path) -> tuple[str, str | None]:
        """Load text content from a PDF file.

        Returns:
            The extracted text and the PDF's title metadata, if any.

        Raises:
            SourceUnavailable: If the file cannot be parsed as a PDF.
        """
        try:
            with file_path.open("rb") as file:
                pdf_reader = pypdf.PdfReader(file)
                pages = [page.extract_text() or "" for page in pdf_reader.pages]
                title = pdf_reader.metadata.title if pdf_reader.metadata else None
        except PdfReadError as exc:
            logger.exception("Error loading PDF %s", file_path)
            msg = f"Unreadable PDF: {file_path}"
            raise SourceUnavailable(msg) from exc
        return "\n\n".join(pages), title

    @staticmethod
    def load_txt(file_path: Path) -> str:
        """Load text content from a plain text or Markdown file.

        Returns:
            The decoded file content.
        """
        return _decode(file_path.read_bytes())

    @staticmethod
    def load_html(file_path: Path) -> tuple[str, str | None]:
        """Load visible text from an HTML file.

        Returns:
            The page text and its ``<title>``, if any.
        """
        soup = BeautifulSoup(_decode(file_path.read_bytes()), "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        title = soup.title.get_text(strip=True) if soup.title else None
        return soup.get_text("\n"), title

    @classmethod
    def load_document(
        cls,
        file_path: Path,
        *,
        product_category: str | None = None,
        effective_date: datetime.date | None = None,
    ) -> Document:
        """Load one file into a normalized Document.

        Args:
            file_path: Path to the document file.
            product_category: Category label; defaults to the parent directory name.
            effective_date: Date from which the document applies, if known.

        Returns:
            The normalized document.

        Raises:
            SourceUnavailable: If the file is missing or cannot be read.
            UnsupportedFormat: If the file type is not supported.
        """
        file_ext = file_path.suffix.lower()
        if file_ext not in SUPPORTED_EXTENSIONS:
            msg = f"Unsupported file type: {file_ext or file_path.name}"
            raise UnsupportedFormat(msg)
        if not file_path.is_file():
            msg = f"Document not found: {file_path}"
            raise SourceUnavailable(msg)

        title: str | None = None
        try:
            if file_ext in PDF_EXTENSIONS:
                raw_text, title = cls.load_pdf(file_path)
            elif file_ext in HTML_EXTENSIONS:
                raw_text, title = cls.load_html(file_path)
            else:
                raw_text = cls.load_txt(file_path)
        except OSError as exc:
            logger.exception("Error reading %s", file_path)
            msg = f"Cannot read document: {file_path}"
            raise SourceUnavailable(msg) from exc

        metadata = DocumentMetadata(
            title=(title or file_path.stem).strip(),
            product_category=product_category or file_path.parent.name or None,
            effective_date=effective_date,
        )
        document = cls.load_text(raw_text, file_path.as_posix(), metadata)
        logger.info(
            "Loaded %s (%d characters)", document.source_uri, len(document.raw_text)
        )
        return document

    @staticmethod
    def load_text(
        raw_text: str, source_uri: str, metadata: DocumentMetadata
    ) -> Document:
        """Build a Document from text already in memory.

        Returns:
            The normalized document.
        """
        return Document(
            id=document_id_for(source_uri),
            source_uri=source_uri,
            raw_text=normalize_text(raw_text),
            metadata=metadata,
        )

    @staticmethod
    def discover(directory: Path) -> list[Path]:
        """List the supported, non-hidden files directly inside ``directory``.

        Returns:
            File paths in name order.
        """
        found = []
        for file_path in sorted(directory.iterdir()):
            if file_path.name.startswith(".") or not file_path.is_file():
                continue
            if file_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
                logger.warning("Skipping unsupported file %s", file_path)
                continue
            found.append(file_path)
        return found

    @classmethod
    def load(
        cls,
        source: Path | str,
        *,
        product_category: str | None = None,
        effective_date: datetime.date | None = None,
    ) -> list[Document]:
        """Load a single file or every supported file in a directory.

        Unsupported files inside a directory are skipped with a warning; a
        single unsupported file is an error.

        Returns:
            Documents in path order.

        Raises:
            SourceUnavailable: If the source does not exist.
        """
        path = Path(source)
        if not path.exists():
            msg = f"Source not found: {path}"
            raise SourceUnavailable(msg)

        if path.is_file():
            return [
                cls.load_document(
                    path,
                    product_category=product_category,
                    effective_date=effective_date,
                )
            ]

        documents = []
        for file_path in cls.discover(path):
            documents.append(
                cls.load_document(
                    file_path,
                    product_category=product_category,
                    effective_date=effective_date,
                )
            )
        logger.info("Loaded %d documents from %s", len(documents), path)
        return documents


class TextChunker:
    """Splits documents into overlapping passages at sentence boundaries."""

    def __init__(self, max_tokens: int = 200, overlap_tokens: int = 40) -> None:
        """Initialize the TextChunker with passage size and overlap.

        Args:
            max_tokens: Maximum tokens in one passage.
            overlap_tokens: Tokens shared by adjacent passages.

        Raises:
            ValueError: If the sizes are inconsistent.
        """
        if max_tokens <= 0:
            msg = "max_tokens must be positive"
            raise ValueError(msg)
        if not 0 <= overlap_tokens < max_tokens:
            msg = "overlap_tokens must be >= 0 and smaller than max_tokens"
            raise ValueError(msg)
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens

    @staticmethod
    def _boundaries(
        text: str, spans: list[tuple[int, int]]
    ) -> tuple[set[int], set[int]]:
        """Token positions after which a paragraph or a sentence ends."""
        paragraph_ends: set[int] = set()
        sentence_ends: set[int] = set()
        for i in range(len(spans) - 1):
            start, end = spans[i]
            gap = text[end : spans[i + 1][0]]
            if "\n\n" in gap:
                paragraph_ends.add(i + 1)
            elif "\n" in gap or _SENTENCE_END.search(text[start:end]):
                sentence_ends.add(i + 1)
        return paragraph_ends, sentence_ends

    def _choose_end(
        self,
        start: int,
        total: int,
        paragraph_ends: set[int],
        sentence_ends: set[int],
    ) -> int:
        limit = start + self.max_tokens
        if limit >= total:
            return total

        # The end must move past the overlap or the next passage would not advance.
        floor = start + self.overlap_tokens
        midpoint = start + self.max_tokens // 2
        best_sentence: int | None = None
        for boundary in range(limit, floor, -1):
            if boundary in paragraph_ends and boundary > midpoint:
                return boundary
            if best_sentence is None and (
                boundary in sentence_ends or boundary in paragraph_ends
            ):
                best_sentence = boundary
        return best_sentence if best_sentence is not None else limit

    def chunk(self, document: Document) -> list[Passage]:
        """Split a document into passages in document order.

        Returns:
            Passages whose ``char_span`` slices ``document.raw_text`` exactly.

        Raises:
            EmptyDocument: If the document has no text.
        """
        text = document.raw_text
        spans = token_spans(text)
        if not spans:
            msg = f"Document {document.source_uri} is empty"
            raise EmptyDocument(msg)

        paragraph_ends, sentence_ends = self._boundaries(text, spans)
        passages: list[Passage] = []
        start = 0
        while True:
            end = self._choose_end(start, len(spans), paragraph_ends, sentence_ends)
            char_span = CharSpan(spans[start][0], spans[end - 1][1])
            ordinal = len(passages)
            passages.append(
                Passage(
                    id=f"{document.id}:{ordinal:05d}",
                    document_id=document.id,
                    ordinal=ordinal,
                    text=text[char_span.start : char_span.end],
                    char_span=char_span,
                    source_uri=document.source_uri,
                    metadata=document.metadata,
                )
            )
            if end >= len(spans):
                break
            start = end - self.overlap_tokens

        logger.info(
            "Document %s split into %d passages", document.source_uri, len(passages)
        )
        return passages
