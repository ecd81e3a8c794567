"""AssuRAG - retrieval-augmented assistant for bank assurance products."""

from .chatbot import RAGChatbot
from .context import ContextAssembler, ContextBlock
from .conversation import ConversationManager, PromptBuilder, SessionState
from .document_processing import DocumentLoader, TextChunker
from .embeddings import EmbeddingService
from .generation import FragmentStream, Generator
from .models import Answer, AnswerFragment, Citation, Document, Passage
from .pipeline import IngestReport, RAGPipeline
from .retrieval import KeywordOverlapReranker, Retriever
from .vector_store import (
    FaissVectorIndex,
    FilterClause,
    FlatVectorIndex,
    MetadataFilter,
    Operator,
    get_vector_index,
)

__all__ = [
    "Answer",
    "AnswerFragment",
    "Citation",
    "ContextAssembler",
    "ContextBlock",
    "ConversationManager",
    "Document",
    "DocumentLoader",
    "EmbeddingService",
    "FaissVectorIndex",
    "FilterClause",
    "FlatVectorIndex",
    "FragmentStream",
    "Generator",
    "IngestReport",
    "KeywordOverlapReranker",
    "MetadataFilter",
    "Operator",
    "Passage",
    "PromptBuilder",
    "RAGChatbot",
    "RAGPipeline",
    "Retriever",
    "SessionState",
    "TextChunker",
    "get_vector_index",
]
