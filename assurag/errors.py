"""Error taxonomy shared by ingestion, indexing, retrieval and generation.

Every error carries a ``user_message`` that is safe to show to an end user.
The exception text itself (``str(exc)``) holds the technical cause and is
only ever written to the logs.
"""


class AssuRAGError(Exception):
    """Base class for all errors raised by the assistant core."""

    user_message = "Sorry, something went wrong while handling your request."
    retryable = False


class IngestionError(AssuRAGError):
    """Raised when a document cannot be turned into passages."""

    user_message = "The document could not be ingested."


class SourceUnavailable(IngestionError):
    """The document source does not exist or cannot be read."""

    user_message = "The requested document could not be read."


class UnsupportedFormat(IngestionError):
    """The document content type is not recognized."""

    user_message = "This document format is not supported."


class EmptyDocument(IngestionError):
    """The document contains no text once normalized."""

    user_message = "The document does not contain any text."


class VectorIndexError(AssuRAGError):
    """Raised when the vector index rejects an operation."""

    user_message = "The knowledge base is not available right now."


class DimensionMismatch(VectorIndexError):
    """A vector length disagrees with the index's established dimension."""


class ModelMismatch(VectorIndexError):
    """A vector was produced by a different embedding model than the index's."""


class ServiceError(AssuRAGError):
    """A remote model endpoint failed."""

    retryable = True


class EmbeddingServiceError(ServiceError):
    """The embedding endpoint failed (transport, quota or server error)."""

    user_message = (
        "The search service is temporarily unavailable. Please try again shortly."
    )


class GenerationServiceError(ServiceError):
    """The completion endpoint failed (transport, quota or server error)."""

    user_message = (
        "The answer service is temporarily unavailable. Please try again shortly."
    )


class ContextTooLarge(AssuRAGError):
    """The composed prompt exceeds the model's input limit."""

    user_message = (
        "Your question needs more context than I can handle at once. "
        "Please ask a shorter or more specific question."
    )

    def __init__(self, token_count: int, limit: int) -> None:
        """Record the offending prompt size.

        Args:
            token_count: Tokens in the rejected prompt.
            limit: Maximum tokens the model accepts as input.
        """
        super().__init__(f"Prompt has {token_count} tokens; limit is {limit}")
        self.token_count = token_count
        self.limit = limit
