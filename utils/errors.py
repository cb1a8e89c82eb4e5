"""Exception types shared across the engine."""


class EngineError(Exception):
    """Base class for engine errors."""
    pass


class ValidationError(EngineError):
    """Raised when caller input is invalid (bad id, empty entity name)."""
    pass


class BudgetExceededError(EngineError):
    """Raised when a budget check denies an operation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ProviderError(EngineError):
    """Raised when an external provider call fails."""
    pass


class LLMError(ProviderError):
    """Raised when an LLM completion fails or returns unusable output."""
    pass


class EmbeddingError(ProviderError):
    """Raised when embedding fails after retries."""
    pass


class TextExtractionError(EngineError):
    """Raised when a document's text cannot be read."""
    pass


class IngestionError(EngineError):
    """Raised for unrecoverable ingestion failures."""
    pass


class LLMResponseError(LLMError):
    """Raised when a completion succeeded but its body is unusable."""
    pass


class VectorStoreError(ProviderError):
    """Raised when a fragment-store query fails."""
    pass
