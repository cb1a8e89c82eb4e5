"""Sentence embedding service."""
from typing import List
from sentence_transformers import SentenceTransformer
from tenacity import retry, stop_after_attempt, wait_exponential

from utils.logger import setup_logger
from utils.errors import EmbeddingError
import config

logger = setup_logger(__name__)


class EmbeddingService:
    """Encodes text with a sentence-transformers model.

    Batch calls are retried; a batch that keeps failing is re-encoded one
    text at a time and texts that still fail are dropped, so callers must
    compare the returned count with what they sent.
    """

    def __init__(self, model_name: str = config.EMBEDDING_MODEL, encoder=None):
        """Initialize embedding model.

        Args:
            model_name: sentence-transformers model name
            encoder: Optional object exposing ``encode(texts)``
        """
        self.model_name = model_name
        if encoder is None:
            logger.info(f"Loading embedding model: {model_name}")
            encoder = SentenceTransformer(model_name)
        self.encoder = encoder

    @retry(
        stop=stop_after_attempt(config.EMBEDDING_MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True
    )
    def _encode(self, texts: List[str]) -> List[List[float]]:
        vectors = self.encoder.encode(texts)
        return [list(map(float, v)) for v in vectors]

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a list of texts.

        Returns:
            One vector per text that could be encoded, in input order
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        for i in range(0, len(texts), config.EMBEDDING_BATCH_SIZE):
            batch = texts[i:i + config.EMBEDDING_BATCH_SIZE]
            try:
                vectors.extend(self._encode(batch))
            except Exception as e:
                logger.warning(f"Batch embedding failed ({e}); falling back to single-item encoding")
                for text in batch:
                    try:
                        vectors.extend(self._encode([text]))
                    except Exception as item_error:
                        logger.error(f"Dropping text from embedding batch: {item_error}")
        return vectors

    def embed_one(self, text: str) -> List[float]:
        """Embed a single text.

        Raises:
            EmbeddingError: If encoding fails after retries
        """
        try:
            return self._encode([text])[0]
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
