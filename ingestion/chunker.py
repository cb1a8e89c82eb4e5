"""Scene-aligned text chunking module."""
import math
import tiktoken
from typing import List
from utils.logger import setup_logger
from utils.ids import chunk_id
from ingestion.models import Scene, Chunk
import config

logger = setup_logger(__name__)


class SceneChunker:
    """Slides a fixed character window over each scene.

    Windows are clamped to the scene end and the cursor restarts at every
    scene, so no chunk ever straddles a scene boundary.
    """

    def __init__(
        self,
        chunk_size: int = config.CHUNK_SIZE_CHARS,
        overlap: int = config.CHUNK_OVERLAP_CHARS,
        tokenizer=None
    ):
        """Initialize chunker.

        Args:
            chunk_size: Window size in characters
            overlap: Characters shared by consecutive windows
            tokenizer: Optional object with ``encode(text)`` used for token counts
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if overlap < 0 or overlap >= chunk_size:
            raise ValueError(f"overlap ({overlap}) must be >= 0 and smaller than chunk_size ({chunk_size})")

        self.chunk_size = chunk_size
        self.overlap = overlap
        self._tokenizer = tokenizer

        logger.debug(f"Chunker initialized: {chunk_size} chars, {overlap} overlap")

    @property
    def stride(self) -> int:
        return self.chunk_size - self.overlap

    @property
    def tokenizer(self):
        # cl100k_base as an approximation, loaded on first use
        if self._tokenizer is None:
            self._tokenizer = tiktoken.get_encoding("cl100k_base")
        return self._tokenizer

    def expected_count(self, scene_length: int) -> int:
        return math.ceil(scene_length / self.stride) if scene_length > 0 else 0

    def chunk_scene(
        self,
        scene: Scene,
        document_id: str,
        text: str,
        start_chunk_index: int = 0
    ) -> List[Chunk]:
        """Chunk one scene of the document.

        Args:
            scene: Scene with absolute offsets
            document_id: Owning document
            text: Full document text
            start_chunk_index: Document-wide index of the first chunk

        Returns:
            Chunks in order, each inside ``[scene.start_char, scene.end_char]``
        """
        chunks = []
        scene_end = min(scene.end_char, len(text))
        cursor = scene.start_char

        while cursor < scene_end:
            end = min(cursor + self.chunk_size, scene_end)
            chunk_text = text[cursor:end]

            chunks.append(Chunk(
                chunk_id=chunk_id(document_id, cursor, end),
                chapter_index=scene.chapter_index,
                scene_id=scene.id,
                scene_index=scene.local_index,
                global_scene_index=scene.global_scene_index,
                chunk_index=start_chunk_index + len(chunks),
                text=chunk_text,
                token_count=len(self.tokenizer.encode(chunk_text)),
                start_char=cursor,
                end_char=end
            ))
            cursor += self.stride

        return chunks
