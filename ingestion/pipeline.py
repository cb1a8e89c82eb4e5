"""Segmentation and chunking pipeline for a registered document."""
from typing import List, Dict, Any, Optional

from budget.governor import BudgetGovernor
from ingestion.chapters import split_chapters
from ingestion.chunker import SceneChunker
from ingestion.models import (
    Chunk,
    DocumentStatus,
    IngestionResult,
    IngestionStats,
    Scene,
)
from ingestion.scene_extractor import SceneExtractor
from ingestion.text_extractor import TextExtractor
from llm.embeddings import EmbeddingService
from storage.database import Database
from storage.models import Fragment, FragmentLayer
from storage.vector_store import FragmentStore
from utils.errors import BudgetExceededError, IngestionError
from utils.ids import scene_fragment_id
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class BookIngestor:
    """Turns a document's text into chapters, scenes and indexed chunks."""

    def __init__(
        self,
        db: Database,
        store: FragmentStore,
        embedder: EmbeddingService,
        governor: BudgetGovernor,
        scene_extractor: SceneExtractor,
        chunker: Optional[SceneChunker] = None,
        text_extractor: Optional[TextExtractor] = None,
        upsert_batch: int = config.CHUNK_UPSERT_BATCH,
        max_llm_calls: int = config.MAX_LLM_CALLS_PER_INGEST
    ):
        self.db = db
        self.store = store
        self.embedder = embedder
        self.governor = governor
        self.scene_extractor = scene_extractor
        self.chunker = chunker or SceneChunker()
        self.text_extractor = text_extractor or TextExtractor()
        self.upsert_batch = upsert_batch
        self.max_llm_calls = max_llm_calls

    def ingest(self, document_id: str) -> IngestionResult:
        """Run the full pipeline for one document.

        Any unrecoverable error marks the document FAILED with the error
        message; already persisted chapters, scenes and chunks are kept.

        Args:
            document_id: Registered document id

        Returns:
            IngestionResult with counts on success
        """
        document = self.db.get_document(document_id)
        if document is None:
            logger.error(f"Ingestion requested for unknown document {document_id}")
            return IngestionResult(success=False, error="Document not found")

        logger.info(f"Starting ingestion for document: {document['title']} ({document_id})")

        try:
            stats = self._run(document)
        except Exception as e:
            message = str(e)
            if not isinstance(e, (BudgetExceededError, IngestionError)):
                logger.exception(f"Ingestion failed for {document_id}")
            else:
                logger.error(f"Ingestion failed for {document_id}: {message}")
            self.db.update_document_status(document_id, DocumentStatus.FAILED.value, message)
            return IngestionResult(success=False, error=message)

        self.db.update_document_status(document_id, DocumentStatus.READY.value)
        logger.info(
            f"Ingestion complete for {document_id}: {stats.chapters} chapters, "
            f"{stats.scenes} scenes, {stats.chunks} chunks"
        )
        return IngestionResult(success=True, stats=stats)

    def _run(self, document: Dict[str, Any]) -> IngestionStats:
        document_id = document['id']
        owner_id = document['owner_id']

        extracted = self.text_extractor.extract(document['file_path'])
        text = extracted.raw_text
        self.db.update_document_page_count(document_id, extracted.page_count)
        self.db.update_document_status(document_id, DocumentStatus.PROCESSING.value)

        chapters = split_chapters(text)
        logger.info(f"Identified {len(chapters)} chapters")

        preflight = self.governor.preflight_ingestion(len(chapters))
        if not preflight.allowed:
            raise BudgetExceededError(preflight.reason)

        if len(chapters) > self.max_llm_calls:
            raise IngestionError(
                f"Safety cap hit: MAX_LLM_CALLS_PER_INGEST ({self.max_llm_calls}) "
                f"is below the {len(chapters)} chapters to segment"
            )

        scenes: List[Scene] = []
        global_scene_index = 0
        for chapter in chapters:
            logger.info(f"Processing chapter {chapter.chapter_index + 1}/{len(chapters)} ({chapter.title})")
            chapter.id = self.db.upsert_chapter(
                document_id, chapter.chapter_index, chapter.title,
                chapter.start_char, chapter.end_char
            )

            chapter_text = text[chapter.start_char:chapter.end_char]
            chapter_scenes = self.scene_extractor.extract(chapter, chapter_text, global_scene_index)

            for scene in chapter_scenes:
                scene.id = self.db.upsert_scene(scene.to_dict(document_id))
            self._index_scenes(chapter_scenes, document_id, owner_id)

            scenes.extend(chapter_scenes)
            global_scene_index += len(chapter_scenes)

        chunk_count = self._chunk_scenes(scenes, document_id, owner_id, text)

        return IngestionStats(chapters=len(chapters), scenes=len(scenes), chunks=chunk_count)

    def _index_scenes(self, scenes: List[Scene], document_id: str, owner_id: str) -> None:
        """Embed each scene's summary text into the SCENE layer."""
        if not scenes:
            return

        texts = [scene.fragment_text() for scene in scenes]
        vectors = self.embedder.embed(texts)
        if len(vectors) != len(texts):
            raise IngestionError(f"Embedded {len(vectors)} of {len(texts)} scene summaries")

        self.store.upsert([
            Fragment(
                id=scene_fragment_id(document_id, scene.global_scene_index),
                text=text,
                owner_id=owner_id,
                document_id=document_id,
                layer=FragmentLayer.SCENE,
                embedding=vector,
                chapter_index=scene.chapter_index,
                scene_index=scene.local_index,
                global_scene_index=scene.global_scene_index,
                start_char=scene.start_char,
                end_char=scene.end_char,
                temporal_hints=scene.temporal_hints
            )
            for scene, text, vector in zip(scenes, texts, vectors)
        ])

    def _chunk_scenes(
        self,
        scenes: List[Scene],
        document_id: str,
        owner_id: str,
        text: str
    ) -> int:
        logger.info("Chunking scenes (boundary-aligned)...")

        hints_by_scene = {scene.global_scene_index: scene.temporal_hints for scene in scenes}
        buffer: List[Chunk] = []
        total = 0

        for scene in scenes:
            if scene.end_char <= scene.start_char:
                continue
            chunks = self.chunker.chunk_scene(scene, document_id, text, start_chunk_index=total)
            total += len(chunks)
            buffer.extend(chunks)

            while len(buffer) >= self.upsert_batch:
                self._flush(buffer[:self.upsert_batch], document_id, owner_id, hints_by_scene)
                buffer = buffer[self.upsert_batch:]

        if buffer:
            self._flush(buffer, document_id, owner_id, hints_by_scene)

        return total

    def _flush(
        self,
        chunks: List[Chunk],
        document_id: str,
        owner_id: str,
        hints_by_scene: Dict[int, Dict[str, Any]]
    ) -> None:
        self.db.insert_chunks([chunk.to_dict(document_id) for chunk in chunks])

        vectors = self.embedder.embed([chunk.text for chunk in chunks])
        if len(vectors) != len(chunks):
            raise IngestionError(f"Embedded {len(vectors)} of {len(chunks)} chunks")

        self.store.upsert([
            Fragment(
                id=chunk.chunk_id,
                text=chunk.text,
                owner_id=owner_id,
                document_id=document_id,
                layer=FragmentLayer.CHUNK,
                embedding=vector,
                chapter_index=chunk.chapter_index,
                scene_index=chunk.scene_index,
                global_scene_index=chunk.global_scene_index,
                start_char=chunk.start_char,
                end_char=chunk.end_char,
                temporal_hints=hints_by_scene.get(chunk.global_scene_index, {})
            )
            for chunk, vector in zip(chunks, vectors)
        ])
