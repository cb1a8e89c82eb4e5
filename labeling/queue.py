"""Single-consumer queue that builds the SNIPPET layer."""
import asyncio
from typing import List, Optional, Dict, Any

from budget.governor import today
from budget.task_config import TaskConfigResolver
from labeling.micro_fragments import (
    MicroFragment,
    label_micro_fragments,
    split_into_micro_fragments,
)
from llm.completion import LLMClient
from llm.embeddings import EmbeddingService
from storage.database import Database
from storage.models import Fragment, FragmentLayer
from storage.vector_store import FragmentStore
from utils.errors import ValidationError
from utils.ids import snippet_id
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

LABEL_TASK = "microFragmentLabeling"


class LabelingQueue:
    """Polls ``ingestion_jobs`` and labels one document per tick.

    Moving a job to ``processing`` is at-least-once dispatch, not a lock;
    snippet ids are derived from (document, position) so a redelivered job
    overwrites rather than duplicates.
    """

    def __init__(
        self,
        db: Database,
        store: FragmentStore,
        llm: LLMClient,
        embedder: EmbeddingService,
        resolver: Optional[TaskConfigResolver] = None,
        batch_size: int = config.LABELING_BATCH_SIZE,
        daily_ceiling: int = config.LABELING_DAILY_REQUEST_CEILING
    ):
        self.db = db
        self.store = store
        self.llm = llm
        self.embedder = embedder
        self.resolver = resolver or TaskConfigResolver(db)
        self.batch_size = batch_size
        self.daily_ceiling = daily_ceiling

    def enqueue(self, document_id: str) -> Dict[str, Any]:
        if self.db.get_document(document_id) is None:
            raise ValidationError(f"Document not found: {document_id}")
        job = self.db.insert_job(document_id)
        logger.info(f"Queued labeling job {job['id']} for document {document_id}")
        return job

    def retry_job(self, job_id: str) -> Dict[str, Any]:
        """Operator action: put a failed job back in the queue."""
        job = self.db.get_job(job_id)
        if job is None:
            raise ValidationError(f"Job not found: {job_id}")
        self.db.update_job(job_id, "queued")
        logger.info(f"Re-queued job {job_id}")
        return self.db.get_job(job_id)

    def process_queue(self) -> Optional[str]:
        """Process the oldest queued job, if any.

        Returns:
            The id of the job that was picked, or None when nothing ran
        """
        job = self.db.get_oldest_queued_job()
        if job is None:
            return None

        try:
            label_config = self.resolver.resolve_task(LABEL_TASK)

            document = self.db.get_document(job['document_id'])
            if document is None:
                self.db.update_job(job['id'], "failed", error="Document not found")
                return job['id']

            used = self.db.get_model_requests(today(), label_config.model)
            if used >= self.daily_ceiling:
                logger.info(f"Daily ceiling reached for {label_config.model}; job {job['id']} waiting")
                return None

            self.db.update_job(job['id'], "processing")
            upserted = self._process_document(document, label_config.provider, label_config.model)
            self.db.update_job(
                job['id'], "done",
                message=f"Processed successfully ({upserted} snippets)"
            )
            logger.info(f"Job {job['id']} done: {upserted} snippets")

        except Exception as e:
            logger.exception(f"Job {job['id']} failed")
            self.db.update_job(job['id'], "failed", error=str(e))

        return job['id']

    def _split_document(self, document_id: str) -> List[MicroFragment]:
        fragments = []
        for chunk in self.db.get_chunks(document_id):
            for text in split_into_micro_fragments(chunk['text']):
                fragments.append(MicroFragment(
                    text=text,
                    position_index=len(fragments),
                    chunk_id=chunk['id'],
                    chapter_index=chunk['chapter_index'],
                    global_scene_index=chunk['global_scene_index']
                ))
        return fragments

    def _process_document(self, document: Dict[str, Any], provider: str, model: str) -> int:
        fragments = self._split_document(document['id'])
        logger.info(f"Document {document['id']} split into {len(fragments)} micro-fragments")

        upserted = 0
        for i in range(0, len(fragments), self.batch_size):
            batch = fragments[i:i + self.batch_size]

            approx_tokens = sum(len(f.text) for f in batch) // 4
            self.db.increment_model_usage(today(), provider, model, 1, approx_tokens, 0)
            self.db.increment_task_usage(today(), LABEL_TASK, 1, approx_tokens, 0)

            labeled = label_micro_fragments(batch, self.llm, model)
            vectors = self.embedder.embed([f.text for f in labeled])

            if len(vectors) != len(labeled):
                logger.error(
                    f"Embedding count mismatch ({len(vectors)} vs {len(labeled)}); "
                    f"skipping batch at position {i}"
                )
                continue

            self.store.upsert([
                Fragment(
                    id=snippet_id(document['id'], f.position_index),
                    text=f.text,
                    owner_id=document['owner_id'],
                    document_id=document['id'],
                    layer=FragmentLayer.SNIPPET,
                    embedding=vector,
                    chapter_index=f.chapter_index,
                    global_scene_index=f.global_scene_index,
                    position_index=f.position_index,
                    entity_names=f.entity_names,
                    labels=f.labels
                )
                for f, vector in zip(labeled, vectors)
            ])
            upserted += len(labeled)

        return upserted

    async def run_worker(self, interval: float = config.LABELING_POLL_INTERVAL, max_ticks: Optional[int] = None) -> None:
        """Poll forever (or ``max_ticks`` times), one job per tick."""
        logger.info(f"Labeling worker started (every {interval}s)")
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            try:
                await asyncio.to_thread(self.process_queue)
            except Exception:
                logger.exception("Worker tick failed")
            ticks += 1
            if max_ticks is None or ticks < max_ticks:
                await asyncio.sleep(interval)
