"""Composition root: wires storage, providers and components together."""
import threading
from typing import Any, Dict, List, Optional

from budget.governor import BudgetGovernor
from budget.task_config import TaskConfigResolver
from extraction.aggregation import AggregationReport, AggregationSweep
from extraction.analyzer import AttributeAnalyzer
from extraction.models import AnalysisResult
from ingestion.chunker import SceneChunker
from ingestion.models import IngestionResult
from ingestion.pipeline import BookIngestor
from ingestion.scene_extractor import SceneExtractor
from labeling.queue import LabelingQueue
from llm.completion import LLMClient
from llm.embeddings import EmbeddingService
from storage.database import Database
from storage.models import HealthStatus
from storage.vector_store import FragmentStore
from timeline.models import FocusWindow
from timeline.resolver import TimelineResolver
from utils.errors import ValidationError
from utils.logger import setup_logger

logger = setup_logger(__name__)


class NarrativeEngine:
    """Caller-facing operations over one database and one fragment store.

    Any collaborator may be injected; missing ones are built from config.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        store: Optional[FragmentStore] = None,
        llm: Optional[LLMClient] = None,
        embedder: Optional[EmbeddingService] = None,
        chunker: Optional[SceneChunker] = None
    ):
        self.db = db or Database()
        self.store = store or FragmentStore()
        self.llm = llm or LLMClient()
        self.embedder = embedder or EmbeddingService()

        self.resolver = TaskConfigResolver(self.db)
        self.governor = BudgetGovernor(self.db, self.resolver)
        self.timeline = TimelineResolver(self.db, self.store, self.embedder)
        self.ingestor = BookIngestor(
            self.db, self.store, self.embedder, self.governor,
            SceneExtractor(self.llm, self.governor, self.resolver),
            chunker=chunker
        )
        self.labeling = LabelingQueue(self.db, self.store, self.llm, self.embedder, self.resolver)
        self.analyzer = AttributeAnalyzer(
            self.db, self.store, self.embedder, self.llm, self.governor, self.timeline
        )
        self.aggregator = AggregationSweep(self.db, self.store, self.llm, self.governor)

    def register_document(self, owner_id: str, title: str, file_path: str) -> str:
        if not owner_id or not title or not file_path:
            raise ValidationError("owner_id, title and file_path are required")
        return self.db.insert_document(owner_id, title, file_path)

    def ingest(self, document_id: str) -> IngestionResult:
        return self.ingestor.ingest(document_id)

    def start_ingestion(self, document_id: str) -> threading.Thread:
        """Run ingestion on a daemon thread; poll the document status for progress."""
        if self.db.get_document(document_id) is None:
            raise ValidationError(f"Document not found: {document_id}")
        thread = threading.Thread(
            target=self.ingestor.ingest,
            args=(document_id,),
            name=f"ingest-{document_id[:8]}",
            daemon=True
        )
        thread.start()
        logger.info(f"Background ingestion started for {document_id}")
        return thread

    def analyze(
        self,
        owner_id: str,
        document_ids: List[str],
        entity_name: str,
        entity_type: str,
        focus_text: Optional[str] = None
    ) -> AnalysisResult:
        return self.analyzer.analyze(owner_id, document_ids, entity_name, entity_type, focus_text)

    def resolve_focus_window(self, document_id: str, focus_text: Optional[str]) -> Optional[FocusWindow]:
        return self.timeline.resolve_focus_window(document_id, focus_text)

    def enqueue_labeling(self, document_id: str) -> Dict[str, Any]:
        return self.labeling.enqueue(document_id)

    def aggregate(self, document_id: str, owner_id: str) -> AggregationReport:
        document = self.db.get_document(document_id)
        if document is None or document['owner_id'] != owner_id:
            raise ValidationError(f"Document not found: {document_id}")
        return self.aggregator.aggregate(document_id, owner_id)

    def delete_document(self, document_id: str) -> None:
        """Drop fragments (best-effort) then every relational record."""
        self.store.delete_all_for(document_id)
        self.db.delete_document(document_id)

    def health(self) -> Dict[str, HealthStatus]:
        try:
            documents = len(self.db.list_documents())
            database = HealthStatus(status="OK", count=documents)
        except Exception as e:
            database = HealthStatus(status="FAILED", error=str(e))
        return {"database": database, "fragments": self.store.health()}
