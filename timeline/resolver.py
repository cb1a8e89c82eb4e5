"""Natural-language temporal focus to scene-index window."""
import re
from typing import Optional

from llm.embeddings import EmbeddingService
from storage.database import Database
from storage.models import FragmentLayer
from storage.vector_store import FragmentStore
from timeline.models import FocusWindow, MatchedScene
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

BEFORE_CUES = re.compile(r"\b(before|prior to|until|leading up to|earlier than)\b", re.IGNORECASE)
AFTER_CUES = re.compile(r"\b(after|following|since|later than|in the wake of)\b", re.IGNORECASE)


class TimelineResolver:
    """Resolves phrases like "before the siege" against scene summaries.

    Keyword heuristic: the matched cluster's span is widened to the start
    of the book on a before-cue and to its end on an after-cue, then padded.
    """

    def __init__(
        self,
        db: Database,
        store: FragmentStore,
        embedder: EmbeddingService,
        threshold: float = config.TIMELINE_SCORE_THRESHOLD,
        padding: int = config.TIMELINE_PADDING,
        top_k: int = config.TIMELINE_TOP_K
    ):
        self.db = db
        self.store = store
        self.embedder = embedder
        self.threshold = threshold
        self.padding = padding
        self.top_k = top_k

    def resolve_focus_window(self, document_id: str, focus_text: Optional[str]) -> Optional[FocusWindow]:
        """Resolve a focus phrase within one document.

        Returns:
            FocusWindow, or None for blank focus, unknown document, or no
            scene scoring above the threshold
        """
        if not focus_text or not focus_text.strip():
            return None

        document = self.db.get_document(document_id)
        if document is None:
            logger.warning(f"Focus window requested for unknown document {document_id}")
            return None

        embedding = self.embedder.embed_one(f"Time period context: {focus_text.strip()}")
        matches = self.store.search(
            document['owner_id'],
            document_id,
            embedding,
            layer=FragmentLayer.SCENE,
            top_k=self.top_k
        )

        cluster = [
            m for m in matches
            if m.score is not None and m.score > self.threshold and m.global_scene_index is not None
        ]
        if not cluster:
            logger.info(f"No scene matched focus '{focus_text}' above {self.threshold}")
            return None

        indices = [m.global_scene_index for m in cluster]
        start, end = min(indices), max(indices)
        last_index = self.db.get_last_scene_index(document_id)
        if last_index is None:
            last_index = end

        if BEFORE_CUES.search(focus_text):
            start = 0
        if AFTER_CUES.search(focus_text):
            end = last_index

        start = max(0, start - self.padding)
        end = min(last_index, end + self.padding)

        window = FocusWindow(
            start_global_index=start,
            end_global_index=end,
            matched_scenes=[
                MatchedScene(
                    id=m.id,
                    title=f"Scene {m.global_scene_index}",
                    summary=m.text[:100],
                    global_scene_index=m.global_scene_index,
                    score=m.score
                )
                for m in cluster
            ]
        )
        logger.info(f"Focus '{focus_text}' resolved to scenes [{start}, {end}]")
        return window
