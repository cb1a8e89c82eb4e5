"""Concurrent fragment retrieval for the two analysis passes."""
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Tuple

from extraction.templates import AnalysisTemplate, attribute_words
from llm.embeddings import EmbeddingService
from storage.models import Fragment
from storage.vector_store import FragmentStore
from timeline.models import FocusWindow
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

FOCUS_TIME_CUES = re.compile(
    r"\b(before|after|earlier|later|now|pre|post|damaged|ruined|intact|original)\b",
    re.IGNORECASE
)


def merge_fragments(existing: List[Fragment], incoming: Iterable[Fragment]) -> Tuple[List[Fragment], int]:
    """Append unseen fragments, best score first; duplicates keep the higher score.

    Existing fragments never move, so fragment indices already shown to the
    model stay valid.

    Returns:
        (merged list, number of fragments added)
    """
    merged = list(existing)
    position = {f.id: i for i, f in enumerate(merged)}
    fresh: Dict[str, Fragment] = {}

    for fragment in incoming:
        if fragment.id in position:
            current = merged[position[fragment.id]]
            if (fragment.score or 0) > (current.score or 0):
                merged[position[fragment.id]] = current.model_copy(update={'score': fragment.score})
            continue
        best = fresh.get(fragment.id)
        if best is None or (fragment.score or 0) > (best.score or 0):
            fresh[fragment.id] = fragment

    added = sorted(fresh.values(), key=lambda f: f.score or 0, reverse=True)
    return merged + added, len(added)


def refinement_queries(
    template: AnalysisTemplate,
    entity_name: str,
    attribute: str,
    focus_text: Optional[str] = None,
    max_queries: int = config.MAX_QUERIES_PER_ATTRIBUTE
) -> List[str]:
    """Search queries for one weak attribute, at most ``max_queries``.

    A focus phrase with time cues contributes one extra query so the
    refinement is pulled toward the same moment.
    """
    queries = template.queries_for(entity_name, attribute)
    if focus_text and FOCUS_TIME_CUES.search(focus_text):
        focus_query = f"{entity_name} {attribute_words(attribute)} {focus_text.strip()}"
        return queries[:max_queries - 1] + [focus_query]
    return queries[:max_queries]


class ContextRetriever:
    """Searches the fragment store for one analysis request."""

    def __init__(
        self,
        store: FragmentStore,
        embedder: EmbeddingService,
        workers: int = config.SEARCH_WORKERS,
        global_top_k: int = config.GLOBAL_SEARCH_TOP_K,
        window_top_k: int = config.WINDOW_SEARCH_TOP_K,
        refine_top_k: int = config.REFINE_SEARCH_TOP_K
    ):
        self.store = store
        self.embedder = embedder
        self.workers = workers
        self.global_top_k = global_top_k
        self.window_top_k = window_top_k
        self.refine_top_k = refine_top_k

    def _search_document(
        self,
        document: Dict[str, Any],
        embedding: List[float],
        window: Optional[FocusWindow]
    ) -> List[Fragment]:
        results = self.store.search(
            document['owner_id'], document['id'], embedding, top_k=self.global_top_k
        )
        if window is not None:
            results += self.store.search(
                document['owner_id'], document['id'], embedding,
                scene_range=window.as_range(), top_k=self.window_top_k
            )
        return results

    def broad(
        self,
        documents: List[Dict[str, Any]],
        entity_name: str,
        entity_type: str,
        window: Optional[FocusWindow] = None
    ) -> List[Fragment]:
        """Pass 1: one global search per document, plus a windowed one if given."""
        embedding = self.embedder.embed_one(f"Visual appearance of {entity_name}. {entity_type}.")

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [
                pool.submit(self._search_document, document, embedding, window)
                for document in documents
            ]
            found = [fragment for future in futures for fragment in future.result()]

        fragments, _ = merge_fragments([], found)
        logger.info(f"Pass 1 retrieved {len(fragments)} fragments for '{entity_name}'")
        return fragments

    def _refine_attribute(
        self,
        documents: List[Dict[str, Any]],
        queries: List[str],
        scene_range: Optional[Tuple[int, int]]
    ) -> List[Fragment]:
        vectors = self.embedder.embed(queries)
        if len(vectors) != len(queries):
            logger.warning(f"Embedded {len(vectors)} of {len(queries)} refinement queries")

        found = []
        for vector in vectors:
            for document in documents:
                found += self.store.search(
                    document['owner_id'], document['id'], vector,
                    scene_range=scene_range, top_k=self.refine_top_k
                )
        return found

    def targeted(
        self,
        documents: List[Dict[str, Any]],
        template: AnalysisTemplate,
        entity_name: str,
        attributes: List[str],
        focus_text: Optional[str] = None,
        window: Optional[FocusWindow] = None
    ) -> Dict[str, List[Fragment]]:
        """Pass 2: targeted searches per weak attribute, run concurrently.

        Time-bound attributes are scoped to the window when one exists.
        A failing attribute search is logged and yields nothing.
        """
        results: Dict[str, List[Fragment]] = {}

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {}
            for attr in attributes:
                queries = refinement_queries(template, entity_name, attr, focus_text)
                scene_range = (
                    window.as_range()
                    if window is not None and template.is_time_bound(attr) else None
                )
                futures[attr] = pool.submit(self._refine_attribute, documents, queries, scene_range)

            for attr, future in futures.items():
                try:
                    results[attr] = future.result()
                except Exception as e:
                    logger.warning(f"Refinement search for '{attr}' failed: {e}")
                    results[attr] = []

        return results
