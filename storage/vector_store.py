"""ChromaDB fragment store operations."""
import json
import re
import chromadb
from chromadb.config import Settings
from typing import List, Dict, Any, Optional, Tuple
from pathlib import Path

from utils.errors import VectorStoreError
from utils.logger import setup_logger
from storage.models import Fragment, FragmentLayer, HealthStatus
import config

logger = setup_logger(__name__)

ENTITY_KEY_PREFIX = "ent_"
LABEL_KEY_PREFIX = "lbl_"
_SCROLL_PAGE = 1000


def normalize_entity_key(name: str) -> str:
    """Lowercase alphanumeric form of an entity name used in filter keys."""
    return re.sub(r'[^a-z0-9]+', '_', name.lower()).strip('_')


def _any_of(conditions: List[Dict[str, Any]]) -> Dict[str, Any]:
    return conditions[0] if len(conditions) == 1 else {"$or": conditions}


def _all_of(conditions: List[Dict[str, Any]]) -> Dict[str, Any]:
    return conditions[0] if len(conditions) == 1 else {"$and": conditions}


class FragmentStore:
    """Stores CHUNK, SCENE and SNIPPET fragments in one Chroma collection.

    Every fragment carries its owner and document in metadata and every
    read is scoped to both. Entity names and labels are additionally
    written as boolean marker keys so that "matches any of" can be
    expressed inside the ``where`` clause.
    """

    def __init__(
        self,
        chroma_path: Path = config.CHROMA_PATH,
        collection_name: str = config.CHROMA_COLLECTION,
        client=None
    ):
        """Initialize ChromaDB client and collection.

        Args:
            chroma_path: Path to ChromaDB persistence directory
            collection_name: Collection holding all fragments
            client: Optional pre-built Chroma client
        """
        self.chroma_path = chroma_path
        self.collection_name = collection_name
        self.client = client or chromadb.PersistentClient(
            path=str(chroma_path),
            settings=Settings(anonymized_telemetry=False)
        )
        # Vectors are always supplied by the caller
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None
        )
        logger.debug(f"Fragment store ready: collection '{collection_name}'")

    # ------------------------------------------------------------------
    # Payload conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _to_metadata(fragment: Fragment) -> Dict[str, Any]:
        metadata = {
            'owner_id': fragment.owner_id,
            'document_id': fragment.document_id,
            'layer': fragment.layer.value,
            'chapter_index': fragment.chapter_index,
            'scene_index': fragment.scene_index,
            'global_scene_index': fragment.global_scene_index,
            'position_index': fragment.position_index,
            'start_char': fragment.start_char,
            'end_char': fragment.end_char,
            'page_number': fragment.page_number,
            'entity_names': json.dumps(fragment.entity_names),
            'labels': json.dumps(fragment.labels),
            'temporal_hints': json.dumps(fragment.temporal_hints),
        }
        for name in fragment.entity_names:
            key = normalize_entity_key(name)
            if key:
                metadata[ENTITY_KEY_PREFIX + key] = True
        for label in fragment.labels:
            metadata[LABEL_KEY_PREFIX + label.upper()] = True

        # Chroma rejects None metadata values
        return {k: v for k, v in metadata.items() if v is not None}

    @staticmethod
    def _from_record(
        fragment_id: str,
        text: str,
        metadata: Dict[str, Any],
        score: Optional[float] = None
    ) -> Fragment:
        return Fragment(
            id=fragment_id,
            text=text or "",
            owner_id=metadata.get('owner_id', ''),
            document_id=metadata.get('document_id', ''),
            layer=FragmentLayer(metadata.get('layer', FragmentLayer.CHUNK.value)),
            chapter_index=metadata.get('chapter_index'),
            scene_index=metadata.get('scene_index'),
            global_scene_index=metadata.get('global_scene_index'),
            position_index=metadata.get('position_index'),
            start_char=metadata.get('start_char'),
            end_char=metadata.get('end_char'),
            page_number=metadata.get('page_number'),
            entity_names=json.loads(metadata.get('entity_names') or '[]'),
            labels=json.loads(metadata.get('labels') or '[]'),
            temporal_hints=json.loads(metadata.get('temporal_hints') or '{}'),
            score=score,
        )

    @staticmethod
    def build_where(
        owner_id: str,
        document_id: str,
        layer: Optional[FragmentLayer] = None,
        entity_names: Optional[List[str]] = None,
        labels: Optional[List[str]] = None,
        scene_range: Optional[Tuple[int, int]] = None
    ) -> Dict[str, Any]:
        """Build the Chroma filter applied together with similarity ranking."""
        conditions: List[Dict[str, Any]] = [
            {'owner_id': {'$eq': owner_id}},
            {'document_id': {'$eq': document_id}},
        ]
        if layer is not None:
            conditions.append({'layer': {'$eq': FragmentLayer(layer).value}})
        if entity_names:
            keys = [normalize_entity_key(n) for n in entity_names]
            keys = [k for k in keys if k]
            if keys:
                conditions.append(_any_of([{ENTITY_KEY_PREFIX + k: {'$eq': True}} for k in keys]))
        if labels:
            conditions.append(_any_of([{LABEL_KEY_PREFIX + l.upper(): {'$eq': True}} for l in labels]))
        if scene_range is not None:
            start, end = scene_range
            conditions.append({'global_scene_index': {'$gte': start}})
            conditions.append({'global_scene_index': {'$lte': end}})
        return _all_of(conditions)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def upsert(self, fragments: List[Fragment]) -> None:
        """Insert or replace fragments by id.

        Args:
            fragments: Fragments with embeddings set
        """
        if not fragments:
            return

        missing = [f.id for f in fragments if f.embedding is None]
        if missing:
            raise ValueError(f"Fragments without embeddings: {missing[:3]}")

        self.collection.upsert(
            ids=[f.id for f in fragments],
            embeddings=[f.embedding for f in fragments],
            documents=[f.text for f in fragments],
            metadatas=[self._to_metadata(f) for f in fragments]
        )
        logger.debug(f"Upserted {len(fragments)} fragments")

    def search(
        self,
        owner_id: str,
        document_id: str,
        embedding: List[float],
        layer: Optional[FragmentLayer] = None,
        entity_names: Optional[List[str]] = None,
        labels: Optional[List[str]] = None,
        scene_range: Optional[Tuple[int, int]] = None,
        top_k: int = 10
    ) -> List[Fragment]:
        """Rank fragments of one document by cosine similarity.

        Returns:
            Fragments with ``score`` set, best first
        """
        if top_k <= 0 or self.collection.count() == 0:
            return []

        where = self.build_where(owner_id, document_id, layer, entity_names, labels, scene_range)
        try:
            results = self.collection.query(
                query_embeddings=[embedding],
                n_results=top_k,
                where=where,
                include=["documents", "metadatas", "distances"]
            )
        except Exception as e:
            raise VectorStoreError(f"Fragment search failed: {e}") from e

        ids = results['ids'][0] if results['ids'] else []
        fragments = []
        for i, fragment_id in enumerate(ids):
            score = 1.0 - float(results['distances'][0][i])
            fragments.append(self._from_record(
                fragment_id,
                results['documents'][0][i],
                results['metadatas'][0][i],
                score
            ))

        fragments.sort(key=lambda f: f.score, reverse=True)
        return fragments

    def delete_all_for(self, document_id: str) -> None:
        """Delete every fragment of a document; failures are logged only."""
        try:
            self.collection.delete(where={'document_id': {'$eq': document_id}})
            logger.info(f"Deleted fragments for document {document_id}")
        except Exception as e:
            logger.warning(f"Failed to delete fragments for document {document_id}: {e}")

    def scroll_all_snippets(self, document_id: str, owner_id: str) -> List[Fragment]:
        """All SNIPPET fragments of a document, ordered by position index."""
        where = self.build_where(owner_id, document_id, layer=FragmentLayer.SNIPPET)
        fragments = []
        offset = 0
        while True:
            page = self.collection.get(
                where=where,
                limit=_SCROLL_PAGE,
                offset=offset,
                include=["documents", "metadatas"]
            )
            ids = page['ids']
            for i, fragment_id in enumerate(ids):
                fragments.append(self._from_record(
                    fragment_id, page['documents'][i], page['metadatas'][i]
                ))
            if len(ids) < _SCROLL_PAGE:
                break
            offset += _SCROLL_PAGE

        fragments.sort(key=lambda f: f.position_index if f.position_index is not None else 0)
        return fragments

    def get(self, fragment_ids: List[str]) -> List[Fragment]:
        if not fragment_ids:
            return []
        page = self.collection.get(ids=fragment_ids, include=["documents", "metadatas"])
        return [
            self._from_record(fid, page['documents'][i], page['metadatas'][i])
            for i, fid in enumerate(page['ids'])
        ]

    def count(self, document_id: Optional[str] = None) -> int:
        if document_id is None:
            return self.collection.count()
        page = self.collection.get(where={'document_id': {'$eq': document_id}}, include=[])
        return len(page['ids'])

    def health(self) -> HealthStatus:
        """Check the collection is reachable and report its size."""
        try:
            collection = self.client.get_collection(self.collection_name)
            return HealthStatus(status="OK", count=collection.count())
        except Exception as e:
            logger.error(f"Fragment store health check failed: {e}")
            return HealthStatus(status="FAILED", error=str(e))
