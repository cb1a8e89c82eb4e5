"""Entity analysis: retrieval, extraction, gap refinement."""
from itertools import chain
from typing import Dict, List, Optional

from budget.governor import BudgetGovernor
from extraction.character_pipeline import CharacterPipeline
from extraction.generic_pipeline import GenericPipeline
from extraction.models import AnalysisContext, AnalysisResult, AttributeValue, ContextSource
from extraction.normalize import failed_attributes, is_poor, provider_failure_kind
from extraction.pipeline import ANALYSIS_TASK, AttributePipeline
from extraction.retrieval import ContextRetriever, merge_fragments
from extraction.templates import AnalysisTemplate, get_template, is_weapon_like, normalize_entity_type
from llm.completion import LLMClient
from llm.embeddings import EmbeddingService
from storage.database import Database
from storage.vector_store import FragmentStore
from timeline.resolver import TimelineResolver
from utils.errors import ProviderError, ValidationError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class AttributeAnalyzer:
    """Answers "what does X look like (at this point in the story)?".

    Pass 1 retrieves broadly and extracts the full template. Weak attributes
    then drive targeted searches; the template is re-extracted once, and
    only if those searches found fragments not already in context.
    """

    def __init__(
        self,
        db: Database,
        store: FragmentStore,
        embedder: EmbeddingService,
        llm: LLMClient,
        governor: BudgetGovernor,
        timeline: Optional[TimelineResolver] = None,
        retriever: Optional[ContextRetriever] = None,
        max_context_fragments: int = config.MAX_CONTEXT_FRAGMENTS,
        max_refine: int = config.MAX_ATTRIBUTES_TO_REFINE,
        poor_threshold: float = config.POOR_CONFIDENCE_THRESHOLD
    ):
        self.db = db
        self.governor = governor
        self.timeline = timeline or TimelineResolver(db, store, embedder)
        self.retriever = retriever or ContextRetriever(store, embedder)
        self.max_context_fragments = max_context_fragments
        self.max_refine = max_refine
        self.poor_threshold = poor_threshold

        self.character_pipeline = CharacterPipeline(llm, governor)
        self.generic_pipeline = GenericPipeline(llm, governor)

    def pipeline_for(self, entity_type: str) -> AttributePipeline:
        if entity_type == 'CHARACTER':
            return self.character_pipeline
        return self.generic_pipeline

    def _load_documents(self, owner_id: str, document_ids: List[str]) -> List[Dict]:
        documents = []
        for document_id in dict.fromkeys(document_ids):
            document = self.db.get_document(document_id)
            if document is None or document['owner_id'] != owner_id:
                raise ValidationError(f"Document not found: {document_id}")
            documents.append(document)
        return documents

    def refinement_targets(
        self,
        template: AnalysisTemplate,
        entity_name: str,
        attributes: Dict[str, AttributeValue]
    ) -> List[str]:
        """Poor attributes in template order, capped at ``max_refine``.

        Weapon and firearm details are only targeted for weapon-like entities.
        """
        item_type = attributes.get('itemType')
        weapon_like = is_weapon_like(entity_name, item_type.value if item_type else None)

        targets = []
        for attr in template.attributes:
            if attr.startswith(('weapon', 'firearm')) and not weapon_like:
                continue
            if is_poor(attributes.get(attr, AttributeValue()), self.poor_threshold):
                targets.append(attr)
            if len(targets) >= self.max_refine:
                break
        return targets

    def analyze(
        self,
        owner_id: str,
        document_ids: List[str],
        entity_name: str,
        entity_type: str,
        focus_text: Optional[str] = None
    ) -> AnalysisResult:
        """Extract an evidence-backed attribute map for one entity.

        Args:
            owner_id: Caller; must own every document
            document_ids: One or more documents; windowing needs exactly one
            entity_name: Entity to describe
            entity_type: Registry key or alias
            focus_text: Optional temporal focus, e.g. "before the battle"

        Returns:
            AnalysisResult

        Raises:
            ValidationError: Empty ids, blank name, or unknown/foreign document
            BudgetExceededError: If the first extraction call is over quota

        Provider failures never raise: a failed window lookup searches
        unscoped and a failed retrieval returns "Extraction failed" values.
        """
        if not document_ids:
            raise ValidationError("At least one document id is required")
        if not entity_name or not entity_name.strip():
            raise ValidationError("Entity name is required")
        entity_name = entity_name.strip()
        documents = self._load_documents(owner_id, document_ids)

        normalized_type = normalize_entity_type(entity_type)
        template = get_template(normalized_type)
        pipeline = self.pipeline_for(normalized_type)
        focus = focus_text.strip() if focus_text and focus_text.strip() else None

        window = None
        if focus and len(documents) == 1:
            try:
                window = self.timeline.resolve_focus_window(documents[0]['id'], focus)
            except ProviderError as e:
                logger.warning(f"Focus window unavailable for '{entity_name}', searching unscoped: {e}")

        model = self.governor.resolver.resolve_task(ANALYSIS_TASK).model
        self.governor.require_budget(ANALYSIS_TASK, model, 1)

        logger.info(
            f"Analyzing '{entity_name}' ({normalized_type}, {pipeline.name}) "
            f"across {len(documents)} document(s)"
            + (f", window {window.as_range()}" if window else "")
        )

        context = AnalysisContext(
            entity_name=entity_name,
            entity_type=normalized_type,
            fragments=[],
            document_titles={d['id']: d['title'] for d in documents},
            focus_text=focus,
            focus_window=window,
        )
        try:
            fragments = self.retriever.broad(documents, entity_name, normalized_type, window)
        except ProviderError as e:
            logger.error(f"Retrieval failed for '{entity_name}': {e}")
            attributes = failed_attributes(template.attributes, provider_failure_kind(e))
            return self._result(entity_name, normalized_type, template, pipeline, attributes, context, [])

        context = context.model_copy(update={'fragments': fragments[:self.max_context_fragments]})
        attributes = pipeline.extract(entity_name, template, context)

        refined: List[str] = []
        targets = self.refinement_targets(template, entity_name, attributes)
        if targets:
            logger.info(f"Refining {len(targets)} weak attributes: {', '.join(targets)}")
            found = self.retriever.targeted(documents, template, entity_name, targets, focus, window)
            merged, added = merge_fragments(context.fragments, chain.from_iterable(found.values()))

            if added == 0:
                logger.info("Refinement found no new fragments; keeping first pass")
            else:
                decision = self.governor.check_budget(ANALYSIS_TASK, model, 1)
                if decision.allowed:
                    context = context.model_copy(update={'fragments': merged})
                    attributes = pipeline.extract(entity_name, template, context)
                    refined = targets
                else:
                    logger.warning(f"Skipping refinement for '{entity_name}': {decision.reason}")

        return self._result(entity_name, normalized_type, template, pipeline, attributes, context, refined)

    def _result(
        self,
        entity_name: str,
        entity_type: str,
        template: AnalysisTemplate,
        pipeline: AttributePipeline,
        attributes: Dict[str, AttributeValue],
        context: AnalysisContext,
        refined: List[str]
    ) -> AnalysisResult:
        focus = context.focus_text
        return AnalysisResult(
            title="Visual Description" + (f" ({focus})" if focus else ""),
            name=entity_name,
            entity_type=entity_type,
            pipeline=pipeline.name,
            description=pipeline.summarize(entity_name, template, attributes, focus),
            attributes=attributes,
            context_sources=self._context_sources(context),
            focus_window=context.focus_window,
            refined_attributes=refined,
        )

    @staticmethod
    def _context_sources(context: AnalysisContext) -> List[ContextSource]:
        sources = []
        for fragment in context.fragments:
            source = context.title_for(fragment)
            if fragment.global_scene_index is not None:
                source += f" [Scene {fragment.global_scene_index}]"
            sources.append(ContextSource(source=source, summary=fragment.text[:50] + "..."))
        return sources
