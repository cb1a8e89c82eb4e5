"""Whole-book sweep that seeds character and scene records from snippets."""
from collections import Counter
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from budget.governor import BudgetGovernor
from extraction import prompts
from llm.completion import LLMClient, parse_json
from storage.database import Database
from storage.models import Fragment
from storage.vector_store import FragmentStore
from utils.errors import LLMError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

AGGREGATION_TASK = "aggregation"


class AggregationReport(BaseModel):
    document_id: str
    snippets: int = 0
    entities_considered: int = 0
    characters_created: int = 0
    scenes_created: int = 0
    failures: int = 0
    stopped_reason: Optional[str] = None


class _BudgetStop(Exception):
    pass


class AggregationSweep:
    """Batch pass over the SNIPPET layer.

    The most frequently mentioned entities are profiled one LLM call each,
    then snippets are summarized in fixed-size blocks. Per-entity and
    per-block failures are logged and skipped; a budget denial stops the
    sweep and is reported.
    """

    def __init__(
        self,
        db: Database,
        store: FragmentStore,
        llm: LLMClient,
        governor: BudgetGovernor,
        top_entities: int = config.AGGREGATION_TOP_ENTITIES,
        samples_per_entity: int = config.AGGREGATION_SAMPLES_PER_ENTITY,
        block_size: int = config.AGGREGATION_BLOCK_SIZE
    ):
        self.db = db
        self.store = store
        self.llm = llm
        self.governor = governor
        self.top_entities = top_entities
        self.samples_per_entity = samples_per_entity
        self.block_size = block_size

    def _call(self, prompt: str) -> Any:
        task_config = self.governor.resolver.resolve_task(AGGREGATION_TASK)
        decision = self.governor.check_budget(AGGREGATION_TASK, task_config.model, 1)
        if not decision.allowed:
            raise _BudgetStop(decision.reason)

        try:
            completion = self.llm.complete(prompt, task_config.model, json_mode=True)
        except LLMError:
            self.governor.charge_budget(AGGREGATION_TASK, task_config.model, task_config.provider, 1)
            raise

        self.governor.charge_budget(
            AGGREGATION_TASK, task_config.model, task_config.provider, 1,
            completion.input_tokens, completion.output_tokens
        )
        return parse_json(completion)

    def tally_entities(self, snippets: List[Fragment]) -> List[Dict[str, Any]]:
        """Top entities by mention count, each with up to N sample texts."""
        counts: Counter = Counter()
        samples: Dict[str, List[str]] = {}
        for snippet in snippets:
            for name in snippet.entity_names:
                counts[name] += 1
                bucket = samples.setdefault(name, [])
                if len(bucket) < self.samples_per_entity:
                    bucket.append(snippet.text)

        return [
            {'name': name, 'count': count, 'samples': samples[name]}
            for name, count in counts.most_common(self.top_entities)
        ]

    def aggregate(self, document_id: str, owner_id: str) -> AggregationReport:
        report = AggregationReport(document_id=document_id)
        snippets = self.store.scroll_all_snippets(document_id, owner_id)
        report.snippets = len(snippets)
        logger.info(f"Aggregating {len(snippets)} snippets for document {document_id}")
        if not snippets:
            return report

        self.db.clear_aggregation(document_id)
        entities = self.tally_entities(snippets)
        report.entities_considered = len(entities)

        try:
            character_ids = self._profile_entities(document_id, entities, report)
            self._summarize_blocks(document_id, snippets, character_ids, report)
        except _BudgetStop as stop:
            report.stopped_reason = str(stop)
            logger.warning(f"Aggregation stopped: {stop}")

        logger.info(
            f"Aggregation for {document_id}: {report.characters_created} characters, "
            f"{report.scenes_created} scenes, {report.failures} failures"
        )
        return report

    def _profile_entities(
        self,
        document_id: str,
        entities: List[Dict[str, Any]],
        report: AggregationReport
    ) -> Dict[str, str]:
        character_ids: Dict[str, str] = {}
        for entity in entities:
            try:
                data = self._call(prompts.entity_profile_prompt(entity['name'], entity['samples']))
                if not isinstance(data, dict) or not data.get('isCharacter'):
                    continue
                traits = [
                    {'type': str(t.get('type') or 'OTHER'), 'description': str(t.get('description') or '')}
                    for t in data.get('traits') or []
                    if isinstance(t, dict) and t.get('description')
                ]
                character_ids[entity['name']] = self.db.insert_character(
                    document_id, entity['name'], data.get('role'), entity['count'], traits
                )
                report.characters_created += 1
                logger.debug(f"Seeded character {entity['name']}")
            except _BudgetStop:
                raise
            except (LLMError, ValueError, TypeError, AttributeError) as e:
                report.failures += 1
                logger.error(f"Failed to profile entity {entity['name']}: {e}")
        return character_ids

    def _summarize_blocks(
        self,
        document_id: str,
        snippets: List[Fragment],
        character_ids: Dict[str, str],
        report: AggregationReport
    ) -> None:
        for block_index, start in enumerate(range(0, len(snippets), self.block_size)):
            block = snippets[start:start + self.block_size]
            try:
                data = self._call(prompts.block_scene_prompt("\n".join(s.text for s in block)))
                if not isinstance(data, dict):
                    raise ValueError("Scene summary is not a JSON object")
                entities = [
                    {
                        'name': name,
                        'entity_type': 'CHARACTER' if name in character_ids else 'OTHER',
                        'character_id': character_ids.get(name),
                    }
                    for name in (str(n) for n in data.get('entities') or [])
                ]
                self.db.insert_snippet_scene(
                    document_id,
                    block_index,
                    str(data.get('title') or f"Block {block_index}"),
                    str(data.get('summary') or ''),
                    block[0].position_index if block[0].position_index is not None else start,
                    block[-1].position_index if block[-1].position_index is not None else start + len(block) - 1,
                    entities,
                )
                report.scenes_created += 1
            except _BudgetStop:
                raise
            except (LLMError, ValueError, TypeError, AttributeError) as e:
                report.failures += 1
                logger.error(f"Scene summary failed for block {block_index}: {e}")
