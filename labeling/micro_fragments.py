"""Sentence-level micro-fragments and their LLM labeling."""
import re
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field

from llm.completion import LLMClient, parse_json
from utils.errors import LLMError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

LABELS = [
    'PHYSICAL_APPEARANCE',
    'DIALOGUE',
    'ACTION_EVENT',
    'SETTING_ENVIRONMENT',
    'RELATIONSHIP',
    'ITEM_DESCRIPTION',
    'CREATURE_DESCRIPTION',
    'INTERNAL_THOUGHT',
    'OTHER',
]

SENTENCE_PATTERN = re.compile(r'[^.!?]+[.!?]+["\']?|[^.!?]+$')


class MicroFragment(BaseModel):
    """A short sentence group with its document-wide position."""
    text: str
    position_index: int
    chunk_id: Optional[str] = None
    chapter_index: Optional[int] = None
    global_scene_index: Optional[int] = None
    entity_names: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)


def split_into_micro_fragments(text: str, max_chars: int = config.MICRO_FRAGMENT_MAX_CHARS) -> List[str]:
    """Split text on sentence terminators, grouping short sentences.

    Sentences are appended to the current group while the group stays under
    ``max_chars``; a longer sentence starts a new group on its own.
    """
    sentences = SENTENCE_PATTERN.findall(text) or [text]

    groups = []
    current = ""
    for sentence in sentences:
        trimmed = sentence.strip()
        if not trimmed:
            continue
        if len(current) + len(trimmed) < max_chars:
            current = f"{current} {trimmed}" if current else trimmed
        else:
            if current:
                groups.append(current)
            current = trimmed
    if current:
        groups.append(current)

    return groups


def labeling_prompt(fragments: List[MicroFragment]) -> str:
    lines = "\n".join(f"{i}. {f.text}" for i, f in enumerate(fragments))
    return f"""You are labeling short passages from a novel.
For each numbered passage, list the named entities (characters, places, items, creatures, groups)
that appear in it, and one or more category labels from this fixed list:
{", ".join(LABELS)}

PASSAGES:
{lines}

Return JSON of the form:
{{"results": [{{"index": 0, "entity_names": ["..."], "labels": ["..."]}}]}}
Return exactly one result per passage, in order."""


def _coerce_result(item: Dict[str, Any]) -> Dict[str, List[str]]:
    names = item.get('entity_names') or item.get('entityNames') or []
    labels = item.get('labels') or []
    if not isinstance(names, list):
        names = []
    if not isinstance(labels, list):
        labels = []
    return {
        'entity_names': [str(n).strip() for n in names if str(n).strip()],
        'labels': [str(l).upper() for l in labels if str(l).upper() in LABELS],
    }


def label_micro_fragments(
    fragments: List[MicroFragment],
    llm: LLMClient,
    model: str
) -> List[MicroFragment]:
    """Label fragments with one LLM call; failures return them unlabeled."""
    if not fragments:
        return []

    try:
        completion = llm.complete(labeling_prompt(fragments), model, json_mode=True)
        data = parse_json(completion)
    except LLMError as e:
        logger.error(f"Labeling failed, keeping {len(fragments)} fragments unlabeled: {e}")
        return [f.model_copy(update={'entity_names': [], 'labels': []}) for f in fragments]

    results = data.get('results', []) if isinstance(data, dict) else data
    if not isinstance(results, list):
        results = []

    by_index: Dict[int, Dict[str, List[str]]] = {}
    for position, item in enumerate(results):
        if not isinstance(item, dict):
            continue
        index = item.get('index', position)
        if isinstance(index, int):
            by_index[index] = _coerce_result(item)

    if len(by_index) != len(fragments):
        logger.warning(f"Labeling returned {len(by_index)} results for {len(fragments)} fragments")

    empty = {'entity_names': [], 'labels': []}
    return [f.model_copy(update=by_index.get(i, empty)) for i, f in enumerate(fragments)]
