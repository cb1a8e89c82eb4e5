"""Normalization of raw LLM attribute output into AttributeValue."""
import re
from typing import Any, Dict, List, Optional

from extraction.models import AnalysisContext, AttributeValue, Evidence, TimeState
from storage.models import Fragment
from utils.logger import setup_logger

logger = setup_logger(__name__)

MAX_UNWRAP_ATTEMPTS = 3
WRAPPER_KEYS = ('attributes', 'result', 'data', 'output', 'analysis', 'response')

NULL_VALUE_PHRASES = ('not clearly specified', 'not specified', 'unspecified')
NULL_VALUES = {'unclear', 'unknown', 'none', 'n/a', ''}

AFTER_CUES = re.compile(r"\b(after|later|now|post|damaged|ruined)\b", re.IGNORECASE)
BEFORE_CUES = re.compile(r"\b(before|earlier|pre|original|intact)\b", re.IGNORECASE)
CONSTANT_CUES = re.compile(r"\b(always|ever|never|still|constant)\b", re.IGNORECASE)

CONFIDENCE_MARKERS = {
    'high': 1.0,
    'explicit': 1.0,
    'medium': 0.7,
    'inferred_from_text': 0.7,
    'inferred': 0.7,
    'low': 0.4,
    'none': 0.0,
    'unknown': 0.0,
}
DEFAULT_CONFIDENCE = 0.5


def confidence_from_marker(marker: Any, has_value: bool = True) -> float:
    """Map a numeric or vocabulary confidence onto [0, 1].

    A value with no confidence at all gets the neutral default.
    """
    if marker is None:
        return DEFAULT_CONFIDENCE if has_value else 0.0
    if isinstance(marker, bool):
        return 1.0 if marker else 0.0
    if isinstance(marker, (int, float)):
        return max(0.0, min(1.0, float(marker)))
    if isinstance(marker, str):
        return CONFIDENCE_MARKERS.get(marker.strip().lower(), 0.0)
    return 0.0


def clean_value(value: Any) -> Optional[str]:
    """Return the value as text, or None when it only says "not specified"."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value if v is not None)
    text = str(value).strip()
    lowered = text.lower().rstrip('.')
    if lowered in NULL_VALUES:
        return None
    if any(phrase in lowered for phrase in NULL_VALUE_PHRASES):
        return None
    return text


def detect_time_state(quotes: List[str]) -> TimeState:
    """Classify evidence by cue words; after beats before beats constant."""
    text = " ".join(q for q in quotes if q)
    if not text:
        return TimeState.UNKNOWN
    if AFTER_CUES.search(text):
        return TimeState.AFTER
    if BEFORE_CUES.search(text):
        return TimeState.BEFORE
    if CONSTANT_CUES.search(text):
        return TimeState.CONSTANT
    return TimeState.UNKNOWN


def as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_evidence(raw_evidence: Any, context: Optional[AnalysisContext] = None) -> List[Evidence]:
    """Turn loose evidence dicts (or bare quotes) into Evidence; nothing is dropped.

    ``fragmentIndex`` refers to the position of a fragment in the prompt's
    context list; when it resolves, the fragment supplies source and chunk.
    """
    if not isinstance(raw_evidence, list):
        raw_evidence = [raw_evidence] if raw_evidence else []

    fragments = context.fragments if context else []
    evidence = []
    for item in raw_evidence:
        if not isinstance(item, dict):
            item = {'quote': str(item) if item is not None else ''}

        fragment_index = as_int(item.get('fragmentIndex', item.get('fragment_index')))
        scene_index = as_int(item.get('globalSceneIndex', item.get('global_scene_index')))
        fragment: Optional[Fragment] = None
        if fragment_index is not None and 0 <= fragment_index < len(fragments):
            fragment = fragments[fragment_index]

        if fragment is not None and fragment.global_scene_index is not None:
            location_hint = f"Scene {fragment.global_scene_index}"
        elif scene_index is not None:
            location_hint = f"Scene {scene_index}"
        elif fragment_index is not None:
            location_hint = f"Fragment {fragment_index}"
        else:
            location_hint = None

        evidence.append(Evidence(
            quote=str(item.get('quote') or ''),
            source_id=fragment.document_id if fragment else item.get('bookTitle'),
            location_hint=location_hint,
            page=fragment.page_number if fragment else as_int(item.get('page')),
            chunk_id=fragment.id if fragment else item.get('chunkId'),
        ))
    return evidence


def normalize_attribute(
    value: Any,
    raw_evidence: Any = None,
    confidence: float = 0.0,
    notes: Optional[str] = None,
    context: Optional[AnalysisContext] = None
) -> AttributeValue:
    """Build an AttributeValue; time state comes from the evidence quotes."""
    cleaned = clean_value(value)
    evidence = normalize_evidence(raw_evidence, context)
    if cleaned is None:
        return AttributeValue(value=None, evidence=evidence, notes=notes)
    return AttributeValue(
        value=cleaned,
        confidence=confidence,
        time_state=detect_time_state([e.quote for e in evidence]),
        evidence=evidence,
        notes=notes,
    )


def unknown_attributes(attributes: List[str], notes: Optional[str] = None) -> Dict[str, AttributeValue]:
    return {attr: AttributeValue(notes=notes) for attr in attributes}


def failed_attributes(attributes: List[str], kind: str) -> Dict[str, AttributeValue]:
    """Placeholder map used when the provider call itself failed."""
    return {
        attr: AttributeValue(value=f"Extraction failed: {kind}", confidence=0.0)
        for attr in attributes
    }


def _has_any_key(data: Dict[str, Any], attributes: List[str]) -> bool:
    lowered = {k.lower() for k in data}
    return any(attr.lower() in lowered for attr in attributes)


def unwrap_json(data: Any, entity_name: str, attributes: List[str]) -> Dict[str, Any]:
    """Peel wrappers off an attribute object, at most MAX_UNWRAP_ATTEMPTS times.

    Handles a list whose head is the object, a known wrapper key, or a key
    equal to the entity name. Anything unusable becomes an empty dict.
    """
    entity_key = entity_name.strip().lower()
    for _ in range(MAX_UNWRAP_ATTEMPTS):
        if isinstance(data, list):
            data = data[0] if data else {}
            continue
        if not isinstance(data, dict):
            return {}
        if _has_any_key(data, attributes):
            return data

        inner = None
        for key, value in data.items():
            if key.lower() in WRAPPER_KEYS or key.strip().lower() == entity_key:
                inner = value
                break
        if inner is None and len(data) == 1:
            inner = next(iter(data.values()))
        if inner is None:
            return data
        logger.debug("Unwrapped one level of the attribute response")
        data = inner

    return data if isinstance(data, dict) else {}


def lookup(data: Dict[str, Any], attribute: str) -> Any:
    """Case-insensitive key lookup."""
    if attribute in data:
        return data[attribute]
    for key, value in data.items():
        if key.lower() == attribute.lower():
            return value
    return None


def is_poor(attribute: AttributeValue, threshold: float) -> bool:
    """True when an attribute is missing or too weak to trust."""
    if attribute.value is None or not attribute.value.strip():
        return True
    if attribute.confidence <= threshold:
        return True
    if not attribute.evidence and attribute.confidence < 0.5:
        return True
    lowered = attribute.value.lower()
    return any(phrase in lowered for phrase in NULL_VALUE_PHRASES) or lowered == 'unclear'


def provider_failure_kind(error: Exception) -> str:
    message = str(error).lower()
    if 'network' in message or 'fetch' in message or 'connection' in message or '503' in message:
        return "Network/API Error"
    return "Internal Processing Error"
