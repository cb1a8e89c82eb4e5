"""Character attribute extraction with focused/baseline evidence partitioning."""
import re
from typing import Any, Dict, List, Optional

from extraction.models import (
    MISSING_QUOTE,
    AnalysisContext,
    AttributeValue,
    LegacyAttribute,
    LegacyEvidence,
    LegacySourceType,
)
from extraction.normalize import as_int, lookup, normalize_attribute
from extraction.pipeline import AttributePipeline
from extraction.prompts import character_attributes_prompt
from extraction.templates import (
    AnalysisTemplate,
    TRAITS_ARMOR,
    TRAITS_CLOTHING,
    TRAITS_GEAR,
    TRAITS_INJURIES,
    TRAITS_PERSISTENT,
    TRAITS_VIBE,
    TRAITS_WEAPONS,
)
from timeline.models import FocusWindow
from utils.logger import setup_logger

logger = setup_logger(__name__)

SOURCE_CONFIDENCE = {
    LegacySourceType.EXPLICIT: 1.0,
    LegacySourceType.INFERRED: 0.7,
    LegacySourceType.UNKNOWN: 0.0,
}

NO_FOCUS_TEXT = "(No focus window active. Use global evidence.)"


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip().lower()


def to_legacy(raw: Any) -> LegacyAttribute:
    """Coerce one raw attribute entry into the character pipeline's shape."""
    if raw is None:
        return LegacyAttribute()
    if isinstance(raw, str):
        return LegacyAttribute(value=raw, source_type=LegacySourceType.INFERRED)
    if not isinstance(raw, dict):
        return LegacyAttribute(value=str(raw), source_type=LegacySourceType.INFERRED)

    source = str(raw.get('sourceType', raw.get('source_type', 'unknown'))).strip().lower()
    try:
        source_type = LegacySourceType(source)
    except ValueError:
        source_type = LegacySourceType.INFERRED if raw.get('value') else LegacySourceType.UNKNOWN

    evidence = []
    items = raw.get('evidence') or []
    if not isinstance(items, list):
        items = [items]
    for item in items:
        if isinstance(item, dict):
            evidence.append(LegacyEvidence(
                fragment_index=as_int(item.get('fragmentIndex')),
                quote=str(item.get('quote') or ''),
                book_title=item.get('bookTitle'),
                global_scene_index=as_int(item.get('globalSceneIndex')),
            ))
        else:
            evidence.append(LegacyEvidence(quote=str(item) if item is not None else ''))

    value = raw.get('value')
    return LegacyAttribute(
        value=str(value) if value is not None else "not clearly specified",
        source_type=source_type,
        evidence=evidence,
        notes=raw.get('notes'),
    )


def resolve_scene_indices(evidence: LegacyEvidence, context: AnalysisContext) -> List[Optional[int]]:
    """Global scene indices an evidence item may refer to.

    A valid fragment index pins one fragment. Otherwise every fragment
    containing the quote counts, since a short quote can match several
    scenes. Failing both, the scene index the model stated is used.
    """
    fragments = context.fragments
    if evidence.fragment_index is not None and 0 <= evidence.fragment_index < len(fragments):
        return [fragments[evidence.fragment_index].global_scene_index]

    quote = _squash(evidence.quote)
    if quote and quote != MISSING_QUOTE:
        matches = [f.global_scene_index for f in fragments if quote in _squash(f.text)]
        if matches:
            return matches

    return [evidence.global_scene_index]


def violates_window(legacy: LegacyAttribute, window: FocusWindow, context: AnalysisContext) -> bool:
    """True if any evidence may lie outside the window or there is none."""
    indices = [i for e in legacy.evidence for i in resolve_scene_indices(e, context)]
    if not indices:
        return True
    return not all(window.contains(i) for i in indices)


class CharacterPipeline(AttributePipeline):
    """Extraction for CHARACTER entities.

    Transient traits with an active focus window may only cite fragments
    inside the window; anything else is withheld as unknown.
    """

    name = "legacy_character"

    def build_prompt(self, entity_name: str, template: AnalysisTemplate, context: AnalysisContext) -> str:
        window = context.focus_window
        focused, baseline = [], []
        for i, fragment in enumerate(context.fragments):
            line = self.format_fragment(i, fragment, context)
            if window is not None and window.contains(fragment.global_scene_index):
                focused.append(line)
            else:
                baseline.append(line)

        if window is None:
            focused_text = NO_FOCUS_TEXT
        else:
            focused_text = "\n\n".join(focused) or "(no fragments inside the window)"

        return character_attributes_prompt(
            entity_name,
            template.attributes,
            [a for a in template.attributes if not template.is_time_bound(a)],
            [a for a in template.attributes if template.is_time_bound(a)],
            focused_text,
            "\n\n".join(baseline) or "(none)",
            context.focus_text,
        )

    def convert(self, legacy: LegacyAttribute, context: AnalysisContext) -> AttributeValue:
        """Map the explicit/inferred/unknown scale onto AttributeValue."""
        raw_evidence = [
            {
                'fragmentIndex': e.fragment_index,
                'quote': e.quote,
                'bookTitle': e.book_title,
                'globalSceneIndex': e.global_scene_index,
            }
            for e in legacy.evidence
        ]
        return normalize_attribute(
            legacy.value,
            raw_evidence,
            SOURCE_CONFIDENCE[legacy.source_type],
            notes=legacy.notes,
            context=context,
        )

    def parse_attributes(
        self,
        data: Dict[str, Any],
        entity_name: str,
        template: AnalysisTemplate,
        context: AnalysisContext
    ) -> Dict[str, AttributeValue]:
        window = context.focus_window
        attributes = {}
        withheld = []

        for attr in template.attributes:
            legacy = to_legacy(lookup(data, attr))
            value = self.convert(legacy, context)

            if (
                window is not None
                and template.is_time_bound(attr)
                and value.value is not None
                and violates_window(legacy, window, context)
            ):
                start, end = window.as_range()
                value = AttributeValue(
                    value=None,
                    evidence=value.evidence,
                    notes=f"Withheld: evidence lies outside focus window [{start}, {end}]",
                )
                withheld.append(attr)

            attributes[attr] = value

        if withheld:
            logger.info(f"Withheld out-of-window traits for '{entity_name}': {', '.join(withheld)}")
        return attributes

    def summarize(
        self,
        entity_name: str,
        template: AnalysisTemplate,
        attributes: Dict[str, AttributeValue],
        focus: Optional[str] = None
    ) -> str:
        def value_of(attr: str) -> Optional[str]:
            v = attributes.get(attr)
            if v is None or v.value is None or v.confidence <= 0:
                return None
            return v.value

        physical = ", ".join(filter(None, (value_of(a) for a in TRAITS_PERSISTENT)))
        style_order: List[str] = (
            TRAITS_CLOTHING + TRAITS_ARMOR + TRAITS_WEAPONS
            + TRAITS_GEAR + TRAITS_VIBE + TRAITS_INJURIES
        )
        style = ". ".join(filter(None, (value_of(a) for a in style_order)))

        summary = f"{entity_name} is described as having {physical or 'unspecified physical features'}."
        if style:
            summary += f" {style}."
        if focus:
            summary += f'\n(Analysis focused on context: "{focus}")'
        return summary

