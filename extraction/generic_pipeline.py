"""Attribute extraction for every entity type except characters."""
from typing import Any, Dict, Optional

from extraction.models import AnalysisContext, AttributeValue
from extraction.normalize import confidence_from_marker, lookup, normalize_attribute
from extraction.pipeline import AttributePipeline
from extraction.prompts import generic_attributes_prompt
from extraction.templates import AnalysisTemplate, attribute_words, is_weapon_like
from extraction.weapon_refiner import refine_weapon_attributes
from utils.logger import setup_logger

logger = setup_logger(__name__)

FLAT_STRING_CONFIDENCE = 0.7
DESCRIPTION_MIN_CONFIDENCE = 0.2


class GenericPipeline(AttributePipeline):
    """Template-driven extraction using a high/medium/low/none confidence scale."""

    name = "generic"

    def build_prompt(self, entity_name: str, template: AnalysisTemplate, context: AnalysisContext) -> str:
        context_text = "\n\n".join(
            self.format_fragment(i, f, context) for i, f in enumerate(context.fragments)
        ) or "(no fragments found)"
        return generic_attributes_prompt(
            entity_name, template.entity_type, template.attributes, context_text, context.focus_text
        )

    def _parse_one(self, raw: Any, context: AnalysisContext) -> AttributeValue:
        if raw is None:
            return AttributeValue()
        if isinstance(raw, str):
            return normalize_attribute(raw, [], FLAT_STRING_CONFIDENCE, context=context)
        if not isinstance(raw, dict):
            return normalize_attribute(raw, [], FLAT_STRING_CONFIDENCE, context=context)

        value = raw.get('value')
        confidence = confidence_from_marker(raw.get('confidence'), has_value=bool(value))
        return normalize_attribute(
            value,
            raw.get('evidence') or [],
            confidence,
            notes=raw.get('notes'),
            context=context,
        )

    def parse_attributes(
        self,
        data: Dict[str, Any],
        entity_name: str,
        template: AnalysisTemplate,
        context: AnalysisContext
    ) -> Dict[str, AttributeValue]:
        attributes = {
            attr: self._parse_one(lookup(data, attr), context)
            for attr in template.attributes
        }

        item_type = attributes.get('itemType')
        if is_weapon_like(entity_name, item_type.value if item_type else None):
            refined = refine_weapon_attributes(attributes, context.fragments)
            if refined:
                logger.info(f"Regex refined {', '.join(refined)} for '{entity_name}'")

        return attributes

    def summarize(
        self,
        entity_name: str,
        template: AnalysisTemplate,
        attributes: Dict[str, AttributeValue],
        focus: Optional[str] = None
    ) -> str:
        lines = [
            f"{attribute_words(attr)}: {attributes[attr].value}"
            for attr in template.attributes
            if attr in attributes
            and attributes[attr].value is not None
            and attributes[attr].confidence > DESCRIPTION_MIN_CONFIDENCE
        ]
        if lines:
            summary = f"{entity_name}\n" + "\n".join(lines)
        else:
            summary = f"No clear visual details were found for {entity_name}."
        if focus:
            summary += f'\n(Analysis focused on context: "{focus}")'
        return summary
