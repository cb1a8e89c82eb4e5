"""Regex upgrades for weapon and firearm micro-details."""
import re
from typing import Dict, List, Optional, Tuple

from extraction.models import AttributeValue, Evidence
from storage.models import Fragment

REFINED_CONFIDENCE = 0.95
REFINED_NOTE = "Regex Refined"

# First matching pattern wins, so ambiguous phrasings are ordered by specificity.
RULES: Dict[str, List[Tuple[re.Pattern, str]]] = {
    'weaponEdgeType': [
        (re.compile(r"\b(single|one|1)[-\s]?edged?\b|\bsharpened on (one|1) side\b", re.IGNORECASE), "Single-edged"),
        (re.compile(r"\b(double|two|2)[-\s]?edged?\b|\bsharpened on (both|2) sides\b", re.IGNORECASE), "Double-edged"),
    ],
    'firearmBarrelCount': [
        (re.compile(r"\b(double|two|twin|2)[-\s]?barrels?\b", re.IGNORECASE), "2"),
        (re.compile(r"\b(triple|three|3)[-\s]?barrels?\b", re.IGNORECASE), "3"),
        (re.compile(r"\b(single|one|1)[-\s]?barrel(ed)?\b", re.IGNORECASE), "1"),
    ],
    'firearmActionType': [
        (re.compile(r"\bbolt[-\s]?action\b", re.IGNORECASE), "Bolt Action"),
        (re.compile(r"\bpump[-\s]?action\b", re.IGNORECASE), "Pump Action"),
        (re.compile(r"\blever[-\s]?action\b", re.IGNORECASE), "Lever Action"),
        (re.compile(r"\bsemi[-\s]?auto(matic)?\b", re.IGNORECASE), "Semi-Automatic"),
        (re.compile(r"\bfully?[-\s]?auto(matic)?\b", re.IGNORECASE), "Automatic"),
        (re.compile(r"\brevolver\b", re.IGNORECASE), "Revolver"),
    ],
}


def _first_match(pattern: re.Pattern, fragments: List[Fragment]) -> Optional[Tuple[Fragment, str]]:
    for fragment in fragments:
        match = pattern.search(fragment.text)
        if match:
            return fragment, match.group(0)
    return None


def refine_weapon_attributes(
    attributes: Dict[str, AttributeValue],
    fragments: List[Fragment]
) -> List[str]:
    """Overwrite edge type, barrel count and action type on a clear textual match.

    Only attributes already present in the map are touched.

    Returns:
        Names of the attributes that were upgraded
    """
    refined = []
    for attribute, rules in RULES.items():
        if attribute not in attributes:
            continue
        for pattern, value in rules:
            hit = _first_match(pattern, fragments)
            if hit is None:
                continue
            fragment, span = hit
            current = attributes[attribute]
            attributes[attribute] = AttributeValue(
                value=value,
                confidence=REFINED_CONFIDENCE,
                time_state=current.time_state,
                evidence=current.evidence + [Evidence(
                    quote=span,
                    source_id=fragment.document_id,
                    location_hint=(
                        f"Scene {fragment.global_scene_index}"
                        if fragment.global_scene_index is not None else None
                    ),
                    page=fragment.page_number,
                    chunk_id=fragment.id,
                )],
                notes=REFINED_NOTE,
            )
            refined.append(attribute)
            break
    return refined
