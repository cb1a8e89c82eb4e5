"""LLM prompt templates for attribute extraction and aggregation."""
from typing import List, Optional


def character_attributes_prompt(
    entity_name: str,
    attributes: List[str],
    persistent: List[str],
    transient: List[str],
    focused_text: str,
    baseline_text: str,
    focus: Optional[str] = None
) -> str:
    """Generate prompt for the character pipeline.

    Fragments are split into a focused section (inside the time window) and
    a baseline section; transient traits may only cite the focused one.

    Args:
        entity_name: Character name
        attributes: Ordered attribute keys
        persistent: Identity traits that may use any evidence
        transient: Time-bound traits
        focused_text: Formatted fragments inside the window
        baseline_text: Formatted fragments outside the window
        focus: Optional temporal focus phrase

    Returns:
        Prompt string
    """
    focus_line = f'FOCUS: "{focus}"' if focus else "FOCUS: none (use all evidence)"

    return f"""You are a visual continuity analyst for a novel.
Describe how the character "{entity_name}" LOOKS, based ONLY on the text fragments below.
{focus_line}

Return ONE JSON object whose keys are exactly:
{", ".join(attributes)}

Every value must be an object, never a flat string:
{{
  "value": "short visual description, or 'not clearly specified'",
  "sourceType": "explicit" | "inferred_from_text" | "unknown",
  "evidence": [
    {{"fragmentIndex": 3, "quote": "exact words from the fragment", "bookTitle": "optional", "globalSceneIndex": 12}}
  ]
}}

Example:
{{
  "hairColor": {{"value": "dark red with gray streaks", "sourceType": "explicit",
                "evidence": [{{"fragmentIndex": 12, "quote": "his dark red hair, now streaked with gray"}}]}},
  "eyeColor": {{"value": "not clearly specified", "sourceType": "unknown", "evidence": []}}
}}

EVIDENCE RULES:
1. PERSISTENT TRAITS (identity): {", ".join(persistent)}
   You may cite any fragment, focused or baseline.
2. TIME-BOUND TRAITS: {", ".join(transient)}
   If a focus is active, cite ONLY fragments under EVIDENCE_FOCUSED and ignore the baseline.
   If the focused evidence is silent, use value "not clearly specified", sourceType "unknown", evidence [].
3. "fragmentIndex" is the number N from [Fragment N]. Quotes must be copied exactly.

=== EVIDENCE_FOCUSED (inside the time window) ===
{focused_text}

=== EVIDENCE_BASELINE (outside the time window) ===
{baseline_text}"""


def generic_attributes_prompt(
    entity_name: str,
    entity_type: str,
    attributes: List[str],
    context_text: str,
    focus: Optional[str] = None
) -> str:
    """Generate prompt for any non-character entity template."""
    focus_block = ""
    if focus:
        focus_block = f'\nFOCUS CONTEXT: "{focus}"\nPrioritize details that hold at this moment of the story.\n'

    return f"""You are an expert literary analyst.
Extract visual attributes of the {entity_type.lower().replace("_", " ")} "{entity_name}" based ONLY on the text fragments below.
{focus_block}
Return ONE JSON object whose keys are exactly:
{", ".join(attributes)}

Each value must be an object:
{{
  "value": "description, or 'not specified'",
  "confidence": "high" | "medium" | "low" | "none",
  "evidence": [{{"quote": "exact words from the fragment", "bookTitle": "source", "fragmentIndex": 0}}]
}}

If the text shows a change over time (e.g. "was blue, now red"), describe the state relevant to the
focus if one is given, otherwise the most recent state, and keep the timing words in the quote.

=== DATA ===
{context_text}"""


def entity_profile_prompt(name: str, sample_texts: List[str]) -> str:
    samples = "\n".join(sample_texts)
    return f"""Analyze the following passages that mention "{name}".
Decide whether "{name}" is a character (a person or sentient being who acts in the story).
If it is, give their narrative role (protagonist, antagonist, supporting, minor) and a list of traits,
each with a type (PHYSICAL_APPEARANCE, PERSONALITY, SKILL, RELATIONSHIP, OTHER) and a description.

PASSAGES:
{samples}

Return JSON:
{{"isCharacter": true, "role": "supporting", "traits": [{{"type": "PHYSICAL_APPEARANCE", "description": "..."}}]}}"""


def block_scene_prompt(block_text: str) -> str:
    return f"""Summarize the following block of a novel as one scene.
Give a short title, a 1-3 sentence summary, and the names of the key entities present.

TEXT:
{block_text}

Return JSON:
{{"title": "...", "summary": "...", "entities": ["..."]}}"""
