"""Prompt templates for scene segmentation."""


def scene_extraction_prompt(chapter_title: str, chapter_text: str) -> str:
    """Generate prompt for splitting one chapter into scenes.

    Args:
        chapter_title: Chapter heading
        chapter_text: Chapter text (possibly truncated)

    Returns:
        Prompt string
    """
    return f"""Analyze the following book chapter and split it into distinct SCENES.
A scene is one continuous narrative beat: a change of location, time, or point of view starts a new scene.

CHAPTER: {chapter_title}

FULL TEXT:
{chapter_text}

For each scene, in order, provide:
1. "startQuote": the first 20-40 characters of the scene, copied EXACTLY from the text.
2. "endQuote": the last 20-40 characters of the scene, copied EXACTLY from the text.
3. A short title and a 1-3 sentence summary.
4. The Point of View (POV) character.
5. The location.
6. Notable events.
7. Timing hints (e.g. "morning", "after the duel", "three days later").

Return a JSON array:
[
  {{
    "index": 0,
    "title": "Scene Title",
    "summary": "...",
    "pov": "...",
    "location": "...",
    "events": ["..."],
    "temporalHints": {{"timeOfDay": "...", "relative": ["..."]}},
    "startQuote": "...",
    "endQuote": "..."
  }}
]

Quotes must be verbatim so they can be located in the text."""
