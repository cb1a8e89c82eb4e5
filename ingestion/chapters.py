"""Deterministic chapter splitting."""
import re
from typing import List

from ingestion.models import Chapter

_NUMBER_WORDS = (
    "one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve|thirteen|"
    "fourteen|fifteen|sixteen|seventeen|eighteen|nineteen|twenty"
)

CHAPTER_PATTERN = re.compile(
    rf"^[ \t]*(?:chapter[ \t]+(?:\d+|[ivxlc]+|{_NUMBER_WORDS})\b|prologue\b|epilogue\b)[^\n]*",
    re.IGNORECASE | re.MULTILINE
)


def split_chapters(text: str) -> List[Chapter]:
    """Split text on chapter headings found at line starts.

    Any text before the first heading belongs to the first chapter, so the
    chapters always tile the whole document.

    Args:
        text: Full document text

    Returns:
        Chapters in document order; a single "Full Text" chapter when no
        heading is found
    """
    matches = list(CHAPTER_PATTERN.finditer(text))

    if not matches:
        return [Chapter(chapter_index=0, title="Full Text", start_char=0, end_char=len(text))]

    chapters = []
    for i, match in enumerate(matches):
        start = 0 if i == 0 else match.start()
        end = matches[i + 1].start() if i < len(matches) - 1 else len(text)
        chapters.append(Chapter(
            chapter_index=i,
            title=match.group(0).strip()[:200],
            start_char=start,
            end_char=end
        ))

    return chapters
