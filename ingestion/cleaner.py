"""Text cleaning utilities."""
import re
from collections import Counter
from typing import List


def clean_text(text: str) -> str:
    """Normalize whitespace while keeping paragraph and line structure.

    Line starts are preserved because chapter detection anchors on them.

    Args:
        text: Raw extracted text

    Returns:
        Cleaned text
    """
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    # Collapse runs of blank lines to one paragraph break
    text = re.sub(r'\n\s*\n\s*\n+', '\n\n', text)

    # Fix hyphenated line breaks (words split across lines)
    text = re.sub(r'(\w+)-[ \t]*\n[ \t]*(\w+)', r'\1\2', text)

    # Normalize whitespace within lines
    text = re.sub(r'[ \t]+', ' ', text)

    lines = [line.strip() for line in text.split('\n')]
    return '\n'.join(lines).strip()


def remove_headers_footers(pages: List[str], min_repeats: int = 3) -> List[str]:
    """Drop short first/last lines that repeat across pages, and bare page numbers.

    Args:
        pages: List of page texts
        min_repeats: How many pages a line must appear on to count as a header

    Returns:
        Pages with running headers/footers removed
    """
    if len(pages) < min_repeats:
        return pages

    edge_lines = Counter()
    for page_text in pages:
        lines = [l.strip() for l in page_text.split('\n') if l.strip()]
        if lines:
            edge_lines[lines[0]] += 1
            edge_lines[lines[-1]] += 1

    repeated = {
        line for line, count in edge_lines.items()
        if count >= min_repeats and len(line) < 60
    }

    cleaned_pages = []
    for page_text in pages:
        lines = page_text.split('\n')
        kept = [
            line for i, line in enumerate(lines)
            if not (
                (i < 2 or i >= len(lines) - 2)
                and (line.strip() in repeated or re.fullmatch(r'\s*\d{1,4}\s*', line))
            )
        ]
        cleaned_pages.append('\n'.join(kept))

    return cleaned_pages
