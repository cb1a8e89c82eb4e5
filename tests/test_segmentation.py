"""Test chapter splitting and scene extraction."""
import pytest

from budget.governor import today
from conftest import make_llm
from ingestion.chapters import split_chapters
from ingestion.models import Chapter
from ingestion.scene_extractor import SceneExtractor
from utils.errors import BudgetExceededError

CHAPTER_TEXT = (
    "Mara walked to the market at dawn. She bought bread and apples. "
    "The stalls were loud and bright. "
    "Later that night the storm broke over the harbor. Ships strained at their ropes. "
    "Nobody slept until morning."
)


def test_split_chapters_on_headings():
    """Chapter headings at line starts split the text; front matter joins chapter one."""
    text = "Title page\n\nChapter 1\nFirst.\n\nCHAPTER II\nSecond.\n\nChapter Three: The End\nThird."
    chapters = split_chapters(text)

    assert [c.chapter_index for c in chapters] == [0, 1, 2]
    assert chapters[0].start_char == 0
    assert chapters[1].title == "CHAPTER II"
    assert chapters[2].title.startswith("Chapter Three")
    assert chapters[-1].end_char == len(text)
    for a, b in zip(chapters, chapters[1:]):
        assert a.end_char == b.start_char


def test_split_chapters_without_headings():
    """No heading means one chapter covering everything."""
    chapters = split_chapters("Just some prose without headings.")

    assert len(chapters) == 1
    assert chapters[0].title == "Full Text"


def test_prologue_and_epilogue_are_chapters():
    """Prologue and epilogue count as chapter markers."""
    text = "Prologue\nIn the beginning.\n\nChapter 1\nMiddle.\n\nEpilogue\nAfter."
    assert [c.title for c in split_chapters(text)] == ["Prologue", "Chapter 1", "Epilogue"]


def test_locate_scenes_with_quotes():
    """Quote anchors give ordered, non-overlapping absolute ranges."""
    chapter = Chapter(chapter_index=0, title="Chapter 1", start_char=100, end_char=100 + len(CHAPTER_TEXT))
    items = [
        {"title": "Market", "startQuote": "Mara walked", "endQuote": "loud and bright."},
        {"title": "Storm", "startQuote": "Later that night", "endQuote": "until morning."},
    ]
    scenes = SceneExtractor.locate_scenes(items, chapter, CHAPTER_TEXT, start_global_index=4)

    assert [s.global_scene_index for s in scenes] == [4, 5]
    assert scenes[0].start_char == 100
    assert scenes[0].end_char <= scenes[1].start_char
    assert scenes[1].end_char == chapter.end_char
    assert CHAPTER_TEXT[scenes[1].start_char - 100:].startswith("Later that night")


def test_locate_scenes_missing_quotes_fall_back():
    """Unfound quotes fall back to the cursor and an even share of the rest."""
    chapter = Chapter(chapter_index=0, title="Chapter 1", start_char=0, end_char=len(CHAPTER_TEXT))
    items = [
        {"title": "A", "startQuote": "not in the text", "endQuote": "also missing"},
        {"title": "B", "startQuote": "Later that night", "endQuote": ""},
    ]
    scenes = SceneExtractor.locate_scenes(items, chapter, CHAPTER_TEXT, start_global_index=0)

    assert scenes[0].start_char == 0
    assert scenes[0].end_char == len(CHAPTER_TEXT) // 2
    assert scenes[-1].end_char == len(CHAPTER_TEXT)
    for a, b in zip(scenes, scenes[1:]):
        assert a.end_char <= b.start_char


def test_extractor_falls_back_on_bad_reply(governor):
    """Unusable JSON degrades to one scene spanning the chapter."""
    extractor = SceneExtractor(make_llm(["I cannot help with that."]), governor)
    chapter = Chapter(chapter_index=2, title="Chapter 3", start_char=50, end_char=50 + len(CHAPTER_TEXT))

    scenes = extractor.extract(chapter, CHAPTER_TEXT, start_global_index=7)

    assert len(scenes) == 1
    assert scenes[0].title == "Chapter Scene"
    assert (scenes[0].start_char, scenes[0].end_char) == (chapter.start_char, chapter.end_char)
    assert scenes[0].global_scene_index == 7


def test_extractor_falls_back_on_provider_error(governor, db):
    """A provider failure is charged and degrades to the fallback scene."""
    extractor = SceneExtractor(make_llm([RuntimeError("503 Service Unavailable")]), governor)
    chapter = Chapter(chapter_index=0, title="Chapter 1", start_char=0, end_char=len(CHAPTER_TEXT))

    scenes = extractor.extract(chapter, CHAPTER_TEXT, start_global_index=0)

    assert scenes[0].summary == "Full chapter content (Extraction Failed)"
    assert db.get_task_requests(today(), "sceneExtraction") == 1


def test_extractor_parses_scene_list(governor):
    """A wrapped scene list is unpacked and located."""
    reply = {"scenes": [
        {"index": 0, "title": "Market", "summary": "Shopping", "pov": "Mara",
         "temporalHints": {"time": "dawn"}, "events": ["buys bread"],
         "startQuote": "Mara walked", "endQuote": "loud and bright."},
        {"index": 1, "title": "Storm", "summary": "Storm hits", "startQuote": "Later that night",
         "endQuote": "until morning."},
    ]}
    extractor = SceneExtractor(make_llm([reply]), governor)
    chapter = Chapter(chapter_index=0, title="Chapter 1", start_char=0, end_char=len(CHAPTER_TEXT))

    scenes = extractor.extract(chapter, CHAPTER_TEXT, start_global_index=0)

    assert [s.title for s in scenes] == ["Market", "Storm"]
    assert scenes[0].temporal_hints == {"time": "dawn"}
    assert scenes[0].events == ["buys bread"]
    assert scenes[0].pov == "Mara"


def test_extractor_quota_error_propagates(governor, resolver):
    """A denied inline budget check is not absorbed."""
    resolver.set_task("sceneExtraction", "anthropic", "test-model", True, 0)
    extractor = SceneExtractor(make_llm([]), governor)
    chapter = Chapter(chapter_index=0, title="Chapter 1", start_char=0, end_char=len(CHAPTER_TEXT))

    with pytest.raises(BudgetExceededError):
        extractor.extract(chapter, CHAPTER_TEXT, start_global_index=0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
