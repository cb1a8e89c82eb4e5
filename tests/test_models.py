"""Test Pydantic models and identifiers."""
import pytest

from extraction.models import AnalysisResult, AttributeValue, ContextSource
from ingestion.models import Chunk, Scene
from storage.models import Fragment, FragmentLayer
from timeline.models import FocusWindow
from utils.ids import chunk_id, scene_fragment_id, snippet_id


def test_scene_creation():
    """Test creating a scene and its database row."""
    scene = Scene(
        chapter_index=1,
        local_index=0,
        global_scene_index=4,
        title="The Siege",
        summary="The city is surrounded",
        temporal_hints={"time": "dawn", "season": ""},
        events=["walls breached", "gate burns"],
        start_char=120,
        end_char=480,
        chapter_id="chapter-1"
    )

    row = scene.to_dict("doc-1")
    assert row['document_id'] == "doc-1"
    assert row['global_scene_index'] == 4
    assert row['chapter_id'] == "chapter-1"

    text = scene.fragment_text()
    assert text.startswith("Scene: The Siege. Summary: The city is surrounded.")
    assert "walls breached, gate burns" in text
    assert "time: dawn" in text
    assert "season" not in text


def test_chunk_row():
    """Test a chunk converts to its database row."""
    chunk = Chunk(
        chunk_id="c-1", chapter_index=0, scene_id="s-1", scene_index=2, global_scene_index=7,
        chunk_index=12, text="words", token_count=1, start_char=10, end_char=15
    )

    row = chunk.to_dict("doc-1")
    assert row['id'] == "c-1"
    assert row['global_scene_index'] == 7


def test_fragment_defaults():
    """Test fragments start with empty payload lists."""
    fragment = Fragment(id="f", text="t", owner_id="o", document_id="d", layer="SNIPPET")

    assert fragment.layer == FragmentLayer.SNIPPET
    assert fragment.entity_names == []
    assert fragment.labels == []
    assert fragment.score is None


def test_focus_window_bounds():
    """Test the window is inclusive at both ends."""
    window = FocusWindow(start_global_index=3, end_global_index=5)

    assert window.contains(3)
    assert window.contains(5)
    assert not window.contains(6)
    assert not window.contains(None)
    assert window.as_range() == (3, 5)


def test_analysis_result_serializes():
    """Test an analysis result round-trips through JSON."""
    result = AnalysisResult(
        title="Visual Description",
        name="Mara",
        entity_type="CHARACTER",
        pipeline="legacy_character",
        description="Mara is described as having black hair.",
        attributes={"hairColor": AttributeValue(value="black", confidence=1.0)},
        context_sources=[ContextSource(source="The Long Winter [Scene 2]", summary="Mara...")],
    )

    data = result.model_dump(mode="json")
    assert data['attributes']['hairColor']['time_state'] == "UNKNOWN"
    assert AnalysisResult.model_validate(data) == result


def test_ids_are_deterministic():
    """Test identifiers depend only on their inputs."""
    assert chunk_id("doc-1", 0, 100) == chunk_id("doc-1", 0, 100)
    assert chunk_id("doc-1", 0, 100) != chunk_id("doc-1", 0, 101)
    assert scene_fragment_id("doc-1", 3) != snippet_id("doc-1", 3)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
