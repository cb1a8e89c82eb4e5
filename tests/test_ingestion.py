"""Test the ingestion pipeline end to end on a plain-text book."""
import pytest

from conftest import WordTokenizer, make_llm
from ingestion.chunker import SceneChunker
from ingestion.pipeline import BookIngestor
from ingestion.scene_extractor import SceneExtractor
from storage.models import FragmentLayer

CHAPTER_BODY = (
    "Mara walked to the market at dawn. She bought bread and apples. "
    "The stalls were loud and bright.\n"
    "Later that night the storm broke over the harbor. Ships strained at their ropes. "
    "Nobody slept until morning."
)

SCENE_REPLY = {"scenes": [
    {"title": "Market", "summary": "Mara shops", "startQuote": "Mara walked", "endQuote": "loud and bright."},
    {"title": "Storm", "summary": "The storm hits", "startQuote": "Later that night", "endQuote": "until morning."},
]}


@pytest.fixture
def book(tmp_path, db):
    path = tmp_path / "long-winter.txt"
    path.write_text("\n\n".join(f"Chapter {n}\n{CHAPTER_BODY}" for n in (1, 2, 3)))
    document_id = db.insert_document("owner-1", "The Long Winter", str(path))
    return db.get_document(document_id)


def make_ingestor(db, store, embedder, governor, llm, **kwargs):
    return BookIngestor(
        db, store, embedder, governor,
        SceneExtractor(llm, governor),
        chunker=SceneChunker(chunk_size=60, overlap=10, tokenizer=WordTokenizer()),
        **kwargs
    )


def test_ingest_segments_and_indexes(db, store, embedder, governor, book):
    """Three chapters of two scenes each give six ordered scenes and aligned chunks."""
    llm = make_llm(lambda prompt: SCENE_REPLY)
    ingestor = make_ingestor(db, store, embedder, governor, llm)

    result = ingestor.ingest(book['id'])

    assert result.success
    assert (result.stats.chapters, result.stats.scenes) == (3, 6)
    assert len(llm.prompts) == 3
    assert db.get_document(book['id'])['status'] == "READY"

    scenes = db.get_scenes(book['id'])
    assert [s['global_scene_index'] for s in scenes] == list(range(6))
    assert [s['title'] for s in scenes[:2]] == ["Market", "Storm"]
    for a, b in zip(scenes, scenes[1:]):
        assert a['end_char'] <= b['start_char']

    chunker = SceneChunker(chunk_size=60, overlap=10, tokenizer=WordTokenizer())
    expected = sum(chunker.expected_count(s['end_char'] - s['start_char']) for s in scenes)
    chunks = db.get_chunks(book['id'])
    assert result.stats.chunks == expected == len(chunks)

    by_index = {s['global_scene_index']: s for s in scenes}
    for chunk in chunks:
        scene = by_index[chunk['global_scene_index']]
        assert scene['start_char'] <= chunk['start_char'] < chunk['end_char'] <= scene['end_char']

    assert store.count(book['id']) == 6 + expected
    scene_hits = store.search(
        "owner-1", book['id'], embedder.embed_one("storm harbor"), layer=FragmentLayer.SCENE, top_k=1
    )
    assert scene_hits[0].global_scene_index in (1, 3, 5)


def test_preflight_failure_marks_document_failed(db, store, embedder, governor, resolver, book):
    """A budget that cannot cover one call per chapter stops before any call."""
    resolver.set_task("sceneExtraction", "anthropic", "test-model", True, 2)
    llm = make_llm(lambda prompt: SCENE_REPLY)

    result = make_ingestor(db, store, embedder, governor, llm).ingest(book['id'])

    assert not result.success
    assert result.error.startswith("Preflight Check Failed")
    assert llm.prompts == []
    document = db.get_document(book['id'])
    assert document['status'] == "FAILED"
    assert document['error'] == result.error


def test_safety_cap(db, store, embedder, governor, book):
    llm = make_llm(lambda prompt: SCENE_REPLY)

    result = make_ingestor(db, store, embedder, governor, llm, max_llm_calls=2).ingest(book['id'])

    assert not result.success
    assert "Safety cap" in result.error
    assert llm.prompts == []


def test_missing_file_fails(db, store, embedder, governor):
    document_id = db.insert_document("owner-1", "Ghost", "/nonexistent/ghost.txt")

    result = make_ingestor(db, store, embedder, governor, make_llm([])).ingest(document_id)

    assert not result.success
    assert "File not found" in result.error
    assert db.get_document(document_id)['status'] == "FAILED"


def test_unknown_document(db, store, embedder, governor):
    result = make_ingestor(db, store, embedder, governor, make_llm([])).ingest("nope")

    assert not result.success
    assert result.error == "Document not found"


def test_failed_chapter_degrades_to_one_scene(db, store, embedder, governor, book):
    """One bad reply yields a single whole-chapter scene; the rest stay intact."""
    replies = [SCENE_REPLY, "no json here", SCENE_REPLY]
    llm = make_llm(replies)

    result = make_ingestor(db, store, embedder, governor, llm).ingest(book['id'])

    assert result.success
    assert result.stats.scenes == 5
    scenes = db.get_scenes(book['id'])
    assert scenes[2]['title'] == "Chapter Scene"
    assert [s['global_scene_index'] for s in scenes] == list(range(5))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
