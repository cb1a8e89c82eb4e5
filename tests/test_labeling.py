"""Test micro-fragment splitting and the labeling queue."""
import asyncio
import re

import pytest

from budget.governor import today
from conftest import KeywordEncoder, make_llm
from labeling.micro_fragments import split_into_micro_fragments
from labeling.queue import LabelingQueue, LABEL_TASK
from llm.embeddings import EmbeddingService
from utils.errors import ValidationError
from utils.ids import snippet_id

CHUNKS = [
    "Mara wore a red cloak over her shoulders.",
    "Old Tom sharpened his sword by the harbor.",
]


def label_everything(prompt):
    """Tag each numbered passage with a name and two labels, one of them invalid."""
    passages = re.findall(r"^(\d+)\. (.+)$", prompt, re.MULTILINE)
    return {"results": [
        {"index": int(i), "entity_names": [text.split()[0]], "labels": ["physical_appearance", "bogus"]}
        for i, text in passages
    ]}


@pytest.fixture
def chunked(db, document):
    db.insert_chunks([
        {
            'id': f"chunk-{i}", 'document_id': document['id'], 'chapter_index': 0,
            'scene_id': f"scene-{i}", 'scene_index': i, 'global_scene_index': i + 3,
            'chunk_index': i, 'text': text, 'token_count': len(text.split()),
            'start_char': i * 100, 'end_char': i * 100 + len(text),
        }
        for i, text in enumerate(CHUNKS)
    ])
    return document


def make_queue(db, store, embedder, resolver, responder, **kwargs):
    return LabelingQueue(db, store, make_llm(responder), embedder, resolver=resolver, **kwargs)


def test_split_groups_short_sentences():
    assert split_into_micro_fragments("One. Two! Three?") == ["One. Two! Three?"]


def test_split_starts_new_group_when_full():
    first = "A" * 60 + "."
    second = "B" * 60 + "."
    assert split_into_micro_fragments(f"{first} {second}") == [first, second]


def test_split_keeps_trailing_text():
    assert split_into_micro_fragments("No terminator here") == ["No terminator here"]


def test_process_job_builds_snippets(db, store, embedder, resolver, chunked):
    """A queued job is labeled, embedded and marked done."""
    queue = make_queue(db, store, embedder, resolver, label_everything)
    job = queue.enqueue(chunked['id'])

    assert queue.process_queue() == job['id']

    finished = db.get_job(job['id'])
    assert finished['status'] == "done"
    assert finished['message'] == "Processed successfully (2 snippets)"

    snippets = store.scroll_all_snippets(chunked['id'], chunked['owner_id'])
    assert [s.position_index for s in snippets] == [0, 1]
    assert [s.global_scene_index for s in snippets] == [3, 4]
    assert snippets[0].entity_names == ["Mara"]
    assert snippets[0].labels == ["PHYSICAL_APPEARANCE"]
    assert snippets[0].id == snippet_id(chunked['id'], 0)
    assert db.get_task_requests(today(), LABEL_TASK) == 1


class SwordlessEncoder(KeywordEncoder):
    """Fails on any text mentioning a sword, batched or alone."""

    def encode(self, texts):
        if any("sword" in t.lower() for t in texts):
            raise RuntimeError("encoder rejected input")
        return super().encode(texts)


def test_short_embedding_batch_is_skipped(db, store, resolver, chunked):
    """A batch that loses a vector is not stored at all; the job still finishes."""
    embedder = EmbeddingService(model_name="keyword-test", encoder=SwordlessEncoder())
    queue = make_queue(db, store, embedder, resolver, label_everything)
    job = queue.enqueue(chunked['id'])

    queue.process_queue()

    finished = db.get_job(job['id'])
    assert finished['status'] == "done"
    assert finished['message'] == "Processed successfully (0 snippets)"
    assert store.scroll_all_snippets(chunked['id'], chunked['owner_id']) == []
    assert store.count(chunked['id']) == 0


def test_reprocessing_overwrites_snippets(db, store, embedder, resolver, chunked):
    """Snippet ids are stable, so a second run does not duplicate."""
    queue = make_queue(db, store, embedder, resolver, label_everything)
    queue.enqueue(chunked['id'])
    queue.process_queue()
    queue.enqueue(chunked['id'])
    queue.process_queue()

    assert store.count(chunked['id']) == 2


def test_empty_queue_returns_none(db, store, embedder, resolver):
    queue = make_queue(db, store, embedder, resolver, label_everything)
    assert queue.process_queue() is None


def test_ceiling_leaves_job_queued(db, store, embedder, resolver, chunked):
    """At the daily ceiling the job is left untouched for a later tick."""
    queue = make_queue(db, store, embedder, resolver, label_everything, daily_ceiling=0)
    job = queue.enqueue(chunked['id'])

    assert queue.process_queue() is None
    assert db.get_job(job['id'])['status'] == "queued"


def test_missing_document_fails_job(db, store, embedder, resolver):
    queue = make_queue(db, store, embedder, resolver, label_everything)
    job = db.insert_job("gone")

    queue.process_queue()

    failed = db.get_job(job['id'])
    assert failed['status'] == "failed"
    assert failed['error'] == "Document not found"


def test_labeling_failure_keeps_unlabeled_snippets(db, store, embedder, resolver, chunked):
    """A provider error still produces snippets, just without labels."""
    queue = make_queue(db, store, embedder, resolver, [RuntimeError("boom")])
    job = queue.enqueue(chunked['id'])

    queue.process_queue()

    assert db.get_job(job['id'])['status'] == "done"
    snippets = store.scroll_all_snippets(chunked['id'], chunked['owner_id'])
    assert len(snippets) == 2
    assert all(not s.labels and not s.entity_names for s in snippets)


def test_enqueue_and_retry_validation(db, store, embedder, resolver, chunked):
    queue = make_queue(db, store, embedder, resolver, label_everything)
    with pytest.raises(ValidationError):
        queue.enqueue("gone")
    with pytest.raises(ValidationError):
        queue.retry_job("no-such-job")

    job = queue.enqueue(chunked['id'])
    db.update_job(job['id'], "failed", error="boom")
    assert queue.retry_job(job['id'])['status'] == "queued"


def test_worker_runs_ticks(db, store, embedder, resolver, chunked):
    queue = make_queue(db, store, embedder, resolver, label_everything)
    job = queue.enqueue(chunked['id'])

    asyncio.run(queue.run_worker(interval=0, max_ticks=1))

    assert db.get_job(job['id'])['status'] == "done"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
