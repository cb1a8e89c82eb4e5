"""Shared fixtures: temporary stores and scripted providers."""
import json
import uuid
from types import SimpleNamespace

import chromadb
import pytest
from chromadb.config import Settings

from budget.governor import BudgetGovernor, bypass_state
from budget.task_config import TaskConfigResolver
from llm.completion import LLMClient
from llm.embeddings import EmbeddingService
from storage.database import Database
from storage.vector_store import FragmentStore

KEYWORDS = [
    "siege", "battle", "cloak", "red", "bloodied", "torn", "sword", "hair",
    "market", "wedding", "dragon", "tower", "storm", "harbor", "ship", "feast",
]


class KeywordEncoder:
    """One dimension per keyword plus a small bias so no vector is zero.

    Texts sharing exactly the same keywords have cosine similarity 1.0,
    texts sharing none score about 0.1.
    """

    def __init__(self, keywords=None):
        self.keywords = keywords or KEYWORDS
        self.calls = 0

    def encode(self, texts):
        self.calls += 1
        vectors = []
        for text in texts:
            lowered = text.lower()
            vector = [1.0 if kw in lowered else 0.0 for kw in self.keywords]
            vectors.append(vector + [0.1])
        return vectors


class WordTokenizer:
    def encode(self, text):
        return text.split()


class FakeMessages:
    """Stands in for ``Anthropic().messages``.

    ``responder`` is either a list consumed in order or a callable taking
    the prompt. A returned Exception instance is raised instead.
    """

    def __init__(self, responder):
        self.responder = responder
        self.prompts = []

    def create(self, model, max_tokens, temperature, messages):
        prompt = messages[0]["content"]
        self.prompts.append(prompt)

        if callable(self.responder):
            reply = self.responder(prompt)
        else:
            reply = self.responder.pop(0) if self.responder else "{}"

        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)

        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=reply)],
            usage=SimpleNamespace(input_tokens=len(prompt) // 4, output_tokens=len(reply) // 4),
        )


def make_llm(responder):
    """LLMClient backed by a scripted fake Anthropic client."""
    messages = FakeMessages(responder)
    llm = LLMClient(anthropic_client=SimpleNamespace(messages=messages), max_tokens=1024)
    llm.prompts = messages.prompts
    return llm


@pytest.fixture(autouse=True)
def reset_bypass_state():
    bypass_state.reset()
    yield
    bypass_state.reset()


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "engine.db")


@pytest.fixture
def store():
    client = chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))
    return FragmentStore(collection_name=f"test_{uuid.uuid4().hex}", client=client)


@pytest.fixture
def encoder():
    return KeywordEncoder()


@pytest.fixture
def embedder(encoder):
    return EmbeddingService(model_name="keyword-test", encoder=encoder)


@pytest.fixture
def resolver(db):
    return TaskConfigResolver(db)


@pytest.fixture
def governor(db, resolver):
    return BudgetGovernor(db, resolver)


@pytest.fixture
def document(db):
    document_id = db.insert_document("owner-1", "The Long Winter", "/tmp/long-winter.txt")
    return db.get_document(document_id)
