"""Test end-to-end entity analysis over a populated fragment store."""
from types import SimpleNamespace

import pytest

from conftest import make_llm
from extraction.analyzer import AttributeAnalyzer
from extraction.templates import get_template
from llm.embeddings import EmbeddingService
from storage.models import Fragment, FragmentLayer
from timeline.models import FocusWindow
from utils.errors import BudgetExceededError, ValidationError

HARBOR_TEXTS = ["The harbor at dawn.", "A storm over the harbor.", "The tower above the harbor."]

CHARACTER_REPLY = {
    "clothingStyleOrOutfit": {"value": "torn, bloodied cloak", "sourceType": "explicit",
                              "evidence": [{"quote": "cloak hung torn and bloodied"}]},
    "accessories": {"value": "red cloak", "sourceType": "explicit",
                    "evidence": [{"quote": "a red cloak"}]},
    "hairColor": {"value": "black", "sourceType": "explicit",
                  "evidence": [{"quote": "Her black hair"}]},
}


def index(store, embedder, document, texts_by_scene):
    store.upsert([
        Fragment(
            id=f"{document['id']}-c{scene}",
            text=text,
            owner_id=document['owner_id'],
            document_id=document['id'],
            layer=FragmentLayer.CHUNK,
            global_scene_index=scene,
            embedding=embedder.embed_one(text),
        )
        for scene, text in texts_by_scene.items()
    ])


def fixed_timeline(start, end):
    window = FocusWindow(start_global_index=start, end_global_index=end)
    return SimpleNamespace(resolve_focus_window=lambda document_id, focus: window)


def refusing_timeline():
    def resolve(document_id, focus):
        raise AssertionError("focus windows need exactly one document")
    return SimpleNamespace(resolve_focus_window=resolve)


def make_analyzer(db, store, embedder, governor, llm, **kwargs):
    return AttributeAnalyzer(db, store, embedder, llm, governor, **kwargs)


def test_leakage_guard_end_to_end(db, store, embedder, governor, document):
    """Asking about Mara before the siege never reports the bloodied cloak."""
    index(store, embedder, document, {
        2: "Mara wore a red cloak to the market.",
        9: "Her black hair matted, Mara's cloak hung torn and bloodied.",
    })
    llm = make_llm(lambda prompt: CHARACTER_REPLY)
    analyzer = make_analyzer(db, store, embedder, governor, llm, timeline=fixed_timeline(0, 6))

    result = analyzer.analyze("owner-1", [document['id']], "Mara", "character", "before the siege")

    assert result.pipeline == "legacy_character"
    assert result.title == "Visual Description (before the siege)"
    assert result.focus_window.as_range() == (0, 6)

    cloak = result.attributes['clothingStyleOrOutfit']
    assert cloak.value is None
    assert cloak.confidence == 0.0
    assert result.attributes['accessories'].value == "red cloak"
    assert result.attributes['hairColor'].value == "black"
    assert "bloodied" not in result.description

    # Refinement found nothing new, so only one extraction call ran
    assert len(llm.prompts) == 1
    assert result.refined_attributes == []
    assert sorted(s.source for s in result.context_sources) == [
        "The Long Winter [Scene 2]", "The Long Winter [Scene 9]"
    ]


def test_refinement_reextracts_with_new_fragments(db, store, embedder, governor, document):
    """Weak attributes trigger targeted searches and a single re-extraction."""
    index(store, embedder, document, dict(enumerate(HARBOR_TEXTS)))
    llm = make_llm([{}, {"terrain": {"value": "cliffs", "confidence": "high"}}])
    analyzer = make_analyzer(db, store, embedder, governor, llm, max_context_fragments=1)

    result = analyzer.analyze("owner-1", [document['id']], "Harbor Town", "location")

    assert len(llm.prompts) == 2
    assert "tower above" not in llm.prompts[0]
    assert "tower above" in llm.prompts[1]
    assert result.refined_attributes == get_template("LOCATION").attributes[:5]
    assert result.attributes['terrain'].value == "cliffs"
    assert len(result.context_sources) == 3


def test_refinement_skipped_when_budget_denied(db, store, embedder, governor, resolver, document):
    """Pass 2 is skipped, not raised, when the budget runs out."""
    index(store, embedder, document, dict(enumerate(HARBOR_TEXTS)))
    resolver.set_task("visualAnalysis", "anthropic", "test-model", True, 1)
    llm = make_llm([{}, {}])
    analyzer = make_analyzer(db, store, embedder, governor, llm, max_context_fragments=1)

    result = analyzer.analyze("owner-1", [document['id']], "Harbor Town", "location")

    assert len(llm.prompts) == 1
    assert result.refined_attributes == []


class UnreachableEncoder:
    def encode(self, texts):
        raise ConnectionError("embedding provider unreachable")


def test_embedding_outage_degrades_to_placeholders(db, store, governor, document):
    """An embedding outage yields a well-formed result instead of an exception."""
    embedder = EmbeddingService(model_name="keyword-test", encoder=UnreachableEncoder())
    llm = make_llm([])
    analyzer = make_analyzer(db, store, embedder, governor, llm)

    result = analyzer.analyze("owner-1", [document['id']], "Mara", "character", "before the siege")

    assert result.focus_window is None
    assert result.title == "Visual Description (before the siege)"
    assert result.context_sources == []
    assert set(result.attributes) == set(get_template("CHARACTER").attributes)
    for value in result.attributes.values():
        assert value.value.startswith("Extraction failed")
        assert value.confidence == 0.0
    assert llm.prompts == []


def test_search_outage_degrades_to_placeholders(db, store, embedder, governor, document, monkeypatch):
    def broken_query(**kwargs):
        raise RuntimeError("collection offline")

    monkeypatch.setattr(store, "collection", SimpleNamespace(count=lambda: 1, query=broken_query))
    analyzer = make_analyzer(db, store, embedder, governor, make_llm([]))

    result = analyzer.analyze("owner-1", [document['id']], "Harbor Town", "location")

    assert result.pipeline == "generic"
    assert all(v.value.startswith("Extraction failed") for v in result.attributes.values())


def test_first_pass_budget_raises(db, store, embedder, governor, resolver, document):
    resolver.set_task("visualAnalysis", "anthropic", "test-model", True, 0)
    llm = make_llm([])
    analyzer = make_analyzer(db, store, embedder, governor, llm)

    with pytest.raises(BudgetExceededError):
        analyzer.analyze("owner-1", [document['id']], "Harbor Town", "location")
    assert llm.prompts == []


def test_multi_document_ignores_focus_window(db, store, embedder, governor, document):
    """Windows only apply to single-document requests."""
    other = db.insert_document("owner-1", "The Thaw", "/tmp/thaw.txt")
    analyzer = make_analyzer(
        db, store, embedder, governor, make_llm([{}, {}]), timeline=refusing_timeline()
    )

    result = analyzer.analyze("owner-1", [document['id'], other], "Mara", "CHARACTER", "after the war")

    assert result.focus_window is None
    assert result.title == "Visual Description (after the war)"


def test_unknown_type_uses_generic_entity(db, store, embedder, governor, document):
    analyzer = make_analyzer(db, store, embedder, governor, make_llm([{}, {}]))

    result = analyzer.analyze("owner-1", [document['id']], "The Hum", "teapot")

    assert result.entity_type == "ENTITY"
    assert result.pipeline == "generic"
    assert result.description == "No clear visual details were found for The Hum."


def test_validation_errors(db, store, embedder, governor, document):
    analyzer = make_analyzer(db, store, embedder, governor, make_llm([]))

    with pytest.raises(ValidationError):
        analyzer.analyze("owner-1", [], "Mara", "CHARACTER")
    with pytest.raises(ValidationError):
        analyzer.analyze("owner-1", [document['id']], "   ", "CHARACTER")
    with pytest.raises(ValidationError):
        analyzer.analyze("owner-2", [document['id']], "Mara", "CHARACTER")


def test_refinement_targets_skip_weapon_details(db, store, embedder, governor):
    """Weapon and firearm fields are only refined for weapon-like items."""
    analyzer = make_analyzer(db, store, embedder, governor, make_llm([]), max_refine=100)
    template = get_template("ITEM_OR_ARTIFACT")

    lantern = analyzer.refinement_targets(template, "Lantern", {})
    blade = analyzer.refinement_targets(template, "Moonblade", {})

    assert "weaponEdgeType" not in lantern
    assert "weaponEdgeType" in blade
    assert len(make_analyzer(db, store, embedder, governor, make_llm([])).refinement_targets(
        template, "Moonblade", {}
    )) == 5


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
