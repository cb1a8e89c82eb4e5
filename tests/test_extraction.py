"""Test attribute models, normalization, templates and the two pipelines."""
import pytest

from budget.governor import today
from conftest import make_llm
from extraction.character_pipeline import CharacterPipeline, to_legacy
from extraction.generic_pipeline import GenericPipeline
from extraction.models import (
    MISSING_QUOTE,
    AnalysisContext,
    AttributeValue,
    Evidence,
    LegacySourceType,
    TimeState,
)
from extraction.normalize import (
    clean_value,
    confidence_from_marker,
    detect_time_state,
    is_poor,
    normalize_attribute,
    normalize_evidence,
    unwrap_json,
)
from extraction.templates import (
    CHARACTER_TEMPLATE,
    attribute_words,
    get_template,
    is_weapon_like,
    normalize_entity_type,
)
from extraction.weapon_refiner import refine_weapon_attributes
from storage.models import Fragment, FragmentLayer
from timeline.models import FocusWindow


def fragment(fragment_id, text, scene):
    return Fragment(
        id=fragment_id, text=text, owner_id="owner-1", document_id="doc-1",
        layer=FragmentLayer.CHUNK, global_scene_index=scene
    )


def context_for(name, entity_type, fragments, window=None, focus=None):
    return AnalysisContext(
        entity_name=name, entity_type=entity_type, fragments=fragments,
        document_titles={"doc-1": "The Long Winter"}, focus_text=focus, focus_window=window
    )


# ----------------------------------------------------------------------
# Models and normalization
# ----------------------------------------------------------------------

def test_null_value_forces_zero_confidence():
    """A null or blank value always means confidence 0 and UNKNOWN."""
    attr = AttributeValue(value=None, confidence=0.9, time_state=TimeState.AFTER)
    assert attr.confidence == 0.0
    assert attr.time_state == TimeState.UNKNOWN

    blank = AttributeValue(value="   ", confidence=0.8)
    assert blank.value is None
    assert blank.confidence == 0.0

    assert AttributeValue(value="red", confidence=3).confidence == 1.0


def test_empty_quote_gets_placeholder():
    assert Evidence(quote="").quote == MISSING_QUOTE
    assert Evidence(quote="  ").quote == MISSING_QUOTE


def test_odd_evidence_items_become_quotes():
    """Numbers, nested lists and nulls are kept as evidence, never dropped."""
    evidence = normalize_evidence([42, ["torn", "cloak"], None, "red cloak"])

    assert [e.quote for e in evidence] == ["42", "['torn', 'cloak']", MISSING_QUOTE, "red cloak"]

    legacy = to_legacy({"value": "grey", "sourceType": "explicit", "evidence": [7, None]})
    assert [e.quote for e in legacy.evidence] == ["7", ""]


def test_clean_value_drops_not_specified():
    assert clean_value("Not clearly specified.") is None
    assert clean_value("unknown") is None
    assert clean_value(["black", "braided"]) == "black, braided"
    assert clean_value(" scarred ") == "scarred"


def test_confidence_markers():
    assert confidence_from_marker("high") == 1.0
    assert confidence_from_marker("Medium") == 0.7
    assert confidence_from_marker("low") == 0.4
    assert confidence_from_marker("none") == 0.0
    assert confidence_from_marker(None) == 0.5
    assert confidence_from_marker(None, has_value=False) == 0.0
    assert confidence_from_marker(0.3) == 0.3


def test_time_state_from_cues():
    """After beats before beats constant; cue words match whole words only."""
    assert detect_time_state(["the cloak, ruined after the siege"]) == TimeState.AFTER
    assert detect_time_state(["her original armor"]) == TimeState.BEFORE
    assert detect_time_state(["always wore grey"]) == TimeState.CONSTANT
    assert detect_time_state(["you know the way"]) == TimeState.UNKNOWN
    assert detect_time_state([]) == TimeState.UNKNOWN


def test_normalize_attribute_resolves_fragment_index():
    fragments = [fragment("c0", "a plain line", 1), fragment("c1", "his original blade", 4)]
    context = context_for("Tom", "CHARACTER", fragments)

    attr = normalize_attribute(
        "steel sword", [{"fragmentIndex": 1, "quote": "his original blade"}], 0.7, context=context
    )

    assert attr.time_state == TimeState.BEFORE
    assert attr.evidence[0].chunk_id == "c1"
    assert attr.evidence[0].source_id == "doc-1"
    assert attr.evidence[0].location_hint == "Scene 4"


def test_unwrap_json_peels_wrappers():
    attrs = ["hairColor"]
    payload = {"hairColor": {"value": "black"}}

    assert unwrap_json([payload], "Mara", attrs) == payload
    assert unwrap_json({"attributes": payload}, "Mara", attrs) == payload
    assert unwrap_json({"Mara": payload}, "mara", attrs) == payload
    assert unwrap_json({"result": {"data": payload}}, "Mara", attrs) == payload
    assert unwrap_json("nonsense", "Mara", attrs) == {}


def test_is_poor():
    assert is_poor(AttributeValue(), 0.15)
    assert is_poor(AttributeValue(value="grey", confidence=0.1), 0.15)
    assert is_poor(AttributeValue(value="grey", confidence=0.4), 0.15)
    assert not is_poor(AttributeValue(value="grey", confidence=0.7), 0.15)
    assert not is_poor(
        AttributeValue(value="grey", confidence=0.4, evidence=[Evidence(quote="grey eyes")]), 0.15
    )


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------

def test_entity_type_normalization():
    assert normalize_entity_type("weapon") == "ITEM_OR_ARTIFACT"
    assert normalize_entity_type("space ship") == "SPACE_SHIP"
    assert normalize_entity_type("CHARACTER") == "CHARACTER"
    assert normalize_entity_type("teapot") == "ENTITY"
    assert get_template("ENTITY").entity_type == "ENTITY"


def test_character_template_persistence():
    assert not CHARACTER_TEMPLATE.is_time_bound("eyeColor")
    assert CHARACTER_TEMPLATE.is_time_bound("clothingStyleOrOutfit")
    assert attribute_words("hairStyleOrLength") == "hair style or length"


def test_weapon_like():
    assert is_weapon_like("Moonblade")
    assert is_weapon_like("The Heirloom", "longsword")
    assert not is_weapon_like("Lantern", "lamp")


# ----------------------------------------------------------------------
# Weapon regex refinement
# ----------------------------------------------------------------------

def test_weapon_regex_upgrades_present_attributes():
    attributes = {
        'weaponEdgeType': AttributeValue(),
        'firearmActionType': AttributeValue(value="unsure", confidence=0.2),
    }
    fragments = [
        fragment("c0", "The sword was double-edged and heavy.", 3),
        fragment("c1", "He worked the bolt-action rifle.", 5),
    ]

    refined = refine_weapon_attributes(attributes, fragments)

    assert refined == ['weaponEdgeType', 'firearmActionType']
    edge = attributes['weaponEdgeType']
    assert (edge.value, edge.confidence, edge.notes) == ("Double-edged", 0.95, "Regex Refined")
    assert edge.evidence[-1].quote == "double-edged"
    assert edge.evidence[-1].location_hint == "Scene 3"
    assert attributes['firearmActionType'].value == "Bolt Action"
    assert 'firearmBarrelCount' not in attributes


# ----------------------------------------------------------------------
# Pipelines
# ----------------------------------------------------------------------

def test_generic_pipeline_confidence_vocabulary(governor):
    reply = {
        "terrain": {"value": "rocky cliffs", "confidence": "high",
                    "evidence": [{"fragmentIndex": 0, "quote": "the original cliffs"}]},
        "lighting": "dim torchlight",
        "hazards": {"value": "not clearly specified", "confidence": "high"},
    }
    pipeline = GenericPipeline(make_llm([reply]), governor)
    context = context_for("Harbor", "LOCATION", [fragment("c0", "the original cliffs", 2)])

    attributes = pipeline.extract("Harbor", get_template("LOCATION"), context)

    assert attributes['terrain'].confidence == 1.0
    assert attributes['terrain'].time_state == TimeState.BEFORE
    assert attributes['lighting'].confidence == 0.7
    assert attributes['hazards'].value is None
    assert attributes['hazards'].confidence == 0.0
    assert attributes['smellsOrSounds'].value is None
    assert db_requests(governor) == 1

    summary = pipeline.summarize("Harbor", get_template("LOCATION"), attributes)
    assert "terrain: rocky cliffs" in summary


def db_requests(governor):
    return governor.db.get_task_requests(today(), "visualAnalysis")


def test_generic_pipeline_weapon_refinement_gated(governor):
    """Regex refinement runs for weapon-like items only."""
    fragments = [fragment("c0", "A double-edged thing that glowed.", 1)]
    template = get_template("ITEM_OR_ARTIFACT")

    blade = GenericPipeline(make_llm([{"itemType": {"value": "sword", "confidence": "high"}}]), governor)
    refined = blade.extract("Moonblade", template, context_for("Moonblade", "ITEM_OR_ARTIFACT", fragments))
    assert refined['weaponEdgeType'].value == "Double-edged"

    lamp = GenericPipeline(make_llm([{"itemType": {"value": "lamp", "confidence": "high"}}]), governor)
    plain = lamp.extract("Lantern", template, context_for("Lantern", "ITEM_OR_ARTIFACT", fragments))
    assert plain['weaponEdgeType'].value is None


def test_provider_failure_degrades(governor):
    """A provider error yields failure placeholders and is still charged."""
    pipeline = GenericPipeline(make_llm([RuntimeError("connection reset by peer")]), governor)
    template = get_template("LOCATION")

    attributes = pipeline.extract("Harbor", template, context_for("Harbor", "LOCATION", []))

    assert set(attributes) == set(template.attributes)
    assert attributes['terrain'].value == "Extraction failed: Network/API Error"
    assert attributes['terrain'].confidence == 0.0
    assert db_requests(governor) == 1


def test_malformed_reply_degrades_to_unknown(governor):
    pipeline = GenericPipeline(make_llm(["I'd rather describe it in prose."]), governor)

    attributes = pipeline.extract("Harbor", get_template("LOCATION"), context_for("Harbor", "LOCATION", []))

    assert all(v.value is None and v.confidence == 0.0 for v in attributes.values())


def test_to_legacy_coercion():
    assert to_legacy(None).source_type == LegacySourceType.UNKNOWN
    assert to_legacy("grey eyes").source_type == LegacySourceType.INFERRED
    legacy = to_legacy({"value": "grey", "sourceType": "EXPLICIT", "evidence": ["grey eyes"]})
    assert legacy.source_type == LegacySourceType.EXPLICIT
    assert legacy.evidence[0].quote == "grey eyes"


def test_character_pipeline_withholds_out_of_window_traits(governor):
    """Transient traits citing evidence outside the window are withheld."""
    fragments = [
        fragment("c0", "Mara wore a red cloak to the market.", 2),
        fragment("c1", "Her black hair matted, Mara's cloak hung torn and bloodied.", 9),
    ]
    reply = {
        "clothingStyleOrOutfit": {"value": "torn, bloodied cloak", "sourceType": "explicit",
                                  "evidence": [{"quote": "cloak hung torn and bloodied"}]},
        "accessories": {"value": "red cloak", "sourceType": "explicit",
                        "evidence": [{"fragmentIndex": 0, "quote": "a red cloak"}]},
        "hairColor": {"value": "black", "sourceType": "explicit",
                      "evidence": [{"fragmentIndex": 1, "quote": "Her black hair"}]},
        "bloodOrGrim": {"value": "blood-soaked cloak", "sourceType": "explicit",
                        "evidence": [{"quote": "Mara wore a red cloak"}, {"quote": "cloak"}]},
        "emotionalState": {"value": "grim", "sourceType": "inferred_from_text", "evidence": []},
    }
    llm = make_llm([reply])
    window = FocusWindow(start_global_index=0, end_global_index=6)
    context = context_for("Mara", "CHARACTER", fragments, window=window, focus="before the siege")

    attributes = CharacterPipeline(llm, governor).extract("Mara", CHARACTER_TEMPLATE, context)

    withheld = attributes['clothingStyleOrOutfit']
    assert withheld.value is None
    assert withheld.confidence == 0.0
    assert withheld.notes == "Withheld: evidence lies outside focus window [0, 6]"

    assert attributes['accessories'].value == "red cloak"
    assert attributes['accessories'].confidence == 1.0
    assert attributes['hairColor'].value == "black"
    assert attributes['emotionalState'].value is None

    # "cloak" also matches the scene 9 fragment, so the value cannot be placed inside the window
    assert attributes['bloodOrGrim'].value is None
    assert attributes['bloodOrGrim'].notes == withheld.notes

    prompt = llm.prompts[0]
    focused, baseline = prompt.split("=== EVIDENCE_BASELINE")
    assert "red cloak" in focused.split("=== EVIDENCE_FOCUSED")[1]
    assert "torn and bloodied" in baseline


def test_character_pipeline_without_window_keeps_everything(governor):
    fragments = [fragment("c1", "Mara's cloak hung torn and bloodied.", 9)]
    reply = {"clothingStyleOrOutfit": {"value": "torn cloak", "sourceType": "explicit",
                                       "evidence": [{"fragmentIndex": 0, "quote": "torn and bloodied"}]}}
    pipeline = CharacterPipeline(make_llm([reply]), governor)

    attributes = pipeline.extract("Mara", CHARACTER_TEMPLATE, context_for("Mara", "CHARACTER", fragments))

    assert attributes['clothingStyleOrOutfit'].value == "torn cloak"
    summary = pipeline.summarize("Mara", CHARACTER_TEMPLATE, attributes, focus="at the end")
    assert summary.startswith("Mara is described as having unspecified physical features. torn cloak.")
    assert summary.endswith('(Analysis focused on context: "at the end")')


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
