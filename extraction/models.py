"""Pydantic models for attribute extraction."""
from enum import Enum
from pydantic import BaseModel, Field, model_validator
from typing import List, Dict, Optional

from storage.models import Fragment
from timeline.models import FocusWindow

MISSING_QUOTE = "(missing quote)"


class TimeState(str, Enum):
    """When an attribute's evidence holds relative to the story."""
    BEFORE = "BEFORE"
    AFTER = "AFTER"
    CONSTANT = "CONSTANT"
    UNKNOWN = "UNKNOWN"


class Evidence(BaseModel):
    """A quoted span backing an attribute value."""
    quote: str = MISSING_QUOTE
    source_id: Optional[str] = None
    location_hint: Optional[str] = None
    page: Optional[int] = None
    chunk_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_quote(self):
        if not self.quote or not self.quote.strip():
            self.quote = MISSING_QUOTE
        return self


class AttributeValue(BaseModel):
    """One extracted property of an entity.

    A null value always carries confidence 0 and time state UNKNOWN.
    """
    value: Optional[str] = None
    confidence: float = 0.0
    time_state: TimeState = TimeState.UNKNOWN
    evidence: List[Evidence] = Field(default_factory=list)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _enforce_invariants(self):
        self.confidence = max(0.0, min(1.0, float(self.confidence)))
        if self.value is not None and not self.value.strip():
            self.value = None
        if self.value is None:
            self.confidence = 0.0
            self.time_state = TimeState.UNKNOWN
        return self


class LegacySourceType(str, Enum):
    EXPLICIT = "explicit"
    INFERRED = "inferred_from_text"
    UNKNOWN = "unknown"


class LegacyEvidence(BaseModel):
    fragment_index: Optional[int] = None
    quote: str = ""
    book_title: Optional[str] = None
    global_scene_index: Optional[int] = None


class LegacyAttribute(BaseModel):
    """Character-pipeline attribute before conversion to AttributeValue."""
    value: str = "not clearly specified"
    source_type: LegacySourceType = LegacySourceType.UNKNOWN
    evidence: List[LegacyEvidence] = Field(default_factory=list)
    notes: Optional[str] = None


class ContextSource(BaseModel):
    source: str
    summary: str


class AnalysisContext(BaseModel):
    """Everything a pipeline needs for one extraction call."""
    entity_name: str
    entity_type: str
    fragments: List[Fragment] = Field(default_factory=list)
    document_titles: Dict[str, str] = Field(default_factory=dict)
    focus_text: Optional[str] = None
    focus_window: Optional[FocusWindow] = None

    def title_for(self, fragment: Fragment) -> str:
        return self.document_titles.get(fragment.document_id, "Unknown")


class AnalysisResult(BaseModel):
    """Answer to an entity analysis request."""
    title: str
    name: str
    entity_type: str
    pipeline: str
    description: str
    attributes: Dict[str, AttributeValue]
    context_sources: List[ContextSource] = Field(default_factory=list)
    focus_window: Optional[FocusWindow] = None
    refined_attributes: List[str] = Field(default_factory=list)
