"""Pydantic models for vector-indexed fragments."""
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Dict, Any, Optional


class FragmentLayer(str, Enum):
    """Granularity of an indexed fragment."""
    CHUNK = "CHUNK"
    SCENE = "SCENE"
    SNIPPET = "SNIPPET"


class Fragment(BaseModel):
    """A retrievable span of text with its vector and payload."""
    id: str
    text: str
    owner_id: str
    document_id: str
    layer: FragmentLayer
    embedding: Optional[List[float]] = None
    chapter_index: Optional[int] = None
    scene_index: Optional[int] = None
    global_scene_index: Optional[int] = None
    position_index: Optional[int] = None
    start_char: Optional[int] = None
    end_char: Optional[int] = None
    page_number: Optional[int] = None
    entity_names: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    temporal_hints: Dict[str, Any] = Field(default_factory=dict)
    score: Optional[float] = None


class HealthStatus(BaseModel):
    status: str
    count: int = 0
    error: Optional[str] = None
