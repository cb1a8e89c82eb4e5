"""Pydantic models for the segmentation pipeline."""
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Dict, Any, Optional


class DocumentStatus(str, Enum):
    """Lifecycle of an ingested document."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


class ExtractedDocument(BaseModel):
    """Plain text read from a source file."""
    title: str
    raw_text: str
    page_count: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Chapter(BaseModel):
    """Contiguous character range of a document."""
    chapter_index: int
    title: str
    start_char: int
    end_char: int
    id: Optional[str] = None

    @property
    def length(self) -> int:
        return self.end_char - self.start_char


class Scene(BaseModel):
    """One narrative beat inside a chapter, located by absolute offsets."""
    chapter_index: int
    local_index: int
    global_scene_index: int
    title: str = ""
    summary: str = ""
    pov: Optional[str] = None
    location: Optional[str] = None
    temporal_hints: Dict[str, Any] = Field(default_factory=dict)
    events: List[str] = Field(default_factory=list)
    start_char: int
    end_char: int
    id: Optional[str] = None
    chapter_id: Optional[str] = None

    def fragment_text(self) -> str:
        """Text embedded for the SCENE layer."""
        events = ", ".join(self.events)
        hints = ", ".join(f"{k}: {v}" for k, v in self.temporal_hints.items() if v)
        return f"Scene: {self.title}. Summary: {self.summary}. Events: {events}. Timing: {hints}"

    def to_dict(self, document_id: str) -> Dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            'document_id': document_id,
            'chapter_id': self.chapter_id,
            'chapter_index': self.chapter_index,
            'local_index': self.local_index,
            'global_scene_index': self.global_scene_index,
            'title': self.title,
            'summary': self.summary,
            'pov': self.pov,
            'location': self.location,
            'temporal_hints': self.temporal_hints,
            'events': self.events,
            'start_char': self.start_char,
            'end_char': self.end_char,
        }


class Chunk(BaseModel):
    """A window of scene text, never crossing the scene boundary."""
    chunk_id: str
    chapter_index: int
    scene_id: Optional[str] = None
    scene_index: int
    global_scene_index: int
    chunk_index: int
    text: str
    token_count: int
    start_char: int
    end_char: int

    def to_dict(self, document_id: str) -> Dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            'id': self.chunk_id,
            'document_id': document_id,
            'chapter_index': self.chapter_index,
            'scene_id': self.scene_id,
            'scene_index': self.scene_index,
            'global_scene_index': self.global_scene_index,
            'chunk_index': self.chunk_index,
            'text': self.text,
            'token_count': self.token_count,
            'start_char': self.start_char,
            'end_char': self.end_char,
        }


class IngestionStats(BaseModel):
    chapters: int = 0
    scenes: int = 0
    chunks: int = 0


class IngestionResult(BaseModel):
    """Outcome of one ingestion run."""
    success: bool
    stats: Optional[IngestionStats] = None
    error: Optional[str] = None
