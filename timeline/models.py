"""Pydantic models for temporal focus windows."""
from pydantic import BaseModel, Field
from typing import List


class MatchedScene(BaseModel):
    id: str
    title: str
    summary: str
    global_scene_index: int
    score: float


class FocusWindow(BaseModel):
    """Inclusive range of global scene indices a query is about."""
    start_global_index: int
    end_global_index: int
    matched_scenes: List[MatchedScene] = Field(default_factory=list)

    def contains(self, global_scene_index) -> bool:
        if global_scene_index is None:
            return False
        return self.start_global_index <= global_scene_index <= self.end_global_index

    def as_range(self):
        return (self.start_global_index, self.end_global_index)
