"""Pydantic models for budget governance."""
from pydantic import BaseModel
from typing import Optional


class TaskConfig(BaseModel):
    """Provider, model and daily quota for one task."""
    task: str
    provider: str
    model: str
    budget_enabled: bool = True
    daily_limit: int


class ModelConfig(BaseModel):
    """Daily quota shared by every task using one model string."""
    model: str
    budget_enabled: bool = False
    daily_limit: int


class BudgetDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None
