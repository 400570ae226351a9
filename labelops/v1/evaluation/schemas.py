"""
Bulk evaluation request and response schemas.
"""

from pydantic import BaseModel, Field


class EvaluationRequest(BaseModel):
    """Schema for starting bulk evaluation of a project."""

    project_id: str = Field(..., min_length=1)
    model_ids: list[str] = Field(..., min_length=1, description="Models to evaluate with")
    system_prompt: str | None = None
    priority: int = 0


class ModelEvaluationStatus(BaseModel):
    model_id: str
    evaluated: int
    remaining: int
