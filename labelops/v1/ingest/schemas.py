"""
Ingestion request schemas.
"""

from typing import Literal

from pydantic import BaseModel, Field


class IngestRequest(BaseModel):
    """Schema for uploading CSV content into a project."""

    project_id: str = Field(..., min_length=1)
    csv_content: str = Field(..., min_length=1, description="Raw CSV text with a header row")
    record_type: Literal["TASK", "FEEDBACK"] = "TASK"
    source: str = "csv"
    filter_keywords: list[str] = Field(
        default_factory=list, description="Keep only rows mentioning one of these"
    )
    generate_embeddings: bool = Field(
        default=True, description="Vectorize the project once ingestion finishes"
    )
    priority: int = 0


class VectorizeRequest(BaseModel):
    """Schema for retroactive vectorization of a project."""

    project_id: str = Field(..., min_length=1)
    priority: int = -1
