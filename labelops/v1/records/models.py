"""
Work-source tables consumed by job handlers.

Data records are the rows ingested from CSV uploads; evaluations hold the
per-model scores produced by bulk LLM evaluation.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from labelops.infra.database import Base


class DataRecord(Base):
    """A labeling task or feedback entry belonging to a project."""

    __tablename__ = "data_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    record_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="TASK", comment="TASK|FEEDBACK"
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="csv")
    external_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Task id from the source system"
    )

    # Extensible metadata (renamed to avoid SQLAlchemy conflict)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    # Stored as JSON so the same schema runs on SQLite and PostgreSQL
    embedding: Mapped[list[float] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    embedding_model: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_data_records_project_id", "project_id"),
        Index(
            "ix_data_records_external_id", "project_id", "record_type", "external_id"
        ),
    )

    def __repr__(self) -> str:
        return f"<DataRecord(id={self.id}, project={self.project_id})>"


class RecordEvaluation(Base):
    """Scores one model assigned to one record."""

    __tablename__ = "record_evaluations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    record_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("data_records.id", ondelete="CASCADE"), nullable=False
    )
    model_id: Mapped[str] = mapped_column(Text, nullable=False)

    realism_score: Mapped[float] = mapped_column(Float, nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, nullable=False)

    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("record_id", "model_id", name="uq_record_evaluations_record_model"),
        Index("ix_record_evaluations_model_id", "model_id"),
    )
