"""
Job queue models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, TIMESTAMP, CheckConstraint, Index, Integer, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from labelops.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)
ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class JobType(str, Enum):
    """Job type discriminator; selects the handler a worker runs."""

    INGEST = "ingest"
    VECTORIZE = "vectorize"
    EVALUATE_BATCH = "evaluate_batch"
    CLEANUP = "cleanup"


class Job(Base):
    """
    Durable unit of schedulable work.

    Provides the coordination state for stateless worker invocations:
    - Atomic claim bookkeeping (status, attempts, locked_by, heartbeat lease)
    - Progress tracking and structured results
    - Continuation chains linked by correlation id
    - Pending-job deduplication via dedupe keys
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Job-specific parameters"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed|cancelled",
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Higher is claimed first"
    )
    run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        comment="Earliest time to claim job",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of claims made"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Claims allowed before the job is spent"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker invocation holding the claim"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Claim lease timestamp"
    )

    # Results and progress
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Job result data"
    )
    progress: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Progress tracking {current, total, message}"
    )

    # Chains and deduplication
    correlation_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Logical task shared by a continuation chain"
    )
    continuation_of: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Job that enqueued this continuation"
    )
    dedupe_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="At most one pending job per key"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        Index("ix_jobs_claim", "status", "job_type", "priority", "created_at"),
        Index("ix_jobs_correlation_id", "correlation_id"),
        Index("ix_jobs_completed_at", "completed_at"),
        Index(
            "ix_jobs_dedupe_key_pending",
            "dedupe_key",
            unique=True,
            postgresql_where=text("dedupe_key IS NOT NULL AND status = 'pending'"),
            sqlite_where=text("dedupe_key IS NOT NULL AND status = 'pending'"),
        ),
    )

    def is_active(self) -> bool:
        """Check if job is in an active state (pending, processing)."""
        return self.status in ACTIVE_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_retry(self) -> bool:
        """Check if an operator may re-queue this job."""
        return (
            self.status
            in (
                JobStatus.PROCESSING.value,
                JobStatus.FAILED.value,
                JobStatus.CANCELLED.value,
            )
            and self.attempts < self.max_attempts
        )

    def get_progress_percentage(self) -> float | None:
        """Get progress as percentage if progress data is available."""
        if not self.progress or not isinstance(self.progress, dict):
            return None

        current = self.progress.get("current", 0)
        total = self.progress.get("total", 0)

        if not total or total <= 0:
            return None

        return min(100.0, (current / total) * 100.0)

    def duration_seconds(self) -> float | None:
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()
