"""create jobs and records tables

Revision ID: 3b1f0c7a9d21
Revises:
Create Date: 2026-10-17 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1f0c7a9d21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "payload", sa.JSON, nullable=False, comment="Job-specific parameters"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|processing|completed|failed|cancelled",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Higher is claimed first",
        ),
        sa.Column(
            "run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to claim job",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of claims made",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="3",
            comment="Claims allowed before the job is spent",
        ),
        # Worker coordination fields
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Worker invocation holding the claim",
        ),
        sa.Column(
            "heartbeat_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Claim lease timestamp",
        ),
        # Results and progress
        sa.Column("result", sa.JSON, nullable=True, comment="Job result data"),
        sa.Column(
            "progress",
            sa.JSON,
            nullable=True,
            comment="Progress tracking {current, total, message}",
        ),
        # Chains and deduplication
        sa.Column(
            "correlation_id",
            sa.Text,
            nullable=False,
            comment="Logical task shared by a continuation chain",
        ),
        sa.Column(
            "continuation_of",
            sa.Uuid(),
            nullable=True,
            comment="Job that enqueued this continuation",
        ),
        sa.Column(
            "dedupe_key",
            sa.Text,
            nullable=True,
            comment="At most one pending job per key",
        ),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
    )

    op.create_index(
        "ix_jobs_claim", "jobs", ["status", "job_type", "priority", "created_at"]
    )
    op.create_index("ix_jobs_correlation_id", "jobs", ["correlation_id"])
    op.create_index("ix_jobs_completed_at", "jobs", ["completed_at"])

    # Partial unique index: one pending job per key, keys reusable once claimed
    op.create_index(
        "ix_jobs_dedupe_key_pending",
        "jobs",
        ["dedupe_key"],
        unique=True,
        postgresql_where=sa.text("dedupe_key IS NOT NULL AND status = 'pending'"),
        sqlite_where=sa.text("dedupe_key IS NOT NULL AND status = 'pending'"),
    )

    op.create_table(
        "data_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("project_id", sa.Text, nullable=False),
        sa.Column(
            "record_type",
            sa.Text,
            nullable=False,
            server_default="TASK",
            comment="TASK|FEEDBACK",
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("source", sa.Text, nullable=False, server_default="csv"),
        sa.Column(
            "external_id",
            sa.Text,
            nullable=True,
            comment="Task id from the source system",
        ),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("embedding", sa.JSON, nullable=True),
        sa.Column("embedding_model", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_data_records_project_id", "data_records", ["project_id"])
    op.create_index(
        "ix_data_records_external_id",
        "data_records",
        ["project_id", "record_type", "external_id"],
    )

    op.create_table(
        "record_evaluations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "record_id",
            sa.Uuid(),
            sa.ForeignKey("data_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("model_id", sa.Text, nullable=False),
        sa.Column("realism_score", sa.Float, nullable=False),
        sa.Column("quality_score", sa.Float, nullable=False),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "record_id", "model_id", name="uq_record_evaluations_record_model"
        ),
    )
    op.create_index(
        "ix_record_evaluations_model_id", "record_evaluations", ["model_id"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("record_evaluations")
    op.drop_table("data_records")
    op.drop_index("ix_jobs_dedupe_key_pending", table_name="jobs")
    op.drop_table("jobs")
