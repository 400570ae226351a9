"""
Job queue Pydantic schemas.

Each job type has its own payload model; `JobPayload` is the discriminated
union the store and handlers use so a handler always receives the shape it
expects instead of an untyped blob.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from labelops.v1.infra.jobs.models import JobType


class BasePayload(BaseModel):
    """Fields shared by every job payload."""

    correlation_id: str | None = Field(
        default=None, description="Logical task id carried across continuations"
    )


class IngestPayload(BasePayload):
    """Load CSV rows into data records, resuming from `offset`."""

    job_type: Literal["ingest"] = "ingest"
    project_id: str
    record_type: Literal["TASK", "FEEDBACK"] = "TASK"
    source: str = "csv"
    csv_content: str
    filter_keywords: list[str] = Field(default_factory=list)
    generate_embeddings: bool = False
    offset: int = Field(default=0, ge=0, description="First data row to process")
    saved_so_far: int = Field(default=0, ge=0)
    skipped_so_far: int = Field(default=0, ge=0)


class RecordCursor(BaseModel):
    """The last record a sliced handler attempted, whatever the outcome."""

    created_at: datetime
    record_id: UUID

    @property
    def position(self) -> tuple[datetime, UUID]:
        return self.created_at, self.record_id


class VectorizePayload(BasePayload):
    """Embed every record of a project that has no embedding yet."""

    job_type: Literal["vectorize"] = "vectorize"
    project_id: str
    after: RecordCursor | None = Field(
        default=None, description="Resume after this record; set by continuations"
    )


class EvaluateBatchPayload(BasePayload):
    """Score unevaluated records of a project with one model."""

    job_type: Literal["evaluate_batch"] = "evaluate_batch"
    project_id: str
    model_id: str
    system_prompt: str | None = None
    after: RecordCursor | None = Field(
        default=None, description="Resume after this record; set by continuations"
    )


class CleanupPayload(BasePayload):
    """Delete terminal jobs older than the retention window."""

    job_type: Literal["cleanup"] = "cleanup"
    retention_days: int | None = Field(default=None, ge=1)
    dry_run: bool = False


JobPayload = Annotated[
    Union[IngestPayload, VectorizePayload, EvaluateBatchPayload, CleanupPayload],
    Field(discriminator="job_type"),
]

job_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(job_type: str, payload: dict[str, Any]) -> BasePayload:
    """Validate a stored payload against the model for its job type."""
    return job_payload_adapter.validate_python({**payload, "job_type": job_type})


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    payload: JobPayload
    priority: int = Field(default=0, description="Priority (higher is claimed first)")
    max_attempts: int | None = Field(default=None, ge=1)
    run_at: datetime | None = Field(
        default=None, description="Earliest time to claim job"
    )
    dedupe_key: str | None = Field(default=None, description="Deduplication key")
    continuation_of: UUID | None = None

    @property
    def job_type(self) -> JobType:
        return JobType(self.payload.job_type)


class JobProgress(BaseModel):
    current: int
    total: int | None = None
    message: str | None = None


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    run_at: datetime
    attempts: int
    max_attempts: int

    locked_by: str | None = None
    heartbeat_at: datetime | None = None

    result: dict[str, Any] | None = None
    progress: dict[str, Any] | None = None
    progress_percentage: float | None = None

    correlation_id: str
    continuation_of: UUID | None = None
    dedupe_key: str | None = None

    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobTypeMetrics(BaseModel):
    count: int
    avg_duration_seconds: float


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + processing
    failed_last_hour: int
    performance_24h: dict[str, JobTypeMetrics] = Field(default_factory=dict)


class ChainProgressResponse(BaseModel):
    """Aggregated progress of a logical task across its continuation chain."""

    correlation_id: str
    job_count: int
    by_status: dict[str, int]
    processed: int
    active: bool
    chain_complete: bool
    last_job_id: UUID | None = None
    last_result: dict[str, Any] | None = None


class JobActionRequest(BaseModel):
    """Schema for job actions (retry, cancel)."""

    job_ids: list[UUID] = Field(..., description="Job IDs to act upon")


class JobActionResponse(BaseModel):
    """Schema for job action responses."""

    success_ids: list[UUID]
    failed_ids: list[UUID]
    errors: dict[str, str]  # job_id -> error message


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: str
    correlation_id: str
    deduplicated: bool = Field(
        default=False, description="Whether an existing pending or running job was returned"
    )
