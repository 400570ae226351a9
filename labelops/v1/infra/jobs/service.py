"""
Job store: enqueueing, claiming, state transitions and housekeeping.
"""

import hashlib
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings
from labelops.v1.core.exceptions import ConflictError, NotFoundError
from labelops.v1.infra.jobs.claim import claim_next_job
from labelops.v1.infra.jobs.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    JobType,
)
from labelops.v1.infra.jobs.schemas import (
    ChainProgressResponse,
    JobCreate,
    JobEnqueueResponse,
    JobStatsResponse,
    JobTypeMetrics,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (
    JobStatus.PROCESSING.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)

# Bulky payload fields a completed job no longer needs. Failed and cancelled
# jobs keep them so a manual retry can run again.
RELEASED_ON_COMPLETION: dict[str, tuple[str, ...]] = {
    JobType.INGEST.value: ("csv_content",),
}


def released_payload(job: Job) -> dict[str, Any] | None:
    """The payload to store once `job` completes, or None to keep it as is."""
    fields = [
        name
        for name in RELEASED_ON_COMPLETION.get(job.job_type, ())
        if name in (job.payload or {})
    ]
    if not fields:
        return None
    payload = {k: v for k, v in job.payload.items() if k not in fields}
    payload["released_fields"] = fields
    return payload


def error_result(error: BaseException | str) -> dict[str, Any]:
    """Structured, human-readable failure result."""
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        error_type = error.__class__.__name__
    else:
        message = error
        error_type = "Error"
    return {
        "error": message,
        "error_type": error_type,
        "failed_at": datetime.now(UTC).isoformat(),
    }


class JobService:
    """Service for managing background jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def enqueue(
        self, session: AsyncSession, job_create: JobCreate
    ) -> JobEnqueueResponse:
        """
        Persist a new pending job.

        Never waits on other jobs. When `dedupe_key` is set and a pending job
        with the same key exists, that job is returned instead.

        Args:
            session: Database session
            job_create: Job creation parameters

        Returns:
            Job enqueue response with job_id and deduplication info
        """
        if job_create.dedupe_key:
            existing_job = await self._find_pending_by_dedupe_key(
                session, job_create.dedupe_key
            )
            if existing_job:
                logger.info(
                    "Job deduplicated",
                    extra={
                        "job_id": str(existing_job.id),
                        "dedupe_key": job_create.dedupe_key,
                        "job_type": existing_job.job_type,
                    },
                )
                return self._enqueue_response(existing_job, deduplicated=True)

        job_id = uuid.uuid4()
        payload = job_create.payload
        correlation_id = payload.correlation_id or str(job_id)
        payload_data = payload.model_copy(
            update={"correlation_id": correlation_id}
        ).model_dump(mode="json")
        now = datetime.now(UTC)

        job = Job(
            id=job_id,
            job_type=job_create.job_type.value,
            payload=payload_data,
            status=JobStatus.PENDING.value,
            priority=job_create.priority,
            max_attempts=job_create.max_attempts or self.settings.job_max_attempts,
            attempts=0,
            run_at=job_create.run_at or now,
            correlation_id=correlation_id,
            continuation_of=job_create.continuation_of,
            dedupe_key=job_create.dedupe_key,
            created_at=now,
            updated_at=now,
        )

        try:
            session.add(job)
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            # Another producer enqueued a pending job with the same key first
            if job_create.dedupe_key and "dedupe_key" in str(e):
                existing_job = await self._find_pending_by_dedupe_key(
                    session, job_create.dedupe_key
                )
                if existing_job:
                    return self._enqueue_response(existing_job, deduplicated=True)
            raise

        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(job.id),
                "job_type": job.job_type,
                "priority": job.priority,
                "correlation_id": correlation_id,
                "continuation_of": str(job.continuation_of)
                if job.continuation_of
                else None,
            },
        )

        return self._enqueue_response(job, deduplicated=False)

    async def start_chain(
        self, session: AsyncSession, job_create: JobCreate
    ) -> JobEnqueueResponse:
        """
        Enqueue the first job of a chain unless the chain is already running.

        Plain `enqueue` only deduplicates against pending jobs so that a
        processing job can enqueue its own continuation. A producer starting
        a chain must also yield to a processing job with the same key: that
        job continues the chain itself, and a second root would work the same
        slice in parallel.
        """
        if job_create.dedupe_key:
            existing_job = await self._find_active_by_dedupe_key(
                session, job_create.dedupe_key
            )
            if existing_job:
                logger.info(
                    "Chain already running",
                    extra={
                        "job_id": str(existing_job.id),
                        "dedupe_key": job_create.dedupe_key,
                        "status": existing_job.status,
                        "correlation_id": existing_job.correlation_id,
                    },
                )
                return self._enqueue_response(existing_job, deduplicated=True)

        return await self.enqueue(session, job_create)

    @staticmethod
    def _enqueue_response(job: Job, deduplicated: bool) -> JobEnqueueResponse:
        return JobEnqueueResponse(
            job_id=job.id,
            status=job.status,
            correlation_id=job.correlation_id,
            deduplicated=deduplicated,
        )

    async def _find_pending_by_dedupe_key(
        self, session: AsyncSession, dedupe_key: str
    ) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(
                Job.dedupe_key == dedupe_key,
                Job.status == JobStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_active_by_dedupe_key(
        self, session: AsyncSession, dedupe_key: str
    ) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(
                Job.dedupe_key == dedupe_key,
                Job.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Job.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_job_by_dedupe_key(
        self, session: AsyncSession, dedupe_key: str
    ) -> Job | None:
        """Most recent job with the given key, in any status."""
        result = await session.execute(
            select(Job)
            .where(Job.dedupe_key == dedupe_key)
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def claim(
        self,
        session: AsyncSession,
        job_types: Iterable[JobType | str],
        worker_id: str,
    ) -> Job | None:
        """Atomically claim the next eligible job; see `claim.claim_next_job`."""
        return await claim_next_job(session, job_types, worker_id)

    async def update_progress(
        self,
        session: AsyncSession,
        job_id: UUID,
        current: int,
        total: int | None = None,
        message: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Record progress for a processing job and refresh its lease.

        Best-effort: store errors are logged and reported as False, never
        raised, so progress reporting cannot abort the caller's work.
        """
        if total is not None:
            total = max(total, 0)
            current = min(current, total)
        progress = {"current": max(current, 0), "total": total}
        if message:
            progress["message"] = message

        now = datetime.now(UTC)
        conditions = [Job.id == job_id, Job.status == JobStatus.PROCESSING.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)

        try:
            result = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(progress=progress, heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0
        except SQLAlchemyError:
            await session.rollback()
            logger.warning(
                "Failed to update job progress",
                exc_info=True,
                extra={"job_id": str(job_id)},
            )
            return False

    async def complete_job(
        self,
        session: AsyncSession,
        job_id: UUID,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """
        Transition a processing job to completed.

        Returns False without raising when the job is no longer processing
        (already completed, cancelled meanwhile, or re-queued), which makes a
        repeated call a no-op that leaves `completed_at` untouched. A given
        `payload` replaces the stored one, see `released_payload`.
        """
        now = datetime.now(UTC)
        conditions = [Job.id == job_id, Job.status == JobStatus.PROCESSING.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)

        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "result": result,
            "completed_at": now,
            "locked_by": None,
            "updated_at": now,
        }
        if payload is not None:
            values["payload"] = payload

        db_result = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        completed = db_result.rowcount > 0
        if completed:
            logger.info("Job completed", extra={"job_id": str(job_id)})
        else:
            logger.info(
                "Job completion skipped; job is not processing",
                extra={"job_id": str(job_id)},
            )
        return completed

    async def fail_job(
        self,
        session: AsyncSession,
        job_id: UUID,
        error: BaseException | str,
        worker_id: str | None = None,
    ) -> bool:
        """Transition a processing job to failed, recording the error in `result`."""
        now = datetime.now(UTC)
        conditions = [Job.id == job_id, Job.status == JobStatus.PROCESSING.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)

        db_result = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(
                status=JobStatus.FAILED.value,
                result=error_result(error),
                completed_at=now,
                locked_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        failed = db_result.rowcount > 0
        if failed:
            logger.error(
                "Job failed",
                extra={"job_id": str(job_id), "error": str(error)},
            )
        return failed

    async def is_cancelled(self, session: AsyncSession, job_id: UUID) -> bool:
        """Cooperative cancellation check; a deleted job counts as cancelled."""
        result = await session.execute(select(Job.status).where(Job.id == job_id))
        status = result.scalar_one_or_none()
        return status is None or status == JobStatus.CANCELLED.value

    async def get_job(self, session: AsyncSession, job_id: UUID) -> Job | None:
        # Transitions are bulk UPDATEs; reload rather than trust the identity map
        result = await session.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        statuses: list[str] | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with filtering and pagination."""
        base_query = select(Job)
        if statuses:
            base_query = base_query.where(Job.status.in_(statuses))
        if job_type:
            base_query = base_query.where(Job.job_type == job_type)
        if correlation_id:
            base_query = base_query.where(Job.correlation_id == correlation_id)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_result = await session.execute(
            base_query.order_by(Job.created_at.desc()).offset(offset).limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    async def list_failed_jobs(
        self, session: AsyncSession, limit: int = 20
    ) -> list[Job]:
        result = await session.execute(
            select(Job)
            .where(Job.status == JobStatus.FAILED.value)
            .order_by(Job.completed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_job_stats(self, session: AsyncSession) -> JobStatsResponse:
        """Aggregate counts, queue depth and recent performance."""
        total_jobs = (await session.execute(select(func.count(Job.id)))).scalar() or 0

        status_result = await session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )
        by_status = {status.value: 0 for status in JobStatus}
        by_status.update(dict(status_result.all()))

        type_result = await session.execute(
            select(Job.job_type, func.count(Job.id)).group_by(Job.job_type)
        )
        by_type = dict(type_result.all())

        queue_depth = by_status[JobStatus.PENDING.value] + by_status[
            JobStatus.PROCESSING.value
        ]

        now = datetime.now(UTC)
        failed_recent_result = await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.FAILED.value,
                Job.completed_at >= now - timedelta(hours=1),
            )
        )
        failed_last_hour = failed_recent_result.scalar() or 0

        # Average processing time per job type over the last 24 hours
        completed_result = await session.execute(
            select(Job.job_type, Job.started_at, Job.completed_at).where(
                Job.status == JobStatus.COMPLETED.value,
                Job.completed_at >= now - timedelta(hours=24),
                Job.started_at.is_not(None),
            )
        )
        durations: dict[str, list[float]] = {}
        for job_type, started_at, completed_at in completed_result.all():
            durations.setdefault(job_type, []).append(
                (completed_at - started_at).total_seconds()
            )
        performance = {
            job_type: JobTypeMetrics(
                count=len(values), avg_duration_seconds=sum(values) / len(values)
            )
            for job_type, values in durations.items()
        }

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
            performance_24h=performance,
        )

    async def get_chain_progress(
        self, session: AsyncSession, correlation_id: str
    ) -> ChainProgressResponse:
        """Aggregate progress of a logical task across its continuation chain."""
        result = await session.execute(
            select(Job)
            .where(Job.correlation_id == correlation_id)
            .order_by(Job.created_at.asc(), Job.id.asc())
        )
        jobs = list(result.scalars().all())
        if not jobs:
            raise NotFoundError(
                "No jobs found for correlation id",
                details={"correlation_id": correlation_id},
            )

        by_status: dict[str, int] = {}
        processed = 0
        for job in jobs:
            by_status[job.status] = by_status.get(job.status, 0) + 1
            if job.status == JobStatus.COMPLETED.value and job.result:
                processed += int(job.result.get("processed", 0))

        last_job = jobs[-1]
        active = any(job.status in ACTIVE_STATUSES for job in jobs)
        chain_complete = (
            not active
            and last_job.status == JobStatus.COMPLETED.value
            and bool((last_job.result or {}).get("chain_complete"))
        )

        return ChainProgressResponse(
            correlation_id=correlation_id,
            job_count=len(jobs),
            by_status=by_status,
            processed=processed,
            active=active,
            chain_complete=chain_complete,
            last_job_id=last_job.id,
            last_result=last_job.result,
        )

    async def retry_job(
        self, session: AsyncSession, job_id: UUID, actor: str | None = None
    ) -> Job:
        """
        Re-queue a failed, cancelled or stuck processing job.

        `attempts` is preserved, so a job that has used up `max_attempts` is
        refused instead of being retried forever.
        """
        job = await self.get_job(session, job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})

        if job.status not in RETRYABLE_STATUSES:
            raise ConflictError(
                f"Job is {job.status}; only processing, failed or cancelled jobs can be retried",
                details={"job_id": str(job_id), "status": job.status},
            )
        if job.attempts >= job.max_attempts:
            raise ConflictError(
                "Job has exhausted its attempts",
                details={
                    "job_id": str(job_id),
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                },
            )

        previous_error = (job.result or {}).get("error")
        now = datetime.now(UTC)
        db_result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == job.status)
            .values(
                status=JobStatus.PENDING.value,
                run_at=now,
                started_at=None,
                completed_at=None,
                locked_by=None,
                heartbeat_at=None,
                progress=None,
                result={"previous_error": previous_error, "retried_by": actor}
                if previous_error
                else {"retried_by": actor},
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if db_result.rowcount == 0:
            raise ConflictError(
                "Job changed state while retrying", details={"job_id": str(job_id)}
            )

        logger.info(
            "Job retried",
            extra={
                "job_id": str(job_id),
                "attempts": job.attempts,
                "previous_status": job.status,
                "actor": actor,
            },
        )

        await session.refresh(job)
        return job

    async def cancel_job(
        self, session: AsyncSession, job_id: UUID, actor: str | None = None
    ) -> bool:
        """Cancel a pending or processing job."""
        now = datetime.now(UTC)
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES))
            .values(
                status=JobStatus.CANCELLED.value,
                completed_at=now,
                locked_by=None,
                result={"cancelled_by": actor, "cancelled_at": now.isoformat()},
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info(
                "Job cancelled", extra={"job_id": str(job_id), "actor": actor}
            )

        return success

    async def cancel_chain(
        self, session: AsyncSession, correlation_id: str, actor: str | None = None
    ) -> int:
        """Cancel every active job of a logical task."""
        now = datetime.now(UTC)
        result = await session.execute(
            update(Job)
            .where(
                Job.correlation_id == correlation_id,
                Job.status.in_(ACTIVE_STATUSES),
            )
            .values(
                status=JobStatus.CANCELLED.value,
                completed_at=now,
                locked_by=None,
                result={"cancelled_by": actor, "cancelled_at": now.isoformat()},
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        logger.info(
            "Job chain cancelled",
            extra={
                "correlation_id": correlation_id,
                "cancelled_count": result.rowcount,
                "actor": actor,
            },
        )
        return result.rowcount

    async def reclaim_stale_jobs(
        self,
        session: AsyncSession,
        stale_after_s: int | None = None,
        job_types: Iterable[JobType | str] | None = None,
    ) -> int:
        """
        Fail processing jobs whose claim lease has expired.

        An invocation killed by its host leaves its job processing forever;
        once `heartbeat_at` is older than the staleness threshold the job is
        marked failed so it becomes visible and can be retried by an operator.
        """
        if stale_after_s is None:
            stale_after_s = self.settings.job_stale_after_s
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=stale_after_s)

        conditions = [
            Job.status == JobStatus.PROCESSING.value,
            Job.heartbeat_at < cutoff,
        ]
        if job_types is not None:
            conditions.append(
                Job.job_type.in_(
                    [t.value if isinstance(t, JobType) else str(t) for t in job_types]
                )
            )

        result = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(
                status=JobStatus.FAILED.value,
                completed_at=now,
                locked_by=None,
                result=error_result(
                    f"Lease expired after {stale_after_s}s without heartbeat"
                )
                | {"error_type": "LeaseExpired"},
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        reclaimed = result.rowcount
        if reclaimed:
            logger.warning(
                "Reclaimed stale jobs",
                extra={"reclaimed_count": reclaimed, "stale_after_s": stale_after_s},
            )
        return reclaimed

    async def cleanup(
        self, session: AsyncSession, retention_days: int | None = None
    ) -> int:
        """Delete terminal jobs completed before the retention window."""
        if retention_days is None:
            retention_days = self.settings.job_retention_days
        cutoff_datetime = datetime.now(UTC) - timedelta(days=retention_days)

        delete_query = Job.__table__.delete().where(
            and_(
                Job.status.in_(TERMINAL_STATUSES),
                Job.completed_at < cutoff_datetime,
            )
        )

        result = await session.execute(delete_query)
        deleted_count = result.rowcount
        await session.commit()

        logger.info(
            "Cleaned up old jobs",
            extra={"deleted_count": deleted_count, "retention_days": retention_days},
        )

        return deleted_count

    async def count_cleanup_candidates(
        self, session: AsyncSession, retention_days: int | None = None
    ) -> int:
        if retention_days is None:
            retention_days = self.settings.job_retention_days
        cutoff_datetime = datetime.now(UTC) - timedelta(days=retention_days)
        result = await session.execute(
            select(func.count(Job.id)).where(
                Job.status.in_(TERMINAL_STATUSES),
                Job.completed_at < cutoff_datetime,
            )
        )
        return result.scalar() or 0

    def generate_dedupe_key(self, job_type: str, **params: Any) -> str:
        """Generate a deterministic deduplication key for a job."""
        key_data = f"{job_type}:{sorted(params.items())}"
        return hashlib.sha256(key_data.encode()).hexdigest()[:32]
