"""
Job administration endpoints.

Enqueue, inspect, retry and cancel jobs and continuation chains. Every
mutating action is attributed to the `X-Actor` header in the logs and in
the job's stored result.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings, SettingsDep
from labelops.infra.database import SessionDep
from labelops.v1.core.exceptions import (
    ConflictError,
    LabelOpsException,
    NotFoundError,
    create_success_response,
)
from labelops.v1.core.security import ActorDep
from labelops.v1.infra.jobs.models import Job, JobStatus
from labelops.v1.infra.jobs.schemas import (
    JobActionRequest,
    JobActionResponse,
    JobCreate,
    JobListResponse,
    JobResponse,
)
from labelops.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service(settings: Settings = SettingsDep) -> JobService:
    return JobService(settings)


ServiceDep = Depends(get_job_service)


def _to_response(job: Job) -> JobResponse:
    job_data = JobResponse.model_validate(job)
    job_data.progress_percentage = job.get_progress_percentage()
    return job_data


def _job_response(job: Job) -> dict[str, Any]:
    return _to_response(job).model_dump(mode="json")


def _not_found(job_id: UUID) -> NotFoundError:
    return NotFoundError("Job not found", details={"job_id": str(job_id)})


async def _cancel_or_raise(
    service: JobService, session: AsyncSession, job_id: UUID, actor: str
) -> None:
    if await service.cancel_job(session, job_id, actor):
        return
    job = await service.get_job(session, job_id)
    if job is None:
        raise _not_found(job_id)
    raise ConflictError(
        f"Job is {job.status}; only pending or processing jobs can be cancelled",
        details={"job_id": str(job_id), "status": job.status},
    )


async def _apply_to_each(
    job_ids: list[UUID], action: Callable[[UUID], Awaitable[Any]]
) -> JobActionResponse:
    """Run `action` per job; one job's rejection does not stop the rest."""
    outcome = JobActionResponse(success_ids=[], failed_ids=[], errors={})
    for job_id in job_ids:
        try:
            await action(job_id)
        except LabelOpsException as e:
            outcome.failed_ids.append(job_id)
            outcome.errors[str(job_id)] = e.message
        else:
            outcome.success_ids.append(job_id)
    return outcome


@router.post("", response_model=dict)
async def enqueue_job(
    job_create: JobCreate,
    actor: str = ActorDep,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    """Enqueue a job; a live job with the same dedupe key is returned instead."""
    result = await service.start_chain(session, job_create)

    logger.info(
        "Job enqueued via API",
        extra={
            "job_id": str(result.job_id),
            "job_type": job_create.job_type.value,
            "deduplicated": result.deduplicated,
            "actor": actor,
        },
    )
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(default=None, description="Repeatable"),
    job_type: str | None = Query(default=None),
    correlation_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    jobs, total = await service.list_jobs(
        session,
        statuses=[s.value for s in status] if status else None,
        job_type=job_type,
        correlation_id=correlation_id,
        limit=limit,
        offset=offset,
    )
    page = JobListResponse(
        jobs=[_to_response(job) for job in jobs], total=total, limit=limit, offset=offset
    )
    return create_success_response(data=page.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    session: AsyncSession = SessionDep, service: JobService = ServiceDep
) -> dict[str, Any]:
    """Counts by status and type, queue depth and 24h durations."""
    stats = await service.get_job_stats(session)
    return create_success_response(data=stats.model_dump(mode="json"))


@router.get("/failed", response_model=dict)
async def list_failed_jobs(
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    jobs = await service.list_failed_jobs(session, limit)
    return create_success_response(data=[_job_response(job) for job in jobs])


@router.get("/chains/{correlation_id}", response_model=dict)
async def get_chain_progress(
    correlation_id: str,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    progress = await service.get_chain_progress(session, correlation_id)
    return create_success_response(data=progress.model_dump(mode="json"))


@router.post("/chains/{correlation_id}/cancel", response_model=dict)
async def cancel_chain(
    correlation_id: str,
    actor: str = ActorDep,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    """Cancel every pending or processing job of a chain."""
    cancelled = await service.cancel_chain(session, correlation_id, actor)

    logger.info(
        "Job chain cancelled via API",
        extra={
            "correlation_id": correlation_id,
            "cancelled_count": cancelled,
            "actor": actor,
        },
    )
    return create_success_response(
        data={"correlation_id": correlation_id, "cancelled_count": cancelled}
    )


@router.post("/batch/retry", response_model=dict)
async def retry_jobs_batch(
    request: JobActionRequest,
    actor: str = ActorDep,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    outcome = await _apply_to_each(
        request.job_ids, lambda job_id: service.retry_job(session, job_id, actor)
    )
    logger.info(
        "Batch retry via API",
        extra={
            "retried": len(outcome.success_ids),
            "rejected": len(outcome.failed_ids),
            "actor": actor,
        },
    )
    return create_success_response(data=outcome.model_dump(mode="json"))


@router.post("/batch/cancel", response_model=dict)
async def cancel_jobs_batch(
    request: JobActionRequest,
    actor: str = ActorDep,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    outcome = await _apply_to_each(
        request.job_ids,
        lambda job_id: _cancel_or_raise(service, session, job_id, actor),
    )
    logger.info(
        "Batch cancel via API",
        extra={
            "cancelled": len(outcome.success_ids),
            "rejected": len(outcome.failed_ids),
            "actor": actor,
        },
    )
    return create_success_response(data=outcome.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    job = await service.get_job(session, job_id)
    if job is None:
        raise _not_found(job_id)
    return create_success_response(data=_job_response(job))


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    actor: str = ActorDep,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    """Re-queue a failed, cancelled or stuck job; attempts are kept."""
    job = await service.retry_job(session, job_id, actor)

    logger.info(
        "Job retried via API",
        extra={"job_id": str(job_id), "attempts": job.attempts, "actor": actor},
    )
    return create_success_response(data=_job_response(job))


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    actor: str = ActorDep,
    session: AsyncSession = SessionDep,
    service: JobService = ServiceDep,
) -> dict[str, Any]:
    await _cancel_or_raise(service, session, job_id, actor)

    logger.info("Job cancelled via API", extra={"job_id": str(job_id), "actor": actor})
    return create_success_response(data={"success": True, "job_id": str(job_id)})
