import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings, SettingsDep
from labelops.infra.database import get_session
from labelops.v1.core.exceptions import create_success_response
from labelops.v1.infra.jobs.models import Job, JobStatus

logger = logging.getLogger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue health status."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    stale_jobs_count: int = 0
    queue_depth: int = 0
    oldest_pending_age_seconds: int | None = None


class HealthResponse(BaseModel):
    """Health response with database and queue status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    queue: QueueHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and queue status."""

    db_health = await _check_database_health(session)

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except SQLAlchemyError:
            # Queue metrics are informational; they do not fail the check
            logger.warning("Queue health check failed", exc_info=True)

    health = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        database=db_health,
        queue=queue_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except SQLAlchemyError as e:
        await session.rollback()
        return DatabaseHealth(connected=False, error=str(e))


def _age_seconds(now: datetime, moment: datetime | None) -> int | None:
    if moment is None:
        return None
    # SQLite hands back naive datetimes; they are stored as UTC
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int((now - moment).total_seconds())


async def _check_queue_health(session: AsyncSession, settings: Settings) -> QueueHealth:
    """Check job queue depth and worker liveness."""
    now = datetime.now(UTC)
    processing = Job.status == JobStatus.PROCESSING.value

    # Invocations holding a lease refreshed in the last 5 minutes
    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            processing, Job.heartbeat_at > now - timedelta(minutes=5)
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(Job.heartbeat_at)).where(processing)
    )
    last_heartbeat = last_heartbeat_result.scalar()

    stale_jobs_result = await session.execute(
        select(func.count(Job.id)).where(
            processing,
            Job.heartbeat_at < now - timedelta(seconds=settings.job_stale_after_s),
        )
    )
    stale_jobs_count = stale_jobs_result.scalar() or 0

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    oldest_pending_result = await session.execute(
        select(func.min(Job.created_at)).where(Job.status == JobStatus.PENDING.value)
    )
    oldest_pending = oldest_pending_result.scalar()

    return QueueHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=_age_seconds(now, last_heartbeat),
        stale_jobs_count=stale_jobs_count,
        queue_depth=queue_depth,
        oldest_pending_age_seconds=_age_seconds(now, oldest_pending),
    )
