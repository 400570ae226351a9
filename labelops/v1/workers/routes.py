"""
Worker trigger endpoints.

An external scheduler calls `GET|POST /v1/workers/{worker}` with
`Authorization: Bearer <CRON_SECRET>`. Each call runs one bounded worker
invocation and reports what it did.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from labelops.config.settings import Settings, SettingsDep
from labelops.infra.database import Database, get_database
from labelops.v1.core.exceptions import (
    NotFoundError,
    StoreUnavailableError,
    create_success_response,
)
from labelops.v1.core.security import TriggerAuthDep
from labelops.v1.infra.jobs.continuation import WorkerTrigger, get_worker_trigger
from labelops.v1.infra.jobs.schemas import CleanupPayload, JobCreate
from labelops.v1.infra.jobs.service import JobService
from labelops.v1.infra.jobs.worker import (
    STOP_STORE_UNAVAILABLE,
    WorkerInvocation,
    worker_specs,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/workers", tags=["workers"])


def cleanup_dedupe_key(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"cleanup:{now.date().isoformat()}"


async def ensure_daily_cleanup_job(database: Database, settings: Settings) -> bool:
    """Enqueue today's cleanup job unless one was already created today."""
    job_service = JobService(settings)
    dedupe_key = cleanup_dedupe_key()

    async with database.session() as session:
        if await job_service.get_job_by_dedupe_key(session, dedupe_key):
            return False
        await job_service.enqueue(
            session,
            JobCreate(
                payload=CleanupPayload(retention_days=settings.job_retention_days),
                dedupe_key=dedupe_key,
            ),
        )
    return True


@router.api_route("/{worker}", methods=["GET", "POST"], response_model=dict)
async def trigger_worker(
    worker: str,
    _: None = TriggerAuthDep,
    settings: Settings = SettingsDep,
    database: Database = Depends(get_database),
    trigger: WorkerTrigger = Depends(get_worker_trigger),
) -> dict[str, Any]:
    """Run one bounded invocation of the named worker."""

    spec = worker_specs(settings).get(worker)
    if spec is None:
        raise NotFoundError(
            f"Unknown worker: {worker}",
            details={"available": sorted(worker_specs(settings))},
        )

    if worker == "cleanup":
        try:
            await ensure_daily_cleanup_job(database, settings)
        except SQLAlchemyError as e:
            logger.exception("Failed to enqueue cleanup job")
            raise StoreUnavailableError(details={"worker": worker}) from e

    invocation = WorkerInvocation(spec, settings, database, trigger)
    result = await invocation.run()

    if result.stop_reason == STOP_STORE_UNAVAILABLE:
        raise StoreUnavailableError(details=result.to_dict())

    return create_success_response(data=result.to_dict())
