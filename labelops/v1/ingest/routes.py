"""
Ingestion producer endpoints.

Uploads become INGEST jobs; nothing is parsed into records inside the
request. The ingestion worker picks the job up on its next trigger.
"""

import csv
import logging
from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings, SettingsDep
from labelops.infra.database import get_session
from labelops.v1.core.exceptions import ValidationError, create_success_response
from labelops.v1.core.security import ActorDep
from labelops.v1.infra.jobs.continuation import WorkerTrigger, get_worker_trigger
from labelops.v1.infra.jobs.schemas import IngestPayload, JobCreate, VectorizePayload
from labelops.v1.infra.jobs.service import JobService
from labelops.v1.ingest.schemas import IngestRequest, VectorizeRequest
from labelops.v1.records.ingestion import count_csv_rows
from labelops.v1.records.repository import RecordRepository

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ingest", tags=["ingest"])


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def start_ingest(
    request: IngestRequest,
    actor: str = ActorDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
    trigger: WorkerTrigger = Depends(get_worker_trigger),
) -> dict[str, Any]:
    """Queue CSV content for ingestion."""

    try:
        total_rows = count_csv_rows(request.csv_content)
    except csv.Error as e:
        raise ValidationError(f"Invalid CSV: {e}") from e
    if total_rows == 0:
        raise ValidationError("CSV contains no data rows")

    job_service = JobService(settings)
    result = await job_service.enqueue(
        session,
        JobCreate(
            payload=IngestPayload(
                project_id=request.project_id,
                record_type=request.record_type,
                source=request.source,
                csv_content=request.csv_content,
                filter_keywords=request.filter_keywords,
                generate_embeddings=request.generate_embeddings,
            ),
            priority=request.priority,
        ),
    )
    trigger.fire("ingestion")

    logger.info(
        "Ingest queued",
        extra={
            "job_id": str(result.job_id),
            "project_id": request.project_id,
            "total_rows": total_rows,
            "actor": actor,
        },
    )

    return create_success_response(
        data={**result.model_dump(mode="json"), "total_rows": total_rows}
    )


@router.post("/vectorize", response_model=dict)
async def start_vectorization(
    request: VectorizeRequest,
    actor: str = ActorDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
    trigger: WorkerTrigger = Depends(get_worker_trigger),
) -> dict[str, Any]:
    """Queue embedding of every record in a project that has none."""

    remaining = await RecordRepository().count_unvectorized(session, request.project_id)
    if remaining == 0:
        return create_success_response(
            data={"job_id": None, "remaining": 0},
            message="All records already have embeddings",
        )

    job_service = JobService(settings)
    result = await job_service.start_chain(
        session,
        JobCreate(
            payload=VectorizePayload(project_id=request.project_id),
            priority=request.priority,
            dedupe_key=f"vectorize:{request.project_id}",
        ),
    )
    trigger.fire("vectorization")

    logger.info(
        "Vectorization queued",
        extra={
            "job_id": str(result.job_id),
            "project_id": request.project_id,
            "remaining": remaining,
            "deduplicated": result.deduplicated,
            "actor": actor,
        },
    )

    return create_success_response(
        data={**result.model_dump(mode="json"), "remaining": remaining}
    )
