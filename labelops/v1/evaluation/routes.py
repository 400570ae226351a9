"""
Bulk LLM evaluation endpoints.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings, SettingsDep
from labelops.infra.database import get_session
from labelops.v1.core.exceptions import ValidationError, create_success_response
from labelops.v1.core.security import ActorDep
from labelops.v1.evaluation.schemas import EvaluationRequest, ModelEvaluationStatus
from labelops.v1.infra.jobs.continuation import WorkerTrigger, get_worker_trigger
from labelops.v1.infra.jobs.schemas import EvaluateBatchPayload, JobCreate
from labelops.v1.infra.jobs.service import JobService
from labelops.v1.records.repository import RecordRepository

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/evaluations", tags=["evaluations"])


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def start_evaluation(
    request: EvaluationRequest,
    actor: str = ActorDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
    trigger: WorkerTrigger = Depends(get_worker_trigger),
) -> dict[str, Any]:
    """Start one evaluation chain per model with records left to score."""

    repository = RecordRepository()
    job_service = JobService(settings)
    jobs = []

    for model_id in dict.fromkeys(request.model_ids):
        remaining = await repository.count_unevaluated(
            session, request.project_id, model_id
        )
        if remaining == 0:
            continue

        result = await job_service.start_chain(
            session,
            JobCreate(
                payload=EvaluateBatchPayload(
                    project_id=request.project_id,
                    model_id=model_id,
                    system_prompt=request.system_prompt,
                ),
                priority=request.priority,
                dedupe_key=f"evaluate:{request.project_id}:{model_id}",
            ),
        )
        jobs.append(
            {
                **result.model_dump(mode="json"),
                "model_id": model_id,
                "remaining": remaining,
            }
        )

    if not jobs:
        raise ValidationError(
            "All records are already evaluated for the requested models",
            details={"project_id": request.project_id},
        )

    trigger.fire("evaluation")

    logger.info(
        "Bulk evaluation started",
        extra={
            "project_id": request.project_id,
            "job_ids": [job["job_id"] for job in jobs],
            "actor": actor,
        },
    )

    return create_success_response(data={"jobs": jobs})


@router.get("/{project_id}/models/{model_id}", response_model=dict)
async def get_evaluation_status(
    project_id: str,
    model_id: str,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """How many records one model has scored and how many remain."""

    repository = RecordRepository()
    evaluation_status = ModelEvaluationStatus(
        model_id=model_id,
        evaluated=await repository.count_evaluations(session, project_id, model_id),
        remaining=await repository.count_unevaluated(session, project_id, model_id),
    )

    return create_success_response(data=evaluation_status.model_dump())
