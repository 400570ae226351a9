"""
Time-budgeted worker invocations.

There is no long-lived worker process. An external scheduler (cron, a
platform scheduler, or a self-trigger) calls a worker endpoint; each call
builds a `WorkerInvocation` that claims and runs jobs of its types until the
queue is drained, its job count is reached, or its time budget is spent,
then returns. Invocations share nothing but the job store.
"""

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from labelops.config.logging import bind_log_context
from labelops.config.settings import Settings
from labelops.infra.database import Database
from labelops.v1.core.registries import JobRegistry, job_registry
from labelops.v1.infra.jobs.continuation import (
    WorkerTrigger,
    enqueue_continuation,
)
from labelops.v1.infra.jobs.models import Job, JobType
from labelops.v1.infra.jobs.schemas import BasePayload, JobCreate, JobEnqueueResponse
from labelops.v1.infra.jobs.service import JobService, released_payload

logger = logging.getLogger(__name__)

STOP_DRAINED = "drained"
STOP_MAX_JOBS = "max_jobs"
STOP_TIME_BUDGET = "time_budget"
STOP_STORE_UNAVAILABLE = "store_unavailable"

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_LOST = "lost"


@dataclass(frozen=True)
class WorkerSpec:
    """A named worker: which job types it runs and how long it may run."""

    name: str
    job_types: tuple[JobType, ...]
    max_jobs: int
    time_limit_s: float


def worker_specs(settings: Settings) -> dict[str, WorkerSpec]:
    """The named workers exposed on the trigger surface."""
    return {
        "ingestion": WorkerSpec(
            name="ingestion",
            job_types=(JobType.INGEST,),
            max_jobs=settings.ingestion_max_jobs,
            time_limit_s=settings.ingestion_time_limit_s,
        ),
        "vectorization": WorkerSpec(
            name="vectorization",
            job_types=(JobType.VECTORIZE,),
            max_jobs=settings.vectorization_max_jobs,
            time_limit_s=settings.vectorization_time_limit_s,
        ),
        "evaluation": WorkerSpec(
            name="evaluation",
            job_types=(JobType.EVALUATE_BATCH,),
            max_jobs=settings.evaluation_max_jobs,
            time_limit_s=settings.evaluation_time_limit_s,
        ),
        "cleanup": WorkerSpec(
            name="cleanup",
            job_types=(JobType.CLEANUP,),
            max_jobs=settings.cleanup_max_jobs,
            time_limit_s=settings.cleanup_time_limit_s,
        ),
    }


@dataclass
class InvocationResult:
    """Summary of one worker invocation."""

    worker: str
    worker_id: str
    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    reclaimed: int = 0
    duration_ms: int = 0
    stop_reason: str = STOP_DRAINED
    job_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobContext:
    """
    Everything a handler may do besides its own reads and writes.

    Bound to one claimed job. Each operation uses its own short session so
    progress and continuations are committed independently of the handler's
    session.
    """

    def __init__(
        self,
        job: Job,
        worker_id: str,
        database: Database,
        service: JobService,
        trigger: WorkerTrigger | None = None,
    ):
        self.job = job
        self.worker_id = worker_id
        self.database = database
        self.service = service
        self.trigger = trigger

    @property
    def job_id(self) -> uuid.UUID:
        return self.job.id

    @property
    def attempts(self) -> int:
        return self.job.attempts

    @property
    def correlation_id(self) -> str:
        return self.job.correlation_id

    @property
    def settings(self) -> Settings:
        return self.service.settings

    async def report_progress(
        self, current: int, total: int | None = None, message: str | None = None
    ) -> bool:
        """Best-effort progress update; also refreshes the claim lease."""
        async with self.database.session() as session:
            return await self.service.update_progress(
                session,
                self.job.id,
                current,
                total,
                message,
                worker_id=self.worker_id,
            )

    async def is_cancelled(self) -> bool:
        async with self.database.session() as session:
            return await self.service.is_cancelled(session, self.job.id)

    async def enqueue_continuation(
        self, payload: BasePayload, priority: int | None = None
    ) -> JobEnqueueResponse:
        async with self.database.session() as session:
            return await enqueue_continuation(
                self.service, session, self.job, payload, priority
            )

    async def enqueue(self, job_create: JobCreate) -> JobEnqueueResponse:
        """Start a follow-on chain of another type under this job's correlation id."""
        if job_create.payload.correlation_id is None:
            job_create = job_create.model_copy(
                update={
                    "payload": job_create.payload.model_copy(
                        update={"correlation_id": self.job.correlation_id}
                    )
                }
            )
        async with self.database.session() as session:
            return await self.service.start_chain(session, job_create)

    def trigger_worker(self, worker: str) -> None:
        if self.trigger is not None:
            self.trigger.fire(worker)


class WorkerInvocation:
    """
    One bounded run of a named worker.

    Features:
    - Best-effort reclaim of expired leases before claiming
    - Single-statement atomic claims restricted to the worker's job types
    - Stops at `max_jobs` or once elapsed time passes the time budget
    - Handler exceptions fail the job; store errors end the invocation
    """

    def __init__(
        self,
        spec: WorkerSpec,
        settings: Settings,
        database: Database,
        trigger: WorkerTrigger | None = None,
        registry: JobRegistry = job_registry,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.spec = spec
        self.settings = settings
        self.database = database
        self.trigger = trigger
        self.registry = registry
        self.clock = clock
        self.service = JobService(settings)
        self.worker_id = (
            f"{spec.name}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )

    @property
    def time_budget_s(self) -> float:
        return self.spec.time_limit_s * self.settings.worker_time_budget_ratio

    async def run(self) -> InvocationResult:
        """Claim and process jobs until a stop condition is reached."""
        started = self.clock()
        result = InvocationResult(worker=self.spec.name, worker_id=self.worker_id)
        bind_log_context(worker=self.spec.name, worker_id=self.worker_id)

        logger.info(
            "Worker invocation started",
            extra={
                "worker": self.spec.name,
                "worker_id": self.worker_id,
                "max_jobs": self.spec.max_jobs,
                "time_budget_s": self.time_budget_s,
            },
        )

        result.reclaimed = await self._reclaim_stale_jobs()

        while True:
            if result.processed >= self.spec.max_jobs:
                result.stop_reason = STOP_MAX_JOBS
                break
            if self.clock() - started >= self.time_budget_s:
                result.stop_reason = STOP_TIME_BUDGET
                break

            try:
                async with self.database.session() as session:
                    job = await self.service.claim(
                        session, self.spec.job_types, self.worker_id
                    )
            except SQLAlchemyError:
                logger.exception(
                    "Job claim failed", extra={"worker_id": self.worker_id}
                )
                result.stop_reason = STOP_STORE_UNAVAILABLE
                break

            if job is None:
                result.stop_reason = STOP_DRAINED
                break

            try:
                outcome = await self._process_job(job)
            except SQLAlchemyError:
                logger.exception(
                    "Job store failed while finishing job",
                    extra={"worker_id": self.worker_id, "job_id": str(job.id)},
                )
                result.processed += 1
                result.job_ids.append(str(job.id))
                result.stop_reason = STOP_STORE_UNAVAILABLE
                break

            result.processed += 1
            result.job_ids.append(str(job.id))
            if outcome == OUTCOME_COMPLETED:
                result.completed += 1
            elif outcome == OUTCOME_FAILED:
                result.failed += 1
            elif outcome == OUTCOME_CANCELLED:
                result.cancelled += 1

        result.duration_ms = int((self.clock() - started) * 1000)

        logger.info(
            "Worker invocation finished",
            extra={"worker_id": self.worker_id, **result.to_dict()},
        )
        return result

    async def _reclaim_stale_jobs(self) -> int:
        try:
            async with self.database.session() as session:
                return await self.service.reclaim_stale_jobs(
                    session, job_types=self.spec.job_types
                )
        except SQLAlchemyError:
            logger.warning(
                "Stale job reclaim failed",
                exc_info=True,
                extra={"worker_id": self.worker_id},
            )
            return 0

    async def _process_job(self, job: Job) -> str:
        """Run the handler for a claimed job and record the outcome."""
        job_logger_extra = {
            "job_id": str(job.id),
            "job_type": job.job_type,
            "attempts": job.attempts,
            "correlation_id": job.correlation_id,
            "worker_id": self.worker_id,
        }
        logger.info("Processing job started", extra=job_logger_extra)

        ctx = JobContext(job, self.worker_id, self.database, self.service, self.trigger)

        try:
            handler = self.registry.get(job.job_type)
            async with self.database.session() as session:
                job_result = await handler.handle(session, ctx, dict(job.payload))
        except Exception as e:
            logger.exception(
                "Job processing failed", extra={**job_logger_extra, "error": str(e)}
            )
            async with self.database.session() as session:
                await self.service.fail_job(
                    session, job.id, e, worker_id=self.worker_id
                )
            return OUTCOME_FAILED

        async with self.database.session() as session:
            completed = await self.service.complete_job(
                session,
                job.id,
                job_result,
                worker_id=self.worker_id,
                payload=released_payload(job),
            )
            if completed:
                logger.info("Processing job completed", extra=job_logger_extra)
                return OUTCOME_COMPLETED

            if await self.service.is_cancelled(session, job.id):
                logger.info("Job was cancelled while running", extra=job_logger_extra)
                return OUTCOME_CANCELLED

        logger.warning(
            "Job claim was lost before completion", extra=job_logger_extra
        )
        return OUTCOME_LOST
