"""
Continuation chains and worker self-triggers.

A handler that cannot finish its work inside one invocation processes a
bounded slice, enqueues a follow-up job carrying the resume state, and only
then completes. The follow-up is durable: if the process dies right after
enqueueing, the next scheduled trigger picks the continuation up.

Optionally the handler also fires an HTTP request at its own worker
endpoint so the next slice starts without waiting for the scheduler. That
request is an optimization only; losing it delays the chain, never breaks it.
"""

import asyncio
import logging
from enum import Enum

import httpx
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings, get_settings
from labelops.v1.infra.jobs.models import Job
from labelops.v1.infra.jobs.schemas import BasePayload, JobCreate, JobEnqueueResponse
from labelops.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)


class ChainStep(str, Enum):
    """What a sliced handler does after processing its slice."""

    CONTINUE = "continue"
    DONE = "done"
    STALLED = "stalled"


def next_chain_step(remaining: int, attempted: int) -> ChainStep:
    """
    Decide whether a chain continues.

    `remaining` counts the work left past the slice just processed and
    `attempted` the items that slice tried, whether they succeeded or not.
    Each continuation starts after the last attempted item, so a chain whose
    slices attempt something always moves forward and ends. A slice that
    attempted nothing while work remains stalls the chain instead of
    re-enqueueing it forever.
    """
    if remaining <= 0:
        return ChainStep.DONE
    if attempted > 0:
        return ChainStep.CONTINUE
    return ChainStep.STALLED


async def enqueue_continuation(
    service: JobService,
    session: AsyncSession,
    job: Job,
    payload: BasePayload,
    priority: int | None = None,
) -> JobEnqueueResponse:
    """Enqueue the follow-up of `job` in the same correlation chain."""
    job_create = JobCreate(
        payload=payload.model_copy(update={"correlation_id": job.correlation_id}),
        priority=job.priority if priority is None else priority,
        max_attempts=job.max_attempts,
        dedupe_key=job.dedupe_key,
        continuation_of=job.id,
    )
    response = await service.enqueue(session, job_create)

    logger.info(
        "Continuation enqueued",
        extra={
            "job_id": str(job.id),
            "continuation_id": str(response.job_id),
            "correlation_id": job.correlation_id,
            "deduplicated": response.deduplicated,
        },
    )
    return response


class WorkerTrigger:
    """Fire-and-forget HTTP triggers of this service's worker endpoints."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.transport = transport
        self._tasks: set[asyncio.Task] = set()

    def url_for(self, worker: str) -> str | None:
        if not self.settings.app_base_url:
            return None
        return f"{self.settings.app_base_url.rstrip('/')}/v1/workers/{worker}"

    def fire(self, worker: str) -> asyncio.Task | None:
        """
        Schedule a trigger request and return immediately.

        Returns None when self-triggering is disabled or no base URL is
        configured.
        """
        url = self.url_for(worker)
        if not self.settings.self_trigger_enabled or url is None:
            logger.debug(
                "Self-trigger skipped", extra={"worker": worker, "url": url}
            )
            return None

        task = asyncio.create_task(self._send(worker, url))
        # Keep a reference so the task is not garbage collected mid-flight
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, worker: str, url: str) -> None:
        headers = {}
        if self.settings.cron_secret:
            headers["Authorization"] = f"Bearer {self.settings.cron_secret}"

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.self_trigger_timeout_s,
                transport=self.transport,
            ) as client:
                response = await client.post(url, headers=headers)
            logger.info(
                "Worker self-triggered",
                extra={"worker": worker, "status_code": response.status_code},
            )
        except httpx.HTTPError as e:
            # The durable continuation is picked up by the next scheduled run
            logger.warning(
                "Worker self-trigger failed",
                extra={"worker": worker, "url": url, "error": str(e)},
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight trigger requests to finish."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)


_trigger_instance: WorkerTrigger | None = None


def get_worker_trigger(settings: Settings = Depends(get_settings)) -> WorkerTrigger:
    """Get or create the process-wide worker trigger."""
    global _trigger_instance
    if _trigger_instance is None:
        _trigger_instance = WorkerTrigger(settings)
    return _trigger_instance
