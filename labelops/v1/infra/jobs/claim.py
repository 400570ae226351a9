"""
Atomic job claim.

A claim selects the best eligible pending job and marks it processing in a
single UPDATE statement:

    UPDATE jobs SET status = 'processing', attempts = attempts + 1, ...
    WHERE id = (
        SELECT id FROM jobs
        WHERE status = 'pending' AND job_type IN (...)
          AND run_at <= now AND attempts < max_attempts
        ORDER BY priority DESC, created_at ASC, id ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    RETURNING jobs.*

On PostgreSQL, competing claimants skip rows another transaction has locked
instead of blocking on them, so N concurrent claimants receive N distinct
jobs. SQLite has no row locks; the statement is still a single write and the
database lock serializes it. There is never a read in one round trip and a
write in another.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import Update, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from labelops.v1.infra.jobs.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)


def build_claim_statement(
    job_types: Iterable[JobType | str], worker_id: str, now: datetime
) -> Update:
    """Build the single-statement claim for the given job types."""
    type_values = sorted(
        t.value if isinstance(t, JobType) else str(t) for t in job_types
    )

    # Aliased so the subquery is not correlated to the UPDATE target
    pending = aliased(Job, name="candidate")
    candidate = (
        select(pending.id)
        .where(
            pending.status == JobStatus.PENDING.value,
            pending.job_type.in_(type_values),
            pending.run_at <= now,
            pending.attempts < pending.max_attempts,
        )
        .order_by(pending.priority.desc(), pending.created_at.asc(), pending.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    return (
        update(Job)
        .where(Job.id == candidate, Job.status == JobStatus.PENDING.value)
        .values(
            status=JobStatus.PROCESSING.value,
            attempts=Job.attempts + 1,
            started_at=now,
            completed_at=None,
            heartbeat_at=now,
            locked_by=worker_id,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )


async def claim_next_job(
    session: AsyncSession, job_types: Iterable[JobType | str], worker_id: str
) -> Job | None:
    """
    Claim the next eligible job of the given types for `worker_id`.

    Commits before returning so the claim is durable and visible to every
    other invocation. Returns None when nothing is eligible. Store errors
    propagate to the caller.
    """
    job_types = list(job_types)
    if not job_types:
        return None

    statement = build_claim_statement(job_types, worker_id, datetime.now(UTC))
    result = await session.execute(statement)
    job = result.scalars().first()
    await session.commit()

    if job is not None:
        logger.info(
            "Claimed job",
            extra={
                "job_id": str(job.id),
                "job_type": job.job_type,
                "attempts": job.attempts,
                "worker_id": worker_id,
            },
        )

    return job
