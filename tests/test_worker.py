"""Tests for time-budgeted worker invocations."""

import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from factories import (
    FakeCompletionProvider,
    insert_records,
    make_settings,
    registry_with,
)
from labelops.v1.ai.scoring import build_evaluation_prompt
from labelops.v1.core.exceptions import ConflictError
from labelops.v1.infra.jobs.handlers import EvaluateBatchHandler
from labelops.v1.infra.jobs.models import Job, JobStatus, JobType
from labelops.v1.infra.jobs.schemas import (
    CleanupPayload,
    EvaluateBatchPayload,
    JobCreate,
)
from labelops.v1.infra.jobs.service import JobService
from labelops.v1.infra.jobs.worker import (
    STOP_DRAINED,
    STOP_MAX_JOBS,
    STOP_STORE_UNAVAILABLE,
    STOP_TIME_BUDGET,
    WorkerInvocation,
    WorkerSpec,
    worker_specs,
)
from labelops.v1.records.models import RecordEvaluation

CLEANUP = JobType.CLEANUP.value


class RecordingHandler:
    """Completes every job, remembering what it saw."""

    def __init__(self):
        self.seen = []

    async def handle(self, session, ctx, payload):
        self.seen.append((ctx.job_id, ctx.attempts))
        await ctx.report_progress(1, 1)
        return {"processed": 1}


class FailingHandler:
    def __init__(self):
        self.attempts = []

    async def handle(self, session, ctx, payload):
        self.attempts.append(ctx.attempts)
        raise RuntimeError("handler exploded")


class CancelledMidwayHandler:
    """Simulates an operator cancelling the job while it runs."""

    def __init__(self, database, settings):
        self.database = database
        self.service = JobService(settings)

    async def handle(self, session, ctx, payload):
        async with self.database.session() as admin_session:
            await self.service.cancel_job(admin_session, ctx.job_id, actor="ops")
        assert await ctx.is_cancelled()
        return {"processed": 0}


class RetriedMidwayHandler:
    """Simulates an operator re-queueing a job whose worker still runs."""

    def __init__(self, database, settings):
        self.database = database
        self.service = JobService(settings)

    async def handle(self, session, ctx, payload):
        async with self.database.session() as admin_session:
            await self.service.retry_job(admin_session, ctx.job_id, actor="ops")
        return {"processed": 1}


def _spec(max_jobs=10, time_limit_s=60.0, job_types=(JobType.CLEANUP,)):
    return WorkerSpec(
        name="test", job_types=job_types, max_jobs=max_jobs, time_limit_s=time_limit_s
    )


async def _enqueue_cleanup(database, settings, count=1, **kwargs):
    service = JobService(settings)
    ids = []
    async with database.session() as session:
        for _ in range(count):
            response = await service.enqueue(
                session, JobCreate(payload=CleanupPayload(), **kwargs)
            )
            ids.append(response.job_id)
    return ids


async def _job(database, job_id):
    async with database.session() as session:
        return await JobService(make_settings()).get_job(session, job_id)


def test_named_workers_cover_every_job_type():
    specs = worker_specs(make_settings(evaluation_max_jobs=7))

    assert set(specs) == {"ingestion", "vectorization", "evaluation", "cleanup"}
    assert specs["evaluation"].job_types == (JobType.EVALUATE_BATCH,)
    assert specs["evaluation"].max_jobs == 7
    covered = {t for spec in specs.values() for t in spec.job_types}
    assert covered == set(JobType)


class TestStopConditions:
    async def test_drains_the_queue(self, database, test_settings):
        ids = await _enqueue_cleanup(database, test_settings, count=3)
        handler = RecordingHandler()

        invocation = WorkerInvocation(
            _spec(), test_settings, database, registry=registry_with(**{CLEANUP: handler})
        )
        result = await invocation.run()

        assert result.stop_reason == STOP_DRAINED
        assert result.processed == 3
        assert result.completed == 3
        assert sorted(result.job_ids) == sorted(str(i) for i in ids)
        for job_id in ids:
            job = await _job(database, job_id)
            assert job.status == JobStatus.COMPLETED.value
            assert job.result == {"processed": 1}
            assert job.locked_by is None

    async def test_stops_at_max_jobs(self, database, test_settings):
        await _enqueue_cleanup(database, test_settings, count=5)

        invocation = WorkerInvocation(
            _spec(max_jobs=2),
            test_settings,
            database,
            registry=registry_with(**{CLEANUP: RecordingHandler()}),
        )
        result = await invocation.run()

        assert result.stop_reason == STOP_MAX_JOBS
        assert result.processed == 2
        async with database.session() as session:
            pending = await session.execute(
                select(func.count(Job.id)).where(Job.status == "pending")
            )
            assert pending.scalar() == 3

    async def test_stops_when_time_budget_is_spent(self, database, test_settings):
        await _enqueue_cleanup(database, test_settings, count=5)
        ticks = iter(range(0, 1000, 30))

        invocation = WorkerInvocation(
            _spec(time_limit_s=60.0),
            test_settings,
            database,
            registry=registry_with(**{CLEANUP: RecordingHandler()}),
            clock=lambda: next(ticks),
        )
        result = await invocation.run()

        # Budget is 0.8 * 60 = 48s and every clock read advances 30s
        assert invocation.time_budget_s == pytest.approx(48.0)
        assert result.stop_reason == STOP_TIME_BUDGET
        assert result.processed == 1

    async def test_store_failure_on_claim_ends_invocation(self, database, test_settings):
        invocation = WorkerInvocation(
            _spec(),
            test_settings,
            database,
            registry=registry_with(**{CLEANUP: RecordingHandler()}),
        )
        invocation.service.claim = AsyncMock(
            side_effect=OperationalError("UPDATE jobs", {}, Exception("connection refused"))
        )

        result = await invocation.run()

        assert result.stop_reason == STOP_STORE_UNAVAILABLE
        assert result.processed == 0


class TestOutcomes:
    async def test_handler_exception_fails_only_that_job(self, database, test_settings):
        ids = await _enqueue_cleanup(database, test_settings, count=2)

        invocation = WorkerInvocation(
            _spec(),
            test_settings,
            database,
            registry=registry_with(**{CLEANUP: FailingHandler()}),
        )
        result = await invocation.run()

        assert result.processed == 2
        assert result.failed == 2
        assert result.stop_reason == STOP_DRAINED
        job = await _job(database, ids[0])
        assert job.status == JobStatus.FAILED.value
        assert job.result["error"] == "handler exploded"
        assert job.result["error_type"] == "RuntimeError"

    async def test_unknown_job_type_fails_the_job(self, database, test_settings):
        (job_id,) = await _enqueue_cleanup(database, test_settings)

        invocation = WorkerInvocation(
            _spec(), test_settings, database, registry=registry_with()
        )
        result = await invocation.run()

        assert result.failed == 1
        job = await _job(database, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.result["error_type"] == "KeyError"

    async def test_cancelled_job_stays_cancelled(self, database, test_settings):
        (job_id,) = await _enqueue_cleanup(database, test_settings)
        handler = CancelledMidwayHandler(database, test_settings)

        invocation = WorkerInvocation(
            _spec(), test_settings, database, registry=registry_with(**{CLEANUP: handler})
        )
        result = await invocation.run()

        assert result.cancelled == 1
        assert result.completed == 0
        job = await _job(database, job_id)
        assert job.status == JobStatus.CANCELLED.value

    async def test_requeued_job_is_not_completed_by_old_owner(
        self, database, test_settings
    ):
        (job_id,) = await _enqueue_cleanup(database, test_settings)
        handler = RetriedMidwayHandler(database, test_settings)

        invocation = WorkerInvocation(
            _spec(max_jobs=1),
            test_settings,
            database,
            registry=registry_with(**{CLEANUP: handler}),
        )
        result = await invocation.run()

        assert result.completed == 0
        job = await _job(database, job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1

    async def test_attempts_increase_on_every_claim(self, database, test_settings):
        (job_id,) = await _enqueue_cleanup(database, test_settings, max_attempts=3)
        handler = FailingHandler()
        registry = registry_with(**{CLEANUP: handler})
        service = JobService(test_settings)

        for _ in range(2):
            await WorkerInvocation(_spec(), test_settings, database, registry=registry).run()
            async with database.session() as session:
                await service.retry_job(session, job_id)
        await WorkerInvocation(_spec(), test_settings, database, registry=registry).run()

        assert handler.attempts == [1, 2, 3]
        async with database.session() as session:
            with pytest.raises(ConflictError):
                await service.retry_job(session, job_id)

    async def test_expired_leases_are_reclaimed_before_claiming(
        self, database, test_settings
    ):
        (job_id,) = await _enqueue_cleanup(database, test_settings)
        async with database.session() as session:
            await JobService(test_settings).claim(session, [JobType.CLEANUP], "dead-worker")
            await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(heartbeat_at=datetime.now(UTC) - timedelta(hours=1))
            )
            await session.commit()

        result = await WorkerInvocation(
            _spec(),
            test_settings,
            database,
            registry=registry_with(**{CLEANUP: RecordingHandler()}),
        ).run()

        assert result.reclaimed == 1
        job = await _job(database, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.result["error_type"] == "LeaseExpired"


def _evaluation_registry(settings, provider):
    return registry_with(
        **{JobType.EVALUATE_BATCH.value: EvaluateBatchHandler(settings, provider=provider)}
    )


def _evaluation_job(project_id="p1", model_id="m1"):
    return JobCreate(
        payload=EvaluateBatchPayload(project_id=project_id, model_id=model_id),
        dedupe_key=f"evaluate:{project_id}:{model_id}",
    )


async def _evaluation_count(database):
    async with database.session() as session:
        evaluations = await session.execute(select(func.count(RecordEvaluation.id)))
        return evaluations.scalar()


class TestPartialBatchFailure:
    async def test_one_bad_record_does_not_fail_the_batch(self, database):
        settings = make_settings(evaluation_batch_size=10)
        provider = FakeCompletionProvider(fail_on="record 4 with")
        registry = _evaluation_registry(settings, provider)
        service = JobService(settings)
        async with database.session() as session:
            await insert_records(session, "p1", 10)
            response = await service.start_chain(session, _evaluation_job())

        spec = _spec(max_jobs=1, job_types=(JobType.EVALUATE_BATCH,))
        result = await WorkerInvocation(spec, settings, database, registry=registry).run()

        assert result.completed == 1
        job = await _job(database, response.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.result["processed"] == 9
        assert job.result["failed"] == 1
        assert job.result["attempted"] == 10
        assert job.result["chain_complete"] is True
        assert len(provider.calls) == 10
        assert await _evaluation_count(database) == 9

        # A new chain picks the bad record up again
        async with database.session() as session:
            retry = await service.start_chain(session, _evaluation_job())
        assert retry.deduplicated is False

        provider.fail_on = None
        await WorkerInvocation(
            _spec(job_types=(JobType.EVALUATE_BATCH,)),
            settings,
            database,
            registry=registry,
        ).run()

        assert len(provider.calls) == 11
        assert await _evaluation_count(database) == 10

    async def test_failing_records_at_the_front_do_not_block_the_rest(self, database):
        settings = make_settings(evaluation_batch_size=5)
        provider = FakeCompletionProvider(fail_on="broken")
        registry = _evaluation_registry(settings, provider)
        service = JobService(settings)
        async with database.session() as session:
            await insert_records(session, "p1", 5, prefix="broken")
            good = await insert_records(session, "p1", 20, prefix="good")
            response = await service.start_chain(session, _evaluation_job())

        result = await WorkerInvocation(
            _spec(max_jobs=50, job_types=(JobType.EVALUATE_BATCH,)),
            settings,
            database,
            registry=registry,
        ).run()

        assert result.completed == 5
        assert await _evaluation_count(database) == len(good)
        assert len(provider.calls) == 25
        async with database.session() as session:
            progress = await service.get_chain_progress(session, response.correlation_id)
        assert progress.job_count == 5
        assert progress.processed == 20
        assert progress.active is False
        assert progress.chain_complete is True
        assert "stalled" not in progress.last_result

    async def test_long_chain_evaluates_each_record_exactly_once(self, database):
        settings = make_settings(evaluation_batch_size=25)
        provider = FakeCompletionProvider()
        registry = _evaluation_registry(settings, provider)
        service = JobService(settings)
        async with database.session() as session:
            records = await insert_records(session, "p1", 1000)
            response = await service.start_chain(session, _evaluation_job())

        result = await WorkerInvocation(
            _spec(max_jobs=100, time_limit_s=300.0, job_types=(JobType.EVALUATE_BATCH,)),
            settings,
            database,
            registry=registry,
        ).run()

        assert result.completed == 40
        calls = Counter(provider.calls)
        for record in records:
            assert calls[build_evaluation_prompt(record.content)] == 1
        assert sum(calls.values()) == 1000
        assert await _evaluation_count(database) == 1000
        async with database.session() as session:
            progress = await service.get_chain_progress(session, response.correlation_id)
        assert progress.processed == 1000
        assert progress.chain_complete is True


class TestOverlappingChains:
    async def test_request_while_chain_runs_does_not_start_a_second_one(
        self, database
    ):
        settings = make_settings(evaluation_batch_size=4)
        provider = FakeCompletionProvider()
        service = JobService(settings)
        async with database.session() as session:
            await insert_records(session, "p1", 8)
            first = await service.start_chain(session, _evaluation_job())
            claimed = await service.claim(
                session, (JobType.EVALUATE_BATCH,), "worker-a"
            )
            assert claimed.id == first.job_id

            second = await service.start_chain(session, _evaluation_job())

        assert second.deduplicated is True
        assert second.job_id == first.job_id

        # Nothing else is claimable while the first job runs
        result = await WorkerInvocation(
            _spec(job_types=(JobType.EVALUATE_BATCH,)),
            settings,
            database,
            registry=_evaluation_registry(settings, provider),
        ).run()
        assert result.processed == 0
        assert provider.calls == []

    async def test_parallel_jobs_scoring_the_same_records_both_complete(
        self, database
    ):
        settings = make_settings(evaluation_batch_size=6)
        provider = FakeCompletionProvider()
        registry = _evaluation_registry(settings, provider)
        service = JobService(settings)
        async with database.session() as session:
            await insert_records(session, "p1", 6)
            # Two roots without a shared key, as an admin enqueue could create
            for _ in range(2):
                await service.enqueue(
                    session,
                    JobCreate(payload=EvaluateBatchPayload(project_id="p1", model_id="m1")),
                )

        spec = _spec(max_jobs=1, job_types=(JobType.EVALUATE_BATCH,))
        results = await asyncio.gather(
            WorkerInvocation(spec, settings, database, registry=registry).run(),
            WorkerInvocation(spec, settings, database, registry=registry).run(),
        )

        assert [r.completed for r in results] == [1, 1]
        assert [r.failed for r in results] == [0, 0]
        assert await _evaluation_count(database) == 6
