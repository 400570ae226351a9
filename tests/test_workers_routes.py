"""Tests for the worker trigger endpoints."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from sqlalchemy import select

from factories import insert_job, make_settings
from labelops.config.settings import get_settings
from labelops.v1.infra.jobs.models import Job, JobStatus
from labelops.v1.infra.jobs.worker import STOP_STORE_UNAVAILABLE, InvocationResult
from labelops.v1.workers.routes import cleanup_dedupe_key


class TestTriggerWorker:
    async def test_unknown_worker_is_404(self, async_client, trigger_headers):
        response = await async_client.post("/v1/workers/mailer", headers=trigger_headers)

        assert response.status_code == 404
        assert "cleanup" in response.json()["error"]["details"]["available"]

    async def test_get_and_post_both_trigger(self, async_client, trigger_headers):
        for method in ("GET", "POST"):
            response = await async_client.request(
                method, "/v1/workers/ingestion", headers=trigger_headers
            )
            assert response.status_code == 200
            data = response.json()["data"]
            assert data["worker"] == "ingestion"
            assert data["processed"] == 0
            assert data["stop_reason"] == "drained"

    async def test_store_unavailable_is_503(self, async_client, trigger_headers):
        result = InvocationResult(
            worker="evaluation", worker_id="w-1", stop_reason=STOP_STORE_UNAVAILABLE
        )

        with patch(
            "labelops.v1.workers.routes.WorkerInvocation.run", return_value=result
        ):
            response = await async_client.post(
                "/v1/workers/evaluation", headers=trigger_headers
            )

        assert response.status_code == 503
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["details"]["stop_reason"] == "store_unavailable"

    async def test_missing_secret_in_production_fails_closed(self, app, async_client):
        app.dependency_overrides[get_settings] = lambda: make_settings(
            environment="production", debug=False, cron_secret=None
        )

        response = await async_client.post("/v1/workers/cleanup")

        assert response.status_code == 500
        assert response.json()["error"]["details"] == {"setting": "CRON_SECRET"}


class TestCleanupWorker:
    async def test_cleanup_is_enqueued_once_per_day(
        self, async_client, trigger_headers, database
    ):
        first = await async_client.post("/v1/workers/cleanup", headers=trigger_headers)
        second = await async_client.post("/v1/workers/cleanup", headers=trigger_headers)

        assert first.json()["data"]["processed"] == 1
        assert first.json()["data"]["completed"] == 1
        assert second.json()["data"]["processed"] == 0

        async with database.session() as session:
            result = await session.execute(
                select(Job).where(Job.dedupe_key == cleanup_dedupe_key())
            )
            (job,) = result.scalars().all()
        assert job.status == JobStatus.COMPLETED.value

    async def test_cleanup_deletes_expired_jobs(
        self, async_client, trigger_headers, db_session, database
    ):
        now = datetime.now(UTC)
        expired = await insert_job(
            db_session,
            status=JobStatus.COMPLETED.value,
            completed_at=now - timedelta(days=45),
        )
        recent = await insert_job(
            db_session,
            status=JobStatus.FAILED.value,
            completed_at=now - timedelta(days=2),
        )

        response = await async_client.post("/v1/workers/cleanup", headers=trigger_headers)

        assert response.status_code == 200
        async with database.session() as session:
            ids = set((await session.execute(select(Job.id))).scalars().all())
        assert expired.id not in ids
        assert recent.id in ids


def test_cleanup_dedupe_key_is_per_day():
    assert cleanup_dedupe_key(datetime(2024, 3, 9, 23, 59, tzinfo=UTC)) == "cleanup:2024-03-09"
