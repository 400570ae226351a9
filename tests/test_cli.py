"""Tests for CLI commands"""

from unittest.mock import patch

import httpx
import pytest
from typer.testing import CliRunner

from cli.client.base import APIClient, LabelOpsError
from cli.main import app
from cli.utils.config_manager import ConfigManager


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


JOB = {
    "id": "5b0e1f7c-8a51-4c1d-9a55-2f3e4d5c6b7a",
    "job_type": "evaluate_batch",
    "status": "failed",
    "priority": 0,
    "attempts": 1,
    "max_attempts": 3,
    "correlation_id": "5b0e1f7c-8a51-4c1d-9a55-2f3e4d5c6b7a",
    "created_at": "2024-01-01T00:00:00Z",
    "result": {"error": "model overloaded"},
}


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "LabelOps CLI" in result.stdout

    def test_quickstart(self, runner):
        result = runner.invoke(app, ["quickstart"])
        assert result.exit_code == 0
        assert "Quick Start Guide" in result.stdout
        assert "labelops status" in result.stdout

    @patch("cli.main.LabelOpsClient")
    def test_status_success(self, mock_client_class, runner, mock_client):
        mock_client.health_check.return_value = {
            "ok": True,
            "version": "1.0.0",
            "environment": "development",
            "database": {"connected": True},
            "queue": {"queue_depth": 4, "active_workers": 1, "stale_jobs_count": 0},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Connected Successfully" in result.stdout

    @patch("cli.main.LabelOpsClient")
    def test_status_failure(self, mock_client_class, runner, mock_client):
        mock_client.health_check.side_effect = LabelOpsError("Connection failed")
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobsCommands:
    """Test job admin commands"""

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_stats(self, mock_client_class, runner, mock_client):
        mock_client.job_stats.return_value = {
            "total_jobs": 12,
            "queue_depth": 3,
            "failed_last_hour": 1,
            "by_status": {"pending": 3, "failed": 1},
            "by_type": {"ingest": 12},
            "performance_24h": {"ingest": {"count": 8, "avg_duration_seconds": 2.5}},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "stats"])
        assert result.exit_code == 0
        assert "Queue Overview" in result.stdout
        assert "2.5" in result.stdout

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_list_passes_filters(self, mock_client_class, runner, mock_client):
        mock_client.list_jobs.return_value = {"jobs": [JOB], "total": 1}
        mock_client_class.return_value = mock_client

        result = runner.invoke(
            app, ["jobs", "list", "--status", "failed,cancelled", "--limit", "5"]
        )
        assert result.exit_code == 0
        assert "Showing" in result.stdout
        mock_client.list_jobs.assert_called_once_with(
            status="failed,cancelled",
            job_type=None,
            correlation_id=None,
            limit=5,
            offset=0,
        )

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_list_empty(self, mock_client_class, runner, mock_client):
        mock_client.list_jobs.return_value = {"jobs": [], "total": 0}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list", "--limit", "5"])
        assert result.exit_code == 0
        assert "No jobs found" in result.stdout

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_failed_shows_errors(self, mock_client_class, runner, mock_client):
        mock_client.list_failed_jobs.return_value = [JOB]
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "failed"])
        assert result.exit_code == 0
        assert "model overloaded" in result.stdout

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_retry(self, mock_client_class, runner, mock_client):
        mock_client.retry_job.return_value = {**JOB, "status": "pending"}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "retry", "job-1"])
        assert result.exit_code == 0
        assert "pending again" in result.stdout
        mock_client.retry_job.assert_called_once_with("job-1")

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_retry_conflict_exits_nonzero(self, mock_client_class, runner, mock_client):
        mock_client.retry_job.side_effect = LabelOpsError(
            "API Error 409: Job has exhausted its attempts", status_code=409
        )
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "retry", "job-1"])
        assert result.exit_code == 1
        assert "Failed to retry job" in result.stdout

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_cancel_with_yes_skips_prompt(self, mock_client_class, runner, mock_client):
        mock_client.cancel_job.return_value = {"success": True}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "cancel", "job-1", "--yes"])
        assert result.exit_code == 0
        mock_client.cancel_job.assert_called_once_with("job-1")

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_cancel_declined(self, mock_client_class, runner, mock_client):
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "cancel", "job-1"], input="n\n")
        assert result.exit_code == 0
        assert "Operation cancelled" in result.stdout
        mock_client.cancel_job.assert_not_called()

    @patch("cli.commands.jobs.LabelOpsClient")
    def test_chain(self, mock_client_class, runner, mock_client):
        mock_client.chain_progress.return_value = {
            "correlation_id": "chain-1",
            "job_count": 2,
            "by_status": {"completed": 2},
            "processed": 40,
            "active": False,
            "chain_complete": True,
        }
        mock_client.list_jobs.return_value = {"jobs": []}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "chain", "chain-1"])
        assert result.exit_code == 0
        assert "complete" in result.stdout


class TestWorkersCommands:
    """Test worker trigger commands"""

    @patch("cli.commands.workers.LabelOpsClient")
    def test_trigger(self, mock_client_class, runner, mock_client):
        mock_client.trigger_worker.return_value = {
            "worker": "evaluation",
            "processed": 3,
            "completed": 3,
            "stop_reason": "drained",
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["workers", "trigger", "evaluation"])
        assert result.exit_code == 0
        assert "drained" in result.stdout

    @patch("cli.commands.workers.LabelOpsClient")
    def test_poll_runs_requested_rounds(self, mock_client_class, runner, mock_client):
        mock_client.trigger_worker.side_effect = [
            {"processed": 1, "stop_reason": "drained"},
            LabelOpsError("API Error 503: Job store unavailable"),
        ]
        mock_client_class.return_value = mock_client

        with patch("cli.commands.workers.time.sleep") as sleep:
            result = runner.invoke(
                app,
                ["workers", "poll", "cleanup", "--interval", "5", "--rounds", "2"],
            )

        assert result.exit_code == 0
        assert mock_client.trigger_worker.call_count == 2
        sleep.assert_called_once_with(5)
        assert "Job store unavailable" in result.stdout


class TestSubmitCommands:
    """Test work submission commands"""

    @patch("cli.commands.submit.LabelOpsClient")
    def test_ingest_reads_csv_file(self, mock_client_class, runner, mock_client, tmp_path):
        csv_file = tmp_path / "rows.csv"
        csv_file.write_text("task_id,prompt\nt1,Hello there friend\n", encoding="utf-8")
        mock_client.start_ingest.return_value = {
            "job_id": "job-1",
            "correlation_id": "job-1",
            "total_rows": 1,
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(
            app, ["submit", "ingest", "p1", str(csv_file), "-k", "hello"]
        )
        assert result.exit_code == 0
        mock_client.start_ingest.assert_called_once_with(
            "p1",
            "task_id,prompt\nt1,Hello there friend\n",
            record_type=None,
            source="rows.csv",
            filter_keywords=["hello"],
            generate_embeddings=True,
        )

    @patch("cli.commands.submit.LabelOpsClient")
    def test_evaluate_with_models(self, mock_client_class, runner, mock_client):
        mock_client.start_evaluation.return_value = {
            "jobs": [{"model_id": "model-a", "job_id": "job-1", "remaining": 4}]
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["submit", "evaluate", "p1", "-m", "model-a"])
        assert result.exit_code == 0
        assert "model-a" in result.stdout
        mock_client.start_evaluation.assert_called_once_with("p1", ["model-a"], None)


class TestAPIClient:
    """Test envelope handling of the HTTP client"""

    def _client(self, handler):
        return APIClient("http://api.test", transport=httpx.MockTransport(handler))

    def test_unwraps_success_envelope(self):
        client = self._client(
            lambda request: httpx.Response(200, json={"ok": True, "data": {"total": 3}})
        )
        assert client.get("/jobs") == {"total": 3}

    def test_requests_are_versioned(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"ok": True, "data": {}})

        self._client(handler).post("/jobs/abc/retry")
        assert seen == ["/v1/jobs/abc/retry"]

    def test_error_envelope_raises_with_status(self):
        client = self._client(
            lambda request: httpx.Response(
                409, json={"ok": False, "error": {"message": "Job has exhausted its attempts"}}
            )
        )

        with pytest.raises(LabelOpsError) as exc_info:
            client.post("/jobs/abc/retry")
        assert exc_info.value.status_code == 409
        assert "exhausted" in str(exc_info.value)

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LabelOpsError, match="Connection failed"):
            self._client(handler).get("/healthz")


class TestConfigManager:
    def test_set_and_get_with_dot_notation(self, tmp_path):
        manager = ConfigManager(tmp_path)

        manager.set("api.base_url", "http://labelops.internal:8000")

        assert manager.get("api.base_url") == "http://labelops.internal:8000"
        # Defaults still resolve for keys missing from the file
        assert manager.get("display.jobs_per_page") == 20
        assert manager.get("missing.key", "fallback") == "fallback"

    def test_reset_restores_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path)
        manager.set("poll.interval_seconds", 5)

        manager.reset()

        assert manager.get("poll.interval_seconds") == 60

    def test_trigger_without_secret_is_refused(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CRON_SECRET", raising=False)
        from cli.client import endpoints

        monkeypatch.setattr(endpoints, "config", ConfigManager(tmp_path))
        client = endpoints.LabelOpsClient(base_url="http://api.test")

        with pytest.raises(LabelOpsError, match="No trigger secret"):
            client.trigger_worker("cleanup")


    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        manager = ConfigManager(tmp_path)
        manager.set("api.cron_secret", "from-file")
        monkeypatch.setenv("CRON_SECRET", "from-env")

        assert manager.get("api.cron_secret") == "from-env"


class TestConfigCommands:
    @pytest.fixture(autouse=True)
    def isolated_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr("cli.commands.config.config", ConfigManager(tmp_path))

    def test_numeric_key_rejects_text(self, runner):
        result = runner.invoke(app, ["config", "set", "poll.interval_seconds", "soon"])
        assert result.exit_code == 1
        assert "must be numeric" in result.stdout

    def test_secret_is_masked(self, runner):
        result = runner.invoke(app, ["config", "set", "api.cron_secret", "hunter2"])
        assert result.exit_code == 0
        assert "hunter2" not in result.stdout

        result = runner.invoke(app, ["config", "get", "api.cron_secret"])
        assert "hunter2" not in result.stdout

    def test_invalid_base_url(self, runner):
        result = runner.invoke(app, ["config", "set", "api.base_url", "localhost"])
        assert result.exit_code == 1


@patch("cli.commands.submit.LabelOpsClient")
def test_evaluation_status(mock_client_class, runner, mock_client):
    mock_client.evaluation_status.return_value = {
        "model_id": "model-a",
        "evaluated": 4,
        "remaining": 0,
    }
    mock_client_class.return_value = mock_client

    result = runner.invoke(app, ["submit", "evaluation-status", "p1", "model-a"])

    assert result.exit_code == 0
    assert "4 evaluated" in result.stdout
    mock_client.evaluation_status.assert_called_once_with("p1", "model-a")
