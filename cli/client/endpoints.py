"""API Endpoint Wrappers - Typed calls for the LabelOps API"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, LabelOpsError

__all__ = ["LabelOpsClient", "LabelOpsError"]


class LabelOpsClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        cron_secret: str | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get(
            "base_url", "http://localhost:8000"
        )
        final_headers = dict(headers or api_config.get("headers") or {})
        actor = api_config.get("actor")
        if actor:
            final_headers.setdefault("X-Actor", actor)

        self.cron_secret = cron_secret or api_config.get("cron_secret")
        self.api = APIClient(
            base_url=final_base_url,
            timeout=float(api_config.get("timeout", 30)),
            headers=final_headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Job Admin Endpoints
    def job_stats(self) -> dict[str, Any]:
        """Queue overview by status and job type"""
        return self.api.get("/jobs/stats/overview")

    def list_jobs(
        self,
        status: str | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = [s.strip() for s in status.split(",") if s.strip()]
        if job_type:
            params["job_type"] = job_type
        if correlation_id:
            params["correlation_id"] = correlation_id
        return self.api.get("/jobs", params)

    def list_failed_jobs(self, limit: int = 20) -> dict[str, Any]:
        """Most recent failed jobs"""
        return self.api.get("/jobs/failed", {"limit": limit})

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def retry_job(self, job_id: str) -> dict[str, Any]:
        """Return a job to pending"""
        return self.api.post(f"/jobs/{job_id}/retry")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a pending or processing job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def chain_progress(self, correlation_id: str) -> dict[str, Any]:
        """Progress of every job sharing a correlation id"""
        return self.api.get(f"/jobs/chains/{correlation_id}")

    def cancel_chain(self, correlation_id: str) -> dict[str, Any]:
        """Cancel every active job of a chain"""
        return self.api.post(f"/jobs/chains/{correlation_id}/cancel")

    # Worker Endpoints
    def trigger_worker(self, worker: str) -> dict[str, Any]:
        """Run one invocation of a named worker"""
        if not self.cron_secret:
            raise LabelOpsError(
                "No trigger secret configured. Set api.cron_secret or CRON_SECRET"
            )
        return self.api.post(
            f"/workers/{worker}",
            headers={"Authorization": f"Bearer {self.cron_secret}"},
        )

    # Producer Endpoints
    def start_ingest(
        self,
        project_id: str,
        csv_content: str,
        record_type: str | None = None,
        source: str | None = None,
        filter_keywords: list[str] | None = None,
        generate_embeddings: bool = True,
    ) -> dict[str, Any]:
        """Queue CSV content for ingestion"""
        body: dict[str, Any] = {
            "project_id": project_id,
            "csv_content": csv_content,
            "generate_embeddings": generate_embeddings,
        }
        if record_type:
            body["record_type"] = record_type
        if source:
            body["source"] = source
        if filter_keywords:
            body["filter_keywords"] = filter_keywords
        return self.api.post("/ingest", json=body)

    def start_vectorization(self, project_id: str) -> dict[str, Any]:
        """Queue embeddings for records that have none"""
        return self.api.post("/ingest/vectorize", json={"project_id": project_id})

    def start_evaluation(
        self, project_id: str, model_ids: list[str], system_prompt: str | None = None
    ) -> dict[str, Any]:
        """Start one evaluation chain per model"""
        body: dict[str, Any] = {"project_id": project_id, "model_ids": model_ids}
        if system_prompt:
            body["system_prompt"] = system_prompt
        return self.api.post("/evaluations", json=body)

    def evaluation_status(self, project_id: str, model_id: str) -> dict[str, Any]:
        """Evaluated and remaining counts for one model"""
        return self.api.get(f"/evaluations/{project_id}/models/{model_id}")
