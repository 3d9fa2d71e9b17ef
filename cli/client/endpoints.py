"""API Endpoint Wrappers"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, WayliJobsError

__all__ = ["WayliJobsClient", "WayliJobsError"]


class WayliJobsClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
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

    # Jobs Endpoints
    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get a specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def enqueue_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        priority: str = "normal",
    ) -> dict[str, Any]:
        """Enqueue a new job"""
        return self.api.post(
            "/jobs", json={"type": type, "payload": payload or {}, "priority": priority}
        )

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a queued or running job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def get_job_stats(self) -> dict[str, Any]:
        """Get job statistics"""
        return self.api.get("/jobs/stats/overview")

    # Workers Endpoints
    def list_workers(self, window_s: int | None = None) -> list[dict[str, Any]]:
        """List workers with a recent heartbeat"""
        params = {"window_s": window_s} if window_s else None
        return self.api.get("/workers", params)
