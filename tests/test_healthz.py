from datetime import timedelta

from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.infra.jobs.models import JobStatus, JobType


async def test_healthz_endpoint(async_client):
    """Test health check endpoint with an empty database."""
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200
    data = response.json()

    assert data["ok"] is True
    assert "data" in data
    assert "timestamp" in data

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["environment"] == "development"
    assert health_data["database"]["connected"] is True
    assert health_data["database"]["response_time_ms"] is not None
    assert health_data["worker"] == {
        "active_workers": 0,
        "busy_workers": 0,
        "last_heartbeat_age_seconds": None,
        "stale_jobs_count": 0,
        "queue_depth": 0,
    }


async def test_healthz_reports_workers_and_queue(
    async_client, store, worker_registry, owner
):
    """Test worker liveness, queue depth and stale job counts."""
    await worker_registry.register("host-a-0")
    await worker_registry.heartbeat("host-a-1", "busy")
    await store.enqueue(JobType.DATA_IMPORT, {}, owner)
    stale = await store.enqueue(JobType.DATA_IMPORT, {}, owner)
    await store.conditional_transition(
        stale.id,
        JobStatus.QUEUED,
        {
            "status": JobStatus.RUNNING,
            "worker_id": "host-a-1",
            "started_at": utcnow() - timedelta(hours=1),
        },
    )

    response = await async_client.get("/v1/healthz")

    worker = response.json()["data"]["worker"]
    assert worker["active_workers"] == 2
    assert worker["busy_workers"] == 1
    assert worker["last_heartbeat_age_seconds"] is not None
    assert worker["queue_depth"] == 2
    assert worker["stale_jobs_count"] == 1
