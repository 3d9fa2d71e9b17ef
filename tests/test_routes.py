"""API tests for the job and worker endpoints."""

from uuid import uuid4

import pytest

from wayli_jobs.config.settings import AuthMode
from wayli_jobs.v1.core.security import string_to_uuid


async def _enqueue(client, **body):
    body.setdefault("type", "reverse_geocoding_missing")
    response = await client.post("/v1/jobs", json=body)
    assert response.status_code == 200
    return response.json()["data"]


class TestJobEndpoints:
    async def test_enqueue_job(self, async_client, settings):
        response = await async_client.post(
            "/v1/jobs",
            json={
                "type": "data_import",
                "payload": {"file_path": "uploads/records.json"},
                "priority": "high",
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["data"]["status"] == "queued"

        job = (await async_client.get(f"/v1/jobs/{data['data']['job_id']}")).json()["data"]
        assert job["type"] == "data_import"
        assert job["priority"] == "high"
        assert job["payload"] == {"file_path": "uploads/records.json"}
        assert job["created_by"] == str(string_to_uuid(settings.dev_user_id))

    @pytest.mark.parametrize(
        "body",
        [
            {"type": "teleportation"},
            {"type": "data_import", "priority": "urgent"},
            {"type": "data_import", "payload": "not-an-object"},
        ],
    )
    async def test_enqueue_rejects_invalid_body(self, async_client, body):
        response = await async_client.post("/v1/jobs", json=body)
        assert response.status_code == 422

    async def test_list_jobs(self, async_client):
        first = await _enqueue(async_client)
        second = await _enqueue(async_client, type="trip_generation")
        await async_client.post(f"/v1/jobs/{first['job_id']}/cancel")

        response = await async_client.get("/v1/jobs")
        data = response.json()["data"]
        assert data["total"] == 2
        assert [job["id"] for job in data["jobs"]] == [second["job_id"], first["job_id"]]

        queued = (await async_client.get("/v1/jobs", params={"status": "queued"})).json()
        assert [job["id"] for job in queued["data"]["jobs"]] == [second["job_id"]]

        by_type = (
            await async_client.get("/v1/jobs", params={"type": "trip_generation"})
        ).json()
        assert by_type["data"]["total"] == 1

    async def test_get_unknown_job(self, async_client):
        response = await async_client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404
        data = response.json()
        assert data["ok"] is False
        assert data["error"]["message"] == "Job not found"

    async def test_cancel_job(self, async_client):
        job = await _enqueue(async_client)

        response = await async_client.post(f"/v1/jobs/{job['job_id']}/cancel")

        assert response.status_code == 200
        cancelled = response.json()["data"]
        assert cancelled["status"] == "cancelled"
        assert cancelled["completed_at"] is not None

    async def test_cancel_terminal_job_conflicts(self, async_client):
        job = await _enqueue(async_client)
        await async_client.post(f"/v1/jobs/{job['job_id']}/cancel")

        response = await async_client.post(f"/v1/jobs/{job['job_id']}/cancel")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["message"] == "Job cannot be cancelled in status 'cancelled'"
        assert error["details"]["status"] == "cancelled"

    async def test_job_stats(self, async_client):
        await _enqueue(async_client)
        await _enqueue(async_client, type="data_export")

        response = await async_client.get("/v1/jobs/stats/overview")

        stats = response.json()["data"]
        assert stats["total_jobs"] == 2
        assert stats["by_status"] == {"queued": 2}
        assert stats["queue_depth"] == 2

    async def test_request_id_is_echoed(self, async_client):
        response = await async_client.get("/v1/jobs", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestHeaderAuth:
    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"auth_mode": AuthMode.HEADER})

    async def test_missing_user_header(self, async_client):
        response = await async_client.get("/v1/jobs")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "X-User-ID header is required"

    async def test_jobs_are_owner_scoped(self, async_client):
        alice = {"X-User-ID": "alice"}
        bob = {"X-User-ID": "bob"}
        admin = {"X-User-ID": "ops", "X-User-Roles": "admin"}

        created = await async_client.post(
            "/v1/jobs", json={"type": "data_export"}, headers=alice
        )
        job_id = created.json()["data"]["job_id"]

        assert (await async_client.get(f"/v1/jobs/{job_id}", headers=alice)).status_code == 200
        assert (await async_client.get(f"/v1/jobs/{job_id}", headers=bob)).status_code == 404
        assert (
            await async_client.post(f"/v1/jobs/{job_id}/cancel", headers=bob)
        ).status_code == 404

        bob_jobs = (await async_client.get("/v1/jobs", headers=bob)).json()["data"]
        assert bob_jobs["total"] == 0
        admin_jobs = (await async_client.get("/v1/jobs", headers=admin)).json()["data"]
        assert admin_jobs["total"] == 1


class TestWorkerEndpoints:
    async def test_list_workers(self, async_client, worker_registry):
        await worker_registry.register("host-a-0")
        await worker_registry.heartbeat("host-a-1", "busy", uuid4())

        response = await async_client.get("/v1/workers")

        assert response.status_code == 200
        workers = {w["id"]: w for w in response.json()["data"]}
        assert set(workers) == {"host-a-0", "host-a-1"}
        assert workers["host-a-1"]["status"] == "busy"

    async def test_list_workers_empty(self, async_client):
        response = await async_client.get("/v1/workers", params={"window_s": 5})
        assert response.json()["data"] == []
