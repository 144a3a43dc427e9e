"""
Integration tests for the API endpoints.
"""

from datetime import timedelta

import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backlog.config import Settings
from backlog.db.models import utcnow
from backlog.db.repository import JobRepository
from backlog.worker import Worker
from job_fixtures import FailingPayload


@pytest_asyncio.fixture
async def created_job(client: AsyncClient) -> dict:
    """Create a job for testing."""
    response = await client.post(
        "/v1/jobs",
        json={"type": "test_echo", "data": {"message": "hello"}, "priority": 3},
    )
    return response.json()


class TestJobAPI:
    """Integration tests for job API endpoints."""

    async def test_enqueue_job(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={"type": "test_echo", "data": {"message": "hello"}, "priority": 3},
        )

        assert response.status_code == 201
        data = response.json()
        assert len(data["unique_key"]) == 20
        assert data["name"] == "EchoPayload"
        assert data["priority"] == 3
        assert data["message"] == "Job enqueued"

    async def test_enqueue_with_run_at(self, client: AsyncClient):
        run_at = (utcnow() + timedelta(days=1)).replace(microsecond=0)

        response = await client.post(
            "/v1/jobs",
            json={"type": "test_echo", "data": {"message": "later"}, "run_at": run_at.isoformat()},
        )

        assert response.status_code == 201
        assert response.json()["run_at"].startswith(run_at.strftime("%Y-%m-%dT%H:%M:%S"))

    async def test_enqueue_unknown_type(self, client: AsyncClient):
        response = await client.post("/v1/jobs", json={"type": "nope", "data": {}})

        assert response.status_code == 422
        assert "Unknown payload type" in response.json()["detail"]

    async def test_enqueue_private_type_is_refused(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={"type": "performable_function", "data": {"function": "os:getcwd"}},
        )

        assert response.status_code == 422

    async def test_enqueue_invalid_data(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={"type": "test_echo", "data": {"unexpected": 1}},
        )

        assert response.status_code == 422
        assert "Job failed to load" in response.json()["detail"]

    async def test_get_job(self, client: AsyncClient, created_job: dict):
        response = await client.get(f"/v1/jobs/{created_job['unique_key']}")

        assert response.status_code == 200
        data = response.json()
        assert data["unique_key"] == created_job["unique_key"]
        assert data["name"] == "EchoPayload"
        assert data["priority"] == 3
        assert data["attempts"] == 0
        assert data["state"] is None
        assert data["locked"] is False
        assert data["completed_at"] is None
        assert data["last_error"] is None
        assert "id" not in data

    async def test_get_job_not_found(self, client: AsyncClient):
        response = await client.get("/v1/jobs/0123456789abcdef0123")

        assert response.status_code == 404

    async def test_completed_job_is_gone(
        self,
        client: AsyncClient,
        created_job: dict,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
    ):
        worker = Worker(test_settings, worker_id="worker-a", session_factory=session_factory)
        assert await worker.work_off() == (1, 0)

        response = await client.get(f"/v1/jobs/{created_job['unique_key']}")

        assert response.status_code == 404

    async def test_kept_job_reports_result(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
    ):
        created = (
            await client.post(
                "/v1/jobs",
                json={"type": "test_echo", "data": {"message": "keep me", "keep": True}},
            )
        ).json()
        worker = Worker(test_settings, worker_id="worker-a", session_factory=session_factory)
        await worker.work_off()

        data = (await client.get(f"/v1/jobs/{created['unique_key']}")).json()

        assert data["state"] == "successful"
        assert data["result"] == {"echo": "keep me"}
        assert data["completed_at"] is not None

    async def test_failed_job_reports_first_error_line(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
    ):
        async with session_factory() as session:
            repo = JobRepository(session, settings=test_settings)
            job = await repo.enqueue(
                FailingPayload(message="kaput"),
                run_at=utcnow() - timedelta(minutes=5),
            )
            await session.commit()
        worker = Worker(test_settings, worker_id="worker-a", session_factory=session_factory)
        await worker.work_off()

        data = (await client.get(f"/v1/jobs/{job.unique_key}")).json()

        assert data["attempts"] == 1
        assert data["last_error"] == "kaput"
        assert data["result"] is None

    async def test_stats(self, client: AsyncClient, created_job: dict):
        response = await client.get("/v1/stats")

        assert response.status_code == 200
        assert response.json() == {"pending": 1, "locked": 0, "successful": 0, "failed": 0}


class TestHealthAPI:
    """Integration tests for health endpoints."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    async def test_ready(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.json() == {"ready": True}

    async def test_live(self, client: AsyncClient):
        response = await client.get("/live")

        assert response.json() == {"alive": True}

    async def test_metrics(self, client: AsyncClient, created_job: dict):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "backlog_jobs_enqueued_total" in response.text
