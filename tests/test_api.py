"""
Control surface tests: health, status, start/stop semantics and job intake.
"""

import asyncio
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from core.models import RunStats


class StubScheduler:
    """Scheduler double exposing the surface the API uses."""

    def __init__(self):
        self.running = False
        self.started_at = None
        self.stats = RunStats()
        self.shutdown_called = False

    async def start(self):
        self.running = True
        self.started_at = datetime.now()

    async def stop(self):
        self.running = False

    async def shutdown(self):
        self.shutdown_called = True
        await self.stop()

    def status(self):
        return {
            "running": self.running,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "currentJob": None,
            "stats": self.stats.to_dict(),
        }


@pytest.fixture
def stub_scheduler():
    return StubScheduler()


@pytest.fixture
def client(temp_db, stub_scheduler):
    from api.main import app

    app.state.scheduler = stub_scheduler
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.state.scheduler = None


class TestHealthAndStatus:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status_includes_job_counts(self, client):
        client.post("/api/jobs", json={"target_reference": "https://maps.example/a"})

        body = client.get("/api/status").json()

        assert body["running"] is False
        assert body["stats"]["totalProcessed"] == 0
        assert body["jobs"]["pending"] == 1


class TestStartStop:

    def test_start_then_start_again(self, client, stub_scheduler):
        response = client.post("/api/start")
        assert response.status_code == 200
        assert response.json()["isRunning"] is True
        assert response.json()["startedAt"]

        again = client.post("/api/start")
        assert again.status_code == 400
        assert "already running" in again.json()["detail"]

    def test_stop_when_not_running(self, client):
        response = client.post("/api/stop")
        assert response.status_code == 400
        assert "not running" in response.json()["detail"]

    def test_stop_after_start(self, client, stub_scheduler):
        client.post("/api/start")

        response = client.post("/api/stop")

        assert response.status_code == 200
        assert response.json()["isRunning"] is False
        assert "stoppedAt" in response.json()
        assert not stub_scheduler.running

    def test_shutdown_on_app_exit(self, temp_db, stub_scheduler):
        from api.main import app

        app.state.scheduler = stub_scheduler
        try:
            with TestClient(app):
                pass
        finally:
            app.state.scheduler = None
        assert stub_scheduler.shutdown_called


class TestJobs:

    def test_enqueue_and_fetch(self, client):
        response = client.post("/api/jobs", json={
            "target_reference": "https://www.google.com/maps/place/Cafe+Rosa",
            "action_parameter": "Spam",
            "label": "Cafe Rosa",
        })
        assert response.status_code == 201
        job = response.json()
        assert job["status"] == "pending"
        assert job["label"] == "Cafe Rosa"

        fetched = client.get(f"/api/jobs/{job['id']}").json()
        assert fetched["action_parameter"] == "Spam"

        listed = client.get("/api/jobs", params={"status": "pending"}).json()["jobs"]
        assert [j["id"] for j in listed] == [job["id"]]

    def test_enqueue_requires_reference(self, client):
        assert client.post("/api/jobs", json={"target_reference": ""}).status_code == 422

    def test_unknown_status_filter(self, client):
        assert client.get("/api/jobs", params={"status": "done"}).status_code == 400

    def test_missing_job(self, client):
        assert client.get("/api/jobs/nope").status_code == 404

    def test_audit_trail(self, client, temp_db):
        job = client.post("/api/jobs", json={"target_reference": "https://maps.example/a"}).json()
        asyncio.run(temp_db.insert_audit_record(job["id"], "failed", error_message="[lease] No active accounts available"))

        records = client.get(f"/api/jobs/{job['id']}/audit").json()["records"]

        assert [r["status"] for r in records] == ["failed"]
        assert client.get("/api/jobs/nope/audit").status_code == 404
