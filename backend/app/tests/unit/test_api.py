############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# test_api.py: Unit tests for the HTTP endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for the HTTP layer against a mocked orchestrator."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from backend.app.core.backends.models import BackendCapabilities
from backend.app.core.errors import (
    AuthorizationError,
    BackendUnavailableError,
    NotFoundError,
    StateError,
    ValidationError,
)
from backend.app.core.jobs.states import JobState
from backend.app.core.jobs.store import Job
from backend.app.core.schemas import JobStatus, MonitorStatus, QueueStats, ServerStatus
from backend.app.main import create_app

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
ALICE = {"X-User-Id": "alice"}
ADMIN = {"X-User-Id": "root", "X-User-Role": "admin"}


def _job(state=JobState.PENDING, **kwargs):
    return Job(
        id="job-1",
        user_id="alice",
        prompt="cat",
        state=state,
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


def _monitor_status(running=True):
    return MonitorStatus(
        running=running,
        active_loops=1 if running else 0,
        interval=5.0,
        ticks=3,
    )


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.enqueue = AsyncMock(return_value=_job())
    orch.store.pending_position = AsyncMock(return_value=1)
    orch.store.stats = AsyncMock(return_value={})
    orch.get_status = AsyncMock(
        return_value=JobStatus(
            job_id="job-1",
            state=JobState.PENDING,
            created_at=NOW,
            updated_at=NOW,
            position=1,
        )
    )
    orch.list_user_jobs = AsyncMock(return_value=[])
    orch.list_queue = AsyncMock(return_value=[])
    orch.list_stats = AsyncMock(
        return_value=QueueStats(pending=1, processing=2, completed_today=3, total=6)
    )
    orch.cancel = AsyncMock(return_value=_job(JobState.CANCELLED, error="cancelled by user"))
    orch.capabilities = AsyncMock(
        return_value=BackendCapabilities(loras=["style.safetensors"], samplers=["euler"])
    )
    orch.readiness = AsyncMock(return_value={"database": True, "backends": True})
    orch.server_status.return_value = ServerStatus(
        total=1,
        healthy=1,
        local={"total": 1, "healthy": 1},
        remote={"total": 0, "healthy": 0},
        backends=[],
    )
    orch.pool.stats.return_value = {"total": 1, "healthy": 1}
    orch.monitor.status.return_value = _monitor_status()
    orch.monitor.start = AsyncMock()
    orch.monitor.stop = AsyncMock()
    return orch


@pytest.fixture
def client(orchestrator):
    # No context manager: the lifespan (and real backends) never start
    return TestClient(create_app(orchestrator=orchestrator))


class TestGenerate:

    def test_requires_user(self, client, orchestrator):
        response = client.post("/api/generate", json={"prompt": "cat"})

        assert response.status_code == 401
        orchestrator.enqueue.assert_not_called()

    def test_accepted(self, client, orchestrator):
        response = client.post("/api/generate", json={"prompt": "cat"}, headers=ALICE)

        assert response.status_code == 202
        data = response.json()
        assert data["job_id"] == "job-1"
        assert data["state"] == "pending"
        assert data["position"] == 1
        orchestrator.enqueue.assert_awaited_once_with("alice", "cat")

    def test_workflow_object_passed_through(self, client, orchestrator):
        workflow = {"3": {"class_type": "KSampler", "inputs": {"seed": 1}}}
        client.post("/api/generate", json={"prompt": workflow}, headers=ALICE)

        orchestrator.enqueue.assert_awaited_once_with("alice", workflow)

    def test_missing_prompt_rejected_by_schema(self, client):
        response = client.post("/api/generate", json={}, headers=ALICE)
        assert response.status_code == 422

    def test_validation_error_is_400(self, client, orchestrator):
        orchestrator.enqueue.side_effect = ValidationError("Maximum 2 active jobs per user.")

        response = client.post("/api/generate", json={"prompt": "cat"}, headers=ALICE)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["type"] == "validation_error"
        assert "Maximum 2 active jobs" in error["message"]

    def test_request_id_echoed(self, client):
        response = client.post(
            "/api/generate",
            json={"prompt": "cat"},
            headers={**ALICE, "X-Request-ID": "req-42"},
        )
        assert response.headers["x-request-id"] == "req-42"


class TestJobStatus:

    def test_status(self, client):
        response = client.get("/api/generate/status/job-1")

        assert response.status_code == 200
        assert response.json()["position"] == 1

    def test_unknown_job_is_404(self, client, orchestrator):
        orchestrator.get_status.side_effect = NotFoundError("Job nope not found")

        response = client.get("/api/generate/status/nope")

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "not_found"

    def test_user_jobs(self, client, orchestrator):
        response = client.get("/api/user/jobs?limit=10", headers=ALICE)

        assert response.status_code == 200
        assert response.json() == []
        orchestrator.list_user_jobs.assert_awaited_once_with("alice", limit=10)

    def test_user_jobs_limit_bounds(self, client):
        assert client.get("/api/user/jobs?limit=0", headers=ALICE).status_code == 422
        assert client.get("/api/user/jobs?limit=501", headers=ALICE).status_code == 422


class TestCancel:

    def test_owner_cancel(self, client, orchestrator):
        response = client.delete("/api/queue/job-1", headers=ALICE)

        assert response.status_code == 200
        assert response.json()["state"] == "cancelled"
        orchestrator.cancel.assert_awaited_once_with("job-1", "alice", is_admin=False)

    def test_admin_cancel(self, client, orchestrator):
        client.delete("/api/queue/job-1", headers=ADMIN)
        orchestrator.cancel.assert_awaited_once_with("job-1", "root", is_admin=True)

    def test_not_owner_is_403(self, client, orchestrator):
        orchestrator.cancel.side_effect = AuthorizationError("You can only cancel your own jobs")

        response = client.delete("/api/queue/job-1", headers={"X-User-Id": "mallory"})
        assert response.status_code == 403

    def test_terminal_job_is_409(self, client, orchestrator):
        orchestrator.cancel.side_effect = StateError("Cannot cancel a completed job")

        response = client.delete("/api/queue/job-1", headers=ALICE)

        assert response.status_code == 409
        assert response.json()["error"]["type"] == "state_error"


class TestQueue:

    def test_stats(self, client):
        response = client.get("/api/queue/stats")

        assert response.status_code == 200
        assert response.json() == {
            "pending": 1,
            "processing": 2,
            "completed_today": 3,
            "total": 6,
        }

    def test_list(self, client):
        assert client.get("/api/queue").json() == []

    def test_monitor_status(self, client):
        data = client.get("/api/queue/monitor").json()
        assert data["running"] is True
        assert data["active_loops"] == 1

    def test_monitor_control_requires_admin(self, client, orchestrator):
        response = client.post("/api/queue/monitor", json={"action": "stop"}, headers=ALICE)

        assert response.status_code == 403
        orchestrator.monitor.stop.assert_not_called()

    def test_monitor_stop_and_start(self, client, orchestrator):
        response = client.post("/api/queue/monitor", json={"action": "stop"}, headers=ADMIN)
        assert response.status_code == 200
        orchestrator.monitor.stop.assert_awaited_once()

        client.post("/api/queue/monitor", json={"action": "start"}, headers=ADMIN)
        orchestrator.monitor.start.assert_awaited_once()

    def test_monitor_rejects_unknown_action(self, client):
        response = client.post("/api/queue/monitor", json={"action": "pause"}, headers=ADMIN)
        assert response.status_code == 422


class TestBackendEndpoints:

    def test_status(self, client):
        data = client.get("/api/comfyui/status").json()
        assert data["healthy"] == 1
        assert data["local"] == {"total": 1, "healthy": 1}

    def test_loras_and_samplers(self, client):
        assert client.get("/api/comfyui/loras").json() == {"loras": ["style.safetensors"]}
        assert client.get("/api/comfyui/samplers").json() == {"samplers": ["euler"]}

    def test_models(self, client):
        data = client.get("/api/comfyui/models").json()
        assert set(data) == {
            "diffusion_models",
            "text_encoders",
            "vaes",
            "upscale_models",
            "clip_visions",
        }

    def test_no_backend_is_503(self, client, orchestrator):
        orchestrator.capabilities.side_effect = BackendUnavailableError(
            "No healthy backend available"
        )

        response = client.get("/api/comfyui/loras")

        assert response.status_code == 503
        assert response.json()["error"]["type"] == "backend_unavailable"


class TestHealth:

    def test_liveness(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_ready(self, client):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready(self, client, orchestrator):
        orchestrator.readiness.return_value = {"database": True, "backends": False}

        response = client.get("/readyz")

        assert response.status_code == 503
        assert response.json()["checks"]["backends"] is False

    def test_metrics(self, client, orchestrator):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "genrouter_jobs_enqueued_total" in response.text
        orchestrator.store.stats.assert_awaited_once()

    def test_service_status(self, client):
        data = client.get("/status").json()

        assert data["backends"] == {"total": 1, "healthy": 1}
        assert data["queue"]["pending"] == 1
        assert data["monitor"]["running"] is True

    def test_missing_orchestrator_is_503(self):
        client = TestClient(create_app())
        assert client.get("/api/queue/stats").status_code == 503
