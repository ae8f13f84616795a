import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ambient_worker.auth_middleware import WorkerAuthMiddleware
from ambient_worker.pipeline import batch, composition, routes
from ambient_worker.pipeline.job_store import InMemoryJobStore
from ambient_worker.pipeline.models import GenerationSettings, JobStatus
from ambient_worker.pipeline.orchestrator import PipelineController
from tests.fakes import DummyAudio, make_collaborators


@pytest.fixture(autouse=True)
def no_waiting(monkeypatch):
    monkeypatch.setattr(batch, "RETRY_DELAY", 0)
    monkeypatch.setattr(composition, "CLIP_RETRY_DELAY", 0)
    monkeypatch.delenv("WORKER_SHARED_SECRET", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)


def _app(controller, enqueue=None):
    app = FastAPI()
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(routes.pipeline_router)
    routes.configure(controller, enqueue)
    return app


def test_run_then_status():
    controller = PipelineController(InMemoryJobStore(), make_collaborators())
    client = TestClient(_app(controller))

    resp = client.post("/pipeline/run", json={"brief": "forest rain", "settings": {"duration": "2min"}})
    assert resp.status_code == 200
    job_id = resp.json()["job_id"]
    assert resp.json()["status"] == "queued"

    # background task has run by the time TestClient returns
    status = client.get(f"/pipeline/status/{job_id}").json()
    assert status["status"] == "completed"
    assert status["completed_steps"] == [1, 2, 3, 4, 5, 6, 7]
    assert status["total_cost"] > 0


def test_run_uses_queue_when_configured():
    queued = []
    controller = PipelineController(InMemoryJobStore(), make_collaborators())
    client = TestClient(_app(controller, enqueue=lambda job_id, task_type: queued.append((job_id, task_type))))

    resp = client.post("/pipeline/run", json={"brief": "forest rain"})

    job_id = resp.json()["job_id"]
    assert queued == [(job_id, "pipeline_run")]
    assert client.get(f"/pipeline/status/{job_id}").json()["status"] == "queued"


def test_invalid_pacing_is_rejected():
    client = TestClient(_app(PipelineController(InMemoryJobStore(), make_collaborators())))

    resp = client.post("/pipeline/run", json={"brief": "forest rain", "settings": {"pacing": 140}})

    assert resp.status_code == 422


def test_unknown_job_status_is_404():
    client = TestClient(_app(PipelineController(InMemoryJobStore(), make_collaborators())))

    assert client.get("/pipeline/status/nope").status_code == 404
    assert client.post("/pipeline/nope/resume", json={}).status_code == 404


def test_resume_failed_job():
    audio = DummyAudio(fail_speech=True)
    controller = PipelineController(InMemoryJobStore(), make_collaborators(audio=audio))
    client = TestClient(_app(controller))

    resp = client.post("/pipeline/run", json={
        "brief": "forest rain",
        "settings": {"soundscape": {"voiceover_enabled": True, "voiceover_story": "rain", "voice_id": "v1"}},
    })
    job_id = resp.json()["job_id"]
    failed = client.get(f"/pipeline/status/{job_id}").json()
    assert failed["status"] == "failed"
    assert failed["failed_step"] == 5

    audio.fail_speech = False
    assert client.post(f"/pipeline/{job_id}/resume", json={}).status_code == 200

    status = client.get(f"/pipeline/status/{job_id}").json()
    assert status["status"] == "completed"
    assert "failed_step" not in status or status["failed_step"] is None

    assert client.post(f"/pipeline/{job_id}/resume", json={}).status_code == 409


def _stuck_job(controller):
    job = controller.create_job("forest rain", GenerationSettings())
    job.status = JobStatus.IN_PROGRESS
    controller.store.save_job(job)
    return job


def test_stale_in_progress_job_can_be_resumed():
    controller = PipelineController(InMemoryJobStore(), make_collaborators())
    client = TestClient(_app(controller))
    job = _stuck_job(controller)

    assert client.post(f"/pipeline/{job.id}/resume", json={}).status_code == 200
    assert client.get(f"/pipeline/status/{job.id}").json()["status"] == "completed"


def test_leased_in_progress_job_is_not_resumed():
    controller = PipelineController(
        InMemoryJobStore(), make_collaborators(), lease_held=lambda job_id: True,
    )
    client = TestClient(_app(controller))
    job = _stuck_job(controller)

    assert client.post(f"/pipeline/{job.id}/resume", json={}).status_code == 409
    assert client.get(f"/pipeline/status/{job.id}").json()["status"] == "in_progress"


def test_out_of_range_resume_step_is_rejected():
    controller = PipelineController(InMemoryJobStore(), make_collaborators())
    client = TestClient(_app(controller))
    job = controller.create_job("forest rain", GenerationSettings())

    assert client.post(f"/pipeline/{job.id}/resume", json={"resume_from_step": 9}).status_code == 422


def test_secret_is_enforced(monkeypatch):
    monkeypatch.setenv("WORKER_SHARED_SECRET", "s3cret")
    client = TestClient(_app(PipelineController(InMemoryJobStore(), make_collaborators())))

    assert client.get("/pipeline/status/nope").status_code == 401
    assert client.get("/pipeline/status/nope", headers={"X-Worker-Secret": "wrong"}).status_code == 401
    assert client.get("/pipeline/status/nope", headers={"X-Worker-Secret": "s3cret"}).status_code == 404


def test_missing_secret_outside_development(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    client = TestClient(_app(PipelineController(InMemoryJobStore(), make_collaborators())))

    assert client.get("/pipeline/status/nope").status_code == 500
