from __future__ import annotations

import asyncio
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from advisor.config import Settings
from advisor.routes.health import router as health_router
from advisor.routes.jobs import router as jobs_router
from advisor.services.runtime import build_runtime
from conftest import FakeBackendClient


def _app(client: FakeBackendClient, **overrides) -> FastAPI:
    values = {"DEFAULT_MODELS": "alpha,beta,gamma", "PERSIST_JOBS": False}
    values.update(overrides)
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.state.runtime = build_runtime(Settings(**values), client=client)
    return app


def _poll(http: TestClient, job_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = http.get(f"/api/jobs/{job_id}").json()
        if body["status"] == status:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"job stuck in {body['status']}")
        time.sleep(0.01)


@pytest.fixture()
def http():
    app = _app(FakeBackendClient(failing={"gamma": RuntimeError("gamma is down")}))
    with TestClient(app) as client:
        yield client


def test_submit_returns_immediately_and_job_completes(http: TestClient) -> None:
    resp = http.post("/api/jobs/query", json={"question": "Tabs or spaces?", "estimatedTotalMs": 9000})
    assert resp.status_code == 202
    body = resp.json()
    assert body["modelCount"] == 3
    assert body["estimatedTotalMs"] == 9000

    job = _poll(http, body["id"], "completed")
    assert job["progress"] == 100
    assert job["input"] == {"question": "Tabs or spaces?"}
    assert job["progressLog"][0]["message"] == "Starting query for 3 models..."

    result = http.get(f"/api/jobs/{body['id']}/result").json()
    assert result["succeeded"] == 2
    assert result["failed"] == 1
    assert "## GAMMA RESPONSE:" in result["response"]


def test_models_in_request_override_configured_list(http: TestClient) -> None:
    resp = http.post("/api/jobs/query", json={"question": "q", "models": ["delta", " "]})
    assert resp.json()["modelCount"] == 1
    _poll(http, resp.json()["id"], "completed")


def test_blank_question_is_rejected(http: TestClient) -> None:
    assert http.post("/api/jobs/query", json={"question": "   "}).status_code == 422
    assert http.post("/api/jobs/query", json={}).status_code == 422


def test_unknown_job_returns_404(http: TestClient) -> None:
    assert http.get("/api/jobs/nope").status_code == 404
    assert http.get("/api/jobs/nope/result").status_code == 404
    assert http.post("/api/jobs/nope/cancel").status_code == 404


def test_listing_and_stats(http: TestClient) -> None:
    job_id = http.post("/api/jobs/query", json={"question": "q"}).json()["id"]
    _poll(http, job_id, "completed")

    listing = http.get("/api/jobs", params={"status": "completed"}).json()
    assert [j["id"] for j in listing] == [job_id]
    assert listing[0]["progressUpdates"] > 0
    assert http.get("/api/jobs", params={"status": "failed"}).json() == []

    stats = http.get("/api/jobs/stats").json()
    assert stats["completed"] == 1
    assert stats["maxConcurrent"] == 2


def test_health_reports_queue(http: TestClient) -> None:
    body = http.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["backend"]["models"] == ["alpha", "beta", "gamma"]
    assert body["queue"]["total"] == 0


def test_cancel_pending_and_running_jobs() -> None:
    client = FakeBackendClient(gate=asyncio.Event())
    with TestClient(_app(client, MAX_CONCURRENT_JOBS=1)) as http:
        running = http.post("/api/jobs/query", json={"question": "first"}).json()["id"]
        pending = http.post("/api/jobs/query", json={"question": "second"}).json()["id"]
        _poll(http, running, "running")

        resp = http.post(f"/api/jobs/{pending}/cancel")
        assert resp.json() == {"id": pending, "status": "cancelled"}

        result = http.get(f"/api/jobs/{running}/result")
        assert result.status_code == 409

        assert http.post(f"/api/jobs/{running}/cancel").json()["status"] == "cancelled"
        deadline = time.monotonic() + 5
        while http.get("/api/jobs/stats").json()["running"]:
            assert time.monotonic() < deadline
            time.sleep(0.01)

        job = http.get(f"/api/jobs/{running}").json()
        assert job["status"] == "cancelled"
        assert job["result"] is None
        assert http.post(f"/api/jobs/{running}/cancel").json()["status"] == "cancelled"

    assert sorted(client.cancelled) == ["alpha", "beta", "gamma"]


def test_wait_for_completion_returns_result_inline() -> None:
    client = FakeBackendClient(failing={"gamma": RuntimeError("gamma is down")})
    with TestClient(_app(client, JOB_WAIT_POLL_SECONDS=0.01)) as http:
        resp = http.post("/api/jobs/query", json={"question": "q", "waitForCompletion": True})
        stored = http.get(f"/api/jobs/{resp.json()['id']}").json()

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["progress"] == 100
    assert body["result"]["succeeded"] == 2
    assert stored["input"] == {"question": "q"}


def test_wait_for_completion_gives_up_after_timeout() -> None:
    client = FakeBackendClient(gate=asyncio.Event())
    app = _app(client, JOB_WAIT_POLL_SECONDS=0.01, JOB_WAIT_TIMEOUT_SECONDS=0.05)
    with TestClient(app) as http:
        resp = http.post("/api/jobs/query", json={"question": "q", "waitForCompletion": True})
        assert resp.status_code == 202
        assert resp.json()["status"] == "running"
        assert resp.json()["result"] is None
        assert http.post(f"/api/jobs/{resp.json()['id']}/cancel").status_code == 200
        job = http.get(f"/api/jobs/{resp.json()['id']}").json()
        assert job["input"] == {"question": "q"}
