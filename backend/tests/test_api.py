from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import IDENTITY_URL, make_fakes, make_pipeline
from pocketreel import logging_setup, main
from pocketreel.services.credit_service import CreditLedger
from pocketreel.services.driver import JobDriver
from pocketreel.state import job_store


class TriggerRecorder:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def __call__(self, job_id: str, delay: float = 0.0) -> None:
        self.calls.append(job_id)


@pytest.fixture()
def api(monkeypatch, tmp_path):
    fakes = make_fakes()
    recorder = TriggerRecorder()
    driver = JobDriver(
        store=job_store,
        pipeline=make_pipeline(job_store, fakes),
        ledger=CreditLedger(db_path=tmp_path / "credits.db"),
        mode="chunked",
        inline_poll_budget_seconds=0.0,
        poll_interval_seconds=0.0,
        public_base_url="",
        trigger=recorder,
    )
    monkeypatch.setattr(main, "driver", driver)
    client = TestClient(main.app)
    return client, driver, fakes, recorder


def _job_body(**overrides) -> dict:
    body = {
        "scenes": [
            {"kind": "talking_head", "text": "Welcome to the channel."},
            {"kind": "static_asset", "text": "Here is the product up close.", "asset_url": "https://a.example.com/p.jpg"},
        ],
        "voice_id": "Wise_Woman",
        "identity_image_url": IDENTITY_URL,
        "enable_captions": True,
        "enable_background_music": False,
    }
    body.update(overrides)
    return body


def test_health(api):
    client, *_ = api

    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_job_returns_pending_and_triggers_driver(api):
    client, _, _, recorder = api

    response = client.post("/api/jobs", json=_job_body())

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert recorder.calls == [data["job_id"]]
    assert job_store.get(data["job_id"]) is not None


@pytest.mark.parametrize(
    "body",
    [
        _job_body(identity_image_url=None),
        _job_body(voice_id=""),
        _job_body(voice_id="   "),
        _job_body(scenes=[{"kind": "talking_head", "text": "  "}]),
        _job_body(scenes=[{"kind": "static_asset", "text": "\t\n", "asset_url": "https://a.example.com/p.jpg"}]),
        _job_body(scenes=[]),
        _job_body(scenes=[{"kind": "cartoon", "text": "Unknown kind"}]),
        {"voice_id": "Wise_Woman"},
    ],
)
def test_create_job_rejects_invalid_input(api, body):
    client, _, _, recorder = api
    before = len(job_store.list_recent(limit=500))

    response = client.post("/api/jobs", json=body)

    assert response.status_code == 400
    assert "detail" in response.json()
    assert recorder.calls == []
    assert len(job_store.list_recent(limit=500)) == before


def test_get_unknown_job_is_404(api):
    client, *_ = api

    assert client.get("/api/jobs/not-a-job").status_code == 404


def test_advance_endpoint_runs_one_chunk(api):
    client, _, _, recorder = api
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]

    response = client.post(f"/api/jobs/{job_id}/advance", json={"jobId": job_id})

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "scene_complete"
    assert data["status"] == "processing"
    assert data["current_scene_index"] == 1
    assert data["total_scenes"] == 2

    status = client.get(f"/api/jobs/{job_id}").json()
    assert status["completed_count"] == 1
    assert status["progress_percent"] == 45
    assert status["is_composing"] is False


def test_advance_endpoint_validates_job(api):
    client, *_ = api
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]

    assert client.post(f"/api/jobs/{job_id}/advance", json={"jobId": "other"}).status_code == 400
    assert client.post("/api/jobs/missing/advance").status_code == 404


def test_advance_on_completed_job_is_safe_to_repeat(api):
    client, *_ = api
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]
    for _ in range(4):
        client.post(f"/api/jobs/{job_id}/advance")
    completed = client.get(f"/api/jobs/{job_id}").json()
    assert completed["status"] == "completed"

    again = client.post(f"/api/jobs/{job_id}/advance")

    assert again.status_code == 200
    assert again.json()["state"] == "terminal"
    assert client.get(f"/api/jobs/{job_id}").json() == completed


def test_retry_requires_failed_job(api):
    client, *_ = api
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]

    assert client.post(f"/api/jobs/{job_id}/retry").status_code == 409
    assert client.post("/api/jobs/missing/retry").status_code == 404


def test_retry_failed_job_resumes(api):
    client, _, fakes, recorder = api
    fakes.narration.reject = lambda request: "voice not found"
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]
    client.post(f"/api/jobs/{job_id}/advance")
    assert client.get(f"/api/jobs/{job_id}").json()["status"] == "failed"

    fakes.narration.reject = None
    response = client.post(f"/api/jobs/{job_id}/retry")

    assert response.status_code == 200
    assert response.json()["status"] == "processing"
    assert response.json()["error_message"] is None
    assert recorder.calls[-1] == job_id


def test_restart_creates_a_new_job(api):
    client, *_ = api
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]

    response = client.post(f"/api/jobs/{job_id}/restart")

    assert response.status_code == 201
    assert response.json()["job_id"] != job_id
    assert client.post("/api/jobs/missing/restart").status_code == 404


def test_list_jobs(api):
    client, *_ = api
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]

    jobs = client.get("/api/jobs").json()["jobs"]

    assert job_id in {item["job_id"] for item in jobs}


def test_webhooks_always_acknowledge(api):
    client, *_ = api

    unknown = client.post("/api/webhooks/render-complete", json={"id": "nope", "url": "https://x.example.com/v.mp4"})
    malformed = client.post(
        "/api/webhooks/talking-head",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert unknown.status_code == 200
    assert unknown.json()["matched"] is False
    assert malformed.status_code == 200
    assert malformed.json()["matched"] is False


def test_render_webhook_delivered_twice_completes_once(api):
    client, driver, fakes, _ = api
    fakes.render.pending_polls = 10**6
    driver.pipeline.callback_base = "https://hooks.example.com"
    job_id = client.post("/api/jobs", json=_job_body()).json()["job_id"]
    for _ in range(4):
        client.post(f"/api/jobs/{job_id}/advance")
    handle = job_store.get(job_id).pending_operation.handle
    payload = {"id": handle, "url": "https://render.example.com/final.mp4"}

    first = client.post("/api/webhooks/render-complete", json=payload)
    version_after_first = job_store.get(job_id).version
    second = client.post("/api/webhooks/render-complete", json=payload)

    assert first.status_code == 200
    assert first.json()["matched"] is True
    assert second.status_code == 200
    assert second.json()["matched"] is False
    job = job_store.get(job_id)
    assert job.status == "completed"
    assert job.result_video_url == "https://render.example.com/final.mp4"
    assert job.version == version_after_first


def test_log_tail_returns_last_lines(api, monkeypatch, tmp_path):
    client, *_ = api
    log_file = tmp_path / "pipeline.log"
    log_file.write_text("\n".join(f"line {index}" for index in range(10)), encoding="utf-8")
    monkeypatch.setattr(logging_setup, "log_file_path", lambda: log_file)

    response = client.get("/api/logs/tail", params={"lines": 3})

    assert response.status_code == 200
    assert response.json() == {"lines": ["line 7", "line 8", "line 9"]}
