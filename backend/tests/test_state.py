from __future__ import annotations

import time

import pytest

from conftest import scenario_a_input, static_input
from pocketreel.errors import JobConflictError, JobNotFoundError
from pocketreel.models import PendingOperation, SceneResult
from pocketreel.state import JobStore


def test_create_sets_initial_state(store):
    job = store.create(scenario_a_input(), user_id="user-7")

    loaded = store.get(job.job_id)
    assert loaded is not None
    assert loaded.status == "pending"
    assert loaded.version == 0
    assert loaded.attempt == 1
    assert loaded.user_id == "user-7"
    assert loaded.current_scene_index == 0
    assert loaded.completed_scenes == []
    assert loaded.pending_operation is None
    assert loaded.total_scenes == 3
    assert loaded.input.scenes[1].kind == "static_asset"


def test_get_unknown_job_returns_none(store):
    assert store.get("does-not-exist") is None


def test_compare_and_set_bumps_version_and_persists(store):
    job = store.create(static_input(2))
    record = SceneResult(
        scene_index=0,
        kind="static_asset",
        clip_url="https://a.example.com/0.jpg",
        audio_url="https://audio.example.com/0.mp3",
        duration_seconds=2.5,
        text="Scene number 0.",
    )

    updated = store.compare_and_set(
        job.job_id,
        job.version,
        {"status": "processing", "completed_scenes": [record], "current_scene_index": 1},
    )

    assert updated.version == job.version + 1
    reloaded = store.get(job.job_id)
    assert reloaded.version == updated.version
    assert reloaded.status == "processing"
    assert reloaded.completed_scenes == [record]
    assert reloaded.current_scene_index == 1


def test_compare_and_set_rejects_stale_version(store):
    job = store.create(static_input(1))
    store.compare_and_set(job.job_id, job.version, {"status": "processing"})

    with pytest.raises(JobConflictError):
        store.compare_and_set(job.job_id, job.version, {"progress_message": "late writer"})

    assert store.get(job.job_id).progress_message != "late writer"


def test_compare_and_set_refuses_terminal_jobs_unless_allowed(store):
    job = store.create(static_input(1))
    failed = store.compare_and_set(job.job_id, job.version, {"status": "failed", "error_message": "boom"})

    with pytest.raises(JobConflictError):
        store.compare_and_set(job.job_id, failed.version, {"result_video_url": "https://x.example.com/v.mp4"})

    resumed = store.compare_and_set(
        job.job_id,
        failed.version,
        {"status": "processing", "attempt": 2, "error_message": None},
        allow_terminal=True,
    )
    assert resumed.status == "processing"
    assert resumed.attempt == 2
    assert store.get(job.job_id).error_message is None


def test_compare_and_set_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        store.compare_and_set("missing", 0, {"status": "processing"})


def test_find_by_pending_handle(store):
    job = store.create(scenario_a_input())
    pending = PendingOperation(kind="render", scene_index=3, handle="project-abc", started_at=time.time())
    store.compare_and_set(job.job_id, job.version, {"status": "processing", "pending_operation": pending})

    found = store.find_by_pending_handle("project-abc")
    assert found is not None
    assert found.job_id == job.job_id
    assert found.pending_operation == pending
    assert store.find_by_pending_handle("project-other") is None
    assert store.find_by_pending_handle("") is None


def test_clearing_pending_operation_clears_handle_index(store):
    job = store.create(static_input(1))
    pending = PendingOperation(kind="narration", scene_index=0, handle="req-1", started_at=time.time())
    claimed = store.compare_and_set(job.job_id, job.version, {"pending_operation": pending})
    store.compare_and_set(job.job_id, claimed.version, {"pending_operation": None})

    assert store.find_by_pending_handle("req-1") is None


def test_list_stale_returns_only_active_jobs(store):
    active = store.create(static_input(1))
    finished = store.create(static_input(1))
    store.compare_and_set(finished.job_id, finished.version, {"status": "completed"})

    stale_ids = {job.job_id for job in store.list_stale(0)}

    assert active.job_id in stale_ids
    assert finished.job_id not in stale_ids
    assert store.list_stale(3600) == []


def test_list_recent_and_delete(store):
    first = store.create(static_input(1))
    second = store.create(static_input(2))

    recent_ids = [job.job_id for job in store.list_recent(limit=10)]
    assert set(recent_ids) == {first.job_id, second.job_id}

    assert store.delete_job(first.job_id) is True
    assert store.delete_job(first.job_id) is False
    assert store.get(first.job_id) is None


def test_store_survives_reopen(tmp_path):
    path = tmp_path / "reopen.db"
    job = JobStore(db_path=path).create(static_input(3))

    reopened = JobStore(db_path=path)
    loaded = reopened.get(job.job_id)
    assert loaded is not None
    assert loaded.input == job.input
