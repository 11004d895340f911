from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any
from uuid import uuid4

from .config import project_path, settings
from .errors import JobConflictError, JobNotFoundError
from .models import Job, JobInput, PendingOperation, SceneResult, TERMINAL_STATES


logger = logging.getLogger(__name__)

_JOB_COLUMNS = """
    job_id, user_id, status, version, attempt, input_json,
    current_scene_index, completed_scenes_json, pending_json, pending_handle,
    progress_percent, progress_message,
    result_video_url, result_duration, error_message,
    created_at, updated_at
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobStore:
    db_path: Path = field(default_factory=lambda: project_path(settings.jobs_db_path))
    lock: Lock = field(default_factory=Lock)

    def __post_init__(self) -> None:
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self.lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS video_jobs (
                        job_id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL DEFAULT 'anonymous',
                        status TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 0,
                        attempt INTEGER NOT NULL DEFAULT 1,
                        input_json TEXT NOT NULL,
                        current_scene_index INTEGER NOT NULL DEFAULT 0,
                        completed_scenes_json TEXT NOT NULL DEFAULT '[]',
                        pending_json TEXT,
                        pending_handle TEXT,
                        progress_percent INTEGER NOT NULL DEFAULT 0,
                        progress_message TEXT NOT NULL DEFAULT '',
                        result_video_url TEXT,
                        result_duration REAL,
                        error_message TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_video_jobs_status ON video_jobs(status)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_video_jobs_pending_handle ON video_jobs(pending_handle)")
                conn.commit()

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        pending: PendingOperation | None = None
        if row["pending_json"]:
            pending = PendingOperation.model_validate_json(str(row["pending_json"]))
        scenes = [SceneResult.model_validate(item) for item in json.loads(str(row["completed_scenes_json"] or "[]"))]
        return Job(
            job_id=str(row["job_id"]),
            user_id=str(row["user_id"] or "anonymous"),
            status=str(row["status"]),
            version=int(row["version"] or 0),
            attempt=int(row["attempt"] or 1),
            input=JobInput.model_validate_json(str(row["input_json"])),
            current_scene_index=max(0, int(row["current_scene_index"] or 0)),
            completed_scenes=scenes,
            pending_operation=pending,
            progress_percent=int(row["progress_percent"] or 0),
            progress_message=str(row["progress_message"] or ""),
            result_video_url=str(row["result_video_url"]) if row["result_video_url"] else None,
            result_duration=float(row["result_duration"]) if row["result_duration"] is not None else None,
            error_message=str(row["error_message"]) if row["error_message"] else None,
            created_at=str(row["created_at"]) if row["created_at"] else None,
            updated_at=str(row["updated_at"]) if row["updated_at"] else None,
        )

    def _job_params(self, job: Job) -> dict[str, Any]:
        pending = job.pending_operation
        return {
            "job_id": job.job_id,
            "user_id": job.user_id,
            "status": job.status,
            "version": job.version,
            "attempt": job.attempt,
            "input_json": job.input.model_dump_json(),
            "current_scene_index": job.current_scene_index,
            "completed_scenes_json": json.dumps(
                [scene.model_dump(mode="json") for scene in job.completed_scenes], ensure_ascii=False
            ),
            "pending_json": pending.model_dump_json() if pending else None,
            "pending_handle": pending.handle if pending else None,
            "progress_percent": int(job.progress_percent),
            "progress_message": job.progress_message or "",
            "result_video_url": job.result_video_url,
            "result_duration": job.result_duration,
            "error_message": job.error_message,
            "created_at": job.created_at,
            "updated_at": job.updated_at,
        }

    def create(self, payload: JobInput, user_id: str = "anonymous") -> Job:
        now = _now_iso()
        job = Job(
            job_id=uuid4().hex,
            user_id=user_id or "anonymous",
            status="pending",
            input=JobInput.model_validate(payload.model_dump(mode="json")),
            progress_percent=0,
            progress_message="Job created, starting processing...",
            created_at=now,
            updated_at=now,
        )
        with self.lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO video_jobs ({_JOB_COLUMNS})
                    VALUES (
                        :job_id, :user_id, :status, :version, :attempt, :input_json,
                        :current_scene_index, :completed_scenes_json, :pending_json, :pending_handle,
                        :progress_percent, :progress_message,
                        :result_video_url, :result_duration, :error_message,
                        :created_at, :updated_at
                    )
                    """,
                    self._job_params(job),
                )
                conn.commit()
        return job

    def get(self, job_id: str) -> Job | None:
        with self.lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM video_jobs WHERE job_id = ?",
                    (job_id,),
                ).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def compare_and_set(
        self,
        job_id: str,
        expected_version: int,
        changes: dict[str, Any],
        allow_terminal: bool = False,
    ) -> Job:
        """Apply ``changes`` only if the stored job is still at ``expected_version``.

        Terminal jobs are never written unless ``allow_terminal`` is set, so a
        late driver or callback cannot overwrite a finished result.
        """
        with self.lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM video_jobs WHERE job_id = ?",
                    (job_id,),
                ).fetchone()
                if not row:
                    raise JobNotFoundError(job_id)
                current = self._row_to_job(row)
                if current.version != expected_version:
                    raise JobConflictError(
                        f"job {job_id} is at version {current.version}, expected {expected_version}"
                    )
                if current.status in TERMINAL_STATES and not allow_terminal:
                    raise JobConflictError(f"job {job_id} is already {current.status}")

                updated = current.model_copy(
                    update={**changes, "version": current.version + 1, "updated_at": _now_iso()}
                )
                params = self._job_params(updated)
                params["expected_version"] = expected_version
                cursor = conn.execute(
                    """
                    UPDATE video_jobs SET
                        status = :status,
                        version = :version,
                        attempt = :attempt,
                        current_scene_index = :current_scene_index,
                        completed_scenes_json = :completed_scenes_json,
                        pending_json = :pending_json,
                        pending_handle = :pending_handle,
                        progress_percent = :progress_percent,
                        progress_message = :progress_message,
                        result_video_url = :result_video_url,
                        result_duration = :result_duration,
                        error_message = :error_message,
                        updated_at = :updated_at
                    WHERE job_id = :job_id AND version = :expected_version
                    """,
                    params,
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    raise JobConflictError(f"job {job_id} changed while writing")
                conn.commit()
        return updated

    def find_by_pending_handle(self, handle: str) -> Job | None:
        if not handle:
            return None
        with self.lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM video_jobs
                    WHERE pending_handle = ?
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """,
                    (handle,),
                ).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def list_recent(self, limit: int = 100) -> list[Job]:
        safe_limit = max(1, min(int(limit or 100), 500))
        with self.lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM video_jobs
                    ORDER BY created_at DESC, updated_at DESC
                    LIMIT ?
                    """,
                    (safe_limit,),
                ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_stale(self, older_than_seconds: float) -> list[Job]:
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max(0.0, older_than_seconds))).isoformat()
        with self.lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM video_jobs
                    WHERE status IN ('pending', 'processing') AND updated_at <= ?
                    ORDER BY updated_at ASC
                    """,
                    (cutoff,),
                ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def delete_job(self, job_id: str) -> bool:
        with self.lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM video_jobs WHERE job_id = ?", (job_id,))
                conn.commit()
                return cursor.rowcount > 0


job_store = JobStore()
