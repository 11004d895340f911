from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Literal

from pydantic import BaseModel

from ..config import project_path, settings
from ..models import Job, JobInput


logger = logging.getLogger(__name__)

CreditEventKind = Literal["charge", "capture", "refund"]

TALKING_HEAD_SCENE_COST = 100
STATIC_SCENE_COST = 30
RENDER_COST = 80


class CreditEvent(BaseModel):
    job_id: str
    user_id: str
    attempt: int
    event: CreditEventKind
    amount: int
    created_at: str


def estimate_cost(payload: JobInput, from_scene: int = 0) -> int:
    remaining = payload.scenes[max(0, from_scene) :]
    scene_cost = sum(
        TALKING_HEAD_SCENE_COST if scene.kind == "talking_head" else STATIC_SCENE_COST for scene in remaining
    )
    return scene_cost + RENDER_COST


@dataclass
class CreditLedger:
    """Records charge, capture and refund events; balances are owned elsewhere."""

    db_path: Path = field(default_factory=lambda: project_path(settings.jobs_db_path))
    lock: Lock = field(default_factory=Lock)

    def __post_init__(self) -> None:
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _init_db(self) -> None:
        with self.lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS credit_events (
                        job_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        attempt INTEGER NOT NULL,
                        event TEXT NOT NULL,
                        amount INTEGER NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (job_id, attempt, event)
                    )
                    """
                )
                conn.commit()

    def _record(self, job: Job, event: CreditEventKind, amount: int) -> bool:
        with self.lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO credit_events (job_id, user_id, attempt, event, amount, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (job.job_id, job.user_id, job.attempt, event, amount, datetime.now(timezone.utc).isoformat()),
                )
                conn.commit()
                recorded = cursor.rowcount == 1
        if recorded:
            logger.info(
                "Credit %s: job=%s user=%s attempt=%s amount=%s",
                event,
                job.job_id,
                job.user_id,
                job.attempt,
                amount,
            )
        return recorded

    def _charged_amount(self, job: Job) -> int:
        with self.lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT amount FROM credit_events WHERE job_id = ? AND attempt = ? AND event = 'charge'",
                    (job.job_id, job.attempt),
                ).fetchone()
        return int(row["amount"]) if row else 0

    def charge(self, job: Job) -> bool:
        return self._record(job, "charge", estimate_cost(job.input, from_scene=job.current_scene_index))

    def settle(self, job: Job) -> bool:
        if job.status == "completed":
            return self._record(job, "capture", self._charged_amount(job))
        if job.status == "failed":
            return self._record(job, "refund", self._charged_amount(job))
        return False

    def events(self, job_id: str) -> list[CreditEvent]:
        with self.lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT job_id, user_id, attempt, event, amount, created_at
                    FROM credit_events
                    WHERE job_id = ?
                    ORDER BY attempt ASC, created_at ASC
                    """,
                    (job_id,),
                ).fetchall()
        return [CreditEvent(**dict(row)) for row in rows]


credit_ledger = CreditLedger()
