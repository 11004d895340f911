from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import project_path, settings
from .errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from .logging_setup import setup_logging, tail_log
from .models import (
    AdvanceRequest,
    AdvanceResponse,
    CreateJobRequest,
    CreateJobResponse,
    JobInput,
    JobProgress,
    WebhookAck,
)
from .services.credit_service import credit_ledger
from .services.driver import JobDriver
from .services.pipeline import ScenePipeline, StepResult
from .services.progress import report
from .state import job_store


setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

project_path(settings.temp_dir).mkdir(parents=True, exist_ok=True)

driver = JobDriver(
    store=job_store,
    pipeline=ScenePipeline.from_settings(job_store, use_callbacks=settings.driver_mode == "chunked"),
    ledger=credit_ledger,
)


def _advance_response(job_id: str, outcome: StepResult) -> AdvanceResponse:
    job = outcome.job or job_store.get(job_id)
    return AdvanceResponse(
        job_id=job_id,
        state=outcome.state,
        status=job.status if job else "unknown",
        message=outcome.message,
        current_scene_index=job.current_scene_index if job else 0,
        total_scenes=job.total_scenes if job else 0,
    )


def _webhook_ack(outcome: StepResult) -> WebhookAck:
    matched = outcome.job is not None and outcome.state not in {"conflict", "terminal"}
    return WebhookAck(
        received=True,
        matched=matched,
        job_id=outcome.job.job_id if outcome.job else None,
        message=outcome.message,
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": str(error.get("type", ""))}
        for error in exc.errors()
    ]


@app.on_event("startup")
async def _resume_stale_jobs_on_startup() -> None:
    resumed = await driver.resume_stale_jobs()
    if resumed:
        logger.info("Resumed stale jobs: %s", ", ".join(resumed))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info("Rejected invalid request on %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "internal error"})


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "env": settings.app_env, "driver_mode": driver.mode}


@app.get("/api/logs/tail")
async def tail_logs(lines: int = 200) -> dict:
    return {"lines": tail_log(lines)}


@app.post("/api/jobs", response_model=CreateJobResponse, status_code=201)
async def create_video_job(payload: CreateJobRequest) -> CreateJobResponse:
    job_input = JobInput.model_validate(payload.model_dump(exclude={"user_id"}))
    job = driver.create_job(job_input, user_id=payload.user_id)
    await driver.start(job.job_id)
    return CreateJobResponse(job_id=job.job_id, status=job.status)


@app.get("/api/jobs")
async def list_jobs(limit: int = 100) -> dict:
    jobs = job_store.list_recent(limit=limit)
    return {"jobs": [report(job).model_dump() for job in jobs]}


@app.post("/api/jobs/sweep")
async def sweep_stale_jobs() -> dict:
    resumed = await driver.resume_stale_jobs()
    return {"resumed": resumed, "count": len(resumed)}


@app.get("/api/jobs/{job_id}", response_model=JobProgress)
async def get_job_status(job_id: str) -> JobProgress:
    job = job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return report(job)


@app.post("/api/jobs/{job_id}/advance", response_model=AdvanceResponse)
async def advance_job(job_id: str, payload: AdvanceRequest | None = None) -> AdvanceResponse:
    if payload and payload.job_id and payload.job_id != job_id:
        raise HTTPException(status_code=400, detail="jobId does not match the path")
    try:
        outcome = await driver.advance(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    return _advance_response(job_id, outcome)


@app.post("/api/jobs/{job_id}/retry", response_model=JobProgress)
async def retry_job(job_id: str) -> JobProgress:
    try:
        job = await driver.retry(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    except (InvalidJobStateError, JobConflictError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return report(job)


@app.post("/api/jobs/{job_id}/restart", response_model=CreateJobResponse, status_code=201)
async def restart_job(job_id: str) -> CreateJobResponse:
    try:
        job = await driver.restart(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    return CreateJobResponse(job_id=job.job_id, status=job.status)


async def _read_webhook_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook on %s with a non-JSON body", request.url.path)
        return {}
    return body if isinstance(body, dict) else {}


@app.post("/api/webhooks/talking-head", response_model=WebhookAck)
async def talking_head_webhook(request: Request) -> WebhookAck:
    body = await _read_webhook_body(request)
    outcome = await driver.on_talking_head_callback(body)
    if outcome.job is None or outcome.state in {"conflict", "terminal"}:
        logger.warning("Talking-head webhook did not match a waiting job: %s", outcome.message)
    return _webhook_ack(outcome)


@app.post("/api/webhooks/render-complete", response_model=WebhookAck)
async def render_complete_webhook(request: Request) -> WebhookAck:
    body = await _read_webhook_body(request)
    outcome = await driver.on_render_callback(body)
    if outcome.job is None or outcome.state in {"conflict", "terminal"}:
        logger.warning("Render webhook did not match a waiting job: %s", outcome.message)
    return _webhook_ack(outcome)
