import sys
import asyncio
from datetime import datetime, timedelta, UTC
from typing import Optional

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from . import database
from .config import (
    LOG_DIR,
    LOG_LEVEL,
    BASE_LANGUAGE,
    RESUME_SWEEP_ENABLED,
    RESUME_SWEEP_INTERVAL_SECONDS,
    STALE_JOB_SECONDS,
)
from .metrics import REGISTRY
from .models.languages import normalize_language_code
from .models.models import JobMode, JobStatus, JobType, Language, TranslationJob, TERMINAL_STATUSES
from .schemas import (
    AutoTranslateRequest,
    AutoTranslateResponse,
    BackgroundTranslateRequest,
    BackgroundTranslateResponse,
    CreateJobRequest,
    DeleteJobsRequest,
    JobListResponse,
    JobStatusResponse,
)
from .utils import progress_percent
from .worker.supervisor import JobSupervisor


app = FastAPI(title="Background Translation API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | job={extra[job_id]} | "
    "{name}:{function}:{line} - {message}"
)
logger.remove()
logger.configure(extra={"job_id": "-"})
logger.add(sys.stderr, level=LOG_LEVEL, format=LOG_FORMAT)
logger.add(
    (LOG_DIR / "service.log").as_posix(),
    rotation="10 MB",
    retention=10,
    level=LOG_LEVEL,
    format=LOG_FORMAT,
)

# Init database
database.Base.metadata.create_all(bind=database.engine)

supervisor = JobSupervisor()
_sweep_task: Optional[asyncio.Task] = None

# auto-translate content types -> job type
CONTENT_JOB_TYPES = {
    "training_module": JobType.training,
    "training_lesson": JobType.training,
    "knowledge_resource": JobType.knowledge,
    "healthy_knowledge": JobType.healthy_knowledge,
}


def _job_response(job: TranslationJob) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.id,
        job_type=job.job_type.value,
        source_language=job.source_language,
        target_language=job.target_language,
        mode=job.mode.value,
        scope_id=job.scope_id,
        status=job.status.value,
        total_keys=job.total_keys,
        processed_keys=job.processed_keys,
        errors=job.errors,
        progress=progress_percent(job.processed_keys, job.total_keys),
        error_message=job.error_message,
        created_by=job.created_by,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


def _validated_language(code: Optional[str], field: str) -> str:
    canonical = normalize_language_code(code or "")
    if not canonical:
        raise HTTPException(status_code=400, detail=f"Invalid language code '{code}' for {field}")
    return canonical


@app.on_event("startup")
async def on_startup():
    global _sweep_task
    if RESUME_SWEEP_ENABLED:
        _sweep_task = asyncio.create_task(
            supervisor.sweep_loop(RESUME_SWEEP_INTERVAL_SECONDS, STALE_JOB_SECONDS)
        )

@app.on_event("shutdown")
async def on_shutdown():
    global _sweep_task
    if _sweep_task is not None:
        _sweep_task.cancel()
        _sweep_task = None
    await supervisor.shutdown()

@app.get("/healthz")
def healthz():
    return {"status": "ok"}

@app.get("/metrics")
def metrics():
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

@app.get("/metrics/json")
def metrics_json():
    """Return job counts in a JSON-friendly shape for the admin dashboard."""
    session = database.SessionLocal()
    try:
        total = session.query(TranslationJob).count()
        by_status = {
            status.value: session.query(TranslationJob).filter(TranslationJob.status == status).count()
            for status in JobStatus
        }
        five_minutes_ago = datetime.now(UTC) - timedelta(minutes=5)
        recent_completed_5m = (
            session.query(TranslationJob)
            .filter(
                TranslationJob.status == JobStatus.completed,
                TranslationJob.completed_at >= five_minutes_ago,
            )
            .count()
        )
        return JSONResponse(content={
            "jobs": {
                "total": total,
                "by_status": by_status,
                "recent_completed_5m": recent_completed_5m,
            },
            "invocations": {
                "running": len(supervisor.running_jobs()),
            },
        })
    finally:
        session.close()


@app.post("/background-translate", response_model=BackgroundTranslateResponse)
async def background_translate(payload: BackgroundTranslateRequest):
    """Schedule one invocation of a job and return immediately."""
    if not payload.job_id:
        return JSONResponse(status_code=400, content={"error": "Job ID is required"})
    logger.bind(job_id=payload.job_id).info("Starting background translation job")
    supervisor.launch(payload.job_id)
    return BackgroundTranslateResponse(started=True, jobId=payload.job_id)


@app.post("/jobs", response_model=JobStatusResponse)
async def create_job(payload: CreateJobRequest, start: bool = True):
    source = _validated_language(payload.source_language, "source_language")
    target = _validated_language(payload.target_language, "target_language")
    if source == target:
        raise HTTPException(status_code=400, detail="source_language and target_language must differ")

    session = database.SessionLocal()
    try:
        job = TranslationJob(
            job_type=JobType(payload.job_type),
            source_language=source,
            target_language=target,
            mode=JobMode(payload.mode),
            scope_id=payload.scope_id,
            created_by=payload.created_by,
            status=JobStatus.pending,
        )
        session.add(job)
        session.commit()
        session.refresh(job)
        response = _job_response(job)
    finally:
        session.close()

    logger.bind(job_id=response.job_id).info(
        f"Created {response.job_type} job {response.source_language}->{response.target_language} ({response.mode})"
    )
    if start:
        supervisor.launch(response.job_id)
    return response


@app.get("/jobs", response_model=JobListResponse)
def get_jobs(status: Optional[str] = None):
    session = database.SessionLocal()
    try:
        query = session.query(TranslationJob)
        if status:
            try:
                query = query.filter(TranslationJob.status == JobStatus(status))
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status '{status}'")
        jobs = query.order_by(TranslationJob.created_at.desc()).all()
        return JobListResponse(jobs=[_job_response(job) for job in jobs])
    finally:
        session.close()


@app.get("/jobs/active", response_model=JobStatusResponse)
def get_active_job():
    session = database.SessionLocal()
    try:
        job = (
            session.query(TranslationJob)
            .filter(TranslationJob.status.in_([JobStatus.pending, JobStatus.processing]))
            .order_by(TranslationJob.created_at.desc())
            .first()
        )
        if not job:
            raise HTTPException(status_code=404, detail="No active job")
        return _job_response(job)
    finally:
        session.close()


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_status(job_id: str):
    session = database.SessionLocal()
    try:
        job = session.get(TranslationJob, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job_response(job)
    finally:
        session.close()


@app.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
def cancel_job(job_id: str):
    session = database.SessionLocal()
    try:
        job = session.get(TranslationJob, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status in TERMINAL_STATUSES:
            raise HTTPException(status_code=409, detail=f"Job already finished (status={job.status.value})")
        job.status = JobStatus.cancelled
        job.updated_at = datetime.now(UTC)
        session.commit()
        session.refresh(job)
        logger.bind(job_id=job_id).info("Job cancelled")
        return _job_response(job)
    finally:
        session.close()


@app.delete("/jobs")
def delete_jobs(payload: DeleteJobsRequest):
    session = database.SessionLocal()
    try:
        jobs_to_delete = session.query(TranslationJob).filter(TranslationJob.id.in_(payload.job_ids)).all()
        deleted_count = 0
        for job in jobs_to_delete:
            if supervisor.is_running(job.id):
                logger.bind(job_id=job.id).warning("Skipping delete of a running job")
                continue
            session.delete(job)
            deleted_count += 1
        session.commit()
        return {"status": "ok", "deleted_count": deleted_count}
    finally:
        session.close()


@app.post("/auto-translate", response_model=AutoTranslateResponse)
async def auto_translate(payload: AutoTranslateRequest):
    """
    Create `missing`-mode jobs for new content or a new language.

    - type=new_language: one job per job type, into `language_code`
    - a content type (training_module, ...): one job into every active
      language except the base language
    """
    logger.info(f"auto-translate type={payload.type}, item_id={payload.item_id}, language_code={payload.language_code}")

    if payload.type == "new_language":
        if not payload.language_code:
            raise HTTPException(status_code=400, detail="language_code required for new_language type")
        target = _validated_language(payload.language_code, "language_code")
        if target == BASE_LANGUAGE:
            raise HTTPException(status_code=400, detail="language_code must differ from the base language")
        plan = [(job_type, target) for job_type in JobType]
    else:
        job_type = CONTENT_JOB_TYPES.get(payload.type)
        if job_type is None:
            raise HTTPException(status_code=400, detail=f"Unknown type: {payload.type}")
        session = database.SessionLocal()
        try:
            languages = (
                session.query(Language)
                .filter(Language.is_active.is_(True), Language.code != BASE_LANGUAGE)
                .order_by(Language.position.asc())
                .all()
            )
            plan = [(job_type, lang.code) for lang in languages]
        finally:
            session.close()

    job_ids = []
    session = database.SessionLocal()
    try:
        for job_type, target in plan:
            job = TranslationJob(
                job_type=job_type,
                source_language=BASE_LANGUAGE,
                target_language=target,
                mode=JobMode.missing,
                status=JobStatus.pending,
            )
            session.add(job)
            session.commit()
            job_ids.append(job.id)
    finally:
        session.close()

    for job_id in job_ids:
        supervisor.launch(job_id)
    logger.info(f"auto-translate created {len(job_ids)} job(s)")
    return AutoTranslateResponse(success=True, jobs_created=len(job_ids), job_ids=job_ids)
