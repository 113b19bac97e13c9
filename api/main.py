"""
Review Report Worker API - FastAPI control surface.
Start/stop the job scheduler, report its status and enqueue jobs.
"""

from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from api.config import config
from api.database import (
    init_database,
    enqueue_job,
    list_jobs,
    get_job,
    get_job_counts,
    list_audit_records,
)
from api.logging_config import logger
from api.scheduler import JobScheduler
from core.models import JobStatus


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting Review Report Worker API...")
    missing = config.validate()
    if missing:
        logger.warning(f"Missing configuration: {', '.join(missing)}")
    await init_database()
    logger.info("Database initialized")

    # Tests may install their own scheduler before startup.
    if getattr(app.state, "scheduler", None) is None:
        app.state.scheduler = JobScheduler()

    if config.AUTO_START_WORKER:
        try:
            await app.state.scheduler.start()
        except Exception as e:
            logger.warning(f"Scheduler failed to start: {e}")

    yield
    # Shutdown
    logger.info("Shutting down Review Report Worker API...")
    try:
        await app.state.scheduler.shutdown()
    except Exception as e:
        logger.warning(f"Scheduler shutdown error: {e}")


# Initialize FastAPI app
app = FastAPI(
    title="Review Report Worker API",
    description="Control surface for the unattended review report worker",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration:.2f}ms)")
    return response


class EnqueueRequest(BaseModel):
    target_reference: str = Field(..., min_length=1, description="Review, place or report-form URL")
    action_parameter: Optional[str] = Field(None, description="Report reason text")
    label: Optional[str] = Field(None, description="Display name, e.g. the business name")


def _scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "Review Report Worker API",
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/api/status")
async def get_status(request: Request):
    status = _scheduler(request).status()
    status["jobs"] = await get_job_counts()
    return status


@app.post("/api/start")
async def start_worker(request: Request):
    scheduler = _scheduler(request)
    if scheduler.running:
        raise HTTPException(status_code=400, detail="Automation is already running")
    try:
        await scheduler.start()
    except Exception as e:
        logger.error(f"Error starting scheduler: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start automation: {e}")
    return {
        "message": "Automation started successfully",
        "isRunning": True,
        "startedAt": scheduler.status()["startedAt"],
    }


@app.post("/api/stop")
async def stop_worker(request: Request):
    scheduler = _scheduler(request)
    if not scheduler.running:
        raise HTTPException(status_code=400, detail="Automation is not running")
    try:
        await scheduler.stop()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to stop automation: {e}")
    return {
        "message": "Automation stopped successfully",
        "isRunning": False,
        "stoppedAt": datetime.now().isoformat(),
    }


@app.post("/api/jobs", status_code=201)
async def create_job(body: EnqueueRequest):
    job = await enqueue_job(body.target_reference, body.action_parameter, body.label)
    logger.info(f"Enqueued job {job['id']}: {body.target_reference}")
    return job


@app.get("/api/jobs")
async def get_jobs(status: Optional[str] = None, limit: int = 100):
    if status is not None and status not in {s.value for s in JobStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    return {"jobs": await list_jobs(status=status, limit=min(max(limit, 1), 500))}


@app.get("/api/jobs/{job_id}")
async def get_job_detail(job_id: str):
    job = await get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/api/jobs/{job_id}/audit")
async def get_job_audit(job_id: str):
    if not await get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"records": await list_audit_records(job_id)}
