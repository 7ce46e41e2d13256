"""
FastAPI Application — operator surface for the outbound action queue.

Provides:
- Health check
- Queue inspection (status counts, dead letters, stuck jobs, single job)
- Enqueue endpoint for producers
- Operator retry of dead/failed jobs
- Manual tick through the same single-flight guard as the scheduler
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from config.settings import Settings, get_settings
from database.session import close_db, init_db
from executors.base import PayloadValidationError
from job_queue.service import QueueService, build_service
from models.schemas import ActionKind

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    destination_id: str
    action_kind: ActionKind
    payload: dict[str, Any]
    idempotency_seed: Optional[str] = None


class RetryRequest(BaseModel):
    job_id: str


def _service(request: Request) -> QueueService:
    return request.app.state.service


def _job_dict(job) -> dict[str, Any]:
    return job.model_dump(mode="json")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Settings = None, service: QueueService = None) -> FastAPI:
    settings = settings or get_settings()
    service = service or build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.database.store_backend == "sql":
            await init_db()
        await service.scheduler.start()
        logger.info("outbound_queue_started",
                    store=type(service.store).__name__,
                    scheduler_enabled=service.scheduler.enabled,
                    interval_s=service.scheduler.interval_seconds)
        yield
        await service.close()
        if settings.database.store_backend == "sql":
            await close_db()
        logger.info("outbound_queue_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Fault-tolerant outbound action queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.settings = settings

    # ══════════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        svc = _service(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_running": svc.scheduler.is_running,
            "tick_in_flight": svc.scheduler.guard.running,
            "rate_limited": svc.rate_limits.snapshot(),
        }

    # ══════════════════════════════════════════════════════════════
    #  QUEUE INSPECTION
    # ══════════════════════════════════════════════════════════════

    @app.get("/api/v1/queue/status")
    async def queue_status(request: Request):
        return await _service(request).queue.status_summary()

    @app.get("/api/v1/queue/dead")
    async def dead_letters(request: Request, limit: int = Query(50, ge=1)):
        jobs = await _service(request).queue.dead_letters(limit)
        return {"count": len(jobs), "jobs": [_job_dict(j) for j in jobs]}

    @app.get("/api/v1/queue/stuck")
    async def stuck_jobs(request: Request):
        jobs = await _service(request).queue.stuck_jobs()
        return {"count": len(jobs), "jobs": [_job_dict(j) for j in jobs]}

    @app.get("/api/v1/queue/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        job = await _service(request).queue.get(job_id)
        if not job:
            raise HTTPException(404, "Job not found")
        return _job_dict(job)

    # ══════════════════════════════════════════════════════════════
    #  PRODUCERS & OPERATORS
    # ══════════════════════════════════════════════════════════════

    @app.post("/api/v1/queue/jobs")
    async def enqueue_job(req: EnqueueRequest, request: Request):
        try:
            job = await _service(request).queue.enqueue(
                req.destination_id, req.action_kind, req.payload,
                idempotency_seed=req.idempotency_seed,
            )
        except PayloadValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return _job_dict(job)

    @app.post("/api/v1/queue/retry")
    async def retry_job(req: RetryRequest, request: Request):
        job = await _service(request).queue.retry(req.job_id)
        if not job:
            raise HTTPException(404, "Job not found or not in a retryable state")
        return {"status": "queued", "job": _job_dict(job)}

    @app.post("/api/v1/queue/tick")
    async def manual_tick(request: Request):
        ran, stats = await _service(request).scheduler.fire()
        if not ran:
            return {"status": "skipped", "reason": "tick already running"}
        return {"status": "completed", "stats": stats}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
