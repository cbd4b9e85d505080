from __future__ import annotations

from typing import Any, AsyncIterator, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..errors import CIError, StorageError, ValidationError
from ..model import JOB_STATUSES, Job
from ..orchestrator import stream_job_logs
from ..services import Services, build_services
from ..ui.console import get_console

# -------------------- Schemas --------------------

class StepRequest(BaseModel):
    name: str
    run: str
    working_dir: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = False
    timeout: Optional[int] = Field(default=None, gt=0)

class SubmitJobRequest(BaseModel):
    id: str
    repo: str
    commit: str
    branch: str = ""
    steps: list[StepRequest]
    env: dict[str, str] = Field(default_factory=dict)
    cache_keys: list[str] = Field(default_factory=list)
    timeout: Optional[int] = Field(default=None, gt=0)
    priority: Optional[int] = None

class SubmitJobResponse(BaseModel):
    job_id: str
    status: str

class JobIdRequest(BaseModel):
    job_id: str

# -------------------- App --------------------

def _sse(chunk: str) -> str:
    # one event per chunk; multi-line chunks become several data: lines
    return "".join(f"data: {line}\n" for line in chunk.split("\n")) + "\n"


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the control plane around `services` (or ones built from settings)."""
    app = FastAPI(title="ciengine control plane")
    app.state.services = services or build_services()

    def svc(request: Request) -> Services:
        return request.app.state.services

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": exc.kind, "detail": exc.message})

    @app.exception_handler(StorageError)
    async def on_storage_error(request: Request, exc: StorageError):
        get_console().print_error("Storage error", exc.message)
        return JSONResponse(status_code=503, content={"error": exc.kind, "detail": exc.message})

    @app.exception_handler(CIError)
    async def on_ci_error(request: Request, exc: CIError):
        return JSONResponse(status_code=500, content={"error": exc.kind, "detail": exc.message})

    @app.on_event("shutdown")
    async def shutdown() -> None:
        close = getattr(app.state.services.store, "close", None)
        if close is not None:
            await close()

    # -------------------- Endpoints --------------------

    @app.get("/")
    async def index():
        return {
            "service": "ciengine",
            "endpoints": [
                "GET /jobs",
                "POST /jobs/submit",
                "GET /jobs/status",
                "POST /jobs/cancel",
                "POST /jobs/retry",
                "GET /jobs/logs",
                "GET /cache/stats",
                "POST /worker",
            ],
        }

    @app.get("/jobs")
    async def list_jobs(request: Request, status: Optional[str] = None):
        if status is not None and status not in JOB_STATUSES:
            raise HTTPException(status_code=400, detail=f"unknown status: {status}")
        jobs = await svc(request).queue.list_jobs(status)
        return {"jobs": [j.to_dict() for j in jobs]}

    @app.post("/jobs/submit", status_code=202, response_model=SubmitJobResponse)
    async def submit_job(request: Request, req: SubmitJobRequest):
        job = Job.from_dict(req.model_dump())
        await svc(request).queue.submit(job)
        return SubmitJobResponse(job_id=job.id, status="queued")

    @app.get("/jobs/status")
    async def job_status(request: Request, job_id: str = Query(..., alias="id")):
        status = await svc(request).queue.get_job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return status.to_dict()

    @app.post("/jobs/cancel")
    async def cancel_job(request: Request, req: JobIdRequest):
        return {"job_id": req.job_id, "cancelled": await svc(request).queue.cancel_job(req.job_id)}

    @app.post("/jobs/retry")
    async def retry_job(request: Request, req: JobIdRequest):
        return {"job_id": req.job_id, "retried": await svc(request).queue.retry_job(req.job_id)}

    @app.get("/jobs/logs")
    async def job_logs(request: Request, job_id: str = Query(..., alias="id")):
        services = svc(request)
        if await services.queue.get_job_status(job_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")

        async def events() -> AsyncIterator[str]:
            async for chunk in stream_job_logs(services.queue, job_id, services.settings.log_poll_interval):
                yield _sse(chunk)

        return StreamingResponse(events(), media_type="text/event-stream")

    @app.get("/cache/stats")
    async def cache_stats(request: Request) -> dict[str, Any]:
        return await svc(request).cache_manager.cache_stats()

    @app.post("/worker", status_code=202)
    async def trigger_worker(request: Request, background: BackgroundTasks):
        background.add_task(svc(request).scheduler.tick)
        return {"status": "triggered"}

    return app
