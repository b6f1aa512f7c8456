"""FastAPI routes for the Chronicle job API."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from chronicle.api.deps import (
    Services,
    get_services,
    verify_operator,
    verify_service_secret,
)
from chronicle.models.job import BookJobInput, JobRecord, JobStatusValue, TickResult
from chronicle.models.recovery import HealthReport, JobSnapshot, KickResult, SweepReport
from chronicle.utils.errors import (
    AlreadyTerminal,
    AttemptsExhausted,
    Busy,
    ChronicleError,
    InvalidTransition,
    NotFound,
    ProviderError,
    QueueError,
    StoreError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


# ==================== Error Response Model ====================


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    error_type: str
    errors: Optional[List[Dict[str, Any]]] = None


# ==================== Exception Handlers ====================


async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "error_type": "ValidationError",
            "errors": exc.errors(include_url=False, include_context=False),
        },
    )


async def chronicle_exception_handler(request: Request, exc: ChronicleError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = 500

    if isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, (InvalidTransition, Busy, AlreadyTerminal, AttemptsExhausted)):
        status_code = 409
    elif isinstance(exc, ProviderError):
        status_code = 502  # Bad Gateway for generation provider errors
    elif isinstance(exc, (StoreError, QueueError)):
        status_code = 503

    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error_type": "HTTPException",
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": "InternalError",
        },
    )


# ==================== Request/Response Models ====================


class CreateJobRequest(BaseModel):
    """Request model for job creation."""

    owner_id: str = Field(min_length=1, description="Requesting user")
    input: BookJobInput


class CreateJobResponse(BaseModel):
    job_id: str
    status: JobStatusValue


class JobResponse(BaseModel):
    """Response model for job status."""

    job_id: str
    status: JobStatusValue
    step: Optional[str] = None
    progress: int
    message: str
    error: Optional[str] = None
    result_ref: Optional[str] = None
    auto_resume_attempts: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobResponse":
        return cls(
            job_id=record.id,
            status=record.status,
            step=record.step,
            progress=record.progress,
            message=record.message,
            error=record.error,
            result_ref=record.result_ref,
            auto_resume_attempts=record.auto_resume_attempts,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ActiveJobResponse(BaseModel):
    """Where a returning client should be redirected, if anywhere."""

    job_id: Optional[str] = None
    status: Optional[JobStatusValue] = None
    redirect_to: Optional[str] = None


class StuckJobsResponse(BaseModel):
    stuck_jobs: List[JobSnapshot]
    count: int
    stale_timeout_minutes: int
    max_auto_resume_attempts: int


class CleanupResponse(BaseModel):
    expired: List[str]
    count: int
    message: str


def _is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


# ==================== Job Endpoints ====================


@router.post("/jobs", response_model=CreateJobResponse, status_code=201)
async def create_job(
    request: CreateJobRequest,
    services: Services = Depends(get_services),
) -> CreateJobResponse:
    """
    Create a generation job and hand it to the queue.

    Returns immediately; poll ``GET /jobs/{job_id}`` for progress.
    """
    record = await services.store.create(request.owner_id, request.input)
    await services.queue.enqueue(record.id, record.input)
    return CreateJobResponse(job_id=record.id, status=record.status)


@router.get("/jobs/active", response_model=ActiveJobResponse)
async def get_active_job(
    owner_id: str = Query(min_length=1),
    services: Services = Depends(get_services),
) -> ActiveJobResponse:
    """The owner's in-progress job, so the client can send them back to it."""
    record = await services.recovery.find_resumable(owner_id)
    if record is None:
        return ActiveJobResponse()
    return ActiveJobResponse(
        job_id=record.id,
        status=record.status,
        redirect_to=f"/generating/{record.id}",
    )


@router.get("/jobs/auto-resume", response_model=StuckJobsResponse)
async def list_stuck_jobs(
    services: Services = Depends(get_services),
    _: None = Depends(verify_service_secret),
) -> StuckJobsResponse:
    """List stuck jobs without processing them."""
    stuck = await services.recovery.stuck_jobs()
    config = services.recovery.config
    return StuckJobsResponse(
        stuck_jobs=stuck,
        count=len(stuck),
        stale_timeout_minutes=config.stale_timeout_minutes,
        max_auto_resume_attempts=config.max_auto_resume_attempts,
    )


@router.post("/jobs/auto-resume", response_model=SweepReport)
async def auto_resume(
    services: Services = Depends(get_services),
    _: None = Depends(verify_service_secret),
) -> SweepReport:
    """Run one automatic resume sweep (cron entry point)."""
    return await services.recovery.auto_resume_sweep()


@router.post("/jobs/cleanup", response_model=CleanupResponse)
async def cleanup_jobs(
    services: Services = Depends(get_services),
    _: None = Depends(verify_service_secret),
) -> CleanupResponse:
    """Fail jobs that have made no progress for far longer than any step takes."""
    expired = await services.recovery.cleanup()
    return CleanupResponse(
        expired=expired,
        count=len(expired),
        message=f"Marked {len(expired)} stale job(s) as failed",
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    services: Services = Depends(get_services),
) -> JobResponse:
    """Get the current state of a job."""
    return JobResponse.from_record(await services.store.get(job_id))


@router.post("/jobs/{job_id}/tick", response_model=TickResult)
async def tick_job(
    job_id: str,
    request: Request,
    services: Services = Depends(get_services),
    _: None = Depends(verify_service_secret),
) -> TickResult:
    """
    Advance a job from its last checkpoint.

    A job that fails during this tick is returned with ``status="failed"``
    and a 200; conflicts (``Busy``, already succeeded) are 409.
    """
    resume = _is_truthy(request.headers.get("x-resume"))
    triggered_by = request.headers.get("x-triggered-by") or "manual"
    return await services.tick_handler.tick(job_id, resume=resume, triggered_by=triggered_by)


@router.post("/jobs/{job_id}/kick", response_model=KickResult)
async def kick_job(
    job_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(verify_operator),
) -> KickResult:
    """Manually resume a failed or stuck job."""
    return await services.recovery.kick(job_id)


@router.get("/jobs/{job_id}/kick", response_model=JobSnapshot)
async def probe_job(
    job_id: str,
    services: Services = Depends(get_services),
) -> JobSnapshot:
    """Get job state without kicking it."""
    return await services.recovery.probe(job_id)


# ==================== Health ====================


@router.get("/health/jobs", response_model=HealthReport)
async def jobs_health(services: Services = Depends(get_services)) -> Any:
    """
    Stuck-job health for external monitoring.

    Returns 503 when recoverable jobs are not being recovered.
    """
    report = await services.recovery.health()
    if report.status == "critical":
        return JSONResponse(status_code=503, content=report.model_dump(mode="json"))
    return report
