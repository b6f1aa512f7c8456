"""Recovery, sweep and health report models."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from chronicle.models.job import JobStatusValue, TickResult


class JobSnapshot(BaseModel):
    """Operator-facing view of a job record."""

    job_id: str
    owner_id: str
    status: JobStatusValue
    step: Optional[str] = None
    step_description: str = ""
    progress: int = 0
    error: Optional[str] = None
    auto_resume_attempts: int = 0
    result_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    minutes_since_update: int = 0


class KickResult(BaseModel):
    """Outcome of a manual kick."""

    message: str
    prior: JobSnapshot
    job: JobSnapshot
    tick: Optional[TickResult] = None


class SweepItem(BaseModel):
    job_id: str
    prior_status: JobStatusValue
    attempt: int
    success: bool
    status: Optional[JobStatusValue] = None
    error: Optional[str] = None


class SweepReport(BaseModel):
    """Result of one automatic resume sweep."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    marked_as_failed: int = 0
    duration_ms: int = 0
    results: List[SweepItem] = Field(default_factory=list)


class HealthReport(BaseModel):
    """Stuck-job health summary for external monitoring."""

    status: Literal["healthy", "degraded", "critical"]
    timestamp: datetime
    total_stuck: int = 0
    recoverable: int = 0
    permanently_failed: int = 0
    oldest_stale_minutes: int = 0
    stale_timeout_minutes: int
    max_auto_resume_attempts: int
    message: Optional[str] = None
