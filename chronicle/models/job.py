"""Job record Pydantic models."""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

JobStatusValue = Literal["queued", "running", "succeeded", "failed"]
GenerationMode = Literal["draft", "polished"]

# Statuses that indicate a job is still expected to make progress
ACTIVE_STATUSES: tuple[str, ...] = ("queued", "running")

# outline, characters, polish, finalize
FIXED_STEP_COUNT = 4


def utcnow() -> datetime:
    """Timezone-aware current time; every persisted timestamp is UTC."""
    return datetime.now(timezone.utc)


class BookJobInput(BaseModel):
    """Input payload for a book generation job."""

    prompt: str = ""
    genre: str = Field(min_length=1)
    chapters: int = Field(default=2, ge=1, le=50)
    mode: GenerationMode = "draft"
    with_cover: bool = False
    title: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def steps_to_chapters(cls, data: Any) -> Any:
        """Accept a total step count in place of a chapter count."""
        if isinstance(data, dict) and "steps" in data and "chapters" not in data:
            data = dict(data)
            steps = data.pop("steps")
            if not isinstance(steps, int) or steps <= FIXED_STEP_COUNT:
                raise ValueError(f"steps must be an integer greater than {FIXED_STEP_COUNT}")
            data["chapters"] = steps - FIXED_STEP_COUNT
        return data

    @field_validator("genre")
    @classmethod
    def genre_not_whitespace(cls, v: str) -> str:
        """Validate that genre is not only whitespace."""
        if not v.strip():
            raise ValueError("genre cannot be only whitespace")
        return v


class JobRecord(BaseModel):
    """Durable state of one generation job."""

    id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    status: JobStatusValue = "queued"
    step: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: Optional[str] = None
    auto_resume_attempts: int = Field(default=0, ge=0)
    input: Dict[str, Any] = Field(default_factory=dict)
    result_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class TickResult(BaseModel):
    """Outcome of advancing one job.

    A failed job is a normal outcome here, reported with ``status="failed"``
    rather than raised.
    """

    job_id: str
    status: JobStatusValue
    step: Optional[str] = None
    progress: int = 0
    message: str = ""
    error: Optional[str] = None
    result_ref: Optional[str] = None
    aborted: bool = False
    triggered_by: str = "manual"

    @classmethod
    def from_record(
        cls, record: JobRecord, triggered_by: str = "manual", aborted: bool = False
    ) -> "TickResult":
        return cls(
            job_id=record.id,
            status=record.status,
            step=record.step,
            progress=record.progress,
            message=record.message,
            error=record.error,
            result_ref=record.result_ref,
            aborted=aborted,
            triggered_by=triggered_by,
        )
