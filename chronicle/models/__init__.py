"""Pydantic data models for Chronicle."""

from chronicle.models.job import ACTIVE_STATUSES, BookJobInput, JobRecord, TickResult
from chronicle.models.manuscript import (
    ChapterDraft,
    ChapterPlan,
    Character,
    ManuscriptResult,
    Outline,
)
from chronicle.models.queue import Lease, StalledReport
from chronicle.models.recovery import (
    HealthReport,
    JobSnapshot,
    KickResult,
    SweepItem,
    SweepReport,
)

__all__ = [
    "ACTIVE_STATUSES",
    "BookJobInput",
    "JobRecord",
    "TickResult",
    "ChapterDraft",
    "ChapterPlan",
    "Character",
    "ManuscriptResult",
    "Outline",
    "Lease",
    "StalledReport",
    "HealthReport",
    "JobSnapshot",
    "KickResult",
    "SweepItem",
    "SweepReport",
]
