"""Queue message and lease models."""

from datetime import datetime
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

MessageState = Literal["ready", "leased", "dead"]


class Lease(BaseModel):
    """A time-bounded claim by one worker on one job."""

    job_id: str
    token: str
    owner: str
    expires_at: datetime
    deliveries: int = 0
    input: Dict[str, Any] = Field(default_factory=dict)

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class StalledReport(BaseModel):
    """Result of one stalled-lease detection pass."""

    requeued: List[str] = Field(default_factory=list)
    dead: List[str] = Field(default_factory=list)
