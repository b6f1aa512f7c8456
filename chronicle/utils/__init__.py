"""Utility modules for Chronicle."""

from chronicle.utils.errors import (
    AlreadyTerminal,
    AttemptsExhausted,
    Busy,
    ChronicleError,
    ExecutionAborted,
    InvalidTransition,
    JobCancelled,
    LeaseExpired,
    NotFound,
    ProgressRegression,
    ProviderError,
    QueueError,
    StepError,
    StoreError,
)
from chronicle.utils.retry import with_retry

__all__ = [
    "ChronicleError",
    "NotFound",
    "InvalidTransition",
    "ProgressRegression",
    "AlreadyTerminal",
    "Busy",
    "AttemptsExhausted",
    "ExecutionAborted",
    "LeaseExpired",
    "JobCancelled",
    "StepError",
    "ProviderError",
    "StoreError",
    "QueueError",
    "with_retry",
]
