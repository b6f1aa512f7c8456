"""Service layer for Chronicle."""

from chronicle.services.artifacts import ArtifactStore
from chronicle.services.book_steps import BookSteps, create_book_steps, describe_step
from chronicle.services.database import create_supabase_client
from chronicle.services.dispatcher import JobDispatcher, SupabaseJobQueue
from chronicle.services.job_store import JobStore
from chronicle.services.orchestrator import Orchestrator, Pipeline, Step, StepContext, compute_progress
from chronicle.services.recovery import RecoveryConfig, RecoveryController, RecoverySweeper
from chronicle.services.tick import TickHandler
from chronicle.services.worker import StalledLeaseMonitor, Worker

__all__ = [
    "ArtifactStore",
    "BookSteps",
    "create_book_steps",
    "describe_step",
    "create_supabase_client",
    "JobDispatcher",
    "SupabaseJobQueue",
    "JobStore",
    "Orchestrator",
    "Pipeline",
    "Step",
    "StepContext",
    "compute_progress",
    "RecoveryConfig",
    "RecoveryController",
    "RecoverySweeper",
    "TickHandler",
    "StalledLeaseMonitor",
    "Worker",
]
