"""FastAPI dependencies for the Chronicle API."""

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Optional

from fastapi import Depends, Header, HTTPException

from chronicle.config import Settings, get_settings
from chronicle.models.job import utcnow
from chronicle.services.artifacts import ArtifactStore
from chronicle.services.book_steps import BookSteps, create_book_steps
from chronicle.services.dispatcher import SupabaseJobQueue
from chronicle.services.job_store import JobStore
from chronicle.services.orchestrator import Orchestrator
from chronicle.services.recovery import RecoveryConfig, RecoveryController
from chronicle.services.tick import TickHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The wired orchestration core shared by the API, the worker and the CLI."""

    store: JobStore
    artifacts: ArtifactStore
    queue: SupabaseJobQueue
    orchestrator: Orchestrator
    tick_handler: TickHandler
    recovery: RecoveryController


def build_services(
    supabase_client: Any,
    settings: Settings,
    steps: Optional[BookSteps] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """
    Wire every service around one Supabase client.

    Args:
        supabase_client: Supabase client instance
        settings: Application settings
        steps: Step bodies (defaults to the provider-backed book steps)
        clock: Source of the current time for leases and staleness
    """
    store = JobStore(supabase_client)
    artifacts = ArtifactStore(supabase_client)
    queue = SupabaseJobQueue(
        supabase_client, lease_duration_seconds=settings.lease_duration_seconds, clock=clock
    )
    steps = steps or create_book_steps(artifacts)
    orchestrator = Orchestrator(steps.build_pipeline, artifacts)
    tick_handler = TickHandler(store, queue, orchestrator)
    recovery = RecoveryController(
        store,
        tick_handler,
        config=RecoveryConfig(
            stale_timeout_minutes=settings.stale_timeout_minutes,
            max_auto_resume_attempts=settings.max_auto_resume_attempts,
            max_jobs_per_run=settings.max_jobs_per_run,
            cleanup_timeout_minutes=settings.cleanup_timeout_minutes,
        ),
        clock=clock,
    )
    return Services(
        store=store,
        artifacts=artifacts,
        queue=queue,
        orchestrator=orchestrator,
        tick_handler=tick_handler,
        recovery=recovery,
    )


@lru_cache
def get_services() -> Services:
    """Process-wide services; one TickHandler means one set of in-process job locks."""
    from chronicle.services.database import create_supabase_client

    return build_services(create_supabase_client(), get_settings())


def get_settings_dep() -> Settings:
    """Dependency for application settings."""
    return get_settings()


def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided, expected)


def verify_service_secret(
    x_service_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    """Machine-to-machine endpoints require the shared service secret.

    Without a configured secret the check is skipped outside production.
    """
    if not settings.service_secret and not settings.is_production:
        return
    if not _matches(x_service_secret, settings.service_secret):
        logger.warning("Rejected request with invalid service secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


def verify_operator(
    x_operator_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    """Manual recovery is open outside production; in production it needs the operator token."""
    if not settings.is_production:
        return
    if not _matches(x_operator_token, settings.operator_token):
        raise HTTPException(status_code=403, detail="Not available in production")
