import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from chronicle.api.deps import get_services
from chronicle.api.routes import (
    chronicle_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    router,
    validation_exception_handler,
)
from chronicle.config import get_settings
from chronicle.services.recovery import RecoverySweeper
from chronicle.services.worker import StalledLeaseMonitor, Worker
from chronicle.utils.errors import ChronicleError

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the worker, stalled-lease monitor and recovery sweeper with the app."""
    settings = get_settings()
    background = []

    if settings.run_worker:
        services = get_services()
        background = [
            Worker(
                services.queue,
                services.tick_handler,
                concurrency=settings.worker_concurrency,
                poll_interval=settings.worker_poll_interval_seconds,
            ),
            StalledLeaseMonitor(
                services.queue,
                interval_seconds=settings.stalled_interval_seconds,
                max_deliveries=settings.max_deliveries,
            ),
            RecoverySweeper(services.recovery, interval_seconds=settings.sweep_interval_seconds),
        ]
        for component in background:
            await component.start()
    else:
        logger.info("Background worker disabled; serving API only")

    try:
        yield
    finally:
        for component in reversed(background):
            await component.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Chronicle Jobs API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(ChronicleError, chronicle_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("chronicle.main:app", host="0.0.0.0", port=8000)
