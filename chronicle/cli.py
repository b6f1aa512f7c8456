"""
Chronicle operator CLI

Usage:
    chronicle serve                 # API plus background worker
    chronicle worker                # Worker, stalled-lease monitor and sweeper only
    chronicle status <job_id>       # Read-only job snapshot
    chronicle kick <job_id>         # Resume a failed or stuck job
    chronicle sweep                 # Run one auto-resume sweep
    chronicle sweep --health        # Print stuck-job health instead
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from chronicle.config import get_settings
from chronicle.utils.errors import ChronicleError

logger = logging.getLogger(__name__)


def _print_model(model) -> None:
    print(model.model_dump_json(indent=2))


async def run_worker() -> None:
    from chronicle.api.deps import get_services
    from chronicle.services.recovery import RecoverySweeper
    from chronicle.services.worker import StalledLeaseMonitor, Worker

    settings = get_settings()
    services = get_services()
    components = [
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
    for component in components:
        await component.start()
    try:
        # Runs until interrupted
        await asyncio.Event().wait()
    finally:
        for component in reversed(components):
            await component.stop()


async def show_status(job_id: str) -> None:
    from chronicle.api.deps import get_services

    _print_model(await get_services().recovery.probe(job_id))


async def kick(job_id: str) -> None:
    from chronicle.api.deps import get_services

    _print_model(await get_services().recovery.kick(job_id, triggered_by="cli"))


async def sweep(health: bool = False) -> None:
    from chronicle.api.deps import get_services

    recovery = get_services().recovery
    if health:
        _print_model(await recovery.health())
    else:
        _print_model(await recovery.auto_resume_sweep())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chronicle", description="Chronicle job orchestration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    subparsers.add_parser("worker", help="Run the queue worker without the API")

    status_parser = subparsers.add_parser("status", help="Show a job snapshot")
    status_parser.add_argument("job_id")

    kick_parser = subparsers.add_parser("kick", help="Manually resume a job")
    kick_parser.add_argument("job_id")

    sweep_parser = subparsers.add_parser("sweep", help="Run one auto-resume sweep")
    sweep_parser.add_argument("--health", action="store_true", help="Report health only")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "serve":
        import uvicorn

        uvicorn.run("chronicle.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    from chronicle.main import configure_logging

    configure_logging(settings.log_level)

    try:
        if args.command == "worker":
            asyncio.run(run_worker())
        elif args.command == "status":
            asyncio.run(show_status(args.job_id))
        elif args.command == "kick":
            asyncio.run(kick(args.job_id))
        elif args.command == "sweep":
            asyncio.run(sweep(health=args.health))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    except ChronicleError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
