"""CLI entry point: eventmetrics.

Subcommands:
    eventmetrics process-event EVENT_ID        # Compute statistics for one event now
    eventmetrics spawn-jobs [--id JOB_ID]      # Dispatch queued jobs within the quota
    eventmetrics process-all-events [-s]       # Queue every eligible event, then dispatch
    eventmetrics run-scheduler                 # Dispatch periodically until interrupted
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

import click
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventmetrics import deps
from eventmetrics.core.config import Settings
from eventmetrics.core.logging import setup_logging
from eventmetrics.engines.event_processor.models import ProcessResult
from eventmetrics.engines.job_handler.runner import JobHandler
from eventmetrics.replicas import ReplicaError
from eventmetrics.scheduler import create_scheduler
from eventmetrics.services import ServiceError

T = TypeVar("T")

Command = Callable[[JobHandler, async_sessionmaker[AsyncSession]], Awaitable[T]]


def _run(fn: Command[T], settings: Settings | None = None) -> T:
    """Wire the engines from *settings*, await *fn*, then dispose connections."""
    settings = settings or Settings.from_env()

    async def _main() -> T:
        session_factory = deps.init_session_factory(settings.database_url)
        handler = deps.build_job_handler(settings)
        try:
            return await fn(handler, session_factory)
        finally:
            await deps.dispose_engines()

    return asyncio.run(_main())


def _parse_id(value: str, kind: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        click.echo(f"Error: invalid {kind} id {value!r}", err=True)
        sys.exit(1)


def _print_result(result: ProcessResult) -> None:
    click.echo(f"Statistics for event {result.event_id}:")
    for metric, stat in sorted(result.stats.items()):
        offset = f" (offset {stat.offset})" if stat.offset is not None else ""
        click.echo(f"  {metric}: {stat.value}{offset}")
    for domain, stats in sorted(result.wikis.items()):
        click.echo(f"  {domain}:")
        for metric, stat in sorted(stats.items()):
            click.echo(f"    {metric}: {stat.value}")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
def main(verbose: bool) -> None:
    """EventMetrics: queue and compute event statistics."""
    setup_logging("DEBUG" if verbose else None)


@main.command("process-event")
@click.argument("event_id")
def process_event(event_id: str) -> None:
    """Generate statistics for one event, bypassing the job queue."""
    pk = _parse_id(event_id, "event")
    try:
        result = _run(lambda handler, sf: handler.process_event(sf, pk))
    except (ServiceError, ReplicaError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    _print_result(result)


@main.command("spawn-jobs")
@click.option("--id", "job_id", default=None, help="Run only this job")
def spawn_jobs(job_id: str | None) -> None:
    """Run queued jobs, as many as the replica quota allows."""
    if job_id is None:
        dispatched = _run(lambda handler, sf: handler.spawn_all(sf))
        click.echo(f"{dispatched} job(s) spawned")
        return

    pk = _parse_id(job_id, "job")
    try:
        result = _run(lambda handler, sf: handler.spawn(sf, pk))
    except ServiceError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    _print_result(result)


@main.command("process-all-events")
@click.option("-s", "--no-spawn", is_flag=True, help="Only create the jobs, don't run them")
def process_all_events(no_spawn: bool) -> None:
    """Queue a job for every event that needs statistics."""
    created = _run(
        lambda handler, sf: handler.create_jobs_for_all_eligible_events(sf, no_spawn=no_spawn)
    )
    click.echo(f"{created} job(s) created")


@main.command("run-scheduler")
def run_scheduler() -> None:
    """Dispatch queued jobs every EVENTMETRICS_SPAWN_INTERVAL seconds."""
    settings = Settings.from_env()

    async def _serve(handler: JobHandler, sf: async_sessionmaker[AsyncSession]) -> None:
        scheduler = create_scheduler(sf, handler, spawn_interval=settings.spawn_interval)
        await scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        _run(_serve, settings)
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


if __name__ == "__main__":
    main()
