"""JobHandler — pulls queued jobs within the replica quota and runs them."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventmetrics.core.logging import job_context
from eventmetrics.engines.event_processor.models import ProcessResult
from eventmetrics.engines.event_processor.processor import EventProcessor
from eventmetrics.replicas.quota import QuotaMonitor
from eventmetrics.services import (
    AlreadyQueuedError,
    ComputationError,
    ConflictError,
    InsufficientQuotaError,
)
from eventmetrics.services.event_service import EventService
from eventmetrics.services.job_service import JobService

log = structlog.get_logger("eventmetrics.engine")


class JobHandler:
    """Dispatcher between the job queue and the event processor.

    Every job runs in two transactions: the ``queued -> busy`` flip is
    committed on its own, then the processor's writes and the job removal
    are committed together. A failed run deletes the job in a third
    session; there is no retry.
    """

    def __init__(
        self,
        job_service: JobService,
        event_service: EventService,
        event_processor: EventProcessor,
        quota_monitor: QuotaMonitor,
    ) -> None:
        self._job_service = job_service
        self._event_service = event_service
        self._processor = event_processor
        self._quota = quota_monitor

    async def spawn_all(self, session_factory: async_sessionmaker[AsyncSession]) -> int:
        """Run as many queued jobs as the replicas allow, oldest first.

        A failing job is logged and the loop moves on. Returns the number of
        jobs dispatched; jobs taken by another dispatcher are not counted.
        """
        quota = await self._quota.available_quota()
        if quota <= 0:
            log.info("jobs.insufficient_quota")
            return 0

        async with session_factory() as session:
            jobs = await self._job_service.list_queued(session, quota)
        if not jobs:
            log.info("jobs.queue_empty", quota=quota)
            return 0

        dispatched = 0
        for job in jobs:
            try:
                result = await self._process_job(session_factory, job.id, job.event_id)
            except ComputationError:
                dispatched += 1
                continue
            if result is not None:
                dispatched += 1

        log.info("jobs.spawned", quota=quota, queued=len(jobs), dispatched=dispatched)
        return dispatched

    async def spawn(
        self, session_factory: async_sessionmaker[AsyncSession], job_id: uuid.UUID
    ) -> ProcessResult:
        """Run one specific job now.

        Raises :class:`NotFoundError` for an unknown job,
        :class:`InsufficientQuotaError` when the replicas are saturated,
        :class:`ConflictError` when the job is no longer queued and
        :class:`ComputationError` when processing fails.
        """
        async with session_factory() as session:
            job = await self._job_service.get(session, job_id)

        if await self._quota.available_quota() <= 0:
            raise InsufficientQuotaError("no replica connections available")

        result = await self._process_job(session_factory, job.id, job.event_id)
        if result is None:
            raise ConflictError(f"job {job_id} is already running")
        return result

    async def create_jobs_for_all_eligible_events(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        no_spawn: bool = False,
    ) -> int:
        """Queue a job for every valid event without one, then dispatch.

        All jobs are committed together before :meth:`spawn_all` runs.
        Returns the number of jobs created.
        """
        now = datetime.now(timezone.utc)
        created = 0
        async with session_factory() as session:
            contexts = await self._event_service.list_contexts(session)
            for context in contexts:
                if context.has_job() or not context.is_valid(now):
                    continue
                try:
                    await self._job_service.enqueue(session, context)
                except AlreadyQueuedError:
                    # Queued by someone else since the contexts were loaded.
                    continue
                created += 1
            await session.commit()

        log.info("jobs.created", events=len(contexts), created=created)

        if not no_spawn:
            await self.spawn_all(session_factory)
        return created

    async def process_event(
        self, session_factory: async_sessionmaker[AsyncSession], event_id: uuid.UUID
    ) -> ProcessResult:
        """Process an event immediately, bypassing the queue and the quota.

        Raises :class:`NotFoundError` if the event does not exist.
        """
        async with session_factory() as session:
            context = await self._event_service.get_context(session, event_id)
            result = await self._processor.process(session, context)
            await session.commit()
        return result

    # ── internals ────────────────────────────────────────────────────────

    async def _process_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_id: uuid.UUID,
        event_id: uuid.UUID,
    ) -> ProcessResult | None:
        """Mark the job busy and run it. Returns None if the job was not queued."""
        with job_context(job_id, event_id):
            async with session_factory() as session:
                if not await self._job_service.mark_started(session, job_id):
                    log.info("job.skipped")
                    return None
                await session.commit()

            log.info("job.started")
            try:
                async with session_factory() as session:
                    context = await self._event_service.get_context(session, event_id)
                    result = await self._processor.process(session, context)
                    await session.commit()
            except Exception as exc:
                log.error("job.failed", exc_info=True)
                await self._discard(session_factory, job_id)
                raise ComputationError(f"statistics for event {event_id} failed: {exc}") from exc

            log.info("job.finished")
            return result

    async def _discard(
        self, session_factory: async_sessionmaker[AsyncSession], job_id: uuid.UUID
    ) -> None:
        try:
            async with session_factory() as session:
                await self._job_service.remove(session, job_id)
                await session.commit()
        except Exception:
            log.error("job.remove_failed", exc_info=True)
