"""JobService — the job queue: one job per event, queued -> busy -> deleted."""

from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.job_dao import JobDAO
from eventmetrics.models.job import Job
from eventmetrics.services import AlreadyQueuedError, InvalidEventError, NotFoundError
from eventmetrics.services.event_service import EventContext


class JobService:
    """Stateless service enforcing the at-most-one-job-per-event rule."""

    def __init__(self, job_dao: JobDAO) -> None:
        self._job_dao = job_dao

    async def get(self, session: AsyncSession, job_id: uuid.UUID) -> Job:
        """Raises :class:`NotFoundError` if the job does not exist."""
        job = await self._job_dao.get_by_id(session, job_id)
        if job is None:
            raise NotFoundError("job not found")
        return job

    async def enqueue(self, session: AsyncSession, context: EventContext) -> Job:
        """Queue a statistics job for the event.

        Raises :class:`AlreadyQueuedError` if the event has a job (checked on
        the loaded context, then again by the unique constraint), and
        :class:`InvalidEventError` if the event cannot be processed.
        """
        if context.has_job():
            raise AlreadyQueuedError(f"event {context.id} already has a job")
        if not context.is_valid():
            raise InvalidEventError(f"event {context.id} is not valid for processing")

        job = await self._job_dao.insert_if_absent(session, context.id)
        if job is None:
            raise AlreadyQueuedError(f"event {context.id} already has a job")
        context.job = job
        return job

    async def list_queued(self, session: AsyncSession, limit: int) -> list[Job]:
        """Up to *limit* queued jobs, oldest submission first."""
        if limit <= 0:
            return []
        return await self._job_dao.list_queued(session, limit)

    async def mark_started(self, session: AsyncSession, job_id: uuid.UUID) -> bool:
        """Flag the job busy. The caller must commit before processing starts.

        Returns False if another dispatcher got there first.
        """
        return await self._job_dao.mark_started(session, job_id)

    async def remove(self, session: AsyncSession, job_id: uuid.UUID) -> bool:
        return await self._job_dao.delete(session, job_id)

    async def remove_for_event(self, session: AsyncSession, event_id: uuid.UUID) -> int:
        return await self._job_dao.delete_by_event(session, event_id)
