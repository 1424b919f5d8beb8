"""JobDAO — jobs table operations (the job queue)."""

import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.base import BaseDAO
from eventmetrics.models.job import JOB_BUSY, JOB_QUEUED, Job


class JobDAO(BaseDAO[Job]):
    model = Job

    # ── read ──────────────────────────────────────────────────────────────

    async def get_by_event(self, session: AsyncSession, event_id: uuid.UUID) -> Job | None:
        stmt = select(Job).where(Job.event_id == event_id)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def map_by_events(
        self, session: AsyncSession, event_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, Job]:
        """Jobs of the given events, keyed by event id."""
        if not event_ids:
            return {}
        stmt = select(Job).where(Job.event_id.in_(event_ids))
        result = await session.execute(stmt)
        return {job.event_id: job for job in result.scalars().all()}

    async def list_queued(self, session: AsyncSession, limit: int) -> list[Job]:
        """Return up to *limit* queued jobs, first submitted first."""
        stmt = (
            select(Job)
            .where(Job.status == JOB_QUEUED)
            .order_by(Job.submitted_at, Job.id)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def insert_if_absent(self, session: AsyncSession, event_id: uuid.UUID) -> Job | None:
        """Queue a job for *event_id* unless one already exists.

        ON CONFLICT (event_id) DO NOTHING: returns None when the event
        already had a job, including one inserted concurrently.
        """
        stmt = (
            insert(Job)
            .values(event_id=event_id, status=JOB_QUEUED)
            .on_conflict_do_nothing(constraint="uq_jobs_event")
            .returning(Job)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def mark_started(self, session: AsyncSession, pk: uuid.UUID) -> bool:
        """Compare-and-set ``queued -> busy``.

        Returns False if the job no longer exists or is already busy.
        """
        self._require_pk(pk)
        stmt = (
            update(Job)
            .where(Job.id == pk, Job.status == JOB_QUEUED)
            .values(status=JOB_BUSY)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def delete_by_event(self, session: AsyncSession, event_id: uuid.UUID) -> int:
        """Delete every job of an event. Returns the number of deleted rows."""
        stmt = delete(Job).where(Job.event_id == event_id)
        result = await session.execute(stmt)
        return result.rowcount
