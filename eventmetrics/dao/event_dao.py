"""EventDAO — events table operations."""

import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.base import BaseDAO
from eventmetrics.models.event import Event


class EventDAO(BaseDAO[Event]):
    model = Event

    # ── read ──────────────────────────────────────────────────────────────

    async def list_all(self, session: AsyncSession) -> list[Event]:
        """Return every event, oldest first (process-all-events)."""
        stmt = select(Event).order_by(Event.created_at, Event.id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def set_stats_updated_at(
        self, session: AsyncSession, pk: uuid.UUID, when: datetime
    ) -> None:
        """Stamp the event as freshly processed."""
        self._require_pk(pk)
        stmt = update(Event).where(Event.id == pk).values(stats_updated_at=when)
        await session.execute(stmt)
