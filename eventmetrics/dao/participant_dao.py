"""ParticipantDAO — participants table operations."""

import uuid
from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.base import BaseDAO
from eventmetrics.models.participant import Participant


class ParticipantDAO(BaseDAO[Participant]):
    model = Participant

    async def list_usernames(self, session: AsyncSession, event_id: uuid.UUID) -> list[str]:
        """Usernames of an event's participants, sorted."""
        stmt = (
            select(Participant.username)
            .where(Participant.event_id == event_id)
            .order_by(Participant.username)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def map_usernames(
        self, session: AsyncSession, event_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, list[str]]:
        """Bulk variant of :meth:`list_usernames`, keyed by event id."""
        if not event_ids:
            return {}
        stmt = (
            select(Participant.event_id, Participant.username)
            .where(Participant.event_id.in_(event_ids))
            .order_by(Participant.event_id, Participant.username)
        )
        result = await session.execute(stmt)
        usernames: dict[uuid.UUID, list[str]] = defaultdict(list)
        for event_id, username in result.all():
            usernames[event_id].append(username)
        return dict(usernames)
