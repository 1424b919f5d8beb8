"""EventWikiDAO — event_wikis table operations."""

import uuid
from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.base import BaseDAO
from eventmetrics.models.event_wiki import EventWiki


class EventWikiDAO(BaseDAO[EventWiki]):
    model = EventWiki

    async def list_by_event(self, session: AsyncSession, event_id: uuid.UUID) -> list[EventWiki]:
        """Wikis of an event, ordered by domain."""
        stmt = select(EventWiki).where(EventWiki.event_id == event_id).order_by(EventWiki.domain)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def map_by_events(
        self, session: AsyncSession, event_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, list[EventWiki]]:
        """Bulk variant of :meth:`list_by_event`, keyed by event id."""
        if not event_ids:
            return {}
        stmt = (
            select(EventWiki)
            .where(EventWiki.event_id.in_(event_ids))
            .order_by(EventWiki.event_id, EventWiki.domain)
        )
        result = await session.execute(stmt)
        wikis: dict[uuid.UUID, list[EventWiki]] = defaultdict(list)
        for wiki in result.scalars().all():
            wikis[wiki.event_id].append(wiki)
        return dict(wikis)
