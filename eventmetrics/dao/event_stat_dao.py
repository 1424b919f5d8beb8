"""EventStatDAO / EventWikiStatDAO — statistics tables."""

import uuid

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.base import BaseDAO
from eventmetrics.models.event_stat import EventStat, EventWikiStat, check_metric


class EventStatDAO(BaseDAO[EventStat]):
    model = EventStat

    async def upsert(
        self,
        session: AsyncSession,
        event_id: uuid.UUID,
        metric: str,
        value: int,
        offset: int | None = None,
    ) -> None:
        """Create the (event, metric) stat or update it in place.

        ON CONFLICT (event_id, metric) updates value and offset.
        """
        ins = insert(EventStat).values(
            event_id=event_id, metric=check_metric(metric), value=value, offset=offset
        )
        stmt = ins.on_conflict_do_update(
            constraint="uq_event_stats_event_metric",
            set_={
                "value": ins.excluded["value"],
                "offset": ins.excluded["offset"],
                "updated_at": func.now(),
            },
        )
        await session.execute(stmt)


class EventWikiStatDAO(BaseDAO[EventWikiStat]):
    model = EventWikiStat

    async def upsert(
        self,
        session: AsyncSession,
        event_wiki_id: uuid.UUID,
        metric: str,
        value: int,
        offset: int | None = None,
    ) -> None:
        """Create the (event wiki, metric) stat or update it in place."""
        ins = insert(EventWikiStat).values(
            event_wiki_id=event_wiki_id, metric=check_metric(metric), value=value, offset=offset
        )
        stmt = ins.on_conflict_do_update(
            constraint="uq_event_wiki_stats_wiki_metric",
            set_={
                "value": ins.excluded["value"],
                "offset": ins.excluded["offset"],
                "updated_at": func.now(),
            },
        )
        await session.execute(stmt)
