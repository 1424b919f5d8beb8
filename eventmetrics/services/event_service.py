"""EventService — loads events with the collaborators the job pipeline needs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.event_dao import EventDAO
from eventmetrics.dao.event_wiki_dao import EventWikiDAO
from eventmetrics.dao.job_dao import JobDAO
from eventmetrics.dao.participant_dao import ParticipantDAO
from eventmetrics.models.event import Event
from eventmetrics.models.event_wiki import EventWiki
from eventmetrics.models.job import Job
from eventmetrics.services import NotFoundError


@dataclass
class EventContext:
    """An event together with its participants, wikis and job."""

    event: Event
    participants: list[str] = field(default_factory=list)
    wikis: list[EventWiki] = field(default_factory=list)
    job: Job | None = None

    @property
    def id(self) -> uuid.UUID:
        return self.event.id

    def has_job(self) -> bool:
        return self.job is not None

    def is_valid(self, now: datetime | None = None) -> bool:
        """Whether statistics can be generated for this event.

        Needs at least one wiki and participant, both dates, and a start
        that has already passed.
        """
        now = now or datetime.now(timezone.utc)
        start = self.event.start_utc
        return (
            bool(self.wikis)
            and bool(self.participants)
            and start is not None
            and self.event.end is not None
            and start < now
        )

    def family_wikis(self) -> list[EventWiki]:
        return [w for w in self.wikis if w.is_family]

    def child_wikis(self, family: str) -> list[EventWiki]:
        """Concrete wikis belonging to a family that the event tracks as ``*.family``."""
        return [w for w in self.wikis if not w.is_family and w.family_name == family]


class EventService:
    """Stateless service for reading events and recording processing results."""

    def __init__(
        self,
        event_dao: EventDAO,
        participant_dao: ParticipantDAO,
        event_wiki_dao: EventWikiDAO,
        job_dao: JobDAO,
    ) -> None:
        self._event_dao = event_dao
        self._participant_dao = participant_dao
        self._wiki_dao = event_wiki_dao
        self._job_dao = job_dao

    async def get_context(self, session: AsyncSession, event_id: uuid.UUID) -> EventContext:
        """Load one event with its collaborators.

        Raises :class:`NotFoundError` if the event does not exist.
        """
        event = await self._event_dao.get_by_id(session, event_id)
        if event is None:
            raise NotFoundError("event not found")

        return EventContext(
            event=event,
            participants=await self._participant_dao.list_usernames(session, event.id),
            wikis=await self._wiki_dao.list_by_event(session, event.id),
            job=await self._job_dao.get_by_event(session, event.id),
        )

    async def list_contexts(self, session: AsyncSession) -> list[EventContext]:
        """Load every event with its collaborators (four queries in total)."""
        events = await self._event_dao.list_all(session)
        if not events:
            return []

        ids = [event.id for event in events]
        participants = await self._participant_dao.map_usernames(session, ids)
        wikis = await self._wiki_dao.map_by_events(session, ids)
        jobs = await self._job_dao.map_by_events(session, ids)

        return [
            EventContext(
                event=event,
                participants=participants.get(event.id, []),
                wikis=wikis.get(event.id, []),
                job=jobs.get(event.id),
            )
            for event in events
        ]

    async def add_wiki(
        self, session: AsyncSession, context: EventContext, domain: str
    ) -> EventWiki:
        """Attach a new wiki to the event, within the caller's transaction."""
        wiki = await self._wiki_dao.create(session, event_id=context.id, domain=domain)
        context.wikis.append(wiki)
        return wiki

    async def remove_wiki(
        self, session: AsyncSession, context: EventContext, wiki: EventWiki
    ) -> None:
        """Detach a wiki (and, by cascade, its stats) from the event."""
        await self._wiki_dao.delete(session, wiki.id)
        context.wikis.remove(wiki)

    async def mark_processed(
        self, session: AsyncSession, context: EventContext, when: datetime
    ) -> None:
        """Set the event's ``stats_updated_at`` timestamp."""
        await self._event_dao.set_stats_updated_at(session, context.id, when)
        context.event.stats_updated_at = when
