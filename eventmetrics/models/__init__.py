"""SQLAlchemy ORM models — one file per table."""

from eventmetrics.models.event import Event
from eventmetrics.models.event_stat import EventStat, EventWikiStat
from eventmetrics.models.event_wiki import EventWiki
from eventmetrics.models.job import Job
from eventmetrics.models.participant import Participant

__all__ = [
    "Event",
    "Participant",
    "EventWiki",
    "Job",
    "EventStat",
    "EventWikiStat",
]
