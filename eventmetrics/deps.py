"""Dependency wiring — DAO/service singletons, session factory and engines."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventmetrics.core.config import Settings
from eventmetrics.core.database import create_engine, create_session_factory
from eventmetrics.dao.event_dao import EventDAO
from eventmetrics.dao.event_stat_dao import EventStatDAO, EventWikiStatDAO
from eventmetrics.dao.event_wiki_dao import EventWikiDAO
from eventmetrics.dao.job_dao import JobDAO
from eventmetrics.dao.participant_dao import ParticipantDAO
from eventmetrics.engines.event_processor.pageviews_client import PageviewsClient
from eventmetrics.engines.event_processor.processor import EventProcessor
from eventmetrics.engines.job_handler.runner import JobHandler
from eventmetrics.replicas.client import ReplicaClient
from eventmetrics.replicas.queries import ReplicaQueries
from eventmetrics.replicas.quota import QuotaMonitor
from eventmetrics.services.event_service import EventService
from eventmetrics.services.job_service import JobService

# ---------------------------------------------------------------------------
# DAO singletons
# ---------------------------------------------------------------------------
_event_dao = EventDAO()
_participant_dao = ParticipantDAO()
_event_wiki_dao = EventWikiDAO()
_job_dao = JobDAO()
_event_stat_dao = EventStatDAO()
_event_wiki_stat_dao = EventWikiStatDAO()

# ---------------------------------------------------------------------------
# Service singletons
# ---------------------------------------------------------------------------
_event_service = EventService(_event_dao, _participant_dao, _event_wiki_dao, _job_dao)
_job_service = JobService(_job_dao)

# ---------------------------------------------------------------------------
# Engines (initialised by the CLI)
# ---------------------------------------------------------------------------
_engine: AsyncEngine | None = None
_replica_clients: list[ReplicaClient] = []
_pageviews_client: PageviewsClient | None = None


def init_session_factory(database_url: str) -> async_sessionmaker[AsyncSession]:
    """Create the application engine and session factory. Called once at startup."""
    global _engine  # noqa: PLW0603
    _engine = create_engine(database_url)
    return create_session_factory(_engine)


def build_job_handler(settings: Settings) -> JobHandler:
    """Wire replica clients, the pageviews client, the event processor and the quota monitor."""
    global _pageviews_client  # noqa: PLW0603
    main_replica = ReplicaClient.from_url(settings.replica_url, settings.query_timeout)
    _replica_clients.append(main_replica)

    slices = []
    for url in settings.slice_urls:
        if url == settings.replica_url:
            slices.append(main_replica)
        else:
            client = ReplicaClient.from_url(url, settings.query_timeout)
            _replica_clients.append(client)
            slices.append(client)

    _pageviews_client = PageviewsClient()

    processor = EventProcessor(
        _event_service,
        _job_service,
        _event_stat_dao,
        _event_wiki_stat_dao,
        ReplicaQueries(main_replica),
        _pageviews_client,
        new_editor_offset=settings.new_editor_offset,
        retention_offset=settings.retention_offset,
        pageviews_avg_days=settings.pageviews_avg_days,
    )
    return JobHandler(
        _job_service,
        _event_service,
        processor,
        QuotaMonitor(slices, hard_quota=settings.job_quota),
    )


async def dispose_engines() -> None:
    """Dispose the application engine, every replica engine and the pageviews client."""
    global _engine, _pageviews_client  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    while _replica_clients:
        await _replica_clients.pop().dispose()
    if _pageviews_client is not None:
        await _pageviews_client.close()
        _pageviews_client = None
