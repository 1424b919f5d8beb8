"""EventProcessor — generates and stores statistics for a single event."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from eventmetrics.dao.event_stat_dao import EventStatDAO, EventWikiStatDAO
from eventmetrics.engines.event_processor.models import ProcessResult, StatValue
from eventmetrics.engines.event_processor.pageviews_client import PageviewsClient
from eventmetrics.engines.event_processor.retention import count_retained
from eventmetrics.models.event_stat import (
    BYTE_DIFFERENCE,
    EDITS,
    FILE_USAGE,
    FILES_UPLOADED,
    ITEMS_CREATED,
    ITEMS_IMPROVED,
    NEW_EDITORS,
    PAGES_CREATED,
    PAGES_CREATED_PAGEVIEWS,
    PAGES_IMPROVED,
    PAGES_IMPROVED_PAGEVIEWS_AVG,
    PAGES_USING_FILES,
    PAGES_USING_FILES_PAGEVIEWS_AVG,
    PARTICIPANTS,
    RETENTION,
)
from eventmetrics.models.event_wiki import EventWiki
from eventmetrics.replicas.queries import WIKIDATA_DB, PagesEdited, ReplicaQueries
from eventmetrics.services import InvalidEventError
from eventmetrics.services.event_service import EventContext, EventService
from eventmetrics.services.job_service import JobService

log = structlog.get_logger("eventmetrics.engine")

DEFAULT_NEW_EDITOR_OFFSET = 15
DEFAULT_RETENTION_OFFSET = 15
DEFAULT_PAGEVIEWS_AVG_DAYS = 30

# Pageviews mean little on these families.
NO_PAGEVIEWS_FAMILIES = ("commons", "wikidata")

# Event totals saved once any Commons or text wiki was processed.
CONTRIBUTION_TOTALS = (
    EDITS,
    PAGES_CREATED,
    PAGES_IMPROVED,
    BYTE_DIFFERENCE,
    FILES_UPLOADED,
    FILE_USAGE,
    PAGES_USING_FILES,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Contributions:
    """Per-run working set shared by the contribution and pageview steps."""

    totals: dict[str, int] = field(default_factory=lambda: dict.fromkeys(CONTRIBUTION_TOTALS, 0))
    # domain -> pages created / improved on that text wiki
    pages: dict[str, PagesEdited] = field(default_factory=dict)
    # (db_name, page_id) of mainspace pages embedding an uploaded file
    pages_using_files: list[tuple[str, int]] = field(default_factory=list)
    save_totals: bool = False


class EventProcessor:
    """Runs the statistics pipeline for one event inside the caller's session.

    Steps, in order: new editors, wikis discovered through ``*.family``
    entries, per-wiki contributions (edits, pages, bytes, files, Wikidata
    items), pageviews, removal of discovered wikis that scored nothing,
    participants, retention, job removal, ``stats_updated_at``.
    The session is flushed but never committed here; the caller commits
    once so the whole run lands atomically.
    """

    def __init__(
        self,
        event_service: EventService,
        job_service: JobService,
        event_stat_dao: EventStatDAO,
        event_wiki_stat_dao: EventWikiStatDAO,
        replicas: ReplicaQueries,
        pageviews: PageviewsClient,
        *,
        new_editor_offset: int = DEFAULT_NEW_EDITOR_OFFSET,
        retention_offset: int = DEFAULT_RETENTION_OFFSET,
        pageviews_avg_days: int = DEFAULT_PAGEVIEWS_AVG_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._event_service = event_service
        self._job_service = job_service
        self._stat_dao = event_stat_dao
        self._wiki_stat_dao = event_wiki_stat_dao
        self._replicas = replicas
        self._pageviews = pageviews
        self._new_editor_offset = new_editor_offset
        self._retention_offset = retention_offset
        self._pageviews_avg_days = pageviews_avg_days
        self._clock = clock

    async def process(self, session: AsyncSession, context: EventContext) -> ProcessResult:
        """Compute every statistic for the event and persist it.

        Raises :class:`InvalidEventError` if the event has no start or end.
        Replica errors propagate; nothing is committed in that case.
        """
        start = context.event.start_utc
        end = context.event.end_utc
        if start is None or end is None:
            raise InvalidEventError(f"event {context.id} has no start or end date")

        log.info(
            "event.processing",
            event_id=str(context.id),
            participants=len(context.participants),
            wikis=len(context.wikis),
        )
        result = ProcessResult(event_id=context.id)

        await self._set_new_editors(session, context, result, start, end)
        await self._create_family_wikis(session, context)
        contributions = await self._set_contributions(session, context, result, start, end)
        await self._set_pageviews(session, context, result, contributions, start)
        await self._remove_empty_family_wikis(session, context, result)
        await self._save_event_stat(
            session, context, result, PARTICIPANTS, len(context.participants)
        )
        await self._set_retention(session, context, result, end)

        await self._job_service.remove_for_event(session, context.id)
        context.job = None
        await self._event_service.mark_processed(session, context, self._clock())
        await session.flush()

        log.info(
            "event.processed",
            event_id=str(context.id),
            stats={metric: stat.value for metric, stat in result.stats.items()},
            wikis=len(result.wikis),
        )
        return result

    # ── stat writers ─────────────────────────────────────────────────────

    async def _save_event_stat(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        metric: str,
        value: int,
        offset: int | None = None,
    ) -> None:
        await self._stat_dao.upsert(session, context.id, metric, value, offset)
        result.stats[metric] = StatValue(value, offset)

    async def _save_wiki_stat(
        self,
        session: AsyncSession,
        wiki: EventWiki,
        result: ProcessResult,
        metric: str,
        value: int,
        offset: int | None = None,
    ) -> None:
        await self._wiki_stat_dao.upsert(session, wiki.id, metric, value, offset)
        result.wikis.setdefault(wiki.domain, {})[metric] = StatValue(value, offset)

    async def _record(
        self,
        session: AsyncSession,
        wiki: EventWiki,
        result: ProcessResult,
        run: _Contributions,
        metric: str,
        value: int,
    ) -> None:
        """Save a per-wiki stat and add it to the event total."""
        await self._save_wiki_stat(session, wiki, result, metric, value)
        run.totals[metric] += value

    # ── pipeline steps ───────────────────────────────────────────────────

    async def _set_new_editors(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        start: datetime,
        end: datetime,
    ) -> None:
        new_editors = await self._replicas.get_new_editors(
            context.participants, start, end, self._new_editor_offset
        )
        await self._save_event_stat(
            session, context, result, NEW_EDITORS, len(new_editors), self._new_editor_offset
        )

    async def _create_family_wikis(self, session: AsyncSession, context: EventContext) -> None:
        """Add a concrete wiki for every ``*.family`` language the participants use."""
        for family in context.family_wikis():
            domains = await self._replicas.get_common_lang_wiki_domains(
                context.participants, family.family_name
            )
            existing = {wiki.domain for wiki in context.wikis}
            for domain in sorted(set(domains) - existing):
                await self._event_service.add_wiki(session, context, domain)
                log.debug("event.wiki_added", event_id=str(context.id), domain=domain)

    async def _set_contributions(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        start: datetime,
        end: datetime,
    ) -> _Contributions:
        run = _Contributions()

        for wiki in list(context.wikis):
            if wiki.is_family:
                continue

            if wiki.family_name == "wikidata":
                await self._set_wikidata_items(session, context, result, run, wiki, start, end)
                continue

            db_name = await self._replicas.get_db_name_from_domain(wiki.domain)
            if wiki.family_name != "commons":
                await self._set_text_contributions(
                    session, context, result, run, wiki, db_name, start, end
                )
            await self._set_files_uploaded(
                session, context, result, run, wiki, db_name, start, end
            )
            run.save_totals = True

        if run.save_totals:
            for metric, value in run.totals.items():
                await self._save_event_stat(session, context, result, metric, value)
        return run

    async def _set_text_contributions(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        run: _Contributions,
        wiki: EventWiki,
        db_name: str,
        start: datetime,
        end: datetime,
    ) -> None:
        usernames = context.participants
        pages = await self._replicas.get_pages_edited(db_name, start, end, usernames)
        edits = await self._replicas.get_edit_count(db_name, pages.all, start, end, usernames)
        diff = await self._replicas.get_bytes_changed(db_name, pages.all, start, end, usernames)
        run.pages[wiki.domain] = pages

        await self._record(session, wiki, result, run, EDITS, edits)
        await self._record(session, wiki, result, run, PAGES_CREATED, len(pages.created))
        await self._record(session, wiki, result, run, PAGES_IMPROVED, len(pages.improved))
        await self._record(session, wiki, result, run, BYTE_DIFFERENCE, diff)

    async def _set_files_uploaded(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        run: _Contributions,
        wiki: EventWiki,
        db_name: str,
        start: datetime,
        end: datetime,
    ) -> None:
        if not wiki.can_have_files_uploaded:
            return
        files = await self._replicas.get_files_uploaded(
            db_name, start, end, context.participants
        )
        used = await self._replicas.get_used_files(db_name, files)
        using = await self._replicas.get_pages_using_files(db_name, files)
        run.pages_using_files.extend(using)

        await self._record(session, wiki, result, run, FILES_UPLOADED, len(files))
        await self._record(session, wiki, result, run, FILE_USAGE, used)
        await self._record(session, wiki, result, run, PAGES_USING_FILES, len(using))

    async def _set_wikidata_items(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        run: _Contributions,
        wiki: EventWiki,
        start: datetime,
        end: datetime,
    ) -> None:
        usernames = context.participants
        items = await self._replicas.get_pages_edited(WIKIDATA_DB, start, end, usernames)
        edits = await self._replicas.get_edit_count(WIKIDATA_DB, items.all, start, end, usernames)

        await self._record(session, wiki, result, run, EDITS, edits)
        counts = ((ITEMS_CREATED, len(items.created)), (ITEMS_IMPROVED, len(items.improved)))
        for metric, value in counts:
            await self._save_wiki_stat(session, wiki, result, metric, value)
            await self._save_event_stat(session, context, result, metric, value)

    async def _set_pageviews(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        run: _Contributions,
        start: datetime,
    ) -> None:
        """Views of pages created since the start, and recent daily averages."""
        # The API only has complete days.
        until = (self._clock() - timedelta(days=1)).date()
        days = self._pageviews_avg_days
        created_total = 0
        improved_total = 0

        for wiki in context.wikis:
            pages = run.pages.get(wiki.domain)
            if pages is None or wiki.family_name in NO_PAGEVIEWS_FAMILIES:
                continue
            db_name = await self._replicas.get_db_name_from_domain(wiki.domain)
            created = await self._pageviews.get_pageviews(
                wiki.domain,
                await self._replicas.get_page_titles(db_name, pages.created),
                start.date(),
                until,
            )
            improved = await self._pageviews.get_avg_pageviews(
                wiki.domain,
                await self._replicas.get_page_titles(db_name, pages.improved),
                until,
                days,
            )
            await self._save_wiki_stat(session, wiki, result, PAGES_CREATED_PAGEVIEWS, created)
            await self._save_wiki_stat(
                session, wiki, result, PAGES_IMPROVED_PAGEVIEWS_AVG, improved, days
            )
            created_total += created
            improved_total += improved

        files_avg = await self._files_pageviews(run.pages_using_files, until, days)

        await self._save_event_stat(
            session, context, result, PAGES_CREATED_PAGEVIEWS, created_total
        )
        await self._save_event_stat(
            session, context, result, PAGES_IMPROVED_PAGEVIEWS_AVG, improved_total, days
        )
        await self._save_event_stat(
            session, context, result, PAGES_USING_FILES_PAGEVIEWS_AVG, files_avg, days
        )

    async def _files_pageviews(
        self, pages_using_files: list[tuple[str, int]], until: date, days: int
    ) -> int:
        by_db: dict[str, list[int]] = {}
        for db_name, page_id in pages_using_files:
            by_db.setdefault(db_name, []).append(page_id)

        total = 0
        for db_name in sorted(by_db):
            domain = await self._replicas.get_domain_from_db_name(db_name)
            if domain is None:
                log.debug("event.unknown_wiki", db_name=db_name)
                continue
            titles = await self._replicas.get_page_titles(db_name, by_db[db_name])
            total += await self._pageviews.get_avg_pageviews(domain, titles, until, days)
        return total

    async def _remove_empty_family_wikis(
        self, session: AsyncSession, context: EventContext, result: ProcessResult
    ) -> None:
        """Drop wikis reached through a ``*.family`` entry whose stats are all zero."""
        for family in context.family_wikis():
            for wiki in context.child_wikis(family.family_name):
                stats = result.wikis.get(wiki.domain, {})
                if sum(stat.value for stat in stats.values()) > 0:
                    continue
                result.wikis.pop(wiki.domain, None)
                await self._event_service.remove_wiki(session, context, wiki)
                log.debug("event.wiki_removed", event_id=str(context.id), domain=wiki.domain)

    async def _set_retention(
        self,
        session: AsyncSession,
        context: EventContext,
        result: ProcessResult,
        end: datetime,
    ) -> None:
        offset = self._retention_offset
        cutoff = end + timedelta(days=offset)
        usernames = context.participants

        if self._clock() < cutoff:
            # Too early to measure; report everyone as retained.
            retained = len(usernames)
            log.debug("event.retention_optimistic", event_id=str(context.id), cutoff=cutoff)
        else:
            db_names = sorted(await self._replicas.get_common_wikis(usernames))

            async def fetch(db_name: str) -> list[str]:
                return await self._replicas.get_users_retained(db_name, cutoff, usernames)

            outcome = await count_retained(db_names, usernames, fetch)
            retained = outcome.retained
            log.debug(
                "event.retention_counted",
                event_id=str(context.id),
                retained=retained,
                wikis_checked=outcome.wikis_checked,
                wikis_total=len(db_names),
            )

        await self._save_event_stat(session, context, result, RETENTION, retained, offset)
