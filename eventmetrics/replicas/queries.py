"""ReplicaQueries — the statistics queries run against the wiki replicas."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from eventmetrics.replicas import ReplicaError
from eventmetrics.replicas.client import ReplicaClient

_DB_NAME_RE = re.compile(r"^[a-z0-9_]+_p$")
_DOMAIN_URL_RE = re.compile(r"^https?://(.*)\.org$")

COMMONS_DB = "commonswiki_p"
WIKIDATA_DB = "wikidatawiki_p"

FILE_NAMESPACE = 6
# Cap on the page IDs returned for one wiki.
MAX_PAGES = 50000


def mw_timestamp(value: datetime) -> str:
    """MediaWiki timestamp (``YYYYMMDDHHMMSS``, UTC) for *value*."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y%m%d%H%M%S")


def check_db_name(db_name: str) -> str:
    """Database names are interpolated into SQL, so only ``[a-z0-9_]+_p`` passes."""
    if not _DB_NAME_RE.match(db_name):
        raise ValueError(f"invalid replica database name: {db_name!r}")
    return db_name


@dataclass
class PagesEdited:
    """Page IDs a set of users created or improved on one wiki."""

    created: list[int] = field(default_factory=list)
    improved: list[int] = field(default_factory=list)

    @property
    def all(self) -> list[int]:
        return self.created + self.improved


class ReplicaQueries:
    """Read-only statistics queries.

    Usernames are matched through the ``actor_*`` views; revisions are read
    from ``revision_userindex``, which is indexed on the actor.
    """

    def __init__(self, client: ReplicaClient) -> None:
        self._client = client
        self._db_names: dict[str, str] = {}
        self._domains: dict[str, str | None] = {}

    # ── global accounts (CentralAuth) ────────────────────────────────────

    async def get_new_editors(
        self,
        usernames: list[str],
        start: datetime,
        end: datetime,
        offset_days: int,
    ) -> list[str]:
        """Participants whose global account was registered shortly before or during the event.

        The window opens *offset_days* before *start* and closes at *end*.
        """
        if not usernames:
            return []
        return await self._client.fetch_column(
            "SELECT gu_name FROM centralauth_p.globaluser "
            "WHERE gu_name IN :usernames "
            "AND gu_registration BETWEEN :start AND :end",
            {
                "usernames": usernames,
                "start": mw_timestamp(start - timedelta(days=offset_days)),
                "end": mw_timestamp(end),
            },
            expanding=("usernames",),
        )

    async def get_common_wikis(self, usernames: list[str]) -> list[str]:
        """Database names of wikis where any of the users has an attached account."""
        if not usernames:
            return []
        return await self._client.fetch_column(
            "SELECT DISTINCT CONCAT(lu_wiki, '_p') AS dbname FROM centralauth_p.localuser "
            "WHERE lu_name IN :usernames",
            {"usernames": usernames},
            expanding=("usernames",),
        )

    async def get_common_lang_wiki_domains(self, usernames: list[str], family: str) -> list[str]:
        """Domains (``lang.project``) in *family* where the users hold accounts."""
        if not usernames:
            return []
        # 'lang' does not always match the subdomain, so cut it out of the URL.
        return await self._client.fetch_column(
            "SELECT DISTINCT SUBSTRING(url, 9, LENGTH(url) - 12) AS domain "
            "FROM centralauth_p.localuser "
            "JOIN meta_p.wiki ON lu_wiki = dbname "
            "WHERE family = :family AND lu_name IN :usernames",
            {"family": family, "usernames": usernames},
            expanding=("usernames",),
        )

    async def get_db_name_from_domain(self, domain: str) -> str:
        """``en.wikipedia`` -> ``enwiki_p``. Cached per instance.

        Raises :class:`ReplicaError` for an unknown domain.
        """
        if domain in self._db_names:
            return self._db_names[domain]
        db_name = await self._client.fetch_scalar(
            "SELECT CONCAT(dbname, '_p') AS dbname FROM meta_p.wiki WHERE url = :url",
            {"url": f"https://{domain}.org"},
            timeout=0,
        )
        if db_name is None:
            raise ReplicaError(f"unable to determine database name for domain {domain!r}")
        self._db_names[domain] = db_name
        return db_name

    async def get_domain_from_db_name(self, db_name: str) -> str | None:
        """``enwiki_p`` -> ``en.wikipedia``; None for a wiki missing from ``meta_p``."""
        if db_name in self._domains:
            return self._domains[db_name]
        url = await self._client.fetch_scalar(
            "SELECT url FROM meta_p.wiki WHERE dbname = :dbname",
            {"dbname": db_name.removesuffix("_p")},
            timeout=0,
        )
        match = _DOMAIN_URL_RE.match(url or "")
        self._domains[db_name] = match.group(1) if match else None
        return self._domains[db_name]

    # ── per-wiki statistics ──────────────────────────────────────────────

    async def get_pages_edited(
        self,
        db_name: str,
        start: datetime,
        end: datetime,
        usernames: list[str],
    ) -> PagesEdited:
        """Mainspace, non-redirect pages the users created or improved in the window.

        A page with a parentless revision in the window counts as created
        only; the rest were improved. At most :data:`MAX_PAGES` pages.
        """
        if not usernames:
            return PagesEdited()
        db = check_db_name(db_name)
        rows = await self._client.fetch_all(
            "SELECT page_id, MAX(rev_parent_id = 0) AS created "
            f"FROM {db}.page "
            f"JOIN {db}.revision_userindex ON rev_page = page_id "
            f"JOIN {db}.actor_revision ON actor_id = rev_actor "
            "WHERE page_namespace = 0 "
            "AND page_is_redirect = 0 "
            "AND rev_timestamp BETWEEN :start AND :end "
            "AND actor_name IN :usernames "
            f"GROUP BY page_id LIMIT {MAX_PAGES}",
            {"start": mw_timestamp(start), "end": mw_timestamp(end), "usernames": usernames},
            expanding=("usernames",),
        )
        pages = PagesEdited()
        for row in rows:
            target = pages.created if row["created"] else pages.improved
            target.append(int(row["page_id"]))
        return pages

    async def get_edit_count(
        self,
        db_name: str,
        page_ids: list[int],
        start: datetime,
        end: datetime,
        usernames: list[str],
    ) -> int:
        """Revisions the users made to *page_ids* within the window."""
        if not page_ids or not usernames:
            return 0
        db = check_db_name(db_name)
        count = await self._client.fetch_scalar(
            "SELECT COUNT(*) AS total "
            f"FROM {db}.revision_userindex "
            f"JOIN {db}.actor_revision ON actor_id = rev_actor "
            "WHERE rev_page IN :page_ids "
            "AND rev_timestamp BETWEEN :start AND :end "
            "AND actor_name IN :usernames",
            {
                "page_ids": page_ids,
                "start": mw_timestamp(start),
                "end": mw_timestamp(end),
                "usernames": usernames,
            },
            expanding=("page_ids", "usernames"),
        )
        return int(count or 0)

    async def get_bytes_changed(
        self,
        db_name: str,
        page_ids: list[int],
        start: datetime,
        end: datetime,
        usernames: list[str],
    ) -> int:
        """Net size change of *page_ids* across the users' revisions in the window.

        Per page: length after the users' last revision minus length before
        their first one (0 for a page they created).
        """
        if not page_ids or not usernames:
            return 0
        db = check_db_name(db_name)
        users = (
            f"cur.rev_actor IN (SELECT actor_id FROM {db}.actor_revision "
            "WHERE actor_name IN :usernames)"
        )
        after = (
            f"SELECT COALESCE(cur.rev_len, 0) FROM {db}.revision_userindex cur "
            "WHERE cur.rev_page = page_id "
            f"AND cur.rev_timestamp BETWEEN :start AND :end AND {users} "
            "ORDER BY cur.rev_timestamp DESC LIMIT 1"
        )
        before = (
            f"SELECT COALESCE(prev.rev_len, 0) FROM {db}.revision_userindex cur "
            f"LEFT JOIN {db}.revision prev ON cur.rev_parent_id = prev.rev_id "
            "WHERE cur.rev_page = page_id "
            f"AND cur.rev_timestamp BETWEEN :start AND :end AND {users} "
            "ORDER BY cur.rev_timestamp ASC LIMIT 1"
        )
        diff = await self._client.fetch_scalar(
            "SELECT IFNULL(SUM(after_len), 0) - IFNULL(SUM(before_len), 0) AS diff FROM ("
            f"SELECT ({after}) AS after_len, ({before}) AS before_len "
            f"FROM {db}.page WHERE page_id IN :page_ids"
            ") AS page_sizes",
            {
                "page_ids": page_ids,
                "start": mw_timestamp(start),
                "end": mw_timestamp(end),
                "usernames": usernames,
            },
            expanding=("page_ids", "usernames"),
        )
        return int(diff or 0)

    async def get_files_uploaded(
        self,
        db_name: str,
        start: datetime,
        end: datetime,
        usernames: list[str],
    ) -> list[int]:
        """Page IDs of the files the users uploaded to *db_name* within the window."""
        if not usernames:
            return []
        db = check_db_name(db_name)
        page_ids = await self._client.fetch_column(
            "SELECT DISTINCT page_id "
            f"FROM {db}.page "
            f"JOIN {db}.revision_userindex ON rev_page = page_id "
            f"JOIN {db}.actor_revision ON actor_id = rev_actor "
            f"WHERE page_namespace = {FILE_NAMESPACE} "
            "AND page_is_redirect = 0 "
            "AND rev_parent_id = 0 "
            "AND rev_timestamp BETWEEN :start AND :end "
            "AND actor_name IN :usernames "
            f"LIMIT {MAX_PAGES}",
            {"start": mw_timestamp(start), "end": mw_timestamp(end), "usernames": usernames},
            expanding=("usernames",),
        )
        return [int(page_id) for page_id in page_ids]

    async def get_used_files(self, db_name: str, file_page_ids: list[int]) -> int:
        """How many of the files are used in mainspace; on Commons, on any wiki."""
        if not file_page_ids:
            return 0
        db = check_db_name(db_name)
        if db == COMMONS_DB:
            sql = (
                f"SELECT COUNT(DISTINCT gil_to) FROM {db}.globalimagelinks "
                f"JOIN {db}.page ON gil_to = page_title AND page_namespace = {FILE_NAMESPACE} "
                "WHERE gil_page_namespace_id = 0 AND page_id IN :page_ids"
            )
        else:
            sql = (
                f"SELECT COUNT(DISTINCT il_to) FROM {db}.imagelinks "
                f"JOIN {db}.page ON il_to = page_title AND page_namespace = {FILE_NAMESPACE} "
                "WHERE il_from_namespace = 0 AND page_id IN :page_ids"
            )
        count = await self._client.fetch_scalar(
            sql, {"page_ids": file_page_ids}, expanding=("page_ids",)
        )
        return int(count or 0)

    async def get_pages_using_files(
        self, db_name: str, file_page_ids: list[int]
    ) -> list[tuple[str, int]]:
        """``(db_name, page_id)`` of every mainspace page embedding one of the files."""
        if not file_page_ids:
            return []
        db = check_db_name(db_name)
        if db == COMMONS_DB:
            rows = await self._client.fetch_all(
                "SELECT DISTINCT CONCAT(gil_wiki, '_p') AS db_name, gil_page AS page_id "
                f"FROM {db}.globalimagelinks "
                f"JOIN {db}.page ON gil_to = page_title AND page_namespace = {FILE_NAMESPACE} "
                "WHERE gil_page_namespace_id = 0 AND page_id IN :page_ids",
                {"page_ids": file_page_ids},
                expanding=("page_ids",),
            )
            return [(row["db_name"], int(row["page_id"])) for row in rows]

        page_ids = await self._client.fetch_column(
            "SELECT DISTINCT il_from AS page_id "
            f"FROM {db}.imagelinks "
            f"JOIN {db}.page ON il_to = page_title AND page_namespace = {FILE_NAMESPACE} "
            "WHERE il_from_namespace = 0 AND page_id IN :page_ids",
            {"page_ids": file_page_ids},
            expanding=("page_ids",),
        )
        return [(db, int(page_id)) for page_id in page_ids]

    async def get_page_titles(self, db_name: str, page_ids: list[int]) -> list[str]:
        if not page_ids:
            return []
        db = check_db_name(db_name)
        titles = await self._client.fetch_column(
            f"SELECT page_title FROM {db}.page WHERE page_id IN :page_ids",
            {"page_ids": page_ids},
            expanding=("page_ids",),
        )
        # VARBINARY columns come back as bytes.
        return [t.decode() if isinstance(t, bytes) else t for t in titles]

    async def get_users_retained(
        self, db_name: str, since: datetime, usernames: list[str]
    ) -> list[str]:
        """Users with at least one edit on *db_name* after *since*."""
        if not usernames:
            return []
        db = check_db_name(db_name)
        return await self._client.fetch_column(
            "SELECT DISTINCT actor_name AS username "
            f"FROM {db}.revision_userindex "
            f"JOIN {db}.actor_revision ON actor_id = rev_actor "
            "WHERE rev_timestamp > :start "
            "AND actor_name IN :usernames",
            {"start": mw_timestamp(since), "usernames": usernames},
            expanding=("usernames",),
        )
