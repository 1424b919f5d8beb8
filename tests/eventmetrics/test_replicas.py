"""Tests for ReplicaClient, ReplicaQueries and QuotaMonitor (mocked engines)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import DBAPIError

from eventmetrics.replicas import QueryTimeoutError, ReplicaError, ReplicaOverloadedError
from eventmetrics.replicas.client import ReplicaClient
from eventmetrics.replicas.queries import (
    COMMONS_DB,
    WIKIDATA_DB,
    PagesEdited,
    ReplicaQueries,
    check_db_name,
    mw_timestamp,
)
from eventmetrics.replicas.quota import QuotaMonitor

# ── Helpers ──────────────────────────────────────────────────────────────────


def _mock_engine(rows=None, error: Exception | None = None):
    """Engine whose connection returns *rows* (list of dicts) or raises *error*."""
    result = MagicMock()
    result.mappings.return_value.all.return_value = rows or []
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=result, side_effect=error)

    @asynccontextmanager
    async def _connect():
        yield conn

    engine = MagicMock()
    engine.connect = _connect
    return engine, conn


def _db_error(code: int) -> DBAPIError:
    return DBAPIError("SELECT 1", {}, Exception(code, "server says no"))


def _mock_client() -> MagicMock:
    client = MagicMock(spec=ReplicaClient)
    client.fetch_all = AsyncMock(return_value=[])
    client.fetch_column = AsyncMock(return_value=[])
    client.fetch_scalar = AsyncMock(return_value=None)
    return client


# ── ReplicaClient ────────────────────────────────────────────────────────────


class TestReplicaClient:
    async def test_statement_timeout_prefix(self):
        engine, conn = _mock_engine(rows=[{"n": 1}])
        client = ReplicaClient(engine, query_timeout=900)

        assert await client.fetch_scalar("SELECT 1 AS n") == 1

        sql = str(conn.execute.call_args.args[0])
        assert sql.startswith("SET STATEMENT max_statement_time = 900 FOR\n")
        assert sql.endswith("SELECT 1 AS n")

    async def test_timeout_override_and_disable(self):
        engine, conn = _mock_engine()
        client = ReplicaClient(engine, query_timeout=900)

        await client.fetch_all("SELECT 1", timeout=30)
        assert "max_statement_time = 30 FOR" in str(conn.execute.call_args.args[0])

        await client.fetch_all("SELECT 1", timeout=0)
        assert str(conn.execute.call_args.args[0]) == "SELECT 1"

    async def test_expanding_params(self):
        engine, conn = _mock_engine()
        client = ReplicaClient(engine)

        await client.fetch_all(
            "SELECT x FROM t WHERE name IN :names", {"names": ["a", "b"]}, expanding=("names",)
        )

        stmt, params = conn.execute.call_args.args
        assert stmt._bindparams["names"].expanding
        assert params == {"names": ["a", "b"]}

    async def test_fetch_column(self):
        engine, _ = _mock_engine(rows=[{"name": "a"}, {"name": "b"}])
        client = ReplicaClient(engine)

        assert await client.fetch_column("SELECT name FROM t") == ["a", "b"]

    async def test_fetch_scalar_no_rows(self):
        engine, _ = _mock_engine(rows=[])
        assert await ReplicaClient(engine).fetch_scalar("SELECT 1") is None

    async def test_count_processes_has_no_timeout(self):
        engine, conn = _mock_engine(rows=[{"COUNT(*)": 4}])
        client = ReplicaClient(engine)

        assert await client.count_processes() == 4
        sql = str(conn.execute.call_args.args[0])
        assert sql == "SELECT COUNT(*) FROM information_schema.PROCESSLIST"

    async def test_overload_error(self):
        engine, _ = _mock_engine(error=_db_error(1226))
        with pytest.raises(ReplicaOverloadedError):
            await ReplicaClient(engine).fetch_all("SELECT 1")

    async def test_timeout_error(self):
        engine, _ = _mock_engine(error=_db_error(1969))
        with pytest.raises(QueryTimeoutError, match="900 seconds"):
            await ReplicaClient(engine, query_timeout=900).fetch_all("SELECT 1")

    async def test_other_errors_propagate(self):
        error = _db_error(1045)
        engine, _ = _mock_engine(error=error)
        with pytest.raises(DBAPIError) as exc_info:
            await ReplicaClient(engine).fetch_all("SELECT 1")
        assert exc_info.value is error

    def test_replica_errors_share_base(self):
        assert issubclass(QueryTimeoutError, ReplicaError)
        assert issubclass(ReplicaOverloadedError, ReplicaError)


# ── helpers ──────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_mw_timestamp_naive(self):
        assert mw_timestamp(datetime(2024, 3, 5, 7, 8, 9)) == "20240305070809"

    def test_mw_timestamp_converts_to_utc(self):
        tz = timezone(timedelta(hours=2))
        assert mw_timestamp(datetime(2024, 3, 5, 1, 0, tzinfo=tz)) == "20240304230000"

    @pytest.mark.parametrize("name", ["enwiki_p", "commonswiki_p", "zh_min_nanwiki_p"])
    def test_valid_db_names(self, name):
        assert check_db_name(name) == name

    @pytest.mark.parametrize("name", ["enwiki", "enwiki_p; DROP TABLE page", "EnWiki_p", ""])
    def test_invalid_db_names(self, name):
        with pytest.raises(ValueError):
            check_db_name(name)


# ── ReplicaQueries ───────────────────────────────────────────────────────────

START = datetime(2024, 5, 1, tzinfo=timezone.utc)
END = datetime(2024, 5, 2, tzinfo=timezone.utc)


class TestReplicaQueries:
    async def test_empty_inputs_never_query(self):
        client = _mock_client()
        q = ReplicaQueries(client)

        assert await q.get_new_editors([], START, END, 15) == []
        assert await q.get_common_wikis([]) == []
        assert await q.get_common_lang_wiki_domains([], "wikipedia") == []
        assert await q.get_pages_edited("enwiki_p", START, END, []) == PagesEdited()
        assert await q.get_edit_count("enwiki_p", [], START, END, ["Alice"]) == 0
        assert await q.get_bytes_changed("enwiki_p", [], START, END, ["Alice"]) == 0
        assert await q.get_files_uploaded(COMMONS_DB, START, END, []) == []
        assert await q.get_used_files(COMMONS_DB, []) == 0
        assert await q.get_pages_using_files(COMMONS_DB, []) == []
        assert await q.get_page_titles("enwiki_p", []) == []
        assert await q.get_users_retained("enwiki_p", END, []) == []

        client.fetch_all.assert_not_awaited()
        client.fetch_column.assert_not_awaited()
        client.fetch_scalar.assert_not_awaited()

    async def test_new_editor_window_starts_before_event(self):
        client = _mock_client()
        client.fetch_column.return_value = ["Alice"]

        result = await ReplicaQueries(client).get_new_editors(["Alice", "Bob"], START, END, 15)

        assert result == ["Alice"]
        params = client.fetch_column.call_args.args[1]
        assert params["start"] == "20240416000000"
        assert params["end"] == "20240502000000"
        assert client.fetch_column.call_args.kwargs["expanding"] == ("usernames",)

    async def test_db_name_cached(self):
        client = _mock_client()
        client.fetch_scalar.return_value = "enwiki_p"
        q = ReplicaQueries(client)

        assert await q.get_db_name_from_domain("en.wikipedia") == "enwiki_p"
        assert await q.get_db_name_from_domain("en.wikipedia") == "enwiki_p"
        client.fetch_scalar.assert_awaited_once()
        assert client.fetch_scalar.call_args.args[1] == {"url": "https://en.wikipedia.org"}

    async def test_unknown_domain(self):
        client = _mock_client()
        with pytest.raises(ReplicaError, match="unable to determine database name"):
            await ReplicaQueries(client).get_db_name_from_domain("xx.wikipedia")

    async def test_domain_from_db_name(self):
        client = _mock_client()
        client.fetch_scalar.return_value = "https://fr.wikisource.org"
        q = ReplicaQueries(client)

        assert await q.get_domain_from_db_name("frwikisource_p") == "fr.wikisource"
        assert await q.get_domain_from_db_name("frwikisource_p") == "fr.wikisource"
        client.fetch_scalar.assert_awaited_once()
        assert client.fetch_scalar.call_args.args[1] == {"dbname": "frwikisource"}

    async def test_domain_from_unknown_db_name(self):
        client = _mock_client()
        assert await ReplicaQueries(client).get_domain_from_db_name("closedwiki_p") is None

    async def test_pages_edited(self):
        """A page created in the window counts as created only, never also as improved."""
        client = _mock_client()
        client.fetch_all.return_value = [
            {"page_id": 10, "created": 1},
            {"page_id": 11, "created": 0},
            {"page_id": 12, "created": 1},
        ]

        result = await ReplicaQueries(client).get_pages_edited(
            WIKIDATA_DB, START, END, ["Alice"]
        )

        assert result == PagesEdited(created=[10, 12], improved=[11])
        assert result.all == [10, 12, 11]
        sql = client.fetch_all.call_args.args[0]
        assert "wikidatawiki_p.revision_userindex" in sql
        assert "page_is_redirect = 0" in sql
        assert "MAX(rev_parent_id = 0) AS created" in sql
        assert "GROUP BY page_id" in sql
        assert "COUNT(DISTINCT page_title)" not in sql

    async def test_pages_edited_rejects_bad_db_name(self):
        client = _mock_client()
        with pytest.raises(ValueError):
            await ReplicaQueries(client).get_pages_edited("x; --", START, END, ["Alice"])
        client.fetch_all.assert_not_awaited()

    async def test_edit_count(self):
        client = _mock_client()
        client.fetch_scalar.return_value = 14

        result = await ReplicaQueries(client).get_edit_count(
            "enwiki_p", [10, 11], START, END, ["Alice"]
        )

        assert result == 14
        assert client.fetch_scalar.call_args.args[1]["page_ids"] == [10, 11]
        assert client.fetch_scalar.call_args.kwargs["expanding"] == ("page_ids", "usernames")

    async def test_bytes_changed(self):
        client = _mock_client()
        client.fetch_scalar.return_value = -250

        result = await ReplicaQueries(client).get_bytes_changed(
            "enwiki_p", [10], START, END, ["Alice"]
        )

        assert result == -250
        sql = client.fetch_scalar.call_args.args[0]
        assert "LEFT JOIN enwiki_p.revision prev ON cur.rev_parent_id = prev.rev_id" in sql
        assert "FROM enwiki_p.page WHERE page_id IN :page_ids" in sql

    async def test_files_uploaded(self):
        client = _mock_client()
        client.fetch_column.return_value = [5, 6, 7]

        result = await ReplicaQueries(client).get_files_uploaded(COMMONS_DB, START, END, ["A"])

        assert result == [5, 6, 7]
        sql = client.fetch_column.call_args.args[0]
        assert "page_namespace = 6" in sql
        assert "rev_parent_id = 0" in sql

    async def test_used_files_global_on_commons(self):
        client = _mock_client()
        client.fetch_scalar.return_value = 2

        assert await ReplicaQueries(client).get_used_files(COMMONS_DB, [5, 6]) == 2
        assert "commonswiki_p.globalimagelinks" in client.fetch_scalar.call_args.args[0]

    async def test_used_files_local(self):
        client = _mock_client()
        client.fetch_scalar.return_value = 1

        assert await ReplicaQueries(client).get_used_files("enwiki_p", [5]) == 1
        assert "enwiki_p.imagelinks" in client.fetch_scalar.call_args.args[0]

    async def test_pages_using_files_on_commons(self):
        client = _mock_client()
        client.fetch_all.return_value = [
            {"db_name": "enwiki_p", "page_id": 100},
            {"db_name": "dewiki_p", "page_id": 7},
        ]

        result = await ReplicaQueries(client).get_pages_using_files(COMMONS_DB, [5])

        assert result == [("enwiki_p", 100), ("dewiki_p", 7)]

    async def test_pages_using_files_local(self):
        client = _mock_client()
        client.fetch_column.return_value = [100, 101]

        result = await ReplicaQueries(client).get_pages_using_files("frwiki_p", [5])

        assert result == [("frwiki_p", 100), ("frwiki_p", 101)]

    async def test_page_titles_decoded(self):
        client = _mock_client()
        client.fetch_column.return_value = [b"Caf\xc3\xa9", "Tea"]

        assert await ReplicaQueries(client).get_page_titles("enwiki_p", [1, 2]) == ["Café", "Tea"]

    async def test_users_retained(self):
        client = _mock_client()
        client.fetch_column.return_value = ["Bob"]

        result = await ReplicaQueries(client).get_users_retained("frwiki_p", END, ["Alice", "Bob"])

        assert result == ["Bob"]
        assert client.fetch_column.call_args.args[1]["start"] == "20240502000000"


# ── QuotaMonitor ─────────────────────────────────────────────────────────────


def _slice(count: int) -> MagicMock:
    client = MagicMock(spec=ReplicaClient)
    client.count_processes = AsyncMock(return_value=count)
    return client


class TestQuotaMonitor:
    async def test_uses_busiest_slice(self):
        monitor = QuotaMonitor([_slice(1), _slice(3), _slice(0)])
        assert await monitor.open_connections() == 3
        assert await monitor.available_quota() == 2

    async def test_never_negative(self):
        monitor = QuotaMonitor([_slice(9)])
        assert await monitor.available_quota() == 0

    async def test_custom_hard_quota(self):
        monitor = QuotaMonitor([_slice(2)], hard_quota=10)
        assert await monitor.available_quota() == 8

    async def test_monitoring_failure_propagates(self):
        broken = _slice(0)
        broken.count_processes.side_effect = ReplicaOverloadedError("full")
        with pytest.raises(ReplicaOverloadedError):
            await QuotaMonitor([broken]).available_quota()

    def test_requires_a_slice(self):
        with pytest.raises(ValueError):
            QuotaMonitor([])
