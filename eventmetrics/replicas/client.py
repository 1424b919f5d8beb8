"""ReplicaClient — raw SQL against a replica engine with statement timeouts."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from sqlalchemy import bindparam, text
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.sql.elements import TextClause

from eventmetrics.replicas import QueryTimeoutError, ReplicaOverloadedError

log = structlog.get_logger("eventmetrics.replicas")

ER_USER_LIMIT_REACHED = 1226
ER_STATEMENT_TIMEOUT = 1969

DEFAULT_QUERY_TIMEOUT = 900


def _error_code(exc: DBAPIError) -> int | None:
    """MySQL error number carried by the driver exception, if any."""
    args = getattr(exc.orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


class ReplicaClient:
    """Executes read-only queries on one replica endpoint.

    Every statement is prefixed with ``SET STATEMENT max_statement_time = N
    FOR`` so that a runaway query is killed server-side. Pass ``timeout=0``
    to run without a limit.
    """

    def __init__(self, engine: AsyncEngine, query_timeout: int = DEFAULT_QUERY_TIMEOUT) -> None:
        self._engine = engine
        self._query_timeout = query_timeout

    @classmethod
    def from_url(cls, url: str, query_timeout: int = DEFAULT_QUERY_TIMEOUT) -> ReplicaClient:
        engine = create_async_engine(url, pool_pre_ping=True, pool_size=2, max_overflow=0)
        return cls(engine, query_timeout)

    async def dispose(self) -> None:
        await self._engine.dispose()

    def _statement(
        self, sql: str, timeout: int | None, expanding: Sequence[str]
    ) -> tuple[TextClause, int]:
        effective = self._query_timeout if timeout is None else timeout
        if effective:
            sql = f"SET STATEMENT max_statement_time = {int(effective)} FOR\n{sql}"
        stmt = text(sql)
        if expanding:
            stmt = stmt.bindparams(*(bindparam(name, expanding=True) for name in expanding))
        return stmt, effective

    async def fetch_all(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        *,
        expanding: Sequence[str] = (),
        timeout: int | None = None,
    ) -> list[RowMapping]:
        """Run *sql* and return every row as a mapping.

        *expanding* names list parameters bound into ``IN :name`` clauses.
        Raises :class:`QueryTimeoutError` / :class:`ReplicaOverloadedError`
        for the corresponding server errors; anything else propagates.
        """
        stmt, effective = self._statement(sql, timeout, expanding)
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(stmt, params or {})
                return list(result.mappings().all())
        except DBAPIError as exc:
            code = _error_code(exc)
            if code == ER_USER_LIMIT_REACHED:
                log.warning("replica.overloaded")
                raise ReplicaOverloadedError("replica connection limit reached") from exc
            if code == ER_STATEMENT_TIMEOUT:
                log.warning("replica.query_timeout", timeout=effective)
                raise QueryTimeoutError(f"query exceeded {effective} seconds") from exc
            raise

    async def fetch_column(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        *,
        expanding: Sequence[str] = (),
        timeout: int | None = None,
    ) -> list[Any]:
        """First column of every row."""
        rows = await self.fetch_all(sql, params, expanding=expanding, timeout=timeout)
        return [next(iter(row.values())) for row in rows]

    async def fetch_scalar(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        *,
        expanding: Sequence[str] = (),
        timeout: int | None = None,
    ) -> Any:
        """First column of the first row, or None when there are no rows."""
        column = await self.fetch_column(sql, params, expanding=expanding, timeout=timeout)
        return column[0] if column else None

    async def count_processes(self) -> int:
        """Number of connections currently open on this replica."""
        count = await self.fetch_scalar(
            "SELECT COUNT(*) FROM information_schema.PROCESSLIST", timeout=0
        )
        return int(count or 0)
