"""Async client for the Wikimedia pageviews REST API."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import date, datetime, timedelta
from urllib.parse import quote

import httpx
import structlog

log = structlog.get_logger("eventmetrics.engine")

PAGEVIEWS_URL = "https://wikimedia.org/api/rest_v1/metrics/pageviews"
USER_AGENT = "EventMetrics (https://meta.wikimedia.org/wiki/Event_Metrics)"

_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 0.1  # seconds
_BATCH_SIZE = 100

DailyViews = list[tuple[date, int]]


def _batches(titles: list[str]) -> Iterator[list[str]]:
    for i in range(0, len(titles), _BATCH_SIZE):
        yield titles[i : i + _BATCH_SIZE]


def daily_average(views: DailyViews, end: date) -> int:
    """Average views per day from the first day with data through *end*."""
    if not views:
        return 0
    first = min(day for day, _ in views)
    days = (end - first).days + 1
    return round(sum(count for _, count in views) / days)


class PageviewsClient:
    """Per-article daily pageviews (``user`` agent, all access methods).

    Articles are fetched concurrently, a hundred at a time. An article the
    API has no data for counts as zero, and so does one whose request still
    fails after the retries.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=PAGEVIEWS_URL,
            headers={"User-Agent": USER_AGENT},
            timeout=httpx.Timeout(3.0, connect=1.5),
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PageviewsClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def get_pageviews(self, domain: str, titles: list[str], start: date, end: date) -> int:
        """Total views of *titles* on *domain* from *start* through *end*."""
        if start > end:
            return 0
        total = 0
        for batch in _batches(titles):
            results = await asyncio.gather(
                *(self.get_daily(domain, title, start, end) for title in batch)
            )
            total += sum(count for views in results for _, count in views)
        return total

    async def get_avg_pageviews(
        self, domain: str, titles: list[str], end: date, days: int = 30
    ) -> int:
        """Sum over *titles* of each article's average daily views in the *days* up to *end*."""
        start = end - timedelta(days=days)
        total = 0
        for batch in _batches(titles):
            results = await asyncio.gather(
                *(self.get_daily(domain, title, start, end) for title in batch)
            )
            total += sum(daily_average(views, end) for views in results)
        return total

    async def get_daily(self, domain: str, title: str, start: date, end: date) -> DailyViews:
        """Daily ``(date, views)`` series for one article; empty when there is no data."""
        article = quote(title.replace(" ", "_"), safe="")
        url = (
            f"/per-article/{domain}/all-access/user/{article}/daily/"
            f"{start:%Y%m%d}/{end:%Y%m%d}"
        )
        response = await self._request_with_retry(url)
        if response is None:
            return []
        return [
            (datetime.strptime(item["timestamp"][:8], "%Y%m%d").date(), int(item["views"]))
            for item in response.json().get("items", [])
        ]

    # ── internal ───────────────────────────────────────────────────────────

    async def _request_with_retry(self, url: str) -> httpx.Response | None:
        """GET with exponential backoff on 5xx and transport errors.

        Returns None for a 4xx (the API answers 404 for articles without
        views) and when every attempt failed.
        """
        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.get(url)
            except httpx.TransportError as exc:
                log.warning(
                    "pageviews.request_error",
                    url=url,
                    error=str(exc),
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
            else:
                if resp.status_code < 400:
                    return resp
                if resp.status_code < 500:
                    return None
                log.warning(
                    "pageviews.server_error",
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )

            if attempt < _MAX_RETRIES - 1:
                await asyncio.sleep(_RETRY_BASE_DELAY * (2**attempt))

        log.error("pageviews.fetch_failed", url=url, retries=_MAX_RETRIES)
        return None
