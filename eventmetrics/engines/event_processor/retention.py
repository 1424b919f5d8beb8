"""Retention counting — pure function over per-wiki lookups, no DB session."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable

from eventmetrics.engines.event_processor.models import RetentionResult


async def count_retained(
    db_names: Iterable[str],
    usernames: list[str],
    fetch_retained: Callable[[str], Awaitable[list[str]]],
) -> RetentionResult:
    """Count *usernames* that edited on at least one of *db_names*.

    Wikis are visited in the given order and the retained usernames are
    unioned. Once every user is accounted for the remaining wikis are
    skipped; the count is the same as a full scan.
    """
    wanted = set(usernames)
    if not wanted:
        return RetentionResult(retained=0, wikis_checked=0)

    retained: set[str] = set()
    checked = 0
    for db_name in db_names:
        checked += 1
        retained |= wanted.intersection(await fetch_retained(db_name))
        if len(retained) == len(wanted):
            return RetentionResult(
                retained=len(wanted), wikis_checked=checked, short_circuited=True
            )

    return RetentionResult(retained=len(retained), wikis_checked=checked)
