"""Runtime settings, read from ``EVENTMETRICS_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "postgresql+asyncpg://localhost/eventmetrics"
DEFAULT_REPLICA_URL = "mysql+aiomysql://localhost:3306/meta_p"


def _env_int(key: str, default: int) -> int:
    return int(os.environ.get(key, default))


def _env_float(key: str, default: float) -> float:
    return float(os.environ.get(key, default))


def _env_list(key: str) -> list[str]:
    raw = os.environ.get(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    replica_url: str = DEFAULT_REPLICA_URL
    # One URL per replica slice polled by the quota monitor.
    replica_slice_urls: tuple[str, ...] = field(default_factory=tuple)
    job_quota: int = 5
    new_editor_offset: int = 15
    retention_offset: int = 15
    pageviews_avg_days: int = 30
    query_timeout: int = 900
    spawn_interval: float = 60.0

    @property
    def slice_urls(self) -> tuple[str, ...]:
        return self.replica_slice_urls or (self.replica_url,)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_url=os.environ.get("EVENTMETRICS_DATABASE_URL", DEFAULT_DATABASE_URL),
            replica_url=os.environ.get("EVENTMETRICS_REPLICA_URL", DEFAULT_REPLICA_URL),
            replica_slice_urls=tuple(_env_list("EVENTMETRICS_REPLICA_SLICE_URLS")),
            job_quota=_env_int("EVENTMETRICS_JOB_QUOTA", 5),
            new_editor_offset=_env_int("EVENTMETRICS_NEW_EDITOR_OFFSET", 15),
            retention_offset=_env_int("EVENTMETRICS_RETENTION_OFFSET", 15),
            pageviews_avg_days=_env_int("EVENTMETRICS_PAGEVIEWS_AVG_DAYS", 30),
            query_timeout=_env_int("EVENTMETRICS_QUERY_TIMEOUT", 900),
            spawn_interval=_env_float("EVENTMETRICS_SPAWN_INTERVAL", 60),
        )
