"""QuotaMonitor — how many jobs may hit the replicas right now."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from eventmetrics.replicas.client import ReplicaClient

log = structlog.get_logger("eventmetrics.replicas")

# Kept below the replicas' real per-user limit to leave room for
# interactive queries from the dashboard.
DATABASE_QUOTA = 5


class QuotaMonitor:
    """Advisory quota: polled fresh on every dispatch, never reserved."""

    def __init__(self, slices: Sequence[ReplicaClient], hard_quota: int = DATABASE_QUOTA) -> None:
        if not slices:
            raise ValueError("QuotaMonitor needs at least one replica slice")
        self._slices = list(slices)
        self._hard_quota = hard_quota

    async def open_connections(self) -> int:
        """Highest connection count across the replica slices."""
        counts = [await client.count_processes() for client in self._slices]
        return max(counts)

    async def available_quota(self) -> int:
        """``max(hard_quota - open_connections, 0)``. Monitoring errors propagate."""
        open_conns = await self.open_connections()
        quota = max(self._hard_quota - open_conns, 0)
        log.debug("quota.polled", open_connections=open_conns, quota=quota)
        return quota
