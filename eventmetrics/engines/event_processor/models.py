"""Data models for the event processor engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class StatValue:
    value: int
    offset: int | None = None


@dataclass
class ProcessResult:
    """Statistics saved by one :meth:`EventProcessor.process` run.

    ``stats`` is keyed by metric; ``wikis`` by domain, then metric.
    """

    event_id: uuid.UUID
    stats: dict[str, StatValue] = field(default_factory=dict)
    wikis: dict[str, dict[str, StatValue]] = field(default_factory=dict)


@dataclass(frozen=True)
class RetentionResult:
    retained: int
    wikis_checked: int
    short_circuited: bool = False
