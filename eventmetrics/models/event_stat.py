"""event_stats and event_wiki_stats tables."""

import uuid
from typing import Optional

from sqlalchemy import BigInteger, Enum, ForeignKey, Index, Integer, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventmetrics.core.database import Base, TimestampMixin

PARTICIPANTS = "participants"
NEW_EDITORS = "new-editors"
RETENTION = "retention"
EDITS = "edits"
BYTE_DIFFERENCE = "byte-difference"
PAGES_CREATED = "pages-created"
PAGES_IMPROVED = "pages-improved"
PAGES_CREATED_PAGEVIEWS = "pages-created-pageviews"
PAGES_IMPROVED_PAGEVIEWS_AVG = "pages-improved-pageviews-avg"
FILES_UPLOADED = "files-uploaded"
FILE_USAGE = "file-usage"
PAGES_USING_FILES = "pages-using-files"
PAGES_USING_FILES_PAGEVIEWS_AVG = "pages-using-files-pageviews-avg"
ITEMS_CREATED = "items-created"
ITEMS_IMPROVED = "items-improved"

METRIC_TYPES = (
    PARTICIPANTS,
    NEW_EDITORS,
    RETENTION,
    EDITS,
    BYTE_DIFFERENCE,
    PAGES_CREATED,
    PAGES_IMPROVED,
    PAGES_CREATED_PAGEVIEWS,
    PAGES_IMPROVED_PAGEVIEWS_AVG,
    FILES_UPLOADED,
    FILE_USAGE,
    PAGES_USING_FILES,
    PAGES_USING_FILES_PAGEVIEWS_AVG,
    ITEMS_CREATED,
    ITEMS_IMPROVED,
)

stat_metric_enum = Enum(*METRIC_TYPES, name="stat_metric")


def check_metric(metric: str) -> str:
    """Return *metric* unchanged, or raise ``ValueError`` if it is unknown."""
    if metric not in METRIC_TYPES:
        raise ValueError(f"'metric' must be one of: {', '.join(METRIC_TYPES)}")
    return metric


class EventStat(TimestampMixin, Base):
    __tablename__ = "event_stats"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    metric: Mapped[str] = mapped_column(stat_metric_enum, nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offset: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("event_id", "metric", name="uq_event_stats_event_metric"),
        Index("idx_event_stats_event", "event_id"),
    )


class EventWikiStat(TimestampMixin, Base):
    __tablename__ = "event_wiki_stats"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    event_wiki_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("event_wikis.id", ondelete="CASCADE"),
        nullable=False,
    )
    metric: Mapped[str] = mapped_column(stat_metric_enum, nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offset: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("event_wiki_id", "metric", name="uq_event_wiki_stats_wiki_metric"),
        Index("idx_event_wiki_stats_wiki", "event_wiki_id"),
    )
