"""events table."""

import uuid
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import DateTime, Index, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventmetrics.core.database import Base, TimestampMixin


class Event(TimestampMixin, Base):
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    # Wall-clock times in ``timezone``; see start_utc / end_utc.
    start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False))
    end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False))
    timezone: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'UTC'"))
    # When statistics were last saved.
    stats_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_events_time", "start", "end"),
        Index("idx_events_title", "title"),
    )

    def _to_utc(self, value: datetime) -> datetime:
        tz = ZoneInfo(self.timezone or "UTC")
        return value.replace(tzinfo=tz).astimezone(timezone.utc)

    @property
    def start_utc(self) -> Optional[datetime]:
        return None if self.start is None else self._to_utc(self.start)

    @property
    def end_utc(self) -> Optional[datetime]:
        return None if self.end is None else self._to_utc(self.end)
