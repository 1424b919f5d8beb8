"""jobs table."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventmetrics.core.database import Base, TimestampMixin

JOB_QUEUED = "queued"
JOB_BUSY = "busy"

job_status_enum = Enum(JOB_QUEUED, JOB_BUSY, name="job_status")


class Job(TimestampMixin, Base):
    """Queued or running statistics computation for one Event.

    There is no terminal status: a finished Job is deleted.
    """

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    status: Mapped[str] = mapped_column(
        job_status_enum, nullable=False, server_default=text(f"'{JOB_QUEUED}'")
    )

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_jobs_event"),
        Index("idx_jobs_status_submitted", "status", "submitted_at"),
    )
