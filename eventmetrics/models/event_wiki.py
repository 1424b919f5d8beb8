"""event_wikis table."""

import uuid
from typing import Optional

from sqlalchemy import ForeignKey, Index, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventmetrics.core.database import Base, TimestampMixin

FAMILY_NAMES = (
    "wikipedia",
    "commons",
    "wikidata",
    "wiktionary",
    "wikibooks",
    "wikiquote",
    "wikisource",
    "wikinews",
    "wikiversity",
    "wikivoyage",
)


class EventWiki(TimestampMixin, Base):
    """A wiki an Event takes place on.

    ``domain`` is ``lang.project`` without the TLD (``en.wikipedia``,
    ``commons.wikimedia``, ``www.wikidata``), or a family wildcard such as
    ``*.wikipedia`` meaning "every language edition participants edit on".
    """

    __tablename__ = "event_wikis"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    domain: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "domain", name="uq_event_wikis_event_domain"),
        Index("idx_event_wikis_event", "event_id"),
    )

    @property
    def is_family(self) -> bool:
        return self.domain.startswith("*.")

    @property
    def family_name(self) -> Optional[str]:
        for family in FAMILY_NAMES:
            if family in self.domain:
                return family
        return None

    @property
    def can_have_files_uploaded(self) -> bool:
        """Wikidata has no local File namespace worth counting."""
        return not self.is_family and self.family_name != "wikidata"
