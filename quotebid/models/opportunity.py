from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    false,
)
from sqlalchemy.orm import relationship

from quotebid.db.base import Base
from quotebid.utils import formatting


class OpportunityStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class Opportunity(Base):
    __tablename__ = "opportunities"

    publication_id = Column(ForeignKey("publications.id", ondelete="RESTRICT"), nullable=True)
    publication = relationship("Publication", lazy="selectin")

    title = Column(String(300), nullable=False)
    description = Column(Text)
    request_type = Column(String(100))
    industry = Column(String(100))

    status = Column(
        Enum(*[s.value for s in OpportunityStatus], name="opportunity_status"),
        nullable=False,
        default=OpportunityStatus.OPEN.value,
        server_default=OpportunityStatus.OPEN.value,
    )
    minimum_bid = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    current_price = Column(Numeric(10, 2))
    deadline = Column(DateTime)

    closed_at = Column(DateTime)
    last_price = Column(Numeric(10, 2))

    # Alert email scheduling
    email_scheduled_at = Column(DateTime)
    email_sent_at = Column(DateTime)
    email_send_attempted = Column(Boolean, nullable=False, default=False, server_default=false())
    email_attempted_at = Column(DateTime)

    __table_args__ = (
        Index("idx_opportunities_industry", "industry"),
        Index("idx_opportunities_status", "status"),
        Index(
            "idx_opportunities_email_due",
            "email_send_attempted",
            "email_sent_at",
            "email_scheduled_at",
        ),
        CheckConstraint(
            "status != 'closed' OR (closed_at IS NOT NULL AND last_price IS NOT NULL)",
            name="closed_has_final_price",
        ),
        CheckConstraint(
            "email_sent_at IS NULL OR email_send_attempted",
            name="sent_after_attempt",
        ),
        CheckConstraint("minimum_bid >= 0", name="non_negative_minimum_bid"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == OpportunityStatus.OPEN.value

    @property
    def publication_name(self) -> str:
        if self.publication is not None and self.publication.name:
            return self.publication.name
        return "Top Publication"

    @property
    def display_price(self) -> str:
        return formatting.display_price(self.current_price, self.minimum_bid)
