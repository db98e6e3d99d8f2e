from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.ext.hybrid import hybrid_property

from quotebid.db.base import Base


class PitchStatus:
    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    SENT_TO_REPORTER = "sent_to_reporter"
    INTERESTED = "interested"
    NOT_INTERESTED = "not_interested"
    SUCCESSFUL = "successful"
    SUCCESSFUL_COVERAGE = "Successful Coverage"

    SUCCESSFUL_STATES = frozenset({SUCCESSFUL, SUCCESSFUL_COVERAGE})

    @classmethod
    def is_successful(cls, status: str) -> bool:
        return status in cls.SUCCESSFUL_STATES


class Pitch(Base):
    __tablename__ = "pitches"

    opportunity_id = Column(ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    content = Column(Text)
    audio_url = Column(String(500))
    status = Column(String(50), nullable=False, default=PitchStatus.PENDING, server_default=PitchStatus.PENDING)
    bid_amount = Column(Numeric(10, 2))
    payment_intent_id = Column(String(200))

    successful_at = Column(DateTime)

    __table_args__ = (
        Index("idx_pitches_user_opportunity", "user_id", "opportunity_id"),
        Index("idx_pitches_status", "status"),
    )

    @hybrid_property
    def is_draft(self) -> bool:
        return self.status == PitchStatus.DRAFT
