from __future__ import annotations

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    false,
)

from quotebid.db.base import Base


class ReminderKind(str, enum.Enum):
    DRAFT = "draft"
    SAVED_OPPORTUNITY = "saved_opportunity"


class ReminderOutcome:
    SENT = "sent"
    SKIPPED = "skipped"
    OPTED_OUT = "opted_out"
    FAILED = "failed"


class ScheduledReminder(Base):
    """A pending reminder email for one (kind, user, subject).

    ``subject_id`` is the pitch id for draft reminders and the opportunity id
    for saved-opportunity reminders.
    """

    __tablename__ = "scheduled_reminders"

    kind = Column(Enum(*[k.value for k in ReminderKind], name="reminder_kind"), nullable=False)
    user_id = Column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    subject_id = Column(Integer, nullable=False)
    opportunity_id = Column(ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False)

    due_at = Column(DateTime, nullable=False)
    canceled_at = Column(DateTime)
    send_attempted = Column(Boolean, nullable=False, default=False, server_default=false())
    sent_at = Column(DateTime)
    outcome = Column(String(50))

    __table_args__ = (
        Index("idx_scheduled_reminders_key", "kind", "user_id", "subject_id"),
        Index("idx_scheduled_reminders_due", "send_attempted", "canceled_at", "due_at"),
    )
