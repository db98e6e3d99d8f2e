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
    Integer,
    Numeric,
    String,
    Text,
    false,
)

from quotebid.db.base import Base


class PlacementStatus(str, enum.Enum):
    READY_FOR_BILLING = "ready_for_billing"
    PAID = "paid"
    ERROR = "error"


placement_status = Enum(
    *[s.value for s in PlacementStatus],
    name="placement_status",
)


class Placement(Base):
    __tablename__ = "placements"

    pitch_id = Column(ForeignKey("pitches.id", ondelete="RESTRICT"), nullable=False, unique=True)
    user_id = Column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    opportunity_id = Column(ForeignKey("opportunities.id", ondelete="RESTRICT"), nullable=False)
    publication_id = Column(ForeignKey("publications.id", ondelete="RESTRICT"), nullable=False)

    article_title = Column(String(500))
    article_url = Column(String(1000))

    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(
        placement_status,
        nullable=False,
        default=PlacementStatus.READY_FOR_BILLING.value,
        server_default=PlacementStatus.READY_FOR_BILLING.value,
    )
    billing_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    # processor declines recorded; the idempotency key only moves on after one
    declined_attempts = Column(Integer, nullable=False, default=0, server_default="0")

    # Payment processor correlation
    payment_intent_id = Column(String(200))
    invoice_id = Column(String(200))
    payment_id = Column(String(200))
    charged_at = Column(DateTime)
    error_message = Column(Text)

    notification_sent = Column(Boolean, nullable=False, default=False, server_default=false())
    notified_at = Column(DateTime)

    __table_args__ = (
        Index("idx_placements_status", "status"),
        Index("idx_placements_user_id", "user_id"),
        CheckConstraint("status != 'error' OR error_message IS NOT NULL", name="error_has_message"),
        CheckConstraint(
            "status != 'paid' OR (charged_at IS NOT NULL AND payment_id IS NOT NULL)",
            name="paid_has_charge",
        ),
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint("billing_attempts >= 0", name="non_negative_attempts"),
        CheckConstraint("declined_attempts <= billing_attempts", name="declines_within_attempts"),
    )

    @property
    def is_paid(self) -> bool:
        return self.status == PlacementStatus.PAID.value
