from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Numeric, String

from quotebid.db.base import Base


class Bid(Base):
    __tablename__ = "bids"

    opportunity_id = Column(ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_intent_id = Column(String(200))

    __table_args__ = (
        Index("idx_bids_opportunity_user", "opportunity_id", "user_id"),
        CheckConstraint("amount > 0", name="positive_amount"),
    )
