from sqlalchemy import Column, ForeignKey, UniqueConstraint

from quotebid.db.base import Base


class SavedOpportunity(Base):
    __tablename__ = "saved_opportunities"

    user_id = Column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    opportunity_id = Column(ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "opportunity_id", name="uq_saved_opportunities_user_opportunity"),
    )
