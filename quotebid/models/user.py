from __future__ import annotations

from typing import Optional

from sqlalchemy import JSON, Column, Index, String

from quotebid.db.base import Base
from quotebid.utils import formatting


class User(Base):
    __tablename__ = "users"

    username = Column(String(100), nullable=False, unique=True)
    full_name = Column(String(200))
    email = Column(String(200), nullable=False)
    industry = Column(String(100))

    stripe_customer_id = Column(String(200))
    stripe_payment_method_id = Column(String(200))

    # {"alerts": bool, "notifications": bool, "billing": bool}; missing keys mean opted in
    email_preferences = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_users_industry", "industry"),
        Index("idx_users_email", "email"),
    )

    @property
    def first_name(self) -> str:
        return formatting.first_name(self.full_name, self.username)

    def allows_email(self, category: Optional[str]) -> bool:
        if category is None:
            return True
        preferences = self.email_preferences or {}
        return bool(preferences.get(category, True))
