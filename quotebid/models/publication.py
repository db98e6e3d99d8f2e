from sqlalchemy import Column, String

from quotebid.db.base import Base


class Publication(Base):
    __tablename__ = "publications"

    name = Column(String(200), nullable=False)
    logo = Column(String(500))
    website = Column(String(500))
