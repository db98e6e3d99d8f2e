# quotebid/db/__init__.py
"""
Database package for SQLAlchemy setup, session management, and base models.
"""

from quotebid.db.base import Base
from quotebid.db.session import dispose_engine, get_session_factory

__all__ = [
    "Base",
    "dispose_engine",
    "get_session_factory",
]
