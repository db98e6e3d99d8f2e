# quotebid/core/__init__.py
"""
Core package for configuration, logging, and shared utilities.
"""

from quotebid.core.clock import utcnow
from quotebid.core.config import Settings, settings
from quotebid.core.logging import configure_structlog, get_structlog_logger

__all__ = [
    "Settings",
    "settings",
    "configure_structlog",
    "get_structlog_logger",
    "utcnow",
]
