# quotebid/services/__init__.py
"""
Domain services: storage facade, email and payment collaborators, schedulers
and the placement billing workflow.
"""

from quotebid.services.container import Services, build_services

__all__ = [
    "Services",
    "build_services",
]
