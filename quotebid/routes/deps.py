from __future__ import annotations

from fastapi import Request

from quotebid.core.exceptions import ServiceUnavailableError
from quotebid.services import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ServiceUnavailableError(message="Application services are not initialised")
    return services
