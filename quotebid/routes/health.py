from __future__ import annotations

import time
from typing import Any, Dict

import psutil
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from quotebid.core.clock import utcnow
from quotebid.core.config import settings
from quotebid.core.exceptions import DatabaseError
from quotebid.core.logging import get_structlog_logger
from quotebid.routes.deps import get_services
from quotebid.services import Services
from quotebid.services import redis as redis_service

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["health"])


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, Any]]


async def check_database(services: Services) -> Dict[str, Any]:
    start_time = time.perf_counter()
    try:
        ok = await services.storage.ping()
    except DatabaseError as e:
        return {"status": "unhealthy", "error": e.details.get("error", e.message)}
    return {
        "status": "healthy" if ok else "unhealthy",
        "response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
    }


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(services: Services = Depends(get_services)):
    """Database reachability plus the state of the scheduled background jobs."""
    checks: Dict[str, Dict[str, Any]] = {"database": await check_database(services)}

    loops = services.loop_status()
    checks["scheduler"] = {
        "status": "healthy"
        if not settings.scheduler_enabled or (loops and all(loop["running"] for loop in loops.values()))
        else "degraded",
        "enabled": settings.scheduler_enabled,
        "running": services.scheduler is not None and services.scheduler.running,
        "loops": loops,
    }
    if settings.scheduler_lock_enabled:
        checks["redis"] = await redis_service.health_check()

    overall = "healthy"
    if checks["database"]["status"] != "healthy":
        overall = "unhealthy"
    elif any(check["status"] != "healthy" for check in checks.values()):
        overall = "degraded"

    process = psutil.Process()
    response = HealthCheckResponse(
        status=overall,
        service="quotebid_api",
        environment=settings.environment,
        timestamp=utcnow().isoformat() + "Z",
        uptime=time.time() - process.create_time(),
        checks=checks,
    )

    if overall != "healthy":
        logger.warning("health.check", status=overall, checks=checks)
    if overall == "unhealthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(),
        )
    return response
