from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from quotebid.core.config import settings
from quotebid.core.exceptions import BaseAPIException, DatabaseError, ServiceUnavailableError
from quotebid.core.logging import configure_structlog, get_structlog_logger
from quotebid.db.session import dispose_engine, get_session_factory
from quotebid.middleware.logging import LoggingMiddleware
from quotebid.middleware.request_id import RequestIdMiddleware
from quotebid.routes import health, opportunities, pitches, placements
from quotebid.services import Services, build_services
from quotebid.services.redis import close_redis_pool, init_redis_pool

# Configure logging before creating app
configure_structlog()
logger = get_structlog_logger(__name__)


def init_sentry() -> None:
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        integrations=[
            AsyncioIntegration(),
            FastApiIntegration(),
            StarletteIntegration(),
        ],
        traces_sample_rate=1.0 if settings.is_development else 0.1,
        send_default_pii=False,
    )
    logger.info("sentry.initialized")


async def startup_services(services: Services) -> None:
    """Placement sync and background loops, as configured."""
    if settings.sync_placements_on_startup:
        try:
            created = await services.placements.sync_successful_pitches()
            logger.info("startup.placements_synced", created=created)
        except DatabaseError as e:
            logger.error("startup.placement_sync_failed", error=e.message)

    if settings.scheduler_enabled:
        services.start_loops()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("application.starting", environment=settings.environment)
    init_sentry()

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = build_services(get_session_factory())
    services: Services = app.state.services

    if settings.scheduler_lock_enabled:
        try:
            await init_redis_pool()
        except ServiceUnavailableError as e:
            # loops retry the connection on their next tick
            logger.warning("redis.startup_unavailable", error=e.message)

    await startup_services(services)
    logger.info("application.started")
    yield

    logger.info("application.shutting_down")
    await services.stop_loops()
    if settings.scheduler_lock_enabled:
        await close_redis_pool()
    if owns_services:
        await dispose_engine()
        logger.info("database.connection_closed")
    logger.info("application.shutdown_complete")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BaseAPIException)
    async def api_exception_handler(request: Request, exc: BaseAPIException):
        logger.warning(
            "api.exception",
            status_code=exc.status_code,
            code=exc.code,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": list(error.get("loc", [])),
                "msg": error.get("msg", "Validation error"),
                "type": error.get("type", "value_error"),
            }
            for error in exc.errors()
        ]
        logger.warning("validation.error", path=request.url.path, method=request.method, errors=errors)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "code": "validation_error",
                "message": "Request validation failed",
                "details": {"errors": errors},
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_id = f"err_{int(time.time())}_{hash(str(exc)) % 10000:04d}"
        logger.error(
            "unhandled.exception",
            error_id=error_id,
            error_type=type(exc).__name__,
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=exc,
        )
        message = f"Internal server error: {exc}" if settings.is_development else "Internal server error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"code": "internal_error", "message": message, "details": {"error_id": error_id}},
            headers={"X-Error-ID": error_id},
        )


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="QuoteBid API",
        version="1.0.0",
        description="PR marketplace: opportunities, pitches, placements and billing",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins(),
        allow_credentials=True,
        allow_methods=settings.methods(),
        allow_headers=settings.allowed_headers.split(","),
        expose_headers=["X-Request-ID", "X-Response-Time"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, prefix=settings.api_prefix)
    app.include_router(opportunities.router, prefix=settings.api_prefix)
    app.include_router(pitches.router, prefix=settings.api_prefix)
    app.include_router(placements.router, prefix=settings.api_prefix)

    if not settings.is_testing:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    @app.get("/")
    async def root():
        return {
            "name": "QuoteBid API",
            "version": app.version,
            "environment": settings.environment,
            "health": f"{settings.api_prefix}/health",
        }

    return app


app = create_app()

logger.info("application.configured", environment=settings.environment)
