from __future__ import annotations

import time
from typing import Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from quotebid.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

SKIP_PATHS = {"/api/health", "/metrics"}
SENSITIVE_HEADERS = ("authorization", "cookie", "x-api-key", "token", "secret")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging with timing."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        skip = request.url.path in SKIP_PATHS

        if not skip:
            logger.info(
                "request.received",
                method=request.method,
                path=request.url.path,
                query_params=dict(request.query_params) or None,
                client_ip=request.client.host if request.client else "unknown",
                headers=self._filter_headers(request.headers),
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request.exception",
                method=request.method,
                path=request.url.path,
                response_time_ms=(time.perf_counter() - start_time) * 1000,
                exception_type=type(e).__name__,
                exception_message=str(e),
            )
            raise

        response_time = time.perf_counter() - start_time
        response.headers["X-Response-Time"] = f"{response_time:.3f}"

        if not skip:
            log = logger.warning if response.status_code >= 400 else logger.info
            log(
                "response.sent",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                response_time_ms=response_time * 1000,
            )
        return response

    def _filter_headers(self, headers: Mapping[str, str]) -> dict:
        filtered = {}
        for key, value in headers.items():
            if any(sensitive in key.lower() for sensitive in SENSITIVE_HEADERS):
                filtered[key] = "[REDACTED]"
            else:
                filtered[key] = value
        return filtered
