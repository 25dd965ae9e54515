"""
Request correlation and access logging
"""

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("api.access")

# Polled by load balancers and uptime checks
_QUIET_PATHS = ("/health",)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id and logs one access line per request.

    - X-Request-ID is reused when the caller sends one, so a trigger can be
      traced from an external scheduler into the refresh logs
    - X-API-Latency-ms reports handler time
    - refresh endpoints log at INFO, health checks at DEBUG
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception:
            logger.exception(
                f"{request.method} {request.url.path} raised",
                extra={"request_id": request_id, "method": request.method, "path": request.url.path}
            )
            raise

        latency_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        level = logging.DEBUG if request.url.path.startswith(_QUIET_PATHS) else logging.INFO
        if response.status_code >= 500:
            level = logging.ERROR
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            }
        )
        return response
