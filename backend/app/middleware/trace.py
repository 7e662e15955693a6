import time
import uuid
import logging
from typing import Optional
from contextvars import ContextVar

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from backend.app.core.logging import correlation_id_ctx, tenant_id_ctx

# Additional context var for request-specific event ID
event_id_ctx: ContextVar[Optional[str]] = ContextVar("event_id", default=None)

logger = logging.getLogger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Attaches a correlation ID and a per-request event ID to every request so
    log lines from the API and from the runners it triggers can be joined.
    """
    async def dispatch(self, request: Request, call_next):
        # Reuse the caller's correlation ID (e.g. the scheduler's) or start a new one
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        event_id = str(uuid.uuid4())

        cid_token = correlation_id_ctx.set(correlation_id)
        eid_token = event_id_ctx.set(event_id)
        tid_token = None
        tenant_id = request.headers.get("X-Tenant-ID")
        if tenant_id:
            tid_token = tenant_id_ctx.set(tenant_id)

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "extra_data": {
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round((time.time() - start_time) * 1000, 2),
                        "error": str(e),
                    }
                },
                exc_info=True
            )
            raise
        finally:
            correlation_id_ctx.reset(cid_token)
            event_id_ctx.reset(eid_token)
            if tid_token is not None:
                tenant_id_ctx.reset(tid_token)

        logger.info(
            f"{request.method} {request.url.path} completed",
            extra={
                "extra_data": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.time() - start_time) * 1000, 2),
                    "correlation_id": correlation_id,
                    "event_id": event_id,
                }
            }
        )

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Event-ID"] = event_id
        return response
