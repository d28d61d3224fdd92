"""CORS, request tracing and rate-limit middleware."""

import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from access_schema.core.config import settings

logger = logging.getLogger("access_schema.http")

REQUEST_ID_HEADER = "X-Request-Id"


class RequestTraceMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id the audit trail can quote.

    A caller-supplied ``X-Request-Id`` is kept so checks can be correlated
    with the gateway that asked for them.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)
        response.headers["X-AccessSchema-Version"] = settings.VERSION

        level = logging.WARNING if response.status_code in (403, 429) else logging.INFO
        logger.log(
            level,
            "[%s] %s %s -> %s (%sms)",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response


def setup_middleware(app: FastAPI) -> None:
    """Install middleware; the last one added runs first."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["x-api-key", "Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )
    # Limits come from app.state.limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestTraceMiddleware)
