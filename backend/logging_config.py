"""
Logging setup and request correlation.

Every log line carries the correlation id of the request that caused it.
Background pipelines inherit the id because asyncio copies the current
context into each task it creates.
"""

import logging
import logging.config
import os
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
CORRELATION_HEADER = "X-Correlation-Id"

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


class CorrelationIdLogFilter(logging.Filter):
    """Attach the current correlation id so the formatter can always use it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get()
        return True


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,  # keep uvicorn/fastapi loggers
    "filters": {
        "cid": {"()": CorrelationIdLogFilter},
    },
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)s [cid=%(correlation_id)s] %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": LOG_LEVEL,
            "filters": ["cid"],
            "formatter": "default",
        },
    },
    "root": {"level": LOG_LEVEL, "handlers": ["console"]},
    "loggers": {
        "uvicorn.error": {"level": LOG_LEVEL, "handlers": ["console"], "propagate": False},
        "uvicorn.access": {"level": LOG_LEVEL, "handlers": ["console"], "propagate": False},
        "snaptrace": {"level": LOG_LEVEL, "handlers": ["console"], "propagate": False},
    },
}


def setup_logging() -> None:
    logging.config.dictConfig(LOGGING)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Read or generate an X-Correlation-Id per request, keep it in the
    ContextVar for the duration of the request and echo it on the response.
    """

    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        token = correlation_id_var.set(cid)
        try:
            response: Response = await call_next(request)
        finally:
            correlation_id_var.reset(token)

        response.headers[CORRELATION_HEADER] = cid
        return response
