"""
Request context for the calendar API.

Every request gets a short id and the calling organization stored in context
variables. RequestContextFilter copies both onto log records so service
modules log without passing them around.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
organization_ctx: ContextVar[str] = ContextVar("organization_id", default="-")

logger = logging.getLogger(__name__)


def get_request_id() -> str:
    return request_id_ctx.get()


def get_organization_id() -> str:
    return organization_ctx.get()


class RequestContextFilter(logging.Filter):
    """Stamp ``request_id`` and ``organization_id`` on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.organization_id = get_organization_id()
        return True


def install_log_context(root: Optional[logging.Logger] = None) -> None:
    """Attach RequestContextFilter to the root handlers once."""
    root = root or logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(f, RequestContextFilter) for f in handler.filters):
            handler.addFilter(RequestContextFilter())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds the request context and logs one line per calendar request.

    A caller-supplied X-Request-ID is kept, otherwise one is generated. The id
    and the handling time are echoed on the response.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_token = request_id_ctx.set(request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8])
        org_token = organization_ctx.set(request.headers.get("X-Organization-ID") or "-")
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                f"{request.method} {request.url.path} failed after "
                f"{time.perf_counter() - started:.3f}s"
            )
            raise
        else:
            elapsed = time.perf_counter() - started
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed:.3f}s")
            response.headers["X-Request-ID"] = get_request_id()
            response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
            return response
        finally:
            request_id_ctx.reset(request_token)
            organization_ctx.reset(org_token)
