"""
请求日志中间件：trace_id 注入 + 每个接口请求一条结束日志

/metrics 与 /health 被频繁探测，不记录。
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.observability.context import new_trace_id, trace_id_var

log = structlog.get_logger()

TRACE_HEADER = "X-Trace-ID"
_QUIET_PATHS = ("/metrics", "/health")


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """请求级 trace_id 上下文；4xx 记 warning，5xx 记 error"""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = request.headers.get(TRACE_HEADER) or new_trace_id()
        trace_id_var.set(trace_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(trace_id=trace_id)

        path = request.url.path
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = int((time.monotonic() - start) * 1000)

        response.headers[TRACE_HEADER] = trace_id
        if path.startswith(_QUIET_PATHS):
            return response

        status = response.status_code
        emit = log.error if status >= 500 else log.warning if status >= 400 else log.info
        emit(
            "请求完成",
            method=request.method,
            path=path,
            status_code=status,
            duration_ms=duration_ms,
            client_ip=request.client.host if request.client else None,
        )
        return response
