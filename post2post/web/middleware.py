# post2post/web/middleware.py
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from post2post.common.tracing import new_trace_id, set_trace_id
from post2post.web import metrics as metrics_mod


class TraceIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-ID") or new_trace_id()
        request.state.trace_id = trace_id
        set_trace_id(trace_id)
        response: Response = await call_next(request)
        response.headers["X-Trace-ID"] = trace_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.time()

        metrics_mod.HTTP_TOTAL.labels(method=request.method, path=request.url.path).inc()

        response = await call_next(request)

        metrics_mod.HTTP_LATENCY.observe(time.time() - start)

        status = response.status_code
        if 200 <= status < 300:
            metrics_mod.HTTP_2XX.inc()
        elif 400 <= status < 500:
            metrics_mod.HTTP_4XX.inc()

        return response


def setup_middleware(app: FastAPI):
    """Attach trace-id and metrics middleware to the app."""
    app.add_middleware(TraceIDMiddleware)
    app.add_middleware(MetricsMiddleware)
