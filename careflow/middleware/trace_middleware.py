"""
Trace ID middleware.

Every request gets a trace_id bound into the structlog context, so all logs
emitted while a flow step is processed can be correlated with the client call.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class TraceMiddleware(BaseHTTPMiddleware):
    """
    - Reuses an incoming X-Trace-Id header, or generates one
    - Binds trace_id (and the onboarding flow id, when in the path) to structlog
    - Echoes X-Trace-Id on the response
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
        bound = {"trace_id": trace_id}

        path_parts = request.url.path.rstrip("/").split("/")
        if "flows" in path_parts:
            index = path_parts.index("flows")
            if index + 1 < len(path_parts):
                bound["flow_id"] = path_parts[index + 1]

        structlog.contextvars.bind_contextvars(**bound)
        try:
            response = await call_next(request)
            response.headers["X-Trace-Id"] = trace_id
            return response
        finally:
            structlog.contextvars.unbind_contextvars(*bound)
