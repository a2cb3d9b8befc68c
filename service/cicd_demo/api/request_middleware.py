"""Per-request tracing, metrics and structured request logging"""

import asyncio
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..observability import Instrumentation, OperationCategory, OperationScope
from ..observability.instrumentation import status_bucket
from ..observability.logging import get_logger, request_id_var

logger = get_logger(__name__)


# Route label for requests that matched no route, so unknown paths share one label set
UNMATCHED_ROUTE = "unmatched"


def route_template(request: Request, app_root_path: str = "") -> str:
    """Full matched route template, e.g. ``/api/v1/users/{user_id}``

    Routers mounted under a prefix extend ``root_path`` while routing, so the
    prefix is whatever ``root_path`` gained beyond the application's own.
    """
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if not path:
        return UNMATCHED_ROUTE
    root_path = request.scope.get("root_path", "")
    prefix = root_path[len(app_root_path):] if root_path.startswith(app_root_path) else ""
    return prefix + path


class RequestInstrumentationMiddleware(BaseHTTPMiddleware):
    """Wraps every inbound request in an ``http`` operation

    The incoming trace context, if any, becomes the parent of the request
    span. The span is active while the request is handled, so instrumented
    operations triggered by the handler become its children.
    """

    def __init__(self, app: ASGIApp, instrumentation: Instrumentation):
        super().__init__(app)
        self.instrumentation = instrumentation
        self.tracer = instrumentation.tracer
        self.metrics = instrumentation.metrics

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_token = request_id_var.set(request_id)
        request.state.request_id = request_id
        request.state.app_root_path = request.scope.get("root_path", "")

        client_ip = request.client.host if request.client else None
        scope = self.instrumentation.begin(
            f"{request.method} {request.url.path}",
            OperationCategory.HTTP,
            parent=self.tracer.extract(request.headers),
            tags={
                "http.method": request.method,
                "http.path": request.url.path,
                "http.url": str(request.url),
                "user_agent": request.headers.get("user-agent"),
                "client_ip": client_ip,
                "request_id": request_id,
            },
        )
        request.state.span = scope.span

        with self.instrumentation.recording("count connection"):
            self.metrics.connection_opened()
        try:
            with self.tracer.activate(scope.span):
                try:
                    response = await call_next(request)
                except (Exception, asyncio.CancelledError) as exc:
                    self._record_failure(request, scope, exc)
                    raise
                self._record_response(request, scope, response)
            return response
        finally:
            with self.instrumentation.recording("count connection"):
                self.metrics.connection_closed()
            request_id_var.reset(request_id_token)

    def _record_http(self, request: Request, scope: OperationScope, status_code: int) -> str:
        route = route_template(request, request.state.app_root_path)
        scope.tag("http.route", route)
        scope.tag("http.status_code", status_code)
        with self.instrumentation.recording("record http request"):
            self.metrics.record_http_request(request.method, route, status_code, scope.elapsed)
        return route

    def _record_response(self, request: Request, scope: OperationScope, response: Response) -> None:
        status_code = response.status_code
        duration = scope.elapsed
        self._record_http(request, scope, status_code)

        if status_code >= 500:
            scope.fail(status_code=status_code, message=f"HTTP {status_code}")
        else:
            if status_code >= 400:
                with self.instrumentation.recording("count client error"):
                    self.metrics.record_error("api", status_code)
            scope.succeed(status=status_bucket(status_code))

        self.tracer.inject(scope.span, response.headers)
        response.headers["X-Request-ID"] = request.state.request_id

        logger.info(
            "Request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_seconds": round(duration, 6),
                "client_ip": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            },
        )

    def _record_failure(self, request: Request, scope: OperationScope, exc: BaseException) -> None:
        duration = scope.elapsed
        self._record_http(request, scope, 500)
        scope.fail(exc, status_code=500)

        logger.error(
            "Request failed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": 500,
                "duration_seconds": round(duration, 6),
                "client_ip": request.client.host if request.client else None,
                "error": str(exc),
            },
            exc_info=True,
        )
