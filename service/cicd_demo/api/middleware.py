"""Security headers, CORS and rate limiting middleware"""

import warnings
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..resilience import RateLimiter

# Paths that are never rate limited
EXEMPT_PATHS = ("/healthz", "/health", "/live", "/ready", "/metrics")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    def __init__(self, app: ASGIApp, docs_path: Optional[str] = None):
        super().__init__(app)
        self.docs_path = docs_path

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "0"
        response.headers["X-DNS-Prefetch-Control"] = "off"
        response.headers["X-Download-Options"] = "noopen"
        response.headers["X-Permitted-Cross-Domain-Policies"] = "none"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
        response.headers["Cross-Origin-Resource-Policy"] = "same-origin"

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=15552000; includeSubDomains"

        # The interactive docs load their assets from a CDN
        if self.docs_path and request.url.path.startswith(self.docs_path):
            return response

        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "base-uri 'self'; "
            "font-src 'self' https: data:; "
            "form-action 'self'; "
            "frame-ancestors 'none'; "
            "img-src 'self' data:; "
            "object-src 'none'; "
            "script-src 'self'; "
            "style-src 'self' https: 'unsafe-inline'; "
            "upgrade-insecure-requests"
        )
        return response


def setup_cors(app: FastAPI, allowed_origins: List[str], environment: str = "development") -> None:
    """Setup CORS middleware"""
    allowed_origins = list(allowed_origins)
    if "*" in allowed_origins and environment == "production":
        allowed_origins = []
        warnings.warn("CORS wildcard (*) is disabled in production. Configure allowed_origins explicitly.")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "uber-trace-id"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "uber-trace-id"],
        max_age=3600,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client token bucket rate limiting"""

    def __init__(self, app: ASGIApp, requests_per_minute: int = 100):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.limiter = RateLimiter(requests_per_minute)

    @staticmethod
    def _client_id(request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(EXEMPT_PATHS):
            return await call_next(request)

        client_id = self._client_id(request)

        if not self.limiter.allow(client_id):
            retry_after = self.limiter.retry_after(client_id)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too Many Requests",
                    "message": "Rate limit exceeded, please try again later",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                headers={
                    "X-RateLimit-Limit": str(self.requests_per_minute),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(retry_after),
                },
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(self.limiter.remaining(client_id))

        return response
