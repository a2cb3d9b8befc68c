"""HTTP client for downstream services with trace propagation"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ..observability import Instrumentation, OperationCategory
from ..resilience import RetryPolicy, retry


@dataclass
class ExternalRequest:
    """One outbound call"""
    method: str
    endpoint: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class ExternalServiceClient:
    """Calls another service; every attempt is an ``external`` operation

    The active span's context is injected into the outbound headers, so the
    receiving service continues the same trace.
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        instrumentation: Instrumentation,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.service = service
        self.instrumentation = instrumentation
        self.tracer = instrumentation.tracer
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

        attempt = instrumentation.wrap(
            self._send_once,
            service,
            OperationCategory.EXTERNAL,
            tags={"external.service": service},
        )
        self._send = retry(policy=retry_policy or RetryPolicy())(attempt)

    async def _send_once(self, request: ExternalRequest) -> httpx.Response:
        headers = dict(request.headers)
        span = self.tracer.active_span()
        if span is not None:
            span.set_tag("http.method", request.method)
            self.tracer.inject(span, headers)

        response = await self._client.request(
            request.method,
            request.endpoint,
            params=request.params,
            json=request.json,
            headers=headers,
        )
        if span is not None:
            span.set_tag("external.status_code", response.status_code)
        response.raise_for_status()
        return response

    async def request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        return await self._send(ExternalRequest(method.upper(), endpoint, **kwargs))

    async def get(self, endpoint: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", endpoint, **kwargs)

    async def close(self) -> None:
        await self._client.aclose()
