"""Dependency probes and the health report"""

import asyncio
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from ..config import Config
from ..observability import MetricsCollector
from ..observability.logging import get_logger

logger = get_logger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"


class HealthProbe:
    """Liveness check for one external dependency"""

    name: str = "dependency"

    async def check(self) -> bool:
        raise NotImplementedError


class CallableProbe(HealthProbe):
    """Probe backed by a plain or async callable returning a bool"""

    def __init__(self, name: str, check: Callable[[], Union[bool, Awaitable[bool]]]):
        self.name = name
        self._check = check

    async def check(self) -> bool:
        result = self._check()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


class CacheProbe(HealthProbe):
    """Pings the cache backend"""

    def __init__(self, cache: Any, name: str = "cache"):
        self.name = name
        self.cache = cache

    async def check(self) -> bool:
        return await self.cache.ping()


class HTTPProbe(HealthProbe):
    """Healthy when the URL answers with a non-5xx status"""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def check(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(self.url)
            return response.status_code < 500


async def _run_probe(probe: HealthProbe, timeout: float) -> str:
    try:
        healthy = await asyncio.wait_for(probe.check(), timeout=timeout)
    except Exception as e:
        logger.warning("Health probe %s failed: %s", probe.name, e)
        return DISCONNECTED
    return CONNECTED if healthy else DISCONNECTED


async def check_dependencies(probes: Sequence[HealthProbe], timeout: float = 2.0) -> Dict[str, str]:
    """Run every probe concurrently; a raising probe counts as disconnected"""
    results = await asyncio.gather(*(_run_probe(probe, timeout) for probe in probes))
    return {probe.name: result for probe, result in zip(probes, results)}


def default_probes(config: Config, cache: Any) -> List[HealthProbe]:
    """Probes for the dependencies declared in configuration"""
    probes: List[HealthProbe] = []
    if config.dependencies.redis_url:
        probes.append(CacheProbe(cache))
    if config.dependencies.document_store_url:
        probes.append(HTTPProbe(
            "document_store",
            config.dependencies.document_store_url,
            timeout=config.dependencies.probe_timeout_seconds,
        ))
    return probes


async def build_health_report(
    config: Config,
    metrics: MetricsCollector,
    probes: Sequence[HealthProbe],
    started_at: float,
) -> Dict[str, Any]:
    """Health document; ``status`` is degraded when any dependency is down"""
    dependencies = await check_dependencies(probes, config.dependencies.probe_timeout_seconds)
    healthy = all(state == CONNECTED for state in dependencies.values())

    process = metrics.record_process_metrics()
    return {
        "status": "ok" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - started_at, 3),
        "version": config.service.version,
        "environment": config.service.environment,
        "metrics": {
            "memory": process["memory"],
            "cpu": process["cpu"],
            "active_connections": metrics.current_connections(),
        },
        "dependencies": dependencies,
    }
