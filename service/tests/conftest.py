"""Pytest configuration and fixtures"""

import pytest
from fastapi.testclient import TestClient

from cicd_demo.api.server import create_app
from cicd_demo.config import Config
from cicd_demo.observability import (
    InMemoryReporter,
    Instrumentation,
    MetricRegistry,
    MetricsCollector,
    Tracer,
)


@pytest.fixture
def registry():
    """Empty metric registry"""
    return MetricRegistry()


@pytest.fixture
def collector(registry):
    """Application metrics registered on the test registry"""
    return MetricsCollector(registry)


@pytest.fixture
def reporter():
    """Span reporter keeping finished spans in memory"""
    return InMemoryReporter()


@pytest.fixture
def tracer(reporter):
    """Tracer reporting into memory"""
    return Tracer("test-service", reporter=reporter)


@pytest.fixture
def instrumentation(tracer, collector):
    """Instrumentation wired to the in-memory tracer and test registry"""
    return Instrumentation(tracer, collector)


@pytest.fixture
def test_config():
    """Test configuration"""
    config = Config()
    config.service.environment = "development"
    config.service.build = "42"
    config.service.commit = "abc123"
    config.api.rate_limit_per_minute = 1000
    config.tracing.log_spans = False
    return config


@pytest.fixture
def make_client(test_config, reporter):
    """Factory building an app and a test client that shares the span reporter"""
    clients = []

    def factory(config=None, **kwargs):
        kwargs.setdefault("reporter", reporter)
        app = create_app(config or test_config, **kwargs)
        client = TestClient(app, raise_server_exceptions=False)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    """Test client for the default app"""
    return make_client()
