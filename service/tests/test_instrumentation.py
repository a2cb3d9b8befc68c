"""Tests for the operation wrapper"""

import asyncio
from unittest.mock import MagicMock

import pytest

from cicd_demo.observability import Instrumentation, OperationCategory
from cicd_demo.observability.instrumentation import (
    MAX_ERROR_MESSAGE_LENGTH,
    MAX_QUERY_LENGTH,
    business_tags,
    error_status_code,
    http_tags,
)


class ClientError(Exception):
    status_code = 404


def error_count(registry, component, error_type="server_error", severity="high"):
    return registry.get_sample_value(
        "application_errors_total",
        {"error_type": error_type, "severity": severity, "component": component},
    )


def operation_count(registry, category, status):
    return registry.get_sample_value(
        "operation_duration_seconds_count", {"category": category, "status": status}
    )


class TestSuccess:
    """Successful operations"""

    def test_sync_success(self, instrumentation, registry, reporter):
        @instrumentation.instrument("lookup", OperationCategory.DATABASE)
        def run_query(query):
            return ["row"]

        assert run_query("SELECT 1") == ["row"]

        span = reporter.find("database.lookup")[0]
        assert span.finished
        assert span.tags["success"] is True
        assert span.tags["db.query"] == "SELECT 1"
        assert span.tags["db.operation"] == "lookup"
        assert operation_count(registry, "database", "success") == 1

    @pytest.mark.asyncio
    async def test_async_success_returns_result_unchanged(self, instrumentation, reporter):
        result = object()

        @instrumentation.instrument("fetch", OperationCategory.EXTERNAL)
        async def fetch(endpoint):
            await asyncio.sleep(0)
            return result

        assert await fetch("https://example.com/api") is result
        span = reporter.find("external.fetch")[0]
        assert span.tags["external.endpoint"] == "https://example.com/api"

    def test_zero_argument_operation(self, instrumentation, reporter):
        @instrumentation.instrument("tick", OperationCategory.BUSINESS)
        def tick():
            return 1

        assert tick() == 1
        span = reporter.find("business.tick")[0]
        assert "business.user_segment" not in span.tags

    def test_long_query_truncated(self, instrumentation, reporter):
        query = "SELECT " + "x" * 500
        instrumentation.wrap(lambda q: None, "scan", OperationCategory.DATABASE)(query)
        span = reporter.find("database.scan")[0]
        assert len(span.tags["db.query"]) == MAX_QUERY_LENGTH

    @pytest.mark.asyncio
    async def test_cache_hit_and_miss(self, instrumentation, registry, reporter):
        store = {"user:1": {"id": "1"}}

        @instrumentation.trace_cache("get")
        async def cache_get(key):
            return store.get(key)

        await cache_get("user:1")
        await cache_get("user:2")

        hit, miss = reporter.find("cache.get")
        assert hit.tags["cache.hit"] is True
        assert hit.tags["cache.key"] == "user:1"
        assert miss.tags["cache.hit"] is False
        assert registry.get_sample_value("cache_operations_total", {"operation": "get", "result": "hit"}) == 1
        assert registry.get_sample_value("cache_operations_total", {"operation": "get", "result": "miss"}) == 1

    def test_custom_tag_extractor(self, instrumentation, reporter):
        @instrumentation.trace_business("checkout", tag_extractor=lambda order: {"order.total": order["total"]})
        def checkout(order):
            return True

        checkout({"total": 12})
        assert reporter.find("business.checkout")[0].tags["order.total"] == 12

    def test_failing_tag_extractor_is_ignored(self, instrumentation, reporter):
        def broken(arg):
            raise KeyError("missing")

        @instrumentation.trace_business("checkout", tag_extractor=broken)
        def checkout(order):
            return "done"

        assert checkout({}) == "done"
        assert reporter.find("business.checkout")[0].tags["success"] is True


class TestFailure:
    """Failing operations"""

    def test_sync_failure_reraises_original(self, instrumentation, registry, reporter):
        error = RuntimeError("connection refused")

        @instrumentation.trace_cache("get")
        def cache_get(key):
            raise error

        with pytest.raises(RuntimeError) as excinfo:
            cache_get("user:1")

        assert excinfo.value is error
        span = reporter.find("cache.get")[0]
        assert span.finished
        assert span.tags["error"] is True
        assert span.tags["error.message"] == "connection refused"
        assert span.tags["error.kind"] == "RuntimeError"
        assert error_count(registry, "cache") == 1
        assert operation_count(registry, "cache", "error") == 1
        assert registry.get_sample_value("cache_operations_total", {"operation": "get", "result": "error"}) == 1

    @pytest.mark.asyncio
    async def test_async_failure_reraises(self, instrumentation, registry):
        @instrumentation.trace_database("insert")
        async def insert(query):
            raise ValueError("duplicate key")

        with pytest.raises(ValueError, match="duplicate key"):
            await insert("INSERT INTO users VALUES (1)")
        assert error_count(registry, "database") == 1

    def test_client_errors_are_medium_severity(self, instrumentation, registry):
        @instrumentation.trace_external("billing", "/invoices")
        def call():
            raise ClientError("not found")

        with pytest.raises(ClientError):
            call()
        assert error_count(registry, "external", "client_error", "medium") == 1
        assert error_count(registry, "external") is None

    def test_error_message_truncated(self, instrumentation, reporter):
        @instrumentation.trace_business("import")
        def run():
            raise RuntimeError("x" * 10000)

        with pytest.raises(RuntimeError):
            run()
        assert len(reporter.find("business.import")[0].tags["error.message"]) == MAX_ERROR_MESSAGE_LENGTH

    @pytest.mark.asyncio
    async def test_timeout_recorded_as_failure(self, instrumentation, registry):
        @instrumentation.trace_external("slow")
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(slow(), timeout=0.01)
        assert error_count(registry, "external") == 1

    def test_broken_metrics_do_not_mask_failure(self, tracer, reporter):
        metrics = MagicMock()
        metrics.record_error.side_effect = RuntimeError("registry broken")
        metrics.record_operation.side_effect = RuntimeError("registry broken")
        instrumentation = Instrumentation(tracer, metrics)

        @instrumentation.trace_business("pay")
        def pay():
            raise ValueError("card declined")

        with pytest.raises(ValueError, match="card declined"):
            pay()
        assert reporter.find("business.pay")[0].finished

    def test_broken_metrics_do_not_mask_success(self, tracer):
        metrics = MagicMock()
        metrics.record_operation.side_effect = RuntimeError("registry broken")
        instrumentation = Instrumentation(tracer, metrics)

        assert instrumentation.wrap(lambda: 5, "five", OperationCategory.BUSINESS)() == 5


class TestNesting:
    """Parent/child linkage between operations"""

    @pytest.mark.asyncio
    async def test_nested_operations_share_trace(self, instrumentation, reporter):
        @instrumentation.trace_cache("get")
        async def cache_get(key):
            return None

        @instrumentation.trace_business("load_profile")
        async def load_profile(user):
            return await cache_get(f"profile:{user['user_id']}")

        await load_profile({"user_id": "7", "user_segment": "premium"})

        outer = reporter.find("business.load_profile")[0]
        inner = reporter.find("cache.get")[0]
        assert inner.context.trace_id == outer.context.trace_id
        assert inner.parent.span_id == outer.context.span_id
        assert outer.tags["business.user_segment"] == "premium"
        assert outer.tags["business.user_id"] == "7"

    def test_explicit_scope(self, instrumentation, tracer, reporter):
        parent = tracer.start_span("request")
        scope = instrumentation.begin("GET /", OperationCategory.HTTP, parent=parent)
        scope.tag("http.status_code", 200)
        scope.succeed(status="2xx")
        scope.succeed(status="2xx")

        span = reporter.find("http.GET /")[0]
        assert span.parent == parent.context
        assert span.tags["http.status_code"] == 200
        assert len(reporter.find("http.GET /")) == 1


class TestTagExtractors:
    """Default per-category tag extraction"""

    def test_http_tags_from_mapping(self):
        assert http_tags({"method": "GET", "path": "/x"}) == {"http.method": "GET", "http.path": "/x"}

    def test_business_tags_default_segment(self):
        assert business_tags({}) == {"business.user_segment": "anonymous"}

    def test_error_status_code_from_response(self):
        error = Exception("bad gateway")
        error.response = MagicMock(status_code=502)
        assert error_status_code(error) == 502
        assert error_status_code(RuntimeError()) is None
