"""Uniform instrumentation of operations with spans and metrics

Every instrumented call, whatever its category, goes through the same
lifecycle: start a span named ``<category>.<operation>``, run the operation,
then settle once, either as a success (duration observed, span finished,
result returned unchanged) or as a failure (error tags, error counter,
span finished, original exception re-raised). Only the tags differ per
call site; they come from a per-category tag extractor.

Recording never changes the outcome of the operation: a failure while
updating metrics or reporting spans is logged and dropped.
"""

import asyncio
import functools
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, TypeVar

from .logging import get_logger
from .metrics import MetricsCollector
from .tracing import Span, SpanParent, Tracer

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
TagExtractor = Callable[[Any], Mapping[str, Any]]

MAX_QUERY_LENGTH = 100
MAX_ERROR_MESSAGE_LENGTH = 256


class OperationCategory(str, Enum):
    HTTP = "http"
    DATABASE = "database"
    CACHE = "cache"
    EXTERNAL = "external"
    BUSINESS = "business"


# Span tag namespace per category
TAG_PREFIXES = {
    OperationCategory.HTTP: "http",
    OperationCategory.DATABASE: "db",
    OperationCategory.CACHE: "cache",
    OperationCategory.EXTERNAL: "external",
    OperationCategory.BUSINESS: "business",
}


def truncate(value: Any, limit: int) -> str:
    text = str(value)
    if len(text) <= limit:
        return text
    return text[:limit]


def _field(arg: Any, *names: str) -> Any:
    """First of ``names`` found as a mapping key or attribute of ``arg``"""
    for name in names:
        if isinstance(arg, Mapping):
            if name in arg:
                return arg[name]
        elif hasattr(arg, name):
            return getattr(arg, name)
    return None


def http_tags(arg: Any) -> Dict[str, Any]:
    tags = {}
    method = _field(arg, "method")
    if method is not None:
        tags["http.method"] = method
    url = _field(arg, "url")
    path = _field(url, "path") if url is not None and not isinstance(url, str) else None
    path = path or _field(arg, "path")
    if path is not None:
        tags["http.path"] = path
    return tags


def database_tags(arg: Any) -> Dict[str, Any]:
    query = arg if isinstance(arg, str) else _field(arg, "query", "statement")
    if query is None:
        return {}
    return {"db.query": truncate(query, MAX_QUERY_LENGTH)}


def cache_tags(arg: Any) -> Dict[str, Any]:
    key = arg if isinstance(arg, (str, bytes, int)) else _field(arg, "key")
    if key is None:
        return {}
    return {"cache.key": str(key)}


def external_tags(arg: Any) -> Dict[str, Any]:
    endpoint = arg if isinstance(arg, str) else _field(arg, "endpoint", "url")
    if endpoint is None:
        return {}
    return {"external.endpoint": str(endpoint)}


def business_tags(arg: Any) -> Dict[str, Any]:
    tags = {}
    segment = _field(arg, "user_segment", "segment", "user_type")
    tags["business.user_segment"] = segment if segment is not None else "anonymous"
    user_id = _field(arg, "user_id", "userId")
    if user_id is not None:
        tags["business.user_id"] = str(user_id)
    return tags


DEFAULT_TAG_EXTRACTORS: Dict[OperationCategory, TagExtractor] = {
    OperationCategory.HTTP: http_tags,
    OperationCategory.DATABASE: database_tags,
    OperationCategory.CACHE: cache_tags,
    OperationCategory.EXTERNAL: external_tags,
    OperationCategory.BUSINESS: business_tags,
}


def error_status_code(exc: Optional[BaseException]) -> Optional[int]:
    """Status code carried by an exception or its response, if any"""
    if exc is None:
        return None
    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        status_code = getattr(getattr(exc, "response", None), "status_code", None)
    return status_code if isinstance(status_code, int) else None


def status_bucket(status_code: int) -> str:
    return f"{status_code // 100}xx"


def error_component(category: OperationCategory) -> str:
    return "api" if category is OperationCategory.HTTP else category.value


class OperationScope:
    """One in-flight instrumented operation; settles exactly once"""

    def __init__(
        self,
        instrumentation: "Instrumentation",
        name: str,
        category: OperationCategory,
        span: Span,
    ):
        self.instrumentation = instrumentation
        self.name = name
        self.category = category
        self.span = span
        self.settled = False
        self._started = time.perf_counter()

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self._started

    def tag(self, key: str, value: Any) -> None:
        with self.instrumentation.recording("tag span"):
            self.span.set_tag(key, value)

    def _settle(self) -> bool:
        if self.settled:
            logger.warning("Operation %s.%s settled twice", self.category.value, self.name)
            return False
        self.settled = True
        return True

    def succeed(self, result: Any = None, status: str = "success") -> None:
        """Record a successful completion"""
        if not self._settle():
            return
        duration = self.elapsed
        metrics = self.instrumentation.metrics
        with self.instrumentation.recording("record success"):
            tags = {"success": True}
            if self.category is OperationCategory.CACHE:
                hit = result is not None
                tags["cache.hit"] = hit
                metrics.record_cache_operation(self.name, "hit" if hit else "miss")
            self.span.set_tags(tags)
        with self.instrumentation.recording("observe duration"):
            metrics.record_operation(self.category.value, status, duration)
        with self.instrumentation.recording("finish span"):
            self.span.finish()

    def fail(
        self,
        exc: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        """Record a failure; never raises"""
        if not self._settle():
            return
        duration = self.elapsed
        metrics = self.instrumentation.metrics
        if status_code is None:
            status_code = error_status_code(exc)
        if message is None:
            message = str(exc) if exc is not None else "operation failed"

        with self.instrumentation.recording("record failure"):
            tags = {
                "success": False,
                "error": True,
                "error.message": truncate(message, MAX_ERROR_MESSAGE_LENGTH),
            }
            if exc is not None:
                tags["error.kind"] = type(exc).__name__
            self.span.set_tags(tags)
            self.span.log_event("error", message=tags["error.message"])
        with self.instrumentation.recording("count error"):
            metrics.record_error(error_component(self.category), status_code)
            if self.category is OperationCategory.CACHE:
                metrics.record_cache_operation(self.name, "error")
        with self.instrumentation.recording("observe duration"):
            status = "error"
            if self.category is OperationCategory.HTTP and status_code is not None:
                status = status_bucket(status_code)
            metrics.record_operation(self.category.value, status, duration)
        with self.instrumentation.recording("finish span"):
            self.span.finish()


class Instrumentation:
    """Wraps operations of any category with spans and metrics"""

    def __init__(
        self,
        tracer: Tracer,
        metrics: MetricsCollector,
        tag_extractors: Optional[Mapping[OperationCategory, TagExtractor]] = None,
    ):
        self.tracer = tracer
        self.metrics = metrics
        self.tag_extractors = dict(DEFAULT_TAG_EXTRACTORS)
        if tag_extractors:
            self.tag_extractors.update(tag_extractors)

    @contextmanager
    def recording(self, what: str) -> Iterator[None]:
        """Swallow and log failures of the measurement itself"""
        try:
            yield
        except Exception:
            logger.exception("Instrumentation failed to %s", what)

    def begin(
        self,
        name: str,
        category: OperationCategory,
        parent: SpanParent = None,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> OperationScope:
        """Start an operation; settle it with ``succeed`` or ``fail``"""
        category = OperationCategory(category)
        if parent is None:
            parent = self.tracer.active_span()
        span_tags = {
            "component": category.value,
            f"{TAG_PREFIXES[category]}.operation": name,
        }
        span_tags.update(tags or {})
        span = self.tracer.start_span(f"{category.value}.{name}", parent=parent, tags=span_tags)
        return OperationScope(self, name, category, span)

    def _call_tags(
        self,
        category: OperationCategory,
        extractor: Optional[TagExtractor],
        static_tags: Optional[Mapping[str, Any]],
        args: tuple,
        kwargs: dict,
    ) -> Dict[str, Any]:
        tags = dict(static_tags or {})
        extractor = extractor or self.tag_extractors.get(category)
        if args:
            argument = args[0]
        elif kwargs:
            argument = next(iter(kwargs.values()))
        else:
            argument = None
        if extractor is not None and argument is not None:
            with self.recording("extract tags"):
                tags.update(extractor(argument))
        return tags

    def instrument(
        self,
        name: str,
        category: OperationCategory,
        tag_extractor: Optional[TagExtractor] = None,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> Callable[[F], F]:
        """Decorator instrumenting a sync or async callable"""
        category = OperationCategory(category)

        def decorator(func: F) -> F:
            if asyncio.iscoroutinefunction(func):
                @functools.wraps(func)
                async def async_wrapper(*args, **kwargs):
                    scope = self.begin(
                        name, category, tags=self._call_tags(category, tag_extractor, tags, args, kwargs)
                    )
                    try:
                        with self.tracer.activate(scope.span):
                            result = await func(*args, **kwargs)
                    except (Exception, asyncio.CancelledError) as exc:
                        scope.fail(exc)
                        raise
                    scope.succeed(result)
                    return result

                return async_wrapper

            @functools.wraps(func)
            def sync_wrapper(*args, **kwargs):
                scope = self.begin(
                    name, category, tags=self._call_tags(category, tag_extractor, tags, args, kwargs)
                )
                try:
                    with self.tracer.activate(scope.span):
                        result = func(*args, **kwargs)
                except Exception as exc:
                    scope.fail(exc)
                    raise
                scope.succeed(result)
                return result

            return sync_wrapper

        return decorator

    def wrap(
        self,
        func: F,
        name: str,
        category: OperationCategory,
        tag_extractor: Optional[TagExtractor] = None,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> F:
        """Instrument an existing callable, e.g. a bound method"""
        return self.instrument(name, category, tag_extractor, tags)(func)

    def trace_database(self, name: str, **kwargs) -> Callable[[F], F]:
        return self.instrument(name, OperationCategory.DATABASE, **kwargs)

    def trace_cache(self, name: str, **kwargs) -> Callable[[F], F]:
        return self.instrument(name, OperationCategory.CACHE, **kwargs)

    def trace_external(self, service: str, endpoint: Optional[str] = None, **kwargs) -> Callable[[F], F]:
        tags = dict(kwargs.pop("tags", None) or {})
        tags["external.service"] = service
        if endpoint:
            tags["external.endpoint"] = endpoint
        return self.instrument(service, OperationCategory.EXTERNAL, tags=tags, **kwargs)

    def trace_business(self, name: str, **kwargs) -> Callable[[F], F]:
        return self.instrument(name, OperationCategory.BUSINESS, **kwargs)
