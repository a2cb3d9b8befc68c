"""Span tracer with header-based trace context propagation

Spans are timed records of one unit of work. A finished span is frozen and
handed to the tracer's reporter. Trace context travels between processes in
the Jaeger ``uber-trace-id`` header::

    uber-trace-id: {trace_id}:{span_id}:{parent_id}:{flags}

with every id in lowercase hex and baggage items carried as ``uberctx-<key>``
headers. Header names are matched case-insensitively and values may be
URL-encoded. Baggage keys are always lowercase. Anything malformed is
treated as "no context" by ``extract``.
"""

import logging
import random
import re
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, MutableMapping, Optional, Tuple, Union
from urllib.parse import quote, unquote

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace import (
    NonRecordingSpan,
    SpanContext as OtelSpanContext,
    Status,
    StatusCode,
    TraceFlags,
    set_span_in_context,
)

from .errors import SpanAlreadyFinishedError
from .logging import get_logger, trace_id_var

logger = get_logger(__name__)

TRACE_HEADER = "uber-trace-id"
BAGGAGE_PREFIX = "uberctx-"

SAMPLED_FLAG = 0x01

_TRACE_ID_RE = re.compile(r"^[0-9a-f]{1,32}$")
_SPAN_ID_RE = re.compile(r"^[0-9a-f]{1,16}$")
_FLAGS_RE = re.compile(r"^[0-9a-f]{1,2}$")


def generate_id() -> int:
    """Random non-zero 64-bit id"""
    value = 0
    while value == 0:
        value = random.getrandbits(64)
    return value


@dataclass(frozen=True)
class SpanContext:
    """Identifiers linking a span to its trace, safe to copy across processes"""
    trace_id: int
    span_id: int
    parent_id: int = 0
    flags: int = SAMPLED_FLAG
    baggage: Mapping[str, str] = field(default_factory=dict, hash=False)

    @property
    def sampled(self) -> bool:
        return bool(self.flags & SAMPLED_FLAG)

    @property
    def trace_id_hex(self) -> str:
        return f"{self.trace_id:x}"

    @property
    def span_id_hex(self) -> str:
        return f"{self.span_id:x}"

    def encode(self) -> str:
        return f"{self.trace_id:x}:{self.span_id:x}:{self.parent_id:x}:{self.flags:x}"

    @classmethod
    def decode(cls, value: str) -> Optional["SpanContext"]:
        """Parse an ``uber-trace-id`` value; None when malformed"""
        parts = unquote(value).strip().lower().split(":")
        if len(parts) != 4:
            return None
        trace_id, span_id, parent_id, flags = parts
        if not (
            _TRACE_ID_RE.match(trace_id)
            and _SPAN_ID_RE.match(span_id)
            and _SPAN_ID_RE.match(parent_id)
            and _FLAGS_RE.match(flags)
        ):
            return None
        context = cls(
            trace_id=int(trace_id, 16),
            span_id=int(span_id, 16),
            parent_id=int(parent_id, 16),
            flags=int(flags, 16),
        )
        if context.trace_id == 0 or context.span_id == 0:
            return None
        return context


class Span:
    """One bounded unit of work

    Tags may change until ``finish`` is called; afterwards the span is an
    immutable record and any mutation raises ``SpanAlreadyFinishedError``.
    The parent is kept as a ``SpanContext`` value, never as a reference to
    the parent span object.
    """

    def __init__(
        self,
        tracer: "Tracer",
        operation_name: str,
        context: SpanContext,
        parent: Optional[SpanContext] = None,
        tags: Optional[Mapping[str, Any]] = None,
        start_time: Optional[float] = None,
    ):
        self._tracer = tracer
        self.operation_name = operation_name
        self.context = context
        self.parent = parent
        self.start_time = start_time if start_time is not None else time.time()
        self.end_time: Optional[float] = None
        self._tags: Dict[str, Any] = dict(tags or {})
        self._logs: List[Dict[str, Any]] = []
        self._lock = Lock()

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def tags(self) -> Mapping[str, Any]:
        if self.finished:
            return self._tags
        return MappingProxyType(self._tags)

    @property
    def logs(self) -> List[Dict[str, Any]]:
        return list(self._logs)

    def _ensure_open(self) -> None:
        if self.end_time is not None:
            raise SpanAlreadyFinishedError(self.operation_name)

    def set_tag(self, key: str, value: Any) -> "Span":
        with self._lock:
            self._ensure_open()
            self._tags[key] = value
        return self

    def set_tags(self, tags: Mapping[str, Any]) -> "Span":
        with self._lock:
            self._ensure_open()
            self._tags.update(tags)
        return self

    def log_event(self, event: str, **fields: Any) -> "Span":
        with self._lock:
            self._ensure_open()
            self._logs.append({"timestamp": time.time(), "event": event, **fields})
        return self

    def set_baggage_item(self, key: str, value: str) -> "Span":
        """Keys are lowercased; they travel as case-insensitive header names"""
        key = key.lower()
        with self._lock:
            self._ensure_open()
            baggage = dict(self.context.baggage)
            baggage[key] = str(value)
            self.context = replace(self.context, baggage=baggage)
        return self

    def get_baggage_item(self, key: str) -> Optional[str]:
        return self.context.baggage.get(key.lower())

    def finish(self, finish_time: Optional[float] = None) -> None:
        """Record the end time, freeze tags and report the span"""
        with self._lock:
            self._ensure_open()
            self.end_time = finish_time if finish_time is not None else time.time()
            self._tags = MappingProxyType(dict(self._tags))
        self._tracer._report(self)

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None and not self.finished:
            self.set_tags({"error": True, "error.message": str(exc_val)})
        if not self.finished:
            self.finish()
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "trace_id": self.context.trace_id_hex,
            "span_id": self.context.span_id_hex,
            "parent_id": f"{self.parent.span_id:x}" if self.parent else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": self.duration,
            "tags": dict(self._tags),
            "logs": self.logs,
        }

    def __repr__(self) -> str:
        return (
            f"Span({self.operation_name!r}, trace_id={self.context.trace_id_hex}, "
            f"span_id={self.context.span_id_hex}, finished={self.finished})"
        )


class Reporter:
    """Receives every finished span"""

    def report(self, span: Span) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LoggingReporter(Reporter):
    """Writes one structured log record per finished span"""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self.log = log or get_logger("cicd_demo.spans")
        self.level = level

    def report(self, span: Span) -> None:
        if not self.log.isEnabledFor(self.level):
            return
        self.log.log(
            self.level,
            "Span finished",
            extra={
                "span": span.operation_name,
                "trace_id": span.context.trace_id_hex,
                "span_id": span.context.span_id_hex,
                "parent_id": f"{span.parent.span_id:x}" if span.parent else None,
                "duration_seconds": span.duration,
                "tags": {key: str(value) for key, value in span.tags.items()},
            },
        )


class InMemoryReporter(Reporter):
    """Keeps finished spans in memory"""

    def __init__(self):
        self._spans: List[Span] = []
        self._lock = Lock()

    def report(self, span: Span) -> None:
        with self._lock:
            self._spans.append(span)

    @property
    def spans(self) -> List[Span]:
        with self._lock:
            return list(self._spans)

    def find(self, operation_name: str) -> List[Span]:
        return [span for span in self.spans if span.operation_name == operation_name]

    def clear(self) -> None:
        with self._lock:
            self._spans.clear()


class CompositeReporter(Reporter):
    """Fans finished spans out to several reporters"""

    def __init__(self, *reporters: Reporter):
        self.reporters = list(reporters)

    def report(self, span: Span) -> None:
        for reporter in self.reporters:
            try:
                reporter.report(span)
            except Exception:
                logger.exception("Span reporter %s failed", type(reporter).__name__)

    def close(self) -> None:
        for reporter in self.reporters:
            reporter.close()


# (trace_id, span_id) of the span currently being replayed into OpenTelemetry
_replayed_ids: ContextVar[Optional[Tuple[int, int]]] = ContextVar("replayed_ids", default=None)


class ReplayIdGenerator(IdGenerator):
    """Hands OpenTelemetry the ids of the span being replayed

    Outside a replay it falls back to random ids.
    """

    def __init__(self):
        self._random = RandomIdGenerator()

    def generate_span_id(self) -> int:
        ids = _replayed_ids.get()
        return ids[1] if ids else self._random.generate_span_id()

    def generate_trace_id(self) -> int:
        ids = _replayed_ids.get()
        return ids[0] if ids else self._random.generate_trace_id()


def setup_tracing(
    service_name: str = "cicd-demo-app",
    endpoint: Optional[str] = None,
    console: bool = False,
) -> TracerProvider:
    """Build an OpenTelemetry tracer provider with OTLP and/or console export"""
    resource = Resource.create({
        "service.name": service_name,
    })

    provider = TracerProvider(resource=resource, id_generator=ReplayIdGenerator())

    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))

    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    return provider


def _otel_attribute(value: Any) -> Union[str, bool, int, float]:
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


class OpenTelemetryReporter(Reporter):
    """Replays finished spans into an OpenTelemetry tracer provider

    Exported spans keep our trace and span ids and are parented on the
    original parent context, so the collector sees the same trace topology.
    The provider must be built with a ``ReplayIdGenerator`` (``setup_tracing``
    does this); otherwise OpenTelemetry assigns ids of its own.
    """

    def __init__(self, provider: TracerProvider, instrumentation_name: str = "cicd_demo"):
        self.provider = provider
        self._tracer = provider.get_tracer(instrumentation_name)
        if not isinstance(getattr(provider, "id_generator", None), ReplayIdGenerator):
            logger.warning("Tracer provider does not replay span ids; exported traces will not match")

    def report(self, span: Span) -> None:
        parent_context = None
        if span.parent is not None:
            parent_context = set_span_in_context(
                NonRecordingSpan(
                    OtelSpanContext(
                        trace_id=span.parent.trace_id,
                        span_id=span.parent.span_id,
                        is_remote=True,
                        trace_flags=TraceFlags(span.parent.flags & SAMPLED_FLAG),
                    )
                )
            )

        attributes = {key: _otel_attribute(value) for key, value in span.tags.items()}
        attributes["trace.id"] = span.context.trace_id_hex
        attributes["span.id"] = span.context.span_id_hex

        token = _replayed_ids.set((span.context.trace_id, span.context.span_id))
        try:
            otel_span = self._tracer.start_span(
                span.operation_name,
                context=parent_context,
                attributes=attributes,
                start_time=int(span.start_time * 1e9),
            )
        finally:
            _replayed_ids.reset(token)
        for entry in span.logs:
            fields = {k: _otel_attribute(v) for k, v in entry.items() if k not in ("event", "timestamp")}
            otel_span.add_event(entry["event"], fields, timestamp=int(entry["timestamp"] * 1e9))
        if span.tags.get("error"):
            otel_span.set_status(Status(StatusCode.ERROR, str(span.tags.get("error.message", ""))))
        otel_span.end(end_time=int(span.end_time * 1e9))

    def close(self) -> None:
        self.provider.shutdown()


SpanParent = Union[Span, SpanContext, None]


class Tracer:
    """Creates spans, propagates their context and reports them when finished"""

    def __init__(
        self,
        service_name: str,
        reporter: Optional[Reporter] = None,
        sampled: bool = True,
        id_generator: Callable[[], int] = generate_id,
    ):
        self.service_name = service_name
        self.reporter = reporter if reporter is not None else LoggingReporter()
        self.sampled = sampled
        self._generate_id = id_generator
        self._active: ContextVar[Optional[Span]] = ContextVar(
            f"active_span_{service_name}", default=None
        )

    def start_span(
        self,
        operation_name: str,
        parent: SpanParent = None,
        tags: Optional[Mapping[str, Any]] = None,
        start_time: Optional[float] = None,
    ) -> Span:
        """Start a span; it inherits the trace id when a parent is given"""
        parent_context = parent.context if isinstance(parent, Span) else parent

        if parent_context is None:
            trace_id = self._generate_id()
            context = SpanContext(
                trace_id=trace_id,
                span_id=trace_id,
                flags=SAMPLED_FLAG if self.sampled else 0,
            )
        else:
            context = SpanContext(
                trace_id=parent_context.trace_id,
                span_id=self._generate_id(),
                parent_id=parent_context.span_id,
                flags=parent_context.flags,
                baggage=dict(parent_context.baggage),
            )

        return Span(
            self,
            operation_name,
            context,
            parent=parent_context,
            tags=tags,
            start_time=start_time,
        )

    def inject(
        self,
        span: Union[Span, SpanContext],
        carrier: MutableMapping[str, str],
    ) -> MutableMapping[str, str]:
        """Write the trace context into a header-style carrier"""
        context = span.context if isinstance(span, Span) else span
        carrier[TRACE_HEADER] = context.encode()
        for key, value in context.baggage.items():
            carrier[f"{BAGGAGE_PREFIX}{key}"] = quote(str(value), safe="")
        return carrier

    def extract(self, carrier: Optional[Mapping[str, str]]) -> Optional[SpanContext]:
        """Read a trace context from a carrier; None if absent or malformed"""
        if not carrier:
            return None

        context = None
        baggage: Dict[str, str] = {}
        for key, value in carrier.items():
            if not isinstance(key, str) or not isinstance(value, str):
                continue
            name = key.lower()
            if name == TRACE_HEADER:
                context = SpanContext.decode(value)
            elif name.startswith(BAGGAGE_PREFIX):
                baggage[name[len(BAGGAGE_PREFIX):]] = unquote(value)

        if context is None:
            return None
        if baggage:
            context = replace(context, baggage=baggage)
        return context

    def active_span(self) -> Optional[Span]:
        """The span activated for the current task or thread, if any"""
        return self._active.get()

    @contextmanager
    def activate(self, span: Span) -> Iterator[Span]:
        """Make ``span`` the active span for the duration of the block"""
        token = self._active.set(span)
        trace_token = trace_id_var.set(span.context.trace_id_hex)
        try:
            yield span
        finally:
            trace_id_var.reset(trace_token)
            self._active.reset(token)

    def _report(self, span: Span) -> None:
        if not span.context.sampled:
            return
        try:
            self.reporter.report(span)
        except Exception:
            logger.exception("Failed to report span %s", span.operation_name)

    def close(self) -> None:
        try:
            self.reporter.close()
        except Exception:
            logger.exception("Failed to close span reporter")
