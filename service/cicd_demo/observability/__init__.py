"""Observability: logging, metrics, tracing, instrumentation"""

from .errors import (
    ObservabilityError,
    DuplicateMetricError,
    UnknownMetricError,
    LabelMismatchError,
    InvalidValueError,
    SpanAlreadyFinishedError,
)
from .logging import setup_logging, get_logger
from .registry import MetricRegistry, Counter, Gauge, Histogram, Sample, render_exposition
from .metrics import MetricsCollector, ProcessMetricsSampler
from .tracing import (
    Tracer,
    Span,
    SpanContext,
    Reporter,
    LoggingReporter,
    InMemoryReporter,
    CompositeReporter,
    OpenTelemetryReporter,
    ReplayIdGenerator,
    setup_tracing,
)
from .instrumentation import Instrumentation, OperationCategory, OperationScope

__all__ = [
    "ObservabilityError",
    "DuplicateMetricError",
    "UnknownMetricError",
    "LabelMismatchError",
    "InvalidValueError",
    "SpanAlreadyFinishedError",
    "setup_logging",
    "get_logger",
    "MetricRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "Sample",
    "render_exposition",
    "MetricsCollector",
    "ProcessMetricsSampler",
    "Tracer",
    "Span",
    "SpanContext",
    "Reporter",
    "LoggingReporter",
    "InMemoryReporter",
    "CompositeReporter",
    "OpenTelemetryReporter",
    "ReplayIdGenerator",
    "setup_tracing",
    "Instrumentation",
    "OperationCategory",
    "OperationScope",
]
