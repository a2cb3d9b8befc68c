"""Metric registry: counters, gauges and histograms with fixed label sets

The registry owns every metric instance. Mutations are validated against the
label names declared at registration and applied under a per-metric lock, so
concurrent requests never lose updates. ``export()`` re-derives samples from
current state on every call; each metric is snapshotted under its own lock,
so under concurrent writers different metrics may reflect slightly different
instants.

The registry also implements the prometheus_client collector protocol, which
is how the ``/metrics`` endpoint renders the standard text exposition.
"""

import math
import re
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from prometheus_client import CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
    Metric as MetricFamily,
)
from prometheus_client.utils import floatToGoString

from .errors import (
    DuplicateMetricError,
    InvalidValueError,
    LabelMismatchError,
    UnknownMetricError,
)

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

Labels = Optional[Mapping[str, Any]]


class Sample(NamedTuple):
    """One exported value"""
    name: str
    labels: Dict[str, str]
    value: float


def _require_finite(name: str, value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InvalidValueError(f"Value for '{name}' must be a number, got {value!r}")
    if not math.isfinite(value):
        raise InvalidValueError(f"Value for '{name}' must be finite, got {value}")
    return value


class Metric:
    """Base metric: a name, help text and an ordered tuple of label names"""

    kind = "metric"

    def __init__(
        self,
        name: str,
        documentation: str = "",
        label_names: Sequence[str] = (),
    ):
        if not _METRIC_NAME_RE.match(name):
            raise InvalidValueError(f"Invalid metric name: {name!r}")
        label_names = tuple(label_names)
        for label in label_names:
            if not _LABEL_NAME_RE.match(label) or label.startswith("__"):
                raise InvalidValueError(f"Invalid label name for '{name}': {label!r}")
        if len(set(label_names)) != len(label_names):
            raise InvalidValueError(f"Duplicate label names for '{name}': {label_names}")

        self.name = name
        self.documentation = documentation or name
        self.label_names: Tuple[str, ...] = label_names
        self._lock = Lock()

    def _key(self, labels: Labels) -> Tuple[str, ...]:
        """Validate labels and return the values in declared order"""
        labels = labels or {}
        if set(labels) != set(self.label_names):
            raise LabelMismatchError(self.name, self.label_names, labels.keys())
        return tuple(str(labels[label]) for label in self.label_names)

    def _labels_dict(self, key: Tuple[str, ...]) -> Dict[str, str]:
        return dict(zip(self.label_names, key))

    def samples(self) -> List[Sample]:
        raise NotImplementedError

    def family(self) -> MetricFamily:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, labels={list(self.label_names)})"


class Counter(Metric):
    """Monotonic, non-negative accumulator"""

    kind = "counter"

    def __init__(self, name: str, documentation: str = "", label_names: Sequence[str] = ()):
        super().__init__(name, documentation, label_names)
        self._values: Dict[Tuple[str, ...], float] = {}
        if not self.label_names:
            self._values[()] = 0.0

    def inc(self, labels: Labels = None, delta: float = 1) -> None:
        key = self._key(labels)
        delta = _require_finite(self.name, delta)
        if delta < 0:
            raise InvalidValueError(f"Counter '{self.name}' cannot be decremented (delta={delta})")
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + delta

    def samples(self) -> List[Sample]:
        with self._lock:
            snapshot = sorted(self._values.items())
        return [Sample(self.name, self._labels_dict(key), value) for key, value in snapshot]

    def family(self) -> MetricFamily:
        family = CounterMetricFamily(self.name, self.documentation, labels=self.label_names)
        with self._lock:
            snapshot = sorted(self._values.items())
        for key, value in snapshot:
            family.add_metric(list(key), value)
        return family


class Gauge(Metric):
    """Last-set value; may go up and down"""

    kind = "gauge"

    def __init__(self, name: str, documentation: str = "", label_names: Sequence[str] = ()):
        super().__init__(name, documentation, label_names)
        self._values: Dict[Tuple[str, ...], float] = {}
        if not self.label_names:
            self._values[()] = 0.0

    def set(self, labels: Labels = None, value: float = 0.0) -> None:
        key = self._key(labels)
        value = _require_finite(self.name, value)
        with self._lock:
            self._values[key] = value

    def add(self, labels: Labels = None, delta: float = 1) -> None:
        key = self._key(labels)
        delta = _require_finite(self.name, delta)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + delta

    def samples(self) -> List[Sample]:
        with self._lock:
            snapshot = sorted(self._values.items())
        return [Sample(self.name, self._labels_dict(key), value) for key, value in snapshot]

    def family(self) -> MetricFamily:
        family = GaugeMetricFamily(self.name, self.documentation, labels=self.label_names)
        with self._lock:
            snapshot = sorted(self._values.items())
        for key, value in snapshot:
            family.add_metric(list(key), value)
        return family


class _HistogramState:
    __slots__ = ("buckets", "sum", "count")

    def __init__(self, size: int):
        # Cumulative counts; the last slot is the +Inf bucket
        self.buckets = [0] * size
        self.sum = 0.0
        self.count = 0


class Histogram(Metric):
    """Bucketed distribution with fixed ascending upper bounds"""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        documentation: str = "",
        label_names: Sequence[str] = (),
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ):
        if "le" in label_names:
            raise InvalidValueError(f"Histogram '{name}' cannot use the reserved label 'le'")
        super().__init__(name, documentation, label_names)

        bounds = [float(b) for b in buckets]
        if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
            bounds = bounds[:-1]
        if not bounds:
            raise InvalidValueError(f"Histogram '{name}' needs at least one bucket")
        for bound in bounds:
            if not math.isfinite(bound):
                raise InvalidValueError(f"Histogram '{name}' has a non-finite bucket: {bound}")
        if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
            raise InvalidValueError(f"Buckets for '{name}' must be strictly ascending: {bounds}")

        self.bounds: Tuple[float, ...] = tuple(bounds)
        self._upper_labels = [floatToGoString(b) for b in self.bounds] + ["+Inf"]
        self._values: Dict[Tuple[str, ...], _HistogramState] = {}
        if not self.label_names:
            self._values[()] = _HistogramState(len(self._upper_labels))

    def observe(self, labels: Labels = None, value: float = 0.0) -> None:
        key = self._key(labels)
        value = _require_finite(self.name, value)
        with self._lock:
            state = self._values.get(key)
            if state is None:
                state = self._values[key] = _HistogramState(len(self._upper_labels))
            for index, bound in enumerate(self.bounds):
                if value <= bound:
                    state.buckets[index] += 1
            state.buckets[-1] += 1
            state.sum += value
            state.count += 1

    def _snapshot(self) -> List[Tuple[Tuple[str, ...], List[int], float, int]]:
        with self._lock:
            return [
                (key, list(state.buckets), state.sum, state.count)
                for key, state in sorted(self._values.items())
            ]

    def samples(self) -> List[Sample]:
        samples = []
        for key, buckets, total, count in self._snapshot():
            labels = self._labels_dict(key)
            for upper, bucket_count in zip(self._upper_labels, buckets):
                samples.append(Sample(f"{self.name}_bucket", dict(labels, le=upper), float(bucket_count)))
            samples.append(Sample(f"{self.name}_sum", dict(labels), total))
            samples.append(Sample(f"{self.name}_count", dict(labels), float(count)))
        return samples

    def family(self) -> MetricFamily:
        family = HistogramMetricFamily(self.name, self.documentation, labels=self.label_names)
        for key, buckets, total, _count in self._snapshot():
            family.add_metric(
                list(key),
                list(zip(self._upper_labels, buckets)),
                total,
            )
        return family


class MetricRegistry:
    """Named metrics, unique by name, with validated mutation and export"""

    def __init__(self):
        self._metrics: Dict[str, Metric] = {}
        self._lock = Lock()

    def register(self, metric: Metric) -> Metric:
        """Register a metric; fails if the name is taken"""
        with self._lock:
            if metric.name in self._metrics:
                raise DuplicateMetricError(metric.name)
            self._metrics[metric.name] = metric
        return metric

    def unregister(self, name: str) -> None:
        with self._lock:
            if name not in self._metrics:
                raise UnknownMetricError(name)
            del self._metrics[name]

    def get(self, name: str) -> Metric:
        try:
            return self._metrics[name]
        except KeyError:
            raise UnknownMetricError(name) from None

    def names(self) -> List[str]:
        with self._lock:
            return list(self._metrics)

    def __contains__(self, name: str) -> bool:
        return name in self._metrics

    def __len__(self) -> int:
        return len(self._metrics)

    def _lookup(self, name: str, kind: type) -> Any:
        metric = self._metrics.get(name)
        if not isinstance(metric, kind):
            raise UnknownMetricError(name, kind.kind)
        return metric

    def counter_increment(self, name: str, labels: Labels = None, delta: float = 1) -> None:
        self._lookup(name, Counter).inc(labels, delta)

    def gauge_set(self, name: str, labels: Labels = None, value: float = 0.0) -> None:
        self._lookup(name, Gauge).set(labels, value)

    def gauge_add(self, name: str, labels: Labels = None, delta: float = 1) -> None:
        self._lookup(name, Gauge).add(labels, delta)

    def histogram_observe(self, name: str, labels: Labels = None, value: float = 0.0) -> None:
        self._lookup(name, Histogram).observe(labels, value)

    def _snapshot_metrics(self) -> List[Metric]:
        with self._lock:
            return list(self._metrics.values())

    def export(self) -> Iterator[Sample]:
        """Yield every sample of every registered metric from current state"""
        for metric in self._snapshot_metrics():
            yield from metric.samples()

    def get_sample_value(self, name: str, labels: Labels = None) -> Optional[float]:
        """Return a single exported value, or None if no such sample exists"""
        wanted = {key: str(value) for key, value in (labels or {}).items()}
        for sample in self.export():
            if sample.name == name and sample.labels == wanted:
                return sample.value
        return None

    def collect(self) -> Iterator[MetricFamily]:
        """prometheus_client collector protocol"""
        for metric in self._snapshot_metrics():
            yield metric.family()


def render_exposition(registry: MetricRegistry) -> Tuple[bytes, str]:
    """Render the registry in the Prometheus text exposition format"""
    collector_registry = CollectorRegistry(auto_describe=False)
    collector_registry.register(registry)
    return generate_latest(collector_registry), CONTENT_TYPE_LATEST
