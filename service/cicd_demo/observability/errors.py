"""Errors raised by the metric registry and the span tracer"""

from typing import Iterable, Optional


class ObservabilityError(Exception):
    """Base class for instrumentation contract violations"""


class DuplicateMetricError(ObservabilityError):
    """A metric with the same name is already registered"""

    def __init__(self, name: str):
        super().__init__(f"Metric '{name}' is already registered")
        self.name = name


class UnknownMetricError(ObservabilityError):
    """No metric of the requested kind is registered under the name"""

    def __init__(self, name: str, expected_kind: Optional[str] = None):
        if expected_kind:
            message = f"No {expected_kind} registered as '{name}'"
        else:
            message = f"Metric '{name}' is not registered"
        super().__init__(message)
        self.name = name
        self.expected_kind = expected_kind


class LabelMismatchError(ObservabilityError):
    """Sample labels do not match the metric's declared label names"""

    def __init__(self, name: str, expected: Iterable[str], given: Iterable[str]):
        self.name = name
        self.expected = tuple(expected)
        self.given = tuple(sorted(given))
        super().__init__(
            f"Labels for '{name}' must be {list(self.expected)}, got {list(self.given)}"
        )


class InvalidValueError(ObservabilityError):
    """A sample value is negative where not allowed or not finite"""


class SpanAlreadyFinishedError(ObservabilityError):
    """The span was already finished and can no longer change"""

    def __init__(self, operation_name: str):
        super().__init__(f"Span '{operation_name}' is already finished")
        self.operation_name = operation_name
