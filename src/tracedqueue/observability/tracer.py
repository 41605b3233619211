"""
Tracer protocol and implementations for composition-based tracing.

Components receive a tracer as a dependency instead of reaching for a global
OpenTelemetry tracer. This keeps the producer and consumer loops easy to test
and lets the service decide which TracerProvider their spans go to.

Example:
    >>> from tracedqueue.observability import create_tracer, NullTracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>>
    >>> # Or explicitly use NullTracer for testing
    >>> tracer = NullTracer()
    >>>
    >>> span = tracer.start_span("tracedqueue.publish", kind=SpanKindEnum.PRODUCER)
    >>> try:
    ...     do_publish()
    ... finally:
    ...     if span:
    ...         span.end()
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import SpanKind

if TYPE_CHECKING:
    from opentelemetry.trace import Span, TracerProvider


class SpanKindEnum(Enum):
    """
    Span kinds for distributed tracing.

    Maps onto OpenTelemetry's SpanKind. The producer publishes with PRODUCER
    spans and the consumer processes with CONSUMER spans.
    """

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"
    CLIENT = "client"
    SERVER = "server"


_KIND_MAPPING = {
    SpanKindEnum.INTERNAL: SpanKind.INTERNAL,
    SpanKindEnum.PRODUCER: SpanKind.PRODUCER,
    SpanKindEnum.CONSUMER: SpanKind.CONSUMER,
    SpanKindEnum.CLIENT: SpanKind.CLIENT,
    SpanKindEnum.SERVER: SpanKind.SERVER,
}


@runtime_checkable
class Tracer(Protocol):
    """
    Protocol for tracers that can create tracing spans.

    Implementations:
    - NullTracer: No-op tracer for when tracing is disabled
    - OpenTelemetryTracer: Wrapper around an OpenTelemetry tracer
    - MockTracer: Records span names and attributes for tests
    """

    @property
    def enabled(self) -> bool:
        """True if this tracer creates real spans."""
        ...

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span | None:
        """
        Start a new span that the caller ends explicitly.

        Messaging code needs this form: the publish span has to stay open
        while its context is injected into the outgoing headers, and the
        consumer span is parented to a context extracted from a message.

        Args:
            name: Span name (e.g., "tracedqueue.publish")
            kind: The span kind (PRODUCER, CONSUMER, etc.)
            attributes: Span attributes (optional)
            context: Optional parent context. None means the current context.

        Returns:
            The Span if tracing is enabled, None otherwise.
            Caller MUST call span.end() when the operation is complete.
        """
        ...


class NullTracer:
    """
    No-op tracer implementation for when tracing is disabled.

    Example:
        >>> tracer = NullTracer()
        >>> tracer.start_span("operation")  # None
        >>> tracer.enabled  # False
    """

    @property
    def enabled(self) -> bool:
        """Always returns False for NullTracer."""
        return False

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        """Return None (no-op for disabled tracing)."""
        return None


class OpenTelemetryTracer:
    """
    OpenTelemetry tracer implementation.

    Wraps a tracer obtained from an explicit TracerProvider, or from the
    global provider when none is given.

    Args:
        tracer_name: Name for the tracer (typically __name__)
        tracer_provider: Provider to create the tracer from (optional)

    Example:
        >>> tracing = TracingContext("producer-service")
        >>> tracer = OpenTelemetryTracer(__name__, tracing.tracer_provider)
    """

    def __init__(
        self,
        tracer_name: str,
        tracer_provider: TracerProvider | None = None,
    ) -> None:
        self._tracer = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)

    @property
    def enabled(self) -> bool:
        """Always returns True for OpenTelemetryTracer."""
        return True

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span:
        """
        Start a new span with SpanKind for distributed tracing.

        Returns:
            The OpenTelemetry Span. Caller MUST call span.end().
        """
        return self._tracer.start_span(
            name,
            kind=_KIND_MAPPING.get(kind, SpanKind.INTERNAL),
            attributes=attributes or {},
            context=context,
        )


class MockTracer:
    """
    Mock tracer for testing that records span information.

    Example:
        >>> tracer = MockTracer()
        >>> tracer.start_span("operation", attributes={"key": "value"})
        >>> assert tracer.spans == [("operation", {"key": "value"})]
        >>> assert tracer.span_names == ["operation"]
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []
        self.kinds: list[SpanKindEnum] = []
        self.contexts: list[Any | None] = []

    @property
    def enabled(self) -> bool:
        """Returns True to enable attribute computation in tests."""
        return True

    @property
    def span_names(self) -> list[str]:
        """Get just the span names for easy assertions."""
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        """Clear recorded spans."""
        self.spans.clear()
        self.kinds.clear()
        self.contexts.clear()

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        """Record span and return None (mock spans don't need to be ended)."""
        self.spans.append((name, attributes))
        self.kinds.append(kind)
        self.contexts.append(context)
        return None


def create_tracer(
    name: str,
    enable_tracing: bool = True,
    tracer_provider: TracerProvider | None = None,
) -> Tracer:
    """
    Factory function to create the appropriate tracer.

    Args:
        name: Tracer name (typically __name__)
        enable_tracing: Whether tracing should be enabled (default True)
        tracer_provider: Provider for the OpenTelemetry tracer (optional;
            the global provider is used when omitted)

    Returns:
        OpenTelemetryTracer if enabled, NullTracer otherwise
    """
    if enable_tracing:
        return OpenTelemetryTracer(name, tracer_provider)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
]
