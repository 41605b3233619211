"""
Observability utilities for tracedqueue.

This module provides the composition-based Tracer abstraction, the owned
tracing pipeline (TracingContext), and standard span attribute names.

Example:
    >>> from tracedqueue.observability import TracingContext, SpanKindEnum
    >>>
    >>> tracing = TracingContext("consumer-service")
    >>> tracer = tracing.get_tracer(__name__)
    >>> span = tracer.start_span("tracedqueue.process", kind=SpanKindEnum.CONSUMER)
    >>> span.end()
    >>> tracing.shutdown()
"""

from tracedqueue.observability.attributes import (
    ATTR_BODY_SIZE,
    ATTR_ERROR_TYPE,
    ATTR_MESSAGE_CONTENT,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_PARENT_VALID,
    ATTR_WAIT_TIME,
)
from tracedqueue.observability.context import TracingContext, traces_endpoint
from tracedqueue.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Pipeline
    "TracingContext",
    "traces_endpoint",
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes - Messaging
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    # Attributes - Work item
    "ATTR_MESSAGE_ID",
    "ATTR_MESSAGE_CONTENT",
    "ATTR_WAIT_TIME",
    "ATTR_BODY_SIZE",
    # Attributes - Context / Error
    "ATTR_PARENT_VALID",
    "ATTR_ERROR_TYPE",
]
