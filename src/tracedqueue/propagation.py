"""
Trace context propagation through message headers.

The producer injects its publish span's context into a fresh carrier, a flat
``dict[str, str]`` that travels as message headers. The consumer rebuilds a
carrier from whatever headers the broker hands back and extracts a parent
context from it.

Two rules shape this module:

- Broker headers are dynamically typed. Every entry is classified with
  ``HeaderValue`` and only text entries make it into the carrier.
- Extraction degrades instead of failing. Missing, empty or corrupt trace
  headers yield an empty ``Context``, so the consumer starts a root span.

The default propagation format is W3C Trace Context (``traceparent``,
``tracestate``) plus W3C Baggage (``baggage``).

Example:
    >>> carrier = inject(trace.set_span_in_context(publish_span))
    >>> # ... carrier travels as AMQP headers ...
    >>> parent = extract(delivery.headers)
    >>> has_valid_parent(parent)
    True
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.context import Context
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.trace import SpanContext
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

Carrier = dict[str, str]
"""String-to-string mapping holding trace propagation fields."""

TRACEPARENT_HEADER = "traceparent"
BAGGAGE_HEADER = "baggage"


def default_propagator() -> TextMapPropagator:
    """Build the W3C Trace Context + W3C Baggage composite propagator."""
    return CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])


_DEFAULT_PROPAGATOR = default_propagator()


class HeaderKind(Enum):
    """Classification of a raw broker header value."""

    TEXT = "text"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class HeaderValue:
    """
    A broker header value tagged with its kind.

    AMQP header tables carry integers, booleans, nested tables, byte strings
    and more. Only TEXT values can hold propagation fields.
    """

    kind: HeaderKind
    value: Any

    @classmethod
    def of(cls, value: Any) -> HeaderValue:
        """Classify a raw header value."""
        if isinstance(value, str):
            return cls(HeaderKind.TEXT, value)
        return cls(HeaderKind.OPAQUE, value)

    @property
    def text(self) -> str | None:
        """The string value for TEXT entries, None otherwise."""
        return self.value if self.kind is HeaderKind.TEXT else None


def carrier_from_headers(headers: Mapping[Any, Any] | None) -> Carrier:
    """
    Convert raw broker headers into a carrier.

    Entries whose key or value is not a string are dropped.

    Args:
        headers: Header table as delivered by the broker (may be None)

    Returns:
        A fresh carrier containing only the text entries
    """
    carrier: Carrier = {}
    if not headers:
        return carrier

    for key, raw in headers.items():
        if not isinstance(key, str):
            continue
        text = HeaderValue.of(raw).text
        if text is not None:
            carrier[key] = text
    return carrier


def inject(
    context: Context | None = None,
    propagator: TextMapPropagator | None = None,
) -> Carrier:
    """
    Write a trace context into a fresh carrier.

    Args:
        context: Context to inject. None means the current context.
        propagator: Propagation format (defaults to W3C Trace Context + Baggage)

    Returns:
        New carrier. Empty when there is no valid span and no baggage, which
        extracts to "no parent" on the far side.
    """
    carrier: Carrier = {}
    (propagator or _DEFAULT_PROPAGATOR).inject(carrier, context=context)
    return carrier


def extract(
    headers: Mapping[Any, Any] | None,
    propagator: TextMapPropagator | None = None,
) -> Context:
    """
    Extract a parent context from raw broker headers.

    Headers are filtered to text entries and decoded against an empty base
    context, so the result never inherits whatever context happens to be
    current in the consumer.

    Args:
        headers: Raw header table (non-string values are ignored)
        propagator: Propagation format (defaults to W3C Trace Context + Baggage)

    Returns:
        The extracted Context, or an empty Context if nothing usable was found.
        Never raises.
    """
    carrier = carrier_from_headers(headers)
    if not carrier:
        return Context()

    try:
        return (propagator or _DEFAULT_PROPAGATOR).extract(carrier, context=Context())
    except Exception as e:
        logger.warning(
            f"Failed to extract trace context, continuing without parent: {e}",
            extra={
                "header_keys": sorted(carrier),
                "error_type": type(e).__name__,
            },
        )
        return Context()


def parent_span_context(context: Context) -> SpanContext:
    """Return the span context carried by ``context`` (INVALID_SPAN_CONTEXT if none)."""
    return trace.get_current_span(context).get_span_context()


def has_valid_parent(context: Context) -> bool:
    """True if ``context`` carries a valid span to parent on."""
    return parent_span_context(context).is_valid


def format_trace_id(context: Context) -> str | None:
    """The parent trace id of ``context`` as 32 hex characters, or None."""
    span_context = parent_span_context(context)
    if not span_context.is_valid:
        return None
    return trace.format_trace_id(span_context.trace_id)


__all__ = [
    "BAGGAGE_HEADER",
    "Carrier",
    "HeaderKind",
    "HeaderValue",
    "TRACEPARENT_HEADER",
    "carrier_from_headers",
    "default_propagator",
    "extract",
    "format_trace_id",
    "has_valid_parent",
    "inject",
    "parent_span_context",
]
