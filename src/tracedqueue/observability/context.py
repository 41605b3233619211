"""
Explicitly owned tracing pipeline.

A TracingContext bundles everything a process needs to emit spans: the
resource describing the service, the TracerProvider, the span processor and
exporter feeding the collector, and the propagator used on message headers.
The service creates one at startup, passes it to the producer or consumer
loops, and shuts it down once on exit.

Nothing here touches OpenTelemetry's global state unless ``install_global``
is set, so tests can build as many isolated pipelines as they like.

Example:
    >>> tracing = TracingContext("producer-service", otlp_endpoint="otel-collector:4318")
    >>> producer = Producer(broker, config, tracing=tracing)
    >>> ...
    >>> tracing.shutdown(timeout=5.0)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
    SpanProcessor,
)

from tracedqueue import propagation
from tracedqueue.exceptions import ShutdownError, TracingInitError
from tracedqueue.observability.tracer import OpenTelemetryTracer, Tracer

logger = logging.getLogger(__name__)

OTLP_TRACES_PATH = "/v1/traces"


def traces_endpoint(endpoint: str) -> str:
    """
    Normalize a collector endpoint into an OTLP/HTTP traces URL.

    Accepts a bare ``host:port`` (plain HTTP is assumed, as for an in-cluster
    collector) or a full URL, and appends the traces path when missing.

    Example:
        >>> traces_endpoint("otel-collector:4318")
        'http://otel-collector:4318/v1/traces'
    """
    url = endpoint.strip().rstrip("/")
    if "://" not in url:
        url = f"http://{url}"
    if not url.endswith(OTLP_TRACES_PATH):
        url = f"{url}{OTLP_TRACES_PATH}"
    return url


class TracingContext:
    """
    Process-wide tracing pipeline with explicit lifecycle.

    Args:
        service_name: Value of the ``service.name`` resource attribute
        exporter: Span exporter to use. Defaults to an OTLP/HTTP exporter.
        otlp_endpoint: Collector endpoint for the default exporter. When None
            the exporter falls back to the standard OTEL_EXPORTER_OTLP_*
            environment variables.
        batch: Use a BatchSpanProcessor (default). False selects a
            SimpleSpanProcessor, which exports synchronously; tests use it.
        resource_attributes: Extra resource attributes
        propagator: Header propagation format (defaults to W3C Trace Context
            + W3C Baggage)
        install_global: Also register the provider as OpenTelemetry's global
            TracerProvider

    Raises:
        TracingInitError: If the provider, processor or exporter cannot be built
    """

    def __init__(
        self,
        service_name: str,
        *,
        exporter: SpanExporter | None = None,
        otlp_endpoint: str | None = None,
        batch: bool = True,
        resource_attributes: Mapping[str, Any] | None = None,
        propagator: TextMapPropagator | None = None,
        install_global: bool = False,
    ) -> None:
        self._service_name = service_name
        self._propagator = propagator or propagation.default_propagator()
        self._shutdown = False

        try:
            resource = Resource.create({**(resource_attributes or {}), SERVICE_NAME: service_name})
            self._provider = TracerProvider(resource=resource)

            if exporter is None:
                exporter_kwargs: dict[str, Any] = {}
                if otlp_endpoint:
                    exporter_kwargs["endpoint"] = traces_endpoint(otlp_endpoint)
                exporter = OTLPSpanExporter(**exporter_kwargs)

            self._processor: SpanProcessor = (
                BatchSpanProcessor(exporter) if batch else SimpleSpanProcessor(exporter)
            )
            self._provider.add_span_processor(self._processor)
        except Exception as e:
            logger.error(
                f"Failed to initialize tracing pipeline: {e}",
                exc_info=True,
                extra={"service_name": service_name, "otlp_endpoint": otlp_endpoint},
            )
            raise TracingInitError(service_name, str(e)) from e

        if install_global:
            trace.set_tracer_provider(self._provider)

        logger.info(
            f"Tracing initialized for {service_name}",
            extra={
                "service_name": service_name,
                "otlp_endpoint": otlp_endpoint,
                "batch": batch,
                "exporter": type(exporter).__name__,
            },
        )

    @property
    def service_name(self) -> str:
        """The service.name this pipeline reports."""
        return self._service_name

    @property
    def tracer_provider(self) -> TracerProvider:
        """The SDK TracerProvider owned by this context."""
        return self._provider

    @property
    def propagator(self) -> TextMapPropagator:
        """The propagator used for message headers."""
        return self._propagator

    @property
    def is_shutdown(self) -> bool:
        """True once shutdown() has run."""
        return self._shutdown

    def get_tracer(self, name: str) -> Tracer:
        """
        Create a Tracer bound to this pipeline.

        Raises:
            ShutdownError: If the pipeline has been shut down
        """
        if self._shutdown:
            raise ShutdownError(f"Tracing for {self._service_name} has been shut down")
        return OpenTelemetryTracer(name, self._provider)

    def inject(self, context: Context | None = None) -> propagation.Carrier:
        """Inject ``context`` (or the current one) into a fresh carrier."""
        return propagation.inject(context, self._propagator)

    def extract(self, headers: Mapping[Any, Any] | None) -> Context:
        """Extract a parent context from raw headers. Never raises."""
        return propagation.extract(headers, self._propagator)

    def force_flush(self, timeout: float = 30.0) -> bool:
        """
        Export all finished spans that are still buffered.

        Returns:
            True if the flush completed within the timeout
        """
        return self._provider.force_flush(timeout_millis=int(timeout * 1000))

    def shutdown(self, timeout: float = 30.0) -> None:
        """
        Flush buffered spans and shut the pipeline down.

        The flush is bounded by ``timeout``; spans still pending after that
        are dropped. Calling shutdown more than once is safe.
        """
        if self._shutdown:
            logger.debug("Tracing already shut down, skipping")
            return

        self._shutdown = True
        flushed = self.force_flush(timeout)
        if not flushed:
            logger.warning(
                f"Span flush did not complete within {timeout}s, pending spans may be lost",
                extra={"service_name": self._service_name, "timeout": timeout},
            )
        self._provider.shutdown()
        logger.info(
            f"Tracing shut down for {self._service_name}",
            extra={"service_name": self._service_name, "flushed": flushed},
        )

    def __enter__(self) -> TracingContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.shutdown()


__all__ = [
    "OTLP_TRACES_PATH",
    "TracingContext",
    "traces_endpoint",
]
