"""
Shared pytest fixtures for the tracedqueue tests.

This module provides:
- Configuration fixtures with timings shrunk for fast runs
- Tracing fixtures backed by an in-memory span exporter
- In-memory broker fixtures sharing one queue registry

Spans are exported synchronously (SimpleSpanProcessor), so they are visible
through the exporter as soon as they end.
"""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from tracedqueue.broker.memory import InMemoryBroker, InMemoryQueues
from tracedqueue.config import WorkQueueConfig
from tracedqueue.observability import TracingContext

# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def config() -> WorkQueueConfig:
    """
    Configuration for fast test runs.

    No delay between publishes, and one unit of wait_time lasts 10ms.
    """
    return WorkQueueConfig(
        queue_name="work",
        publish_interval=0.0,
        wait_time_unit=0.01,
        min_wait_time=1,
        max_wait_time=3,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def rng() -> random.Random:
    """Deterministic random source."""
    return random.Random(1234)


# ============================================================================
# Tracing Fixtures
# ============================================================================


@pytest.fixture
def span_exporter() -> Generator[InMemorySpanExporter, None, None]:
    """
    In-memory span exporter capturing every finished span.

    Example:
        >>> def test_spans(tracing, span_exporter):
        ...     ...
        ...     spans = span_exporter.get_finished_spans()
    """
    exporter = InMemorySpanExporter()
    yield exporter
    exporter.clear()


@pytest.fixture
def producer_tracing(span_exporter: InMemorySpanExporter) -> Generator[TracingContext, None, None]:
    """Tracing pipeline for a producer, exporting to span_exporter."""
    tracing = TracingContext("producer-service", exporter=span_exporter, batch=False)
    yield tracing
    tracing.shutdown(timeout=1.0)


@pytest.fixture
def consumer_tracing(span_exporter: InMemorySpanExporter) -> Generator[TracingContext, None, None]:
    """Tracing pipeline for a consumer, exporting to span_exporter."""
    tracing = TracingContext("consumer-service", exporter=span_exporter, batch=False)
    yield tracing
    tracing.shutdown(timeout=1.0)


# ============================================================================
# Broker Fixtures
# ============================================================================


@pytest.fixture
def queues() -> InMemoryQueues:
    """Queue registry shared by the broker fixtures of one test."""
    return InMemoryQueues()


@pytest_asyncio.fixture
async def producer_broker(queues: InMemoryQueues) -> AsyncGenerator[InMemoryBroker, None]:
    """Connected in-memory broker for the producer side."""
    broker = InMemoryBroker(queues)
    await broker.connect()
    yield broker
    await broker.close()


@pytest_asyncio.fixture
async def consumer_broker(queues: InMemoryQueues) -> AsyncGenerator[InMemoryBroker, None]:
    """Connected in-memory broker for the consumer side."""
    broker = InMemoryBroker(queues)
    await broker.connect()
    yield broker
    await broker.close()
