"""
Unit tests for the producer loop.

Tests for:
- Work item generation and wait time bounds
- publish_one() span, headers and outcome handling
- Sequence numbering across failures
- run(), stop() and shutdown()
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from tracedqueue.broker.memory import InMemoryBroker
from tracedqueue.config import WorkQueueConfig
from tracedqueue.envelope import WorkItem
from tracedqueue.exceptions import EncodingError
from tracedqueue.observability import (
    ATTR_MESSAGE_ID,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_WAIT_TIME,
    MockTracer,
    NullTracer,
    SpanKindEnum,
    TracingContext,
)
from tracedqueue.producer import PUBLISH_SPAN_NAME, Producer
from tracedqueue.propagation import TRACEPARENT_HEADER


class TestWorkItemGeneration:
    """Tests for next_work_item()."""

    def test_first_item(self, producer_broker: InMemoryBroker, config: WorkQueueConfig):
        """The first item is message 1."""
        producer = Producer(producer_broker, config, tracer=NullTracer())

        item = producer.next_work_item()

        assert item.id == "1"
        assert item.content == "Message #1"

    def test_wait_time_within_bounds(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig, rng: random.Random
    ):
        """Every generated wait time lies within the configured range."""
        config = replace(config, min_wait_time=1, max_wait_time=20)
        producer = Producer(producer_broker, config, tracer=NullTracer(), rng=rng)

        wait_times = {producer.next_work_item().wait_time for _ in range(2000)}

        assert min(wait_times) >= 1
        assert max(wait_times) <= 20
        assert wait_times == set(range(1, 21))

    def test_fixed_wait_time(self, producer_broker: InMemoryBroker, config: WorkQueueConfig):
        """Equal bounds give a constant wait time."""
        config = replace(config, min_wait_time=4, max_wait_time=4)
        producer = Producer(producer_broker, config, tracer=NullTracer())

        assert {producer.next_work_item().wait_time for _ in range(20)} == {4}


class TestPublishOne:
    """Tests for publish_one()."""

    @pytest.mark.asyncio
    async def test_publishes_body_and_metadata(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """The broker receives the JSON body, content type and message id."""
        producer = Producer(producer_broker, config, tracer=NullTracer())

        assert await producer.publish_one(WorkItem.create(1, wait_time=3)) is True

        [stored] = producer_broker.queues.published
        assert json.loads(stored.body) == {"id": "1", "content": "Message #1", "wait_time": 3}
        assert stored.content_type == "application/json"
        assert stored.message_id == "1"
        assert producer.stats.messages_published == 1
        assert producer.stats.last_publish_at is not None

    @pytest.mark.asyncio
    async def test_creates_producer_span(
        self,
        producer_broker: InMemoryBroker,
        config: WorkQueueConfig,
        producer_tracing: TracingContext,
        span_exporter: InMemorySpanExporter,
    ):
        """A PRODUCER span with queue and message attributes and OK status is exported."""
        producer = Producer(producer_broker, config, tracing=producer_tracing)

        await producer.publish_one(WorkItem.create(1, wait_time=3))

        [span] = span_exporter.get_finished_spans()
        assert span.name == PUBLISH_SPAN_NAME
        assert span.kind == SpanKind.PRODUCER
        assert span.attributes[ATTR_MESSAGING_SYSTEM] == "memory"
        assert span.attributes[ATTR_MESSAGING_DESTINATION] == "work"
        assert span.attributes[ATTR_MESSAGE_ID] == "1"
        assert span.attributes[ATTR_WAIT_TIME] == 3
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_headers_carry_publish_span_context(
        self,
        producer_broker: InMemoryBroker,
        config: WorkQueueConfig,
        producer_tracing: TracingContext,
        span_exporter: InMemorySpanExporter,
    ):
        """The traceparent header identifies the publish span."""
        producer = Producer(producer_broker, config, tracing=producer_tracing)

        await producer.publish_one(WorkItem.create(1, wait_time=1))

        [span] = span_exporter.get_finished_spans()
        [stored] = producer_broker.queues.published
        assert stored.headers[TRACEPARENT_HEADER] == (
            f"00-{trace.format_trace_id(span.context.trace_id)}"
            f"-{trace.format_span_id(span.context.span_id)}"
            f"-{span.context.trace_flags:02x}"
        )

    @pytest.mark.asyncio
    async def test_span_is_child_of_current_context(
        self,
        producer_broker: InMemoryBroker,
        config: WorkQueueConfig,
        producer_tracing: TracingContext,
        span_exporter: InMemorySpanExporter,
    ):
        """An active span becomes the parent of the publish span."""
        producer = Producer(producer_broker, config, tracing=producer_tracing)
        outer_tracer = producer_tracing.tracer_provider.get_tracer("test")

        with outer_tracer.start_as_current_span("batch") as outer:
            await producer.publish_one(WorkItem.create(1, wait_time=1))

        publish = next(s for s in span_exporter.get_finished_spans() if s.name == PUBLISH_SPAN_NAME)
        assert publish.parent is not None
        assert publish.parent.span_id == outer.get_span_context().span_id

    @pytest.mark.asyncio
    async def test_publish_failure_records_error(
        self,
        producer_broker: InMemoryBroker,
        config: WorkQueueConfig,
        producer_tracing: TracingContext,
        span_exporter: InMemorySpanExporter,
    ):
        """A failed publish ends the span with ERROR and an exception event."""
        producer_broker.publish_error = ConnectionResetError("connection reset")
        producer = Producer(producer_broker, config, tracing=producer_tracing)

        assert await producer.publish_one(WorkItem.create(1, wait_time=1)) is False

        [span] = span_exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert any(event.name == "exception" for event in span.events)
        assert ATTR_MESSAGE_ID not in span.attributes
        assert producer.stats.publish_failures == 1
        assert producer.stats.messages_published == 0

    @pytest.mark.asyncio
    async def test_encoding_failure_skips_publish(
        self,
        producer_broker: InMemoryBroker,
        config: WorkQueueConfig,
        span_exporter: InMemorySpanExporter,
    ):
        """An item that cannot be serialized is never published and opens no span."""
        tracer = MockTracer()
        producer = Producer(producer_broker, config, tracer=tracer)

        with patch(
            "tracedqueue.producer.serialize", side_effect=EncodingError("1", "bad value")
        ):
            assert await producer.publish_one(WorkItem.create(1, wait_time=1)) is False

        assert list(producer_broker.queues.published) == []
        assert tracer.spans == []
        assert producer.stats.encode_failures == 1

    @pytest.mark.asyncio
    async def test_mock_tracer_records_producer_kind(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """The publish span is requested with PRODUCER kind."""
        tracer = MockTracer()
        producer = Producer(producer_broker, config, tracer=tracer)

        await producer.publish_one(WorkItem.create(1, wait_time=1))

        assert tracer.span_names == [PUBLISH_SPAN_NAME]
        assert tracer.kinds == [SpanKindEnum.PRODUCER]

    @pytest.mark.asyncio
    async def test_tracing_disabled_publishes_without_trace_headers(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """With tracing off and no active span, headers are empty."""
        config = replace(config, enable_tracing=False)
        producer = Producer(producer_broker, config)

        await producer.publish_one(WorkItem.create(1, wait_time=1))

        [stored] = producer_broker.queues.published
        assert stored.headers == {}


class TestSequence:
    """Tests for id sequencing."""

    @pytest.mark.asyncio
    async def test_ids_increase_by_one(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """Successful publishes use ids 1, 2, 3, ..."""
        producer = Producer(producer_broker, config, tracer=NullTracer())

        for _ in range(3):
            await producer.run_once()

        assert [m.message_id for m in producer_broker.queues.published] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_failed_publish_reuses_id(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """The sequence only advances after a successful publish."""
        producer = Producer(producer_broker, config, tracer=NullTracer())

        producer_broker.publish_error = ConnectionResetError("down")
        assert await producer.run_once() is False
        assert producer.next_sequence == 1

        producer_broker.publish_error = None
        assert await producer.run_once() is True

        assert [m.message_id for m in producer_broker.queues.published] == ["1"]
        assert producer.next_sequence == 2

    @pytest.mark.asyncio
    async def test_dropped_message_is_not_resent(
        self,
        producer_broker: InMemoryBroker,
        config: WorkQueueConfig,
        producer_tracing: TracingContext,
        span_exporter: InMemorySpanExporter,
    ):
        """The item after a dropped message gets its own span under the same id."""
        producer = Producer(producer_broker, config, tracing=producer_tracing)

        producer_broker.publish_error = ConnectionResetError("down")
        await producer.run_once()
        producer_broker.publish_error = None
        await producer.run_once()

        failed, published = span_exporter.get_finished_spans()
        assert failed.status.status_code == StatusCode.ERROR
        assert published.status.status_code != StatusCode.ERROR
        assert failed.context.span_id != published.context.span_id
        assert published.attributes[ATTR_MESSAGE_ID] == "1"
        assert len(producer_broker.queues.published) == 1


class TestProducerLoop:
    """Tests for run(), stop() and shutdown()."""

    @pytest.mark.asyncio
    async def test_run_stops_after_max_messages(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """run(max_messages=n) performs n iterations."""
        producer = Producer(producer_broker, config, tracer=NullTracer())

        await producer.run(max_messages=5)

        assert producer.stats.messages_published == 5
        assert producer.is_running is False

    @pytest.mark.asyncio
    async def test_run_uses_configured_limit(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """max_messages from the config bounds the loop."""
        producer = Producer(
            producer_broker, replace(config, max_messages=2), tracer=NullTracer()
        )

        await producer.run()

        assert producer.stats.messages_published == 2

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_loop(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """Every iteration runs even if each publish fails."""
        producer_broker.publish_error = ConnectionResetError("down")
        producer = Producer(producer_broker, config, tracer=NullTracer())

        await producer.run(max_messages=3)

        assert producer.stats.publish_failures == 3

    @pytest.mark.asyncio
    async def test_stop_interrupts_sleep(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """stop() wakes the loop out of its publish interval."""
        producer = Producer(
            producer_broker, replace(config, publish_interval=60.0), tracer=NullTracer()
        )

        task = producer.start_in_background()
        await asyncio.sleep(0.05)
        producer.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert producer.stats.messages_published == 1

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_task(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """shutdown() stops the background loop."""
        producer = Producer(
            producer_broker, replace(config, publish_interval=0.01), tracer=NullTracer()
        )
        task = producer.start_in_background()
        await asyncio.sleep(0.05)

        await producer.shutdown(timeout=1.0)

        assert task.done()
        assert producer.is_running is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stuck_publish(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """A publish that never returns is cancelled after half the timeout."""

        async def hang(*args, **kwargs):
            await asyncio.sleep(60)

        producer_broker.publish = AsyncMock(side_effect=hang)  # type: ignore[method-assign]
        producer = Producer(producer_broker, config, tracer=NullTracer())
        task = producer.start_in_background()
        await asyncio.sleep(0.01)

        await producer.shutdown(timeout=0.2)

        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_start_twice_raises(
        self, producer_broker: InMemoryBroker, config: WorkQueueConfig
    ):
        """Only one background loop per producer."""
        producer = Producer(
            producer_broker, replace(config, publish_interval=60.0), tracer=NullTracer()
        )
        producer.start_in_background()

        with pytest.raises(RuntimeError):
            producer.start_in_background()

        await producer.shutdown(timeout=1.0)
