"""
Producer loop.

The producer generates work items, serializes them, and publishes each one
to the work queue under a PRODUCER span whose context travels with the
message as headers:

    generate -> serialize -> start span -> inject -> publish -> record outcome -> sleep

Publish failures are recorded on the span and logged; the loop carries on
with the next iteration and never retries.

Example:
    >>> producer = Producer(broker, config, tracing=tracing)
    >>> task = producer.start_in_background()
    >>> ...
    >>> await producer.shutdown(timeout=5.0)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from tracedqueue import propagation
from tracedqueue.envelope import CONTENT_TYPE, WorkItem, serialize
from tracedqueue.exceptions import EncodingError, PublishError
from tracedqueue.observability import (
    ATTR_BODY_SIZE,
    ATTR_ERROR_TYPE,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_WAIT_TIME,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    from tracedqueue.broker.interface import Broker
    from tracedqueue.config import WorkQueueConfig
    from tracedqueue.observability import TracingContext

logger = logging.getLogger(__name__)

PUBLISH_SPAN_NAME = "tracedqueue.publish"


@dataclass
class ProducerStats:
    """Statistics for producer operations.

    Attributes:
        messages_published: Messages handed to the broker successfully.
        publish_failures: Publishes the broker refused or failed.
        encode_failures: Work items that could not be serialized.
        last_publish_at: Time of the last successful publish.
    """

    messages_published: int = 0
    publish_failures: int = 0
    encode_failures: int = 0
    last_publish_at: datetime | None = None


class Producer:
    """
    Publishes a stream of work items with trace context attached.

    The producer owns a monotonic sequence counter. It only advances after a
    successful publish, so the id of a dropped message is reused by the next
    item. That item gets its own wait time and span; nothing is resent.

    Args:
        broker: Connected broker. The producer does not connect or close it.
        config: Work queue configuration
        tracing: Tracing pipeline to create spans and inject headers with
        tracer: Explicit tracer (overrides the one derived from ``tracing``)
        rng: Random source for wait times (defaults to a new random.Random)
    """

    def __init__(
        self,
        broker: Broker,
        config: WorkQueueConfig,
        *,
        tracing: TracingContext | None = None,
        tracer: Tracer | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._broker = broker
        self._config = config
        self._tracing = tracing
        self._rng = rng or random.Random()

        if tracer is not None:
            self._tracer = tracer
        elif tracing is not None and config.enable_tracing:
            self._tracer = tracing.get_tracer(__name__)
        else:
            self._tracer = create_tracer(__name__, enable_tracing=config.enable_tracing)

        self._sequence = 1
        self._stats = ProducerStats()
        self._stop_event = asyncio.Event()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> ProducerStats:
        """Get producer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """True while run() is looping."""
        return self._running

    @property
    def next_sequence(self) -> int:
        """The id the next generated work item will carry."""
        return self._sequence

    def next_work_item(self) -> WorkItem:
        """Generate the work item for the current sequence number."""
        wait_time = self._rng.randint(self._config.min_wait_time, self._config.max_wait_time)
        return WorkItem.create(self._sequence, wait_time)

    async def publish_one(self, item: WorkItem) -> bool:
        """
        Serialize and publish a single work item under a PRODUCER span.

        Returns:
            True if the broker accepted the message. Encoding and publish
            failures are logged and reported as False.
        """
        queue_name = self._config.queue_name

        try:
            body = serialize(item)
        except EncodingError as e:
            self._stats.encode_failures += 1
            logger.error(
                f"Failed to serialize message {item.id}, skipping: {e}",
                exc_info=True,
                extra={"message_id": item.id, "queue": queue_name},
            )
            return False

        span = self._tracer.start_span(
            PUBLISH_SPAN_NAME,
            kind=SpanKindEnum.PRODUCER,
            attributes={
                ATTR_MESSAGING_DESTINATION: queue_name,
                ATTR_MESSAGING_SYSTEM: self._broker.system,
                ATTR_MESSAGING_OPERATION: "publish",
            },
        )
        # Without a real span the current context is propagated unchanged
        span_context = trace.set_span_in_context(span) if span is not None else None
        headers = self._inject(span_context)

        try:
            await self._broker.publish(
                queue_name,
                body,
                headers,
                CONTENT_TYPE,
                message_id=item.id,
            )
        except PublishError as e:
            self._stats.publish_failures += 1
            if span is not None:
                span.record_exception(e)
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.end()
            logger.error(
                f"Failed to publish message {item.id}: {e}",
                exc_info=True,
                extra={
                    "message_id": item.id,
                    "queue": queue_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return False

        self._stats.messages_published += 1
        self._stats.last_publish_at = datetime.now(UTC)
        if span is not None:
            span.set_attribute(ATTR_MESSAGE_ID, item.id)
            span.set_attribute(ATTR_WAIT_TIME, item.wait_time)
            span.set_attribute(ATTR_BODY_SIZE, len(body))
            span.set_status(Status(StatusCode.OK))
            span.end()

        logger.info(
            f"Sent message: {item.id}",
            extra={
                "message_id": item.id,
                "wait_time": item.wait_time,
                "queue": queue_name,
                "trace_headers": sorted(headers),
            },
        )
        return True

    def _inject(self, context: Any | None) -> propagation.Carrier:
        if self._tracing is not None:
            return self._tracing.inject(context)
        return propagation.inject(context)

    async def run_once(self) -> bool:
        """Run one generate/publish iteration, advancing the sequence on success."""
        item = self.next_work_item()
        published = await self.publish_one(item)
        if published:
            self._sequence += 1
        return published

    async def run(self, max_messages: int | None = None) -> None:
        """
        Run the producer loop until stopped.

        Args:
            max_messages: Number of iterations to run. Defaults to the
                configured ``max_messages``; None runs until stop().
        """
        limit = max_messages if max_messages is not None else self._config.max_messages
        iterations = 0
        self._running = True

        logger.info(
            f"Starting producer on queue {self._config.queue_name}",
            extra={
                "queue": self._config.queue_name,
                "max_messages": limit,
                "publish_interval": self._config.publish_interval,
            },
        )

        try:
            while not self._stop_event.is_set():
                if limit is not None and iterations >= limit:
                    break
                await self.run_once()
                iterations += 1

                if limit is not None and iterations >= limit:
                    break
                await self._sleep(self._config.publish_interval)
        except asyncio.CancelledError:
            logger.info("Producer loop cancelled", extra={"queue": self._config.queue_name})
            raise
        finally:
            self._running = False
            logger.info(
                "Producer loop stopped",
                extra={
                    "queue": self._config.queue_name,
                    "iterations": iterations,
                    "messages_published": self._stats.messages_published,
                    "publish_failures": self._stats.publish_failures,
                },
            )

    async def _sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until stop() is called."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._stop_event.set()
        logger.info("Stop producing requested", extra={"queue": self._config.queue_name})

    def start_in_background(self, max_messages: int | None = None) -> asyncio.Task[None]:
        """
        Run the loop as a background task.

        Raises:
            RuntimeError: If the producer is already running in background
        """
        if self._task is not None and not self._task.done():
            raise RuntimeError("Producer already running in background")

        self._task = asyncio.create_task(
            self.run(max_messages),
            name=f"tracedqueue-producer-{self._config.queue_name}",
        )
        return self._task

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop the loop and wait for the background task.

        The current publish gets half the timeout to finish; after that the
        task is cancelled.
        """
        self.stop()
        if self._task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout / 2)
        except TimeoutError:
            logger.warning(
                "Producer task did not stop in time, cancelling",
                extra={"timeout": timeout / 2},
            )
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        except asyncio.CancelledError:
            logger.debug("Producer task was already cancelled")
        finally:
            self._task = None


__all__ = [
    "PUBLISH_SPAN_NAME",
    "Producer",
    "ProducerStats",
]
