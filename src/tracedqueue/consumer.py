"""
Consumer loop.

The consumer subscribes to the work queue and handles each delivery under a
CONSUMER span parented to the trace context the producer attached:

    receive -> extract -> start span -> deserialize -> simulate work -> end span

A message that fails to decode is recorded on its span, logged, and skipped.
Missing or corrupt trace headers never stop processing: the span simply
starts a new trace.

Example:
    >>> consumer = Consumer(broker, config, tracing=tracing)
    >>> task = consumer.start_in_background()
    >>> ...
    >>> await consumer.shutdown(timeout=5.0)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from opentelemetry.context import Context
from opentelemetry.trace import Status, StatusCode

from tracedqueue import propagation
from tracedqueue.config import AckMode
from tracedqueue.envelope import deserialize
from tracedqueue.exceptions import DecodingError
from tracedqueue.observability import (
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
    SpanKindEnum,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    from tracedqueue.broker.interface import Broker, Delivery, SettleFunc
    from tracedqueue.config import WorkQueueConfig
    from tracedqueue.observability import TracingContext

logger = logging.getLogger(__name__)

PROCESS_SPAN_NAME = "tracedqueue.process"


@dataclass
class ConsumerStats:
    """Statistics for consumer operations.

    Attributes:
        messages_received: Deliveries taken from the queue.
        messages_processed: Deliveries decoded and processed to completion.
        decode_failures: Deliveries whose body could not be decoded.
        processing_failures: Deliveries that failed after decoding, or could
            not be acknowledged or rejected.
        unparented_messages: Deliveries without a usable trace parent.
        last_message_at: Time the last delivery was received.
    """

    messages_received: int = 0
    messages_processed: int = 0
    decode_failures: int = 0
    processing_failures: int = 0
    unparented_messages: int = 0
    last_message_at: datetime | None = None


class Consumer:
    """
    Processes work items from the queue, continuing the producer's trace.

    Each Consumer handles one delivery at a time. Run several (each with its
    own broker) to process in parallel.

    Args:
        broker: Connected broker. The consumer does not connect it, but
            shutdown() closes it to end the subscription.
        config: Work queue configuration
        tracing: Tracing pipeline to create spans and extract headers with
        tracer: Explicit tracer (overrides the one derived from ``tracing``)
        name: Label used in logs and the background task name
    """

    def __init__(
        self,
        broker: Broker,
        config: WorkQueueConfig,
        *,
        tracing: TracingContext | None = None,
        tracer: Tracer | None = None,
        name: str = "consumer-0",
    ) -> None:
        self._broker = broker
        self._config = config
        self._tracing = tracing
        self._name = name

        if tracer is not None:
            self._tracer = tracer
        elif tracing is not None and config.enable_tracing:
            self._tracer = tracing.get_tracer(__name__)
        else:
            self._tracer = create_tracer(__name__, enable_tracing=config.enable_tracing)

        self._stats = ConsumerStats()
        self._consuming = False
        self._stop_requested = False
        self._task: asyncio.Task[None] | None = None
        # Cleared while a delivery is being handled
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def stats(self) -> ConsumerStats:
        """Get consumer statistics."""
        return self._stats

    @property
    def is_consuming(self) -> bool:
        """True while run() is looping."""
        return self._consuming

    @property
    def auto_ack(self) -> bool:
        return self._config.ack_mode is AckMode.ON_RECEIVE

    def _extract(self, delivery: Delivery) -> Context:
        if self._tracing is not None:
            return self._tracing.extract(delivery.headers)
        return propagation.extract(delivery.headers)

    async def handle_delivery(self, delivery: Delivery) -> bool:
        """
        Process one delivery under a CONSUMER span.

        Returns:
            True if the work item was decoded, processed and settled. A
            decode or settlement failure is logged and reported as False.
        """
        self._idle.clear()
        try:
            return await self._process(delivery)
        finally:
            self._idle.set()

    async def _process(self, delivery: Delivery) -> bool:
        queue_name = self._config.queue_name
        self._stats.messages_received += 1
        self._stats.last_message_at = datetime.now(UTC)

        parent = self._extract(delivery)
        parent_trace_id = propagation.format_trace_id(parent)
        if parent_trace_id is not None:
            logger.info(
                f"Parent Trace ID: {parent_trace_id}",
                extra={"consumer": self._name, "parent_trace_id": parent_trace_id},
            )
        else:
            self._stats.unparented_messages += 1
            logger.info("No parent trace ID found", extra={"consumer": self._name})

        span = self._tracer.start_span(
            PROCESS_SPAN_NAME,
            kind=SpanKindEnum.CONSUMER,
            attributes={
                ATTR_MESSAGING_DESTINATION: queue_name,
                ATTR_MESSAGING_SYSTEM: self._broker.system,
                ATTR_MESSAGING_OPERATION: "process",
                ATTR_PARENT_VALID: parent_trace_id is not None,
                ATTR_BODY_SIZE: len(delivery.body),
            },
            context=parent,
        )

        try:
            item = deserialize(delivery.body)
        except DecodingError as e:
            self._stats.decode_failures += 1
            if span is not None:
                span.record_exception(e)
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                span.set_status(Status(StatusCode.ERROR, e.reason))
                span.end()
            logger.error(
                f"Error unmarshaling message: {e.reason}",
                extra={
                    "consumer": self._name,
                    "queue": queue_name,
                    "broker_message_id": delivery.message_id,
                    "body_size": len(delivery.body),
                },
            )
            if delivery.reject is not None:
                await self._settle(delivery.reject, "reject", delivery.message_id)
            return False

        if span is not None:
            span.set_attribute(ATTR_MESSAGE_ID, item.id)
            span.set_attribute(ATTR_MESSAGE_CONTENT, item.content)
            span.set_attribute(ATTR_WAIT_TIME, item.wait_time)
            if delivery.message_id is not None:
                span.set_attribute(ATTR_MESSAGING_MESSAGE_ID, delivery.message_id)

        logger.info(
            f"Processing message: {item.id}",
            extra={
                "consumer": self._name,
                "message_id": item.id,
                "content": item.content,
                "wait_time": item.wait_time,
            },
        )

        try:
            await asyncio.sleep(item.wait_time * self._config.wait_time_unit)
        except asyncio.CancelledError:
            self._stats.processing_failures += 1
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, "processing cancelled"))
                span.end()
            raise

        if span is not None:
            span.set_status(Status(StatusCode.OK))
            span.end()

        if delivery.ack is not None and not await self._settle(
            delivery.ack, "ack", item.id
        ):
            return False

        self._stats.messages_processed += 1
        logger.info(
            f"Completed processing message: {item.id}",
            extra={"consumer": self._name, "message_id": item.id},
        )
        return True

    async def _settle(self, settle: SettleFunc, action: str, message_id: str | None) -> bool:
        """
        Acknowledge or reject a delivery.

        A failure is logged and counted as a processing failure. The broker
        redelivers an unsettled message once its channel closes.
        """
        try:
            await settle()
        except Exception as e:
            self._stats.processing_failures += 1
            logger.error(
                f"Failed to {action} message {message_id}: {e}",
                exc_info=True,
                extra={
                    "consumer": self._name,
                    "action": action,
                    "message_id": message_id,
                    "error_type": type(e).__name__,
                },
            )
            return False
        return True

    async def run(self) -> None:
        """
        Consume from the work queue until stopped or the subscription ends.
        """
        queue_name = self._config.queue_name
        if self._stop_requested:
            logger.debug("Stop requested before start", extra={"consumer": self._name})
            return
        self._consuming = True

        logger.info(
            f"Starting consumer {self._name} on queue {queue_name}",
            extra={
                "consumer": self._name,
                "queue": queue_name,
                "ack_mode": self._config.ack_mode.value,
            },
        )

        try:
            async for delivery in self._broker.subscribe(queue_name, auto_ack=self.auto_ack):
                await self.handle_delivery(delivery)
                if self._stop_requested:
                    break
        except asyncio.CancelledError:
            logger.info(
                "Consumer loop cancelled",
                extra={"consumer": self._name, "queue": queue_name},
            )
        except Exception as e:
            logger.error(
                f"Error in consumer loop: {e}",
                exc_info=True,
                extra={
                    "consumer": self._name,
                    "queue": queue_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise
        finally:
            self._consuming = False
            logger.info(
                "Consumer loop stopped",
                extra={
                    "consumer": self._name,
                    "queue": queue_name,
                    "messages_received": self._stats.messages_received,
                    "messages_processed": self._stats.messages_processed,
                    "decode_failures": self._stats.decode_failures,
                    "processing_failures": self._stats.processing_failures,
                },
            )

    def stop(self) -> None:
        """Ask the loop to exit after the current delivery."""
        self._stop_requested = True
        logger.info(
            "Stop consuming requested",
            extra={"consumer": self._name, "queue": self._config.queue_name},
        )

    def start_in_background(self) -> asyncio.Task[None]:
        """
        Run the loop as a background task.

        Raises:
            RuntimeError: If the consumer is already running in background
        """
        if self._task is not None and not self._task.done():
            raise RuntimeError("Consumer already running in background")

        self._task = asyncio.create_task(self.run(), name=f"tracedqueue-{self._name}")
        return self._task

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop consuming and wait for the in-flight delivery.

        The current delivery gets half the timeout to finish. The broker is
        then closed, which ends the subscription; a task still running after
        the other half is cancelled.
        """
        self.stop()

        if self._task is not None and not self._idle.is_set():
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=timeout / 2)
                logger.debug("In-flight delivery completed", extra={"consumer": self._name})
            except TimeoutError:
                logger.warning(
                    "In-flight delivery did not finish in time",
                    extra={"consumer": self._name, "timeout": timeout / 2},
                )

        await self._broker.close()

        if self._task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout / 2)
            logger.debug("Consumer task completed gracefully")
        except TimeoutError:
            logger.warning(
                "Consumer task did not stop in time, cancelling",
                extra={"consumer": self._name, "timeout": timeout / 2},
            )
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        except asyncio.CancelledError:
            logger.debug("Consumer task was already cancelled")
        finally:
            self._task = None


__all__ = [
    "PROCESS_SPAN_NAME",
    "Consumer",
    "ConsumerStats",
]
