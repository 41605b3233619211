"""In-memory broker implementation.

This module provides a broker backed by asyncio queues, for tests and for
running the producer and consumer loops in a single process without a
RabbitMQ server.

Queues live in an ``InMemoryQueues`` registry. Brokers sharing a registry
behave like separate connections to the same server: a message published by
one is delivered to exactly one subscriber across all of them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from tracedqueue.broker.interface import Broker, Delivery
from tracedqueue.exceptions import BrokerConnectionError, BrokerError, PublishError

logger = logging.getLogger(__name__)

# Settled and published messages remembered for inspection
DEFAULT_HISTORY_SIZE = 1000


@dataclass(frozen=True)
class StoredMessage:
    """A message sitting in an in-memory queue."""

    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    content_type: str | None = None


class InMemoryQueues:
    """
    Registry of named in-memory queues.

    Share one instance between brokers to connect them to the same "server".

    ``published`` keeps the last ``history_size`` messages published to any
    queue, so a long local run does not grow it without bound.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._queues: dict[str, asyncio.Queue[StoredMessage]] = {}
        self.published: deque[StoredMessage] = deque(maxlen=history_size)

    def get(self, queue_name: str) -> asyncio.Queue[StoredMessage]:
        """Return the queue named ``queue_name``, creating it if needed."""
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[queue_name] = queue
        return queue

    def exists(self, queue_name: str) -> bool:
        return queue_name in self._queues

    def depth(self, queue_name: str) -> int:
        """Number of messages waiting in ``queue_name``."""
        queue = self._queues.get(queue_name)
        return queue.qsize() if queue is not None else 0


class InMemoryBroker(Broker):
    """
    Broker backed by asyncio queues.

    Features:
    - Competing subscribers on the same queue (each message delivered once)
    - Auto-ack and manual ack/reject subscriptions
    - Bounded settlement bookkeeping for assertions in tests
    - Optional failure injection on publish

    Example:
        >>> queues = InMemoryQueues()
        >>> async with InMemoryBroker(queues) as producer_side, InMemoryBroker(queues) as consumer_side:
        ...     await producer_side.publish("work", b"{}", {}, "application/json")
        ...     async for delivery in consumer_side.subscribe("work"):
        ...         ...
    """

    system = "memory"

    def __init__(
        self,
        queues: InMemoryQueues | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._queues = queues or InMemoryQueues()
        self._connected = False
        self._closed = asyncio.Event()
        self._subscribers = 0

        # Message ids of the last history_size settlements
        self.acked: deque[str | None] = deque(maxlen=history_size)
        self.rejected: deque[str | None] = deque(maxlen=history_size)
        # Exception raised by the next publish calls, for failure injection
        self.publish_error: Exception | None = None

    @property
    def queues(self) -> InMemoryQueues:
        """The queue registry this broker is attached to."""
        return self._queues

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def subscriber_count(self) -> int:
        """Number of active subscriptions on this broker."""
        return self._subscribers

    async def connect(self) -> None:
        if self._connected:
            logger.warning("InMemoryBroker already connected")
            return
        self._connected = True
        self._closed = asyncio.Event()
        logger.debug("InMemoryBroker connected")

    async def declare_queue(self, queue_name: str) -> None:
        if not self._connected:
            raise BrokerConnectionError("memory://", "broker is not connected")
        self._queues.get(queue_name)

    async def publish(
        self,
        queue_name: str,
        body: bytes,
        headers: Mapping[str, str],
        content_type: str,
        message_id: str | None = None,
    ) -> None:
        if not self._connected:
            raise PublishError(queue_name, "broker is not connected")
        if self.publish_error is not None:
            raise PublishError(queue_name, str(self.publish_error)) from self.publish_error

        message = StoredMessage(
            body=bytes(body),
            headers=dict(headers),
            message_id=message_id or str(uuid.uuid4()),
            content_type=content_type,
        )
        self._queues.published.append(message)
        self._queues.get(queue_name).put_nowait(message)

    async def subscribe(
        self, queue_name: str, *, auto_ack: bool = True
    ) -> AsyncIterator[Delivery]:
        if not self._connected:
            raise BrokerError("InMemoryBroker is not connected")

        queue = self._queues.get(queue_name)
        closed = self._closed
        self._subscribers += 1
        try:
            while not closed.is_set():
                getter = asyncio.ensure_future(queue.get())
                closer = asyncio.ensure_future(closed.wait())
                try:
                    done, _ = await asyncio.wait(
                        {getter, closer}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    closer.cancel()
                    if not getter.done():
                        getter.cancel()

                if getter not in done or getter.cancelled():
                    return
                yield self._to_delivery(getter.result(), auto_ack)
        finally:
            self._subscribers -= 1

    def _to_delivery(self, message: StoredMessage, auto_ack: bool) -> Delivery:
        if auto_ack:
            return Delivery(
                body=message.body,
                headers=dict(message.headers),
                message_id=message.message_id,
                content_type=message.content_type,
            )

        async def ack() -> None:
            self.acked.append(message.message_id)

        async def reject() -> None:
            self.rejected.append(message.message_id)

        return Delivery(
            body=message.body,
            headers=dict(message.headers),
            message_id=message.message_id,
            content_type=message.content_type,
            ack=ack,
            reject=reject,
        )

    async def close(self) -> None:
        self._closed.set()
        if self._connected:
            logger.debug("InMemoryBroker closed")
        self._connected = False


__all__ = [
    "DEFAULT_HISTORY_SIZE",
    "InMemoryBroker",
    "InMemoryQueues",
    "StoredMessage",
]
