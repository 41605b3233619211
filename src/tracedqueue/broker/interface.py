"""Broker interface definitions.

This module contains the Broker abstract base class and the Delivery record
that the producer and consumer loops use to talk to the queueing service.

The broker only moves bytes and headers. It knows nothing about work items
or trace contexts: the producer hands it an already serialized body plus a
carrier of string headers, and the consumer receives the body plus the raw,
dynamically typed header table exactly as the transport delivered it.

A broker instance (connection plus channel) is owned by the loop that
created it and is never shared between loops.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

# Settles a delivery with the broker (acknowledge or reject)
SettleFunc = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Delivery:
    """
    A message received from the broker.

    Attributes:
        body: Raw message body
        headers: Header table as delivered. Values may be of any type.
        message_id: Broker message id, if the publisher set one
        content_type: Content type label, if the publisher set one
        ack: Acknowledges the delivery. None when the broker auto-acknowledged.
        reject: Rejects the delivery without requeue. None when auto-acknowledged.
    """

    body: bytes
    headers: Mapping[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    content_type: str | None = None
    ack: SettleFunc | None = None
    reject: SettleFunc | None = None

    @property
    def needs_settlement(self) -> bool:
        """True if the consumer must ack or reject this delivery itself."""
        return self.ack is not None


class Broker(ABC):
    """
    Abstract message broker boundary.

    Implementations:
    - RabbitMQBroker: aio-pika over AMQP 0-9-1
    - InMemoryBroker: asyncio queues, for tests and local runs

    Example:
        >>> async with RabbitMQBroker(config) as broker:
        ...     await broker.declare_queue("work")
        ...     await broker.publish("work", body, headers, "application/json")
        ...     async for delivery in broker.subscribe("work"):
        ...         handle(delivery)
    """

    # Reported as messaging.system on spans
    system: str = "unknown"

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the broker connection is usable."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the connection and channel.

        Raises:
            BrokerConnectionError: If the broker cannot be reached
        """
        ...

    @abstractmethod
    async def declare_queue(self, queue_name: str) -> None:
        """
        Declare a durable queue. Redeclaring an existing queue with the same
        parameters is a no-op.

        Raises:
            BrokerConnectionError: If the declaration fails
        """
        ...

    @abstractmethod
    async def publish(
        self,
        queue_name: str,
        body: bytes,
        headers: Mapping[str, str],
        content_type: str,
        message_id: str | None = None,
    ) -> None:
        """
        Publish one message to ``queue_name``.

        Raises:
            PublishError: If the message could not be handed to the broker
        """
        ...

    @abstractmethod
    def subscribe(self, queue_name: str, *, auto_ack: bool = True) -> AsyncIterator[Delivery]:
        """
        Iterate over deliveries from ``queue_name``.

        The iterator is effectively infinite and ends when the broker is
        closed. With ``auto_ack`` the broker considers each message handled
        as soon as it is delivered.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and connection. Safe to call more than once."""
        ...

    async def __aenter__(self) -> Broker:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()


__all__ = [
    "Broker",
    "Delivery",
    "SettleFunc",
]
