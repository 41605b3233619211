"""
tracedqueue - Work queue producer and consumer with end-to-end tracing.

This library provides:
- A JSON work item envelope with strict decoding
- W3C trace context propagation through message headers
- Producer and consumer loops that keep one trace across the queue
- RabbitMQ (aio-pika) and in-memory broker backends
- An explicitly owned OpenTelemetry pipeline exporting over OTLP/HTTP
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tracedqueue")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Broker
from tracedqueue.broker import (
    Broker,
    Delivery,
    InMemoryBroker,
    InMemoryQueues,
    RabbitMQBroker,
    RabbitMQBrokerConfig,
)

# Configuration
from tracedqueue.config import AckMode, WorkQueueConfig

# Loops
from tracedqueue.consumer import Consumer, ConsumerStats

# Envelope
from tracedqueue.envelope import CONTENT_TYPE, WorkItem, deserialize, serialize

# Exceptions
from tracedqueue.exceptions import (
    BrokerConnectionError,
    BrokerError,
    ConfigurationError,
    DecodingError,
    EncodingError,
    PublishError,
    ShutdownError,
    TracedQueueError,
    TracingInitError,
)

# Observability
from tracedqueue.observability import TracingContext
from tracedqueue.producer import Producer, ProducerStats

# Propagation
from tracedqueue.propagation import Carrier, extract, inject

__all__ = [
    "__version__",
    # Envelope
    "CONTENT_TYPE",
    "WorkItem",
    "serialize",
    "deserialize",
    # Propagation
    "Carrier",
    "inject",
    "extract",
    # Loops
    "Producer",
    "ProducerStats",
    "Consumer",
    "ConsumerStats",
    # Broker
    "Broker",
    "Delivery",
    "InMemoryBroker",
    "InMemoryQueues",
    "RabbitMQBroker",
    "RabbitMQBrokerConfig",
    # Configuration
    "AckMode",
    "WorkQueueConfig",
    # Observability
    "TracingContext",
    # Exceptions
    "TracedQueueError",
    "EncodingError",
    "DecodingError",
    "ConfigurationError",
    "TracingInitError",
    "BrokerError",
    "BrokerConnectionError",
    "PublishError",
    "ShutdownError",
]
