"""
Producer and consumer service entry points.

Each service reads its configuration from the environment, sets up logging
and its own tracing pipeline, connects to RabbitMQ, and runs its loop until
SIGINT/SIGTERM (or, for the producer, until ``max_messages`` is reached).

Startup failures are fatal: invalid configuration, a tracing pipeline that
cannot be built, or a broker that cannot be reached are logged and the
process exits with status 1.

Console scripts:
    tracedqueue-producer -> main_producer()
    tracedqueue-consumer -> main_consumer()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

from tracedqueue.broker.interface import Broker
from tracedqueue.broker.rabbitmq import RabbitMQBroker, RabbitMQBrokerConfig
from tracedqueue.config import WorkQueueConfig
from tracedqueue.consumer import Consumer
from tracedqueue.exceptions import BrokerConnectionError, ConfigurationError, TracingInitError
from tracedqueue.observability import TracingContext
from tracedqueue.producer import Producer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

BrokerFactory = Callable[[], Broker]


def configure_logging(level: str) -> None:
    """Configure the root logger for a service process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def rabbitmq_broker_factory(config: WorkQueueConfig) -> BrokerFactory:
    """Return a factory creating one RabbitMQ broker (connection) per call."""
    broker_config = RabbitMQBrokerConfig(
        rabbitmq_url=config.rabbitmq_url,
        heartbeat=config.heartbeat,
        reconnect_delay=config.reconnect_delay,
        prefetch_count=config.prefetch_count,
    )
    return lambda: RabbitMQBroker(broker_config)


def create_tracing(config: WorkQueueConfig, service_name: str) -> TracingContext | None:
    """
    Build the tracing pipeline for a service, or None when tracing is off.

    Raises:
        TracingInitError: If the pipeline cannot be built
    """
    if not config.enable_tracing:
        logger.info("Tracing disabled", extra={"service_name": service_name})
        return None
    return TracingContext(service_name, otlp_endpoint=config.otlp_endpoint)


def _register_signals(loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> None:
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows doesn't fully support add_signal_handler
            logger.warning(
                "Signal handling not fully supported on this platform",
                extra={"signal": sig.name},
            )


def _unregister_signals(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, ValueError):
            pass


async def _open_broker(factory: BrokerFactory, queue_name: str) -> Broker:
    """Connect a broker and declare the work queue. Failures are fatal."""
    broker = factory()
    try:
        await broker.connect()
        await broker.declare_queue(queue_name)
    except BrokerConnectionError:
        await broker.close()
        raise
    return broker


async def _wait_for_stop(tasks: list[asyncio.Task[None]], stop: asyncio.Event) -> None:
    """Wait until every task finishes or a stop is requested."""
    stop_waiter = asyncio.create_task(stop.wait())
    pending: set[asyncio.Task[None]] = set(tasks)
    try:
        while pending and not stop.is_set():
            done, _ = await asyncio.wait(
                [*pending, stop_waiter], return_when=asyncio.FIRST_COMPLETED
            )
            pending -= done
    finally:
        stop_waiter.cancel()


async def run_producer(
    config: WorkQueueConfig,
    *,
    tracing: TracingContext | None = None,
    broker_factory: BrokerFactory | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """
    Run the producer service until stopped or ``max_messages`` is reached.

    Raises:
        BrokerConnectionError: If the broker or queue cannot be set up
    """
    factory = broker_factory or rabbitmq_broker_factory(config)
    stop = stop or asyncio.Event()
    broker = await _open_broker(factory, config.queue_name)

    loop = asyncio.get_running_loop()
    _register_signals(loop, stop)
    producer = Producer(broker, config, tracing=tracing)
    try:
        task = producer.start_in_background()
        await _wait_for_stop([task], stop)
    finally:
        _unregister_signals(loop)
        await producer.shutdown(config.shutdown_timeout)
        await broker.close()
        logger.info(
            "Producer service stopped",
            extra={
                "messages_published": producer.stats.messages_published,
                "publish_failures": producer.stats.publish_failures,
            },
        )


async def run_consumer(
    config: WorkQueueConfig,
    *,
    tracing: TracingContext | None = None,
    broker_factory: BrokerFactory | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """
    Run ``consumer_workers`` consumer loops until stopped.

    Each worker gets its own broker connection.

    Raises:
        BrokerConnectionError: If a broker or the queue cannot be set up
    """
    factory = broker_factory or rabbitmq_broker_factory(config)
    stop = stop or asyncio.Event()

    consumers: list[Consumer] = []
    try:
        for index in range(config.consumer_workers):
            broker = await _open_broker(factory, config.queue_name)
            consumers.append(
                Consumer(broker, config, tracing=tracing, name=f"consumer-{index}")
            )
    except BrokerConnectionError:
        for consumer in consumers:
            await consumer.shutdown(config.shutdown_timeout)
        raise

    loop = asyncio.get_running_loop()
    _register_signals(loop, stop)
    try:
        tasks = [consumer.start_in_background() for consumer in consumers]
        await _wait_for_stop(tasks, stop)
    finally:
        _unregister_signals(loop)
        await asyncio.gather(
            *(consumer.shutdown(config.shutdown_timeout) for consumer in consumers)
        )
        logger.info(
            "Consumer service stopped",
            extra={
                "workers": len(consumers),
                "messages_processed": sum(c.stats.messages_processed for c in consumers),
                "decode_failures": sum(c.stats.decode_failures for c in consumers),
            },
        )


def _main(service_name_of: Callable[[WorkQueueConfig], str], role: str) -> int:
    try:
        config = WorkQueueConfig.from_env()
    except ConfigurationError as e:
        configure_logging("INFO")
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(config.log_level)
    service_name = service_name_of(config)

    try:
        tracing = create_tracing(config, service_name)
    except TracingInitError as e:
        logger.error(f"Failed to initialize tracing: {e}")
        return 1

    runner = run_producer if role == "producer" else run_consumer
    try:
        asyncio.run(runner(config, tracing=tracing))
    except BrokerConnectionError as e:
        logger.error(f"Failed to set up broker: {e}")
        return 1
    finally:
        if tracing is not None:
            tracing.shutdown(timeout=config.shutdown_timeout)
    return 0


def main_producer() -> int:
    """Entry point of the producer service."""
    return _main(lambda config: config.producer_service_name, "producer")


def main_consumer() -> int:
    """Entry point of the consumer service."""
    return _main(lambda config: config.consumer_service_name, "consumer")


__all__ = [
    "configure_logging",
    "create_tracing",
    "main_consumer",
    "main_producer",
    "rabbitmq_broker_factory",
    "run_consumer",
    "run_producer",
]
