"""Library exceptions for the tracedqueue package."""


class TracedQueueError(Exception):
    """Base exception for tracedqueue."""

    pass


class EncodingError(TracedQueueError):
    """Raised when a work item cannot be serialized."""

    def __init__(self, message_id: str, message: str) -> None:
        self.message_id = message_id
        super().__init__(f"Failed to encode message {message_id}: {message}")


class DecodingError(TracedQueueError):
    """
    Raised when a message body cannot be decoded into a work item.

    This covers bodies that are not valid JSON, bodies missing a required
    field, and bodies whose fields have the wrong type (for example a
    non-integer wait_time).

    Attributes:
        body: The raw body that failed to decode
        reason: Short description of why decoding failed
    """

    def __init__(self, body: bytes, reason: str) -> None:
        self.body = body
        self.reason = reason
        super().__init__(f"Failed to decode message ({len(body)} bytes): {reason}")


class ConfigurationError(TracedQueueError):
    """Raised when the configuration is invalid."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"Invalid configuration for {field}: {message}")


class TracingInitError(TracedQueueError):
    """Raised when the tracing pipeline cannot be initialized."""

    def __init__(self, service_name: str, message: str) -> None:
        self.service_name = service_name
        super().__init__(f"Failed to initialize tracing for {service_name}: {message}")


class BrokerError(TracedQueueError):
    """Raised when there's an error talking to the message broker."""

    pass


class BrokerConnectionError(BrokerError):
    """
    Raised when the broker connection, channel or queue cannot be set up.

    This is fatal at startup: the services refuse to run without a transport.
    """

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"Failed to connect to broker at {url}: {message}")


class PublishError(BrokerError):
    """Raised when a single publish to the broker fails."""

    def __init__(self, queue_name: str, message: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Failed to publish to queue {queue_name}: {message}")


class ShutdownError(TracedQueueError):
    """Raised when an operation is attempted after shutdown."""

    def __init__(self, message: str = "Component has been shut down") -> None:
        super().__init__(message)


__all__ = [
    "BrokerConnectionError",
    "BrokerError",
    "ConfigurationError",
    "DecodingError",
    "EncodingError",
    "PublishError",
    "ShutdownError",
    "TracedQueueError",
    "TracingInitError",
]
