"""
Standard span attributes for tracedqueue.

Messaging attributes follow the OpenTelemetry semantic conventions; the
work-item attributes live under the ``tracedqueue.`` namespace.

Example:
    >>> from tracedqueue.observability.attributes import (
    ...     ATTR_MESSAGING_DESTINATION,
    ...     ATTR_MESSAGE_ID,
    ... )
    >>>
    >>> span.set_attributes({
    ...     ATTR_MESSAGING_DESTINATION: "work",
    ...     ATTR_MESSAGE_ID: item.id,
    ... })
"""

# =============================================================================
# Messaging Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (e.g., 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Queue the message was published to or consumed from (string)."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation type ('publish' or 'process')."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message_id"
"""Broker-level message identifier, when the broker assigns one (string)."""

# =============================================================================
# Work Item Attributes
# =============================================================================

ATTR_MESSAGE_ID = "tracedqueue.message.id"
"""Work item identifier (string)."""

ATTR_MESSAGE_CONTENT = "tracedqueue.message.content"
"""Work item content (string)."""

ATTR_WAIT_TIME = "tracedqueue.message.wait_time"
"""Simulated processing duration in seconds (integer)."""

ATTR_BODY_SIZE = "tracedqueue.message.body_size"
"""Size of the serialized body in bytes (integer)."""

# =============================================================================
# Context / Error Attributes
# =============================================================================

ATTR_PARENT_VALID = "tracedqueue.parent.valid"
"""Whether a valid parent context was extracted from the headers (boolean)."""

ATTR_ERROR_TYPE = "tracedqueue.error.type"
"""Exception class name when an operation fails (string)."""


__all__ = [
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGE_ID",
    "ATTR_MESSAGE_CONTENT",
    "ATTR_WAIT_TIME",
    "ATTR_BODY_SIZE",
    "ATTR_PARENT_VALID",
    "ATTR_ERROR_TYPE",
]
