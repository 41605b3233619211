"""
Work item envelope and its wire format.

A work item is the unit of work exchanged through the queue. It travels as a
UTF-8 JSON object with exactly three fields::

    {"id": "1", "content": "Message #1", "wait_time": 3}

Decoding is strict: ``id`` and ``content`` must be JSON strings and
``wait_time`` must be a JSON integer within bounds. Nothing is coerced, so
``id`` round-trips byte for byte.

Example:
    >>> item = WorkItem.create(1, wait_time=3)
    >>> body = serialize(item)
    >>> deserialize(body) == item
    True
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import PydanticSerializationError

from tracedqueue.exceptions import DecodingError, EncodingError

CONTENT_TYPE = "application/json"
"""Content type label attached to every published body."""

MIN_WAIT_TIME = 0
MAX_WAIT_TIME = 20


class WorkItem(BaseModel):
    """
    A unit of simulated work.

    Work items are immutable. The producer creates one per iteration and the
    consumer decodes it exactly once per delivery.

    Attributes:
        id: Identifier, unique within a producer run
        content: Human-readable payload, opaque to the system
        wait_time: Simulated processing duration in seconds (0-20)
    """

    model_config = ConfigDict(frozen=True, strict=True)

    id: str = Field(
        ...,
        description="Unique message identifier within a producer run",
    )
    content: str = Field(
        ...,
        description="Human-readable payload",
    )
    wait_time: int = Field(
        ...,
        ge=MIN_WAIT_TIME,
        le=MAX_WAIT_TIME,
        description="Simulated processing time in seconds",
    )

    @classmethod
    def create(cls, sequence: int, wait_time: int) -> Self:
        """
        Build the work item for a producer sequence number.

        Args:
            sequence: Monotonic counter value for this producer run
            wait_time: Simulated processing duration in seconds

        Returns:
            WorkItem with ``id`` set to the sequence and a descriptive content
        """
        return cls(id=str(sequence), content=f"Message #{sequence}", wait_time=wait_time)


def serialize(item: WorkItem) -> bytes:
    """
    Encode a work item as UTF-8 JSON bytes.

    Raises:
        EncodingError: If the item cannot be encoded. Well-formed items
            always encode; this only fires on corrupted in-memory values.
    """
    try:
        return item.model_dump_json().encode("utf-8")
    except (PydanticSerializationError, UnicodeEncodeError) as e:
        raise EncodingError(item.id, str(e)) from e


def deserialize(data: bytes) -> WorkItem:
    """
    Decode UTF-8 JSON bytes into a work item.

    Args:
        data: Raw message body as received from the broker

    Returns:
        The decoded WorkItem

    Raises:
        DecodingError: If the body is not valid JSON, a required field is
            missing, or a field has the wrong type or is out of range
    """
    try:
        return WorkItem.model_validate_json(data)
    except ValidationError as e:
        raise DecodingError(data, _describe(e)) from e
    except ValueError as e:
        raise DecodingError(data, str(e)) from e


def _describe(error: ValidationError) -> str:
    """Summarize the first validation problem, e.g. ``wait_time: int_type``."""
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{location}: {first.get('type', 'invalid')} ({first.get('msg', '')})"


__all__ = [
    "CONTENT_TYPE",
    "MAX_WAIT_TIME",
    "MIN_WAIT_TIME",
    "WorkItem",
    "deserialize",
    "serialize",
]
