"""
Record schemas for the streams consumed by the SMS service.

Each stream carries JSON records of one shape. The customer, preference
and notification streams carry CDC envelopes ({"before": ..., "after": ...})
produced by the upstream connector; the retry stream carries bare retry
records written by this service.

Example customer record:
    {
        "before": null,
        "after": {"id": "8d0c5b8e-3f4e-4a55-9c1e-2c4b1f0f2a10", "name": "Alice"}
    }

Invariants:
    - Decoding never touches the store; it only validates shape and types
    - Missing strings decode to "", missing booleans to False
    - UUID fields must parse; anything else is a RecordDecodeError
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from ..stream.base import StreamRecord, StreamSerializationError
from .customer_store import Customer

T = TypeVar("T")


class RecordDecodeError(ValueError):
    """A record body does not match its stream's schema."""

    pass


class StreamKind(Enum):
    """The logical streams the service consumes."""

    CUSTOMERS = "customers"
    PREFERENCES = "preferences"
    NOTIFICATIONS = "notifications"
    RETRY = "retry"


@dataclass(frozen=True)
class ChangeEvent(Generic[T]):
    """One CDC record for an entity of type T.

    after present: create or update. after absent, before present: delete.
    Both absent: malformed, handled as a no-op.
    """

    before: T | None = None
    after: T | None = None

    @property
    def is_delete(self) -> bool:
        return self.after is None and self.before is not None

    @classmethod
    def from_dict(cls, data: Any, decode: Callable[[dict[str, Any]], T]) -> ChangeEvent[T]:
        """Decode an envelope, decoding each present side with decode."""
        data = _require_object(data, "change event")
        return cls(
            before=_optional_side(data, "before", decode),
            after=_optional_side(data, "after", decode),
        )


@dataclass(frozen=True)
class ContactPreference:
    """A customer's preference for one notification channel.

    Attributes:
        customer_id: Customer the preference belongs to
        contact_customer: Whether the customer may be contacted on the channel
        channel_type_id: Notification channel type (SMS, e-mail, ...)
        lookup_key: Channel address; a phone number for SMS
    """

    customer_id: uuid.UUID
    contact_customer: bool
    channel_type_id: uuid.UUID
    lookup_key: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContactPreference:
        return cls(
            customer_id=_uuid_field(data, "customer_id"),
            contact_customer=_bool_field(data, "contact_customer"),
            channel_type_id=_uuid_field(data, "notification_channel_type_id"),
            lookup_key=_str_field(data, "notification_channel_lookup_key"),
        )


@dataclass(frozen=True)
class NotificationRequest:
    """A request to text every opted-in customer."""

    text: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationRequest:
        return cls(text=_str_field(data, "text"))


@dataclass(frozen=True)
class RetryRecord:
    """A delivery that failed and is queued for another attempt."""

    phone_number: str
    text: str

    @classmethod
    def from_dict(cls, data: Any) -> RetryRecord:
        data = _require_object(data, "retry record")
        return cls(
            phone_number=_str_field(data, "phone_number"),
            text=_str_field(data, "text"),
        )

    def to_dict(self) -> dict[str, str]:
        return {"phone_number": self.phone_number, "text": self.text}

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")


def customer_from_dict(data: dict[str, Any]) -> Customer:
    """Decode the upstream customer shape; contact fields are not part of it."""
    return Customer(id=_uuid_field(data, "id"), name=_str_field(data, "name"))


def decode_customer_change(data: Any) -> ChangeEvent[Customer]:
    return ChangeEvent.from_dict(data, customer_from_dict)


def decode_preference_change(data: Any) -> ChangeEvent[ContactPreference]:
    return ChangeEvent.from_dict(data, ContactPreference.from_dict)


def decode_notification_change(data: Any) -> ChangeEvent[NotificationRequest]:
    return ChangeEvent.from_dict(data, NotificationRequest.from_dict)


SCHEMAS: dict[StreamKind, Callable[[Any], Any]] = {
    StreamKind.CUSTOMERS: decode_customer_change,
    StreamKind.PREFERENCES: decode_preference_change,
    StreamKind.NOTIFICATIONS: decode_notification_change,
    StreamKind.RETRY: RetryRecord.from_dict,
}


def decode_record(kind: StreamKind, record: StreamRecord) -> Any:
    """Decode a record with the schema of the stream it was read from.

    Raises:
        RecordDecodeError: If the body is not JSON or does not match the schema
    """
    try:
        data = record.value_json()
    except StreamSerializationError as e:
        raise RecordDecodeError(str(e)) from e

    return SCHEMAS[kind](data)


def _require_object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise RecordDecodeError(f"Expected a JSON object for {what}, got {type(data).__name__}")
    return data


def _optional_side(data: dict[str, Any], name: str, decode: Callable[[dict[str, Any]], T]) -> T | None:
    value = data.get(name)
    if value is None:
        return None
    return decode(_require_object(value, name))


def _uuid_field(data: dict[str, Any], name: str) -> uuid.UUID:
    value = data.get(name)
    if not isinstance(value, str):
        raise RecordDecodeError(f"Field '{name}' must be a UUID string")
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise RecordDecodeError(f"Field '{name}' is not a valid UUID: {value!r}") from e


def _str_field(data: dict[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise RecordDecodeError(f"Field '{name}' must be a string")
    return value


def _bool_field(data: dict[str, Any], name: str) -> bool:
    value = data.get(name)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise RecordDecodeError(f"Field '{name}' must be a boolean")
    return value
