"""
Apply module - record decoding, entity handlers and dispatch.

This module handles:
- The customer SQLite store (the service's only owned state)
- Per-stream record schemas (CDC envelopes and retry records)
- Entity handlers for customers, preferences, notifications and retries
- The dispatcher that routes records and gates commits

Handlers and the dispatcher are imported from their modules directly;
they depend on the delivery package, which itself uses the store and
record types exported here.
"""

from .customer_store import Customer, CustomerNotFoundError, CustomerStore, CustomerStoreError
from .events import (
    ChangeEvent,
    ContactPreference,
    NotificationRequest,
    RecordDecodeError,
    RetryRecord,
    StreamKind,
    decode_record,
)

__all__ = [
    "Customer",
    "CustomerStore",
    "CustomerNotFoundError",
    "CustomerStoreError",
    "ChangeEvent",
    "ContactPreference",
    "NotificationRequest",
    "RetryRecord",
    "RecordDecodeError",
    "StreamKind",
    "decode_record",
]
