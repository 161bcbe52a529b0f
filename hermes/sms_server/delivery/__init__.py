"""
Delivery module - SMS transports, notification fan-out and the retry queue.

Invariants:
    - The fan-out never reports delivery failures to its caller
    - Every failed send is re-published to the retry queue once
"""

from .fanout import DeliveryFanout, FanoutClosedError
from .retry import RetryPublisher
from .sms import (
    InMemorySmsTransport,
    SmsDeliveryError,
    SmsTransport,
    SnsSmsTransport,
    create_sms_transport,
)

__all__ = [
    "DeliveryFanout",
    "FanoutClosedError",
    "RetryPublisher",
    "SmsTransport",
    "SmsDeliveryError",
    "SnsSmsTransport",
    "InMemorySmsTransport",
    "create_sms_transport",
]
