"""
Unit tests for stream record schemas.
"""

import json
import uuid

import pytest

from hermes.sms_server.apply.customer_store import Customer
from hermes.sms_server.apply.events import (
    ChangeEvent,
    ContactPreference,
    NotificationRequest,
    RecordDecodeError,
    RetryRecord,
    StreamKind,
    decode_record,
)
from hermes.sms_server.stream.base import StreamPos, StreamRecord

CUSTOMER_ID = "8d0c5b8e-3f4e-4a55-9c1e-2c4b1f0f2a10"
SMS_CHANNEL = "5cbd9281-f056-48de-80f5-0e4f0d882ce8"


def make_record(value, topic: str = "test") -> StreamRecord:
    body = value if isinstance(value, bytes) else json.dumps(value).encode("utf-8")
    return StreamRecord(key="", value=body, position=StreamPos(topic, 0, 0))


class TestChangeEventDecoding:
    """Tests for CDC envelope decoding."""

    def test_customer_create(self):
        event = decode_record(
            StreamKind.CUSTOMERS,
            make_record({"before": None, "after": {"id": CUSTOMER_ID, "name": "Alice"}}),
        )

        assert event == ChangeEvent(before=None, after=Customer(id=uuid.UUID(CUSTOMER_ID), name="Alice"))
        assert not event.is_delete

    def test_customer_delete(self):
        event = decode_record(
            StreamKind.CUSTOMERS,
            make_record({"before": {"id": CUSTOMER_ID, "name": "Alice"}, "after": None}),
        )

        assert event.is_delete
        assert event.before.id == uuid.UUID(CUSTOMER_ID)

    def test_missing_sides_decode_to_none(self):
        """An envelope without before/after is malformed but decodable."""
        event = decode_record(StreamKind.CUSTOMERS, make_record({}))

        assert event.before is None
        assert event.after is None
        assert not event.is_delete

    def test_preference_wire_names(self):
        event = decode_record(
            StreamKind.PREFERENCES,
            make_record(
                {
                    "after": {
                        "customer_id": CUSTOMER_ID,
                        "contact_customer": True,
                        "notification_channel_type_id": SMS_CHANNEL,
                        "notification_channel_lookup_key": "+15551234567",
                    }
                }
            ),
        )

        assert event.after == ContactPreference(
            customer_id=uuid.UUID(CUSTOMER_ID),
            contact_customer=True,
            channel_type_id=uuid.UUID(SMS_CHANNEL),
            lookup_key="+15551234567",
        )

    def test_preference_missing_flag_defaults_false(self):
        event = decode_record(
            StreamKind.PREFERENCES,
            make_record(
                {"after": {"customer_id": CUSTOMER_ID, "notification_channel_type_id": SMS_CHANNEL}}
            ),
        )

        assert event.after.contact_customer is False
        assert event.after.lookup_key == ""

    def test_notification(self):
        event = decode_record(StreamKind.NOTIFICATIONS, make_record({"after": {"text": "Hello"}}))

        assert event.after == NotificationRequest(text="Hello")

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"\xff\xfe",
            json.dumps(["after"]).encode(),
            json.dumps({"after": "Alice"}).encode(),
            json.dumps({"after": {"id": "not-a-uuid", "name": "Alice"}}).encode(),
            json.dumps({"after": {"id": 42, "name": "Alice"}}).encode(),
            json.dumps({"after": {"id": CUSTOMER_ID, "name": 7}}).encode(),
        ],
    )
    def test_malformed_customer_records(self, body):
        with pytest.raises(RecordDecodeError):
            decode_record(StreamKind.CUSTOMERS, make_record(body))

    def test_preference_flag_must_be_boolean(self):
        with pytest.raises(RecordDecodeError):
            decode_record(
                StreamKind.PREFERENCES,
                make_record(
                    {
                        "after": {
                            "customer_id": CUSTOMER_ID,
                            "contact_customer": "yes",
                            "notification_channel_type_id": SMS_CHANNEL,
                        }
                    }
                ),
            )


class TestRetryRecord:
    """Tests for retry records, which are not wrapped in an envelope."""

    def test_decode(self):
        record = decode_record(
            StreamKind.RETRY, make_record({"phone_number": "+15551234567", "text": "Hello"})
        )

        assert record == RetryRecord(phone_number="+15551234567", text="Hello")

    def test_missing_fields_decode_empty(self):
        assert decode_record(StreamKind.RETRY, make_record({})) == RetryRecord(phone_number="", text="")

    def test_wire_format(self):
        """Published bytes use the same field names the retry reader expects."""
        record = RetryRecord(phone_number="+15551234567", text="Hello")

        assert json.loads(record.to_json()) == {"phone_number": "+15551234567", "text": "Hello"}
