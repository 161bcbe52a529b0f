"""
Unit tests for SMS transports.
"""

from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from hermes.sms_server.config import ServiceConfig, SmsBackend, SmsConfig
from hermes.sms_server.delivery.sms import (
    InMemorySmsTransport,
    SmsDeliveryError,
    SmsTransport,
    SnsSmsTransport,
    create_sms_transport,
)


class TestSnsSmsTransport:
    """Tests for SnsSmsTransport with a mocked SNS client."""

    @pytest.fixture
    def client(self):
        client = AsyncMock()
        client.publish = AsyncMock(return_value={"MessageId": "msg-1"})
        return client

    def make_transport(self, client, **config):
        transport = SnsSmsTransport(SmsConfig(region="eu-west-1", **config))
        transport._client = client
        return transport

    @pytest.mark.asyncio
    async def test_send_publishes_to_phone_number(self, client):
        transport = self.make_transport(client)

        await transport.send("+15551234567", "Hello")

        client.publish.assert_awaited_once_with(PhoneNumber="+15551234567", Message="Hello")

    @pytest.mark.asyncio
    async def test_sender_id_attribute(self, client):
        transport = self.make_transport(client, sender="Hermes")

        await transport.send("+15551234567", "Hello")

        attributes = client.publish.await_args.kwargs["MessageAttributes"]
        assert attributes == {
            "AWS.SNS.SMS.SenderID": {"DataType": "String", "StringValue": "Hermes"}
        }

    @pytest.mark.asyncio
    async def test_client_error_becomes_delivery_error(self, client):
        client.publish.side_effect = ClientError(
            {"Error": {"Code": "InvalidParameter", "Message": "Invalid phone number"}},
            "Publish",
        )
        transport = self.make_transport(client)

        with pytest.raises(SmsDeliveryError) as exc_info:
            await transport.send("not-a-number", "Hello")

        assert exc_info.value.phone_number == "not-a-number"

    @pytest.mark.asyncio
    async def test_connection_error_becomes_delivery_error(self, client):
        client.publish.side_effect = EndpointConnectionError(endpoint_url="https://sns.eu-west-1.amazonaws.com")
        transport = self.make_transport(client)

        with pytest.raises(SmsDeliveryError):
            await transport.send("+15551234567", "Hello")

    @pytest.mark.asyncio
    async def test_send_without_connect(self):
        transport = SnsSmsTransport(SmsConfig())

        with pytest.raises(SmsDeliveryError):
            await transport.send("+15551234567", "Hello")


class TestInMemorySmsTransport:
    """Tests for the recording transport."""

    @pytest.mark.asyncio
    async def test_records_sends(self):
        transport = InMemorySmsTransport()

        await transport.send("+1001", "Hello")

        assert transport.sent == [("+1001", "Hello")]
        assert transport.attempts == [("+1001", "Hello")]

    @pytest.mark.asyncio
    async def test_injected_failures_are_consumed(self):
        transport = InMemorySmsTransport()
        transport.inject_failure(2)

        for _ in range(2):
            with pytest.raises(SmsDeliveryError):
                await transport.send("+1001", "Hello")
        await transport.send("+1001", "Hello")

        assert len(transport.attempts) == 3
        assert len(transport.sent) == 1

    def test_satisfies_protocol(self):
        assert isinstance(InMemorySmsTransport(), SmsTransport)


class TestCreateSmsTransport:
    def test_sns(self):
        assert isinstance(create_sms_transport(ServiceConfig()), SnsSmsTransport)

    def test_memory(self):
        config = ServiceConfig(sms_backend=SmsBackend.MEMORY)

        assert isinstance(create_sms_transport(config), InMemorySmsTransport)
