"""
SMS transports.

The service only needs one capability from a transport: send a text to a
phone number, raising SmsDeliveryError when the message was not accepted.

- SnsSmsTransport publishes directly to a phone number through AWS SNS
- InMemorySmsTransport records sends for tests and local development
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from ..config import ServiceConfig

logger = logging.getLogger(__name__)


class SmsDeliveryError(Exception):
    """The transport did not accept a message."""

    def __init__(self, message: str, phone_number: str | None = None) -> None:
        super().__init__(message)
        self.phone_number = phone_number


@runtime_checkable
class SmsTransport(Protocol):
    """Sends a single text message."""

    @abstractmethod
    async def send(self, phone_number: str, text: str) -> None:
        """Send text to phone_number.

        Raises:
            SmsDeliveryError: If the message was not accepted
        """
        ...


class SnsSmsTransport:
    """AWS SNS SMS transport.

    Uses aiobotocore; the client is created on connect() and reused for
    every send.

    Example:
        >>> transport = SnsSmsTransport(SmsConfig(region="eu-west-1"))
        >>> await transport.connect()
        >>> await transport.send("+15551234567", "Hello")
    """

    def __init__(self, config: Any) -> None:
        """Initialize the transport.

        Args:
            config: SmsConfig instance
        """
        self.config = config
        self._session = None
        self._client_ctx = None
        self._client = None

    async def connect(self) -> None:
        """Create the SNS client."""
        if self._client:
            return

        self._session = get_session()

        client_kwargs = {
            "region_name": self.config.region,
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._client_ctx = self._session.create_client("sns", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()
        logger.info("SNS client created", extra={"region": self.config.region})

    async def close(self) -> None:
        """Close the SNS client."""
        if self._client:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None

    async def send(self, phone_number: str, text: str) -> None:
        if not self._client:
            raise SmsDeliveryError("SNS client is not connected", phone_number)

        request: dict[str, Any] = {"PhoneNumber": phone_number, "Message": text}
        if self.config.sender:
            request["MessageAttributes"] = {
                "AWS.SNS.SMS.SenderID": {
                    "DataType": "String",
                    "StringValue": self.config.sender,
                }
            }

        try:
            response = await self._client.publish(**request)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"SNS publish failed: {e}")
            raise SmsDeliveryError(f"SNS publish failed: {e}", phone_number) from e

        logger.debug("SMS accepted by SNS", extra={"message_id": response.get("MessageId")})


class InMemorySmsTransport:
    """SMS transport that records messages instead of sending them.

    Attributes:
        sent: (phone_number, text) of every accepted message
        attempts: (phone_number, text) of every send call
        failing_numbers: Numbers whose sends are rejected
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.attempts: list[tuple[str, str]] = []
        self.failing_numbers: set[str] = set()
        self._failures: list[SmsDeliveryError] = []

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def send(self, phone_number: str, text: str) -> None:
        self.attempts.append((phone_number, text))

        if self._failures:
            raise self._failures.pop(0)
        if phone_number in self.failing_numbers:
            raise SmsDeliveryError(f"Rejected by test transport: {phone_number}", phone_number)

        self.sent.append((phone_number, text))
        logger.info("SMS recorded", extra={"phone_number": phone_number})

    def inject_failure(self, count: int = 1) -> None:
        """Reject the next count sends regardless of recipient."""
        for _ in range(count):
            self._failures.append(SmsDeliveryError("Injected failure"))


def create_sms_transport(config: "ServiceConfig") -> SnsSmsTransport | InMemorySmsTransport:
    """Create an SMS transport from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import SmsBackend

    if config.sms_backend == SmsBackend.SNS:
        return SnsSmsTransport(config.sms)
    elif config.sms_backend == SmsBackend.MEMORY:
        return InMemorySmsTransport()
    else:
        raise ValueError(f"Unsupported SMS backend: {config.sms_backend}")
