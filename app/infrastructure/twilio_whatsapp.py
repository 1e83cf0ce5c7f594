"""
Twilio WhatsApp messaging integration with retry logic.

Stateless fallback to the self-hosted WhatsApp Web session.
"""

import asyncio
import logging
from typing import Optional

import requests
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult, FailureReason
from app.utils.phone import InvalidDestinationError, to_e164

logger = logging.getLogger(__name__)

# Twilio error codes for destinations that can never receive the message
INVALID_DESTINATION_CODES = {21211, 21614, 63003}


def _is_server_error(exc: BaseException) -> bool:
    """Only 5xx responses and connection errors are worth retrying in-call."""
    if isinstance(exc, TwilioRestException):
        return exc.status is None or exc.status >= 500
    return isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout))


class TwilioWhatsAppSender:
    """Sends WhatsApp messages through the Twilio REST API."""

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        client: Optional[Client] = None
    ):
        self.from_number = from_number
        self._client = client
        if self._client is None and account_sid and auth_token:
            self._client = Client(account_sid, auth_token)

    @property
    def is_configured(self) -> bool:
        return self._client is not None and bool(self.from_number)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception(_is_server_error),
        reraise=True
    )
    def _send_message_sync(self, message: str, to_number: str):
        """
        Synchronous Twilio message send with retry logic.

        Args:
            message: Text message to send
            to_number: Recipient's WhatsApp number (whatsapp:+...)

        Returns:
            Twilio message object
        """
        return self._client.messages.create(
            body=message,
            from_=self.from_number,
            to=to_number
        )

    async def send_whatsapp_message(self, message: str, to_number: str) -> DeliveryResult:
        """
        Send a WhatsApp text message.

        Args:
            message: Text message to send
            to_number: Recipient phone number in any international notation

        Returns:
            DeliveryResult describing the outcome
        """
        if not self.is_configured:
            return DeliveryResult.failure(
                FailureReason.NOT_CONFIGURED,
                "Twilio WhatsApp credentials are not configured"
            )

        try:
            recipient = f"whatsapp:{to_e164(to_number)}"
        except InvalidDestinationError as e:
            return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, str(e))

        try:
            msg = await asyncio.to_thread(self._send_message_sync, message, recipient)
        except TwilioRestException as e:
            logger.error(f"Failed to send WhatsApp message after retries: {e}")
            if e.code in INVALID_DESTINATION_CODES:
                return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, str(e.msg))
            if e.status is not None and e.status < 500:
                return DeliveryResult.failure(FailureReason.REJECTED, str(e.msg))
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e.msg))
        except Exception as e:
            logger.exception(f"Twilio request error: {e}")
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e))

        logger.info(f"WhatsApp message sent successfully. SID: {msg.sid}")
        return DeliveryResult.success(detail=msg.sid)


def build_twilio_sender() -> TwilioWhatsAppSender:
    """Create a Twilio sender from settings."""
    settings = get_settings()
    return TwilioWhatsAppSender(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_whatsapp_number,
    )
