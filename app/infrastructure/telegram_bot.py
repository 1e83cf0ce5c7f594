"""
Telegram Bot API integration.
"""

import html
import logging
from typing import Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult, FailureReason

logger = logging.getLogger(__name__)


class TelegramBotSender:
    """Sends messages with the Bot API `sendMessage` method."""

    def __init__(
        self,
        bot_token: Optional[str],
        api_url: str = "https://api.telegram.org",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_attempts: int = 3
    ):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.retry_attempts = retry_attempts

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def _post(self, method: str, payload: dict) -> httpx.Response:
        url = f"{self.api_url}/bot{self.bot_token}/{method}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=5),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True
            ):
                with attempt:
                    return await client.post(url, json=payload)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: str = "HTML"
    ) -> DeliveryResult:
        """
        Send a text message to a chat.

        Args:
            chat_id: Telegram chat id the user linked
            text: Message text (already escaped for parse_mode)
            parse_mode: "HTML" or "Markdown"

        Returns:
            DeliveryResult describing the outcome
        """
        if not self.is_configured:
            return DeliveryResult.failure(
                FailureReason.NOT_CONFIGURED,
                "Telegram bot token is not configured"
            )
        if not str(chat_id).strip():
            return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, "Empty chat id")

        try:
            response = await self._post(
                "sendMessage",
                {"chat_id": chat_id, "text": text, "parse_mode": parse_mode},
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Telegram request timed out: {e}")
            return DeliveryResult.failure(FailureReason.TIMEOUT, str(e))
        except httpx.HTTPError as e:
            logger.warning(f"Telegram request failed: {e}")
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e))

        if response.is_success:
            return DeliveryResult.success()

        description = _error_description(response)
        logger.error(f"Telegram send error ({response.status_code}): {description}")

        if response.status_code == 429 or response.status_code >= 500:
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, description)
        if response.status_code in (400, 403) and "chat not found" in description.lower():
            return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, description)
        return DeliveryResult.failure(FailureReason.REJECTED, description)


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json().get("description") or response.text
    except ValueError:
        return response.text


def escape_html(text: str) -> str:
    """Escape text for Telegram's HTML parse mode."""
    return html.escape(text, quote=True)


def build_telegram_sender() -> TelegramBotSender:
    """Create a Telegram sender from settings."""
    settings = get_settings()
    return TelegramBotSender(
        bot_token=settings.telegram_bot_token,
        api_url=settings.telegram_api_url,
    )
