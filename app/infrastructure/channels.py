"""
Channel adapters.

Every channel exposes the same `send(target, message)` contract and reports
its own DeliveryResult, so the orchestrator never branches on channel
identity beyond picking the adapter.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult, FailureReason, ReminderMessage
from app.domain.notification import Notification, NotificationType
from app.domain.reminder import ChannelType
from app.infrastructure.database import async_session_factory
from app.infrastructure.email_sender import SmtpEmailSender, build_email_sender
from app.infrastructure.reminder_store import IN_APP_PROVIDER
from app.infrastructure.session_manager import MessagingSessionManager, get_session_manager
from app.infrastructure.telegram_bot import TelegramBotSender, build_telegram_sender, escape_html
from app.infrastructure.twilio_whatsapp import TwilioWhatsAppSender, build_twilio_sender
from app.utils.phone import InvalidDestinationError, to_chat_id
from app.utils.time import format_time

logger = logging.getLogger(__name__)


class ChannelAdapter(ABC):
    """Uniform send contract for one delivery channel."""

    channel: ChannelType
    # Integration provider whose external_id is this channel's destination
    provider: str

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone

    @abstractmethod
    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        """Deliver a reminder to `target`; never raises for delivery problems."""

    def _due_text(self, message: ReminderMessage) -> Optional[str]:
        if message.due_date is None:
            return None
        return format_time(message.due_date, self.timezone)


def format_whatsapp_message(message: ReminderMessage, due_text: Optional[str] = None) -> str:
    """WhatsApp-flavoured markdown rendering of a reminder."""
    text = f"🔔 *{message.title}*\n\n{message.body}"

    if message.task_title:
        text += f"\n\n📋 Task: {message.task_title}"
    if due_text:
        text += f"\n⏰ Due: {due_text}"
    if message.link:
        text += f"\n\n🔗 {message.link}"

    return text


class WhatsAppWebAdapter(ChannelAdapter):
    """Stateful channel: delegates to the process-wide WhatsApp Web session."""

    channel = ChannelType.WHATSAPP
    provider = "whatsapp"

    def __init__(self, manager: MessagingSessionManager, timezone: str = "UTC"):
        super().__init__(timezone)
        self.manager = manager

    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        # Malformed destinations fail permanently whatever the session state
        try:
            to_chat_id(target)
        except InvalidDestinationError as e:
            return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, str(e))

        if not self.manager.is_connected:
            return DeliveryResult.failure(
                FailureReason.CHANNEL_UNAVAILABLE,
                f"WhatsApp session is {self.manager.get_status().value}",
            )
        return await self.manager.send_message(
            target,
            format_whatsapp_message(message, self._due_text(message)),
        )


class WhatsAppApiAdapter(ChannelAdapter):
    """Stateless WhatsApp delivery through the Twilio API."""

    channel = ChannelType.WHATSAPP_API
    provider = "whatsapp"

    def __init__(self, sender: TwilioWhatsAppSender, timezone: str = "UTC"):
        super().__init__(timezone)
        self.sender = sender

    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        return await self.sender.send_whatsapp_message(
            format_whatsapp_message(message, self._due_text(message)),
            target,
        )


class TelegramAdapter(ChannelAdapter):
    """Stateless Bot API delivery."""

    channel = ChannelType.TELEGRAM
    provider = "telegram"

    def __init__(self, sender: TelegramBotSender, timezone: str = "UTC"):
        super().__init__(timezone)
        self.sender = sender

    def format(self, message: ReminderMessage) -> str:
        text = f"🔔 <b>{escape_html(message.title)}</b>\n\n{escape_html(message.body)}"

        if message.task_title:
            text += f"\n\n📋 <b>Task:</b> {escape_html(message.task_title)}"
        due_text = self._due_text(message)
        if due_text:
            text += f"\n⏰ <b>Due:</b> {due_text}"
        if message.link:
            text += f'\n\n<a href="{escape_html(message.link)}">View Task</a>'

        return text

    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        return await self.sender.send_message(target, self.format(message))


class EmailAdapter(ChannelAdapter):
    """Stateless email delivery."""

    channel = ChannelType.EMAIL
    provider = "email"

    def __init__(self, sender: SmtpEmailSender, timezone: str = "UTC"):
        super().__init__(timezone)
        self.sender = sender

    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        lines = [message.body]
        if message.task_title:
            lines.append(f"Task: {message.task_title}")
        due_text = self._due_text(message)
        if due_text:
            lines.append(f"Due: {due_text}")
        if message.link:
            lines.append(message.link)

        html = "".join(f"<p>{escape_html(line)}</p>" for line in lines)
        return await self.sender.send_email(
            to_email=target,
            subject=message.title,
            text="\n\n".join(lines),
            html=html,
        )


class InAppAdapter(ChannelAdapter):
    """Writes the reminder to the recipient's dashboard notification list."""

    channel = ChannelType.IN_APP
    provider = IN_APP_PROVIDER

    def __init__(self, session_factory, timezone: str = "UTC"):
        super().__init__(timezone)
        self.session_factory = session_factory

    async def send(self, target: str, message: ReminderMessage) -> DeliveryResult:
        notification = Notification(
            user_id=target,
            type=NotificationType.INFO,
            title=message.title,
            message=message.body,
            link=message.link,
        )
        try:
            async with self.session_factory() as session:
                session.add(notification)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to store in-app notification for {target}: {e}")
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e))

        return DeliveryResult.success(detail=notification.id)


def build_channel_adapters(
    manager: Optional[MessagingSessionManager] = None
) -> Dict[ChannelType, ChannelAdapter]:
    """Create the adapter set from settings."""
    settings = get_settings()
    tz = settings.timezone
    return {
        ChannelType.WHATSAPP: WhatsAppWebAdapter(manager or get_session_manager(), tz),
        ChannelType.WHATSAPP_API: WhatsAppApiAdapter(build_twilio_sender(), tz),
        ChannelType.TELEGRAM: TelegramAdapter(build_telegram_sender(), tz),
        ChannelType.EMAIL: EmailAdapter(build_email_sender(), tz),
        ChannelType.IN_APP: InAppAdapter(async_session_factory, tz),
    }
