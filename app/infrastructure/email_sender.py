"""
SMTP email delivery.
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from app.config.settings import get_settings
from app.domain.delivery import DeliveryResult, FailureReason

logger = logging.getLogger(__name__)


class SmtpEmailSender:
    """Fire-and-forget email over SMTP (STARTTLS by default)."""

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: str = "noreply@taskflow.local",
        from_name: str = "TaskFlow",
        timeout: float = 30.0
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    def _build_message(self, to_email: str, subject: str, text: str, html: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = to_email
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        text: str,
        html: Optional[str] = None
    ) -> DeliveryResult:
        """
        Send an email.

        Args:
            to_email: Recipient address
            subject: Subject line
            text: Plain-text body
            html: Optional HTML alternative

        Returns:
            DeliveryResult describing the outcome
        """
        if not self.is_configured:
            return DeliveryResult.failure(FailureReason.NOT_CONFIGURED, "SMTP host is not configured")
        if not to_email or "@" not in to_email:
            return DeliveryResult.failure(
                FailureReason.INVALID_DESTINATION,
                f"Invalid email address: {to_email!r}"
            )

        msg = self._build_message(to_email, subject, text, html)

        try:
            await asyncio.to_thread(self._send_sync, msg)
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"Email recipient refused: {to_email}")
            return DeliveryResult.failure(FailureReason.INVALID_DESTINATION, str(e))
        except smtplib.SMTPResponseException as e:
            logger.error(f"SMTP error {e.smtp_code} sending to {to_email}")
            reason = FailureReason.REJECTED if 500 <= e.smtp_code < 600 else FailureReason.NETWORK_ERROR
            return DeliveryResult.failure(reason, f"{e.smtp_code} {e.smtp_error!r}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {e}")
            return DeliveryResult.failure(FailureReason.NETWORK_ERROR, str(e))

        logger.info(f"Email sent to {to_email}")
        return DeliveryResult.success()


def build_email_sender() -> SmtpEmailSender:
    """Create an SMTP sender from settings."""
    settings = get_settings()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_address=settings.email_from,
        from_name=settings.app_name,
    )
