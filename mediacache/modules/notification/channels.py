"""Notification channel implementations.

Alerts are delivered by email over SMTP.
"""

import asyncio
import html
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from mediacache.core.config import Settings


@dataclass
class ChannelDeliveryResult:
    """Result of a channel delivery attempt."""
    success: bool
    channel: str
    recipient: str
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class SmtpConfig:
    """SMTP connection settings."""
    host: str
    port: int = 587
    user: str = ""
    password: str = ""
    from_email: str = ""
    use_tls: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpConfig":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_email=settings.SMTP_FROM_EMAIL or settings.SMTP_USER,
            use_tls=settings.SMTP_TLS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_email)


class NotificationChannelBase(ABC):
    """Base class for notification channels."""

    channel_name: str = "base"

    @abstractmethod
    async def deliver(
        self,
        recipient: str,
        title: str,
        message: str,
    ) -> ChannelDeliveryResult:
        """Deliver notification to recipient.

        Args:
            recipient: Channel-specific recipient identifier
            title: Notification title
            message: Notification message body

        Returns:
            ChannelDeliveryResult with delivery status
        """

    def _create_success_result(self, recipient: str) -> ChannelDeliveryResult:
        return ChannelDeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=recipient,
            delivered_at=datetime.now(timezone.utc),
        )

    def _create_failure_result(self, recipient: str, error: str) -> ChannelDeliveryResult:
        return ChannelDeliveryResult(
            success=False,
            channel=self.channel_name,
            recipient=recipient,
            error=error,
        )


class EmailChannel(NotificationChannelBase):
    """Email notification channel using SMTP."""

    channel_name = "email"

    def __init__(self, config: SmtpConfig):
        self.config = config

    async def deliver(
        self,
        recipient: str,
        title: str,
        message: str,
    ) -> ChannelDeliveryResult:
        """Deliver notification via email."""
        if not self.config.configured:
            return self._create_failure_result(recipient, "SMTP not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = title
        msg["From"] = self.config.from_email
        msg["To"] = recipient

        msg.attach(MIMEText(message, "plain"))
        html_content = (
            f"<html><body><h2>{html.escape(title)}</h2>"
            f"<pre>{html.escape(message)}</pre></body></html>"
        )
        msg.attach(MIMEText(html_content, "html"))

        try:
            # Blocking SMTP runs in the default executor
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send_smtp, recipient, msg)
        except (smtplib.SMTPException, OSError) as e:
            return self._create_failure_result(recipient, str(e))

        return self._create_success_result(recipient)

    def _send_smtp(self, recipient: str, msg: MIMEMultipart) -> None:
        """Send email via SMTP (blocking operation)."""
        with smtplib.SMTP(self.config.host, self.config.port, timeout=30) as server:
            if self.config.use_tls:
                server.starttls()

            if self.config.user and self.config.password:
                server.login(self.config.user, self.config.password)

            server.sendmail(
                self.config.from_email,
                recipient,
                msg.as_string(),
            )
