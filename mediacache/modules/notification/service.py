"""Operator alerts for server-side failures."""

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

from mediacache.core.config import Settings
from mediacache.modules.notification.channels import (
    EmailChannel,
    NotificationChannelBase,
    SmtpConfig,
)

logger = logging.getLogger(__name__)


class AlertNotifier:
    """Sends ``[ALERT]`` emails when the pipeline hits a server fault.

    Delivery problems are logged and never reach the caller.
    """

    def __init__(
        self,
        channel: Optional[NotificationChannelBase],
        recipient: Optional[str],
    ):
        self.channel = channel
        self.recipient = recipient

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertNotifier":
        config = SmtpConfig.from_settings(settings)
        recipient = settings.ALERT_EMAIL or config.from_email or None
        channel = EmailChannel(config) if config.configured else None
        return cls(channel, recipient)

    @property
    def enabled(self) -> bool:
        return self.channel is not None and bool(self.recipient)

    def format_alert(self, error: BaseException, context: Optional[dict[str, Any]] = None) -> tuple[str, str]:
        """Build the subject and body of an alert.

        Args:
            error: The failure being reported
            context: Request details such as tenant, key and source

        Returns:
            Tuple of (subject, body)
        """
        subject = f"[ALERT] {type(error).__name__}"
        lines = [
            f"Time: {datetime.now(timezone.utc).isoformat()}",
            f"Error: {error}",
        ]
        if error.__traceback__ is not None:
            lines.append("")
            lines.extend(traceback.format_exception(type(error), error, error.__traceback__))
        if context:
            lines.append("")
            lines.append("Context:")
            lines.append(json.dumps(context, indent=2, default=str))
        return subject, "\n".join(lines)

    async def notify_failure(
        self,
        error: BaseException,
        context: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Send an alert for a failure.

        Returns:
            True when the alert was delivered
        """
        if not self.enabled:
            return False

        subject, body = self.format_alert(error, context)
        try:
            result = await self.channel.deliver(self.recipient, subject, body)
        except Exception as e:
            logger.error(f"Alert channel raised: {e}", exc_info=True)
            return False

        if not result.success:
            logger.warning(f"Alert delivery failed: {result.error}")
            return False

        logger.info(f"Alert sent to {self.recipient}: {subject}")
        return True
