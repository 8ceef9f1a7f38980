"""Notification module for operator alerts."""

from mediacache.modules.notification.channels import EmailChannel, SmtpConfig
from mediacache.modules.notification.service import AlertNotifier

__all__ = [
    "EmailChannel",
    "SmtpConfig",
    "AlertNotifier",
]
