from .base import AlertPayload, LoggingSink, NotificationSink, format_alert_html
from .telegram import AlertConfig, TelegramSink

__all__ = [
    "AlertPayload",
    "AlertConfig",
    "LoggingSink",
    "NotificationSink",
    "TelegramSink",
    "format_alert_html",
]
