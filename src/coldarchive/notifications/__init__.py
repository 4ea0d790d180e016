"""Notification sinks for archive cycle summaries."""
from coldarchive.notifications.telegram import (
    AlertSeverity,
    format_cycle,
    is_configured,
    notify_cycle,
    send_alert,
    send_message,
)

__all__ = [
    "AlertSeverity",
    "format_cycle",
    "is_configured",
    "notify_cycle",
    "send_alert",
    "send_message",
]
