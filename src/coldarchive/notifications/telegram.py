# src/coldarchive/notifications/telegram.py
"""
Telegram notification sink for archive cycles and audits.

Environment variables:
- TELEGRAM_BOT_TOKEN: Bot token from @BotFather
- TELEGRAM_CHAT_ID: Chat ID to send messages to

If not configured, functions gracefully degrade (log, return False).
"""

from __future__ import annotations

import html
import logging
import os
from enum import Enum

import requests

from coldarchive.tracking.cost import human_bytes
from coldarchive.tracking.types import CycleResult

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_EMOJI = {
    AlertSeverity.INFO: "\U0001F535",  # Blue circle
    AlertSeverity.WARNING: "\U0001F7E1",  # Yellow circle
    AlertSeverity.ERROR: "\U0001F534",  # Red circle
}


def is_configured() -> bool:
    """
    Check if Telegram is configured with bot token and chat ID.

    Returns:
        True if both TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are set, False otherwise.
    """
    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    chat_id = os.environ.get("TELEGRAM_CHAT_ID")
    return bool(token and chat_id)


def send_message(text: str, parse_mode: str = "HTML") -> bool:
    """
    Send a message to the configured Telegram chat.

    Args:
        text: Message text to send
        parse_mode: Telegram parse mode (HTML or Markdown), default HTML

    Returns:
        True on success, False on failure or if not configured
    """
    if not is_configured():
        logger.debug("Telegram not configured (missing TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID)")
        return False

    token = os.environ["TELEGRAM_BOT_TOKEN"]
    chat_id = os.environ["TELEGRAM_CHAT_ID"]

    url = f"{TELEGRAM_API}/bot{token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": parse_mode,
    }

    try:
        response = requests.post(url, json=payload, timeout=10)
    except requests.RequestException as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return False

    if response.status_code != 200:
        logger.error(f"Telegram API error: {response.status_code} - {response.text}")
        return False
    logger.debug(f"Telegram message sent: {text[:50]}...")
    return True


def send_alert(title: str, message: str, severity: AlertSeverity = AlertSeverity.INFO) -> bool:
    """Send a titled alert with a severity marker."""
    return send_message(f"{_EMOJI[severity]} <b>{html.escape(title)}</b>\n\n{message}")


def format_cycle(result: CycleResult, total_bytes: int | None = None) -> tuple[str, AlertSeverity]:
    """Build the message body and severity for an archive cycle."""
    if result.failed:
        severity = AlertSeverity.ERROR
    elif result.deletion_failures or result.skipped:
        severity = AlertSeverity.WARNING
    else:
        severity = AlertSeverity.INFO

    lines = [
        f"Archived: {len(result.archived)}",
        f"Local copies removed: {len(result.deleted)}",
        f"Failed: {len(result.failed)}",
        f"Skipped: {len(result.skipped)}",
    ]
    if total_bytes is not None:
        lines.append(f"Size: {human_bytes(total_bytes)}")

    for batch in result.batches:
        if batch.status == "failed":
            lines.append("")
            lines.append(f"<b>{html.escape(batch.staging_root)}</b>: {html.escape(batch.error or '')}")
    if result.deletion_failures:
        lines.append("")
        lines.append(f"Archived but kept locally: {len(result.deletion_failures)}")
    return "\n".join(lines), severity


def notify_cycle(result: CycleResult) -> bool:
    """Notification sink for ArchiveLifecycleController."""
    if result.cancelled or not result.batches:
        return False
    message, severity = format_cycle(result)
    title = "Archive cycle failed" if severity == AlertSeverity.ERROR else "Archive cycle complete"
    return send_alert(title, message, severity=severity)
