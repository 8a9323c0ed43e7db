"""Operator alerts delivered to a Telegram chat.

Alerts never raise: an unconfigured bot or a Telegram outage is logged and
reported as ``False`` so the conversation flow that triggered it carries on.
"""

import asyncio
from typing import Any, Callable, Optional

import httpx

from kahani.config import Settings, settings as default_settings
from kahani.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_API = "https://api.telegram.org"
ALERT_TIMEOUT_SECONDS = 10
MAX_CONTEXT_VALUE_LENGTH = 300

LEVEL_ICONS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict[str, Any]] = None) -> str:
    text = f"{LEVEL_ICONS.get(level, '📢')} *{level}* · Kahani\n\n{message}"
    if context:
        lines = []
        for key, value in context.items():
            value = str(value)
            if len(value) > MAX_CONTEXT_VALUE_LENGTH:
                value = value[:MAX_CONTEXT_VALUE_LENGTH] + "…"
            lines.append(f"  {key}: {value}")
        text += "\n\n```\n" + "\n".join(lines) + "\n```"
    return text


def send_alert(
    level: str,
    message: str,
    context: Optional[dict[str, Any]] = None,
    config: Optional[Settings] = None,
) -> bool:
    """Send an alert to the operators' Telegram chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional key/value details, rendered as a code block

    Returns:
        True if Telegram accepted the message
    """
    config = config or default_settings
    if not config.alert_bot_token or not config.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    try:
        with httpx.Client(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{TELEGRAM_API}/bot{config.alert_bot_token}/sendMessage",
                json={
                    "chat_id": config.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}", extra={"context": {"level": level}})
        return False

    if response.status_code != 200:
        logger.error(
            "Telegram rejected alert",
            extra={"context": {"level": level, "status_code": response.status_code}},
        )
        return False
    return True


def alert_warning(message: str, context: Optional[dict[str, Any]] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_error(message: str, context: Optional[dict[str, Any]] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict[str, Any]] = None) -> bool:
    return send_alert("CRITICAL", message, context)


def alert_message_dropped(recipient: Optional[str], message_id: str, code: Optional[int], reason: Optional[str]) -> bool:
    """WhatsApp refused to deliver one of our messages (e.g. ecosystem-health drop)."""
    return send_alert(
        "ERROR",
        f"Message dropped by WhatsApp for {recipient or 'unknown recipient'}",
        {"message_id": message_id, "code": code, "reason": reason or "-"},
    )


async def alert_async(alert: Callable[..., bool], *args: Any) -> bool:
    """Run one of the blocking alert helpers in a worker thread.

    Async callers use this so a slow Telegram only delays the task that
    raised the alert, never the event loop.
    """
    return await asyncio.to_thread(alert, *args)
