"""Operator alerts posted to a Telegram chat."""

import os
from typing import Optional

import httpx

from setter_api.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_MARKERS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}
MAX_CONTEXT_VALUE_CHARS = 300


def _alert_target() -> tuple[Optional[str], Optional[str]]:
    return os.environ.get("ALERT_BOT_TOKEN"), os.environ.get("ALERT_CHAT_ID")


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKERS.get(level, '📢')} *{level}* · setter\n\n{message}"
    if context:
        lines = []
        for key, value in context.items():
            rendered = str(value)
            if len(rendered) > MAX_CONTEXT_VALUE_CHARS:
                rendered = rendered[:MAX_CONTEXT_VALUE_CHARS] + "…"
            lines.append(f"  {key}: {rendered}")
        text += "\n\n```\n" + "\n".join(lines) + "\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict (job id, conversation id, error)

    Returns:
        True if sent successfully. Alerting never raises.
    """
    bot_token, chat_id = _alert_target()
    if not bot_token or not chat_id:
        logger.warning(
            f"Alert not configured: {level} - {message}",
            extra={"context": context or {}},
        )
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                json={"chat_id": chat_id, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
