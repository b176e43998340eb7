"""Operator alerts pushed to an admin LINE chat."""

from typing import Optional

from app.config import settings
from app.errors import ConfigurationError
from app.logging_config import get_logger
from app.services.line_service import LineService

logger = get_logger("alert_service")


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Push an alert to ALERT_LINE_TO.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    if not settings.alert_line_to:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}
    text = f"{emoji.get(level, '📢')} {level}\n\n{message}"
    if context:
        text += "\n\n" + "\n".join(f"  {k}: {v}" for k, v in context.items())

    try:
        return LineService(settings.line_channel_access_token).push_message(settings.alert_line_to, text)
    except ConfigurationError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return send_alert("CRITICAL", message, context)
