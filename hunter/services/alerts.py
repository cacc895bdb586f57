from __future__ import annotations

from hunter.core.config import settings
from hunter.core.logger import get_logger
from hunter.data.providers import telegram

log = get_logger("services.alerts")


async def notify_admin(text: str) -> bool:
    """Push a plain-text alert to the admin Telegram chat. Never raises."""
    chat_id = settings.telegram_admin_chat
    if chat_id is None or not (settings.telegram_bot_token or "").strip():
        log.info("admin_alert_skipped reason=telegram_not_configured")
        return False
    try:
        await telegram.send_message(chat_id, text)
    except Exception:
        log.exception("admin_alert_failed")
        return False
    return True
