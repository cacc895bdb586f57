from __future__ import annotations

import asyncio
import json

from hunter.core.http import request_with_retries, telegram_client

_TELEGRAM_RETRYABLE_CODES = {429, 500, 502, 503, 504}
_TELEGRAM_MAX_RETRIES = 3
_TELEGRAM_BACKOFF_BASE = 0.6
_TELEGRAM_BACKOFF_CAP = 8.0
TELEGRAM_MAX_TEXT = 4096


def _payload_retry_after(data: dict) -> float | None:
    raw = ((data or {}).get("parameters") or {}).get("retry_after")
    if raw is None:
        return None
    try:
        retry_after = float(raw)
    except (TypeError, ValueError):
        return None
    return retry_after if retry_after > 0 else None


def _backoff_delay(attempt: int, *, retry_after: float | None) -> float:
    delay = min(_TELEGRAM_BACKOFF_CAP, _TELEGRAM_BACKOFF_BASE * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


async def send_message(chat_id: int, text: str, *, parse_mode: str | None = None) -> int:
    client = telegram_client()
    payload = {
        "chat_id": chat_id,
        "text": text[:TELEGRAM_MAX_TEXT],
        "disable_web_page_preview": True,
    }
    if parse_mode:
        payload["parse_mode"] = parse_mode
    for attempt in range(_TELEGRAM_MAX_RETRIES + 1):
        resp = await request_with_retries(client, "POST", "/sendMessage", json=payload)
        data = resp.json()
        if isinstance(data, dict) and data.get("ok"):
            msg_id = (data.get("result") or {}).get("message_id")
            if not msg_id:
                raise RuntimeError("Telegram sendMessage missing message_id")
            return int(msg_id)

        code = int((data or {}).get("error_code") or 0) if isinstance(data, dict) else 0
        retry_after = _payload_retry_after(data if isinstance(data, dict) else {})
        if code in _TELEGRAM_RETRYABLE_CODES and attempt < _TELEGRAM_MAX_RETRIES:
            await asyncio.sleep(_backoff_delay(attempt, retry_after=retry_after))
            continue
        raise RuntimeError(f"Telegram sendMessage failed: {json.dumps(data)[:500]}")
    raise RuntimeError("Telegram sendMessage failed: exhausted retries")
