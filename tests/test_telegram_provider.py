import asyncio

import pytest

from hunter.data.providers import telegram
from hunter.services import alerts


class _Resp:
    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


def test_send_message_retries_on_429(monkeypatch):
    calls = []
    sleeps = []
    payloads = [
        {"ok": False, "error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 2}},
        {"ok": True, "result": {"message_id": 101}},
    ]

    async def fake_request_with_retries(*_args, **kwargs):
        calls.append(kwargs.get("json"))
        return _Resp(payloads.pop(0))

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(telegram, "telegram_client", lambda: object())
    monkeypatch.setattr(telegram, "request_with_retries", fake_request_with_retries)
    monkeypatch.setattr(telegram.asyncio, "sleep", fake_sleep)

    result = asyncio.run(telegram.send_message(-1001, "cascade failed"))

    assert result == 101
    assert len(calls) == 2
    assert "parse_mode" not in calls[0]
    assert sleeps == [2.0]


def test_send_message_raises_on_non_retryable(monkeypatch):
    async def fake_request_with_retries(*_args, **_kwargs):
        return _Resp({"ok": False, "error_code": 400, "description": "chat not found"})

    monkeypatch.setattr(telegram, "telegram_client", lambda: object())
    monkeypatch.setattr(telegram, "request_with_retries", fake_request_with_retries)

    with pytest.raises(RuntimeError, match="chat not found"):
        asyncio.run(telegram.send_message(-1001, "hello"))


def test_notify_admin_skips_without_config(monkeypatch):
    monkeypatch.setattr(alerts.settings, "telegram_bot_token", "")
    monkeypatch.setattr(alerts.settings, "telegram_admin_chat_id", "")

    async def boom(*_args, **_kwargs):
        raise AssertionError("must not send")

    monkeypatch.setattr(alerts.telegram, "send_message", boom)
    assert asyncio.run(alerts.notify_admin("x")) is False


def test_notify_admin_swallows_send_errors(monkeypatch):
    monkeypatch.setattr(alerts.settings, "telegram_bot_token", "123:abc")
    monkeypatch.setattr(alerts.settings, "telegram_admin_chat_id", "-1001")
    sent = []

    async def failing(chat_id, text):
        sent.append((chat_id, text))
        raise RuntimeError("telegram down")

    monkeypatch.setattr(alerts.telegram, "send_message", failing)
    assert asyncio.run(alerts.notify_admin("cascade failed")) is False
    assert sent == [(-1001, "cascade failed")]
