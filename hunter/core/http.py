import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from .config import settings

_DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
_auth_client: httpx.AsyncClient | None = None
_telegram_client: httpx.AsyncClient | None = None
_auth_base: str | None = None
_telegram_token: str | None = None


def _http_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=10)


def auth_client() -> httpx.AsyncClient:
    global _auth_client, _auth_base
    base = (settings.supabase_url or "").strip().rstrip("/")
    if not base:
        raise RuntimeError("SUPABASE_URL is not configured")
    if _auth_client is None or _auth_client.is_closed or _auth_base != base:
        _auth_base = base
        _auth_client = httpx.AsyncClient(
            base_url=f"{base}/auth/v1",
            headers={"apikey": settings.supabase_anon_key},
            timeout=httpx.Timeout(float(settings.auth_timeout_seconds or 10.0)),
            limits=_http_limits(),
        )
    return _auth_client


def telegram_client() -> httpx.AsyncClient:
    global _telegram_client, _telegram_token
    token = (settings.telegram_bot_token or "").strip()
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured")
    if _telegram_client is None or _telegram_client.is_closed or _telegram_token != token:
        _telegram_token = token
        _telegram_client = httpx.AsyncClient(
            base_url=f"https://api.telegram.org/bot{token}",
            timeout=httpx.Timeout(20.0),
            limits=_http_limits(),
        )
    return _telegram_client


async def init_http_clients() -> None:
    if settings.auth_configured:
        auth_client()
    if settings.telegram_bot_token:
        telegram_client()


async def close_http_clients() -> None:
    global _auth_client, _telegram_client, _auth_base, _telegram_token
    if _auth_client is not None and not _auth_client.is_closed:
        await _auth_client.aclose()
    if _telegram_client is not None and not _telegram_client.is_closed:
        await _telegram_client.aclose()
    _auth_client = None
    _telegram_client = None
    _auth_base = None
    _telegram_token = None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())
    except Exception:
        return None


def _backoff_delay(attempt: int, base: float, cap: float, retry_after: float | None) -> float:
    delay = min(cap, base * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    retries: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    retry_statuses: set[int] | None = None,
    retry_exceptions: tuple[type[BaseException], ...] = (httpx.RequestError,),
    _sleep=asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    statuses = retry_statuses or _DEFAULT_RETRY_STATUSES
    for attempt in range(retries + 1):
        try:
            response = await client.request(method, url, params=params, **kwargs)
        except retry_exceptions:
            if attempt >= retries:
                raise
            await _sleep(_backoff_delay(attempt, backoff_base, backoff_max, None))
            continue

        if response.status_code in statuses:
            if attempt >= retries:
                return response
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            await response.aclose()
            await _sleep(_backoff_delay(attempt, backoff_base, backoff_max, retry_after))
            continue
        return response

    raise RuntimeError("request_with_retries: exhausted retries")
