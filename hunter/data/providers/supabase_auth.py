from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from hunter.core.http import auth_client, request_with_retries
from hunter.core.logger import get_logger

log = get_logger("providers.supabase_auth")


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


class AuthError(Exception):
    pass


async def get_user(access_token: str) -> AuthUser:
    """Resolve a user access token via GET /auth/v1/user; raise AuthError when it is rejected."""
    token = (access_token or "").strip()
    if not token:
        raise AuthError("missing access token")
    client = auth_client()
    try:
        resp = await request_with_retries(
            client,
            "GET",
            "/user",
            headers={"Authorization": f"Bearer {token}"},
            retries=2,
        )
    except httpx.RequestError as exc:
        log.warning("auth_lookup_failed err=%s", exc)
        raise AuthError("auth provider unreachable") from exc

    if resp.status_code in (401, 403):
        raise AuthError("invalid or expired token")
    if resp.status_code != 200:
        log.warning("auth_lookup_unexpected status=%s", resp.status_code)
        raise AuthError(f"auth provider returned {resp.status_code}")

    data = resp.json()
    user_id = data.get("id") if isinstance(data, dict) else None
    if not user_id:
        raise AuthError("auth provider returned no user id")
    return AuthUser(id=str(user_id), email=data.get("email"), role=data.get("role"))
