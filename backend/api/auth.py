"""
Определение игрока по запросу.

1. Authorization: Bearer <token>, где token = "player_id:expires:hmac" (выдаёт /internal/players).
2. Иначе, если задан AUTH_SERVICE_URL, токен проверяется внешним сервисом: POST {AUTH_SERVICE_URL}/verify,
   ответ {"external_id", "username"}; игрок создаётся при первом обращении.
3. X-Player-Id принимается только при ALLOW_HEADER_AUTH (разработка, доверенный шлюз).
"""
import hashlib
import hmac
import logging
import time
from typing import Optional

import httpx
from fastapi import Header, HTTPException

from config import ALLOW_HEADER_AUTH, AUTH_SERVICE_URL, SESSION_SECRET, SESSION_TTL_SEC
from core.identity import Principal, ensure_player

logger = logging.getLogger(__name__)


def _sign(payload: str) -> str:
    return hmac.new(SESSION_SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()


def issue_token(player_id: int, ttl_sec: Optional[int] = None, now: Optional[float] = None) -> str:
    expires = int((now or time.time()) + (ttl_sec or SESSION_TTL_SEC))
    payload = f"{player_id}:{expires}"
    return f"{payload}:{_sign(payload)}"


def verify_token(token: str, now: Optional[float] = None) -> Optional[int]:
    """player_id из валидного неистёкшего токена, иначе None."""
    parts = token.split(":")
    if len(parts) != 3:
        return None
    player_id, expires, signature = parts
    if not hmac.compare_digest(_sign(f"{player_id}:{expires}"), signature):
        return None
    try:
        if int(expires) < (now or time.time()):
            return None
        return int(player_id)
    except ValueError:
        return None


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def _verify_external(token: str) -> Optional[Principal]:
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            r = await client.post(f"{AUTH_SERVICE_URL}/verify", json={"token": token})
    except httpx.HTTPError as e:
        logger.warning("auth service unreachable: %s", e)
        return None
    if r.status_code != 200:
        return None
    data = r.json()
    external_id = data.get("external_id")
    if not external_id:
        return None
    player_id = await ensure_player(str(external_id), data.get("username"))
    return Principal(player_id=player_id, external_id=str(external_id))


async def principal_from_token(token: str) -> Principal:
    player_id = verify_token(token)
    if player_id is not None:
        return Principal(player_id=player_id)
    if AUTH_SERVICE_URL:
        principal = await _verify_external(token)
        if principal is not None:
            return principal
    raise HTTPException(status_code=401, detail="Invalid or expired token")


async def get_principal(
    authorization: Optional[str] = Header(None),
    x_player_id: Optional[str] = Header(None, alias="X-Player-Id"),
) -> Principal:
    token = _bearer(authorization)
    if token:
        return await principal_from_token(token)
    if ALLOW_HEADER_AUTH and x_player_id:
        try:
            return Principal(player_id=int(x_player_id))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid player id")
    raise HTTPException(status_code=401, detail="Authorization required")


async def require_bearer(authorization: Optional[str] = Header(None)) -> Principal:
    """Только Bearer-токен, без X-Player-Id (ежедневная награда)."""
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Bearer token required")
    return await principal_from_token(token)
