"""
Внутренние эндпоинты для соседних сервисов (шлюз авторизации, планировщик, push-воркер).
Доступ по заголовку X-Internal-Secret (INTERNAL_API_SECRET).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request

from api.auth import issue_token
from api.limits import limiter
from api.schemas import PlayerEnsureBody
from config import API_RATE_LIMIT_STRICT, INTERNAL_API_SECRET
from core import economy, notifications, progression
from core.identity import ensure_player

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/internal", tags=["internal"])


def _check_internal(x_internal_secret: Optional[str]) -> None:
    if not INTERNAL_API_SECRET or x_internal_secret != INTERNAL_API_SECRET:
        raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/players")
@limiter.limit(API_RATE_LIMIT_STRICT)
async def internal_ensure_player(
    request: Request,
    body: PlayerEnsureBody,
    x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret"),
):
    """
    player_id по внешнему идентификатору; игрок (с фермой, ратушей, инструментом) создаётся при первом обращении.
    Возвращает и сессионный токен для Authorization: Bearer.
    """
    _check_internal(x_internal_secret)
    player_id = await ensure_player(body.external_id, body.username)
    return {"player_id": player_id, "token": issue_token(player_id)}


@router.post("/quests/daily")
async def internal_daily_quests(x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret")):
    """Выдать ежедневные квесты всем игрокам (раз в сутки из планировщика)."""
    _check_internal(x_internal_secret)
    players = await progression.generate_daily_quests_all()
    logger.info("daily quests generated for %s players", players)
    return {"ok": True, "players": players}


@router.post("/market/expire")
async def internal_expire_listings(x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret")):
    """Вернуть продавцам товар из истёкших лотов."""
    _check_internal(x_internal_secret)
    return {"ok": True, "reclaimed": await economy.reclaim_expired_listings()}


@router.get("/notifications/{player_id}/{category}")
async def internal_subscriptions(
    player_id: int,
    category: str,
    x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret"),
):
    """Подписки игрока для доставки push; пусто, если категория у игрока выключена."""
    _check_internal(x_internal_secret)
    return await notifications.list_subscriptions(player_id, category)


@router.post("/notifications/pull")
async def internal_pull_notifications(
    limit: int = 100,
    x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret"),
):
    """Недоставленные события (friend_help, coven_task_complete, ...); каждое выдаётся один раз."""
    _check_internal(x_internal_secret)
    return {"events": await notifications.pull_notification_events(min(max(limit, 1), 500))}
