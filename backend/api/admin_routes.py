"""
Админ API: настройки игры (game_settings), регаты, начисление эфира.
Доступ по заголовку X-Admin-Key (ADMIN_API_KEY); пустой ключ закрывает раздел целиком.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from api.schemas import AetherAwardBody, RegattaCreateBody, RegattaStatusBody, SettingBody
from config import ADMIN_API_KEY
from core import monetization, regatta
from infrastructure.database import get_all_settings, get_setting, get_settings_defaults, set_setting

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])


def _require_admin(x_admin_key: Optional[str]) -> None:
    if not ADMIN_API_KEY or not x_admin_key or not hmac.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(status_code=403, detail="Admin only")


# ——— Настройки ———

@router.get("/settings")
async def admin_settings(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    """Текущие настройки поверх значений по умолчанию."""
    _require_admin(x_admin_key)
    return {**get_settings_defaults(), **await get_all_settings()}


@router.get("/settings/defaults")
async def admin_settings_defaults(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    _require_admin(x_admin_key)
    return get_settings_defaults()


@router.put("/settings/{key}")
async def admin_set_setting(key: str, body: SettingBody,
                            x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    _require_admin(x_admin_key)
    if key not in get_settings_defaults():
        raise HTTPException(status_code=404, detail="Unknown setting")
    await set_setting(key, body.value)
    logger.info("admin: setting %s = %r", key, body.value)
    return {"ok": True, "key": key, "value": await get_setting(key)}


# ——— Регаты ———

@router.post("/regattas")
async def admin_create_regatta(body: RegattaCreateBody,
                               x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    _require_admin(x_admin_key)
    return await regatta.create_regatta(body.name, body.start_date, body.end_date, body.tasks, body.rewards,
                                        body.status)


@router.post("/regattas/weekly")
async def admin_create_weekly_regatta(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    """Регата на следующую неделю (понедельник 00:00 UTC) со стандартными заданиями."""
    _require_admin(x_admin_key)
    return await regatta.create_weekly_regatta()


@router.post("/regattas/{regatta_id}/status")
async def admin_regatta_status(regatta_id: int, body: RegattaStatusBody,
                               x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    _require_admin(x_admin_key)
    return await regatta.set_regatta_status(regatta_id, body.status)


# ——— Эфир ———

@router.post("/aether")
async def admin_award_aether(body: AetherAwardBody,
                             x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    """Начисление (или списание при amount < 0) эфира с записью в журнал."""
    _require_admin(x_admin_key)
    return await monetization.award_aether(body.player_id, body.amount, body.reason)
