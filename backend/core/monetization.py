"""
Эфир (премиум-валюта), премиум-магазин, бусты, ускорения и просмотры рекламы.
Сама реклама показывается и проверяется снаружи; здесь только учёт с лимитом в час.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from config import get_ads_config
from core import catalog
from core.errors import InsufficientResource, InvalidState, NotFound
from core.ledger import change_aether, debit_crystals, lock_player
from core.progression import award_crystals
from infrastructure.database import get_setting, transaction

logger = logging.getLogger(__name__)

SPEED_UP_TARGETS = ("farm", "factory", "armory", "zoo")


async def ad_limit(conn: asyncpg.Connection, category: str) -> int:
    cfg = get_ads_config()
    if category == "mining":
        return int(await get_setting("ads.mining_hourly_limit", cfg["mining_hourly_limit"], conn=conn))
    return int(await get_setting("ads.hourly_limit", cfg["hourly_limit"], conn=conn))


async def _watches_last_hour(conn: asyncpg.Connection, player_id: int, category: str) -> int:
    return int(await conn.fetchval(
        """SELECT COUNT(*) FROM ad_watches
           WHERE player_id = $1 AND category = $2 AND watched_at > NOW() - INTERVAL '1 hour'""",
        player_id, category,
    ))


async def record_ad_watch(conn: asyncpg.Connection, player_id: int, category: str, target: Optional[str] = None) -> int:
    """Записать просмотр; InsufficientResource при исчерпанном лимите. Возвращает остаток на час."""
    await lock_player(conn, player_id)
    limit = await ad_limit(conn, category)
    watched = await _watches_last_hour(conn, player_id, category)
    if watched >= limit:
        raise InsufficientResource("Hourly ad limit reached", code="ad_limit_reached", limit=limit)
    await conn.execute(
        "INSERT INTO ad_watches (player_id, category, target) VALUES ($1, $2, $3)", player_id, category, target,
    )
    return limit - watched - 1


async def ad_status(principal, category: str = "generic") -> Dict[str, Any]:
    async with transaction() as conn:
        limit = await ad_limit(conn, category)
        watched = await _watches_last_hour(conn, principal.player_id, category)
    return {"category": category, "limit": limit, "watched_last_hour": watched, "remaining": max(0, limit - watched)}


# ——— Ускорения ———

async def speed_up_target(conn: asyncpg.Connection, player_id: int, target: str, minutes: int,
                          ref: Optional[str] = None, slot: Optional[int] = None) -> datetime:
    """Подтянуть время готовности к текущему моменту на minutes (но не раньше NOW())."""
    if target == "farm":
        ready = await conn.fetchval(
            """UPDATE farm_plots SET ready_at = GREATEST(ready_at - $3 * INTERVAL '1 minute', NOW())
               WHERE player_id = $1 AND plot_index = $2 AND crop_key IS NOT NULL RETURNING ready_at""",
            player_id, slot, minutes,
        )
    elif target == "factory":
        ready = await conn.fetchval(
            """UPDATE factory_queue SET finishes_at = GREATEST(finishes_at - $4 * INTERVAL '1 minute', NOW())
               WHERE player_id = $1 AND factory_type = $2 AND slot = $3 RETURNING finishes_at""",
            player_id, ref, slot, minutes,
        )
    elif target == "armory":
        ready = await conn.fetchval(
            """UPDATE armory_queue SET finishes_at = GREATEST(finishes_at - $4 * INTERVAL '1 minute', NOW())
               WHERE player_id = $1 AND armory_type = $2 AND slot = $3 RETURNING finishes_at""",
            player_id, ref or "basic_forge", slot, minutes,
        )
    elif target == "zoo":
        enclosure_id = int(ref or 0)
        if slot is None:
            ready = await conn.fetchval(
                """UPDATE enclosures SET breeding_ends_at = GREATEST(breeding_ends_at - $3 * INTERVAL '1 minute', NOW())
                   WHERE id = $1 AND player_id = $2 AND breeding_ends_at IS NOT NULL RETURNING breeding_ends_at""",
                enclosure_id, player_id, minutes,
            )
        else:
            row = await conn.fetchrow(
                """SELECT a.animal_type_id FROM enclosure_animals a JOIN enclosures e ON e.id = a.enclosure_id
                   WHERE a.enclosure_id = $1 AND e.player_id = $2 AND a.slot = $3 FOR UPDATE OF a""",
                enclosure_id, player_id, slot,
            )
            if row is None:
                raise NotFound("Nothing to speed up", code="speed_up_target_not_found")
            interval = catalog.ANIMALS_BY_ID[row["animal_type_id"]]["interval_minutes"]
            ready = await conn.fetchval(
                """UPDATE enclosure_animals
                   SET last_collected_at = GREATEST(last_collected_at - $3 * INTERVAL '1 minute',
                                                    NOW() - $4 * INTERVAL '1 minute')
                   WHERE enclosure_id = $1 AND slot = $2
                   RETURNING last_collected_at + $4 * INTERVAL '1 minute'""",
                enclosure_id, slot, minutes, interval,
            )
    else:
        raise InvalidState("Unknown speed-up target", code="invalid_target")
    if ready is None:
        raise NotFound("Nothing to speed up", code="speed_up_target_not_found")
    return ready


async def apply_speed_up(principal, target: str, minutes: int, ref: Optional[str] = None,
                         slot: Optional[int] = None) -> Dict[str, Any]:
    """Потратить накопленные минуты ускорения (из премиум-магазина)."""
    if minutes <= 0:
        raise InvalidState("Minutes must be positive", code="invalid_amount")
    async with transaction() as conn:
        left = await conn.fetchval(
            """UPDATE players SET speed_up_minutes = speed_up_minutes - $2
               WHERE id = $1 AND speed_up_minutes >= $2 RETURNING speed_up_minutes""",
            principal.player_id, minutes,
        )
        if left is None:
            raise InsufficientResource("Not enough speed-up minutes", code="insufficient_speed_up")
        ready = await speed_up_target(conn, principal.player_id, target, minutes, ref, slot)
    return {"success": True, "ready_at": ready, "speed_up_minutes_left": int(left)}


async def watch_ad_speed_up(principal, target: str, ref: Optional[str] = None, slot: Optional[int] = None) -> Dict[str, Any]:
    if target not in SPEED_UP_TARGETS:
        raise InvalidState("Unknown speed-up target", code="invalid_target")
    minutes = int(get_ads_config()["speed_up_minutes"])
    async with transaction() as conn:
        remaining = await record_ad_watch(conn, principal.player_id, "generic", target)
        ready = await speed_up_target(conn, principal.player_id, target, minutes, ref, slot)
    return {"success": True, "minutes": minutes, "ready_at": ready, "ads_remaining": remaining}


# ——— Бусты ———

async def activate_boost(conn: asyncpg.Connection, player_id: int, boost_type: str, multiplier: float,
                         hours: float) -> datetime:
    """Одна строка на (игрок, тип); активный буст того же типа продлевается."""
    return await conn.fetchval(
        """INSERT INTO active_boosts (player_id, boost_type, multiplier, expires_at)
           VALUES ($1, $2, $3, NOW() + $4 * INTERVAL '1 hour')
           ON CONFLICT (player_id, boost_type) DO UPDATE SET
             multiplier = EXCLUDED.multiplier,
             expires_at = GREATEST(active_boosts.expires_at, NOW()) + $4 * INTERVAL '1 hour'
           RETURNING expires_at""",
        player_id, boost_type, multiplier, hours,
    )


async def get_active_boosts(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT boost_type, multiplier, expires_at FROM active_boosts
               WHERE player_id = $1 AND expires_at > NOW() ORDER BY boost_type""",
            principal.player_id,
        )
    return [{"boost_type": r["boost_type"], "multiplier": float(r["multiplier"]), "expires_at": r["expires_at"]}
            for r in rows]


# ——— Эфир и магазин ———

async def award_aether(player_id: int, amount: int, reason: str) -> Dict[str, Any]:
    if amount == 0:
        raise InvalidState("Amount must be non-zero", code="invalid_amount")
    async with transaction() as conn:
        await lock_player(conn, player_id)
        balance = await change_aether(conn, player_id, amount, reason)
    logger.info("aether %+d for player %s (%s)", amount, player_id, reason)
    return {"success": True, "player_id": player_id, "amount": amount, "new_aether_balance": balance}


async def aether_history(principal, limit: int = 50) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT amount, reason, balance_after, created_at FROM aether_transactions
               WHERE player_id = $1 ORDER BY created_at DESC, id DESC LIMIT $2""",
            principal.player_id, limit,
        )
    return [dict(r) for r in rows]


def list_premium_shop() -> List[Dict[str, Any]]:
    return list(catalog.PREMIUM_SHOP.values())


async def owned_premium_decorations(principal) -> Dict[str, int]:
    async with transaction() as conn:
        rows = await conn.fetch(
            "SELECT decoration_type, quantity FROM premium_decorations WHERE player_id = $1 AND quantity > 0",
            principal.player_id,
        )
    return {r["decoration_type"]: int(r["quantity"]) for r in rows}


async def purchase_premium_item(principal, item_key: str, use_aether: bool = True) -> Dict[str, Any]:
    item = catalog.PREMIUM_SHOP.get(item_key)
    if item is None:
        raise NotFound("Unknown shop item", code="shop_item_not_found")
    meta = item["metadata"]
    result: Dict[str, Any] = {"success": True, "item": item_key}
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        if use_aether:
            result["new_aether_balance"] = await change_aether(
                conn, principal.player_id, -item["cost_aether"], f"purchase:{item_key}",
            )
        else:
            if item["cost_crystals"] <= 0:
                raise InvalidState("Item cannot be bought with crystals", code="crystals_not_accepted")
            result["new_crystal_balance"] = await debit_crystals(conn, principal.player_id, item["cost_crystals"])

        kind = item["item_type"]
        if kind == "speed_up":
            result["speed_up_minutes"] = await _bank_minutes(conn, principal.player_id, meta["minutes"])
        elif kind == "boost":
            result["boost_expires_at"] = await activate_boost(
                conn, principal.player_id, meta["boost_type"], meta["multiplier"], meta["duration_hours"],
            )
        elif kind == "decoration":
            result["owned"] = await conn.fetchval(
                """INSERT INTO premium_decorations (player_id, decoration_type, quantity) VALUES ($1, $2, 1)
                   ON CONFLICT (player_id, decoration_type)
                   DO UPDATE SET quantity = premium_decorations.quantity + 1 RETURNING quantity""",
                principal.player_id, meta["decoration_type"],
            )
        elif kind == "bundle":
            for part in meta["items"]:
                if part["type"] == "crystals":
                    result["new_crystal_balance"] = await award_crystals(conn, principal.player_id, part["amount"])
                elif part["type"] == "speed_up":
                    result["speed_up_minutes"] = await _bank_minutes(conn, principal.player_id, part["minutes"])
    logger.info("player %s bought %s", principal.player_id, item_key)
    return result


async def _bank_minutes(conn: asyncpg.Connection, player_id: int, minutes: int) -> int:
    return int(await conn.fetchval(
        "UPDATE players SET speed_up_minutes = speed_up_minutes + $2 WHERE id = $1 RETURNING speed_up_minutes",
        player_id, minutes,
    ))
