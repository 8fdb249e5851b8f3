"""
Друзья и соседи: заявки, список, визит в чужой город и помощь другу.

Дружба хранится двумя строками (по одной в каждую сторону), поэтому список
друзей игрока читается по одному player_id. Помощь другу пишет friend_help,
засчитывается в help_count и ставит уведомление friend_help в очередь.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

import asyncpg

from config import get_friends_config
from core.errors import AlreadyDone, InsufficientResource, InvalidState, NotFound, Unauthorized
from core.ledger import lock_players, remove_items
from core.monetization import speed_up_target
from core.notifications import queue_notification
from core.progression import award_crystals, check_achievements, grant_xp
from core.town import town_view
from infrastructure.database import from_json, transaction

logger = logging.getLogger(__name__)


async def _relation(conn: asyncpg.Connection, player_id: int, friend_id: int):
    return await conn.fetchrow(
        "SELECT status, requested_by FROM friends WHERE player_id = $1 AND friend_id = $2", player_id, friend_id,
    )


async def _require_friend(conn: asyncpg.Connection, player_id: int, friend_id: int) -> None:
    rel = await _relation(conn, player_id, friend_id)
    if rel is None or rel["status"] != "accepted":
        raise Unauthorized("You are not friends with this player", code="not_friends")


async def _check_help_limit(conn: asyncpg.Connection, helper_id: int, helped_id: int) -> int:
    """Сколько раз ещё можно помочь этому другу сегодня (UTC)."""
    limit = int(get_friends_config()["daily_help_limit"])
    used = await conn.fetchval(
        """SELECT COUNT(*) FROM friend_help
           WHERE helper_id = $1 AND helped_id = $2
             AND (created_at AT TIME ZONE 'UTC')::date = (NOW() AT TIME ZONE 'UTC')::date""",
        helper_id, helped_id,
    )
    if used >= limit:
        raise InsufficientResource("Daily help limit for this friend reached", code="help_limit_reached", limit=limit)
    return limit - used - 1


async def _record_help(conn: asyncpg.Connection, helper_id: int, helped_id: int, help_type: str,
                       target: str) -> List[Dict[str, Any]]:
    await conn.execute(
        "INSERT INTO friend_help (helper_id, helped_id, help_type, target) VALUES ($1, $2, $3, $4)",
        helper_id, helped_id, help_type, target,
    )
    await queue_notification(conn, helped_id, "friend_help",
                             {"helper_id": helper_id, "help_type": help_type, "target": target})
    return await check_achievements(conn, helper_id, "help_count", 1)


# ——— Заявки ———

async def send_friend_request(principal, friend_id: int) -> Dict[str, Any]:
    me = principal.player_id
    if friend_id == me:
        raise InvalidState("Cannot befriend yourself", code="self_friend")
    async with transaction() as conn:
        await lock_players(conn, (me, friend_id))
        if await _relation(conn, me, friend_id) is not None:
            raise AlreadyDone("Friend request already exists or already friends", code="friend_exists")
        count = await conn.fetchval("SELECT COUNT(*) FROM friends WHERE player_id = $1", me)
        if count >= int(get_friends_config()["max_friends"]):
            raise InsufficientResource("Friend list is full", code="friends_full")
        await conn.executemany(
            """INSERT INTO friends (player_id, friend_id, status, requested_by)
               VALUES ($1, $2, 'pending', $3)""",
            [(me, friend_id, me), (friend_id, me, me)],
        )
    return {"success": True, "friend_id": friend_id, "status": "pending"}


async def accept_friend_request(principal, friend_id: int) -> Dict[str, Any]:
    me = principal.player_id
    async with transaction() as conn:
        rel = await _relation(conn, me, friend_id)
        if rel is None or rel["status"] != "pending" or rel["requested_by"] == me:
            raise NotFound("No pending friend request from this player", code="friend_request_not_found")
        await conn.execute(
            """UPDATE friends SET status = 'accepted', accepted_at = NOW()
               WHERE (player_id = $1 AND friend_id = $2) OR (player_id = $2 AND friend_id = $1)""",
            me, friend_id,
        )
    return {"success": True, "friend_id": friend_id, "status": "accepted"}


async def remove_friend(principal, friend_id: int) -> Dict[str, Any]:
    """Удалить друга, отклонить входящую или отозвать исходящую заявку."""
    me = principal.player_id
    async with transaction() as conn:
        removed = await conn.fetch(
            """DELETE FROM friends
               WHERE (player_id = $1 AND friend_id = $2) OR (player_id = $2 AND friend_id = $1)
               RETURNING player_id""",
            me, friend_id,
        )
    if not removed:
        raise NotFound("Not a friend", code="friend_not_found")
    return {"success": True, "friend_id": friend_id}


async def list_friends(principal) -> Dict[str, List[Dict[str, Any]]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT f.friend_id, f.status, f.requested_by, f.created_at, f.accepted_at,
                      p.username, p.level
               FROM friends f JOIN players p ON p.id = f.friend_id
               WHERE f.player_id = $1
               ORDER BY f.accepted_at DESC NULLS LAST, f.created_at DESC""",
            principal.player_id,
        )
    result: Dict[str, List[Dict[str, Any]]] = {"friends": [], "incoming": [], "outgoing": []}
    for r in rows:
        entry = {"player_id": r["friend_id"], "username": r["username"], "level": r["level"],
                 "since": r["accepted_at"] or r["created_at"]}
        if r["status"] == "accepted":
            result["friends"].append(entry)
        elif r["requested_by"] == principal.player_id:
            result["outgoing"].append(entry)
        else:
            result["incoming"].append(entry)
    return result


# ——— Визит и помощь ———

async def visit_friend_town(principal, friend_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await _require_friend(conn, principal.player_id, friend_id)
        town = await town_view(conn, friend_id)
        friend = await conn.fetchrow("SELECT username, level FROM players WHERE id = $1", friend_id)
    return {"friend_id": friend_id, "username": friend["username"], "level": friend["level"], **town}


async def help_speed_production(principal, friend_id: int, factory_type: str, slot: int) -> Dict[str, Any]:
    me = principal.player_id
    minutes = int(get_friends_config()["help_speed_up_minutes"])
    async with transaction() as conn:
        await lock_players(conn, (me, friend_id))
        await _require_friend(conn, me, friend_id)
        remaining = await _check_help_limit(conn, me, friend_id)
        ready = await speed_up_target(conn, friend_id, "factory", minutes, factory_type, slot)
        achievements = await _record_help(conn, me, friend_id, "speed_production", f"{factory_type}:{slot}")
    logger.info("player %s sped up %s slot %s of friend %s", me, factory_type, slot, friend_id)
    return {"success": True, "friend_id": friend_id, "minutes": minutes, "finishes_at": ready,
            "helps_remaining": remaining, "achievements_completed": achievements}


async def help_fill_order(principal, friend_id: int, order_id: int) -> Dict[str, Any]:
    """Помощник платит товарами, награду заказа получает владелец."""
    me = principal.player_id
    async with transaction() as conn:
        await lock_players(conn, (me, friend_id))
        await _require_friend(conn, me, friend_id)
        remaining = await _check_help_limit(conn, me, friend_id)
        order = await conn.fetchrow(
            "SELECT * FROM skyport_orders WHERE id = $1 AND player_id = $2 FOR UPDATE", order_id, friend_id,
        )
        if order is None:
            raise NotFound("Order not found", code="order_not_found")
        if order["completed_at"] is not None:
            raise InvalidState("Order already fulfilled", code="order_completed")
        if order["expires_at"] <= datetime.now(timezone.utc):
            raise InvalidState("Order has expired", code="order_expired")
        requirements = {int(i): int(q) for i, q in from_json(order["requirements"]).items()}
        await remove_items(conn, me, requirements)
        rewards = from_json(order["rewards"])
        await award_crystals(conn, friend_id, int(rewards.get("crystals", 0)))
        await grant_xp(conn, friend_id, int(rewards.get("xp", 0)))
        await conn.execute("UPDATE skyport_orders SET completed_at = NOW() WHERE id = $1", order_id)
        achievements = await _record_help(conn, me, friend_id, "fill_order", str(order_id))
    logger.info("player %s filled order %s for friend %s", me, order_id, friend_id)
    return {"success": True, "friend_id": friend_id, "order_id": order_id, "helps_remaining": remaining,
            "achievements_completed": achievements}
