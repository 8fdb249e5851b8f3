"""
Реестр push-подписок и настроек уведомлений. Саму доставку делает внешний воркер,
который забирает события и подписки через /internal.
"""
from typing import Any, Dict, List, Optional

import asyncpg

from core.errors import InvalidState, NotFound
from infrastructure.database import from_json, to_json, transaction

CATEGORIES = (
    "crops_ready", "factory_complete", "orders_expiring",
    "quest_available", "friend_help", "coven_task_complete",
)


async def register_subscription(principal, endpoint: str, p256dh: str, auth: str,
                                device_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    async with transaction() as conn:
        sub_id = await conn.fetchval(
            """INSERT INTO push_subscriptions (player_id, endpoint, p256dh, auth, device_info)
               VALUES ($1, $2, $3, $4, $5::jsonb)
               ON CONFLICT (endpoint) DO UPDATE SET
                 player_id = EXCLUDED.player_id, p256dh = EXCLUDED.p256dh, auth = EXCLUDED.auth,
                 device_info = EXCLUDED.device_info, updated_at = NOW()
               RETURNING id""",
            principal.player_id, endpoint, p256dh, auth, to_json(device_info or {}),
        )
    return {"success": True, "subscription_id": sub_id}


async def unregister_subscription(principal, endpoint: str) -> Dict[str, Any]:
    async with transaction() as conn:
        removed = await conn.fetchval(
            "DELETE FROM push_subscriptions WHERE endpoint = $1 AND player_id = $2 RETURNING id",
            endpoint, principal.player_id,
        )
    if removed is None:
        raise NotFound("Subscription not found", code="subscription_not_found")
    return {"success": True}


async def get_preferences(principal) -> Dict[str, bool]:
    async with transaction() as conn:
        row = await conn.fetchrow(
            """INSERT INTO notification_preferences (player_id) VALUES ($1)
               ON CONFLICT (player_id) DO UPDATE SET player_id = EXCLUDED.player_id
               RETURNING *""",
            principal.player_id,
        )
    return {c: bool(row[c]) for c in CATEGORIES}


async def update_preferences(principal, changes: Dict[str, bool]) -> Dict[str, bool]:
    unknown = set(changes) - set(CATEGORIES)
    if unknown:
        raise InvalidState(f"Unknown categories: {', '.join(sorted(unknown))}", code="invalid_category")
    current = await get_preferences(principal)
    current.update({k: bool(v) for k, v in changes.items()})
    assignments = ", ".join(f"{c} = ${i + 2}" for i, c in enumerate(CATEGORIES))
    async with transaction() as conn:
        await conn.execute(
            f"UPDATE notification_preferences SET {assignments}, updated_at = NOW() WHERE player_id = $1",
            principal.player_id, *[current[c] for c in CATEGORIES],
        )
    return current


async def list_subscriptions(player_id: int, category: str) -> List[Dict[str, Any]]:
    """Подписки игрока для доставки; пусто, если категория выключена."""
    if category not in CATEGORIES:
        raise InvalidState("Unknown category", code="invalid_category")
    async with transaction() as conn:
        rows = await conn.fetch(
            f"""SELECT s.endpoint, s.p256dh, s.auth FROM push_subscriptions s
                LEFT JOIN notification_preferences p ON p.player_id = s.player_id
                WHERE s.player_id = $1 AND COALESCE(p.{category}, TRUE)
                ORDER BY s.id""",
            player_id,
        )
    return [dict(r) for r in rows]


# ——— Очередь событий для воркера доставки ———

async def queue_notification(conn: asyncpg.Connection, player_id: int, category: str,
                             payload: Optional[Dict[str, Any]] = None) -> Optional[int]:
    """Поставить событие в очередь в транзакции действия. None, если игрок выключил категорию."""
    if category not in CATEGORIES:
        raise InvalidState("Unknown category", code="invalid_category")
    enabled = await conn.fetchval(
        f"SELECT {category} FROM notification_preferences WHERE player_id = $1", player_id,
    )
    if enabled is False:
        return None
    return await conn.fetchval(
        """INSERT INTO notification_events (player_id, category, payload)
           VALUES ($1, $2, $3::jsonb) RETURNING id""",
        player_id, category, to_json(payload or {}),
    )


async def pull_notification_events(limit: int = 100) -> List[Dict[str, Any]]:
    """Забрать недоставленные события и пометить их выданными (каждое отдаётся один раз)."""
    async with transaction() as conn:
        rows = await conn.fetch(
            """UPDATE notification_events SET delivered_at = NOW()
               WHERE id IN (SELECT id FROM notification_events WHERE delivered_at IS NULL
                            ORDER BY id LIMIT $1 FOR UPDATE SKIP LOCKED)
               RETURNING id, player_id, category, payload, created_at""",
            limit,
        )
    return [
        {"id": r["id"], "player_id": r["player_id"], "category": r["category"],
         "payload": from_json(r["payload"]), "created_at": r["created_at"]}
        for r in sorted(rows, key=lambda r: r["id"])
    ]
