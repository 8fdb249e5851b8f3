"""
Скайпорт: заказы на доставку товаров за кристаллы и опыт.
Активных заказов не больше max_active_orders; недостающие создаются лениво при чтении.
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import asyncpg

from config import get_economy_config
from core import catalog
from core.activity import record_action
from core.errors import InvalidState, NotFound
from core.ledger import boosted_crystals, lock_player, remove_items
from core.progression import award_crystals, grant_xp
from infrastructure.database import from_json, to_json, transaction


def generate_order(order_type: str, rng=random) -> Dict[str, Any]:
    tier = catalog.ORDER_TYPES[order_type]
    items = rng.sample(catalog.ORDER_ITEM_POOL, tier["requirements"])
    return {
        "order_type": order_type,
        "requirements": {str(i): rng.randint(*tier["units"]) for i in items},
        "rewards": {"crystals": rng.randint(*tier["crystals"]), "xp": rng.randint(*tier["xp"])},
        "minutes": tier["minutes"],
    }


def _order_view(row) -> Dict[str, Any]:
    requirements = from_json(row["requirements"])
    return {
        "id": row["id"],
        "order_type": row["order_type"],
        "requirements": [
            {"item_id": int(i), "name": catalog.item_name(int(i)), "quantity": q} for i, q in requirements.items()
        ],
        "rewards": from_json(row["rewards"]),
        "expires_at": row["expires_at"],
    }


async def _top_up(conn: asyncpg.Connection, player_id: int) -> None:
    active = await conn.fetchval(
        """SELECT COUNT(*) FROM skyport_orders
           WHERE player_id = $1 AND completed_at IS NULL AND expires_at > NOW()""",
        player_id,
    )
    missing = int(get_economy_config()["max_active_orders"]) - int(active)
    now = datetime.now(timezone.utc)
    for _ in range(max(0, missing)):
        order = generate_order(random.choice(list(catalog.ORDER_TYPES)))
        await conn.execute(
            """INSERT INTO skyport_orders (player_id, order_type, requirements, rewards, expires_at)
               VALUES ($1, $2, $3::jsonb, $4::jsonb, $5)""",
            player_id, order["order_type"], to_json(order["requirements"]), to_json(order["rewards"]),
            now + timedelta(minutes=order["minutes"]),
        )


async def get_orders(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        await _top_up(conn, principal.player_id)
        rows = await conn.fetch(
            """SELECT * FROM skyport_orders
               WHERE player_id = $1 AND completed_at IS NULL AND expires_at > NOW()
               ORDER BY expires_at""",
            principal.player_id,
        )
    return [_order_view(r) for r in rows]


async def fulfill_order(principal, order_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        order = await conn.fetchrow(
            "SELECT * FROM skyport_orders WHERE id = $1 AND player_id = $2 FOR UPDATE", order_id, principal.player_id,
        )
        if order is None:
            raise NotFound("Order not found", code="order_not_found")
        if order["completed_at"] is not None:
            raise InvalidState("Order already fulfilled", code="order_completed")
        if order["expires_at"] <= datetime.now(timezone.utc):
            raise InvalidState("Order has expired", code="order_expired")
        requirements = {int(i): int(q) for i, q in from_json(order["requirements"]).items()}
        await remove_items(conn, principal.player_id, requirements)
        rewards = from_json(order["rewards"])
        crystals = await boosted_crystals(conn, principal.player_id, int(rewards.get("crystals", 0)))
        balance = await award_crystals(conn, principal.player_id, crystals)
        xp = await grant_xp(conn, principal.player_id, int(rewards.get("xp", 0)))
        await conn.execute("UPDATE skyport_orders SET completed_at = NOW() WHERE id = $1", order_id)
        await record_action(conn, principal.player_id, "order")
    return {"success": True, "order_id": order_id, "crystals_awarded": crystals, "xp_gained": xp["xp_granted"],
            "levels_gained": xp["levels_gained"], "new_crystal_balance": balance}
