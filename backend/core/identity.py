"""
Игрок: создание с начальным набором, профиль, инвентарь, склад.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import asyncpg

from config import get_economy_config
from core import catalog
from core.bonuses import bonus_from_counts, building_counts, level_discount, production_speed
from core.errors import InvalidState
from core.ledger import add_item, debit_crystals, get_player, lock_player
from core.progression import start_quest_in, xp_for_level
from infrastructure.database import get_setting, transaction

logger = logging.getLogger(__name__)

FARM_PLOTS = 6
STARTER_FACTORY = "rune_bakery"
STARTER_ARMORY = "basic_forge"
STARTER_TOOL = "basic_pickaxe"
TOWN_HALL_POS = (4, 4)
MAX_WAREHOUSE_LEVEL = 10


@dataclass(frozen=True)
class Principal:
    """Аутентифицированный игрок; передаётся в каждую игровую операцию явно."""
    player_id: int
    external_id: Optional[str] = None


def storage_capacity(warehouse_level: int, player_level: int) -> int:
    return 50 + (warehouse_level - 1) * 25 + 5 * player_level


def warehouse_upgrade_cost(new_level: int) -> int:
    return 100 * new_level * new_level


async def recompute_population(conn: asyncpg.Connection, player_id: int) -> int:
    """population = Σ(provides_population × level) по зданиям игрока."""
    rows = await conn.fetch(
        "SELECT building_type, level FROM buildings WHERE player_id = $1", player_id,
    )
    total = sum(catalog.BUILDINGS.get(r["building_type"], {}).get("population", 0) * r["level"] for r in rows)
    await conn.execute("UPDATE players SET population = $2 WHERE id = $1", player_id, total)
    return total


async def _seed_new_player(conn: asyncpg.Connection, player_id: int) -> None:
    economy = get_economy_config()
    await conn.executemany(
        "INSERT INTO farm_plots (player_id, plot_index) VALUES ($1, $2)",
        [(player_id, i) for i in range(1, FARM_PLOTS + 1)],
    )
    await conn.execute(
        "INSERT INTO factories (player_id, factory_type, level) VALUES ($1, $2, 1)", player_id, STARTER_FACTORY,
    )
    await conn.execute(
        "INSERT INTO armories (player_id, armory_type, level) VALUES ($1, $2, 1)", player_id, STARTER_ARMORY,
    )
    await conn.execute(
        "INSERT INTO mining_tools (player_id, tool_type, durability) VALUES ($1, $2, 100)", player_id, STARTER_TOOL,
    )
    await conn.execute("INSERT INTO mine_state (player_id) VALUES ($1)", player_id)
    await add_item(conn, player_id, catalog.item_id("wheat"), int(economy["starting_wheat"]))
    await conn.execute(
        """INSERT INTO buildings (player_id, building_type, grid_x, grid_y, level)
           VALUES ($1, 'town_hall', $2, $3, 1)""",
        player_id, TOWN_HALL_POS[0], TOWN_HALL_POS[1],
    )
    await recompute_population(conn, player_id)
    for key, quest in catalog.QUESTS.items():
        if quest["type"] == "tutorial":
            await start_quest_in(conn, player_id, key)
    await conn.execute("INSERT INTO notification_preferences (player_id) VALUES ($1)", player_id)


async def ensure_player_in(conn: asyncpg.Connection, external_id: str, username: Optional[str] = None) -> int:
    row = await conn.fetchrow("SELECT id FROM players WHERE external_id = $1", external_id)
    if row:
        return int(row["id"])
    starting = int(await get_setting("economy.starting_crystals", get_economy_config()["starting_crystals"], conn=conn))
    player_id = await conn.fetchval(
        """INSERT INTO players (external_id, username, crystals) VALUES ($1, $2, $3)
           ON CONFLICT (external_id) DO NOTHING RETURNING id""",
        external_id, username, starting,
    )
    if player_id is None:
        # параллельное создание: строку уже вставил другой запрос
        return int(await conn.fetchval("SELECT id FROM players WHERE external_id = $1", external_id))
    await _seed_new_player(conn, int(player_id))
    logger.info("new player %s (external %s)", player_id, external_id)
    return int(player_id)


async def ensure_player(external_id: str, username: Optional[str] = None) -> int:
    """Возвращает players.id. Создаёт игрока с начальным набором при первом обращении."""
    async with transaction() as conn:
        return await ensure_player_in(conn, external_id, username)


async def player_exists(player_id: int) -> bool:
    async with transaction() as conn:
        return bool(await conn.fetchval("SELECT 1 FROM players WHERE id = $1", player_id))


async def _storage_used(conn: asyncpg.Connection, player_id: int) -> int:
    v = await conn.fetchval("SELECT COALESCE(SUM(quantity), 0) FROM inventory WHERE player_id = $1", player_id)
    return int(v or 0)


async def get_profile(principal: Principal) -> Dict[str, Any]:
    async with transaction() as conn:
        p = await get_player(conn, principal.player_id)
        counts = await building_counts(conn, principal.player_id)
        used = await _storage_used(conn, principal.player_id)
        boosts = await conn.fetch(
            """SELECT boost_type, multiplier, expires_at FROM active_boosts
               WHERE player_id = $1 AND expires_at > NOW()""",
            principal.player_id,
        )
    level = int(p["level"])
    return {
        "id": p["id"],
        "username": p["username"],
        "crystals": int(p["crystals"]),
        "aether": int(p["aether"]),
        "xp": int(p["xp"]),
        "level": level,
        "xp_to_next_level": xp_for_level(level),
        "population": int(p["population"]),
        "town_size": int(p["town_size"]),
        "daily_streak": int(p["daily_streak"]),
        "last_claimed_date": p["last_claimed_date"],
        "crystals_earned": int(p["crystals_earned"]),
        "speed_up_minutes": int(p["speed_up_minutes"]),
        "warehouse_level": int(p["warehouse_level"]),
        "storage_capacity": storage_capacity(int(p["warehouse_level"]), level),
        "storage_used": used,
        "level_discount": level_discount(level),
        "production_speed": production_speed(level),
        "bonuses": {
            "xp": bonus_from_counts("xp", counts),
            "crystals": bonus_from_counts("crystals", counts),
            "energy_regen": bonus_from_counts("energy_regen", counts),
        },
        "active_boosts": [
            {"boost_type": b["boost_type"], "multiplier": float(b["multiplier"]), "expires_at": b["expires_at"]}
            for b in boosts
        ],
    }


async def get_inventory(principal: Principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT i.item_id, i.quantity, d.key, d.category
               FROM inventory i LEFT JOIN item_defs d ON d.id = i.item_id
               WHERE i.player_id = $1 AND i.quantity > 0
               ORDER BY i.item_id""",
            principal.player_id,
        )
    return [
        {
            "item_id": r["item_id"],
            "key": r["key"],
            "name": catalog.item_name(r["item_id"]),
            "category": r["category"] or catalog.item_category(r["item_id"]),
            "quantity": int(r["quantity"]),
        }
        for r in rows
    ]


async def upgrade_warehouse(principal: Principal) -> Dict[str, Any]:
    async with transaction() as conn:
        p = await lock_player(conn, principal.player_id)
        current = int(p["warehouse_level"])
        if current >= MAX_WAREHOUSE_LEVEL:
            raise InvalidState("Warehouse is at max level", code="warehouse_max_level")
        new_level = current + 1
        cost = warehouse_upgrade_cost(new_level)
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute("UPDATE players SET warehouse_level = $2 WHERE id = $1", principal.player_id, new_level)
    return {
        "success": True,
        "warehouse_level": new_level,
        "cost": cost,
        "storage_capacity": storage_capacity(new_level, int(p["level"])),
        "new_crystal_balance": balance,
    }
