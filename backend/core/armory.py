"""
Оружейная (basic_forge): 2 слота крафта снаряжения из руды.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from core import catalog
from core.activity import record_action
from core.errors import InvalidState, NotFound
from core.ledger import add_items, debit_crystals, lock_player, remove_items
from core.progression import check_achievements, grant_xp, item_xp, log_production
from core.queues import lowest_free_slot, production_duration
from infrastructure.database import transaction

DEFAULT_ARMORY = "basic_forge"


def armory_upgrade_cost(level: int) -> int:
    return catalog.ARMORY_TYPES[DEFAULT_ARMORY]["upgrade_cost_per_level"] * level


async def _armory(conn, player_id: int, armory_type: str):
    if armory_type not in catalog.ARMORY_TYPES:
        raise NotFound("Unknown armory", code="armory_not_found")
    row = await conn.fetchrow(
        "SELECT level FROM armories WHERE player_id = $1 AND armory_type = $2 FOR UPDATE",
        player_id, armory_type,
    )
    if row is None:
        raise NotFound("Armory not found", code="armory_not_found")
    return row


async def get_armory(principal, armory_type: str = DEFAULT_ARMORY) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    async with transaction() as conn:
        armory = await _armory(conn, principal.player_id, armory_type)
        queue = await conn.fetch(
            "SELECT * FROM armory_queue WHERE player_id = $1 AND armory_type = $2 ORDER BY slot",
            principal.player_id, armory_type,
        )
    return {
        "armory_type": armory_type,
        "level": armory["level"],
        "max_slots": catalog.ARMORY_TYPES[armory_type]["slots"],
        "queue": [
            {"slot": q["slot"], "recipe": q["recipe_key"], "started_at": q["started_at"],
             "finishes_at": q["finishes_at"], "ready": q["finishes_at"] <= now}
            for q in queue
        ],
    }


async def start_craft(principal, recipe_key: str, armory_type: str = DEFAULT_ARMORY) -> Dict[str, Any]:
    recipe = catalog.ARMORY_RECIPES.get(recipe_key)
    if recipe is None:
        raise NotFound("Unknown armory recipe", code="recipe_not_found")
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        armory = await _armory(conn, principal.player_id, armory_type)
        used = [r["slot"] for r in await conn.fetch(
            "SELECT slot FROM armory_queue WHERE player_id = $1 AND armory_type = $2",
            principal.player_id, armory_type,
        )]
        slot = lowest_free_slot(used, catalog.ARMORY_TYPES[armory_type]["slots"])
        if slot is None:
            raise InvalidState("All armory slots are busy", code="queue_full")
        await remove_items(conn, principal.player_id, catalog.resolve_items(recipe["inputs"]))
        now = datetime.now(timezone.utc)
        finishes_at = now + production_duration(recipe["minutes"], armory["level"], int(player["level"]))
        await conn.execute(
            """INSERT INTO armory_queue (player_id, armory_type, slot, recipe_key, started_at, finishes_at)
               VALUES ($1, $2, $3, $4, $5, $6)""",
            principal.player_id, armory_type, slot, recipe_key, now, finishes_at,
        )
    return {"success": True, "armory_type": armory_type, "slot": slot, "recipe": recipe_key, "finishes_at": finishes_at}


async def collect_craft(principal, slot: int, armory_type: str = DEFAULT_ARMORY) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        row = await conn.fetchrow(
            """SELECT recipe_key, finishes_at FROM armory_queue
               WHERE player_id = $1 AND armory_type = $2 AND slot = $3 FOR UPDATE""",
            principal.player_id, armory_type, slot,
        )
        if row is None:
            raise InvalidState("Slot is empty", code="slot_empty")
        if row["finishes_at"] > datetime.now(timezone.utc):
            raise InvalidState("Craft is not finished", code="not_ready", finishes_at=row["finishes_at"].isoformat())
        await conn.execute(
            "DELETE FROM armory_queue WHERE player_id = $1 AND armory_type = $2 AND slot = $3",
            principal.player_id, armory_type, slot,
        )
        recipe = catalog.ARMORY_RECIPES[row["recipe_key"]]
        outputs = catalog.resolve_items(recipe["output"])
        quantities = await add_items(conn, principal.player_id, outputs)
        xp = await grant_xp(conn, principal.player_id, sum(item_xp(i, q) for i, q in outputs.items()))
        await log_production(conn, principal.player_id, "craft", recipe["key"])
        achievements = await check_achievements(conn, principal.player_id, "produce_count", 1)
        await record_action(conn, principal.player_id, "produce")
        balance = await conn.fetchval("SELECT crystals FROM players WHERE id = $1", principal.player_id)
    return {
        "success": True,
        "recipe": recipe["key"],
        "items": {str(i): q for i, q in outputs.items()},
        "new_quantities": {str(i): q for i, q in quantities.items()},
        "xp_gained": xp["xp_granted"],
        "levels_gained": xp["levels_gained"],
        "achievements_completed": achievements,
        "new_crystal_balance": int(balance),
    }


async def upgrade_armory(principal, armory_type: str = DEFAULT_ARMORY) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        armory = await _armory(conn, principal.player_id, armory_type)
        level = armory["level"]
        if level >= catalog.ARMORY_TYPES[armory_type]["max_level"]:
            raise InvalidState("Armory is at max level", code="max_level")
        cost = armory_upgrade_cost(level)
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute(
            "UPDATE armories SET level = level + 1 WHERE player_id = $1 AND armory_type = $2",
            principal.player_id, armory_type,
        )
        await check_achievements(conn, principal.player_id, "upgrade_level", level + 1)
    return {"success": True, "armory_type": armory_type, "level": level + 1, "cost": cost, "new_crystal_balance": balance}
