"""
Фабрики: очередь рецептов по слотам. Любая фабрика игрока готовит любой рецепт.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from core import catalog
from core.activity import record_action
from core.bonuses import discounted_cost
from core.errors import InsufficientResource, InvalidState, NotFound
from core.ledger import add_items, boosted_crystals, debit_crystals, lock_player, remove_items
from core.progression import award_crystals, check_achievements, grant_xp, item_xp, log_production
from core.queues import factory_max_slots, lowest_free_slot, production_duration
from infrastructure.database import transaction

logger = logging.getLogger(__name__)


async def _factory(conn, player_id: int, factory_type: str):
    row = await conn.fetchrow(
        "SELECT level FROM factories WHERE player_id = $1 AND factory_type = $2 FOR UPDATE",
        player_id, factory_type,
    )
    if row is None:
        raise NotFound("Factory not found", code="factory_not_found")
    return row


async def _max_slots(conn, player_id: int, factory_type: str, level: int) -> int:
    count = await conn.fetchval(
        "SELECT COUNT(*) FROM buildings WHERE player_id = $1 AND building_type = $2", player_id, factory_type,
    )
    return factory_max_slots(int(count or 0), level)


async def list_factories(principal) -> List[Dict[str, Any]]:
    now = datetime.now(timezone.utc)
    async with transaction() as conn:
        factories = await conn.fetch(
            "SELECT factory_type, level FROM factories WHERE player_id = $1 ORDER BY factory_type",
            principal.player_id,
        )
        queue = await conn.fetch(
            "SELECT * FROM factory_queue WHERE player_id = $1 ORDER BY factory_type, slot", principal.player_id,
        )
        result = []
        for f in factories:
            result.append({
                "factory_type": f["factory_type"],
                "name": catalog.BUILDINGS.get(f["factory_type"], {}).get("name", f["factory_type"]),
                "level": f["level"],
                "max_slots": await _max_slots(conn, principal.player_id, f["factory_type"], f["level"]),
                "queue": [
                    {
                        "slot": q["slot"], "recipe": q["recipe_key"], "started_at": q["started_at"],
                        "finishes_at": q["finishes_at"], "ready": q["finishes_at"] <= now,
                    }
                    for q in queue if q["factory_type"] == f["factory_type"]
                ],
            })
    return result


async def start_production(principal, factory_type: str, recipe_key: str) -> Dict[str, Any]:
    recipe = catalog.RECIPES.get(recipe_key)
    if recipe is None:
        raise NotFound("Unknown recipe", code="recipe_not_found")
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        factory = await _factory(conn, principal.player_id, factory_type)
        max_slots = await _max_slots(conn, principal.player_id, factory_type, factory["level"])
        used = [r["slot"] for r in await conn.fetch(
            "SELECT slot FROM factory_queue WHERE player_id = $1 AND factory_type = $2",
            principal.player_id, factory_type,
        )]
        slot = lowest_free_slot(used, max_slots)
        if slot is None:
            raise InvalidState("All factory slots are busy", code="queue_full", max_slots=max_slots)
        await remove_items(conn, principal.player_id, catalog.resolve_items(recipe["inputs"]))
        now = datetime.now(timezone.utc)
        finishes_at = now + production_duration(recipe["minutes"], factory["level"], int(player["level"]))
        await conn.execute(
            """INSERT INTO factory_queue (player_id, factory_type, slot, recipe_key, started_at, finishes_at)
               VALUES ($1, $2, $3, $4, $5, $6)""",
            principal.player_id, factory_type, slot, recipe_key, now, finishes_at,
        )
    return {"success": True, "factory_type": factory_type, "slot": slot, "recipe": recipe_key, "finishes_at": finishes_at}


async def collect(principal, factory_type: str, slot: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        row = await conn.fetchrow(
            """SELECT recipe_key, finishes_at FROM factory_queue
               WHERE player_id = $1 AND factory_type = $2 AND slot = $3 FOR UPDATE""",
            principal.player_id, factory_type, slot,
        )
        if row is None:
            raise InvalidState("Slot is empty", code="slot_empty")
        if row["finishes_at"] > datetime.now(timezone.utc):
            raise InvalidState("Production is not finished", code="not_ready",
                               finishes_at=row["finishes_at"].isoformat())
        await conn.execute(
            "DELETE FROM factory_queue WHERE player_id = $1 AND factory_type = $2 AND slot = $3",
            principal.player_id, factory_type, slot,
        )
        recipe = catalog.RECIPES[row["recipe_key"]]
        outputs = catalog.resolve_items(recipe["output"])
        quantities = await add_items(conn, principal.player_id, outputs)
        crystals = await boosted_crystals(conn, principal.player_id, recipe["crystals"])
        await award_crystals(conn, principal.player_id, crystals)
        xp = await grant_xp(conn, principal.player_id, sum(item_xp(i, q) for i, q in outputs.items()))
        await log_production(conn, principal.player_id, "produce", recipe["key"])
        achievements = await check_achievements(conn, principal.player_id, "produce_count", 1)
        achievements += await check_achievements(conn, principal.player_id, "recipe_variety")
        await record_action(conn, principal.player_id, "produce")
        balance = int(await conn.fetchval("SELECT crystals FROM players WHERE id = $1", principal.player_id))
    return {
        "success": True,
        "recipe": recipe["key"],
        "items": {str(i): q for i, q in outputs.items()},
        "new_quantities": {str(i): q for i, q in quantities.items()},
        "crystals_awarded": crystals,
        "xp_gained": xp["xp_granted"],
        "levels_gained": xp["levels_gained"],
        "achievements_completed": achievements,
        "new_crystal_balance": balance,
    }


async def upgrade_factory(principal, factory_type: str) -> Dict[str, Any]:
    upgrades = catalog.FACTORY_UPGRADES.get(factory_type)
    if upgrades is None:
        raise NotFound("Factory type cannot be upgraded", code="factory_not_found")
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        factory = await _factory(conn, principal.player_id, factory_type)
        new_level = factory["level"] + 1
        step = upgrades.get(new_level)
        if step is None:
            raise InvalidState("Factory is at max level", code="max_level")
        cost = discounted_cost(step["crystals"], int(player["level"]))
        materials = catalog.resolve_items(step["materials"])
        try:
            await remove_items(conn, principal.player_id, materials)
        except InsufficientResource as e:
            raise InsufficientResource("Not enough upgrade materials", code="insufficient_materials", **e.extra)
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute(
            "UPDATE factories SET level = $3 WHERE player_id = $1 AND factory_type = $2",
            principal.player_id, factory_type, new_level,
        )
        await check_achievements(conn, principal.player_id, "upgrade_level", new_level)
    logger.info("player %s upgraded %s to level %s", principal.player_id, factory_type, new_level)
    return {
        "success": True,
        "factory_type": factory_type,
        "level": new_level,
        "cost": cost,
        "materials": {str(k): v for k, v in materials.items()},
        "unlocked_slot": step["unlocks_slot"],
        "new_crystal_balance": balance,
    }
