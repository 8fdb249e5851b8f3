"""
Шахта: копка вглубь с дневным запасом энергии, износом кирки и выпадением руды по глубине.
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from config import get_mining_config
from core import catalog
from core.activity import record_action
from core.bonuses import building_bonus
from core.errors import InvalidState, InsufficientResource, NotFound
from core.ledger import add_item, debit_crystals, lock_player
from core.monetization import record_ad_watch
from core.progression import check_achievements, grant_xp, item_xp
from infrastructure.database import transaction

EMPTY_DIG_XP = 5
EPIC_UPGRADE_CHANCE = 0.10


# ——— Чистые правила ———

def energy_cost(tool_type: str, depth: int) -> int:
    tool = catalog.MINING_TOOLS[tool_type]
    return tool["energy_base"] + depth // tool["depth_divisor"]


def max_energy(player_level: int, regen_bonus: float = 0) -> int:
    cfg = get_mining_config()
    return int(cfg["base_energy"] + cfg["energy_per_level"] * player_level + regen_bonus)


def energy_reset_due(last_reset_at: datetime, now: datetime) -> bool:
    return now - last_reset_at >= timedelta(hours=get_mining_config()["energy_reset_hours"])


def drop_rarity(depth: int, roll: int) -> Optional[str]:
    """Редкость находки по глубине и броску 0..99; None, если пусто."""
    if depth < 10:
        return "common" if roll < 50 else None
    if depth < 30:
        if roll < 40:
            return "common"
        return "rare" if roll < 60 else None
    if depth < 60:
        if roll < 30:
            return "rare"
        return "epic" if roll < 50 else None
    if roll < 20:
        return "rare"
    return "epic" if roll < 70 else None


def roll_drop(depth: int, tool_type: str, rng=random) -> Optional[str]:
    """Ключ руды или None. Алмазная и магическая кирки: 10% шанс поднять находку до epic."""
    rarity = drop_rarity(depth, rng.randint(0, 99))
    if rarity is None:
        return None
    if rarity != "epic" and catalog.MINING_TOOLS[tool_type]["epic_bonus"] and rng.random() < EPIC_UPGRADE_CHANCE:
        rarity = "epic"
    pool = [k for k, o in catalog.ORES.items() if o["rarity"] == rarity]
    return rng.choice(pool)


def next_tool(tool_type: str) -> Optional[str]:
    idx = catalog.TOOL_ORDER.index(tool_type)
    return catalog.TOOL_ORDER[idx + 1] if idx + 1 < len(catalog.TOOL_ORDER) else None


def energy_view(used: int, maximum: int) -> Dict[str, Any]:
    current = max(0, maximum - used)
    return {
        "current": current,
        "max": maximum,
        "used": used,
        "percentage": round(current * 100 / maximum, 1) if maximum else 0,
    }


# ——— Операции ———

async def _lock_state(conn, player_id: int):
    """Игрок, затем шахта и кирка: тот же порядок блокировок, что у остальных действий."""
    player = await lock_player(conn, player_id)
    state = await conn.fetchrow("SELECT * FROM mine_state WHERE player_id = $1 FOR UPDATE", player_id)
    tool = await conn.fetchrow("SELECT * FROM mining_tools WHERE player_id = $1 FOR UPDATE", player_id)
    if state is None or tool is None:
        raise NotFound("Mine not found", code="mine_not_found")
    return player, state, tool


async def _reset_if_due(conn, player_id: int, state) -> int:
    """Ленивый сброс энергии раз в 24 часа. Возвращает актуальный energy_used."""
    now = datetime.now(timezone.utc)
    if energy_reset_due(state["last_reset_at"], now):
        await conn.execute(
            "UPDATE mine_state SET energy_used = 0, last_reset_at = $2 WHERE player_id = $1", player_id, now,
        )
        return 0
    return int(state["energy_used"])


async def get_mine(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        player, state, tool = await _lock_state(conn, principal.player_id)
        used = await _reset_if_due(conn, principal.player_id, state)
        regen = await building_bonus(conn, principal.player_id, "energy_regen")
        finds = await conn.fetch(
            """SELECT item_id, depth, found_at FROM mine_finds
               WHERE player_id = $1 ORDER BY found_at DESC LIMIT 10""",
            principal.player_id,
        )
    maximum = max_energy(int(player["level"]), regen)
    return {
        "depth": state["depth"],
        "total_digs": state["total_digs"],
        "tool": {"type": tool["tool_type"], "durability": tool["durability"],
                 "max_durability": get_mining_config()["tool_max_durability"], "next": next_tool(tool["tool_type"])},
        "energy": energy_view(used, maximum),
        "next_dig_cost": energy_cost(tool["tool_type"], state["depth"]),
        "recent_finds": [
            {"item_id": f["item_id"], "name": catalog.item_name(f["item_id"]),
             "depth": f["depth"], "found_at": f["found_at"]}
            for f in finds
        ],
    }


async def get_current_energy(principal) -> Dict[str, Any]:
    return (await get_mine(principal))["energy"]


async def dig(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        player, state, tool = await _lock_state(conn, principal.player_id)
        used = await _reset_if_due(conn, principal.player_id, state)
        if tool["durability"] <= 0:
            raise InvalidState("Pickaxe is broken, repair it first", code="tool_broken")
        regen = await building_bonus(conn, principal.player_id, "energy_regen")
        maximum = max_energy(int(player["level"]), regen)
        depth = int(state["depth"])
        cost = energy_cost(tool["tool_type"], depth)
        if used + cost > maximum:
            raise InsufficientResource("Not enough energy", code="insufficient_energy",
                                       required=cost, available=max(0, maximum - used))
        ore_key = roll_drop(depth, tool["tool_type"])
        new_depth = depth + 1
        await conn.execute(
            """UPDATE mine_state SET depth = $2, energy_used = energy_used + $3, total_digs = total_digs + 1
               WHERE player_id = $1""",
            principal.player_id, new_depth, cost,
        )
        await conn.execute(
            "UPDATE mining_tools SET durability = durability - 1 WHERE player_id = $1", principal.player_id,
        )
        found = None
        if ore_key:
            ore = catalog.ORES[ore_key]
            qty = await add_item(conn, principal.player_id, ore["item_id"], 1)
            found = {"item_id": ore["item_id"], "ore": ore_key, "rarity": ore["rarity"], "new_quantity": qty}
            await conn.execute(
                "INSERT INTO mine_finds (player_id, item_id, depth) VALUES ($1, $2, $3)",
                principal.player_id, ore["item_id"], new_depth,
            )
            xp_amount = item_xp(ore["item_id"], 1)
        else:
            xp_amount = EMPTY_DIG_XP
        xp = await grant_xp(conn, principal.player_id, xp_amount)
        achievements = await check_achievements(conn, principal.player_id, "mine_count", 1)
        achievements += await check_achievements(conn, principal.player_id, "mine_depth")
        await record_action(conn, principal.player_id, "mine")
    return {
        "success": True,
        "found": found,
        "depth": new_depth,
        "energy": energy_view(used + cost, maximum),
        "tool_durability": tool["durability"] - 1,
        "xp_gained": xp["xp_granted"],
        "levels_gained": xp["levels_gained"],
        "achievements_completed": achievements,
    }


async def repair_tool(principal) -> Dict[str, Any]:
    cfg = get_mining_config()
    async with transaction() as conn:
        _, _, tool = await _lock_state(conn, principal.player_id)
        missing = cfg["tool_max_durability"] - tool["durability"]
        if missing <= 0:
            raise InvalidState("Pickaxe is already at full durability", code="tool_full")
        cost = missing * cfg["repair_cost_per_point"]
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute(
            "UPDATE mining_tools SET durability = $2 WHERE player_id = $1",
            principal.player_id, cfg["tool_max_durability"],
        )
    return {"success": True, "cost": cost, "durability": cfg["tool_max_durability"], "new_crystal_balance": balance}


async def upgrade_tool(principal) -> Dict[str, Any]:
    cfg = get_mining_config()
    async with transaction() as conn:
        _, _, tool = await _lock_state(conn, principal.player_id)
        target = next_tool(tool["tool_type"])
        if target is None:
            raise InvalidState("Pickaxe is at the best tier", code="max_level")
        cost = catalog.MINING_TOOLS[target]["upgrade_cost"]
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute(
            "UPDATE mining_tools SET tool_type = $2, durability = $3 WHERE player_id = $1",
            principal.player_id, target, cfg["tool_max_durability"],
        )
    return {"success": True, "tool": target, "cost": cost, "new_crystal_balance": balance}


async def restore_energy_with_crystals(principal) -> Dict[str, Any]:
    cost = get_mining_config()["crystal_restore_cost"]
    async with transaction() as conn:
        _, state, _ = await _lock_state(conn, principal.player_id)
        if await _reset_if_due(conn, principal.player_id, state) == 0:
            raise InvalidState("Energy is already full", code="energy_full")
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute(
            "UPDATE mine_state SET energy_used = 0, last_reset_at = NOW() WHERE player_id = $1", principal.player_id,
        )
    return {"success": True, "cost": cost, "new_crystal_balance": balance}


async def restore_energy_with_ad(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        _, state, _ = await _lock_state(conn, principal.player_id)
        if await _reset_if_due(conn, principal.player_id, state) == 0:
            raise InvalidState("Energy is already full", code="energy_full")
        remaining = await record_ad_watch(conn, principal.player_id, "mining", "energy")
        await conn.execute(
            "UPDATE mine_state SET energy_used = 0, last_reset_at = NOW() WHERE player_id = $1", principal.player_id,
        )
    return {"success": True, "ads_remaining": remaining}
