"""
Город: сетка town_size × town_size, здания, декор и дороги.

Клетка занята, если её накрывает футпринт здания или декора либо на ней лежит дорога.
Тип дороги не хранится: он считается при чтении по четырём соседям.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import asyncpg

from config import get_town_config
from core import catalog
from core.activity import record_action
from core.bonuses import discounted_cost
from core.errors import InsufficientResource, InvalidState, NotFound
from core.identity import recompute_population
from core.ledger import debit_crystals, lock_player
from core.progression import check_achievements
from infrastructure.database import transaction

logger = logging.getLogger(__name__)

Cell = Tuple[int, int]
DIRECTIONS = ("north", "south", "east", "west", "all")


# ——— Чистые правила ———

def footprint(x: int, y: int, width: int, height: int) -> Set[Cell]:
    return {(x + dx, y + dy) for dx in range(width) for dy in range(height)}


def in_bounds(cells: Iterable[Cell], size: int) -> bool:
    return all(0 <= cx < size and 0 <= cy < size for cx, cy in cells)


def road_type(north: bool, south: bool, east: bool, west: bool) -> str:
    """Форма дорожного тайла по соседям (north: клетка с y - 1)."""
    count = sum((north, south, east, west))
    if count == 4:
        return "intersection"
    if count == 3:
        if not north:
            return "t_s"
        if not south:
            return "t_n"
        if not east:
            return "t_w"
        return "t_e"
    if count == 2:
        if north and south:
            return "straight_v"
        if east and west:
            return "straight_h"
        if north:
            return "corner_ne" if east else "corner_nw"
        return "corner_se" if east else "corner_sw"
    if north or south:
        return "straight_v"
    return "straight_h"


def roads_with_types(cells: Iterable[Cell]) -> List[Dict[str, Any]]:
    grid = set(cells)
    return [
        {"x": x, "y": y, "road_type": road_type((x, y - 1) in grid, (x, y + 1) in grid,
                                                (x + 1, y) in grid, (x - 1, y) in grid)}
        for x, y in sorted(grid)
    ]


def expansion(direction: str, size: int) -> Tuple[int, int]:
    """(новый размер, цена) расширения города."""
    cfg = get_town_config()
    if direction == "all":
        return size + int(cfg["expand_all_step"]), size * int(cfg["expand_all_cost_per_tile"])
    return size + int(cfg["expand_side_step"]), size * int(cfg["expand_side_cost_per_tile"])


def _size(kind: Dict[str, Any]) -> Tuple[int, int]:
    width, height = kind["size"]
    return int(width), int(height)


# ——— Занятость ———

async def _occupied(conn: asyncpg.Connection, player_id: int, skip_building: Optional[int] = None,
                    skip_decoration: Optional[int] = None) -> Set[Cell]:
    cells: Set[Cell] = set()
    for b in await conn.fetch("SELECT id, building_type, grid_x, grid_y FROM buildings WHERE player_id = $1", player_id):
        if b["id"] == skip_building:
            continue
        w, h = _size(catalog.BUILDINGS.get(b["building_type"], {"size": (1, 1)}))
        cells |= footprint(b["grid_x"], b["grid_y"], w, h)
    for d in await conn.fetch("SELECT id, decoration_type, grid_x, grid_y FROM decorations WHERE player_id = $1", player_id):
        if d["id"] == skip_decoration:
            continue
        w, h = _size(catalog.DECORATIONS.get(d["decoration_type"], {"size": (1, 1)}))
        cells |= footprint(d["grid_x"], d["grid_y"], w, h)
    for r in await conn.fetch("SELECT grid_x, grid_y FROM roads WHERE player_id = $1", player_id):
        cells.add((r["grid_x"], r["grid_y"]))
    return cells


async def _ensure_free(conn: asyncpg.Connection, player_id: int, town_size: int, cells: Set[Cell], **skip) -> None:
    if not in_bounds(cells, town_size):
        raise InvalidState("Out of town bounds", code="out_of_bounds", town_size=town_size)
    if cells & await _occupied(conn, player_id, **skip):
        raise InvalidState("Cells are occupied", code="cells_occupied")


# ——— Чтение ———

async def town_view(conn: asyncpg.Connection, player_id: int) -> Dict[str, Any]:
    """Сетка игрока как есть; годится и для чужого города (только чтение)."""
    player = await conn.fetchrow("SELECT town_size, population FROM players WHERE id = $1", player_id)
    if player is None:
        raise NotFound("Player not found", code="player_not_found")
    buildings = await conn.fetch(
        "SELECT id, building_type, grid_x, grid_y, level FROM buildings WHERE player_id = $1 ORDER BY id",
        player_id,
    )
    decorations = await conn.fetch(
        "SELECT id, decoration_type, grid_x, grid_y FROM decorations WHERE player_id = $1 ORDER BY id",
        player_id,
    )
    roads = await conn.fetch("SELECT grid_x, grid_y FROM roads WHERE player_id = $1", player_id)
    return {
        "town_size": player["town_size"],
        "population": player["population"],
        "buildings": [
            {"id": b["id"], "type": b["building_type"], "x": b["grid_x"], "y": b["grid_y"], "level": b["level"],
             "size": list(_size(catalog.BUILDINGS.get(b["building_type"], {"size": (1, 1)})))}
            for b in buildings
        ],
        "decorations": [
            {"id": d["id"], "type": d["decoration_type"], "x": d["grid_x"], "y": d["grid_y"],
             "size": list(_size(catalog.DECORATIONS.get(d["decoration_type"], {"size": (1, 1)})))}
            for d in decorations
        ],
        "roads": roads_with_types((r["grid_x"], r["grid_y"]) for r in roads),
    }


async def get_town(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        return await town_view(conn, principal.player_id)


# ——— Здания ———

async def _check_gates(conn: asyncpg.Connection, player, kind: Dict[str, Any]) -> None:
    if int(player["level"]) < kind["level_required"]:
        raise InsufficientResource(f"Requires level {kind['level_required']}", code="level_required",
                                   required=kind["level_required"])
    if int(player["population"]) < kind["population_required"]:
        raise InsufficientResource(f"Requires population {kind['population_required']}",
                                   code="population_required", required=kind["population_required"])
    if kind["prerequisite"]:
        has = await conn.fetchval(
            "SELECT 1 FROM buildings WHERE player_id = $1 AND building_type = $2 LIMIT 1",
            player["id"], kind["prerequisite"],
        )
        if not has:
            raise InvalidState(f"Requires {kind['prerequisite']} first", code="prerequisite_missing",
                               prerequisite=kind["prerequisite"])
    if kind["max_count"] is not None:
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM buildings WHERE player_id = $1 AND building_type = $2", player["id"], kind["key"],
        )
        if count >= kind["max_count"]:
            raise InvalidState("Building limit reached", code="max_count_reached", max_count=kind["max_count"])


async def place_building(principal, building_type: str, x: int, y: int) -> Dict[str, Any]:
    kind = catalog.BUILDINGS.get(building_type)
    if kind is None:
        raise NotFound("Unknown building type", code="building_type_not_found")
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        await _check_gates(conn, player, kind)
        w, h = _size(kind)
        await _ensure_free(conn, principal.player_id, int(player["town_size"]), footprint(x, y, w, h))
        cost = discounted_cost(kind["cost"], int(player["level"]))
        if kind["first_free"]:
            owned = await conn.fetchval(
                "SELECT COUNT(*) FROM buildings WHERE player_id = $1 AND building_type = $2",
                principal.player_id, building_type,
            )
            if owned == 0:
                cost = 0
        balance = await debit_crystals(conn, principal.player_id, cost)
        building_id = await conn.fetchval(
            """INSERT INTO buildings (player_id, building_type, grid_x, grid_y, level)
               VALUES ($1, $2, $3, $4, 1) RETURNING id""",
            principal.player_id, building_type, x, y,
        )
        if building_type in catalog.FACTORY_TYPES:
            await conn.execute(
                """INSERT INTO factories (player_id, factory_type, level) VALUES ($1, $2, 1)
                   ON CONFLICT (player_id, factory_type) DO NOTHING""",
                principal.player_id, building_type,
            )
        population = await recompute_population(conn, principal.player_id)
        achievements = await check_achievements(conn, principal.player_id, "build_count", 1)
        await record_action(conn, principal.player_id, "build")
    logger.info("player %s placed %s at (%s, %s)", principal.player_id, building_type, x, y)
    return {"success": True, "building_id": building_id, "cost": cost, "population": population,
            "achievements_completed": achievements, "new_crystal_balance": balance}


async def _owned_building(conn: asyncpg.Connection, player_id: int, building_id: int):
    row = await conn.fetchrow(
        "SELECT * FROM buildings WHERE id = $1 AND player_id = $2 FOR UPDATE", building_id, player_id,
    )
    if row is None:
        raise NotFound("Building not found", code="building_not_found")
    return row


async def move_building(principal, building_id: int, x: int, y: int) -> Dict[str, Any]:
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        b = await _owned_building(conn, principal.player_id, building_id)
        w, h = _size(catalog.BUILDINGS.get(b["building_type"], {"size": (1, 1)}))
        await _ensure_free(conn, principal.player_id, int(player["town_size"]), footprint(x, y, w, h),
                           skip_building=building_id)
        await conn.execute("UPDATE buildings SET grid_x = $2, grid_y = $3 WHERE id = $1", building_id, x, y)
    return {"success": True, "building_id": building_id, "x": x, "y": y}


async def remove_building(principal, building_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        b = await _owned_building(conn, principal.player_id, building_id)
        if b["building_type"] == "town_hall":
            raise InvalidState("Town hall cannot be removed", code="not_removable")
        await conn.execute("DELETE FROM buildings WHERE id = $1", building_id)
        population = await recompute_population(conn, principal.player_id)
    return {"success": True, "building_id": building_id, "population": population}


async def upgrade_building(principal, building_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        b = await _owned_building(conn, principal.player_id, building_id)
        kind = catalog.BUILDINGS.get(b["building_type"])
        if kind is None or b["level"] >= kind["max_level"]:
            raise InvalidState("Building is at max level", code="max_level")
        new_level = b["level"] + 1
        cost = discounted_cost(kind["cost"] * new_level, int(player["level"]))
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute("UPDATE buildings SET level = $2 WHERE id = $1", building_id, new_level)
        population = await recompute_population(conn, principal.player_id)
        achievements = await check_achievements(conn, principal.player_id, "upgrade_level", new_level)
    return {"success": True, "building_id": building_id, "level": new_level, "cost": cost, "population": population,
            "achievements_completed": achievements, "new_crystal_balance": balance}


# ——— Декор ———

async def place_decoration(principal, decoration_type: str, x: int, y: int) -> Dict[str, Any]:
    kind = catalog.DECORATIONS.get(decoration_type)
    if kind is None:
        raise NotFound("Unknown decoration", code="decoration_type_not_found")
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        w, h = _size(kind)
        await _ensure_free(conn, principal.player_id, int(player["town_size"]), footprint(x, y, w, h))
        if kind["premium"]:
            left = await conn.fetchval(
                """UPDATE premium_decorations SET quantity = quantity - 1
                   WHERE player_id = $1 AND decoration_type = $2 AND quantity > 0 RETURNING quantity""",
                principal.player_id, decoration_type,
            )
            if left is None:
                raise InsufficientResource("Premium decoration not owned", code="premium_not_owned")
            balance = int(player["crystals"])
        else:
            balance = await debit_crystals(conn, principal.player_id, kind["cost"])
        decoration_id = await conn.fetchval(
            """INSERT INTO decorations (player_id, decoration_type, grid_x, grid_y)
               VALUES ($1, $2, $3, $4) RETURNING id""",
            principal.player_id, decoration_type, x, y,
        )
    return {"success": True, "decoration_id": decoration_id, "cost": 0 if kind["premium"] else kind["cost"],
            "new_crystal_balance": balance}


async def _owned_decoration(conn: asyncpg.Connection, player_id: int, decoration_id: int):
    row = await conn.fetchrow(
        "SELECT * FROM decorations WHERE id = $1 AND player_id = $2 FOR UPDATE", decoration_id, player_id,
    )
    if row is None:
        raise NotFound("Decoration not found", code="decoration_not_found")
    return row


async def move_decoration(principal, decoration_id: int, x: int, y: int) -> Dict[str, Any]:
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        d = await _owned_decoration(conn, principal.player_id, decoration_id)
        w, h = _size(catalog.DECORATIONS.get(d["decoration_type"], {"size": (1, 1)}))
        await _ensure_free(conn, principal.player_id, int(player["town_size"]), footprint(x, y, w, h),
                           skip_decoration=decoration_id)
        await conn.execute("UPDATE decorations SET grid_x = $2, grid_y = $3 WHERE id = $1", decoration_id, x, y)
    return {"success": True, "decoration_id": decoration_id, "x": x, "y": y}


async def remove_decoration(principal, decoration_id: int) -> Dict[str, Any]:
    """Премиум-декор возвращается во владение, обычный просто убирается."""
    async with transaction() as conn:
        d = await _owned_decoration(conn, principal.player_id, decoration_id)
        await conn.execute("DELETE FROM decorations WHERE id = $1", decoration_id)
        if catalog.DECORATIONS.get(d["decoration_type"], {}).get("premium"):
            await conn.execute(
                """INSERT INTO premium_decorations (player_id, decoration_type, quantity) VALUES ($1, $2, 1)
                   ON CONFLICT (player_id, decoration_type)
                   DO UPDATE SET quantity = premium_decorations.quantity + 1""",
                principal.player_id, d["decoration_type"],
            )
    return {"success": True, "decoration_id": decoration_id}


# ——— Дороги ———

async def place_road(principal, x: int, y: int) -> Dict[str, Any]:
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        await _ensure_free(conn, principal.player_id, int(player["town_size"]), {(x, y)})
        await conn.execute("INSERT INTO roads (player_id, grid_x, grid_y) VALUES ($1, $2, $3)", principal.player_id, x, y)
    return {"success": True, "x": x, "y": y}


async def remove_road(principal, x: int, y: int) -> Dict[str, Any]:
    async with transaction() as conn:
        removed = await conn.fetchval(
            "DELETE FROM roads WHERE player_id = $1 AND grid_x = $2 AND grid_y = $3 RETURNING id",
            principal.player_id, x, y,
        )
    if removed is None:
        raise NotFound("No road at this cell", code="road_not_found")
    return {"success": True, "x": x, "y": y}


# ——— Расширение ———

async def expand_town(principal, direction: str = "all") -> Dict[str, Any]:
    if direction not in DIRECTIONS:
        raise InvalidState("Direction must be north, south, east, west or all", code="invalid_direction")
    max_size = int(get_town_config()["max_size"])
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        old_size = int(player["town_size"])
        new_size, cost = expansion(direction, old_size)
        if new_size > max_size:
            raise InvalidState(f"Maximum town size ({max_size}x{max_size}) reached", code="max_town_size")
        balance = await debit_crystals(conn, principal.player_id, cost)
        await conn.execute("UPDATE players SET town_size = $2 WHERE id = $1", principal.player_id, new_size)
    logger.info("player %s expanded town %s -> %s", principal.player_id, old_size, new_size)
    return {"success": True, "old_size": old_size, "new_size": new_size, "cost_crystals": cost,
            "new_crystal_balance": balance}
