"""
Бонусы от уровня игрока и общественных зданий (школа, больница, кинотеатр).
"""
import math
from typing import Dict

import asyncpg

from core import catalog


def level_discount(level: int) -> float:
    """Скидка на постройку: 0.5% за уровень, не больше 25%."""
    return min(max(level, 0) * 0.005, 0.25)


def discounted_cost(base_cost: int, level: int) -> int:
    return base_cost - math.floor(base_cost * level_discount(level))


def production_speed(level: int) -> float:
    """Скорость производства от уровня игрока: +1% за уровень, максимум x1.5."""
    return min(1.0 + min(level, 50) * 0.01, 1.5)


def bonus_from_counts(kind: str, counts: Dict[str, int]) -> float:
    """Суммарный бонус вида kind по количеству зданий каждого типа."""
    total = 0.0
    for btype, count in counts.items():
        bonus = catalog.BUILDINGS.get(btype, {}).get("bonus")
        if not bonus or bonus["kind"] != kind:
            continue
        total += min(bonus["per_building"] * count, bonus["cap"])
    return total


async def building_counts(conn: asyncpg.Connection, player_id: int) -> Dict[str, int]:
    rows = await conn.fetch(
        "SELECT building_type, COUNT(*) AS n FROM buildings WHERE player_id = $1 GROUP BY building_type",
        player_id,
    )
    return {r["building_type"]: int(r["n"]) for r in rows}


async def building_bonus(conn: asyncpg.Connection, player_id: int, kind: str) -> float:
    return bonus_from_counts(kind, await building_counts(conn, player_id))
