"""
Ежедневная награда: раз в календарный день UTC, серия дней подряд.
"""
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from config import get_daily_reward_config
from core import catalog
from core.bonuses import building_bonus
from core.ledger import add_items, lock_player
from core.progression import award_crystals, check_achievements
from infrastructure.database import get_setting, transaction


def next_streak(last_claimed: Optional[date], today: date, streak: int) -> int:
    """Серия продолжается, если прошлая награда была вчера; иначе начинается заново."""
    if last_claimed is not None and last_claimed == today - timedelta(days=1):
        return streak + 1
    return 1


def reward_crystals(base: int, cinema_bonus: float) -> int:
    return int(math.floor(base * (1 + cinema_bonus)))


async def claim_daily_reward(principal, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or datetime.now(timezone.utc).date()
    cfg = get_daily_reward_config()
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        if player["last_claimed_date"] == today:
            return {"success": True, "alreadyClaimed": True, "streak": player["daily_streak"],
                    "new_crystal_balance": int(player["crystals"])}
        streak = next_streak(player["last_claimed_date"], today, int(player["daily_streak"]))
        base = int(await get_setting("daily_reward.base_crystals", cfg["base_crystals"], conn=conn))
        crystals = reward_crystals(base, await building_bonus(conn, principal.player_id, "crystals"))
        await conn.execute(
            "UPDATE players SET daily_streak = $2, last_claimed_date = $3 WHERE id = $1",
            principal.player_id, streak, today,
        )
        await conn.execute(
            """INSERT INTO daily_reward_claims (player_id, claim_date, crystals, streak)
               VALUES ($1, $2, $3, $4)""",
            principal.player_id, today, crystals, streak,
        )
        balance = await award_crystals(conn, principal.player_id, crystals)
        seeds = {catalog.seed_item_id(crop): qty for crop, qty in cfg["starter_seeds"].items()}
        await add_items(conn, principal.player_id, seeds)
        achievements = await check_achievements(conn, principal.player_id, "daily_streak")
    return {
        "success": True,
        "alreadyClaimed": False,
        "crystals_awarded": crystals,
        "seeds": {str(k): v for k, v in seeds.items()},
        "streak": streak,
        "achievements_completed": achievements,
        "new_crystal_balance": balance,
    }
