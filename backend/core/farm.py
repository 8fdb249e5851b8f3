"""
Грядки: 6 участков на игрока. Посадка тратит одно семя, сбор после ready_at.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from core import catalog
from core.activity import record_action
from core.errors import InvalidState, NotFound
from core.ledger import add_item, debit_crystals, lock_player, remove_item
from core.progression import check_achievements, grant_xp, item_xp, log_production
from infrastructure.database import transaction


def _crop(crop_key: str) -> Dict[str, Any]:
    crop = catalog.CROPS.get(crop_key)
    if crop is None:
        raise NotFound("Unknown crop", code="crop_not_found")
    return crop


def _plot_view(row, now: datetime) -> Dict[str, Any]:
    ready_at = row["ready_at"]
    return {
        "plot_index": row["plot_index"],
        "crop": row["crop_key"],
        "planted_at": row["planted_at"],
        "ready_at": ready_at,
        "ready": row["crop_key"] is not None and ready_at is not None and ready_at <= now,
    }


async def list_plots(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            "SELECT * FROM farm_plots WHERE player_id = $1 ORDER BY plot_index", principal.player_id,
        )
    now = datetime.now(timezone.utc)
    return [_plot_view(r, now) for r in rows]


async def buy_seed(principal, crop_key: str, quantity: int = 1) -> Dict[str, Any]:
    """Семенная лавка: seed_price × quantity кристаллов."""
    crop = _crop(crop_key)
    if quantity <= 0:
        raise InvalidState("Quantity must be positive", code="invalid_quantity")
    cost = crop["seed_price"] * quantity
    async with transaction() as conn:
        balance = await debit_crystals(conn, principal.player_id, cost)
        seeds = await add_item(conn, principal.player_id, crop["seed_item_id"], quantity)
    return {
        "success": True,
        "seed_item_id": crop["seed_item_id"],
        "quantity": quantity,
        "cost": cost,
        "seeds_owned": seeds,
        "new_crystal_balance": balance,
    }


async def plant(principal, plot_index: int, crop_key: str) -> Dict[str, Any]:
    crop = _crop(crop_key)
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        plot = await conn.fetchrow(
            "SELECT crop_key FROM farm_plots WHERE player_id = $1 AND plot_index = $2 FOR UPDATE",
            principal.player_id, plot_index,
        )
        if plot is None:
            raise NotFound("Plot not found", code="plot_not_found")
        if plot["crop_key"] is not None:
            raise InvalidState("Plot is already planted", code="plot_occupied")
        seeds_left = await remove_item(conn, principal.player_id, crop["seed_item_id"], 1)
        now = datetime.now(timezone.utc)
        ready_at = now + timedelta(minutes=crop["grow_minutes"])
        await conn.execute(
            """UPDATE farm_plots SET crop_key = $3, planted_at = $4, ready_at = $5
               WHERE player_id = $1 AND plot_index = $2""",
            principal.player_id, plot_index, crop_key, now, ready_at,
        )
        await record_action(conn, principal.player_id, "plant")
    return {"success": True, "plot_index": plot_index, "crop": crop_key, "ready_at": ready_at, "seeds_left": seeds_left}


async def harvest(principal, plot_index: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        plot = await conn.fetchrow(
            "SELECT crop_key, ready_at FROM farm_plots WHERE player_id = $1 AND plot_index = $2 FOR UPDATE",
            principal.player_id, plot_index,
        )
        if plot is None:
            raise NotFound("Plot not found", code="plot_not_found")
        if plot["crop_key"] is None:
            raise InvalidState("Nothing planted on this plot", code="plot_empty")
        if plot["ready_at"] > datetime.now(timezone.utc):
            raise InvalidState("Crop is not ready yet", code="not_ready", ready_at=plot["ready_at"].isoformat())
        crop = catalog.CROPS[plot["crop_key"]]
        await conn.execute(
            """UPDATE farm_plots SET crop_key = NULL, planted_at = NULL, ready_at = NULL
               WHERE player_id = $1 AND plot_index = $2""",
            principal.player_id, plot_index,
        )
        new_quantity = await add_item(conn, principal.player_id, crop["item_id"], crop["yield"])
        xp = await grant_xp(conn, principal.player_id, item_xp(crop["item_id"], crop["yield"]))
        await log_production(conn, principal.player_id, "harvest", crop["key"])
        achievements = await check_achievements(conn, principal.player_id, "harvest_count", 1)
        achievements += await check_achievements(conn, principal.player_id, "crop_variety")
        await record_action(conn, principal.player_id, "harvest")
        balance = await conn.fetchval("SELECT crystals FROM players WHERE id = $1", principal.player_id)
    return {
        "success": True,
        "crop": crop["key"],
        "item_id": crop["item_id"],
        "quantity_harvested": crop["yield"],
        "new_quantity": new_quantity,
        "xp_gained": xp["xp_granted"],
        "levels_gained": xp["levels_gained"],
        "achievements_completed": achievements,
        "new_crystal_balance": int(balance),
    }
