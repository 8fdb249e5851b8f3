"""
Рынок: продажа по фиксированным ценам и объявления между игроками.

Предметы объявления сразу уходят из инвентаря продавца (эскроу) и возвращаются
при отмене или истечении срока. Покупка блокирует строку объявления (FOR UPDATE),
поэтому из двух одновременных покупателей успевает ровно один.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from config import get_economy_config
from core import catalog
from core.activity import record_action
from core.errors import InvalidState, NotFound, Unauthorized
from core.ledger import add_item, debit_crystals, lock_player, lock_players, remove_item
from core.progression import award_crystals, check_achievements, grant_xp, item_xp
from infrastructure.database import transaction

logger = logging.getLogger(__name__)

# Комиссия рынка постоянная: продавец всегда получает P - floor(P * 0.05)
LISTING_COMMISSION = 0.05


def seller_proceeds(price: int, commission_rate: float) -> Dict[str, int]:
    commission = math.floor(price * commission_rate)
    return {"commission": commission, "seller_receives": price - commission}


def _listing_view(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "seller_id": row["seller_id"],
        "item_id": row["item_id"],
        "item_name": catalog.item_name(row["item_id"]),
        "quantity": row["quantity"],
        "price_crystals": row["price_crystals"],
        "created_at": row["created_at"],
        "expires_at": row["expires_at"],
        "purchased": row["purchased_at"] is not None,
        "closed": row["closed_at"] is not None,
    }


async def sell_item(principal, item_id: int, quantity: int) -> Dict[str, Any]:
    price = catalog.MARKET_PRICES.get(item_id)
    if price is None:
        raise NotFound("Item cannot be sold on the market", code="item_not_sellable")
    if quantity <= 0:
        raise InvalidState("Quantity must be positive", code="invalid_quantity")
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        left = await remove_item(conn, principal.player_id, item_id, quantity)
        earned = price * quantity
        balance = await award_crystals(conn, principal.player_id, earned)
        xp = await grant_xp(conn, principal.player_id, item_xp(item_id, quantity) // 2)
        await record_action(conn, principal.player_id, "sell", quantity)
    return {"success": True, "item_id": item_id, "quantity_sold": quantity, "crystals_earned": earned,
            "new_quantity": left, "new_crystal_balance": balance, "xp_gained": xp["xp_granted"]}


async def create_listing(principal, item_id: int, quantity: int, price_crystals: int,
                         hours: Optional[int] = None) -> Dict[str, Any]:
    if quantity <= 0 or price_crystals <= 0:
        raise InvalidState("Quantity and price must be positive", code="invalid_listing")
    if item_id not in catalog.ITEMS and catalog.parse_animal_token(item_id) is None:
        raise NotFound("Unknown item", code="item_not_found")
    hours = hours or int(get_economy_config()["listing_default_hours"])
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        await remove_item(conn, principal.player_id, item_id, quantity)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=hours)
        listing_id = await conn.fetchval(
            """INSERT INTO market_listings (seller_id, item_id, quantity, price_crystals, expires_at)
               VALUES ($1, $2, $3, $4, $5) RETURNING id""",
            principal.player_id, item_id, quantity, price_crystals, expires_at,
        )
    return {"success": True, "listing_id": listing_id, "expires_at": expires_at}


async def purchase_listing(principal, listing_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        seller_id = await conn.fetchval("SELECT seller_id FROM market_listings WHERE id = $1", listing_id)
        if seller_id is None:
            raise NotFound("Listing not found", code="listing_not_found")
        # продавец в объявлении не меняется: игроков блокируем до самого объявления
        await lock_players(conn, (principal.player_id, seller_id))
        listing = await conn.fetchrow("SELECT * FROM market_listings WHERE id = $1 FOR UPDATE", listing_id)
        if listing["purchased_at"] is not None or listing["closed_at"] is not None:
            raise InvalidState("Listing is no longer available", code="listing_unavailable")
        if listing["expires_at"] <= datetime.now(timezone.utc):
            raise InvalidState("Listing has expired", code="listing_expired")
        if listing["seller_id"] == principal.player_id:
            raise InvalidState("Cannot buy your own listing", code="own_listing")
        price = int(listing["price_crystals"])
        split = seller_proceeds(price, LISTING_COMMISSION)
        balance = await debit_crystals(conn, principal.player_id, price)
        await award_crystals(conn, listing["seller_id"], split["seller_receives"])
        new_quantity = await add_item(conn, principal.player_id, listing["item_id"], listing["quantity"])
        await conn.execute(
            """UPDATE market_listings SET buyer_id = $2, purchased_at = NOW(), commission = $3
               WHERE id = $1""",
            listing_id, principal.player_id, split["commission"],
        )
        await check_achievements(conn, principal.player_id, "trade_count", 1)
        await check_achievements(conn, listing["seller_id"], "trade_count", 1)
    logger.info("listing %s bought by %s for %s (commission %s)",
                listing_id, principal.player_id, price, split["commission"])
    return {"success": True, "listing_id": listing_id, "item_id": listing["item_id"],
            "quantity": listing["quantity"], "price": price, "commission": split["commission"],
            "new_quantity": new_quantity, "new_crystal_balance": balance}


async def cancel_listing(principal, listing_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        listing = await conn.fetchrow("SELECT * FROM market_listings WHERE id = $1 FOR UPDATE", listing_id)
        if listing is None:
            raise NotFound("Listing not found", code="listing_not_found")
        if listing["seller_id"] != principal.player_id:
            raise Unauthorized("Not your listing", code="not_owner")
        if listing["purchased_at"] is not None or listing["closed_at"] is not None:
            raise InvalidState("Listing is no longer active", code="listing_unavailable")
        await conn.execute("UPDATE market_listings SET closed_at = NOW() WHERE id = $1", listing_id)
        new_quantity = await add_item(conn, principal.player_id, listing["item_id"], listing["quantity"])
    return {"success": True, "listing_id": listing_id, "returned": listing["quantity"], "new_quantity": new_quantity}


async def reclaim_expired_listings() -> int:
    """Вернуть продавцам предметы из истёкших непроданных объявлений. Возвращает число объявлений."""
    async with transaction() as conn:
        rows = await conn.fetch(
            """UPDATE market_listings SET closed_at = NOW()
               WHERE purchased_at IS NULL AND closed_at IS NULL AND expires_at <= NOW()
               RETURNING seller_id, item_id, quantity""",
        )
        for r in rows:
            await add_item(conn, r["seller_id"], r["item_id"], r["quantity"])
    if rows:
        logger.info("reclaimed %s expired listings", len(rows))
    return len(rows)


async def browse_listings(item_id: Optional[int] = None, limit: int = 50) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT * FROM market_listings
               WHERE purchased_at IS NULL AND closed_at IS NULL AND expires_at > NOW()
                 AND ($1::int IS NULL OR item_id = $1)
               ORDER BY price_crystals::float / quantity, created_at LIMIT $2""",
            item_id, limit,
        )
    return [_listing_view(r) for r in rows]


async def my_listings(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            "SELECT * FROM market_listings WHERE seller_id = $1 ORDER BY created_at DESC LIMIT 100",
            principal.player_id,
        )
    return [_listing_view(r) for r in rows]
