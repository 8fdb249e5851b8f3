"""
Кристаллы, эфир и инвентарь. Каждое списание делается одним UPDATE ... WHERE balance >= n RETURNING:
ноль строк означает нехватку, и действие падает целиком (транзакция откатывается).
Все функции принимают соединение открытой транзакции.

Порядок блокировок: строка игрока (lock_player) берётся первой, до строк слотов,
объявлений и шахты.
"""
from typing import Dict, Optional

import asyncpg

from core.errors import InsufficientResource, NotFound


async def lock_player(conn: asyncpg.Connection, player_id: int) -> asyncpg.Record:
    row = await conn.fetchrow("SELECT * FROM players WHERE id = $1 FOR UPDATE", player_id)
    if row is None:
        raise NotFound("Player not found", code="player_not_found")
    return row


async def lock_players(conn: asyncpg.Connection, player_ids) -> None:
    """Несколько игроков сразу, всегда по возрастанию id: встречные сделки не ловят deadlock."""
    ids = sorted(set(player_ids))
    rows = await conn.fetch("SELECT id FROM players WHERE id = ANY($1::bigint[]) ORDER BY id FOR UPDATE", ids)
    if len(rows) != len(ids):
        raise NotFound("Player not found", code="player_not_found")


async def get_player(conn: asyncpg.Connection, player_id: int) -> asyncpg.Record:
    row = await conn.fetchrow("SELECT * FROM players WHERE id = $1", player_id)
    if row is None:
        raise NotFound("Player not found", code="player_not_found")
    return row


async def debit_crystals(conn: asyncpg.Connection, player_id: int, amount: int) -> int:
    """Списать кристаллы; возвращает новый баланс."""
    if amount <= 0:
        return int(await conn.fetchval("SELECT crystals FROM players WHERE id = $1", player_id) or 0)
    balance = await conn.fetchval(
        """UPDATE players SET crystals = crystals - $2
           WHERE id = $1 AND crystals >= $2 RETURNING crystals""",
        player_id, amount,
    )
    if balance is None:
        raise InsufficientResource(
            f"Insufficient crystals: need {amount}", code="insufficient_crystals", required=amount,
        )
    return int(balance)


async def credit_crystals(conn: asyncpg.Connection, player_id: int, amount: int, earned: bool = True) -> int:
    """Начислить кристаллы. earned=False означает возврат (не считается в crystals_earned)."""
    balance = await conn.fetchval(
        """UPDATE players SET crystals = crystals + $2,
                  crystals_earned = crystals_earned + CASE WHEN $3 THEN $2 ELSE 0 END
           WHERE id = $1 RETURNING crystals""",
        player_id, max(0, amount), earned,
    )
    if balance is None:
        raise NotFound("Player not found", code="player_not_found")
    return int(balance)


async def change_aether(conn: asyncpg.Connection, player_id: int, amount: int, reason: str) -> int:
    """Изменить эфир (amount может быть отрицательным) и записать aether_transactions."""
    if amount < 0:
        balance = await conn.fetchval(
            """UPDATE players SET aether = aether + $2
               WHERE id = $1 AND aether >= -$2 RETURNING aether""",
            player_id, amount,
        )
        if balance is None:
            raise InsufficientResource(
                f"Insufficient aether: need {-amount}", code="insufficient_aether", required=-amount,
            )
    else:
        balance = await conn.fetchval(
            "UPDATE players SET aether = aether + $2 WHERE id = $1 RETURNING aether",
            player_id, amount,
        )
        if balance is None:
            raise NotFound("Player not found", code="player_not_found")
    await conn.execute(
        """INSERT INTO aether_transactions (player_id, amount, reason, balance_after)
           VALUES ($1, $2, $3, $4)""",
        player_id, amount, reason, balance,
    )
    return int(balance)


async def item_quantity(conn: asyncpg.Connection, player_id: int, item_id: int) -> int:
    q = await conn.fetchval(
        "SELECT quantity FROM inventory WHERE player_id = $1 AND item_id = $2", player_id, item_id,
    )
    return int(q or 0)


async def add_item(conn: asyncpg.Connection, player_id: int, item_id: int, quantity: int) -> int:
    """Начислить предмет; возвращает новое количество."""
    if quantity <= 0:
        return await item_quantity(conn, player_id, item_id)
    q = await conn.fetchval(
        """INSERT INTO inventory (player_id, item_id, quantity) VALUES ($1, $2, $3)
           ON CONFLICT (player_id, item_id) DO UPDATE SET quantity = inventory.quantity + EXCLUDED.quantity
           RETURNING quantity""",
        player_id, item_id, quantity,
    )
    return int(q)


async def add_items(conn: asyncpg.Connection, player_id: int, items: Dict[int, int]) -> Dict[int, int]:
    return {iid: await add_item(conn, player_id, iid, qty) for iid, qty in items.items()}


async def remove_item(conn: asyncpg.Connection, player_id: int, item_id: int, quantity: int) -> int:
    """Списать предмет; возвращает остаток. InsufficientResource, если не хватает."""
    if quantity <= 0:
        return await item_quantity(conn, player_id, item_id)
    q = await conn.fetchval(
        """UPDATE inventory SET quantity = quantity - $3
           WHERE player_id = $1 AND item_id = $2 AND quantity >= $3
           RETURNING quantity""",
        player_id, item_id, quantity,
    )
    if q is None:
        have = await item_quantity(conn, player_id, item_id)
        raise InsufficientResource(
            f"Insufficient item {item_id}: need {quantity}, have {have}",
            code="insufficient_items", item_id=item_id, required=quantity, available=have,
        )
    return int(q)


async def remove_items(conn: asyncpg.Connection, player_id: int, items: Dict[int, int]) -> None:
    """Списать набор предметов: всё или ничего (частичное списание откатит транзакция)."""
    for iid, qty in items.items():
        await remove_item(conn, player_id, iid, qty)


async def boost_multiplier(conn: asyncpg.Connection, player_id: int, boost_type: str) -> float:
    """Множитель активного буста; истёкшие строки игнорируются."""
    m: Optional[float] = await conn.fetchval(
        """SELECT multiplier FROM active_boosts
           WHERE player_id = $1 AND boost_type = $2 AND expires_at > NOW()""",
        player_id, boost_type,
    )
    return float(m) if m is not None else 1.0


async def boosted_crystals(conn: asyncpg.Connection, player_id: int, amount: int) -> int:
    if amount <= 0:
        return 0
    return int(amount * await boost_multiplier(conn, player_id, "crystal"))
