"""
Опыт, уровни, достижения и квесты.

grant_xp: единственный путь начисления опыта; award_crystals: начисление кристаллов
с учётом достижения crystals_earned. Достижения выдают награду сразу при первом пересечении
порога; claim_achievement только отмечает титул.
"""
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from core import catalog
from core.bonuses import building_bonus
from core.errors import AlreadyDone, InvalidState, NotFound
from core.ledger import add_items, boost_multiplier, credit_crystals
from infrastructure.database import from_json, to_json, transaction

logger = logging.getLogger(__name__)


# ——— Чистые правила ———

def xp_for_level(level: int) -> int:
    return level * 1000


def apply_xp(level: int, xp: int) -> Tuple[int, int, int]:
    """Перенос избытка опыта в уровни. Возвращает (level, xp, levels_gained)."""
    gained = 0
    while xp >= xp_for_level(level):
        xp -= xp_for_level(level)
        level += 1
        gained += 1
    return level, xp, gained


def item_xp(item_id: int, quantity: int = 1) -> int:
    """Опыт за предмет: от рыночной цены, иначе по диапазону id."""
    quantity = max(0, quantity)
    price = catalog.MARKET_PRICES.get(item_id)
    if price is not None:
        return max(price // 2, 5) * quantity
    if 30 <= item_id <= 39:
        per_unit = 50 + (item_id - 30) * 10
    elif 20 <= item_id <= 29:
        per_unit = 15 + (item_id - 20) * 2
    elif 11 <= item_id <= 19:
        per_unit = 10 + (item_id - 11) * 2
    else:
        per_unit = 5 + max(item_id - 1, 0) if item_id <= 10 else 5
    return per_unit * quantity


POINT_XP = 10


def points_to_xp(points: int, share: int = 1) -> int:
    """Очки регаты и ковена идут в опыт: 1 очко = 10 XP, поровну на share игроков."""
    if points <= 0 or share <= 0:
        return 0
    return points * POINT_XP // share


def new_quest_progress(quest: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{"type": o["type"], "target": int(o["target"]), "current": 0} for o in quest["objectives"]]


def advance_objectives(progress: List[Dict[str, Any]], action: str, increment: int) -> Tuple[List[Dict[str, Any]], bool, bool]:
    """
    Продвинуть цели данного типа (с потолком target).
    Возвращает (progress, changed, all_done).
    """
    changed = False
    updated = []
    for obj in progress:
        obj = dict(obj)
        if obj["type"] == action and obj["current"] < obj["target"]:
            obj["current"] = min(obj["target"], obj["current"] + increment)
            changed = True
        updated.append(obj)
    all_done = bool(updated) and all(o["current"] >= o["target"] for o in updated)
    return updated, changed, all_done


# ——— Опыт и кристаллы ———

async def grant_xp(conn: asyncpg.Connection, player_id: int, amount: int) -> Dict[str, Any]:
    """Начислить опыт с бустом и бонусом школ. Возвращает xp_granted, levels_gained, level, xp."""
    if amount <= 0:
        return {"xp_granted": 0, "levels_gained": 0}
    school = await building_bonus(conn, player_id, "xp")
    boost = await boost_multiplier(conn, player_id, "xp")
    final = int(amount * (1 + school) * boost)
    row = await conn.fetchrow("SELECT level, xp FROM players WHERE id = $1 FOR UPDATE", player_id)
    if row is None:
        raise NotFound("Player not found", code="player_not_found")
    level, xp, gained = apply_xp(int(row["level"]), int(row["xp"]) + final)
    await conn.execute("UPDATE players SET level = $2, xp = $3 WHERE id = $1", player_id, level, xp)
    if gained:
        logger.info("player %s level up: %s -> %s", player_id, row["level"], level)
        await check_achievements(conn, player_id, "player_level")
    return {"xp_granted": final, "levels_gained": gained, "level": level, "xp": xp}


async def award_crystals(conn: asyncpg.Connection, player_id: int, amount: int) -> int:
    """Начислить заработанные кристаллы и проверить crystals_earned. Возвращает баланс."""
    balance = await credit_crystals(conn, player_id, amount)
    if amount > 0:
        await check_achievements(conn, player_id, "crystals_earned")
        balance = int(await conn.fetchval("SELECT crystals FROM players WHERE id = $1", player_id))
    return balance


# ——— Достижения ———

async def log_production(conn: asyncpg.Connection, player_id: int, action: str, subject: str) -> None:
    await conn.execute(
        "INSERT INTO production_log (player_id, action, subject) VALUES ($1, $2, $3)",
        player_id, action, subject,
    )


async def _absolute_value(conn: asyncpg.Connection, player_id: int, condition: str) -> int:
    if condition == "mine_depth":
        v = await conn.fetchval("SELECT depth FROM mine_state WHERE player_id = $1", player_id)
    elif condition == "player_level":
        v = await conn.fetchval("SELECT level FROM players WHERE id = $1", player_id)
    elif condition == "crystals_earned":
        v = await conn.fetchval("SELECT crystals_earned FROM players WHERE id = $1", player_id)
    else:
        v = await conn.fetchval("SELECT daily_streak FROM players WHERE id = $1", player_id)
    return int(v or 0)


async def check_achievements(
    conn: asyncpg.Connection, player_id: int, condition: str, value: int = 1,
) -> List[Dict[str, Any]]:
    """
    Продвинуть все достижения условия condition. value: прирост (increment) или
    кандидат в максимум (upgrade_level); абсолютные и distinct-условия считаются из БД.
    Возвращает впервые завершённые достижения (награда уже выдана).
    """
    defs = [a for a in catalog.ACHIEVEMENTS.values() if a["condition"] == condition]
    if not defs:
        return []
    if condition in catalog.ABSOLUTE_CONDITIONS:
        absolute: Optional[int] = await _absolute_value(conn, player_id, condition)
    elif condition in catalog.DISTINCT_CONDITIONS:
        absolute = int(await conn.fetchval(
            "SELECT COUNT(DISTINCT subject) FROM production_log WHERE player_id = $1 AND action = $2",
            player_id, catalog.DISTINCT_CONDITIONS[condition],
        ))
    else:
        absolute = None

    completed: List[Dict[str, Any]] = []
    for ach in defs:
        if absolute is not None:
            new_sql = "$3"
            arg = absolute
        elif condition in catalog.MAX_CONDITIONS:
            new_sql = "GREATEST(player_achievements.progress, $3)"
            arg = value
        else:
            new_sql = "player_achievements.progress + $3"
            arg = value
        row = await conn.fetchrow(
            f"""INSERT INTO player_achievements (player_id, achievement_key, progress)
                VALUES ($1, $2, $3)
                ON CONFLICT (player_id, achievement_key) DO UPDATE SET progress = {new_sql}
                RETURNING progress, completed""",
            player_id, ach["key"], arg,
        )
        if row["completed"] or int(row["progress"]) < ach["target"]:
            continue
        flipped = await conn.fetchval(
            """UPDATE player_achievements SET completed = TRUE, completed_at = NOW()
               WHERE player_id = $1 AND achievement_key = $2 AND completed = FALSE
               RETURNING achievement_key""",
            player_id, ach["key"],
        )
        if flipped is None:
            continue
        logger.info("player %s completed achievement %s", player_id, ach["key"])
        await award_crystals(conn, player_id, ach["crystals"])
        await grant_xp(conn, player_id, ach["xp"])
        completed.append({"key": ach["key"], "name": ach["name"], "crystals": ach["crystals"], "xp": ach["xp"]})
    return completed


async def list_achievements(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            "SELECT * FROM player_achievements WHERE player_id = $1", principal.player_id,
        )
    by_key = {r["achievement_key"]: r for r in rows}
    result = []
    for key, ach in catalog.ACHIEVEMENTS.items():
        r = by_key.get(key)
        result.append({
            **ach,
            "progress": int(r["progress"]) if r else 0,
            "completed": bool(r and r["completed"]),
            "claimed": bool(r and r["claimed"]),
        })
    return result


async def claim_achievement(principal, achievement_key: str) -> Dict[str, Any]:
    """Отметить титул. Награда уже выдана при завершении."""
    ach = catalog.ACHIEVEMENTS.get(achievement_key)
    if ach is None:
        raise NotFound("Unknown achievement", code="achievement_not_found")
    async with transaction() as conn:
        row = await conn.fetchrow(
            """SELECT completed, claimed FROM player_achievements
               WHERE player_id = $1 AND achievement_key = $2 FOR UPDATE""",
            principal.player_id, achievement_key,
        )
        if row is None or not row["completed"]:
            raise InvalidState("Achievement not completed", code="achievement_not_completed")
        if row["claimed"]:
            raise AlreadyDone("Achievement already claimed", code="achievement_already_claimed")
        await conn.execute(
            """UPDATE player_achievements SET claimed = TRUE, claimed_at = NOW()
               WHERE player_id = $1 AND achievement_key = $2""",
            principal.player_id, achievement_key,
        )
    return {"success": True, "achievement": achievement_key, "title": ach["name"]}


# ——— Квесты ———

def _quest_expiry(quest: Dict[str, Any], now: datetime) -> Optional[datetime]:
    hours = catalog.QUEST_DURATIONS_HOURS.get(quest["type"])
    return now + timedelta(hours=hours) if hours else None


async def start_quest_in(conn: asyncpg.Connection, player_id: int, quest_key: str) -> Dict[str, Any]:
    quest = catalog.QUESTS.get(quest_key)
    if quest is None:
        raise NotFound("Unknown quest", code="quest_not_found")
    now = datetime.now(timezone.utc)
    existing = await conn.fetchrow(
        "SELECT expires_at FROM quest_progress WHERE player_id = $1 AND quest_key = $2 FOR UPDATE",
        player_id, quest_key,
    )
    if existing is not None and (existing["expires_at"] is None or existing["expires_at"] > now):
        raise AlreadyDone("Quest already started", code="quest_already_started")
    progress = new_quest_progress(quest)
    await conn.execute(
        """INSERT INTO quest_progress (player_id, quest_key, progress, started_at, expires_at)
           VALUES ($1, $2, $3::jsonb, $4, $5)
           ON CONFLICT (player_id, quest_key) DO UPDATE SET
             progress = EXCLUDED.progress, completed = FALSE, completed_at = NULL,
             claimed = FALSE, claimed_at = NULL, started_at = EXCLUDED.started_at,
             expires_at = EXCLUDED.expires_at""",
        player_id, quest_key, to_json(progress), now, _quest_expiry(quest, now),
    )
    return {"quest_key": quest_key, "progress": progress, "expires_at": _quest_expiry(quest, now)}


async def start_quest(principal, quest_key: str) -> Dict[str, Any]:
    async with transaction() as conn:
        return await start_quest_in(conn, principal.player_id, quest_key)


async def update_quest_progress(conn: asyncpg.Connection, player_id: int, action: str, increment: int = 1) -> List[str]:
    """Продвинуть активные квесты по типу действия. Возвращает ключи только что завершённых."""
    if increment <= 0:
        return []
    rows = await conn.fetch(
        """SELECT quest_key, progress FROM quest_progress
           WHERE player_id = $1 AND completed = FALSE
             AND (expires_at IS NULL OR expires_at > NOW())
           FOR UPDATE""",
        player_id,
    )
    finished = []
    for r in rows:
        progress, changed, done = advance_objectives(from_json(r["progress"]) or [], action, increment)
        if not changed:
            continue
        await conn.execute(
            """UPDATE quest_progress SET progress = $3::jsonb, completed = $4,
                 completed_at = CASE WHEN $4 THEN NOW() ELSE NULL END
               WHERE player_id = $1 AND quest_key = $2""",
            player_id, r["quest_key"], to_json(progress), done,
        )
        if done:
            finished.append(r["quest_key"])
    return finished


async def claim_quest(principal, quest_key: str) -> Dict[str, Any]:
    quest = catalog.QUESTS.get(quest_key)
    if quest is None:
        raise NotFound("Unknown quest", code="quest_not_found")
    async with transaction() as conn:
        row = await conn.fetchrow(
            """SELECT completed, claimed FROM quest_progress
               WHERE player_id = $1 AND quest_key = $2 FOR UPDATE""",
            principal.player_id, quest_key,
        )
        if row is None:
            raise NotFound("Quest not started", code="quest_not_started")
        if row["claimed"]:
            raise AlreadyDone("Quest reward already claimed", code="quest_already_claimed")
        if not row["completed"]:
            raise InvalidState("Quest not completed", code="quest_not_completed")
        await conn.execute(
            """UPDATE quest_progress SET claimed = TRUE, claimed_at = NOW()
               WHERE player_id = $1 AND quest_key = $2""",
            principal.player_id, quest_key,
        )
        rewards = quest["rewards"]
        balance = await award_crystals(conn, principal.player_id, rewards["crystals"])
        xp = await grant_xp(conn, principal.player_id, rewards["xp"])
        items = catalog.resolve_items(rewards.get("items") or {})
        await add_items(conn, principal.player_id, items)
        balance = int(await conn.fetchval("SELECT crystals FROM players WHERE id = $1", principal.player_id))
    return {
        "success": True,
        "quest_key": quest_key,
        "crystals_awarded": rewards["crystals"],
        "xp_awarded": xp["xp_granted"],
        "items_awarded": {str(k): v for k, v in items.items()},
        "new_crystal_balance": balance,
    }


async def list_quests(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            "SELECT * FROM quest_progress WHERE player_id = $1", principal.player_id,
        )
    now = datetime.now(timezone.utc)
    result = []
    for r in rows:
        quest = catalog.QUESTS.get(r["quest_key"])
        if quest is None:
            continue
        result.append({
            "quest_key": r["quest_key"],
            "type": quest["type"],
            "title": quest["title"],
            "rewards": quest["rewards"],
            "progress": from_json(r["progress"]),
            "completed": r["completed"],
            "claimed": r["claimed"],
            "expires_at": r["expires_at"],
            "expired": r["expires_at"] is not None and r["expires_at"] <= now,
        })
    result.sort(key=lambda q: (catalog.QUESTS[q["quest_key"]]["order_index"], q["quest_key"]))
    return result


async def generate_daily_quests_in(conn: asyncpg.Connection, player_id: int) -> List[str]:
    """Убрать истёкшие дневные квесты и выдать до DAILY_QUEST_PICK новых."""
    daily_keys = [k for k, q in catalog.QUESTS.items() if q["type"] == "daily"]
    await conn.execute(
        """DELETE FROM quest_progress
           WHERE player_id = $1 AND quest_key = ANY($2::text[]) AND expires_at <= NOW()""",
        player_id, daily_keys,
    )
    active = {
        r["quest_key"] for r in await conn.fetch(
            "SELECT quest_key FROM quest_progress WHERE player_id = $1 AND quest_key = ANY($2::text[])",
            player_id, daily_keys,
        )
    }
    free = [k for k in daily_keys if k not in active]
    picked = random.sample(free, min(len(free), max(0, catalog.DAILY_QUEST_PICK - len(active))))
    for key in picked:
        await start_quest_in(conn, player_id, key)
    return picked


async def generate_daily_quests(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        picked = await generate_daily_quests_in(conn, principal.player_id)
    return {"started": picked}


async def generate_daily_quests_all() -> int:
    """Для внутреннего крона: дневные квесты всем игрокам. Возвращает число выданных."""
    async with transaction() as conn:
        ids = [r["id"] for r in await conn.fetch("SELECT id FROM players")]
    total = 0
    for pid in ids:
        async with transaction() as conn:
            total += len(await generate_daily_quests_in(conn, pid))
    logger.info("generate_daily_quests_all: %s quests for %s players", total, len(ids))
    return total
