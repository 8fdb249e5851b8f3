"""
Регата: недельное соревнование. Игрок вступает, сдаёт задания за очки,
после завершения забирает награду по месту в таблице.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core import catalog
from core.errors import AlreadyDone, InvalidState, NotFound
from core.ledger import lock_player
from core.progression import award_crystals, grant_xp, points_to_xp
from infrastructure.cache import LEADERBOARD_TTL_SEC, cache_delete, cache_get, cache_set, leaderboard_key
from infrastructure.database import from_json, get_setting, to_json, transaction

logger = logging.getLogger(__name__)

STATUSES = ("upcoming", "active", "completed")
SCOPES = ("global", "coven")


def reward_tier(rank: int, total: int) -> str:
    """top_10 / top_25 / participation по месту среди total участников."""
    if rank <= total * 0.10:
        return "top_10"
    if rank <= total * 0.25:
        return "top_25"
    return "participation"


def task_points(task: Dict[str, Any]) -> int:
    return int(task.get("points") or catalog.REGATTA_TASK_DEFAULT_POINTS)


def next_week_window(now: datetime) -> Dict[str, datetime]:
    """Следующий понедельник 00:00 UTC и шесть дней после него."""
    monday = (now + timedelta(days=7 - now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return {"start_date": monday, "end_date": monday + timedelta(days=6)}


def _regatta_view(row, joined: Optional[bool] = None) -> Dict[str, Any]:
    view = {
        "id": row["id"],
        "name": row["name"],
        "start_date": row["start_date"],
        "end_date": row["end_date"],
        "status": row["status"],
        "tasks": from_json(row["tasks"]),
        "rewards": from_json(row["rewards"]),
    }
    if joined is not None:
        view["joined"] = joined
    return view


async def _regatta(conn, regatta_id: int, lock: bool = False):
    sql = "SELECT * FROM regatta_events WHERE id = $1" + (" FOR UPDATE" if lock else "")
    row = await conn.fetchrow(sql, regatta_id)
    if row is None:
        raise NotFound("Regatta not found", code="regatta_not_found")
    return row


async def list_regattas(principal, status: Optional[str] = None) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT e.*, (p.player_id IS NOT NULL) AS joined FROM regatta_events e
               LEFT JOIN regatta_participants p ON p.regatta_id = e.id AND p.player_id = $1
               WHERE ($2::text IS NULL OR e.status = $2)
               ORDER BY e.start_date DESC LIMIT 50""",
            principal.player_id, status,
        )
    return [_regatta_view(r, r["joined"]) for r in rows]


async def join_regatta(principal, regatta_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        regatta = await _regatta(conn, regatta_id)
        now = datetime.now(timezone.utc)
        if regatta["status"] != "active":
            raise InvalidState("Regatta is not active", code="regatta_not_active")
        if not (regatta["start_date"] <= now <= regatta["end_date"]):
            raise InvalidState("Regatta is not currently running", code="regatta_not_running")
        coven_id = await conn.fetchval("SELECT coven_id FROM coven_members WHERE player_id = $1", principal.player_id)
        inserted = await conn.fetchval(
            """INSERT INTO regatta_participants (regatta_id, player_id, coven_id) VALUES ($1, $2, $3)
               ON CONFLICT (regatta_id, player_id) DO NOTHING RETURNING player_id""",
            regatta_id, principal.player_id, coven_id,
        )
        if inserted is None:
            raise AlreadyDone("Already joined this regatta", code="already_joined")
    await _drop_leaderboards(regatta_id)
    return {"success": True, "regatta_id": regatta_id, "coven_id": coven_id}


async def submit_task(principal, regatta_id: int, task_index: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        regatta = await _regatta(conn, regatta_id)
        if regatta["status"] != "active":
            raise InvalidState("Regatta is not active", code="regatta_not_active")
        participant = await conn.fetchrow(
            "SELECT points FROM regatta_participants WHERE regatta_id = $1 AND player_id = $2 FOR UPDATE",
            regatta_id, principal.player_id,
        )
        if participant is None:
            raise InvalidState("Join the regatta first", code="not_joined")
        tasks = from_json(regatta["tasks"]) or []
        if not 0 <= task_index < len(tasks):
            raise NotFound("Task not found", code="task_not_found")
        points = task_points(tasks[task_index])
        inserted = await conn.fetchval(
            """INSERT INTO regatta_submissions (regatta_id, player_id, task_index, points)
               VALUES ($1, $2, $3, $4) ON CONFLICT DO NOTHING RETURNING task_index""",
            regatta_id, principal.player_id, task_index, points,
        )
        if inserted is None:
            raise AlreadyDone("Task already submitted", code="task_already_submitted")
        total = await conn.fetchval(
            """UPDATE regatta_participants SET points = points + $3
               WHERE regatta_id = $1 AND player_id = $2 RETURNING points""",
            regatta_id, principal.player_id, points,
        )
        xp = await grant_xp(conn, principal.player_id, points_to_xp(points))
    await _drop_leaderboards(regatta_id)
    return {"success": True, "points_awarded": points, "total_points": int(total),
            "xp_gained": xp["xp_granted"], "levels_gained": xp["levels_gained"]}


async def leaderboard(regatta_id: int, scope: str = "global") -> List[Dict[str, Any]]:
    if scope not in SCOPES:
        raise InvalidState("Scope must be global or coven", code="invalid_scope")
    key = leaderboard_key(regatta_id, scope)
    cached = await cache_get(key)
    if cached is not None:
        return cached
    async with transaction() as conn:
        await _regatta(conn, regatta_id)
        limit = int(await get_setting("regatta.leaderboard_limit", 100, conn=conn))
        if scope == "coven":
            rows = await conn.fetch(
                """SELECT p.coven_id, c.name AS coven_name, SUM(p.points) AS total_points,
                          COUNT(*) AS member_count
                   FROM regatta_participants p JOIN covens c ON c.id = p.coven_id
                   WHERE p.regatta_id = $1
                   GROUP BY p.coven_id, c.name ORDER BY total_points DESC LIMIT $2""",
                regatta_id, limit,
            )
            board = [{"rank": i + 1, "coven_id": r["coven_id"], "coven_name": r["coven_name"],
                      "total_points": int(r["total_points"]), "member_count": int(r["member_count"])}
                     for i, r in enumerate(rows)]
        else:
            rows = await conn.fetch(
                """SELECT p.player_id, pl.username, p.points, p.coven_id
                   FROM regatta_participants p JOIN players pl ON pl.id = p.player_id
                   WHERE p.regatta_id = $1 ORDER BY p.points DESC, p.joined_at LIMIT $2""",
                regatta_id, limit,
            )
            board = [{"rank": i + 1, "player_id": r["player_id"], "username": r["username"],
                      "points": int(r["points"]), "coven_id": r["coven_id"]}
                     for i, r in enumerate(rows)]
    await cache_set(key, board, LEADERBOARD_TTL_SEC)
    return board


async def claim_rewards(principal, regatta_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        regatta = await _regatta(conn, regatta_id)
        if regatta["status"] != "completed":
            raise InvalidState("Regatta is not completed yet", code="regatta_not_completed")
        participant = await conn.fetchrow(
            """SELECT points, rewards_claimed FROM regatta_participants
               WHERE regatta_id = $1 AND player_id = $2 FOR UPDATE""",
            regatta_id, principal.player_id,
        )
        if participant is None:
            raise InvalidState("You did not participate in this regatta", code="not_joined")
        if participant["rewards_claimed"]:
            raise AlreadyDone("Rewards already claimed", code="rewards_claimed")
        total = int(await conn.fetchval(
            "SELECT COUNT(*) FROM regatta_participants WHERE regatta_id = $1", regatta_id,
        ))
        rank = int(await conn.fetchval(
            "SELECT COUNT(*) + 1 FROM regatta_participants WHERE regatta_id = $1 AND points > $2",
            regatta_id, participant["points"],
        ))
        tier = reward_tier(rank, total)
        reward = (from_json(regatta["rewards"]) or {}).get(tier, {})
        crystals = int(reward.get("crystals", 0))
        await lock_player(conn, principal.player_id)
        balance = await award_crystals(conn, principal.player_id, crystals)
        await conn.execute(
            "UPDATE regatta_participants SET rewards_claimed = TRUE WHERE regatta_id = $1 AND player_id = $2",
            regatta_id, principal.player_id,
        )
    return {"success": True, "rank": rank, "total_participants": total, "tier": tier,
            "crystals_awarded": crystals, "new_crystal_balance": balance}


async def _drop_leaderboards(regatta_id: int) -> None:
    for scope in SCOPES:
        await cache_delete(leaderboard_key(regatta_id, scope))


# ——— Администрирование ———

async def create_regatta(name: str, start_date: datetime, end_date: datetime, tasks: List[Dict[str, Any]],
                         rewards: Dict[str, Any], status: str = "upcoming") -> Dict[str, Any]:
    if end_date <= start_date:
        raise InvalidState("end_date must be after start_date", code="invalid_window")
    if status not in STATUSES:
        raise InvalidState("Unknown status", code="invalid_status")
    async with transaction() as conn:
        regatta_id = await conn.fetchval(
            """INSERT INTO regatta_events (name, start_date, end_date, tasks, rewards, status)
               VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6) RETURNING id""",
            name, start_date, end_date, to_json(tasks), to_json(rewards), status,
        )
    logger.info("regatta %s created: %s", regatta_id, name)
    return {"success": True, "regatta_id": regatta_id}


async def create_weekly_regatta(now: Optional[datetime] = None) -> Dict[str, Any]:
    window = next_week_window(now or datetime.now(timezone.utc))
    name = f"Weekly Regatta - {window['start_date'].strftime('%d %B %Y')}"
    return await create_regatta(name, window["start_date"], window["end_date"],
                                catalog.WEEKLY_REGATTA_TASKS, catalog.WEEKLY_REGATTA_REWARDS)


async def set_regatta_status(regatta_id: int, status: str) -> Dict[str, Any]:
    if status not in STATUSES:
        raise InvalidState("Unknown status", code="invalid_status")
    async with transaction() as conn:
        regatta = await _regatta(conn, regatta_id, lock=True)
        await conn.execute("UPDATE regatta_events SET status = $2 WHERE id = $1", regatta_id, status)
    logger.info("regatta %s status %s -> %s", regatta_id, regatta["status"], status)
    await _drop_leaderboards(regatta_id)
    return {"success": True, "regatta_id": regatta_id, "status": status}
