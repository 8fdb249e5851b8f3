"""
Ковены (гильдии): состав с ролями, приглашения, общий пул ресурсов и задания.

Прогресс задания хранится инкрементально: coven_task_objectives.total растёт в той же
транзакции, что и вклад игрока, завершение решается только по этим строкам.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from core.errors import AlreadyDone, InvalidState, NotFound, Unauthorized
from core.ledger import lock_player
from core.notifications import queue_notification
from core.progression import award_crystals, check_achievements, grant_xp, points_to_xp
from infrastructure.database import from_json, to_json, transaction

logger = logging.getLogger(__name__)

ROLES = ("member", "elder", "leader")
MANAGER_ROLES = ("leader", "elder")
INVITATION_DAYS = 7
DEFAULT_TASK_HOURS = 168


def split_shared_crystals(total: int, members: int) -> Dict[str, int]:
    """Поровну между участниками; остаток уходит в казну ковена."""
    if members <= 0 or total <= 0:
        return {"per_member": 0, "remainder": max(total, 0)}
    per_member = total // members
    return {"per_member": per_member, "remainder": total - per_member * members}


def validate_objectives(objectives: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not objectives:
        raise InvalidState("Task needs at least one objective", code="task_objectives_empty")
    cleaned = []
    for o in objectives:
        otype = str(o.get("type") or "").strip()
        target = int(o.get("target") or 0)
        if not otype or target <= 0:
            raise InvalidState("Objective needs type and positive target", code="task_objective_invalid")
        cleaned.append({"type": otype, "target": target})
    return cleaned


# ——— Вспомогательные ———

async def _membership(conn: asyncpg.Connection, player_id: int, lock: bool = False) -> Optional[asyncpg.Record]:
    sql = "SELECT coven_id, role FROM coven_members WHERE player_id = $1"
    if lock:
        sql += " FOR UPDATE"
    return await conn.fetchrow(sql, player_id)


async def _require_membership(conn: asyncpg.Connection, player_id: int) -> asyncpg.Record:
    m = await _membership(conn, player_id, lock=True)
    if m is None:
        raise NotFound("You are not in a coven", code="not_in_coven")
    return m


async def _log(conn: asyncpg.Connection, coven_id: int, player_id: Optional[int], action: str,
               details: Optional[Dict[str, Any]] = None) -> None:
    await conn.execute(
        "INSERT INTO coven_activity (coven_id, player_id, action, details) VALUES ($1, $2, $3, $4::jsonb)",
        coven_id, player_id, action, to_json(details or {}),
    )


async def _add_member(conn: asyncpg.Connection, coven_id: int, player_id: int, role: str = "member") -> None:
    if await _membership(conn, player_id) is not None:
        raise AlreadyDone("Already in a coven", code="already_in_coven")
    await conn.execute(
        "INSERT INTO coven_members (player_id, coven_id, role) VALUES ($1, $2, $3)",
        player_id, coven_id, role,
    )
    await conn.execute("UPDATE covens SET member_count = member_count + 1 WHERE id = $1", coven_id)
    await _log(conn, coven_id, player_id, "joined", {"role": role})


async def _remove_member(conn: asyncpg.Connection, coven_id: int, player_id: int, action: str) -> bool:
    """Удалить участника; пустой ковен удаляется. Возвращает True, если ковен удалён."""
    await conn.execute("DELETE FROM coven_members WHERE player_id = $1", player_id)
    left = await conn.fetchval(
        "UPDATE covens SET member_count = member_count - 1 WHERE id = $1 RETURNING member_count", coven_id,
    )
    if left is not None and left <= 0:
        await conn.execute("DELETE FROM covens WHERE id = $1", coven_id)
        logger.info("coven %s deleted: no members left", coven_id)
        return True
    await _log(conn, coven_id, player_id, action)
    return False


# ——— Состав ———

async def create_coven(principal, name: str, description: Optional[str] = None, is_public: bool = True) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise InvalidState("Coven name required", code="coven_name_required")
    async with transaction() as conn:
        if await _membership(conn, principal.player_id) is not None:
            raise AlreadyDone("Already in a coven", code="already_in_coven")
        if await conn.fetchval("SELECT 1 FROM covens WHERE lower(name) = lower($1)", name):
            raise InvalidState("Coven name is taken", code="coven_name_taken")
        coven_id = await conn.fetchval(
            """INSERT INTO covens (name, description, is_public, leader_id, member_count)
               VALUES ($1, $2, $3, $4, 0) RETURNING id""",
            name, description, is_public, principal.player_id,
        )
        await conn.execute("INSERT INTO coven_resources (coven_id) VALUES ($1)", coven_id)
        await _add_member(conn, coven_id, principal.player_id, role="leader")
    logger.info("coven %s created by player %s", coven_id, principal.player_id)
    return {"success": True, "coven_id": coven_id, "name": name}


async def join_coven(principal, coven_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        coven = await conn.fetchrow("SELECT id, is_public FROM covens WHERE id = $1 FOR UPDATE", coven_id)
        if coven is None:
            raise NotFound("Coven not found", code="coven_not_found")
        if not coven["is_public"]:
            raise Unauthorized("Coven is invite-only", code="coven_invite_only")
        await _add_member(conn, coven_id, principal.player_id)
    return {"success": True, "coven_id": coven_id}


async def leave_coven(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        coven_id = m["coven_id"]
        count = await conn.fetchval("SELECT member_count FROM covens WHERE id = $1 FOR UPDATE", coven_id)
        if m["role"] == "leader" and count > 1:
            raise InvalidState("Transfer leadership before leaving", code="leader_must_transfer")
        deleted = await _remove_member(conn, coven_id, principal.player_id, "left")
    return {"success": True, "coven_id": coven_id, "coven_deleted": deleted}


async def invite(principal, invitee_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        if m["role"] not in MANAGER_ROLES:
            raise Unauthorized("Only leader or elder can invite", code="coven_role_required")
        if not await conn.fetchval("SELECT 1 FROM players WHERE id = $1", invitee_id):
            raise NotFound("Player not found", code="player_not_found")
        if await _membership(conn, invitee_id) is not None:
            raise AlreadyDone("Player is already in a coven", code="already_in_coven")
        pending = await conn.fetchval(
            """SELECT id FROM coven_invitations
               WHERE coven_id = $1 AND invitee_id = $2 AND status = 'pending' AND expires_at > NOW()""",
            m["coven_id"], invitee_id,
        )
        if pending:
            raise AlreadyDone("Invitation already pending", code="invitation_pending")
        expires_at = datetime.now(timezone.utc) + timedelta(days=INVITATION_DAYS)
        inv_id = await conn.fetchval(
            """INSERT INTO coven_invitations (coven_id, inviter_id, invitee_id, expires_at)
               VALUES ($1, $2, $3, $4) RETURNING id""",
            m["coven_id"], principal.player_id, invitee_id, expires_at,
        )
        await _log(conn, m["coven_id"], principal.player_id, "invited", {"invitee_id": invitee_id})
    return {"success": True, "invitation_id": inv_id, "expires_at": expires_at}


async def list_invitations(principal) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT i.id, i.coven_id, c.name AS coven_name, i.inviter_id, i.expires_at
               FROM coven_invitations i JOIN covens c ON c.id = i.coven_id
               WHERE i.invitee_id = $1 AND i.status = 'pending' AND i.expires_at > NOW()
               ORDER BY i.created_at DESC""",
            principal.player_id,
        )
    return [dict(r) for r in rows]


async def respond_invitation(principal, invitation_id: int, accept: bool) -> Dict[str, Any]:
    async with transaction() as conn:
        inv = await conn.fetchrow(
            "SELECT * FROM coven_invitations WHERE id = $1 FOR UPDATE", invitation_id,
        )
        if inv is None or inv["invitee_id"] != principal.player_id:
            raise NotFound("Invitation not found", code="invitation_not_found")
        if inv["status"] != "pending":
            raise AlreadyDone("Invitation already answered", code="invitation_answered")
        if inv["expires_at"] <= datetime.now(timezone.utc):
            raise InvalidState("Invitation expired", code="invitation_expired")
        status = "accepted" if accept else "declined"
        await conn.execute("UPDATE coven_invitations SET status = $2 WHERE id = $1", invitation_id, status)
        if accept:
            await _add_member(conn, inv["coven_id"], principal.player_id)
    return {"success": True, "status": status, "coven_id": inv["coven_id"]}


async def _target_member(conn: asyncpg.Connection, coven_id: int, member_id: int) -> asyncpg.Record:
    t = await _membership(conn, member_id, lock=True)
    if t is None or t["coven_id"] != coven_id:
        raise NotFound("Member not found in your coven", code="member_not_found")
    return t


async def set_role(principal, member_id: int, role: str) -> Dict[str, Any]:
    if role not in ("member", "elder"):
        raise InvalidState("Role must be member or elder", code="invalid_role")
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        if m["role"] != "leader":
            raise Unauthorized("Only the leader can change roles", code="coven_leader_required")
        if member_id == principal.player_id:
            raise InvalidState("Use transfer to change your own role", code="invalid_role")
        await _target_member(conn, m["coven_id"], member_id)
        await conn.execute("UPDATE coven_members SET role = $2 WHERE player_id = $1", member_id, role)
        await _log(conn, m["coven_id"], principal.player_id, "role_changed", {"member_id": member_id, "role": role})
    return {"success": True, "member_id": member_id, "role": role}


async def transfer_leadership(principal, member_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        if m["role"] != "leader":
            raise Unauthorized("Only the leader can transfer leadership", code="coven_leader_required")
        if member_id == principal.player_id:
            raise InvalidState("Already the leader", code="invalid_role")
        await _target_member(conn, m["coven_id"], member_id)
        await conn.execute("UPDATE coven_members SET role = 'elder' WHERE player_id = $1", principal.player_id)
        await conn.execute("UPDATE coven_members SET role = 'leader' WHERE player_id = $1", member_id)
        await conn.execute("UPDATE covens SET leader_id = $2 WHERE id = $1", m["coven_id"], member_id)
        await _log(conn, m["coven_id"], principal.player_id, "leadership_transferred", {"to": member_id})
    return {"success": True, "leader_id": member_id}


async def kick_member(principal, member_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        if member_id == principal.player_id:
            raise InvalidState("Use leave instead", code="cannot_kick_self")
        t = await _target_member(conn, m["coven_id"], member_id)
        allowed = m["role"] == "leader" or (m["role"] == "elder" and t["role"] == "member")
        if not allowed:
            raise Unauthorized("Not allowed to remove this member", code="coven_role_required")
        await conn.fetchval("SELECT member_count FROM covens WHERE id = $1 FOR UPDATE", m["coven_id"])
        await _remove_member(conn, m["coven_id"], member_id, "kicked")
    return {"success": True, "member_id": member_id}


async def disband_coven(principal) -> Dict[str, Any]:
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        if m["role"] != "leader":
            raise Unauthorized("Only the leader can disband", code="coven_leader_required")
        await conn.execute("DELETE FROM covens WHERE id = $1", m["coven_id"])
    logger.info("coven %s disbanded by player %s", m["coven_id"], principal.player_id)
    return {"success": True, "coven_id": m["coven_id"]}


async def get_coven(coven_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        coven = await conn.fetchrow("SELECT * FROM covens WHERE id = $1", coven_id)
        if coven is None:
            raise NotFound("Coven not found", code="coven_not_found")
        members = await conn.fetch(
            """SELECT m.player_id, p.username, m.role, m.contribution, m.joined_at
               FROM coven_members m JOIN players p ON p.id = m.player_id
               WHERE m.coven_id = $1 ORDER BY m.contribution DESC, m.joined_at""",
            coven_id,
        )
        resources = await conn.fetchrow("SELECT crystals, coven_points FROM coven_resources WHERE coven_id = $1", coven_id)
        tasks = await _tasks(conn, coven_id)
        activity = await conn.fetch(
            """SELECT player_id, action, details, created_at FROM coven_activity
               WHERE coven_id = $1 ORDER BY created_at DESC LIMIT 20""",
            coven_id,
        )
    return {
        **dict(coven),
        "members": [dict(m) for m in members],
        "resources": dict(resources) if resources else {"crystals": 0, "coven_points": 0},
        "tasks": tasks,
        "activity": [{**dict(a), "details": from_json(a["details"])} for a in activity],
    }


async def my_coven(principal) -> Optional[Dict[str, Any]]:
    async with transaction() as conn:
        m = await _membership(conn, principal.player_id)
    if m is None:
        return None
    return await get_coven(m["coven_id"])


async def list_covens(search: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    async with transaction() as conn:
        rows = await conn.fetch(
            """SELECT id, name, description, is_public, member_count, created_at FROM covens
               WHERE ($1::text IS NULL OR name ILIKE '%' || $1 || '%')
               ORDER BY member_count DESC, id LIMIT $2""",
            search, limit,
        )
    return [dict(r) for r in rows]


# ——— Задания ———

async def _tasks(conn: asyncpg.Connection, coven_id: int) -> List[Dict[str, Any]]:
    tasks = await conn.fetch(
        "SELECT * FROM coven_tasks WHERE coven_id = $1 ORDER BY created_at DESC LIMIT 50", coven_id,
    )
    result = []
    for t in tasks:
        objs = await conn.fetch(
            """SELECT objective_idx, objective_type, target, total FROM coven_task_objectives
               WHERE task_id = $1 ORDER BY objective_idx""",
            t["id"],
        )
        result.append({
            "id": t["id"], "title": t["title"], "description": t["description"],
            "rewards": from_json(t["rewards"]), "expires_at": t["expires_at"],
            "completed": t["completed"], "completed_at": t["completed_at"],
            "objectives": [
                {"type": o["objective_type"], "target": int(o["target"]), "total": int(o["total"])} for o in objs
            ],
        })
    return result


async def create_task(principal, title: str, objectives: List[Dict[str, Any]],
                      rewards: Optional[Dict[str, Any]] = None, hours: int = DEFAULT_TASK_HOURS,
                      description: Optional[str] = None) -> Dict[str, Any]:
    cleaned = validate_objectives(objectives)
    rewards = {
        "coven_points": int((rewards or {}).get("coven_points") or 0),
        "shared_crystals": int((rewards or {}).get("shared_crystals") or 0),
    }
    async with transaction() as conn:
        m = await _require_membership(conn, principal.player_id)
        if m["role"] not in MANAGER_ROLES:
            raise Unauthorized("Only leader or elder can create tasks", code="coven_role_required")
        expires_at = datetime.now(timezone.utc) + timedelta(hours=hours)
        task_id = await conn.fetchval(
            """INSERT INTO coven_tasks (coven_id, title, description, objectives, rewards, created_by, expires_at)
               VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7) RETURNING id""",
            m["coven_id"], title, description, to_json(cleaned), to_json(rewards), principal.player_id, expires_at,
        )
        await conn.executemany(
            """INSERT INTO coven_task_objectives (task_id, objective_idx, objective_type, target)
               VALUES ($1, $2, $3, $4)""",
            [(task_id, idx, o["type"], o["target"]) for idx, o in enumerate(cleaned)],
        )
        await _log(conn, m["coven_id"], principal.player_id, "task_created", {"task_id": task_id})
    return {"success": True, "task_id": task_id, "expires_at": expires_at}


async def _complete_task(conn: asyncpg.Connection, task: asyncpg.Record) -> Dict[str, Any]:
    rewards = from_json(task["rewards"]) or {}
    members = [r["player_id"] for r in await conn.fetch(
        "SELECT player_id FROM coven_members WHERE coven_id = $1 ORDER BY player_id", task["coven_id"],
    )]
    split = split_shared_crystals(int(rewards.get("shared_crystals") or 0), len(members))
    for pid in members:
        if split["per_member"]:
            await award_crystals(conn, pid, split["per_member"])
        await queue_notification(conn, pid, "coven_task_complete", {"task_id": task["id"], "title": task["title"]})
    # очки задания превращаются в опыт тех, кто вносил вклад
    contributors = [r["player_id"] for r in await conn.fetch(
        "SELECT DISTINCT player_id FROM coven_task_contributions WHERE task_id = $1 ORDER BY player_id", task["id"],
    )]
    points = int(rewards.get("coven_points") or 0)
    xp_each = points_to_xp(points, len(contributors))
    for pid in contributors:
        await grant_xp(conn, pid, xp_each)
    await conn.execute(
        """INSERT INTO coven_resources (coven_id, crystals, coven_points) VALUES ($1, $2, $3)
           ON CONFLICT (coven_id) DO UPDATE SET crystals = coven_resources.crystals + EXCLUDED.crystals,
             coven_points = coven_resources.coven_points + EXCLUDED.coven_points""",
        task["coven_id"], split["remainder"], points,
    )
    await _log(conn, task["coven_id"], None, "task_completed",
               {"task_id": task["id"], "xp_per_contributor": xp_each, **split})
    logger.info("coven %s task %s completed, %s members rewarded, %s contributors got %s XP",
                task["coven_id"], task["id"], len(members), len(contributors), xp_each)
    return {"members_rewarded": len(members), "contributors": len(contributors),
            "xp_per_contributor": xp_each, **split}


async def _contribute(conn: asyncpg.Connection, player_id: int, task: asyncpg.Record,
                      objective_type: str, amount: int) -> Dict[str, Any]:
    rows = await conn.fetch(
        """UPDATE coven_task_objectives SET total = total + $3
           WHERE task_id = $1 AND objective_type = $2
           RETURNING objective_idx""",
        task["id"], objective_type, amount,
    )
    if not rows:
        raise InvalidState("Task has no objective of this type", code="task_objective_mismatch")
    for r in rows:
        await conn.execute(
            """INSERT INTO coven_task_contributions (task_id, player_id, objective_idx, amount)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT (task_id, player_id, objective_idx)
               DO UPDATE SET amount = coven_task_contributions.amount + EXCLUDED.amount""",
            task["id"], player_id, r["objective_idx"], amount,
        )
    await conn.execute(
        "UPDATE coven_members SET contribution = contribution + $2 WHERE player_id = $1", player_id, amount,
    )
    await check_achievements(conn, player_id, "help_count", 1)
    done = await conn.fetchval(
        "SELECT bool_and(total >= target) FROM coven_task_objectives WHERE task_id = $1", task["id"],
    )
    result: Dict[str, Any] = {"task_id": task["id"], "completed": False}
    if done:
        flipped = await conn.fetchval(
            """UPDATE coven_tasks SET completed = TRUE, completed_at = NOW()
               WHERE id = $1 AND completed = FALSE RETURNING id""",
            task["id"],
        )
        if flipped:
            result["completed"] = True
            result["distribution"] = await _complete_task(conn, task)
    return result


async def contribute(principal, task_id: int, objective_type: str, amount: int) -> Dict[str, Any]:
    if amount <= 0:
        raise InvalidState("Amount must be positive", code="invalid_amount")
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        m = await _require_membership(conn, principal.player_id)
        task = await conn.fetchrow("SELECT * FROM coven_tasks WHERE id = $1 FOR UPDATE", task_id)
        if task is None or task["coven_id"] != m["coven_id"]:
            raise NotFound("Task not found", code="task_not_found")
        if task["completed"]:
            raise AlreadyDone("Task already completed", code="task_completed")
        if task["expires_at"] <= datetime.now(timezone.utc):
            raise InvalidState("Task expired", code="task_expired")
        return {"success": True, **await _contribute(conn, principal.player_id, task, objective_type, amount)}


async def auto_contribute_coven_tasks(conn: asyncpg.Connection, player_id: int, objective_type: str,
                                      amount: int = 1) -> List[Dict[str, Any]]:
    """Вклад игровых действий в активные задания ковена. Без ковена ничего не делает."""
    m = await _membership(conn, player_id)
    if m is None or amount <= 0:
        return []
    tasks = await conn.fetch(
        """SELECT t.* FROM coven_tasks t
           WHERE t.coven_id = $1 AND t.completed = FALSE AND t.expires_at > NOW()
             AND EXISTS (SELECT 1 FROM coven_task_objectives o
                         WHERE o.task_id = t.id AND o.objective_type = $2)
           ORDER BY t.id
           FOR UPDATE OF t""",
        m["coven_id"], objective_type,
    )
    return [await _contribute(conn, player_id, task, objective_type, amount) for task in tasks]
