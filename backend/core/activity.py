"""
Общий хвост игровых действий: прогресс квестов и автовклад в задания ковена.
"""
from typing import Any, Dict

import asyncpg

from core.coven import auto_contribute_coven_tasks
from core.progression import update_quest_progress


async def record_action(conn: asyncpg.Connection, player_id: int, action: str, amount: int = 1) -> Dict[str, Any]:
    quests = await update_quest_progress(conn, player_id, action, amount)
    coven = await auto_contribute_coven_tasks(conn, player_id, action, amount)
    return {"quests_completed": quests, "coven_tasks": coven}
