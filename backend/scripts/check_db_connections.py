#!/usr/bin/env python3
"""
Проверка связи с PostgreSQL (DATABASE_URL) и Redis (REDIS_URL) из .env.

Запуск из корня backend:
    python scripts/check_db_connections.py
"""
import asyncio
import sys
from pathlib import Path
from typing import Tuple

BACKEND_ROOT = Path(__file__).resolve().parent.parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import asyncpg

from config import DATABASE_URL, REDIS_URL
from infrastructure.cache import ping


def mask_url(url: str) -> str:
    """Скрыть пароль в URL для вывода в консоль."""
    if not url:
        return "(не задан)"
    if "://" in url:
        pre, rest = url.split("://", 1)
        if "@" in rest:
            user_part, host_part = rest.rsplit("@", 1)
            if ":" in user_part:
                user_part = user_part.split(":", 1)[0] + ":****"
            return f"{pre}://{user_part}@{host_part}"
    return url


async def check_postgres() -> Tuple[bool, str]:
    try:
        conn = await asyncio.wait_for(asyncpg.connect(DATABASE_URL), timeout=5.0)
    except asyncio.TimeoutError:
        return False, "таймаут подключения (5 с)"
    except (OSError, asyncpg.PostgresError) as e:
        return False, str(e)
    try:
        players = await conn.fetchval("SELECT to_regclass('public.players') IS NOT NULL")
        return True, "OK" if players else "OK, схема не создана (scripts/seed_catalog.py)"
    finally:
        await conn.close()


async def main() -> int:
    print(f"PostgreSQL: {mask_url(DATABASE_URL)}")
    ok_pg, msg_pg = await check_postgres()
    print("  ✅" if ok_pg else "  ❌", msg_pg)

    print(f"Redis: {mask_url(REDIS_URL)}")
    ok_redis = await ping()
    print("  ✅ OK" if ok_redis else "  ❌ недоступен (кэш отключится)")

    return 0 if ok_pg and ok_redis else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
