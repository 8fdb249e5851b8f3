#!/usr/bin/env python3
"""
Создание схемы и синхронизация справочных таблиц с core/catalog.py, сид game_settings.
Идемпотентно. Запуск из корня репо или из backend: python scripts/seed_catalog.py
"""
import asyncio
import logging
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parent.parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


async def main() -> None:
    from core import catalog
    from infrastructure.database import close_db, init_db

    await init_db()
    await close_db()
    print(f"Schema ready, {len(catalog.ITEMS)} items and {len(catalog.ACHIEVEMENTS)} achievements synced.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
