import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg

from config import DATABASE_URL, get_town_config

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=10, command_timeout=60)
    return _pool


async def close_db() -> None:
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def transaction() -> AsyncIterator[asyncpg.Connection]:
    """Одно игровое действие = одна транзакция. Исключение внутри откатывает всё."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


def from_json(value: Any) -> Any:
    """JSONB из asyncpg приходит строкой."""
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


async def init_db() -> None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        await _create_schema(conn)
        await _seed_catalog(conn)
        await _seed_game_settings(conn)
    logger.info("init_db: schema and catalog ready")


async def _create_schema(conn: asyncpg.Connection) -> None:
    town_size = int(get_town_config()["default_size"])
    # ——— Игрок и инвентарь ———
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS players (
            id BIGSERIAL PRIMARY KEY,
            external_id TEXT UNIQUE,
            username TEXT,
            crystals BIGINT NOT NULL DEFAULT 0 CHECK (crystals >= 0),
            xp BIGINT NOT NULL DEFAULT 0 CHECK (xp >= 0),
            level INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
            population INTEGER NOT NULL DEFAULT 0,
            warehouse_level INTEGER NOT NULL DEFAULT 1,
            aether BIGINT NOT NULL DEFAULT 0 CHECK (aether >= 0),
            daily_streak INTEGER NOT NULL DEFAULT 0,
            last_claimed_date DATE,
            town_size INTEGER NOT NULL DEFAULT {town_size},
            crystals_earned BIGINT NOT NULL DEFAULT 0,
            max_enclosures INTEGER NOT NULL DEFAULT 3,
            speed_up_minutes INTEGER NOT NULL DEFAULT 0 CHECK (speed_up_minutes >= 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS inventory (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            item_id INTEGER NOT NULL,
            quantity BIGINT NOT NULL DEFAULT 0 CHECK (quantity >= 0),
            PRIMARY KEY (player_id, item_id)
        )
    """)
    # ——— Производство ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS farm_plots (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            plot_index INTEGER NOT NULL,
            crop_key TEXT,
            planted_at TIMESTAMPTZ,
            ready_at TIMESTAMPTZ,
            PRIMARY KEY (player_id, plot_index)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS factories (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            factory_type TEXT NOT NULL,
            level INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (player_id, factory_type)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS factory_queue (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            factory_type TEXT NOT NULL,
            slot INTEGER NOT NULL,
            recipe_key TEXT NOT NULL,
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            finishes_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (player_id, factory_type, slot)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS armories (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            armory_type TEXT NOT NULL,
            level INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (player_id, armory_type)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS armory_queue (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            armory_type TEXT NOT NULL,
            slot INTEGER NOT NULL,
            recipe_key TEXT NOT NULL,
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            finishes_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (player_id, armory_type, slot)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS production_log (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            action TEXT NOT NULL,
            subject TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_production_log_player
        ON production_log(player_id, action)
    """)
    # ——— Шахта ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS mining_tools (
            player_id BIGINT PRIMARY KEY REFERENCES players(id) ON DELETE CASCADE,
            tool_type TEXT NOT NULL DEFAULT 'basic_pickaxe',
            durability INTEGER NOT NULL DEFAULT 100 CHECK (durability >= 0)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS mine_state (
            player_id BIGINT PRIMARY KEY REFERENCES players(id) ON DELETE CASCADE,
            depth INTEGER NOT NULL DEFAULT 0,
            energy_used INTEGER NOT NULL DEFAULT 0,
            last_reset_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            total_digs INTEGER NOT NULL DEFAULT 0
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS mine_finds (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            item_id INTEGER NOT NULL,
            depth INTEGER NOT NULL,
            found_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    # ——— Зоопарк ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS enclosures (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            breeding_started_at TIMESTAMPTZ,
            breeding_ends_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS enclosure_animals (
            enclosure_id BIGINT NOT NULL REFERENCES enclosures(id) ON DELETE CASCADE,
            slot INTEGER NOT NULL CHECK (slot IN (1, 2)),
            animal_type_id INTEGER NOT NULL,
            level INTEGER NOT NULL DEFAULT 1,
            last_collected_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (enclosure_id, slot)
        )
    """)
    # ——— Город ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS buildings (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            building_type TEXT NOT NULL,
            grid_x INTEGER NOT NULL,
            grid_y INTEGER NOT NULL,
            level INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS decorations (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            decoration_type TEXT NOT NULL,
            grid_x INTEGER NOT NULL,
            grid_y INTEGER NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS roads (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            grid_x INTEGER NOT NULL,
            grid_y INTEGER NOT NULL,
            UNIQUE (player_id, grid_x, grid_y)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS premium_decorations (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            decoration_type TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
            PRIMARY KEY (player_id, decoration_type)
        )
    """)
    # ——— Рынок и заказы ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS market_listings (
            id BIGSERIAL PRIMARY KEY,
            seller_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            item_id INTEGER NOT NULL,
            quantity BIGINT NOT NULL CHECK (quantity > 0),
            price_crystals BIGINT NOT NULL CHECK (price_crystals > 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL,
            buyer_id BIGINT REFERENCES players(id) ON DELETE SET NULL,
            purchased_at TIMESTAMPTZ,
            commission BIGINT,
            closed_at TIMESTAMPTZ
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_market_listings_open
        ON market_listings(item_id, expires_at) WHERE purchased_at IS NULL AND closed_at IS NULL
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS skyport_orders (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            order_type TEXT NOT NULL,
            requirements JSONB NOT NULL,
            rewards JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ
        )
    """)
    # ——— Прогресс ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS player_achievements (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            achievement_key TEXT NOT NULL,
            progress BIGINT NOT NULL DEFAULT 0,
            completed BOOLEAN NOT NULL DEFAULT FALSE,
            completed_at TIMESTAMPTZ,
            claimed BOOLEAN NOT NULL DEFAULT FALSE,
            claimed_at TIMESTAMPTZ,
            PRIMARY KEY (player_id, achievement_key)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS quest_progress (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            quest_key TEXT NOT NULL,
            progress JSONB NOT NULL DEFAULT '[]',
            completed BOOLEAN NOT NULL DEFAULT FALSE,
            completed_at TIMESTAMPTZ,
            claimed BOOLEAN NOT NULL DEFAULT FALSE,
            claimed_at TIMESTAMPTZ,
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ,
            PRIMARY KEY (player_id, quest_key)
        )
    """)
    # ——— Ковен ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS covens (
            id BIGSERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            description TEXT,
            is_public BOOLEAN NOT NULL DEFAULT TRUE,
            leader_id BIGINT REFERENCES players(id) ON DELETE SET NULL,
            member_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_members (
            player_id BIGINT PRIMARY KEY REFERENCES players(id) ON DELETE CASCADE,
            coven_id BIGINT NOT NULL REFERENCES covens(id) ON DELETE CASCADE,
            role TEXT NOT NULL DEFAULT 'member' CHECK (role IN ('member', 'elder', 'leader')),
            contribution BIGINT NOT NULL DEFAULT 0,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_coven_members_coven ON coven_members(coven_id)
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_invitations (
            id BIGSERIAL PRIMARY KEY,
            coven_id BIGINT NOT NULL REFERENCES covens(id) ON DELETE CASCADE,
            inviter_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            invitee_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_resources (
            coven_id BIGINT PRIMARY KEY REFERENCES covens(id) ON DELETE CASCADE,
            crystals BIGINT NOT NULL DEFAULT 0,
            coven_points BIGINT NOT NULL DEFAULT 0
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_tasks (
            id BIGSERIAL PRIMARY KEY,
            coven_id BIGINT NOT NULL REFERENCES covens(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            description TEXT,
            objectives JSONB NOT NULL,
            rewards JSONB NOT NULL DEFAULT '{}',
            created_by BIGINT REFERENCES players(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL,
            completed BOOLEAN NOT NULL DEFAULT FALSE,
            completed_at TIMESTAMPTZ
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_task_objectives (
            task_id BIGINT NOT NULL REFERENCES coven_tasks(id) ON DELETE CASCADE,
            objective_idx INTEGER NOT NULL,
            objective_type TEXT NOT NULL,
            target BIGINT NOT NULL,
            total BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (task_id, objective_idx)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_task_contributions (
            task_id BIGINT NOT NULL REFERENCES coven_tasks(id) ON DELETE CASCADE,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            objective_idx INTEGER NOT NULL,
            amount BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (task_id, player_id, objective_idx)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS coven_activity (
            id BIGSERIAL PRIMARY KEY,
            coven_id BIGINT NOT NULL REFERENCES covens(id) ON DELETE CASCADE,
            player_id BIGINT REFERENCES players(id) ON DELETE SET NULL,
            action TEXT NOT NULL,
            details JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    # ——— Регата ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS regatta_events (
            id BIGSERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ NOT NULL,
            tasks JSONB NOT NULL DEFAULT '[]',
            rewards JSONB NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'upcoming' CHECK (status IN ('upcoming', 'active', 'completed')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS regatta_participants (
            regatta_id BIGINT NOT NULL REFERENCES regatta_events(id) ON DELETE CASCADE,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            coven_id BIGINT REFERENCES covens(id) ON DELETE SET NULL,
            points BIGINT NOT NULL DEFAULT 0,
            rewards_claimed BOOLEAN NOT NULL DEFAULT FALSE,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (regatta_id, player_id)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS regatta_submissions (
            regatta_id BIGINT NOT NULL REFERENCES regatta_events(id) ON DELETE CASCADE,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            task_index INTEGER NOT NULL,
            points BIGINT NOT NULL,
            submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (regatta_id, player_id, task_index)
        )
    """)
    # ——— Монетизация ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS aether_transactions (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            amount BIGINT NOT NULL,
            reason TEXT NOT NULL,
            balance_after BIGINT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS active_boosts (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            boost_type TEXT NOT NULL,
            multiplier NUMERIC NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (player_id, boost_type)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS ad_watches (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            category TEXT NOT NULL,
            target TEXT,
            watched_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_ad_watches_player_time
        ON ad_watches(player_id, category, watched_at)
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS daily_reward_claims (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            claim_date DATE NOT NULL,
            crystals BIGINT NOT NULL,
            streak INTEGER NOT NULL,
            claimed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (player_id, claim_date)
        )
    """)
    # ——— Друзья: две строки на пару, по одной в каждую сторону ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS friends (
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            friend_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            status TEXT NOT NULL CHECK (status IN ('pending', 'accepted')),
            requested_by BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            accepted_at TIMESTAMPTZ,
            PRIMARY KEY (player_id, friend_id),
            CHECK (player_id <> friend_id)
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS friend_help (
            id BIGSERIAL PRIMARY KEY,
            helper_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            helped_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            help_type TEXT NOT NULL CHECK (help_type IN ('speed_production', 'fill_order')),
            target TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_friend_help_pair ON friend_help(helper_id, helped_id, created_at)"
    )
    # ——— Уведомления (доставку делает внешний воркер) ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS push_subscriptions (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            endpoint TEXT NOT NULL UNIQUE,
            p256dh TEXT NOT NULL,
            auth TEXT NOT NULL,
            device_info JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS notification_preferences (
            player_id BIGINT PRIMARY KEY REFERENCES players(id) ON DELETE CASCADE,
            crops_ready BOOLEAN NOT NULL DEFAULT TRUE,
            factory_complete BOOLEAN NOT NULL DEFAULT TRUE,
            orders_expiring BOOLEAN NOT NULL DEFAULT TRUE,
            quest_available BOOLEAN NOT NULL DEFAULT TRUE,
            friend_help BOOLEAN NOT NULL DEFAULT TRUE,
            coven_task_complete BOOLEAN NOT NULL DEFAULT TRUE,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS notification_events (
            id BIGSERIAL PRIMARY KEY,
            player_id BIGINT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
            category TEXT NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            delivered_at TIMESTAMPTZ
        )
    """)
    await conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_notification_events_pending ON notification_events(id) WHERE delivered_at IS NULL"
    )
    # ——— Справочники (только чтение для игроков) ———
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS item_defs (
            id INTEGER PRIMARY KEY,
            key TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            category TEXT NOT NULL
        )
    """)
    for table in ("crop_defs", "recipe_defs", "building_defs", "decoration_defs", "animal_defs",
                  "ore_defs", "achievement_defs", "quest_defs", "premium_shop_defs"):
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                key TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                kind TEXT NOT NULL DEFAULT '',
                config JSONB NOT NULL DEFAULT '{{}}'
            )
        """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS market_prices (
            item_id INTEGER PRIMARY KEY,
            sell_price INTEGER NOT NULL
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS game_settings (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # Базы, созданные старой схемой
    for sql in (
        "DELETE FROM mine_finds WHERE item_id IS NULL",
        "ALTER TABLE mine_finds ALTER COLUMN item_id SET NOT NULL",
        "DELETE FROM game_settings WHERE key = 'economy.listing_commission'",
    ):
        await conn.execute(sql)


def _catalog_rows() -> Dict[str, list]:
    from core import catalog

    return {
        "crop_defs": [(k, c["name"], "crop", c) for k, c in catalog.CROPS.items()],
        "recipe_defs": [(k, r["name"], "factory", r) for k, r in catalog.RECIPES.items()]
        + [(k, r["name"], "armory", r) for k, r in catalog.ARMORY_RECIPES.items()],
        "building_defs": [(k, b["name"], b["category"], b) for k, b in catalog.BUILDINGS.items()],
        "decoration_defs": [(k, d["name"], "premium" if d["premium"] else "decoration", d)
                            for k, d in catalog.DECORATIONS.items()],
        "animal_defs": [(k, a["name"], a["rarity"], a) for k, a in catalog.ANIMALS.items()],
        "ore_defs": [(k, o["name"], o["rarity"], o) for k, o in catalog.ORES.items()],
        "achievement_defs": [(k, a["name"], a["condition"], a) for k, a in catalog.ACHIEVEMENTS.items()],
        "quest_defs": [(k, q["title"], q["type"], q) for k, q in catalog.QUESTS.items()],
        "premium_shop_defs": [(k, p["name"], p["item_type"], p) for k, p in catalog.PREMIUM_SHOP.items()],
    }


async def _seed_catalog(conn: asyncpg.Connection) -> None:
    """Зеркало core/catalog.py в *_defs: upsert, источник истины справочник в коде."""
    from core import catalog

    for item in catalog.ITEMS.values():
        await conn.execute(
            """INSERT INTO item_defs (id, key, name, category) VALUES ($1, $2, $3, $4)
               ON CONFLICT (id) DO UPDATE SET key = EXCLUDED.key, name = EXCLUDED.name,
                 category = EXCLUDED.category""",
            item["id"], item["key"], item["name"], item["category"],
        )
    for table, rows in _catalog_rows().items():
        for key, name, kind, config in rows:
            await conn.execute(
                f"""INSERT INTO {table} (key, name, kind, config) VALUES ($1, $2, $3, $4::jsonb)
                    ON CONFLICT (key) DO UPDATE SET name = EXCLUDED.name, kind = EXCLUDED.kind,
                      config = EXCLUDED.config""",
                key, name, kind, to_json(config),
            )
    for iid, price in catalog.MARKET_PRICES.items():
        await conn.execute(
            """INSERT INTO market_prices (item_id, sell_price) VALUES ($1, $2)
               ON CONFLICT (item_id) DO UPDATE SET sell_price = EXCLUDED.sell_price""",
            iid, price,
        )


# ===================== game_settings =====================

_GAME_SETTINGS_DEFAULTS: Dict[str, Any] = {
    "economy.starting_crystals": 0,
    "ads.hourly_limit": 5,
    "ads.mining_hourly_limit": 3,
    "daily_reward.base_crystals": 500,
    "regatta.leaderboard_limit": 100,
}


async def _seed_game_settings(conn: asyncpg.Connection) -> None:
    """Insert default settings where missing (does NOT overwrite existing)."""
    for key, val in _GAME_SETTINGS_DEFAULTS.items():
        await conn.execute(
            """INSERT INTO game_settings (key, value)
               VALUES ($1, $2::jsonb)
               ON CONFLICT (key) DO NOTHING""",
            key, json.dumps(val),
        )


async def get_setting(key: str, default=None, conn: Optional[asyncpg.Connection] = None):
    """Read a single setting from game_settings, fall back to default."""
    if conn is not None:
        row = await conn.fetchval("SELECT value FROM game_settings WHERE key = $1", key)
    else:
        pool = await get_pool()
        async with pool.acquire() as c:
            row = await c.fetchval("SELECT value FROM game_settings WHERE key = $1", key)
    if row is not None:
        return from_json(row)
    return default if default is not None else _GAME_SETTINGS_DEFAULTS.get(key)


async def set_setting(key: str, value: Any) -> None:
    """Upsert a single setting."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            """INSERT INTO game_settings (key, value, updated_at)
               VALUES ($1, $2::jsonb, NOW())
               ON CONFLICT (key) DO UPDATE SET value = $2::jsonb, updated_at = NOW()""",
            key, json.dumps(value),
        )


async def get_all_settings() -> Dict[str, Any]:
    """Return all game_settings as a flat dict."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT key, value FROM game_settings ORDER BY key")
    return {r["key"]: from_json(r["value"]) for r in rows}


def get_settings_defaults() -> Dict[str, Any]:
    return dict(_GAME_SETTINGS_DEFAULTS)
