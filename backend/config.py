import json
import os
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_bool(key: str, default: bool = False) -> bool:
    raw = _env(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# ——— Game tunables (data/game_config.json) ———
_CONFIG_DIR = Path(__file__).resolve().parent
_DEFAULT_GAME_CONFIG_PATH = _CONFIG_DIR / "data" / "game_config.json"


def _load_game_config() -> Dict[str, Any]:
    path_str = _env("GAME_CONFIG_PATH", "").strip()
    path = Path(path_str) if path_str else _DEFAULT_GAME_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    return {"game": {}}


GAME_CONFIG = _load_game_config()


def _section(name: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
    loaded = GAME_CONFIG.get("game", {}).get(name) or {}
    return {**defaults, **loaded}


def get_economy_config() -> Dict[str, Any]:
    return _section("economy", {
        "starting_crystals": 0,
        "starting_wheat": 10,
        "listing_default_hours": 24,
        "max_active_orders": 6,
    })


def get_mining_config() -> Dict[str, Any]:
    return _section("mining", {
        "base_energy": 100,
        "energy_per_level": 2,
        "energy_reset_hours": 24,
        "crystal_restore_cost": 50,
        "repair_cost_per_point": 10,
        "tool_max_durability": 100,
    })


def get_ads_config() -> Dict[str, Any]:
    return _section("ads", {
        "hourly_limit": 5,
        "mining_hourly_limit": 3,
        "speed_up_minutes": 30,
    })


def get_daily_reward_config() -> Dict[str, Any]:
    return _section("daily_reward", {
        "base_crystals": 500,
        "starter_seeds": {"wheat": 1, "carrot": 1},
    })


def get_town_config() -> Dict[str, Any]:
    return _section("town", {
        "default_size": 10,
        "max_size": 30,
        "expand_all_step": 5,
        "expand_side_step": 2,
        "expand_all_cost_per_tile": 1000,
        "expand_side_cost_per_tile": 500,
        "free_enclosures": 3,
        "enclosure_base_cost": 500,
    })


def get_friends_config() -> Dict[str, Any]:
    return _section("friends", {
        "help_speed_up_minutes": 30,
        "daily_help_limit": 3,
        "max_friends": 100,
    })


DATABASE_URL = _env("DATABASE_URL", "postgresql://localhost/eldergrove")
REDIS_URL = _env("REDIS_URL", "redis://localhost:6379/0")

# Подпись сессионных токенов (Bearer), выдаваемых /internal/players
SESSION_SECRET = _env("SESSION_SECRET", "dev-session-secret")
SESSION_TTL_SEC = int(_env("SESSION_TTL_SEC", str(7 * 24 * 3600)))
# Внешний сервис авторизации: POST {AUTH_SERVICE_URL}/verify
AUTH_SERVICE_URL = _env("AUTH_SERVICE_URL", "").rstrip("/")
# Разрешить X-Player-Id без токена (локальная разработка, доверенный шлюз)
ALLOW_HEADER_AUTH = _env_bool("ALLOW_HEADER_AUTH", False)

INTERNAL_API_SECRET = _env("INTERNAL_API_SECRET", "")
ADMIN_API_KEY = _env("ADMIN_API_KEY", "")

CORS_ORIGINS_EXTRA: List[str] = [
    o.strip() for o in _env("CORS_ORIGINS_EXTRA", "").split(",") if o.strip()
]

API_RATE_LIMIT = _env("API_RATE_LIMIT", "120/minute")
API_RATE_LIMIT_STRICT = _env("API_RATE_LIMIT_STRICT", "10/minute")
