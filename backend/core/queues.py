"""
Общие правила очередей производства (фабрики и оружейная).
"""
from datetime import timedelta
from typing import Iterable, Optional

from core.bonuses import production_speed
from core.catalog import level_duration_factor


def lowest_free_slot(used: Iterable[int], max_slots: int) -> Optional[int]:
    taken = set(used)
    for slot in range(1, max_slots + 1):
        if slot not in taken:
            return slot
    return None


def factory_max_slots(building_count: int, level: int) -> int:
    """2 слота на каждое здание этого типа (минимум 2) плюс слоты за уровни 2 и 4."""
    unlocked = sum(1 for lvl in (2, 4) if level >= lvl)
    return max(2, 2 * building_count) + unlocked


def production_duration(base_minutes: float, building_level: int, player_level: int) -> timedelta:
    """Уровень здания укорачивает (×1.0…×0.6), уровень игрока ускоряет (до ×1.5)."""
    minutes = base_minutes * level_duration_factor(building_level) / production_speed(player_level)
    return timedelta(minutes=minutes)
