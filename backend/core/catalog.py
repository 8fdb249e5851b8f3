"""
Единый справочник игры Eldergrove: предметы, культуры, рецепты, здания, декор,
руда, инструменты, животные, цены рынка, достижения, квесты, премиум-магазин.

Идентификаторы предметов образуют одно плоское пространство:
  1-10 культуры, 11-19 крафт, 20-29 руда, 30-39 снаряжение,
  100 + id культуры: семена, 1000 + type*100 + level: жетоны животных.
Все модули берут id только отсюда (item_id / ITEMS); init_db зеркалит справочник
в таблицы *_types, чтобы SQL мог делать JOIN.
"""
from typing import Any, Dict, List, Optional

# ——— Предметы ———

CROP_ITEMS = {
    "wheat": 1, "carrot": 2, "potato": 3, "tomato": 4, "corn": 5,
    "pumpkin": 6, "berry": 7, "herbs": 8, "magic_mushroom": 9, "enchanted_flower": 10,
}
CRAFTED_ITEMS = {
    "bread": 11, "vegetable_stew": 12, "corn_bread": 13, "pumpkin_pie": 14,
    "herbal_tea": 15, "magic_potion": 16, "fruit_salad": 17,
}
ORE_ITEMS = {
    "coal": 20, "iron": 21, "copper": 22, "silver": 23, "gold": 24,
    "crystal_shard": 25, "mithril": 26, "aether_crystal": 27, "dragon_scale": 28,
    "ancient_relic": 29,
}
EQUIPMENT_ITEMS = {
    "iron_sword": 30, "steel_blade": 31, "diamond_armor": 32, "mithril_sword": 33,
    "aether_blade": 34, "dragon_scale_armor": 35, "ancient_relic_weapon": 36,
}
SEED_OFFSET = 100
ANIMAL_TOKEN_OFFSET = 1000


def _title(key: str) -> str:
    return key.replace("_", " ").title()


def seed_item_id(crop_key: str) -> int:
    return SEED_OFFSET + CROP_ITEMS[crop_key]


def animal_token_id(animal_type_id: int, level: int = 1) -> int:
    return ANIMAL_TOKEN_OFFSET + animal_type_id * 100 + level


def parse_animal_token(item_id: int) -> Optional[Dict[str, int]]:
    """(type_id, level) из id жетона животного или None."""
    if item_id <= ANIMAL_TOKEN_OFFSET:
        return None
    rest = item_id - ANIMAL_TOKEN_OFFSET
    type_id, level = divmod(rest, 100)
    if type_id not in ANIMALS_BY_ID or level < 1:
        return None
    return {"type_id": type_id, "level": level}


def item_category(item_id: int) -> str:
    if 1 <= item_id <= 10:
        return "crop"
    if 11 <= item_id <= 19:
        return "crafted"
    if 20 <= item_id <= 29:
        return "ore"
    if 30 <= item_id <= 39:
        return "equipment"
    if SEED_OFFSET < item_id <= SEED_OFFSET + 10:
        return "seed"
    if parse_animal_token(item_id):
        return "animal"
    return "unknown"


# ——— Культуры: минуты роста, урожай, цена семян ———

CROPS: Dict[str, Dict[str, Any]] = {
    "wheat": {"grow_minutes": 2, "yield": 10, "seed_price": 5},
    "carrot": {"grow_minutes": 5, "yield": 25, "seed_price": 10},
    "potato": {"grow_minutes": 3, "yield": 15, "seed_price": 8},
    "tomato": {"grow_minutes": 4, "yield": 20, "seed_price": 10},
    "corn": {"grow_minutes": 5, "yield": 25, "seed_price": 12},
    "pumpkin": {"grow_minutes": 8, "yield": 40, "seed_price": 20},
    "berry": {"grow_minutes": 2, "yield": 12, "seed_price": 6},
    "herbs": {"grow_minutes": 3, "yield": 18, "seed_price": 9},
    "magic_mushroom": {"grow_minutes": 10, "yield": 50, "seed_price": 25},
    "enchanted_flower": {"grow_minutes": 12, "yield": 60, "seed_price": 30},
}
for _key, _crop in CROPS.items():
    _crop["key"] = _key
    _crop["name"] = _title(_key)
    _crop["item_id"] = CROP_ITEMS[_key]
    _crop["seed_item_id"] = seed_item_id(_key)

# ——— Рецепты фабрик ———

RECIPES: Dict[str, Dict[str, Any]] = {
    "bread": {"inputs": {"wheat": 3}, "minutes": 3, "output": {"bread": 1}, "crystals": 10},
    "vegetable_stew": {
        "inputs": {"potato": 2, "tomato": 2, "carrot": 1}, "minutes": 5,
        "output": {"vegetable_stew": 1}, "crystals": 50,
    },
    "corn_bread": {"inputs": {"corn": 2, "wheat": 2}, "minutes": 4, "output": {"corn_bread": 1}, "crystals": 30},
    "pumpkin_pie": {"inputs": {"pumpkin": 1, "wheat": 3}, "minutes": 6, "output": {"pumpkin_pie": 1}, "crystals": 60},
    "herbal_tea": {"inputs": {"herbs": 2, "berry": 3}, "minutes": 3, "output": {"herbal_tea": 1}, "crystals": 25},
    "magic_potion": {
        "inputs": {"magic_mushroom": 1, "enchanted_flower": 1}, "minutes": 10,
        "output": {"magic_potion": 1}, "crystals": 100,
    },
    "fruit_salad": {"inputs": {"berry": 2, "tomato": 2}, "minutes": 4, "output": {"fruit_salad": 1}, "crystals": 35},
}

# ——— Оружейная ———

ARMORY_RECIPES: Dict[str, Dict[str, Any]] = {
    "iron_sword": {"inputs": {"iron": 5, "coal": 2}, "minutes": 5, "output": {"iron_sword": 1}},
    "steel_blade": {"inputs": {"iron": 10, "coal": 5, "copper": 3}, "minutes": 10, "output": {"steel_blade": 1}},
    "diamond_armor": {"inputs": {"crystal_shard": 5, "silver": 3}, "minutes": 15, "output": {"diamond_armor": 1}},
    "mithril_sword": {"inputs": {"mithril": 3, "crystal_shard": 2}, "minutes": 20, "output": {"mithril_sword": 1}},
    "aether_blade": {"inputs": {"aether_crystal": 2, "mithril": 2}, "minutes": 30, "output": {"aether_blade": 1}},
    "dragon_scale_armor": {
        "inputs": {"dragon_scale": 1, "aether_crystal": 1}, "minutes": 45,
        "output": {"dragon_scale_armor": 1},
    },
    "ancient_relic_weapon": {
        "inputs": {"ancient_relic": 1, "dragon_scale": 1}, "minutes": 60,
        "output": {"ancient_relic_weapon": 1},
    },
}
ARMORY_TYPES = {"basic_forge": {"name": "Basic Forge", "slots": 2, "max_level": 5, "upgrade_cost_per_level": 1000}}

for _key, _recipe in list(RECIPES.items()) + list(ARMORY_RECIPES.items()):
    _recipe["key"] = _key
    _recipe["name"] = _title(_key)

# ——— Руда и шахта ———

ORES: Dict[str, Dict[str, Any]] = {
    "coal": {"rarity": "common", "value": 5},
    "iron": {"rarity": "common", "value": 10},
    "copper": {"rarity": "common", "value": 8},
    "silver": {"rarity": "rare", "value": 25},
    "gold": {"rarity": "rare", "value": 50},
    "crystal_shard": {"rarity": "rare", "value": 30},
    "mithril": {"rarity": "epic", "value": 100},
    "aether_crystal": {"rarity": "epic", "value": 200},
    "dragon_scale": {"rarity": "epic", "value": 500},
    "ancient_relic": {"rarity": "epic", "value": 1000},
}
for _key, _ore in ORES.items():
    _ore["key"] = _key
    _ore["name"] = _title(_key)
    _ore["item_id"] = ORE_ITEMS[_key]

# Порядок улучшения кирки; upgrade_cost: цена перехода НА этот уровень
MINING_TOOLS: Dict[str, Dict[str, Any]] = {
    "basic_pickaxe": {"tier": 1, "upgrade_cost": 0, "energy_base": 10, "depth_divisor": 10, "epic_bonus": False},
    "iron_pickaxe": {"tier": 2, "upgrade_cost": 500, "energy_base": 8, "depth_divisor": 15, "epic_bonus": False},
    "diamond_pickaxe": {"tier": 3, "upgrade_cost": 2000, "energy_base": 5, "depth_divisor": 20, "epic_bonus": True},
    "magic_pickaxe": {"tier": 4, "upgrade_cost": 5000, "energy_base": 3, "depth_divisor": 30, "epic_bonus": True},
}
TOOL_ORDER = sorted(MINING_TOOLS, key=lambda k: MINING_TOOLS[k]["tier"])

# ——— Зоопарк ———

ANIMALS: Dict[str, Dict[str, Any]] = {
    "chicken": {"id": 1, "rarity": "common", "cost": 100, "produces": "wheat", "quantity": 2,
                "interval_minutes": 30, "breeding_minutes": 20},
    "cow": {"id": 2, "rarity": "common", "cost": 200, "produces": "herbs", "quantity": 1,
            "interval_minutes": 60, "breeding_minutes": 40},
    "pig": {"id": 3, "rarity": "common", "cost": 150, "produces": "potato", "quantity": 1,
            "interval_minutes": 45, "breeding_minutes": 30},
    "sheep": {"id": 4, "rarity": "common", "cost": 180, "produces": "berry", "quantity": 1,
              "interval_minutes": 50, "breeding_minutes": 35},
    "unicorn": {"id": 5, "rarity": "rare", "cost": 1000, "produces": "magic_mushroom", "quantity": 1,
                "interval_minutes": 120, "breeding_minutes": 90},
    "phoenix": {"id": 6, "rarity": "rare", "cost": 1500, "produces": "enchanted_flower", "quantity": 1,
                "interval_minutes": 180, "breeding_minutes": 120},
    "dragon": {"id": 7, "rarity": "rare", "cost": 2000, "produces": "dragon_scale", "quantity": 1,
               "interval_minutes": 240, "breeding_minutes": 180},
    "spirit_wolf": {"id": 8, "rarity": "legendary", "cost": 5000, "produces": "aether_crystal", "quantity": 1,
                    "interval_minutes": 360, "breeding_minutes": 240},
    "ancient_guardian": {"id": 9, "rarity": "legendary", "cost": 10000, "produces": "ancient_relic", "quantity": 1,
                         "interval_minutes": 480, "breeding_minutes": 360},
}
for _key, _animal in ANIMALS.items():
    _animal["key"] = _key
    _animal["name"] = _title(_key)
ANIMALS_BY_ID: Dict[int, Dict[str, Any]] = {a["id"]: a for a in ANIMALS.values()}

# ——— Здания ———

FACTORY_TYPES = ("rune_bakery", "potion_workshop", "enchanting_lab", "kitchen")

BUILDINGS: Dict[str, Dict[str, Any]] = {
    "rune_bakery": {"category": "factory", "cost": 500, "size": (2, 2), "population": 0, "max_level": 5, "max_count": 5},
    "potion_workshop": {"category": "factory", "cost": 1000, "size": (2, 2), "population": 0, "max_level": 5, "max_count": 4},
    "enchanting_lab": {"category": "factory", "cost": 1500, "size": (2, 2), "population": 0, "max_level": 5, "max_count": 3},
    "kitchen": {"category": "factory", "cost": 800, "size": (2, 2), "population": 0, "max_level": 5, "max_count": 4},
    "town_hall": {"category": "community", "cost": 2000, "size": (3, 3), "population": 50, "max_level": 1,
                  "max_count": 1, "level_required": 15, "population_required": 100},
    "school": {"category": "community", "cost": 1500, "size": (2, 2), "population": 30, "max_level": 1, "max_count": 2,
               "bonus": {"kind": "xp", "per_building": 0.01, "cap": 0.10}},
    "hospital": {"category": "community", "cost": 1800, "size": (2, 2), "population": 25, "max_level": 1, "max_count": 2,
                 "bonus": {"kind": "energy_regen", "per_building": 5, "cap": 20}},
    "cinema": {"category": "community", "cost": 1200, "size": (2, 2), "population": 20, "max_level": 1, "max_count": 2,
               "bonus": {"kind": "crystals", "per_building": 0.01, "cap": 0.05}},
    "farm": {"category": "factory", "cost": 500, "size": (2, 2), "population": 0, "max_level": 5,
             "level_required": 1, "first_free": True},
    "factory": {"category": "factory", "cost": 1000, "size": (2, 2), "population": 0, "max_level": 5,
                "level_required": 2, "prerequisite": "farm"},
    "mine": {"category": "factory", "cost": 1500, "size": (2, 2), "population": 0, "max_level": 5,
             "level_required": 3, "prerequisite": "factory"},
    "armory": {"category": "factory", "cost": 2000, "size": (2, 2), "population": 0, "max_level": 5,
               "level_required": 4, "prerequisite": "mine"},
    "zoo": {"category": "community", "cost": 2500, "size": (2, 2), "population": 30, "max_level": 5,
            "level_required": 5, "prerequisite": "armory"},
    "coven": {"category": "community", "cost": 3000, "size": (2, 2), "population": 50, "max_level": 5,
              "level_required": 6, "prerequisite": "zoo"},
}
for _key, _b in BUILDINGS.items():
    _b["key"] = _key
    _b["name"] = _title(_key)
    _b.setdefault("level_required", 1)
    _b.setdefault("population_required", 0)
    _b.setdefault("max_count", None)
    _b.setdefault("prerequisite", None)
    _b.setdefault("first_free", False)

# Прокачка фабрик: to_level -> (кристаллы, материалы, +слот очереди, множитель длительности)
FACTORY_UPGRADES: Dict[str, Dict[int, Dict[str, Any]]] = {}
_UPGRADE_COSTS = {
    "rune_bakery": ((500, 1000, 2000, 5000), "herbs"),
    "potion_workshop": ((1000, 2000, 4000, 10000), "berry"),
    "enchanting_lab": ((1500, 3000, 6000, 15000), "magic_mushroom"),
    "kitchen": ((800, 1600, 3200, 8000), "herbs"),
}
_UPGRADE_MATERIALS = (5, 10, 20, 50)
_LEVEL_FACTORS = {1: 1.0, 2: 0.9, 3: 0.8, 4: 0.7, 5: 0.6}
for _ftype, (_costs, _material) in _UPGRADE_COSTS.items():
    FACTORY_UPGRADES[_ftype] = {
        to_level: {
            "crystals": _costs[to_level - 2],
            "materials": {_material: _UPGRADE_MATERIALS[to_level - 2]},
            "unlocks_slot": to_level in (2, 4),
            "speed_factor": _LEVEL_FACTORS[to_level],
        }
        for to_level in range(2, 6)
    }


def level_duration_factor(level: int) -> float:
    """Множитель длительности производства для уровня фабрики/оружейной (1.0 … 0.6)."""
    return _LEVEL_FACTORS.get(max(1, min(level, 5)), 1.0)


# ——— Декор и дороги ———

DECORATIONS: Dict[str, Dict[str, Any]] = {
    "statue_warrior": {"cost": 200, "size": (1, 1)},
    "statue_wizard": {"cost": 200, "size": (1, 1)},
    "statue_dragon": {"cost": 500, "size": (2, 2)},
    "tree_oak": {"cost": 100, "size": (1, 1)},
    "tree_pine": {"cost": 100, "size": (1, 1)},
    "tree_cherry": {"cost": 150, "size": (1, 1)},
    "tree_magic": {"cost": 300, "size": (1, 1)},
    "fountain_small": {"cost": 300, "size": (1, 1)},
    "fountain_grand": {"cost": 1000, "size": (2, 2)},
    "bench": {"cost": 50, "size": (1, 1)},
    "lamp_post": {"cost": 75, "size": (1, 1)},
    "flower_bed": {"cost": 80, "size": (1, 1)},
    "hedge": {"cost": 60, "size": (1, 1)},
    "archway": {"cost": 400, "size": (1, 2)},
    # премиум: ставятся только из купленных за эфир
    "statue_golden": {"cost": 0, "size": (1, 1), "premium": True},
    "fountain_magic": {"cost": 0, "size": (2, 2), "premium": True},
}
for _key, _d in DECORATIONS.items():
    _d["key"] = _key
    _d["name"] = _title(_key)
    _d.setdefault("premium", False)

ROADS: Dict[str, Dict[str, Any]] = {"road": {"key": "road", "name": "Road", "cost": 0, "size": (1, 1)}}

# ——— Рынок ———

MARKET_PRICES: Dict[int, int] = {
    CROP_ITEMS["wheat"]: 3, CROP_ITEMS["carrot"]: 8, CROP_ITEMS["potato"]: 5, CROP_ITEMS["tomato"]: 7,
    CROP_ITEMS["corn"]: 10, CROP_ITEMS["pumpkin"]: 18, CROP_ITEMS["berry"]: 4, CROP_ITEMS["herbs"]: 6,
    CROP_ITEMS["magic_mushroom"]: 20, CROP_ITEMS["enchanted_flower"]: 25,
    CRAFTED_ITEMS["bread"]: 12,
    EQUIPMENT_ITEMS["iron_sword"]: 50, EQUIPMENT_ITEMS["steel_blade"]: 100,
    EQUIPMENT_ITEMS["diamond_armor"]: 200, EQUIPMENT_ITEMS["mithril_sword"]: 300,
    EQUIPMENT_ITEMS["aether_blade"]: 500, EQUIPMENT_ITEMS["dragon_scale_armor"]: 750,
    EQUIPMENT_ITEMS["ancient_relic_weapon"]: 1000,
}

# ——— Достижения: (key, name, condition, target, crystals, xp) ———

_ACHIEVEMENT_ROWS = [
    ("first_harvest", "First Harvest", "harvest_count", 1, 50, 10),
    ("farmer", "Farmer", "harvest_count", 10, 100, 50),
    ("master_farmer", "Master Farmer", "harvest_count", 100, 500, 250),
    ("crop_collector", "Crop Collector", "crop_variety", 5, 200, 100),
    ("first_production", "First Production", "produce_count", 1, 50, 10),
    ("craftsman", "Craftsman", "produce_count", 50, 300, 150),
    ("master_craftsman", "Master Craftsman", "produce_count", 500, 2000, 1000),
    ("recipe_master", "Recipe Master", "recipe_variety", 5, 400, 200),
    ("builder", "Builder", "build_count", 5, 200, 100),
    ("architect", "Architect", "build_count", 20, 1000, 500),
    ("upgrader", "Upgrader", "upgrade_level", 3, 300, 150),
    ("helper", "Helper", "help_count", 10, 200, 100),
    ("trader", "Trader", "trade_count", 10, 300, 150),
    ("level_up", "Level Up", "player_level", 5, 200, 100),
    ("crystal_collector", "Crystal Collector", "crystals_earned", 1000, 500, 250),
    ("daily_player", "Daily Player", "daily_streak", 7, 500, 250),
    ("first_dig", "First Dig", "mine_count", 1, 50, 10),
    ("miner", "Miner", "mine_count", 50, 300, 150),
    ("master_miner", "Master Miner", "mine_count", 500, 2000, 1000),
    ("deep_explorer", "Deep Explorer", "mine_depth", 100, 1000, 500),
]
ACHIEVEMENTS: Dict[str, Dict[str, Any]] = {
    key: {"key": key, "name": name, "condition": cond, "target": target, "crystals": crystals, "xp": xp}
    for key, name, cond, target, crystals, xp in _ACHIEVEMENT_ROWS
}

# Как условие считает прогресс
INCREMENT_CONDITIONS = {"harvest_count", "produce_count", "build_count", "mine_count", "help_count", "trade_count"}
ABSOLUTE_CONDITIONS = {"player_level", "crystals_earned", "daily_streak", "mine_depth"}
MAX_CONDITIONS = {"upgrade_level"}
DISTINCT_CONDITIONS = {"crop_variety": "harvest", "recipe_variety": "produce"}

# ——— Квесты ———


def _quest(key: str, qtype: str, title: str, objectives: List[Dict[str, Any]], crystals: int, xp: int,
           items: Optional[Dict[str, int]] = None, order: int = 0) -> Dict[str, Any]:
    return {
        "key": key, "type": qtype, "title": title, "objectives": objectives,
        "rewards": {"crystals": crystals, "xp": xp, "items": items or {}}, "order_index": order,
    }


QUESTS: Dict[str, Dict[str, Any]] = {q["key"]: q for q in [
    _quest("tutorial_1", "tutorial", "Welcome to Eldergrove", [{"type": "harvest", "target": 1}], 100, 50, order=1),
    _quest("tutorial_2", "tutorial", "First Production", [{"type": "produce", "target": 1}], 150, 75, order=2),
    _quest("tutorial_3", "tutorial", "Build Your Town", [{"type": "build", "target": 1}], 200, 100, order=3),
    _quest("tutorial_4", "tutorial", "Market Day", [{"type": "sell", "target": 1}], 150, 75, order=4),
    _quest("tutorial_5", "tutorial", "Skyport Delivery", [{"type": "order", "target": 1}], 250, 125, order=5),
    _quest("daily_harvest", "daily", "Daily Harvest", [{"type": "harvest", "target": 10}], 100, 50),
    _quest("daily_produce", "daily", "Busy Workshops", [{"type": "produce", "target": 5}], 150, 75),
    _quest("daily_mine", "daily", "Into the Depths", [{"type": "mine", "target": 10}], 120, 60),
    _quest("daily_sell", "daily", "Market Runner", [{"type": "sell", "target": 5}], 100, 50),
    _quest("daily_plant", "daily", "Green Thumb", [{"type": "plant", "target": 10}], 80, 40,
           items={"wheat_seed": 5}),
    _quest("weekly_grove", "weekly", "Heart of the Grove",
           [{"type": "harvest", "target": 100}, {"type": "produce", "target": 30}, {"type": "order", "target": 5}],
           1000, 500, items={"magic_mushroom": 3}),
]}
QUEST_DURATIONS_HOURS = {"daily": 24, "weekly": 24 * 7}
DAILY_QUEST_PICK = 3

# ——— Скайпорт (заказы) ———

ORDER_TYPES: Dict[str, Dict[str, Any]] = {
    "quick": {"minutes": 30, "requirements": 1, "units": (1, 3), "crystals": (10, 29), "xp": (25, 74)},
    "standard": {"minutes": 120, "requirements": 2, "units": (2, 6), "crystals": (30, 79), "xp": (50, 149)},
    "premium": {"minutes": 240, "requirements": 3, "units": (5, 12), "crystals": (75, 174), "xp": (150, 349)},
}
ORDER_ITEM_POOL = [CROP_ITEMS[k] for k in ("wheat", "carrot", "potato", "tomato", "corn", "berry", "herbs")] + [
    CRAFTED_ITEMS["bread"],
]

# ——— Регата ———

WEEKLY_REGATTA_TASKS = [
    {"type": "produce", "target": 100, "item": "bread", "points": 50},
    {"type": "harvest", "target": 200, "points": 30},
    {"type": "mine", "target": 50, "points": 40},
    {"type": "order", "target": 10, "points": 60},
]
WEEKLY_REGATTA_REWARDS = {
    "top_10": {"crystals": 2000},
    "top_25": {"crystals": 1000},
    "participation": {"crystals": 200},
}
REGATTA_TASK_DEFAULT_POINTS = 100

# ——— Премиум-магазин (эфир) ———

PREMIUM_SHOP: Dict[str, Dict[str, Any]] = {
    "speed_1h": {"item_type": "speed_up", "name": "1 Hour Speed-Up", "cost_aether": 10, "cost_crystals": 0,
                 "metadata": {"minutes": 60}},
    "speed_3h": {"item_type": "speed_up", "name": "3 Hour Speed-Up", "cost_aether": 25, "cost_crystals": 0,
                 "metadata": {"minutes": 180}},
    "speed_8h": {"item_type": "speed_up", "name": "8 Hour Speed-Up", "cost_aether": 60, "cost_crystals": 0,
                 "metadata": {"minutes": 480}},
    "statue_golden": {"item_type": "decoration", "name": "Golden Statue", "cost_aether": 50, "cost_crystals": 0,
                      "metadata": {"decoration_type": "statue_golden"}},
    "fountain_magic": {"item_type": "decoration", "name": "Magic Fountain", "cost_aether": 75, "cost_crystals": 0,
                       "metadata": {"decoration_type": "fountain_magic"}},
    "xp_boost_24h": {"item_type": "boost", "name": "24h XP Boost", "cost_aether": 30, "cost_crystals": 0,
                     "metadata": {"boost_type": "xp", "duration_hours": 24, "multiplier": 2.0}},
    "crystal_boost_24h": {"item_type": "boost", "name": "24h Crystal Boost", "cost_aether": 40, "cost_crystals": 0,
                          "metadata": {"boost_type": "crystal", "duration_hours": 24, "multiplier": 1.5}},
    "starter_pack": {"item_type": "bundle", "name": "Starter Pack", "cost_aether": 100, "cost_crystals": 0,
                     "metadata": {"items": [{"type": "crystals", "amount": 1000},
                                            {"type": "speed_up", "minutes": 120}]}},
}
for _key, _p in PREMIUM_SHOP.items():
    _p["key"] = _key

# ——— Общая таблица предметов ———

ITEMS: Dict[int, Dict[str, Any]] = {}
for _group, _cat in ((CROP_ITEMS, "crop"), (CRAFTED_ITEMS, "crafted"), (ORE_ITEMS, "ore"), (EQUIPMENT_ITEMS, "equipment")):
    for _key, _iid in _group.items():
        ITEMS[_iid] = {"id": _iid, "key": _key, "name": _title(_key), "category": _cat}
for _key in CROP_ITEMS:
    _sid = seed_item_id(_key)
    ITEMS[_sid] = {"id": _sid, "key": f"{_key}_seed", "name": f"{_title(_key)} Seed", "category": "seed"}
for _animal in ANIMALS.values():
    _tid = animal_token_id(_animal["id"], 1)
    ITEMS[_tid] = {"id": _tid, "key": f"{_animal['key']}_token", "name": _animal["name"], "category": "animal"}

ITEM_KEYS: Dict[str, int] = {v["key"]: k for k, v in ITEMS.items()}


def item_id(key: str) -> int:
    """Id предмета по ключу ('wheat', 'bread', 'wheat_seed', 'iron_sword' …). KeyError для неизвестного."""
    return ITEM_KEYS[key]


def item_name(iid: int) -> str:
    if iid in ITEMS:
        return ITEMS[iid]["name"]
    token = parse_animal_token(iid)
    if token:
        return f"{ANIMALS_BY_ID[token['type_id']]['name']} (Lv {token['level']})"
    return f"Item #{iid}"


def resolve_items(spec: Dict[str, int]) -> Dict[int, int]:
    """{'wheat': 3} -> {1: 3}"""
    return {item_id(k): int(v) for k, v in spec.items()}


def catalog_payload() -> Dict[str, Any]:
    """Весь справочник для клиента (GET /api/game/catalog, кэшируется)."""
    return {
        "items": list(ITEMS.values()),
        "crops": list(CROPS.values()),
        "recipes": [{**r, "inputs": resolve_items(r["inputs"]), "output": resolve_items(r["output"])}
                    for r in RECIPES.values()],
        "armory_recipes": [{**r, "inputs": resolve_items(r["inputs"]), "output": resolve_items(r["output"])}
                           for r in ARMORY_RECIPES.values()],
        "ores": list(ORES.values()),
        "mining_tools": [{"key": k, **v} for k, v in MINING_TOOLS.items()],
        "animals": list(ANIMALS.values()),
        "buildings": [{**b, "size": list(b["size"])} for b in BUILDINGS.values()],
        "decorations": [{**d, "size": list(d["size"])} for d in DECORATIONS.values()],
        "roads": [{**r, "size": list(r["size"])} for r in ROADS.values()],
        "market_prices": {str(k): v for k, v in MARKET_PRICES.items()},
        "achievements": list(ACHIEVEMENTS.values()),
        "quests": list(QUESTS.values()),
        "premium_shop": list(PREMIUM_SHOP.values()),
        "order_types": {k: {**v, "units": list(v["units"]), "crystals": list(v["crystals"]), "xp": list(v["xp"])}
                        for k, v in ORDER_TYPES.items()},
    }
