"""
Чистые правила игры: без базы и сети.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from core import catalog
from core.bonuses import bonus_from_counts, discounted_cost, level_discount, production_speed
from core.coven import split_shared_crystals, validate_objectives
from core.daily_reward import next_streak, reward_crystals
from core.economy import LISTING_COMMISSION, seller_proceeds
from core.errors import InvalidState
from core.identity import storage_capacity, warehouse_upgrade_cost
from core.mining import drop_rarity, energy_cost, energy_reset_due, energy_view, max_energy, next_tool, roll_drop
from core.orders import generate_order
from core.progression import advance_objectives, apply_xp, item_xp, new_quest_progress, points_to_xp, xp_for_level
from core.queues import factory_max_slots, lowest_free_slot, production_duration
from core.regatta import next_week_window, reward_tier, task_points
from core.town import expansion, footprint, in_bounds, road_type, roads_with_types
from core.zoo import enclosure_cost, offspring_rarity, production_quantity


class FixedRng:
    """Детерминированная замена random: randint/random по очереди, choice отдаёт первый элемент."""

    def __init__(self, ints=(), floats=()):
        self.ints = list(ints)
        self.floats = list(floats)

    def randint(self, a, b):
        return self.ints.pop(0)

    def random(self):
        return self.floats.pop(0)

    def choice(self, seq):
        return seq[0]


# ——— Опыт и уровни ———

def test_xp_curve():
    assert xp_for_level(1) == 1000
    assert xp_for_level(7) == 7000


def test_apply_xp_carries_excess():
    assert apply_xp(1, 999) == (1, 999, 0)
    assert apply_xp(1, 2500) == (2, 1500, 1)
    assert apply_xp(1, 3000) == (3, 0, 2)


def test_item_xp_from_price_and_ranges():
    assert item_xp(catalog.item_id("wheat"), 2) == 10  # цена 3 -> минимум 5 за штуку
    assert item_xp(catalog.item_id("bread")) == 6
    assert item_xp(catalog.item_id("iron_sword")) == 25
    assert item_xp(catalog.item_id("coal")) == 15
    assert item_xp(catalog.item_id("vegetable_stew")) == 12
    assert item_xp(catalog.item_id("wheat"), 0) == 0


def test_objectives_capped_at_target():
    progress = new_quest_progress(catalog.QUESTS["weekly_grove"])
    progress, changed, done = advance_objectives(progress, "harvest", 250)
    assert changed and not done
    assert progress[0]["current"] == 100
    progress, changed, _ = advance_objectives(progress, "harvest", 1)
    assert not changed
    progress, _, _ = advance_objectives(progress, "produce", 30)
    progress, _, done = advance_objectives(progress, "order", 5)
    assert done


def test_objectives_ignore_other_actions():
    progress = new_quest_progress(catalog.QUESTS["daily_mine"])
    updated, changed, done = advance_objectives(progress, "harvest", 3)
    assert not changed and not done
    assert updated == progress


# ——— Бонусы и очереди ———

def test_level_discount_caps_at_quarter():
    assert level_discount(10) == pytest.approx(0.05)
    assert level_discount(60) == 0.25
    assert discounted_cost(1000, 10) == 950
    assert discounted_cost(1000, 100) == 750


def test_production_speed():
    assert production_speed(0) == 1.0
    assert production_speed(10) == pytest.approx(1.1)
    assert production_speed(100) == 1.5


def test_building_bonus_caps_per_type():
    assert bonus_from_counts("xp", {"school": 20}) == pytest.approx(0.10)
    assert bonus_from_counts("crystals", {"cinema": 2}) == pytest.approx(0.02)
    assert bonus_from_counts("energy_regen", {"hospital": 10}) == 20
    assert bonus_from_counts("xp", {"rune_bakery": 3}) == 0


def test_factory_slots():
    assert factory_max_slots(1, 1) == 2
    assert factory_max_slots(3, 1) == 6
    assert factory_max_slots(1, 2) == 3
    assert factory_max_slots(1, 4) == 4


def test_lowest_free_slot():
    assert lowest_free_slot([1, 3], 3) == 2
    assert lowest_free_slot([], 2) == 1
    assert lowest_free_slot([1, 2], 2) is None


def test_production_duration_scales_with_levels():
    assert production_duration(10, 1, 0).total_seconds() == pytest.approx(600)
    assert production_duration(10, 5, 0).total_seconds() == pytest.approx(360)
    assert production_duration(11, 1, 10).total_seconds() == pytest.approx(600)


# ——— Шахта ———

def test_energy_cost_grows_with_depth():
    assert energy_cost("basic_pickaxe", 0) == 10
    assert energy_cost("basic_pickaxe", 25) == 12
    assert energy_cost("magic_pickaxe", 90) == 6


def test_max_energy():
    assert max_energy(10) == 120
    assert max_energy(10, 5) == 125


def test_energy_reset_after_a_day():
    now = datetime(2026, 10, 19, 12, tzinfo=timezone.utc)
    assert energy_reset_due(now - timedelta(hours=24), now)
    assert not energy_reset_due(now - timedelta(hours=23, minutes=59), now)


def test_energy_view():
    assert energy_view(30, 120) == {"current": 90, "max": 120, "used": 30, "percentage": 75.0}
    assert energy_view(200, 120)["current"] == 0


@pytest.mark.parametrize("depth,roll,expected", [
    (5, 49, "common"), (5, 50, None),
    (20, 39, "common"), (20, 45, "rare"), (20, 60, None),
    (40, 10, "rare"), (40, 45, "epic"), (40, 50, None),
    (80, 19, "rare"), (80, 69, "epic"), (80, 70, None),
])
def test_drop_table(depth, roll, expected):
    assert drop_rarity(depth, roll) == expected


def test_roll_drop_epic_upgrade_only_for_good_tools():
    assert roll_drop(5, "basic_pickaxe", FixedRng(ints=[0])) == "coal"
    assert roll_drop(5, "diamond_pickaxe", FixedRng(ints=[0], floats=[0.05])) == "mithril"
    assert roll_drop(5, "diamond_pickaxe", FixedRng(ints=[0], floats=[0.5])) == "coal"
    assert roll_drop(5, "magic_pickaxe", FixedRng(ints=[99])) is None


def test_tool_order():
    assert next_tool("basic_pickaxe") == "iron_pickaxe"
    assert next_tool("diamond_pickaxe") == "magic_pickaxe"
    assert next_tool("magic_pickaxe") is None


# ——— Зоопарк ———

def test_animal_production_quantity():
    assert production_quantity(2, 1) == 2
    assert production_quantity(10, 5) == 15


def test_enclosure_cost_doubles_after_free():
    assert enclosure_cost(1) == 500
    assert enclosure_cost(3) == 500
    assert enclosure_cost(5) == 2000


def test_breeding_odds():
    assert offspring_rarity(["common", "common"], FixedRng()) == "common"
    assert offspring_rarity(["rare", "common"], FixedRng(floats=[0.1])) == "rare"
    assert offspring_rarity(["rare", "common"], FixedRng(floats=[0.2])) == "common"
    assert offspring_rarity(["legendary", "common"], FixedRng(floats=[0.29])) == "legendary"
    assert offspring_rarity(["legendary", "rare"], FixedRng(floats=[0.5, 0.59])) == "rare"
    assert offspring_rarity(["legendary", "rare"], FixedRng(floats=[0.5, 0.6])) == "common"


# ——— Город ———

def test_footprint_and_bounds():
    assert footprint(2, 3, 2, 2) == {(2, 3), (3, 3), (2, 4), (3, 4)}
    assert in_bounds(footprint(8, 8, 2, 2), 10)
    assert not in_bounds(footprint(9, 9, 2, 2), 10)


@pytest.mark.parametrize("n,s,e,w,expected", [
    (False, False, False, False, "straight_h"),
    (True, False, False, False, "straight_v"),
    (False, False, True, False, "straight_h"),
    (True, True, False, False, "straight_v"),
    (False, False, True, True, "straight_h"),
    (True, False, True, False, "corner_ne"),
    (True, False, False, True, "corner_nw"),
    (False, True, True, False, "corner_se"),
    (False, True, False, True, "corner_sw"),
    (False, True, True, True, "t_s"),
    (True, False, True, True, "t_n"),
    (True, True, False, True, "t_w"),
    (True, True, True, False, "t_e"),
    (True, True, True, True, "intersection"),
])
def test_road_type(n, s, e, w, expected):
    assert road_type(n, s, e, w) == expected


def test_roads_with_types_uses_neighbours():
    roads = roads_with_types([(1, 1), (1, 2), (2, 1)])
    assert roads == [
        {"x": 1, "y": 1, "road_type": "corner_se"},
        {"x": 1, "y": 2, "road_type": "straight_v"},
        {"x": 2, "y": 1, "road_type": "straight_h"},
    ]


def test_expansion():
    assert expansion("all", 10) == (15, 10000)
    assert expansion("north", 10) == (12, 5000)


# ——— Рынок и заказы ———

def test_seller_proceeds():
    assert seller_proceeds(100, 0.05) == {"commission": 5, "seller_receives": 95}
    assert seller_proceeds(19, 0.05) == {"commission": 0, "seller_receives": 19}


@pytest.mark.parametrize("price", [1, 19, 20, 99, 100, 1234, 10**9])
def test_market_commission_is_five_percent_floor(price):
    split = seller_proceeds(price, LISTING_COMMISSION)
    assert split["seller_receives"] == price - price * 5 // 100
    assert split["seller_receives"] + split["commission"] == price


def test_generate_order_within_tier():
    import random

    rng = random.Random(7)
    order = generate_order("premium", rng)
    tier = catalog.ORDER_TYPES["premium"]
    assert len(order["requirements"]) == tier["requirements"]
    assert all(int(i) in catalog.ORDER_ITEM_POOL for i in order["requirements"])
    assert all(tier["units"][0] <= q <= tier["units"][1] for q in order["requirements"].values())
    assert tier["crystals"][0] <= order["rewards"]["crystals"] <= tier["crystals"][1]
    assert order["minutes"] == 240


# ——— Ковен и регата ———

def test_split_shared_crystals():
    assert split_shared_crystals(100, 3) == {"per_member": 33, "remainder": 1}
    assert split_shared_crystals(0, 3) == {"per_member": 0, "remainder": 0}
    assert split_shared_crystals(50, 0) == {"per_member": 0, "remainder": 50}


def test_validate_objectives():
    assert validate_objectives([{"type": " harvest ", "target": "5"}]) == [{"type": "harvest", "target": 5}]
    with pytest.raises(InvalidState):
        validate_objectives([])
    with pytest.raises(InvalidState):
        validate_objectives([{"type": "harvest", "target": 0}])


@pytest.mark.parametrize("rank,total,tier", [
    (1, 100, "top_10"), (10, 100, "top_10"), (11, 100, "top_25"),
    (25, 100, "top_25"), (26, 100, "participation"), (1, 10, "top_10"),
])
def test_regatta_reward_tier(rank, total, tier):
    assert reward_tier(rank, total) == tier


def test_points_convert_to_xp():
    assert points_to_xp(100) == 1000
    assert points_to_xp(100, share=3) == 333
    assert points_to_xp(0, share=3) == 0
    assert points_to_xp(10, share=0) == 0


def test_regatta_task_points():
    assert task_points({"points": 250}) == 250
    assert task_points({"type": "harvest"}) == catalog.REGATTA_TASK_DEFAULT_POINTS


def test_next_week_window_starts_on_monday():
    monday = datetime(2026, 10, 19, 15, tzinfo=timezone.utc)
    window = next_week_window(monday)
    assert window["start_date"] == datetime(2026, 10, 26, tzinfo=timezone.utc)
    assert window["end_date"] == datetime(2026, 11, 1, tzinfo=timezone.utc)
    assert next_week_window(datetime(2026, 10, 21, 9, tzinfo=timezone.utc))["start_date"] == window["start_date"]


# ——— Ежедневная награда ———

def test_daily_streak():
    today = date(2026, 10, 19)
    assert next_streak(date(2026, 10, 18), today, 4) == 5
    assert next_streak(date(2026, 10, 16), today, 4) == 1
    assert next_streak(None, today, 0) == 1


def test_daily_reward_cinema_bonus():
    assert reward_crystals(500, 0) == 500
    assert reward_crystals(500, 0.02) == 510


# ——— Склад и справочник ———

def test_storage_capacity():
    assert storage_capacity(1, 1) == 55
    assert storage_capacity(3, 10) == 150
    assert warehouse_upgrade_cost(2) == 400


def test_item_namespace():
    assert catalog.item_id("wheat") == 1
    assert catalog.item_id("bread") == 11
    assert catalog.item_id("coal") == 20
    assert catalog.item_id("iron_sword") == 30
    assert catalog.seed_item_id("wheat") == 101
    assert catalog.item_id("wheat_seed") == 101
    assert catalog.animal_token_id(5, 2) == 1502
    assert catalog.parse_animal_token(1502) == {"type_id": 5, "level": 2}
    assert catalog.parse_animal_token(1000) is None
    assert catalog.item_category(101) == "seed"
    assert catalog.item_category(25) == "ore"
    assert catalog.item_category(1502) == "animal"
    assert catalog.item_category(500) == "unknown"
    assert catalog.item_name(1502) == "Unicorn (Lv 2)"


def test_catalog_references_resolve():
    for recipe in list(catalog.RECIPES.values()) + list(catalog.ARMORY_RECIPES.values()):
        catalog.resolve_items(recipe["inputs"])
        catalog.resolve_items(recipe["output"])
    for quest in catalog.QUESTS.values():
        catalog.resolve_items(quest["rewards"]["items"])
    for animal in catalog.ANIMALS.values():
        assert catalog.item_id(animal["produces"])
    payload = catalog.catalog_payload()
    assert len(payload["items"]) == len(catalog.ITEMS)
    assert {a["condition"] for a in payload["achievements"]} <= (
        catalog.INCREMENT_CONDITIONS | catalog.ABSOLUTE_CONDITIONS | catalog.MAX_CONDITIONS
        | set(catalog.DISTINCT_CONDITIONS)
    )
