"""
Сценарии против настоящего PostgreSQL. Нужна пустая (или тестовая) база:
    TEST_DATABASE_URL=postgresql://localhost/eldergrove_test pytest -m db
Без TEST_DATABASE_URL тесты пропускаются.
"""
import asyncio
import os
import uuid

import pytest

import infrastructure.database as database
from core import armory, catalog, coven, economy, factory, farm, friends, mining, town
from core.errors import InsufficientResource, InvalidState, Unauthorized
from core.identity import Principal, ensure_player
from core.ledger import add_item, credit_crystals, debit_crystals, remove_item
from infrastructure.database import close_db, init_db, transaction

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "").strip()

pytestmark = [
    pytest.mark.db,
    pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set"),
]


@pytest.fixture
def run_db(monkeypatch):
    """Запуск сценария в своём event loop с собственным пулом."""
    monkeypatch.setattr(database, "DATABASE_URL", TEST_DATABASE_URL)
    monkeypatch.setattr(database, "_pool", None)

    def run(scenario):
        async def wrapper():
            await init_db()
            try:
                return await scenario()
            finally:
                await close_db()
        return asyncio.run(wrapper())

    return run


async def _new_player() -> Principal:
    return Principal(player_id=await ensure_player(f"test-{uuid.uuid4().hex[:12]}", "tester"))


def test_new_player_starting_kit(run_db):
    async def scenario():
        principal = await _new_player()
        pid = principal.player_id
        async with transaction() as conn:
            plots = await conn.fetch("SELECT crop_key FROM farm_plots WHERE player_id = $1", pid)
            armories = await conn.fetch("SELECT armory_type, level FROM armories WHERE player_id = $1", pid)
            factories = await conn.fetch("SELECT factory_type, level FROM factories WHERE player_id = $1", pid)
            tools = await conn.fetch("SELECT tool_type FROM mining_tools WHERE player_id = $1", pid)
            wheat = await conn.fetchval(
                "SELECT quantity FROM inventory WHERE player_id = $1 AND item_id = $2", pid, catalog.item_id("wheat"),
            )
        assert len(plots) == 6 and all(p["crop_key"] is None for p in plots)
        assert [(a["armory_type"], a["level"]) for a in armories] == [("basic_forge", 1)]
        assert [(f["factory_type"], f["level"]) for f in factories] == [("rune_bakery", 1)]
        assert [t["tool_type"] for t in tools] == ["basic_pickaxe"]
        assert wheat == 10

        # повторный вход не создаёт второй набор
        async with transaction() as conn:
            external_id = await conn.fetchval("SELECT external_id FROM players WHERE id = $1", pid)
        assert await ensure_player(external_id) == pid

    run_db(scenario)


def test_plant_and_harvest_wheat(run_db):
    async def scenario():
        principal = await _new_player()
        pid = principal.player_id
        async with transaction() as conn:
            await add_item(conn, pid, catalog.seed_item_id("wheat"), 1)

        await farm.plant(principal, 1, "wheat")
        with pytest.raises(InvalidState) as exc:
            await farm.harvest(principal, 1)
        assert exc.value.code == "not_ready"

        async with transaction() as conn:
            await conn.execute(
                """UPDATE farm_plots SET planted_at = planted_at - INTERVAL '2 minutes',
                     ready_at = ready_at - INTERVAL '2 minutes'
                   WHERE player_id = $1 AND plot_index = 1""",
                pid,
            )
        result = await farm.harvest(principal, 1)
        assert result["item_id"] == 1
        assert result["quantity_harvested"] == catalog.CROPS["wheat"]["yield"]
        assert result["new_quantity"] == 10 + catalog.CROPS["wheat"]["yield"]
        assert result["xp_gained"] > 0

        plots = await farm.list_plots(principal)
        assert plots[0]["crop"] is None

    run_db(scenario)


def test_coven_task_completes_on_both_objectives(run_db):
    async def scenario():
        leader, second, third = [await _new_player() for _ in range(3)]
        created = await coven.create_coven(leader, f"Grove {uuid.uuid4().hex[:8]}")
        for member in (second, third):
            await coven.join_coven(member, created["coven_id"])
        task = await coven.create_task(
            leader, "Harvest festival",
            [{"type": "harvest", "target": 1000}, {"type": "produce", "target": 1000}],
            {"shared_crystals": 300, "coven_points": 10},
        )

        async def balances():
            async with transaction() as conn:
                rows = await conn.fetch(
                    "SELECT id, crystals FROM players WHERE id = ANY($1::bigint[])",
                    [leader.player_id, second.player_id, third.player_id],
                )
            return {r["id"]: int(r["crystals"]) for r in rows}

        before = await balances()
        first = await coven.contribute(leader, task["task_id"], "harvest", 1000)
        assert first["completed"] is False
        partial = await coven.contribute(second, task["task_id"], "produce", 600)
        assert partial["completed"] is False
        last = await coven.contribute(third, task["task_id"], "produce", 400)
        assert last["completed"] is True
        assert last["distribution"]["per_member"] == 100
        assert last["distribution"]["members_rewarded"] == 3

        after = await balances()
        assert all(after[pid] - before[pid] == 100 for pid in before)

    run_db(scenario)


# ——— Неизменность состояния при отказе ———

async def _snapshot(player_id: int):
    """Кристаллы и весь инвентарь игрока."""
    async with transaction() as conn:
        crystals = await conn.fetchval("SELECT crystals FROM players WHERE id = $1", player_id)
        rows = await conn.fetch("SELECT item_id, quantity FROM inventory WHERE player_id = $1", player_id)
    return int(crystals), {r["item_id"]: r["quantity"] for r in rows if r["quantity"]}


async def _give_crystals(player_id: int, amount: int) -> None:
    async with transaction() as conn:
        await credit_crystals(conn, player_id, amount, earned=False)


def test_cancel_listing_restores_quantity(run_db):
    async def scenario():
        principal = await _new_player()
        wheat = catalog.item_id("wheat")
        before = await _snapshot(principal.player_id)

        listing = await economy.create_listing(principal, wheat, 7, 40)
        _, escrowed = await _snapshot(principal.player_id)
        assert escrowed.get(wheat, 0) == before[1][wheat] - 7

        result = await economy.cancel_listing(principal, listing["listing_id"])
        assert result["returned"] == 7
        assert await _snapshot(principal.player_id) == before

    run_db(scenario)


def test_purchase_moves_price_minus_commission(run_db):
    async def scenario():
        seller, buyer = await _new_player(), await _new_player()
        await _give_crystals(buyer.player_id, 500)
        wheat = catalog.item_id("wheat")
        price = 100
        listing = await economy.create_listing(seller, wheat, 4, price)

        seller_before, _ = await _snapshot(seller.player_id)
        buyer_before, buyer_items = await _snapshot(buyer.player_id)
        result = await economy.purchase_listing(buyer, listing["listing_id"])
        seller_after, _ = await _snapshot(seller.player_id)
        buyer_after, buyer_items_after = await _snapshot(buyer.player_id)

        assert result["commission"] == price * 5 // 100
        assert buyer_before - buyer_after == price
        assert seller_after - seller_before == price - price * 5 // 100
        assert buyer_items_after[wheat] == buyer_items[wheat] + 4

        with pytest.raises(InvalidState) as exc:
            await economy.purchase_listing(buyer, listing["listing_id"])
        assert exc.value.code == "listing_unavailable"

    run_db(scenario)


def test_crossed_purchases_both_complete(run_db):
    async def scenario():
        a, b = await _new_player(), await _new_player()
        for p in (a, b):
            await _give_crystals(p.player_id, 300)
        wheat = catalog.item_id("wheat")
        from_a = await economy.create_listing(a, wheat, 2, 50)
        from_b = await economy.create_listing(b, wheat, 2, 50)

        # встречные покупки в одно время: игроки блокируются в одном порядке
        results = await asyncio.gather(
            economy.purchase_listing(a, from_b["listing_id"]),
            economy.purchase_listing(b, from_a["listing_id"]),
        )
        assert all(r["success"] for r in results)
        for p in (a, b):
            crystals, _ = await _snapshot(p.player_id)
            assert crystals == 300 - 50 + (50 - 50 * 5 // 100)

    run_db(scenario)


def test_place_on_occupied_cell_changes_nothing(run_db):
    async def scenario():
        principal = await _new_player()
        await _give_crystals(principal.player_id, 2000)
        before = await _snapshot(principal.player_id)

        # (4, 4) занята ратушей из начального набора
        with pytest.raises(InvalidState) as exc:
            await town.place_building(principal, "rune_bakery", 4, 4)
        assert exc.value.code == "cells_occupied"
        with pytest.raises(InvalidState):
            await town.place_decoration(principal, "bench", 4, 4)
        with pytest.raises(InvalidState):
            await town.place_road(principal, 4, 4)

        assert await _snapshot(principal.player_id) == before
        async with transaction() as conn:
            buildings = await conn.fetchval("SELECT COUNT(*) FROM buildings WHERE player_id = $1", principal.player_id)
            roads = await conn.fetchval("SELECT COUNT(*) FROM roads WHERE player_id = $1", principal.player_id)
        assert buildings == 1 and roads == 0

    run_db(scenario)


def test_production_without_inputs_changes_nothing(run_db):
    async def scenario():
        principal = await _new_player()
        wheat = catalog.item_id("wheat")
        async with transaction() as conn:
            await remove_item(conn, principal.player_id, wheat, 8)
        before = await _snapshot(principal.player_id)
        assert before[1][wheat] == 2

        with pytest.raises(InsufficientResource):
            await factory.start_production(principal, "rune_bakery", "bread")
        with pytest.raises(InsufficientResource):
            await armory.start_craft(principal, "iron_sword")

        assert await _snapshot(principal.player_id) == before
        async with transaction() as conn:
            queued = await conn.fetchval(
                "SELECT COUNT(*) FROM factory_queue WHERE player_id = $1", principal.player_id,
            )
        assert queued == 0

    run_db(scenario)


def test_early_collect_changes_nothing(run_db):
    async def scenario():
        principal = await _new_player()
        pid = principal.player_id
        async with transaction() as conn:
            for item, qty in catalog.resolve_items({"iron": 5, "coal": 2}).items():
                await add_item(conn, pid, item, qty)
            await add_item(conn, pid, catalog.seed_item_id("wheat"), 1)

        started = await factory.start_production(principal, "rune_bakery", "bread")
        crafting = await armory.start_craft(principal, "iron_sword")
        await farm.plant(principal, 1, "wheat")
        before = await _snapshot(pid)

        with pytest.raises(InvalidState) as exc:
            await factory.collect(principal, "rune_bakery", started["slot"])
        assert exc.value.code == "not_ready"
        with pytest.raises(InvalidState) as exc:
            await armory.collect_craft(principal, crafting["slot"])
        assert exc.value.code == "not_ready"
        with pytest.raises(InvalidState) as exc:
            await farm.harvest(principal, 1)
        assert exc.value.code == "not_ready"

        assert await _snapshot(pid) == before
        async with transaction() as conn:
            factory_left = await conn.fetchval("SELECT COUNT(*) FROM factory_queue WHERE player_id = $1", pid)
            armory_left = await conn.fetchval("SELECT COUNT(*) FROM armory_queue WHERE player_id = $1", pid)
            crop = await conn.fetchval(
                "SELECT crop_key FROM farm_plots WHERE player_id = $1 AND plot_index = 1", pid,
            )
        assert factory_left == 1 and armory_left == 1 and crop == "wheat"

    run_db(scenario)


def test_overdraft_debit_rejected(run_db):
    async def scenario():
        principal = await _new_player()
        await _give_crystals(principal.player_id, 120)
        with pytest.raises(InsufficientResource):
            async with transaction() as conn:
                await debit_crystals(conn, principal.player_id, 121)
        crystals, _ = await _snapshot(principal.player_id)
        assert crystals == 120

        async with transaction() as conn:
            assert await debit_crystals(conn, principal.player_id, 120) == 0
        with pytest.raises(InsufficientResource):
            async with transaction() as conn:
                await debit_crystals(conn, principal.player_id, 1)
        crystals, _ = await _snapshot(principal.player_id)
        assert crystals == 0

    run_db(scenario)


# ——— Ковен, шахта, друзья ———

def test_coven_points_become_contributor_xp(run_db):
    async def scenario():
        leader, second, idle = [await _new_player() for _ in range(3)]
        created = await coven.create_coven(leader, f"Grove {uuid.uuid4().hex[:8]}")
        for member in (second, idle):
            await coven.join_coven(member, created["coven_id"])
        task = await coven.create_task(
            leader, "Ore run", [{"type": "mine", "target": 10}], {"shared_crystals": 0, "coven_points": 100},
        )

        async def xp():
            async with transaction() as conn:
                rows = await conn.fetch(
                    "SELECT id, xp FROM players WHERE id = ANY($1::bigint[])",
                    [leader.player_id, second.player_id, idle.player_id],
                )
            return {r["id"]: int(r["xp"]) for r in rows}

        before = await xp()
        await coven.contribute(leader, task["task_id"], "mine", 4)
        last = await coven.contribute(second, task["task_id"], "mine", 6)
        assert last["completed"] is True
        assert last["distribution"]["contributors"] == 2
        assert last["distribution"]["xp_per_contributor"] == 100 * 10 // 2

        after = await xp()
        assert after[leader.player_id] - before[leader.player_id] == 500
        assert after[second.player_id] - before[second.player_id] == 500
        assert after[idle.player_id] == before[idle.player_id]

        async with transaction() as conn:
            points = await conn.fetchval(
                "SELECT coven_points FROM coven_resources WHERE coven_id = $1", created["coven_id"],
            )
        assert points == 100

    run_db(scenario)


def test_mine_finds_only_for_drops(run_db):
    async def scenario():
        principal = await _new_player()
        results = [await mining.dig(principal) for _ in range(5)]
        drops = sum(1 for r in results if r["found"] is not None)
        async with transaction() as conn:
            finds = await conn.fetch(
                "SELECT item_id FROM mine_finds WHERE player_id = $1", principal.player_id,
            )
        assert len(finds) == drops
        assert all(f["item_id"] is not None for f in finds)

    run_db(scenario)


def test_friend_help_speeds_production_and_notifies(run_db):
    async def scenario():
        me, friend = await _new_player(), await _new_player()
        with pytest.raises(Unauthorized):
            await friends.visit_friend_town(me, friend.player_id)

        await friends.send_friend_request(me, friend.player_id)
        listed = await friends.list_friends(friend)
        assert [f["player_id"] for f in listed["incoming"]] == [me.player_id]
        await friends.accept_friend_request(friend, me.player_id)
        assert [f["player_id"] for f in (await friends.list_friends(me))["friends"]] == [friend.player_id]

        visited = await friends.visit_friend_town(me, friend.player_id)
        assert visited["friend_id"] == friend.player_id

        started = await factory.start_production(friend, "rune_bakery", "bread")
        helped = await friends.help_speed_production(me, friend.player_id, "rune_bakery", started["slot"])
        assert helped["finishes_at"] < started["finishes_at"]
        assert helped["helps_remaining"] == 2

        async with transaction() as conn:
            events = await conn.fetch(
                "SELECT category FROM notification_events WHERE player_id = $1 AND delivered_at IS NULL",
                friend.player_id,
            )
        assert [e["category"] for e in events] == ["friend_help"]

    run_db(scenario)
