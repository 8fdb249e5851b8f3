"""
Зоопарк: вольеры на 2 животных, производство по интервалу, разведение.
Животные вне вольера хранятся в инвентаре жетонами (catalog.animal_token_id).
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from config import get_town_config
from core import catalog
from core.activity import record_action
from core.errors import InvalidState, NotFound
from core.ledger import add_item, debit_crystals, lock_player, remove_item
from core.progression import grant_xp, item_xp
from infrastructure.database import transaction

SLOTS = (1, 2)
OFFSPRING_XP = {"legendary": 200, "rare": 100, "common": 50}


# ——— Чистые правила ———

def production_quantity(base: int, level: int) -> int:
    return int(round(base * (1 + level * 0.1)))


def enclosure_cost(max_enclosures: int) -> int:
    """Цена следующего вольера сверх бесплатных."""
    cfg = get_town_config()
    free = int(cfg["free_enclosures"])
    return int(cfg["enclosure_base_cost"]) * 2 ** max(0, max_enclosures - free)


def offspring_rarity(parent_rarities: List[str], rng=random) -> str:
    if "legendary" in parent_rarities:
        if rng.random() < 0.3:
            return "legendary"
        return "rare" if rng.random() < 0.6 else "common"
    if "rare" in parent_rarities:
        return "rare" if rng.random() < 0.2 else "common"
    return "common"


def pick_offspring(parent_rarities: List[str], rng=random) -> Dict[str, Any]:
    rarity = offspring_rarity(parent_rarities, rng)
    pool = [a for a in catalog.ANIMALS.values() if a["rarity"] == rarity]
    return rng.choice(pool)


def _animal(key: str) -> Dict[str, Any]:
    animal = catalog.ANIMALS.get(key)
    if animal is None:
        raise NotFound("Unknown animal", code="animal_not_found")
    return animal


# ——— Операции ———

async def _enclosure(conn, player_id: int, enclosure_id: int):
    await lock_player(conn, player_id)
    row = await conn.fetchrow(
        "SELECT * FROM enclosures WHERE id = $1 AND player_id = $2 FOR UPDATE", enclosure_id, player_id,
    )
    if row is None:
        raise NotFound("Enclosure not found", code="enclosure_not_found")
    return row


async def list_enclosures(principal) -> List[Dict[str, Any]]:
    now = datetime.now(timezone.utc)
    async with transaction() as conn:
        enclosures = await conn.fetch(
            "SELECT * FROM enclosures WHERE player_id = $1 ORDER BY id", principal.player_id,
        )
        animals = await conn.fetch(
            """SELECT a.* FROM enclosure_animals a JOIN enclosures e ON e.id = a.enclosure_id
               WHERE e.player_id = $1""",
            principal.player_id,
        )
    result = []
    for e in enclosures:
        slots = []
        for a in animals:
            if a["enclosure_id"] != e["id"]:
                continue
            animal = catalog.ANIMALS_BY_ID[a["animal_type_id"]]
            ready_at = a["last_collected_at"] + timedelta(minutes=animal["interval_minutes"])
            slots.append({
                "slot": a["slot"], "animal": animal["key"], "level": a["level"],
                "produces": animal["produces"], "ready_at": ready_at, "ready": ready_at <= now,
            })
        result.append({
            "id": e["id"], "name": e["name"], "animals": sorted(slots, key=lambda s: s["slot"]),
            "breeding_ends_at": e["breeding_ends_at"],
            "breeding_ready": e["breeding_ends_at"] is not None and e["breeding_ends_at"] <= now,
        })
    return result


async def create_enclosure(principal, name: str) -> Dict[str, Any]:
    async with transaction() as conn:
        player = await lock_player(conn, principal.player_id)
        count = await conn.fetchval("SELECT COUNT(*) FROM enclosures WHERE player_id = $1", principal.player_id)
        max_enclosures = int(player["max_enclosures"])
        cost = 0
        balance = int(player["crystals"])
        if count >= max_enclosures:
            cost = enclosure_cost(max_enclosures)
            balance = await debit_crystals(conn, principal.player_id, cost)
            await conn.execute(
                "UPDATE players SET max_enclosures = max_enclosures + 1 WHERE id = $1", principal.player_id,
            )
        enclosure_id = await conn.fetchval(
            "INSERT INTO enclosures (player_id, name) VALUES ($1, $2) RETURNING id",
            principal.player_id, (name or "").strip() or f"Enclosure {count + 1}",
        )
    return {"success": True, "enclosure_id": enclosure_id, "cost": cost, "new_crystal_balance": balance}


async def delete_enclosure(principal, enclosure_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        e = await _enclosure(conn, principal.player_id, enclosure_id)
        occupied = await conn.fetchval("SELECT COUNT(*) FROM enclosure_animals WHERE enclosure_id = $1", enclosure_id)
        if occupied or e["breeding_ends_at"] is not None:
            raise InvalidState("Enclosure is not empty", code="enclosure_not_empty")
        await conn.execute("DELETE FROM enclosures WHERE id = $1", enclosure_id)
    return {"success": True, "enclosure_id": enclosure_id}


async def add_animal(principal, enclosure_id: int, animal_key: str, slot: int,
                     from_inventory: bool = False, level: int = 1) -> Dict[str, Any]:
    animal = _animal(animal_key)
    if slot not in SLOTS:
        raise InvalidState("Slot must be 1 or 2", code="invalid_slot")
    async with transaction() as conn:
        await lock_player(conn, principal.player_id)
        e = await _enclosure(conn, principal.player_id, enclosure_id)
        if e["breeding_ends_at"] is not None:
            raise InvalidState("Enclosure is breeding", code="breeding_in_progress")
        if await conn.fetchval(
            "SELECT 1 FROM enclosure_animals WHERE enclosure_id = $1 AND slot = $2", enclosure_id, slot,
        ):
            raise InvalidState("Slot is occupied", code="slot_occupied")
        cost = 0
        if from_inventory:
            await remove_item(conn, principal.player_id, catalog.animal_token_id(animal["id"], level), 1)
        else:
            level = 1
            cost = animal["cost"]
            await debit_crystals(conn, principal.player_id, cost)
        await conn.execute(
            """INSERT INTO enclosure_animals (enclosure_id, slot, animal_type_id, level, last_collected_at)
               VALUES ($1, $2, $3, $4, NOW())""",
            enclosure_id, slot, animal["id"], level,
        )
        balance = await conn.fetchval("SELECT crystals FROM players WHERE id = $1", principal.player_id)
    return {"success": True, "enclosure_id": enclosure_id, "slot": slot, "animal": animal_key, "level": level,
            "cost": cost, "new_crystal_balance": int(balance)}


async def remove_animal(principal, enclosure_id: int, slot: int) -> Dict[str, Any]:
    async with transaction() as conn:
        e = await _enclosure(conn, principal.player_id, enclosure_id)
        if e["breeding_ends_at"] is not None:
            raise InvalidState("Enclosure is breeding", code="breeding_in_progress")
        row = await conn.fetchrow(
            "DELETE FROM enclosure_animals WHERE enclosure_id = $1 AND slot = $2 RETURNING animal_type_id, level",
            enclosure_id, slot,
        )
        if row is None:
            raise InvalidState("Slot is empty", code="slot_empty")
        token = catalog.animal_token_id(row["animal_type_id"], row["level"])
        await add_item(conn, principal.player_id, token, 1)
    return {"success": True, "token_item_id": token}


async def collect_animal(principal, enclosure_id: int, slot: int) -> Dict[str, Any]:
    async with transaction() as conn:
        await _enclosure(conn, principal.player_id, enclosure_id)
        row = await conn.fetchrow(
            "SELECT * FROM enclosure_animals WHERE enclosure_id = $1 AND slot = $2 FOR UPDATE", enclosure_id, slot,
        )
        if row is None:
            raise InvalidState("Slot is empty", code="slot_empty")
        animal = catalog.ANIMALS_BY_ID[row["animal_type_id"]]
        now = datetime.now(timezone.utc)
        ready_at = row["last_collected_at"] + timedelta(minutes=animal["interval_minutes"])
        if ready_at > now:
            raise InvalidState("Animal has nothing to collect yet", code="not_ready", ready_at=ready_at.isoformat())
        await conn.execute(
            "UPDATE enclosure_animals SET last_collected_at = $3 WHERE enclosure_id = $1 AND slot = $2",
            enclosure_id, slot, now,
        )
        item = catalog.item_id(animal["produces"])
        qty = production_quantity(animal["quantity"], row["level"])
        new_quantity = await add_item(conn, principal.player_id, item, qty)
        xp = await grant_xp(conn, principal.player_id, item_xp(item, qty))
        await record_action(conn, principal.player_id, "collect")
    return {"success": True, "item_id": item, "quantity": qty, "new_quantity": new_quantity,
            "xp_gained": xp["xp_granted"], "levels_gained": xp["levels_gained"]}


async def start_breeding(principal, enclosure_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        e = await _enclosure(conn, principal.player_id, enclosure_id)
        if e["breeding_ends_at"] is not None:
            raise InvalidState("Already breeding", code="breeding_in_progress")
        rows = await conn.fetch("SELECT animal_type_id FROM enclosure_animals WHERE enclosure_id = $1", enclosure_id)
        if len(rows) < 2:
            raise InvalidState("Breeding needs two animals", code="breeding_needs_pair")
        minutes = max(catalog.ANIMALS_BY_ID[r["animal_type_id"]]["breeding_minutes"] for r in rows)
        now = datetime.now(timezone.utc)
        ends_at = now + timedelta(minutes=minutes)
        await conn.execute(
            "UPDATE enclosures SET breeding_started_at = $2, breeding_ends_at = $3 WHERE id = $1",
            enclosure_id, now, ends_at,
        )
    return {"success": True, "enclosure_id": enclosure_id, "breeding_ends_at": ends_at}


async def cancel_breeding(principal, enclosure_id: int) -> Dict[str, Any]:
    async with transaction() as conn:
        e = await _enclosure(conn, principal.player_id, enclosure_id)
        if e["breeding_ends_at"] is None:
            raise InvalidState("Not breeding", code="not_breeding")
        await conn.execute(
            "UPDATE enclosures SET breeding_started_at = NULL, breeding_ends_at = NULL WHERE id = $1", enclosure_id,
        )
    return {"success": True, "enclosure_id": enclosure_id}


async def collect_bred_animal(principal, enclosure_id: int, rng: Optional[random.Random] = None) -> Dict[str, Any]:
    async with transaction() as conn:
        e = await _enclosure(conn, principal.player_id, enclosure_id)
        if e["breeding_ends_at"] is None:
            raise InvalidState("Not breeding", code="not_breeding")
        if e["breeding_ends_at"] > datetime.now(timezone.utc):
            raise InvalidState("Breeding is not finished", code="not_ready",
                               ready_at=e["breeding_ends_at"].isoformat())
        rows = await conn.fetch("SELECT animal_type_id FROM enclosure_animals WHERE enclosure_id = $1", enclosure_id)
        rarities = [catalog.ANIMALS_BY_ID[r["animal_type_id"]]["rarity"] for r in rows]
        baby = pick_offspring(rarities, rng or random)
        await conn.execute(
            "UPDATE enclosures SET breeding_started_at = NULL, breeding_ends_at = NULL WHERE id = $1", enclosure_id,
        )
        token = catalog.animal_token_id(baby["id"], 1)
        await add_item(conn, principal.player_id, token, 1)
        xp = await grant_xp(conn, principal.player_id, OFFSPRING_XP[baby["rarity"]])
        await record_action(conn, principal.player_id, "breed")
    return {"success": True, "offspring": baby["key"], "rarity": baby["rarity"], "token_item_id": token,
            "xp_gained": xp["xp_granted"]}
