"""
Игровые эндпоинты /api/game. Каждый вызывает одну операцию core/* (одна транзакция).
Ошибки GameError превращаются в ответ обработчиком в api/main.py.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.auth import get_principal, require_bearer
from api.limits import limiter
from api.schemas import (
    AdSpeedUpBody,
    AddAnimalBody,
    ArmoryBody,
    ArmoryCraftBody,
    ArmorySlotBody,
    BuySeedBody,
    CellBody,
    EnclosureCreateBody,
    EnclosureSlotBody,
    ExpandBody,
    FactoryBody,
    FactorySlotBody,
    ListingBody,
    PlaceBody,
    PlantBody,
    PlotBody,
    PreferencesBody,
    PremiumPurchaseBody,
    ProductionBody,
    SellBody,
    SpeedUpBody,
    SubscriptionBody,
    UnsubscribeBody,
)
from config import API_RATE_LIMIT, API_RATE_LIMIT_STRICT
from core import (
    armory,
    catalog,
    daily_reward,
    economy,
    factory,
    farm,
    identity,
    mining,
    monetization,
    notifications,
    orders,
    progression,
    town,
    zoo,
)
from core.identity import Principal
from infrastructure.cache import CATALOG_KEY, CATALOG_TTL_SEC, cache_get, cache_set

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/game", tags=["game"])


# ——— Профиль и справочник ———

@router.get("/profile")
@limiter.limit(API_RATE_LIMIT)
async def api_profile(request: Request, principal: Principal = Depends(get_principal)):
    """Профиль с производными: опыт до уровня, склад, скидка, скорость, бонусы зданий, бусты."""
    return await identity.get_profile(principal)


@router.get("/inventory")
@limiter.limit(API_RATE_LIMIT)
async def api_inventory(request: Request, principal: Principal = Depends(get_principal)):
    return await identity.get_inventory(principal)


@router.post("/warehouse/upgrade")
@limiter.limit(API_RATE_LIMIT)
async def api_warehouse_upgrade(request: Request, principal: Principal = Depends(get_principal)):
    return await identity.upgrade_warehouse(principal)


@router.get("/catalog")
@limiter.limit(API_RATE_LIMIT)
async def api_catalog(request: Request):
    """Весь справочник игры. Кэш в Redis на 5 минут."""
    cached = await cache_get(CATALOG_KEY)
    if cached is not None:
        return cached
    payload = catalog.catalog_payload()
    await cache_set(CATALOG_KEY, payload, CATALOG_TTL_SEC)
    return payload


# ——— Ферма ———

@router.get("/farm")
@limiter.limit(API_RATE_LIMIT)
async def api_farm(request: Request, principal: Principal = Depends(get_principal)):
    return await farm.list_plots(principal)


@router.post("/farm/seeds")
@limiter.limit(API_RATE_LIMIT)
async def api_buy_seed(request: Request, body: BuySeedBody, principal: Principal = Depends(get_principal)):
    return await farm.buy_seed(principal, body.crop, body.quantity)


@router.post("/farm/plant")
@limiter.limit(API_RATE_LIMIT)
async def api_plant(request: Request, body: PlantBody, principal: Principal = Depends(get_principal)):
    return await farm.plant(principal, body.plot_index, body.crop)


@router.post("/farm/harvest")
@limiter.limit(API_RATE_LIMIT)
async def api_harvest(request: Request, body: PlotBody, principal: Principal = Depends(get_principal)):
    return await farm.harvest(principal, body.plot_index)


# ——— Фабрики ———

@router.get("/factories")
@limiter.limit(API_RATE_LIMIT)
async def api_factories(request: Request, principal: Principal = Depends(get_principal)):
    return await factory.list_factories(principal)


@router.post("/factories/start")
@limiter.limit(API_RATE_LIMIT)
async def api_factory_start(request: Request, body: ProductionBody, principal: Principal = Depends(get_principal)):
    return await factory.start_production(principal, body.factory_type, body.recipe)


@router.post("/factories/collect")
@limiter.limit(API_RATE_LIMIT)
async def api_factory_collect(request: Request, body: FactorySlotBody, principal: Principal = Depends(get_principal)):
    return await factory.collect(principal, body.factory_type, body.slot)


@router.post("/factories/upgrade")
@limiter.limit(API_RATE_LIMIT)
async def api_factory_upgrade(request: Request, body: FactoryBody, principal: Principal = Depends(get_principal)):
    return await factory.upgrade_factory(principal, body.factory_type)


# ——— Оружейная ———

@router.get("/armory")
@limiter.limit(API_RATE_LIMIT)
async def api_armory(request: Request, armory_type: str = armory.DEFAULT_ARMORY,
                     principal: Principal = Depends(get_principal)):
    return await armory.get_armory(principal, armory_type)


@router.post("/armory/craft")
@limiter.limit(API_RATE_LIMIT)
async def api_armory_craft(request: Request, body: ArmoryCraftBody, principal: Principal = Depends(get_principal)):
    return await armory.start_craft(principal, body.recipe, body.armory_type)


@router.post("/armory/collect")
@limiter.limit(API_RATE_LIMIT)
async def api_armory_collect(request: Request, body: ArmorySlotBody, principal: Principal = Depends(get_principal)):
    return await armory.collect_craft(principal, body.slot, body.armory_type)


@router.post("/armory/upgrade")
@limiter.limit(API_RATE_LIMIT)
async def api_armory_upgrade(request: Request, body: ArmoryBody, principal: Principal = Depends(get_principal)):
    return await armory.upgrade_armory(principal, body.armory_type)


# ——— Шахта ———

@router.get("/mine")
@limiter.limit(API_RATE_LIMIT)
async def api_mine(request: Request, principal: Principal = Depends(get_principal)):
    return await mining.get_mine(principal)


@router.get("/mine/energy")
@limiter.limit(API_RATE_LIMIT)
async def api_mine_energy(request: Request, principal: Principal = Depends(get_principal)):
    return await mining.get_current_energy(principal)


@router.post("/mine/dig")
@limiter.limit(API_RATE_LIMIT)
async def api_mine_dig(request: Request, principal: Principal = Depends(get_principal)):
    return await mining.dig(principal)


@router.post("/mine/repair")
@limiter.limit(API_RATE_LIMIT)
async def api_mine_repair(request: Request, principal: Principal = Depends(get_principal)):
    return await mining.repair_tool(principal)


@router.post("/mine/upgrade-tool")
@limiter.limit(API_RATE_LIMIT)
async def api_mine_upgrade_tool(request: Request, principal: Principal = Depends(get_principal)):
    return await mining.upgrade_tool(principal)


@router.post("/mine/restore-energy")
@limiter.limit(API_RATE_LIMIT)
async def api_mine_restore(request: Request, principal: Principal = Depends(get_principal)):
    """Полное восстановление энергии за кристаллы."""
    return await mining.restore_energy_with_crystals(principal)


@router.post("/mine/restore-energy/ad")
@limiter.limit(API_RATE_LIMIT_STRICT)
async def api_mine_restore_ad(request: Request, principal: Principal = Depends(get_principal)):
    """Восстановление энергии за просмотр рекламы (лимит в час)."""
    return await mining.restore_energy_with_ad(principal)


# ——— Зоопарк ———

@router.get("/zoo")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo(request: Request, principal: Principal = Depends(get_principal)):
    return await zoo.list_enclosures(principal)


@router.post("/zoo/enclosures")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_create(request: Request, body: EnclosureCreateBody, principal: Principal = Depends(get_principal)):
    return await zoo.create_enclosure(principal, body.name)


@router.delete("/zoo/enclosures/{enclosure_id}")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_delete(request: Request, enclosure_id: int, principal: Principal = Depends(get_principal)):
    return await zoo.delete_enclosure(principal, enclosure_id)


@router.post("/zoo/enclosures/{enclosure_id}/animals")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_add_animal(request: Request, enclosure_id: int, body: AddAnimalBody,
                             principal: Principal = Depends(get_principal)):
    return await zoo.add_animal(principal, enclosure_id, body.animal, body.slot, body.from_inventory, body.level)


@router.post("/zoo/enclosures/{enclosure_id}/remove")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_remove_animal(request: Request, enclosure_id: int, body: EnclosureSlotBody,
                                principal: Principal = Depends(get_principal)):
    return await zoo.remove_animal(principal, enclosure_id, body.slot)


@router.post("/zoo/enclosures/{enclosure_id}/collect")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_collect(request: Request, enclosure_id: int, body: EnclosureSlotBody,
                          principal: Principal = Depends(get_principal)):
    return await zoo.collect_animal(principal, enclosure_id, body.slot)


@router.post("/zoo/enclosures/{enclosure_id}/breed")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_breed(request: Request, enclosure_id: int, principal: Principal = Depends(get_principal)):
    return await zoo.start_breeding(principal, enclosure_id)


@router.post("/zoo/enclosures/{enclosure_id}/breed/collect")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_breed_collect(request: Request, enclosure_id: int, principal: Principal = Depends(get_principal)):
    return await zoo.collect_bred_animal(principal, enclosure_id)


@router.post("/zoo/enclosures/{enclosure_id}/breed/cancel")
@limiter.limit(API_RATE_LIMIT)
async def api_zoo_breed_cancel(request: Request, enclosure_id: int, principal: Principal = Depends(get_principal)):
    return await zoo.cancel_breeding(principal, enclosure_id)


# ——— Город ———

@router.get("/town")
@limiter.limit(API_RATE_LIMIT)
async def api_town(request: Request, principal: Principal = Depends(get_principal)):
    """Здания, декор, дороги (тип дороги считается по соседям), размер и население."""
    return await town.get_town(principal)


@router.post("/town/buildings")
@limiter.limit(API_RATE_LIMIT)
async def api_place_building(request: Request, body: PlaceBody, principal: Principal = Depends(get_principal)):
    return await town.place_building(principal, body.type, body.x, body.y)


@router.post("/town/buildings/{building_id}/move")
@limiter.limit(API_RATE_LIMIT)
async def api_move_building(request: Request, building_id: int, body: CellBody,
                            principal: Principal = Depends(get_principal)):
    return await town.move_building(principal, building_id, body.x, body.y)


@router.post("/town/buildings/{building_id}/upgrade")
@limiter.limit(API_RATE_LIMIT)
async def api_upgrade_building(request: Request, building_id: int, principal: Principal = Depends(get_principal)):
    return await town.upgrade_building(principal, building_id)


@router.delete("/town/buildings/{building_id}")
@limiter.limit(API_RATE_LIMIT)
async def api_remove_building(request: Request, building_id: int, principal: Principal = Depends(get_principal)):
    return await town.remove_building(principal, building_id)


@router.post("/town/decorations")
@limiter.limit(API_RATE_LIMIT)
async def api_place_decoration(request: Request, body: PlaceBody, principal: Principal = Depends(get_principal)):
    return await town.place_decoration(principal, body.type, body.x, body.y)


@router.post("/town/decorations/{decoration_id}/move")
@limiter.limit(API_RATE_LIMIT)
async def api_move_decoration(request: Request, decoration_id: int, body: CellBody,
                              principal: Principal = Depends(get_principal)):
    return await town.move_decoration(principal, decoration_id, body.x, body.y)


@router.delete("/town/decorations/{decoration_id}")
@limiter.limit(API_RATE_LIMIT)
async def api_remove_decoration(request: Request, decoration_id: int, principal: Principal = Depends(get_principal)):
    return await town.remove_decoration(principal, decoration_id)


@router.post("/town/roads")
@limiter.limit(API_RATE_LIMIT)
async def api_place_road(request: Request, body: CellBody, principal: Principal = Depends(get_principal)):
    return await town.place_road(principal, body.x, body.y)


@router.post("/town/roads/remove")
@limiter.limit(API_RATE_LIMIT)
async def api_remove_road(request: Request, body: CellBody, principal: Principal = Depends(get_principal)):
    return await town.remove_road(principal, body.x, body.y)


@router.post("/town/expand")
@limiter.limit(API_RATE_LIMIT)
async def api_expand_town(request: Request, body: ExpandBody, principal: Principal = Depends(get_principal)):
    return await town.expand_town(principal, body.direction)


# ——— Рынок и скайпорт ———

@router.post("/market/sell")
@limiter.limit(API_RATE_LIMIT)
async def api_sell(request: Request, body: SellBody, principal: Principal = Depends(get_principal)):
    return await economy.sell_item(principal, body.item_id, body.quantity)


@router.get("/market/listings")
@limiter.limit(API_RATE_LIMIT)
async def api_browse_listings(request: Request, item_id: Optional[int] = None, limit: int = 50,
                              principal: Principal = Depends(get_principal)):
    return await economy.browse_listings(item_id, min(max(limit, 1), 100))


@router.get("/market/listings/mine")
@limiter.limit(API_RATE_LIMIT)
async def api_my_listings(request: Request, principal: Principal = Depends(get_principal)):
    return await economy.my_listings(principal)


@router.post("/market/listings")
@limiter.limit(API_RATE_LIMIT)
async def api_create_listing(request: Request, body: ListingBody, principal: Principal = Depends(get_principal)):
    return await economy.create_listing(principal, body.item_id, body.quantity, body.price_crystals, body.hours)


@router.post("/market/listings/{listing_id}/purchase")
@limiter.limit(API_RATE_LIMIT_STRICT)
async def api_purchase_listing(request: Request, listing_id: int, principal: Principal = Depends(get_principal)):
    return await economy.purchase_listing(principal, listing_id)


@router.post("/market/listings/{listing_id}/cancel")
@limiter.limit(API_RATE_LIMIT)
async def api_cancel_listing(request: Request, listing_id: int, principal: Principal = Depends(get_principal)):
    return await economy.cancel_listing(principal, listing_id)


@router.get("/orders")
@limiter.limit(API_RATE_LIMIT)
async def api_orders(request: Request, principal: Principal = Depends(get_principal)):
    """Активные заказы скайпорта; недостающие до лимита создаются при чтении."""
    return await orders.get_orders(principal)


@router.post("/orders/{order_id}/fulfill")
@limiter.limit(API_RATE_LIMIT)
async def api_fulfill_order(request: Request, order_id: int, principal: Principal = Depends(get_principal)):
    return await orders.fulfill_order(principal, order_id)


# ——— Прогресс ———

@router.get("/achievements")
@limiter.limit(API_RATE_LIMIT)
async def api_achievements(request: Request, principal: Principal = Depends(get_principal)):
    return await progression.list_achievements(principal)


@router.post("/achievements/{achievement_key}/claim")
@limiter.limit(API_RATE_LIMIT)
async def api_claim_achievement(request: Request, achievement_key: str, principal: Principal = Depends(get_principal)):
    return await progression.claim_achievement(principal, achievement_key)


@router.get("/quests")
@limiter.limit(API_RATE_LIMIT)
async def api_quests(request: Request, principal: Principal = Depends(get_principal)):
    return await progression.list_quests(principal)


@router.post("/quests/{quest_key}/start")
@limiter.limit(API_RATE_LIMIT)
async def api_start_quest(request: Request, quest_key: str, principal: Principal = Depends(get_principal)):
    return await progression.start_quest(principal, quest_key)


@router.post("/quests/{quest_key}/claim")
@limiter.limit(API_RATE_LIMIT)
async def api_claim_quest(request: Request, quest_key: str, principal: Principal = Depends(get_principal)):
    return await progression.claim_quest(principal, quest_key)


@router.post("/quests/daily")
@limiter.limit(API_RATE_LIMIT)
async def api_daily_quests(request: Request, principal: Principal = Depends(get_principal)):
    return await progression.generate_daily_quests(principal)


@router.post("/daily-reward")
@limiter.limit(API_RATE_LIMIT_STRICT)
async def api_daily_reward(request: Request, principal: Principal = Depends(require_bearer)):
    """Раз в сутки (UTC). Только по Bearer-токену."""
    return await daily_reward.claim_daily_reward(principal)


# ——— Премиум, бусты, реклама ———

@router.get("/premium/shop")
@limiter.limit(API_RATE_LIMIT)
async def api_premium_shop(request: Request):
    return monetization.list_premium_shop()


@router.post("/premium/purchase")
@limiter.limit(API_RATE_LIMIT)
async def api_premium_purchase(request: Request, body: PremiumPurchaseBody,
                               principal: Principal = Depends(get_principal)):
    return await monetization.purchase_premium_item(principal, body.item_key, body.use_aether)


@router.get("/premium/decorations")
@limiter.limit(API_RATE_LIMIT)
async def api_premium_decorations(request: Request, principal: Principal = Depends(get_principal)):
    return await monetization.owned_premium_decorations(principal)


@router.get("/aether/history")
@limiter.limit(API_RATE_LIMIT)
async def api_aether_history(request: Request, limit: int = 50, principal: Principal = Depends(get_principal)):
    return await monetization.aether_history(principal, min(max(limit, 1), 200))


@router.get("/boosts")
@limiter.limit(API_RATE_LIMIT)
async def api_boosts(request: Request, principal: Principal = Depends(get_principal)):
    return await monetization.get_active_boosts(principal)


@router.post("/speed-up")
@limiter.limit(API_RATE_LIMIT)
async def api_speed_up(request: Request, body: SpeedUpBody, principal: Principal = Depends(get_principal)):
    """Потратить накопленные минуты ускорения на грядку, слот фабрики/оружейной или вольер."""
    return await monetization.apply_speed_up(principal, body.target, body.minutes, body.ref, body.slot)


@router.get("/ads/status")
@limiter.limit(API_RATE_LIMIT)
async def api_ads_status(request: Request, category: str = "generic", principal: Principal = Depends(get_principal)):
    return await monetization.ad_status(principal, category)


@router.post("/ads/speed-up")
@limiter.limit(API_RATE_LIMIT_STRICT)
async def api_ad_speed_up(request: Request, body: AdSpeedUpBody, principal: Principal = Depends(get_principal)):
    return await monetization.watch_ad_speed_up(principal, body.target, body.ref, body.slot)


# ——— Уведомления ———

@router.post("/notifications/subscribe")
@limiter.limit(API_RATE_LIMIT)
async def api_subscribe(request: Request, body: SubscriptionBody, principal: Principal = Depends(get_principal)):
    return await notifications.register_subscription(principal, body.endpoint, body.p256dh, body.auth,
                                                     body.device_info)


@router.post("/notifications/unsubscribe")
@limiter.limit(API_RATE_LIMIT)
async def api_unsubscribe(request: Request, body: UnsubscribeBody, principal: Principal = Depends(get_principal)):
    return await notifications.unregister_subscription(principal, body.endpoint)


@router.get("/notifications/preferences")
@limiter.limit(API_RATE_LIMIT)
async def api_preferences(request: Request, principal: Principal = Depends(get_principal)):
    return await notifications.get_preferences(principal)


@router.put("/notifications/preferences")
@limiter.limit(API_RATE_LIMIT)
async def api_update_preferences(request: Request, body: PreferencesBody,
                                 principal: Principal = Depends(get_principal)):
    return await notifications.update_preferences(principal, body.changes())
