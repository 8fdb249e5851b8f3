"""
HTTP-слой: роутинг, определение игрока, маппинг ошибок, служебные разделы.
Сервисы core/* подменяются, база не нужна.
"""
import pytest

import api.admin_routes
import api.internal_routes
import api.routes
from api.auth import issue_token, verify_token
from api.limits import limiter
from core import (
    coven, daily_reward, economy, farm, friends, identity, monetization, notifications, progression, regatta,
)
from core.errors import AlreadyDone, InsufficientResource, InvalidState, NotFound, Unauthorized

TEST_PLAYER_ID = 999001
HEADERS = {"X-Player-Id": str(TEST_PLAYER_ID)}


def _returns(value):
    async def fake(*args, **kwargs):
        return value
    return fake


def _raises(exc):
    async def fake(*args, **kwargs):
        raise exc
    return fake


# ——— Дымовые ———

@pytest.mark.smoke
def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.smoke
def test_auth_required(client):
    r = client.get("/api/game/profile")
    assert r.status_code == 401


@pytest.mark.smoke
def test_profile_gets_principal(client, monkeypatch):
    seen = {}

    async def fake_profile(principal):
        seen["player_id"] = principal.player_id
        return {"id": principal.player_id, "crystals": 0}

    monkeypatch.setattr(identity, "get_profile", fake_profile)
    r = client.get("/api/game/profile", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["id"] == TEST_PLAYER_ID
    assert seen["player_id"] == TEST_PLAYER_ID


# ——— Ошибки ———

@pytest.mark.parametrize("exc,status", [
    (InvalidState("Crop is not ready", code="crop_not_ready"), 409),
    (AlreadyDone("Already claimed", code="already_claimed"), 409),
    (InsufficientResource("Not enough crystals", code="insufficient_crystals", needed=50), 400),
    (NotFound("Plot not found", code="plot_not_found"), 404),
    (Unauthorized("Not your listing", code="not_owner"), 403),
])
def test_game_errors_map_to_status(client, monkeypatch, exc, status):
    monkeypatch.setattr(farm, "harvest", _raises(exc))
    r = client.post("/api/game/farm/harvest", json={"plot_index": 1}, headers=HEADERS)
    assert r.status_code == status
    body = r.json()
    assert body["detail"] == exc.message
    assert body["error"] == exc.code


def test_error_extra_fields_in_body(client, monkeypatch):
    exc = InsufficientResource("Not enough crystals", code="insufficient_crystals", needed=50, available=10)
    monkeypatch.setattr(farm, "buy_seed", _raises(exc))
    r = client.post("/api/game/farm/seeds", json={"crop": "wheat", "quantity": 10}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["needed"] == 50
    assert r.json()["available"] == 10


def test_validation_rejects_bad_body(client):
    r = client.post("/api/game/farm/plant", json={"plot_index": 0, "crop": "wheat"}, headers=HEADERS)
    assert r.status_code == 422
    r = client.post("/api/game/town/expand", json={"direction": "up"}, headers=HEADERS)
    assert r.status_code == 422


def test_unhandled_error_is_generic_500(client, monkeypatch):
    monkeypatch.setattr(farm, "list_plots", _raises(RuntimeError("db exploded")))
    r = client.get("/api/game/farm", headers=HEADERS)
    assert r.status_code == 500
    assert r.json() == {"detail": "Internal Server Error"}


# ——— Действия ———

def test_plant_passes_arguments(client, monkeypatch):
    calls = []

    async def fake_plant(principal, plot_index, crop_key):
        calls.append((principal.player_id, plot_index, crop_key))
        return {"success": True}

    monkeypatch.setattr(farm, "plant", fake_plant)
    r = client.post("/api/game/farm/plant", json={"plot_index": 2, "crop": "carrot"}, headers=HEADERS)
    assert r.status_code == 200
    assert calls == [(TEST_PLAYER_ID, 2, "carrot")]


def test_catalog_is_cached(client, monkeypatch):
    store = {}

    async def fake_get(key):
        return store.get(key)

    async def fake_set(key, value, ttl_sec=0):
        store[key] = {"cached": True}

    monkeypatch.setattr(api.routes, "cache_get", fake_get)
    monkeypatch.setattr(api.routes, "cache_set", fake_set)
    first = client.get("/api/game/catalog")
    assert first.status_code == 200
    assert "crops" in first.json()
    second = client.get("/api/game/catalog")
    assert second.json() == {"cached": True}


def test_purchase_listing(client, monkeypatch):
    monkeypatch.setattr(economy, "purchase_listing", _returns({"success": True, "commission": 5}))
    r = client.post("/api/game/market/listings/12/purchase", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["commission"] == 5


def test_notification_preferences_only_known_fields(client, monkeypatch):
    seen = {}

    async def fake_update(principal, changes):
        seen.update(changes)
        return changes

    from core import notifications
    monkeypatch.setattr(notifications, "update_preferences", fake_update)
    r = client.put("/api/game/notifications/preferences", json={"crops_ready": False}, headers=HEADERS)
    assert r.status_code == 200
    assert seen == {"crops_ready": False}


def test_speed_up_target_validated(client, monkeypatch):
    monkeypatch.setattr(monetization, "apply_speed_up", _returns({"success": True}))
    ok = client.post("/api/game/speed-up", json={"target": "factory", "ref": "rune_bakery", "slot": 1, "minutes": 30},
                     headers=HEADERS)
    assert ok.status_code == 200
    bad = client.post("/api/game/speed-up", json={"target": "mine", "minutes": 30}, headers=HEADERS)
    assert bad.status_code == 422


def test_achievement_claim(client, monkeypatch):
    monkeypatch.setattr(progression, "claim_achievement", _raises(AlreadyDone("Already claimed", code="already_claimed")))
    r = client.post("/api/game/achievements/first_harvest/claim", headers=HEADERS)
    assert r.status_code == 409


# ——— Ежедневная награда ———

def test_daily_reward_requires_bearer(client, monkeypatch):
    monkeypatch.setattr(daily_reward, "claim_daily_reward", _returns({"success": True}))
    r = client.post("/api/game/daily-reward", headers=HEADERS)
    assert r.status_code == 401


def test_daily_reward_with_token(client, monkeypatch):
    async def fake_claim(principal):
        return {"success": True, "player_id": principal.player_id}

    monkeypatch.setattr(daily_reward, "claim_daily_reward", fake_claim)
    token = issue_token(TEST_PLAYER_ID)
    r = client.post("/api/game/daily-reward", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json()["player_id"] == TEST_PLAYER_ID


# ——— Ковены и регаты ———

def test_create_coven_strips_name(client, monkeypatch):
    seen = {}

    async def fake_create(principal, name, description=None, is_public=True):
        seen["name"] = name
        return {"success": True, "coven_id": 1}

    monkeypatch.setattr(coven, "create_coven", fake_create)
    r = client.post("/api/game/covens", json={"name": "  Moonlit  "}, headers=HEADERS)
    assert r.status_code == 200
    assert seen["name"] == "Moonlit"
    assert client.post("/api/game/covens", json={"name": "  a "}, headers=HEADERS).status_code == 422


def test_cannot_assign_leader_role(client):
    r = client.post("/api/game/covens/role", json={"member_id": 2, "role": "leader"}, headers=HEADERS)
    assert r.status_code == 422


def test_my_coven_without_membership(client, monkeypatch):
    monkeypatch.setattr(coven, "my_coven", _returns(None))
    r = client.get("/api/game/covens/mine", headers=HEADERS)
    assert r.status_code == 200
    assert r.json() == {"coven": None}


def test_coven_task_objectives_forwarded(client, monkeypatch):
    seen = {}

    async def fake_task(principal, title, objectives, rewards=None, hours=168, description=None):
        seen.update(title=title, objectives=objectives, rewards=rewards, hours=hours)
        return {"success": True, "task_id": 3}

    monkeypatch.setattr(coven, "create_task", fake_task)
    r = client.post("/api/game/covens/tasks", json={
        "title": "Harvest festival",
        "objectives": [{"type": "harvest", "target": 50}],
        "rewards": {"shared_crystals": 300},
    }, headers=HEADERS)
    assert r.status_code == 200
    assert seen["objectives"] == [{"type": "harvest", "target": 50}]
    assert seen["hours"] == 168


def test_regatta_leaderboard_scope(client, monkeypatch):
    monkeypatch.setattr(regatta, "leaderboard", _raises(InvalidState("Scope must be global or coven", code="invalid_scope")))
    r = client.get("/api/game/regattas/1/leaderboard?scope=planet", headers=HEADERS)
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_scope"


# ——— Друзья ———

def test_friend_request_forwarded(client, monkeypatch):
    seen = {}

    async def fake_request(principal, friend_id):
        seen.update(player=principal.player_id, friend=friend_id)
        return {"success": True, "friend_id": friend_id, "status": "pending"}

    monkeypatch.setattr(friends, "send_friend_request", fake_request)
    r = client.post("/api/game/friends/requests", json={"player_id": 5}, headers=HEADERS)
    assert r.status_code == 200
    assert seen == {"player": TEST_PLAYER_ID, "friend": 5}
    assert client.post("/api/game/friends/requests", json={"player_id": 0}, headers=HEADERS).status_code == 422


def test_visit_stranger_town_forbidden(client, monkeypatch):
    monkeypatch.setattr(friends, "visit_friend_town",
                        _raises(Unauthorized("You are not friends with this player", code="not_friends")))
    r = client.get("/api/game/friends/5/town", headers=HEADERS)
    assert r.status_code == 403
    assert r.json()["error"] == "not_friends"


def test_help_production_args(client, monkeypatch):
    seen = {}

    async def fake_help(principal, friend_id, factory_type, slot):
        seen.update(friend=friend_id, factory=factory_type, slot=slot)
        return {"success": True, "helps_remaining": 2}

    monkeypatch.setattr(friends, "help_speed_production", fake_help)
    r = client.post("/api/game/friends/5/help/production", json={"factory_type": "rune_bakery", "slot": 1},
                    headers=HEADERS)
    assert r.status_code == 200
    assert seen == {"friend": 5, "factory": "rune_bakery", "slot": 1}


def test_help_limit_reached(client, monkeypatch):
    monkeypatch.setattr(friends, "help_fill_order", _raises(
        InsufficientResource("Daily help limit for this friend reached", code="help_limit_reached", limit=3)))
    r = client.post("/api/game/friends/5/help/order", json={"order_id": 9}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["error"] == "help_limit_reached"
    assert r.json()["limit"] == 3


# ——— /internal ———

def test_internal_requires_secret(client, monkeypatch):
    monkeypatch.setattr(api.internal_routes, "INTERNAL_API_SECRET", "s3cret")
    r = client.post("/internal/players", json={"external_id": "ext-9"})
    assert r.status_code == 403
    r = client.post("/internal/players", json={"external_id": "ext-9"}, headers={"X-Internal-Secret": "wrong"})
    assert r.status_code == 403


def test_internal_players_issues_token(client, monkeypatch):
    monkeypatch.setattr(api.internal_routes, "INTERNAL_API_SECRET", "s3cret")
    monkeypatch.setattr(api.internal_routes, "ensure_player", _returns(77))
    r = client.post("/internal/players", json={"external_id": "ext-9", "username": "ada"},
                    headers={"X-Internal-Secret": "s3cret"})
    assert r.status_code == 200
    body = r.json()
    assert body["player_id"] == 77
    assert verify_token(body["token"]) == 77


def test_internal_disabled_without_secret(client, monkeypatch):
    monkeypatch.setattr(api.internal_routes, "INTERNAL_API_SECRET", "")
    r = client.post("/internal/market/expire", headers={"X-Internal-Secret": ""})
    assert r.status_code == 403


def test_internal_expire_listings(client, monkeypatch):
    monkeypatch.setattr(api.internal_routes, "INTERNAL_API_SECRET", "s3cret")
    monkeypatch.setattr(economy, "reclaim_expired_listings", _returns(4))
    r = client.post("/internal/market/expire", headers={"X-Internal-Secret": "s3cret"})
    assert r.json() == {"ok": True, "reclaimed": 4}


def test_internal_pull_notifications(client, monkeypatch):
    seen = {}

    async def fake_pull(limit=100):
        seen["limit"] = limit
        return [{"id": 1, "player_id": 7, "category": "friend_help", "payload": {"helper_id": 8}}]

    monkeypatch.setattr(api.internal_routes, "INTERNAL_API_SECRET", "s3cret")
    monkeypatch.setattr(notifications, "pull_notification_events", fake_pull)
    r = client.post("/internal/notifications/pull?limit=10000", headers={"X-Internal-Secret": "s3cret"})
    assert r.status_code == 200
    assert r.json()["events"][0]["category"] == "friend_help"
    assert seen["limit"] == 500


# ——— /api/admin ———

def test_admin_requires_key(client, monkeypatch):
    monkeypatch.setattr(api.admin_routes, "ADMIN_API_KEY", "adm")
    assert client.get("/api/admin/settings/defaults").status_code == 403
    assert client.get("/api/admin/settings/defaults", headers={"X-Admin-Key": "nope"}).status_code == 403
    r = client.get("/api/admin/settings/defaults", headers={"X-Admin-Key": "adm"})
    assert r.status_code == 200
    assert "ads.hourly_limit" in r.json()


def test_admin_unknown_setting(client, monkeypatch):
    monkeypatch.setattr(api.admin_routes, "ADMIN_API_KEY", "adm")
    r = client.put("/api/admin/settings/not.a.setting", json={"value": 1}, headers={"X-Admin-Key": "adm"})
    assert r.status_code == 404


def test_admin_set_setting(client, monkeypatch):
    store = {}

    async def fake_set(key, value):
        store[key] = value

    async def fake_get(key, default=None, conn=None):
        return store.get(key, default)

    monkeypatch.setattr(api.admin_routes, "ADMIN_API_KEY", "adm")
    monkeypatch.setattr(api.admin_routes, "set_setting", fake_set)
    monkeypatch.setattr(api.admin_routes, "get_setting", fake_get)
    r = client.put("/api/admin/settings/ads.hourly_limit", json={"value": 8}, headers={"X-Admin-Key": "adm"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "key": "ads.hourly_limit", "value": 8}


def test_admin_cannot_change_market_commission(client, monkeypatch):
    monkeypatch.setattr(api.admin_routes, "ADMIN_API_KEY", "adm")
    r = client.put("/api/admin/settings/economy.listing_commission", json={"value": 0.5},
                   headers={"X-Admin-Key": "adm"})
    assert r.status_code == 404


def test_admin_award_aether(client, monkeypatch):
    seen = {}

    async def fake_award(player_id, amount, reason):
        seen.update(player_id=player_id, amount=amount, reason=reason)
        return {"success": True, "new_aether_balance": amount}

    monkeypatch.setattr(api.admin_routes, "ADMIN_API_KEY", "adm")
    monkeypatch.setattr(monetization, "award_aether", fake_award)
    r = client.post("/api/admin/aether", json={"player_id": 5, "amount": 30, "reason": "purchase #12"},
                    headers={"X-Admin-Key": "adm"})
    assert r.status_code == 200
    assert seen == {"player_id": 5, "amount": 30, "reason": "purchase #12"}


# ——— Rate limit ———

def test_strict_rate_limit(client, monkeypatch):
    monkeypatch.setattr(monetization, "watch_ad_speed_up", _returns({"success": True}))
    limiter.enabled = True
    limiter.reset()
    try:
        codes = [
            client.post("/api/game/ads/speed-up", json={"target": "farm", "ref": "1"}, headers=HEADERS).status_code
            for _ in range(11)
        ]
    finally:
        limiter.reset()
    assert codes[:10] == [200] * 10
    assert codes[10] == 429
