"""
Ковены, регаты и друзья (/api/game/covens, /api/game/regattas, /api/game/friends).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.auth import get_principal
from api.limits import limiter
from api.schemas import (
    ContributeBody,
    CovenCreateBody,
    CovenTaskBody,
    FriendOrderHelpBody,
    FriendProductionHelpBody,
    FriendRequestBody,
    InvitationResponseBody,
    InviteBody,
    MemberBody,
    RoleBody,
)
from config import API_RATE_LIMIT
from core import coven, friends, regatta
from core.identity import Principal

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/game", tags=["social"])


# ——— Ковен ———

@router.get("/covens")
@limiter.limit(API_RATE_LIMIT)
async def api_list_covens(request: Request, search: Optional[str] = None, limit: int = 50,
                          principal: Principal = Depends(get_principal)):
    return await coven.list_covens(search, min(max(limit, 1), 100))


@router.post("/covens")
@limiter.limit(API_RATE_LIMIT)
async def api_create_coven(request: Request, body: CovenCreateBody, principal: Principal = Depends(get_principal)):
    return await coven.create_coven(principal, body.name, body.description, body.is_public)


@router.get("/covens/mine")
@limiter.limit(API_RATE_LIMIT)
async def api_my_coven(request: Request, principal: Principal = Depends(get_principal)):
    """Ковен игрока с составом и заданиями; {"coven": null}, если не состоит."""
    return {"coven": await coven.my_coven(principal)}


@router.get("/covens/invitations")
@limiter.limit(API_RATE_LIMIT)
async def api_invitations(request: Request, principal: Principal = Depends(get_principal)):
    return await coven.list_invitations(principal)


@router.post("/covens/invitations/{invitation_id}")
@limiter.limit(API_RATE_LIMIT)
async def api_respond_invitation(request: Request, invitation_id: int, body: InvitationResponseBody,
                                 principal: Principal = Depends(get_principal)):
    return await coven.respond_invitation(principal, invitation_id, body.accept)


@router.post("/covens/leave")
@limiter.limit(API_RATE_LIMIT)
async def api_leave_coven(request: Request, principal: Principal = Depends(get_principal)):
    return await coven.leave_coven(principal)


@router.post("/covens/invite")
@limiter.limit(API_RATE_LIMIT)
async def api_invite(request: Request, body: InviteBody, principal: Principal = Depends(get_principal)):
    return await coven.invite(principal, body.player_id)


@router.post("/covens/role")
@limiter.limit(API_RATE_LIMIT)
async def api_set_role(request: Request, body: RoleBody, principal: Principal = Depends(get_principal)):
    return await coven.set_role(principal, body.member_id, body.role)


@router.post("/covens/transfer")
@limiter.limit(API_RATE_LIMIT)
async def api_transfer(request: Request, body: MemberBody, principal: Principal = Depends(get_principal)):
    return await coven.transfer_leadership(principal, body.member_id)


@router.post("/covens/kick")
@limiter.limit(API_RATE_LIMIT)
async def api_kick(request: Request, body: MemberBody, principal: Principal = Depends(get_principal)):
    return await coven.kick_member(principal, body.member_id)


@router.post("/covens/disband")
@limiter.limit(API_RATE_LIMIT)
async def api_disband(request: Request, principal: Principal = Depends(get_principal)):
    return await coven.disband_coven(principal)


@router.post("/covens/tasks")
@limiter.limit(API_RATE_LIMIT)
async def api_create_task(request: Request, body: CovenTaskBody, principal: Principal = Depends(get_principal)):
    objectives = [o.model_dump() for o in body.objectives]
    return await coven.create_task(principal, body.title, objectives, body.rewards, body.hours, body.description)


@router.post("/covens/tasks/{task_id}/contribute")
@limiter.limit(API_RATE_LIMIT)
async def api_contribute(request: Request, task_id: int, body: ContributeBody,
                         principal: Principal = Depends(get_principal)):
    return await coven.contribute(principal, task_id, body.objective_type, body.amount)


@router.get("/covens/{coven_id}")
@limiter.limit(API_RATE_LIMIT)
async def api_get_coven(request: Request, coven_id: int, principal: Principal = Depends(get_principal)):
    return await coven.get_coven(coven_id)


@router.post("/covens/{coven_id}/join")
@limiter.limit(API_RATE_LIMIT)
async def api_join_coven(request: Request, coven_id: int, principal: Principal = Depends(get_principal)):
    return await coven.join_coven(principal, coven_id)


# ——— Регата ———

@router.get("/regattas")
@limiter.limit(API_RATE_LIMIT)
async def api_regattas(request: Request, status: Optional[str] = None, principal: Principal = Depends(get_principal)):
    return await regatta.list_regattas(principal, status)


@router.post("/regattas/{regatta_id}/join")
@limiter.limit(API_RATE_LIMIT)
async def api_join_regatta(request: Request, regatta_id: int, principal: Principal = Depends(get_principal)):
    return await regatta.join_regatta(principal, regatta_id)


@router.post("/regattas/{regatta_id}/tasks/{task_index}")
@limiter.limit(API_RATE_LIMIT)
async def api_submit_regatta_task(request: Request, regatta_id: int, task_index: int,
                                  principal: Principal = Depends(get_principal)):
    return await regatta.submit_task(principal, regatta_id, task_index)


@router.get("/regattas/{regatta_id}/leaderboard")
@limiter.limit(API_RATE_LIMIT)
async def api_regatta_leaderboard(request: Request, regatta_id: int, scope: str = "global",
                                  principal: Principal = Depends(get_principal)):
    return await regatta.leaderboard(regatta_id, scope)


@router.post("/regattas/{regatta_id}/claim")
@limiter.limit(API_RATE_LIMIT)
async def api_claim_regatta(request: Request, regatta_id: int, principal: Principal = Depends(get_principal)):
    return await regatta.claim_rewards(principal, regatta_id)


# ——— Друзья ———

@router.get("/friends")
@limiter.limit(API_RATE_LIMIT)
async def api_friends(request: Request, principal: Principal = Depends(get_principal)):
    """Друзья, входящие и исходящие заявки."""
    return await friends.list_friends(principal)


@router.post("/friends/requests")
@limiter.limit(API_RATE_LIMIT)
async def api_send_friend_request(request: Request, body: FriendRequestBody,
                                  principal: Principal = Depends(get_principal)):
    return await friends.send_friend_request(principal, body.player_id)


@router.post("/friends/{friend_id}/accept")
@limiter.limit(API_RATE_LIMIT)
async def api_accept_friend(request: Request, friend_id: int, principal: Principal = Depends(get_principal)):
    return await friends.accept_friend_request(principal, friend_id)


@router.delete("/friends/{friend_id}")
@limiter.limit(API_RATE_LIMIT)
async def api_remove_friend(request: Request, friend_id: int, principal: Principal = Depends(get_principal)):
    return await friends.remove_friend(principal, friend_id)


@router.get("/friends/{friend_id}/town")
@limiter.limit(API_RATE_LIMIT)
async def api_visit_friend(request: Request, friend_id: int, principal: Principal = Depends(get_principal)):
    return await friends.visit_friend_town(principal, friend_id)


@router.post("/friends/{friend_id}/help/production")
@limiter.limit(API_RATE_LIMIT)
async def api_help_production(request: Request, friend_id: int, body: FriendProductionHelpBody,
                              principal: Principal = Depends(get_principal)):
    return await friends.help_speed_production(principal, friend_id, body.factory_type, body.slot)


@router.post("/friends/{friend_id}/help/order")
@limiter.limit(API_RATE_LIMIT)
async def api_help_order(request: Request, friend_id: int, body: FriendOrderHelpBody,
                         principal: Principal = Depends(get_principal)):
    return await friends.help_fill_order(principal, friend_id, body.order_id)
