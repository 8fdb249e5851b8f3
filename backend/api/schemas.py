"""
Тела запросов. Некорректный ввод отсекается здесь (422), до транзакции.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from core.coven import ROLES
from core.monetization import SPEED_UP_TARGETS
from core.notifications import CATEGORIES
from core.regatta import STATUSES
from core.town import DIRECTIONS


# ——— Производство ———

class BuySeedBody(BaseModel):
    crop: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(1, ge=1, le=1000)


class PlantBody(BaseModel):
    plot_index: int = Field(..., ge=1)
    crop: str = Field(..., min_length=1, max_length=64)


class PlotBody(BaseModel):
    plot_index: int = Field(..., ge=1)


class ProductionBody(BaseModel):
    factory_type: str = Field(..., min_length=1, max_length=64)
    recipe: str = Field(..., min_length=1, max_length=64)


class FactorySlotBody(BaseModel):
    factory_type: str = Field(..., min_length=1, max_length=64)
    slot: int = Field(..., ge=1)


class FactoryBody(BaseModel):
    factory_type: str = Field(..., min_length=1, max_length=64)


class ArmoryCraftBody(BaseModel):
    recipe: str = Field(..., min_length=1, max_length=64)
    armory_type: str = "basic_forge"


class ArmorySlotBody(BaseModel):
    slot: int = Field(..., ge=1)
    armory_type: str = "basic_forge"


class ArmoryBody(BaseModel):
    armory_type: str = "basic_forge"


# ——— Зоопарк ———

class EnclosureCreateBody(BaseModel):
    name: Optional[str] = Field(None, max_length=64)


class AddAnimalBody(BaseModel):
    animal: str = Field(..., min_length=1, max_length=64)
    slot: int = Field(..., ge=1, le=2)
    from_inventory: bool = False
    level: int = Field(1, ge=1, le=99)


class EnclosureSlotBody(BaseModel):
    slot: int = Field(..., ge=1, le=2)


# ——— Город ———

class PlaceBody(BaseModel):
    type: str = Field(..., min_length=1, max_length=64)
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)


class CellBody(BaseModel):
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)


class ExpandBody(BaseModel):
    direction: str = "all"

    @field_validator("direction")
    @classmethod
    def direction_known(cls, v: str) -> str:
        if v not in DIRECTIONS:
            raise ValueError(f"direction must be one of {', '.join(DIRECTIONS)}")
        return v


# ——— Рынок ———

class SellBody(BaseModel):
    item_id: int = Field(..., ge=1)
    quantity: int = Field(..., ge=1)


class ListingBody(BaseModel):
    item_id: int = Field(..., ge=1)
    quantity: int = Field(..., ge=1)
    price_crystals: int = Field(..., ge=1)
    hours: Optional[int] = Field(None, ge=1, le=168)


# ——— Ковен ———

class CovenCreateBody(BaseModel):
    name: str = Field(..., min_length=3, max_length=32)
    description: Optional[str] = Field(None, max_length=500)
    is_public: bool = True

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("name must have at least 3 characters")
        return v


class InviteBody(BaseModel):
    player_id: int = Field(..., ge=1)


class InvitationResponseBody(BaseModel):
    accept: bool


class MemberBody(BaseModel):
    member_id: int = Field(..., ge=1)


class RoleBody(BaseModel):
    member_id: int = Field(..., ge=1)
    role: str

    @field_validator("role")
    @classmethod
    def role_known(cls, v: str) -> str:
        if v not in ROLES or v == "leader":
            raise ValueError("role must be member or elder")
        return v


class ObjectiveBody(BaseModel):
    type: str = Field(..., min_length=1, max_length=32)
    target: int = Field(..., ge=1)


class CovenTaskBody(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    objectives: List[ObjectiveBody] = Field(..., min_length=1, max_length=10)
    rewards: Dict[str, int] = Field(default_factory=dict)
    hours: int = Field(168, ge=1, le=720)


class ContributeBody(BaseModel):
    objective_type: str = Field(..., min_length=1, max_length=32)
    amount: int = Field(..., ge=1)


# ——— Друзья ———

class FriendRequestBody(BaseModel):
    player_id: int = Field(..., ge=1)


class FriendProductionHelpBody(BaseModel):
    factory_type: str = Field(..., min_length=1, max_length=64)
    slot: int = Field(..., ge=1)


class FriendOrderHelpBody(BaseModel):
    order_id: int = Field(..., ge=1)


# ——— Регата ———

class RegattaCreateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    start_date: datetime
    end_date: datetime
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    rewards: Dict[str, Any] = Field(default_factory=dict)
    status: str = "upcoming"

    @field_validator("status")
    @classmethod
    def status_known(cls, v: str) -> str:
        if v not in STATUSES:
            raise ValueError(f"status must be one of {', '.join(STATUSES)}")
        return v


class RegattaStatusBody(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def status_known(cls, v: str) -> str:
        if v not in STATUSES:
            raise ValueError(f"status must be one of {', '.join(STATUSES)}")
        return v


# ——— Монетизация ———

class PremiumPurchaseBody(BaseModel):
    item_key: str = Field(..., min_length=1, max_length=64)
    use_aether: bool = True


class SpeedUpBody(BaseModel):
    target: str
    ref: Optional[str] = Field(None, max_length=64)
    slot: Optional[int] = Field(None, ge=1)
    minutes: int = Field(..., ge=1, le=24 * 60)

    @field_validator("target")
    @classmethod
    def target_known(cls, v: str) -> str:
        if v not in SPEED_UP_TARGETS:
            raise ValueError(f"target must be one of {', '.join(SPEED_UP_TARGETS)}")
        return v


class AdSpeedUpBody(BaseModel):
    target: str
    ref: Optional[str] = Field(None, max_length=64)
    slot: Optional[int] = Field(None, ge=1)

    @field_validator("target")
    @classmethod
    def target_known(cls, v: str) -> str:
        if v not in SPEED_UP_TARGETS:
            raise ValueError(f"target must be one of {', '.join(SPEED_UP_TARGETS)}")
        return v


class AetherAwardBody(BaseModel):
    player_id: int = Field(..., ge=1)
    amount: int
    reason: str = Field(..., min_length=1, max_length=200)


# ——— Уведомления ———

class SubscriptionBody(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=2048)
    p256dh: str = Field(..., min_length=1, max_length=512)
    auth: str = Field(..., min_length=1, max_length=512)
    device_info: Dict[str, Any] = Field(default_factory=dict)


class UnsubscribeBody(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=2048)


class PreferencesBody(BaseModel):
    crops_ready: Optional[bool] = None
    factory_complete: Optional[bool] = None
    orders_expiring: Optional[bool] = None
    quest_available: Optional[bool] = None
    friend_help: Optional[bool] = None
    coven_task_complete: Optional[bool] = None

    def changes(self) -> Dict[str, bool]:
        return {c: v for c, v in self.model_dump().items() if c in CATEGORIES and v is not None}


# ——— Служебное ———

class PlayerEnsureBody(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=128)
    username: Optional[str] = Field(None, max_length=64)


class SettingBody(BaseModel):
    value: Any
