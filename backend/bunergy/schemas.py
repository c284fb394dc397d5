# 📂 backend/bunergy/schemas.py — Pydantic-схемы Bunergy
# --------------------------------------------------------
# - Состояние игрока (PlayerState) и его части: бустеры, QuickCharge, детали постройки
# - Записи журналов: конвертации, ежедневные награды, NFT, задания
# - Пользователь Telegram (мост хост-платформы)
# - Контракты table API (upsert / update)

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .economy import Tier, max_energy_for, tier_for_xp


# ======================
# ⚡ Бустеры и QuickCharge
# ======================
class BoosterLevels(BaseModel):
    income_per_tap: int = Field(1, ge=1)
    energy_per_tap: int = Field(1, ge=1)
    energy_capacity: int = Field(1, ge=1)
    recovery_rate: int = Field(1, ge=1)

    def level(self, key: str) -> int:
        return int(getattr(self, key))


class QuickChargeState(BaseModel):
    uses_remaining: int = Field(5, ge=0, le=5)
    cooldown_until: Optional[float] = None  # epoch-секунды
    last_reset: Optional[float] = None


# ======================
# 🏗 Постройка
# ======================
class PartState(BaseModel):
    level: int = Field(0, ge=0, le=20)
    upgrading: bool = False
    upgrade_started_at: Optional[float] = None
    upgrade_ends_at: Optional[float] = None


# ======================
# 👤 Игрок
# ======================
class PlayerState(BaseModel):
    """
    Авторитетный снимок игрока (память + локальное хранилище).
    tier и max_energy — производные; max_energy хранится, чтобы его можно было
    сверить с удалённой строкой, но всегда пересчитывается от energy_capacity.
    """

    bz: int = 5000
    bb: Decimal = Decimal("0")
    energy: float = 1500.0
    max_energy: int = 1500
    xp: int = 0

    total_taps: int = 0
    today_taps: int = 0
    today_date: Optional[str] = None       # YYYY-MM-DD для сброса today_taps
    total_tap_income: int = 0
    total_upgrades: int = 0
    total_conversions: int = 0             # BZ, отправленные в BZ→BB

    boosters: BoosterLevels = Field(default_factory=BoosterLevels)
    quick_charge: QuickChargeState = Field(default_factory=QuickChargeState)

    last_idle_claim: Optional[float] = None
    power_surge_used: bool = False
    referral_count: int = 0

    @property
    def tier(self) -> Tier:
        return tier_for_xp(self.xp)

    def derived_max_energy(self) -> int:
        return max_energy_for(self.boosters.energy_capacity)


class ConversionRecord(BaseModel):
    id: str
    timestamp: float
    type: str
    input: Decimal
    output: Decimal
    bonus: Optional[Decimal] = None
    burned: Optional[Decimal] = None
    tier: Optional[str] = None


class DailyClaim(BaseModel):
    week: int
    day: int
    reward_type: str
    reward_amount: Decimal
    claimed_at: float


class OwnedNFT(BaseModel):
    nft_id: str
    purchased_at: float
    price_bb: Decimal = Decimal("0")


# ======================
# 📲 Telegram
# ======================
class TelegramUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: Optional[bool] = None

    @property
    def display_name(self) -> str:
        return self.username or self.first_name or f"User{str(self.id)[-6:]}"


# ======================
# 🗄 Table API
# ======================
class UpsertPayload(BaseModel):
    rows: List[Dict[str, Any]]


class UpdatePayload(BaseModel):
    values: Dict[str, Any]
    filters: Dict[str, Any] = Field(default_factory=dict)
