# 📂 backend/bunergy/economy.py — формулы экономики Bunergy (чистые функции, без I/O)
# -----------------------------------------------------------------------------
# Здесь собраны все расчёты, от которых зависит баланс игры:
#   • тиры по XP (Bronze … Diamond), множитель дохода и процент бонуса конвертации;
#   • награда за тап и его стоимость в энергии;
#   • цены бустеров (квадратичная кривая + надбавка от часового дохода) и
#     реферальный «гейт» для энергетических бустеров;
#   • максимальная энергия и скорость восстановления;
#   • конвертация BZ ⇄ BB (бонус тира при BZ→BB, сжигание при BB→BZ);
#   • пассивный доход (IdleAccrual) с потолком 4 часа и бонусом PowerSurge.
#
# Правила округления:
#   • BZ — целые: награды и доход округляются вниз (floor), тап — вверх (ceil).
#   • BB — 6 знаков, ROUND_DOWN.
#
# Функции конвертации возвращают словарь-результат в стиле
# {"success": False, "error": "<CODE>"} и ничего не меняют сами: списание и
# начисление делает владелец состояния (game_state.GameStore).
# -----------------------------------------------------------------------------

from __future__ import annotations

import math
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .utils import dec, floor_int, q6, threshold_progress


class Tier(str, Enum):
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"
    DIAMOND = "Diamond"


# =============================================================================
# Тиры
# =============================================================================
TIER_THRESHOLDS: Tuple[Tuple[Tier, int], ...] = (
    (Tier.BRONZE, 0),
    (Tier.SILVER, 10001),
    (Tier.GOLD, 50001),
    (Tier.PLATINUM, 150001),
    (Tier.DIAMOND, 500001),
)

TIER_MULTIPLIER: Dict[Tier, Decimal] = {
    Tier.BRONZE: Decimal("1.0"),
    Tier.SILVER: Decimal("1.05"),
    Tier.GOLD: Decimal("1.15"),
    Tier.PLATINUM: Decimal("1.25"),
    Tier.DIAMOND: Decimal("1.40"),
}

TIER_BONUS_PERCENT: Dict[Tier, int] = {
    Tier.BRONZE: 0,
    Tier.SILVER: 5,
    Tier.GOLD: 15,
    Tier.PLATINUM: 25,
    Tier.DIAMOND: 40,
}


def tier_for_xp(xp: Any) -> Tier:
    """Тир по XP: ступенчатая, монотонная функция. Отрицательный XP → Bronze."""
    value = dec(xp)
    current = Tier.BRONZE
    for tier, threshold in TIER_THRESHOLDS:
        if value >= threshold:
            current = tier
    return current


def tier_multiplier(tier: Tier) -> Decimal:
    return TIER_MULTIPLIER[Tier(tier)]


def tier_bonus_percent(tier: Tier) -> int:
    return TIER_BONUS_PERCENT[Tier(tier)]


def tier_progress(xp: int) -> Tuple[Tier, Optional[int], Decimal]:
    """(текущий тир, XP следующего тира | None, прогресс 0..1) для экрана тиров."""
    idx, next_thr, progress = threshold_progress([t for _, t in TIER_THRESHOLDS], int(xp))
    return TIER_THRESHOLDS[idx][0], next_thr, progress


# =============================================================================
# Тапы и энергия
# =============================================================================
BASE_MAX_ENERGY = 1500
ENERGY_PER_CAPACITY_LEVEL = 100
BASE_REGEN_PER_SEC = Decimal("0.3")
REGEN_PER_RECOVERY_LEVEL = Decimal("0.1")


def tap_reward(income_per_tap_level: int, tier: Tier) -> int:
    """ceil(10 * уровень incomePerTap * множитель тира)."""
    return int(math.ceil(Decimal(10) * int(income_per_tap_level) * tier_multiplier(tier)))


def tap_energy_cost(energy_per_tap_level: int) -> int:
    return int(energy_per_tap_level)


def max_energy_for(energy_capacity_level: int) -> int:
    return BASE_MAX_ENERGY + ENERGY_PER_CAPACITY_LEVEL * (int(energy_capacity_level) - 1)


def energy_regen_per_sec(recovery_rate_level: int) -> float:
    return float(BASE_REGEN_PER_SEC + REGEN_PER_RECOVERY_LEVEL * int(recovery_rate_level))


def clamp_energy(energy: float, max_energy: int) -> float:
    return max(0.0, min(float(energy), float(max_energy)))


# =============================================================================
# Бустеры
# =============================================================================
INCOME_PER_TAP = "income_per_tap"
ENERGY_PER_TAP = "energy_per_tap"
ENERGY_CAPACITY = "energy_capacity"
RECOVERY_RATE = "recovery_rate"

BOOSTER_KEYS: Tuple[str, ...] = (INCOME_PER_TAP, ENERGY_PER_TAP, ENERGY_CAPACITY, RECOVERY_RATE)

BOOSTER_BASE_COST: Dict[str, int] = {
    INCOME_PER_TAP: 500,
    ENERGY_PER_TAP: 800,
    ENERGY_CAPACITY: 1000,
    RECOVERY_RATE: 1200,
}

# Реферальный гейт действует только на «энергетическое» семейство
REFERRAL_GATED_BOOSTERS = frozenset({ENERGY_PER_TAP, ENERGY_CAPACITY, RECOVERY_RATE})


def booster_cost(key: str, level: int, bz_per_hour: Any = 0) -> int:
    """floor(base * (1 + level)^2 + 1.2 * bzPerHour) — цена перехода level → level+1."""
    if key not in BOOSTER_BASE_COST:
        raise ValueError(f"unknown booster: {key}")
    base = dec(BOOSTER_BASE_COST[key])
    return floor_int(base * (1 + int(level)) ** 2 + Decimal("1.2") * dec(bz_per_hour))


def booster_referral_gate(key: str, level: int) -> int:
    """
    Сколько рефералов нужно, чтобы поднять бустер с текущего level.
      level < 2 → 0; level == 2 → 3; level 3..4 → 5; level ≥ 5 → 7.
    incomePerTap не гейтится.
    """
    if key not in REFERRAL_GATED_BOOSTERS:
        return 0
    if level < 2:
        return 0
    if level == 2:
        return 3
    if level < 5:
        return 5
    return 7


# =============================================================================
# Конвертация BZ ⇄ BB
# =============================================================================
BZ_PER_BB = Decimal(1_000_000)  # якорный курс: 1 000 000 BZ = 1 BB

BZ_TO_BB = "bz_to_bb"
BB_TO_BZ = "bb_to_bz"


def convert_bz_to_bb(amount: Any, bz_balance: Any, tier: Tier) -> Dict[str, Any]:
    """
    BZ → BB: output = amount / 1e6 * (1 + pct/100).
    Ограничение сверху — только баланс.
    """
    amt = dec(amount)
    if amt <= 0:
        return {"success": False, "error": "INVALID_AMOUNT"}
    if amt > dec(bz_balance):
        return {"success": False, "error": "INSUFFICIENT_BZ"}

    pct = tier_bonus_percent(tier)
    base = amt / BZ_PER_BB
    bonus = q6(base * pct / Decimal(100))
    output = q6(base * (1 + Decimal(pct) / Decimal(100)))
    return {
        "success": True,
        "type": BZ_TO_BB,
        "input": amt,
        "debit": amt,
        "output": output,
        "bonus": bonus,
        "tier": Tier(tier).value,
    }


def convert_bb_to_bz(amount: Any, bb_balance: Any, tier: Tier) -> Dict[str, Any]:
    """
    BB → BZ:
      • Bronze (0%) — запрещено полностью;
      • amount ≤ balance * pct/100;
      • burn = amount / (pct/100 * 2), списание amount + burn ≤ balance;
      • output = amount * 1e6 BZ.
    """
    amt = dec(amount)
    if amt <= 0:
        return {"success": False, "error": "INVALID_AMOUNT"}

    pct = tier_bonus_percent(tier)
    if pct == 0:
        return {"success": False, "error": "TIER_LOCKED"}

    balance = dec(bb_balance)
    limit = balance * pct / Decimal(100)
    if amt > limit:
        return {"success": False, "error": "ABOVE_TIER_LIMIT", "limit": q6(limit)}

    burn = q6(amt / (Decimal(pct) / Decimal(100) * 2))
    debit = amt + burn
    if debit > balance:
        return {"success": False, "error": "INSUFFICIENT_BB", "required": debit}

    return {
        "success": True,
        "type": BB_TO_BZ,
        "input": amt,
        "debit": debit,
        "burned": burn,
        "output": floor_int(amt * BZ_PER_BB),
        "tier": Tier(tier).value,
    }


# =============================================================================
# Пассивный доход (IdleAccrual) и PowerSurge
# =============================================================================
IDLE_CAP_HOURS = Decimal(4)

# (нижняя граница часов, верхняя граница, процент); верхняя граница последней
# полосы включительна: ровно 4 часа ещё дают 5 %.
POWER_SURGE_BANDS: Tuple[Tuple[Decimal, Decimal, int], ...] = (
    (Decimal(1), Decimal(2), 25),
    (Decimal(2), Decimal(3), 10),
    (Decimal(3), Decimal(4), 5),
)


def power_surge_percent(hours: Any) -> int:
    h = dec(hours)
    for low, high, pct in POWER_SURGE_BANDS:
        if low <= h < high or (high == IDLE_CAP_HOURS and h == high):
            return pct
    return 0


def idle_accrual(hourly_yield: Any, elapsed_sec: Any, tier: Tier, surge_available: bool = True) -> Dict[str, Any]:
    """
    Пассивный доход за время отсутствия:
      hours = min(elapsed / 3600, 4)
      base  = hourly * hours * multiplier
      surge = base * percent(hours) / 100   (только если surge_available)
      total = floor(base + surge)
    """
    elapsed = max(dec(elapsed_sec), Decimal(0))
    hours = min(elapsed / Decimal(3600), IDLE_CAP_HOURS)
    base = dec(hourly_yield) * hours * tier_multiplier(tier)
    pct = power_surge_percent(hours) if surge_available else 0
    surge = base * pct / Decimal(100)
    return {
        "hours": hours,
        "base": floor_int(base),
        "surge": floor_int(surge),
        "surge_percent": pct,
        "total": floor_int(base + surge),
    }
