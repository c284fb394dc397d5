from decimal import Decimal

import pytest

from backend.bunergy import economy
from backend.bunergy.economy import Tier
from backend.bunergy.utils import q6


def test_tier_thresholds():
    assert economy.tier_for_xp(0) == Tier.BRONZE
    assert economy.tier_for_xp(10000) == Tier.BRONZE
    assert economy.tier_for_xp(10001) == Tier.SILVER
    assert economy.tier_for_xp(50001) == Tier.GOLD
    assert economy.tier_for_xp(150001) == Tier.PLATINUM
    assert economy.tier_for_xp(500001) == Tier.DIAMOND
    assert economy.tier_for_xp(-5) == Tier.BRONZE


def test_tier_is_monotonic_in_xp():
    order = [t for t, _ in economy.TIER_THRESHOLDS]
    previous = 0
    for xp in range(0, 600_000, 997):
        idx = order.index(economy.tier_for_xp(xp))
        assert idx >= previous
        previous = idx


def test_tier_progress():
    tier, next_thr, progress = economy.tier_progress(5000)
    assert tier == Tier.BRONZE
    assert next_thr == 10001
    assert Decimal("0.49") < progress < Decimal("0.51")
    assert economy.tier_progress(900_000)[1] is None


def test_tap_reward_and_cost_at_bronze_level_one():
    assert economy.tap_reward(1, Tier.BRONZE) == 10
    assert economy.tap_energy_cost(1) == 1


def test_tap_reward_rounds_up():
    # 10 * 1 * 1.05 = 10.5 → 11
    assert economy.tap_reward(1, Tier.SILVER) == 11
    assert economy.tap_reward(3, Tier.DIAMOND) == 42


def test_energy_formulas():
    assert economy.max_energy_for(1) == 1500
    assert economy.max_energy_for(6) == 2000
    assert economy.energy_regen_per_sec(1) == pytest.approx(0.4)
    assert economy.clamp_energy(-3, 1500) == 0.0
    assert economy.clamp_energy(1600, 1500) == 1500.0


def test_booster_cost_level_one():
    assert economy.booster_cost(economy.INCOME_PER_TAP, 1) == 2000


def test_booster_cost_includes_hourly_income():
    assert economy.booster_cost(economy.INCOME_PER_TAP, 1, Decimal("100")) == 2120


def test_booster_cost_strictly_increasing():
    for key in economy.BOOSTER_KEYS:
        costs = [economy.booster_cost(key, level) for level in range(1, 30)]
        assert all(a < b for a, b in zip(costs, costs[1:]))


def test_booster_cost_unknown_key():
    with pytest.raises(ValueError):
        economy.booster_cost("turbo", 1)


def test_booster_referral_gate():
    assert economy.booster_referral_gate(economy.INCOME_PER_TAP, 10) == 0
    assert economy.booster_referral_gate(economy.ENERGY_CAPACITY, 1) == 0
    assert economy.booster_referral_gate(economy.ENERGY_CAPACITY, 2) == 3
    assert economy.booster_referral_gate(economy.RECOVERY_RATE, 4) == 5
    assert economy.booster_referral_gate(economy.ENERGY_PER_TAP, 5) == 7


def test_bz_to_bb_with_tier_bonus():
    res = economy.convert_bz_to_bb(1_000_000, 2_000_000, Tier.GOLD)
    assert res["success"] is True
    assert res["output"] == Decimal("1.150000")
    assert res["bonus"] == Decimal("0.150000")
    assert res["debit"] == Decimal(1_000_000)


def test_bz_to_bb_errors():
    assert economy.convert_bz_to_bb(0, 100, Tier.BRONZE)["error"] == "INVALID_AMOUNT"
    assert economy.convert_bz_to_bb(200, 100, Tier.BRONZE)["error"] == "INSUFFICIENT_BZ"


@pytest.mark.parametrize("amount", [Decimal("0.000001"), Decimal("0.1"), 5, Decimal("10"), 10**9])
def test_bb_to_bz_rejected_for_bronze(amount):
    res = economy.convert_bb_to_bz(amount, Decimal("10"), Tier.BRONZE)
    assert res == {"success": False, "error": "TIER_LOCKED"}


def test_bb_to_bz_burn_and_limit():
    # Gold: лимит 15 % баланса, сжигание amount / 0.3
    res = economy.convert_bb_to_bz(Decimal("0.3"), Decimal("10"), Tier.GOLD)
    assert res["success"] is True
    assert res["burned"] == Decimal("1.000000")
    assert res["debit"] == Decimal("1.300000")
    assert res["output"] == 300_000

    over = economy.convert_bb_to_bz(Decimal("2"), Decimal("10"), Tier.GOLD)
    assert over["error"] == "ABOVE_TIER_LIMIT"
    assert over["limit"] == Decimal("1.500000")


NONZERO_TIERS = [Tier.SILVER, Tier.GOLD, Tier.PLATINUM, Tier.DIAMOND]


@pytest.mark.parametrize("tier", NONZERO_TIERS)
@pytest.mark.parametrize("bz_in", [10_000, 1_000_000, 123_456_789])
def test_bonus_and_burn_asymmetry(tier, bz_in):
    """Круг BZ → BB → BZ всегда стоит больше, чем возвращает."""
    pct = Decimal(economy.tier_bonus_percent(tier)) / 100
    forward = economy.convert_bz_to_bb(bz_in, bz_in, tier)
    bb = forward["output"]
    amount = q6(bb * pct)
    back = economy.convert_bb_to_bz(amount, bb, tier)
    assert back["success"] is True
    assert back["debit"] > amount
    assert back["output"] < bz_in
    # BZ, потраченные на списанные BB, больше полученных обратно
    assert back["debit"] * economy.BZ_PER_BB / (1 + pct) > back["output"]


def test_power_surge_bands():
    assert economy.power_surge_percent(Decimal("0.5")) == 0
    assert economy.power_surge_percent(1) == 25
    assert economy.power_surge_percent(Decimal("2.5")) == 10
    assert economy.power_surge_percent(3) == 5
    assert economy.power_surge_percent(4) == 5


def test_idle_accrual_capped_at_four_hours():
    capped = economy.idle_accrual(1000, 10 * 3600, Tier.BRONZE, surge_available=False)
    exact = economy.idle_accrual(1000, 4 * 3600, Tier.BRONZE, surge_available=False)
    assert capped["hours"] == Decimal(4)
    assert capped["total"] == exact["total"] == 4000


def test_idle_accrual_with_surge():
    res = economy.idle_accrual(1000, 3600, Tier.BRONZE)
    assert res["base"] == 1000
    assert res["surge_percent"] == 25
    assert res["total"] == 1250
