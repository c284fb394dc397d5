from decimal import Decimal

from backend.bunergy import economy
from backend.bunergy.game_state import GameStore, load_store
from backend.bunergy.local_store import MemoryStore
from backend.bunergy.schemas import PartState


def test_defaults_on_first_load(store):
    s = store.state
    assert s.bz == 5000
    assert s.energy == 1500.0
    assert s.max_energy == 1500
    assert s.bb == Decimal("0")
    assert s.last_idle_claim is not None


def test_tap_rewards_and_spends_energy(store):
    res = store.tap()
    assert res == {"success": True, "reward": 10, "energy_spent": 1, "energy": 1499.0}
    assert store.state.bz == 5010
    assert store.state.total_taps == 1
    assert store.state.today_taps == 1
    assert store.state.total_tap_income == 10


def test_tap_without_energy(store):
    store.set_energy(0.5)
    res = store.tap()
    assert res["error"] == "NOT_ENOUGH_ENERGY"
    assert store.state.bz == 5000


def test_state_survives_reload(port, store, clock):
    store.tap()
    store.tap()
    reloaded = GameStore.load(port, clock=clock)
    assert reloaded.state.bz == 5020
    assert reloaded.state.total_taps == 2
    assert reloaded.state.energy == 1498.0


def test_corrupt_field_falls_back_to_default(clock):
    port = MemoryStore({"bunergy_bz": "garbage", "bunergy_xp": 77})
    store = GameStore.load(port, clock=clock)
    assert store.state.bz == 5000
    assert store.state.xp == 77


def test_load_store_reports_first_launch(clock):
    port = MemoryStore()
    _, first = load_store(port, clock=clock)
    assert first is True
    _, again = load_store(port, clock=clock)
    assert again is False


def test_upgrade_booster(store):
    res = store.upgrade_booster(economy.INCOME_PER_TAP)
    assert res["success"] is True
    assert res["cost"] == 2000
    assert store.state.bz == 3000
    assert store.state.boosters.income_per_tap == 2


def test_capacity_upgrade_raises_max_energy(store):
    store.state.bz = 100_000
    store.upgrade_booster(economy.ENERGY_CAPACITY)
    assert store.state.max_energy == 1600


def test_booster_referral_gate(store):
    store.state.bz = 1_000_000
    store.state.boosters.recovery_rate = 2
    res = store.upgrade_booster(economy.RECOVERY_RATE)
    assert res == {"success": False, "error": "REFERRALS_REQUIRED", "required": 3}
    store.set_referral_count(3)
    assert store.upgrade_booster(economy.RECOVERY_RATE)["success"] is True


def test_booster_insufficient_bz(store):
    store.state.bz = 10
    assert store.upgrade_booster(economy.INCOME_PER_TAP)["error"] == "INSUFFICIENT_BZ"
    assert store.upgrade_booster("warp")["error"] == "UNKNOWN_BOOSTER"


def test_quick_charge_rules(store, clock):
    assert store.use_quick_charge()["error"] == "ENERGY_TOO_HIGH"

    store.set_energy(100)
    res = store.use_quick_charge()
    assert res["success"] is True
    assert res["uses_remaining"] == 4
    assert store.state.energy == 1500.0

    store.set_energy(100)
    assert store.use_quick_charge()["error"] == "COOLDOWN"

    clock.advance(3601)
    assert store.use_quick_charge()["success"] is True
    assert store.state.quick_charge.uses_remaining == 3


def test_quick_charge_uses_reset_after_a_day(store, clock):
    store.state.quick_charge.uses_remaining = 0
    store.state.quick_charge.last_reset = clock()
    store.set_energy(10)
    assert store.use_quick_charge()["error"] == "NO_USES_LEFT"
    clock.advance(24 * 3600)
    assert store.use_quick_charge()["success"] is True


def test_idle_claim_without_buildings(store, clock):
    clock.advance(3600)
    assert store.claim_idle()["error"] == "NOTHING_TO_CLAIM"


def test_idle_claim_is_capped_and_uses_power_surge(store, clock):
    assert store.start_part_upgrade("s1p1")["success"] is True
    start = clock()
    clock.advance(10 * 3600)
    expected = economy.idle_accrual(store.hourly_yield(), 10 * 3600, store.tier)
    bz_before = store.state.bz

    res = store.claim_idle()
    assert res["success"] is True
    assert res["hours"] == Decimal(4)
    assert res["total"] == expected["total"]
    assert store.state.bz == bz_before + expected["total"]
    assert store.state.power_surge_used is True
    assert store.state.last_idle_claim == start + 10 * 3600

    clock.advance(4 * 3600)
    again = store.claim_idle()
    assert again["surge"] == 0


def test_instant_build_levels(store):
    res = store.start_part_upgrade("s1p1")
    assert res["success"] is True
    assert res["duration_sec"] == 0
    assert store.parts["s1p1"].level == 1
    assert store.parts["s1p1"].upgrading is False
    assert store.state.total_upgrades == 1
    assert store.state.bz == 5000 - 550


def test_timed_build_and_single_slot(store, clock):
    store.state.bz = 1_000_000
    store.parts["s1p1"] = PartState(level=5)
    store.parts["s1p2"] = PartState(level=3)

    res = store.start_part_upgrade("s1p2")
    assert res["success"] is True
    assert res["ends_at"] == clock() + 15 * 60
    assert store.start_part_upgrade("s1p2")["error"] == "ALREADY_BUILDING"
    assert store.start_part_upgrade("s1p1")["error"] == "BUILD_IN_PROGRESS"

    clock.advance(15 * 60)
    assert store.complete_due_builds() == ["s1p2"]
    assert store.parts["s1p2"].level == 4
    assert store.active_build() is None


def test_locked_part_cannot_be_built(store):
    assert store.start_part_upgrade("s1p2")["error"] == "PART_LOCKED"
    assert store.start_part_upgrade("nope")["error"] == "UNKNOWN_PART"


def test_speed_up_build(store, clock):
    store.parts["s1p1"] = PartState(level=3)
    store.start_part_upgrade("s1p1")

    assert store.speed_up_build("s1p1")["error"] == "INSUFFICIENT_BB"
    store.add_bb(Decimal("1"))
    res = store.speed_up_build("s1p1")
    assert res["success"] is True
    assert res["cost"] == Decimal("0.005000")
    assert store.parts["s1p1"].level == 4
    assert store.state.bb == Decimal("0.995000")
    assert store.speed_up_build("s1p1")["error"] == "NOT_BUILDING"


def test_speed_up_requires_level_three(store):
    store.parts["s1p1"] = PartState(level=1, upgrading=True, upgrade_ends_at=store.clock() + 100)
    assert store.speed_up_build("s1p1")["error"] == "NOT_ELIGIBLE"


def test_convert_bz_to_bb_records_history(store):
    res = store.convert_bz_to_bb(1000)
    assert res["success"] is True
    assert store.state.bz == 4000
    assert store.state.bb == Decimal("0.001000")
    assert store.state.total_conversions == 1000
    assert store.history[0] is res["record"]
    assert store.history[0].type == economy.BZ_TO_BB


def test_convert_rejects_fractional_bz(store):
    assert store.convert_bz_to_bb("10.5")["error"] == "INVALID_AMOUNT"
    assert store.state.bz == 5000


def test_convert_bb_to_bz_locked_for_bronze(store):
    store.add_bb(Decimal("5"))
    assert store.convert_bb_to_bz(Decimal("0.1"))["error"] == "TIER_LOCKED"


def test_convert_bb_to_bz_for_silver(store):
    store.add_xp(10001)
    store.add_bb(Decimal("10"))
    res = store.convert_bb_to_bz(Decimal("0.5"))
    assert res["success"] is True
    assert store.state.bz == 5000 + 500_000
    assert store.state.bb == Decimal("10") - Decimal("0.5") - Decimal("5")


def test_history_is_capped(port, clock):
    store = GameStore.load(port, clock=clock, history_limit=3)
    for _ in range(5):
        store.convert_bz_to_bb(100)
    assert len(store.history) == 3


def test_daily_rollover_resets_today_counters(store, clock):
    store.tap()
    store.state.power_surge_used = True
    clock.advance(24 * 3600)
    store.tap()
    assert store.state.today_taps == 1
    assert store.state.total_taps == 2
    assert store.state.power_surge_used is False


def test_regen_tick(store):
    store.set_energy(100)
    store.regen_tick(10)
    assert store.state.energy == 104.0
    store.set_energy(1500)
    assert store.regen_tick(10) == 1500.0


def test_listeners_receive_actions(store):
    store.roll_daily_counters()
    seen = []
    unsubscribe = store.subscribe(lambda keys, action: seen.append((keys, action)))
    store.tap()
    unsubscribe()
    store.tap()
    assert len(seen) == 1
    keys, action = seen[0]
    assert action == "tap"
    assert {"bz", "energy", "total_taps"} <= keys


def test_snapshot_has_profile_columns(store):
    snap = store.snapshot()
    assert snap["tier"] == "Bronze"
    assert snap["booster_income_per_tap"] == 1
    assert snap["quick_charge_uses_remaining"] == 5
    assert snap["bz_per_hour"] == Decimal("0")


def test_quick_charge_status(store, clock):
    status = store.quick_charge_status()
    assert status == {"uses_remaining": 5, "cooldown_left_sec": 0.0, "energy_ok": False}

    store.set_energy(10)
    store.use_quick_charge()
    clock.advance(600)
    status = store.quick_charge_status()
    assert status["uses_remaining"] == 4
    assert status["cooldown_left_sec"] == 3000


def test_reset_power_surge(store):
    store.state.power_surge_used = True
    store.reset_power_surge()
    assert store.state.power_surge_used is False
    assert store.port.get(store.key("power_surge_used")) is False
