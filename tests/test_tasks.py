from decimal import Decimal

from backend.bunergy.tasks import NEVER, TaskBoard, reset_key_for

DAY = 24 * 3600


def _by_id(board):
    return {t["id"]: t for t in board}


def test_reset_keys(clock):
    assert reset_key_for("daily", clock()) == "2026-03-11"
    assert reset_key_for("weekly", clock()) == "2026-W11"
    assert reset_key_for("milestone", clock()) == NEVER


def test_check_in_once_per_day(store, clock):
    tasks = TaskBoard(store)
    assert tasks.claim("daily_check_in")["success"] is True
    assert store.state.bz == 5500
    assert tasks.claim("daily_check_in")["error"] == "ALREADY_CLAIMED"

    clock.advance(DAY)
    assert tasks.claim("daily_check_in")["success"] is True


def test_daily_taps_task(store):
    tasks = TaskBoard(store)
    for _ in range(99):
        store.tap()
    res = tasks.claim("daily_taps")
    assert res["error"] == "NOT_COMPLETED"
    assert res["progress"] == 99

    store.tap()
    assert tasks.claim("daily_taps")["success"] is True


def test_weekly_task_counts_from_baseline(store, clock):
    store.state.total_upgrades = 7
    tasks = TaskBoard(store)
    tasks.refresh()
    store.state.total_upgrades = 16
    assert _by_id(tasks.board())["weekly_upgrade"]["progress"] == 9

    store.state.total_upgrades = 17
    assert tasks.claim("weekly_upgrade")["success"] is True

    clock.advance(7 * DAY)
    entry = _by_id(tasks.board())["weekly_upgrade"]
    assert entry["progress"] == 0
    assert entry["claimed"] is False


def test_milestone_task_counts_lifetime_total(store):
    store.state.total_taps = 10_000
    tasks = TaskBoard(store)
    assert tasks.claim("milestone_taps")["success"] is True
    assert store.state.bb == Decimal("1.000000")


def test_idle_task_requires_claim_today(store, clock):
    tasks = TaskBoard(store)
    store.roll_daily_counters()
    store.state.last_idle_claim = clock() - 2 * DAY
    assert tasks.claim("daily_idle")["error"] == "NOT_COMPLETED"

    store.state.last_idle_claim = clock()
    assert tasks.claim("daily_idle")["success"] is True
    assert store.state.xp == 50


def test_unknown_task(store):
    assert TaskBoard(store).claim("fly")["error"] == "UNKNOWN_TASK"


def test_merge_remote_keeps_local_entries(store, clock):
    tasks = TaskBoard(store)
    tasks.claim("daily_check_in")
    remote = {
        "daily_check_in": {"reset_key": "2026-03-11", "baseline": 0, "claimed": False, "updated_at": 1.0},
        "milestone_invite": {"reset_key": NEVER, "baseline": 0, "claimed": True, "updated_at": 1.0},
        "retired_task": {"reset_key": NEVER, "baseline": 0, "claimed": True, "updated_at": 1.0},
    }
    merged = tasks.merge_remote(remote)
    assert merged["daily_check_in"]["claimed"] is True
    assert "retired_task" not in merged
    assert set(tasks.to_remote()) == set(merged)
