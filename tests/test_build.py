from decimal import Decimal

import pytest

from backend.bunergy import build


def _levels(**overrides):
    levels = {key: 0 for key in build.iter_part_keys()}
    levels.update(overrides)
    return levels


def test_catalog_shape():
    assert len(build.PARTS) == 50
    assert [len(build.stage_parts(s.id)) for s in build.STAGES] == [10] * 5
    assert build.get_part("s1p1").name == "Base Frame"
    assert build.get_part("s5p10").name == "Completion Badge"
    with pytest.raises(ValueError):
        build.get_part("s9p1")


def test_part_cost_and_yield():
    part = build.get_part("s1p1")
    # 500 * 1.2^0 * 1.1
    assert build.part_cost(part, 0) == 550
    assert build.part_cost(part, 1) == 660
    assert build.part_yield(part, 0) == Decimal(0)
    assert build.part_yield(part, 1) == Decimal(10) * Decimal("1.15") * Decimal("1.15")


def test_total_hourly_yield_ignores_unknown_keys():
    part = build.get_part("s1p1")
    assert build.total_hourly_yield({"s1p1": 1, "bogus": 5}) == build.part_yield(part, 1)


def test_upgrade_duration():
    assert build.upgrade_duration(0) == 0
    assert build.upgrade_duration(2) == 0
    assert build.upgrade_duration(3) == 15 * 60
    assert build.upgrade_duration(10) == 36 * 3600
    assert build.upgrade_duration(19) == 48 * 3600


def test_speedup_cost_has_floor():
    assert build.speedup_cost(60) == Decimal("0.005000")
    assert build.speedup_cost(10 * 3600) == Decimal("0.100000")


def test_next_part_unlocks_at_level_five():
    p2 = build.get_part("s1p2")
    assert build.upgrade_block_reason(p2, _levels(s1p1=4), 0) == "PART_LOCKED"
    assert build.upgrade_block_reason(p2, _levels(s1p1=5), 0) is None


def test_stage_two_requires_ten_referrals():
    stage1_done = {f"s1p{i}": 5 for i in range(1, 9)}
    levels = _levels(**stage1_done)
    part = build.get_part("s2p1")
    assert build.is_stage_visible(2, levels)
    assert build.upgrade_block_reason(part, levels, 9) == "REFERRALS_REQUIRED"
    assert build.upgrade_block_reason(part, levels, 10) is None


def test_stage_hidden_below_eighty_percent():
    levels = _levels(**{f"s1p{i}": 5 for i in range(1, 8)})
    assert not build.is_stage_visible(2, levels)
    assert build.upgrade_block_reason(build.get_part("s2p1"), levels, 50) == "STAGE_HIDDEN"


def test_max_level_blocks_upgrade():
    assert build.upgrade_block_reason(build.get_part("s1p1"), _levels(s1p1=20), 0) == "MAX_LEVEL"


def test_stage_complete():
    levels = _levels(**{f"s2p{i}": 5 for i in range(1, 11)})
    assert build.is_stage_complete(2, levels)
    levels["s2p10"] = 4
    assert not build.is_stage_complete(2, levels)
