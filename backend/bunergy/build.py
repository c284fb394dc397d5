# 📂 backend/bunergy/build.py — каталог построек (50 деталей, 5 стадий) и правила апгрейда
# -----------------------------------------------------------------------------
# Постройка — 5 стадий по 10 деталей. Каждая деталь с уровнем > 0 даёт пассивный
# доход BZ/час (см. economy.idle_accrual).
#
# Бизнес-правила:
#   • Цена апгрейда:  floor(baseCost * 1.2^level * (1 + 0.10*stage)).
#   • Доход детали:   baseYield * 1.15^level * (1 + 0.15*stage), 0 при level 0.
#   • Длительность апгрейда зависит от ТЕКУЩЕГО уровня: уровни 0..2 — мгновенно,
#     дальше от 15 минут до 48 часов.
#   • Одновременно строится не больше одной детали (глобальный слот). Мгновенные
#     апгрейды слот не занимают.
#   • Деталь N стадии доступна, если деталь N-1 той же стадии имеет уровень ≥ 5.
#   • Стадия M видна, если ≥ 80 % деталей стадии M-1 имеют уровень ≥ 5;
#     кнопки апгрейда активны только при достаточном числе рефералов (0/10/20/30/40).
#   • Ускорение за BB: max(0.005, оставшиеся_часы * 0.01), только если деталь
#     строится и её уровень ≥ 3.
# -----------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .utils import dec, floor_int, q6

MAX_PART_LEVEL = 20
UNLOCK_LEVEL = 5                      # уровень детали, открывающий следующую
STAGE_VISIBLE_SHARE = Decimal("0.8")  # доля деталей предыдущей стадии на UNLOCK_LEVEL

COST_GROWTH = Decimal("1.2")
COST_STAGE_FACTOR = Decimal("0.10")
YIELD_GROWTH = Decimal("1.15")
YIELD_STAGE_FACTOR = Decimal("0.15")

SPEEDUP_MIN_LEVEL = 3
SPEEDUP_BB_PER_HOUR = Decimal("0.01")
SPEEDUP_MIN_BB = Decimal("0.005")


@dataclass(frozen=True)
class Stage:
    id: int
    name: str
    referral_requirement: int


@dataclass(frozen=True)
class Part:
    key: str
    name: str
    stage: int
    index: int
    base_cost: int
    base_yield: int


STAGES: Tuple[Stage, ...] = (
    Stage(1, "Foundation", 0),
    Stage(2, "Core System", 10),
    Stage(3, "Circuitry", 20),
    Stage(4, "Interface", 30),
    Stage(5, "Final Assembly", 40),
)

# Имена деталей по стадиям; цены и доход растут линейно внутри стадии:
# (стадия, стартовая цена, шаг цены, стартовый доход, шаг дохода, имена)
_CATALOG_SPEC = (
    (1, 500, 100, 10, 2, (
        "Base Frame", "Support Beams", "Foundation Plate", "Anchor Bolts", "Structural Core",
        "Mounting Brackets", "Reinforcement Rods", "Base Insulation", "Leveling System", "Foundation Seal",
    )),
    (2, 2000, 200, 35, 3, (
        "Main Processor", "Power Supply", "Cooling System", "Memory Banks", "Storage Drive",
        "Logic Unit", "Control Hub", "Energy Core", "Regulation Module", "Core Shield",
    )),
    (3, 5000, 300, 75, 4, (
        "Main Board", "Power Cables", "Data Lines", "Signal Router", "Connector Array",
        "Relay System", "Circuit Breaker", "Voltage Regulator", "Thermal Sensors", "Circuit Shield",
    )),
    (4, 10000, 500, 140, 7, (
        "Display Panel", "Input Module", "Control Interface", "Audio System", "Network Adapter",
        "Wireless Module", "Port Assembly", "Indicator Lights", "Status Display", "Interface Shield",
    )),
    (5, 18000, 1000, 250, 13, (
        "Outer Casing", "Panel Mounts", "Fastener Kit", "Sealing Gaskets", "Ventilation Grills",
        "Cable Management", "Final Connectors", "Quality Seals", "Inspection Tags", "Completion Badge",
    )),
)


def _build_catalog() -> Tuple[Part, ...]:
    parts: List[Part] = []
    for stage, cost0, cost_step, yield0, yield_step, names in _CATALOG_SPEC:
        for i, name in enumerate(names):
            parts.append(Part(
                key=f"s{stage}p{i + 1}",
                name=name,
                stage=stage,
                index=i + 1,
                base_cost=cost0 + cost_step * i,
                base_yield=yield0 + yield_step * i,
            ))
    return tuple(parts)


PARTS: Tuple[Part, ...] = _build_catalog()
PARTS_BY_KEY: Dict[str, Part] = {p.key: p for p in PARTS}


def get_part(key: str) -> Part:
    try:
        return PARTS_BY_KEY[key]
    except KeyError:
        raise ValueError(f"unknown build part: {key}") from None


def get_stage(stage_id: int) -> Stage:
    for stage in STAGES:
        if stage.id == stage_id:
            return stage
    raise ValueError(f"unknown stage: {stage_id}")


def stage_parts(stage_id: int) -> List[Part]:
    return [p for p in PARTS if p.stage == stage_id]


# =============================================================================
# Цены, доход, время
# =============================================================================
def part_cost(part: Part, level: int) -> int:
    """Цена апгрейда с уровня level на level+1 (BZ)."""
    raw = dec(part.base_cost) * COST_GROWTH ** int(level) * (1 + COST_STAGE_FACTOR * part.stage)
    return floor_int(raw)


def part_yield(part: Part, level: int) -> Decimal:
    """Доход детали BZ/час на уровне level."""
    if level <= 0:
        return Decimal(0)
    return dec(part.base_yield) * YIELD_GROWTH ** int(level) * (1 + YIELD_STAGE_FACTOR * part.stage)


def total_hourly_yield(levels: Mapping[str, int]) -> Decimal:
    """Суммарный доход BZ/час по словарю {ключ детали: уровень}."""
    total = Decimal(0)
    for key, level in levels.items():
        part = PARTS_BY_KEY.get(key)
        if part is not None:
            total += part_yield(part, level)
    return total


# Длительность апгрейда по текущему уровню, секунды
_UPGRADE_SECONDS = {
    3: 15 * 60,
    4: 30 * 60,
    5: 60 * 60,
    6: 4 * 3600,
    7: 8 * 3600,
    8: 16 * 3600,
    9: 24 * 3600,
    10: 36 * 3600,
}
_MAX_UPGRADE_SECONDS = 48 * 3600


def upgrade_duration(level: int) -> int:
    """Секунды апгрейда с уровня level. 0 — мгновенно."""
    if level < 3:
        return 0
    return _UPGRADE_SECONDS.get(int(level), _MAX_UPGRADE_SECONDS)


def speedup_cost(seconds_remaining: float) -> Decimal:
    """BB за мгновенное завершение: max(0.005, часы * 0.01), 6 знаков."""
    hours = dec(max(seconds_remaining, 0)) / Decimal(3600)
    return q6(max(SPEEDUP_MIN_BB, hours * SPEEDUP_BB_PER_HOUR))


# =============================================================================
# Доступность
# =============================================================================
def is_part_unlocked(part: Part, levels: Mapping[str, int]) -> bool:
    if part.index == 1:
        return True
    prev_key = f"s{part.stage}p{part.index - 1}"
    return levels.get(prev_key, 0) >= UNLOCK_LEVEL


def is_stage_visible(stage_id: int, levels: Mapping[str, int]) -> bool:
    if stage_id == 1:
        return True
    prev = stage_parts(stage_id - 1)
    done = sum(1 for p in prev if levels.get(p.key, 0) >= UNLOCK_LEVEL)
    return done >= len(prev) * STAGE_VISIBLE_SHARE


def is_stage_unlocked(stage_id: int, referral_count: int) -> bool:
    return referral_count >= get_stage(stage_id).referral_requirement


def is_stage_complete(stage_id: int, levels: Mapping[str, int]) -> bool:
    return all(levels.get(p.key, 0) >= UNLOCK_LEVEL for p in stage_parts(stage_id))


def upgrade_block_reason(part: Part, levels: Mapping[str, int], referral_count: int) -> Optional[str]:
    """Код причины, по которой апгрейд недоступен, или None."""
    if levels.get(part.key, 0) >= MAX_PART_LEVEL:
        return "MAX_LEVEL"
    if not is_stage_visible(part.stage, levels):
        return "STAGE_HIDDEN"
    if not is_stage_unlocked(part.stage, referral_count):
        return "REFERRALS_REQUIRED"
    if not is_part_unlocked(part, levels):
        return "PART_LOCKED"
    return None


def iter_part_keys() -> Iterable[str]:
    return (p.key for p in PARTS)
