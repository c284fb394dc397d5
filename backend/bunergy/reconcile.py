# 📂 backend/bunergy/reconcile.py — сверка локального снимка с удалённой строкой профиля
# -----------------------------------------------------------------------------
# Запускается один раз при старте, после успешного чтения профиля с сервера.
#
# Правила:
#   • Монотонные числовые поля (bz, bb, xp, total_taps, referral_count):
#       результат = max(local, remote). Защищает от потери локального прогресса
#       из-за устаревшего серверного снимка; цена — возможное двойное начисление,
#       если прошлый пуш не успел завершиться до нового локального прогресса от
#       той же базы.
#   • Авторитетные «серверные» поля (energy, max_energy, уровни бустеров,
#     QuickCharge): значение с сервера побеждает, если оно есть (не NULL).
#   • Остальные поля остаются локальными.
#   • Детали постройки: уровень = max; серверная стройка сохраняется, только если
#     она ещё идёт (время окончания в будущем).
#   • Журналы с ключом (история конвертаций, daily-клеймы, NFT, задания):
#     объединение по ключу, при конфликте побеждает локальная запись, порядок —
#     от новых к старым.
#   • Однострочное состояние наград: побеждает более свежая отметка времени,
#     при равенстве — локальное.
#   • Нет профиля / ошибка сервера → локальное состояние без изменений.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, TypeVar

from . import economy
from .schemas import PartState, PlayerState
from .utils import dec, q6

log = logging.getLogger("bunergy")

T = TypeVar("T")

MONOTONIC_FIELDS = ("bz", "xp", "total_taps", "referral_count")

BOOSTER_COLUMNS = {
    "booster_income_per_tap": economy.INCOME_PER_TAP,
    "booster_energy_per_tap": economy.ENERGY_PER_TAP,
    "booster_energy_capacity": economy.ENERGY_CAPACITY,
    "booster_recovery_rate": economy.RECOVERY_RATE,
}

QUICK_CHARGE_COLUMNS = {
    "quick_charge_uses_remaining": "uses_remaining",
    "quick_charge_cooldown_until": "cooldown_until",
    "quick_charge_last_reset": "last_reset",
}


@dataclass
class ReconcileResult:
    state: PlayerState
    remote_available: bool
    changed: List[str] = field(default_factory=list)


def reconcile_profile(local: PlayerState, remote: Optional[Mapping[str, Any]]) -> ReconcileResult:
    """Сливает локальный PlayerState со строкой profiles (доменные типы, см. remote_store.to_domain)."""
    if not remote:
        return ReconcileResult(state=local, remote_available=False)

    merged = local.model_copy(deep=True)
    changed: List[str] = []

    for name in MONOTONIC_FIELDS:
        value = remote.get(name)
        if value is None:
            continue
        best = max(int(getattr(merged, name)), int(value))
        if best != getattr(merged, name):
            setattr(merged, name, best)
            changed.append(name)

    remote_bb = remote.get("bb")
    if remote_bb is not None and q6(remote_bb) > merged.bb:
        merged.bb = q6(remote_bb)
        changed.append("bb")

    # серверные поля: побеждает удалённое значение, если оно задано
    for column, key in BOOSTER_COLUMNS.items():
        value = remote.get(column)
        if value is not None and int(value) >= 1 and int(value) != merged.boosters.level(key):
            setattr(merged.boosters, key, int(value))
            changed.append(column)

    for column, attr in QUICK_CHARGE_COLUMNS.items():
        value = remote.get(column)
        if value is None:
            continue
        if attr == "uses_remaining":
            value = max(0, min(int(value), 5))
        else:
            value = float(value)
        if getattr(merged.quick_charge, attr) != value:
            setattr(merged.quick_charge, attr, value)
            changed.append(column)

    merged.max_energy = merged.derived_max_energy()
    if remote.get("max_energy") is not None and int(remote["max_energy"]) != merged.max_energy:
        log.warning(
            "[Reconcile] remote max_energy=%s disagrees with capacity level, using %d",
            remote["max_energy"], merged.max_energy,
        )
    if remote.get("energy") is not None and float(remote["energy"]) != merged.energy:
        merged.energy = float(remote["energy"])
        changed.append("energy")
    merged.energy = economy.clamp_energy(merged.energy, merged.max_energy)

    if changed:
        log.info("[Reconcile] profile fields taken from merge: %s", ", ".join(changed))
    return ReconcileResult(state=merged, remote_available=True, changed=changed)


def reconcile_build_parts(
    local: Mapping[str, PartState],
    remote: Mapping[str, PartState],
    now: float,
) -> Dict[str, PartState]:
    """
    Уровень = max(local, remote). Серверная стройка берётся только если она ещё
    идёт; иначе сохраняется локальное состояние стройки.
    """
    merged: Dict[str, PartState] = {k: v.model_copy() for k, v in local.items()}
    for key, rp in remote.items():
        lp = merged.get(key)
        if lp is None:
            merged[key] = rp.model_copy()
            continue
        level = max(lp.level, rp.level)
        remote_active = rp.upgrading and rp.upgrade_ends_at is not None and rp.upgrade_ends_at > now
        if remote_active and rp.level >= lp.level:
            merged[key] = rp.model_copy()
        elif lp.upgrading and lp.level >= rp.level:
            merged[key] = lp.model_copy()
        else:
            merged[key] = PartState(level=level)
    return _single_active_build(merged)


def _single_active_build(parts: Dict[str, PartState]) -> Dict[str, PartState]:
    # два источника могли начать разные стройки; оставляем ту, что закончится раньше
    active = [k for k, p in parts.items() if p.upgrading]
    if len(active) <= 1:
        return parts
    keep = min(active, key=lambda k: parts[k].upgrade_ends_at or 0)
    for key in active:
        if key != keep:
            log.warning("[Reconcile] dropping concurrent build of %s, keeping %s", key, keep)
            parts[key] = PartState(level=parts[key].level)
    return parts


def merge_by_key(
    local: Iterable[T],
    remote: Iterable[T],
    key: Callable[[T], Hashable],
    timestamp: Callable[[T], float],
    limit: Optional[int] = None,
) -> List[T]:
    """
    Объединение журналов: по ключу, локальная запись побеждает; результат
    отсортирован от новых к старым, опционально обрезан до limit.
    """
    merged: Dict[Hashable, T] = {}
    for item in remote:
        merged[key(item)] = item
    for item in local:
        merged[key(item)] = item
    out = sorted(merged.values(), key=timestamp, reverse=True)
    return out[:limit] if limit else out


def reconcile_reward_state(
    local: Optional[Mapping[str, Any]],
    remote: Optional[Mapping[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Однострочное состояние: новее updated_at побеждает, при равенстве — локальное."""
    if not remote:
        return dict(local) if local else None
    if not local:
        return dict(remote)
    local_ts = dec(local.get("updated_at") or 0)
    remote_ts = dec(remote.get("updated_at") or 0)
    return dict(remote) if remote_ts > local_ts else dict(local)
