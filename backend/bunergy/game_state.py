# 📂 backend/bunergy/game_state.py — владелец состояния игрока (единственный писатель)
# -----------------------------------------------------------------------------
# GameStore — явный объект-хранилище вместо глобального синглтона:
#   • держит PlayerState, состояния 50 деталей постройки, историю конвертаций и
#     журналы наград (daily / reward_state / nfts / tasks);
#   • каждое изменение сразу пишется в порт локального хранилища (ключ на поле)
#     и рассылается подписчикам как (изменённые_ключи, действие);
#   • другие модули (награды, задания, синхронизация) читают и пишут только
#     через него и никогда не трогают хранилище напрямую.
#
# Ошибки валидации возвращаются словарём {"success": False, "error": CODE}
# и не меняют состояние. Простые операции с балансом (subtract_bz/subtract_bb)
# возвращают bool.
#
# Время — epoch-секунды; каждый метод принимает now (по умолчанию — часы стора),
# чтобы тики и тесты были детерминированы.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from . import build, economy
from .config import get_settings
from .local_store import (
    PersistencePort,
    as_bool,
    as_decimal,
    as_dict,
    as_float,
    as_int,
    as_list,
    as_str,
    read_field,
)
from .schemas import BoosterLevels, ConversionRecord, PartState, PlayerState, QuickChargeState
from .utils import day_key, dec, gen_uuid, now_ts, q6

log = logging.getLogger("bunergy")
settings = get_settings()

Listener = Callable[[Set[str], str], None]

# QuickCharge
QUICK_CHARGE_USES = 5
QUICK_CHARGE_CYCLE_SEC = 24 * 3600
QUICK_CHARGE_COOLDOWN_SEC = 3600
QUICK_CHARGE_ENERGY_SHARE = 0.5

# Действия, после которых нужен немедленный пуш (см. sync.SyncScheduler)
CRITICAL_ACTIONS = frozenset({
    "upgrade_booster",
    "quick_charge",
    "claim_idle",
    "build_upgrade",
    "build_complete",
    "build_speedup",
    "convert",
})

# Поля PlayerState → парсер значения из локального хранилища
_SCALAR_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "bz": as_int,
    "bb": as_decimal,
    "energy": as_float,
    "xp": as_int,
    "total_taps": as_int,
    "today_taps": as_int,
    "today_date": as_str,
    "total_tap_income": as_int,
    "total_upgrades": as_int,
    "total_conversions": as_int,
    "last_idle_claim": as_float,
    "power_surge_used": as_bool,
    "referral_count": as_int,
}

BUILD_PARTS_KEY = "build_parts"
HISTORY_KEY = "conversion_history"


def _parse_boosters(v: Any) -> BoosterLevels:
    return BoosterLevels.model_validate(as_dict(v))


def _parse_quick_charge(v: Any) -> QuickChargeState:
    return QuickChargeState.model_validate(as_dict(v))


def _to_storable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def default_parts() -> Dict[str, PartState]:
    return {key: PartState() for key in build.iter_part_keys()}


class GameStore:
    """Единственный владелец PlayerState и локальных журналов."""

    def __init__(
        self,
        port: PersistencePort,
        state: Optional[PlayerState] = None,
        parts: Optional[Dict[str, PartState]] = None,
        history: Optional[List[ConversionRecord]] = None,
        *,
        key_prefix: Optional[str] = None,
        history_limit: Optional[int] = None,
        clock: Callable[[], float] = now_ts,
    ):
        self.port = port
        self.key_prefix = settings.LOCAL_KEY_PREFIX if key_prefix is None else key_prefix
        self.history_limit = history_limit or settings.CONVERSION_HISTORY_LIMIT
        self.clock = clock
        self.state = state or self.default_state()
        self.parts = default_parts()
        if parts:
            self.parts.update({k: v for k, v in parts.items() if k in self.parts})
        self.history: List[ConversionRecord] = list(history or [])
        self._listeners: List[Listener] = []

    # -----------------------------------------------------------------
    # Загрузка / сохранение
    # -----------------------------------------------------------------
    @staticmethod
    def default_state() -> PlayerState:
        return PlayerState(
            bz=settings.DEFAULT_BZ,
            energy=float(settings.DEFAULT_ENERGY),
            max_energy=economy.max_energy_for(1),
            xp=settings.DEFAULT_XP,
        )

    def key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    @classmethod
    def load(cls, port: PersistencePort, *, now: Optional[float] = None, **kwargs) -> "GameStore":
        """
        Читает каждое поле независимо; отсутствующее/повреждённое → значение по умолчанию.
        max_energy пересчитывается от бустера ёмкости, energy зажимается в [0, max].
        """
        store = cls(port, **kwargs)
        now = store.clock() if now is None else now
        defaults = store.default_state()
        values: Dict[str, Any] = {}
        for name, parse in _SCALAR_FIELDS.items():
            values[name] = read_field(port, store.key(name), getattr(defaults, name), parse)
        values["boosters"] = read_field(port, store.key("boosters"), BoosterLevels(), _parse_boosters)
        values["quick_charge"] = read_field(port, store.key("quick_charge"), QuickChargeState(), _parse_quick_charge)

        try:
            state = PlayerState.model_validate(values)
        except ValidationError as e:
            log.warning("[Store] local state invalid as a whole, using defaults: %s", e)
            state = defaults
        state.max_energy = state.derived_max_energy()
        state.energy = economy.clamp_energy(state.energy, state.max_energy)
        if state.last_idle_claim is None:
            state.last_idle_claim = now
            port.set(store.key("last_idle_claim"), now)
        store.state = state

        raw_parts = read_field(port, store.key(BUILD_PARTS_KEY), {}, as_dict)
        for part_key, raw in raw_parts.items():
            if part_key not in store.parts:
                continue
            try:
                store.parts[part_key] = PartState.model_validate(raw)
            except ValidationError:
                log.warning("[Store] malformed build part %s, using default", part_key)

        raw_history = read_field(port, store.key(HISTORY_KEY), [], as_list)
        history: List[ConversionRecord] = []
        for raw in raw_history:
            try:
                history.append(ConversionRecord.model_validate(raw))
            except ValidationError:
                log.warning("[Store] malformed conversion record skipped")
        store.history = history[: store.history_limit]
        return store

    def _persist(self, names: Iterable[str]) -> None:
        for name in names:
            if name == BUILD_PARTS_KEY:
                value = {k: p.model_dump(mode="json") for k, p in self.parts.items()}
            elif name == HISTORY_KEY:
                value = [r.model_dump(mode="json") for r in self.history]
            else:
                value = _to_storable(getattr(self.state, name))
            self.port.set(self.key(name), value)

    def persist_all(self) -> None:
        self._persist([*_SCALAR_FIELDS, "max_energy", "boosters", "quick_charge", BUILD_PARTS_KEY, HISTORY_KEY])

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Подписка на изменения. Возвращает функцию отписки."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, names: Iterable[str], action: str) -> None:
        keys = set(names)
        self._persist(keys)
        for listener in list(self._listeners):
            try:
                listener(keys, action)
            except Exception as e:
                log.error("[Store] listener failed on %s: %s", action, e)

    # -----------------------------------------------------------------
    # Журналы наград (generic)
    # -----------------------------------------------------------------
    def get_ledger(self, name: str, default: Any, parse: Callable[[Any], Any] = lambda v: v) -> Any:
        return read_field(self.port, self.key(name), default, parse)

    def put_ledger(self, name: str, value: Any, action: str) -> None:
        self.port.set(self.key(name), _to_storable(value))
        for listener in list(self._listeners):
            try:
                listener({name}, action)
            except Exception as e:
                log.error("[Store] listener failed on %s: %s", action, e)

    # -----------------------------------------------------------------
    # Производные величины
    # -----------------------------------------------------------------
    @property
    def tier(self) -> economy.Tier:
        return self.state.tier

    def part_levels(self) -> Dict[str, int]:
        return {k: p.level for k, p in self.parts.items()}

    def hourly_yield(self) -> Decimal:
        return build.total_hourly_yield(self.part_levels())

    def booster_cost(self, key: str) -> int:
        return economy.booster_cost(key, self.state.boosters.level(key), self.hourly_yield())

    def active_build(self) -> Optional[str]:
        for key, part in self.parts.items():
            if part.upgrading:
                return key
        return None

    def energy_regen_per_sec(self) -> float:
        return economy.energy_regen_per_sec(self.state.boosters.recovery_rate)

    # -----------------------------------------------------------------
    # Балансы
    # -----------------------------------------------------------------
    def add_bz(self, amount: int, action: str = "add_bz") -> int:
        if amount <= 0:
            return self.state.bz
        self.state.bz += int(amount)
        self._commit(["bz"], action)
        return self.state.bz

    def subtract_bz(self, amount: int, action: str = "subtract_bz") -> bool:
        amount = int(amount)
        if amount < 0 or amount > self.state.bz:
            return False
        self.state.bz -= amount
        self._commit(["bz"], action)
        return True

    def add_bb(self, amount: Any, action: str = "add_bb") -> Decimal:
        amt = q6(amount)
        if amt <= 0:
            return self.state.bb
        self.state.bb = q6(self.state.bb + amt)
        self._commit(["bb"], action)
        return self.state.bb

    def subtract_bb(self, amount: Any, action: str = "subtract_bb") -> bool:
        amt = dec(amount)
        if amt < 0 or amt > self.state.bb:
            return False
        self.state.bb = q6(self.state.bb - amt)
        self._commit(["bb"], action)
        return True

    def add_xp(self, amount: int, action: str = "add_xp") -> int:
        # XP только растёт
        if amount <= 0:
            return self.state.xp
        self.state.xp += int(amount)
        self._commit(["xp"], action)
        return self.state.xp

    def set_energy(self, value: float, action: str = "set_energy") -> float:
        self.state.energy = economy.clamp_energy(value, self.state.max_energy)
        self._commit(["energy"], action)
        return self.state.energy

    def set_referral_count(self, count: int) -> None:
        if count == self.state.referral_count:
            return
        self.state.referral_count = max(int(count), 0)
        self._commit(["referral_count"], "referral_count")

    # -----------------------------------------------------------------
    # Суточные счётчики
    # -----------------------------------------------------------------
    def roll_daily_counters(self, now: Optional[float] = None) -> bool:
        """Новый день (UTC): today_taps = 0, PowerSurge снова доступен."""
        now = self.clock() if now is None else now
        today = day_key(now)
        if self.state.today_date == today:
            return False
        first_run = self.state.today_date is None
        self.state.today_date = today
        changed = ["today_date"]
        if not first_run:
            self.state.today_taps = 0
            self.state.power_surge_used = False
            changed += ["today_taps", "power_surge_used"]
        self._commit(changed, "daily_rollover")
        return True

    # -----------------------------------------------------------------
    # Тапы и энергия
    # -----------------------------------------------------------------
    def tap(self, now: Optional[float] = None) -> Dict[str, Any]:
        self.roll_daily_counters(now)
        s = self.state
        cost = economy.tap_energy_cost(s.boosters.energy_per_tap)
        if s.energy < cost:
            return {"success": False, "error": "NOT_ENOUGH_ENERGY", "required": cost}

        reward = economy.tap_reward(s.boosters.income_per_tap, s.tier)
        s.energy = economy.clamp_energy(s.energy - cost, s.max_energy)
        s.bz += reward
        s.total_taps += 1
        s.today_taps += 1
        s.total_tap_income += reward
        self._commit(["energy", "bz", "total_taps", "today_taps", "total_tap_income"], "tap")
        return {"success": True, "reward": reward, "energy_spent": cost, "energy": s.energy}

    def regen_tick(self, elapsed_sec: float = 1.0) -> float:
        s = self.state
        if s.energy >= s.max_energy or elapsed_sec <= 0:
            return s.energy
        s.energy = economy.clamp_energy(s.energy + self.energy_regen_per_sec() * elapsed_sec, s.max_energy)
        self._commit(["energy"], "regen")
        return s.energy

    # -----------------------------------------------------------------
    # Бустеры
    # -----------------------------------------------------------------
    def upgrade_booster(self, key: str) -> Dict[str, Any]:
        if key not in economy.BOOSTER_KEYS:
            return {"success": False, "error": "UNKNOWN_BOOSTER"}
        s = self.state
        level = s.boosters.level(key)
        needed = economy.booster_referral_gate(key, level)
        if s.referral_count < needed:
            return {"success": False, "error": "REFERRALS_REQUIRED", "required": needed}
        cost = self.booster_cost(key)
        if cost > s.bz:
            return {"success": False, "error": "INSUFFICIENT_BZ", "cost": cost}

        s.bz -= cost
        setattr(s.boosters, key, level + 1)
        changed = ["bz", "boosters"]
        if key == economy.ENERGY_CAPACITY:
            s.max_energy = s.derived_max_energy()
            s.energy = economy.clamp_energy(s.energy, s.max_energy)
            changed += ["max_energy", "energy"]
        self._commit(changed, "upgrade_booster")
        log.info("[Store] booster %s upgraded to %d for %d BZ", key, level + 1, cost)
        return {"success": True, "key": key, "level": level + 1, "cost": cost}

    # -----------------------------------------------------------------
    # QuickCharge
    # -----------------------------------------------------------------
    def _refresh_quick_charge_cycle(self, now: float) -> bool:
        qc = self.state.quick_charge
        if qc.last_reset is None or now - qc.last_reset >= QUICK_CHARGE_CYCLE_SEC:
            qc.uses_remaining = QUICK_CHARGE_USES
            qc.last_reset = now
            return True
        return False

    def quick_charge_status(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        if self._refresh_quick_charge_cycle(now):
            self._commit(["quick_charge"], "quick_charge_reset")
        qc = self.state.quick_charge
        cooldown_left = max(0.0, (qc.cooldown_until or 0) - now)
        return {
            "uses_remaining": qc.uses_remaining,
            "cooldown_left_sec": cooldown_left,
            "energy_ok": self.state.energy < self.state.max_energy * QUICK_CHARGE_ENERGY_SHARE,
        }

    def use_quick_charge(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        s = self.state
        qc = s.quick_charge.model_copy()
        if qc.last_reset is None or now - qc.last_reset >= QUICK_CHARGE_CYCLE_SEC:
            qc.uses_remaining = QUICK_CHARGE_USES
            qc.last_reset = now

        if qc.uses_remaining <= 0:
            return {"success": False, "error": "NO_USES_LEFT"}
        if qc.cooldown_until is not None and now < qc.cooldown_until:
            return {"success": False, "error": "COOLDOWN", "retry_after": qc.cooldown_until - now}
        if s.energy >= s.max_energy * QUICK_CHARGE_ENERGY_SHARE:
            return {"success": False, "error": "ENERGY_TOO_HIGH"}

        qc.uses_remaining -= 1
        qc.cooldown_until = now + QUICK_CHARGE_COOLDOWN_SEC
        s.quick_charge = qc
        s.energy = float(s.max_energy)
        self._commit(["quick_charge", "energy"], "quick_charge")
        return {"success": True, "uses_remaining": qc.uses_remaining, "energy": s.energy}

    # -----------------------------------------------------------------
    # Пассивный доход
    # -----------------------------------------------------------------
    def idle_preview(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        last = self.state.last_idle_claim if self.state.last_idle_claim is not None else now
        return economy.idle_accrual(
            self.hourly_yield(), now - last, self.tier, surge_available=not self.state.power_surge_used
        )

    def claim_idle(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        accrued = self.idle_preview(now)
        if accrued["total"] <= 0:
            return {"success": False, "error": "NOTHING_TO_CLAIM"}

        s = self.state
        s.bz += accrued["total"]
        s.last_idle_claim = now
        changed = ["bz", "last_idle_claim"]
        if accrued["surge"] > 0:
            s.power_surge_used = True
            changed.append("power_surge_used")
        self._commit(changed, "claim_idle")
        return {"success": True, **accrued}

    def reset_power_surge(self) -> None:
        if self.state.power_surge_used:
            self.state.power_surge_used = False
            self._commit(["power_surge_used"], "power_surge_reset")

    # -----------------------------------------------------------------
    # Постройка
    # -----------------------------------------------------------------
    def start_part_upgrade(self, part_key: str, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        try:
            part = build.get_part(part_key)
        except ValueError:
            return {"success": False, "error": "UNKNOWN_PART"}

        self.complete_due_builds(now)
        state = self.parts[part_key]
        if state.upgrading:
            return {"success": False, "error": "ALREADY_BUILDING"}
        active = self.active_build()
        if active is not None:
            return {"success": False, "error": "BUILD_IN_PROGRESS", "active": active}
        reason = build.upgrade_block_reason(part, self.part_levels(), self.state.referral_count)
        if reason:
            return {"success": False, "error": reason}
        cost = build.part_cost(part, state.level)
        if cost > self.state.bz:
            return {"success": False, "error": "INSUFFICIENT_BZ", "cost": cost}

        duration = build.upgrade_duration(state.level)
        self.state.bz -= cost
        self.state.total_upgrades += 1
        if duration == 0:
            self.parts[part_key] = PartState(level=state.level + 1)
        else:
            self.parts[part_key] = PartState(
                level=state.level,
                upgrading=True,
                upgrade_started_at=now,
                upgrade_ends_at=now + duration,
            )
        self._commit(["bz", "total_upgrades", BUILD_PARTS_KEY], "build_upgrade")
        log.info("[Build] %s upgrade started (level %d, %ds, %d BZ)", part_key, state.level, duration, cost)
        return {
            "success": True,
            "part": part_key,
            "cost": cost,
            "duration_sec": duration,
            "level": self.parts[part_key].level,
            "ends_at": self.parts[part_key].upgrade_ends_at,
        }

    def _finish(self, part_key: str) -> None:
        state = self.parts[part_key]
        self.parts[part_key] = PartState(level=min(state.level + 1, build.MAX_PART_LEVEL))

    def complete_due_builds(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        done = [
            key for key, p in self.parts.items()
            if p.upgrading and p.upgrade_ends_at is not None and p.upgrade_ends_at <= now
        ]
        if not done:
            return []
        for key in done:
            self._finish(key)
        self._commit([BUILD_PARTS_KEY], "build_complete")
        return done

    def speed_up_build(self, part_key: str, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        state = self.parts.get(part_key)
        if state is None:
            return {"success": False, "error": "UNKNOWN_PART"}
        if not state.upgrading or state.upgrade_ends_at is None:
            return {"success": False, "error": "NOT_BUILDING"}
        if state.level < build.SPEEDUP_MIN_LEVEL:
            return {"success": False, "error": "NOT_ELIGIBLE"}
        remaining = state.upgrade_ends_at - now
        if remaining <= 0:
            self.complete_due_builds(now)
            return {"success": False, "error": "ALREADY_COMPLETE"}

        cost = build.speedup_cost(remaining)
        if cost > self.state.bb:
            return {"success": False, "error": "INSUFFICIENT_BB", "cost": cost}
        self.state.bb = q6(self.state.bb - cost)
        self._finish(part_key)
        self._commit(["bb", BUILD_PARTS_KEY], "build_speedup")
        return {"success": True, "part": part_key, "cost": cost, "level": self.parts[part_key].level}

    # -----------------------------------------------------------------
    # Конвертация
    # -----------------------------------------------------------------
    def _record_conversion(self, result: Dict[str, Any], now: float) -> ConversionRecord:
        record = ConversionRecord(
            id=gen_uuid(),
            timestamp=now,
            type=result["type"],
            input=dec(result["input"]),
            output=dec(result["output"]),
            bonus=result.get("bonus"),
            burned=result.get("burned"),
            tier=result.get("tier"),
        )
        self.history = [record, *self.history][: self.history_limit]
        return record

    def convert_bz_to_bb(self, amount: Any, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        result = economy.convert_bz_to_bb(amount, self.state.bz, self.tier)
        if not result["success"]:
            return result
        debit = int(result["debit"])
        if dec(debit) != result["debit"]:
            return {"success": False, "error": "INVALID_AMOUNT"}

        s = self.state
        s.bz -= debit
        s.bb = q6(s.bb + result["output"])
        s.total_conversions += debit
        record = self._record_conversion(result, now)
        self._commit(["bz", "bb", "total_conversions", HISTORY_KEY], "convert")
        return {**result, "record": record}

    def convert_bb_to_bz(self, amount: Any, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        result = economy.convert_bb_to_bz(amount, self.state.bb, self.tier)
        if not result["success"]:
            return result

        s = self.state
        s.bb = q6(s.bb - result["debit"])
        s.bz += int(result["output"])
        record = self._record_conversion(result, now)
        self._commit(["bz", "bb", HISTORY_KEY], "convert")
        return {**result, "record": record}

    # -----------------------------------------------------------------
    # Снимок для удалённого хранилища
    # -----------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        """Полный производный снимок игрока (колонки строки profiles)."""
        s = self.state
        b = s.boosters
        qc = s.quick_charge
        return {
            "bz": s.bz,
            "bb": s.bb,
            "xp": s.xp,
            "tier": s.tier.value,
            "energy": s.energy,
            "max_energy": s.max_energy,
            "total_taps": s.total_taps,
            "today_taps": s.today_taps,
            "total_tap_income": s.total_tap_income,
            "total_upgrades": s.total_upgrades,
            "total_conversions": s.total_conversions,
            "booster_income_per_tap": b.income_per_tap,
            "booster_energy_per_tap": b.energy_per_tap,
            "booster_energy_capacity": b.energy_capacity,
            "booster_recovery_rate": b.recovery_rate,
            "quick_charge_uses_remaining": qc.uses_remaining,
            "quick_charge_cooldown_until": qc.cooldown_until,
            "quick_charge_last_reset": qc.last_reset,
            "last_idle_claim": s.last_idle_claim,
            "bz_per_hour": q6(self.hourly_yield()),
            "referral_count": s.referral_count,
        }

    def replace(
        self,
        state: PlayerState,
        parts: Optional[Dict[str, PartState]] = None,
        history: Optional[List[ConversionRecord]] = None,
        action: str = "reconcile",
    ) -> None:
        """Подменяет состояние целиком (результат сверки) и сохраняет все ключи."""
        state.max_energy = state.derived_max_energy()
        state.energy = economy.clamp_energy(state.energy, state.max_energy)
        self.state = state
        changed: List[str] = [*_SCALAR_FIELDS, "max_energy", "boosters", "quick_charge"]
        if parts is not None:
            self.parts = default_parts()
            self.parts.update({k: v for k, v in parts.items() if k in self.parts})
            changed.append(BUILD_PARTS_KEY)
        if history is not None:
            self.history = list(history)[: self.history_limit]
            changed.append(HISTORY_KEY)
        self._commit(changed, action)


def load_store(port: PersistencePort, **kwargs) -> Tuple[GameStore, bool]:
    """Загружает стор; второй элемент — был ли это первый запуск (пустое хранилище)."""
    prefix = kwargs.get("key_prefix")
    prefix = settings.LOCAL_KEY_PREFIX if prefix is None else prefix
    first_launch = port.get(f"{prefix}bz") is None
    store = GameStore.load(port, **kwargs)
    if first_launch:
        store.persist_all()
    return store, first_launch
