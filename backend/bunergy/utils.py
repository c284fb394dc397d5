# 📂 backend/bunergy/utils.py — общие утилиты (Decimal, округления, время, ключи периодов)
# -----------------------------------------------------------------------------
# Здесь:
# - безопасная работа с Decimal (BB хранится с 6 знаками),
# - округление вниз до 6 знаков (q6) и до целого (floor_int),
# - генерация ID (UUID),
# - время: epoch-секунды ↔ datetime (UTC), ключи дня/ISO-недели,
# - прогресс по порогам (для тиров XP).

from __future__ import annotations

import math
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN, getcontext
from typing import Any, Optional, Sequence, Tuple

getcontext().prec = 28  # высокая точность внутренних вычислений

# =========================
# 🔢 Работа с Decimal
# =========================
DEC6 = Decimal("0.000001")


def dec(x: Any) -> Decimal:
    """Безопасно приводит к Decimal"""
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def q6(x: Any) -> Decimal:
    """Округляет к 6 знакам после запятой вниз (ROUND_DOWN)."""
    return dec(x).quantize(DEC6, rounding=ROUND_DOWN)


def floor_int(x: Any) -> int:
    """Целая часть вниз (для BZ: баланс целочисленный)."""
    return int(math.floor(dec(x)))


# =========================
# 🆔 UUID
# =========================
def gen_uuid() -> str:
    return str(uuid.uuid4())


# =========================
# 🕒 Время
# =========================
def now_ts() -> float:
    """Текущее время в epoch-секундах."""
    return time.time()


def ts_to_dt(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def to_ts(value: Any) -> Optional[float]:
    """
    Приводит значение к epoch-секундам:
      datetime (naive трактуется как UTC), ISO-строка, число, None.
    Некорректная строка → ValueError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TypeError("bool is not a timestamp")
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    raise TypeError(f"unsupported timestamp value: {value!r}")


def day_of(ts: float) -> date:
    """Календарный день (UTC) для отметки времени."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


def day_key(ts: float) -> str:
    """Ключ дня YYYY-MM-DD."""
    return day_of(ts).isoformat()


def week_key(ts: float) -> str:
    """Ключ ISO-недели YYYY-Www."""
    year, week, _ = day_of(ts).isocalendar()
    return f"{year}-W{week:02d}"


def is_yesterday(earlier: float, now: float) -> bool:
    return day_of(earlier) == day_of(now) - timedelta(days=1)


# =========================
# 📈 Прогресс по порогам
# =========================
def threshold_progress(thresholds: Sequence[int], value: int) -> Tuple[int, Optional[int], Decimal]:
    """
    thresholds — возрастающие нижние границы уровней (первая обычно 0).
    Возвращает: (индекс уровня, следующий порог | None, прогресс 0..1).
    """
    idx = 0
    for i, thr in enumerate(thresholds):
        if value >= thr:
            idx = i
        else:
            break
    if idx + 1 >= len(thresholds):
        return idx, None, Decimal("1.000")

    prev_thr, next_thr = thresholds[idx], thresholds[idx + 1]
    span = next_thr - prev_thr
    progress = dec(max(value, prev_thr) - prev_thr) / dec(span) if span > 0 else Decimal("0")
    progress = min(max(progress, Decimal("0")), Decimal("1"))
    return idx, next_thr, progress.quantize(Decimal("0.001"), rounding=ROUND_DOWN)
