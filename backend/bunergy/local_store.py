# 📂 backend/bunergy/local_store.py — локальное key-value хранилище снимка игрока
# -----------------------------------------------------------------------------
# Назначение:
#   • Долговременный снимок всех полей игрока на одном устройстве/профиле.
#   • Каждое поле — отдельный ключ; запись выполняется сразу при изменении
#     (синхронно, до возврата управления вызывающему).
#   • Чтение при старте: каждое поле по отдельности; отсутствующее или
#     повреждённое значение заменяется значением по умолчанию, исключение наружу
#     не пробрасывается.
#   • Транзакций между ключами нет: сбой между записью bz и boosters может
#     оставить их несогласованными — это покрывает reconcile.py при старте.
#
# Реализации порта:
#   • JsonFileStore — один JSON-документ на диске (атомарная замена файла).
#   • MemoryStore   — словарь в памяти (тесты, эфемерные сессии).
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
import logging
import os
import tempfile
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, TypeVar

log = logging.getLogger("bunergy")

T = TypeVar("T")


class PersistencePort(Protocol):
    """Контракт хранилища: get(key) / set(key, value)."""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> Iterable[str]: ...


# =============================================================================
# Реализации
# =============================================================================
class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterable[str]:
        return list(self._data.keys())


class JsonFileStore:
    """
    JSON-файл как key-value хранилище.
    Значения хранятся «как есть» (JSON-совместимые); Decimal пишется строкой.
    Нечитаемый/повреждённый файл загружается как пустой (с предупреждением в лог).
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("[Store] local snapshot %s unreadable, starting empty: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            log.warning("[Store] local snapshot %s is not an object, starting empty", self.path)
            return {}
        return raw

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=False, default=_json_default)
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def keys(self) -> Iterable[str]:
        return list(self._data.keys())


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# =============================================================================
# Безопасное чтение полей
# =============================================================================
_PARSE_ERRORS = (ValueError, TypeError, InvalidOperation, KeyError, AttributeError)


def read_field(port: PersistencePort, key: str, default: T, parse: Callable[[Any], T]) -> T:
    """
    Читает ключ и приводит его через parse. None, ошибка чтения или ошибка
    приведения → default. Строковые значения сначала пробуем разобрать как JSON
    (так хранит значения localStorage-подобный бэкенд).
    """
    try:
        raw = port.get(key)
    except Exception as e:
        log.warning("[Store] read %s failed, using default: %s", key, e)
        return default
    if raw is None:
        return default
    try:
        return parse(raw)
    except _PARSE_ERRORS:
        if isinstance(raw, str):
            try:
                return parse(json.loads(raw))
            except _PARSE_ERRORS:
                pass
        log.warning("[Store] malformed value for %s, using default", key)
        return default


# Парсеры значений: бросают ValueError/TypeError на неподходящем типе
def as_int(v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, (int, float, Decimal)):
        raise TypeError("not a number")
    if v != v:  # NaN
        raise ValueError("NaN")
    return int(v)


def as_float(v: Any) -> float:
    if isinstance(v, bool) or not isinstance(v, (int, float, Decimal)):
        raise TypeError("not a number")
    f = float(v)
    if f != f or f in (float("inf"), float("-inf")):
        raise ValueError("not finite")
    return f


def as_decimal(v: Any) -> Decimal:
    if isinstance(v, bool) or not isinstance(v, (int, float, Decimal, str)):
        raise TypeError("not a number")
    d = Decimal(str(v))
    if not d.is_finite():
        raise ValueError("not finite")
    return d


def as_bool(v: Any) -> bool:
    if not isinstance(v, bool):
        raise TypeError("not a bool")
    return v


def as_str(v: Any) -> str:
    if not isinstance(v, str):
        raise TypeError("not a string")
    return v


def as_dict(v: Any) -> Dict[str, Any]:
    if not isinstance(v, dict):
        raise TypeError("not an object")
    return v


def as_list(v: Any) -> list:
    if not isinstance(v, list):
        raise TypeError("not a list")
    return v
