# 📂 backend/bunergy/remote_store.py — удалённое хранилище профилей (generic table API)
# -----------------------------------------------------------------------------
# Удалённое хранилище — «внешняя key-row база»: вся запись идёт через общий
# табличный контракт, конфликты разрешает приложение (reconcile.py).
#
# Слои:
#   1) Табличные операции над AsyncSession (select_rows / upsert_rows /
#      update_rows) — используются и SqlTableClient, и FastAPI table_routes.
#   2) Клиенты контракта TableClient:
#        • SqlTableClient  — напрямую в БД через session_scope();
#        • HttpTableClient — aiohttp к /api/rest/{table} (table_routes.py).
#      Любая ошибка транспорта → RemoteError.
#   3) RemoteProfileStore — доменное отображение: строка profiles ⇄ снимок
#      GameStore, детали постройки, история конвертаций, журналы наград.
#
# Значения на границе:
#   • время в домене — epoch-секунды, в БД — TIMESTAMPTZ, в HTTP — ISO-строки;
#   • BB/Decimal в HTTP — строки.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Type

import aiohttp
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import sqltypes

from .config import get_settings
from .database import session_scope
from .models import (
    Base,
    ConversionHistory,
    Profile,
    Referral,
    ReferralEarning,
    UserBuildPart,
    UserDailyClaim,
    UserNFT,
    UserRewardState,
    UserTaskProgress,
)
from .schemas import ConversionRecord, DailyClaim, OwnedNFT, PartState
from .utils import dec, gen_uuid, to_ts, ts_to_dt

log = logging.getLogger("bunergy")
settings = get_settings()


class RemoteError(RuntimeError):
    """Ошибка удалённого хранилища (транспорт, неизвестная таблица, неверные данные)."""


# -----------------------------------------------------------------------------
# Реестр таблиц: имя → (модель, ключ конфликта для upsert)
# -----------------------------------------------------------------------------
TABLES: Dict[str, Tuple[Type[Base], Tuple[str, ...]]] = {
    "profiles": (Profile, ("telegram_id",)),
    "user_build_parts": (UserBuildPart, ("telegram_id", "part_id")),
    "conversion_history": (ConversionHistory, ("id",)),
    "user_daily_claims": (UserDailyClaim, ("telegram_id", "week", "day")),
    "user_nfts": (UserNFT, ("telegram_id", "nft_id")),
    "user_reward_state": (UserRewardState, ("telegram_id",)),
    "user_task_progress": (UserTaskProgress, ("telegram_id", "task_id")),
    "referrals": (Referral, ("id",)),
    "referral_earnings": (ReferralEarning, ("id",)),
}


def get_table(name: str) -> Tuple[Type[Base], Tuple[str, ...]]:
    try:
        return TABLES[name]
    except KeyError:
        raise RemoteError(f"unknown table: {name}") from None


# =============================================================================
# Приведение значений
# =============================================================================
def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes", "t"):
            return True
        if v in ("false", "0", "no", "f"):
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return bool(value)


def coerce_value(column, value: Any) -> Any:
    """Приводит входное значение (JSON/строка запроса/домен) к типу колонки."""
    if value is None:
        return None
    t = column.type
    if isinstance(t, sqltypes.DateTime):
        return value if isinstance(value, datetime) else ts_to_dt(to_ts(value))
    if isinstance(t, sqltypes.Boolean):
        return _parse_bool(value)
    if isinstance(t, sqltypes.Float):
        return float(value)
    if isinstance(t, sqltypes.Numeric):
        return dec(value)
    if isinstance(t, sqltypes.Integer):
        return int(dec(value))
    if isinstance(t, sqltypes.String):
        return str(value)
    return value


def coerce_row(model: Type[Base], row: Mapping[str, Any]) -> Dict[str, Any]:
    columns = model.__table__.columns
    out: Dict[str, Any] = {}
    for name, value in row.items():
        if name not in columns:
            raise RemoteError(f"unknown column {model.__tablename__}.{name}")
        try:
            out[name] = coerce_value(columns[name], value)
        except (ValueError, TypeError, ArithmeticError) as e:
            raise RemoteError(f"bad value for {model.__tablename__}.{name}: {e}") from e
    return out


def row_to_dict(obj: Base) -> Dict[str, Any]:
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}


def to_domain(model: Type[Base], row: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Нормализует строку (из БД или из JSON) к доменным типам:
    время → epoch-секунды, Numeric → Decimal, целые → int.
    """
    columns = model.__table__.columns
    out: Dict[str, Any] = {}
    for name, value in row.items():
        col = columns.get(name)
        if col is None or value is None:
            out[name] = value
            continue
        t = col.type
        if isinstance(t, sqltypes.DateTime):
            out[name] = to_ts(value)
        elif isinstance(t, sqltypes.Boolean):
            out[name] = _parse_bool(value)
        elif isinstance(t, sqltypes.Float):
            out[name] = float(value)
        elif isinstance(t, sqltypes.Numeric):
            out[name] = dec(value)
        elif isinstance(t, sqltypes.Integer):
            out[name] = int(dec(value))
        else:
            out[name] = value
    return out


# =============================================================================
# Табличные операции над сессией
# =============================================================================
def _where(model: Type[Base], filters: Optional[Mapping[str, Any]]):
    clauses = []
    for name, value in coerce_row(model, filters or {}).items():
        clauses.append(getattr(model, name).is_(None) if value is None else getattr(model, name) == value)
    return clauses


async def select_rows(
    db: AsyncSession,
    table: str,
    filters: Optional[Mapping[str, Any]] = None,
    order_by: Optional[str] = None,
    desc: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    model, _ = get_table(table)
    stmt = select(model).where(*_where(model, filters))
    if order_by:
        if order_by not in model.__table__.columns:
            raise RemoteError(f"unknown column {table}.{order_by}")
        col = getattr(model, order_by)
        stmt = stmt.order_by(col.desc() if desc else col.asc())
    if limit:
        stmt = stmt.limit(int(limit))
    res = await db.execute(stmt)
    return [row_to_dict(obj) for obj in res.scalars().all()]


async def upsert_rows(db: AsyncSession, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Upsert по ключу конфликта таблицы (SELECT → UPDATE/INSERT). Разрешение
    конфликтов значений — на стороне клиента; здесь побеждает последняя запись.
    """
    model, conflict = get_table(table)
    columns = model.__table__.columns
    saved: List[Dict[str, Any]] = []
    for raw in rows:
        data = coerce_row(model, raw)
        # NULL в NOT NULL колонке → значение по умолчанию модели
        data = {k: v for k, v in data.items() if v is not None or columns[k].nullable}
        missing = [k for k in conflict if data.get(k) is None]
        if missing and conflict == ("id",):
            data["id"] = gen_uuid()
        elif missing:
            raise RemoteError(f"{table}: conflict key {missing} is required")

        obj = None
        if not missing:
            res = await db.execute(select(model).where(*[getattr(model, k) == data[k] for k in conflict]))
            obj = res.scalar_one_or_none()
        if obj is None:
            obj = model(**data)
            db.add(obj)
        else:
            for name, value in data.items():
                setattr(obj, name, value)
        await db.flush()
        saved.append(row_to_dict(obj))
    return saved


async def update_rows(
    db: AsyncSession,
    table: str,
    values: Mapping[str, Any],
    filters: Mapping[str, Any],
) -> int:
    model, _ = get_table(table)
    if not filters:
        raise RemoteError(f"{table}: update without filters is not allowed")
    stmt = update(model).where(*_where(model, filters)).values(**coerce_row(model, values))
    res = await db.execute(stmt)
    return int(res.rowcount or 0)


# =============================================================================
# Клиенты table API
# =============================================================================
class TableClient(Protocol):
    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]: ...

    async def update(self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]) -> int: ...

    async def close(self) -> None: ...


class SqlTableClient:
    """Table API напрямую в БД (SQLAlchemy async)."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._factory = session_factory

    async def select(self, table, filters=None, order_by=None, desc=False, limit=None):
        try:
            async with session_scope(self._factory) as db:
                return await select_rows(db, table, filters, order_by, desc, limit)
        except RemoteError:
            raise
        except Exception as e:
            raise RemoteError(f"select {table} failed: {e}") from e

    async def upsert(self, table, rows):
        if not rows:
            return []
        try:
            async with session_scope(self._factory) as db:
                return await upsert_rows(db, table, rows)
        except RemoteError:
            raise
        except Exception as e:
            raise RemoteError(f"upsert {table} failed: {e}") from e

    async def update(self, table, values, filters):
        try:
            async with session_scope(self._factory) as db:
                return await update_rows(db, table, values, filters)
        except RemoteError:
            raise
        except Exception as e:
            raise RemoteError(f"update {table} failed: {e}") from e

    async def close(self) -> None:
        # движок принадлежит database.py (on_shutdown)
        return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def build_query_params(
    filters: Optional[Mapping[str, Any]] = None,
    order_by: Optional[str] = None,
    desc: bool = False,
    limit: Optional[int] = None,
) -> Dict[str, str]:
    """Параметры запроса GET /rest/{table}: фильтры как column=value, order=col.desc, limit=N."""
    params: Dict[str, str] = {}
    for k, v in (filters or {}).items():
        if isinstance(v, bool):
            params[k] = "true" if v else "false"
        else:
            params[k] = str(_jsonable(v))
    if order_by:
        params["order"] = f"{order_by}.{'desc' if desc else 'asc'}"
    if limit:
        params["limit"] = str(int(limit))
    return params


class HttpTableClient:
    """
    Table API по HTTP (aiohttp) — к table_routes этого же проекта или любому
    совместимому сервису. Неуспешный статус → RemoteError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_BASE).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.REMOTE_TIMEOUT_SEC)
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, table: str, *, params=None, payload=None) -> Any:
        url = f"{self.base_url}/rest/{table}"
        session = await self._get_session()
        try:
            async with session.request(method, url, params=params, json=payload) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    raise RemoteError(f"{method} {table} → HTTP {resp.status}: {detail[:200]}")
                return await resp.json()
        except RemoteError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RemoteError(f"{method} {table} failed: {e}") from e

    async def select(self, table, filters=None, order_by=None, desc=False, limit=None):
        data = await self._request("GET", table, params=build_query_params(filters, order_by, desc, limit))
        return list(data or [])

    async def upsert(self, table, rows):
        if not rows:
            return []
        data = await self._request("POST", table, payload={"rows": _jsonable(list(rows))})
        return list(data or [])

    async def update(self, table, values, filters):
        data = await self._request(
            "PATCH", table, payload={"values": _jsonable(dict(values)), "filters": _jsonable(dict(filters))}
        )
        return int((data or {}).get("updated", 0))


def make_table_client() -> Optional[TableClient]:
    """Клиент по настройке REMOTE_MODE; "off" → None (только локальное состояние)."""
    if settings.REMOTE_MODE == "http":
        return HttpTableClient()
    if settings.REMOTE_MODE == "sql":
        return SqlTableClient()
    return None


# =============================================================================
# Доменное отображение профиля игрока
# =============================================================================
# Колонки profiles, которые пишет клиент (снимок GameStore.snapshot())
PROFILE_STATE_COLUMNS: Tuple[str, ...] = (
    "bz", "bb", "xp", "tier", "energy", "max_energy",
    "total_taps", "today_taps", "total_tap_income", "total_upgrades", "total_conversions",
    "booster_income_per_tap", "booster_energy_per_tap", "booster_energy_capacity", "booster_recovery_rate",
    "quick_charge_uses_remaining", "quick_charge_cooldown_until", "quick_charge_last_reset",
    "last_idle_claim", "bz_per_hour", "referral_count",
)


class RemoteProfileStore:
    """Профиль и журналы одного игрока поверх TableClient."""

    def __init__(self, client: TableClient, telegram_id: int):
        self.client = client
        self.telegram_id = int(telegram_id)

    @property
    def _me(self) -> Dict[str, Any]:
        return {"telegram_id": self.telegram_id}

    # ---------------------------- профиль -----------------------------
    async def fetch_profile(self) -> Optional[Dict[str, Any]]:
        rows = await self.client.select("profiles", self._me, limit=1)
        if not rows:
            return None
        return to_domain(Profile, rows[0])

    async def push_profile(self, values: Mapping[str, Any], identity: Optional[Mapping[str, Any]] = None) -> None:
        """
        Полный или частичный пуш: в строку попадают только известные колонки
        состояния (+ identity: username, referral_code и т. п.).
        """
        row = {k: v for k, v in values.items() if k in PROFILE_STATE_COLUMNS}
        if identity:
            row.update(identity)
        row.update(self._me)
        await self.client.upsert("profiles", [row])

    # ---------------------------- постройка ---------------------------
    async def load_build_parts(self) -> Dict[str, PartState]:
        rows = await self.client.select("user_build_parts", self._me)
        parts: Dict[str, PartState] = {}
        for raw in rows:
            r = to_domain(UserBuildPart, raw)
            parts[r["part_id"]] = PartState(
                level=r.get("level") or 0,
                upgrading=bool(r.get("is_upgrading")),
                upgrade_started_at=r.get("upgrade_started_at"),
                upgrade_ends_at=r.get("upgrade_ends_at"),
            )
        return parts

    async def push_build_parts(self, parts: Mapping[str, PartState]) -> None:
        rows = [
            {
                "telegram_id": self.telegram_id,
                "part_id": key,
                "level": p.level,
                "is_upgrading": p.upgrading,
                "upgrade_started_at": p.upgrade_started_at,
                "upgrade_ends_at": p.upgrade_ends_at,
            }
            for key, p in parts.items()
        ]
        await self.client.upsert("user_build_parts", rows)

    # ---------------------------- конвертации -------------------------
    async def load_conversions(self, limit: Optional[int] = None) -> List[ConversionRecord]:
        rows = await self.client.select(
            "conversion_history", self._me, order_by="created_at", desc=True,
            limit=limit or settings.CONVERSION_HISTORY_LIMIT,
        )
        out: List[ConversionRecord] = []
        for raw in rows:
            r = to_domain(ConversionHistory, raw)
            out.append(ConversionRecord(
                id=r["id"],
                timestamp=r["created_at"],
                type=r["conversion_type"],
                input=r["input_amount"],
                output=r["output_amount"],
                bonus=r.get("bonus"),
                burned=r.get("burned"),
                tier=r.get("tier"),
            ))
        return out

    async def push_conversions(self, records: Iterable[ConversionRecord]) -> None:
        rows = [
            {
                "id": rec.id,
                "telegram_id": self.telegram_id,
                "conversion_type": rec.type,
                "input_amount": rec.input,
                "output_amount": rec.output,
                "bonus": rec.bonus,
                "burned": rec.burned,
                "tier": rec.tier,
                "created_at": rec.timestamp,
            }
            for rec in records
        ]
        await self.client.upsert("conversion_history", rows)

    # ---------------------------- ежедневные награды ------------------
    async def load_daily_claims(self) -> List[DailyClaim]:
        rows = await self.client.select("user_daily_claims", self._me, order_by="claimed_at", desc=True)
        out = []
        for raw in rows:
            r = to_domain(UserDailyClaim, raw)
            out.append(DailyClaim(
                week=r["week"], day=r["day"], reward_type=r["reward_type"],
                reward_amount=r["reward_amount"], claimed_at=r["claimed_at"],
            ))
        return out

    async def push_daily_claims(self, claims: Iterable[DailyClaim]) -> None:
        rows = [{"telegram_id": self.telegram_id, **c.model_dump()} for c in claims]
        await self.client.upsert("user_daily_claims", rows)

    # ---------------------------- NFT ---------------------------------
    async def load_nfts(self) -> List[OwnedNFT]:
        rows = await self.client.select("user_nfts", self._me, order_by="purchased_at", desc=True)
        out = []
        for raw in rows:
            r = to_domain(UserNFT, raw)
            out.append(OwnedNFT(nft_id=r["nft_id"], purchased_at=r["purchased_at"], price_bb=r.get("price_bb") or 0))
        return out

    async def push_nfts(self, nfts: Iterable[OwnedNFT]) -> None:
        rows = [{"telegram_id": self.telegram_id, **n.model_dump()} for n in nfts]
        await self.client.upsert("user_nfts", rows)

    # ---------------------------- состояние наград --------------------
    async def load_reward_state(self) -> Optional[Dict[str, Any]]:
        rows = await self.client.select("user_reward_state", self._me, limit=1)
        if not rows:
            return None
        r = to_domain(UserRewardState, rows[0])
        return {
            "streak": r.get("streak") or 0,
            "week": r.get("week") or 1,
            "last_daily_claim": r.get("last_daily_claim"),
            "weekly": r.get("weekly") or {},
            "milestones_claimed": list(r.get("milestones_claimed") or []),
            "updated_at": r.get("updated_at"),
        }

    async def push_reward_state(self, state: Mapping[str, Any]) -> None:
        row = {
            "telegram_id": self.telegram_id,
            "streak": state.get("streak", 0),
            "week": state.get("week", 1),
            "last_daily_claim": state.get("last_daily_claim"),
            "weekly": state.get("weekly") or {},
            "milestones_claimed": list(state.get("milestones_claimed") or []),
            "updated_at": state.get("updated_at"),
        }
        await self.client.upsert("user_reward_state", [row])

    # ---------------------------- задания -----------------------------
    async def load_task_progress(self) -> Dict[str, Dict[str, Any]]:
        rows = await self.client.select("user_task_progress", self._me)
        out: Dict[str, Dict[str, Any]] = {}
        for raw in rows:
            r = to_domain(UserTaskProgress, raw)
            out[r["task_id"]] = {
                "reset_key": r["reset_key"],
                "baseline": r.get("baseline") or 0,
                "claimed": bool(r.get("claimed")),
                "updated_at": r.get("updated_at"),
            }
        return out

    async def push_task_progress(self, tasks: Mapping[str, Mapping[str, Any]]) -> None:
        rows = [
            {
                "telegram_id": self.telegram_id,
                "task_id": task_id,
                "reset_key": entry["reset_key"],
                "baseline": entry.get("baseline", 0),
                "claimed": bool(entry.get("claimed")),
                "updated_at": entry.get("updated_at"),
            }
            for task_id, entry in tasks.items()
        ]
        await self.client.upsert("user_task_progress", rows)
