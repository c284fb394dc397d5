# 📂 backend/bunergy/table_routes.py — generic table API (GET / POST / PATCH /rest/{table})
# -----------------------------------------------------------------------------
# Назначение:
#   • Серверная сторона контракта, которым пользуется HttpTableClient:
#       GET   /rest/{table}?col=value&order=col.desc&limit=N  → список строк
#       POST  /rest/{table}   {"rows": [...]}                  → upsert, сохранённые строки
#       PATCH /rest/{table}   {"values": {...}, "filters": {...}} → {"updated": n}
#   • Разрешение конфликтов не делается: last-write-wins по строке, сверка — на
#     стороне клиента (reconcile.py).
#
# Защита:
#   • Если REMOTE_API_KEY задан — заголовок apikey обязателен и должен совпадать.
#     Иначе (локально/тесты) запросы принимаются без проверки.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import get_session
from .remote_store import RemoteError, select_rows, update_rows, upsert_rows
from .schemas import UpdatePayload, UpsertPayload

log = logging.getLogger("bunergy")
settings = get_settings()

router = APIRouter()

RESERVED_PARAMS = ("order", "limit")

# BB (NUMERIC) отдаём строкой, чтобы не терять знаки на float
JSON_ENCODERS = {Decimal: str}


def _check_api_key(apikey: Optional[str]) -> None:
    if settings.REMOTE_API_KEY and apikey != settings.REMOTE_API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def _parse_order(order: Optional[str]) -> tuple[Optional[str], bool]:
    if not order:
        return None, False
    column, _, direction = order.partition(".")
    if direction not in ("", "asc", "desc"):
        raise HTTPException(status_code=400, detail=f"Bad order direction: {direction}")
    return column, direction == "desc"


@router.get("/rest/{table}")
async def select_table(
    table: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    apikey: Optional[str] = Header(None),
) -> List[Dict[str, Any]]:
    _check_api_key(apikey)
    params = request.query_params
    filters = {k: v for k, v in params.items() if k not in RESERVED_PARAMS}
    order_by, desc = _parse_order(params.get("order"))
    limit = params.get("limit")
    try:
        rows = await select_rows(db, table, filters, order_by, desc, int(limit) if limit else None)
    except (RemoteError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return jsonable_encoder(rows, custom_encoder=JSON_ENCODERS)


@router.post("/rest/{table}")
async def upsert_table(
    table: str,
    payload: UpsertPayload,
    db: AsyncSession = Depends(get_session),
    apikey: Optional[str] = Header(None),
) -> List[Dict[str, Any]]:
    _check_api_key(apikey)
    try:
        rows = await upsert_rows(db, table, payload.rows)
    except RemoteError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        log.warning("[Remote] %s write failed: %s", table, e)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Write rejected by database")
    log.debug("[Remote] upserted %d rows into %s", len(rows), table)
    return jsonable_encoder(rows, custom_encoder=JSON_ENCODERS)


@router.patch("/rest/{table}")
async def update_table(
    table: str,
    payload: UpdatePayload,
    db: AsyncSession = Depends(get_session),
    apikey: Optional[str] = Header(None),
) -> Dict[str, int]:
    _check_api_key(apikey)
    try:
        updated = await update_rows(db, table, payload.values, payload.filters)
    except RemoteError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        log.warning("[Remote] %s write failed: %s", table, e)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Write rejected by database")
    return {"updated": updated}
