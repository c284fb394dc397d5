# 📂 backend/bunergy/database.py — подключение к БД профилей, пул, сессии, создание таблиц
# -----------------------------------------------------------------------------
# Содержимое модуля:
#   • Создание асинхронного движка SQLAlchemy (PostgreSQL/asyncpg в проде,
#     SQLite/aiosqlite в тестах и локально).
#   • Настройка пула соединений (pool_size, max_overflow, pre_ping) — только для Postgres.
#   • Фабрика сессий и зависимости для FastAPI:
#       - get_session()         — Depends для table API.
#       - session_scope()       — контекстный менеджер транзакции.
#   • Startup/Shutdown hooks: on_startup_init_db(), on_shutdown_dispose().
#
# Взаимосвязи:
#   • config.py — источник DATABASE_URL, DB_SCHEMA, размеров пула, DEBUG.
#   • models.py — декларативные модели (Base.metadata для create_all).
#   • remote_store.py — SqlTableClient работает через session_scope().
# -----------------------------------------------------------------------------

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings, normalize_database_url

# -----------------------------------------------------------------------------
# Глобальные синглтоны (создаются один раз на процесс)
# -----------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[async_sessionmaker] = None


def _build_database_url() -> str:
    """
    Возвращает async URL для SQLAlchemy.
    DATABASE_URL пустой → DATABASE_URL_LOCAL; оба пустые → RuntimeError.
    """
    s = get_settings()
    url = s.DATABASE_URL or s.DATABASE_URL_LOCAL
    if not url:
        raise RuntimeError(
            "DATABASE_URL is empty and DATABASE_URL_LOCAL is not provided in settings."
        )
    return normalize_database_url(url)


def get_engine() -> AsyncEngine:
    """
    Движок создаётся при первом обращении, вместе с ним фабрика сессий.
    Для SQLite параметры пула не передаются (у aiosqlite свой пул).
    """
    global _engine, _SessionFactory

    if _engine is not None:
        return _engine

    s = get_settings()
    db_url = _build_database_url()

    kwargs = {"echo": s.DEBUG, "pool_pre_ping": True}
    if not db_url.startswith("sqlite"):
        kwargs.update(pool_size=s.DB_POOL_SIZE, max_overflow=s.DB_MAX_OVERFLOW)

    _engine = create_async_engine(db_url, **kwargs)
    _SessionFactory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return _engine


def get_session_factory() -> async_sessionmaker:
    if _SessionFactory is None:
        get_engine()
    assert _SessionFactory is not None, "Session factory is not initialized"
    return _SessionFactory


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    «Сессия как транзакция»:
        async with session_scope() as db:
            ...
    Успех → commit, исключение → rollback и проброс, в конце close.
    factory позволяет подставить собственную фабрику (тесты, отдельная БД).
    """
    session: AsyncSession = (factory or get_session_factory())()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI-зависимость: новая сессия на каждый запрос (commit/rollback/close).
    """
    async with session_scope() as session:
        yield session


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """Создаёт таблицы (idempotent). Для Postgres сначала схему, если задана."""
    from .models import Base

    s = get_settings()
    engine = engine or get_engine()
    async with engine.begin() as conn:
        if s.DB_SCHEMA and engine.dialect.name == "postgresql":
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{s.DB_SCHEMA}"'))
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """
    SELECT 1 через новое соединение: True, если база отвечает.
    """
    engine = engine or get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


async def on_startup_init_db() -> None:
    """
    Вызывается из main.py при старте:
      1) ленивая инициализация движка;
      2) создание таблиц;
      3) health-check — при неуспехе RuntimeError.
    """
    engine = get_engine()
    await init_models(engine)
    if not await check_db_connection(engine):
        raise RuntimeError("Database connection failed during startup.")


async def on_shutdown_dispose() -> None:
    """Корректное закрытие движка при остановке приложения."""
    global _engine, _SessionFactory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _SessionFactory = None
