# 📂 backend/bunergy/main.py — запуск FastAPI: table API хранилища профилей Bunergy
# -----------------------------------------------------------------------------
# Что делает:
#   1) Создаёт и конфигурирует FastAPI-приложение.
#   2) Подключает CORS (для фронтенда Mini App).
#   3) Регистрирует table API (table_routes) с префиксом settings.API_V1_STR.
#   4) На старте инициализирует БД (схема, create_all, health-check),
#      на остановке закрывает движок.
#   5) Информационные эндпоинты: GET / и GET /healthz.
#
# Где используется:
#   - Запускается uvicorn'ом (локально) или как приложение на VPS/PaaS.
#   - HttpTableClient игровых сессий ходит сюда (REMOTE_MODE=http).
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import check_db_connection, on_shutdown_dispose, on_startup_init_db
from .table_routes import router as table_router

settings = get_settings()
log = logging.getLogger("bunergy")


def create_app() -> FastAPI:
    """
    Создаёт FastAPI приложение: CORS, table API, корневой и healthcheck эндпоинты,
    хуки старта/остановки БД.
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="1.0.0",
        description="Bunergy profile store API (FastAPI + PostgreSQL)",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.effective_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(table_router, prefix=settings.API_V1_STR, tags=["tables"])

    @app.get("/")
    async def root():
        return {
            "name": settings.PROJECT_NAME,
            "env": settings.ENV,
            "api_prefix": settings.API_V1_STR,
        }

    @app.get("/healthz")
    async def healthz():
        """Healthcheck для оркестраторов/балансировщиков (с пингом БД)."""
        db_ok = await check_db_connection()
        return {"status": "ok" if db_ok else "degraded", "db": db_ok}

    @app.on_event("startup")
    async def on_startup():
        log.info("[Bunergy] starting up (env=%s)", settings.ENV)
        await on_startup_init_db()
        log.info("[Bunergy] database initialized")

    @app.on_event("shutdown")
    async def on_shutdown():
        await on_shutdown_dispose()
        log.info("[Bunergy] shutdown complete")

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
    uvicorn.run("backend.bunergy.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
