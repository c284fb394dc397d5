# 📂 backend/bunergy/sync.py — планировщик синхронизации локального состояния с сервером
# -----------------------------------------------------------------------------
# Назначение:
#   Явный компонент с именованными триггерами вместо разбросанных таймеров.
#   Каналы независимы, у каждого свой механизм упорядочивания:
#
#   • on_tick_30s()          — периодический полный пуш (APScheduler, каждые
#                              SYNC_INTERVAL_SEC). Флаг «в полёте»: если
#                              предыдущий ещё идёт — тик пропускается (не ставится
#                              в очередь).
#   • on_tap_burst()         — каждый тап перезапускает таймер TAP_DEBOUNCE_SEC;
#                              по срабатыванию отправляется состояние на момент
#                              срабатывания (хвостовой debounce).
#   • on_critical_action(r)  — немедленный пуш без debounce сразу после
#                              ключевого действия (бустер, QuickCharge, клейм
#                              пассивного дохода, стройка, конвертация).
#   • set_online(flag)       — переход offline → online запускает один полный пуш.
#   • sync_now()             — ручная синхронизация; ошибка возвращается вызывающему
#                              (для тоста), остальные каналы ошибки только логируют.
#
# Правила:
#   • Все пуши best-effort: сбой оставляет локальное состояние источником истины;
#     очереди повторов и backoff нет — следующий тик повторит сам.
#   • Между каналами порядок не гарантирован (сервер — last-write-wins по полю).
#   • stop() снимает задачи и таймеры; уже начатые сетевые вызовы не отменяются,
#     ссылки на них держит _tasks до завершения (drain() дождётся их).
#
# Интеграция:
#   • session.py создаёт SyncScheduler, подписывает его на GameStore
#     (handle_store_change) и добавляет 1-секундный тик игры через add_interval_job.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import get_settings
from .game_state import CRITICAL_ACTIONS
from .utils import now_ts

log = logging.getLogger("bunergy")
settings = get_settings()

PushFn = Callable[[], Awaitable[Any]]

PERIODIC_JOB_ID = "bunergy_periodic_sync"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class SyncScheduler:
    def __init__(
        self,
        push_full: PushFn,
        push_taps: Optional[PushFn] = None,
        *,
        interval: Optional[float] = None,
        debounce: Optional[float] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        online: bool = True,
    ):
        self._push_full = push_full
        self._push_taps = push_taps or push_full
        self.interval = settings.SYNC_INTERVAL_SEC if interval is None else interval
        self.debounce = settings.TAP_DEBOUNCE_SEC if debounce is None else debounce
        self._own_scheduler = scheduler is None
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.online = online

        self._periodic_in_flight = False
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._job_ids: Set[str] = set()
        self._active = False

        self.last_success_at: Optional[float] = None
        self.last_error: Optional[str] = None

    # -----------------------------------------------------------------
    # Жизненный цикл
    # -----------------------------------------------------------------
    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Регистрирует периодический пуш. Вызывать внутри работающего event loop."""
        if self._active:
            return
        self._active = True
        self.add_interval_job(self.on_tick_30s, self.interval, PERIODIC_JOB_ID)
        if not self.scheduler.running:
            self.scheduler.start()
        log.info("[Sync] scheduler started (interval=%ss, debounce=%ss)", self.interval, self.debounce)

    def add_interval_job(self, fn: Callable[..., Any], seconds: float, job_id: str) -> None:
        self.scheduler.add_job(
            fn,
            "interval",
            seconds=seconds,
            id=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._job_ids.add(job_id)

    def stop(self) -> None:
        """Снимает задачи и таймеры; начатые сетевые вызовы не отменяются."""
        self._active = False
        for job_id in list(self._job_ids):
            if self.scheduler.get_job(job_id) is not None:
                self.scheduler.remove_job(job_id)
        self._job_ids.clear()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._own_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("[Sync] scheduler stopped")

    # -----------------------------------------------------------------
    # Триггеры
    # -----------------------------------------------------------------
    async def on_tick_30s(self) -> Dict[str, Any]:
        if not self.online:
            return {"success": False, "error": "OFFLINE", "skipped": True}
        if self._periodic_in_flight:
            log.debug("[Sync] periodic sync skipped: previous one still in flight")
            return {"success": False, "error": "BUSY", "skipped": True}
        self._periodic_in_flight = True
        try:
            return await self._run(self._push_full, "periodic")
        finally:
            self._periodic_in_flight = False

    def on_tap_burst(self) -> None:
        """Перезапускает хвостовой debounce-таймер тапов."""
        loop = _running_loop()
        if loop is None:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = loop.call_later(self.debounce, self._on_tap_burst_settled)

    def _on_tap_burst_settled(self) -> None:
        self._debounce_handle = None
        if not self.online:
            return
        self._spawn(self._run(self._push_taps, "debounced"))

    @property
    def tap_sync_pending(self) -> bool:
        return self._debounce_handle is not None

    def on_critical_action(self, reason: str) -> Optional[asyncio.Task]:
        if not self.online:
            return None
        return self._spawn(self._run(self._push_full, f"immediate:{reason}"))

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        was_online = self.online
        self.online = online
        if online and not was_online:
            log.info("[Sync] back online, running full sync")
            return self._spawn(self._run(self._push_full, "reconnect"))
        return None

    async def sync_now(self) -> Dict[str, Any]:
        """Ручная синхронизация: результат (в т. ч. ошибка) возвращается вызывающему."""
        if not self.online:
            return {"success": False, "error": "OFFLINE"}
        return await self._run(self._push_full, "manual")

    def handle_store_change(self, keys: Set[str], action: str) -> None:
        """Подписчик GameStore: тапы → debounce, ключевые действия → немедленный пуш."""
        if action == "tap":
            self.on_tap_burst()
        elif action in CRITICAL_ACTIONS:
            self.on_critical_action(action)

    def fire_and_forget(self, coro: Awaitable[Any], label: str) -> Optional[asyncio.Task]:
        """Фоновая задача (зеркалирование журналов): ошибки только логируются."""
        async def runner() -> None:
            try:
                await coro
            except Exception as e:
                log.warning("[Sync] background %s failed: %s", label, e)

        return self._spawn(runner())

    # -----------------------------------------------------------------
    # Внутреннее
    # -----------------------------------------------------------------
    async def _run(self, fn: PushFn, channel: str) -> Dict[str, Any]:
        try:
            await fn()
        except Exception as e:
            self.last_error = str(e)
            log.warning("[Sync] %s sync failed: %s", channel, e)
            return {"success": False, "error": str(e), "channel": channel}
        self.last_success_at = now_ts()
        self.last_error = None
        log.debug("[Sync] %s sync ok", channel)
        return {"success": True, "channel": channel}

    def _spawn(self, coro: Awaitable[Any]) -> Optional[asyncio.Task]:
        loop = _running_loop()
        if loop is None:
            # вне event loop (синхронные тесты/CLI) — пуш не планируется
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Дождаться фоновых пушей (тесты, корректное завершение)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
