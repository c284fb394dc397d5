# 📂 backend/bunergy/session.py — игровая сессия одного игрока (загрузка, сверка, синхронизация)
# -----------------------------------------------------------------------------
# Жизненный цикл:
#   1) boot()    — локальный стор → профиль с сервера → сверка (профиль, стройка,
#                  конвертации, журналы наград) → сохранение результата;
#                  нет профиля на сервере → пуш начального состояния.
#                  Любая ошибка сервера → сессия работает только локально.
#   2) mount()   — SyncScheduler (периодический/debounce/немедленный пуш) +
#                  тик игры (регенерация энергии, завершение стройки, смена дня)
#                  + зеркалирование журналов наград в удалённые таблицы.
#   3) unmount() — остановка таймеров и подписок; close() — ещё и закрытие
#                  HTTP-транспорта.
#
# Загрузка без сервера: первый успешный пуш после восстановления связи сначала
# выполняет ту же сверку, что и boot(), и только потом пишет профиль.
#
# Реферальная доля (20 %) приглашающего копится из дохода с тапов (прирост
# total_tap_income) и пассивного дохода (claim_idle этой сессии) и уходит на
# сервер вместе с полным пушем. Доля резервируется до сетевого вызова:
# параллельные пуши не начисляют её дважды.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from . import referral
from .config import get_settings
from .game_state import BUILD_PARTS_KEY, HISTORY_KEY, GameStore, load_store
from .local_store import PersistencePort
from .reconcile import merge_by_key, reconcile_build_parts, reconcile_profile
from .remote_store import RemoteError, RemoteProfileStore, TableClient
from .rewards import (
    DAILY_CLAIMS_LEDGER,
    NFT_LEDGER,
    REWARD_STATE_LEDGER,
    DailyRewards,
    NFTCollection,
    ReferralMilestones,
    WeeklyChallenges,
    merge_remote_reward_state,
    reward_state_to_remote,
)
from .schemas import TelegramUser
from .sync import SyncScheduler
from .tasks import TASKS_LEDGER, TaskBoard
from .telegram import identity_columns
from .utils import now_ts

log = logging.getLogger("bunergy")
settings = get_settings()

GAME_TICK_JOB_ID = "bunergy_game_tick"

# Поля, которые меняет тап (лёгкий debounce-пуш)
TAP_COLUMNS = ("bz", "energy", "total_taps", "today_taps", "total_tap_income")


class GameSession:
    def __init__(
        self,
        user: TelegramUser,
        port: PersistencePort,
        remote: Optional[RemoteProfileStore] = None,
        *,
        start_param: Optional[str] = None,
        clock: Callable[[], float] = now_ts,
        scheduler: Optional[AsyncIOScheduler] = None,
        **store_kwargs: Any,
    ):
        self.user = user
        self.port = port
        self.remote = remote
        self.start_param = start_param
        self.clock = clock
        self._scheduler_override = scheduler
        self._store_kwargs = store_kwargs

        self.store: Optional[GameStore] = None
        self.first_launch = False
        self.remote_available = False
        self.sync: Optional[SyncScheduler] = None

        self._unsubscribe: list = []
        self._last_tick: Optional[float] = None
        self._tap_income_flushed = 0
        self._pending_idle = 0
        self._catch_up_lock = asyncio.Lock()

    @property
    def client(self) -> Optional[TableClient]:
        return self.remote.client if self.remote is not None else None

    # -----------------------------------------------------------------
    # Загрузка и сверка
    # -----------------------------------------------------------------
    async def boot(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        self.store, self.first_launch = load_store(self.port, now=now, clock=self.clock, **self._store_kwargs)
        self.daily = DailyRewards(self.store)
        self.weekly = WeeklyChallenges(self.store)
        self.milestones = ReferralMilestones(self.store)
        self.nfts = NFTCollection(self.store)
        self.tasks = TaskBoard(self.store)

        changed: list = []
        if self.remote is not None:
            try:
                changed = await self._reconcile_with_remote(now)
                self.remote_available = True
            except RemoteError as e:
                log.warning("[Sync] remote unavailable, running local-only: %s", e)
                self.remote_available = False

        # базы недельных челленджей и заданий снимаются до первых действий сессии
        self.weekly.refresh(now)
        self.tasks.refresh(now)

        self._tap_income_flushed = self.store.state.total_tap_income
        return {
            "success": True,
            "first_launch": self.first_launch,
            "remote_available": self.remote_available,
            "changed": changed,
        }

    async def _reconcile_with_remote(self, now: float) -> list:
        store = self.store
        remote = self.remote
        profile = await remote.fetch_profile()

        result = reconcile_profile(store.state, profile)
        parts = store.parts
        history = store.history
        if profile is not None:
            parts = reconcile_build_parts(store.parts, await remote.load_build_parts(), now)
            history = merge_by_key(
                store.history, await remote.load_conversions(store.history_limit),
                key=lambda r: r.id, timestamp=lambda r: r.timestamp, limit=store.history_limit,
            )
        store.replace(result.state, parts, history, action="reconcile")

        if profile is not None:
            self.daily.merge_remote(await remote.load_daily_claims())
            self.nfts.merge_remote(await remote.load_nfts())
            merge_remote_reward_state(store, await remote.load_reward_state())
            self.tasks.merge_remote(await remote.load_task_progress())

        referral_code = (profile or {}).get("referral_code") or referral.generate_referral_code()
        identity = identity_columns(self.user, referral_code)
        if profile is None:
            await remote.push_profile(store.snapshot(), identity)
            log.info("[Sync] created remote profile for %s", self.user.id)
        elif not profile.get("referral_code"):
            await remote.push_profile({}, identity)

        await self._sync_referrals(first_profile=profile is None)
        return result.changed

    async def _sync_referrals(self, first_profile: bool) -> None:
        client = self.client
        store = self.store

        if first_profile and self.start_param:
            inviter = await referral.find_inviter_by_code(client, self.start_param)
            if inviter is not None:
                res = await referral.create_referral(client, inviter, self.user.id, self.start_param)
                if res["success"]:
                    store.add_bz(res["invitee_reward_bz"], action="referral_bonus")

        invites = await referral.list_referrals(client, self.user.id)
        for row in invites:
            if row.get("bonus_claimed"):
                continue
            res = await referral.claim_referral_bonus(client, self.user.id, int(row["invitee_id"]))
            if res["success"]:
                store.add_bz(res["inviter_reward"]["bz"], action="referral_bonus")
                store.add_xp(res["inviter_reward"]["xp"], action="referral_bonus")
        store.set_referral_count(max(store.state.referral_count, len(invites)))

    # -----------------------------------------------------------------
    # Пуши
    # -----------------------------------------------------------------
    async def push_full(self) -> None:
        if self.remote is None:
            return
        if not self.remote_available:
            await self._catch_up_with_remote()
        await self.remote.push_profile(self.store.snapshot())
        await self._flush_referral_share()

    async def push_taps(self) -> None:
        if self.remote is None:
            return
        if not self.remote_available:
            # частичный пуш поверх несверенного профиля затёр бы серверный прогресс
            await self.push_full()
            return
        snap = self.store.snapshot()
        await self.remote.push_profile({k: snap[k] for k in TAP_COLUMNS})

    async def _catch_up_with_remote(self) -> None:
        """Сверка, пропущенная при загрузке без сервера. RemoteError пробрасывается."""
        async with self._catch_up_lock:
            if self.remote_available:
                return
            income_before = self.store.state.total_tap_income
            await self._reconcile_with_remote(self.clock())
            # доход с других устройств не входит в долю этой сессии
            self._tap_income_flushed += self.store.state.total_tap_income - income_before
            for name in (BUILD_PARTS_KEY, HISTORY_KEY, DAILY_CLAIMS_LEDGER, NFT_LEDGER,
                         REWARD_STATE_LEDGER, TASKS_LEDGER):
                await self._ledger_push(name)()
            self.remote_available = True
            log.info("[Sync] reconciled with remote after reconnect for %s", self.user.id)

    async def _flush_referral_share(self) -> None:
        tap_income = self.store.state.total_tap_income
        tap_delta = tap_income - self._tap_income_flushed
        idle = self._pending_idle
        # резерв до первого await: параллельный пуш увидит нулевую дельту
        self._tap_income_flushed = tap_income
        self._pending_idle = 0

        if tap_delta > 0:
            try:
                await referral.record_referral_earnings(self.client, self.user.id, tap_delta, referral.TAP)
            except Exception:
                self._tap_income_flushed -= tap_delta
                self._pending_idle += idle
                raise
        if idle > 0:
            try:
                await referral.record_referral_earnings(self.client, self.user.id, idle, referral.IDLE)
            except Exception:
                self._pending_idle += idle
                raise

    def _ledger_push(self, name: str) -> Optional[Callable[[], Awaitable[None]]]:
        remote = self.remote
        pushes = {
            DAILY_CLAIMS_LEDGER: lambda: remote.push_daily_claims(self.daily.to_remote()),
            NFT_LEDGER: lambda: remote.push_nfts(self.nfts.to_remote()),
            REWARD_STATE_LEDGER: lambda: remote.push_reward_state(reward_state_to_remote(self.store)),
            TASKS_LEDGER: lambda: remote.push_task_progress(self.tasks.to_remote()),
            HISTORY_KEY: lambda: remote.push_conversions(self.store.history),
            BUILD_PARTS_KEY: lambda: remote.push_build_parts(self.store.parts),
        }
        return pushes.get(name)

    def _on_ledger_change(self, keys: Set[str], action: str) -> None:
        if self.remote is None or self.sync is None or not self.sync.online:
            return
        if not self.remote_available:
            # журналы уйдут разом после сверки (_catch_up_with_remote)
            return
        for name in keys:
            push = self._ledger_push(name)
            if push is not None:
                self.sync.fire_and_forget(push(), label=f"{name} mirror")

    # -----------------------------------------------------------------
    # Подключение / отключение
    # -----------------------------------------------------------------
    def mount(self) -> SyncScheduler:
        """Запускает синхронизацию и тик игры. Вызывать внутри event loop после boot()."""
        if self.store is None:
            raise RuntimeError("GameSession.mount() called before boot()")
        if self.sync is not None:
            return self.sync
        self.sync = SyncScheduler(
            self.push_full,
            self.push_taps,
            scheduler=self._scheduler_override,
            online=self.remote_available,
        )
        self._unsubscribe = [
            self.store.subscribe(self.sync.handle_store_change),
            self.store.subscribe(self._on_ledger_change),
        ]
        self._last_tick = self.clock()
        self.sync.start()
        self.sync.add_interval_job(self.tick, settings.GAME_TICK_SEC, GAME_TICK_JOB_ID)
        return self.sync

    def unmount(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self.sync is not None:
            self.sync.stop()
            self.sync = None

    async def close(self) -> None:
        """unmount() + закрытие транспорта (aiohttp-сессии HttpTableClient)."""
        self.unmount()
        client = self.client
        if client is not None:
            await client.close()

    async def tick(self, now: Optional[float] = None) -> None:
        """Тик игры: смена дня, регенерация энергии, завершение стройки."""
        now = self.clock() if now is None else now
        elapsed = now - (self._last_tick if self._last_tick is not None else now)
        self._last_tick = now
        if self.store.roll_daily_counters(now):
            self.weekly.refresh(now)
            self.tasks.refresh(now)
        self.store.regen_tick(elapsed)
        self.store.complete_due_builds(now)

    # -----------------------------------------------------------------
    # Действия, которым нужен сервер
    # -----------------------------------------------------------------
    def claim_idle(self, now: Optional[float] = None) -> Dict[str, Any]:
        res = self.store.claim_idle(now)
        if res["success"]:
            self._pending_idle += int(res["total"])
        return res

    async def claim_referral_earnings(self) -> Dict[str, Any]:
        if self.client is None:
            return {"success": False, "error": "OFFLINE"}
        try:
            res = await referral.claim_pending_earnings(self.client, self.user.id)
        except RemoteError as e:
            log.warning("[Sync] referral earnings claim failed: %s", e)
            return {"success": False, "error": str(e)}
        if res["success"]:
            self.store.add_bz(res["amount"], action="referral_earnings")
        return res

    async def sync_now(self) -> Dict[str, Any]:
        if self.sync is None:
            return {"success": False, "error": "NOT_MOUNTED"}
        return await self.sync.sync_now()
