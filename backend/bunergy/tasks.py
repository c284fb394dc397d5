# 📂 backend/bunergy/tasks.py — доска заданий (daily / weekly / milestone)
# -----------------------------------------------------------------------------
# Задание = счётчик PlayerState + цель + награда + период сброса.
#   • daily     — сбрасывается в полночь UTC (ключ YYYY-MM-DD);
#   • weekly    — сбрасывается в начале ISO-недели (ключ YYYY-Www);
#   • milestone — не сбрасывается никогда.
#
# Прогресс = текущий счётчик − база, снятая при смене периода. Журнал "tasks"
# хранит на каждое задание {reset_key, baseline, claimed, updated_at}.
# При сверке с сервером записи объединяются по task_id, локальная побеждает.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from .game_state import GameStore
from .local_store import as_dict
from .rewards import BB, BZ, XP, apply_reward
from .utils import day_key, week_key

log = logging.getLogger("bunergy")

DAILY = "daily"
WEEKLY = "weekly"
MILESTONE = "milestone"
NEVER = "NEVER"

TASKS_LEDGER = "tasks"


def _idle_claimed_today(store: GameStore) -> int:
    last = store.state.last_idle_claim
    if last is None or store.state.today_date is None:
        return 0
    return 1 if day_key(last) == store.state.today_date else 0


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    period: str
    target: int
    reward_type: str
    reward_amount: Decimal
    counter: Optional[Callable[[GameStore], int]] = None  # None → задание-«отметка» (check-in)
    absolute: bool = False                                 # прогресс без вычета базы


TASKS = (
    Task("daily_check_in", "Daily check-in", DAILY, 1, BZ, Decimal(500)),
    Task("daily_taps", "Tap 100 times today", DAILY, 100, BZ, Decimal(1000),
         counter=lambda s: s.state.today_taps, absolute=True),
    Task("daily_idle", "Claim idle income", DAILY, 1, XP, Decimal(50),
         counter=_idle_claimed_today, absolute=True),
    Task("weekly_upgrade", "Upgrade 10 build parts", WEEKLY, 10, BZ, Decimal(5000),
         counter=lambda s: s.state.total_upgrades),
    Task("weekly_convert", "Convert 500,000 BZ", WEEKLY, 500_000, BB, Decimal("0.5"),
         counter=lambda s: s.state.total_conversions),
    Task("weekly_invite", "Invite 3 friends", WEEKLY, 3, XP, Decimal(500),
         counter=lambda s: s.state.referral_count),
    Task("milestone_taps", "Reach 10,000 taps", MILESTONE, 10_000, BB, Decimal("1.0"),
         counter=lambda s: s.state.total_taps, absolute=True),
    Task("milestone_invite", "Invite 25 friends", MILESTONE, 25, BB, Decimal("5.0"),
         counter=lambda s: s.state.referral_count, absolute=True),
)
TASKS_BY_ID = {t.id: t for t in TASKS}


def reset_key_for(period: str, now: float) -> str:
    if period == DAILY:
        return day_key(now)
    if period == WEEKLY:
        return week_key(now)
    return NEVER


class TaskBoard:
    def __init__(self, store: GameStore):
        self.store = store

    def entries(self) -> Dict[str, Dict[str, Any]]:
        return dict(self.store.get_ledger(TASKS_LEDGER, {}, as_dict))

    def put_entries(self, entries: Mapping[str, Mapping[str, Any]], action: str = "tasks") -> None:
        self.store.put_ledger(TASKS_LEDGER, {k: dict(v) for k, v in entries.items()}, action)

    def _value(self, task: Task) -> int:
        return int(task.counter(self.store)) if task.counter else 0

    def refresh(self, now: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Новый период → новая база и снятая отметка «забрано»."""
        now = self.store.clock() if now is None else now
        entries = self.entries()
        changed = False
        for task in TASKS:
            key = reset_key_for(task.period, now)
            entry = entries.get(task.id)
            if entry is None or entry.get("reset_key") != key:
                entries[task.id] = {
                    "reset_key": key,
                    "baseline": 0 if task.absolute else self._value(task),
                    "claimed": False,
                    "updated_at": now,
                }
                changed = True
        if changed:
            self.put_entries(entries, action="tasks_reset")
        return entries

    def progress(self, task: Task, entry: Mapping[str, Any]) -> int:
        if task.counter is None:
            return task.target  # отметка выполняется самим клеймом
        return max(0, self._value(task) - int(entry.get("baseline") or 0))

    def board(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        entries = self.refresh(now)
        out = []
        for task in TASKS:
            entry = entries[task.id]
            done = self.progress(task, entry)
            out.append({
                "id": task.id,
                "title": task.title,
                "period": task.period,
                "progress": min(done, task.target),
                "target": task.target,
                "completed": done >= task.target,
                "claimed": bool(entry.get("claimed")),
                "reward_type": task.reward_type,
                "reward_amount": task.reward_amount,
            })
        return out

    def claim(self, task_id: str, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.store.clock() if now is None else now
        task = TASKS_BY_ID.get(task_id)
        if task is None:
            return {"success": False, "error": "UNKNOWN_TASK"}
        entries = self.refresh(now)
        entry = entries[task_id]
        if entry.get("claimed"):
            return {"success": False, "error": "ALREADY_CLAIMED"}
        done = self.progress(task, entry)
        if done < task.target:
            return {"success": False, "error": "NOT_COMPLETED", "progress": done, "target": task.target}

        apply_reward(self.store, task.reward_type, task.reward_amount, action="task_reward")

        entries = self.entries()
        entries[task_id] = {**entries.get(task_id, entry), "claimed": True, "updated_at": now}
        self.put_entries(entries, action="task_reward")
        log.info("[Rewards] task %s claimed: %s %s", task_id, task.reward_amount, task.reward_type)
        return {"success": True, "id": task_id, "reward_type": task.reward_type, "amount": task.reward_amount}

    def to_remote(self) -> Dict[str, Dict[str, Any]]:
        return self.entries()

    def merge_remote(self, remote: Mapping[str, Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
        entries = {k: dict(v) for k, v in remote.items() if k in TASKS_BY_ID}
        entries.update(self.entries())
        self.put_entries(entries, action="reconcile_rewards")
        return entries
