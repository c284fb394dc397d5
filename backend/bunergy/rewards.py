# 📂 backend/bunergy/rewards.py — награды и прогрессия: daily, weekly, реферальные вехи, NFT
# -----------------------------------------------------------------------------
# Все модули устроены одинаково:
#   • право на награду — чистый предикат над счётчиками PlayerState (рефералы,
#     тоталы, завершённость стадий постройки);
#   • клейм в два шага: проверка → начисление на баланс → отметка «забрано».
#     Шаги не транзакционны: сбой между ними может выдать награду без отметки
#     (или наоборот). Это принятый риск, откатов нет;
#   • свой локальный журнал в GameStore (get_ledger/put_ledger) и
#     оппортунистическое зеркалирование в удалённые таблицы (session.py).
#
# Ежедневная награда:
#   • 7 дней по кругу: BZ 1000, BZ 2000, BB 0.001, XP 500, BZ 5000, BB 0.002, XP 1000;
#   • множитель недели = min(week, 10);
#   • один клейм в календарный день (UTC); пропуск дня обнуляет стрик (неделя
#     сохраняется); после 7-го дня стрик = 0, week += 1.
#
# Недельные челленджи (прогресс от базы, снятой в начале ISO-недели):
#   • builder   — 10 апгрейдов деталей → 10 000 BZ;
#   • recruiter — 3 новых реферала → 2 000 XP;
#   • converter — 1 000 000 BZ сконвертировано → 0.005 BB.
#
# Реферальные вехи: 5/10/25/50 рефералов → 5k/15k/50k/150k XP, каждая один раз.
#
# NFT-достижения: покупка за BB после выполнения условия, один раз.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from . import build
from .game_state import GameStore
from .local_store import as_list
from .reconcile import merge_by_key, reconcile_reward_state
from .schemas import DailyClaim, OwnedNFT
from .utils import day_of, dec, is_yesterday, q6, week_key

log = logging.getLogger("bunergy")

BZ = "BZ"
BB = "BB"
XP = "XP"

REWARD_STATE_LEDGER = "reward_state"
DAILY_CLAIMS_LEDGER = "daily_claims"
NFT_LEDGER = "nfts"


def apply_reward(store: GameStore, kind: str, amount: Any, action: str) -> None:
    """Начисляет награду нужного типа через владельца состояния."""
    if kind == BZ:
        store.add_bz(int(amount), action=action)
    elif kind == BB:
        store.add_bb(dec(amount), action=action)
    elif kind == XP:
        store.add_xp(int(amount), action=action)
    else:
        raise ValueError(f"unknown reward type: {kind}")


# =============================================================================
# Однострочное состояние наград
# =============================================================================
class WeeklyProgress(BaseModel):
    week_key: Optional[str] = None
    baseline: Dict[str, int] = Field(default_factory=dict)
    claimed: List[str] = Field(default_factory=list)


class RewardState(BaseModel):
    streak: int = 0
    week: int = 1
    last_daily_claim: Optional[float] = None
    weekly: WeeklyProgress = Field(default_factory=WeeklyProgress)
    milestones_claimed: List[int] = Field(default_factory=list)
    updated_at: float = 0.0


def load_reward_state(store: GameStore) -> RewardState:
    return store.get_ledger(REWARD_STATE_LEDGER, RewardState(), RewardState.model_validate)


def save_reward_state(store: GameStore, state: RewardState, action: str, now: float) -> None:
    state.updated_at = now
    store.put_ledger(REWARD_STATE_LEDGER, state, action)


def reward_state_to_remote(store: GameStore) -> Dict[str, Any]:
    return load_reward_state(store).model_dump(mode="json")


def merge_remote_reward_state(store: GameStore, remote: Optional[Dict[str, Any]]) -> RewardState:
    """Сверка при старте: новее updated_at побеждает, при равенстве — локальное."""
    local = load_reward_state(store)
    merged = reconcile_reward_state(local.model_dump(), remote)
    if merged is None:
        return local
    merged["updated_at"] = merged.get("updated_at") or 0.0
    try:
        result = RewardState.model_validate(merged)
    except ValidationError as e:
        log.warning("[Rewards] remote reward state invalid, keeping local: %s", e)
        return local
    if result != local:
        store.put_ledger(REWARD_STATE_LEDGER, result, "reconcile_rewards")
    return result


# =============================================================================
# Ежедневная награда
# =============================================================================
DAILY_REWARDS = (
    (BZ, Decimal(1000)),
    (BZ, Decimal(2000)),
    (BB, Decimal("0.001")),
    (XP, Decimal(500)),
    (BZ, Decimal(5000)),
    (BB, Decimal("0.002")),
    (XP, Decimal(1000)),
)
MAX_WEEK_MULTIPLIER = 10


def week_multiplier(week: int) -> int:
    return max(1, min(int(week), MAX_WEEK_MULTIPLIER))


def daily_reward_amount(day: int, week: int) -> tuple[str, Decimal]:
    kind, base = DAILY_REWARDS[day - 1]
    amount = base * week_multiplier(week)
    return kind, (q6(amount) if kind == BB else Decimal(int(amount)))


class DailyRewards:
    def __init__(self, store: GameStore):
        self.store = store

    def _effective_streak(self, state: RewardState, now: float) -> int:
        last = state.last_daily_claim
        if last is None:
            return state.streak
        if day_of(last) == day_of(now) or is_yesterday(last, now):
            return state.streak
        return 0  # пропущен день

    def status(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.store.clock() if now is None else now
        state = load_reward_state(self.store)
        streak = self._effective_streak(state, now)
        day = streak % 7 + 1
        kind, amount = daily_reward_amount(day, state.week)
        claimed_today = state.last_daily_claim is not None and day_of(state.last_daily_claim) == day_of(now)
        return {
            "next_day": day,
            "week": state.week,
            "multiplier": week_multiplier(state.week),
            "streak": streak,
            "reward_type": kind,
            "amount": amount,
            "can_claim": not claimed_today,
        }

    def claim(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.store.clock() if now is None else now
        state = load_reward_state(self.store)
        if state.last_daily_claim is not None and day_of(state.last_daily_claim) == day_of(now):
            return {"success": False, "error": "ALREADY_CLAIMED"}

        streak = self._effective_streak(state, now)
        day = streak % 7 + 1
        week = state.week
        kind, amount = daily_reward_amount(day, week)

        apply_reward(self.store, kind, amount, action="daily_reward")

        state.streak = streak + 1
        state.last_daily_claim = now
        if day == 7:
            state.streak = 0
            state.week = week + 1
        save_reward_state(self.store, state, "daily_reward", now)

        claim = DailyClaim(week=week, day=day, reward_type=kind, reward_amount=amount, claimed_at=now)
        self.put_claims([claim, *self.claims()])
        log.info("[Rewards] daily day=%d week=%d: %s %s", day, week, amount, kind)
        return {"success": True, "day": day, "week": week, "reward_type": kind, "amount": amount}

    def claims(self) -> List[DailyClaim]:
        raw = self.store.get_ledger(DAILY_CLAIMS_LEDGER, [], as_list)
        out: List[DailyClaim] = []
        for item in raw:
            try:
                out.append(DailyClaim.model_validate(item))
            except ValidationError:
                continue
        return out

    def put_claims(self, claims: List[DailyClaim], action: str = "daily_claims") -> None:
        self.store.put_ledger(DAILY_CLAIMS_LEDGER, [c.model_dump(mode="json") for c in claims], action)

    def to_remote(self) -> List[DailyClaim]:
        return self.claims()

    def merge_remote(self, remote: List[DailyClaim]) -> List[DailyClaim]:
        merged = merge_by_key(self.claims(), remote, key=lambda c: (c.week, c.day), timestamp=lambda c: c.claimed_at)
        self.put_claims(merged, action="reconcile_rewards")
        return merged


# =============================================================================
# Недельные челленджи
# =============================================================================
@dataclass(frozen=True)
class Challenge:
    id: str
    name: str
    counter: str          # поле PlayerState, прирост которого считаем
    target: int
    reward_type: str
    reward_amount: Decimal


WEEKLY_CHALLENGES = (
    Challenge("builder", "Builder Challenge", "total_upgrades", 10, BZ, Decimal(10000)),
    Challenge("recruiter", "Recruiter Challenge", "referral_count", 3, XP, Decimal(2000)),
    Challenge("converter", "Converter Challenge", "total_conversions", 1_000_000, BB, Decimal("0.005")),
)
WEEKLY_BY_ID = {c.id: c for c in WEEKLY_CHALLENGES}


class WeeklyChallenges:
    def __init__(self, store: GameStore):
        self.store = store

    def _counter(self, name: str) -> int:
        return int(getattr(self.store.state, name))

    def refresh(self, now: Optional[float] = None) -> RewardState:
        """Новая ISO-неделя → снимаем базу счётчиков и сбрасываем отметки."""
        now = self.store.clock() if now is None else now
        state = load_reward_state(self.store)
        key = week_key(now)
        if state.weekly.week_key != key:
            state.weekly = WeeklyProgress(
                week_key=key,
                baseline={c.counter: self._counter(c.counter) for c in WEEKLY_CHALLENGES},
            )
            save_reward_state(self.store, state, "weekly_reset", now)
        return state

    def progress(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        state = self.refresh(now)
        out = []
        for c in WEEKLY_CHALLENGES:
            done = max(0, self._counter(c.counter) - state.weekly.baseline.get(c.counter, 0))
            out.append({
                "id": c.id,
                "name": c.name,
                "progress": min(done, c.target),
                "target": c.target,
                "completed": done >= c.target,
                "claimed": c.id in state.weekly.claimed,
                "reward_type": c.reward_type,
                "reward_amount": c.reward_amount,
            })
        return out

    def claim(self, challenge_id: str, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.store.clock() if now is None else now
        challenge = WEEKLY_BY_ID.get(challenge_id)
        if challenge is None:
            return {"success": False, "error": "UNKNOWN_CHALLENGE"}
        entry = next(p for p in self.progress(now) if p["id"] == challenge_id)
        if entry["claimed"]:
            return {"success": False, "error": "ALREADY_CLAIMED"}
        if not entry["completed"]:
            return {"success": False, "error": "NOT_ELIGIBLE", "progress": entry["progress"]}

        apply_reward(self.store, challenge.reward_type, challenge.reward_amount, action="weekly_reward")

        state = load_reward_state(self.store)
        state.weekly.claimed.append(challenge_id)
        save_reward_state(self.store, state, "weekly_reward", now)
        return {
            "success": True,
            "id": challenge_id,
            "reward_type": challenge.reward_type,
            "amount": challenge.reward_amount,
        }


# =============================================================================
# Реферальные вехи
# =============================================================================
REFERRAL_MILESTONES: Dict[int, int] = {
    5: 5000,
    10: 15000,
    25: 50000,
    50: 150000,
}


class ReferralMilestones:
    def __init__(self, store: GameStore):
        self.store = store

    def status(self) -> List[Dict[str, Any]]:
        state = load_reward_state(self.store)
        count = self.store.state.referral_count
        return [
            {
                "threshold": thr,
                "xp": xp,
                "reached": count >= thr,
                "claimed": thr in state.milestones_claimed,
            }
            for thr, xp in REFERRAL_MILESTONES.items()
        ]

    def claim(self, threshold: int, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.store.clock() if now is None else now
        if threshold not in REFERRAL_MILESTONES:
            return {"success": False, "error": "UNKNOWN_MILESTONE"}
        state = load_reward_state(self.store)
        if threshold in state.milestones_claimed:
            return {"success": False, "error": "ALREADY_CLAIMED"}
        if self.store.state.referral_count < threshold:
            return {"success": False, "error": "NOT_ELIGIBLE"}

        xp = REFERRAL_MILESTONES[threshold]
        self.store.add_xp(xp, action="milestone_reward")

        state = load_reward_state(self.store)
        state.milestones_claimed = sorted({*state.milestones_claimed, threshold})
        save_reward_state(self.store, state, "milestone_reward", now)
        return {"success": True, "threshold": threshold, "xp": xp}


# =============================================================================
# NFT-достижения
# =============================================================================
@dataclass(frozen=True)
class NFTDefinition:
    id: str
    name: str
    description: str
    price_bb: Decimal
    requirement: str
    predicate: Callable[[GameStore], bool]


def _stage2_complete(store: GameStore) -> bool:
    return build.is_stage_complete(2, store.part_levels())


def _energy_boosters_maxed(store: GameStore) -> bool:
    b = store.state.boosters
    return b.energy_capacity >= 10 and b.recovery_rate >= 10


NFT_CATALOG = (
    NFTDefinition("early_adopter", "Early Adopter", "Welcome to Bunergy! Free for all players.",
                  Decimal("0"), "Free", lambda s: True),
    NFTDefinition("social_king", "Social King", "Master of connections and community.",
                  Decimal("2"), "20 referrals", lambda s: s.state.referral_count >= 20),
    NFTDefinition("builder_pro", "Builder Pro", "Expert in construction and upgrades.",
                  Decimal("2"), "Complete Stage 2", _stage2_complete),
    NFTDefinition("tap_legend", "Tap Legend", "Legendary tapping power unleashed.",
                  Decimal("4"), "Earn 10M BZ from tapping", lambda s: s.state.total_tap_income >= 10_000_000),
    NFTDefinition("energy_master", "Energy Master", "Perfect energy management achieved.",
                  Decimal("3"), "Max all energy boosters", _energy_boosters_maxed),
    NFTDefinition("golden_bunny", "Golden Bunny", "The ultimate tapping achievement.",
                  Decimal("5"), "5M taps total", lambda s: s.state.total_taps >= 5_000_000),
    NFTDefinition("diamond_crystal", "Diamond Crystal", "Reached the pinnacle of experience.",
                  Decimal("7"), "500k+ XP", lambda s: s.state.xp >= 500_000),
)
NFT_BY_ID = {n.id: n for n in NFT_CATALOG}


class NFTCollection:
    def __init__(self, store: GameStore):
        self.store = store

    def owned(self) -> List[OwnedNFT]:
        raw = self.store.get_ledger(NFT_LEDGER, [], as_list)
        out: List[OwnedNFT] = []
        for item in raw:
            try:
                out.append(OwnedNFT.model_validate(item))
            except ValidationError:
                continue
        return out

    def owned_ids(self) -> set:
        return {n.nft_id for n in self.owned()}

    def put_owned(self, nfts: List[OwnedNFT], action: str = "nfts") -> None:
        self.store.put_ledger(NFT_LEDGER, [n.model_dump(mode="json") for n in nfts], action)

    def catalog(self) -> List[Dict[str, Any]]:
        owned = self.owned_ids()
        return [
            {
                "id": n.id,
                "name": n.name,
                "description": n.description,
                "price_bb": n.price_bb,
                "requirement": n.requirement,
                "requirement_met": n.predicate(self.store),
                "owned": n.id in owned,
            }
            for n in NFT_CATALOG
        ]

    def purchase(self, nft_id: str, now: Optional[float] = None) -> Dict[str, Any]:
        now = self.store.clock() if now is None else now
        nft = NFT_BY_ID.get(nft_id)
        if nft is None:
            return {"success": False, "error": "UNKNOWN_NFT"}
        if nft_id in self.owned_ids():
            return {"success": False, "error": "ALREADY_OWNED"}
        if not nft.predicate(self.store):
            return {"success": False, "error": "NOT_ELIGIBLE", "requirement": nft.requirement}
        if nft.price_bb > self.store.state.bb:
            return {"success": False, "error": "INSUFFICIENT_BB", "price": nft.price_bb}

        if nft.price_bb > 0 and not self.store.subtract_bb(nft.price_bb, action="nft_purchase"):
            return {"success": False, "error": "INSUFFICIENT_BB", "price": nft.price_bb}
        record = OwnedNFT(nft_id=nft_id, purchased_at=now, price_bb=nft.price_bb)
        self.put_owned([record, *self.owned()], action="nft_purchase")
        log.info("[Rewards] NFT %s purchased for %s BB", nft_id, nft.price_bb)
        return {"success": True, "nft": record}

    def to_remote(self) -> List[OwnedNFT]:
        return self.owned()

    def merge_remote(self, remote: List[OwnedNFT]) -> List[OwnedNFT]:
        merged = merge_by_key(self.owned(), remote, key=lambda n: n.nft_id, timestamp=lambda n: n.purchased_at)
        self.put_owned(merged, action="reconcile_rewards")
        return merged
