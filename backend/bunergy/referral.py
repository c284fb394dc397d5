# 📂 backend/bunergy/referral.py — реферальная логика (связи, разовый бонус, доля 20 %)
# -----------------------------------------------------------------------------
# Работает поверх TableClient (SQL или HTTP), поэтому одинаково вызывается и
# из игровой сессии, и из серверного кода.
#
# Правила:
#   • приглашённый может иметь только одного пригласившего; себя пригласить нельзя;
#   • разовый бонус: пригласившему 1000 BZ + 1000 XP, приглашённому 500 BZ.
#     Функции только отмечают бонус в таблице и возвращают суммы: начисление
#     делает владелец состояния игрока (GameStore) на своей стороне;
#   • 20 % (вниз до целого) от дохода приглашённого с тапов и пассивного дохода
#     копится в открытой строке referral_earnings и забирается пригласившим.
#
# ПРИМЕЧАНИЕ: только прямые рефералы, без многоуровневого дерева.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional

from .remote_store import TableClient
from .utils import floor_int, gen_uuid, now_ts, to_ts

log = logging.getLogger("bunergy")

REFERRAL_CODE_PREFIX = "REF"
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 5

INVITER_BONUS_BZ = 1000
INVITER_BONUS_XP = 1000
INVITEE_BONUS_BZ = 500
EARNINGS_SHARE = 0.2

TAP = "tap"
IDLE = "idle"


def generate_referral_code() -> str:
    return REFERRAL_CODE_PREFIX + "".join(
        secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH)
    )


def referral_share(amount: int) -> int:
    return floor_int(max(int(amount), 0) * EARNINGS_SHARE)


async def find_inviter_by_code(client: TableClient, referral_code: str) -> Optional[int]:
    rows = await client.select("profiles", {"referral_code": referral_code.strip().upper()}, limit=1)
    if not rows:
        return None
    return int(rows[0]["telegram_id"])


async def get_referral(client: TableClient, invitee_id: int) -> Optional[Dict[str, Any]]:
    rows = await client.select("referrals", {"invitee_id": int(invitee_id)}, limit=1)
    return rows[0] if rows else None


async def create_referral(
    client: TableClient,
    inviter_id: int,
    invitee_id: int,
    referral_code: str,
) -> Dict[str, Any]:
    """Связь пригласивший → приглашённый + пустая строка начислений."""
    if int(inviter_id) == int(invitee_id):
        return {"success": False, "error": "SELF_REFERRAL"}
    if await get_referral(client, invitee_id) is not None:
        return {"success": False, "error": "ALREADY_REFERRED"}

    await client.upsert("referrals", [{
        "id": gen_uuid(),
        "inviter_id": int(inviter_id),
        "invitee_id": int(invitee_id),
        "referral_code": referral_code.upper(),
        "bonus_claimed": False,
        "invited_at": now_ts(),
    }])
    await client.upsert("referral_earnings", [{
        "id": gen_uuid(),
        "inviter_id": int(inviter_id),
        "invitee_id": int(invitee_id),
        "tap_earnings": 0,
        "idle_earnings": 0,
        "total_pending": 0,
        "claimed": False,
    }])
    await client.update("profiles", {"referred_by": int(inviter_id)}, {"telegram_id": int(invitee_id)})
    log.info("[Referral] %s invited %s", inviter_id, invitee_id)
    return {"success": True, "invitee_reward_bz": INVITEE_BONUS_BZ}


async def claim_referral_bonus(client: TableClient, inviter_id: int, invitee_id: int) -> Dict[str, Any]:
    rows = await client.select(
        "referrals", {"inviter_id": int(inviter_id), "invitee_id": int(invitee_id)}, limit=1
    )
    if not rows:
        return {"success": False, "error": "NOT_FOUND"}
    if rows[0].get("bonus_claimed"):
        return {"success": False, "error": "ALREADY_CLAIMED"}

    await client.update(
        "referrals",
        {"bonus_claimed": True, "claimed_at": now_ts()},
        {"id": rows[0]["id"]},
    )
    return {
        "success": True,
        "inviter_reward": {"bz": INVITER_BONUS_BZ, "xp": INVITER_BONUS_XP},
        "invitee_reward": INVITEE_BONUS_BZ,
    }


async def list_referrals(client: TableClient, inviter_id: int) -> List[Dict[str, Any]]:
    return await client.select("referrals", {"inviter_id": int(inviter_id)}, order_by="invited_at", desc=True)


async def count_referrals(client: TableClient, inviter_id: int) -> int:
    return len(await list_referrals(client, inviter_id))


async def _open_earning(client: TableClient, inviter_id: int, invitee_id: int) -> Optional[Dict[str, Any]]:
    rows = await client.select(
        "referral_earnings",
        {"inviter_id": int(inviter_id), "invitee_id": int(invitee_id), "claimed": False},
        limit=1,
    )
    return rows[0] if rows else None


async def record_referral_earnings(client: TableClient, invitee_id: int, amount: int, kind: str) -> int:
    """Начисляет пригласившему долю дохода приглашённого; возвращает долю (0 — нечего начислять)."""
    if kind not in (TAP, IDLE):
        raise ValueError(f"unknown earnings kind: {kind}")
    referral = await get_referral(client, invitee_id)
    if referral is None:
        return 0
    share = referral_share(amount)
    if share <= 0:
        return 0

    inviter_id = int(referral["inviter_id"])
    earning = await _open_earning(client, inviter_id, invitee_id)
    if earning is not None:
        values = {"total_pending": int(earning.get("total_pending") or 0) + share}
        column = "tap_earnings" if kind == TAP else "idle_earnings"
        values[column] = int(earning.get(column) or 0) + share
        await client.update("referral_earnings", values, {"id": earning["id"]})
    else:
        await client.upsert("referral_earnings", [{
            "id": gen_uuid(),
            "inviter_id": inviter_id,
            "invitee_id": int(invitee_id),
            "tap_earnings": share if kind == TAP else 0,
            "idle_earnings": share if kind == IDLE else 0,
            "total_pending": share,
            "claimed": False,
        }])
    return share


async def claim_pending_earnings(client: TableClient, inviter_id: int) -> Dict[str, Any]:
    rows = await client.select("referral_earnings", {"inviter_id": int(inviter_id), "claimed": False})
    total = sum(int(r.get("total_pending") or 0) for r in rows)
    if total <= 0:
        return {"success": False, "error": "NOTHING_TO_CLAIM", "amount": 0}

    claimed_at = now_ts()
    for r in rows:
        await client.update(
            "referral_earnings",
            {"claimed": True, "claimed_at": claimed_at},
            {"id": r["id"]},
        )
    log.info("[Referral] %s claimed %d BZ of referral earnings", inviter_id, total)
    return {"success": True, "amount": total}


async def get_referral_stats(client: TableClient, inviter_id: int) -> Dict[str, Any]:
    referrals = await list_referrals(client, inviter_id)
    earnings = await client.select("referral_earnings", {"inviter_id": int(inviter_id)})

    by_invitee: Dict[int, Dict[str, int]] = {}
    pending = 0
    claimed = 0
    for e in earnings:
        invitee = int(e["invitee_id"])
        earned = int(e.get("tap_earnings") or 0) + int(e.get("idle_earnings") or 0)
        slot = by_invitee.setdefault(invitee, {"total_earned": 0, "your_share": 0})
        slot["total_earned"] += earned
        if e.get("claimed"):
            claimed += int(e.get("total_pending") or 0)
        else:
            slot["your_share"] += int(e.get("total_pending") or 0)
            pending += int(e.get("total_pending") or 0)

    return {
        "total_referrals": len(referrals),
        "pending_earnings": pending,
        "total_claimed": claimed,
        "referrals": [
            {
                "invitee_id": int(r["invitee_id"]),
                "invited_at": to_ts(r.get("invited_at")),
                **by_invitee.get(int(r["invitee_id"]), {"total_earned": 0, "your_share": 0}),
            }
            for r in referrals
        ],
    }
