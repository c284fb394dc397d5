# 📂 backend/bunergy/telegram.py — мост хост-платформы (Telegram Mini App)
# -----------------------------------------------------------------------------
# Разбирает initData (query-строку, которую Telegram передаёт Mini App) и
# достаёт из неё пользователя и start_param (реферальный код из ссылки).
# Подпись initData не проверяется: аутентификация вне рамок проекта, Telegram ID
# считается доверенным.
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from pydantic import ValidationError

from .config import get_settings
from .schemas import TelegramUser

log = logging.getLogger("bunergy")
settings = get_settings()


def parse_init_data_fields(raw: str) -> Dict[str, str]:
    return dict(parse_qsl(raw or "", keep_blank_values=True))


def parse_init_data(raw: str) -> Optional[TelegramUser]:
    """initData → TelegramUser; нет поля user или оно битое → None."""
    fields = parse_init_data_fields(raw)
    user_raw = fields.get("user")
    if not user_raw:
        return None
    try:
        return TelegramUser.model_validate(json.loads(user_raw))
    except (ValueError, ValidationError) as e:
        log.warning("[Telegram] malformed init data user: %s", e)
        return None


def start_param(raw: str) -> Optional[str]:
    value = parse_init_data_fields(raw).get("start_param")
    return value or None


def user_language(user: TelegramUser) -> str:
    code = (user.language_code or "").split("-")[0].lower()
    return code if code in settings.SUPPORTED_LANGS else settings.DEFAULT_LANG


def identity_columns(user: TelegramUser, referral_code: Optional[str] = None) -> Dict[str, Any]:
    """Колонки идентичности строки profiles."""
    row: Dict[str, Any] = {
        "username": user.username,
        "first_name": user.first_name or None,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "language_code": user.language_code,
        "is_premium": user.is_premium,
    }
    if referral_code:
        row["referral_code"] = referral_code
    return row
