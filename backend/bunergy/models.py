# 📂 backend/bunergy/models.py — SQLAlchemy ORM-модели удалённого хранилища профилей
# -----------------------------------------------------------------------------
# Назначение:
#   • Таблицы «backend-as-a-service» хранилища: профиль игрока (одна строка на
#     Telegram ID, колонки 1:1 с PlayerState), детали постройки, история
#     конвертаций, журналы наград (daily / NFT / reward state / задания),
#     реферальные связи и реферальные начисления.
#
# Бизнес-правила:
#   • Разрешение конфликтов — на стороне приложения (reconcile.py); БД только
#     хранит последнюю записанную строку (last-write-wins по полю).
#   • BB — NUMERIC(30, 6); BZ / XP / счётчики — BIGINT.
#   • Поля, которые при сверке «побеждают с сервера» (энергия, бустеры,
#     QuickCharge), допускают NULL: NULL означает «на сервере нет значения».
#   • Время — TIMESTAMPTZ.
#
# Примечания:
#   • JSON вместо JSONB: те же модели работают и на SQLite (тесты).
#   • Создание таблиц — database.init_models() (create_all).
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from .config import get_settings

# -----------------------------------------------------------------------------
# Общая база ORM и имя схемы
# -----------------------------------------------------------------------------
Base = declarative_base()

settings = get_settings()
SCHEMA = settings.DB_SCHEMA


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Профиль игрока
# =============================================================================
class Profile(Base):
    """
    Строка профиля игрока. PK = Telegram ID (стабильная идентичность пользователя).
    """
    __tablename__ = "profiles"
    __table_args__ = (
        {"schema": SCHEMA},
    )

    telegram_id = Column(BigInteger, primary_key=True)
    username = Column(String(64), nullable=True)
    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)
    display_name = Column(String(128), nullable=True)
    language_code = Column(String(10), nullable=True)
    is_premium = Column(Boolean, nullable=True)
    referral_code = Column(String(16), nullable=True, unique=True)
    referred_by = Column(BigInteger, nullable=True)

    # Балансы и прогресс
    bz = Column(BigInteger, nullable=False, default=0)
    bb = Column(Numeric(30, 6), nullable=False, default=0)
    xp = Column(BigInteger, nullable=False, default=0)
    tier = Column(String(16), nullable=True)

    # Энергия
    energy = Column(Float, nullable=True)
    max_energy = Column(Integer, nullable=True)

    # Счётчики
    total_taps = Column(BigInteger, nullable=False, default=0)
    today_taps = Column(BigInteger, nullable=False, default=0)
    total_tap_income = Column(BigInteger, nullable=False, default=0)
    total_upgrades = Column(BigInteger, nullable=False, default=0)
    total_conversions = Column(BigInteger, nullable=False, default=0)
    referral_count = Column(Integer, nullable=False, default=0)

    # Бустеры
    booster_income_per_tap = Column(Integer, nullable=True)
    booster_energy_per_tap = Column(Integer, nullable=True)
    booster_energy_capacity = Column(Integer, nullable=True)
    booster_recovery_rate = Column(Integer, nullable=True)

    # QuickCharge
    quick_charge_uses_remaining = Column(Integer, nullable=True)
    quick_charge_cooldown_until = Column(DateTime(timezone=True), nullable=True)
    quick_charge_last_reset = Column(DateTime(timezone=True), nullable=True)

    # Пассивный доход
    last_idle_claim = Column(DateTime(timezone=True), nullable=True)
    bz_per_hour = Column(Numeric(30, 6), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# =============================================================================
# Постройка
# =============================================================================
class UserBuildPart(Base):
    __tablename__ = "user_build_parts"
    __table_args__ = (
        UniqueConstraint("telegram_id", "part_id", name="uq_build_parts_user_part"),
        {"schema": SCHEMA},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, nullable=False, index=True)
    part_id = Column(String(16), nullable=False)
    level = Column(Integer, nullable=False, default=0)
    is_upgrading = Column(Boolean, nullable=False, default=False)
    upgrade_started_at = Column(DateTime(timezone=True), nullable=True)
    upgrade_ends_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# =============================================================================
# История конвертаций
# =============================================================================
class ConversionHistory(Base):
    """
    Неизменяемая запись конвертации; id генерируется клиентом (UUID), поэтому
    локальная и удалённая копии сливаются по id.
    """
    __tablename__ = "conversion_history"
    __table_args__ = (
        Index("ix_conversion_history_user_created", "telegram_id", "created_at"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    telegram_id = Column(BigInteger, nullable=False)
    conversion_type = Column(String(16), nullable=False)
    input_amount = Column(Numeric(30, 6), nullable=False)
    output_amount = Column(Numeric(30, 6), nullable=False)
    bonus = Column(Numeric(30, 6), nullable=True)
    burned = Column(Numeric(30, 6), nullable=True)
    tier = Column(String(16), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# =============================================================================
# Награды
# =============================================================================
class UserDailyClaim(Base):
    __tablename__ = "user_daily_claims"
    __table_args__ = (
        UniqueConstraint("telegram_id", "week", "day", name="uq_daily_claims_user_week_day"),
        {"schema": SCHEMA},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, nullable=False, index=True)
    week = Column(Integer, nullable=False)
    day = Column(Integer, nullable=False)
    reward_type = Column(String(8), nullable=False)
    reward_amount = Column(Numeric(30, 6), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserNFT(Base):
    __tablename__ = "user_nfts"
    __table_args__ = (
        UniqueConstraint("telegram_id", "nft_id", name="uq_user_nfts_user_nft"),
        {"schema": SCHEMA},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, nullable=False, index=True)
    nft_id = Column(String(32), nullable=False)
    price_bb = Column(Numeric(30, 6), nullable=False, default=0)
    purchased_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserRewardState(Base):
    """
    Однострочное состояние наград игрока: стрик, неделя, дата последнего
    ежедневного клейма, недельные челленджи, реферальные вехи.
    При сверке побеждает строка с более свежей отметкой времени.
    """
    __tablename__ = "user_reward_state"
    __table_args__ = (
        {"schema": SCHEMA},
    )

    telegram_id = Column(BigInteger, primary_key=True)
    streak = Column(Integer, nullable=False, default=0)
    week = Column(Integer, nullable=False, default=1)
    last_daily_claim = Column(DateTime(timezone=True), nullable=True)
    weekly = Column(JSON, nullable=True)
    milestones_claimed = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserTaskProgress(Base):
    __tablename__ = "user_task_progress"
    __table_args__ = (
        UniqueConstraint("telegram_id", "task_id", name="uq_task_progress_user_task"),
        {"schema": SCHEMA},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, nullable=False, index=True)
    task_id = Column(String(32), nullable=False)
    reset_key = Column(String(16), nullable=False)
    baseline = Column(BigInteger, nullable=False, default=0)
    claimed = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# =============================================================================
# Рефералы
# =============================================================================
class Referral(Base):
    """
    Связь «пригласивший → приглашённый». У приглашённого не больше одного
    пригласившего (UNIQUE invitee_id).
    """
    __tablename__ = "referrals"
    __table_args__ = (
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    inviter_id = Column(BigInteger, nullable=False, index=True)
    invitee_id = Column(BigInteger, nullable=False, unique=True)
    referral_code = Column(String(16), nullable=True)
    bonus_claimed = Column(Boolean, nullable=False, default=False)
    invited_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)


class ReferralEarning(Base):
    """
    Накопленная доля (20 %) дохода приглашённого в пользу пригласившего.
    Открытая строка (claimed = FALSE) одна на пару; при клейме закрывается.
    """
    __tablename__ = "referral_earnings"
    __table_args__ = (
        Index("ix_referral_earnings_inviter_claimed", "inviter_id", "claimed"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    inviter_id = Column(BigInteger, nullable=False)
    invitee_id = Column(BigInteger, nullable=False)
    tap_earnings = Column(BigInteger, nullable=False, default=0)
    idle_earnings = Column(BigInteger, nullable=False, default=0)
    total_pending = Column(BigInteger, nullable=False, default=0)
    claimed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
