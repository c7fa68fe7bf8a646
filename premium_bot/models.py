from __future__ import annotations

from sqlalchemy import (
    Column, BigInteger, Integer, DateTime, Boolean, String,
    ForeignKey, Index, UniqueConstraint, func
)
from .database import Base


class SubscriptionType:
    SUBSCRIPTION = "subscription"
    ONETIME = "onetime"


class SubscriptionStatus:
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"


class TransactionStatus:
    PENDING = "PENDING"
    CREATED = "CREATED"
    PAID = "PAID"
    CANCELED = "CANCELED"
    FAILED = "FAILED"

    TERMINAL = (PAID, CANCELED, FAILED)


class User(Base):
    __tablename__ = "users"

    # Telegram ID -> BIGINT, auto-increment bo'lmasin!
    id = Column(BigInteger, primary_key=True, autoincrement=False)
    username = Column(String(64), nullable=True)

    subscription_type = Column(String(32), nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)
    is_kicked_out = Column(Boolean, default=False, nullable=False)

    has_received_free_bonus = Column(Boolean, default=False, nullable=False)
    free_bonus_received_at = Column(DateTime, nullable=True)
    had_paid_subscription_before_bonus = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False)
    service = Column(String(32), index=True, nullable=False)
    price = Column(Integer, nullable=False)  # tiyin
    duration_days = Column(Integer, server_default="30", nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    service = Column(String(32), nullable=False)

    subscription_type = Column(String(32), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    status = Column(String(16), index=True, default=SubscriptionStatus.ACTIVE, nullable=False)
    auto_renew = Column(Boolean, default=False, nullable=False)

    paid_by = Column(String(16), nullable=True)
    subscribed_by = Column(String(16), nullable=True)
    has_received_free_bonus = Column(Boolean, default=False, nullable=False)

    last_attempted_auto_subscription_at = Column(DateTime, nullable=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_warning_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    # bitta user + bitta servis = bitta yozuv, uzaytirish shu yozuvda
    __table_args__ = (UniqueConstraint("user_id", "service", name="uq_subscriptions_user_service"),)


class Card(Base):
    __tablename__ = "user_cards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    provider = Column(String(16), nullable=False)
    token = Column(String(256), nullable=False)
    masked_number = Column(String(32), nullable=False)
    verified = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    verified_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_user_cards_user_provider"),)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(16), index=True, nullable=False)
    payment_type = Column(String(32), nullable=True)

    # Click click_trans_id; hamma provayder oldindan bermaydi
    trans_id = Column(String(128), nullable=True)
    prepare_id = Column(BigInteger, nullable=True)

    amount = Column(Integer, nullable=False)  # tiyin
    status = Column(String(16), default=TransactionStatus.PENDING, nullable=False)
    provider_error = Column(Integer, nullable=True)
    receipt_id = Column(String(128), nullable=True)

    user_id = Column(
        BigInteger,
        ForeignKey("users.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    service = Column(String(32), nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    performed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)


# 1 ta transaction 2 marta ishlamasligi uchun (NULL lar unique emas):
Index("ix_transactions_trans_id", Transaction.trans_id, unique=True)
Index("ix_transactions_prepare", Transaction.trans_id, Transaction.prepare_id)
