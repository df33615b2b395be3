"""Punch card loyalty models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from groomhub_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


REFERRAL_BONUS_REASON = "Referral Bonus"


class LoyaltyAccount(Base):
    """Per-customer punch card aggregate."""

    __tablename__ = "customer_loyalty"
    __table_args__ = (
        CheckConstraint("current_punches >= 0", name="current_punches_non_negative"),
        CheckConstraint("total_visits >= 0", name="total_visits_non_negative"),
        CheckConstraint("free_rewards_earned >= 0", name="rewards_earned_non_negative"),
        CheckConstraint("free_rewards_redeemed >= 0", name="rewards_redeemed_non_negative"),
        CheckConstraint(
            "free_rewards_redeemed <= free_rewards_earned",
            name="rewards_redeemed_within_earned",
        ),
        CheckConstraint(
            "threshold_override IS NULL OR threshold_override > 0",
            name="threshold_override_positive",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    current_punches = Column(Integer, nullable=False, default=0, server_default="0")
    total_visits = Column(Integer, nullable=False, default=0, server_default="0")
    free_rewards_earned = Column(Integer, nullable=False, default=0, server_default="0")
    free_rewards_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    threshold_override = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    customer = relationship("Customer", back_populates="loyalty_account")
    punches = relationship(
        "LoyaltyPunch", back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    redemptions = relationship(
        "LoyaltyRedemption", back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )

class LoyaltyPunch(Base):
    """Append-only punch ledger row."""

    __tablename__ = "loyalty_punches"
    __table_args__ = (
        Index("ix_loyalty_punches_account_cycle", "account_id", "cycle_number"),
        CheckConstraint("punch_sequence > 0", name="punch_sequence_positive"),
        CheckConstraint("cycle_number > 0", name="cycle_number_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("customer_loyalty.id", ondelete="CASCADE"), nullable=False
    )
    event_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)
    punch_sequence = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    granted_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="punches")


class LoyaltyRedemptionStatus(str, Enum):
    """Lifecycle for earned free-service rewards."""

    PENDING = "pending"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class LoyaltyRedemption(Base):
    """One earned reward, created pending when a cycle completes."""

    __tablename__ = "loyalty_redemptions"
    __table_args__ = (
        Index(
            "uq_loyalty_redemptions_pending_cycle",
            "account_id",
            "cycle_number",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("customer_loyalty.id", ondelete="CASCADE"), nullable=False
    )
    cycle_number = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(
            LoyaltyRedemptionStatus,
            name="loyalty_redemption_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=LoyaltyRedemptionStatus.PENDING,
        server_default=LoyaltyRedemptionStatus.PENDING.value,
    )
    appointment_id = Column(UUID(as_uuid=True), nullable=True)
    redemption_value = Column(Numeric(10, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("LoyaltyAccount", back_populates="redemptions")


class LoyaltyProgramSettings(Base):
    """Single-row program configuration maintained by salon admins."""

    __tablename__ = "loyalty_settings"
    __table_args__ = (
        CheckConstraint("id = 1", name="singleton"),
    )

    id = Column(Integer, primary_key=True, default=1)
    is_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    punch_threshold = Column(Integer, nullable=False, default=9, server_default="9")
    first_visit_bonus = Column(Integer, nullable=False, default=0, server_default="0")
    minimum_spend = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    qualifying_service_ids = Column(JSON, nullable=False, default=list)
    eligible_service_ids = Column(JSON, nullable=False, default=list)
    expiration_days = Column(Integer, nullable=False, default=0, server_default="0")
    max_value = Column(Numeric(10, 2), nullable=True)
    referral_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    referrer_bonus_punches = Column(Integer, nullable=False, default=1, server_default="1")
    referee_bonus_punches = Column(Integer, nullable=False, default=1, server_default="1")
    referral_code_max_uses = Column(Integer, nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )
