"""Referral program models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from groomhub_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReferralCode(Base):
    """Shareable code owned by a referring customer."""

    __tablename__ = "referral_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code = Column(String(16), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    max_uses = Column(Integer, nullable=True)
    uses_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    customer = relationship("Customer")


class Referral(Base):
    """Referrer/referee pairing created when a new customer applies a code."""

    __tablename__ = "referrals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referee_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    referral_code_id = Column(
        UUID(as_uuid=True), ForeignKey("referral_codes.id", ondelete="SET NULL"), nullable=True
    )
    status = Column(
        SqlEnum(
            ReferralStatus,
            name="referral_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=ReferralStatus.PENDING,
        server_default=ReferralStatus.PENDING.value,
    )
    referrer_bonus_awarded = Column(Boolean, nullable=False, default=False, server_default="false")
    referee_bonus_awarded = Column(Boolean, nullable=False, default=False, server_default="false")
    appointment_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    referral_code = relationship("ReferralCode")
