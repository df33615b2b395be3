"""Referral codes and the referral completion workflow."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.models.customer import Customer
from groomhub_api.models.referral import Referral, ReferralCode, ReferralStatus
from groomhub_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .award_engine import AwardEngine, ReferralBonusResult
from .errors import LoyaltyReferenceError, ReferralError
from .settings import LoyaltySettingsService


REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6,16}$")
REFERRAL_CODE_LENGTH = 8


def normalize_referral_code(code: str) -> str:
    return (code or "").strip().upper()


def is_valid_referral_code(code: str) -> bool:
    return bool(REFERRAL_CODE_PATTERN.match(normalize_referral_code(code)))


@dataclass(frozen=True)
class ReferralCompletion:
    referral: Referral
    bonuses: ReferralBonusResult


@dataclass(frozen=True)
class ReferralStats:
    referral_code: str | None
    total_referrals: int
    completed_referrals: int
    pending_referrals: int


class ReferralService:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_service: LoyaltySettingsService | None = None,
        engine: AwardEngine | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._settings = settings_service or LoyaltySettingsService(db_session)
        self._engine = engine or AwardEngine(db_session)
        self._observability = observability or get_loyalty_store()

    async def issue_code(self, customer_id: UUID) -> ReferralCode:
        """Return the customer's active code, creating one on first request."""

        config = await self._settings.load()
        if not config.referral_enabled:
            raise ReferralError("Referral program is not enabled")

        existing = await self._active_code_for(customer_id)
        if existing is not None:
            return existing

        if await self._db.get(Customer, customer_id) is None:
            raise LoyaltyReferenceError(f"Customer {customer_id} does not exist")

        code = ReferralCode(
            customer_id=customer_id,
            code=await self._generate_unique_code(),
            max_uses=config.referral_code_max_uses,
        )
        self._db.add(code)
        await self._db.commit()
        self._observability.record_referral_event("code_issued")
        logger.info("Issued referral code", customer_id=str(customer_id), code=code.code)
        return code

    async def apply_code(self, referee_id: UUID, code: str) -> Referral:
        """Link a new customer to the owner of ``code`` as a pending referral."""

        normalized = normalize_referral_code(code)
        if not REFERRAL_CODE_PATTERN.match(normalized):
            raise ReferralError("Invalid referral code format")

        config = await self._settings.load()
        if not config.referral_enabled:
            raise ReferralError("Referral program is not enabled")

        existing_stmt = select(Referral.id).where(Referral.referee_id == referee_id)
        if (await self._db.execute(existing_stmt)).first() is not None:
            raise ReferralError("You have already used a referral code")

        code_stmt = select(ReferralCode).where(ReferralCode.code == normalized).with_for_update()
        referral_code = (await self._db.execute(code_stmt)).scalar_one_or_none()
        if referral_code is None:
            raise ReferralError("Invalid referral code")
        if not referral_code.is_active:
            raise ReferralError("Referral code is no longer active")
        if referral_code.max_uses is not None and referral_code.uses_count >= referral_code.max_uses:
            raise ReferralError("Referral code has reached its usage limit")
        if referral_code.customer_id == referee_id:
            raise ReferralError("You cannot use your own referral code")
        if await self._db.get(Customer, referee_id) is None:
            raise LoyaltyReferenceError(f"Customer {referee_id} does not exist")

        referral = Referral(
            referrer_id=referral_code.customer_id,
            referee_id=referee_id,
            referral_code_id=referral_code.id,
            status=ReferralStatus.PENDING,
        )
        self._db.add(referral)
        referral_code.uses_count = (referral_code.uses_count or 0) + 1
        await self._db.commit()

        self._observability.record_referral_event("applied")
        logger.info(
            "Applied referral code",
            referrer_id=str(referral.referrer_id),
            referee_id=str(referee_id),
            code=normalized,
        )
        return referral

    async def complete_referral(self, referee_id: UUID, appointment_id: UUID) -> ReferralCompletion:
        """Award both sides for the referee's first completed appointment."""

        config = await self._settings.load()
        if not config.referral_enabled:
            raise ReferralError("Referral program is not enabled")

        stmt = select(Referral).where(
            Referral.referee_id == referee_id,
            Referral.status == ReferralStatus.PENDING,
        )
        referral = (await self._db.execute(stmt)).scalar_one_or_none()
        if referral is None:
            raise ReferralError("No pending referral found")
        referral_id = referral.id
        referrer_id = referral.referrer_id
        await self._db.commit()

        async def mark_completed(bonuses: ReferralBonusResult) -> None:
            # Runs inside the bonus transaction with both accounts locked.
            claim = (
                select(Referral)
                .where(Referral.id == referral_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            locked = (await self._db.execute(claim)).scalar_one()
            if locked.status != ReferralStatus.PENDING:
                raise ReferralError("No pending referral found")
            locked.status = ReferralStatus.COMPLETED
            locked.referrer_bonus_awarded = bonuses.referrer_bonus_awarded > 0
            locked.referee_bonus_awarded = bonuses.referee_bonus_awarded > 0
            locked.appointment_id = appointment_id
            locked.completed_at = datetime.now(timezone.utc)

        bonuses = await self._engine.award_referral_bonuses(
            referrer_id,
            referee_id,
            appointment_id,
            config.referrer_bonus_punches,
            config.referee_bonus_punches,
            config.punch_threshold,
            before_commit=mark_completed,
        )
        referral = await self._db.get(Referral, referral_id)

        self._observability.record_referral_event("completed")
        logger.info(
            "Completed referral",
            referral_id=str(referral.id),
            referrer_bonus_awarded=bonuses.referrer_bonus_awarded,
            referee_bonus_awarded=bonuses.referee_bonus_awarded,
        )
        return ReferralCompletion(referral=referral, bonuses=bonuses)

    async def stats(self, customer_id: UUID) -> ReferralStats:
        code = await self._active_code_for(customer_id)
        stmt = (
            select(Referral.status, func.count(Referral.id))
            .where(Referral.referrer_id == customer_id)
            .group_by(Referral.status)
        )
        counts = {status: count for status, count in (await self._db.execute(stmt)).all()}
        return ReferralStats(
            referral_code=code.code if code is not None else None,
            total_referrals=sum(counts.values()),
            completed_referrals=counts.get(ReferralStatus.COMPLETED, 0),
            pending_referrals=counts.get(ReferralStatus.PENDING, 0),
        )

    async def _active_code_for(self, customer_id: UUID) -> ReferralCode | None:
        stmt = (
            select(ReferralCode)
            .where(ReferralCode.customer_id == customer_id, ReferralCode.is_active.is_(True))
            .order_by(ReferralCode.created_at.asc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _generate_unique_code(self) -> str:
        candidate = uuid4().hex[:REFERRAL_CODE_LENGTH].upper()
        stmt = select(ReferralCode.id).where(ReferralCode.code == candidate)
        if (await self._db.execute(stmt)).first() is not None:
            return await self._generate_unique_code()
        return candidate


__all__ = [
    "ReferralCompletion",
    "ReferralService",
    "ReferralStats",
    "is_valid_referral_code",
    "normalize_referral_code",
]
