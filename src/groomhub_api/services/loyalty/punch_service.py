"""Earning workflow: decides whether a completed appointment earns a punch."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyPunch,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
)

from .award_engine import AwardEngine, PunchAwardResult
from .ledger import resolve_threshold
from .settings import LoyaltySettingsService, does_service_qualify, meets_minimum_spend


@dataclass(frozen=True)
class PunchAwardOutcome:
    awarded: bool
    message: str
    result: PunchAwardResult | None = None


@dataclass(frozen=True)
class LoyaltyStatus:
    """Read model for a customer's punch card."""

    customer_id: UUID
    current_punches: int
    threshold: int
    threshold_override: int | None
    total_visits: int
    free_rewards_earned: int
    free_rewards_redeemed: int
    rewards_available: int

    @property
    def punches_remaining(self) -> int:
        return max(self.threshold - self.current_punches, 0)


class PunchCardService:
    """Applies program rules, then delegates accounting to ``AwardEngine``."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_service: LoyaltySettingsService | None = None,
        engine: AwardEngine | None = None,
    ) -> None:
        self._db = db_session
        self._settings = settings_service or LoyaltySettingsService(db_session)
        self._engine = engine or AwardEngine(db_session)

    async def award_for_completed_appointment(
        self,
        customer_id: UUID,
        appointment_id: UUID,
        *,
        service_id: UUID | str | None,
        service_name: str | None,
        appointment_total: Decimal | float | None = None,
    ) -> PunchAwardOutcome:
        config = await self._settings.load()

        if not config.is_enabled:
            return PunchAwardOutcome(awarded=False, message="Loyalty program is not enabled")

        if not does_service_qualify(service_id, config.qualifying_service_ids):
            logger.debug(
                "Service does not qualify for loyalty punches",
                customer_id=str(customer_id),
                service_id=str(service_id) if service_id else None,
            )
            return PunchAwardOutcome(awarded=False, message="Service does not qualify for loyalty punches")

        if not meets_minimum_spend(appointment_total, config.minimum_spend):
            return PunchAwardOutcome(
                awarded=False,
                message=f"Appointment total is below the minimum spend of {config.minimum_spend}",
            )

        # The settings read opened a transaction; release it before the engine locks rows.
        await self._db.commit()

        result = await self._engine.award_punch_for_appointment(
            customer_id,
            appointment_id,
            service_id,
            service_name,
            config.punch_threshold,
            config.first_visit_bonus,
            skip_if_event_awarded=True,
        )
        if result is None:
            return PunchAwardOutcome(awarded=False, message="Punch already awarded for this appointment")
        if result.reward_earned:
            message = f"Free service earned after {result.threshold} punches"
        else:
            message = f"{result.current_punches}/{result.threshold} punches"
        return PunchAwardOutcome(awarded=True, message=message, result=result)

    async def get_status(self, customer_id: UUID) -> LoyaltyStatus | None:
        config = await self._settings.load()
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer_id)
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None:
            return None

        pending_stmt = select(func.count(LoyaltyRedemption.id)).where(
            LoyaltyRedemption.account_id == account.id,
            LoyaltyRedemption.status == LoyaltyRedemptionStatus.PENDING,
        )
        pending = (await self._db.execute(pending_stmt)).scalar_one()

        return LoyaltyStatus(
            customer_id=customer_id,
            current_punches=account.current_punches,
            threshold=resolve_threshold(config.punch_threshold, account.threshold_override),
            threshold_override=account.threshold_override,
            total_visits=account.total_visits,
            free_rewards_earned=account.free_rewards_earned,
            free_rewards_redeemed=account.free_rewards_redeemed,
            rewards_available=pending,
        )

    async def list_punches(self, customer_id: UUID, *, limit: int = 50) -> list[LoyaltyPunch]:
        """Return punch history, newest first."""

        stmt = (
            select(LoyaltyPunch)
            .where(LoyaltyPunch.customer_id == customer_id)
            .order_by(
                LoyaltyPunch.granted_at.desc(),
                LoyaltyPunch.cycle_number.desc(),
                LoyaltyPunch.punch_sequence.desc(),
            )
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = ["LoyaltyStatus", "PunchAwardOutcome", "PunchCardService"]
