"""Redemption of earned free-service rewards and time-based expiry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.models.loyalty import LoyaltyAccount, LoyaltyRedemption, LoyaltyRedemptionStatus
from groomhub_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .errors import LoyaltyAccountingError, RedemptionNotAllowedError, translate_database_error
from .locks import AccountLockRegistry, account_guard
from .settings import (
    LoyaltySettingsService,
    LoyaltySettingsSnapshot,
    calculate_redemption_value,
    does_service_qualify,
    is_reward_expired,
)


@dataclass(frozen=True)
class AvailableReward:
    redemption_id: UUID
    cycle_number: int
    created_at: datetime
    is_expired: bool


@dataclass(frozen=True)
class RedemptionEligibility:
    allowed: bool
    reason: str | None
    available_rewards: int
    redemption_value: Decimal | None = None


@dataclass(frozen=True)
class RedemptionReceipt:
    redemption_id: UUID
    appointment_id: UUID
    cycle_number: int
    redemption_value: Decimal
    remaining_rewards: int
    redeemed_at: datetime


class RedemptionService:
    """Moves pending rewards to their terminal ``redeemed`` or ``expired`` state."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_service: LoyaltySettingsService | None = None,
        lock_registry: AccountLockRegistry | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._settings = settings_service or LoyaltySettingsService(db_session)
        self._locks = lock_registry
        self._observability = observability or get_loyalty_store()

    async def list_available(
        self, customer_id: UUID, *, now: datetime | None = None
    ) -> list[AvailableReward]:
        """Pending rewards, oldest first, flagged when already past expiry."""

        config = await self._settings.load()
        pending = await self._pending_for_customer(customer_id)
        return [
            AvailableReward(
                redemption_id=row.id,
                cycle_number=row.cycle_number,
                created_at=row.created_at,
                is_expired=is_reward_expired(row.created_at, config.expiration_days, now=now),
            )
            for row in pending
        ]

    async def check_eligibility(
        self,
        customer_id: UUID,
        service_id: UUID | str | None,
        service_price: Decimal | float,
        *,
        now: datetime | None = None,
    ) -> RedemptionEligibility:
        config = await self._settings.load()
        if not does_service_qualify(service_id, config.eligible_service_ids):
            return RedemptionEligibility(
                allowed=False,
                reason="Service is not eligible for loyalty redemption",
                available_rewards=0,
            )

        pending = await self._pending_for_customer(customer_id)
        usable = [
            row for row in pending if not is_reward_expired(row.created_at, config.expiration_days, now=now)
        ]
        if not pending:
            return RedemptionEligibility(
                allowed=False, reason="No available rewards to redeem", available_rewards=0
            )
        if not usable:
            return RedemptionEligibility(
                allowed=False, reason="All available rewards have expired", available_rewards=0
            )

        return RedemptionEligibility(
            allowed=True,
            reason=None,
            available_rewards=len(usable),
            redemption_value=calculate_redemption_value(service_price, config.max_value),
        )

    async def redeem(
        self,
        customer_id: UUID,
        appointment_id: UUID,
        service_id: UUID | str | None,
        service_price: Decimal | float,
        *,
        now: datetime | None = None,
    ) -> RedemptionReceipt:
        """Redeem the oldest usable reward against an appointment."""

        config = await self._settings.load()
        if not does_service_qualify(service_id, config.eligible_service_ids):
            raise RedemptionNotAllowedError("Service is not eligible for loyalty redemption")
        await self._db.commit()

        reference = now or datetime.now(timezone.utc)
        async with account_guard(self._db, [customer_id], self._locks):
            try:
                receipt = await self._redeem_locked(
                    customer_id,
                    appointment_id,
                    service_price,
                    config=config,
                    reference=reference,
                )
            except Exception as exc:
                await self._db.rollback()
                error = translate_database_error(exc)
                self._observability.record_failure("redeem", error.kind)
                if error is exc:
                    raise
                raise error from exc

        self._observability.record_redemption("redeemed")
        logger.info(
            "Redeemed loyalty reward",
            customer_id=str(customer_id),
            appointment_id=str(appointment_id),
            cycle_number=receipt.cycle_number,
            redemption_value=str(receipt.redemption_value),
            remaining_rewards=receipt.remaining_rewards,
        )
        return receipt

    async def _redeem_locked(
        self,
        customer_id: UUID,
        appointment_id: UUID,
        service_price: Decimal | float,
        *,
        config: LoyaltySettingsSnapshot,
        reference: datetime,
    ) -> RedemptionReceipt:
        account_stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.customer_id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = (await self._db.execute(account_stmt)).scalar_one_or_none()
        if account is None:
            raise RedemptionNotAllowedError("No loyalty account found")

        pending_stmt = (
            select(LoyaltyRedemption)
            .where(
                LoyaltyRedemption.account_id == account.id,
                LoyaltyRedemption.status == LoyaltyRedemptionStatus.PENDING,
            )
            .order_by(LoyaltyRedemption.created_at.asc(), LoyaltyRedemption.cycle_number.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        pending = list((await self._db.execute(pending_stmt)).scalars().all())
        if not pending:
            raise RedemptionNotAllowedError("No available rewards to redeem")

        usable: list[LoyaltyRedemption] = []
        expired = 0
        for row in pending:
            if is_reward_expired(row.created_at, config.expiration_days, now=reference):
                row.status = LoyaltyRedemptionStatus.EXPIRED
                row.expired_at = reference
                expired += 1
            else:
                usable.append(row)

        if not usable:
            # Expiring the stale rows is still recorded even though nothing is redeemed.
            await self._db.commit()
            self._observability.record_redemption("expired", expired)
            raise RedemptionNotAllowedError("All available rewards have expired")

        if (account.free_rewards_redeemed or 0) >= (account.free_rewards_earned or 0):
            raise LoyaltyAccountingError("Redeemed rewards would exceed earned rewards")

        reward = usable[0]
        value = calculate_redemption_value(service_price, config.max_value)
        reward.status = LoyaltyRedemptionStatus.REDEEMED
        reward.redeemed_at = reference
        reward.appointment_id = appointment_id
        reward.redemption_value = value
        account.free_rewards_redeemed = (account.free_rewards_redeemed or 0) + 1

        receipt = RedemptionReceipt(
            redemption_id=reward.id,
            appointment_id=appointment_id,
            cycle_number=reward.cycle_number,
            redemption_value=value,
            remaining_rewards=len(usable) - 1,
            redeemed_at=reference,
        )
        await self._db.commit()
        if expired:
            self._observability.record_redemption("expired", expired)
        return receipt

    async def expire_stale(self, *, reference_time: datetime | None = None) -> int:
        """Expire pending rewards older than the configured window; returns the count."""

        config = await self._settings.load()
        if config.expiration_days <= 0:
            return 0

        reference = reference_time or datetime.now(timezone.utc)
        cutoff = reference - timedelta(days=config.expiration_days)
        stmt = (
            select(LoyaltyRedemption)
            .where(
                LoyaltyRedemption.status == LoyaltyRedemptionStatus.PENDING,
                LoyaltyRedemption.created_at < cutoff,
            )
            .order_by(LoyaltyRedemption.created_at.asc())
            .with_for_update(skip_locked=True)
        )
        try:
            rows = list((await self._db.execute(stmt)).scalars().all())
            for row in rows:
                row.status = LoyaltyRedemptionStatus.EXPIRED
                row.expired_at = reference
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            error = translate_database_error(exc)
            self._observability.record_failure("expire_rewards", error.kind)
            if error is exc:
                raise
            raise error from exc

        if rows:
            self._observability.record_redemption("expired", len(rows))
            logger.info(
                "Expired stale loyalty rewards",
                expired=len(rows),
                expiration_days=config.expiration_days,
            )
        return len(rows)

    async def _pending_for_customer(self, customer_id: UUID) -> list[LoyaltyRedemption]:
        stmt = (
            select(LoyaltyRedemption)
            .join(LoyaltyAccount, LoyaltyAccount.id == LoyaltyRedemption.account_id)
            .where(
                LoyaltyAccount.customer_id == customer_id,
                LoyaltyRedemption.status == LoyaltyRedemptionStatus.PENDING,
            )
            .order_by(LoyaltyRedemption.created_at.asc(), LoyaltyRedemption.cycle_number.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = [
    "AvailableReward",
    "RedemptionEligibility",
    "RedemptionReceipt",
    "RedemptionService",
]
