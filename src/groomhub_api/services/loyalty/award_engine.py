"""Atomic punch and reward accounting for a single customer event."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.models.customer import Customer
from groomhub_api.models.loyalty import (
    REFERRAL_BONUS_REASON,
    LoyaltyAccount,
    LoyaltyPunch,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
)
from groomhub_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from groomhub_api.observability.tracing import get_loyalty_tracer

from .errors import (
    LoyaltyAccountingError,
    LoyaltyConfigurationError,
    LoyaltyReferenceError,
    translate_database_error,
)
from .ledger import PunchPlan, plan_punches, resolve_threshold, settle_excess
from .locks import AccountLockRegistry, account_guard, get_account_lock_registry


@dataclass(frozen=True)
class PunchAwardResult:
    """Summary of one appointment award."""

    customer_id: UUID
    account_id: UUID
    punches_awarded: int
    current_punches: int
    threshold: int
    reward_earned: bool
    rewards_earned: int
    cycle_number: int
    is_first_visit: bool
    total_visits: int


@dataclass(frozen=True)
class ReferralSideResult:
    customer_id: UUID
    punches_awarded: int
    current_punches: int | None
    reward_earned: bool
    rewards_earned: int
    cycle_number: int | None
    skipped: bool


@dataclass(frozen=True)
class ReferralBonusResult:
    referrer: ReferralSideResult
    referee: ReferralSideResult

    @property
    def referrer_bonus_awarded(self) -> int:
        return self.referrer.punches_awarded

    @property
    def referee_bonus_awarded(self) -> int:
        return self.referee.punches_awarded


@dataclass(frozen=True)
class ThresholdOverrideResult:
    customer_id: UUID
    threshold_override: int | None
    threshold: int
    current_punches: int
    rewards_earned: int


BeforeCommitHook = Callable[[ReferralBonusResult], Awaitable[None]]


class AwardEngine:
    """Sole writer of loyalty account counters and the punch/redemption ledgers.

    Each public operation is one transaction: it locks the affected account
    rows, applies the punch plan, appends ledger rows and commits. Any failure
    rolls the whole unit back and is re-raised as a ``LoyaltyAccountingError``.
    The engine does not deduplicate events unless the caller asks it to with
    ``skip_if_event_awarded``.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        lock_registry: AccountLockRegistry | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._locks = lock_registry or get_account_lock_registry()
        self._observability = observability or get_loyalty_store()
        self._tracer = get_loyalty_tracer()

    async def award_punch_for_appointment(
        self,
        customer_id: UUID,
        appointment_id: UUID,
        service_id: UUID | str | None,
        service_name: str | None,
        threshold: int,
        first_visit_bonus: int = 0,
        *,
        skip_if_event_awarded: bool = False,
    ) -> PunchAwardResult | None:
        """Grant one punch (plus the first-visit bonus) for a completed appointment.

        With ``skip_if_event_awarded`` the appointment is checked under the
        account lock and ``None`` is returned when it already earned a punch.
        """

        with self._tracer.start_as_current_span("loyalty.award_punch_for_appointment") as span:
            span.set_attribute("loyalty.customer_id", str(customer_id))
            span.set_attribute("loyalty.appointment_id", str(appointment_id))

            async with account_guard(self._db, [customer_id], self._locks):
                try:
                    resolve_threshold(threshold, None)
                    if first_visit_bonus < 0:
                        raise LoyaltyConfigurationError("first_visit_bonus must not be negative")

                    account = await self._lock_or_create_account(customer_id)
                    if skip_if_event_awarded and await self._event_awarded(account, appointment_id):
                        await self._db.rollback()
                        result = None
                    else:
                        result = self._award_visit(
                            account,
                            appointment_id,
                            service_name,
                            threshold=threshold,
                            first_visit_bonus=first_visit_bonus,
                        )
                        await self._db.commit()
                except Exception as exc:
                    error = await self._fail("award_punch", exc)
                    if error is exc:
                        raise
                    raise error from exc

            span.set_attribute("loyalty.reward_earned", bool(result and result.reward_earned))

        if result is None:
            logger.info(
                "Loyalty punch already awarded for appointment",
                customer_id=str(customer_id),
                appointment_id=str(appointment_id),
            )
            return None

        self._observability.record_award(
            "appointment", punches=result.punches_awarded, rewards=result.rewards_earned
        )
        logger.info(
            "Awarded loyalty punches for appointment",
            customer_id=str(customer_id),
            appointment_id=str(appointment_id),
            service_id=str(service_id) if service_id else None,
            punches_awarded=result.punches_awarded,
            current_punches=result.current_punches,
            threshold=result.threshold,
            reward_earned=result.reward_earned,
            cycle_number=result.cycle_number,
        )
        return result

    async def award_referral_bonuses(
        self,
        referrer_id: UUID,
        referee_id: UUID,
        appointment_id: UUID,
        referrer_bonus: int,
        referee_bonus: int,
        threshold: int,
        *,
        before_commit: BeforeCommitHook | None = None,
    ) -> ReferralBonusResult:
        """Grant referral bonus punches to both sides in one transaction.

        A side without an existing loyalty account, or with a zero bonus, is
        skipped. Bonus punches never count as visits. ``before_commit`` runs
        with both accounts locked; if it raises, nothing is recorded.
        """

        with self._tracer.start_as_current_span("loyalty.award_referral_bonuses") as span:
            span.set_attribute("loyalty.referrer_id", str(referrer_id))
            span.set_attribute("loyalty.referee_id", str(referee_id))

            async with account_guard(self._db, [referrer_id, referee_id], self._locks):
                try:
                    resolve_threshold(threshold, None)
                    if referrer_bonus < 0 or referee_bonus < 0:
                        raise LoyaltyConfigurationError("Referral bonuses must not be negative")
                    if referrer_id == referee_id:
                        raise LoyaltyReferenceError("Referrer and referee must be different customers")

                    accounts = await self._lock_existing_accounts([referrer_id, referee_id])
                    referrer = self._apply_bonus(
                        referrer_id,
                        accounts.get(referrer_id),
                        referrer_bonus,
                        threshold=threshold,
                        event_id=appointment_id,
                    )
                    referee = self._apply_bonus(
                        referee_id,
                        accounts.get(referee_id),
                        referee_bonus,
                        threshold=threshold,
                        event_id=appointment_id,
                    )
                    result = ReferralBonusResult(referrer=referrer, referee=referee)
                    if before_commit is not None:
                        await before_commit(result)
                    await self._db.commit()
                except Exception as exc:
                    error = await self._fail("award_referral", exc)
                    if error is exc:
                        raise
                    raise error from exc

        self._observability.record_award(
            "referral",
            punches=referrer.punches_awarded + referee.punches_awarded,
            rewards=referrer.rewards_earned + referee.rewards_earned,
        )
        logger.info(
            "Awarded referral bonus punches",
            referrer_id=str(referrer_id),
            referee_id=str(referee_id),
            appointment_id=str(appointment_id),
            referrer_bonus_awarded=referrer.punches_awarded,
            referee_bonus_awarded=referee.punches_awarded,
            referrer_skipped=referrer.skipped,
            referee_skipped=referee.skipped,
        )
        return result

    async def apply_threshold_override(
        self,
        customer_id: UUID,
        threshold_override: int | None,
        default_threshold: int,
    ) -> ThresholdOverrideResult:
        """Set or clear a customer's threshold and close any cycles it already fills."""

        async with account_guard(self._db, [customer_id], self._locks):
            try:
                if threshold_override is not None and threshold_override <= 0:
                    raise LoyaltyConfigurationError(
                        f"Threshold override must be positive, got {threshold_override}"
                    )
                effective_threshold = resolve_threshold(default_threshold, threshold_override)

                account = (
                    await self._db.execute(self._account_for_update(customer_id))
                ).scalar_one_or_none()
                if account is None:
                    raise LoyaltyReferenceError(f"No loyalty account for customer {customer_id}")

                account.threshold_override = threshold_override
                settled = self._settle(account, effective_threshold)
                result = ThresholdOverrideResult(
                    customer_id=customer_id,
                    threshold_override=threshold_override,
                    threshold=effective_threshold,
                    current_punches=account.current_punches,
                    rewards_earned=settled.rewards_earned,
                )
                await self._db.commit()
            except Exception as exc:
                error = await self._fail("threshold_override", exc)
                if error is exc:
                    raise
                raise error from exc

        if result.rewards_earned:
            self._observability.record_award("threshold_override", punches=0, rewards=result.rewards_earned)
        logger.info(
            "Updated loyalty threshold override",
            customer_id=str(customer_id),
            threshold_override=threshold_override,
            current_punches=result.current_punches,
            rewards_earned=result.rewards_earned,
        )
        return result

    def _award_visit(
        self,
        account: LoyaltyAccount,
        appointment_id: UUID,
        service_name: str | None,
        *,
        threshold: int,
        first_visit_bonus: int,
    ) -> PunchAwardResult:
        effective_threshold = resolve_threshold(threshold, account.threshold_override)
        settled = self._settle(account, effective_threshold)

        is_first_visit = (account.total_visits or 0) == 0
        punches_to_award = 1 + (first_visit_bonus if is_first_visit else 0)
        plan = plan_punches(
            current_punches=account.current_punches or 0,
            completed_cycles=account.free_rewards_earned or 0,
            punches_to_award=punches_to_award,
            threshold=effective_threshold,
        )
        self._apply_plan(account, plan, event_id=appointment_id, reason=service_name)
        account.total_visits = (account.total_visits or 0) + 1

        rewards_earned = settled.rewards_earned + plan.rewards_earned
        return PunchAwardResult(
            customer_id=account.customer_id,
            account_id=account.id,
            punches_awarded=punches_to_award,
            current_punches=plan.resulting_punches,
            threshold=effective_threshold,
            reward_earned=rewards_earned > 0,
            rewards_earned=rewards_earned,
            cycle_number=plan.starting_cycle,
            is_first_visit=is_first_visit,
            total_visits=account.total_visits,
        )

    def _apply_bonus(
        self,
        customer_id: UUID,
        account: LoyaltyAccount | None,
        bonus: int,
        *,
        threshold: int,
        event_id: UUID,
    ) -> ReferralSideResult:
        if account is None or bonus <= 0:
            return ReferralSideResult(
                customer_id=customer_id,
                punches_awarded=0,
                current_punches=account.current_punches if account is not None else None,
                reward_earned=False,
                rewards_earned=0,
                cycle_number=None,
                skipped=True,
            )

        effective_threshold = resolve_threshold(threshold, account.threshold_override)
        settled = self._settle(account, effective_threshold)
        plan = plan_punches(
            current_punches=account.current_punches or 0,
            completed_cycles=account.free_rewards_earned or 0,
            punches_to_award=bonus,
            threshold=effective_threshold,
        )
        self._apply_plan(account, plan, event_id=event_id, reason=REFERRAL_BONUS_REASON)
        rewards_earned = settled.rewards_earned + plan.rewards_earned
        return ReferralSideResult(
            customer_id=customer_id,
            punches_awarded=bonus,
            current_punches=plan.resulting_punches,
            reward_earned=rewards_earned > 0,
            rewards_earned=rewards_earned,
            cycle_number=plan.starting_cycle,
            skipped=False,
        )

    def _settle(self, account: LoyaltyAccount, threshold: int) -> PunchPlan:
        """Bring a card left at or above a lowered threshold back under it."""

        plan = settle_excess(
            current_punches=account.current_punches or 0,
            completed_cycles=account.free_rewards_earned or 0,
            threshold=threshold,
        )
        if plan.completed_cycles:
            self._apply_plan(account, plan, event_id=None, reason=None)
            logger.info(
                "Settled loyalty card above its threshold",
                customer_id=str(account.customer_id),
                threshold=threshold,
                rewards_earned=plan.rewards_earned,
                current_punches=plan.resulting_punches,
            )
        return plan

    def _apply_plan(
        self,
        account: LoyaltyAccount,
        plan: PunchPlan,
        *,
        event_id: UUID | None,
        reason: str | None,
    ) -> None:
        for punch in plan.punches:
            self._db.add(
                LoyaltyPunch(
                    customer_id=account.customer_id,
                    account_id=account.id,
                    event_id=event_id,
                    cycle_number=punch.cycle_number,
                    punch_sequence=punch.punch_sequence,
                    reason=reason,
                )
            )
        for cycle_number in plan.completed_cycles:
            self._db.add(
                LoyaltyRedemption(
                    account_id=account.id,
                    cycle_number=cycle_number,
                    status=LoyaltyRedemptionStatus.PENDING,
                )
            )

        account.current_punches = plan.resulting_punches
        account.free_rewards_earned = (account.free_rewards_earned or 0) + plan.rewards_earned

    @property
    def _dialect_name(self) -> str:
        return self._db.get_bind().dialect.name

    def _account_for_update(self, customer_id: UUID):
        return (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.customer_id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    async def _event_awarded(self, account: LoyaltyAccount, event_id: UUID) -> bool:
        """Referral bonus punches share the appointment id and do not count."""

        stmt = select(func.count(LoyaltyPunch.id)).where(
            LoyaltyPunch.account_id == account.id,
            LoyaltyPunch.event_id == event_id,
            or_(LoyaltyPunch.reason.is_(None), LoyaltyPunch.reason != REFERRAL_BONUS_REASON),
        )
        return (await self._db.execute(stmt)).scalar_one() > 0

    async def _lock_or_create_account(self, customer_id: UUID) -> LoyaltyAccount:
        result = await self._db.execute(self._account_for_update(customer_id))
        account = result.scalar_one_or_none()
        if account is not None:
            return account

        customer = await self._db.get(Customer, customer_id)
        if customer is None:
            raise LoyaltyReferenceError(f"Customer {customer_id} does not exist")

        insert_factory = pg_insert if self._dialect_name == "postgresql" else sqlite_insert
        stmt = (
            insert_factory(LoyaltyAccount)
            .values(
                customer_id=customer_id,
                current_punches=0,
                total_visits=0,
                free_rewards_earned=0,
                free_rewards_redeemed=0,
            )
            .on_conflict_do_nothing(index_elements=[LoyaltyAccount.customer_id])
        )
        await self._db.execute(stmt)
        logger.info("Created loyalty account", customer_id=str(customer_id))

        result = await self._db.execute(self._account_for_update(customer_id))
        return result.scalar_one()

    async def _lock_existing_accounts(
        self, customer_ids: Sequence[UUID]
    ) -> dict[UUID, LoyaltyAccount]:
        """Lock accounts one by one in ascending customer id order."""

        accounts: dict[UUID, LoyaltyAccount] = {}
        for customer_id in sorted(set(customer_ids), key=str):
            result = await self._db.execute(self._account_for_update(customer_id))
            account = result.scalar_one_or_none()
            if account is not None:
                accounts[customer_id] = account
        return accounts

    async def _fail(self, operation: str, exc: Exception) -> LoyaltyAccountingError:
        await self._db.rollback()
        error = translate_database_error(exc)
        self._observability.record_failure(operation, error.kind)
        logger.warning(
            "Loyalty accounting operation rolled back",
            operation=operation,
            error_kind=error.kind,
            error=str(exc),
        )
        return error


__all__ = [
    "AwardEngine",
    "PunchAwardResult",
    "ReferralBonusResult",
    "ReferralSideResult",
    "ThresholdOverrideResult",
]
