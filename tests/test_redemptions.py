from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from groomhub_api.models.loyalty import LoyaltyAccount, LoyaltyRedemption, LoyaltyRedemptionStatus
from groomhub_api.services.loyalty import (
    AwardEngine,
    LoyaltySettingsService,
    RedemptionNotAllowedError,
    RedemptionService,
)


async def _earn_rewards(session_factory, customer_id, rewards: int, threshold: int = 2) -> None:
    async with session_factory() as session:
        engine = AwardEngine(session)
        for _ in range(rewards * threshold):
            await engine.award_punch_for_appointment(customer_id, uuid4(), None, "Groom", threshold)


async def _age_rewards(session_factory, days: int) -> None:
    async with session_factory() as session:
        await session.execute(
            update(LoyaltyRedemption).values(created_at=datetime.now(timezone.utc) - timedelta(days=days))
        )
        await session.commit()


@pytest.mark.asyncio
async def test_redeem_oldest_pending_reward(session_factory, create_customer, reset_loyalty_store) -> None:
    customer_id = await create_customer()
    await _earn_rewards(session_factory, customer_id, rewards=2)
    appointment_id = uuid4()

    async with session_factory() as session:
        receipt = await RedemptionService(session).redeem(customer_id, appointment_id, uuid4(), Decimal("65.00"))

    assert receipt.cycle_number == 1
    assert receipt.redemption_value == Decimal("65.00")
    assert receipt.remaining_rewards == 1

    async with session_factory() as session:
        account = (
            await session.execute(select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer_id))
        ).scalar_one()
        rows = (
            await session.execute(
                select(LoyaltyRedemption)
                .where(LoyaltyRedemption.account_id == account.id)
                .order_by(LoyaltyRedemption.cycle_number)
            )
        ).scalars().all()

    assert account.free_rewards_earned == 2
    assert account.free_rewards_redeemed == 1
    assert [row.status for row in rows] == [LoyaltyRedemptionStatus.REDEEMED, LoyaltyRedemptionStatus.PENDING]
    assert rows[0].appointment_id == appointment_id
    assert rows[0].redeemed_at is not None
    assert reset_loyalty_store.snapshot().redemptions == {"redeemed": 1}


@pytest.mark.asyncio
async def test_redeem_without_rewards_is_not_allowed(session_factory, create_customer, seed_account) -> None:
    no_account = await create_customer()
    no_rewards = await seed_account(current_punches=3, total_visits=3)

    async with session_factory() as session:
        service = RedemptionService(session)
        with pytest.raises(RedemptionNotAllowedError, match="No loyalty account found"):
            await service.redeem(no_account, uuid4(), None, Decimal("40"))
        with pytest.raises(RedemptionNotAllowedError, match="No available rewards to redeem"):
            await service.redeem(no_rewards, uuid4(), None, Decimal("40"))


@pytest.mark.asyncio
async def test_rewards_cannot_be_redeemed_more_than_earned(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    await _earn_rewards(session_factory, customer_id, rewards=1)

    async with session_factory() as session:
        service = RedemptionService(session)
        await service.redeem(customer_id, uuid4(), None, Decimal("40"))
        with pytest.raises(RedemptionNotAllowedError):
            await service.redeem(customer_id, uuid4(), None, Decimal("40"))


@pytest.mark.asyncio
async def test_eligible_services_and_value_cap(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    eligible_service = uuid4()
    await _earn_rewards(session_factory, customer_id, rewards=1)

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(
            eligible_service_ids=[str(eligible_service)], max_value=Decimal("50")
        )
        service = RedemptionService(session)

        rejected = await service.check_eligibility(customer_id, uuid4(), Decimal("80"))
        assert rejected.allowed is False
        assert rejected.reason == "Service is not eligible for loyalty redemption"
        with pytest.raises(RedemptionNotAllowedError):
            await service.redeem(customer_id, uuid4(), uuid4(), Decimal("80"))

        eligibility = await service.check_eligibility(customer_id, eligible_service, Decimal("80"))
        assert eligibility.allowed is True
        assert eligibility.available_rewards == 1
        assert eligibility.redemption_value == Decimal("50")

        receipt = await service.redeem(customer_id, uuid4(), eligible_service, Decimal("80"))
    assert receipt.redemption_value == Decimal("50")


@pytest.mark.asyncio
async def test_expired_rewards_are_marked_and_not_redeemed(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    await _earn_rewards(session_factory, customer_id, rewards=1)
    await _age_rewards(session_factory, days=45)

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(expiration_days=30)
        service = RedemptionService(session)

        available = await service.list_available(customer_id)
        assert [reward.is_expired for reward in available] == [True]

        eligibility = await service.check_eligibility(customer_id, None, Decimal("40"))
        assert eligibility.allowed is False
        assert eligibility.reason == "All available rewards have expired"

        with pytest.raises(RedemptionNotAllowedError, match="expired"):
            await service.redeem(customer_id, uuid4(), None, Decimal("40"))

    async with session_factory() as session:
        statuses = (await session.execute(select(LoyaltyRedemption.status))).scalars().all()
    assert statuses == [LoyaltyRedemptionStatus.EXPIRED]


@pytest.mark.asyncio
async def test_expire_stale_sweep(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    await _earn_rewards(session_factory, customer_id, rewards=2)

    async with session_factory() as session:
        service = RedemptionService(session)
        assert await service.expire_stale() == 0

        await LoyaltySettingsService(session).update(expiration_days=30)
        assert await service.expire_stale() == 0

    await _age_rewards(session_factory, days=31)

    async with session_factory() as session:
        assert await RedemptionService(session).expire_stale() == 2
        remaining = await RedemptionService(session).list_available(customer_id)
    assert remaining == []
