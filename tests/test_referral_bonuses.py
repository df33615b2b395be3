import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import select

from groomhub_api.models.loyalty import (
    REFERRAL_BONUS_REASON,
    LoyaltyAccount,
    LoyaltyPunch,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
)
from groomhub_api.services.loyalty import AwardEngine, LoyaltyConfigurationError, LoyaltyReferenceError


async def _account(session_factory, customer_id) -> LoyaltyAccount | None:
    async with session_factory() as session:
        result = await session.execute(select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer_id))
        return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_referrer_crosses_threshold_and_missing_referee_is_skipped(
    session_factory, seed_account, create_customer
) -> None:
    referrer_id = await seed_account(current_punches=8, total_visits=8)
    referee_id = await create_customer()
    appointment_id = uuid4()

    async with session_factory() as session:
        result = await AwardEngine(session).award_referral_bonuses(
            referrer_id, referee_id, appointment_id, referrer_bonus=1, referee_bonus=1, threshold=9
        )

    assert result.referrer.skipped is False
    assert result.referrer.reward_earned is True
    assert result.referrer.current_punches == 0
    assert result.referrer_bonus_awarded == 1
    assert result.referee.skipped is True
    assert result.referee_bonus_awarded == 0

    referrer = await _account(session_factory, referrer_id)
    assert referrer.current_punches == 0
    assert referrer.free_rewards_earned == 1
    assert referrer.total_visits == 8
    assert await _account(session_factory, referee_id) is None

    async with session_factory() as session:
        punches = (
            await session.execute(select(LoyaltyPunch).where(LoyaltyPunch.customer_id == referrer_id))
        ).scalars().all()
        redemptions = (
            await session.execute(select(LoyaltyRedemption).where(LoyaltyRedemption.account_id == referrer.id))
        ).scalars().all()

    assert [(p.reason, p.event_id, p.cycle_number, p.punch_sequence) for p in punches] == [
        (REFERRAL_BONUS_REASON, appointment_id, 1, 9)
    ]
    assert [r.status for r in redemptions] == [LoyaltyRedemptionStatus.PENDING]


@pytest.mark.asyncio
async def test_both_sides_receive_bonus_without_counting_visits(session_factory, seed_account) -> None:
    referrer_id = await seed_account(current_punches=2, total_visits=2)
    referee_id = await seed_account(current_punches=1, total_visits=1)

    async with session_factory() as session:
        result = await AwardEngine(session).award_referral_bonuses(
            referrer_id, referee_id, uuid4(), referrer_bonus=2, referee_bonus=1, threshold=9
        )

    assert result.referrer.current_punches == 4
    assert result.referee.current_punches == 2

    referrer = await _account(session_factory, referrer_id)
    referee = await _account(session_factory, referee_id)
    assert (referrer.current_punches, referrer.total_visits) == (4, 2)
    assert (referee.current_punches, referee.total_visits) == (2, 1)


@pytest.mark.asyncio
async def test_zero_bonus_side_is_skipped(session_factory, seed_account) -> None:
    referrer_id = await seed_account(current_punches=3, total_visits=3)
    referee_id = await seed_account(current_punches=3, total_visits=3)

    async with session_factory() as session:
        result = await AwardEngine(session).award_referral_bonuses(
            referrer_id, referee_id, uuid4(), referrer_bonus=0, referee_bonus=1, threshold=9
        )

    assert result.referrer.skipped is True
    assert result.referrer.current_punches == 3
    assert result.referee.current_punches == 4


@pytest.mark.asyncio
async def test_referral_uses_each_accounts_threshold_override(session_factory, seed_account) -> None:
    referrer_id = await seed_account(current_punches=2, total_visits=2, threshold_override=3)
    referee_id = await seed_account(current_punches=2, total_visits=2)

    async with session_factory() as session:
        result = await AwardEngine(session).award_referral_bonuses(
            referrer_id, referee_id, uuid4(), referrer_bonus=1, referee_bonus=1, threshold=9
        )

    assert result.referrer.reward_earned is True
    assert result.referee.reward_earned is False
    assert result.referee.current_punches == 3


@pytest.mark.asyncio
async def test_invalid_referral_inputs_are_rejected(session_factory, seed_account, reset_loyalty_store) -> None:
    customer_id = await seed_account(current_punches=1, total_visits=1)
    other_id = await seed_account(current_punches=1, total_visits=1)

    async with session_factory() as session:
        engine = AwardEngine(session)
        with pytest.raises(LoyaltyReferenceError):
            await engine.award_referral_bonuses(customer_id, customer_id, uuid4(), 1, 1, 9)
        with pytest.raises(LoyaltyConfigurationError):
            await engine.award_referral_bonuses(customer_id, other_id, uuid4(), 1, 1, 0)
        with pytest.raises(LoyaltyConfigurationError):
            await engine.award_referral_bonuses(customer_id, other_id, uuid4(), -1, 1, 9)

    account = await _account(session_factory, customer_id)
    assert account.current_punches == 1
    assert reset_loyalty_store.snapshot().failures == {
        "award_referral:reference": 1,
        "award_referral:configuration": 2,
    }


@pytest.mark.asyncio
async def test_opposite_order_referrals_do_not_deadlock(session_factory, seed_account) -> None:
    first_id = await seed_account(current_punches=0, total_visits=1)
    second_id = await seed_account(current_punches=0, total_visits=1)

    async def _run(referrer_id, referee_id):
        async with session_factory() as session:
            return await AwardEngine(session).award_referral_bonuses(referrer_id, referee_id, uuid4(), 1, 1, 9)

    await asyncio.wait_for(
        asyncio.gather(_run(first_id, second_id), _run(second_id, first_id)),
        timeout=10,
    )

    assert (await _account(session_factory, first_id)).current_punches == 2
    assert (await _account(session_factory, second_id)).current_punches == 2


@pytest.mark.asyncio
async def test_failing_before_commit_hook_rolls_back_bonuses(session_factory, seed_account) -> None:
    referrer_id = await seed_account(current_punches=2, total_visits=2)
    referee_id = await seed_account(current_punches=1, total_visits=1)
    seen = []

    async def reject(result):
        seen.append(result.referrer_bonus_awarded)
        raise LoyaltyReferenceError("referral already claimed")

    async with session_factory() as session:
        with pytest.raises(LoyaltyReferenceError, match="already claimed"):
            await AwardEngine(session).award_referral_bonuses(
                referrer_id, referee_id, uuid4(), 1, 1, 9, before_commit=reject
            )

    assert seen == [1]
    assert (await _account(session_factory, referrer_id)).current_punches == 2
    assert (await _account(session_factory, referee_id)).current_punches == 1
    async with session_factory() as session:
        bonus_rows = (
            await session.execute(select(LoyaltyPunch).where(LoyaltyPunch.reason == REFERRAL_BONUS_REASON))
        ).scalars().all()
    assert bonus_rows == []
