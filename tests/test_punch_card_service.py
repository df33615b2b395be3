import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from groomhub_api.models.loyalty import LoyaltyPunch
from groomhub_api.services.loyalty import (
    AwardEngine,
    LoyaltyReferenceError,
    LoyaltySettingsService,
    PunchCardService,
)


@pytest.mark.asyncio
async def test_completed_appointment_earns_a_punch(session_factory, create_customer) -> None:
    customer_id = await create_customer()

    async with session_factory() as session:
        outcome = await PunchCardService(session).award_for_completed_appointment(
            customer_id,
            uuid4(),
            service_id=uuid4(),
            service_name="Full Groom",
            appointment_total=Decimal("85.00"),
        )

    assert outcome.awarded is True
    assert outcome.result.current_punches == 1
    assert outcome.message == "1/9 punches"


@pytest.mark.asyncio
async def test_disabled_program_awards_nothing(session_factory, create_customer) -> None:
    customer_id = await create_customer()

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(is_enabled=False)
        service = PunchCardService(session)
        outcome = await service.award_for_completed_appointment(
            customer_id, uuid4(), service_id=None, service_name="Bath"
        )
        status = await service.get_status(customer_id)

    assert outcome.awarded is False
    assert outcome.message == "Loyalty program is not enabled"
    assert status is None


@pytest.mark.asyncio
async def test_only_qualifying_services_earn_punches(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    groom_service = uuid4()

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(qualifying_service_ids=[str(groom_service)])
        service = PunchCardService(session)
        skipped = await service.award_for_completed_appointment(
            customer_id, uuid4(), service_id=uuid4(), service_name="Nail Trim"
        )
        awarded = await service.award_for_completed_appointment(
            customer_id, uuid4(), service_id=groom_service, service_name="Full Groom"
        )

    assert skipped.awarded is False
    assert awarded.awarded is True


@pytest.mark.asyncio
async def test_minimum_spend_is_enforced(session_factory, create_customer) -> None:
    customer_id = await create_customer()

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(minimum_spend=Decimal("40"))
        service = PunchCardService(session)
        below = await service.award_for_completed_appointment(
            customer_id, uuid4(), service_id=None, service_name="Nail Trim", appointment_total=Decimal("15")
        )
        above = await service.award_for_completed_appointment(
            customer_id, uuid4(), service_id=None, service_name="Full Groom", appointment_total=Decimal("40")
        )

    assert below.awarded is False
    assert "minimum spend" in below.message
    assert above.awarded is True


@pytest.mark.asyncio
async def test_same_appointment_is_not_awarded_twice(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    appointment_id = uuid4()

    async with session_factory() as session:
        service = PunchCardService(session)
        first = await service.award_for_completed_appointment(
            customer_id, appointment_id, service_id=None, service_name="Groom"
        )
        second = await service.award_for_completed_appointment(
            customer_id, appointment_id, service_id=None, service_name="Groom"
        )
        status = await service.get_status(customer_id)

    assert first.awarded is True
    assert second.awarded is False
    assert second.message == "Punch already awarded for this appointment"
    assert status.current_punches == 1
    assert status.total_visits == 1


@pytest.mark.asyncio
async def test_referral_bonus_on_same_appointment_does_not_block_award(session_factory, seed_account) -> None:
    customer_id = await seed_account(current_punches=1, total_visits=1)
    other_id = await seed_account(current_punches=1, total_visits=1)
    appointment_id = uuid4()

    async with session_factory() as session:
        await AwardEngine(session).award_referral_bonuses(other_id, customer_id, appointment_id, 1, 1, 9)
        outcome = await PunchCardService(session).award_for_completed_appointment(
            customer_id, appointment_id, service_id=None, service_name="Groom"
        )

    assert outcome.awarded is True
    assert outcome.result.current_punches == 3


@pytest.mark.asyncio
async def test_unknown_customer_error_propagates(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(LoyaltyReferenceError):
            await PunchCardService(session).award_for_completed_appointment(
                uuid4(), uuid4(), service_id=None, service_name="Groom"
            )


@pytest.mark.asyncio
async def test_status_and_history_reflect_awards(session_factory, create_customer) -> None:
    customer_id = await create_customer()

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(punch_threshold=2)
        service = PunchCardService(session)
        for name in ("Bath", "Groom", "Trim"):
            await service.award_for_completed_appointment(customer_id, uuid4(), service_id=None, service_name=name)

        status = await service.get_status(customer_id)
        history = await service.list_punches(customer_id, limit=10)

    assert status.current_punches == 1
    assert status.threshold == 2
    assert status.free_rewards_earned == 1
    assert status.rewards_available == 1
    assert len(history) == 3
    assert history[0].reason == "Trim"
    assert history[-1].reason == "Bath"


@pytest.mark.asyncio
async def test_concurrent_completions_of_one_appointment_award_once(session_factory, create_customer) -> None:
    customer_id = await create_customer()
    appointment_id = uuid4()

    async def complete():
        async with session_factory() as session:
            return await PunchCardService(session).award_for_completed_appointment(
                customer_id, appointment_id, service_id=None, service_name="Groom"
            )

    outcomes = await asyncio.gather(complete(), complete(), complete())

    async with session_factory() as session:
        punch_count = (
            await session.execute(select(func.count(LoyaltyPunch.id)).where(LoyaltyPunch.customer_id == customer_id))
        ).scalar_one()
        status = await PunchCardService(session).get_status(customer_id)

    assert sum(1 for outcome in outcomes if outcome.awarded) == 1
    assert [outcome.message for outcome in outcomes if not outcome.awarded] == [
        "Punch already awarded for this appointment"
    ] * 2
    assert punch_count == 1
    assert status.current_punches == 1
    assert status.total_visits == 1


@pytest.mark.asyncio
async def test_lowered_program_threshold_settles_card_on_next_award(session_factory, seed_account) -> None:
    customer_id = await seed_account(current_punches=7, total_visits=7)

    async with session_factory() as session:
        await LoyaltySettingsService(session).update(punch_threshold=5)
        outcome = await PunchCardService(session).award_for_completed_appointment(
            customer_id, uuid4(), service_id=None, service_name="Groom"
        )
        status = await PunchCardService(session).get_status(customer_id)

    assert outcome.awarded is True
    assert outcome.message == "Free service earned after 5 punches"
    assert outcome.result.rewards_earned == 1
    assert outcome.result.current_punches == 3
    assert outcome.result.cycle_number == 2
    assert status.current_punches < status.threshold
    assert status.free_rewards_earned == 1
    assert status.rewards_available == 1
