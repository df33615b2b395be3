import pytest

from groomhub_api.services.loyalty import (
    LoyaltyConfigurationError,
    PlannedPunch,
    plan_punches,
    resolve_threshold,
    settle_excess,
)


def test_single_punch_starts_first_cycle() -> None:
    plan = plan_punches(current_punches=0, completed_cycles=0, punches_to_award=1, threshold=9)

    assert plan.starting_cycle == 1
    assert plan.punches == (PlannedPunch(cycle_number=1, punch_sequence=1),)
    assert plan.completed_cycles == ()
    assert plan.resulting_punches == 1
    assert plan.reward_earned is False


def test_punch_reaching_threshold_closes_cycle() -> None:
    plan = plan_punches(current_punches=8, completed_cycles=0, punches_to_award=1, threshold=9)

    assert plan.punches == (PlannedPunch(cycle_number=1, punch_sequence=9),)
    assert plan.completed_cycles == (1,)
    assert plan.resulting_punches == 0
    assert plan.reward_earned is True
    assert plan.rewards_earned == 1


def test_overflow_carries_into_next_cycle() -> None:
    plan = plan_punches(current_punches=8, completed_cycles=0, punches_to_award=3, threshold=9)

    assert plan.punches == (
        PlannedPunch(cycle_number=1, punch_sequence=9),
        PlannedPunch(cycle_number=2, punch_sequence=1),
        PlannedPunch(cycle_number=2, punch_sequence=2),
    )
    assert plan.completed_cycles == (1,)
    assert plan.resulting_punches == 2


def test_large_award_can_complete_several_cycles() -> None:
    plan = plan_punches(current_punches=0, completed_cycles=0, punches_to_award=5, threshold=2)

    assert [(p.cycle_number, p.punch_sequence) for p in plan.punches] == [
        (1, 1),
        (1, 2),
        (2, 1),
        (2, 2),
        (3, 1),
    ]
    assert plan.completed_cycles == (1, 2)
    assert plan.resulting_punches == 1


def test_active_cycle_follows_completed_cycles() -> None:
    plan = plan_punches(current_punches=3, completed_cycles=2, punches_to_award=1, threshold=9)

    assert plan.starting_cycle == 3
    assert plan.punches == (PlannedPunch(cycle_number=3, punch_sequence=4),)


def test_zero_punches_is_a_no_op() -> None:
    plan = plan_punches(current_punches=4, completed_cycles=1, punches_to_award=0, threshold=9)

    assert plan.punches == ()
    assert plan.resulting_punches == 4


def test_invalid_plans_are_rejected() -> None:
    with pytest.raises(LoyaltyConfigurationError):
        plan_punches(current_punches=0, completed_cycles=0, punches_to_award=1, threshold=0)
    with pytest.raises(LoyaltyConfigurationError):
        plan_punches(current_punches=0, completed_cycles=0, punches_to_award=-1, threshold=9)


def test_resolve_threshold_prefers_override() -> None:
    assert resolve_threshold(9, None) == 9
    assert resolve_threshold(9, 5) == 5

    with pytest.raises(LoyaltyConfigurationError):
        resolve_threshold(0, None)
    with pytest.raises(LoyaltyConfigurationError):
        resolve_threshold(None, None)
    with pytest.raises(LoyaltyConfigurationError):
        resolve_threshold(-3, None)


def test_settle_excess_closes_cycles_filled_by_a_lowered_threshold() -> None:
    plan = settle_excess(current_punches=7, completed_cycles=0, threshold=5)

    assert plan.punches == ()
    assert plan.completed_cycles == (1,)
    assert plan.resulting_punches == 2

    plan = settle_excess(current_punches=12, completed_cycles=3, threshold=5)

    assert plan.starting_cycle == 4
    assert plan.completed_cycles == (4, 5)
    assert plan.resulting_punches == 2


def test_settle_excess_leaves_a_card_below_threshold_alone() -> None:
    plan = settle_excess(current_punches=4, completed_cycles=1, threshold=5)

    assert plan.completed_cycles == ()
    assert plan.resulting_punches == 4
    assert plan.reward_earned is False

    with pytest.raises(LoyaltyConfigurationError):
        settle_excess(current_punches=4, completed_cycles=0, threshold=0)
