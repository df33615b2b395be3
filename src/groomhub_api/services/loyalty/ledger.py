"""Pure punch-card arithmetic shared by the award engine and its tests."""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import LoyaltyConfigurationError


@dataclass(frozen=True, slots=True)
class PlannedPunch:
    cycle_number: int
    punch_sequence: int


@dataclass(frozen=True, slots=True)
class PunchPlan:
    """Outcome of granting punches against a card, before anything is written."""

    starting_cycle: int
    punches: tuple[PlannedPunch, ...]
    completed_cycles: tuple[int, ...]
    resulting_punches: int
    threshold: int = field(default=0)

    @property
    def reward_earned(self) -> bool:
        return bool(self.completed_cycles)

    @property
    def rewards_earned(self) -> int:
        return len(self.completed_cycles)


def resolve_threshold(default_threshold: int | None, override: int | None) -> int:
    """Return the threshold in force for one account."""

    threshold = override or default_threshold
    if threshold is None:
        raise LoyaltyConfigurationError("Punch threshold is not configured")
    if threshold <= 0:
        raise LoyaltyConfigurationError(f"Punch threshold must be positive, got {threshold}")
    return threshold


def plan_punches(
    *,
    current_punches: int,
    completed_cycles: int,
    punches_to_award: int,
    threshold: int,
) -> PunchPlan:
    """Lay out ``punches_to_award`` punches over the active and following cycles.

    The active cycle is ``completed_cycles + 1``. Sequences continue from
    ``current_punches``; the punch that reaches the threshold closes its cycle
    and the remainder carries into the next one starting at sequence 1.
    """

    if threshold <= 0:
        raise LoyaltyConfigurationError(f"Punch threshold must be positive, got {threshold}")
    if punches_to_award < 0:
        raise LoyaltyConfigurationError("Cannot award a negative number of punches")

    starting_cycle = completed_cycles + 1
    cycle = starting_cycle
    sequence = current_punches
    planned: list[PlannedPunch] = []
    closed: list[int] = []

    for _ in range(punches_to_award):
        sequence += 1
        planned.append(PlannedPunch(cycle_number=cycle, punch_sequence=sequence))
        if sequence >= threshold:
            closed.append(cycle)
            cycle += 1
            sequence = 0

    return PunchPlan(
        starting_cycle=starting_cycle,
        punches=tuple(planned),
        completed_cycles=tuple(closed),
        resulting_punches=sequence,
        threshold=threshold,
    )


def settle_excess(*, current_punches: int, completed_cycles: int, threshold: int) -> PunchPlan:
    """Close the cycles a lowered threshold has already filled.

    No punches are added. Each whole threshold held by the card completes one
    cycle; what is left carries into the next cycle so the card ends below the
    threshold.
    """

    if threshold <= 0:
        raise LoyaltyConfigurationError(f"Punch threshold must be positive, got {threshold}")

    starting_cycle = completed_cycles + 1
    cycle = starting_cycle
    remaining = current_punches
    closed: list[int] = []
    while remaining >= threshold:
        closed.append(cycle)
        cycle += 1
        remaining -= threshold

    return PunchPlan(
        starting_cycle=starting_cycle,
        punches=(),
        completed_cycles=tuple(closed),
        resulting_punches=remaining,
        threshold=threshold,
    )


__all__ = ["PlannedPunch", "PunchPlan", "plan_punches", "resolve_threshold", "settle_excess"]
