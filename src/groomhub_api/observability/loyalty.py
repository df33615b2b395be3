from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    awards: Dict[str, int]
    redemptions: Dict[str, int]
    referrals: Dict[str, int]
    failures: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "awards": dict(self.awards),
            "redemptions": dict(self.redemptions),
            "referrals": dict(self.referrals),
            "failures": dict(self.failures),
        }


class LoyaltyObservabilityStore:
    """Collect punch card telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._awards: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)

    def record_award(self, source: str, *, punches: int, rewards: int) -> None:
        with self._lock:
            self._awards[f"{source}:calls"] += 1
            self._awards["punches"] += punches
            self._awards["rewards_earned"] += rewards

    def record_redemption(self, event: str, count: int = 1) -> None:
        with self._lock:
            self._redemptions[event] += count

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_failure(self, operation: str, kind: str) -> None:
        with self._lock:
            self._failures[f"{operation}:{kind}"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                awards=dict(self._awards),
                redemptions=dict(self._redemptions),
                referrals=dict(self._referrals),
                failures=dict(self._failures),
            )

    def reset(self) -> None:
        with self._lock:
            self._awards.clear()
            self._redemptions.clear()
            self._referrals.clear()
            self._failures.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
