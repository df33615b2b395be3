"""Loyalty program configuration store."""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.core.settings import Settings, settings as app_settings
from groomhub_api.models.loyalty import LoyaltyProgramSettings

from .award_engine import AwardEngine, ThresholdOverrideResult
from .errors import LoyaltyConfigurationError


SETTINGS_ROW_ID = 1


@dataclass(frozen=True)
class LoyaltySettingsSnapshot:
    """Validated view of the program configuration at one point in time."""

    is_enabled: bool
    punch_threshold: int
    first_visit_bonus: int
    minimum_spend: Decimal
    qualifying_service_ids: tuple[str, ...]
    eligible_service_ids: tuple[str, ...]
    expiration_days: int
    max_value: Decimal | None
    referral_enabled: bool
    referrer_bonus_punches: int
    referee_bonus_punches: int
    referral_code_max_uses: int | None

    @classmethod
    def from_app_settings(cls, config: Settings) -> "LoyaltySettingsSnapshot":
        max_value = config.loyalty_reward_max_value
        return cls(
            is_enabled=config.loyalty_program_enabled,
            punch_threshold=config.loyalty_punch_threshold,
            first_visit_bonus=config.loyalty_first_visit_bonus,
            minimum_spend=Decimal(str(config.loyalty_minimum_spend)),
            qualifying_service_ids=tuple(config.loyalty_qualifying_service_ids),
            eligible_service_ids=tuple(config.loyalty_eligible_service_ids),
            expiration_days=config.loyalty_reward_expiration_days,
            max_value=Decimal(str(max_value)) if max_value is not None else None,
            referral_enabled=config.referral_program_enabled,
            referrer_bonus_punches=config.referral_referrer_bonus_punches,
            referee_bonus_punches=config.referral_referee_bonus_punches,
            referral_code_max_uses=config.referral_code_max_uses,
        )

    @classmethod
    def from_row(cls, row: LoyaltyProgramSettings) -> "LoyaltySettingsSnapshot":
        return cls(
            is_enabled=bool(row.is_enabled),
            punch_threshold=int(row.punch_threshold),
            first_visit_bonus=int(row.first_visit_bonus or 0),
            minimum_spend=Decimal(row.minimum_spend or 0),
            qualifying_service_ids=tuple(str(item) for item in row.qualifying_service_ids or []),
            eligible_service_ids=tuple(str(item) for item in row.eligible_service_ids or []),
            expiration_days=int(row.expiration_days or 0),
            max_value=Decimal(row.max_value) if row.max_value is not None else None,
            referral_enabled=bool(row.referral_enabled),
            referrer_bonus_punches=int(row.referrer_bonus_punches or 0),
            referee_bonus_punches=int(row.referee_bonus_punches or 0),
            referral_code_max_uses=row.referral_code_max_uses,
        )

    def validate(self) -> "LoyaltySettingsSnapshot":
        if self.punch_threshold is None or self.punch_threshold <= 0:
            raise LoyaltyConfigurationError(
                f"Punch threshold must be positive, got {self.punch_threshold}"
            )
        for name in ("first_visit_bonus", "referrer_bonus_punches", "referee_bonus_punches", "expiration_days"):
            value = getattr(self, name)
            if value < 0:
                raise LoyaltyConfigurationError(f"{name} must not be negative, got {value}")
        if self.minimum_spend < 0:
            raise LoyaltyConfigurationError("minimum_spend must not be negative")
        if self.max_value is not None and self.max_value <= 0:
            raise LoyaltyConfigurationError("max_value must be positive when set")
        if self.referral_code_max_uses is not None and self.referral_code_max_uses <= 0:
            raise LoyaltyConfigurationError("referral_code_max_uses must be positive when set")
        return self

    def as_dict(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


_UPDATABLE_FIELDS = {item.name for item in fields(LoyaltySettingsSnapshot)}
_NULLABLE_FIELDS = {"max_value", "referral_code_max_uses"}


def does_service_qualify(service_id: UUID | str | None, qualifying_service_ids: Iterable[str]) -> bool:
    """An empty qualifying list means every service earns punches."""

    allowed = {str(item) for item in qualifying_service_ids}
    if not allowed:
        return True
    return service_id is not None and str(service_id) in allowed


def meets_minimum_spend(total: Decimal | float | None, minimum_spend: Decimal) -> bool:
    if minimum_spend <= 0:
        return True
    return Decimal(str(total or 0)) >= minimum_spend


def is_reward_expired(created_at: datetime, expiration_days: int, *, now: datetime | None = None) -> bool:
    if expiration_days <= 0:
        return False
    reference = now or datetime.now(timezone.utc)
    return ensure_aware(created_at) < reference - timedelta(days=expiration_days)


def calculate_redemption_value(service_price: Decimal | float, max_value: Decimal | None) -> Decimal:
    price = Decimal(str(service_price))
    if max_value is None:
        return price
    return min(price, max_value)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LoyaltySettingsService:
    """Reads and writes the persisted loyalty program configuration."""

    def __init__(self, db_session: AsyncSession, *, defaults: Settings | None = None) -> None:
        self._db = db_session
        self._defaults = defaults or app_settings

    async def load(self) -> LoyaltySettingsSnapshot:
        """Return validated settings; env defaults apply until an admin saves a row."""

        row = await self._db.get(LoyaltyProgramSettings, SETTINGS_ROW_ID)
        if row is None:
            snapshot = LoyaltySettingsSnapshot.from_app_settings(self._defaults)
        else:
            snapshot = LoyaltySettingsSnapshot.from_row(row)
        return snapshot.validate()

    async def update(self, **changes: Any) -> LoyaltySettingsSnapshot:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise LoyaltyConfigurationError(f"Unknown loyalty settings: {', '.join(sorted(unknown))}")
        nulls = sorted(name for name, value in changes.items() if value is None and name not in _NULLABLE_FIELDS)
        if nulls:
            raise LoyaltyConfigurationError(f"Loyalty settings cannot be null: {', '.join(nulls)}")

        current = await self.load()
        merged = {**current.as_dict(), **changes}
        merged["minimum_spend"] = Decimal(str(merged["minimum_spend"]))
        if merged["max_value"] is not None:
            merged["max_value"] = Decimal(str(merged["max_value"]))
        merged["qualifying_service_ids"] = tuple(str(item) for item in merged["qualifying_service_ids"])
        merged["eligible_service_ids"] = tuple(str(item) for item in merged["eligible_service_ids"])
        snapshot = LoyaltySettingsSnapshot(**merged).validate()

        row = await self._db.get(LoyaltyProgramSettings, SETTINGS_ROW_ID)
        if row is None:
            row = LoyaltyProgramSettings(id=SETTINGS_ROW_ID)
            self._db.add(row)
        for name, value in snapshot.as_dict().items():
            if isinstance(value, tuple):
                value = list(value)
            setattr(row, name, value)

        await self._db.commit()
        logger.info("Updated loyalty settings", changed=sorted(changes))
        return snapshot

    async def set_threshold_override(
        self, customer_id: UUID, threshold: int | None
    ) -> ThresholdOverrideResult:
        """Set or clear the per-customer punch threshold.

        A threshold at or below the card's punches closes those cycles at once.
        """

        config = await self.load()
        await self._db.commit()
        return await AwardEngine(self._db).apply_threshold_override(
            customer_id, threshold, config.punch_threshold
        )


__all__ = [
    "LoyaltySettingsService",
    "LoyaltySettingsSnapshot",
    "calculate_redemption_value",
    "does_service_qualify",
    "ensure_aware",
    "is_reward_expired",
    "meets_minimum_spend",
]
