"""Loyalty service exports."""

from .award_engine import (  # noqa: F401
    AwardEngine,
    PunchAwardResult,
    ReferralBonusResult,
    ReferralSideResult,
    ThresholdOverrideResult,
)
from .errors import (  # noqa: F401
    LoyaltyAccountingError,
    LoyaltyConcurrencyError,
    LoyaltyConfigurationError,
    LoyaltyReferenceError,
    RedemptionNotAllowedError,
    ReferralError,
)
from .ledger import PlannedPunch, PunchPlan, plan_punches, resolve_threshold, settle_excess  # noqa: F401
from .punch_service import LoyaltyStatus, PunchAwardOutcome, PunchCardService  # noqa: F401
from .redemption import (  # noqa: F401
    AvailableReward,
    RedemptionEligibility,
    RedemptionReceipt,
    RedemptionService,
)
from .referrals import ReferralCompletion, ReferralService, ReferralStats  # noqa: F401
from .settings import LoyaltySettingsService, LoyaltySettingsSnapshot  # noqa: F401
