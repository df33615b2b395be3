"""SQLAlchemy models package."""

from .customer import Customer  # noqa: F401
from .loyalty import (  # noqa: F401
    REFERRAL_BONUS_REASON,
    LoyaltyAccount,
    LoyaltyProgramSettings,
    LoyaltyPunch,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
)
from .referral import Referral, ReferralCode, ReferralStatus  # noqa: F401
