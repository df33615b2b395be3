"""API endpoints for punch cards, free-service rewards, and referrals."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from groomhub_api.api.dependencies.security import require_admin_api_key
from groomhub_api.db.session import get_session
from groomhub_api.models.loyalty import LoyaltyPunch
from groomhub_api.models.referral import Referral
from groomhub_api.observability.loyalty import get_loyalty_store
from groomhub_api.services.loyalty import (
    LoyaltyAccountingError,
    LoyaltyConcurrencyError,
    LoyaltyConfigurationError,
    LoyaltyReferenceError,
    LoyaltySettingsService,
    LoyaltySettingsSnapshot,
    PunchCardService,
    RedemptionNotAllowedError,
    RedemptionService,
    ReferralError,
    ReferralService,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class LoyaltyStatusResponse(BaseModel):
    customerId: UUID
    currentPunches: int
    threshold: int
    thresholdOverride: Optional[int]
    punchesRemaining: int
    totalVisits: int
    freeRewardsEarned: int
    freeRewardsRedeemed: int
    rewardsAvailable: int


class PunchResponse(BaseModel):
    id: UUID
    appointmentId: UUID
    cycleNumber: int
    punchSequence: int
    reason: Optional[str]
    grantedAt: datetime


class AwardPunchRequest(BaseModel):
    customerId: UUID = Field(..., description="Customer whose appointment was completed")
    serviceId: Optional[UUID] = Field(None, description="Service performed during the appointment")
    serviceName: Optional[str] = Field(None, description="Recorded as the punch reason")
    appointmentTotal: Optional[float] = Field(None, ge=0, description="Amount charged for the appointment")


class AwardPunchResponse(BaseModel):
    awarded: bool
    message: str
    punchesAwarded: int = 0
    currentPunches: Optional[int] = None
    threshold: Optional[int] = None
    rewardEarned: bool = False
    rewardsEarned: int = 0
    cycleNumber: Optional[int] = None
    isFirstVisit: bool = False


class AvailableRewardResponse(BaseModel):
    id: UUID
    cycleNumber: int
    createdAt: datetime
    isExpired: bool


class RewardsResponse(BaseModel):
    rewards: List[AvailableRewardResponse]
    availableCount: int


class RedemptionEligibilityResponse(BaseModel):
    allowed: bool
    reason: Optional[str]
    availableRewards: int
    redemptionValue: Optional[float]


class RedemptionCreateRequest(BaseModel):
    appointmentId: UUID
    serviceId: Optional[UUID] = None
    servicePrice: float = Field(..., ge=0)


class RedemptionReceiptResponse(BaseModel):
    id: UUID
    appointmentId: UUID
    cycleNumber: int
    redemptionValue: float
    remainingRewards: int
    redeemedAt: datetime


class LoyaltySettingsResponse(BaseModel):
    isEnabled: bool
    punchThreshold: int
    firstVisitBonus: int
    minimumSpend: float
    qualifyingServiceIds: List[str]
    eligibleServiceIds: List[str]
    expirationDays: int
    maxValue: Optional[float]
    referralEnabled: bool
    referrerBonusPunches: int
    refereeBonusPunches: int
    referralCodeMaxUses: Optional[int]


class LoyaltySettingsUpdateRequest(BaseModel):
    isEnabled: Optional[bool] = None
    punchThreshold: Optional[int] = None
    firstVisitBonus: Optional[int] = None
    minimumSpend: Optional[float] = None
    qualifyingServiceIds: Optional[List[str]] = None
    eligibleServiceIds: Optional[List[str]] = None
    expirationDays: Optional[int] = None
    maxValue: Optional[float] = None
    referralEnabled: Optional[bool] = None
    referrerBonusPunches: Optional[int] = None
    refereeBonusPunches: Optional[int] = None
    referralCodeMaxUses: Optional[int] = None


class ThresholdOverrideRequest(BaseModel):
    threshold: Optional[int] = Field(None, description="Custom punch threshold; null clears the override")


class ReferralCodeResponse(BaseModel):
    code: str
    isActive: bool
    usesCount: int
    maxUses: Optional[int]
    createdAt: datetime


class ReferralApplyRequest(BaseModel):
    refereeId: UUID
    code: str = Field(..., min_length=1)


class ReferralResponse(BaseModel):
    id: UUID
    referrerId: UUID
    refereeId: UUID
    status: str
    referrerBonusAwarded: bool
    refereeBonusAwarded: bool
    appointmentId: Optional[UUID]
    createdAt: datetime
    completedAt: Optional[datetime]


class ReferralCompleteRequest(BaseModel):
    refereeId: UUID
    appointmentId: UUID


class ReferralCompleteResponse(BaseModel):
    referral: ReferralResponse
    referrerPunchesAwarded: int
    refereePunchesAwarded: int
    referrerRewardEarned: bool
    refereeRewardEarned: bool


class ReferralStatsResponse(BaseModel):
    referralCode: Optional[str]
    totalReferrals: int
    completedReferrals: int
    pendingReferrals: int


_SETTINGS_FIELDS = {
    "isEnabled": "is_enabled",
    "punchThreshold": "punch_threshold",
    "firstVisitBonus": "first_visit_bonus",
    "minimumSpend": "minimum_spend",
    "qualifyingServiceIds": "qualifying_service_ids",
    "eligibleServiceIds": "eligible_service_ids",
    "expirationDays": "expiration_days",
    "maxValue": "max_value",
    "referralEnabled": "referral_enabled",
    "referrerBonusPunches": "referrer_bonus_punches",
    "refereeBonusPunches": "referee_bonus_punches",
    "referralCodeMaxUses": "referral_code_max_uses",
}


def _loyalty_http_error(exc: LoyaltyAccountingError) -> HTTPException:
    """Translate an accounting failure; nothing was recorded when this is raised."""

    if isinstance(exc, LoyaltyConfigurationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, LoyaltyConcurrencyError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, LoyaltyReferenceError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, RedemptionNotAllowedError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ReferralError):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("Loyalty accounting failed", error=str(exc))
    return HTTPException(
        status_code=status_code,
        detail={"message": str(exc), "kind": exc.kind, "rewardRecorded": False},
    )


def _serialize_settings(snapshot: LoyaltySettingsSnapshot) -> LoyaltySettingsResponse:
    return LoyaltySettingsResponse(
        isEnabled=snapshot.is_enabled,
        punchThreshold=snapshot.punch_threshold,
        firstVisitBonus=snapshot.first_visit_bonus,
        minimumSpend=float(snapshot.minimum_spend),
        qualifyingServiceIds=list(snapshot.qualifying_service_ids),
        eligibleServiceIds=list(snapshot.eligible_service_ids),
        expirationDays=snapshot.expiration_days,
        maxValue=float(snapshot.max_value) if snapshot.max_value is not None else None,
        referralEnabled=snapshot.referral_enabled,
        referrerBonusPunches=snapshot.referrer_bonus_punches,
        refereeBonusPunches=snapshot.referee_bonus_punches,
        referralCodeMaxUses=snapshot.referral_code_max_uses,
    )


def _serialize_punch(punch: LoyaltyPunch) -> PunchResponse:
    return PunchResponse(
        id=punch.id,
        appointmentId=punch.event_id,
        cycleNumber=punch.cycle_number,
        punchSequence=punch.punch_sequence,
        reason=punch.reason,
        grantedAt=punch.granted_at,
    )


def _serialize_referral(referral: Referral) -> ReferralResponse:
    return ReferralResponse(
        id=referral.id,
        referrerId=referral.referrer_id,
        refereeId=referral.referee_id,
        status=referral.status.value,
        referrerBonusAwarded=bool(referral.referrer_bonus_awarded),
        refereeBonusAwarded=bool(referral.referee_bonus_awarded),
        appointmentId=referral.appointment_id,
        createdAt=referral.created_at,
        completedAt=referral.completed_at,
    )


@router.get("/customers/{customer_id}", response_model=LoyaltyStatusResponse)
async def get_loyalty_status(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> LoyaltyStatusResponse:
    """Return the customer's punch card."""

    try:
        loyalty_status = await PunchCardService(db).get_status(customer_id)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    if loyalty_status is None:
        raise HTTPException(status_code=404, detail="Loyalty account not found")

    return LoyaltyStatusResponse(
        customerId=loyalty_status.customer_id,
        currentPunches=loyalty_status.current_punches,
        threshold=loyalty_status.threshold,
        thresholdOverride=loyalty_status.threshold_override,
        punchesRemaining=loyalty_status.punches_remaining,
        totalVisits=loyalty_status.total_visits,
        freeRewardsEarned=loyalty_status.free_rewards_earned,
        freeRewardsRedeemed=loyalty_status.free_rewards_redeemed,
        rewardsAvailable=loyalty_status.rewards_available,
    )


@router.get("/customers/{customer_id}/punches", response_model=List[PunchResponse])
async def list_customer_punches(
    customer_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
) -> List[PunchResponse]:
    punches = await PunchCardService(db).list_punches(customer_id, limit=limit)
    return [_serialize_punch(punch) for punch in punches]


@router.post(
    "/appointments/{appointment_id}/award",
    response_model=AwardPunchResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def award_appointment_punch(
    appointment_id: UUID,
    payload: AwardPunchRequest,
    db: AsyncSession = Depends(get_session),
) -> AwardPunchResponse:
    """Award the punch earned by a completed appointment."""

    service = PunchCardService(db)
    try:
        outcome = await service.award_for_completed_appointment(
            payload.customerId,
            appointment_id,
            service_id=payload.serviceId,
            service_name=payload.serviceName,
            appointment_total=Decimal(str(payload.appointmentTotal))
            if payload.appointmentTotal is not None
            else None,
        )
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc

    result = outcome.result
    if result is None:
        return AwardPunchResponse(awarded=False, message=outcome.message)
    return AwardPunchResponse(
        awarded=True,
        message=outcome.message,
        punchesAwarded=result.punches_awarded,
        currentPunches=result.current_punches,
        threshold=result.threshold,
        rewardEarned=result.reward_earned,
        rewardsEarned=result.rewards_earned,
        cycleNumber=result.cycle_number,
        isFirstVisit=result.is_first_visit,
    )


@router.get("/customers/{customer_id}/rewards", response_model=RewardsResponse)
async def list_customer_rewards(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RewardsResponse:
    try:
        rewards = await RedemptionService(db).list_available(customer_id)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return RewardsResponse(
        rewards=[
            AvailableRewardResponse(
                id=reward.redemption_id,
                cycleNumber=reward.cycle_number,
                createdAt=reward.created_at,
                isExpired=reward.is_expired,
            )
            for reward in rewards
        ],
        availableCount=sum(1 for reward in rewards if not reward.is_expired),
    )


@router.get(
    "/customers/{customer_id}/redemptions/eligibility",
    response_model=RedemptionEligibilityResponse,
)
async def check_redemption_eligibility(
    customer_id: UUID,
    service_price: float = Query(..., alias="servicePrice", ge=0),
    service_id: Optional[UUID] = Query(None, alias="serviceId"),
    db: AsyncSession = Depends(get_session),
) -> RedemptionEligibilityResponse:
    try:
        eligibility = await RedemptionService(db).check_eligibility(
            customer_id, service_id, Decimal(str(service_price))
        )
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return RedemptionEligibilityResponse(
        allowed=eligibility.allowed,
        reason=eligibility.reason,
        availableRewards=eligibility.available_rewards,
        redemptionValue=float(eligibility.redemption_value)
        if eligibility.redemption_value is not None
        else None,
    )


@router.post(
    "/customers/{customer_id}/redemptions",
    response_model=RedemptionReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def redeem_customer_reward(
    customer_id: UUID,
    payload: RedemptionCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionReceiptResponse:
    """Redeem the customer's oldest usable free-service reward."""

    try:
        receipt = await RedemptionService(db).redeem(
            customer_id,
            payload.appointmentId,
            payload.serviceId,
            Decimal(str(payload.servicePrice)),
        )
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return RedemptionReceiptResponse(
        id=receipt.redemption_id,
        appointmentId=receipt.appointment_id,
        cycleNumber=receipt.cycle_number,
        redemptionValue=float(receipt.redemption_value),
        remainingRewards=receipt.remaining_rewards,
        redeemedAt=receipt.redeemed_at,
    )


@router.get(
    "/settings",
    response_model=LoyaltySettingsResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def get_loyalty_settings(db: AsyncSession = Depends(get_session)) -> LoyaltySettingsResponse:
    try:
        snapshot = await LoyaltySettingsService(db).load()
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return _serialize_settings(snapshot)


@router.put(
    "/settings",
    response_model=LoyaltySettingsResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_loyalty_settings(
    payload: LoyaltySettingsUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> LoyaltySettingsResponse:
    changes: dict[str, Any] = {
        _SETTINGS_FIELDS[name]: value for name, value in payload.model_dump(exclude_unset=True).items()
    }
    try:
        snapshot = await LoyaltySettingsService(db).update(**changes)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return _serialize_settings(snapshot)


@router.put(
    "/customers/{customer_id}/threshold-override",
    response_model=LoyaltyStatusResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def set_threshold_override(
    customer_id: UUID,
    payload: ThresholdOverrideRequest,
    db: AsyncSession = Depends(get_session),
) -> LoyaltyStatusResponse:
    try:
        await LoyaltySettingsService(db).set_threshold_override(customer_id, payload.threshold)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return await get_loyalty_status(customer_id, db)


@router.post(
    "/customers/{customer_id}/referral-code",
    response_model=ReferralCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_referral_code(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ReferralCodeResponse:
    try:
        code = await ReferralService(db).issue_code(customer_id)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return ReferralCodeResponse(
        code=code.code,
        isActive=bool(code.is_active),
        usesCount=code.uses_count or 0,
        maxUses=code.max_uses,
        createdAt=code.created_at,
    )


@router.post(
    "/referrals/apply",
    response_model=ReferralResponse,
    status_code=status.HTTP_201_CREATED,
)
async def apply_referral_code(
    payload: ReferralApplyRequest,
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    try:
        referral = await ReferralService(db).apply_code(payload.refereeId, payload.code)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    return _serialize_referral(referral)


@router.post(
    "/referrals/complete",
    response_model=ReferralCompleteResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def complete_referral(
    payload: ReferralCompleteRequest,
    db: AsyncSession = Depends(get_session),
) -> ReferralCompleteResponse:
    """Award referral bonus punches once the referee completes an appointment."""

    try:
        completion = await ReferralService(db).complete_referral(payload.refereeId, payload.appointmentId)
    except LoyaltyAccountingError as exc:
        raise _loyalty_http_error(exc) from exc
    bonuses = completion.bonuses
    return ReferralCompleteResponse(
        referral=_serialize_referral(completion.referral),
        referrerPunchesAwarded=bonuses.referrer_bonus_awarded,
        refereePunchesAwarded=bonuses.referee_bonus_awarded,
        referrerRewardEarned=bonuses.referrer.reward_earned,
        refereeRewardEarned=bonuses.referee.reward_earned,
    )


@router.get("/customers/{customer_id}/referrals", response_model=ReferralStatsResponse)
async def get_referral_stats(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ReferralStatsResponse:
    stats = await ReferralService(db).stats(customer_id)
    return ReferralStatsResponse(
        referralCode=stats.referral_code,
        totalReferrals=stats.total_referrals,
        completedReferrals=stats.completed_referrals,
        pendingReferrals=stats.pending_referrals,
    )


@router.get("/observability", dependencies=[Depends(require_admin_api_key)])
async def get_loyalty_observability() -> dict[str, Any]:
    return get_loyalty_store().snapshot().as_dict()
