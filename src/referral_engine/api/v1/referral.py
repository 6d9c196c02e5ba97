"""Referral API v1 endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from referral_engine.api.rate_limit import limiter, validate_limit
from referral_engine.logging_config import get_logger
from referral_engine.referral.schemas import (
    CompletionResult,
    InitResult,
    Outcome,
    PremiumFeatures,
    ReferralStats,
    User,
)
from referral_engine.referral.service import ReferralService, referral_service
from referral_engine.storage.repository import StorageError

logger = get_logger(__name__)

router = APIRouter(tags=["referral"])


def get_referral_service() -> ReferralService:
    """Dependency returning the referral service."""
    return referral_service


# ==================== MODELS ====================


class ValidateCodeRequest(BaseModel):
    """Request to validate a referral code."""
    code: str


class ValidateCodeResponse(BaseModel):
    """Response from code validation."""
    valid: bool
    code: str | None = None


class InitializeRequest(BaseModel):
    """Signup-time referral initialization."""
    user_id: str
    referred_by_code: str | None = None


class RegisterResponse(User):
    """Persisted user plus how attribution went."""
    referral_id: str | None = None
    outcome: Outcome = Outcome.OK


class CompleteRequest(BaseModel):
    """Account-pairing event."""
    account_id: str
    user_a_id: str
    user_b_id: str


# ==================== ENDPOINTS ====================


@router.post("/referral/validate", response_model=ValidateCodeResponse)
@limiter.limit(validate_limit)
async def validate_referral_code(
    request: Request,
    body: ValidateCodeRequest,
    service: ReferralService = Depends(get_referral_service),
):
    """Validate a referral code.

    Used by the signup form before the account is created.
    """
    try:
        owner = await service.validate_code(body.code)
    except StorageError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable")

    if owner is None:
        return ValidateCodeResponse(valid=False)
    return ValidateCodeResponse(valid=True, code=owner.referral_code)


@router.post("/referral/initialize", response_model=InitResult)
async def initialize_referral(
    body: InitializeRequest,
    service: ReferralService = Depends(get_referral_service),
):
    """Issue a referral code for a new user and record who referred them.

    Nothing is stored for the user itself: the caller merges the returned
    fields into its own user record. Use ``/referral/register`` otherwise.
    """
    return await service.initialize_referral(body.user_id, body.referred_by_code)


@router.post(
    "/referral/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_user(
    body: InitializeRequest,
    service: ReferralService = Depends(get_referral_service),
):
    """Create a user with a fresh referral code and record who referred them.

    For callers that let this service own the user record. Afterwards the
    new code resolves through ``/referral/validate`` and can be shared.
    """
    try:
        if await service.store.get_user(body.user_id) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")
        user, init = await service.register_user(body.user_id, body.referred_by_code)
    except StorageError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable")

    logger.info(
        "user_registered",
        user_id=user.user_id,
        referred_by_user_id=user.referred_by_user_id,
        outcome=init.outcome.value,
    )
    return RegisterResponse(
        **user.model_dump(),
        referral_id=init.referral_id,
        outcome=init.outcome,
    )


@router.post("/referral/complete", response_model=CompletionResult)
async def complete_referral(
    body: CompleteRequest,
    service: ReferralService = Depends(get_referral_service),
):
    """Complete pending referrals after two users pair into a shared account.

    Always answers 200; callers read ``success`` and may retry later.
    """
    return await service.complete_referral(body.account_id, body.user_a_id, body.user_b_id)


@router.get("/referral/stats/{user_id}", response_model=ReferralStats)
async def get_referral_stats(
    user_id: str,
    service: ReferralService = Depends(get_referral_service),
):
    """Get referral statistics for a user."""
    try:
        stats = await service.get_stats(user_id)
    except StorageError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable")

    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return stats


@router.get("/premium/{user_id}", response_model=PremiumFeatures)
async def get_premium_features(
    user_id: str,
    service: ReferralService = Depends(get_referral_service),
):
    """Get premium status and feature access for a user."""
    try:
        user = await service.store.get_user(user_id)
    except StorageError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable")

    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return service.get_premium_features(user)
