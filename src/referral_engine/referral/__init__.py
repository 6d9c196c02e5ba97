"""Referral attribution and reward module.

Two-sided reward once a referred user pairs into a shared account:
- Referrer gets premium forever on their first completed referral
- Referred user gets 30 days of premium unless already premium

The service lives in ``referral_engine.referral.service``.
"""

from referral_engine.referral.codes import ALPHABET, CODE_LENGTH, generate_code, is_valid_code
from referral_engine.referral.entitlement import get_premium_features, is_active_premium
from referral_engine.referral.schemas import (
    CompletionResult,
    InitResult,
    Outcome,
    PremiumSource,
    PremiumStatus,
    ReferralRecord,
    ReferralStats,
    ReferralStatus,
    User,
)

__all__ = [
    "ALPHABET",
    "CODE_LENGTH",
    "CompletionResult",
    "InitResult",
    "Outcome",
    "PremiumSource",
    "PremiumStatus",
    "ReferralRecord",
    "ReferralStats",
    "ReferralStatus",
    "User",
    "generate_code",
    "get_premium_features",
    "is_active_premium",
    "is_valid_code",
]
