"""
Data models for the entitlement engine.
"""
from .subscription import (
    UNLIMITED, PlanTier, BillingCycle, SubscriptionStatus, PaymentMethod,
    PlanFeatures, SubscriptionPlan, UserSubscription, TradePermission,
    TradeRecordResult
)
from .license import (
    ForexPlanType, LicenseStatus, PaymentStatus, CredentialKind, Credential,
    ForexLicense, LicenseCode, CodeValidation, LicenseValidationResult,
    ActivationResult, ForexTradeResult
)
from .payment import PaymentEvent, PaymentEventType

__all__ = [
    "UNLIMITED",
    "PlanTier",
    "BillingCycle",
    "SubscriptionStatus",
    "PaymentMethod",
    "PlanFeatures",
    "SubscriptionPlan",
    "UserSubscription",
    "TradePermission",
    "TradeRecordResult",
    "ForexPlanType",
    "LicenseStatus",
    "PaymentStatus",
    "CredentialKind",
    "Credential",
    "ForexLicense",
    "LicenseCode",
    "CodeValidation",
    "LicenseValidationResult",
    "ActivationResult",
    "ForexTradeResult",
    "PaymentEvent",
    "PaymentEventType",
]
