"""Subscription and plan data models.

These dataclasses describe the plan tiers a user can hold, the per-tier
feature set, and the mutable subscription record that the trade counter
updates on every check and trade.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


UNLIMITED = -1


class PlanTier(str, Enum):
    """Plan tiers offered by the platform."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ELITE = "elite"
    DESKTOP = "desktop"


class BillingCycle(str, Enum):
    """Supported billing cadences."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states. Records are never deleted."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"


class PaymentMethod(str, Enum):
    """How the subscription was paid for."""

    CRYPTO = "crypto"
    STRIPE = "stripe"
    PAYPAL = "paypal"


@dataclass(frozen=True, slots=True)
class PlanFeatures:
    """Limits and capability flags for a single plan tier.

    Numeric limits use ``-1`` for unlimited. ``total_trade_limit`` is only
    bounded for trial tiers.
    """

    daily_trade_limit: int
    total_trade_limit: int
    max_active_strategies: int
    allowed_strategies: FrozenSet[str]
    allowed_chains: FrozenSet[int]
    max_wallets: int
    auto_trading: bool = False
    arbitrage: bool = False
    custom_strategies: bool = False
    priority_support: bool = False
    api_access: bool = False
    webhooks: bool = False
    multi_wallet: bool = False
    performance_analytics: bool = False
    white_label: bool = False
    paper_trading: bool = False

    @property
    def is_trial(self) -> bool:
        """Trial tiers are capped by a lifetime trade count."""
        return self.total_trade_limit != UNLIMITED

    @property
    def has_daily_limit(self) -> bool:
        return self.daily_trade_limit != UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailyTradeLimit": self.daily_trade_limit,
            "totalTradeLimit": self.total_trade_limit,
            "maxActiveStrategies": self.max_active_strategies,
            "strategies": sorted(self.allowed_strategies),
            "chains": sorted(self.allowed_chains),
            "maxWallets": self.max_wallets,
            "autoTrading": self.auto_trading,
            "arbitrage": self.arbitrage,
            "customStrategies": self.custom_strategies,
            "prioritySupport": self.priority_support,
            "apiAccess": self.api_access,
            "webhooks": self.webhooks,
            "multiWallet": self.multi_wallet,
            "performanceAnalytics": self.performance_analytics,
            "whiteLabel": self.white_label,
            "paperTrading": self.paper_trading,
        }


@dataclass(frozen=True, slots=True)
class SubscriptionPlan:
    """Plan definition: pricing in whole USD plus the feature set."""

    tier: PlanTier
    name: str
    description: str
    monthly_price: int
    yearly_price: int
    lifetime_price: int
    yearly_discount: int
    features: PlanFeatures
    badge: Optional[str] = None

    def price_for(self, billing_cycle: BillingCycle) -> int:
        if billing_cycle == BillingCycle.MONTHLY:
            return self.monthly_price
        if billing_cycle == BillingCycle.YEARLY:
            return self.yearly_price
        return self.lifetime_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.tier.value,
            "name": self.name,
            "description": self.description,
            "monthlyPrice": self.monthly_price,
            "yearlyPrice": self.yearly_price,
            "lifetimePrice": self.lifetime_price,
            "yearlyDiscount": self.yearly_discount,
            "badge": self.badge,
            "features": self.features.to_dict(),
        }


@dataclass(slots=True)
class UserSubscription:
    """One subscription row per user."""

    id: str
    user_id: str
    wallet_address: Optional[str]
    plan_tier: PlanTier
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    daily_trades_reset_at: datetime
    auto_renew: bool = False
    daily_trades_used: int = 0
    total_trades_used: int = 0
    timezone: str = "UTC"
    plan_version: Optional[str] = None
    license_code: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    last_payment_date: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_lifetime(self) -> bool:
        return self.billing_cycle == BillingCycle.LIFETIME

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "walletAddress": self.wallet_address,
            "planTier": self.plan_tier.value,
            "billingCycle": self.billing_cycle.value,
            "status": self.status.value,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "autoRenew": self.auto_renew,
            "dailyTradesUsed": self.daily_trades_used,
            "dailyTradesResetAt": self.daily_trades_reset_at.isoformat(),
            "totalTradesUsed": self.total_trades_used,
            "timezone": self.timezone,
            "planVersion": self.plan_version,
            "licenseCode": self.license_code,
            "paymentMethod": self.payment_method.value if self.payment_method else None,
            "lastPaymentDate": self.last_payment_date.isoformat() if self.last_payment_date else None,
            "nextPaymentDate": self.next_payment_date.isoformat() if self.next_payment_date else None,
        }


@dataclass(slots=True)
class TradePermission:
    """Outcome of an entitlement check.

    ``remaining_trades`` is ``-1`` for unlimited and ``None`` when the check
    stopped before the quota was looked at.
    """

    allowed: bool
    reason: Optional[str] = None
    remaining_trades: Optional[int] = None

    @classmethod
    def deny(cls, reason: str, remaining_trades: Optional[int] = None) -> "TradePermission":
        return cls(allowed=False, reason=reason, remaining_trades=remaining_trades)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.remaining_trades is not None:
            result["remainingTrades"] = self.remaining_trades
        return result


@dataclass(slots=True)
class TradeRecordResult:
    """Outcome of recording a trade against a subscription."""

    success: bool
    permission: TradePermission
    remaining_trades: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.permission.reason is not None:
            result["reason"] = self.permission.reason
        if self.remaining_trades is not None:
            result["remainingTrades"] = self.remaining_trades
        return result
