"""
Entitlement evaluator.

Decides whether a subscription or forex license may trade right now. The
subscription check is evaluated in a fixed order and the first failing rule
wins. The evaluator only applies the lazy daily reset to the record it is
handed; persisting that record is the trade counter's job.
"""

import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from entitlements.models.license import (
    ForexLicense, LicenseStatus, LicenseValidationResult, PaymentStatus
)
from entitlements.models.subscription import (
    UNLIMITED, SubscriptionPlan, SubscriptionStatus, TradePermission, UserSubscription
)
from entitlements.services.plan_catalog import PlanCatalog
from entitlements.services.reset_policy import apply_lazy_reset, is_new_utc_day
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import ensure_utc, utc_now

logger = get_logger(__name__)

SUBSCRIPTION_NOT_ACTIVE = "Subscription is not active"
SUBSCRIPTION_EXPIRED = "Subscription has expired"
PAYMENT_PENDING = "Payment is still pending. Please complete your purchase."
PAYMENT_FAILED = "Payment failed. Please try again."
LICENSE_EXPIRED = "License has expired. Please renew your subscription."
PAPER_ONLY = "Free tier only supports paper trading. Upgrade to Starter for real trades."
AUTO_TRADING_UNAVAILABLE = "Free tier does not have access to auto-trading"


class EntitlementEvaluator:
    """Trade-permission rules for subscriptions and forex licenses."""

    def __init__(self, catalog: PlanCatalog, forex_daily_trade_limit: int = 5):
        self.catalog = catalog
        self.forex_daily_trade_limit = forex_daily_trade_limit

    def plan_for(self, subscription: UserSubscription) -> SubscriptionPlan:
        return self.catalog.get_plan(subscription.plan_tier, subscription.plan_version)

    def can_make_trade(
        self,
        subscription: UserSubscription,
        now: Optional[datetime] = None
    ) -> TradePermission:
        """Decide whether ``subscription`` may place one more trade.

        May zero the daily counter on ``subscription`` when its reset
        boundary has passed.
        """
        now = ensure_utc(now or utc_now())
        features = self.plan_for(subscription).features

        # Trial tiers are capped by a lifetime count and nothing else
        if features.is_trial:
            limit = features.total_trade_limit
            if subscription.total_trades_used >= limit:
                return TradePermission.deny(
                    f"Free tier limit reached ({limit} trades total). "
                    f"Subscribe to a paid plan to continue trading."
                )
            return TradePermission(allowed=True, remaining_trades=limit - subscription.total_trades_used)

        if subscription.status != SubscriptionStatus.ACTIVE:
            return TradePermission.deny(SUBSCRIPTION_NOT_ACTIVE)

        if not subscription.is_lifetime and now > ensure_utc(subscription.end_date):
            return TradePermission.deny(SUBSCRIPTION_EXPIRED)

        if features.has_daily_limit:
            apply_lazy_reset(subscription, now)
            limit = features.daily_trade_limit
            if subscription.daily_trades_used >= limit:
                return TradePermission.deny(
                    f"Daily trade limit reached ({limit} trades/day). Upgrade to increase limit.",
                    remaining_trades=0
                )
            return TradePermission(allowed=True, remaining_trades=limit - subscription.daily_trades_used)

        return TradePermission(allowed=True, remaining_trades=UNLIMITED)

    def verify_trade(
        self,
        subscription: UserSubscription,
        chain_id: Optional[int] = None,
        is_paper_trade: bool = False,
        now: Optional[datetime] = None
    ) -> TradePermission:
        """Entitlement check plus chain and paper-trading gating for one order."""
        permission = self.can_make_trade(subscription, now)
        if not permission.allowed:
            return permission

        plan = self.plan_for(subscription)
        if chain_id is not None and chain_id not in plan.features.allowed_chains:
            return TradePermission.deny(
                f"Chain not available on {plan.tier.value} plan. Upgrade to access all chains."
            )

        if plan.features.paper_trading and not is_paper_trade:
            return TradePermission.deny(PAPER_ONLY)

        return permission

    def verify_bot_trade(
        self,
        subscription: UserSubscription,
        chain_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> TradePermission:
        """Permission for an order placed by the trading bot on the user's behalf.

        Status and expiry apply to every tier here, and trial tiers are
        refused outright before any quota is read.
        """
        now = ensure_utc(now or utc_now())
        if subscription.status != SubscriptionStatus.ACTIVE:
            return TradePermission.deny(f"Subscription is {subscription.status.value}", remaining_trades=0)
        if not subscription.is_lifetime and now > ensure_utc(subscription.end_date):
            return TradePermission.deny(SUBSCRIPTION_EXPIRED, remaining_trades=0)
        if self.plan_for(subscription).features.is_trial:
            return TradePermission.deny(AUTO_TRADING_UNAVAILABLE, remaining_trades=0)
        return self.verify_trade(subscription, chain_id, is_paper_trade=False, now=now)

    def evaluate_forex_license(
        self,
        forex_license: ForexLicense,
        now: Optional[datetime] = None
    ) -> LicenseValidationResult:
        """Decide whether a forex license may trade.

        Payment state is checked before status and expiry. Lifetime licenses
        are unlimited. Monthly licenses count trades per UTC calendar day.
        """
        now = ensure_utc(now or utc_now())

        if forex_license.payment_status == PaymentStatus.PENDING:
            return LicenseValidationResult(False, False, PAYMENT_PENDING, license=forex_license)
        if forex_license.payment_status == PaymentStatus.FAILED:
            return LicenseValidationResult(False, False, PAYMENT_FAILED, license=forex_license)

        if forex_license.status != LicenseStatus.ACTIVE:
            return LicenseValidationResult(
                False, False, f"License is {forex_license.status.value}", license=forex_license
            )

        if forex_license.is_lifetime:
            return LicenseValidationResult(True, True, trades_remaining=None, license=forex_license)

        if forex_license.expires_at is not None and ensure_utc(forex_license.expires_at) < now:
            return LicenseValidationResult(False, False, LICENSE_EXPIRED, license=forex_license)

        used = 0 if is_new_utc_day(forex_license.last_trade_date, now) else forex_license.trades_used_today
        remaining = max(0, self.forex_daily_trade_limit - used)
        if remaining == 0:
            return LicenseValidationResult(
                True,
                False,
                f"Daily trade limit reached ({self.forex_daily_trade_limit}/day). "
                f"Upgrade to lifetime for unlimited trades.",
                trades_remaining=0,
                license=forex_license
            )
        return LicenseValidationResult(True, True, trades_remaining=remaining, license=forex_license)

    def days_remaining(self, subscription: UserSubscription, now: Optional[datetime] = None) -> int:
        """Whole days left, rounded up; ``-1`` for lifetime."""
        if subscription.is_lifetime:
            return UNLIMITED
        now = ensure_utc(now or utc_now())
        seconds = (ensure_utc(subscription.end_date) - now).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    def remaining_daily_trades(self, subscription: UserSubscription) -> int:
        """Display-only figure from the stored counter; may be stale until the next check."""
        features = self.plan_for(subscription).features
        if not features.has_daily_limit:
            return UNLIMITED
        return max(0, features.daily_trade_limit - subscription.daily_trades_used)

    def renewal_reminders(
        self,
        subscription: UserSubscription,
        days_before: Iterable[int] = (30, 7, 1),
        now: Optional[datetime] = None
    ) -> List[datetime]:
        if subscription.is_lifetime:
            return []
        now = ensure_utc(now or utc_now())
        end_date = ensure_utc(subscription.end_date)
        reminders = [end_date - timedelta(days=days) for days in days_before]
        return [reminder for reminder in reminders if reminder > now]
