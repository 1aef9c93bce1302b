"""
Trade counter.

The only writer of trade counters. Each operation takes the record lock
from the repository, runs the entitlement check (including any lazy reset),
increments, and lets the repository commit, all as one atomic step.
"""

from typing import Optional

from entitlements.models.license import ForexTradeResult
from entitlements.models.subscription import (
    UNLIMITED, TradePermission, TradeRecordResult, UserSubscription
)
from entitlements.repositories.license_repository import LicenseRepository
from entitlements.repositories.subscription_repository import SubscriptionRepository
from entitlements.services.entitlement_evaluator import EntitlementEvaluator
from entitlements.services.license_codec import normalize_forex_key
from entitlements.services.reset_policy import apply_lazy_reset, is_new_utc_day
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import Clock, utc_now

logger = get_logger(__name__)

NO_SUBSCRIPTION = "No active subscription found"
LICENSE_NOT_FOUND = "License not found"


class TradeCounter:
    """Atomic check-and-increment for subscriptions and forex licenses."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        licenses: LicenseRepository,
        evaluator: EntitlementEvaluator,
        clock: Clock = utc_now
    ):
        self.subscriptions = subscriptions
        self.licenses = licenses
        self.evaluator = evaluator
        self.clock = clock

    async def check_trade(self, user_id: str) -> TradePermission:
        """Evaluate permission and persist any lazy reset it caused."""
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return TradePermission.deny(NO_SUBSCRIPTION)
            return self.evaluator.can_make_trade(subscription, self.clock())

    async def record_trade(self, user_id: str) -> TradeRecordResult:
        """Count one trade if the subscription still allows it.

        Returns the remaining count after the increment, ``-1`` meaning
        unlimited.
        """
        async with self.subscriptions.locked(user_id) as subscription:
            if subscription is None:
                return TradeRecordResult(False, TradePermission.deny(NO_SUBSCRIPTION))

            now = self.clock()
            permission = self.evaluator.can_make_trade(subscription, now)
            if not permission.allowed:
                logger.info(f"Trade rejected for user {user_id}: {permission.reason}")
                return TradeRecordResult(False, permission)

            remaining = self._increment(subscription, now)

        logger.info(f"Recorded trade for user {user_id}, remaining {remaining}")
        return TradeRecordResult(True, permission, remaining_trades=remaining)

    def _increment(self, subscription: UserSubscription, now) -> int:
        features = self.evaluator.plan_for(subscription).features

        if features.is_trial:
            subscription.total_trades_used += 1
            return max(0, features.total_trade_limit - subscription.total_trades_used)

        apply_lazy_reset(subscription, now)
        subscription.daily_trades_used += 1
        if not features.has_daily_limit:
            return UNLIMITED
        return max(0, features.daily_trade_limit - subscription.daily_trades_used)

    async def record_forex_trade(self, license_key: str) -> ForexTradeResult:
        """Count one trade against a forex license.

        Monthly licenses roll their counter on the UTC date. Lifetime
        licenses are never counted.
        """
        key = normalize_forex_key(license_key)

        async with self.licenses.locked_license(key) as forex_license:
            if forex_license is None:
                return ForexTradeResult(False, reason=LICENSE_NOT_FOUND)

            now = self.clock()
            result = self.evaluator.evaluate_forex_license(forex_license, now)
            if not result.is_valid or not result.can_trade:
                logger.info(f"Forex trade rejected for {key}: {result.reason}")
                return ForexTradeResult(False, reason=result.reason, trades_remaining=result.trades_remaining)

            if forex_license.is_lifetime:
                return ForexTradeResult(True, trades_remaining=None)

            if is_new_utc_day(forex_license.last_trade_date, now):
                forex_license.trades_used_today = 0
            forex_license.trades_used_today += 1
            forex_license.last_trade_date = now
            remaining: Optional[int] = max(
                0, self.evaluator.forex_daily_trade_limit - forex_license.trades_used_today
            )

        logger.info(f"Recorded forex trade for {key}, remaining {remaining}")
        return ForexTradeResult(True, trades_remaining=remaining)
