"""
Tests for the entitlement evaluator.

Covers check ordering, the tri-state remaining count and forex license
rules.
"""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from entitlements.models.license import ForexLicense, ForexPlanType, LicenseStatus, PaymentStatus
from entitlements.models.subscription import UNLIMITED, BillingCycle, PlanTier, SubscriptionStatus
from entitlements.services.entitlement_evaluator import (
    LICENSE_EXPIRED, PAPER_ONLY, PAYMENT_FAILED, PAYMENT_PENDING, SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_NOT_ACTIVE, EntitlementEvaluator
)
from entitlements.services.plan_catalog import PlanCatalog, _default_plans


@pytest.fixture
def evaluator(catalog):
    return EntitlementEvaluator(catalog, forex_daily_trade_limit=5)


class TestCanMakeTrade:
    """Test subscription trade permission."""

    def test_free_tier_allows_until_total_limit(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.FREE, BillingCycle.LIFETIME, total_trades_used=1)

        permission = evaluator.can_make_trade(subscription, clock())

        assert permission.allowed
        assert permission.remaining_trades == 1

    def test_free_tier_denied_at_limit(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.FREE, BillingCycle.LIFETIME, total_trades_used=2)

        permission = evaluator.can_make_trade(subscription, clock())

        assert not permission.allowed
        assert "2 trades total" in permission.reason
        assert permission.remaining_trades is None

    def test_free_tier_ignores_status_and_expiry(self, evaluator, make_subscription, clock):
        subscription = make_subscription(
            PlanTier.FREE,
            BillingCycle.LIFETIME,
            status=SubscriptionStatus.CANCELLED,
            end_date=clock() - timedelta(days=5)
        )

        assert evaluator.can_make_trade(subscription, clock()).allowed

    def test_inactive_checked_before_expiry(self, evaluator, make_subscription, clock):
        subscription = make_subscription(
            status=SubscriptionStatus.CANCELLED,
            end_date=clock() - timedelta(days=5)
        )

        permission = evaluator.can_make_trade(subscription, clock())

        assert permission.reason == SUBSCRIPTION_NOT_ACTIVE
        assert permission.remaining_trades is None

    def test_expired(self, evaluator, make_subscription, clock):
        subscription = make_subscription(end_date=clock() - timedelta(seconds=1))

        permission = evaluator.can_make_trade(subscription, clock())

        assert not permission.allowed
        assert permission.reason == SUBSCRIPTION_EXPIRED

    def test_lifetime_never_expires(self, evaluator, make_subscription, clock):
        subscription = make_subscription(
            PlanTier.ELITE, BillingCycle.LIFETIME, end_date=clock() - timedelta(days=1)
        )

        assert evaluator.can_make_trade(subscription, clock()).allowed

    def test_daily_limit_boundary(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.STARTER, daily_trades_used=24)

        permission = evaluator.can_make_trade(subscription, clock())
        assert permission.allowed
        assert permission.remaining_trades == 1

        subscription.daily_trades_used = 25
        permission = evaluator.can_make_trade(subscription, clock())
        assert not permission.allowed
        assert permission.remaining_trades == 0
        assert "25 trades/day" in permission.reason

    def test_unlimited_daily(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.ELITE, daily_trades_used=10_000)

        permission = evaluator.can_make_trade(subscription, clock())

        assert permission.allowed
        assert permission.remaining_trades == UNLIMITED

    def test_check_applies_lazy_reset(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.STARTER, daily_trades_used=25)
        now = clock.advance(hours=12)

        permission = evaluator.can_make_trade(subscription, now)

        assert permission.allowed
        assert permission.remaining_trades == 25
        assert subscription.daily_trades_used == 0

    def test_check_is_idempotent(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.PRO, daily_trades_used=40)

        first = evaluator.can_make_trade(subscription, clock())
        second = evaluator.can_make_trade(subscription, clock())

        assert first == second
        assert subscription.daily_trades_used == 40

    def test_remaining_field_omitted_when_not_computed(self, evaluator, make_subscription, clock):
        subscription = make_subscription(status=SubscriptionStatus.EXPIRED)

        data = evaluator.can_make_trade(subscription, clock()).to_dict()

        assert data == {"allowed": False, "reason": SUBSCRIPTION_NOT_ACTIVE}

    def test_plan_version_terms_are_used(self, make_subscription, clock):
        new_plans = _default_plans()
        starter = new_plans[PlanTier.STARTER]
        new_plans[PlanTier.STARTER] = dataclasses.replace(
            starter, features=dataclasses.replace(starter.features, daily_trade_limit=10)
        )
        catalog = PlanCatalog({"2026-01": _default_plans(), "2026-06": new_plans}, "2026-06")
        evaluator = EntitlementEvaluator(catalog)

        old_terms = make_subscription(PlanTier.STARTER, daily_trades_used=15, plan_version="2026-01")
        new_terms = make_subscription(PlanTier.STARTER, daily_trades_used=15, plan_version="2026-06")

        assert evaluator.can_make_trade(old_terms, clock()).remaining_trades == 10
        assert not evaluator.can_make_trade(new_terms, clock()).allowed


class TestVerifyTrade:
    """Test chain and paper trading gates."""

    def test_free_tier_paper_only(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.FREE, BillingCycle.LIFETIME)

        assert evaluator.verify_trade(subscription, 8453, is_paper_trade=True, now=clock()).allowed
        assert evaluator.verify_trade(subscription, 8453, now=clock()).reason == PAPER_ONLY

    def test_chain_not_in_plan(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.FREE, BillingCycle.LIFETIME)

        permission = evaluator.verify_trade(subscription, 1, is_paper_trade=True, now=clock())

        assert not permission.allowed
        assert "Chain not available on free plan" in permission.reason

    def test_quota_checked_first(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.STARTER, daily_trades_used=25)

        permission = evaluator.verify_trade(subscription, 999, now=clock())

        assert permission.remaining_trades == 0


class TestForexLicenseEvaluation:
    """Test forex license rules."""

    @pytest.fixture
    def forex_license(self, clock):
        return ForexLicense(
            license_key="FX-MO-USER0001-ABC123-ZZ99",
            user_id="user_1",
            plan_type=ForexPlanType.MONTHLY,
            status=LicenseStatus.ACTIVE,
            payment_status=PaymentStatus.COMPLETED,
            created_at=clock() - timedelta(days=1),
            expires_at=clock() + timedelta(days=29)
        )

    def test_payment_pending_checked_first(self, evaluator, forex_license, clock):
        forex_license.payment_status = PaymentStatus.PENDING
        forex_license.status = LicenseStatus.CANCELLED

        result = evaluator.evaluate_forex_license(forex_license, clock())

        assert not result.is_valid
        assert result.reason == PAYMENT_PENDING

    def test_payment_failed(self, evaluator, forex_license, clock):
        forex_license.payment_status = PaymentStatus.FAILED

        assert evaluator.evaluate_forex_license(forex_license, clock()).reason == PAYMENT_FAILED

    def test_status_not_active(self, evaluator, forex_license, clock):
        forex_license.status = LicenseStatus.CANCELLED

        result = evaluator.evaluate_forex_license(forex_license, clock())

        assert result.reason == "License is cancelled"

    def test_expired(self, evaluator, forex_license, clock):
        forex_license.expires_at = clock() - timedelta(minutes=1)

        result = evaluator.evaluate_forex_license(forex_license, clock())

        assert not result.is_valid
        assert result.reason == LICENSE_EXPIRED

    def test_lifetime_unlimited(self, evaluator, forex_license, clock):
        forex_license.plan_type = ForexPlanType.LIFETIME
        forex_license.expires_at = None
        forex_license.trades_used_today = 500
        forex_license.last_trade_date = clock()

        result = evaluator.evaluate_forex_license(forex_license, clock())

        assert result.can_trade
        assert result.trades_remaining is None

    def test_daily_limit_reached(self, evaluator, forex_license, clock):
        forex_license.trades_used_today = 5
        forex_license.last_trade_date = clock() - timedelta(hours=1)

        result = evaluator.evaluate_forex_license(forex_license, clock())

        assert result.is_valid
        assert not result.can_trade
        assert result.trades_remaining == 0

    def test_counter_from_previous_utc_day_is_ignored(self, evaluator, forex_license, clock):
        forex_license.trades_used_today = 5
        forex_license.last_trade_date = datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc)

        result = evaluator.evaluate_forex_license(forex_license, clock())

        assert result.can_trade
        assert result.trades_remaining == 5


class TestDisplayHelpers:

    def test_days_remaining(self, evaluator, make_subscription, clock):
        subscription = make_subscription(end_date=clock() + timedelta(days=2, hours=1))

        assert evaluator.days_remaining(subscription, clock()) == 3

    def test_days_remaining_lifetime(self, evaluator, make_subscription, clock):
        subscription = make_subscription(PlanTier.DESKTOP, BillingCycle.LIFETIME)

        assert evaluator.days_remaining(subscription, clock()) == UNLIMITED

    def test_renewal_reminders_in_future_only(self, evaluator, make_subscription, clock):
        subscription = make_subscription(end_date=clock() + timedelta(days=10))

        reminders = evaluator.renewal_reminders(subscription, (30, 7, 1), clock())

        assert reminders == [
            subscription.end_date - timedelta(days=7),
            subscription.end_date - timedelta(days=1),
        ]
