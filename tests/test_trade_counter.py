"""
Tests for trade counting.

Verifies the atomic check-and-increment under concurrency, trial and daily
quotas, forex UTC-day counting and persistence failure propagation.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from entitlements.common.exceptions import CredentialFormatError, PersistenceError
from entitlements.models.license import ForexLicense, ForexPlanType, LicenseStatus, PaymentStatus
from entitlements.models.subscription import UNLIMITED, BillingCycle, PlanTier
from entitlements.repositories.license_repository import InMemoryLicenseRepository
from entitlements.repositories.subscription_repository import InMemorySubscriptionRepository
from entitlements.services.entitlement_evaluator import EntitlementEvaluator
from entitlements.services.trade_counter import LICENSE_NOT_FOUND, NO_SUBSCRIPTION, TradeCounter

FOREX_KEY = "FX-MO-USER0001-ABC123-ZZ99"


class FailingSaveRepository(InMemorySubscriptionRepository):
    """Repository whose commits always fail."""

    async def save(self, subscription):
        raise PersistenceError("save_subscription", cause=ConnectionError("db down"))


@pytest.fixture
def subscriptions():
    return InMemorySubscriptionRepository(lock_timeout=0.5)


@pytest.fixture
def licenses():
    return InMemoryLicenseRepository(lock_timeout=0.5)


@pytest.fixture
def counter(subscriptions, licenses, catalog, clock):
    return TradeCounter(subscriptions, licenses, EntitlementEvaluator(catalog), clock=clock)


class TestSubscriptionTrades:
    """Test subscription trade counting."""

    @pytest.mark.asyncio
    async def test_no_subscription(self, counter):
        result = await counter.record_trade("ghost")

        assert not result.success
        assert result.permission.reason == NO_SUBSCRIPTION
        assert (await counter.check_trade("ghost")).reason == NO_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_free_tier_allows_exactly_two(self, counter, subscriptions, make_subscription):
        await subscriptions.create(make_subscription(PlanTier.FREE, BillingCycle.LIFETIME))

        first = await counter.record_trade("user_1")
        second = await counter.record_trade("user_1")
        third = await counter.record_trade("user_1")

        assert first.success and first.remaining_trades == 1
        assert second.success and second.remaining_trades == 0
        assert not third.success
        assert "Free tier limit reached" in third.permission.reason
        stored = await subscriptions.get("user_1")
        assert stored.total_trades_used == 2
        assert stored.daily_trades_used == 0

    @pytest.mark.asyncio
    async def test_daily_limit_then_reset(self, counter, subscriptions, make_subscription, clock):
        await subscriptions.create(make_subscription(PlanTier.STARTER, daily_trades_used=24))

        result = await counter.record_trade("user_1")
        assert result.success
        assert result.remaining_trades == 0

        denied = await counter.record_trade("user_1")
        assert not denied.success
        assert denied.permission.remaining_trades == 0

        clock.advance(hours=10)
        after_midnight = await counter.record_trade("user_1")
        assert after_midnight.success
        assert after_midnight.remaining_trades == 24

    @pytest.mark.asyncio
    async def test_unlimited_returns_sentinel(self, counter, subscriptions, make_subscription):
        await subscriptions.create(make_subscription(PlanTier.ELITE))

        result = await counter.record_trade("user_1")

        assert result.success
        assert result.remaining_trades == UNLIMITED
        assert (await subscriptions.get("user_1")).daily_trades_used == 1

    @pytest.mark.asyncio
    async def test_check_persists_reset(self, counter, subscriptions, make_subscription, clock):
        await subscriptions.create(make_subscription(PlanTier.PRO, daily_trades_used=100))
        clock.advance(hours=10)

        permission = await counter.check_trade("user_1")

        assert permission.allowed
        stored = await subscriptions.get("user_1")
        assert stored.daily_trades_used == 0
        assert stored.daily_trades_reset_at == datetime(2026, 3, 4, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_check_does_not_increment(self, counter, subscriptions, make_subscription):
        await subscriptions.create(make_subscription(PlanTier.PRO, daily_trades_used=3))

        await counter.check_trade("user_1")
        await counter.check_trade("user_1")

        assert (await subscriptions.get("user_1")).daily_trades_used == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts,used,expected", [(40, 0, 25), (10, 0, 10), (5, 23, 2)])
    async def test_concurrent_trades_never_exceed_limit(
        self, counter, subscriptions, make_subscription, attempts, used, expected
    ):
        await subscriptions.create(make_subscription(PlanTier.STARTER, daily_trades_used=used))

        results = await asyncio.gather(*(counter.record_trade("user_1") for _ in range(attempts)))

        assert sum(1 for result in results if result.success) == expected
        assert (await subscriptions.get("user_1")).daily_trades_used == used + expected

    @pytest.mark.asyncio
    async def test_concurrent_trial_trades(self, counter, subscriptions, make_subscription):
        await subscriptions.create(make_subscription(PlanTier.FREE, BillingCycle.LIFETIME))

        results = await asyncio.gather(*(counter.record_trade("user_1") for _ in range(8)))

        assert sum(1 for result in results if result.success) == 2
        assert (await subscriptions.get("user_1")).total_trades_used == 2


class TestPersistenceFailures:
    """Storage failures surface as errors, never as allow or deny."""

    @pytest.mark.asyncio
    async def test_save_failure_propagates(self, licenses, catalog, clock, make_subscription):
        repository = FailingSaveRepository()
        await repository.create(make_subscription(PlanTier.PRO, daily_trades_used=3))
        counter = TradeCounter(repository, licenses, EntitlementEvaluator(catalog), clock=clock)

        with pytest.raises(PersistenceError) as exc_info:
            await counter.record_trade("user_1")

        assert exc_info.value.retryable
        assert (await repository.get("user_1")).daily_trades_used == 3

    @pytest.mark.asyncio
    async def test_lock_timeout_is_persistence_error(self, licenses, catalog, clock, make_subscription):
        repository = InMemorySubscriptionRepository(lock_timeout=0.05)
        await repository.create(make_subscription(PlanTier.PRO))
        counter = TradeCounter(repository, licenses, EntitlementEvaluator(catalog), clock=clock)

        async with repository.locked("user_1"):
            with pytest.raises(PersistenceError):
                await counter.check_trade("user_1")


class TestForexTrades:
    """Test forex license trade counting."""

    @pytest.fixture
    def make_license(self, clock):
        def _make(plan_type=ForexPlanType.MONTHLY, **overrides):
            fields = dict(
                license_key=FOREX_KEY,
                user_id="user_1",
                plan_type=plan_type,
                status=LicenseStatus.ACTIVE,
                payment_status=PaymentStatus.COMPLETED,
                created_at=clock() - timedelta(days=1),
                expires_at=clock() + timedelta(days=29) if plan_type == ForexPlanType.MONTHLY else None
            )
            fields.update(overrides)
            return ForexLicense(**fields)
        return _make

    @pytest.mark.asyncio
    async def test_monthly_counts_per_utc_day(self, counter, licenses, make_license, clock):
        await licenses.insert_license(make_license())

        results = [await counter.record_forex_trade(FOREX_KEY) for _ in range(6)]

        assert [result.trades_remaining for result in results[:5]] == [4, 3, 2, 1, 0]
        assert not results[5].success
        assert results[5].trades_remaining == 0

        clock.advance(hours=9)
        next_day = await counter.record_forex_trade(FOREX_KEY)
        assert next_day.success
        assert next_day.trades_remaining == 4

        stored = await licenses.get_license(FOREX_KEY)
        assert stored.trades_used_today == 1
        assert stored.last_trade_date == clock()

    @pytest.mark.asyncio
    async def test_lifetime_not_counted(self, counter, licenses, make_license):
        await licenses.insert_license(make_license(ForexPlanType.LIFETIME, license_key=FOREX_KEY))

        for _ in range(20):
            result = await counter.record_forex_trade(FOREX_KEY.lower())
            assert result.success
            assert result.trades_remaining is None

        stored = await licenses.get_license(FOREX_KEY)
        assert stored.trades_used_today == 0
        assert stored.last_trade_date is None

    @pytest.mark.asyncio
    async def test_unknown_key(self, counter):
        result = await counter.record_forex_trade(FOREX_KEY)

        assert not result.success
        assert result.reason == LICENSE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_malformed_key(self, counter):
        with pytest.raises(CredentialFormatError):
            await counter.record_forex_trade("FX-123")

    @pytest.mark.asyncio
    async def test_concurrent_forex_trades(self, counter, licenses, make_license):
        await licenses.insert_license(make_license())

        results = await asyncio.gather(*(counter.record_forex_trade(FOREX_KEY) for _ in range(12)))

        assert sum(1 for result in results if result.success) == 5
        assert (await licenses.get_license(FOREX_KEY)).trades_used_today == 5
