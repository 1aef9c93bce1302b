"""
Shared pytest fixtures for the entitlement tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from entitlements.config.settings import Settings, set_settings
from entitlements.models.subscription import (
    BillingCycle, PlanTier, SubscriptionStatus, UserSubscription
)
from entitlements.repositories.license_repository import InMemoryLicenseRepository
from entitlements.repositories.rate_limiter import InMemoryRateLimiter
from entitlements.repositories.subscription_repository import InMemorySubscriptionRepository
from entitlements.services.factory import build_services, set_services
from entitlements.services.plan_catalog import DEFAULT_CATALOG_VERSION, PlanCatalog, set_plan_catalog
from entitlements.services.reset_policy import next_reset_boundary


class FixedClock:
    """Controllable clock passed to services instead of the wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def catalog():
    return PlanCatalog.default()


@pytest.fixture
def make_subscription(clock):
    """Factory for subscription records relative to the test clock."""
    def _make(
        plan_tier: PlanTier = PlanTier.PRO,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        user_id: str = "user_1",
        **overrides
    ) -> UserSubscription:
        now = clock()
        fields = dict(
            id=f"sub_{user_id}",
            user_id=user_id,
            wallet_address="0xabc",
            plan_tier=plan_tier,
            billing_cycle=billing_cycle,
            status=SubscriptionStatus.ACTIVE,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=29),
            daily_trades_reset_at=next_reset_boundary(now, "UTC"),
            plan_version=DEFAULT_CATALOG_VERSION,
            created_at=now,
            updated_at=now
        )
        fields.update(overrides)
        return UserSubscription(**fields)

    return _make


@pytest.fixture
def settings():
    test_settings = Settings()
    test_settings.api.jwt_secret = "test-secret-key-with-enough-length-for-hs256"
    set_settings(test_settings)
    yield test_settings
    set_settings(None)


@pytest.fixture
def services(settings, catalog, clock):
    """Fully wired in-memory service container."""
    container = build_services(
        settings=settings,
        catalog=catalog,
        subscriptions=InMemorySubscriptionRepository(lock_timeout=1.0),
        licenses=InMemoryLicenseRepository(lock_timeout=1.0),
        rate_limiter=InMemoryRateLimiter(limit=3),
        clock=clock
    )
    set_services(container)
    set_plan_catalog(catalog)
    yield container
    set_services(None)
    set_plan_catalog(None)
