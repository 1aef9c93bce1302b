"""
Service wiring.

Builds repositories and services for the configured storage backend and
keeps one process-wide container for the API layer.
"""

from dataclasses import dataclass
from typing import Optional

from entitlements.config.settings import RateLimitBackend, Settings, StorageBackend, get_settings
from entitlements.repositories.license_repository import InMemoryLicenseRepository, LicenseRepository
from entitlements.repositories.postgres_repository import (
    PostgresLicenseRepository, PostgresStore, PostgresSubscriptionRepository, PostgresUnitOfWork
)
from entitlements.repositories.rate_limiter import (
    InMemoryRateLimiter, RedisRateLimiter, ValidationRateLimiter
)
from entitlements.repositories.subscription_repository import (
    InMemorySubscriptionRepository, SubscriptionRepository
)
from entitlements.repositories.unit_of_work import InMemoryUnitOfWork, UnitOfWork
from entitlements.services.entitlement_evaluator import EntitlementEvaluator
from entitlements.services.license_service import LicenseService
from entitlements.services.plan_catalog import PlanCatalog, get_plan_catalog
from entitlements.services.subscription_service import SubscriptionService
from entitlements.services.trade_counter import TradeCounter
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import Clock, utc_now

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything the API layer needs."""

    catalog: PlanCatalog
    evaluator: EntitlementEvaluator
    subscriptions: SubscriptionRepository
    licenses: LicenseRepository
    counter: TradeCounter
    license_service: LicenseService
    subscription_service: SubscriptionService
    rate_limiter: ValidationRateLimiter
    unit_of_work: UnitOfWork
    store: Optional[PostgresStore] = None

    async def startup(self) -> None:
        if self.store is not None:
            await self.store.initialize_schema()

    async def shutdown(self) -> None:
        await self.rate_limiter.close()
        if self.store is not None:
            await self.store.pool_manager.close_pool(self.store.pool_id)


def build_services(
    settings: Optional[Settings] = None,
    catalog: Optional[PlanCatalog] = None,
    subscriptions: Optional[SubscriptionRepository] = None,
    licenses: Optional[LicenseRepository] = None,
    rate_limiter: Optional[ValidationRateLimiter] = None,
    unit_of_work: Optional[UnitOfWork] = None,
    clock: Clock = utc_now
) -> ServiceContainer:
    """Wire services from settings; explicit arguments override the configured backends."""
    settings = settings or get_settings()
    config = settings.entitlements
    catalog = catalog or get_plan_catalog()

    store = None
    if subscriptions is None or licenses is None:
        if config.storage_backend == StorageBackend.POSTGRES:
            store = PostgresStore(settings.database, acquire_timeout=config.persistence_timeout_seconds)
            unit_of_work = unit_of_work or PostgresUnitOfWork(store)
            subscriptions = subscriptions or PostgresSubscriptionRepository(store)
            licenses = licenses or PostgresLicenseRepository(store)
        else:
            subscriptions = subscriptions or InMemorySubscriptionRepository(config.persistence_timeout_seconds)
            licenses = licenses or InMemoryLicenseRepository(config.persistence_timeout_seconds)
    unit_of_work = unit_of_work or InMemoryUnitOfWork()

    if rate_limiter is None:
        if config.rate_limit_backend == RateLimitBackend.REDIS:
            rate_limiter = RedisRateLimiter(config.license_validation_rate_limit, config=settings.redis)
        else:
            rate_limiter = InMemoryRateLimiter(config.license_validation_rate_limit)

    evaluator = EntitlementEvaluator(catalog, forex_daily_trade_limit=config.forex_daily_trade_limit)
    counter = TradeCounter(subscriptions, licenses, evaluator, clock=clock)
    license_service = LicenseService(licenses, evaluator, license_days=config.forex_license_days, clock=clock)
    subscription_service = SubscriptionService(
        subscriptions,
        licenses,
        evaluator,
        counter,
        license_service,
        unit_of_work,
        default_timezone=config.default_timezone,
        renewal_reminder_days=config.renewal_reminder_days,
        clock=clock
    )

    logger.info(
        f"Entitlement services ready (storage={config.storage_backend.value}, "
        f"catalog={catalog.current_version})"
    )
    return ServiceContainer(
        catalog=catalog,
        evaluator=evaluator,
        subscriptions=subscriptions,
        licenses=licenses,
        counter=counter,
        license_service=license_service,
        subscription_service=subscription_service,
        rate_limiter=rate_limiter,
        unit_of_work=unit_of_work,
        store=store
    )


# Dependency injection
_services: Optional[ServiceContainer] = None


def get_services() -> ServiceContainer:
    """Get the process-wide service container."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[ServiceContainer]) -> None:
    global _services
    _services = services
