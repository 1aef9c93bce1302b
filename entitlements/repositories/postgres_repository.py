"""
PostgreSQL repositories for subscriptions, forex licenses and license codes.

Counter updates run inside a transaction that holds a ``SELECT ... FOR
UPDATE`` row lock, so the lazy reset, the limit check and the increment
commit together. Changes spanning several rows share one connection through
:class:`PostgresUnitOfWork`. Every database failure, including statement and
pool acquisition timeouts, is raised as :class:`PersistenceError`.
"""

import asyncio
import dataclasses
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, List, Optional, Sequence, Tuple

import asyncpg

from entitlements.common.exceptions import PersistenceError
from entitlements.config.settings import DatabaseConfig
from entitlements.connection_pool.database_pool import DatabasePoolManager, get_database_pool_manager
from entitlements.models.license import (
    ForexLicense, ForexPlanType, LicenseCode, LicenseStatus, PaymentStatus
)
from entitlements.models.subscription import (
    BillingCycle, PaymentMethod, PlanTier, SubscriptionStatus, UserSubscription
)
from entitlements.repositories.license_repository import LicenseRepository
from entitlements.repositories.subscription_repository import SubscriptionRepository
from entitlements.repositories.unit_of_work import UnitOfWork
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import utc_now

logger = get_logger(__name__)

DATABASE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE,
    wallet_address TEXT,
    plan_tier TEXT NOT NULL,
    billing_cycle TEXT NOT NULL,
    status TEXT NOT NULL,
    start_date TIMESTAMPTZ NOT NULL,
    end_date TIMESTAMPTZ NOT NULL,
    auto_renew BOOLEAN NOT NULL DEFAULT FALSE,
    daily_trades_used INTEGER NOT NULL DEFAULT 0 CHECK (daily_trades_used >= 0),
    daily_trades_reset_at TIMESTAMPTZ NOT NULL,
    total_trades_used INTEGER NOT NULL DEFAULT 0 CHECK (total_trades_used >= 0),
    timezone TEXT NOT NULL DEFAULT 'UTC',
    plan_version TEXT,
    license_code TEXT,
    payment_method TEXT,
    customer_id TEXT,
    provider_subscription_id TEXT,
    last_payment_date TIMESTAMPTZ,
    next_payment_date TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_subscriptions_wallet ON subscriptions (LOWER(wallet_address));
CREATE INDEX IF NOT EXISTS idx_subscriptions_customer ON subscriptions (customer_id);

CREATE TABLE IF NOT EXISTS forex_licenses (
    license_key TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_type TEXT NOT NULL,
    status TEXT NOT NULL,
    payment_status TEXT NOT NULL,
    trades_used_today INTEGER NOT NULL DEFAULT 0,
    last_trade_date TIMESTAMPTZ,
    expires_at TIMESTAMPTZ,
    payment_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_forex_licenses_user ON forex_licenses (user_id);

CREATE TABLE IF NOT EXISTS license_codes (
    code TEXT PRIMARY KEY,
    plan_tier TEXT NOT NULL,
    billing_cycle TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ,
    activated_at TIMESTAMPTZ,
    activated_by TEXT,
    activated_wallet TEXT,
    machine_id TEXT,
    is_active BOOLEAN NOT NULL DEFAULT FALSE
);
"""

SUBSCRIPTION_COLUMNS = (
    "id", "user_id", "wallet_address", "plan_tier", "billing_cycle", "status",
    "start_date", "end_date", "auto_renew", "daily_trades_used", "daily_trades_reset_at",
    "total_trades_used", "timezone", "plan_version", "license_code", "payment_method",
    "customer_id", "provider_subscription_id", "last_payment_date", "next_payment_date",
    "created_at", "updated_at",
)
LICENSE_COLUMNS = (
    "license_key", "user_id", "plan_type", "status", "payment_status", "trades_used_today",
    "last_trade_date", "expires_at", "payment_id", "created_at",
)
CODE_COLUMNS = (
    "code", "plan_tier", "billing_cycle", "created_at", "expires_at", "activated_at",
    "activated_by", "activated_wallet", "machine_id", "is_active",
)


def _insert_sql(table: str, columns: Sequence[str], key: str, upsert: bool) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) ON CONFLICT ({key}) "
    if not upsert:
        return sql + "DO NOTHING RETURNING *"
    updates = ", ".join(f"{col} = EXCLUDED.{col}" for col in columns if col not in (key, "id", "created_at"))
    return sql + f"DO UPDATE SET {updates}"


UPSERT_SUBSCRIPTION = _insert_sql("subscriptions", SUBSCRIPTION_COLUMNS, "user_id", upsert=True)
INSERT_SUBSCRIPTION = _insert_sql("subscriptions", SUBSCRIPTION_COLUMNS, "user_id", upsert=False)
UPSERT_LICENSE = _insert_sql("forex_licenses", LICENSE_COLUMNS, "license_key", upsert=True)
INSERT_LICENSE = _insert_sql("forex_licenses", LICENSE_COLUMNS, "license_key", upsert=False)
UPSERT_CODE = _insert_sql("license_codes", CODE_COLUMNS, "code", upsert=True)
INSERT_CODE = _insert_sql("license_codes", CODE_COLUMNS, "code", upsert=False)


def _enum_value(value):
    return value.value if value is not None and hasattr(value, "value") else value


def subscription_to_row(subscription: UserSubscription) -> Tuple[Any, ...]:
    return tuple(_enum_value(getattr(subscription, col)) for col in SUBSCRIPTION_COLUMNS)


def row_to_subscription(row) -> UserSubscription:
    return UserSubscription(
        id=row["id"],
        user_id=row["user_id"],
        wallet_address=row["wallet_address"],
        plan_tier=PlanTier(row["plan_tier"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        status=SubscriptionStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        auto_renew=row["auto_renew"],
        daily_trades_used=row["daily_trades_used"],
        daily_trades_reset_at=row["daily_trades_reset_at"],
        total_trades_used=row["total_trades_used"],
        timezone=row["timezone"],
        plan_version=row["plan_version"],
        license_code=row["license_code"],
        payment_method=PaymentMethod(row["payment_method"]) if row["payment_method"] else None,
        customer_id=row["customer_id"],
        provider_subscription_id=row["provider_subscription_id"],
        last_payment_date=row["last_payment_date"],
        next_payment_date=row["next_payment_date"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def license_to_row(forex_license: ForexLicense) -> Tuple[Any, ...]:
    return tuple(_enum_value(getattr(forex_license, col)) for col in LICENSE_COLUMNS)


def row_to_license(row) -> ForexLicense:
    return ForexLicense(
        license_key=row["license_key"],
        user_id=row["user_id"],
        plan_type=ForexPlanType(row["plan_type"]),
        status=LicenseStatus(row["status"]),
        payment_status=PaymentStatus(row["payment_status"]),
        trades_used_today=row["trades_used_today"],
        last_trade_date=row["last_trade_date"],
        expires_at=row["expires_at"],
        payment_id=row["payment_id"],
        created_at=row["created_at"],
    )


def code_to_row(record: LicenseCode) -> Tuple[Any, ...]:
    return tuple(_enum_value(getattr(record, col)) for col in CODE_COLUMNS)


def row_to_code(row) -> LicenseCode:
    return LicenseCode(
        code=row["code"],
        plan_tier=PlanTier(row["plan_tier"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        activated_at=row["activated_at"],
        activated_by=row["activated_by"],
        activated_wallet=row["activated_wallet"],
        machine_id=row["machine_id"],
        is_active=row["is_active"],
    )


class PostgresStore:
    """Shared pool access and error translation for the repositories below."""

    def __init__(
        self,
        config: DatabaseConfig,
        pool_manager: Optional[DatabasePoolManager] = None,
        pool_id: str = "entitlements",
        acquire_timeout: float = 5.0
    ):
        self.config = config
        self.pool_manager = pool_manager or get_database_pool_manager()
        self.pool_id = pool_id
        self.acquire_timeout = acquire_timeout

    async def _pool(self):
        try:
            return await self.pool_manager.get_or_create_pool(self.pool_id, self.config)
        except DATABASE_ERRORS as e:
            raise PersistenceError("connect", cause=e)

    async def run(self, operation: str, awaitable: Awaitable):
        """Await a database call, translating driver failures."""
        try:
            return await awaitable
        except DATABASE_ERRORS as e:
            raise PersistenceError(operation, cause=e)

    async def fetchrow(self, operation: str, sql: str, *args):
        pool = await self._pool()
        return await self.run(operation, pool.fetchrow(sql, *args))

    async def fetch(self, operation: str, sql: str, *args) -> List:
        pool = await self._pool()
        return await self.run(operation, pool.fetch(sql, *args))

    async def execute(self, operation: str, sql: str, *args):
        pool = await self._pool()
        return await self.run(operation, pool.execute(sql, *args))

    @asynccontextmanager
    async def transaction(self, operation: str, connection=None):
        """Connection with an open transaction; rolled back if the block raises.

        A ``connection`` from an enclosing :meth:`transaction` is yielded as
        is, so the caller's statements commit with the outer transaction.
        """
        if connection is not None:
            yield connection
            return

        pool = await self._pool()
        connection = await self.run(operation, pool.acquire(timeout=self.acquire_timeout))
        try:
            transaction = connection.transaction()
            await self.run(operation, transaction.start())
            try:
                yield connection
            except BaseException:
                try:
                    await transaction.rollback()
                except DATABASE_ERRORS as e:
                    logger.error(f"Rollback failed during {operation}: {e}")
                raise
            await self.run(operation, transaction.commit())
        finally:
            await pool.release(connection)

    async def initialize_schema(self) -> None:
        await self.execute("initialize_schema", SCHEMA_SQL)
        logger.info("Entitlement schema initialized")


class PostgresUnitOfWork(UnitOfWork):
    """Sessions are connections holding one open transaction."""

    def __init__(self, store: PostgresStore):
        self.store = store

    def atomic(self):
        return self.store.transaction("unit_of_work")


class PostgresSubscriptionRepository(SubscriptionRepository):
    """Subscription repository on PostgreSQL."""

    def __init__(self, store: PostgresStore):
        self.store = store

    async def get(self, user_id: str) -> Optional[UserSubscription]:
        row = await self.store.fetchrow(
            "get_subscription", "SELECT * FROM subscriptions WHERE user_id = $1", user_id
        )
        return row_to_subscription(row) if row else None

    async def get_by_wallet(self, wallet_address: str) -> Optional[UserSubscription]:
        row = await self.store.fetchrow(
            "get_subscription_by_wallet",
            "SELECT * FROM subscriptions WHERE LOWER(wallet_address) = LOWER($1) LIMIT 1",
            wallet_address
        )
        return row_to_subscription(row) if row else None

    async def get_by_customer_id(self, customer_id: str) -> Optional[UserSubscription]:
        row = await self.store.fetchrow(
            "get_subscription_by_customer",
            "SELECT * FROM subscriptions WHERE customer_id = $1 LIMIT 1",
            customer_id
        )
        return row_to_subscription(row) if row else None

    async def create(self, subscription: UserSubscription) -> UserSubscription:
        row = await self.store.fetchrow(
            "create_subscription", INSERT_SUBSCRIPTION, *subscription_to_row(subscription)
        )
        if row is None:
            # Another request created it first
            return await self.get(subscription.user_id)
        return row_to_subscription(row)

    async def save(self, subscription: UserSubscription) -> UserSubscription:
        subscription.updated_at = utc_now()
        await self.store.execute(
            "save_subscription", UPSERT_SUBSCRIPTION, *subscription_to_row(subscription)
        )
        return subscription

    @asynccontextmanager
    async def locked(
        self,
        user_id: str,
        session=None,
        create: Optional[UserSubscription] = None
    ) -> AsyncIterator[Optional[UserSubscription]]:
        async with self.store.transaction("lock_subscription", connection=session) as conn:
            if create is not None:
                await self.store.run(
                    "create_subscription", conn.execute(INSERT_SUBSCRIPTION, *subscription_to_row(create))
                )
            row = await self.store.run(
                "lock_subscription",
                conn.fetchrow("SELECT * FROM subscriptions WHERE user_id = $1 FOR UPDATE", user_id)
            )
            record = row_to_subscription(row) if row else None
            snapshot = dataclasses.replace(record) if record else None
            yield record
            if record is not None and record != snapshot:
                record.updated_at = utc_now()
                await self.store.run(
                    "save_subscription",
                    conn.execute(UPSERT_SUBSCRIPTION, *subscription_to_row(record))
                )


class PostgresLicenseRepository(LicenseRepository):
    """Forex license and license code repository on PostgreSQL."""

    def __init__(self, store: PostgresStore):
        self.store = store

    async def get_license(self, license_key: str) -> Optional[ForexLicense]:
        row = await self.store.fetchrow(
            "get_license", "SELECT * FROM forex_licenses WHERE license_key = $1", license_key
        )
        return row_to_license(row) if row else None

    async def list_licenses(self, user_id: str) -> List[ForexLicense]:
        rows = await self.store.fetch(
            "list_licenses",
            "SELECT * FROM forex_licenses WHERE user_id = $1 ORDER BY created_at DESC",
            user_id
        )
        return [row_to_license(row) for row in rows]

    async def insert_license(self, forex_license: ForexLicense) -> bool:
        row = await self.store.fetchrow("insert_license", INSERT_LICENSE, *license_to_row(forex_license))
        return row is not None

    @asynccontextmanager
    async def locked_license(self, license_key: str, session=None) -> AsyncIterator[Optional[ForexLicense]]:
        async with self.store.transaction("lock_license", connection=session) as conn:
            row = await self.store.run(
                "lock_license",
                conn.fetchrow("SELECT * FROM forex_licenses WHERE license_key = $1 FOR UPDATE", license_key)
            )
            record = row_to_license(row) if row else None
            snapshot = dataclasses.replace(record) if record else None
            yield record
            if record is not None and record != snapshot:
                await self.store.run("save_license", conn.execute(UPSERT_LICENSE, *license_to_row(record)))

    async def get_code(self, code: str) -> Optional[LicenseCode]:
        row = await self.store.fetchrow("get_code", "SELECT * FROM license_codes WHERE code = $1", code)
        return row_to_code(row) if row else None

    async def insert_code(self, record: LicenseCode) -> bool:
        row = await self.store.fetchrow("insert_code", INSERT_CODE, *code_to_row(record))
        return row is not None

    @asynccontextmanager
    async def locked_code(self, code: str, session=None) -> AsyncIterator[Optional[LicenseCode]]:
        async with self.store.transaction("lock_code", connection=session) as conn:
            row = await self.store.run(
                "lock_code",
                conn.fetchrow("SELECT * FROM license_codes WHERE code = $1 FOR UPDATE", code)
            )
            record = row_to_code(row) if row else None
            snapshot = dataclasses.replace(record) if record else None
            yield record
            if record is not None and record != snapshot:
                await self.store.run("save_code", conn.execute(UPSERT_CODE, *code_to_row(record)))
