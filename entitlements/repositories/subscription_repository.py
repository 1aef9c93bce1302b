"""
Repository for subscription records.

Every counter mutation goes through ``locked``: the record is read, changed
and written back as one step, so two concurrent trades for the same user
can never both pass the limit check against the same count.
"""

import dataclasses
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from entitlements.models.subscription import UserSubscription
from entitlements.repositories.unit_of_work import InMemorySession, KeyedLocks
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import utc_now

logger = get_logger(__name__)


class SubscriptionRepository(ABC):
    """Storage contract for subscriptions.

    Implementations raise :class:`PersistenceError` for any storage failure.
    """

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserSubscription]:
        """Get the subscription for ``user_id``."""

    @abstractmethod
    async def get_by_wallet(self, wallet_address: str) -> Optional[UserSubscription]:
        """Get the subscription linked to a wallet (case-insensitive)."""

    @abstractmethod
    async def get_by_customer_id(self, customer_id: str) -> Optional[UserSubscription]:
        """Get the subscription for a payment-provider customer."""

    @abstractmethod
    async def create(self, subscription: UserSubscription) -> UserSubscription:
        """Insert ``subscription`` unless the user already has one; return the stored row."""

    @abstractmethod
    async def save(self, subscription: UserSubscription) -> UserSubscription:
        """Overwrite the stored row for ``subscription.user_id``."""

    @abstractmethod
    def locked(
        self,
        user_id: str,
        session: Optional[Any] = None,
        create: Optional[UserSubscription] = None
    ) -> "AsyncIterator[Optional[UserSubscription]]":
        """Async context manager yielding the record under an exclusive lock.

        Changes made to the yielded record are written back when the block
        exits cleanly and discarded if it raises. With a ``session`` from a
        :class:`UnitOfWork` the write joins that unit and the lock is held
        until the unit ends. ``create`` is inserted first when the user has
        no row yet.
        """


class InMemorySubscriptionRepository(SubscriptionRepository):
    """
    Subscription repository backed by process memory.

    Used for development and tests only. One ``asyncio.Lock`` per user
    serializes check-and-increment within a single event loop; locks are
    dropped again once no request holds or waits for them.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self._subscriptions: Dict[str, UserSubscription] = {}
        self._locks = KeyedLocks()
        self._lock_timeout = lock_timeout

    @staticmethod
    def _copy(subscription: Optional[UserSubscription]) -> Optional[UserSubscription]:
        return dataclasses.replace(subscription) if subscription else None

    async def get(self, user_id: str) -> Optional[UserSubscription]:
        return self._copy(self._subscriptions.get(user_id))

    async def get_by_wallet(self, wallet_address: str) -> Optional[UserSubscription]:
        wanted = wallet_address.lower()
        for subscription in self._subscriptions.values():
            if subscription.wallet_address and subscription.wallet_address.lower() == wanted:
                return self._copy(subscription)
        return None

    async def get_by_customer_id(self, customer_id: str) -> Optional[UserSubscription]:
        for subscription in self._subscriptions.values():
            if subscription.customer_id == customer_id:
                return self._copy(subscription)
        return None

    async def create(self, subscription: UserSubscription) -> UserSubscription:
        existing = self._subscriptions.get(subscription.user_id)
        if existing is not None:
            return self._copy(existing)
        self._subscriptions[subscription.user_id] = self._copy(subscription)
        logger.debug(f"Created subscription for user {subscription.user_id}")
        return self._copy(subscription)

    async def save(self, subscription: UserSubscription) -> UserSubscription:
        subscription.updated_at = utc_now()
        self._subscriptions[subscription.user_id] = self._copy(subscription)
        return subscription

    @asynccontextmanager
    async def locked(
        self,
        user_id: str,
        session: Optional[InMemorySession] = None,
        create: Optional[UserSubscription] = None
    ) -> AsyncIterator[Optional[UserSubscription]]:
        release = await self._locks.acquire(user_id, self._lock_timeout, "lock_subscription")
        if session is not None:
            session.hold(release)

        try:
            record = self._copy(self._subscriptions.get(user_id))
            snapshot = self._copy(record)
            if record is None and create is not None:
                record = self._copy(create)
            yield record
            if record is not None and record != snapshot:
                if session is None:
                    await self.save(record)
                else:
                    record.updated_at = utc_now()
                    changed = self._copy(record)
                    session.stage(lambda: self._subscriptions.__setitem__(user_id, changed))
        finally:
            if session is None:
                release()
