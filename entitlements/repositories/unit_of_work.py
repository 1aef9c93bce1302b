"""
Units of work spanning several repository writes.

A service opens ``atomic()`` and passes the yielded session to every
``locked`` call that belongs to the same change. The writes then commit
together or not at all. For PostgreSQL the session is the connection that
holds the transaction; in memory it is an :class:`InMemorySession` that
stages writes and keeps row locks until the unit ends.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List

from entitlements.common.exceptions import PersistenceError
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)


class KeyedLocks:
    """
    One ``asyncio.Lock`` per key, dropped once nobody holds or waits for it.

    Only serializes callers inside one event loop, so the in-memory
    repositories that use it are meant for development and tests.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _discard(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    async def acquire(self, key: str, timeout: float, operation: str) -> Callable[[], None]:
        """Wait for ``key``'s lock and return the function that releases it.

        Raises:
            PersistenceError: The lock was not free within ``timeout`` seconds
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1

        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as e:
            self._discard(key)
            raise PersistenceError(operation, cause=e)
        except BaseException:
            self._discard(key)
            raise

        def release() -> None:
            lock.release()
            self._discard(key)

        return release


class InMemorySession:
    """Staged writes and held locks for one in-memory unit of work."""

    def __init__(self):
        self._writes: List[Callable[[], None]] = []
        self._releases: List[Callable[[], None]] = []

    def stage(self, write: Callable[[], None]) -> None:
        self._writes.append(write)

    def hold(self, release: Callable[[], None]) -> None:
        self._releases.append(release)

    def commit(self) -> None:
        for write in self._writes:
            write()
        self._writes.clear()

    def close(self) -> None:
        self._writes.clear()
        while self._releases:
            self._releases.pop()()


class UnitOfWork(ABC):
    """Opens sessions that the repositories accept as ``session=``."""

    @abstractmethod
    def atomic(self) -> "AsyncIterator[Any]":
        """Async context manager yielding a session.

        Writes made through the session commit when the block exits cleanly
        and are all discarded if it raises.
        """


class InMemoryUnitOfWork(UnitOfWork):

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[InMemorySession]:
        session = InMemorySession()
        try:
            yield session
            session.commit()
        finally:
            session.close()
