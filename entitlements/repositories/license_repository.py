"""
Repository for forex licenses and license codes.
"""

import dataclasses
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from entitlements.models.license import ForexLicense, LicenseCode
from entitlements.repositories.unit_of_work import InMemorySession, KeyedLocks
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)


class LicenseRepository(ABC):
    """Storage contract for forex licenses and license codes.

    ``locked_license`` and ``locked_code`` behave like
    :meth:`SubscriptionRepository.locked`, including the optional
    ``session``. Storage failures raise :class:`PersistenceError`.
    """

    @abstractmethod
    async def get_license(self, license_key: str) -> Optional[ForexLicense]:
        """Get a forex license by key."""

    @abstractmethod
    async def list_licenses(self, user_id: str) -> List[ForexLicense]:
        """List a user's forex licenses, newest first."""

    @abstractmethod
    async def insert_license(self, forex_license: ForexLicense) -> bool:
        """Insert a new license; False if the key already exists."""

    @abstractmethod
    def locked_license(
        self, license_key: str, session: Optional[Any] = None
    ) -> "AsyncIterator[Optional[ForexLicense]]":
        """Yield a forex license under an exclusive lock."""

    @abstractmethod
    async def get_code(self, code: str) -> Optional[LicenseCode]:
        """Get a license code record."""

    @abstractmethod
    async def insert_code(self, record: LicenseCode) -> bool:
        """Insert a new license code; False if the code already exists."""

    @abstractmethod
    def locked_code(self, code: str, session: Optional[Any] = None) -> "AsyncIterator[Optional[LicenseCode]]":
        """Yield a license code under an exclusive lock."""


class InMemoryLicenseRepository(LicenseRepository):
    """License repository backed by process memory, for development and tests."""

    def __init__(self, lock_timeout: float = 5.0):
        self._licenses: Dict[str, ForexLicense] = {}
        self._codes: Dict[str, LicenseCode] = {}
        self._locks = KeyedLocks()
        self._lock_timeout = lock_timeout

    @staticmethod
    def _copy(record):
        return dataclasses.replace(record) if record else None

    @asynccontextmanager
    async def _locked(self, store: Dict, key: str, operation: str, session: Optional[InMemorySession]):
        release = await self._locks.acquire(f"{operation}:{key}", self._lock_timeout, operation)
        if session is not None:
            session.hold(release)

        try:
            record = self._copy(store.get(key))
            snapshot = self._copy(record)
            yield record
            if record is not None and record != snapshot:
                changed = self._copy(record)
                if session is not None:
                    session.stage(lambda: store.__setitem__(key, changed))
                else:
                    store[key] = changed
        finally:
            if session is None:
                release()

    async def get_license(self, license_key: str) -> Optional[ForexLicense]:
        return self._copy(self._licenses.get(license_key))

    async def list_licenses(self, user_id: str) -> List[ForexLicense]:
        licenses = [self._copy(lic) for lic in self._licenses.values() if lic.user_id == user_id]
        return sorted(licenses, key=lambda lic: lic.created_at, reverse=True)

    async def insert_license(self, forex_license: ForexLicense) -> bool:
        if forex_license.license_key in self._licenses:
            return False
        self._licenses[forex_license.license_key] = self._copy(forex_license)
        logger.debug(f"Stored forex license {forex_license.license_key}")
        return True

    def locked_license(self, license_key: str, session: Optional[InMemorySession] = None):
        return self._locked(self._licenses, license_key, "lock_license", session)

    async def get_code(self, code: str) -> Optional[LicenseCode]:
        return self._copy(self._codes.get(code))

    async def insert_code(self, record: LicenseCode) -> bool:
        if record.code in self._codes:
            return False
        self._codes[record.code] = self._copy(record)
        return True

    def locked_code(self, code: str, session: Optional[InMemorySession] = None):
        return self._locked(self._codes, code, "lock_code", session)
